"""
Experiment data models for the website A/B testing engine.

Dataclass schemas for experiment definitions, variants, metrics, targeting,
participants and computed results. Every model round-trips through plain
JSON-safe dicts so any store can persist it.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _mapping(value: Any, name: str) -> Mapping:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise TypeError(f"{name} must be a mapping, got {type(value).__name__}")
    return value


class TestStatus(str, Enum):
    """Experiment lifecycle status."""
    __test__ = False  # not a pytest class

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class MetricType(str, Enum):
    """How a metric is aggregated per variant."""
    CONVERSION = "conversion"  # conversion rate, %
    ENGAGEMENT = "engagement"  # mean events per participant
    REVENUE = "revenue"  # sum of conversion values
    CUSTOM = "custom"


class MetricGoal(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


class RecommendedAction(str, Enum):
    IMPLEMENT = "implement"
    TEST_FURTHER = "test_further"
    ABANDON = "abandon"


class InsightType(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    INFO = "info"


class ResultsStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    INCONCLUSIVE = "inconclusive"


@dataclass
class ContentChange:
    """Modifications to apply to every element matched by a CSS selector."""
    selector: str
    modifications: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"selector": self.selector, "modifications": dict(self.modifications)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ContentChange":
        return cls(selector=d["selector"], modifications=dict(d.get("modifications") or {}))


@dataclass
class Variant:
    """One arm of an experiment, control included."""
    id: str
    name: str
    weight: float  # share of traffic, 0-100
    is_control: bool = False
    description: str = ""
    changes: List[ContentChange] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "weight": self.weight,
            "is_control": self.is_control,
            "description": self.description,
            "changes": [c.to_dict() for c in self.changes],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Variant":
        return cls(
            id=d["id"],
            name=d.get("name", d["id"]),
            weight=float(d.get("weight", 0)),
            is_control=bool(d.get("is_control", False)),
            description=d.get("description", ""),
            changes=[
                c if isinstance(c, ContentChange) else ContentChange.from_dict(c)
                for c in d.get("changes") or []
            ],
        )


@dataclass
class Metric:
    """Metric tracked by an experiment. baseline/target are percentages."""
    id: str
    name: str
    type: MetricType = MetricType.CONVERSION
    goal: MetricGoal = MetricGoal.INCREASE
    baseline: float = 0.0
    target: float = 0.0
    is_primary: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "goal": self.goal.value,
            "baseline": self.baseline,
            "target": self.target,
            "is_primary": self.is_primary,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Metric":
        return cls(
            id=d["id"],
            name=d.get("name", d["id"]),
            type=MetricType(d.get("type", MetricType.CONVERSION)),
            goal=MetricGoal(d.get("goal", MetricGoal.INCREASE)),
            baseline=float(d.get("baseline", 0)),
            target=float(d.get("target", 0)),
            is_primary=bool(d.get("is_primary", False)),
        )


@dataclass
class TargetingRule:
    condition: str
    value: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"condition": self.condition, "value": self.value}


@dataclass
class Targeting:
    """Audience restrictions. Empty lists mean no restriction."""
    devices: List[str] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)
    countries: List[str] = field(default_factory=list)
    custom_rules: List[TargetingRule] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "devices": list(self.devices),
            "sources": list(self.sources),
            "countries": list(self.countries),
            "custom_rules": [r.to_dict() for r in self.custom_rules],
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "Targeting":
        d = _mapping(d, "targeting")
        return cls(
            devices=list(d.get("devices") or []),
            sources=list(d.get("sources") or []),
            countries=list(d.get("countries") or []),
            custom_rules=[
                r if isinstance(r, TargetingRule) else TargetingRule(r["condition"], r.get("value"))
                for r in d.get("custom_rules") or []
            ],
        )


@dataclass
class Schedule:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    min_duration: int = 7  # days
    min_sample_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "min_duration": self.min_duration,
            "min_sample_size": self.min_sample_size,
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "Schedule":
        d = _mapping(d, "schedule")
        return cls(
            start_date=_parse_dt(d.get("start_date")),
            end_date=_parse_dt(d.get("end_date")),
            min_duration=int(d.get("min_duration", 7)),
            min_sample_size=int(d.get("min_sample_size", 0)),
        )


@dataclass
class SessionContext:
    """What the rendering layer knows about a visiting session."""
    device: Optional[str] = None
    source: Optional[str] = None
    country: Optional[str] = None
    returning_visitor: Optional[bool] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ParticipantEvent:
    type: str
    timestamp: datetime = field(default_factory=utcnow)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "timestamp": _iso(self.timestamp), "data": dict(self.data)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ParticipantEvent":
        return cls(type=d["type"], timestamp=_parse_dt(d.get("timestamp")) or utcnow(), data=dict(d.get("data") or {}))


@dataclass
class Participant:
    """One session's assignment, events and conversion outcome for one test."""
    session_id: str
    test_id: str
    variant_id: str
    assigned_at: datetime = field(default_factory=utcnow)
    converted: bool = False
    conversion_value: float = 0.0
    events: List[ParticipantEvent] = field(default_factory=list)

    @property
    def key(self) -> tuple:
        return (self.session_id, self.test_id)

    @property
    def last_activity(self) -> datetime:
        if self.events:
            return max(self.assigned_at, max(e.timestamp for e in self.events))
        return self.assigned_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "test_id": self.test_id,
            "variant_id": self.variant_id,
            "assigned_at": _iso(self.assigned_at),
            "converted": self.converted,
            "conversion_value": self.conversion_value,
            "events": [e.to_dict() for e in self.events],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Participant":
        return cls(
            session_id=d["session_id"],
            test_id=d["test_id"],
            variant_id=d["variant_id"],
            assigned_at=_parse_dt(d.get("assigned_at")) or utcnow(),
            converted=bool(d.get("converted", False)),
            conversion_value=float(d.get("conversion_value", 0.0)),
            events=[ParticipantEvent.from_dict(e) for e in d.get("events") or []],
        )


@dataclass
class VariantResult:
    """Aggregates and significance vs control for a single variant."""
    participants: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0
    revenue: float = 0.0
    metrics: Dict[str, float] = field(default_factory=dict)
    confidence: float = 0.0
    improvement: float = 0.0
    is_winner: bool = False
    is_statistically_significant: bool = False
    z_score: float = 0.0
    p_value: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participants": self.participants,
            "conversions": self.conversions,
            "conversion_rate": self.conversion_rate,
            "revenue": self.revenue,
            "metrics": dict(self.metrics),
            "confidence": self.confidence,
            "improvement": self.improvement,
            "is_winner": self.is_winner,
            "is_statistically_significant": self.is_statistically_significant,
            "z_score": self.z_score,
            "p_value": self.p_value,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "VariantResult":
        return cls(**{k: d[k] for k in cls.__dataclass_fields__ if k in d})


@dataclass
class Winner:
    variant_id: str
    confidence: float
    improvement: float
    recommended_action: RecommendedAction

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "confidence": self.confidence,
            "improvement": self.improvement,
            "recommended_action": self.recommended_action.value,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Winner":
        return cls(
            variant_id=d["variant_id"],
            confidence=float(d["confidence"]),
            improvement=float(d["improvement"]),
            recommended_action=RecommendedAction(d["recommended_action"]),
        )


@dataclass
class Insight:
    type: InsightType
    title: str
    description: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "title": self.title, "description": self.description, "data": dict(self.data)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Insight":
        return cls(
            type=InsightType(d["type"]),
            title=d["title"],
            description=d["description"],
            data=dict(d.get("data") or {}),
        )


@dataclass
class ExperimentResults:
    """Derived results: recomputed on demand, frozen onto the test at stop."""
    status: ResultsStatus = ResultsStatus.RUNNING
    duration: int = 0  # days
    total_participants: int = 0
    variants: Dict[str, VariantResult] = field(default_factory=dict)
    winner: Optional[Winner] = None
    insights: List[Insight] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    computed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "duration": self.duration,
            "total_participants": self.total_participants,
            "variants": {vid: r.to_dict() for vid, r in self.variants.items()},
            "winner": self.winner.to_dict() if self.winner else None,
            "insights": [i.to_dict() for i in self.insights],
            "recommendations": list(self.recommendations),
            "computed_at": _iso(self.computed_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ExperimentResults":
        return cls(
            status=ResultsStatus(d.get("status", ResultsStatus.RUNNING)),
            duration=int(d.get("duration", 0)),
            total_participants=int(d.get("total_participants", 0)),
            variants={vid: VariantResult.from_dict(r) for vid, r in (d.get("variants") or {}).items()},
            winner=Winner.from_dict(d["winner"]) if d.get("winner") else None,
            insights=[Insight.from_dict(i) for i in d.get("insights") or []],
            recommendations=list(d.get("recommendations") or []),
            computed_at=_parse_dt(d.get("computed_at")) or utcnow(),
        )


@dataclass
class ExperimentDefinition:
    """A/B test definition, including its frozen results once completed."""
    id: str
    name: str
    technique_id: str  # owning entity
    variants: List[Variant]
    metrics: List[Metric]
    description: str = ""
    hypothesis: str = ""
    status: TestStatus = TestStatus.DRAFT
    targeting: Targeting = field(default_factory=Targeting)
    schedule: Schedule = field(default_factory=Schedule)
    results: Optional[ExperimentResults] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    created_by: str = ""

    @property
    def control(self) -> Optional[Variant]:
        return next((v for v in self.variants if v.is_control), None)

    @property
    def primary_metric(self) -> Optional[Metric]:
        return next((m for m in self.metrics if m.is_primary), None)

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        return next((v for v in self.variants if v.id == variant_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "technique_id": self.technique_id,
            "description": self.description,
            "hypothesis": self.hypothesis,
            "status": self.status.value,
            "variants": [v.to_dict() for v in self.variants],
            "metrics": [m.to_dict() for m in self.metrics],
            "targeting": self.targeting.to_dict(),
            "schedule": self.schedule.to_dict(),
            "results": self.results.to_dict() if self.results else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "created_by": self.created_by,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ExperimentDefinition":
        return cls(
            id=d["id"],
            name=d.get("name", ""),
            technique_id=d.get("technique_id", ""),
            description=d.get("description", ""),
            hypothesis=d.get("hypothesis", ""),
            status=TestStatus(d.get("status", TestStatus.DRAFT)),
            variants=[v if isinstance(v, Variant) else Variant.from_dict(v) for v in d.get("variants") or []],
            metrics=[m if isinstance(m, Metric) else Metric.from_dict(m) for m in d.get("metrics") or []],
            targeting=d["targeting"] if isinstance(d.get("targeting"), Targeting) else Targeting.from_dict(d.get("targeting")),
            schedule=d["schedule"] if isinstance(d.get("schedule"), Schedule) else Schedule.from_dict(d.get("schedule")),
            results=ExperimentResults.from_dict(d["results"]) if d.get("results") else None,
            created_at=_parse_dt(d.get("created_at")) or utcnow(),
            updated_at=_parse_dt(d.get("updated_at")) or utcnow(),
            created_by=d.get("created_by", ""),
        )
