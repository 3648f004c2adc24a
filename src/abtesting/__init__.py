"""A/B testing engine for marketing-site content experiments."""

from .schema import (
    ExperimentDefinition,
    ExperimentResults,
    Metric,
    Participant,
    SessionContext,
    TestStatus,
    Variant,
    VariantResult,
    Winner,
)
from .errors import ExperimentError, ValidationError, NotFoundError, StateError, StorageError
from .config import EngineConfig
from .storage import ExperimentStore, InMemoryStore, SQLiteStore
from .manager import ExperimentManager
from .report import render_exec_summary

__all__ = [
    "ExperimentDefinition",
    "ExperimentResults",
    "Metric",
    "Participant",
    "SessionContext",
    "TestStatus",
    "Variant",
    "VariantResult",
    "Winner",
    "ExperimentError",
    "ValidationError",
    "NotFoundError",
    "StateError",
    "StorageError",
    "EngineConfig",
    "ExperimentStore",
    "InMemoryStore",
    "SQLiteStore",
    "ExperimentManager",
    "render_exec_summary",
]
