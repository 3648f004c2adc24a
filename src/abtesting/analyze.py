"""
Experiment analysis.

Input: a test definition and a snapshot of its participants.
Output: ExperimentResults with per-variant aggregates, significance of every
variant against the control, the winner (if any), insights and
recommendations.
"""

import logging
import math
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd

from .config import (
    IMPLEMENT_CONFIDENCE,
    IMPLEMENT_IMPROVEMENT,
    TEST_FURTHER_CONFIDENCE,
    TEST_FURTHER_IMPROVEMENT,
)
from .report import generate_insights, generate_recommendations
from .schema import (
    ExperimentDefinition,
    ExperimentResults,
    Metric,
    MetricType,
    Participant,
    RecommendedAction,
    ResultsStatus,
    TestStatus,
    VariantResult,
    Winner,
    utcnow,
)
from .stats import two_proportion_z_test

logger = logging.getLogger(__name__)

PARTICIPANT_COLUMNS = ["session_id", "variant_id", "converted", "conversion_value", "n_events"]


def participants_frame(participants: List[Participant]) -> pd.DataFrame:
    """One row per participant: variant, conversion outcome and event count."""
    rows = [
        {
            "session_id": p.session_id,
            "variant_id": p.variant_id,
            "converted": bool(p.converted),
            "conversion_value": float(p.conversion_value),
            "n_events": len(p.events),
        }
        for p in participants
    ]
    df = pd.DataFrame(rows, columns=PARTICIPANT_COLUMNS)
    return df.astype({"converted": bool, "conversion_value": float, "n_events": int})


def variant_metrics(df: pd.DataFrame, metrics: List[Metric]) -> Dict[str, float]:
    """
    Aggregate each metric over one variant's participants.

    conversion -> conversion rate (%), revenue -> sum of conversion values,
    engagement -> mean events per participant, custom -> 0.
    Empty groups give 0 for every metric.
    """
    n = len(df)
    out = {}
    for metric in metrics:
        if n == 0:
            out[metric.id] = 0.0
        elif metric.type == MetricType.CONVERSION:
            out[metric.id] = float(df["converted"].sum()) / n * 100
        elif metric.type == MetricType.REVENUE:
            out[metric.id] = float(df.loc[df["converted"], "conversion_value"].sum())
        elif metric.type == MetricType.ENGAGEMENT:
            out[metric.id] = float(df["n_events"].mean())
        else:
            out[metric.id] = 0.0
    return out


def compute_variant_results(test: ExperimentDefinition, df: pd.DataFrame) -> Dict[str, VariantResult]:
    """Per-variant aggregates plus significance of each variant vs control."""
    results: Dict[str, VariantResult] = {}
    for variant in test.variants:
        sub = df[df["variant_id"] == variant.id]
        n = len(sub)
        conversions = int(sub["converted"].sum())
        results[variant.id] = VariantResult(
            participants=n,
            conversions=conversions,
            conversion_rate=conversions / n * 100 if n else 0.0,
            revenue=float(sub.loc[sub["converted"], "conversion_value"].sum()),
            metrics=variant_metrics(sub, test.metrics),
        )

    control = test.control
    if control is None:
        return results

    ctrl = results[control.id]
    for variant in test.variants:
        if variant.is_control:
            continue
        res = results[variant.id]
        sig = two_proportion_z_test(ctrl.participants, ctrl.conversions, res.participants, res.conversions)
        res.confidence = sig.confidence
        res.improvement = sig.improvement
        res.is_statistically_significant = sig.is_significant
        res.z_score = sig.z_score
        res.p_value = sig.p_value
    return results


def recommended_action(confidence: float, improvement: float) -> RecommendedAction:
    if confidence >= IMPLEMENT_CONFIDENCE and improvement >= IMPLEMENT_IMPROVEMENT:
        return RecommendedAction.IMPLEMENT
    if confidence >= TEST_FURTHER_CONFIDENCE and improvement >= TEST_FURTHER_IMPROVEMENT:
        return RecommendedAction.TEST_FURTHER
    return RecommendedAction.ABANDON


def determine_winner(test: ExperimentDefinition, results: Dict[str, VariantResult]) -> Optional[Winner]:
    """
    The significant variant with the greatest positive improvement over
    control, or None. Marks the winner's result with is_winner.
    """
    best_id = None
    best_improvement = 0.0
    for variant in test.variants:
        if variant.is_control:
            continue
        res = results.get(variant.id)
        if res and res.is_statistically_significant and res.improvement > best_improvement:
            best_id = variant.id
            best_improvement = res.improvement

    if best_id is None:
        return None

    best = results[best_id]
    best.is_winner = True
    return Winner(
        variant_id=best_id,
        confidence=best.confidence,
        improvement=best.improvement,
        recommended_action=recommended_action(best.confidence, best.improvement),
    )


def results_status(test: ExperimentDefinition, winner: Optional[Winner]) -> ResultsStatus:
    """Running while the test runs; a finished test without a winner is inconclusive."""
    if test.status not in (TestStatus.COMPLETED, TestStatus.ARCHIVED):
        return ResultsStatus.RUNNING
    return ResultsStatus.COMPLETED if winner else ResultsStatus.INCONCLUSIVE


def duration_days(test: ExperimentDefinition, now: datetime) -> int:
    start = test.schedule.start_date
    if start is None:
        return 0
    end = test.schedule.end_date if test.status in (TestStatus.COMPLETED, TestStatus.ARCHIVED) else None
    elapsed = ((end or now) - start).total_seconds() / 86400
    return max(0, math.ceil(elapsed))


def compute_results(
    test: ExperimentDefinition,
    participants: List[Participant],
    now: Optional[datetime] = None,
) -> ExperimentResults:
    """
    Run the full analysis of a test over one participant snapshot.

    Args:
        test: Test definition
        participants: Snapshot of the test's participants
        now: Reference time for the duration of a test still running

    Returns:
        ExperimentResults
    """
    now = now or utcnow()
    df = participants_frame(participants)
    variant_results = compute_variant_results(test, df)
    winner = determine_winner(test, variant_results)
    total = sum(r.participants for r in variant_results.values())

    results = ExperimentResults(
        status=results_status(test, winner),
        duration=duration_days(test, now),
        total_participants=total,
        variants=variant_results,
        winner=winner,
        insights=generate_insights(test, variant_results),
        recommendations=generate_recommendations(test, variant_results, winner),
        computed_at=now,
    )
    logger.info(
        f"Analysis of {test.id}: {total} participants, "
        f"winner={winner.variant_id if winner else None}"
    )
    return results
