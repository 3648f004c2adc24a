"""
Experiment definition validation.

Turns a raw configuration into a draft ExperimentDefinition, rejecting the
whole definition on the first violated invariant, and plans the minimum
sample size from the primary metric.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Union
from uuid import uuid4

from .config import WEIGHT_TOLERANCE
from .errors import ValidationError
from .schema import ExperimentDefinition, TestStatus, utcnow
from .stats.power import min_sample_size

logger = logging.getLogger(__name__)

INVALID_FIELD = "InvalidField"

ConfigLike = Union[ExperimentDefinition, Dict[str, Any]]


def generate_test_id(now: datetime = None) -> str:
    now = now or utcnow()
    return f"abtest_{int(now.timestamp() * 1000)}_{uuid4().hex[:9]}"


def validate_definition(test: ExperimentDefinition) -> None:
    """
    Check structural invariants of a definition.

    Raises:
        ValidationError: with kind TooFewVariants, WeightSumInvalid,
            MissingControl, MultipleControls, NoMetrics,
            MultiplePrimaryMetrics or InvalidField
    """
    if len(test.variants) < 2:
        raise ValidationError(
            ValidationError.TOO_FEW_VARIANTS,
            f"An A/B test needs at least 2 variants, got {len(test.variants)}",
        )

    total_weight = sum(v.weight for v in test.variants)
    if abs(total_weight - 100) > WEIGHT_TOLERANCE:
        raise ValidationError(
            ValidationError.WEIGHT_SUM_INVALID,
            f"Variant weights must sum to 100, got {total_weight:g}",
        )

    n_controls = sum(1 for v in test.variants if v.is_control)
    if n_controls == 0:
        raise ValidationError(ValidationError.MISSING_CONTROL, "Exactly one control variant is required, got none")
    if n_controls > 1:
        raise ValidationError(
            ValidationError.MULTIPLE_CONTROLS,
            f"Exactly one control variant is required, got {n_controls}",
        )

    if not test.metrics:
        raise ValidationError(ValidationError.NO_METRICS, "At least one metric must be defined")

    n_primary = sum(1 for m in test.metrics if m.is_primary)
    if n_primary != 1:
        raise ValidationError(
            ValidationError.MULTIPLE_PRIMARY_METRICS,
            f"Exactly one primary metric is required, got {n_primary}",
        )

    for v in test.variants:
        if not 0 <= v.weight <= 100:
            raise ValidationError(INVALID_FIELD, f"Variant {v.id} weight {v.weight:g} outside 0-100")

    duplicates = [vid for vid, n in Counter(v.id for v in test.variants).items() if n > 1]
    if duplicates:
        raise ValidationError(INVALID_FIELD, f"Duplicate variant ids: {duplicates}")


def build_definition(config: ConfigLike, now: datetime = None) -> ExperimentDefinition:
    """
    Build a validated draft definition from a configuration.

    Server-owned fields (id, status, timestamps, results) in the config are
    ignored. The primary metric drives schedule.min_sample_size.

    Args:
        config: Mapping in ExperimentDefinition.to_dict() shape, or a definition
        now: Creation timestamp

    Returns:
        Draft ExperimentDefinition (not yet persisted)
    """
    now = now or utcnow()
    data = config.to_dict() if isinstance(config, ExperimentDefinition) else dict(config)
    data.update(
        id=generate_test_id(now),
        status=TestStatus.DRAFT,
        results=None,
        created_at=now,
        updated_at=now,
    )
    data.setdefault("technique_id", "")
    data.setdefault("name", "")

    try:
        test = ExperimentDefinition.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(INVALID_FIELD, f"Malformed test configuration: {e}") from e

    validate_definition(test)

    primary = test.primary_metric
    test.schedule.min_sample_size = min_sample_size(primary.baseline, primary.target)
    # start is stamped by start_test; a planned end already in the past is dropped
    test.schedule.start_date = None
    if test.schedule.end_date and test.schedule.end_date <= now:
        test.schedule.end_date = None
    logger.info(f"Validated test {test.id} ({test.name}): min sample size {test.schedule.min_sample_size}")
    return test
