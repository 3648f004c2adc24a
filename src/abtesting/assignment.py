"""
Sticky variant assignment for website sessions.

A session's first eligible visit to a running test draws a percentage in
[0, 100) and walks the variants by cumulative weight; the resulting
Participant is persisted through the store's atomic insert-if-absent, so
every later call (and every concurrent first call) returns the same variant.
"""

import hashlib
import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import ASSIGNMENT_HASH, ASSIGNMENT_RANDOM
from .errors import NotFoundError, StateError, StorageError
from .schema import (
    ExperimentDefinition,
    Participant,
    ParticipantEvent,
    SessionContext,
    Targeting,
    TargetingRule,
    TestStatus,
    Variant,
    utcnow,
)
from .storage import ExperimentStore

logger = logging.getLogger(__name__)

VARIANT_ASSIGNED = "variant_assigned"
VARIANT_FORCED = "variant_forced"
FORCE_ATTEMPTS = 3


def _hash_to_bucket(session_id: str, test_id: str, salt: str = "") -> float:
    """
    Deterministic hash to a percentage in [0, 100) with 0.01 resolution.

    Same session + test always maps to the same bucket.
    """
    key = f"{session_id}:{test_id}:{salt}"
    h = hashlib.sha256(key.encode()).hexdigest()
    return (int(h[:8], 16) % 10000) / 100


def select_variant(variants: List[Variant], r: float) -> Variant:
    """
    Pick the first variant whose cumulative weight reaches r.

    Zero-weight variants never receive traffic. Falls back to the first
    variant when floating-point rounding leaves r above the cumulative total.
    """
    cumulative = 0.0
    for variant in variants:
        if variant.weight <= 0:
            continue
        cumulative += variant.weight
        if r <= cumulative:
            return variant
    return variants[0]


def variant_transforms(variant: Variant) -> List[Tuple[str, str, Any]]:
    """
    Flatten a variant's content changes into (selector, property, value)
    triples, in definition order, for the rendering layer to apply.
    """
    return [
        (change.selector, prop, value)
        for change in variant.changes
        for prop, value in change.modifications.items()
    ]


def evaluate_rule(rule: TargetingRule, context: Optional[SessionContext]) -> bool:
    known = {
        "device_type": lambda c: c.device,
        "traffic_source": lambda c: c.source,
        "country": lambda c: c.country,
        "returning_visitor": lambda c: c.returning_visitor,
    }
    if rule.condition in known:
        return context is not None and known[rule.condition](context) == rule.value
    if context is not None and rule.condition in context.attributes:
        return context.attributes[rule.condition] == rule.value
    # Conditions the site does not report cannot exclude anyone
    return True


def is_eligible(targeting: Targeting, context: Optional[SessionContext]) -> bool:
    """Whether a session matches a test's targeting."""
    checks = [
        (targeting.devices, lambda c: c.device),
        (targeting.sources, lambda c: c.source),
        (targeting.countries, lambda c: c.country),
    ]
    for allowed, getter in checks:
        if allowed and (context is None or getter(context) not in allowed):
            return False
    return all(evaluate_rule(rule, context) for rule in targeting.custom_rules)


class AssignmentEngine:
    """
    Buckets sessions into variants of the tests the lifecycle manager has
    registered as active.

    Args:
        store: Participant persistence
        get_active_test: Lookup into the active registry (None if not running)
        strategy: "random" (RNG draw) or "hash" (SHA-256 of session and test)
        rng: Random source for the "random" strategy
        clock: Returns the current time
    """

    def __init__(
        self,
        store: ExperimentStore,
        get_active_test: Callable[[str], Optional[ExperimentDefinition]],
        strategy: str = ASSIGNMENT_RANDOM,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self._get_active_test = get_active_test
        self.strategy = strategy
        self._rng = rng or random.Random()
        self._clock = clock

    def _draw(self, session_id: str, test_id: str) -> float:
        if self.strategy == ASSIGNMENT_HASH:
            return _hash_to_bucket(session_id, test_id)
        return self._rng.random() * 100

    def _assignable_test(self, test_id: str) -> Optional[ExperimentDefinition]:
        test = self._get_active_test(test_id)
        if test is None or test.status != TestStatus.RUNNING:
            return None
        end = test.schedule.end_date
        if end is not None and self._clock() > end:
            logger.debug(f"Test {test_id} past its planned end {end.isoformat()}; not assigning")
            return None
        return test

    def assign(
        self,
        session_id: str,
        test_id: str,
        context: Optional[SessionContext] = None,
    ) -> Optional[Variant]:
        """
        Assign a session to a variant of a running test.

        Args:
            session_id: Visiting session identifier
            test_id: Test identifier
            context: Session attributes used for targeting

        Returns:
            The (sticky) variant, or None if the test is not running, the
            session is not targeted, or storage is unavailable.
        """
        test = self._assignable_test(test_id)
        if test is None:
            return None
        if not is_eligible(test.targeting, context):
            return None

        try:
            existing = self.store.get_participant(session_id, test_id)
            if existing is not None:
                return test.get_variant(existing.variant_id)

            variant = select_variant(test.variants, self._draw(session_id, test_id))
            now = self._clock()
            participant = Participant(
                session_id=session_id,
                test_id=test_id,
                variant_id=variant.id,
                assigned_at=now,
                events=[
                    ParticipantEvent(
                        type=VARIANT_ASSIGNED,
                        timestamp=now,
                        data={"variant_id": variant.id, "variant_name": variant.name},
                    )
                ],
            )
            stored, created = self.store.add_participant(participant)
        except StorageError as e:
            logger.warning(f"Assignment for {session_id} in {test_id} skipped: {e}")
            return None

        if created:
            logger.debug(f"Assigned {session_id} -> {test_id}/{stored.variant_id}")
        return test.get_variant(stored.variant_id)

    def force_variant(self, session_id: str, test_id: str, variant_id: str) -> Variant:
        """
        Pin a session to a given variant (QA preview of a running test).

        A converted participant keeps its original variant so recorded
        outcomes stay attributed to the arm that produced them.

        Raises:
            NotFoundError: unknown test
            StateError: test not running
            ValueError: unknown variant
            StorageError: the participant kept vanishing between insert and update
        """
        test = self._get_active_test(test_id)
        if test is None:
            stored_test = self.store.get_test(test_id)
            if stored_test is None:
                raise NotFoundError(test_id)
            raise StateError(test_id, stored_test.status.value, "force a variant on")

        variant = test.get_variant(variant_id)
        if variant is None:
            raise ValueError(f"Unknown variant {variant_id} for test {test_id}")

        now = self._clock()
        event = ParticipantEvent(type=VARIANT_FORCED, timestamp=now, data={"variant_id": variant_id})

        def _force(p: Participant) -> bool:
            if p.converted or p.variant_id == variant_id:
                return False
            p.variant_id = variant_id
            p.events.append(event)
            return True

        for _ in range(FORCE_ATTEMPTS):
            _, created = self.store.add_participant(
                Participant(session_id=session_id, test_id=test_id, variant_id=variant_id, assigned_at=now, events=[event])
            )
            if created:
                return variant
            updated, _ = self.store.update_participant(session_id, test_id, _force)
            if updated is None:
                # removed by a concurrent cleanup between insert and update
                continue
            if updated.variant_id != variant_id:
                logger.warning(f"{session_id} already converted in {test_id}; keeping {updated.variant_id}")
            return test.get_variant(updated.variant_id)

        raise StorageError(f"Could not force {session_id} into {test_id}/{variant_id} after {FORCE_ATTEMPTS} attempts")

    def get_session_assignments(self, session_id: str) -> Dict[str, Participant]:
        """All participant records of a session, keyed by test id."""
        return {p.test_id: p for p in self.store.list_participants_for_session(session_id)}
