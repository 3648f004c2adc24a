"""
A/B test lifecycle management.

ExperimentManager is the engine entrypoint: it creates and validates tests,
drives draft -> running <-> paused -> completed -> archived, owns the
registry of running tests that assignment reads from, and freezes results
when a test stops. Each manager is an explicit instance over an injected
store, so several engines can coexist (e.g. in tests).
"""

import copy
import logging
import random
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .analyze import compute_results
from .assignment import AssignmentEngine
from .config import EngineConfig
from .errors import NotFoundError, StateError, StorageError
from .report import build_test_report, render_exec_summary
from .schema import (
    ExperimentDefinition,
    ExperimentResults,
    Participant,
    SessionContext,
    TestStatus,
    Variant,
    utcnow,
)
from .storage import ExperimentStore, InMemoryStore
from .tracker import EventTracker
from .validation import ConfigLike, build_definition

logger = logging.getLogger(__name__)


class ExperimentManager:
    """
    Engine facade over a store.

    Args:
        store: Persistence backend; defaults to an InMemoryStore
        config: Engine settings
        rng: Random source for variant draws (seed it for reproducible runs)
        clock: Returns the current time
    """

    def __init__(
        self,
        store: Optional[ExperimentStore] = None,
        config: Optional[EngineConfig] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or EngineConfig()
        self.store = store or InMemoryStore(timeout=self.config.storage_timeout)
        self._clock = clock
        self._active: Dict[str, ExperimentDefinition] = {}
        self._registry_lock = threading.RLock()
        self._lifecycle_lock = threading.RLock()

        self.assignment = AssignmentEngine(
            self.store,
            self._get_active_test,
            strategy=self.config.assignment_strategy,
            rng=rng,
            clock=clock,
        )
        self.tracker = EventTracker(self.store, clock=clock)
        self.reload_active_tests()

    # Active registry

    def _get_active_test(self, test_id: str) -> Optional[ExperimentDefinition]:
        with self._registry_lock:
            return self._active.get(test_id)

    def _register(self, test: ExperimentDefinition) -> None:
        with self._registry_lock:
            self._active[test.id] = copy.deepcopy(test)

    def _unregister(self, test_id: str) -> None:
        with self._registry_lock:
            self._active.pop(test_id, None)

    @property
    def active_test_ids(self) -> List[str]:
        with self._registry_lock:
            return sorted(self._active)

    def reload_active_tests(self) -> int:
        """Load every persisted running test into the registry (crash recovery)."""
        running = [t for t in self.store.list_tests() if t.status == TestStatus.RUNNING]
        with self._registry_lock:
            self._active = {t.id: t for t in running}
        if running:
            logger.info(f"Reloaded {len(running)} running tests: {[t.id for t in running]}")
        return len(running)

    # Lifecycle

    def _load(self, test_id: str) -> ExperimentDefinition:
        test = self.store.get_test(test_id)
        if test is None:
            raise NotFoundError(test_id)
        return test

    @staticmethod
    def _require(test: ExperimentDefinition, allowed: Iterable[TestStatus], action: str) -> None:
        if test.status not in allowed:
            raise StateError(test.id, test.status.value, action)

    def create_test(self, config: ConfigLike) -> ExperimentDefinition:
        """
        Validate a configuration and persist it as a draft test.

        Raises:
            ValidationError: definition rejected, nothing persisted
        """
        test = build_definition(config, now=self._clock())
        self.store.save_test(test)
        logger.info(f"Test created: {test.id} ({test.name})")
        return test

    def get_test(self, test_id: str) -> ExperimentDefinition:
        return self._load(test_id)

    def start_test(self, test_id: str) -> ExperimentDefinition:
        """draft -> running; stamps the start date."""
        with self._lifecycle_lock:
            test = self._load(test_id)
            self._require(test, [TestStatus.DRAFT], "start")
            now = self._clock()
            test.status = TestStatus.RUNNING
            test.schedule.start_date = now
            test.updated_at = now
            self.store.save_test(test)
            self._register(test)
        logger.info(f"Test started: {test_id}")
        return test

    def pause_test(self, test_id: str) -> ExperimentDefinition:
        """running -> paused; the test stops receiving new assignments."""
        with self._lifecycle_lock:
            test = self._load(test_id)
            self._require(test, [TestStatus.RUNNING], "pause")
            test.status = TestStatus.PAUSED
            test.updated_at = self._clock()
            self.store.save_test(test)
            self._unregister(test_id)
        logger.info(f"Test paused: {test_id}")
        return test

    def resume_test(self, test_id: str) -> ExperimentDefinition:
        """paused -> running."""
        with self._lifecycle_lock:
            test = self._load(test_id)
            self._require(test, [TestStatus.PAUSED], "resume")
            test.status = TestStatus.RUNNING
            test.updated_at = self._clock()
            self.store.save_test(test)
            self._register(test)
        logger.info(f"Test resumed: {test_id}")
        return test

    def stop_test(self, test_id: str) -> ExperimentResults:
        """
        running|paused -> completed. Computes results from one participant
        snapshot and freezes them onto the test.

        Raises:
            NotFoundError: unknown test
            StateError: test is not running or paused
        """
        with self._lifecycle_lock:
            test = self._load(test_id)
            self._require(test, [TestStatus.RUNNING, TestStatus.PAUSED], "stop")
            was_running = test.status == TestStatus.RUNNING
            # No new participants once the snapshot is taken
            self._unregister(test_id)

            now = self._clock()
            test.status = TestStatus.COMPLETED
            test.schedule.end_date = now
            test.updated_at = now
            try:
                participants = self.store.list_participants(test_id)
                test.results = compute_results(test, participants, now)
                self.store.save_test(test)
            except StorageError:
                if was_running:
                    self._register(self._load(test_id))
                raise

        logger.info(
            f"Test stopped: {test_id} ({test.results.total_participants} participants, "
            f"winner={test.results.winner.variant_id if test.results.winner else None})"
        )
        return test.results

    def archive_test(self, test_id: str) -> ExperimentDefinition:
        """completed -> archived (terminal)."""
        with self._lifecycle_lock:
            test = self._load(test_id)
            self._require(test, [TestStatus.COMPLETED], "archive")
            test.status = TestStatus.ARCHIVED
            test.updated_at = self._clock()
            self.store.save_test(test)
        logger.info(f"Test archived: {test_id}")
        return test

    # Rendering-layer API

    def assign(self, session_id: str, test_id: str, context: Optional[SessionContext] = None) -> Optional[Variant]:
        return self.assignment.assign(session_id, test_id, context)

    def force_variant(self, session_id: str, test_id: str, variant_id: str) -> Variant:
        return self.assignment.force_variant(session_id, test_id, variant_id)

    def get_session_assignments(self, session_id: str) -> Dict[str, Participant]:
        return self.assignment.get_session_assignments(session_id)

    def track_event(self, session_id: str, test_id: str, event_type: str, data: Optional[Dict[str, Any]] = None) -> bool:
        return self.tracker.track_event(session_id, test_id, event_type, data)

    def record_conversion(
        self,
        session_id: str,
        test_id: str,
        conversion_type: str,
        value: float = 0.0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return self.tracker.record_conversion(session_id, test_id, conversion_type, value, metadata)

    # Reporting API

    def get_test_results(self, test_id: str) -> Optional[ExperimentResults]:
        """
        Frozen results of a completed/archived test, otherwise a fresh
        computation over the current participants. None for unknown tests.
        """
        test = self.store.get_test(test_id)
        if test is None:
            return None
        if test.status in (TestStatus.COMPLETED, TestStatus.ARCHIVED) and test.results is not None:
            return test.results
        return compute_results(test, self.store.list_participants(test_id), self._clock())

    def get_tests_for_technique(self, technique_id: str) -> List[ExperimentDefinition]:
        return self.store.list_tests_by_technique(technique_id)

    def generate_test_report(self, test_id: str) -> Dict[str, Any]:
        """
        Dashboard report: summary, variant_performance, timeline, insights,
        recommendations.

        Raises:
            NotFoundError: unknown test
        """
        test = self._load(test_id)
        results = self.get_test_results(test_id)
        if results is None:
            raise NotFoundError(test_id)
        return build_test_report(test, results, self._clock())

    def render_test_report(self, test_id: str, artifacts_dir: Optional[str] = None) -> Path:
        """Write the report of a test as an HTML executive summary."""
        report = self.generate_test_report(test_id)
        return render_exec_summary(report, test_id, artifacts_dir or self.config.artifacts_dir)

    def get_test_stats(self, test_id: str) -> Dict[str, Any]:
        """Lightweight description of a test for dashboards."""
        test = self._load(test_id)
        primary = test.primary_metric
        return {
            "test_id": test.id,
            "name": test.name,
            "status": test.status.value,
            "is_active": self._get_active_test(test_id) is not None,
            "variants": [
                {"id": v.id, "name": v.name, "weight": v.weight, "is_control": v.is_control}
                for v in test.variants
            ],
            "primary_metric": primary.id if primary else None,
            "min_sample_size": test.schedule.min_sample_size,
        }

    # Maintenance

    def cleanup_expired_sessions(self, now: Optional[datetime] = None, include_active: bool = False) -> int:
        """
        Remove participants idle for longer than the session timeout.

        Args:
            now: Reference time
            include_active: Also purge running and paused tests (alters their live results)

        Returns:
            Number of participants removed
        """
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self.config.session_timeout_seconds)
        removed = 0
        for test in self.store.list_tests():
            if not include_active and test.status in (TestStatus.RUNNING, TestStatus.PAUSED):
                continue
            expired = [p.key for p in self.store.list_participants(test.id) if p.last_activity < cutoff]
            if expired:
                removed += self.store.delete_participants(expired)
        if removed:
            logger.info(f"Removed {removed} expired participants (idle since before {cutoff.isoformat()})")
        return removed
