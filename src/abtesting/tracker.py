"""
Event and conversion tracking for assigned sessions.

Events are appended to the participant's log; conversions are recorded at
most once per participant. Calls for sessions that were never assigned are
logged and dropped: creating participants here would bias bucket counts.
Writes for completed or archived tests are dropped too; a finished test's
participants stay as they were when it stopped.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .schema import Participant, ParticipantEvent, TestStatus, utcnow
from .storage import ExperimentStore

logger = logging.getLogger(__name__)

CONVERSION = "conversion"
FINISHED = (TestStatus.COMPLETED, TestStatus.ARCHIVED)


class EventTracker:
    """Writes events and conversions through the store's atomic update."""

    def __init__(self, store: ExperimentStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._clock = clock

    def _is_finished(self, test_id: str) -> bool:
        test = self.store.get_test(test_id)
        return test is not None and test.status in FINISHED

    def track_event(
        self,
        session_id: str,
        test_id: str,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Append an event to a participant's log.

        Returns:
            True if recorded, False if the session has no participant record
            or the test has finished.

        Raises:
            StorageError: persistence failed
        """
        if self._is_finished(test_id):
            logger.warning(f"Event '{event_type}' dropped: test {test_id} has finished")
            return False
        event = ParticipantEvent(type=event_type, timestamp=self._clock(), data=dict(data or {}))

        def _append(p: Participant) -> bool:
            p.events.append(event)
            return True

        participant, changed = self.store.update_participant(session_id, test_id, _append)
        if participant is None:
            logger.warning(f"Event '{event_type}' dropped: no participant {session_id} in {test_id}")
            return False
        return changed

    def record_conversion(
        self,
        session_id: str,
        test_id: str,
        conversion_type: str,
        value: float = 0.0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Record a participant's conversion. Idempotent: the first conversion
        wins and later calls leave value and event log untouched.

        Args:
            session_id: Visiting session identifier
            test_id: Test identifier
            conversion_type: Qualifying action (e.g. "bootcamp_signup")
            value: Conversion value, summed as revenue
            metadata: Extra data stored on the conversion event

        Returns:
            True if this call recorded the conversion.

        Raises:
            StorageError: persistence failed
        """
        if self._is_finished(test_id):
            logger.warning(f"Conversion '{conversion_type}' dropped: test {test_id} has finished")
            return False
        event = ParticipantEvent(
            type=CONVERSION,
            timestamp=self._clock(),
            data={"conversion_type": conversion_type, "value": value, **(metadata or {})},
        )

        def _convert(p: Participant) -> bool:
            if p.converted:
                return False
            p.converted = True
            p.conversion_value = float(value)
            p.events.append(event)
            return True

        participant, changed = self.store.update_participant(session_id, test_id, _convert)
        if participant is None:
            logger.warning(f"Conversion '{conversion_type}' dropped: no participant {session_id} in {test_id}")
            return False
        if changed:
            logger.info(f"Conversion recorded: {session_id} -> {test_id} ({conversion_type}, value={value})")
        return changed

