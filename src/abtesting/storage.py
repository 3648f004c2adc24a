"""
Persistence for experiment definitions and participant records.

Two backends share the ExperimentStore contract: an in-memory map guarded by
a lock (tests, single-process sites) and SQLite (one `tests` row per
definition, one `participants` row per (session_id, test_id) holding its
full event log). Both make participant upserts atomic read-modify-writes so
sticky assignment and idempotent conversions hold under concurrent callers.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .config import DEFAULT_DB_NAME, DEFAULT_STORE_DIR
from .errors import StorageError
from .schema import ExperimentDefinition, Participant, ParticipantEvent, _iso, _parse_dt

logger = logging.getLogger(__name__)

ParticipantKey = Tuple[str, str]
Mutation = Callable[[Participant], bool]


class ExperimentStore(ABC):
    """Storage contract used by the engine."""

    @abstractmethod
    def save_test(self, test: ExperimentDefinition) -> None:
        ...

    @abstractmethod
    def get_test(self, test_id: str) -> Optional[ExperimentDefinition]:
        ...

    @abstractmethod
    def list_tests(self) -> List[ExperimentDefinition]:
        ...

    def list_tests_by_technique(self, technique_id: str) -> List[ExperimentDefinition]:
        return [t for t in self.list_tests() if t.technique_id == technique_id]

    @abstractmethod
    def get_participant(self, session_id: str, test_id: str) -> Optional[Participant]:
        ...

    @abstractmethod
    def add_participant(self, participant: Participant) -> Tuple[Participant, bool]:
        """
        Insert a participant unless one already exists for its key.

        Returns:
            (stored participant, created). When created is False the stored
            record is the pre-existing one and the argument was discarded.
        """

    @abstractmethod
    def update_participant(
        self, session_id: str, test_id: str, mutate: Mutation
    ) -> Tuple[Optional[Participant], bool]:
        """
        Atomically read, mutate and write back a participant.

        `mutate` receives the current record and returns True if it changed
        anything; nothing is written otherwise.

        Returns:
            (participant after mutation or None if absent, changed)
        """

    @abstractmethod
    def list_participants(self, test_id: str) -> List[Participant]:
        """Consistent snapshot of all participants of a test."""

    @abstractmethod
    def list_participants_for_session(self, session_id: str) -> List[Participant]:
        ...

    @abstractmethod
    def delete_participants(self, keys: Iterable[ParticipantKey]) -> int:
        ...


class InMemoryStore(ExperimentStore):
    """
    Dict-backed store. Records are kept serialized so callers only ever see
    copies; a single re-entrant lock serializes every operation.
    """

    def __init__(self, timeout: float = 2.0):
        self.timeout = timeout
        self._tests: Dict[str, dict] = {}
        self._participants: Dict[ParticipantKey, dict] = {}
        self._lock = threading.RLock()

    @contextmanager
    def _locked(self):
        if not self._lock.acquire(timeout=self.timeout):
            raise StorageError(f"Timed out after {self.timeout}s waiting for store lock")
        try:
            yield
        finally:
            self._lock.release()

    def save_test(self, test: ExperimentDefinition) -> None:
        with self._locked():
            self._tests[test.id] = test.to_dict()

    def get_test(self, test_id: str) -> Optional[ExperimentDefinition]:
        with self._locked():
            raw = self._tests.get(test_id)
        return ExperimentDefinition.from_dict(raw) if raw else None

    def list_tests(self) -> List[ExperimentDefinition]:
        with self._locked():
            raws = list(self._tests.values())
        return [ExperimentDefinition.from_dict(r) for r in raws]

    def get_participant(self, session_id: str, test_id: str) -> Optional[Participant]:
        with self._locked():
            raw = self._participants.get((session_id, test_id))
        return Participant.from_dict(raw) if raw else None

    def add_participant(self, participant: Participant) -> Tuple[Participant, bool]:
        with self._locked():
            existing = self._participants.get(participant.key)
            if existing is not None:
                return Participant.from_dict(existing), False
            self._participants[participant.key] = participant.to_dict()
        return participant, True

    def update_participant(
        self, session_id: str, test_id: str, mutate: Mutation
    ) -> Tuple[Optional[Participant], bool]:
        with self._locked():
            raw = self._participants.get((session_id, test_id))
            if raw is None:
                return None, False
            participant = Participant.from_dict(raw)
            changed = bool(mutate(participant))
            if changed:
                self._participants[participant.key] = participant.to_dict()
        return participant, changed

    def list_participants(self, test_id: str) -> List[Participant]:
        with self._locked():
            raws = [r for r in self._participants.values() if r["test_id"] == test_id]
        return [Participant.from_dict(r) for r in raws]

    def list_participants_for_session(self, session_id: str) -> List[Participant]:
        with self._locked():
            raws = [r for r in self._participants.values() if r["session_id"] == session_id]
        return [Participant.from_dict(r) for r in raws]

    def delete_participants(self, keys: Iterable[ParticipantKey]) -> int:
        removed = 0
        with self._locked():
            for key in keys:
                if self._participants.pop(tuple(key), None) is not None:
                    removed += 1
        return removed


class SQLiteStore(ExperimentStore):
    """
    Relational store. One connection per call; `timeout` bounds how long a
    call waits on a locked database before failing with StorageError.
    """

    def __init__(self, db_path: Optional[str] = None, timeout: float = 2.0):
        self.db_path = db_path or str(Path(DEFAULT_STORE_DIR) / DEFAULT_DB_NAME)
        self.timeout = timeout
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open {self.db_path}: {e}", cause=e) from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA synchronous=NORMAL")
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"SQLite error on {self.db_path}: {e}", cause=e) from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self):
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS tests (
                    id TEXT PRIMARY KEY,
                    technique_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at TEXT
                );

                CREATE TABLE IF NOT EXISTS participants (
                    session_id TEXT NOT NULL,
                    test_id TEXT NOT NULL,
                    variant_id TEXT NOT NULL,
                    assigned_at TEXT NOT NULL,
                    converted INTEGER NOT NULL DEFAULT 0,
                    conversion_value REAL NOT NULL DEFAULT 0,
                    events TEXT NOT NULL DEFAULT '[]',
                    PRIMARY KEY (session_id, test_id)
                );

                CREATE INDEX IF NOT EXISTS idx_tests_technique ON tests(technique_id);
                CREATE INDEX IF NOT EXISTS idx_participants_test ON participants(test_id);
            """)
        logger.debug(f"SQLite store initialized at {self.db_path}")

    @staticmethod
    def _participant_params(p: Participant) -> tuple:
        return (
            p.session_id,
            p.test_id,
            p.variant_id,
            _iso(p.assigned_at),
            int(p.converted),
            p.conversion_value,
            json.dumps([e.to_dict() for e in p.events]),
        )

    @staticmethod
    def _row_to_participant(row: sqlite3.Row) -> Participant:
        return Participant(
            session_id=row["session_id"],
            test_id=row["test_id"],
            variant_id=row["variant_id"],
            assigned_at=_parse_dt(row["assigned_at"]),
            converted=bool(row["converted"]),
            conversion_value=float(row["conversion_value"]),
            events=[ParticipantEvent.from_dict(e) for e in json.loads(row["events"])],
        )

    def save_test(self, test: ExperimentDefinition) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO tests (id, technique_id, status, payload, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (test.id, test.technique_id, test.status.value, json.dumps(test.to_dict()), _iso(test.updated_at)),
            )

    def get_test(self, test_id: str) -> Optional[ExperimentDefinition]:
        with self._connect() as conn:
            row = conn.execute("SELECT payload FROM tests WHERE id = ?", (test_id,)).fetchone()
        return ExperimentDefinition.from_dict(json.loads(row["payload"])) if row else None

    def list_tests(self) -> List[ExperimentDefinition]:
        with self._connect() as conn:
            rows = conn.execute("SELECT payload FROM tests").fetchall()
        return [ExperimentDefinition.from_dict(json.loads(r["payload"])) for r in rows]

    def list_tests_by_technique(self, technique_id: str) -> List[ExperimentDefinition]:
        with self._connect() as conn:
            rows = conn.execute("SELECT payload FROM tests WHERE technique_id = ?", (technique_id,)).fetchall()
        return [ExperimentDefinition.from_dict(json.loads(r["payload"])) for r in rows]

    def get_participant(self, session_id: str, test_id: str) -> Optional[Participant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM participants WHERE session_id = ? AND test_id = ?",
                (session_id, test_id),
            ).fetchone()
        return self._row_to_participant(row) if row else None

    def add_participant(self, participant: Participant) -> Tuple[Participant, bool]:
        with self._transaction() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO participants "
                "(session_id, test_id, variant_id, assigned_at, converted, conversion_value, events) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                self._participant_params(participant),
            )
            created = cur.rowcount == 1
            row = conn.execute(
                "SELECT * FROM participants WHERE session_id = ? AND test_id = ?",
                participant.key,
            ).fetchone()
        return self._row_to_participant(row), created

    def update_participant(
        self, session_id: str, test_id: str, mutate: Mutation
    ) -> Tuple[Optional[Participant], bool]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM participants WHERE session_id = ? AND test_id = ?",
                (session_id, test_id),
            ).fetchone()
            if row is None:
                return None, False
            participant = self._row_to_participant(row)
            changed = bool(mutate(participant))
            if changed:
                conn.execute(
                    "UPDATE participants SET variant_id = ?, converted = ?, conversion_value = ?, events = ? "
                    "WHERE session_id = ? AND test_id = ?",
                    (
                        participant.variant_id,
                        int(participant.converted),
                        participant.conversion_value,
                        json.dumps([e.to_dict() for e in participant.events]),
                        session_id,
                        test_id,
                    ),
                )
        return participant, changed

    def list_participants(self, test_id: str) -> List[Participant]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM participants WHERE test_id = ?", (test_id,)).fetchall()
        return [self._row_to_participant(r) for r in rows]

    def list_participants_for_session(self, session_id: str) -> List[Participant]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM participants WHERE session_id = ?", (session_id,)).fetchall()
        return [self._row_to_participant(r) for r in rows]

    def delete_participants(self, keys: Iterable[ParticipantKey]) -> int:
        keys = [tuple(k) for k in keys]
        if not keys:
            return 0
        with self._transaction() as conn:
            removed = 0
            for session_id, test_id in keys:
                cur = conn.execute(
                    "DELETE FROM participants WHERE session_id = ? AND test_id = ?",
                    (session_id, test_id),
                )
                removed += cur.rowcount
        return removed
