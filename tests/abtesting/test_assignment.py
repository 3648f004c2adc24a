"""Tests for sticky variant assignment and targeting."""
import random
import threading
from datetime import timedelta

import pytest

from src.abtesting.assignment import (
    FORCE_ATTEMPTS,
    VARIANT_ASSIGNED,
    AssignmentEngine,
    is_eligible,
    select_variant,
    variant_transforms,
)
from src.abtesting.config import EngineConfig
from src.abtesting.errors import NotFoundError, StateError, StorageError
from src.abtesting.manager import ExperimentManager
from src.abtesting.schema import (
    SessionContext,
    Targeting,
    TargetingRule,
    TestStatus,
    Variant,
)
from src.abtesting.storage import InMemoryStore
from src.abtesting.validation import build_definition


def test_select_variant_cumulative_walk():
    variants = [Variant("a", "A", 20, is_control=True), Variant("b", "B", 30), Variant("c", "C", 50)]
    assert select_variant(variants, 0).id == "a"
    assert select_variant(variants, 20).id == "a"
    assert select_variant(variants, 20.01).id == "b"
    assert select_variant(variants, 50).id == "b"
    assert select_variant(variants, 99.99).id == "c"


def test_select_variant_skips_zero_weight():
    """A 0% variant never receives traffic, even at r = 0."""
    variants = [Variant("off", "Off", 0), Variant("a", "A", 50, is_control=True), Variant("b", "B", 50)]
    assert select_variant(variants, 0).id == "a"
    assert all(select_variant(variants, r).id != "off" for r in (0, 0.5, 50, 99.9))


def test_variant_transforms_in_order(base_config):
    test = build_definition(base_config)
    outcome = test.get_variant("outcome")
    assert variant_transforms(outcome) == [(".hero .cta", "text", "Get hired faster")]
    assert variant_transforms(test.control) == []


def test_assign_is_sticky(manager, running_test):
    """Repeat calls return the same variant and record one assignment event."""
    first = manager.assign("sess_1", running_test.id)
    for _ in range(20):
        assert manager.assign("sess_1", running_test.id).id == first.id

    participants = manager.store.list_participants(running_test.id)
    assert len(participants) == 1
    assert [e.type for e in participants[0].events] == [VARIANT_ASSIGNED]


def test_assign_sticky_under_concurrency(manager, running_test):
    """Concurrent first visits of one session all get the same variant."""
    results = []
    barrier = threading.Barrier(16)

    def visit():
        barrier.wait()
        results.append(manager.assign("sess_race", running_test.id).id)

    threads = [threading.Thread(target=visit) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 16
    assert len(set(results)) == 1
    assert len(manager.store.list_participants(running_test.id)) == 1


def test_assign_distribution_100k(base_config):
    """100,000 sessions on a 50/50 test land within 2% of each weight."""
    test = build_definition(base_config)
    test.status = TestStatus.RUNNING
    engine = AssignmentEngine(InMemoryStore(), lambda tid: test if tid == test.id else None, rng=random.Random(2024))

    counts = {"control": 0, "outcome": 0}
    for i in range(100000):
        counts[engine.assign(f"s{i}", test.id).id] += 1

    assert 48000 <= counts["control"] <= 52000
    assert 48000 <= counts["outcome"] <= 52000


def test_hash_strategy_is_deterministic(base_config):
    """Hash bucketing gives a session the same variant in independent engines."""
    config = EngineConfig(assignment_strategy="hash")
    managers = [ExperimentManager(InMemoryStore(), config=config) for _ in range(2)]
    test = managers[0].create_test(base_config)
    managers[0].start_test(test.id)
    managers[1].store.save_test(managers[0].get_test(test.id))
    managers[1].reload_active_tests()

    for i in range(50):
        a = managers[0].assign(f"visitor_{i}", test.id)
        b = managers[1].assign(f"visitor_{i}", test.id)
        assert a.id == b.id


def test_assign_requires_running_test(manager, base_config):
    """Draft, paused and unknown tests assign nobody."""
    test = manager.create_test(base_config)
    assert manager.assign("s1", test.id) is None
    assert manager.assign("s1", "abtest_missing") is None

    manager.start_test(test.id)
    manager.pause_test(test.id)
    assert manager.assign("s1", test.id) is None
    assert manager.store.list_participants(test.id) == []


def test_assign_stops_after_planned_end(manager, clock, base_config):
    base_config["schedule"] = {"end_date": (clock.now + timedelta(days=1)).isoformat()}
    test = manager.create_test(base_config)
    manager.start_test(test.id)
    assert manager.assign("early", test.id) is not None

    clock.advance(days=2)
    assert manager.assign("late", test.id) is None
    assert manager.assign("early", test.id) is None


def test_targeting_by_device(manager, base_config):
    base_config["targeting"] = {"devices": ["mobile"]}
    test = manager.create_test(base_config)
    manager.start_test(test.id)

    assert manager.assign("d1", test.id, SessionContext(device="desktop")) is None
    assert manager.assign("d2", test.id) is None
    assert manager.assign("m1", test.id, SessionContext(device="mobile")) is not None
    assert len(manager.store.list_participants(test.id)) == 1


def test_custom_targeting_rules():
    targeting = Targeting(custom_rules=[TargetingRule("returning_visitor", True), TargetingRule("plan", "pro")])
    assert is_eligible(targeting, SessionContext(returning_visitor=True, attributes={"plan": "pro"}))
    assert not is_eligible(targeting, SessionContext(returning_visitor=False, attributes={"plan": "pro"}))
    assert not is_eligible(targeting, SessionContext(returning_visitor=True, attributes={"plan": "free"}))
    # Attributes the site does not report do not exclude
    assert is_eligible(targeting, SessionContext(returning_visitor=True))
    assert not is_eligible(targeting, None)
    assert is_eligible(Targeting(), None)


def test_force_variant(manager, running_test):
    """Forcing pins new and existing sessions to the requested arm."""
    assert manager.force_variant("qa_new", running_test.id, "outcome").id == "outcome"
    assert manager.assign("qa_new", running_test.id).id == "outcome"

    current = manager.assign("qa_existing", running_test.id)
    other = "control" if current.id == "outcome" else "outcome"
    assert manager.force_variant("qa_existing", running_test.id, other).id == other
    assert manager.assign("qa_existing", running_test.id).id == other


def test_force_variant_keeps_converted_participant(manager, running_test):
    original = manager.assign("buyer", running_test.id)
    manager.record_conversion("buyer", running_test.id, "signup")
    other = "control" if original.id == "outcome" else "outcome"

    assert manager.force_variant("buyer", running_test.id, other).id == original.id
    assert manager.store.get_participant("buyer", running_test.id).variant_id == original.id


def test_force_variant_gives_up_when_participant_keeps_vanishing(manager, running_test, monkeypatch):
    """A participant purged between every insert and update ends in StorageError, not endless retries."""
    manager.assign("qa", running_test.id)
    calls = []

    def vanished(session_id, test_id, mutate):
        calls.append(session_id)
        return None, False

    monkeypatch.setattr(manager.store, "update_participant", vanished)
    with pytest.raises(StorageError):
        manager.force_variant("qa", running_test.id, "outcome")
    assert len(calls) == FORCE_ATTEMPTS


def test_force_variant_errors(manager, base_config, running_test):
    with pytest.raises(ValueError):
        manager.force_variant("s", running_test.id, "nope")
    with pytest.raises(NotFoundError):
        manager.force_variant("s", "abtest_missing", "control")

    draft = manager.create_test(base_config)
    with pytest.raises(StateError):
        manager.force_variant("s", draft.id, "control")


def test_get_session_assignments(manager, base_config, running_test):
    other = manager.start_test(manager.create_test(base_config).id)
    a = manager.assign("visitor", running_test.id)
    b = manager.assign("visitor", other.id)

    assignments = manager.get_session_assignments("visitor")
    assert set(assignments) == {running_test.id, other.id}
    assert assignments[running_test.id].variant_id == a.id
    assert assignments[other.id].variant_id == b.id
    assert manager.get_session_assignments("stranger") == {}
