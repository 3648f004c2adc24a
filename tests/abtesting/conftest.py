"""Shared fixtures: stores, a controllable clock and a ready-made test config."""
import random
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.abtesting.manager import ExperimentManager
from src.abtesting.storage import InMemoryStore, SQLiteStore

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def base_config():
    """50/50 hero CTA test on a 10% -> 15% signup metric."""
    return {
        "name": "Hero CTA",
        "technique_id": "tech_landing",
        "hypothesis": "Outcome-focused copy lifts signups",
        "variants": [
            {"id": "control", "name": "Start learning", "weight": 50, "is_control": True},
            {
                "id": "outcome",
                "name": "Get hired faster",
                "weight": 50,
                "changes": [{"selector": ".hero .cta", "modifications": {"text": "Get hired faster"}}],
            },
        ],
        "metrics": [
            {
                "id": "signup",
                "name": "Signup",
                "type": "conversion",
                "goal": "increase",
                "baseline": 10,
                "target": 15,
                "is_primary": True,
            }
        ],
    }


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, temp_dir):
    """Each store backend in turn."""
    if request.param == "memory":
        return InMemoryStore()
    return SQLiteStore(str(Path(temp_dir) / "store.db"), timeout=5.0)


@pytest.fixture
def manager(store, clock):
    return ExperimentManager(store, rng=random.Random(7), clock=clock)


@pytest.fixture
def running_test(manager, base_config):
    test = manager.create_test(base_config)
    return manager.start_test(test.id)


@pytest.fixture
def temp_dir():
    """Temporary directory for databases and artifacts."""
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)
