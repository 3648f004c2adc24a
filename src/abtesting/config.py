"""
Engine configuration.

Module-level defaults plus an EngineConfig dataclass that can be overridden
from ABTEST_* environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_STORE_DIR = "data/experiments"
DEFAULT_ARTIFACTS_DIR = "artifacts/experiments"
DEFAULT_DB_NAME = "abtesting.db"

# Sample-size planning: alpha = 0.05 (two-sided), power = 0.8
Z_ALPHA = 1.96
Z_BETA = 0.84
DEFAULT_MIN_SAMPLE_SIZE = 1000

WEIGHT_TOLERANCE = 0.01
MAX_CONFIDENCE = 95.0
SIGNIFICANCE_CONFIDENCE = 95.0
IMPLEMENT_CONFIDENCE = 95.0
IMPLEMENT_IMPROVEMENT = 10.0
TEST_FURTHER_CONFIDENCE = 80.0
TEST_FURTHER_IMPROVEMENT = 5.0
SRM_ALPHA = 0.01

MAX_TIMELINE_DAYS = 30

ASSIGNMENT_RANDOM = "random"
ASSIGNMENT_HASH = "hash"


@dataclass
class EngineConfig:
    """Runtime settings for an ExperimentManager and its store."""
    storage_timeout: float = 2.0  # seconds
    session_timeout_hours: float = 24 * 30
    assignment_strategy: str = ASSIGNMENT_RANDOM
    store_dir: str = DEFAULT_STORE_DIR
    artifacts_dir: str = DEFAULT_ARTIFACTS_DIR
    db_path: Optional[str] = None

    def __post_init__(self):
        if self.assignment_strategy not in (ASSIGNMENT_RANDOM, ASSIGNMENT_HASH):
            raise ValueError(f"Unknown assignment strategy: {self.assignment_strategy}")
        if self.storage_timeout <= 0:
            raise ValueError("storage_timeout must be positive")

    @property
    def resolved_db_path(self) -> str:
        return self.db_path or os.path.join(self.store_dir, DEFAULT_DB_NAME)

    @property
    def session_timeout_seconds(self) -> float:
        return self.session_timeout_hours * 3600

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from ABTEST_* environment variables, falling back to defaults."""
        defaults = cls()
        return cls(
            storage_timeout=float(os.environ.get("ABTEST_STORAGE_TIMEOUT", defaults.storage_timeout)),
            session_timeout_hours=float(
                os.environ.get("ABTEST_SESSION_TIMEOUT_HOURS", defaults.session_timeout_hours)
            ),
            assignment_strategy=os.environ.get("ABTEST_ASSIGNMENT_STRATEGY", defaults.assignment_strategy),
            store_dir=os.environ.get("ABTEST_STORE_DIR", defaults.store_dir),
            artifacts_dir=os.environ.get("ABTEST_ARTIFACTS_DIR", defaults.artifacts_dir),
            db_path=os.environ.get("ABTEST_DB") or None,
        )
