"""
Website Traffic Simulator.

Drives an ExperimentManager through its public API with synthetic sessions:
each session is assigned, records a page view, and converts with the
configured probability of the variant it landed in. Useful for demos and
end-to-end checks of assignment, tracking and analysis.
"""

import logging
import random
from typing import Dict, List, Optional

import numpy as np

from .manager import ExperimentManager
from .schema import SessionContext

logger = logging.getLogger(__name__)

SIMULATOR_SEED = 42
PAGE_VIEW = "page_view"


def run_traffic_simulation(
    manager: ExperimentManager,
    test_id: str,
    n_sessions: int,
    conversion_rates: Dict[str, float],
    conversion_type: str = "signup",
    conversion_value: float = 0.0,
    devices: Optional[List[str]] = None,
    session_prefix: str = "sim",
    random_seed: int = SIMULATOR_SEED,
) -> Dict:
    """
    Simulate visitor traffic on a running test.

    Args:
        manager: Engine holding the test
        test_id: Running test to send traffic to
        n_sessions: Number of synthetic sessions
        conversion_rates: Per-variant conversion probability in [0, 1]
            (variants not listed never convert)
        conversion_type: Conversion type recorded for converters
        conversion_value: Value attached to each conversion
        devices: Device types sampled uniformly into the session context
        session_prefix: Prefix of the generated session ids
        random_seed: Random seed for reproducibility

    Returns:
        Dict with n_sessions, n_assigned, n_converted and per-variant counts
    """
    rng = np.random.default_rng(random_seed)
    devices = devices or ["desktop", "mobile", "tablet"]

    assigned: Dict[str, int] = {}
    converted: Dict[str, int] = {}
    n_skipped = 0

    for i in range(n_sessions):
        session_id = f"{session_prefix}_{i:06d}"
        context = SessionContext(device=str(rng.choice(devices)), source="organic")
        variant = manager.assign(session_id, test_id, context)
        if variant is None:
            n_skipped += 1
            continue

        assigned[variant.id] = assigned.get(variant.id, 0) + 1
        manager.track_event(session_id, test_id, PAGE_VIEW, {"path": "/"})

        p = float(np.clip(conversion_rates.get(variant.id, 0.0), 0.0, 1.0))
        if rng.random() < p:
            if manager.record_conversion(session_id, test_id, conversion_type, conversion_value):
                converted[variant.id] = converted.get(variant.id, 0) + 1

    summary = {
        "test_id": test_id,
        "n_sessions": n_sessions,
        "n_assigned": sum(assigned.values()),
        "n_skipped": n_skipped,
        "n_converted": sum(converted.values()),
        "assigned": assigned,
        "converted": converted,
        "random_seed": random_seed,
    }
    logger.info(f"Simulation complete: {summary}")
    return summary


def seeded_manager(random_seed: int = SIMULATOR_SEED, **kwargs) -> ExperimentManager:
    """ExperimentManager whose variant draws are reproducible."""
    return ExperimentManager(rng=random.Random(random_seed), **kwargs)
