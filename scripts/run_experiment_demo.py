#!/usr/bin/env python3
"""
Run full A/B test demo: create -> start -> simulate traffic -> stop -> report.

Persists the test in data/experiments/abtesting.db and writes
artifacts/experiments/<id>/exec_summary.html and report.json.
"""

import logging
import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

DEMO_TEST = {
    "name": "Homepage hero CTA",
    "technique_id": "demo_technique",
    "description": "Hero call-to-action wording on the landing page",
    "hypothesis": "An outcome-focused CTA increases bootcamp signups",
    "variants": [
        {
            "id": "control",
            "name": "Start learning",
            "weight": 50,
            "is_control": True,
            "changes": [{"selector": ".hero .cta", "modifications": {"text": "Start learning"}}],
        },
        {
            "id": "outcome_cta",
            "name": "Get hired faster",
            "weight": 50,
            "changes": [
                {"selector": ".hero .cta", "modifications": {"text": "Get hired faster", "color": "#e4572e"}}
            ],
        },
    ],
    "metrics": [
        {
            "id": "signup",
            "name": "Bootcamp signup",
            "type": "conversion",
            "goal": "increase",
            "baseline": 10,
            "target": 15,
            "is_primary": True,
        }
    ],
}


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    from src.abtesting import EngineConfig, SQLiteStore
    from src.abtesting.simulate import run_traffic_simulation, seeded_manager

    config = EngineConfig(
        store_dir=str(ROOT / "data" / "experiments"),
        artifacts_dir=str(ROOT / "artifacts" / "experiments"),
    )
    store = SQLiteStore(config.resolved_db_path, timeout=config.storage_timeout)
    manager = seeded_manager(store=store, config=config)

    print("1. Creating and starting test...")
    test = manager.create_test(DEMO_TEST)
    manager.start_test(test.id)
    print(f"   {test.id}: needs {test.schedule.min_sample_size} participants per variant")

    print("2. Simulating traffic...")
    summary = run_traffic_simulation(
        manager,
        test.id,
        n_sessions=3000,
        conversion_rates={"control": 0.10, "outcome_cta": 0.14},
        conversion_type="bootcamp_signup",
    )
    print(f"   Assigned: {summary['assigned']}, converted: {summary['converted']}")

    print("3. Stopping test and computing results...")
    results = manager.stop_test(test.id)
    if results.winner:
        w = results.winner
        print(f"   Winner: {w.variant_id} (+{w.improvement:.1f}%, {w.confidence:.0f}% confidence, {w.recommended_action.value})")
    else:
        print("   No winner")

    print("4. Generating executive summary...")
    out_path = manager.render_test_report(test.id)

    print(f"\n[OK] Demo complete. Artifacts in {out_path.parent}:")
    for f in sorted(out_path.parent.iterdir()):
        print(f"   - {f.name}")


if __name__ == "__main__":
    main()
