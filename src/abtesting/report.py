"""
Insights, recommendations and reports for A/B tests.

Turns computed variant results into human-readable insights and
recommendations, builds the dashboard report (summary, variant performance,
timeline) and renders it as an HTML executive summary under
artifacts/experiments/<test_id>/.
"""

import json
import logging
import math
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
from jinja2 import Environment

from .config import DEFAULT_ARTIFACTS_DIR, MAX_TIMELINE_DAYS
from .schema import (
    ExperimentDefinition,
    ExperimentResults,
    Insight,
    InsightType,
    RecommendedAction,
    TestStatus,
    VariantResult,
    Winner,
    utcnow,
)
from .stats import check_srm, power_proportion

logger = logging.getLogger(__name__)


def _sample_size_insight(test: ExperimentDefinition, total: int) -> Optional[Insight]:
    required = test.schedule.min_sample_size
    if total >= required:
        return None
    return Insight(
        type=InsightType.WARNING,
        title="Insufficient sample size",
        description=f"{total} participants vs {required} required. Results may not be reliable.",
        data={"participants": total, "required": required},
    )


def _improvement_insight(test: ExperimentDefinition, results: Dict[str, VariantResult]) -> Optional[Insight]:
    control = test.control
    if control is None or control.id not in results:
        return None
    best_id, best = control.id, results[control.id]
    for variant in test.variants:
        res = results.get(variant.id)
        if res is not None and res.conversion_rate > best.conversion_rate:
            best_id, best = variant.id, res
    if best_id == control.id:
        return None
    return Insight(
        type=InsightType.SUCCESS,
        title="Improvement detected",
        description=f"The best variant shows a {best.improvement:.1f}% improvement over the control.",
        data={"improvement": best.improvement, "variant_id": best_id},
    )


def _srm_insight(test: ExperimentDefinition, results: Dict[str, VariantResult]) -> Optional[Insight]:
    observed = [results[v.id].participants if v.id in results else 0 for v in test.variants]
    weights = [v.weight for v in test.variants]
    passed, chi2, p_value = check_srm(observed, weights)
    if passed:
        return None
    return Insight(
        type=InsightType.WARNING,
        title="Sample ratio mismatch",
        description=(
            f"Observed traffic split {observed} deviates from configured weights {weights} "
            f"(p={p_value:.4f}). Check assignment and tracking before trusting results."
        ),
        data={"chi2": chi2, "p_value": p_value},
    )


def _power_insight(test: ExperimentDefinition, results: Dict[str, VariantResult]) -> Optional[Insight]:
    primary = test.primary_metric
    control = test.control
    if primary is None or control is None or primary.baseline <= 0:
        return None
    effect = abs(primary.target - primary.baseline) / primary.baseline
    arm_sizes = [results[v.id].participants for v in test.variants if v.id in results]
    n_per_arm = min(arm_sizes) if arm_sizes else 0
    if effect == 0 or n_per_arm == 0:
        return None
    power = power_proportion(primary.baseline / 100, effect, n_per_arm)
    return Insight(
        type=InsightType.INFO,
        title="Statistical power",
        description=(
            f"With {n_per_arm} participants in the smallest arm, the test has "
            f"{power * 100:.0f}% power to detect the planned {effect * 100:.0f}% relative change."
        ),
        data={"power": power, "n_per_arm": n_per_arm, "effect_relative": effect},
    )


def generate_insights(test: ExperimentDefinition, results: Dict[str, VariantResult]) -> List[Insight]:
    """Structured insights about sample size, improvement, traffic split and power."""
    total = sum(r.participants for r in results.values())
    candidates = [
        _sample_size_insight(test, total),
        _improvement_insight(test, results),
        _srm_insight(test, results),
        _power_insight(test, results),
    ]
    return [i for i in candidates if i is not None]


def generate_recommendations(
    test: ExperimentDefinition,
    results: Dict[str, VariantResult],
    winner: Optional[Winner],
) -> List[str]:
    recommendations = []

    if winner is None:
        recommendations.append("No clear winner. Analyze results by segment or extend the test.")
    elif winner.recommended_action == RecommendedAction.IMPLEMENT:
        recommendations.append(
            f"Implement the winning variant ({winner.improvement:.1f}% improvement "
            f"with {winner.confidence:.1f}% confidence)."
        )
    elif winner.recommended_action == RecommendedAction.TEST_FURTHER:
        recommendations.append("Extend the test to gather more data before deciding.")
    else:
        recommendations.append("No significant improvement detected. Consider other optimization approaches.")

    primary = test.primary_metric
    if primary is not None and results:
        avg_rate = sum(r.conversion_rate for r in results.values()) / len(results)
        if avg_rate < primary.baseline:
            recommendations.append("Overall performance is below the baseline. Revisit the test strategy.")

    return recommendations


def generate_timeline(
    test: ExperimentDefinition,
    results: ExperimentResults,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Day buckets of cumulative participants and conversions.

    Totals are spread linearly over the elapsed duration (at most
    MAX_TIMELINE_DAYS buckets); this is a reporting approximation, not a
    ledger of when participants actually arrived.
    """
    start = test.schedule.start_date
    if start is None:
        return []
    finished = test.status in (TestStatus.COMPLETED, TestStatus.ARCHIVED)
    end = test.schedule.end_date if finished and test.schedule.end_date else (now or utcnow())
    days = math.ceil((end - start).total_seconds() / 86400)
    if days <= 0:
        return []

    n_buckets = min(days, MAX_TIMELINE_DAYS)
    elapsed = np.arange(1, n_buckets + 1, dtype=np.int64)
    total_conversions = sum(r.conversions for r in results.variants.values())
    participants = elapsed * results.total_participants // days
    conversions = elapsed * total_conversions // days

    return [
        {
            "date": (start + timedelta(days=i)).date().isoformat(),
            "participants": int(participants[i]),
            "conversions": int(conversions[i]),
        }
        for i in range(n_buckets)
    ]


def build_test_report(
    test: ExperimentDefinition,
    results: ExperimentResults,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Dashboard report for a test.

    Returns:
        Dict with summary, variant_performance, timeline, insights
        (descriptions) and recommendations
    """
    winner = results.winner
    winner_variant = test.get_variant(winner.variant_id) if winner else None

    variant_performance = []
    for variant in test.variants:
        res = results.variants.get(variant.id) or VariantResult()
        variant_performance.append({
            "variant_id": variant.id,
            "name": variant.name,
            "is_control": variant.is_control,
            "participants": res.participants,
            "conversion_rate": res.conversion_rate,
            "improvement": res.improvement,
            "confidence": res.confidence,
        })

    return {
        "summary": {
            "test_name": test.name,
            "duration": results.duration,
            "participants": results.total_participants,
            "winner": winner_variant.name if winner_variant else None,
            "improvement": winner.improvement if winner else 0,
            "confidence": winner.confidence if winner else 0,
            "recommended_action": winner.recommended_action.value if winner else None,
        },
        "variant_performance": variant_performance,
        "timeline": generate_timeline(test, results, now),
        "insights": [i.description for i in results.insights],
        "recommendations": list(results.recommendations),
    }


EXEC_SUMMARY_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>A/B test summary: {{ summary.test_name }}</title>
<style>
  body { font-family: sans-serif; margin: 2em; color: #1a1a1a; }
  table { border-collapse: collapse; margin: 1em 0; }
  th, td { border: 1px solid #ccc; padding: 6px 12px; text-align: right; }
  th:first-child, td:first-child { text-align: left; }
  .winner { background: #d5f5e3; }
</style>
</head>
<body>
<h1>{{ summary.test_name }}</h1>
<p>Test id: {{ test_id }} &middot; {{ summary.duration }} days &middot; {{ summary.participants }} participants</p>
{% if summary.winner %}
<p><strong>Winner:</strong> {{ summary.winner }}
  ({{ "%.1f"|format(summary.improvement) }}% improvement, {{ "%.1f"|format(summary.confidence) }}% confidence,
  action: {{ summary.recommended_action }})</p>
{% else %}
<p><strong>No winner yet.</strong></p>
{% endif %}
<h2>Variants</h2>
<table>
  <tr><th>Variant</th><th>Participants</th><th>Conversion rate</th><th>Improvement</th><th>Confidence</th></tr>
  {% for v in variant_performance %}
  <tr{% if v.name == summary.winner %} class="winner"{% endif %}>
    <td>{{ v.name }}{% if v.is_control %} (control){% endif %}</td>
    <td>{{ v.participants }}</td>
    <td>{{ "%.2f"|format(v.conversion_rate) }}%</td>
    <td>{{ "%.1f"|format(v.improvement) }}%</td>
    <td>{{ "%.1f"|format(v.confidence) }}%</td>
  </tr>
  {% endfor %}
</table>
{% if insights %}
<h2>Insights</h2>
<ul>{% for i in insights %}<li>{{ i }}</li>{% endfor %}</ul>
{% endif %}
<h2>Recommendations</h2>
<ul>{% for r in recommendations %}<li>{{ r }}</li>{% endfor %}</ul>
</body>
</html>
"""


def render_exec_summary(
    report: Dict[str, Any],
    test_id: str,
    artifacts_dir: str = DEFAULT_ARTIFACTS_DIR,
) -> Path:
    """
    Render a report as exec_summary.html and report.json.

    Args:
        report: Output of build_test_report
        test_id: Test identifier (output sub-directory)
        artifacts_dir: Base artifacts directory

    Returns:
        Path to the HTML file
    """
    out_dir = Path(artifacts_dir) / test_id
    out_dir.mkdir(parents=True, exist_ok=True)

    env = Environment(autoescape=True)
    html = env.from_string(EXEC_SUMMARY_TEMPLATE).render(test_id=test_id, **report)

    html_path = out_dir / "exec_summary.html"
    html_path.write_text(html, encoding="utf-8")
    with open(out_dir / "report.json", "w") as f:
        json.dump(report, f, indent=2)

    logger.info(f"Executive summary written to {html_path}")
    return html_path
