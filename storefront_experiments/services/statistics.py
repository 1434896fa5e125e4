"""Frequentist analysis of experiment results.

Everything here is a pure function of its inputs: no I/O and no shared state.

The winner rule tests the best variant against every other variant at the
same alpha with no multiple-comparisons correction, so with many arms the
family-wise false-positive rate is higher than alpha.
"""

import math
from typing import Optional, Tuple

from scipy.stats import norm

from storefront_experiments.models.schemas.results import (
    ExperimentResults,
    RecommendedAction,
    VariantMetrics,
)

Z_SCORES = {
    90: 1.645,
    95: 1.96,
    99: 2.576,
}
DEFAULT_Z_SCORE = 1.96

# Engine floor: every variant needs this many impressions before a winner is called.
# Independent of Experiment.min_sample_size.
MIN_IMPRESSIONS = 1000
STOP_IMPRESSIONS = 10000
SIGNIFICANCE_ALPHA = 0.05


def get_z_score(confidence_level: int) -> float:
    return Z_SCORES.get(confidence_level, DEFAULT_Z_SCORE)


def calculate_statistical_significance(
    variant_a: VariantMetrics, variant_b: VariantMetrics
) -> float:
    """
    Two-tailed p-value of a two-proportion z-test between two variants.

    Returns 1.0 (no evidence of a difference) when either variant has no
    impressions or the pooled standard error is zero.
    """
    n1 = variant_a.impressions
    n2 = variant_b.impressions
    p1 = variant_a.conversion_rate
    p2 = variant_b.conversion_rate

    if n1 == 0 or n2 == 0:
        return 1.0

    pooled_p = (p1 * n1 + p2 * n2) / (n1 + n2)
    variance = max(0.0, pooled_p * (1 - pooled_p) * (1 / n1 + 1 / n2))
    standard_error = math.sqrt(variance)

    if standard_error == 0:
        return 1.0

    z_score = (p1 - p2) / standard_error
    # sf(x) == 1 - cdf(x), without the cancellation in the far tail
    return float(2 * norm.sf(abs(z_score)))


def calculate_confidence_interval(
    conversions: int, impressions: int, confidence_level: int
) -> Tuple[float, float]:
    """Wald interval for a conversion rate, clamped to [0, 1]."""
    if impressions == 0:
        return (0.0, 0.0)

    p = conversions / impressions
    z = get_z_score(confidence_level)
    standard_error = math.sqrt(max(0.0, p * (1 - p)) / impressions)

    lower = max(0.0, p - z * standard_error)
    upper = min(1.0, p + z * standard_error)

    return (lower, upper)


def build_variant_metrics(
    variant_id: str,
    impressions: int,
    conversions: int,
    revenue: float = 0.0,
    orders: int = 0,
    confidence_level: int = 95,
) -> VariantMetrics:
    return VariantMetrics(
        variant_id=variant_id,
        impressions=impressions,
        conversions=conversions,
        conversion_rate=conversions / impressions if impressions else 0.0,
        revenue=revenue,
        average_order_value=revenue / orders if orders else 0.0,
        confidence_interval=calculate_confidence_interval(
            conversions, impressions, confidence_level
        ),
    )


def _best_variant(results: ExperimentResults) -> Optional[VariantMetrics]:
    variants = list(results.variant_results.values())
    if not variants:
        return None
    # max() keeps the first variant on ties
    return max(variants, key=lambda v: v.conversion_rate)


def determine_winner(
    results: ExperimentResults,
    min_impressions: int = MIN_IMPRESSIONS,
    alpha: float = SIGNIFICANCE_ALPHA,
) -> Optional[str]:
    """
    Returns the id of the winning variant, or None.

    The best performer wins only when every variant has reached
    ``min_impressions`` and the best is significant against each of the
    other variants.
    """
    variants = list(results.variant_results.values())

    if len(variants) < 2:
        return None

    if any(v.impressions < min_impressions for v in variants):
        return None

    best = _best_variant(results)

    is_significant = all(
        calculate_statistical_significance(best, v) < alpha
        for v in variants
        if v.variant_id != best.variant_id
    )

    return best.variant_id if is_significant else None


def experiment_significance(results: ExperimentResults) -> float:
    """p-value of the best variant against its nearest competitor."""
    ranked = sorted(
        results.variant_results.values(), key=lambda v: v.conversion_rate, reverse=True
    )
    if len(ranked) < 2:
        return 1.0
    return calculate_statistical_significance(ranked[0], ranked[1])


def get_recommended_action(
    results: ExperimentResults,
    min_impressions: int = MIN_IMPRESSIONS,
    stop_impressions: int = STOP_IMPRESSIONS,
    alpha: float = SIGNIFICANCE_ALPHA,
) -> RecommendedAction:
    if determine_winner(results, min_impressions=min_impressions, alpha=alpha) is not None:
        return RecommendedAction.DECLARE_WINNER

    max_impressions = max(
        (v.impressions for v in results.variant_results.values()), default=0
    )

    # Plenty of data and still no winner: likely a true near-tie
    if max_impressions > stop_impressions:
        return RecommendedAction.STOP

    return RecommendedAction.CONTINUE
