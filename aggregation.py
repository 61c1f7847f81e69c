"""Reduce raw Monte Carlo trajectories to summary statistics."""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np

from core import DistributionBucket, FailureAnalysis, PercentileBand, SimulationResults
from report import CURRENCY_SYMBOL, format_currency_compact


PERCENTILES = (10, 25, 50, 75, 90)

# Equal-width bins for surviving outcomes; depleted trials get their own bucket
DISTRIBUTION_BINS = 10


def yearly_percentiles(values: np.ndarray) -> Tuple[PercentileBand, ...]:
    """Cross-sectional p10/p25/p50/p75/p90 for every year.

    Uses linear interpolation between the bracketing order statistics
    (``index = p/100 * (n - 1)``).
    """
    pct = np.percentile(values, PERCENTILES, axis=0, method="linear")
    # keep bands ordered even where interpolation rounds differently
    pct = np.maximum.accumulate(pct, axis=0)
    return tuple(
        PercentileBand(year, *(float(x) for x in pct[:, year]))
        for year in range(values.shape[1])
    )


def final_value_distribution(
    final_values: np.ndarray, bins: int = DISTRIBUTION_BINS
) -> Tuple[DistributionBucket, ...]:
    """Histogram of final values with a leading bucket for depleted trials."""
    n = final_values.size
    depleted = final_values <= 0.0
    n_depleted = int(depleted.sum())
    buckets = [
        DistributionBucket(
            range_label=f"{CURRENCY_SYMBOL}0",
            count=n_depleted,
            percentage=n_depleted / n * 100.0,
            lower=0.0,
            upper=0.0,
        )
    ]

    survivors = final_values[~depleted]
    if survivors.size == 0:
        return tuple(buckets)

    low, high = float(survivors.min()), float(survivors.max())
    if high == low:
        counts, edges = np.array([survivors.size]), np.array([low, high])
    else:
        counts, edges = np.histogram(survivors, bins=bins, range=(low, high))

    for count, lower, upper in zip(counts, edges[:-1], edges[1:]):
        buckets.append(
            DistributionBucket(
                range_label=f"{format_currency_compact(lower)}-{format_currency_compact(upper)}",
                count=int(count),
                percentage=int(count) / n * 100.0,
                lower=float(lower),
                upper=float(upper),
            )
        )
    return tuple(buckets)


def failure_analysis(failure_years: np.ndarray) -> Optional[FailureAnalysis]:
    """Mean and median failure year over failed trials; None if none failed."""
    years = failure_years[failure_years >= 1]
    if years.size == 0:
        return None
    return FailureAnalysis(
        average_failure_year=float(years.mean()),
        median_failure_year=float(np.median(years)),
    )


def aggregate(values: np.ndarray, failure_years: np.ndarray) -> SimulationResults:
    """Build :class:`SimulationResults` from a run's trajectories.

    ``values`` is ``(n_trials, years + 1)``; ``failure_years`` holds the
    failure year of each trial or a negative number for survivors.
    """
    n_sims, n_points = values.shape
    failure_count = int(np.count_nonzero(failure_years >= 1))
    success_count = n_sims - failure_count

    percentiles = yearly_percentiles(values)
    return SimulationResults(
        success_rate=success_count / n_sims * 100.0,
        success_count=success_count,
        failure_count=failure_count,
        percentiles=percentiles,
        distribution=final_value_distribution(values[:, -1]),
        median_final_value=percentiles[-1].p50,
        failure_analysis=failure_analysis(failure_years),
        number_of_simulations=n_sims,
        retirement_years=n_points - 1,
    )
