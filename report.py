"""Plain-text rendering of simulation results."""

from __future__ import annotations

from core import SimulationResults


CURRENCY_SYMBOL = "€"

# (minimum success rate, label, advice), best first
SUCCESS_RATINGS = [
    (95.0, "Excellent", "Your plan is very safe."),
    (90.0, "Very good", "Your plan has a high probability of success."),
    (80.0, "Good", "Consider a larger portfolio or smaller withdrawals."),
    (70.0, "Moderate", "Adjust the parameters for more safety."),
    (float("-inf"), "At risk", "Your plan has a high probability of running out of money."),
]


def format_currency_compact(value: float, symbol: str = CURRENCY_SYMBOL) -> str:
    """Format an amount as e.g. '€950k' or '€1.2M'."""
    sign = "-" if value < 0 else ""
    amount = abs(value)
    if amount >= 1_000_000:
        text = f"{amount / 1_000_000:.1f}M"
    elif amount >= 1_000:
        text = f"{amount / 1_000:.0f}k"
    else:
        text = f"{amount:.0f}"
    return f"{sign}{symbol}{text}"


def success_rating(rate: float):
    """Return ``(label, advice)`` for a success rate in percent."""
    for threshold, label, advice in SUCCESS_RATINGS:
        if rate >= threshold:
            return label, advice
    raise ValueError(f"Invalid success rate: {rate!r}")  # pragma: no cover - NaN only


def format_summary(results: SimulationResults) -> str:
    label, advice = success_rating(results.success_rate)
    lines = [
        f"Success rate: {results.success_rate:.1f}% "
        f"({results.success_count:,} of {results.number_of_simulations:,} trials)",
        f"{label}: {advice}",
        f"Median final value: {format_currency_compact(results.median_final_value)}",
    ]
    fa = results.failure_analysis
    if fa is not None:
        lines.append(
            f"Failed trials ran out in year {fa.average_failure_year:.1f} on average "
            f"(median {fa.median_failure_year:g})"
        )
    return "\n".join(lines)


def format_percentile_table(results: SimulationResults, step: int = 5) -> str:
    """Percentile bands every ``step`` years, always including the last year."""
    if step < 1:
        raise ValueError("step must be positive")
    header = f"{'Year':>4}  " + "  ".join(f"{name:>8}" for name in ("P10", "P25", "P50", "P75", "P90"))
    rows = [header]
    last = len(results.percentiles) - 1
    for band in results.percentiles:
        if band.year % step and band.year != last:
            continue
        cells = (band.p10, band.p25, band.p50, band.p75, band.p90)
        rows.append(
            f"{band.year:>4}  " + "  ".join(f"{format_currency_compact(c):>8}" for c in cells)
        )
    return "\n".join(rows)


def format_distribution(results: SimulationResults, width: int = 30) -> str:
    """Horizontal bar chart of the final-value histogram."""
    peak = max((b.count for b in results.distribution), default=0)
    label_width = max((len(b.range_label) for b in results.distribution), default=0)
    rows = []
    for bucket in results.distribution:
        bar = "#" * (round(bucket.count / peak * width) if peak else 0)
        rows.append(
            f"{bucket.range_label:<{label_width}}  {bar:<{width}}  "
            f"{bucket.count:>6,} ({bucket.percentage:.1f}%)"
        )
    return "\n".join(rows)


def format_scenario_comparison(comparison) -> str:
    """Side-by-side summary of named results (``comparison.items()``)."""
    rows = [f"{'Scenario':<8}  {'Success':>8}  {'Median':>8}  {'P10':>8}  {'P90':>8}"]
    for name, results in comparison.items():
        final = results.percentiles[-1]
        rows.append(
            f"{name.title():<8}  {results.success_rate:>7.1f}%  "
            f"{format_currency_compact(results.median_final_value):>8}  "
            f"{format_currency_compact(final.p10):>8}  {format_currency_compact(final.p90):>8}"
        )
    return "\n".join(rows)
