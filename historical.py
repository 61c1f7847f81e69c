"""Estimate market assumptions from the user's own monthly snapshots."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Iterable, Mapping, Optional, Tuple

import pandas as pd

from core import DEFAULT_MARKET, MarketAssumptions


MIN_SNAPSHOTS = 24
MIN_MONTHLY_RETURNS = 12

# Month-over-month moves this large are deposits or sales, not performance
MAX_MONTHLY_MOVE = 50.0

# Classes tracked in snapshots and estimated here
ESTIMATED_CLASSES = ("equity", "bonds")


@dataclass(frozen=True)
class AssetClassHistory:
    mean: float
    volatility: float
    monthly_returns: Tuple[float, ...]


@dataclass(frozen=True)
class HistoricalReturns:
    equity: AssetClassHistory
    bonds: AssetClassHistory
    available_months: int
    start_date: str
    end_date: str

    def to_market(self, base: Optional[MarketAssumptions] = None) -> MarketAssumptions:
        """``base`` with equity and bond figures replaced by the estimates."""
        return replace(
            base or MarketAssumptions(),
            equity_return=self.equity.mean,
            equity_volatility=self.equity.volatility,
            bonds_return=self.bonds.mean,
            bonds_volatility=self.bonds.volatility,
        )


def snapshots_frame(snapshots: Iterable[Mapping]) -> pd.DataFrame:
    """One row per snapshot with the tracked class values, oldest first."""
    rows = []
    for snap in snapshots:
        by_class = snap.get("by_asset_class", {}) or {}
        row = {"year": int(snap["year"]), "month": int(snap["month"])}
        for name in ESTIMATED_CLASSES:
            row[name] = float(by_class.get(name, 0.0) or 0.0)
        rows.append(row)
    frame = pd.DataFrame(rows, columns=["year", "month", *ESTIMATED_CLASSES])
    return frame.sort_values(["year", "month"], kind="stable").reset_index(drop=True)


def monthly_returns(values: pd.Series) -> pd.Series:
    """Month-over-month returns in percent, skipping months without holdings."""
    prev = values.shift(1)
    returns = (values - prev) / prev * 100.0
    held = (prev != 0) & (values != 0) & prev.notna()
    returns = returns[held]
    return returns[returns.abs() < MAX_MONTHLY_MOVE]


def annualize_return(returns: pd.Series) -> float:
    if returns.empty:
        return 0.0
    return ((1.0 + returns.mean() / 100.0) ** 12 - 1.0) * 100.0


def annualize_volatility(returns: pd.Series) -> float:
    if len(returns) < 2:
        return 0.0
    return float(returns.std(ddof=0)) * math.sqrt(12)


def _class_history(returns: pd.Series, name: str) -> AssetClassHistory:
    if len(returns) >= MIN_MONTHLY_RETURNS:
        mean = annualize_return(returns)
        volatility = annualize_volatility(returns)
    else:
        mean = DEFAULT_MARKET[f"{name}_return"]
        volatility = DEFAULT_MARKET[f"{name}_volatility"]
    return AssetClassHistory(
        mean=float(mean),
        volatility=float(volatility),
        monthly_returns=tuple(float(r) for r in returns),
    )


def estimate_historical_returns(snapshots: Iterable[Mapping]) -> Optional[HistoricalReturns]:
    """Annualized equity and bond figures from monthly snapshots.

    Returns ``None`` with fewer than 24 snapshots or when neither class has
    12 usable monthly returns. A class short of data falls back to the
    default market figures.
    """
    frame = snapshots_frame(snapshots)
    if len(frame) < MIN_SNAPSHOTS:
        return None

    returns = {name: monthly_returns(frame[name]) for name in ESTIMATED_CLASSES}
    if all(len(r) < MIN_MONTHLY_RETURNS for r in returns.values()):
        return None

    first, last = frame.iloc[0], frame.iloc[-1]
    return HistoricalReturns(
        equity=_class_history(returns["equity"], "equity"),
        bonds=_class_history(returns["bonds"], "bonds"),
        available_months=len(frame),
        start_date=f"{int(first['year'])}-{int(first['month']):02d}",
        end_date=f"{int(last['year'])}-{int(last['month']):02d}",
    )
