"""Monte Carlo engine: return sampling, portfolio evolution and the run driver."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

import numpy as np
from loguru import logger
from numba import njit, prange

from aggregation import aggregate
from core import (
    ASSET_CLASSES,
    SimulationParameters,
    SimulationResults,
    SimulationTrial,
    WithdrawalAdjustment,
    validate_parameters,
)
from randomness import NumpyRandomSource, RandomSource, standard_normals


# Trials evolved between two cancellation checks
DEFAULT_BATCH_SIZE = 1_000

# Marks a trial that survived the whole horizon
NO_FAILURE = -1


class SimulationCancelled(Exception):
    """Raised when a run is interrupted through its cancel event."""


class SimulationInvariantError(RuntimeError):
    """Raised when the engine produces values that cannot be right."""


@dataclass(frozen=True)
class TrialSet:
    """Raw trajectories of a run.

    ``values`` has shape ``(n_trials, retirement_years + 1)``;
    ``failure_years`` holds the failure year per trial or ``NO_FAILURE``.
    """

    values: np.ndarray
    failure_years: np.ndarray

    def __len__(self) -> int:
        return self.values.shape[0]

    def __iter__(self) -> Iterator[SimulationTrial]:
        for i in range(len(self)):
            yield self.trial(i)

    @property
    def failed(self) -> np.ndarray:
        return self.failure_years != NO_FAILURE

    def trial(self, index: int) -> SimulationTrial:
        year = int(self.failure_years[index])
        return SimulationTrial(
            values=tuple(float(v) for v in self.values[index]),
            failure_year=None if year == NO_FAILURE else year,
        )


def withdrawal_schedule(params: SimulationParameters) -> np.ndarray:
    """Gross withdrawal for years 1..N; inflation-adjusted from year 2 onwards."""
    n_years = int(params.retirement_years)
    offsets = np.arange(n_years, dtype=np.float64)
    if params.withdrawal_adjustment is WithdrawalAdjustment.INFLATION:
        return params.annual_withdrawal * (1.0 + params.inflation_rate / 100.0) ** offsets
    return np.full(n_years, float(params.annual_withdrawal))


def sample_returns(
    params: SimulationParameters, random_source: RandomSource, n_trials: int
) -> np.ndarray:
    """Annual returns in percent, shape ``(n_trials, years, n_asset_classes)``.

    Every asset class draws its own normal variate each year; classes are
    not correlated.
    """
    shape = (int(n_trials), int(params.retirement_years), len(ASSET_CLASSES))
    z = standard_normals(random_source, shape)
    market = params.market
    return market.returns_array() + z * market.volatility_array()


def initial_holdings(params: SimulationParameters):
    """Split the starting capital by allocation; returns ``(holdings, cash)``."""
    weights = params.allocation.as_array() / 100.0
    holdings = params.initial_portfolio * weights
    cash = max(0.0, params.initial_portfolio - float(holdings.sum()))
    return holdings, cash


@njit(cache=True, parallel=True)
def _evolve_trials(
    initial_portfolio: float,
    holdings0: np.ndarray,  # (n_assets,)
    cash0: float,
    returns: np.ndarray,  # (n_sims, n_years, n_assets), percent
    withdrawals: np.ndarray,  # (n_years,)
    values: np.ndarray,  # out (n_sims, n_years + 1)
    failure_years: np.ndarray,  # out (n_sims,)
) -> None:
    """Grow, withdraw and check failure for every trial, one year at a time."""
    n_sims = returns.shape[0]
    n_years = returns.shape[1]
    n_assets = returns.shape[2]

    for sim in prange(n_sims):
        holdings = holdings0.copy()
        cash = cash0
        values[sim, 0] = initial_portfolio
        failure_years[sim] = -1
        failed = False

        for t in range(1, n_years + 1):
            if failed:
                values[sim, t] = 0.0
                continue

            # Growth; a class cannot lose more than everything it holds
            total = cash
            for a in range(n_assets):
                if holdings[a] > 0.0:
                    growth = 1.0 + returns[sim, t - 1, a] / 100.0
                    if growth < 0.0:
                        growth = 0.0
                    holdings[a] *= growth
                total += holdings[a]

            remaining = total - withdrawals[t - 1]
            if remaining <= 0.0:
                failed = True
                failure_years[sim] = t
                for a in range(n_assets):
                    holdings[a] = 0.0
                cash = 0.0
                values[sim, t] = 0.0
                continue

            # Withdraw pro rata so the mix between classes is unchanged
            scale = remaining / total
            for a in range(n_assets):
                holdings[a] *= scale
            cash *= scale
            values[sim, t] = remaining


def simulate_trials(
    params: SimulationParameters,
    random_source: Optional[RandomSource] = None,
    cancel_event: Optional[threading.Event] = None,
    progress: Optional[Callable[[int, int], None]] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> TrialSet:
    """Validate ``params`` and evolve every trial.

    Trials are processed in batches of ``batch_size``; ``cancel_event`` is
    checked before each batch and ``progress(done, total)`` is called after
    it.
    """
    validate_parameters(params)
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    if random_source is None:
        random_source = NumpyRandomSource()

    n_sims = int(params.number_of_simulations)
    n_years = int(params.retirement_years)
    holdings0, cash0 = initial_holdings(params)
    withdrawals = withdrawal_schedule(params)

    values = np.empty((n_sims, n_years + 1), dtype=np.float64)
    failure_years = np.empty(n_sims, dtype=np.int64)

    logger.debug(
        "Simulating {} trials over {} years in batches of {}", n_sims, n_years, batch_size
    )
    for start in range(0, n_sims, batch_size):
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Simulation cancelled after {} of {} trials", start, n_sims)
            raise SimulationCancelled(f"Cancelled after {start} of {n_sims} trials")

        stop = min(start + batch_size, n_sims)
        returns = sample_returns(params, random_source, stop - start)
        _evolve_trials(
            float(params.initial_portfolio),
            holdings0,
            cash0,
            returns,
            withdrawals,
            values[start:stop],
            failure_years[start:stop],
        )
        if progress is not None:
            progress(stop, n_sims)

    _check_invariants(values, failure_years)
    return TrialSet(values=values, failure_years=failure_years)


def _check_invariants(values: np.ndarray, failure_years: np.ndarray) -> None:
    if not np.all(np.isfinite(values)):
        raise SimulationInvariantError("Non-finite portfolio value produced")
    if np.any(values < 0):
        raise SimulationInvariantError("Negative portfolio value recorded")
    failed = failure_years != NO_FAILURE
    years = np.arange(values.shape[1])
    after_failure = failed[:, None] & (years[None, :] >= failure_years[:, None])
    if np.any(values[after_failure] != 0.0):
        raise SimulationInvariantError("Failed trial holds value after its failure year")


def run_simulation(
    params: SimulationParameters,
    random_source: Optional[RandomSource] = None,
    cancel_event: Optional[threading.Event] = None,
    progress: Optional[Callable[[int, int], None]] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> SimulationResults:
    """Run the Monte Carlo simulation and reduce it to summary statistics."""
    trials = simulate_trials(
        params,
        random_source=random_source,
        cancel_event=cancel_event,
        progress=progress,
        batch_size=batch_size,
    )
    results = aggregate(trials.values, trials.failure_years)
    logger.info(
        "Simulation finished: {:.1f}% success over {} trials",
        results.success_rate,
        results.number_of_simulations,
    )
    return results
