"""Bear/base/bull comparison built from three independent engine runs."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Callable, Mapping, Optional

from loguru import logger

from core import MarketAssumptions, SimulationParameters, SimulationResults, market_from_dict
from randomness import NumpyRandomSource, RandomSource
from simulation import run_simulation


SCENARIO_NAMES = ("bear", "base", "bull")

DEFAULT_SCENARIOS = {
    "bear": MarketAssumptions(
        equity_return=4.0,
        equity_volatility=22.0,
        bonds_return=2.0,
        bonds_volatility=7.0,
        real_estate_return=3.0,
        real_estate_volatility=15.0,
        commodities_return=2.0,
        commodities_volatility=18.0,
        inflation_rate=3.5,
    ),
    "base": MarketAssumptions(),
    "bull": MarketAssumptions(
        equity_return=9.0,
        equity_volatility=16.0,
        bonds_return=4.0,
        bonds_volatility=5.0,
        real_estate_return=7.0,
        real_estate_volatility=10.0,
        commodities_return=5.0,
        commodities_volatility=14.0,
        inflation_rate=2.0,
    ),
}


@dataclass(frozen=True)
class ScenarioComparison:
    bear: SimulationResults
    base: SimulationResults
    bull: SimulationResults

    def items(self):
        return [(name, getattr(self, name)) for name in SCENARIO_NAMES]


def shifted_scenarios(
    base: MarketAssumptions, return_delta: float = 2.0, inflation_delta: float = 1.0
) -> dict:
    """Derive bear and bull by moving every expected return and inflation.

    Bear lowers returns by ``return_delta`` and raises inflation by
    ``inflation_delta``; bull does the opposite. Volatilities are kept.
    """
    def shift(sign: float) -> MarketAssumptions:
        return replace(
            base,
            equity_return=base.equity_return + sign * return_delta,
            bonds_return=base.bonds_return + sign * return_delta,
            real_estate_return=base.real_estate_return + sign * return_delta,
            commodities_return=base.commodities_return + sign * return_delta,
            inflation_rate=base.inflation_rate - sign * inflation_delta,
        )

    return {"bear": shift(-1.0), "base": base, "bull": shift(1.0)}


def scenarios_from_config(config: Mapping) -> dict:
    """Saved scenario presets overlaid on the defaults."""
    saved = config.get("scenarios", {}) or {}
    return {
        name: market_from_dict(saved.get(name, {}) or {}, DEFAULT_SCENARIOS[name])
        for name in SCENARIO_NAMES
    }


def build_scenario_parameters(
    params: SimulationParameters, market: MarketAssumptions
) -> SimulationParameters:
    """Plan inputs of ``params`` with the market assumptions of a scenario."""
    return replace(params, market=market)


def run_scenario_comparison(
    params: SimulationParameters,
    scenarios: Optional[Mapping[str, MarketAssumptions]] = None,
    random_source: Optional[RandomSource] = None,
    cancel_event: Optional[threading.Event] = None,
    progress: Optional[Callable[[int, int], None]] = None,
) -> ScenarioComparison:
    """Run the engine once per scenario with the same plan inputs.

    ``progress(done, total)`` counts trials across all three runs.
    """
    scenarios = scenarios or DEFAULT_SCENARIOS
    missing = [name for name in SCENARIO_NAMES if name not in scenarios]
    if missing:
        raise ValueError(f"Missing scenarios: {', '.join(missing)}")
    if random_source is None:
        random_source = NumpyRandomSource()

    results = {}
    for index, name in enumerate(SCENARIO_NAMES):
        logger.debug("Running {} scenario", name)
        step = None
        if progress is not None:
            def step(done, total, offset=index):
                progress(offset * total + done, total * len(SCENARIO_NAMES))
        results[name] = run_simulation(
            build_scenario_parameters(params, scenarios[name]),
            random_source=random_source,
            cancel_event=cancel_event,
            progress=step,
        )
    return ScenarioComparison(**results)
