import pytest

from core import (
    Allocation,
    MarketAssumptions,
    SimulationParameters,
    ValidationError,
    allocation_from_holdings,
    validate_parameters,
)
from simulation import run_simulation


def _make_params(**overrides) -> SimulationParameters:
    values = dict(
        initial_portfolio=1_000_000.0,
        retirement_years=30,
        allocation=Allocation(60.0, 40.0, 0.0, 0.0),
        annual_withdrawal=40_000.0,
        withdrawal_adjustment="inflation",
        market=MarketAssumptions(),
        number_of_simulations=1_000,
    )
    values.update(overrides)
    return SimulationParameters(**values)


class ExplodingSource:
    def next_uniform(self):
        raise AssertionError("sampled before validation")

    def uniforms(self, size):
        raise AssertionError("sampled before validation")


def test_valid_parameters_pass():
    validate_parameters(_make_params())


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"initial_portfolio": 0.0}, "Initial portfolio"),
        ({"initial_portfolio": -5.0}, "Initial portfolio"),
        ({"annual_withdrawal": -1.0}, "withdrawal"),
        ({"retirement_years": 0}, "Retirement years"),
        ({"retirement_years": 61}, "Retirement years"),
        ({"retirement_years": 2.5}, "Retirement years"),
        ({"allocation": Allocation(60.0, 39.98, 0.0, 0.0)}, "sum to 100%"),
        ({"allocation": Allocation(50.0, 30.0, 10.0, 0.0)}, "sum to 100%"),
        ({"allocation": Allocation(110.0, -10.0, 0.0, 0.0)}, "negative"),
        ({"number_of_simulations": 999}, "Number of simulations"),
        ({"number_of_simulations": 50_001}, "Number of simulations"),
        ({"market": MarketAssumptions(equity_volatility=-1.0)}, "Equity volatility"),
        ({"market": MarketAssumptions(bonds_return=float("nan"))}, "finite"),
        ({"portfolio_source": "offshore"}, "portfolio source"),
    ],
)
def test_invalid_parameters_rejected(overrides, message):
    with pytest.raises(ValidationError, match=message):
        validate_parameters(_make_params(**overrides))


@pytest.mark.parametrize(
    "overrides",
    [
        {"retirement_years": 1},
        {"retirement_years": 60},
        {"number_of_simulations": 50_000},
        {"annual_withdrawal": 0.0},
        {"allocation": Allocation(60.0, 39.995, 0.0, 0.0)},
        {"allocation": Allocation(25.0, 25.0, 25.0, 25.0)},
    ],
)
def test_boundary_parameters_accepted(overrides):
    validate_parameters(_make_params(**overrides))


def test_validation_error_is_value_error():
    assert issubclass(ValidationError, ValueError)


def test_validation_runs_before_sampling():
    params = _make_params(allocation=Allocation(70.0, 40.0, 0.0, 0.0))
    with pytest.raises(ValidationError):
        run_simulation(params, random_source=ExplodingSource())


def test_allocation_from_holdings_ignores_other_classes():
    alloc = allocation_from_holdings(
        {"equity": 600.0, "bonds": 300.0, "realestate": 100.0, "cash": 500.0, "crypto": 50.0}
    )
    assert alloc == Allocation(60.0, 30.0, 10.0, 0.0)


def test_allocation_from_holdings_remainder_to_smallest_class():
    alloc = allocation_from_holdings({"equity": 1.0, "bonds": 1.0, "realestate": 1.0})
    assert alloc == Allocation(33.0, 33.0, 33.0, 1.0)
    assert alloc.total() == 100.0


def test_allocation_from_holdings_empty_uses_default():
    assert allocation_from_holdings({}) == Allocation(60.0, 40.0, 0.0, 0.0)
