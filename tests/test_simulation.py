import threading
from dataclasses import replace

import numpy as np
import pytest

from core import Allocation, MarketAssumptions, SimulationParameters, SimulationTrial
from randomness import NumpyRandomSource
from simulation import (
    SimulationCancelled,
    initial_holdings,
    run_simulation,
    simulate_trials,
    withdrawal_schedule,
)


FLAT_MARKET = MarketAssumptions(
    equity_return=0.0,
    equity_volatility=0.0,
    bonds_return=0.0,
    bonds_volatility=0.0,
    real_estate_return=0.0,
    real_estate_volatility=0.0,
    commodities_return=0.0,
    commodities_volatility=0.0,
    inflation_rate=0.0,
)


def _make_params(**overrides) -> SimulationParameters:
    values = dict(
        initial_portfolio=1_000_000.0,
        retirement_years=30,
        allocation=Allocation(60.0, 40.0, 0.0, 0.0),
        annual_withdrawal=40_000.0,
        withdrawal_adjustment="inflation",
        market=MarketAssumptions(
            equity_return=7.0,
            equity_volatility=18.0,
            bonds_return=3.0,
            bonds_volatility=6.0,
            inflation_rate=2.0,
        ),
        number_of_simulations=1_000,
    )
    values.update(overrides)
    return SimulationParameters(**values)


def test_withdrawal_schedule_fixed():
    params = _make_params(retirement_years=3, withdrawal_adjustment="none")
    assert withdrawal_schedule(params).tolist() == [40_000.0, 40_000.0, 40_000.0]


def test_withdrawal_schedule_grows_with_inflation_from_year_two():
    params = _make_params(retirement_years=3)
    assert withdrawal_schedule(params).tolist() == pytest.approx([40_000.0, 40_800.0, 41_616.0])


def test_initial_holdings_split_by_allocation():
    params = _make_params(allocation=Allocation(50.0, 30.0, 20.0, 0.0))
    holdings, cash = initial_holdings(params)
    assert holdings.tolist() == pytest.approx([500_000.0, 300_000.0, 200_000.0, 0.0])
    assert cash == pytest.approx(0.0)


def test_zero_volatility_growth_matches_hand_calculation():
    market = MarketAssumptions(
        equity_return=5.0, equity_volatility=0.0, bonds_volatility=0.0,
        real_estate_volatility=0.0, commodities_volatility=0.0,
    )
    params = _make_params(
        initial_portfolio=1_000.0,
        retirement_years=3,
        allocation=Allocation(100.0, 0.0, 0.0, 0.0),
        annual_withdrawal=50.0,
        withdrawal_adjustment="none",
        market=market,
    )
    trials = simulate_trials(params, NumpyRandomSource(1))
    assert trials.values[0].tolist() == pytest.approx([1_000.0, 1_000.0, 1_000.0, 1_000.0])
    assert not trials.failed.any()


def test_zero_volatility_trials_are_identical():
    market = MarketAssumptions(
        equity_volatility=0.0, bonds_volatility=0.0,
        real_estate_volatility=0.0, commodities_volatility=0.0,
    )
    params = _make_params(
        allocation=Allocation(40.0, 30.0, 20.0, 10.0), market=market
    )
    results = run_simulation(params, NumpyRandomSource(5))
    for band in results.percentiles:
        assert band.p10 == band.p50 == band.p90
    assert results.success_rate in (0.0, 100.0)


def test_depletion_marks_failure_year_and_holds_zero():
    params = _make_params(
        initial_portfolio=100_000.0,
        retirement_years=6,
        annual_withdrawal=30_000.0,
        withdrawal_adjustment="none",
        market=FLAT_MARKET,
    )
    trials = simulate_trials(params, NumpyRandomSource(1))
    trial = trials.trial(0)
    assert isinstance(trial, SimulationTrial)
    assert trial.failure_year == 4
    assert trial.values == pytest.approx((100_000.0, 70_000.0, 40_000.0, 10_000.0, 0.0, 0.0, 0.0))
    results = run_simulation(params, NumpyRandomSource(1))
    assert results.success_rate == 0.0
    assert results.failure_count == 1_000
    assert results.failure_analysis.average_failure_year == pytest.approx(4.0)
    assert results.failure_analysis.median_failure_year == pytest.approx(4.0)


def test_inflation_adjusted_withdrawal_depletes_sooner():
    market = replace(FLAT_MARKET, inflation_rate=10.0)
    params = _make_params(
        initial_portfolio=100_000.0,
        retirement_years=10,
        annual_withdrawal=10_000.0,
        market=market,
    )
    trial = simulate_trials(params, NumpyRandomSource(1)).trial(0)
    # withdrawals 10,000 / 11,000 / 12,100 ... exhaust the capital in year 8
    assert trial.failure_year == 8
    assert trial.values[7] == pytest.approx(100_000.0 - 94_871.71)


def test_zero_withdrawal_always_succeeds():
    params = _make_params(annual_withdrawal=0.0, retirement_years=40)
    results = run_simulation(params, NumpyRandomSource(11))
    assert results.success_rate == 100.0
    assert results.failure_analysis is None


def test_counts_percentiles_and_distribution_are_consistent():
    params = _make_params(
        annual_withdrawal=70_000.0, retirement_years=25, number_of_simulations=2_000
    )
    results = run_simulation(params, NumpyRandomSource(42))

    assert results.success_count + results.failure_count == 2_000
    assert results.success_rate == pytest.approx(results.success_count / 20.0)
    assert len(results.percentiles) == 26
    for band in results.percentiles:
        assert band.p10 <= band.p25 <= band.p50 <= band.p75 <= band.p90
    assert sum(b.count for b in results.distribution) == 2_000
    assert results.distribution[0].count == results.failure_count
    assert results.median_final_value == results.percentiles[-1].p50
    assert results.percentiles[0].p50 == pytest.approx(1_000_000.0)


def test_failed_trials_never_recover():
    params = _make_params(annual_withdrawal=80_000.0, number_of_simulations=2_000)
    trials = simulate_trials(params, NumpyRandomSource(9))

    assert trials.failed.any()
    assert (trials.values >= 0).all()
    for trial in trials:
        if trial.failed:
            assert trial.failure_year >= 1
            assert all(v == 0.0 for v in trial.values[trial.failure_year:])
            assert all(v > 0.0 for v in trial.values[:trial.failure_year])
        assert len(trial.values) == 31


def test_four_percent_rule_success_band():
    params = _make_params(number_of_simulations=10_000)
    results = run_simulation(params, NumpyRandomSource(2024))
    # 60/40 at 4% with these assumptions lands near 71%
    assert results.success_rate == pytest.approx(71.43, abs=0.01)
    assert 55.0 <= results.success_rate <= 95.0
    assert results.failure_analysis is not None
    assert 1.0 <= results.failure_analysis.average_failure_year <= 30.0


def test_whole_float_years_run():
    params = _make_params(retirement_years=30.0, number_of_simulations=500)
    results = run_simulation(params, NumpyRandomSource(1))
    assert len(results.percentiles) == 31
    assert results.retirement_years == 30
    assert len(withdrawal_schedule(params)) == 30


def test_same_seed_gives_identical_results():
    params = _make_params(annual_withdrawal=60_000.0)
    first = run_simulation(params, NumpyRandomSource(123))
    second = run_simulation(params, NumpyRandomSource(123))
    assert first == second
    assert first.as_dict() == second.as_dict()


def test_batch_size_does_not_change_results():
    params = _make_params(number_of_simulations=3_000)
    a = simulate_trials(params, NumpyRandomSource(8), batch_size=1_000)
    b = simulate_trials(params, NumpyRandomSource(8), batch_size=250)
    assert np.array_equal(a.values, b.values)
    assert np.array_equal(a.failure_years, b.failure_years)


def test_progress_reported_per_batch():
    calls = []
    params = _make_params(number_of_simulations=2_500, retirement_years=5)
    run_simulation(
        params,
        NumpyRandomSource(1),
        progress=lambda done, total: calls.append((done, total)),
        batch_size=1_000,
    )
    assert calls == [(1_000, 2_500), (2_000, 2_500), (2_500, 2_500)]


def test_cancel_before_start():
    event = threading.Event()
    event.set()
    with pytest.raises(SimulationCancelled):
        run_simulation(_make_params(), NumpyRandomSource(1), cancel_event=event)


def test_cancel_between_batches():
    event = threading.Event()
    calls = []

    def progress(done, total):
        calls.append(done)
        event.set()

    params = _make_params(number_of_simulations=3_000, retirement_years=5)
    with pytest.raises(SimulationCancelled):
        run_simulation(params, NumpyRandomSource(1), cancel_event=event, progress=progress)
    assert calls == [1_000]


def test_scalar_only_random_source():
    class ScalarSource:
        def __init__(self):
            self._rng = np.random.default_rng(4)

        def next_uniform(self):
            return float(self._rng.random())

    params = _make_params(retirement_years=2)
    results = run_simulation(params, ScalarSource())
    assert results.success_count + results.failure_count == 1_000
