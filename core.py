"""Core data model, defaults and validation for the retirement simulator."""

from __future__ import annotations

import enum
import json
import math
import os
import re
from dataclasses import asdict, dataclass, field, replace
from typing import Mapping, Optional, Tuple

import numpy as np
from loguru import logger


# Asset classes modelled by the simulator, in the order used by every array
ASSET_CLASSES = ("equity", "bonds", "real_estate", "commodities")

# Keys used by the portfolio valuation service for the same classes
HOLDING_KEYS = {
    "equity": "equity",
    "bonds": "bonds",
    "real_estate": "realestate",
    "commodities": "commodity",
}

# Long-run market assumptions (percent per year)
DEFAULT_MARKET = {
    "equity_return": 7.0,
    "equity_volatility": 18.0,
    "bonds_return": 3.0,
    "bonds_volatility": 6.0,
    "real_estate_return": 5.0,
    "real_estate_volatility": 12.0,
    "commodities_return": 4.0,
    "commodities_volatility": 15.0,
    "inflation_rate": 2.5,
}

# Plan inputs used when nothing has been saved yet
DEFAULT_PLAN = {
    "portfolio_source": "total",
    "initial_portfolio": 1_000_000.0,
    "retirement_years": 30,
    "equity_percentage": 60.0,
    "bonds_percentage": 40.0,
    "real_estate_percentage": 0.0,
    "commodities_percentage": 0.0,
    "annual_withdrawal": 30_000.0,
    "withdrawal_adjustment": "inflation",
    "number_of_simulations": 10_000,
}

MIN_RETIREMENT_YEARS = 1
MAX_RETIREMENT_YEARS = 60
MIN_SIMULATIONS = 1_000
MAX_SIMULATIONS = 50_000
ALLOCATION_TOLERANCE = 0.01

PORTFOLIO_SOURCES = ("total", "liquid", "custom")

CONFIG_FILE = "config.json"


class ValidationError(ValueError):
    """Raised when simulation parameters are rejected before any sampling."""


class WithdrawalAdjustment(str, enum.Enum):
    NONE = "none"
    INFLATION = "inflation"

    @classmethod
    def parse(cls, value) -> "WithdrawalAdjustment":
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        # presets saved by older versions call it "fixed"
        if text == "fixed":
            return cls.NONE
        try:
            return cls(text)
        except ValueError as exc:
            raise ValueError(f"Unknown withdrawal adjustment: {value!r}") from exc


@dataclass(frozen=True)
class Allocation:
    """Target allocation across the four asset classes, in percent."""

    equity: float = 60.0
    bonds: float = 40.0
    real_estate: float = 0.0
    commodities: float = 0.0

    def total(self) -> float:
        return self.equity + self.bonds + self.real_estate + self.commodities

    def as_array(self) -> np.ndarray:
        return np.array([getattr(self, name) for name in ASSET_CLASSES], dtype=np.float64)


@dataclass(frozen=True)
class MarketAssumptions:
    """Expected return and volatility per asset class plus inflation (percent per year)."""

    equity_return: float = DEFAULT_MARKET["equity_return"]
    equity_volatility: float = DEFAULT_MARKET["equity_volatility"]
    bonds_return: float = DEFAULT_MARKET["bonds_return"]
    bonds_volatility: float = DEFAULT_MARKET["bonds_volatility"]
    real_estate_return: float = DEFAULT_MARKET["real_estate_return"]
    real_estate_volatility: float = DEFAULT_MARKET["real_estate_volatility"]
    commodities_return: float = DEFAULT_MARKET["commodities_return"]
    commodities_volatility: float = DEFAULT_MARKET["commodities_volatility"]
    inflation_rate: float = DEFAULT_MARKET["inflation_rate"]

    def returns_array(self) -> np.ndarray:
        return np.array(
            [getattr(self, f"{name}_return") for name in ASSET_CLASSES], dtype=np.float64
        )

    def volatility_array(self) -> np.ndarray:
        return np.array(
            [getattr(self, f"{name}_volatility") for name in ASSET_CLASSES], dtype=np.float64
        )


@dataclass(frozen=True)
class SimulationParameters:
    initial_portfolio: float
    retirement_years: int
    allocation: Allocation = field(default_factory=Allocation)
    annual_withdrawal: float = DEFAULT_PLAN["annual_withdrawal"]
    withdrawal_adjustment: WithdrawalAdjustment = WithdrawalAdjustment.INFLATION
    market: MarketAssumptions = field(default_factory=MarketAssumptions)
    number_of_simulations: int = DEFAULT_PLAN["number_of_simulations"]
    portfolio_source: str = "custom"

    def __post_init__(self) -> None:
        # accept plain strings from forms and saved presets
        object.__setattr__(
            self,
            "withdrawal_adjustment",
            WithdrawalAdjustment.parse(self.withdrawal_adjustment),
        )

    @property
    def inflation_rate(self) -> float:
        return self.market.inflation_rate


@dataclass(frozen=True)
class SimulationTrial:
    """One simulated trajectory; ``values[0]`` is the starting portfolio."""

    values: Tuple[float, ...]
    failure_year: Optional[int] = None

    @property
    def failed(self) -> bool:
        return self.failure_year is not None


@dataclass(frozen=True)
class PercentileBand:
    year: int
    p10: float
    p25: float
    p50: float
    p75: float
    p90: float


@dataclass(frozen=True)
class DistributionBucket:
    range_label: str
    count: int
    percentage: float
    lower: float
    upper: float


@dataclass(frozen=True)
class FailureAnalysis:
    average_failure_year: float
    median_failure_year: float


@dataclass(frozen=True)
class SimulationResults:
    success_rate: float
    success_count: int
    failure_count: int
    percentiles: Tuple[PercentileBand, ...]
    distribution: Tuple[DistributionBucket, ...]
    median_final_value: float
    failure_analysis: Optional[FailureAnalysis]
    number_of_simulations: int
    retirement_years: int

    def as_dict(self) -> dict:
        """Return a JSON-serialisable copy of the results."""
        return asdict(self)


_THOUSANDS_COMMAS = re.compile(r"[+-]?\d{1,3}(,\d{3})+")


def _normalize_number(text: str) -> str:
    """Rewrite '1,234.5', '1.234,5' or '7,5' into the plain '1234.5' form."""

    if text.count(".") > 1 or ("," in text and "." in text and text.rfind(",") > text.rfind(".")):
        # "1.000.000" and "1.234,56" are the European spellings of the same amounts
        return text.replace(".", "").replace(",", ".")
    if "." in text or _THOUSANDS_COMMAS.fullmatch(text):
        return text.replace(",", "")
    # a lone comma is a decimal comma
    return text.replace(",", ".")


def parse_percent(val: str) -> float:
    """Convert a percentage string like '7%' or '-2.5' to percentage points."""

    try:
        pct = float(_normalize_number(str(val).strip().rstrip("%").strip()))
    except ValueError as exc:  # pragma: no cover - error path simple
        raise ValueError(f"Invalid percentage: {val!r}") from exc
    if not math.isfinite(pct):
        raise ValueError(f"Invalid percentage: {val!r}")
    return pct


def parse_dollars(val: str) -> float:
    """Convert a currency string like '$1,234' or '€1.000.000' to a float."""

    text = str(val).replace("$", "").replace("€", "").replace(" ", "").strip()
    try:
        amt = float(_normalize_number(text))
    except ValueError as exc:
        raise ValueError(f"Invalid amount: {val!r}") from exc
    if not math.isfinite(amt):
        raise ValueError(f"Invalid amount: {val!r}")
    if amt < 0:
        raise ValueError("Amount cannot be negative")
    return amt


def parse_int(val: str) -> int:
    """Convert a whole-number string like ' 10,000 ' to an int."""

    try:
        return int(str(val).replace(",", "").replace("_", "").strip())
    except ValueError as exc:
        raise ValueError(f"Invalid whole number: {val!r}") from exc


def _is_whole(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, np.integer)):
        return True
    return isinstance(value, float) and value.is_integer()


def validate_parameters(params: SimulationParameters) -> None:
    """Reject parameters the engine cannot simulate.

    Raises :class:`ValidationError` with a message suitable for showing
    directly to the user. Nothing is sampled or modified.
    """
    if not math.isfinite(params.initial_portfolio) or params.initial_portfolio <= 0:
        raise ValidationError("Initial portfolio must be greater than zero")
    if not math.isfinite(params.annual_withdrawal) or params.annual_withdrawal < 0:
        raise ValidationError("Annual withdrawal cannot be negative")
    if not _is_whole(params.retirement_years) or not (
        MIN_RETIREMENT_YEARS <= params.retirement_years <= MAX_RETIREMENT_YEARS
    ):
        raise ValidationError(
            f"Retirement years must be between {MIN_RETIREMENT_YEARS} and {MAX_RETIREMENT_YEARS}"
        )

    alloc = params.allocation.as_array()
    if not np.all(np.isfinite(alloc)) or np.any(alloc < 0):
        raise ValidationError("Allocation percentages cannot be negative")
    if abs(params.allocation.total() - 100.0) > ALLOCATION_TOLERANCE:
        raise ValidationError(
            f"Allocation must sum to 100% (currently {params.allocation.total():.2f}%)"
        )

    if not _is_whole(params.number_of_simulations) or not (
        MIN_SIMULATIONS <= params.number_of_simulations <= MAX_SIMULATIONS
    ):
        raise ValidationError(
            f"Number of simulations must be between {MIN_SIMULATIONS:,} and {MAX_SIMULATIONS:,}"
        )

    if params.portfolio_source not in PORTFOLIO_SOURCES:
        raise ValidationError(f"Unknown portfolio source: {params.portfolio_source!r}")

    market = params.market
    figures = np.concatenate(
        [market.returns_array(), market.volatility_array(), [market.inflation_rate]]
    )
    if not np.all(np.isfinite(figures)):
        raise ValidationError("Market assumptions must be finite numbers")
    for name, vol in zip(ASSET_CLASSES, market.volatility_array()):
        if vol < 0:
            raise ValidationError(f"{name.replace('_', ' ').title()} volatility cannot be negative")


def allocation_from_holdings(holdings: Mapping[str, float]) -> Allocation:
    """Derive whole-number percentages from current values per asset class.

    ``holdings`` is keyed by the valuation service's class names (``equity``,
    ``bonds``, ``realestate``, ``commodity``); other classes such as cash or
    crypto are ignored. The three largest classes are rounded and the
    smallest takes the remainder so the result sums to exactly 100.
    """
    values = {name: float(holdings.get(key, 0.0) or 0.0) for name, key in HOLDING_KEYS.items()}
    total = sum(values.values())
    if total <= 0:
        return Allocation()

    ordered = sorted(ASSET_CLASSES, key=lambda name: values[name], reverse=True)
    pct = {}
    allocated = 0
    for name in ordered[:-1]:
        pct[name] = round(values[name] / total * 100)
        allocated += pct[name]
    pct[ordered[-1]] = 100 - allocated
    return Allocation(**{name: float(pct[name]) for name in ASSET_CLASSES})


def market_from_dict(data: Mapping[str, float], base: Optional[MarketAssumptions] = None) -> MarketAssumptions:
    """Overlay the known keys of ``data`` onto ``base`` (defaults when omitted)."""
    base = base or MarketAssumptions()
    known = {k: float(v) for k, v in data.items() if k in DEFAULT_MARKET}
    return replace(base, **known)


def parameters_from_config(config: Mapping) -> SimulationParameters:
    """Build parameters from a saved config, filling gaps with defaults."""
    general = config.get("general", {}) or {}
    user = {**DEFAULT_PLAN, **(config.get("user", {}) or {})}
    allocation = Allocation(
        equity=float(user["equity_percentage"]),
        bonds=float(user["bonds_percentage"]),
        real_estate=float(user["real_estate_percentage"]),
        commodities=float(user["commodities_percentage"]),
    )
    return SimulationParameters(
        initial_portfolio=float(user["initial_portfolio"]),
        retirement_years=int(user["retirement_years"]),
        allocation=allocation,
        annual_withdrawal=float(user["annual_withdrawal"]),
        withdrawal_adjustment=user["withdrawal_adjustment"],
        market=market_from_dict(general),
        number_of_simulations=int(user["number_of_simulations"]),
        portfolio_source=str(user["portfolio_source"]),
    )


def load_config(path: str = CONFIG_FILE) -> dict:
    """Load saved configuration if available."""

    if not os.path.exists(path):
        return {}
    try:
        with open(path) as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable config {}: {}", path, exc)
        return {}


def save_config(params: SimulationParameters, scenarios=None, path: str = CONFIG_FILE) -> None:
    """Persist the provided parameters (and optional scenario presets) to disk."""

    data = {
        "general": asdict(params.market),
        "user": {
            "portfolio_source": params.portfolio_source,
            "initial_portfolio": params.initial_portfolio,
            "retirement_years": params.retirement_years,
            "equity_percentage": params.allocation.equity,
            "bonds_percentage": params.allocation.bonds,
            "real_estate_percentage": params.allocation.real_estate,
            "commodities_percentage": params.allocation.commodities,
            "annual_withdrawal": params.annual_withdrawal,
            "withdrawal_adjustment": params.withdrawal_adjustment.value,
            "number_of_simulations": params.number_of_simulations,
        },
    }
    if scenarios is not None:
        data["scenarios"] = {name: asdict(market) for name, market in scenarios.items()}
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    logger.debug("Saved config to {}", path)
