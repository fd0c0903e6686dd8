"""
WheelMechanics — Data Models
==============================
Single source of truth for all dataclasses and named tuples used across
the application. No I/O — fully importable from any module including tests
and ingestion.

Classes
-------
  ParsedData      Output of ingestion.parse_flex_xml() — trades DataFrame + source id
  TradeRecord     One executed fill (immutable)
  Assignment      One inferred put assignment → stock acquisition (open or closed)
  CompletedCycle  A closed Assignment extended with performance metrics
  PortfolioStats  Aggregates over the completed cycles
  AnalysisStats   Summary counts shown alongside the analysis
  Analysis        The full snapshot — unit of export, import and merge
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Literal, NamedTuple, Optional

import pandas as pd

from config import (
    CAT_STOCK, CAT_OPTION, RIGHT_PUT, RIGHT_CALL, SIDE_BUY, SIDE_SELL,
    TRADE_COLUMNS,
)


PerformanceCategory = Literal['Excellent', 'Good', 'Profitable', 'Break-Even', 'Loss']


# ── Ingestion output ──────────────────────────────────────────────────────────

class ParsedData(NamedTuple):
    """
    Output of ingestion.parse_flex_xml() — the trades of one document.

    Fields
    ------
    df      Trades in document order (NOT date-sorted), columns = TRADE_COLUMNS.
    source  Identifier of the document (file name) the trades came from.
    """
    df:     pd.DataFrame
    source: str


def empty_trades_frame() -> pd.DataFrame:
    """A zero-row trades DataFrame with the canonical columns."""
    df = pd.DataFrame({col: pd.Series(dtype=object) for col in TRADE_COLUMNS})
    for col in ['quantity', 'price', 'proceeds', 'commission']:
        df[col] = df[col].astype(float)
    df['trade_date'] = pd.to_datetime(df['trade_date'])
    return df


def _none_if_missing(val: Any) -> Any:
    if val is None:
        return None
    if isinstance(val, float) and math.isnan(val):
        return None
    if val is pd.NaT:
        return None
    return val


# ── Trade model ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TradeRecord:
    """
    One executed fill from a trade confirmation.

    quantity    As reported; sells may carry a negative sign.
    proceeds    Signed cash flow: positive = received, negative = paid.
    trade_date  Calendar date (time dropped); None when absent or unparseable.
    put_call    'P' / 'C' for options, None for stock.
    """
    symbol:            Optional[str]
    underlying_symbol: Optional[str]
    asset_category:    Optional[str]
    buy_sell:          Optional[str]
    quantity:          float
    price:             float
    proceeds:          float
    trade_date:        Optional[pd.Timestamp]
    strike:            Optional[str]
    expiry:            Optional[str]
    put_call:          Optional[str]
    commission:        float
    source:            Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> TradeRecord:
        """Build from a DataFrame itertuples() row or a dict-like Series."""
        get = row._asdict().get if hasattr(row, '_asdict') else row.get
        return cls(**{col: _none_if_missing(get(col)) for col in TRADE_COLUMNS})

    @property
    def is_stock(self) -> bool:
        return self.asset_category == CAT_STOCK

    @property
    def is_option(self) -> bool:
        return self.asset_category == CAT_OPTION

    @property
    def is_put(self) -> bool:
        return self.is_option and self.put_call == RIGHT_PUT

    @property
    def is_call(self) -> bool:
        return self.is_option and self.put_call == RIGHT_CALL

    @property
    def is_buy(self) -> bool:
        return self.buy_sell == SIDE_BUY

    @property
    def is_sell(self) -> bool:
        return self.buy_sell == SIDE_SELL

    @property
    def identity(self) -> tuple:
        """Dedup key — see config.DEDUP_KEY."""
        return (self.symbol, self.trade_date, self.proceeds, self.buy_sell, self.quantity)


# ── Assignment / cycle models ─────────────────────────────────────────────────

@dataclass
class Assignment:
    """
    One inferred put assignment that converted a short put into shares.

    Created in mechanics.detect_assignments() from a qualifying stock buy.
    Closed (currently_held=False) when a later stock sale for the symbol is
    found. Multiple assignments per symbol are possible (repeated cycles).

    Fields
    ------
    symbol               Underlying symbol, e.g. 'AAPL'
    assignment_date      Trade date of the stock buy
    assignment_price     Price paid per share on the stock buy
    quantity             Shares acquired
    put_premiums         Sum of put-sale proceeds on or before assignment
    call_premiums        Sum of call-sale proceeds after assignment
    total_premiums       put_premiums + call_premiums
    effective_break_even assignment_price - total_premiums / quantity
    currently_held       True while no closing sale has been found
    exit_date            Closing sale date (None while held)
    exit_price           Closing sale price (None while held)
    related_puts         Put sales counted in put_premiums
    related_calls        Call sales counted in call_premiums
    put_assignments      Zero-proceeds put buys on the assignment date
    """
    symbol:               str
    assignment_date:      pd.Timestamp
    assignment_price:     float
    quantity:             float
    put_premiums:         float
    call_premiums:        float
    total_premiums:       float
    effective_break_even: float
    currently_held:       bool
    exit_date:            Optional[pd.Timestamp]
    exit_price:           Optional[float]
    related_puts:         list[TradeRecord]
    related_calls:        list[TradeRecord]
    put_assignments:      list[TradeRecord]

    @property
    def key(self) -> tuple:
        """Merge identity: (symbol, assignment_date)."""
        return (self.symbol, self.assignment_date)


@dataclass
class CompletedCycle(Assignment):
    """
    A closed Assignment with its realised performance.

    A pure projection of the Assignment — recomputed whenever the assignment
    set changes, never patched in place. Ratios are percentages; any ratio
    that would be non-finite is reported as 0.
    """
    capital_gain_loss:     float
    total_pnl:             float
    invested_capital:      float
    total_return_pct:      float
    days_duration:         int
    annualized_roi:        float
    performance_category:  PerformanceCategory
    premium_contribution:  float
    capital_contribution:  float
    premium_yield:         float
    capital_yield:         float
    daily_return:          float

    @property
    def key(self) -> tuple:
        """Merge identity: (symbol, assignment_date, exit_date)."""
        return (self.symbol, self.assignment_date, self.exit_date)


# ── Aggregates ────────────────────────────────────────────────────────────────

@dataclass
class PortfolioStats:
    """Aggregates over the completed cycles. All zero for an empty set."""
    total_completed_cycles: int   = 0
    winning_trades:         int   = 0
    losing_trades:          int   = 0
    win_rate:               float = 0.0
    total_pnl:              float = 0.0
    total_invested:         float = 0.0
    avg_return_per_trade:   float = 0.0
    avg_duration:           float = 0.0
    best_trade:             float = 0.0
    worst_trade:            float = 0.0


@dataclass
class AnalysisStats:
    total_trades:      int = 0
    total_assignments: int = 0
    current_positions: int = 0


# ── Computation output ────────────────────────────────────────────────────────

@dataclass
class Analysis:
    """
    The full computed snapshot from build_analysis() / merge_analysis().

    metadata is an open string-keyed bag (export timestamp, source files, ...)
    passed through verbatim — never interpreted by the computation.
    """
    trades:           pd.DataFrame
    assignments:      list[Assignment]
    completed_cycles: list[CompletedCycle]
    portfolio_stats:  PortfolioStats
    current_holdings: list[Assignment]
    stats:            AnalysisStats
    metadata:         dict[str, Any] = field(default_factory=dict)
