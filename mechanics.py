"""
WheelMechanics — Pure Math / Analytics Engine
===============================================
All computation that transforms parsed trade DataFrames into assignments,
completed wheel cycles and portfolio figures. No I/O — fully importable and
testable on its own.

Public API
----------
  dedup_trades(df)                          → DataFrame
  detect_assignments(df)                    → list[Assignment]
  compute_cycle(assignment)                 → CompletedCycle
  analyze_completed_cycles(assignments)     → list[CompletedCycle]
  compute_portfolio_stats(cycles)           → PortfolioStats
  build_analysis(df, metadata)              → Analysis

Assignment heuristics (also importable and testable)
  is_qualifying_stock_buy(df)               → bool Series
  symbol_group(df, symbol)                  → DataFrame
  is_put_sale_before(group, date)           → bool Series
  is_put_assignment_leg(group, date)        → bool Series
  is_call_sale_after(group, date)           → bool Series
  is_stock_sale_after(group, date)          → bool Series
  classify_performance(total_pnl, invested) → str

Every pipeline function takes an optional `log` (anything with
debug/info/warning/error); the module logger is used when omitted.
"""

from __future__ import annotations

import logging
import math
from dataclasses import fields
from typing import Any, Optional

import pandas as pd

from config import (
    DEDUP_KEY,
    SIDE_BUY, SIDE_SELL,
    EXCELLENT_THRESHOLD, GOOD_THRESHOLD,
    PERF_EXCELLENT, PERF_GOOD, PERF_PROFITABLE, PERF_BREAK_EVEN, PERF_LOSS,
    DAYS_PER_YEAR,
)
from ingestion import stock_mask, put_mask, call_mask
from models import (
    Analysis, AnalysisStats, Assignment, CompletedCycle, PortfolioStats, TradeRecord,
)

logger = logging.getLogger(__name__)

# Sort key stand-in for a missing exit date; sorts as the oldest.
_EPOCH = pd.Timestamp(0)


# ── DEDUPLICATION ─────────────────────────────────────────────────────────────
def dedup_trades(df: pd.DataFrame, log: Optional[logging.Logger] = None) -> pd.DataFrame:
    """
    Drop repeated fills from overlapping exports / repeated imports.

    Two rows are the same fill iff they match on DEDUP_KEY
    (symbol, trade_date, proceeds, buy_sell, quantity). The first occurrence
    wins and survivors keep their input order, so the result is stable and
    deduplicating twice changes nothing.

    Commission, price, strike and expiry are not compared: two rows that
    differ only there collapse into the first one seen.

    Missing values compare equal to each other (None == None, NaT == NaT).
    """
    log = log or logger
    unique = df.drop_duplicates(subset=DEDUP_KEY, keep='first').reset_index(drop=True)
    log.info("Unique trades after deduplication: %d (of %d)", len(unique), len(df))
    return unique


# ── ASSIGNMENT HEURISTICS ─────────────────────────────────────────────────────
# There is no field linking a put assignment to the stock purchase it caused.
# The link is inferred from dates and zero-cost option legs, one rule per
# predicate. Every predicate returns a mask aligned to the frame it is given.
# Comparisons against a NaT date are False, so undated trades never qualify.

def is_qualifying_stock_buy(df: pd.DataFrame) -> pd.Series:
    """Stock BUY with a positive quantity — a candidate assignment."""
    return stock_mask(df) & (df['buy_sell'] == SIDE_BUY) & (df['quantity'] > 0)


def symbol_group(df: pd.DataFrame, symbol: str) -> pd.DataFrame:
    """
    All trades on `symbol` or whose underlying is `symbol`, in input order.
    Rows with a missing or blank symbol are never part of a group.
    """
    has_symbol = df['symbol'].notna() & (df['symbol'] != '')
    matches    = (df['symbol'] == symbol) | (df['underlying_symbol'] == symbol)
    return df[has_symbol & matches]


def is_put_sale_before(group: pd.DataFrame, date: pd.Timestamp) -> pd.Series:
    """Put sold for a credit on or before the assignment date."""
    return (put_mask(group) & (group['buy_sell'] == SIDE_SELL) &
            (group['proceeds'] > 0) & (group['trade_date'] <= date))


def is_put_assignment_leg(group: pd.DataFrame, date: pd.Timestamp) -> pd.Series:
    """
    Zero-proceeds put BUY on the assignment date — the leg that closes the
    short put via assignment. A signal only; never summed.
    """
    return (put_mask(group) & (group['buy_sell'] == SIDE_BUY) &
            (group['trade_date'] == date) & (group['proceeds'] == 0))


def is_call_sale_after(group: pd.DataFrame, date: pd.Timestamp) -> pd.Series:
    """Covered call sold for a credit strictly after the assignment date."""
    return (call_mask(group) & (group['buy_sell'] == SIDE_SELL) &
            (group['proceeds'] > 0) & (group['trade_date'] > date))


def is_stock_sale_after(group: pd.DataFrame, date: pd.Timestamp) -> pd.Series:
    """Stock SELL strictly after the assignment date — a closing candidate."""
    return stock_mask(group) & (group['buy_sell'] == SIDE_SELL) & (group['trade_date'] > date)


def _records(rows: pd.DataFrame) -> list[TradeRecord]:
    return [TradeRecord.from_row(r) for r in rows.itertuples(index=False)]


def detect_assignments(df: pd.DataFrame, log: Optional[logging.Logger] = None) -> list[Assignment]:
    """
    Infer put assignments from a deduplicated trades DataFrame.

    Each qualifying stock buy B is evaluated on its own against its symbol
    group:
      - put sales on or before B's date          → put_premiums
      - zero-proceeds put buys on B's date       → assignment legs (signal)
      - B is an Assignment iff either list above is non-empty; other stock
        buys are ordinary purchases and are ignored
      - call sales after B's date                → call_premiums
      - stock sales after B's date               → the FIRST one in group
        order closes the assignment (input order, not the earliest date)

    Buys are not partitioned into date ranges: a put sale that precedes two
    buys of the same symbol is counted by both.

    Example
    -------
    SELL 1 AAPL put    20231215  proceeds +200
    BUY  100 AAPL @ 50 20240101
    SELL 1 AAPL call   20240110  proceeds +150
    SELL 100 AAPL @ 55 20240301

    → Assignment(put_premiums=200, call_premiums=150, total_premiums=350,
                 effective_break_even=46.50, exit_date=20240301, exit_price=55)
    """
    log = log or logger
    assignments: list[Assignment] = []
    groups: dict[str, pd.DataFrame] = {}

    buys = df[is_qualifying_stock_buy(df)]
    log.info("Stock purchases found: %d", len(buys))

    for buy in buys.itertuples(index=False):
        symbol = buy.symbol
        date   = buy.trade_date
        if pd.isna(symbol) or pd.isna(date):
            log.debug("Skipping stock buy without symbol or date: %s", buy)
            continue

        if symbol not in groups:
            groups[symbol] = symbol_group(df, symbol)
        group = groups[symbol]

        put_sales       = group[is_put_sale_before(group, date)]
        put_assignments = group[is_put_assignment_leg(group, date)]
        if put_sales.empty and put_assignments.empty:
            log.debug("%s %s: ordinary purchase, no put activity", symbol, date.date())
            continue

        call_sales  = group[is_call_sale_after(group, date)]
        stock_sales = group[is_stock_sale_after(group, date)]
        sale        = stock_sales.iloc[0] if not stock_sales.empty else None

        put_premiums   = float(put_sales['proceeds'].abs().sum())
        call_premiums  = float(call_sales['proceeds'].abs().sum())
        total_premiums = put_premiums + call_premiums
        quantity       = float(buy.quantity)

        assignment = Assignment(
            symbol=symbol,
            assignment_date=date,
            assignment_price=float(buy.price),
            quantity=quantity,
            put_premiums=put_premiums,
            call_premiums=call_premiums,
            total_premiums=total_premiums,
            effective_break_even=float(buy.price) - total_premiums / quantity,
            currently_held=sale is None,
            exit_date=None if sale is None else sale['trade_date'],
            exit_price=None if sale is None else float(sale['price']),
            related_puts=_records(put_sales),
            related_calls=_records(call_sales),
            put_assignments=_records(put_assignments),
        )
        log.debug(
            "Assignment detected: %s %s %.0f @ %.4f puts=%.2f calls=%.2f held=%s",
            symbol, date.date(), quantity, assignment.assignment_price,
            put_premiums, call_premiums, assignment.currently_held,
        )
        assignments.append(assignment)

    log.info("Total assignments found: %d", len(assignments))
    return assignments


# ── CYCLE PERFORMANCE ─────────────────────────────────────────────────────────
def _safe_pct(numerator: float, denominator: float) -> float:
    """numerator / denominator × 100, or 0 when the result would be non-finite."""
    if denominator == 0:
        return 0.0
    out = numerator / denominator * 100
    return out if math.isfinite(out) else 0.0


def classify_performance(total_pnl: float, invested_capital: float) -> str:
    """Largest threshold first; exactly zero P/L is Break-Even."""
    if total_pnl > invested_capital * EXCELLENT_THRESHOLD:
        return PERF_EXCELLENT
    if total_pnl > invested_capital * GOOD_THRESHOLD:
        return PERF_GOOD
    if total_pnl > 0:
        return PERF_PROFITABLE
    if total_pnl < 0:
        return PERF_LOSS
    return PERF_BREAK_EVEN


def compute_cycle(a: Assignment) -> CompletedCycle:
    """
    Realised performance of one closed assignment.

    capital_gain_loss = (exit_price - assignment_price) × quantity
    total_pnl         = total_premiums + capital_gain_loss
    invested_capital  = assignment_price × quantity
    days_duration     = whole calendar days from assignment to exit
    annualized_roi    = total_return_pct × 365 / days (0 for same-day exits)
    """
    capital_gain_loss = (a.exit_price - a.assignment_price) * a.quantity
    total_pnl         = a.total_premiums + capital_gain_loss
    invested_capital  = a.assignment_price * a.quantity
    total_return_pct  = _safe_pct(total_pnl, invested_capital)
    days_duration     = int((a.exit_date - a.assignment_date).days)

    return CompletedCycle(
        **{f.name: getattr(a, f.name) for f in fields(Assignment)},
        capital_gain_loss=capital_gain_loss,
        total_pnl=total_pnl,
        invested_capital=invested_capital,
        total_return_pct=total_return_pct,
        days_duration=days_duration,
        annualized_roi=total_return_pct * (DAYS_PER_YEAR / days_duration) if days_duration > 0 else 0.0,
        performance_category=classify_performance(total_pnl, invested_capital),
        premium_contribution=_safe_pct(a.total_premiums, total_pnl),
        capital_contribution=_safe_pct(capital_gain_loss, total_pnl),
        premium_yield=_safe_pct(a.total_premiums, invested_capital),
        capital_yield=_safe_pct(capital_gain_loss, invested_capital),
        daily_return=total_return_pct / days_duration if days_duration > 0 else 0.0,
    )


def sort_cycles(cycles: list[CompletedCycle]) -> list[CompletedCycle]:
    """Most recent exit first; a missing exit date sorts as the oldest."""
    return sorted(cycles, key=lambda c: c.exit_date if c.exit_date is not None else _EPOCH,
                  reverse=True)


def analyze_completed_cycles(assignments: list[Assignment]) -> list[CompletedCycle]:
    """Closed assignments (with an exit price) → CompletedCycles, most recent exit first."""
    closed = [a for a in assignments if not a.currently_held and a.exit_price is not None]
    return sort_cycles([compute_cycle(a) for a in closed])


# ── PORTFOLIO AGGREGATES ──────────────────────────────────────────────────────
def compute_portfolio_stats(cycles: list[CompletedCycle]) -> PortfolioStats:
    """
    Reduce completed cycles to portfolio figures. An empty set is valid and
    returns all zeros (win rate 0, not NaN).
    """
    n = len(cycles)
    if n == 0:
        return PortfolioStats()
    pnls = [c.total_pnl for c in cycles]
    wins = sum(1 for p in pnls if p > 0)
    return PortfolioStats(
        total_completed_cycles=n,
        winning_trades=wins,
        losing_trades=sum(1 for p in pnls if p < 0),
        win_rate=wins / n * 100,
        total_pnl=sum(pnls),
        total_invested=sum(c.invested_capital for c in cycles),
        avg_return_per_trade=sum(c.total_return_pct for c in cycles) / n,
        avg_duration=sum(c.days_duration for c in cycles) / n,
        best_trade=max(pnls),
        worst_trade=min(pnls),
    )


def make_stats(trades: pd.DataFrame, assignments: list[Assignment]) -> AnalysisStats:
    return AnalysisStats(
        total_trades=len(trades),
        total_assignments=len(assignments),
        current_positions=sum(1 for a in assignments if a.currently_held),
    )


# ── PIPELINE ──────────────────────────────────────────────────────────────────
def build_analysis(
    trades: pd.DataFrame,
    metadata: Optional[dict[str, Any]] = None,
    log: Optional[logging.Logger] = None,
) -> Analysis:
    """
    Run the full pipeline over one concatenated trades DataFrame:
    dedup → assignments → completed cycles → portfolio stats.

    `trades` must already hold every document of the batch in a fixed order
    (see ingestion.load_documents); never run this per document and merge
    the partial results.
    """
    log = log or logger
    unique      = dedup_trades(trades, log=log)
    assignments = detect_assignments(unique, log=log)
    cycles      = analyze_completed_cycles(assignments)
    return Analysis(
        trades=unique,
        assignments=assignments,
        completed_cycles=cycles,
        portfolio_stats=compute_portfolio_stats(cycles),
        current_holdings=[a for a in assignments if a.currently_held],
        stats=make_stats(unique, assignments),
        metadata=dict(metadata or {}),
    )
