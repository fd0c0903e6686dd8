"""
report.py — tabular exports for WheelMechanics.

Flattens the computed model into pandas DataFrames and plain text:
  - Completed cycles table (one row per closed wheel cycle) and its CSV
  - Current holdings table (open assignments with break-even)
  - Plain-text portfolio summary used by the command line

No computation happens here — every figure is read off the Analysis.
"""

from __future__ import annotations

import pandas as pd

from models import Analysis, Assignment, CompletedCycle
from snapshot import fmt_date


CYCLE_COLUMNS = [
    'Symbol', 'Assignment Date', 'Exit Date', 'Days Duration',
    'Assignment Price', 'Exit Price', 'Quantity',
    'Put Premiums', 'Call Premiums', 'Total Premiums',
    'Capital Gain/Loss', 'Total P&L', 'Invested Capital',
    'Total Return %', 'Annualized ROI %', 'Premium Yield %',
    'Capital Yield %', 'Daily Return %', 'Performance Category',
]

HOLDING_COLUMNS = [
    'Symbol', 'Assignment Date', 'Assignment Price', 'Quantity',
    'Put Premiums', 'Call Premiums', 'Total Premiums', 'Effective Break-Even',
]

# Ratio columns are rounded on CSV export only; the DataFrame keeps full precision.
_CSV_ROUNDING = {
    'Total Return %':   2,
    'Annualized ROI %': 2,
    'Premium Yield %':  2,
    'Capital Yield %':  2,
    'Daily Return %':   4,
}


def cycles_to_frame(cycles: list[CompletedCycle]) -> pd.DataFrame:
    """One row per completed cycle, in the order given."""
    return pd.DataFrame([{
        'Symbol':               c.symbol,
        'Assignment Date':      fmt_date(c.assignment_date),
        'Exit Date':            fmt_date(c.exit_date),
        'Days Duration':        c.days_duration,
        'Assignment Price':     c.assignment_price,
        'Exit Price':           c.exit_price,
        'Quantity':             c.quantity,
        'Put Premiums':         c.put_premiums,
        'Call Premiums':        c.call_premiums,
        'Total Premiums':       c.total_premiums,
        'Capital Gain/Loss':    c.capital_gain_loss,
        'Total P&L':            c.total_pnl,
        'Invested Capital':     c.invested_capital,
        'Total Return %':       c.total_return_pct,
        'Annualized ROI %':     c.annualized_roi,
        'Premium Yield %':      c.premium_yield,
        'Capital Yield %':      c.capital_yield,
        'Daily Return %':       c.daily_return,
        'Performance Category': c.performance_category,
    } for c in cycles], columns=CYCLE_COLUMNS)


def holdings_to_frame(holdings: list[Assignment]) -> pd.DataFrame:
    """Open assignments with their premium-adjusted break-even."""
    return pd.DataFrame([{
        'Symbol':               a.symbol,
        'Assignment Date':      fmt_date(a.assignment_date),
        'Assignment Price':     a.assignment_price,
        'Quantity':             a.quantity,
        'Put Premiums':         a.put_premiums,
        'Call Premiums':        a.call_premiums,
        'Total Premiums':       a.total_premiums,
        'Effective Break-Even': a.effective_break_even,
    } for a in holdings], columns=HOLDING_COLUMNS)


def export_cycles_csv(cycles: list[CompletedCycle]) -> str:
    return cycles_to_frame(cycles).round(_CSV_ROUNDING).to_csv(index=False)


def fmt_dollar(val: float, decimals: int = 2) -> str:
    """
    Format a dollar value with sign, commas, and configurable decimal places.
    Negative values render as '-$1,234.56' (not '$-1,234.56').

    Examples:
        fmt_dollar(1234.56)   → '$1,234.56'
        fmt_dollar(-99.5)     → '-$99.50'
        fmt_dollar(1500, 0)   → '$1,500'
    """
    fmt = f'{{:,.{decimals}f}}'
    if val >= 0:
        return f'${fmt.format(val)}'
    return f'-${fmt.format(abs(val))}'


def build_text_summary(analysis: Analysis) -> str:
    """Plain-text summary: counts, portfolio stats and open positions."""
    ps = analysis.portfolio_stats
    st = analysis.stats
    lines = [
        'WheelMechanics summary',
        '=' * 60,
        f'Trades:            {st.total_trades}',
        f'Assignments:       {st.total_assignments}',
        f'Open positions:    {st.current_positions}',
        f'Completed cycles:  {ps.total_completed_cycles}'
        f'  ({ps.winning_trades} won / {ps.losing_trades} lost, win rate {ps.win_rate:.1f}%)',
        f'Total P/L:         {fmt_dollar(ps.total_pnl)} on {fmt_dollar(ps.total_invested)} invested',
        f'Avg return:        {ps.avg_return_per_trade:.2f}% per cycle, {ps.avg_duration:.1f} days',
        f'Best / worst:      {fmt_dollar(ps.best_trade)} / {fmt_dollar(ps.worst_trade)}',
    ]
    if analysis.current_holdings:
        lines += ['', 'Current holdings', '-' * 60,
                  holdings_to_frame(analysis.current_holdings).to_string(index=False)]
    if analysis.completed_cycles:
        cols = ['Symbol', 'Assignment Date', 'Exit Date', 'Total P&L',
                'Total Return %', 'Performance Category']
        lines += ['', 'Completed cycles', '-' * 60,
                  cycles_to_frame(analysis.completed_cycles)[cols].round(2).to_string(index=False)]
    return '\n'.join(lines)
