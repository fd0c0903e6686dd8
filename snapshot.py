"""
WheelMechanics — Snapshot Export / Import / Merge
==================================================
Persists an Analysis as a JSON document and folds previously exported
snapshots (or freshly parsed trades) into the current one.

Public API
----------
  analysis_to_dict(analysis)             → dict   (camelCase wire format)
  export_json(analysis)                  → str
  analysis_from_dict(payload, source)    → Analysis
  load_snapshot(data, source)            → Analysis
  merge_analysis(existing, incoming)     → Analysis
  merge_trades_into(existing, trades)    → Analysis

Wire format
-----------
  {exportDate, exportVersion, portfolioStats, assignments, completedCycles,
   currentHoldings, stats, trades, metadata}
  Dates are 'YYYYMMDD' strings, money values full-precision floats.
  metadata is passed through untouched.

Derived values (total premiums, break-even, every completed-cycle metric,
holdings, stats, portfolio stats) are recomputed on import rather than
trusted from the file.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Union

import pandas as pd

from config import EXPORT_VERSION, SNAPSHOT_DATE_FORMAT, TRADE_COLUMNS
from ingestion import clean_str, clean_val, parse_trade_date
from mechanics import (
    build_analysis, compute_cycle, compute_portfolio_stats, dedup_trades,
    make_stats, sort_cycles,
)
from models import (
    Analysis, Assignment, CompletedCycle, TradeRecord,
    empty_trades_frame,
)

logger = logging.getLogger(__name__)


# ── Import exceptions ─────────────────────────────────────────────────────────

class SnapshotImportError(Exception):
    """Base exception for snapshot import failures.
    Raised before anything is merged, so the current analysis is untouched.
    The message is safe to show directly to the user."""


class SnapshotFormatError(SnapshotImportError):
    """The payload is not JSON, or not a JSON object."""


class SnapshotFieldError(SnapshotImportError):
    """A field is missing or has the wrong shape. .field holds its path,
    e.g. 'assignments[3].assignmentDate'."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


# ── Wire names ────────────────────────────────────────────────────────────────

_TRADE_WIRE = {
    'symbol': 'symbol', 'underlying_symbol': 'underlyingSymbol',
    'asset_category': 'assetCategory', 'buy_sell': 'buySell',
    'quantity': 'quantity', 'price': 'price', 'proceeds': 'proceeds',
    'trade_date': 'tradeDate', 'strike': 'strike', 'expiry': 'expiry',
    'put_call': 'putCall', 'commission': 'commission', 'source': 'source',
}
_STATS_WIRE = {
    'total_completed_cycles': 'totalCompletedCycles',
    'winning_trades': 'winningTrades', 'losing_trades': 'losingTrades',
    'win_rate': 'winRate', 'total_pnl': 'totalPnL',
    'total_invested': 'totalInvested', 'avg_return_per_trade': 'avgReturnPerTrade',
    'avg_duration': 'avgDuration', 'best_trade': 'bestTrade', 'worst_trade': 'worstTrade',
}
_CYCLE_WIRE = {
    'capital_gain_loss': 'capitalGainLoss', 'total_pnl': 'totalPnL',
    'invested_capital': 'investedCapital', 'total_return_pct': 'totalReturnPct',
    'days_duration': 'daysDuration', 'annualized_roi': 'annualizedROI',
    'performance_category': 'performanceCategory',
    'premium_contribution': 'premiumContribution',
    'capital_contribution': 'capitalContribution',
    'premium_yield': 'premiumYield', 'capital_yield': 'capitalYield',
    'daily_return': 'dailyReturn',
}


def fmt_date(ts: Optional[pd.Timestamp]) -> Optional[str]:
    if ts is None or pd.isna(ts):
        return None
    return ts.strftime(SNAPSHOT_DATE_FORMAT)


# ── Export ────────────────────────────────────────────────────────────────────

def trade_to_dict(t: TradeRecord) -> dict:
    out = {_TRADE_WIRE[col]: getattr(t, col) for col in TRADE_COLUMNS}
    out['tradeDate'] = fmt_date(t.trade_date)
    return out


def assignment_to_dict(a: Assignment) -> dict:
    return {
        'symbol':             a.symbol,
        'assignmentDate':     fmt_date(a.assignment_date),
        'assignmentPrice':    a.assignment_price,
        'quantity':           a.quantity,
        'putPremiums':        a.put_premiums,
        'callPremiums':       a.call_premiums,
        'totalPremiums':      a.total_premiums,
        'effectiveBreakEven': a.effective_break_even,
        'currentlyHeld':      a.currently_held,
        'exitDate':           fmt_date(a.exit_date),
        'exitPrice':          a.exit_price,
        'relatedPuts':        [trade_to_dict(t) for t in a.related_puts],
        'relatedCalls':       [trade_to_dict(t) for t in a.related_calls],
        'putAssignments':     [trade_to_dict(t) for t in a.put_assignments],
    }


def cycle_to_dict(c: CompletedCycle) -> dict:
    out = assignment_to_dict(c)
    out.update({wire: getattr(c, attr) for attr, wire in _CYCLE_WIRE.items()})
    return out


def analysis_to_dict(analysis: Analysis, export_date: Optional[datetime] = None) -> dict:
    """Serialise the full analysis. Trades are included so a re-import is lossless."""
    export_date = export_date or datetime.now(timezone.utc)
    trades = [trade_to_dict(TradeRecord.from_row(r))
              for r in analysis.trades.itertuples(index=False)]
    return {
        'exportDate':      export_date.isoformat(),
        'exportVersion':   EXPORT_VERSION,
        'portfolioStats':  {wire: getattr(analysis.portfolio_stats, attr)
                            for attr, wire in _STATS_WIRE.items()},
        'assignments':     [assignment_to_dict(a) for a in analysis.assignments],
        'completedCycles': [cycle_to_dict(c) for c in analysis.completed_cycles],
        'currentHoldings': [assignment_to_dict(a) for a in analysis.current_holdings],
        'stats': {
            'totalTrades':      analysis.stats.total_trades,
            'totalAssignments': analysis.stats.total_assignments,
            'currentPositions': analysis.stats.current_positions,
        },
        'trades':          trades,
        'metadata':        analysis.metadata,
    }


def export_json(analysis: Analysis, export_date: Optional[datetime] = None) -> str:
    return json.dumps(analysis_to_dict(analysis, export_date), indent=2, default=str)


# ── Import: field validation ──────────────────────────────────────────────────

def _require(obj: dict, key: str, path: str, kinds: tuple, default: Any = ...) -> Any:
    """Fetch obj[key] and check its type. bool is never accepted as a number,
    and numbers must be finite (json.loads accepts NaN and Infinity)."""
    field = f"{path}.{key}" if path else key
    if key not in obj or obj[key] is None:
        if default is ...:
            raise SnapshotFieldError(field, "missing required field")
        return default
    val = obj[key]
    if isinstance(val, bool) and bool not in kinds:
        raise SnapshotFieldError(field, f"expected {_kind_names(kinds)}, got bool")
    if not isinstance(val, kinds):
        raise SnapshotFieldError(field, f"expected {_kind_names(kinds)}, got {type(val).__name__}")
    if isinstance(val, float) and not math.isfinite(val):
        raise SnapshotFieldError(field, "must be a finite number")
    return val


def _kind_names(kinds: tuple) -> str:
    names = {str: 'string', int: 'number', float: 'number', bool: 'boolean',
             list: 'list', dict: 'object'}
    return ' or '.join(sorted({names.get(k, k.__name__) for k in kinds}))


_NUMBER = (int, float)


def _require_date(obj: dict, key: str, path: str, optional: bool = False) -> Optional[pd.Timestamp]:
    raw = _require(obj, key, path, (str, int), default=None if optional else ...)
    if raw is None:
        return None
    ts = parse_trade_date(raw)
    if pd.isna(ts):
        raise SnapshotFieldError(f"{path}.{key}", f"not a YYYYMMDD date: {raw!r}")
    return ts


def _list_of(payload: dict, key: str, path: str, build: Callable[[dict, str], Any],
             optional: bool = False) -> list:
    items = _require(payload, key, path, (list,), default=[] if optional else ...)
    out = []
    for i, item in enumerate(items):
        item_path = f"{path + '.' if path else ''}{key}[{i}]"
        if not isinstance(item, dict):
            raise SnapshotFieldError(item_path, f"expected object, got {type(item).__name__}")
        out.append(build(item, item_path))
    return out


def _trade_from_dict(d: dict, path: str) -> TradeRecord:
    # Trade values follow the parser's policy: bad numbers degrade to 0.
    trade_date = parse_trade_date(d.get('tradeDate'))
    return TradeRecord(
        symbol=clean_str(d.get('symbol')),
        underlying_symbol=clean_str(d.get('underlyingSymbol')),
        asset_category=clean_str(d.get('assetCategory')),
        buy_sell=clean_str(d.get('buySell')),
        quantity=clean_val(d.get('quantity')),
        price=clean_val(d.get('price')),
        proceeds=clean_val(d.get('proceeds')),
        trade_date=None if pd.isna(trade_date) else trade_date,
        strike=clean_str(d.get('strike')),
        expiry=clean_str(d.get('expiry')),
        put_call=clean_str(d.get('putCall')),
        commission=clean_val(d.get('commission')),
        source=clean_str(d.get('source')),
    )


def _assignment_from_dict(d: dict, path: str) -> Assignment:
    symbol   = _require(d, 'symbol', path, (str,))
    price    = float(_require(d, 'assignmentPrice', path, _NUMBER))
    quantity = float(_require(d, 'quantity', path, _NUMBER))
    if quantity <= 0:
        raise SnapshotFieldError(f"{path}.quantity", f"must be > 0, got {quantity}")
    held       = _require(d, 'currentlyHeld', path, (bool,))
    exit_date  = _require_date(d, 'exitDate', path, optional=True)
    exit_price = _require(d, 'exitPrice', path, _NUMBER, default=None)
    if held and (exit_date is not None or exit_price is not None):
        raise SnapshotFieldError(f"{path}.currentlyHeld", "held position must not have an exit")
    if not held and exit_date is None:
        raise SnapshotFieldError(f"{path}.exitDate", "missing for a closed position")
    if not held and exit_price is None:
        raise SnapshotFieldError(f"{path}.exitPrice", "missing for a closed position")
    assignment_date = _require_date(d, 'assignmentDate', path)
    if exit_date is not None and exit_date < assignment_date:
        raise SnapshotFieldError(f"{path}.exitDate",
                                 f"{fmt_date(exit_date)} is before the assignment date "
                                 f"{fmt_date(assignment_date)}")

    put_premiums  = float(_require(d, 'putPremiums', path, _NUMBER, default=0.0))
    call_premiums = float(_require(d, 'callPremiums', path, _NUMBER, default=0.0))
    total         = put_premiums + call_premiums
    return Assignment(
        symbol=symbol,
        assignment_date=assignment_date,
        assignment_price=price,
        quantity=quantity,
        put_premiums=put_premiums,
        call_premiums=call_premiums,
        total_premiums=total,
        effective_break_even=price - total / quantity,
        currently_held=held,
        exit_date=exit_date,
        exit_price=None if exit_price is None else float(exit_price),
        related_puts=_list_of(d, 'relatedPuts', path, _trade_from_dict, optional=True),
        related_calls=_list_of(d, 'relatedCalls', path, _trade_from_dict, optional=True),
        put_assignments=_list_of(d, 'putAssignments', path, _trade_from_dict, optional=True),
    )


def _cycle_from_dict(d: dict, path: str) -> CompletedCycle:
    a = _assignment_from_dict(d, path)
    if a.currently_held:
        raise SnapshotFieldError(f"{path}.currentlyHeld", "a completed cycle cannot be held")
    return compute_cycle(a)


def _trades_frame(records: list[TradeRecord]) -> pd.DataFrame:
    if not records:
        return empty_trades_frame()
    df = pd.DataFrame([{col: getattr(t, col) for col in TRADE_COLUMNS} for t in records],
                      columns=TRADE_COLUMNS)
    df['trade_date'] = pd.to_datetime(df['trade_date'])
    return df


# ── Import: public ────────────────────────────────────────────────────────────

def analysis_from_dict(payload: Any, source: str = '<snapshot>') -> Analysis:
    """
    Build an Analysis from a decoded snapshot.

    Raises SnapshotFieldError naming the first offending field. Nothing is
    returned (and nothing merged) unless the whole payload is valid.
    """
    if not isinstance(payload, dict):
        raise SnapshotFormatError(f"{source}: snapshot must be a JSON object, got {type(payload).__name__}")

    assignments = _list_of(payload, 'assignments', '', _assignment_from_dict)
    cycles      = sort_cycles(_list_of(payload, 'completedCycles', '', _cycle_from_dict))
    trades      = _trades_frame(_list_of(payload, 'trades', '', _trade_from_dict, optional=True))
    metadata    = _require(payload, 'metadata', '', (dict,), default={})
    # Shape-checked only; both are recomputed from the rows above.
    _require(payload, 'portfolioStats', '', (dict,), default={})
    _list_of(payload, 'currentHoldings', '', lambda d, p: d, optional=True)

    return Analysis(
        trades=trades,
        assignments=assignments,
        completed_cycles=cycles,
        portfolio_stats=compute_portfolio_stats(cycles),
        current_holdings=[a for a in assignments if a.currently_held],
        stats=make_stats(trades, assignments),
        metadata=dict(metadata),
    )


def load_snapshot(data: Union[str, bytes, dict], source: str = '<snapshot>') -> Analysis:
    """Decode a JSON snapshot (text, bytes or an already-decoded dict)."""
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise SnapshotFormatError(f"{source}: not a valid JSON snapshot ({exc})") from exc
    analysis = analysis_from_dict(data, source)
    logger.info("%s: imported %d assignments, %d completed cycles",
                source, len(analysis.assignments), len(analysis.completed_cycles))
    return analysis


# ── Merge ─────────────────────────────────────────────────────────────────────

def _unique_by_key(items: Iterable, key: Callable) -> list:
    """Keep the first item per key, preserving order."""
    seen = set()
    out = []
    for item in items:
        k = key(item)
        if k not in seen:
            seen.add(k)
            out.append(item)
    return out


def _merge_metadata(old: dict, new: dict) -> dict:
    merged = {**old, **new}
    sources = list(old.get('sources') or []) + list(new.get('sources') or [])
    if sources:
        merged['sources'] = _unique_by_key(sources, key=lambda s: s)
    return merged


def _concat_trades(a: pd.DataFrame, b: pd.DataFrame) -> pd.DataFrame:
    frames = [f for f in (a, b) if not f.empty]
    if not frames:
        return empty_trades_frame()
    return pd.concat(frames, ignore_index=True)


def merge_analysis(
    existing: Optional[Analysis],
    incoming: Analysis,
    log: Optional[logging.Logger] = None,
) -> Analysis:
    """
    Fold `incoming` into `existing` and return a new Analysis.

    Merge policy
    ------------
    assignments       existing + incoming, first per (symbol, assignment_date).
                      An existing row is never overwritten — closure data that
                      only the incoming side knows is NOT applied to it.
    completed_cycles  existing + incoming, first per
                      (symbol, assignment_date, exit_date).
    trades            existing + incoming, deduplicated like parsed trades.
    holdings, stats,
    portfolio_stats   recomputed from the merged rows, never carried forward.

    Neither input is modified.
    """
    log = log or logger
    if existing is None:
        return incoming

    assignments = _unique_by_key(existing.assignments + incoming.assignments, key=lambda a: a.key)
    cycles      = sort_cycles(_unique_by_key(existing.completed_cycles + incoming.completed_cycles,
                                             key=lambda c: c.key))
    trades      = dedup_trades(_concat_trades(existing.trades, incoming.trades), log=log)

    log.info("Merged analysis: %d assignments (%d + %d), %d completed cycles",
             len(assignments), len(existing.assignments), len(incoming.assignments), len(cycles))
    return Analysis(
        trades=trades,
        assignments=assignments,
        completed_cycles=cycles,
        portfolio_stats=compute_portfolio_stats(cycles),
        current_holdings=[a for a in assignments if a.currently_held],
        stats=make_stats(trades, assignments),
        metadata=_merge_metadata(existing.metadata, incoming.metadata),
    )


def merge_trades_into(
    existing: Optional[Analysis],
    trades: pd.DataFrame,
    metadata: Optional[dict[str, Any]] = None,
    log: Optional[logging.Logger] = None,
) -> Analysis:
    """Analyse a newly parsed trade batch on its own, then merge it in."""
    return merge_analysis(existing, build_analysis(trades, metadata=metadata, log=log), log=log)
