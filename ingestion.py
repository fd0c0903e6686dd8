"""
WheelMechanics — Data Ingestion
================================
Pure Python IB Flex Query parsing pipeline. No UI dependency — fully
importable and testable on its own.

Public API
----------
  parse_flex_xml(file_bytes, source)     → ParsedData(df, source)
  validate_flex_document(file_bytes)     → set of missing attribute names (empty = OK)
  load_documents(documents)              → (trades DataFrame, list of FlexParseError)

Internal helpers (also importable for use in analysis functions)
  clean_val(val)                → float
  clean_str(val)                → Optional[str]
  parse_trade_date(val)         → pd.Timestamp (NaT when unusable)
  stock_mask(df) / option_mask(df) / put_mask(df) / call_mask(df)  → bool Series
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Any, Iterable, Optional

import pandas as pd

from config import (
    TRADE_ELEMENT,
    STRING_ATTRIBUTES,
    NUMERIC_ATTRIBUTES,
    TRADE_COLUMNS,
    REQUIRED_ATTRIBUTES,
    CAT_STOCK, CAT_OPTION, RIGHT_PUT, RIGHT_CALL,
)
from models import ParsedData, empty_trades_frame

logger = logging.getLogger(__name__)


# ── Flex parse exceptions ─────────────────────────────────────────────────────

class FlexParseError(Exception):
    """Base exception for all ingestion failures.
    Carries the identifier of the offending document in .source and in the
    message, which is safe to show directly to the user."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class FlexEncodingError(FlexParseError):
    """File bytes could not be decoded as UTF-8.
    Usually a file re-saved by an editor with a legacy code page.
    Re-download the Flex Query from Interactive Brokers."""


class FlexStructureError(FlexParseError):
    """File is not well-formed XML.
    Could be a truncated download, an HTML error page or a CSV export."""


# ── Row-level helpers ─────────────────────────────────────────────────────────

def clean_val(val: Any) -> float:
    """Parse an IB numeric attribute like '1,234.56' to float. Bad or missing → 0.0."""
    if val is None:
        return 0.0
    try:
        out = float(str(val).strip().replace(',', ''))
    except ValueError:
        return 0.0
    # 'nan' / 'inf' parse as floats but are not usable money values
    if out != out or out in (float('inf'), float('-inf')):
        return 0.0
    return out


def clean_str(val: Any) -> Optional[str]:
    """Missing or blank string attributes are None, never ''."""
    if val is None:
        return None
    s = str(val).strip()
    return s or None


def parse_trade_date(val: Any) -> pd.Timestamp:
    """
    Parse an IB trade date to a naive, midnight Timestamp.

    Accepts 'YYYYMMDD' and 'YYYY-MM-DD', each optionally followed by
    ';HHMMSS' (the time part is discarded). Anything else is NaT, which
    compares False against every date so the trade simply never qualifies.
    """
    s = clean_str(val)
    if s is None:
        return pd.NaT
    s = s.split(';')[0].split(' ')[0].replace('-', '')
    if len(s) != 8 or not s.isdigit():
        return pd.NaT
    return pd.to_datetime(s, format='%Y%m%d', errors='coerce')


def stock_mask(df: pd.DataFrame) -> pd.Series:
    """Vectorised test for stock rows (assetCategory STK)."""
    return df['asset_category'] == CAT_STOCK


def option_mask(df: pd.DataFrame) -> pd.Series:
    """Vectorised test for option rows (assetCategory OPT)."""
    return df['asset_category'] == CAT_OPTION


def put_mask(df: pd.DataFrame) -> pd.Series:
    return option_mask(df) & (df['put_call'] == RIGHT_PUT)


def call_mask(df: pd.DataFrame) -> pd.Series:
    return option_mask(df) & (df['put_call'] == RIGHT_CALL)


def _record_from_attrib(attrib: dict, source: str) -> dict:
    rec = {col: clean_str(attrib.get(attr)) for attr, col in STRING_ATTRIBUTES.items()}
    rec.update({col: clean_val(attrib.get(attr)) for attr, col in NUMERIC_ATTRIBUTES.items()})
    rec['trade_date'] = parse_trade_date(attrib.get('tradeDate'))
    rec['source'] = source
    return rec


def _parse_tree(file_bytes: bytes, source: str) -> ET.Element:
    try:
        file_bytes.decode('utf-8-sig')
    except UnicodeDecodeError:
        raise FlexEncodingError(
            source,
            "File is not valid UTF-8. Re-download the Flex Query from "
            "Interactive Brokers without opening and re-saving it first."
        )
    try:
        return ET.fromstring(file_bytes)
    except ET.ParseError as exc:
        raise FlexStructureError(
            source,
            f"Could not parse the file as XML ({exc}). "
            "Make sure you're uploading the raw IB Flex Query export, not a PDF or HTML page."
        ) from exc


# ── Public entry points ───────────────────────────────────────────────────────

def validate_flex_document(file_bytes: bytes, source: str = '<document>') -> set[str]:
    """
    Return the set of required TradeConfirm attributes that never appear in
    the document. An empty set means the file looks like a usable export.

    Raises FlexParseError if the document itself is unreadable.
    """
    root = _parse_tree(file_bytes, source)
    seen: set[str] = set()
    for el in root.iter(TRADE_ELEMENT):
        seen.update(el.attrib)
    return REQUIRED_ATTRIBUTES - seen


def parse_flex_xml(file_bytes: bytes, source: str = '<document>') -> ParsedData:
    """
    Read an IB Flex Query XML export into a trades DataFrame.

    Steps
    -----
    1. Decode bytes (UTF-8, BOM tolerated) and parse the XML structure.
    2. Collect every TradeConfirm element, in document order.
    3. String attributes: stripped, blank/missing → None.
    4. Numeric attributes: thousands separators removed, bad/missing → 0.0.
    5. tradeDate → naive Timestamp, unusable → NaT.

    Rows are NOT date-sorted: document order is significant downstream
    (first-seen wins in dedup, first closing sale wins in reconstruction).

    Raises
    ------
    FlexEncodingError   — file is not valid UTF-8.
    FlexStructureError  — file is not well-formed XML.
    """
    root = _parse_tree(file_bytes, source)
    records = [_record_from_attrib(el.attrib, source) for el in root.iter(TRADE_ELEMENT)]

    if not records:
        logger.warning("%s: no %s entries found", source, TRADE_ELEMENT)
        return ParsedData(df=empty_trades_frame(), source=source)

    df = pd.DataFrame.from_records(records, columns=TRADE_COLUMNS)
    df['trade_date'] = pd.to_datetime(df['trade_date'])
    logger.info("%s: loaded %d trades", source, len(df))
    return ParsedData(df=df, source=source)


def load_documents(
    documents: Iterable[tuple[str, bytes]],
    log: Optional[logging.Logger] = None,
) -> tuple[pd.DataFrame, list[FlexParseError]]:
    """
    Parse several documents and concatenate their trades in input order.

    Every document is fully parsed before anything downstream runs, so the
    order-sensitive steps (dedup, reconstruction) see one deterministic
    sequence. A document that fails to parse is skipped and its error
    returned; it never aborts the rest of the batch.
    """
    log = log or logger
    frames = []
    errors: list[FlexParseError] = []
    for source, file_bytes in documents:
        try:
            frames.append(parse_flex_xml(file_bytes, source).df)
        except FlexParseError as exc:
            log.warning("Skipping %s: %s", source, exc)
            errors.append(exc)

    frames = [f for f in frames if not f.empty]
    if not frames:
        return empty_trades_frame(), errors
    trades = pd.concat(frames, ignore_index=True)
    log.info("Total trades loaded: %d from %d document(s)", len(trades), len(frames))
    return trades, errors
