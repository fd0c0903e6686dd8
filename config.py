"""
WheelMechanics — Configuration & Constants
===========================================
All tuneable parameters and IB Flex Query field values live here.
Change a value once and it applies everywhere.
"""

import os

# ── IB Flex Query element / attribute names ───────────────────────────────────
TRADE_ELEMENT = 'TradeConfirm'

# Wire attribute → DataFrame column.
STRING_ATTRIBUTES = {
    'symbol':           'symbol',
    'underlyingSymbol': 'underlying_symbol',
    'assetCategory':    'asset_category',
    'buySell':          'buy_sell',
    'tradeDate':        'trade_date',
    'strike':           'strike',
    'expiry':           'expiry',
    'putCall':          'put_call',
}
NUMERIC_ATTRIBUTES = {
    'quantity':   'quantity',
    'price':      'price',
    'proceeds':   'proceeds',
    'commission': 'commission',
}
TRADE_COLUMNS = [
    'symbol', 'underlying_symbol', 'asset_category', 'buy_sell',
    'quantity', 'price', 'proceeds', 'trade_date',
    'strike', 'expiry', 'put_call', 'commission', 'source',
]

# Attributes that must appear somewhere in a usable export.
REQUIRED_ATTRIBUTES = {
    'symbol', 'assetCategory', 'buySell', 'tradeDate', 'proceeds', 'quantity',
}

# ── IB Flex field values (exact-match) ────────────────────────────────────────
CAT_STOCK  = 'STK'
CAT_OPTION = 'OPT'
SIDE_BUY   = 'BUY'
SIDE_SELL  = 'SELL'
RIGHT_PUT  = 'P'
RIGHT_CALL = 'C'

# ── Deduplication ─────────────────────────────────────────────────────────────
# Identity of a fill. Commission, price, strike and expiry are not part of
# the key: two rows differing only there are the same trade.
DEDUP_KEY = ['symbol', 'trade_date', 'proceeds', 'buy_sell', 'quantity']

# ── Performance classification ────────────────────────────────────────────────
# Thresholds are fractions of invested capital, checked largest first.
EXCELLENT_THRESHOLD = 0.05
GOOD_THRESHOLD      = 0.02

PERF_EXCELLENT  = 'Excellent'
PERF_GOOD       = 'Good'
PERF_PROFITABLE = 'Profitable'
PERF_BREAK_EVEN = 'Break-Even'
PERF_LOSS       = 'Loss'

DAYS_PER_YEAR = 365

# ── Float arithmetic ──────────────────────────────────────────────────────────
# Tolerance for comparing summed money values (tests, sanity checks).
FLOAT_EPSILON = 1e-9

# ── Snapshot export / import ──────────────────────────────────────────────────
EXPORT_VERSION = '1.0'
SNAPSHOT_DATE_FORMAT = '%Y%m%d'

# ── Logging ───────────────────────────────────────────────────────────────────
LOG_LEVEL  = os.environ.get('WHEEL_LOG_LEVEL', 'WARNING').upper()
LOG_FORMAT = '%(asctime)s %(levelname)-7s %(name)s: %(message)s'
