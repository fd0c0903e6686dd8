#!/usr/bin/env python3
"""
WheelMechanics — command line.

Reconstructs wheel-strategy cycles (short put → assignment → covered calls →
sale) from Interactive Brokers Flex Query trade confirmations.

Usage:
    python wheelmechanics.py trades_2023.xml trades_2024.xml
    python wheelmechanics.py new.xml --merge previous.json --out analysis.json
    python wheelmechanics.py trades.xml --csv cycles.csv -v

XML files are parsed together as one batch (deduplicated, then analysed).
Snapshots given with --merge are folded in first, in the order given, and the
new batch is merged on top: rows already in a snapshot are kept as they are.
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from config import LOG_LEVEL, LOG_FORMAT
from ingestion import load_documents
from models import Analysis
from report import build_text_summary, export_cycles_csv
from snapshot import SnapshotImportError, export_json, load_snapshot, merge_analysis, merge_trades_into

logger = logging.getLogger('wheelmechanics')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='wheelmechanics',
        description='Analyse wheel-strategy assignments from IB Flex Query exports.',
    )
    parser.add_argument('files', nargs='*', type=Path,
                        help='Flex Query XML exports (TradeConfirm records)')
    parser.add_argument('--merge', action='append', type=Path, default=[], metavar='SNAPSHOT',
                        help='Previously exported JSON snapshot to merge (repeatable)')
    parser.add_argument('--out', type=Path, default=None,
                        help='Write the resulting analysis snapshot (JSON) here')
    parser.add_argument('--csv', type=Path, default=None,
                        help='Write the completed cycles table (CSV) here')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='-v for info, -vv for debug logging')
    return parser


def _configure_logging(verbosity: int) -> None:
    level = {0: LOG_LEVEL, 1: 'INFO'}.get(verbosity, 'DEBUG')
    logging.basicConfig(level=level, format=LOG_FORMAT)


def run(files: list[Path], snapshots: list[Path]) -> tuple[Optional[Analysis], list[str]]:
    """
    Merge snapshots, then the XML batch. Returns (analysis, warnings).
    Raises SnapshotImportError before anything is combined if a snapshot is bad.
    """
    warnings: list[str] = []

    # Decode every snapshot first so one bad file leaves nothing half-merged.
    imported = [load_snapshot(path.read_bytes(), source=path.name) for path in snapshots]
    analysis: Optional[Analysis] = None
    for snap in imported:
        analysis = merge_analysis(analysis, snap)

    if files:
        trades, errors = load_documents((path.name, path.read_bytes()) for path in files)
        warnings += [str(e) for e in errors]
        parsed_sources = [p.name for p in files if p.name not in {e.source for e in errors}]
        metadata = {
            'analysisTimestamp': datetime.now(timezone.utc).isoformat(),
            'dataSource':        ', '.join(parsed_sources),
            'sources':           parsed_sources,
            'totalTradesProcessed': len(trades),
        }
        analysis = merge_trades_into(analysis, trades, metadata=metadata)

    return analysis, warnings


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if not args.files and not args.merge:
        parser.error('give at least one XML export or --merge snapshot')

    try:
        analysis, warnings = run(args.files, args.merge)
    except SnapshotImportError as exc:
        print(f'Import failed: {exc}', file=sys.stderr)
        return 1
    except OSError as exc:
        print(f'Could not read input: {exc}', file=sys.stderr)
        return 1

    for w in warnings:
        print(f'Skipped: {w}', file=sys.stderr)
    if analysis is None:
        print('Nothing to analyse.', file=sys.stderr)
        return 1

    print(build_text_summary(analysis))

    if args.out:
        args.out.write_text(export_json(analysis), encoding='utf-8')
        logger.info('Snapshot written to %s', args.out)
    if args.csv:
        args.csv.write_text(export_cycles_csv(analysis.completed_cycles), encoding='utf-8')
        logger.info('Completed cycles written to %s', args.csv)
    return 0


if __name__ == '__main__':
    sys.exit(main())
