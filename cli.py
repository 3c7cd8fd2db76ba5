#!/usr/bin/env python3
"""
Command line entry point for the funnel & cohort analytics engine.

Runs an analysis over an event file (CSV, Parquet or JSON lines) and prints
the JSON response. The file is served by two in-memory backends, a Polars one
as primary and a Pandas one as fallback, so results carry the same status
fields a deployed engine returns.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from analytics_core import (
    AnalyticsEngine,
    AnalyticsError,
    Backend,
    BackendSet,
    EngineSettings,
    FunnelConfigManager,
    InMemoryDefinitionStore,
    InMemoryEventStore,
    JsonDefinitionStore,
)
from logging_config import setup_enhanced_logging
from models import WindowAnchor

logger = logging.getLogger("funnel_analytics.cli")


def build_engine(events_path: str, definitions_path: Optional[str], settings: EngineSettings):
    primary_store = InMemoryEventStore.load_from_file(
        events_path, frame_type="polars", name="memory-polars"
    )
    fallback_store = InMemoryEventStore(
        primary_store.events, frame_type="pandas", name="memory-pandas"
    )
    backends = BackendSet(
        primary=Backend("memory-polars", primary_store, use_polars=True),
        fallback=Backend("memory-pandas", fallback_store, use_polars=False),
    )
    if definitions_path:
        definitions = JsonDefinitionStore(definitions_path)
    else:
        definitions = InMemoryDefinitionStore()
    return AnalyticsEngine(backends, definitions, settings=settings)


def _range_kwargs(args) -> dict:
    return {
        "start_date": args.start_date,
        "end_date": args.end_date,
        "time_range": args.time_range,
        "site_id": args.site_id,
    }


def run_funnel(args, settings: EngineSettings) -> dict:
    with build_engine(args.events, args.definitions, settings) as engine:
        anchor = WindowAnchor(args.window_anchor) if args.window_anchor else None
        if args.trends:
            outcome = engine.get_funnel_trends(
                args.organization,
                args.funnel_id,
                granularity=args.trends,
                window_hours=args.window_hours,
                window_anchor=anchor,
                **_range_kwargs(args),
            )
            return {
                "status": outcome.status.value,
                "backend": outcome.backend,
                "error": outcome.error,
                "trends": [
                    {"period_start": p.period_start.isoformat(), **p.result.to_dict()}
                    for p in outcome.value
                ],
            }
        if args.segment_by:
            outcome = engine.get_funnel_segments(
                args.organization,
                args.funnel_id,
                args.segment_by,
                window_hours=args.window_hours,
                window_anchor=anchor,
                **_range_kwargs(args),
            )
            return {
                "status": outcome.status.value,
                "backend": outcome.backend,
                "error": outcome.error,
                "segment_by": outcome.value.segment_by,
                "segments": {k: r.to_dict() for k, r in outcome.value.segments.items()},
                "statistical_tests": [vars(t) for t in outcome.value.statistical_tests],
            }
        result = engine.analyze_funnel(
            args.organization,
            args.funnel_id,
            window_hours=args.window_hours,
            window_anchor=anchor,
            **_range_kwargs(args),
        )
        return result.to_dict()


def run_cohort(args, settings: EngineSettings):
    definition = FunnelConfigManager.load_cohort_definition(
        Path(args.definition).read_text(encoding="utf-8")
    )
    with build_engine(args.events, None, settings) as engine:
        if args.export:
            outcome = engine.export_cohort_data(
                args.organization, definition, fmt=args.export, **_range_kwargs(args)
            )
            return outcome.value
        return engine.analyze_cohorts(args.organization, definition, **_range_kwargs(args)).to_dict()


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--events", required=True, help="Event file (.csv, .parquet, .jsonl)")
    parser.add_argument("--organization", required=True, help="Organization id to scope the scan")
    parser.add_argument("--start-date", help="ISO start date (inclusive)")
    parser.add_argument("--end-date", help="ISO end date (inclusive)")
    parser.add_argument("--time-range", help="Relative range: 1h, 24h, 7d, 30d, 90d, 180d, 365d")
    parser.add_argument("--site-id", help="Restrict the scan to one site")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="funnel-analytics",
        description="Funnel & Cohort Analytics Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  funnel-analytics funnel --events events.csv --definitions funnels.json \\
      --organization org_1 --funnel-id signup --time-range 30d
  funnel-analytics funnel ... --trends week
  funnel-analytics funnel ... --segment-by platform
  funnel-analytics cohort --events events.parquet --definition cohort.json \\
      --organization org_1 --start-date 2024-01-01 --end-date 2024-03-31
  funnel-analytics cohort ... --export csv
        """,
    )
    parser.add_argument("--log-level", default="WARNING", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--log-file", help="Also write a debug log to this file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    funnel = subparsers.add_parser("funnel", help="Per-step funnel conversion")
    _add_common_arguments(funnel)
    funnel.add_argument("--definitions", required=True, help="Funnel definitions JSON file")
    funnel.add_argument("--funnel-id", required=True)
    funnel.add_argument("--window-hours", type=int, help="Override the conversion window")
    funnel.add_argument(
        "--window-anchor", choices=[a.value for a in WindowAnchor], help="Window measured from"
    )
    funnel.add_argument(
        "--trends", choices=["hour", "day", "week", "month"], help="Funnel per time bucket"
    )
    funnel.add_argument("--segment-by", help="Funnel per value of this event property")

    cohort = subparsers.add_parser("cohort", help="Retention or revenue cohorts")
    _add_common_arguments(cohort)
    cohort.add_argument("--definition", required=True, help="Cohort definition JSON file")
    cohort.add_argument("--export", choices=["csv", "json"], help="Print the cohort table instead")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_enhanced_logging(
        level=args.log_level,
        enable_file_logging=bool(args.log_file),
        log_file_path=args.log_file or "funnel_analytics.log",
    )
    settings = EngineSettings.from_env()

    try:
        if args.command == "funnel":
            output = run_funnel(args, settings)
        else:
            output = run_cohort(args, settings)
    except AnalyticsError as e:
        logger.error(f"{type(e).__name__}: {e}")
        print(json.dumps({"error": str(e), "type": type(e).__name__}), file=sys.stderr)
        return 2
    except OSError as e:
        logger.error(f"Cannot read input: {e}")
        return 1

    if isinstance(output, str):
        sys.stdout.write(output)
    else:
        print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
