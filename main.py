from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from dotenv import load_dotenv

from schoolgate.audit.analyzer import LogAnalyzer
from schoolgate.core.config import AppConfig
from schoolgate.core.logging import setup_logging

LOGGER = logging.getLogger(__name__)
APP_ROOT = Path(__file__).resolve().parent


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and maintain persisted audit logs.")
    sub = parser.add_subparsers(dest="command", required=True)

    stats = sub.add_parser("stats", help="Counters by level, channel and day")
    stats.add_argument("--days", type=int, default=7)

    anomalies = sub.add_parser("anomalies", help="Error spikes, noisy IPs and slow queries")
    anomalies.add_argument("--hours", type=int, default=24)

    report = sub.add_parser("report", help="Summary report between two dates")
    report.add_argument("--start", required=True, help="YYYY-MM-DD")
    report.add_argument("--end", required=True, help="YYYY-MM-DD")
    report.add_argument("--channel", action="append", default=[])
    report.add_argument("--level", action="append", default=[])
    report.add_argument("--details", action="store_true")

    search = sub.add_parser("search", help="List matching entries, newest first")
    search.add_argument("--level", default="")
    search.add_argument("--channel", default="")
    search.add_argument("--user-id", default="")
    search.add_argument("--search", default="")
    search.add_argument("--limit", type=int, default=50)

    export = sub.add_parser("export", help="Export entries between two dates")
    export.add_argument("--start", required=True, help="YYYY-MM-DD")
    export.add_argument("--end", required=True, help="YYYY-MM-DD")
    export.add_argument("--format", choices=["json", "csv"], default="json")
    export.add_argument("--output", default="", help="Write to file instead of stdout")

    cleanup = sub.add_parser("cleanup", help="Delete entries older than N days")
    cleanup.add_argument("--days", type=int, default=90)
    return parser


def run(args: argparse.Namespace, analyzer: LogAnalyzer) -> str:
    if args.command == "stats":
        return json.dumps(analyzer.statistics(args.days), ensure_ascii=False, indent=2)
    if args.command == "anomalies":
        return json.dumps(analyzer.detect_anomalies(args.hours), ensure_ascii=False, indent=2)
    if args.command == "report":
        report = analyzer.generate_report(
            args.start,
            args.end,
            channels=args.channel,
            levels=args.level,
            include_details=args.details,
        )
        return json.dumps(report, ensure_ascii=False, indent=2)
    if args.command == "search":
        filters = {
            "level": args.level,
            "channel": args.channel,
            "user_id": args.user_id,
            "search": args.search,
        }
        return json.dumps(analyzer.query(filters, limit=args.limit), ensure_ascii=False, indent=2)
    if args.command == "export":
        body = analyzer.export(args.start, args.end, args.format)
        if args.output:
            Path(args.output).write_text(body, encoding="utf-8")
            return f"Exported to {args.output}"
        return body
    deleted = analyzer.cleanup(args.days)
    return f"Deleted {deleted} entries older than {args.days} days"


def main() -> None:
    load_dotenv()
    config = AppConfig.from_env()
    setup_logging(config.logging.level)
    args = build_parser().parse_args()

    analyzer = LogAnalyzer((APP_ROOT / config.state_db_path).resolve())
    try:
        print(run(args, analyzer))
    finally:
        analyzer.close()


if __name__ == "__main__":
    main()
