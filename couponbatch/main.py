import argparse
from datetime import date
import logging

from couponbatch.config import PRESETS, WRITE_STRATEGIES, build_run_config, get_settings
from couponbatch.database import build_session_factory
from couponbatch.pipeline import PipelineRunner
from couponbatch.reconcile import reconcile
from couponbatch.reporting import summary_line
from couponbatch.scheduler import start_scheduler
from couponbatch.source import Selection


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--run-period", required=False, help="Run-period key, e.g. 202506")
    parser.add_argument("--enrolled-since", required=False, help="Cutoff date in YYYY-MM-DD format")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Classify customers into bonus coupons")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="run one pipeline execution")
    _add_run_options(run_parser)
    run_parser.add_argument("--preset", choices=sorted(PRESETS), help="start from a variant preset")
    run_parser.add_argument("--strategy", choices=WRITE_STRATEGIES, help="write strategy")
    run_parser.add_argument("--fetch-size", type=int, help="rows prefetched per round trip")
    run_parser.add_argument("--batch-size", type=int, help="rows per array-bound submission")
    run_parser.add_argument("--commit-window", type=int, help="rows per commit, 0 commits once at the end")
    run_parser.add_argument("--error-ceiling", type=int, help="abort after this many failed rows")
    run_parser.add_argument(
        "--client-filter",
        action="store_true",
        help="fetch every customer and filter in the client (benchmark anti-pattern)",
    )
    run_parser.add_argument(
        "--isolate-batch-failures",
        action="store_true",
        help="replay failed batches row by row to name the offending rows",
    )

    compare_parser = subparsers.add_parser("compare", help="run presets and compare against the set-based oracle")
    compare_parser.add_argument("--run-period", required=False, help="Run-period key, e.g. 202506")
    compare_parser.add_argument(
        "--presets",
        nargs="+",
        choices=sorted(PRESETS),
        default=["naive", "filtered", "prepared", "batched"],
        help="presets to compare",
    )

    reconcile_parser = subparsers.add_parser("reconcile", help="check issued coupons against the target count")
    _add_run_options(reconcile_parser)

    schedule_parser = subparsers.add_parser("schedule", help="start the monthly scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    session_factory = build_session_factory(settings.database_url)
    if args.command == "schedule":
        start_scheduler(settings, session_factory, run_now=args.run_now)
        return

    runner = PipelineRunner(settings, session_factory)
    enrolled_since = date.fromisoformat(args.enrolled_since) if getattr(args, "enrolled_since", None) else None

    if args.command == "reconcile":
        run_period = args.run_period or settings.run_period
        selection = Selection(enrolled_since or settings.enrolled_since)
        with session_factory() as db:
            report = reconcile(db, run_period, selection, tolerance_pct=settings.reconcile_tolerance_pct)
        for summary in report.by_code:
            print(f"code={summary.coupon_code} count={summary.count} average_point={summary.average_point}")
        print(
            f"period={report.run_period} issued={report.issued} target={report.target} "
            f"ratio_pct={report.ratio_pct} within_tolerance={report.within_tolerance}"
        )
        return

    if args.command == "compare":
        comparisons = runner.compare(args.presets, run_period=args.run_period)
        for comparison in comparisons:
            print(f"{summary_line(comparison.result)} matches_oracle={comparison.matches_oracle}")
        if not all(comparison.matches_oracle for comparison in comparisons):
            raise SystemExit(1)
        return

    config = build_run_config(
        settings,
        preset=args.preset,
        run_period=args.run_period,
        enrolled_since=enrolled_since,
        strategy=args.strategy,
        fetch_size=args.fetch_size,
        batch_size=args.batch_size,
        commit_window=args.commit_window,
        error_ceiling=args.error_ceiling,
        filter_at_source=False if args.client_filter else None,
        isolate_batch_failures=True if args.isolate_batch_failures else None,
    )
    result = runner.run(config)

    print(summary_line(result))
    if result.status == "failed":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
