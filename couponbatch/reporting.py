from dataclasses import asdict
import json
from pathlib import Path

from couponbatch.schemas import RunResult


def write_json(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        json.dump(payload, outfile, indent=2, sort_keys=True, default=str)
        outfile.write("\n")


def report_path(output_dir: str, run_period: str, label: str) -> Path:
    return Path(output_dir) / "reports" / f"{run_period}-{label}.json"


def build_report(result: RunResult) -> dict[str, object]:
    return {
        "run_id": result.run_id,
        "run_period": result.run_period,
        "strategy": result.strategy,
        "preset": result.preset,
        "trigger_source": result.trigger_source,
        "status": result.status,
        "error": result.error,
        "statistics": result.statistics.as_dict(),
        "reconciliation": asdict(result.reconciliation) if result.reconciliation else None,
    }


def summary_line(result: RunResult) -> str:
    stats = result.statistics
    return (
        "run_id={run_id} period={period} strategy={strategy} preset={preset} status={status} "
        "fetched={fetched} processed={processed} skipped={skipped} written={written} errors={errors} "
        "commits={commits} batches={batches} duration_ms={duration} report={report}"
    ).format(
        run_id=result.run_id,
        period=result.run_period,
        strategy=result.strategy,
        preset=result.preset or "-",
        status=result.status,
        fetched=stats.fetched,
        processed=stats.processed,
        skipped=stats.skipped,
        written=stats.written,
        errors=stats.errors,
        commits=stats.commits,
        batches=stats.batches,
        duration=stats.duration_ms,
        report=result.report_path,
    )
