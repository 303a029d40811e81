from sqlalchemy import select
from sqlalchemy.orm import Session

from couponbatch.config import RunConfig
from couponbatch.db_models import BenchmarkRun, utc_now
from couponbatch.schemas import RunStatistics


def get_run(db: Session, run_id: int) -> BenchmarkRun | None:
    return db.get(BenchmarkRun, run_id)


def list_runs(db: Session, run_period: str) -> list[BenchmarkRun]:
    stmt = select(BenchmarkRun).where(BenchmarkRun.run_period == run_period).order_by(BenchmarkRun.id)
    return list(db.execute(stmt).scalars().all())


def create_run(db: Session, config: RunConfig, *, trigger_source: str) -> BenchmarkRun:
    run = BenchmarkRun(
        run_period=config.run_period,
        strategy=config.strategy,
        preset=config.preset,
        trigger_source=trigger_source,
        status="running",
        started_at=utc_now(),
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def finish_run(
    db: Session,
    run_id: int,
    *,
    status: str,
    statistics: RunStatistics,
    error: str | None = None,
) -> BenchmarkRun:
    run = db.get(BenchmarkRun, run_id)
    if run is None:
        raise LookupError(f"benchmark run {run_id} not found")

    run.status = status
    run.completed_at = utc_now()
    run.duration_ms = statistics.duration_ms
    run.fetched = statistics.fetched
    run.processed = statistics.processed
    run.written = statistics.written
    run.errors = statistics.errors
    run.commits = statistics.commits
    run.batches = statistics.batches
    run.error = error
    db.commit()
    return run
