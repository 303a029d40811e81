from datetime import UTC, datetime
import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy.orm import Session, sessionmaker

from couponbatch.config import Settings, build_run_config
from couponbatch.pipeline import PipelineRunner


logger = logging.getLogger(__name__)


def current_run_period(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return now.strftime("%Y%m")


def _run_monthly_pipeline(settings: Settings, session_factory: sessionmaker[Session]) -> None:
    config = build_run_config(settings, run_period=current_run_period())

    runner = PipelineRunner(settings, session_factory)
    result = runner.run(config, trigger_source="scheduled")
    if result.status == "failed":
        logger.error(
            "scheduled coupon run failed",
            extra={"run_period": result.run_period, "status": result.status, "error": result.error},
        )
        return
    logger.info(
        "scheduled coupon run completed",
        extra={
            "run_period": result.run_period,
            "status": result.status,
            "written": result.statistics.written,
        },
    )


def start_scheduler(settings: Settings, session_factory: sessionmaker[Session], *, run_now: bool = False) -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    # One job instance at a time: runs for the same period must not overlap.
    scheduler.add_job(
        _run_monthly_pipeline,
        "cron",
        args=[settings, session_factory],
        day=settings.schedule_day,
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="monthly_coupons",
        replace_existing=True,
        max_instances=1,
    )

    logger.info(
        "scheduler started",
        extra={
            "schedule_day": settings.schedule_day,
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
        },
    )

    if run_now:
        _run_monthly_pipeline(settings, session_factory)

    scheduler.start()
