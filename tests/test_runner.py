from datetime import UTC, datetime
import json
from pathlib import Path

from sqlalchemy import select

from couponbatch import scheduler
from couponbatch.config import build_run_config
from couponbatch.db_models import BenchmarkRun
from couponbatch.reporting import summary_line
from couponbatch.run_store import get_run, list_runs


def test_run_is_recorded_in_ledger_and_report(runner, test_settings, temp_workspace: Path, scenario) -> None:
    result = runner.run(build_run_config(test_settings, preset="batched"))

    assert result.status == "succeeded"
    assert result.trigger_source == "manual"
    assert result.reconciliation is not None
    assert result.reconciliation.within_tolerance is True

    report_path = temp_workspace / "outputs" / "reports" / "202506-batched.json"
    assert Path(result.report_path) == report_path
    payload = json.loads(report_path.read_text(encoding="utf-8"))
    assert payload["status"] == "succeeded"
    assert payload["statistics"]["written"] == 5
    assert payload["reconciliation"]["issued"] == 5

    with runner.session_factory() as db:
        run = get_run(db, result.run_id)
        assert run is not None
        assert run.status == "succeeded"
        assert run.strategy == "array_batch"
        assert run.preset == "batched"
        assert run.written == 5
        assert run.completed_at is not None


def test_failed_run_is_still_finalized(runner, test_settings, scenario, monkeypatch) -> None:
    def broken_reset(self, db, run_period):
        raise RuntimeError("sink unavailable")

    monkeypatch.setattr("couponbatch.pipeline.CouponPipeline._reset_sink", broken_reset)

    result = runner.run(build_run_config(test_settings))

    assert result.status == "failed"
    assert result.error == "sink unavailable"
    assert result.statistics.written == 0
    with runner.session_factory() as db:
        run = db.execute(select(BenchmarkRun).where(BenchmarkRun.id == result.run_id)).scalar_one()
        assert run.status == "failed"
        assert run.error == "sink unavailable"


def test_compare_checks_every_preset_against_server_oracle(runner, scenario) -> None:
    comparisons = runner.compare(["naive", "filtered", "prepared", "batched"])

    assert [comparison.label for comparison in comparisons] == ["server", "naive", "filtered", "prepared", "batched"]
    assert all(comparison.matches_oracle for comparison in comparisons)
    assert comparisons[1].result.statistics.fetched == 8
    assert comparisons[2].result.statistics.fetched == 5

    with runner.session_factory() as db:
        assert len(list_runs(db, "202506")) == 5


def test_compare_reports_mismatch(runner, scenario, reject_customer) -> None:
    reject_customer("C003")

    comparisons = runner.compare(["prepared"])

    assert comparisons[0].matches_oracle is False
    assert comparisons[1].matches_oracle is False


def test_summary_line_lists_counters(runner, test_settings, scenario) -> None:
    line = summary_line(runner.run(build_run_config(test_settings, strategy="reused")))

    assert "strategy=reused" in line
    assert "preset=-" in line
    assert "status=succeeded" in line
    assert "written=5" in line


def test_current_run_period_is_year_month() -> None:
    assert scheduler.current_run_period(datetime(2025, 6, 30, 23, 59, tzinfo=UTC)) == "202506"


def test_scheduled_run_uses_current_period(test_settings, session_factory, scenario, monkeypatch) -> None:
    monkeypatch.setattr(scheduler, "current_run_period", lambda now=None: "202611")

    scheduler._run_monthly_pipeline(test_settings, session_factory)

    with session_factory() as db:
        runs = list_runs(db, "202611")
    assert len(runs) == 1
    assert runs[0].trigger_source == "scheduled"
    assert runs[0].status == "succeeded"
    assert runs[0].written == 5
