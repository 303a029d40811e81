from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
import logging
import time

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from couponbatch.classifier import CouponClassifier
from couponbatch.config import RunConfig, Settings, build_run_config
from couponbatch.db_models import BonusCoupon
from couponbatch.errors import BatchWriteError, CommitError, FatalPipelineError, StatementWriteError, WriteError
from couponbatch.policies import CommitPolicy, ErrorPolicy
from couponbatch.reconcile import coupon_multiset, reconcile
from couponbatch.reporting import build_report, report_path, write_json
from couponbatch.run_store import create_run, finish_run
from couponbatch.schemas import CandidateRecord, OutputRecord, ReconciliationReport, RunResult, RunStatistics
from couponbatch.source import CandidateStream, RecordSource, Selection
from couponbatch.writers import RowWriteStrategy, ServerResidentWriter, build_writer


logger = logging.getLogger(__name__)


@dataclass
class _RunState:
    config: RunConfig
    selection: Selection
    commits: CommitPolicy
    errors: ErrorPolicy
    stats: RunStatistics = field(default_factory=RunStatistics)


def run_status(stats: RunStatistics) -> str:
    if stats.aborted:
        return "aborted"
    if stats.errors:
        return "completed_with_errors"
    return "succeeded"


class CouponPipeline:
    """Streams candidates through the classifier into one write strategy.

    Runs for the same run period must not overlap: each run deletes the
    period's rows before writing.
    """

    def __init__(self, session_factory: sessionmaker[Session], classifier: CouponClassifier) -> None:
        self.session_factory = session_factory
        self.classifier = classifier

    def execute(self, config: RunConfig) -> RunStatistics:
        state = _RunState(
            config=config,
            selection=Selection(config.enrolled_since),
            commits=CommitPolicy(config.commit_window),
            errors=ErrorPolicy(config.error_ceiling),
        )
        started = time.monotonic()
        try:
            with self.session_factory() as db:
                self._execute(db, state)
        finally:
            state.stats.duration_ms = int((time.monotonic() - started) * 1000)
        return state.stats

    def _execute(self, db: Session, state: _RunState) -> None:
        config = state.config
        try:
            self._reset_sink(db, config.run_period)
            writer = build_writer(
                config.strategy,
                db,
                batch_size=config.batch_size,
                isolate_failures=config.isolate_batch_failures,
                classifier=self.classifier,
                run_period=config.run_period,
            )
            logger.info(
                "pipeline run started",
                extra={"run_period": config.run_period, "strategy": writer.name, "mode": writer.description},
            )
            with writer:
                if writer.server_resident:
                    self._run_set_based(db, writer, state)
                else:
                    source = RecordSource(db.get_bind())
                    selection = state.selection if config.filter_at_source else None
                    with source.open(selection, fetch_size=config.fetch_size) as stream:
                        self._run_row_wise(db, writer, stream, state)
        except FatalPipelineError as exc:
            self._rollback(db, state)
            exc.statistics = state.stats
            raise
        except SQLAlchemyError as exc:
            self._rollback(db, state)
            raise FatalPipelineError(f"run failed: {exc}", state.stats) from exc

        logger.info(
            "pipeline run finished",
            extra={
                "run_period": config.run_period,
                "strategy": config.strategy,
                "processed": state.stats.processed,
                "written": state.stats.written,
                "errors": state.stats.errors,
                "commits": state.stats.commits,
            },
        )

    def _reset_sink(self, db: Session, run_period: str) -> None:
        try:
            result = db.execute(delete(BonusCoupon).where(BonusCoupon.run_period == run_period))
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise FatalPipelineError(f"could not reset coupons for {run_period}: {exc}") from exc
        logger.info("coupon sink reset", extra={"run_period": run_period, "deleted": result.rowcount})

    def _run_row_wise(self, db: Session, writer: RowWriteStrategy, stream: CandidateStream, state: _RunState) -> None:
        for unit in self._units(writer, stream, state.config):
            state.stats.fetched = stream.fetched
            for record in unit:
                output = self._classify(record, state)
                if output is not None:
                    self._submit(db, state, lambda: writer.write(output))
                if state.stats.aborted:
                    break
            if state.stats.aborted:
                break
            if writer.consumes_chunks:
                # Keep write batches aligned with fetched chunks.
                self._submit(db, state, writer.flush)

        state.stats.fetched = stream.fetched
        self._submit(db, state, writer.flush)
        self._commit(db, state)

    def _run_set_based(self, db: Session, writer: ServerResidentWriter, state: _RunState) -> None:
        state.stats.processed = writer.count_candidates(state.selection)
        try:
            inserted = writer.insert_from_source(state.selection)
        except StatementWriteError as exc:
            self._record_failure(state, exc)
            return
        state.stats.batches += 1
        state.commits.record(inserted)
        self._commit(db, state)

    def _units(self, writer: RowWriteStrategy, stream: CandidateStream, config: RunConfig) -> Iterator[list[CandidateRecord]]:
        if writer.consumes_chunks:
            yield from stream.chunks(config.batch_size)
            return
        for record in stream.rows():
            yield [record]

    def _classify(self, record: CandidateRecord, state: _RunState) -> OutputRecord | None:
        stats = state.stats
        if not state.config.filter_at_source and not state.selection.admits(record):
            return None
        if not record.is_complete:
            stats.skipped += 1
            logger.debug("incomplete candidate skipped", extra={"customer_id": record.id})
            return None

        stats.processed += 1
        interval = state.config.progress_interval
        if interval and stats.processed % interval == 0:
            logger.info(
                "progress",
                extra={"processed": stats.processed, "written": stats.written, "errors": stats.errors},
            )

        code = self.classifier.classify(record.credit_limit, record.gender, record.address_fragments)
        if code is None:
            return None
        return OutputRecord(
            run_period=state.config.run_period,
            customer_id=record.id,
            email=record.email,
            coupon_code=code,
            credit_point=record.credit_limit,
        )

    def _submit(self, db: Session, state: _RunState, call: Callable[[], int]) -> None:
        try:
            rows = call()
        except WriteError as exc:
            self._record_failure(state, exc)
            rows = exc.written if isinstance(exc, BatchWriteError) else 0
        else:
            if rows:
                state.stats.batches += 1
        if rows:
            state.commits.record(rows)
            if state.commits.due():
                self._commit(db, state)

    def _record_failure(self, state: _RunState, exc: WriteError) -> None:
        stats = state.stats
        decision = state.errors.record(exc)
        stats.errors = state.errors.errors
        stats.batches += 1
        stats.failed_ids.extend(exc.failed_ids)
        logger.warning(
            "write unit failed",
            extra={"error": str(exc), "failed": decision.counted, "errors": stats.errors},
        )
        if decision.abort:
            stats.aborted = True

    def _commit(self, db: Session, state: _RunState) -> None:
        if not state.commits.is_open:
            return
        pending = state.commits.pending
        try:
            db.commit()
        except SQLAlchemyError as exc:
            raise CommitError(f"commit of {pending} rows failed: {exc}") from exc
        state.stats.written += state.commits.take()
        state.stats.commits += 1
        logger.debug("committed", extra={"rows": pending, "written": state.stats.written})

    def _rollback(self, db: Session, state: _RunState) -> None:
        try:
            db.rollback()
        except SQLAlchemyError:
            logger.exception("rollback failed")
        discarded = state.commits.discard()
        state.stats.rolled_back += discarded
        logger.error("open commit window rolled back", extra={"rows": discarded})


@dataclass(frozen=True)
class Comparison:
    label: str
    result: RunResult
    matches_oracle: bool


class PipelineRunner:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        classifier: CouponClassifier | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.classifier = classifier or CouponClassifier.with_exception(
            settings.special_category, settings.special_address_terms
        )
        self.pipeline = CouponPipeline(session_factory, self.classifier)

    def run(self, config: RunConfig, *, trigger_source: str = "manual") -> RunResult:
        with self.session_factory() as db:
            run = create_run(db, config, trigger_source=trigger_source)
            run_id = run.id

        error: str | None = None
        try:
            stats = self.pipeline.execute(config)
            status = run_status(stats)
        except Exception as exc:
            stats = getattr(exc, "statistics", None) or RunStatistics()
            status = "failed"
            error = str(exc)
            logger.exception("pipeline run failed", extra={"run_period": config.run_period, "strategy": config.strategy})

        reconciliation = self._reconcile(config)
        with self.session_factory() as db:
            finish_run(db, run_id, status=status, statistics=stats, error=error)

        label = config.preset or config.strategy
        path = report_path(self.settings.output_dir, config.run_period, label)
        result = RunResult(
            run_id=run_id,
            run_period=config.run_period,
            strategy=config.strategy,
            preset=config.preset,
            trigger_source=trigger_source,
            status=status,
            statistics=stats,
            error=error,
            reconciliation=reconciliation,
            report_path=str(path),
        )
        write_json(path, build_report(result))
        return result

    def compare(self, presets: list[str], *, run_period: str | None = None) -> list[Comparison]:
        """Run each preset on the same data and check it against the server-resident oracle."""
        oracle_config = build_run_config(self.settings, preset="server", run_period=run_period)
        oracle = self.run(oracle_config)
        expected = self._multiset(oracle_config.run_period)
        comparisons = [Comparison("server", oracle, oracle.status == "succeeded")]

        for preset in presets:
            if preset == "server":
                continue
            config = build_run_config(self.settings, preset=preset, run_period=run_period)
            result = self.run(config)
            matches = result.status == "succeeded" and self._multiset(config.run_period) == expected
            if not matches:
                logger.warning("strategy output differs from oracle", extra={"preset": preset, "status": result.status})
            comparisons.append(Comparison(preset, result, matches))
        return comparisons

    def _multiset(self, run_period: str) -> list[tuple]:
        with self.session_factory() as db:
            return coupon_multiset(db, run_period)

    def _reconcile(self, config: RunConfig) -> ReconciliationReport | None:
        try:
            with self.session_factory() as db:
                return reconcile(
                    db,
                    config.run_period,
                    Selection(config.enrolled_since),
                    tolerance_pct=self.settings.reconcile_tolerance_pct,
                )
        except SQLAlchemyError:
            logger.exception("reconciliation failed", extra={"run_period": config.run_period})
            return None

