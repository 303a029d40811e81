"""
Write strategies for persisting classified coupons.

All four produce the same ``bonus_coupon`` rows and differ only in how they
are submitted:

- ``per_row``: a fresh insert per record with compiled-statement caching off
- ``reused``: one insert prepared when the writer opens, one row per execute
- ``array_batch``: buffered records submitted as one executemany
- ``server``: a single INSERT ... SELECT that classifies on the server

Every submission runs inside a SAVEPOINT so a failed unit leaves nothing
behind in the open commit window.
"""

import abc
from collections.abc import Callable, Sequence
import logging

from sqlalchemy import Insert, insert, literal, null, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from couponbatch.classifier import CouponClassifier
from couponbatch.db_models import BonusCoupon, Customer
from couponbatch.errors import (
    BatchWriteError,
    ConnectivityError,
    RowWriteError,
    StatementWriteError,
    is_connectivity_error,
    map_write_error,
)
from couponbatch.pushdown import address_expression, coupon_code_expression
from couponbatch.schemas import OutputRecord
from couponbatch.source import Selection, count_candidates


logger = logging.getLogger(__name__)

SINK_COLUMNS = ("run_period", "customer_id", "email", "coupon_code", "credit_point", "send_dt")


class WriteStrategy:
    """Submission mode for output records; opened and closed around one run."""

    name: str
    description: str
    server_resident = False

    def __init__(self, db: Session) -> None:
        self.db = db
        self.table = BonusCoupon.__table__

    def __enter__(self) -> "WriteStrategy":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass


class RowWriteStrategy(WriteStrategy, abc.ABC):
    """Writer fed one output record at a time by the pipeline.

    ``write`` returns how many rows it submitted on this call (0 when the
    record was only buffered). Failures raise ``WriteError`` subclasses scoped
    to the unit, or ``ConnectivityError`` when the connection is gone.
    """

    consumes_chunks = False

    @abc.abstractmethod
    def write(self, record: OutputRecord) -> int:
        raise NotImplementedError

    def flush(self) -> int:
        return 0

    def _submit(self, records: Sequence[OutputRecord], execute: Callable[[], object], *, batch: bool = False) -> int:
        try:
            with self.db.begin_nested():
                execute()
        except SQLAlchemyError as exc:
            raise map_write_error(exc, records, batch=batch) from exc
        return len(records)


class PerRowWriter(RowWriteStrategy):
    name = "per_row"
    description = "new insert statement per row, no compiled-plan reuse"

    def write(self, record: OutputRecord) -> int:
        stmt = insert(self.table).values(**record.as_params())
        return self._submit(
            [record],
            lambda: self.db.execute(stmt, execution_options={"compiled_cache": None}),
        )


class ReusedStatementWriter(RowWriteStrategy):
    name = "reused"
    description = "insert prepared once, fresh parameters bound per row"

    def __init__(self, db: Session) -> None:
        super().__init__(db)
        self._statement: Insert | None = None

    def open(self) -> None:
        super().open()
        # Built once; every execute after the first is a compiled-cache hit.
        self._statement = insert(self.table)

    def close(self) -> None:
        self._statement = None
        super().close()

    def write(self, record: OutputRecord) -> int:
        if self._statement is None:
            raise RuntimeError("writer is not open")
        stmt = self._statement
        return self._submit([record], lambda: self.db.execute(stmt, record.as_params()))


class ArrayBatchWriter(RowWriteStrategy):
    name = "array_batch"
    description = "rows buffered and submitted as one array-bound executemany"
    consumes_chunks = True

    def __init__(self, db: Session, batch_size: int, *, isolate_failures: bool = False) -> None:
        super().__init__(db)
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.batch_size = batch_size
        self.isolate_failures = isolate_failures
        self._buffer: list[OutputRecord] = []

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def close(self) -> None:
        if self._buffer:
            logger.warning("discarding unflushed batch", extra={"rows": len(self._buffer)})
            self._buffer.clear()
        super().close()

    def write(self, record: OutputRecord) -> int:
        self._buffer.append(record)
        if len(self._buffer) >= self.batch_size:
            return self.flush()
        return 0

    def flush(self) -> int:
        if not self._buffer:
            return 0
        batch = list(self._buffer)
        self._buffer.clear()
        params = [record.as_params() for record in batch]
        try:
            return self._submit(batch, lambda: self.db.execute(insert(self.table), params), batch=True)
        except BatchWriteError as exc:
            if not self.isolate_failures:
                raise
            return self._isolate(batch, exc)

    def _isolate(self, batch: list[OutputRecord], batch_error: BatchWriteError) -> int:
        """Replay a failed batch row by row to name the offending rows."""
        failed: list[str] = []
        written = 0
        for record in batch:
            try:
                self._submit([record], lambda: self.db.execute(insert(self.table), record.as_params()))
            except RowWriteError:
                failed.append(record.customer_id)
                continue
            written += 1
        if not failed:
            # The batch failure did not reproduce row by row.
            return written
        raise BatchWriteError(
            f"{len(failed)} of {len(batch)} rows failed: {batch_error}",
            batch,
            failed_ids=failed,
            written=written,
        ) from batch_error


class ServerResidentWriter(WriteStrategy):
    name = "server"
    description = "single INSERT ... SELECT classifying on the server"
    server_resident = True

    def __init__(self, db: Session, classifier: CouponClassifier, run_period: str) -> None:
        super().__init__(db)
        self.classifier = classifier
        self.run_period = run_period

    def build_statement(self, selection: Selection) -> Insert:
        code = coupon_code_expression(
            self.classifier,
            Customer.credit_limit,
            Customer.gender,
            address_expression(Customer.address1, Customer.address2),
        )
        calc = (
            select(Customer.id, Customer.email, Customer.credit_limit, code.label("coupon_code"))
            .where(*selection.criteria())
            .subquery("coupon_calc")
        )
        rows = select(
            literal(self.run_period),
            calc.c.id,
            calc.c.email,
            calc.c.coupon_code,
            calc.c.credit_limit,
            null(),
        ).where(calc.c.coupon_code.is_not(None))
        return insert(self.table).from_select(list(SINK_COLUMNS), rows)

    def insert_from_source(self, selection: Selection) -> int:
        stmt = self.build_statement(selection)
        try:
            with self.db.begin_nested():
                result = self.db.execute(stmt)
        except SQLAlchemyError as exc:
            if is_connectivity_error(exc):
                raise ConnectivityError(f"connection lost during set insert: {exc}") from exc
            raise StatementWriteError(f"set insert failed: {exc}", []) from exc
        return result.rowcount

    def count_candidates(self, selection: Selection) -> int:
        return count_candidates(self.db, selection)


def build_writer(
    strategy: str,
    db: Session,
    *,
    batch_size: int = 1000,
    isolate_failures: bool = False,
    classifier: CouponClassifier | None = None,
    run_period: str | None = None,
) -> WriteStrategy:
    if strategy == PerRowWriter.name:
        return PerRowWriter(db)
    if strategy == ReusedStatementWriter.name:
        return ReusedStatementWriter(db)
    if strategy == ArrayBatchWriter.name:
        return ArrayBatchWriter(db, batch_size, isolate_failures=isolate_failures)
    if strategy == ServerResidentWriter.name:
        if classifier is None or run_period is None:
            raise ValueError("server-resident writer needs the classifier and run period")
        return ServerResidentWriter(db, classifier, run_period)
    raise ValueError(f"unknown write strategy '{strategy}'")
