from collections.abc import Iterator
from dataclasses import dataclass
from datetime import date, datetime, time
import logging

from sqlalchemy import Connection, Engine, Select, func, select
from sqlalchemy.engine import Result
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from couponbatch.db_models import Customer
from couponbatch.errors import SourceReadError, is_connectivity_error
from couponbatch.schemas import CandidateRecord


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Selection:
    """Which customers are candidates: enrolled on/after a cutoff with required fields present."""

    enrolled_since: date
    require_fields: bool = True

    @property
    def cutoff(self) -> datetime:
        return datetime.combine(self.enrolled_since, time.min)

    def criteria(self) -> list:
        criteria = [Customer.enroll_dt >= self.cutoff]
        if self.require_fields:
            criteria += [
                Customer.id.is_not(None),
                Customer.email.is_not(None),
                Customer.credit_limit.is_not(None),
            ]
        return criteria

    def admits(self, record: CandidateRecord) -> bool:
        """Client-side twin of the cutoff criterion, for runs that fetch unfiltered."""
        return record.enroll_dt is not None and record.enroll_dt >= self.cutoff


def candidate_query(selection: Selection | None) -> Select:
    stmt = select(
        Customer.id,
        Customer.email,
        Customer.credit_limit,
        Customer.gender,
        Customer.address1,
        Customer.address2,
        Customer.enroll_dt,
    )
    if selection is not None:
        stmt = stmt.where(*selection.criteria())
    return stmt.order_by(Customer.id)


def count_candidates(db: Session | Connection, selection: Selection) -> int:
    stmt = select(func.count()).select_from(Customer).where(*selection.criteria())
    return db.execute(stmt).scalar_one()


class CandidateStream:
    """Forward-only iteration over one open source query.

    Owns its read connection; ``close`` (or leaving the ``with`` block) releases
    the result and the connection on every exit path.
    """

    def __init__(self, engine: Engine, selection: Selection | None, fetch_size: int) -> None:
        self.selection = selection
        self.fetch_size = fetch_size
        self.fetched = 0
        self._connection: Connection | None = None
        self._result: Result | None = None
        try:
            self._connection = engine.connect()
            stmt = candidate_query(selection).execution_options(yield_per=fetch_size)
            self._result = self._connection.execute(stmt)
        except SQLAlchemyError as exc:
            self.close()
            raise SourceReadError(f"could not open candidate query: {exc}") from exc

    def __enter__(self) -> "CandidateStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def rows(self) -> Iterator[CandidateRecord]:
        for chunk in self._partitions(self.fetch_size):
            yield from chunk

    def chunks(self, size: int) -> Iterator[list[CandidateRecord]]:
        if size < 1:
            raise ValueError("chunk size must be positive")
        yield from self._partitions(size)

    def close(self) -> None:
        if self._result is not None:
            self._result.close()
            self._result = None
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def _partitions(self, size: int) -> Iterator[list[CandidateRecord]]:
        if self._result is None:
            raise SourceReadError("candidate stream is closed")
        partitions = self._result.partitions(size)
        while True:
            try:
                rows = next(partitions)
            except StopIteration:
                return
            except SQLAlchemyError as exc:
                kind = "connection lost" if is_connectivity_error(exc) else "fetch failed"
                raise SourceReadError(f"{kind} after {self.fetched} rows: {exc}") from exc
            self.fetched += len(rows)
            yield [CandidateRecord(*row) for row in rows]


class RecordSource:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def open(self, selection: Selection | None, *, fetch_size: int = 1000) -> CandidateStream:
        """Start a fresh pass over the candidates; pass ``None`` to fetch unfiltered."""
        logger.debug(
            "opening candidate stream",
            extra={"filtered": selection is not None, "fetch_size": fetch_size},
        )
        return CandidateStream(self.engine, selection, fetch_size)
