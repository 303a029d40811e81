"""
Error taxonomy for the coupon pipeline.

Row, batch and statement failures are absorbed by the pipeline and counted.
Fatal failures roll back the open commit window and propagate to the caller
carrying the partial statistics of the run.
"""

from collections.abc import Sequence

from sqlalchemy import exc as sa_exc

from couponbatch.schemas import OutputRecord, RunStatistics


class PipelineError(Exception):
    """Base error for the coupon pipeline."""

    pass


class FatalPipelineError(PipelineError):
    """Aborts the run immediately, regardless of the error ceiling."""

    def __init__(self, message: str, statistics: RunStatistics | None = None) -> None:
        super().__init__(message)
        self.statistics = statistics


class ConnectivityError(FatalPipelineError):
    """The store connection was lost or invalidated."""

    pass


class SourceReadError(FatalPipelineError):
    """Fetching candidate rows failed mid-stream."""

    pass


class CommitError(FatalPipelineError):
    """A commit boundary failed; the pending window is rolled back."""

    pass


class WriteError(PipelineError):
    """A unit of work failed to write. Counted and isolated, never fatal."""

    def __init__(self, message: str, records: Sequence[OutputRecord], failed_ids: Sequence[str] | None = None) -> None:
        super().__init__(message)
        self.records = list(records)
        self.failed_ids = list(failed_ids) if failed_ids is not None else [r.customer_id for r in records]

    @property
    def error_count(self) -> int:
        return len(self.failed_ids)


class RowWriteError(WriteError):
    pass


class BatchWriteError(WriteError):
    """Some or all rows of an array-bound submission failed.

    ``failed_ids`` names the offending rows when the batch was isolated,
    otherwise every row of the batch. ``written`` counts rows of the batch that
    were kept.
    """

    def __init__(
        self,
        message: str,
        records: Sequence[OutputRecord],
        failed_ids: Sequence[str] | None = None,
        written: int = 0,
    ) -> None:
        super().__init__(message, records, failed_ids)
        self.written = written


class StatementWriteError(WriteError):
    """The server-resident set statement failed as a whole."""

    @property
    def error_count(self) -> int:
        return 1


def is_connectivity_error(e: BaseException) -> bool:
    if isinstance(e, sa_exc.DisconnectionError):
        return True
    return isinstance(e, sa_exc.DBAPIError) and e.connection_invalidated


def map_write_error(e: Exception, records: Sequence[OutputRecord], *, batch: bool = False) -> PipelineError:
    if is_connectivity_error(e):
        return ConnectivityError(f"connection lost during write: {e}")
    if batch:
        return BatchWriteError(f"batch of {len(records)} rows failed: {e}", records)
    ids = ", ".join(r.customer_id for r in records)
    return RowWriteError(f"write failed for {ids}: {e}", records)
