from dataclasses import dataclass
import logging

from couponbatch.errors import WriteError


logger = logging.getLogger(__name__)


class CommitPolicy:
    """Tracks uncommitted writes and says when a commit boundary is due.

    ``window`` of 1 commits after every write, N after every N written rows,
    None only at run end.
    """

    def __init__(self, window: int | None) -> None:
        if window is not None and window < 1:
            raise ValueError("commit window must be positive or None")
        self.window = window
        self.pending = 0

    @property
    def is_open(self) -> bool:
        return self.pending > 0

    def record(self, rows: int) -> None:
        self.pending += rows

    def due(self) -> bool:
        return self.window is not None and self.pending >= self.window

    def take(self) -> int:
        """Close the window after a successful commit; returns the rows made durable."""
        rows, self.pending = self.pending, 0
        return rows

    def discard(self) -> int:
        """Drop the window after a rollback; returns the rows lost."""
        return self.take()


@dataclass
class ErrorDecision:
    counted: int
    abort: bool


class ErrorPolicy:
    """Counts isolated failures and trips once the ceiling is exceeded.

    No failed unit is ever retried here.
    """

    def __init__(self, ceiling: int) -> None:
        self.ceiling = ceiling
        self.errors = 0

    @property
    def tripped(self) -> bool:
        return self.errors > self.ceiling

    def record(self, error: WriteError) -> ErrorDecision:
        counted = error.error_count
        self.errors += counted
        if self.tripped:
            logger.error(
                "error ceiling exceeded, aborting run",
                extra={"errors": self.errors, "ceiling": self.ceiling},
            )
        return ErrorDecision(counted=counted, abort=self.tripped)
