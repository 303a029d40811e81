from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal


@dataclass(frozen=True)
class CandidateRecord:
    id: str | None
    email: str | None
    credit_limit: Decimal | None
    gender: str | None
    address1: str | None
    address2: str | None
    enroll_dt: datetime | None

    @property
    def is_complete(self) -> bool:
        return self.id is not None and self.email is not None and self.credit_limit is not None

    @property
    def address_fragments(self) -> tuple[str | None, str | None]:
        return (self.address1, self.address2)


@dataclass(frozen=True)
class OutputRecord:
    run_period: str
    customer_id: str
    email: str
    coupon_code: str
    credit_point: Decimal
    send_dt: datetime | None = None

    def as_params(self) -> dict[str, object]:
        return asdict(self)


@dataclass
class RunStatistics:
    """Counters for one run. ``written`` only moves after a successful commit."""

    fetched: int = 0
    processed: int = 0
    skipped: int = 0
    written: int = 0
    errors: int = 0
    commits: int = 0
    batches: int = 0
    rolled_back: int = 0
    aborted: bool = False
    duration_ms: int = 0
    failed_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class CodeSummary:
    coupon_code: str
    count: int
    average_point: Decimal


@dataclass(frozen=True)
class ReconciliationReport:
    run_period: str
    issued: int
    target: int
    ratio_pct: float
    within_tolerance: bool
    by_code: list[CodeSummary]


@dataclass(frozen=True)
class RunResult:
    run_id: int
    run_period: str
    strategy: str
    preset: str | None
    trigger_source: str
    status: str
    statistics: RunStatistics
    error: str | None
    reconciliation: ReconciliationReport | None
    report_path: str | None
