from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Integer, Numeric, PrimaryKeyConstraint, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class Customer(Base):
    __tablename__ = "customer"

    # Source rows may lack an id, so the mapper needs its own key.
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str | None] = mapped_column(String(50), unique=True, index=True, nullable=True)
    email: Mapped[str | None] = mapped_column(String(100), nullable=True)
    credit_limit: Mapped[Decimal | None] = mapped_column(Numeric(9, 2), nullable=True)
    gender: Mapped[str | None] = mapped_column(String(1), nullable=True)
    address1: Mapped[str | None] = mapped_column(String(100), nullable=True)
    address2: Mapped[str | None] = mapped_column(String(100), nullable=True)
    enroll_dt: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)


class BonusCoupon(Base):
    __tablename__ = "bonus_coupon"
    __table_args__ = (PrimaryKeyConstraint("run_period", "customer_id", name="pk_bonus_coupon"),)

    run_period: Mapped[str] = mapped_column(String(6))
    customer_id: Mapped[str] = mapped_column(String(50))
    email: Mapped[str] = mapped_column(String(100))
    coupon_code: Mapped[str] = mapped_column(String(2), index=True)
    credit_point: Mapped[Decimal] = mapped_column(Numeric(9, 2))
    send_dt: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class BenchmarkRun(Base):
    __tablename__ = "benchmark_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_period: Mapped[str] = mapped_column(String(6), index=True)
    strategy: Mapped[str] = mapped_column(String(32))
    preset: Mapped[str | None] = mapped_column(String(32), nullable=True)
    trigger_source: Mapped[str] = mapped_column(String(32), default="manual")
    status: Mapped[str] = mapped_column(String(32), default="running")
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fetched: Mapped[int] = mapped_column(Integer, default=0)
    processed: Mapped[int] = mapped_column(Integer, default=0)
    written: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[int] = mapped_column(Integer, default=0)
    commits: Mapped[int] = mapped_column(Integer, default=0)
    batches: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
