from collections.abc import Callable, Generator
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from couponbatch.config import Settings
from couponbatch.database import build_session_factory
from couponbatch.db_models import Customer
from couponbatch.pipeline import PipelineRunner


ENROLLED = datetime(2020, 3, 15, 9, 30)

# limits [500, 2500, 3500 (address misses a term), 3500 (F + both terms), 5000]
SCENARIO_CUSTOMERS = [
    {"id": "C001", "email": "c001@example.com", "credit_limit": Decimal("500.00"), "gender": "M",
     "address1": "서울시 강남구", "address2": "역삼동", "enroll_dt": ENROLLED},
    {"id": "C002", "email": "c002@example.com", "credit_limit": Decimal("2500.00"), "gender": "F",
     "address1": "서울시 송파구", "address2": "풍납1동", "enroll_dt": ENROLLED},
    {"id": "C003", "email": "c003@example.com", "credit_limit": Decimal("3500.00"), "gender": "F",
     "address1": "서울시 송파구", "address2": "잠실동", "enroll_dt": ENROLLED},
    {"id": "C004", "email": "c004@example.com", "credit_limit": Decimal("3500.00"), "gender": "F",
     "address1": "서울시 송파구", "address2": "풍납1동 12-3", "enroll_dt": ENROLLED},
    {"id": "C005", "email": "c005@example.com", "credit_limit": Decimal("5000.00"), "gender": "M",
     "address1": None, "address2": None, "enroll_dt": ENROLLED},
]

# Rows the selection must exclude.
EXCLUDED_CUSTOMERS = [
    {"id": "C006", "email": "c006@example.com", "credit_limit": Decimal("700.00"), "gender": "M",
     "address1": "부산시", "address2": None, "enroll_dt": datetime(2012, 12, 31, 23, 59)},
    {"id": "C007", "email": None, "credit_limit": Decimal("1200.00"), "gender": "F",
     "address1": "대구시", "address2": None, "enroll_dt": ENROLLED},
    {"id": None, "email": "anon@example.com", "credit_limit": Decimal("1500.00"), "gender": "M",
     "address1": "광주시", "address2": None, "enroll_dt": ENROLLED},
]


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="couponbatch",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        output_dir=str(temp_workspace / "outputs"),
        run_period="202506",
        enrolled_since=date(2013, 1, 1),
        write_strategy="per_row",
        fetch_size=2,
        batch_size=2,
        commit_window=2,
        error_ceiling=1000,
        filter_at_source=True,
        isolate_batch_failures=False,
        special_category="F",
        special_address_terms=("송파구", "풍납1동"),
        reconcile_tolerance_pct=1.0,
        progress_interval=0,
        schedule_day=1,
        schedule_hour_utc=2,
        schedule_minute_utc=0,
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> Generator[sessionmaker[Session], None, None]:
    factory = build_session_factory(test_settings.database_url)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture()
def runner(test_settings: Settings, session_factory: sessionmaker[Session]) -> PipelineRunner:
    return PipelineRunner(test_settings, session_factory)


@pytest.fixture()
def seed_customers(session_factory: sessionmaker[Session]) -> Callable[[list[dict[str, object]]], None]:
    def seed(rows: list[dict[str, object]]) -> None:
        with session_factory() as db:
            db.add_all([Customer(**row) for row in rows])
            db.commit()

    return seed


@pytest.fixture()
def reject_customer(session_factory: sessionmaker[Session]) -> Callable[[str], None]:
    """Install a trigger that makes inserting the given customer's coupon fail."""

    def install(customer_id: str) -> None:
        with session_factory() as db:
            db.execute(
                text(
                    f"CREATE TRIGGER reject_{customer_id} BEFORE INSERT ON bonus_coupon "
                    f"WHEN NEW.customer_id = '{customer_id}' "
                    "BEGIN SELECT RAISE(ABORT, 'coupon rejected'); END"
                )
            )
            db.commit()

    return install


@pytest.fixture()
def scenario(seed_customers: Callable[[list[dict[str, object]]], None]) -> list[dict[str, object]]:
    """Five eligible customers, one per coupon code, plus three the selection excludes."""
    seed_customers(SCENARIO_CUSTOMERS + EXCLUDED_CUSTOMERS)
    return SCENARIO_CUSTOMERS
