from decimal import Decimal

import pytest
from sqlalchemy import func, select

from couponbatch.classifier import CouponClassifier
from couponbatch.db_models import BonusCoupon
from couponbatch.errors import BatchWriteError
from couponbatch.schemas import OutputRecord
from couponbatch.writers import (
    ArrayBatchWriter,
    ReusedStatementWriter,
    RowWriteStrategy,
    ServerResidentWriter,
    build_writer,
)


def _record(customer_id: str) -> OutputRecord:
    return OutputRecord("202506", customer_id, f"{customer_id}@example.com", "AA", Decimal("10.00"))


def _count(db) -> int:
    return db.execute(select(func.count()).select_from(BonusCoupon)).scalar_one()


def test_array_writer_buffers_until_threshold(session_factory) -> None:
    with session_factory() as db:
        with ArrayBatchWriter(db, 3) as writer:
            assert writer.write(_record("A")) == 0
            assert writer.write(_record("B")) == 0
            assert writer.buffered == 2
            assert writer.write(_record("C")) == 3
            assert writer.buffered == 0
            assert writer.write(_record("D")) == 0
            assert writer.flush() == 1
            assert writer.flush() == 0
        db.commit()
        assert _count(db) == 4


def test_array_writer_close_discards_unflushed_rows(session_factory) -> None:
    with session_factory() as db:
        writer = ArrayBatchWriter(db, 10)
        with writer:
            writer.write(_record("A"))
        assert writer.buffered == 0
        db.commit()
        assert _count(db) == 0


def test_duplicate_key_fails_whole_batch(session_factory) -> None:
    with session_factory() as db:
        with ArrayBatchWriter(db, 3) as writer:
            writer.write(_record("A"))
            writer.flush()
            writer.write(_record("B"))
            writer.write(_record("A"))
            with pytest.raises(BatchWriteError) as excinfo:
                writer.write(_record("C"))
        db.commit()

        assert excinfo.value.failed_ids == ["B", "A", "C"]
        assert _count(db) == 1


def test_reused_writer_requires_open(session_factory) -> None:
    with session_factory() as db:
        writer = ReusedStatementWriter(db)
        with pytest.raises(RuntimeError):
            writer.write(_record("A"))


def test_only_row_writers_accept_records(session_factory) -> None:
    with session_factory() as db:
        server = ServerResidentWriter(db, CouponClassifier(), "202506")

        assert not isinstance(server, RowWriteStrategy)
        assert not hasattr(server, "write")
        assert isinstance(build_writer("per_row", db), RowWriteStrategy)
        assert isinstance(build_writer("reused", db), RowWriteStrategy)
        assert isinstance(build_writer("array_batch", db), RowWriteStrategy)


def test_build_writer_selects_strategy(session_factory) -> None:
    with session_factory() as db:
        assert build_writer("per_row", db).name == "per_row"
        assert build_writer("array_batch", db, batch_size=5).batch_size == 5
        assert build_writer("server", db, classifier=CouponClassifier(), run_period="202506").server_resident
        with pytest.raises(ValueError):
            build_writer("server", db)
        with pytest.raises(ValueError):
            build_writer("bulk_copy", db)
