from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy.engine import Result
from sqlalchemy.exc import OperationalError

from couponbatch.errors import SourceReadError
from couponbatch.schemas import CandidateRecord
from couponbatch.source import RecordSource, Selection, count_candidates


SELECTION = Selection(date(2013, 1, 1))


def test_filtered_stream_yields_only_candidates_in_key_order(session_factory, scenario) -> None:
    source = RecordSource(session_factory.kw["bind"])

    with source.open(SELECTION, fetch_size=2) as stream:
        records = list(stream.rows())

    assert [record.id for record in records] == ["C001", "C002", "C003", "C004", "C005"]
    assert all(record.is_complete for record in records)
    assert records[0].credit_limit == Decimal("500.00")
    assert stream.fetched == 5


def test_chunks_respect_requested_size(session_factory, scenario) -> None:
    source = RecordSource(session_factory.kw["bind"])

    with source.open(SELECTION, fetch_size=2) as stream:
        sizes = [len(chunk) for chunk in stream.chunks(2)]

    assert sizes == [2, 2, 1]


def test_unfiltered_stream_fetches_every_customer(session_factory, scenario) -> None:
    source = RecordSource(session_factory.kw["bind"])

    with source.open(None, fetch_size=3) as stream:
        records = list(stream.rows())

    assert len(records) == 8
    assert stream.fetched == 8
    assert sum(1 for record in records if not record.is_complete) == 2
    assert sum(1 for record in records if not SELECTION.admits(record)) == 1


def test_count_candidates_matches_filtered_stream(session_factory, scenario) -> None:
    with session_factory() as db:
        assert count_candidates(db, SELECTION) == 5
        assert count_candidates(db, Selection(date(2030, 1, 1))) == 0


def test_closed_stream_cannot_be_read(session_factory, scenario) -> None:
    stream = RecordSource(session_factory.kw["bind"]).open(SELECTION, fetch_size=2)
    stream.close()

    with pytest.raises(SourceReadError):
        list(stream.rows())


def test_chunk_size_must_be_positive(session_factory, scenario) -> None:
    with RecordSource(session_factory.kw["bind"]).open(SELECTION) as stream:
        with pytest.raises(ValueError):
            next(stream.chunks(0))


def test_cutoff_is_inclusive_at_midnight() -> None:
    def record(enrolled: datetime | None) -> CandidateRecord:
        return CandidateRecord("C1", "c1@example.com", Decimal("1"), "F", None, None, enrolled)

    assert SELECTION.admits(record(datetime(2013, 1, 1, 0, 0)))
    assert not SELECTION.admits(record(datetime(2012, 12, 31, 23, 59, 59)))
    assert not SELECTION.admits(record(None))


def test_mid_stream_fetch_failure_raises_source_read_error(session_factory, scenario, monkeypatch) -> None:
    original_partitions = Result.partitions

    def fail_after_first_chunk(self, size=None):
        partitions = original_partitions(self, size)
        yield next(partitions)
        raise OperationalError("SELECT", {}, Exception("server closed the connection"), connection_invalidated=True)

    monkeypatch.setattr(Result, "partitions", fail_after_first_chunk)
    received = []

    with RecordSource(session_factory.kw["bind"]).open(SELECTION, fetch_size=2) as stream:
        with pytest.raises(SourceReadError, match="connection lost after 2 rows"):
            for record in stream.rows():
                received.append(record.id)

    assert received == ["C001", "C002"]
    assert stream.fetched == 2
