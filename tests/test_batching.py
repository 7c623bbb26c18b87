import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from batching import BatchWriter, WriteOp, with_retries
from database import Base
from models import Category


def _insert(name: str) -> WriteOp:
    def apply(session: Session) -> None:
        session.add(Category(user_id=1, name=name))

    return WriteOp(key=name, apply=apply)


def _locked() -> OperationalError:
    return OperationalError("UPDATE budget_periods", {}, Exception("database is locked"))


def test_commit_in_chunks_splits_at_limit() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        writer = BatchWriter(session, max_ops_per_chunk=500)
        result = writer.commit_in_chunks([_insert(f"c{i}") for i in range(1200)])

        assert result.success
        assert result.chunks_committed == 3
        assert result.total_ops == 1200
        assert session.scalar(select(func.count(Category.id))) == 1200


def test_failed_chunk_rolls_back_alone() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    def boom(session: Session) -> None:
        raise ValueError("bad op")

    with Session(engine) as session:
        ops = [_insert(f"c{i}") for i in range(4)]
        ops.insert(3, WriteOp(key="boom", apply=boom))
        result = BatchWriter(session, max_ops_per_chunk=2).commit_in_chunks(ops)

        assert not result.success
        assert result.chunks_committed == 2
        assert [e.chunk_index for e in result.per_chunk_errors] == [1]
        assert result.failed_keys() == {"c2", "boom"}
        names = set(session.scalars(select(Category.name)).all())
        assert names == {"c0", "c1", "c3"}


def test_commit_each_isolates_a_failing_op() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    def boom(session: Session) -> None:
        session.add(Category(user_id=1, name="half-written"))
        session.flush()
        raise ValueError("bad op")

    with Session(engine) as session:
        ops = [_insert("c0"), WriteOp(key="boom", apply=boom), _insert("c1")]
        result = BatchWriter(session).commit_each(ops)

        assert result.chunks_committed == 2
        assert result.failed_keys() == {"boom"}
        names = set(session.scalars(select(Category.name)).all())
        assert names == {"c0", "c1"}


def test_chunk_size_is_bounded() -> None:
    engine = create_engine("sqlite:///:memory:")
    with Session(engine) as session:
        with pytest.raises(ValueError):
            BatchWriter(session, max_ops_per_chunk=501)


def test_transient_errors_are_retried_with_backoff() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    delays = []
    attempts = {"count": 0}

    def flaky(session: Session) -> None:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise _locked()
        session.add(Category(user_id=1, name="Rent"))

    with Session(engine) as session:
        writer = BatchWriter(
            session, retry_attempts=3, retry_base_delay=0.5, sleep=delays.append
        )
        result = writer.commit_in_chunks([WriteOp(key="rent", apply=flaky)])

        assert result.success
        assert delays == [0.5, 1.0]
        assert session.scalar(select(Category.name)) == "Rent"


def test_with_retries_gives_up_and_caps_backoff() -> None:
    delays = []

    def always_locked():
        raise _locked()

    with pytest.raises(OperationalError):
        with_retries(always_locked, attempts=3, base_delay=8, sleep=delays.append)
    assert delays == [8, 10.0]


def test_non_transient_errors_are_not_retried() -> None:
    calls = []

    def broken():
        calls.append(1)
        raise ValueError("nope")

    with pytest.raises(ValueError):
        with_retries(broken, attempts=3, base_delay=0, sleep=lambda _: None)
    assert len(calls) == 1
