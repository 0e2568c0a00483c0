import asyncio

import pytest
from sqlalchemy import event, text
from sqlalchemy.exc import IntegrityError, OperationalError

from flowerscan.errors import LockTimeout, StorageFailure
from flowerscan.model.ledger import (
    ALREADY_REDEEMED, REDEEMED, LocalPairLock, RedemptionLedger,
    is_pair_conflict, new_ledger,
)
from flowerscan.model.ledger._redis import RedisPairLock
from flowerscan.model.lookup import count_attendances, get_counter
from flowerscan.model.orm import PAIR_CONSTRAINT

from .conftest import add_participant, add_session

pytestmark = pytest.mark.integration


def _ledger(db, backend="row", lock_timeout=5.0) -> RedemptionLedger:
    _, SessionAsync, gated = db
    return new_ledger(
        backend=backend, session_factory=SessionAsync, gated=gated,
        lock_timeout=lock_timeout,
    )


async def test_first_redemption_credits_one_flower(db):
    _, SessionAsync, gated = db
    pid = await add_participant(SessionAsync, flowers=10)
    session = await add_session(SessionAsync)

    result = await _ledger(db).redeem(pid, session.id, "raw")

    assert result.status == REDEEMED
    assert result.added
    assert result.counter == 11
    async with SessionAsync() as s:
        assert await get_counter(s, gated, pid) == 11


async def test_repeat_redemption_is_a_noop(db):
    _, SessionAsync, gated = db
    pid = await add_participant(SessionAsync, flowers=3)
    session = await add_session(SessionAsync)
    ledger = _ledger(db)

    results = [await ledger.redeem(pid, session.id, "raw") for _ in range(5)]

    assert [r.added for r in results] == [True, False, False, False, False]
    assert all(r.status == ALREADY_REDEEMED for r in results[1:])
    assert all(r.counter == 4 for r in results)
    async with SessionAsync() as s:
        assert await count_attendances(s, gated, pid) == 1


@pytest.mark.parametrize("backend", ["row", "local"])
async def test_concurrent_redemptions_credit_exactly_once(db, backend):
    _, SessionAsync, gated = db
    pid = await add_participant(SessionAsync, flowers=0)
    session = await add_session(SessionAsync)
    ledger = _ledger(db, backend=backend)

    results = await asyncio.gather(*(
        ledger.redeem(pid, session.id, "raw") for _ in range(25)
    ))

    assert sum(r.added for r in results) == 1
    assert all(r.counter == 1 for r in results)
    async with SessionAsync() as s:
        assert await get_counter(s, gated, pid) == 1
        assert await count_attendances(s, gated, pid) == 1


async def test_different_pairs_are_independent(db):
    _, SessionAsync, gated = db
    p1 = await add_participant(SessionAsync)
    p2 = await add_participant(SessionAsync)
    s1 = await add_session(SessionAsync)
    s2 = await add_session(SessionAsync)
    ledger = _ledger(db, backend="local")

    results = await asyncio.gather(
        ledger.redeem(p1, s1.id, "raw"),
        ledger.redeem(p1, s2.id, "raw"),
        ledger.redeem(p2, s1.id, "raw"),
        ledger.redeem(p2, s2.id, "raw"),
    )

    assert all(r.added for r in results)
    async with SessionAsync() as s:
        assert await get_counter(s, gated, p1) == 2
        assert await get_counter(s, gated, p2) == 2


async def test_counter_equals_distinct_sessions_attended(db):
    _, SessionAsync, gated = db
    pid = await add_participant(SessionAsync, flowers=0)
    sessions = [await add_session(SessionAsync) for _ in range(3)]
    ledger = _ledger(db)

    for session in sessions + sessions:
        await ledger.redeem(pid, session.id, "raw")

    async with SessionAsync() as s:
        counter = await get_counter(s, gated, pid)
        attended = await count_attendances(s, gated, pid)
    assert counter == attended == 3


async def test_unique_violation_is_already_redeemed_when_lock_is_skipped(
    db, monkeypatch
):
    # degraded mode: the locked lookup sees nothing, the constraint decides
    _, SessionAsync, gated = db
    pid = await add_participant(SessionAsync, flowers=7)
    session = await add_session(SessionAsync)
    ledger = _ledger(db)
    assert (await ledger.redeem(pid, session.id, "raw")).added

    async def no_lock(self, db, participant_id, session_pk):
        return None
    monkeypatch.setattr(RedemptionLedger, "_find_locked", no_lock)

    result = await ledger.redeem(pid, session.id, "raw")

    assert result.status == ALREADY_REDEEMED
    assert result.counter == 8
    async with SessionAsync() as s:
        assert await get_counter(s, gated, pid) == 8
        assert await count_attendances(s, gated, pid) == 1


async def test_unrelated_integrity_error_is_a_storage_failure(db):
    _, SessionAsync, gated = db
    session = await add_session(SessionAsync)

    with pytest.raises(StorageFailure):
        await _ledger(db).redeem("no-such-participant", session.id, "raw")

    async with SessionAsync() as s:
        assert await count_attendances(s, gated, "no-such-participant") == 0


async def test_connection_is_released_after_failure(db):
    engine, SessionAsync, _ = db
    session = await add_session(SessionAsync)
    ledger = _ledger(db)
    out = []
    event.listen(engine.sync_engine, "checkout", lambda *a: out.append(1))
    event.listen(engine.sync_engine, "checkin", lambda *a: out.append(-1))
    for _ in range(3):
        with pytest.raises(StorageFailure):
            await ledger.redeem("ghost", session.id, "raw")
    assert out and sum(out) == 0


class _LockNotAvailable(Exception):
    sqlstate = "55P03"


async def test_row_lock_timeout_is_a_lock_timeout(db, monkeypatch):
    engine, SessionAsync, _ = db
    pid = await add_participant(SessionAsync)
    session = await add_session(SessionAsync)
    ledger = _ledger(db)

    async def lock_not_available(self, db, participant_id, session_pk):
        await db.execute(text("SELECT 1"))
        raise OperationalError("SELECT ... FOR UPDATE", {},
                               _LockNotAvailable("canceling statement"))
    monkeypatch.setattr(RedemptionLedger, "_find_locked", lock_not_available)
    out = []
    event.listen(engine.sync_engine, "checkout", lambda *a: out.append(1))
    event.listen(engine.sync_engine, "checkin", lambda *a: out.append(-1))

    with pytest.raises(LockTimeout):
        await ledger.redeem(pid, session.id, "raw")
    assert out and sum(out) == 0


async def test_other_operational_error_is_a_plain_storage_failure(
    db, monkeypatch
):
    _, SessionAsync, _ = db
    pid = await add_participant(SessionAsync)
    session = await add_session(SessionAsync)

    async def disk_io(self, db, participant_id, session_pk):
        raise OperationalError("SELECT", {}, Exception("disk I/O error"))
    monkeypatch.setattr(RedemptionLedger, "_find_locked", disk_io)

    with pytest.raises(StorageFailure) as info:
        await _ledger(db).redeem(pid, session.id, "raw")
    assert not isinstance(info.value, LockTimeout)


async def test_sqlite_gets_no_lock_timeout_statement(db):
    engine, SessionAsync, _ = db
    pid = await add_participant(SessionAsync)
    session = await add_session(SessionAsync)
    statements = []

    def capture(conn, cursor, statement, *args):
        statements.append(statement)
    event.listen(engine.sync_engine, "before_cursor_execute", capture)

    assert (await _ledger(db).redeem(pid, session.id, "raw")).added
    assert statements
    assert not any("lock_timeout" in s for s in statements)


class _PgBind:
    class dialect:
        name = "postgresql"


class _PgSession:
    def __init__(self):
        self.executed = []

    def get_bind(self):
        return _PgBind()

    async def execute(self, stmt):
        self.executed.append(str(stmt))


async def test_postgres_lock_wait_is_bounded_by_lock_timeout(db):
    pg = _PgSession()
    await _ledger(db, lock_timeout=0.25)._apply_lock_timeout(pg)
    assert pg.executed == ["SET LOCAL lock_timeout = '250ms'"]


# ---- constraint classification

class _DriverError(Exception):
    def __init__(self, msg, constraint_name=None):
        super().__init__(msg)
        self.constraint_name = constraint_name


def _integrity(orig) -> IntegrityError:
    return IntegrityError("INSERT ...", {}, orig)


def test_pair_conflict_by_constraint_name():
    assert is_pair_conflict(_integrity(_DriverError("dup", PAIR_CONSTRAINT)))


def test_other_constraint_name_is_not_a_pair_conflict():
    exc = _integrity(_DriverError("dup", "attendances_pkey"))
    assert not is_pair_conflict(exc)


def test_pair_conflict_via_wrapped_driver_error():
    adapter = Exception("duplicate key")
    adapter.__cause__ = _DriverError("dup", PAIR_CONSTRAINT)
    assert is_pair_conflict(_integrity(adapter))


def test_pair_conflict_by_sqlite_message():
    orig = Exception(
        "UNIQUE constraint failed: "
        "attendances.participant_id, attendances.session_id"
    )
    assert is_pair_conflict(_integrity(orig))
    assert not is_pair_conflict(
        _integrity(Exception("UNIQUE constraint failed: attendances.id"))
    )


# ---- pair locks

async def test_local_lock_times_out_instead_of_hanging():
    lock = LocalPairLock(timeout=0.05)
    async with lock.hold("p", "s"):
        with pytest.raises(LockTimeout):
            async with lock.hold("p", "s"):
                pass
        # other pairs do not contend
        async with lock.hold("p", "other"):
            pass
    assert len(lock) == 0


async def test_local_lock_timeout_surfaces_from_ledger(db):
    _, SessionAsync, _ = db
    pid = await add_participant(SessionAsync)
    session = await add_session(SessionAsync)
    ledger = _ledger(db, backend="local", lock_timeout=0.05)

    async with ledger.pair_lock.hold(pid, session.id):
        with pytest.raises(LockTimeout):
            await ledger.redeem(pid, session.id, "raw")


class _FakeRedisLock:
    def __init__(self, acquired):
        self.acquired = acquired
        self.released = False

    async def acquire(self):
        return self.acquired

    async def release(self):
        self.released = True


class _FakeRedis:
    def __init__(self, acquired=True):
        self.calls = []
        self.last = _FakeRedisLock(acquired)

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.calls.append((name, timeout, blocking_timeout))
        return self.last


async def test_redis_lock_is_keyed_per_pair_and_released():
    r = _FakeRedis()
    async with RedisPairLock(r, timeout=2.0).hold("p", "s"):
        pass
    assert r.calls == [("redeem:p:s", 30.0, 2.0)]
    assert r.last.released


async def test_redis_lock_not_acquired_is_a_timeout():
    r = _FakeRedis(acquired=False)
    with pytest.raises(LockTimeout):
        async with RedisPairLock(r, timeout=0.1).hold("p", "s"):
            pass


def test_redis_backend_requires_client(db):
    with pytest.raises(RuntimeError):
        _ledger(db, backend="redis")
