# flowerscan/model/ledger/_sql.py
"""
Redemption ledger: at most one attendance per (participant, session), and
exactly one flower per first-time attendance.

Per attempt, inside one transaction:
  1. SELECT the attendance row for the pair FOR UPDATE
  2. found     -> rollback, report ALREADY_REDEEMED with the current counter
  3. not found -> INSERT attendance, UPDATE flowers = flowers + 1, COMMIT
  4. a unique violation on the pair constraint means another writer won the
     race between 1 and 3 -> rollback, same answer as 2
  5. anything else -> rollback, StorageFailure

The row lock is the first line of defence. The unique constraint is the one
the outcome actually depends on: with the lock absent (SQLite ignores FOR
UPDATE) the ledger still credits each pair exactly once.
"""
from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select, update, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ...errors import LockTimeout, StorageFailure
from ...helpers import now_ts
from ...infra.sql import Gated
from ..orm import Attendance, Participant, PAIR_CONSTRAINT

logger = logging.getLogger(__name__)

REDEEMED = "REDEEMED"
ALREADY_REDEEMED = "ALREADY_REDEEMED"

# sqlite reports the columns, not the constraint name
_SQLITE_PAIR_VIOLATION = (
    "UNIQUE constraint failed: "
    "attendances.participant_id, attendances.session_id"
)
_PG_LOCK_NOT_AVAILABLE = "55P03"


@dataclass(frozen=True)
class LedgerResult:
    status: str
    counter: int

    @property
    def added(self) -> bool:
        return self.status == REDEEMED


def is_pair_conflict(exc: IntegrityError) -> bool:
    """True only for a unique violation on the (participant, session) pair."""
    orig = exc.orig
    # asyncpg: the driver error sits behind the DBAPI adapter
    for candidate in (orig, getattr(orig, "__cause__", None)):
        name = getattr(candidate, "constraint_name", None)
        if name:
            return name == PAIR_CONSTRAINT
    msg = str(orig)
    return PAIR_CONSTRAINT in msg or _SQLITE_PAIR_VIOLATION in msg


def _is_lock_timeout(exc: SQLAlchemyError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == _PG_LOCK_NOT_AVAILABLE


class RedemptionLedger:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker,
        gated: Gated,
        pair_lock,
        lock_timeout: float,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self.session_factory = session_factory
        self.gated = gated
        self.pair_lock = pair_lock
        self.lock_timeout = lock_timeout
        self.clock = clock

    async def redeem(
        self, participant_id: str, session_pk: str, raw_credential: str
    ) -> LedgerResult:
        async with self.pair_lock.hold(participant_id, session_pk):
            async with self.gated():
                # leaving this block closes the session: any open
                # transaction is rolled back and the connection returned
                async with self.session_factory() as db:
                    return await self._redeem(
                        db, participant_id, session_pk, raw_credential
                    )

    async def _redeem(
        self,
        db: AsyncSession,
        participant_id: str,
        session_pk: str,
        raw_credential: str,
    ) -> LedgerResult:
        try:
            await self._apply_lock_timeout(db)
            if await self._find_locked(db, participant_id, session_pk):
                await db.rollback()
                logger.info(
                    "duplicate scan: participant %s session %s",
                    participant_id, session_pk,
                )
                return await self._already_redeemed(db, participant_id)

            db.add(Attendance(
                id=uuid.uuid4().hex,
                participant_id=participant_id,
                session_id=session_pk,
                scanned_at=self.clock(),
                raw_credential=raw_credential,
            ))
            await db.flush()
            counter = await self._increment(db, participant_id)
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            if not is_pair_conflict(e):
                raise StorageFailure(
                    f"integrity error recording attendance: {e.orig}"
                ) from e
            logger.warning(
                "unique violation for participant %s session %s, "
                "treating as already redeemed",
                participant_id, session_pk,
            )
            return await self._already_redeemed(db, participant_id)
        except SQLAlchemyError as e:
            await db.rollback()
            if _is_lock_timeout(e):
                raise LockTimeout(
                    f"row lock for {participant_id}/{session_pk} timed out"
                ) from e
            raise StorageFailure(f"recording attendance failed: {e}") from e

        logger.info(
            "attendance recorded: participant %s session %s, flowers=%d",
            participant_id, session_pk, counter,
        )
        return LedgerResult(REDEEMED, counter)

    async def _apply_lock_timeout(self, db: AsyncSession) -> None:
        if db.get_bind().dialect.name != "postgresql":
            return
        ms = max(1, int(self.lock_timeout * 1000))
        # SET does not take bind parameters; ms is an int
        await db.execute(text(f"SET LOCAL lock_timeout = '{ms}ms'"))

    async def _find_locked(
        self, db: AsyncSession, participant_id: str, session_pk: str
    ) -> Optional[str]:
        return (await db.execute(
            select(Attendance.id)
            .where(
                Attendance.participant_id == participant_id,
                Attendance.session_id == session_pk,
            )
            .with_for_update()
        )).scalar_one_or_none()

    async def _increment(self, db: AsyncSession, participant_id: str) -> int:
        res = await db.execute(
            update(Participant)
            .where(Participant.id == participant_id)
            .values(flowers=Participant.flowers + 1)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            await db.rollback()
            raise StorageFailure(f"unknown participant {participant_id}")
        return (await db.execute(
            select(Participant.flowers).where(Participant.id == participant_id)
        )).scalar_one()

    async def _already_redeemed(
        self, db: AsyncSession, participant_id: str
    ) -> LedgerResult:
        try:
            counter = (await db.execute(
                select(Participant.flowers).where(
                    Participant.id == participant_id
                )
            )).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageFailure(f"reading flowers failed: {e}") from e
        return LedgerResult(ALREADY_REDEEMED, int(counter or 0))
