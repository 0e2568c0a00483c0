# model/ledger/__init__.py
from typing import Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
import redis.asyncio as redis

from ._sql import (
    RedemptionLedger, LedgerResult, REDEEMED, ALREADY_REDEEMED,
    is_pair_conflict,
)
from ...infra.sql import Gated
from ._locks import RowLock, LocalPairLock


# Factory keeps server.py simple and backend-agnostic:
#   'row'   -> database row lock only
#   'local' -> in-process keyed mutex + row lock
#   'redis' -> redis keyed mutex (multi-process) + row lock
def new_ledger(*, backend: str,
               session_factory: async_sessionmaker,
               gated: Gated,
               lock_timeout: float,
               r: Optional[redis.Redis] = None) -> RedemptionLedger:
    if backend == "row":
        pair_lock = RowLock()
    elif backend == "local":
        pair_lock = LocalPairLock(timeout=lock_timeout)
    elif backend == "redis":
        if r is None:
            raise RuntimeError("RedemptionLedger(redis) requires r=redis.Redis")
        from ._redis import RedisPairLock
        pair_lock = RedisPairLock(r, timeout=lock_timeout)
    else:
        raise RuntimeError(f"unknown lock backend: {backend}")
    return RedemptionLedger(
        session_factory=session_factory,
        gated=gated,
        pair_lock=pair_lock,
        lock_timeout=lock_timeout,
    )


__all__ = [
    "RedemptionLedger", "LedgerResult", "REDEEMED", "ALREADY_REDEEMED",
    "is_pair_conflict", "new_ledger", "RowLock", "LocalPairLock",
]
