# flowerscan/model/ledger/_redis.py
from __future__ import annotations
import logging
from contextlib import asynccontextmanager

import redis.asyncio as redis
from redis.exceptions import LockError, RedisError

from ...errors import LockTimeout, StorageFailure

logger = logging.getLogger(__name__)


# ---- keys
def k_pair(participant_id: str, session_pk: str) -> str:
    return f"redeem:{participant_id}:{session_pk}"


class RedisPairLock:
    """Keyed mutex shared by every server process pointing at one Redis.

    `ttl` bounds how long a crashed holder can block the pair; the database
    uniqueness constraint still holds if a lock expires mid-redemption.
    """

    def __init__(
        self, r: redis.Redis, timeout: float, ttl: float = 30.0
    ) -> None:
        self.r = r
        self.timeout = timeout
        self.ttl = ttl

    @asynccontextmanager
    async def hold(self, participant_id: str, session_pk: str):
        lock = self.r.lock(
            k_pair(participant_id, session_pk),
            timeout=self.ttl,
            blocking_timeout=self.timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            raise StorageFailure(f"redis lock unavailable: {e}") from e
        if not acquired:
            raise LockTimeout(
                f"pair lock for {participant_id}/{session_pk} not "
                f"acquired within {self.timeout}s"
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning(
                    "pair lock %s expired before release",
                    k_pair(participant_id, session_pk),
                )
