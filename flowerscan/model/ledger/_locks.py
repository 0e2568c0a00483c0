# flowerscan/model/ledger/_locks.py
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager, nullcontext
from typing import Dict, Tuple

from ...errors import LockTimeout

PairKey = Tuple[str, str]


class RowLock:
    """No extra mutex: the SELECT ... FOR UPDATE in the ledger is the lock."""

    def hold(self, participant_id: str, session_pk: str):
        return nullcontext()


class LocalPairLock:
    """In-process keyed mutex, one asyncio.Lock per (participant, session).

    Entries are dropped once nobody holds or waits on them, so the map only
    ever contains pairs with redemptions in flight.
    """

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        self._locks: Dict[PairKey, asyncio.Lock] = {}
        self._users: Dict[PairKey, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, participant_id: str, session_pk: str):
        key = (participant_id, session_pk)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), self.timeout)
            except asyncio.TimeoutError:
                raise LockTimeout(
                    f"pair lock for {participant_id}/{session_pk} not "
                    f"acquired within {self.timeout}s"
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
