# flowerscan/orchestrator.py
from __future__ import annotations
import logging
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .credential import CredentialService
from .errors import StorageFailure
from .helpers import now_ts, to_iso
from .infra.sql import Gated
from .infra.timings import timeit
from .model import window
from .model.ledger import RedemptionLedger
from .model.lookup import load_session
from .model.orm import EventSession

logger = logging.getLogger(__name__)

MSG_ADDED = "attendance recorded, you received 1 flower"
MSG_ALREADY = "this session was already recorded"


@dataclass(frozen=True)
class Rejection:
    kind: str
    message: str


@dataclass(frozen=True)
class Redemption:
    added: bool
    counter: int
    message: str
    session: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        if self.session is None:
            out.pop("session")
        return out


RedemptionOutcome = Union[Redemption, Rejection]


def _session_view(session: EventSession) -> Dict[str, Any]:
    return {
        "id": session.session_id,
        "name": session.name,
        "date": to_iso(session.starts_at),
    }


class RedemptionOrchestrator:
    """verify credential -> load session -> window gate -> ledger"""

    def __init__(
        self,
        *,
        credentials: CredentialService,
        ledger: RedemptionLedger,
        session_factory: async_sessionmaker,
        gated: Gated,
        gate: Optional[window.SessionWindowGate] = None,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self.credentials = credentials
        self.ledger = ledger
        self.session_factory = session_factory
        self.gated = gated
        self.gate = gate or window.SessionWindowGate()
        self.clock = clock

    async def redeem(
        self, participant_id: str, raw_credential: str
    ) -> RedemptionOutcome:
        async with timeit("credential.verify"):
            verification = self.credentials.verify(raw_credential)
        if not verification.valid:
            logger.warning(
                "credential rejected for participant %s: %s",
                participant_id, verification.error,
            )
            return Rejection(verification.error, verification.message)

        sid = verification.session_id
        try:
            async with timeit("db.load_session"):
                async with self.session_factory() as db:
                    session = await load_session(db, self.gated, sid)
        except SQLAlchemyError as e:
            logger.error("loading session %s failed: %s", sid, e)
            raise StorageFailure(f"loading session failed: {e}") from e

        status = self.gate.check(session, self.clock())
        if status != window.OK:
            logger.warning(
                "session %s rejected for participant %s: %s",
                sid, participant_id, status,
            )
            return Rejection(status, window.MESSAGES[status])

        try:
            async with timeit("ledger.redeem"):
                result = await self.ledger.redeem(
                    participant_id, session.id, raw_credential
                )
        except StorageFailure:
            logger.exception(
                "redemption failed for participant %s session %s",
                participant_id, sid,
            )
            raise

        return Redemption(
            added=result.added,
            counter=result.counter,
            message=MSG_ADDED if result.added else MSG_ALREADY,
            session=_session_view(session),
        )
