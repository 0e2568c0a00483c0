# flowerscan/credential/service.py
from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from . import codec
from .codec import CredentialPayload
from .signer import TokenSigner

logger = logging.getLogger(__name__)

# rejection kinds
MALFORMED = "MALFORMED"
INVALID = "INVALID"
EXPIRED = "EXPIRED"

MESSAGES = {
    MALFORMED: "malformed credential",
    INVALID: "invalid credential",
    EXPIRED: "expired credential",
}


@dataclass(frozen=True)
class Verification:
    valid: bool
    session_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return MESSAGES.get(self.error) if self.error else None


def _fail(kind: str) -> Verification:
    return Verification(valid=False, error=kind)


def _well_typed(payload: dict) -> bool:
    exp = payload["exp"]
    return (
        isinstance(payload["sid"], str)
        and isinstance(exp, int) and not isinstance(exp, bool)
        and isinstance(payload["sig"], str)
    )


class CredentialService:
    def __init__(
        self,
        signer: TokenSigner,
        validity_minutes: int = 60,
        max_length: int = codec.MAX_CREDENTIAL_LENGTH,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if validity_minutes <= 0:
            raise ValueError("validity_minutes must be positive")
        self.signer = signer
        self.validity_seconds = int(validity_minutes) * 60
        self.max_length = max_length
        self.clock = clock

    def issue(self, session_id: str) -> CredentialPayload:
        exp = int(self.clock()) + self.validity_seconds
        return {
            "sid": session_id,
            "exp": exp,
            "sig": self.signer.sign(session_id, exp),
        }

    def issue_text(self, session_id: str) -> str:
        return codec.encode(self.issue(session_id))

    def verify(self, raw: Any) -> Verification:
        """
        Checks run cheapest first and stop at the first failure:
        shape -> field types -> expiry -> signature.
        """
        try:
            return self._verify(raw)
        except Exception:
            logger.exception("unexpected error while verifying credential")
            return _fail(INVALID)

    def _verify(self, raw: Any) -> Verification:
        payload = codec.decode(raw, max_length=self.max_length)
        if payload is None:
            return _fail(MALFORMED)

        if not _well_typed(payload):
            return _fail(INVALID)

        if int(self.clock()) > payload["exp"]:
            return _fail(EXPIRED)

        if not self.signer.verify(
            payload["sid"], payload["exp"], payload["sig"]
        ):
            return _fail(INVALID)

        return Verification(valid=True, session_id=payload["sid"])
