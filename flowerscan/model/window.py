# flowerscan/model/window.py
from __future__ import annotations
from typing import Optional

from .orm import EventSession

NOT_FOUND = "NOT_FOUND"
INACTIVE = "INACTIVE"
NOT_STARTED = "NOT_STARTED"
ENDED = "ENDED"
OK = "OK"

MESSAGES = {
    NOT_FOUND: "session not found",
    INACTIVE: "this session is no longer active",
    NOT_STARTED: "this session has not started yet",
    ENDED: "this session has already ended",
}


class SessionWindowGate:
    """Is `now` inside the session's redeemable window?

    Conditions are checked in a fixed order and only the first failing one
    is reported. The window bounds are inclusive.
    """

    def check(self, session: Optional[EventSession], now: float) -> str:
        if session is None:
            return NOT_FOUND
        if not session.is_active:
            return INACTIVE
        if now < session.starts_at:
            return NOT_STARTED
        if now > session.ends_at:
            return ENDED
        return OK
