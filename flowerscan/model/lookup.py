# flowerscan/model/lookup.py
"""Read-only queries the redemption path needs. None of these write."""
from __future__ import annotations
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..infra.sql import Gated
from .orm import Attendance, EventSession, Participant


async def load_session(
    db: AsyncSession, gated: Gated, session_id: str
) -> Optional[EventSession]:
    async with gated():
        async with db.begin():
            return (await db.execute(
                select(EventSession).where(
                    EventSession.session_id == session_id
                )
            )).scalar_one_or_none()


async def get_counter(
    db: AsyncSession, gated: Gated, participant_id: str
) -> Optional[int]:
    async with gated():
        async with db.begin():
            return (await db.execute(
                select(Participant.flowers).where(
                    Participant.id == participant_id
                )
            )).scalar_one_or_none()


async def count_attendances(
    db: AsyncSession, gated: Gated, participant_id: str
) -> int:
    async with gated():
        async with db.begin():
            n = (await db.execute(
                select(func.count()).select_from(Attendance).where(
                    Attendance.participant_id == participant_id
                )
            )).scalar_one()
    return int(n)
