"""
Create the schema and seed one demo participant and one open session.

    DATABASE_URL=sqlite:///./flowerscan.db QR_SECRET=dev python init_db.py
"""
import asyncio
import uuid

from sqlalchemy import select

from flowerscan.config import Settings, load_settings_or_exit
from flowerscan.credential import CredentialService, TokenSigner
from flowerscan.helpers import now_ts, to_iso
from flowerscan.infra.sql import make_async_engine
from flowerscan.model.orm import EventSession, Participant, create_schema

DEMO_SESSION_ID = "SESSION-DEMO"
DEMO_PARTICIPANT = "Demo Participant"


async def seed(settings: Settings):
    engine, SessionAsync, _ = make_async_engine(
        settings.database_url, **settings.engine_options()
    )
    async with engine.begin() as conn:
        await create_schema(conn)
    print('✅ schema existing / created')

    async with SessionAsync() as db:
        async with db.begin():
            session = (await db.execute(
                select(EventSession).where(
                    EventSession.session_id == DEMO_SESSION_ID
                )
            )).scalar_one_or_none()
            if session is None:
                now = now_ts()
                session = EventSession(
                    id=uuid.uuid4().hex,
                    session_id=DEMO_SESSION_ID,
                    name="Demo session",
                    starts_at=now - 600,
                    ends_at=now + 2 * 3600,
                    is_active=True,
                    created_at=now,
                )
                db.add(session)

            participant = (await db.execute(
                select(Participant).where(
                    Participant.name == DEMO_PARTICIPANT
                )
            )).scalars().first()
            if participant is None:
                participant = Participant(
                    id=uuid.uuid4().hex,
                    name=DEMO_PARTICIPANT,
                    flowers=0,
                    created_at=now_ts(),
                )
                db.add(participant)

    await engine.dispose()
    print(f'✅ session {session.session_id} open until '
          f'{to_iso(session.ends_at)}')
    print(f'✅ participant {participant.id} ({participant.flowers} flowers)')
    return session, participant


if __name__ == '__main__':
    settings = load_settings_or_exit()
    session, _ = asyncio.run(seed(settings))
    credentials = CredentialService(
        TokenSigner(settings.qr_secret),
        validity_minutes=settings.qr_expiration_minutes,
    )
    print(credentials.issue_text(session.session_id))
