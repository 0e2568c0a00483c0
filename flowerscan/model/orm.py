from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()

# the ledger recognises duplicate redemptions by this name
PAIR_CONSTRAINT = "uq_attendances_participant_session"


# ----------------------------
# ORM models
# ----------------------------
class Participant(Base):
    __tablename__ = "participants"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    # reward counter; only the redemption ledger increments it
    flowers = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(Float, nullable=False)


class EventSession(Base):
    __tablename__ = "sessions"
    id = Column(String, primary_key=True)
    # public, opaque id carried in credentials as "sid"
    session_id = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    starts_at = Column(Float, nullable=False)
    ends_at = Column(Float, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class Attendance(Base):
    __tablename__ = "attendances"
    __table_args__ = (
        UniqueConstraint("participant_id", "session_id", name=PAIR_CONSTRAINT),
    )
    id = Column(String, primary_key=True)
    participant_id = Column(
        String, ForeignKey("participants.id"), nullable=False
    )
    session_id = Column(String, ForeignKey("sessions.id"), nullable=False)
    scanned_at = Column(Float, nullable=False)
    # credential text exactly as scanned (audit trail)
    raw_credential = Column(Text, nullable=False)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)
