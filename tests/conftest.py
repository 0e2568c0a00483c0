import os
import tempfile
import uuid

# server.py reads its settings at import time
_TMP = tempfile.mkdtemp(prefix="flowerscan-test-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/server.db")
os.environ.setdefault("QR_SECRET", "test-secret-key-12345")
os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "pw")

import pytest  # noqa: E402

from flowerscan.credential import CredentialService, TokenSigner  # noqa: E402
from flowerscan.infra.sql import make_async_engine  # noqa: E402
from flowerscan.model.ledger import new_ledger  # noqa: E402
from flowerscan.model.orm import (  # noqa: E402
    EventSession, Participant, create_schema,
)
from flowerscan.orchestrator import RedemptionOrchestrator  # noqa: E402

SECRET = "test-secret-key-12345"
T0 = 1_750_000_000.0  # session start used by the scenario tests


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: touches a database")


class FakeClock:
    def __init__(self, t: float):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture()
def clock():
    return FakeClock(T0)


@pytest.fixture()
def signer():
    return TokenSigner(SECRET)


@pytest.fixture()
def credentials(signer, clock):
    return CredentialService(signer, validity_minutes=60, clock=clock)


@pytest.fixture()
async def db(tmp_path):
    """(engine, SessionAsync, gated) on a fresh SQLite file."""
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'test.db'}"
    )
    async with engine.begin() as conn:
        await create_schema(conn)
    yield engine, SessionAsync, gated
    await engine.dispose()


async def add_participant(SessionAsync, flowers: int = 0) -> str:
    pid = uuid.uuid4().hex
    async with SessionAsync() as s:
        async with s.begin():
            s.add(Participant(
                id=pid, name="P", flowers=flowers, created_at=T0,
            ))
    return pid


async def add_session(
    SessionAsync,
    session_id: str = None,
    starts_at: float = T0,
    ends_at: float = T0 + 2 * 3600,
    is_active: bool = True,
) -> EventSession:
    session = EventSession(
        id=uuid.uuid4().hex,
        session_id=session_id or f"SESSION-{uuid.uuid4().hex[:8]}",
        name="Morning talk",
        starts_at=starts_at,
        ends_at=ends_at,
        is_active=is_active,
        created_at=T0,
    )
    async with SessionAsync() as s:
        async with s.begin():
            s.add(session)
    return session


@pytest.fixture()
def make_orchestrator(db, credentials, clock):
    _, SessionAsync, gated = db

    def _make(backend: str = "row", lock_timeout: float = 5.0):
        ledger = new_ledger(
            backend=backend,
            session_factory=SessionAsync,
            gated=gated,
            lock_timeout=lock_timeout,
        )
        ledger.clock = clock
        return RedemptionOrchestrator(
            credentials=credentials,
            ledger=ledger,
            session_factory=SessionAsync,
            gated=gated,
            clock=clock,
        )
    return _make
