from __future__ import annotations
import logging

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi import Form
from fastapi.responses import ORJSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

import redis.asyncio as redis

from .config import load_settings_or_exit, configure_logging
from .credential import CredentialService, TokenSigner
from .credential import codec
from .errors import LockTimeout, StorageFailure
from .helpers import ct_equal
from .infra.sql import make_async_engine
from .infra.timings import flush_on_shutdown
from .model import window
from .model.ledger import new_ledger
from .model.lookup import get_counter, load_session
from .model.orm import create_schema
from .orchestrator import RedemptionOrchestrator, Rejection
from .qrimage import render_data_url

logger = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
configure_logging()
settings = load_settings_or_exit()

signer = TokenSigner(settings.qr_secret)
credentials = CredentialService(
    signer,
    validity_minutes=settings.qr_expiration_minutes,
    max_length=settings.qr_max_length,
)

app = FastAPI(
    title="FlowerScan",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)


class ScanRequest(BaseModel):
    qr_code: str = Field(..., min_length=1, max_length=settings.qr_max_length)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    print('\n' * 3)
    print('=' * 50)
    print('FlowerScan is starting up...')
    print(f'   - Redemption lock backend: {settings.lock_backend}')
    print(f'   - Credential validity: {settings.qr_expiration_minutes} min')
    print('=' * 50)
    print('\n' * 3)


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if settings.lock_backend == "redis":
        app.state.redis = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=settings.redis_max_conn,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _db_init():
    engine, SessionAsync, gated = make_async_engine(
        settings.database_url, **settings.engine_options()
    )
    async with engine.begin() as conn:
        await create_schema(conn)

    ledger = new_ledger(
        backend=settings.lock_backend,
        session_factory=SessionAsync,
        gated=gated,
        lock_timeout=settings.lock_timeout,
        r=app.state.redis,
    )
    app.state.engine = engine
    app.state.SessionAsync = SessionAsync
    app.state.gated = gated
    app.state.orchestrator = RedemptionOrchestrator(
        credentials=credentials,
        ledger=ledger,
        session_factory=SessionAsync,
        gated=gated,
    )


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()
        app.state.engine = None


@app.on_event("shutdown")
async def _timings_flush():
    await flush_on_shutdown()


# ----------------------------
# Dependencies
# ----------------------------
async def get_db(request: Request):
    async with request.app.state.SessionAsync() as session:
        yield session


def get_orchestrator(request: Request) -> RedemptionOrchestrator:
    return request.app.state.orchestrator


def current_participant(request: Request) -> str:
    # set by the identity service, which shares SESSION_SECRET
    participant_id = request.session.get("participant_id")
    if not participant_id:
        raise HTTPException(401, detail="not authenticated")
    return participant_id


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(401, detail="admin login required")


@app.exception_handler(StorageFailure)
async def _storage_failure(request: Request, exc: StorageFailure):
    if isinstance(exc, LockTimeout):
        return ORJSONResponse(
            {"detail": "busy, please scan again"},
            status_code=503,
            headers={"Retry-After": "1"},
        )
    return ORJSONResponse(
        {"detail": "could not record attendance"}, status_code=500
    )


def _rejection_status(r: Rejection) -> int:
    return 404 if r.kind == window.NOT_FOUND else 400


# ----------------------------
# API: attendance scan
# ----------------------------
@app.post("/api/attendance/scan")
async def scan_attendance(
    body: ScanRequest,
    participant_id: str = Depends(current_participant),
    orchestrator: RedemptionOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.redeem(participant_id, body.qr_code)
    if isinstance(outcome, Rejection):
        raise HTTPException(_rejection_status(outcome), detail=outcome.message)
    # already-redeemed is a success too, with added=false
    return {"data": outcome.as_dict()}


@app.get("/api/participants/me")
async def my_flowers(
    request: Request,
    participant_id: str = Depends(current_participant),
    db=Depends(get_db),
):
    flowers = await get_counter(db, request.app.state.gated, participant_id)
    if flowers is None:
        raise HTTPException(404, detail="participant not found")
    return {"participant_id": participant_id, "flowers": flowers}


# ----------------------------
# Admin: credential for a session
# ----------------------------
@app.get("/api/admin/sessions/{session_id}/qr",
         dependencies=[Depends(require_admin)])
async def session_qr(session_id: str, request: Request, db=Depends(get_db)):
    session = await load_session(db, request.app.state.gated, session_id)
    if session is None:
        raise HTTPException(404, detail="session not found")

    payload = credentials.issue(session.session_id)
    qr_text = codec.encode(payload)
    out = {
        "session_id": session.session_id,
        "payload": payload,
        "qr_code_text": qr_text,
        "qr_code": render_data_url(qr_text),
    }
    if settings.public_scan_url:
        out["scan_url"] = codec.to_url(settings.public_scan_url, payload)
    return out


@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/"),
):
    ok_user = ct_equal(username.strip(), settings.admin_username)
    ok_pass = ct_equal(password, settings.admin_password)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        # relative targets only
        if not next.startswith("/") or next.startswith("//"):
            next = "/"
        return RedirectResponse(url=next, status_code=HTTP_303_SEE_OTHER)
    logger.warning("failed admin login for %r", username.strip())
    raise HTTPException(401, detail="invalid credentials")


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


@app.get("/healthz")
async def healthz(request: Request, db=Depends(get_db)):
    try:
        async with request.app.state.gated():
            await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("health check failed: %s", e)
        raise HTTPException(503, detail="database unavailable")
    return {"ok": True}
