import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from audit import AuditSink
from config import settings
from db import SessionLocal, init_db
from decision import DecisionEngine
from errors import InvalidIdentity, InvalidTransition, StoreUnavailable
from lease import FetchLease
from policy import VerificationPolicy, policy_from_settings
from reputation import SteamReputationFetcher
from schemas import (
    DecisionResponse,
    EvaluateRequest,
    HealthResponse,
    ResolveRequest,
    ServerContext,
    VerificationResponse,
)
from security import require_plugin
from steam_ids import to_steam_id64
from stores import BanStore, ConnectionLogStore, VerificationStore, WhitelistStore
from verification import VerificationCache, VerificationStatus


# ======================================================
# Logging
# ======================================================

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("gate.api")


# ======================================================
# Wiring
# ======================================================

def build_engine(
    *,
    fetcher,
    audit: AuditSink,
    session_factory: Optional[sessionmaker] = None,
    lease: Optional[FetchLease] = None,
    policy: Optional[VerificationPolicy] = None,
) -> DecisionEngine:
    session_factory = session_factory or SessionLocal

    if lease is None:
        from redis_client import redis_client
        lease = FetchLease(redis_client)

    cache = VerificationCache(
        VerificationStore(session_factory),
        fetcher,
        audit=audit,
        lease=lease,
        policy=policy or policy_from_settings(settings),
        ttl_seconds=settings.VERIFICATION_TTL_SECONDS,
        fetch_timeout=settings.FETCH_TIMEOUT_SECONDS,
        max_pending_age=settings.MAX_PENDING_AGE_SECONDS,
        retry_backoff=settings.FETCH_RETRY_BACKOFF_SECONDS,
    )

    return DecisionEngine(
        bans=BanStore(session_factory),
        whitelist=WhitelistStore(session_factory),
        cache=cache,
        connections=ConnectionLogStore(session_factory),
        audit=audit,
    )


def get_engine(request: Request) -> DecisionEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Gate initializing")
    return engine


# ======================================================
# Lifecycle
# ======================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()

    audit = AuditSink(settings.AUDIT_SINK_URL, settings.AUDIT_SHARED_SECRET)
    audit.start()

    fetcher = SteamReputationFetcher(
        steam_api_base_url=settings.STEAM_API_BASE_URL,
        steam_api_key=settings.STEAM_API_KEY,
        rating_api_base_url=settings.RATING_API_BASE_URL,
    )

    engine = build_engine(fetcher=fetcher, audit=audit)
    app.state.engine = engine
    logger.info(f"Access gate started (env={settings.ENV})")

    yield

    # Let in-flight fetches land in the cache; each is bounded by its timeout
    await engine.cache.drain()
    await fetcher.aclose()
    await audit.shutdown()
    app.state.engine = None


app = FastAPI(title="Access Gate", lifespan=lifespan)


# ======================================================
# Error mapping
# ======================================================

@app.exception_handler(InvalidIdentity)
async def invalid_identity_handler(request: Request, exc: InvalidIdentity):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    logger.error(f"Store unavailable on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Access records unavailable"})


# ======================================================
# Health
# ======================================================

@app.get("/health", response_model=HealthResponse)
def health_check(request: Request):
    if getattr(request.app.state, "engine", None) is None:
        return {"status": "initializing"}
    return {"status": "ok"}


# ======================================================
# Plugin API
# ======================================================

@app.post("/api/evaluate", response_model=DecisionResponse)
async def evaluate(
    body: EvaluateRequest,
    _: str = Depends(require_plugin),
    engine: DecisionEngine = Depends(get_engine),
):
    """
    Verdict for one connecting player.

    PENDING and UNKNOWN are passed through unchanged; the plugin's
    own configuration decides what they mean for the player.

    Bots have no Steam identity ("BOT") and are rejected with 422;
    plugins must skip them instead of asking.
    """
    result = await engine.evaluate(
        body.steam_id,
        body.ip,
        ServerContext(
            name=body.server_name,
            address=body.server_address,
            verification_enabled=body.verification_enabled,
        ),
        player_name=body.player_name,
    )

    return DecisionResponse(
        verdict=result.verdict.value,
        rule=result.rule.value,
        reason=result.reason,
        expires_at=result.expires_at,
        stale=result.stale,
        attributes=result.attributes,
    )


@app.get("/api/verifications/{steam_id}", response_model=VerificationResponse)
async def get_verification(
    steam_id: str,
    _: str = Depends(require_plugin),
    engine: DecisionEngine = Depends(get_engine),
):
    steam_id64 = to_steam_id64(steam_id)
    entry = engine.cache.get(steam_id64)
    if entry.status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No verification record")
    return _verification_response(steam_id64, entry)


@app.put("/api/verifications/{steam_id}", response_model=VerificationResponse)
async def resolve_verification(
    steam_id: str,
    body: ResolveRequest,
    _: str = Depends(require_plugin),
    engine: DecisionEngine = Depends(get_engine),
):
    """Plugin-side judgment of a verified record."""
    steam_id64 = to_steam_id64(steam_id)
    if engine.cache.get(steam_id64).status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No verification record")

    entry = engine.cache.resolve(steam_id64, VerificationStatus(body.status), body.reason)
    return _verification_response(steam_id64, entry)


# ======================================================
# Utils
# ======================================================

def _verification_response(steam_id64: str, entry) -> VerificationResponse:
    return VerificationResponse(
        steam_id=steam_id64,
        status=entry.status.value,
        verdict=entry.verdict.value if entry.verdict else None,
        reason=entry.reason,
        stale=entry.is_stale,
        attributes=entry.attributes,
        updated_at=entry.updated_at,
    )
