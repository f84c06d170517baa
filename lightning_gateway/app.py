"""
FastAPI application: metered proxy routes and session top-up API.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .challenge import ChallengeLayer
from .config import Settings, get_settings
from .errors import AuthRequired, GatewayError, InvalidRequest, InvalidSession
from .ledger import Ledger, as_utc
from .locks import KeyedLock
from .models import Session
from .proxy import MeteredProxy
from .rails import PaymentRail, create_rail
from .tokens import extract_session_key
from .topups import TopupService

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class TopupRequest(BaseModel):
    amountSats: Optional[int] = None
    sessionKey: Optional[str] = None


async def current_session(request: Request) -> Session:
    """Dependency: the session named by X-Session-Key or ?session_key=."""
    session_key = extract_session_key(request.headers, request.query_params)
    if session_key is None:
        raise AuthRequired()
    session = await request.app.state.ledger.get_session_by_key(session_key)
    if session is None:
        raise InvalidSession()
    return session


def create_app(
    settings: Optional[Settings] = None,
    rail: Optional[PaymentRail] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    ledger: Optional[Ledger] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        settings: Settings (defaults to environment / .env).
        rail: Payment rail (defaults to create_rail(settings)).
        http_client: Client for upstream calls (defaults to a new AsyncClient).
        ledger: Ledger (defaults to one on settings.DATABASE_URL).

    Returns:
        FastAPI app. Collaborators are on app.state.
    """
    settings = settings or get_settings()
    if not settings.GATEWAY_SECRET:
        raise ValueError("lightning-gateway: GATEWAY_SECRET is required for voucher signing")

    own_client = http_client is None
    own_ledger = ledger is None
    own_rail = rail is None

    ledger = ledger or Ledger.from_url(settings.DATABASE_URL)
    rail = rail or create_rail(settings)
    http_client = http_client or httpx.AsyncClient(follow_redirects=False)

    topups = TopupService(ledger, rail, invoice_expiry=settings.INVOICE_EXPIRY_SECONDS)
    challenge = ChallengeLayer(ledger, rail, topups, settings)
    proxy = MeteredProxy(ledger, challenge, http_client, settings, locks=KeyedLock())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Gateway started (env=%s, rail=%s)", settings.ENV, type(rail).__name__)
        yield
        if own_client:
            await http_client.aclose()
        if own_rail:
            await rail.close()
        if own_ledger:
            ledger.dispose()

    app = FastAPI(title="lightning-gateway", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.rail = rail
    app.state.topups = topups
    app.state.proxy = proxy

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        error = InvalidRequest("Invalid request body")
        return JSONResponse(error.to_dict(), status_code=error.status_code)

    # ------------------------------------------------------------------
    # Metered proxy
    # ------------------------------------------------------------------

    @app.api_route("/g/{gateway_id}", methods=PROXY_METHODS)
    async def proxy_root(gateway_id: str, request: Request):
        return await proxy.handle(request, gateway_id, "")

    @app.api_route("/g/{gateway_id}/{path:path}", methods=PROXY_METHODS)
    async def proxy_path(gateway_id: str, path: str, request: Request):
        return await proxy.handle(request, gateway_id, path)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @app.post("/api/sessions/topup")
    async def create_topup(body: TopupRequest) -> Dict[str, Any]:
        return await topups.create_topup(body.amountSats, session_key=body.sessionKey)

    @app.get("/api/sessions/topup/{topup_id}")
    async def topup_status(topup_id: str, session: Session = Depends(current_session)) -> Dict[str, Any]:
        return await topups.check_status(topup_id, session)

    @app.get("/api/sessions/topups")
    async def list_topups(session: Session = Depends(current_session)) -> Dict[str, Any]:
        return {"topups": await topups.list_topups(session)}

    @app.get("/api/sessions/me")
    async def session_me(session: Session = Depends(current_session)) -> Dict[str, Any]:
        created_at = as_utc(session.created_at)
        return {
            "sessionKey": session.session_key,
            "balanceSats": session.balance_sats,
            "createdAt": created_at.isoformat() if created_at else None,
        }

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    return app
