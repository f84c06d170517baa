"""
402 responses for callers that cannot pay from an existing balance.

Browsers (Accept: text/html) get a payment page that tops up a session.
Everything else gets an L402 challenge: an invoice plus a voucher bound to
its payment hash, which the client redeems with the preimage.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Request
from fastapi.responses import HTMLResponse, JSONResponse
from starlette.responses import Response

from .l402 import format_challenge, format_challenge_body
from .ledger import Ledger
from .models import Gateway, Session
from .page import render_payment_page
from .rails import PaymentRail
from .topups import TopupService
from .voucher import create_voucher

logger = logging.getLogger(__name__)


def wants_html(request: Request) -> bool:
    return "text/html" in request.headers.get("accept", "").lower()


class ChallengeLayer:
    """Builds interactive and programmatic 402 responses."""

    def __init__(self, ledger: Ledger, rail: PaymentRail, topups: TopupService, settings: Any):
        self.ledger = ledger
        self.rail = rail
        self.topups = topups
        self.settings = settings

    async def respond(
        self,
        request: Request,
        gateway: Gateway,
        path: str,
        price_sats: int,
        session: Optional[Session] = None,
    ) -> Response:
        """
        Answer a PAYMENT_REQUIRED outcome.

        Args:
            request: The original proxy request.
            gateway: Gateway being called.
            path: Priced sub-path.
            price_sats: Resolved price.
            session: Session that was short of funds, if one was presented.
        """
        logger.warning(
            "Payment required: gateway=%s path=%s price=%d session=%s",
            gateway.id, path, price_sats, session.id if session else None,
        )
        if wants_html(request):
            return await self.interactive(request, gateway, path, price_sats, session)
        return await self.programmatic(gateway, path, price_sats, session)

    async def interactive(
        self,
        request: Request,
        gateway: Gateway,
        path: str,
        price_sats: int,
        session: Optional[Session],
    ) -> HTMLResponse:
        if session is None:
            session = await self.ledger.create_session()

        topup, invoice = await self.topups.open_topup(session, price_sats, f"{gateway.name}: {path}")

        original_url = request.url.path
        if request.url.query:
            original_url += "?" + request.url.query

        html = render_payment_page(
            gateway_name=gateway.name,
            price_sats=price_sats,
            original_url=original_url,
            form_action=request.url.path,
            form_params=list(request.query_params.multi_items()),
            session_key=session.session_key,
            balance_sats=session.balance_sats,
            payment_request=invoice.payment_request if invoice else None,
            status_url=f"/api/sessions/topup/{topup.id}" if topup else None,
            poll_interval_ms=self.settings.TOPUP_POLL_INTERVAL_MS,
            poll_max_attempts=self.settings.TOPUP_POLL_MAX_ATTEMPTS,
        )
        return HTMLResponse(html, status_code=402)

    async def programmatic(
        self,
        gateway: Gateway,
        path: str,
        price_sats: int,
        session: Optional[Session],
    ) -> JSONResponse:
        balance = session.balance_sats if session else None
        try:
            invoice = await self.rail.create_invoice(price_sats, f"{gateway.name}: {path}")
        except Exception:
            logger.warning("Invoice creation failed for gateway %s", gateway.id, exc_info=True)
            body = format_challenge_body(
                gateway.id, path, price_sats, balance_sats=balance, description=gateway.description
            )
            return JSONResponse(body, status_code=402)

        voucher = create_voucher(
            self.settings.GATEWAY_SECRET,
            invoice.payment_hash,
            gateway.id,
            path,
            price_sats,
            ttl=self.settings.VOUCHER_TTL_SECONDS,
        )
        body = format_challenge_body(
            gateway.id,
            path,
            price_sats,
            invoice=invoice.payment_request,
            voucher=voucher.raw,
            payment_hash=invoice.payment_hash,
            balance_sats=balance,
            description=gateway.description,
        )
        return JSONResponse(
            body,
            status_code=402,
            headers={"WWW-Authenticate": format_challenge(voucher.raw, invoice.payment_request)},
        )
