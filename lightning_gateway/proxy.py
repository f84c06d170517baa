"""
Metered proxy: resolve gateway, price, authorize, forward, settle, respond.

A request is paid for in one of three ways:

- the resolved price is 0 (free route): forwarded, nothing recorded;
- an L402 voucher whose preimage proves the invoice was paid: forwarded,
  the ledger is not touched;
- a session key with enough balance: forwarded, then settled in the ledger.

Anything else is a PAYMENT_REQUIRED outcome answered by the challenge layer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx
from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import Response

from .challenge import ChallengeLayer
from .errors import (
    GatewayInactive,
    GatewayNotFound,
    InsufficientBalance,
    InvalidRequest,
    InvalidSession,
    InvalidVoucher,
    SettlementError,
)
from .fees import FeeBreakdown, calculate_fees, get_platform_fee_percent
from .forwarding import (
    BODYLESS_METHODS,
    build_client_response,
    build_upstream_url,
    filter_query_params,
    filter_request_headers,
    forward_request,
)
from .l402 import is_l402_header, parse_authorization
from .ledger import Ledger, Settlement
from .locks import KeyedLock
from .models import Gateway
from .pricing import resolve_price
from .tokens import extract_session_key
from .voucher import MALFORMED, UNDERPRICED, verify_voucher

logger = logging.getLogger(__name__)

COST_HEADER = "X-Request-Cost"
BALANCE_HEADER = "X-Balance-Remaining"

DOT_SEGMENTS = {".", ".."}


def normalize_sub_path(sub_path: Optional[str]) -> str:
    """
    The priced path: always starts with "/", "/" when empty.

    Raises:
        InvalidRequest: The path has a "." or ".." segment. Those would be
            collapsed on the way upstream, so the path fetched would not be
            the path priced.
    """
    if not sub_path:
        return "/"
    if any(segment in DOT_SEGMENTS for segment in sub_path.split("/")):
        raise InvalidRequest("Path must not contain . or .. segments")
    return sub_path if sub_path.startswith("/") else "/" + sub_path


def _log_task_outcome(task: "asyncio.Future[Any]") -> None:
    # Retrieve the exception so an abandoned task (client went away) does not
    # warn about it never being retrieved.
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug("Metered call ended with %s", type(error).__name__)


class MeteredProxy:
    """
    Request-time pipeline for /g/{gateway_id}/... calls.

    Args:
        ledger: Settlement ledger.
        challenge: Builds 402 responses.
        client: httpx client used for upstream calls.
        settings: Application settings.
        locks: Per-session locks (one map per process).
    """

    def __init__(
        self,
        ledger: Ledger,
        challenge: ChallengeLayer,
        client: httpx.AsyncClient,
        settings: Any,
        locks: Optional[KeyedLock] = None,
    ):
        self.ledger = ledger
        self.challenge = challenge
        self.client = client
        self.settings = settings
        self.locks = locks or KeyedLock()
        self.fee_percent = get_platform_fee_percent(settings.PLATFORM_FEE_PERCENT)

    async def handle(self, request: Request, gateway_id: str, sub_path: Optional[str]) -> Response:
        gateway = await self.ledger.get_gateway(gateway_id)
        if gateway is None:
            raise GatewayNotFound()
        if not gateway.is_active:
            raise GatewayInactive()

        path = normalize_sub_path(sub_path)
        price = resolve_price(gateway.rules, path, gateway.price_per_request_sats)

        body = None
        if request.method.upper() not in BODYLESS_METHODS:
            body = await request.body()

        auth_header = request.headers.get("authorization")
        uses_voucher = is_l402_header(auth_header)

        if price == 0:
            upstream = await self._forward(request, gateway, path, body, uses_voucher)
            logger.info("Free call: %s %s%s -> %d", request.method, gateway.id, path, upstream.status_code)
            return build_client_response(upstream, {COST_HEADER: "0"})

        if uses_voucher:
            return await self._handle_voucher(request, gateway, path, price, body, auth_header)

        session_key = extract_session_key(request.headers, request.query_params)
        if session_key is None:
            return await self.challenge.respond(request, gateway, path, price)

        session = await self.ledger.get_session_by_key(session_key)
        if session is None:
            logger.warning("Unknown session key presented to gateway %s", gateway.id)
            raise InvalidSession()

        fees = calculate_fees(price, self.fee_percent)

        # Runs as its own task so a client disconnect cannot interrupt the
        # upstream call or the settlement that follows it.
        task = asyncio.ensure_future(self._metered_call(request, gateway, path, body, session.id, fees))
        task.add_done_callback(_log_task_outcome)
        return await asyncio.shield(task)

    async def _handle_voucher(
        self,
        request: Request,
        gateway: Gateway,
        path: str,
        price: int,
        body: Optional[bytes],
        auth_header: str,
    ) -> Response:
        credentials = parse_authorization(auth_header)
        if credentials is None:
            logger.warning("Malformed L402 credentials for gateway %s", gateway.id)
            raise InvalidVoucher("Malformed L402 credentials", reason=MALFORMED)

        check = verify_voucher(self.settings.GATEWAY_SECRET, credentials.voucher, gateway.id, credentials.preimage)
        if not check.valid:
            logger.warning("Voucher rejected for gateway %s: %s", gateway.id, check.reason)
            raise InvalidVoucher(check.error, reason=check.reason)
        if check.voucher.price < price:
            # Vouchers are not bound to one path, but never to a dearer route.
            logger.warning(
                "Voucher for %d sats presented for a %d sat route on gateway %s",
                check.voucher.price, price, gateway.id,
            )
            raise InvalidVoucher("Voucher does not cover the price of this route", reason=UNDERPRICED)

        upstream = await self._forward(request, gateway, path, body, strip_authorization=True)
        logger.info(
            "Voucher call: %s %s%s -> %d (payment %s)",
            request.method, gateway.id, path, upstream.status_code, check.voucher.payment_hash,
        )
        return build_client_response(upstream, {COST_HEADER: str(price)})

    async def _metered_call(
        self,
        request: Request,
        gateway: Gateway,
        path: str,
        body: Optional[bytes],
        session_id: str,
        fees: FeeBreakdown,
    ) -> Response:
        async with self.locks.hold(session_id):
            session = await self.ledger.get_session(session_id)
            if session is None:
                raise InvalidSession()
            if session.balance_sats < fees.total_cost:
                return await self.challenge.respond(request, gateway, path, fees.total_cost, session)

            upstream = await self._forward(request, gateway, path, body, strip_authorization=False)

            try:
                settlement = await self._settle(session_id, gateway, fees, request.method, path, upstream.status_code)
            except InsufficientBalance:
                # Another instance spent the balance while we were forwarding.
                logger.warning(
                    "Balance of session %s dropped below %d during the call; withholding response",
                    session_id, fees.total_cost,
                )
                session = await self.ledger.get_session(session_id)
                return await self.challenge.respond(request, gateway, path, fees.total_cost, session)

        headers = {COST_HEADER: str(fees.total_cost)}
        if settlement is not None:
            headers[BALANCE_HEADER] = str(settlement.balance_sats)
            logger.info(
                "Settled %s %s%s -> %d: cost=%d earner=%d platform=%d balance=%d",
                request.method, gateway.id, path, upstream.status_code,
                fees.total_cost, fees.dev_earnings, fees.platform_fee, settlement.balance_sats,
            )
        return build_client_response(upstream, headers)

    async def _forward(
        self,
        request: Request,
        gateway: Gateway,
        path: str,
        body: Optional[bytes],
        strip_authorization: bool,
    ) -> httpx.Response:
        return await forward_request(
            self.client,
            method=request.method,
            url=build_upstream_url(gateway.target_url, path),
            headers=filter_request_headers(request.headers.items(), strip_authorization=strip_authorization),
            params=filter_query_params(request.query_params.multi_items()),
            body=body,
            timeout=self.settings.UPSTREAM_TIMEOUT_SECONDS,
        )

    async def _settle(
        self,
        session_id: str,
        gateway: Gateway,
        fees: FeeBreakdown,
        method: str,
        path: str,
        status_code: int,
    ) -> Optional[Settlement]:
        """
        Settle, retrying database errors. A missing earner is not retried.

        Returns:
            The Settlement, or None when every attempt failed. The upstream
            call has already happened, so the caller still gets its response.

        Raises:
            InsufficientBalance: The conditional debit found too little balance.
        """
        attempts = self.settings.SETTLEMENT_RETRIES
        attempt = 0
        while attempt < attempts:
            attempt += 1
            try:
                return await self.ledger.settle(
                    session_id, gateway.id, gateway.developer_id, fees, method, path, status_code
                )
            except SettlementError as e:
                # Missing earner: retrying cannot help.
                logger.warning("Settlement failed for session %s: %s", session_id, e)
                break
            except SQLAlchemyError as e:
                logger.warning("Settlement attempt %d/%d failed for session %s: %s", attempt, attempts, session_id, e)
                if attempt < attempts:
                    await asyncio.sleep(0.05 * attempt)

        logger.critical(
            "Settlement failed after %d attempt(s): session=%s gateway=%s earner=%s cost=%d earner_share=%d "
            "platform_fee=%d method=%s path=%s status=%d",
            attempt, session_id, gateway.id, gateway.developer_id, fees.total_cost,
            fees.dev_earnings, fees.platform_fee, method, path, status_code,
        )
        return None
