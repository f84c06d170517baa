"""
Payment rail clients.

The gateway talks to the Lightning network through a narrow contract:

    create_invoice(amount_sats, description) -> Invoice
    get_invoice_status(payment_hash)        -> InvoiceStatus
    pay_to_address(address, amount_sats, memo) -> Payment

Implementations:
    AlbyRail       Alby wallet HTTP API (ALBY_API_KEY)
    NwcRail        Nostr Wallet Connect (NWC_URL), see nwc.py
    SimulatedRail  deterministic stand-in when no rail is configured

create_rail() picks one from configuration at startup.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import httpx

from . import lnurl
from .errors import PaymentRailError

logger = logging.getLogger(__name__)

ALBY_API_BASE = "https://api.getalby.com"


@dataclass
class Invoice:
    """A freshly created Lightning invoice."""
    payment_hash: str
    payment_request: str
    expires_at: Optional[datetime] = None


@dataclass
class InvoiceStatus:
    """Settlement state of an invoice."""
    settled: bool
    preimage: Optional[str] = None


@dataclass
class Payment:
    """Result of an outbound payment."""
    payment_hash: str
    preimage: str
    fee_sats: int = 0


class PaymentRail(Protocol):
    async def create_invoice(self, amount_sats: int, description: str = "") -> Invoice: ...

    async def get_invoice_status(self, payment_hash: str) -> InvoiceStatus: ...

    async def pay_to_address(self, address: str, amount_sats: int, memo: str = "") -> Payment: ...

    async def close(self) -> None: ...


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class SimulatedRail:
    """
    Stand-in rail for development and tests.

    Invoices are always reported settled. Preimages are derived from a seed
    and a counter, so a run is reproducible; preimage_for() exposes them so
    an L402 round trip can be completed without a wallet.
    """

    def __init__(self, seed: str = "simulated", invoice_expiry: int = 3600):
        self.seed = seed
        self.invoice_expiry = invoice_expiry
        self._counter = 0
        self._preimages: Dict[str, str] = {}

    def _next_preimage(self) -> str:
        self._counter += 1
        return hashlib.sha256(f"{self.seed}:{self._counter}".encode("utf-8")).hexdigest()

    async def create_invoice(self, amount_sats: int, description: str = "") -> Invoice:
        preimage = self._next_preimage()
        payment_hash = hashlib.sha256(bytes.fromhex(preimage)).hexdigest()
        self._preimages[payment_hash] = preimage
        return Invoice(
            payment_hash=payment_hash,
            payment_request=f"lnbcsim{amount_sats}n1{payment_hash[:40]}",
            expires_at=datetime.fromtimestamp(time.time() + self.invoice_expiry, tz=timezone.utc),
        )

    async def get_invoice_status(self, payment_hash: str) -> InvoiceStatus:
        return InvoiceStatus(settled=True, preimage=self._preimages.get(payment_hash))

    async def pay_to_address(self, address: str, amount_sats: int, memo: str = "") -> Payment:
        preimage = self._next_preimage()
        return Payment(
            payment_hash=hashlib.sha256(bytes.fromhex(preimage)).hexdigest(),
            preimage=preimage,
            fee_sats=-(-amount_sats // 1000),  # 0.1%, rounded up
        )

    def preimage_for(self, payment_hash: str) -> Optional[str]:
        return self._preimages.get(payment_hash)

    async def close(self) -> None:
        pass


class AlbyRail:
    """Alby wallet API client."""

    def __init__(
        self,
        api_key: str,
        base_url: str = ALBY_API_BASE,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ValueError("Alby API key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = await self._client.request(
                method, f"{self.base_url}{endpoint}", headers=headers, **kwargs
            )
        except httpx.HTTPError as e:
            raise PaymentRailError(f"Alby API unreachable: {e}") from e

        if response.is_error:
            raise PaymentRailError(f"Alby API error: {response.status_code} - {response.text}")
        try:
            return response.json()
        except ValueError as e:
            raise PaymentRailError("Alby API returned invalid JSON") from e

    async def create_invoice(self, amount_sats: int, description: str = "") -> Invoice:
        data = await self._request("POST", "/invoices", json={
            "amount": amount_sats,
            "description": description,
        })
        if not data.get("payment_hash") or not data.get("payment_request"):
            raise PaymentRailError("Alby create invoice returned no payment request")
        return Invoice(
            payment_hash=data["payment_hash"],
            payment_request=data["payment_request"],
            expires_at=_parse_timestamp(data.get("expires_at")),
        )

    async def get_invoice_status(self, payment_hash: str) -> InvoiceStatus:
        data = await self._request("GET", f"/invoices/{payment_hash}")
        logger.debug("Alby invoice %s: settled=%s", payment_hash, data.get("settled"))
        return InvoiceStatus(settled=bool(data.get("settled")), preimage=data.get("preimage"))

    async def pay_to_address(self, address: str, amount_sats: int, memo: str = "") -> Payment:
        invoice = await lnurl.request_invoice(address, amount_sats, memo, client=self._client)
        data = await self._request("POST", "/payments/bolt11", json={"invoice": invoice})
        return Payment(
            payment_hash=data.get("payment_hash", ""),
            preimage=data.get("preimage", ""),
            fee_sats=int(data.get("fee", 0) or 0),
        )

    async def close(self) -> None:
        await self._client.aclose()


def create_rail(settings: Any, require_real: bool = False) -> PaymentRail:
    """
    Pick a payment rail from configuration.

    Alby API key first, then NWC URL, otherwise the simulated rail.

    Args:
        settings: Settings with ALBY_API_KEY / NWC_URL / INVOICE_EXPIRY_SECONDS.
        require_real: Raise instead of falling back to the simulated rail.
    """
    if settings.ALBY_API_KEY:
        return AlbyRail(settings.ALBY_API_KEY)

    if settings.NWC_URL:
        from .nwc import NwcRail

        return NwcRail(settings.NWC_URL, invoice_expiry=settings.INVOICE_EXPIRY_SECONDS)

    if require_real:
        raise PaymentRailError("ALBY_API_KEY or NWC_URL is required for payments")

    logger.warning("No payment rail configured: using SimulatedRail, payments are not real!")
    return SimulatedRail(invoice_expiry=settings.INVOICE_EXPIRY_SECONDS)
