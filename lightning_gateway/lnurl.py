"""
Lightning address resolution (LUD-16 / LNURL-pay).

Turns "name@domain" into a bolt11 invoice for a given amount:

1. GET https://domain/.well-known/lnurlp/name  -> payRequest metadata
2. GET <callback>?amount=<msats>[&comment=...] -> {"pr": "lnbc..."}
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .errors import PaymentRailError

logger = logging.getLogger(__name__)


def lightning_address_url(address: str) -> str:
    """Return the LNURL-pay metadata URL for a lightning address."""
    if not address or address.count("@") != 1:
        raise PaymentRailError(f"Invalid lightning address: {address!r}")
    name, domain = address.split("@")
    if not name or not domain:
        raise PaymentRailError(f"Invalid lightning address: {address!r}")
    scheme = "http" if domain.endswith(".onion") or domain.startswith("localhost") else "https"
    return f"{scheme}://{domain}/.well-known/lnurlp/{name}"


def _check(data: Any, what: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise PaymentRailError(f"LNURL {what}: unexpected response")
    if str(data.get("status", "")).upper() == "ERROR":
        raise PaymentRailError(f"LNURL {what}: {data.get('reason', 'unknown error')}")
    return data


async def request_invoice(
    address: str,
    amount_sats: int,
    comment: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """
    Fetch a bolt11 invoice paying `amount_sats` to a lightning address.

    Args:
        address: Lightning address (name@domain).
        amount_sats: Amount in sats.
        comment: Optional payer comment; trimmed to what the service allows.
        client: Optional shared httpx client.

    Returns:
        Bolt11 payment request.

    Raises:
        PaymentRailError: On network errors or LNURL-level rejections.
    """
    url = lightning_address_url(address)
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=15.0)

    try:
        meta = _check((await client.get(url)).json(), "metadata")
        if meta.get("tag") != "payRequest" or not meta.get("callback"):
            raise PaymentRailError(f"LNURL metadata for {address} is not a payRequest")

        amount_msats = amount_sats * 1000
        min_sendable = int(meta.get("minSendable", 0))
        max_sendable = int(meta.get("maxSendable", amount_msats))
        if amount_msats < min_sendable or amount_msats > max_sendable:
            raise PaymentRailError(
                f"Amount {amount_sats} sats outside {address} limits "
                f"({min_sendable // 1000}-{max_sendable // 1000} sats)"
            )

        params: Dict[str, Any] = {"amount": amount_msats}
        comment_allowed = int(meta.get("commentAllowed", 0) or 0)
        if comment and comment_allowed > 0:
            params["comment"] = comment[:comment_allowed]

        invoice = _check((await client.get(meta["callback"], params=params)).json(), "callback")
        pr = invoice.get("pr")
        if not pr:
            raise PaymentRailError(f"LNURL callback for {address} returned no invoice")

        logger.debug("Resolved %s to invoice for %d sats", address, amount_sats)
        return pr
    except httpx.HTTPError as e:
        raise PaymentRailError(f"LNURL request failed for {address}: {e}") from e
    except ValueError as e:
        raise PaymentRailError(f"LNURL response from {address} is not valid JSON") from e
    finally:
        if owns_client:
            await client.aclose()
