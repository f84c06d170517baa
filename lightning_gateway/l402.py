"""
L402 header parsing and formatting for gateway challenges.

WWW-Authenticate: L402 macaroon="<voucher>", invoice="lnbc..."
Authorization: L402 <voucher>:<preimage>

The voucher travels in the "macaroon" slot so stock L402 clients can pay
and retry without knowing anything about gateways.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

SCHEME = "L402"


@dataclass
class L402Credentials:
    """Parsed L402 authorization credentials."""
    voucher: str
    preimage: str


def format_challenge(voucher: str, invoice: str) -> str:
    """
    Format a WWW-Authenticate header value for a 402 response.

    Args:
        voucher: Voucher wire form.
        invoice: Bolt11 invoice string.
    """
    return f'{SCHEME} macaroon="{voucher}", invoice="{invoice}"'


def format_challenge_body(
    gateway_id: str,
    path: str,
    price_sats: int,
    invoice: Optional[str] = None,
    voucher: Optional[str] = None,
    payment_hash: Optional[str] = None,
    balance_sats: Optional[int] = None,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Format the JSON body of a programmatic 402.

    When the payment rail could not produce an invoice, invoice, voucher and
    payment_hash are None and the body says so instead of giving pay steps.
    """
    body: Dict[str, Any] = {
        "success": False,
        "status": 402,
        "code": "PAYMENT_REQUIRED",
        "error": "Payment Required",
        "gatewayId": gateway_id,
        "path": path,
        "amountSats": price_sats,
        "description": description,
        "paymentHash": payment_hash,
        "invoice": invoice,
        "macaroon": voucher,
        "protocol": SCHEME,
    }
    if balance_sats is not None:
        body["balanceSats"] = balance_sats

    if invoice and voucher:
        body["instructions"] = {
            "step1": "Pay the Lightning invoice above",
            "step2": "Get the preimage from the payment receipt",
            "step3": f"Retry the request with header: Authorization: {SCHEME} <macaroon>:<preimage>",
        }
    else:
        body["invoiceError"] = "Lightning invoice unavailable, please retry later"
    return body


def parse_authorization(auth_header: Optional[str]) -> Optional[L402Credentials]:
    """
    Parse an Authorization: L402 header.

    Format: L402 <voucher>:<preimage>

    Returns:
        L402Credentials, or None if the header is absent or not L402.
    """
    if not auth_header or not isinstance(auth_header, str):
        return None

    trimmed = auth_header.strip()

    prefix = SCHEME.lower() + " "
    if not trimmed.lower().startswith(prefix):
        return None

    credentials = trimmed[len(prefix):].strip()
    colon_idx = credentials.find(":")
    if colon_idx == -1:
        return None

    voucher = credentials[:colon_idx]
    preimage = credentials[colon_idx + 1:]

    if not voucher or not preimage:
        return None

    return L402Credentials(voucher=voucher, preimage=preimage)


def is_l402_header(auth_header: Optional[str]) -> bool:
    """True if the header uses the L402 scheme, well-formed or not."""
    if not auth_header or not isinstance(auth_header, str):
        return False
    return auth_header.strip().lower().startswith(SCHEME.lower() + " ")
