"""
Payment vouchers: macaroon-style tokens bound to one paid invoice.

A voucher is minted when a programmatic client gets a 402. It binds:

    paymentHash  the Lightning invoice the client must pay
    gatewayId    the gateway it may be spent on
    path         the sub-path that was priced
    price        the price quoted, in sats
    expiresAt    unix seconds

The signature is a chained HMAC-SHA256: HMAC(secret, paymentHash), then each
bound field is folded in as a "key = value" caveat. Any change to any field
breaks the chain.

Wire format: unpadded base64url of the JSON object above plus "signature".

Verification never calls the payment rail. Knowing a preimage whose SHA-256
equals paymentHash proves the invoice was paid.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from typing import List, Optional, Union

DEFAULT_VOUCHER_TTL = 3600

# Rejection tags
MALFORMED = "malformed"
BAD_SIGNATURE = "bad_signature"
EXPIRED = "expired"
WRONG_GATEWAY = "wrong_gateway"
BAD_PREIMAGE = "bad_preimage"
UNDERPRICED = "underpriced"     # quoted price is below the route being called


@dataclass
class Voucher:
    """Decoded voucher."""
    payment_hash: str
    gateway_id: str
    path: str
    price: int
    expires_at: int
    signature: str                 # hex-encoded HMAC chain result
    raw: str = ""                  # base64url-encoded JSON (the wire format)

    @property
    def caveats(self) -> List[str]:
        return _caveats(self.gateway_id, self.path, self.price, self.expires_at)


@dataclass
class VoucherCheck:
    """Result of voucher verification."""
    valid: bool
    error: Optional[str] = None
    reason: Optional[str] = None   # one of the rejection tags
    voucher: Optional[Voucher] = None


def _caveats(gateway_id: str, path: str, price: int, expires_at: int) -> List[str]:
    return [
        f"gateway_id = {gateway_id}",
        f"path = {path}",
        f"price = {price}",
        f"expires_at = {expires_at}",
    ]


def _sign(secret: Union[str, bytes], payment_hash: str, caveats: List[str]) -> str:
    key = secret.encode("utf-8") if isinstance(secret, str) else secret
    sig = hmac.new(key, payment_hash.encode("utf-8"), hashlib.sha256).digest()
    for caveat in caveats:
        sig = hmac.new(sig, caveat.encode("utf-8"), hashlib.sha256).digest()
    return sig.hex()


def create_voucher(
    secret: Union[str, bytes],
    payment_hash: str,
    gateway_id: str,
    path: str,
    price: int,
    expires_at: Optional[int] = None,
    ttl: int = DEFAULT_VOUCHER_TTL,
) -> Voucher:
    """
    Mint a voucher for a freshly created invoice.

    Args:
        secret: Server HMAC secret.
        payment_hash: Hex payment hash of the invoice.
        gateway_id: Gateway the voucher is valid for.
        path: Priced sub-path.
        price: Quoted price in sats.
        expires_at: Unix expiry. Defaults to now + ttl.
        ttl: Lifetime in seconds when expires_at is not given.

    Returns:
        Voucher with signature and raw wire form.
    """
    if not secret:
        raise ValueError("Voucher secret is required")
    if not payment_hash:
        raise ValueError("payment_hash is required for voucher")
    if not gateway_id:
        raise ValueError("gateway_id is required for voucher")

    if expires_at is None:
        expires_at = int(time.time()) + ttl

    signature = _sign(secret, payment_hash, _caveats(gateway_id, path, price, expires_at))

    payload = {
        "paymentHash": payment_hash,
        "gatewayId": gateway_id,
        "path": path,
        "price": price,
        "expiresAt": expires_at,
        "signature": signature,
    }
    raw = urlsafe_b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8")).decode("ascii")
    raw = raw.rstrip("=")

    return Voucher(
        payment_hash=payment_hash,
        gateway_id=gateway_id,
        path=path,
        price=price,
        expires_at=expires_at,
        signature=signature,
        raw=raw,
    )


def decode_voucher(raw: str) -> Optional[Voucher]:
    """
    Decode the wire form of a voucher without verifying it.

    Returns:
        Voucher, or None if the string is not a well-formed voucher.
    """
    if not raw or not isinstance(raw, str):
        return None
    try:
        padded = raw + "=" * (-len(raw) % 4)
        parsed = json.loads(urlsafe_b64decode(padded).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(parsed, dict):
        return None

    payment_hash = parsed.get("paymentHash")
    gateway_id = parsed.get("gatewayId")
    path = parsed.get("path")
    price = parsed.get("price")
    expires_at = parsed.get("expiresAt")
    signature = parsed.get("signature")

    if not isinstance(payment_hash, str) or not payment_hash:
        return None
    if not isinstance(gateway_id, str) or not gateway_id:
        return None
    if not isinstance(path, str) or not isinstance(signature, str) or not signature:
        return None
    for number in (price, expires_at):
        if isinstance(number, bool) or not isinstance(number, int):
            return None

    return Voucher(
        payment_hash=payment_hash,
        gateway_id=gateway_id,
        path=path,
        price=price,
        expires_at=expires_at,
        signature=signature,
        raw=raw,
    )


def verify_preimage(preimage: str, payment_hash: str) -> bool:
    """
    Check that SHA256(preimage) == payment_hash.

    Args:
        preimage: Hex-encoded preimage.
        payment_hash: Hex-encoded payment hash.
    """
    if not preimage or not payment_hash:
        return False
    try:
        computed = hashlib.sha256(bytes.fromhex(preimage)).digest()
        return hmac.compare_digest(computed, bytes.fromhex(payment_hash))
    except ValueError:
        return False


def verify_voucher(
    secret: Union[str, bytes],
    raw: str,
    gateway_id: str,
    preimage: str,
    now: Optional[float] = None,
) -> VoucherCheck:
    """
    Verify a presented voucher.

    Checks, in order: structure, signature, expiry, gateway binding, preimage.
    The first failing check decides the rejection tag.

    Args:
        secret: Server HMAC secret.
        raw: Voucher wire form from the Authorization header.
        gateway_id: Gateway being called.
        preimage: Hex preimage presented by the client.
        now: Current unix time (defaults to time.time()).

    Returns:
        VoucherCheck; valid is True only if every check passed.
    """
    voucher = decode_voucher(raw)
    if voucher is None:
        return VoucherCheck(valid=False, error="Invalid voucher format", reason=MALFORMED)

    expected = _sign(secret, voucher.payment_hash, voucher.caveats)
    if not hmac.compare_digest(voucher.signature.encode("utf-8"), expected.encode("utf-8")):
        return VoucherCheck(valid=False, error="Invalid voucher signature", reason=BAD_SIGNATURE, voucher=voucher)

    if now is None:
        now = time.time()
    if now > voucher.expires_at:
        return VoucherCheck(valid=False, error="Voucher expired", reason=EXPIRED, voucher=voucher)

    if voucher.gateway_id != gateway_id:
        return VoucherCheck(
            valid=False,
            error="Voucher not valid for this gateway",
            reason=WRONG_GATEWAY,
            voucher=voucher,
        )

    if not verify_preimage(preimage, voucher.payment_hash):
        return VoucherCheck(
            valid=False,
            error="Invalid preimage: does not match payment hash",
            reason=BAD_PREIMAGE,
            voucher=voucher,
        )

    return VoucherCheck(valid=True, voucher=voucher)
