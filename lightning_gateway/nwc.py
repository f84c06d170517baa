"""
Nostr Wallet Connect (NIP-47) payment rail.

Talks to a Lightning wallet through a Nostr relay:

1. Parse the NWC URL: relay URL, wallet pubkey, client secret
2. Open a WebSocket to the relay
3. Publish NIP-04 encrypted requests (kind 23194)
4. Read the encrypted response (kind 23195) tagged with the request id

NIP-04 is ECDH over secp256k1 (coincurve) + AES-256-CBC (PyCryptodome).
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import secrets
import time
from base64 import b64decode, b64encode
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

from coincurve import PrivateKey, PublicKey
from Crypto.Cipher import AES
from Crypto.Util.Padding import pad, unpad
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import WebSocketException

from . import lnurl
from .errors import PaymentRailError
from .rails import Invoice, InvoiceStatus, Payment

logger = logging.getLogger(__name__)

KIND_REQUEST = 23194
KIND_RESPONSE = 23195


@dataclass
class NwcConfig:
    """Parsed NWC URL."""
    relay_url: str
    wallet_pubkey: str
    secret_key: str
    client_pubkey: str


def xonly_pubkey(private_key_hex: str) -> str:
    """x-only (32 byte, hex) public key for a secp256k1 private key."""
    compressed = PrivateKey(bytes.fromhex(private_key_hex)).public_key.format(compressed=True)
    return compressed[1:].hex()


class Nip04Cipher:
    """
    NIP-04 encryption between our key and one peer.

    The ECDH shared secret is computed once per peer.
    """

    def __init__(self, private_key_hex: str, peer_pubkey_hex: str):
        peer = PublicKey(b"\x02" + bytes.fromhex(peer_pubkey_hex))
        point = peer.multiply(bytes.fromhex(private_key_hex))
        self._key = point.format(compressed=True)[1:]

    def encrypt(self, plaintext: str) -> str:
        """Return "<base64 ciphertext>?iv=<base64 iv>"."""
        iv = os.urandom(16)
        cipher = AES.new(self._key, AES.MODE_CBC, iv)
        ciphertext = cipher.encrypt(pad(plaintext.encode("utf-8"), AES.block_size))
        return f"{b64encode(ciphertext).decode('ascii')}?iv={b64encode(iv).decode('ascii')}"

    def decrypt(self, payload: str) -> str:
        body, sep, iv = payload.partition("?iv=")
        if not sep:
            raise ValueError("Invalid NIP-04 payload (expected '...?iv=...')")
        cipher = AES.new(self._key, AES.MODE_CBC, b64decode(iv))
        return unpad(cipher.decrypt(b64decode(body)), AES.block_size).decode("utf-8")


def parse_nwc_url(nwc_url: str) -> NwcConfig:
    """
    Parse nostr+walletconnect://<wallet_pubkey>?relay=<url>&secret=<hex>.

    Raises:
        ValueError: On a wrong scheme or missing pubkey/relay/secret.
    """
    parsed = urlparse(nwc_url)
    if parsed.scheme != "nostr+walletconnect":
        raise ValueError(f"Invalid NWC URL scheme: {parsed.scheme} (expected nostr+walletconnect)")

    wallet_pubkey = parsed.netloc or parsed.hostname or ""
    if not wallet_pubkey:
        raise ValueError("NWC URL missing wallet pubkey")

    params = parse_qs(parsed.query)
    relay_url = params.get("relay", [None])[0]
    secret_key = params.get("secret", [None])[0]
    if not relay_url:
        raise ValueError("NWC URL missing relay parameter")
    if not secret_key:
        raise ValueError("NWC URL missing secret parameter")

    return NwcConfig(
        relay_url=relay_url,
        wallet_pubkey=wallet_pubkey,
        secret_key=secret_key,
        client_pubkey=xonly_pubkey(secret_key),
    )


def sign_event(event: Dict[str, Any], secret_key: str) -> Dict[str, Any]:
    """Fill in NIP-01 id and schnorr sig."""
    serialized = json.dumps(
        [0, event["pubkey"], event["created_at"], event["kind"], event["tags"], event["content"]],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    digest = hashlib.sha256(serialized.encode("utf-8")).digest()
    event["id"] = digest.hex()
    event["sig"] = PrivateKey(bytes.fromhex(secret_key)).sign_schnorr(digest).hex()
    return event


class NwcRail:
    """Payment rail backed by an NWC wallet."""

    def __init__(self, nwc_url: str, invoice_expiry: int = 3600, timeout: float = 30.0):
        self.config = parse_nwc_url(nwc_url)
        self.invoice_expiry = invoice_expiry
        self.timeout = timeout
        self._cipher = Nip04Cipher(self.config.secret_key, self.config.wallet_pubkey)
        self._ws: Optional[ClientConnection] = None
        # One request in flight per connection: responses are read off a shared socket.
        self._lock = asyncio.Lock()

    async def _connection(self) -> ClientConnection:
        if self._ws is not None:
            try:
                await self._ws.ping()
                return self._ws
            except WebSocketException:
                self._ws = None
        self._ws = await connect(self.config.relay_url)
        return self._ws

    async def _call(self, method: str, params: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        """Send one NIP-47 request and wait for its result."""
        timeout = timeout or self.timeout
        async with self._lock:
            try:
                return await asyncio.wait_for(self._exchange(method, params), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise PaymentRailError(f"NWC {method} timed out after {timeout}s") from e
            except (OSError, WebSocketException) as e:
                self._ws = None
                raise PaymentRailError(f"NWC relay error: {e}") from e

    async def _exchange(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        ws = await self._connection()
        event = sign_event({
            "kind": KIND_REQUEST,
            "pubkey": self.config.client_pubkey,
            "created_at": int(time.time()),
            "tags": [["p", self.config.wallet_pubkey]],
            "content": self._cipher.encrypt(json.dumps({"method": method, "params": params})),
        }, self.config.secret_key)

        sub_id = secrets.token_hex(16)
        await ws.send(json.dumps(["REQ", sub_id, {
            "kinds": [KIND_RESPONSE],
            "authors": [self.config.wallet_pubkey],
            "#p": [self.config.client_pubkey],
            "#e": [event["id"]],
        }]))
        await ws.send(json.dumps(["EVENT", event]))

        try:
            while True:
                msg = json.loads(await ws.recv())
                if not (isinstance(msg, list) and len(msg) >= 3 and msg[0] == "EVENT" and msg[1] == sub_id):
                    continue
                result = json.loads(self._cipher.decrypt(msg[2]["content"]))
                error = result.get("error")
                if error:
                    raise PaymentRailError(
                        f"NWC error: {error.get('message', 'Unknown error')} (code: {error.get('code', 'N/A')})"
                    )
                return result.get("result") or {}
        finally:
            try:
                await ws.send(json.dumps(["CLOSE", sub_id]))
            except WebSocketException:
                pass

    async def create_invoice(self, amount_sats: int, description: str = "") -> Invoice:
        result = await self._call("make_invoice", {
            "amount": amount_sats * 1000,  # millisats
            "description": description,
            "expiry": self.invoice_expiry,
        })
        if not result.get("invoice") or not result.get("payment_hash"):
            raise PaymentRailError("NWC make_invoice returned no invoice")

        expires_at = result.get("expires_at")
        return Invoice(
            payment_hash=result["payment_hash"],
            payment_request=result["invoice"],
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc) if expires_at else None,
        )

    async def get_invoice_status(self, payment_hash: str) -> InvoiceStatus:
        result = await self._call("lookup_invoice", {"payment_hash": payment_hash})
        settled = result.get("settled_at") is not None or bool(result.get("preimage"))
        return InvoiceStatus(settled=settled, preimage=result.get("preimage"))

    async def pay_to_address(self, address: str, amount_sats: int, memo: str = "") -> Payment:
        invoice = await lnurl.request_invoice(address, amount_sats, memo)
        result = await self._call("pay_invoice", {"invoice": invoice}, timeout=60.0)
        if not result.get("preimage"):
            raise PaymentRailError("NWC pay_invoice returned no preimage")

        preimage = result["preimage"]
        return Payment(
            payment_hash=result.get("payment_hash") or hashlib.sha256(bytes.fromhex(preimage)).hexdigest(),
            preimage=preimage,
            fee_sats=int(result.get("fees_paid", 0) or 0) // 1000,
        )

    async def close(self) -> None:
        if self._ws is not None:
            try:
                await self._ws.close()
            except WebSocketException:
                logger.debug("NWC relay close failed", exc_info=True)
            self._ws = None
