"""
Session top-ups: Lightning invoices that credit a session balance.

pending -> paid happens at most once, when the rail reports the invoice
settled; the ledger credits the session in the same transaction.
pending -> expired once the invoice is past its expiry and still unpaid.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidRequest, InvalidSession, PaymentRailError, TopupNotFound
from .ledger import Ledger, as_utc, utcnow
from .models import Session, Topup
from .rails import Invoice, PaymentRail

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def topup_to_dict(topup: Topup) -> Dict[str, Any]:
    return {
        "id": topup.id,
        "amountSats": topup.amount_sats,
        "status": topup.status,
        "paymentRequest": topup.payment_request,
        "createdAt": _iso(topup.created_at),
        "paidAt": _iso(topup.paid_at),
    }


class TopupService:
    """Creates top-up invoices and confirms them against the payment rail."""

    def __init__(self, ledger: Ledger, rail: PaymentRail, invoice_expiry: int = 3600):
        self.ledger = ledger
        self.rail = rail
        self.invoice_expiry = invoice_expiry

    async def open_topup(
        self,
        session: Session,
        amount_sats: int,
        description: str,
    ) -> Tuple[Optional[Topup], Optional[Invoice]]:
        """
        Request an invoice and record a pending top-up for it.

        Rail failures are logged and yield (None, None); callers degrade to
        a response without an invoice.
        """
        try:
            invoice = await self.rail.create_invoice(amount_sats, description)
        except Exception:
            logger.warning("Invoice creation failed for session %s", session.id, exc_info=True)
            return None, None

        expires_at = as_utc(invoice.expires_at) or utcnow() + timedelta(seconds=self.invoice_expiry)
        topup = await self.ledger.create_topup(
            session.id,
            amount_sats,
            invoice.payment_hash,
            payment_request=invoice.payment_request,
            expires_at=expires_at,
        )
        logger.info("Top-up %s opened: %d sats for session %s", topup.id, amount_sats, session.id)
        return topup, invoice

    async def create_topup(self, amount_sats: Any, session_key: Optional[str] = None) -> Dict[str, Any]:
        """
        Top up an existing session, or a new one when no key is given.

        Raises:
            InvalidRequest: amount is not a positive integer.
            InvalidSession: session_key does not exist.
            PaymentRailError: The rail could not create an invoice.
        """
        if isinstance(amount_sats, bool) or not isinstance(amount_sats, int) or amount_sats < 1:
            raise InvalidRequest("amountSats must be a positive integer")

        if session_key:
            session = await self.ledger.get_session_by_key(session_key)
            if session is None:
                raise InvalidSession()
        else:
            session = await self.ledger.create_session()

        try:
            invoice = await self.rail.create_invoice(amount_sats, f"Gateway top-up: {session.id[:8]}")
        except PaymentRailError:
            raise
        except Exception as e:
            raise PaymentRailError(f"Failed to create invoice: {e}") from e

        expires_at = as_utc(invoice.expires_at) or utcnow() + timedelta(seconds=self.invoice_expiry)
        topup = await self.ledger.create_topup(
            session.id,
            amount_sats,
            invoice.payment_hash,
            payment_request=invoice.payment_request,
            expires_at=expires_at,
        )
        return {
            "topupId": topup.id,
            "sessionKey": session.session_key,
            "amountSats": amount_sats,
            "paymentRequest": invoice.payment_request,
            "paymentHash": invoice.payment_hash,
            "expiresAt": _iso(expires_at),
        }

    async def check_status(self, topup_id: str, session: Session) -> Dict[str, Any]:
        """
        Report a top-up's status, confirming pending ones with the rail.

        Returns:
            {id, amountSats, status, paidAt?, newBalance?}. newBalance is only
            present on the call that performed the credit.
        """
        topup = await self.ledger.get_topup(topup_id)
        if topup is None or topup.session_id != session.id:
            raise TopupNotFound()

        result: Dict[str, Any] = {"id": topup.id, "amountSats": topup.amount_sats, "status": topup.status}
        if topup.status != "pending" or not topup.payment_hash:
            if topup.paid_at is not None:
                result["paidAt"] = _iso(topup.paid_at)
            return result

        try:
            status = await self.rail.get_invoice_status(topup.payment_hash)
        except Exception:
            logger.warning("Invoice status check failed for top-up %s", topup.id, exc_info=True)
            return result

        if status.settled:
            new_balance = await self.ledger.mark_topup_paid(topup.id)
            topup = await self.ledger.get_topup(topup.id)
            result.update(status=topup.status, paidAt=_iso(topup.paid_at))
            if new_balance is not None:
                logger.info("Top-up %s paid: +%d sats, balance %d", topup.id, topup.amount_sats, new_balance)
                result["newBalance"] = new_balance
            return result

        expires_at = as_utc(topup.expires_at)
        if expires_at is not None and utcnow() > expires_at:
            if await self.ledger.mark_topup_expired(topup.id):
                logger.info("Top-up %s expired unpaid", topup.id)
            topup = await self.ledger.get_topup(topup.id)
            result["status"] = topup.status
        return result

    async def list_topups(self, session: Session) -> List[Dict[str, Any]]:
        return [topup_to_dict(t) for t in await self.ledger.list_topups(session.id)]
