"""
Outbound payments: earner payouts and platform fee sweeps.

Every payment is two-phase. The amount is reserved in the ledger first
(earner balance debited, or fees marked as being swept), then paid over the
rail, then the reservation is completed or released. A failed payment never
loses or double-spends funds.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .errors import InvalidRequest, PaymentRailError
from .ledger import Ledger
from .rails import PaymentRail, create_rail

logger = logging.getLogger(__name__)


class PayoutService:
    """Pays earners and sweeps platform fees through a payment rail."""

    def __init__(
        self,
        ledger: Ledger,
        rail: PaymentRail,
        min_payout_sats: int = 100,
        platform_address: Optional[str] = None,
    ):
        self.ledger = ledger
        self.rail = rail
        self.min_payout_sats = min_payout_sats
        self.platform_address = platform_address

    async def request_payout(self, developer_id: str, amount_sats: int) -> Dict[str, Any]:
        """
        Pay part of an earner's balance to their lightning address.

        Raises:
            InvalidRequest: Unknown developer, no address, or amount < 1.
            InsufficientBalance: amount exceeds the balance.
            PaymentRailError: The payment failed; the amount was refunded.
        """
        developer = await self.ledger.get_developer(developer_id)
        if developer is None:
            raise InvalidRequest("Developer not found")
        if not developer.lightning_address:
            raise InvalidRequest("No lightning address configured for payouts")
        if isinstance(amount_sats, bool) or not isinstance(amount_sats, int) or amount_sats < 1:
            raise InvalidRequest("amountSats must be a positive integer")

        payout = await self.ledger.reserve_payout(developer_id, amount_sats, developer.lightning_address)
        try:
            payment = await self.rail.pay_to_address(developer.lightning_address, amount_sats, "Gateway payout")
        except Exception as e:
            await self.ledger.release_payout(payout.id)
            logger.error("Payout %s of %d sats to %s failed: %s", payout.id, amount_sats, developer_id, e)
            raise PaymentRailError(f"Payout failed: {e}") from e

        await self.ledger.complete_payout(payout.id, payment.payment_hash, payment.fee_sats)
        logger.info("Payout %s completed: %d sats to %s", payout.id, amount_sats, developer_id)
        return {
            "payoutId": payout.id,
            "amountSats": amount_sats,
            "paymentHash": payment.payment_hash,
            "feeSats": payment.fee_sats,
        }

    async def process_auto_payouts(self) -> List[str]:
        """
        Pay out, in full, every earner at or above the minimum with an address.

        Returns:
            Ids of completed payouts. Failures are released and logged.
        """
        developers = await self.ledger.eligible_developers(self.min_payout_sats)
        logger.info("Found %d developers eligible for auto-payout", len(developers))

        completed = []
        for developer in developers:
            amount = developer.balance_sats
            try:
                payout = await self.ledger.reserve_payout(
                    developer.id, amount, developer.lightning_address, auto=True
                )
            except Exception as e:
                # Balance moved since the query; the next run picks it up.
                logger.warning("Could not reserve auto-payout for %s: %s", developer.id, e)
                continue

            try:
                payment = await self.rail.pay_to_address(developer.lightning_address, amount, "Gateway auto-payout")
            except Exception as e:
                await self.ledger.release_payout(payout.id)
                logger.error("Auto-payout %s for %s failed: %s", payout.id, developer.id, e)
                continue

            await self.ledger.complete_payout(payout.id, payment.payment_hash, payment.fee_sats)
            logger.info("Auto-payout %s completed: %d sats to %s", payout.id, amount, developer.id)
            completed.append(payout.id)
        return completed

    async def sweep_platform_fees(self) -> Optional[str]:
        """
        Send all unswept platform fees to the platform address.

        Returns:
            The sweep id if a sweep completed, else None (no address, below
            the minimum, or the payment failed).
        """
        if not self.platform_address:
            logger.info("PLATFORM_LIGHTNING_ADDRESS not set, skipping platform sweep")
            return None

        sweep = await self.ledger.reserve_sweep(self.platform_address, self.min_payout_sats)
        if sweep is None:
            logger.info("Platform fees below %d sats, nothing to sweep", self.min_payout_sats)
            return None

        try:
            payment = await self.rail.pay_to_address(self.platform_address, sweep.amount_sats, "Gateway platform fees")
        except Exception as e:
            await self.ledger.fail_sweep(sweep.id)
            logger.error("Platform sweep %s of %d sats failed: %s", sweep.id, sweep.amount_sats, e)
            return None

        await self.ledger.complete_sweep(sweep.id, payment.payment_hash)
        logger.info("Platform sweep %s completed: %d sats", sweep.id, sweep.amount_sats)
        return sweep.id


async def run_scheduled(settings: Any, ledger: Optional[Ledger] = None, rail: Optional[PaymentRail] = None) -> None:
    """
    Periodic job: platform sweep, then earner auto-payouts.

    Needs a real payment rail; a simulated one would record payments that
    never happened.
    """
    own_ledger = ledger is None
    own_rail = rail is None
    rail = rail or create_rail(settings, require_real=True)
    ledger = ledger or Ledger.from_url(settings.DATABASE_URL)

    service = PayoutService(
        ledger,
        rail,
        min_payout_sats=settings.MIN_PAYOUT_SATS,
        platform_address=settings.PLATFORM_LIGHTNING_ADDRESS,
    )
    logger.info("Running scheduled payout job")
    try:
        await service.sweep_platform_fees()
        await service.process_auto_payouts()
    finally:
        if own_rail:
            await rail.close()
        if own_ledger:
            ledger.dispose()
    logger.info("Scheduled payout job completed")
