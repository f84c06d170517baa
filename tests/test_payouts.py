"""Tests for earner payouts and platform sweeps."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from conftest import make_gateway
from lightning_gateway.errors import InsufficientBalance, InvalidRequest, PaymentRailError
from lightning_gateway.fees import calculate_fees
from lightning_gateway.payouts import PayoutService, run_scheduled
from lightning_gateway.rails import Payment


def paid(payment_hash="ef" * 32, fee_sats=1):
    return Payment(payment_hash=payment_hash, preimage="01" * 32, fee_sats=fee_sats)


async def earner_with_balance(ledger, amount, address="alice@getalby.com"):
    developer, gateway = await make_gateway(ledger, price=amount, lightning_address=address)
    session = await ledger.create_session(balance_sats=amount)
    await ledger.settle(session.id, gateway.id, developer.id, calculate_fees(amount, 0), "GET", "/", 200)
    return developer


class TestRequestPayout:
    @pytest.mark.asyncio
    async def test_pays_and_completes(self, ledger):
        developer = await earner_with_balance(ledger, 500)
        rail = AsyncMock()
        rail.pay_to_address = AsyncMock(return_value=paid())
        service = PayoutService(ledger, rail)

        result = await service.request_payout(developer.id, 200)

        rail.pay_to_address.assert_awaited_once_with("alice@getalby.com", 200, "Gateway payout")
        assert result["amountSats"] == 200
        assert result["paymentHash"] == "ef" * 32
        assert (await ledger.get_developer(developer.id)).balance_sats == 300
        payout = await ledger.get_payout(result["payoutId"])
        assert payout.status == "completed"
        assert payout.is_auto_payout is False

    @pytest.mark.asyncio
    async def test_failure_releases_reservation(self, ledger):
        developer = await earner_with_balance(ledger, 500)
        rail = AsyncMock()
        rail.pay_to_address = AsyncMock(side_effect=PaymentRailError("no route"))
        service = PayoutService(ledger, rail)

        with pytest.raises(PaymentRailError, match="no route"):
            await service.request_payout(developer.id, 200)

        assert (await ledger.get_developer(developer.id)).balance_sats == 500

    @pytest.mark.asyncio
    async def test_requires_address(self, ledger):
        developer = await earner_with_balance(ledger, 500, address=None)
        service = PayoutService(ledger, AsyncMock())
        with pytest.raises(InvalidRequest, match="lightning address"):
            await service.request_payout(developer.id, 100)

    @pytest.mark.asyncio
    async def test_amount_limits(self, ledger):
        developer = await earner_with_balance(ledger, 500)
        rail = AsyncMock()
        service = PayoutService(ledger, rail)

        with pytest.raises(InvalidRequest):
            await service.request_payout(developer.id, 0)
        with pytest.raises(InsufficientBalance):
            await service.request_payout(developer.id, 501)
        rail.pay_to_address.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_developer(self, ledger):
        with pytest.raises(InvalidRequest):
            await PayoutService(ledger, AsyncMock()).request_payout("nobody", 10)


class TestAutoPayouts:
    @pytest.mark.asyncio
    async def test_pays_eligible_in_full(self, ledger):
        rich = await earner_with_balance(ledger, 150, "rich@getalby.com")
        poor = await earner_with_balance(ledger, 50, "poor@getalby.com")
        rail = AsyncMock()
        rail.pay_to_address = AsyncMock(return_value=paid())
        service = PayoutService(ledger, rail, min_payout_sats=100)

        completed = await service.process_auto_payouts()

        assert len(completed) == 1
        rail.pay_to_address.assert_awaited_once_with("rich@getalby.com", 150, "Gateway auto-payout")
        assert (await ledger.get_developer(rich.id)).balance_sats == 0
        assert (await ledger.get_developer(poor.id)).balance_sats == 50
        assert (await ledger.get_payout(completed[0])).is_auto_payout is True

    @pytest.mark.asyncio
    async def test_failed_payment_is_refunded(self, ledger):
        developer = await earner_with_balance(ledger, 150)
        rail = AsyncMock()
        rail.pay_to_address = AsyncMock(side_effect=PaymentRailError("no route"))

        completed = await PayoutService(ledger, rail).process_auto_payouts()

        assert completed == []
        assert (await ledger.get_developer(developer.id)).balance_sats == 150


class TestPlatformSweep:
    async def _fees(self, ledger, cost):
        developer, gateway = await make_gateway(ledger)
        session = await ledger.create_session(balance_sats=cost)
        await ledger.settle(session.id, gateway.id, developer.id, calculate_fees(cost), "GET", "/", 200)

    @pytest.mark.asyncio
    async def test_sweeps_pending_fees(self, ledger):
        await self._fees(ledger, 10_000)  # 200 sats of platform fees
        rail = AsyncMock()
        rail.pay_to_address = AsyncMock(return_value=paid())
        service = PayoutService(ledger, rail, platform_address="platform@getalby.com")

        assert await service.sweep_platform_fees() is not None
        rail.pay_to_address.assert_awaited_once_with("platform@getalby.com", 200, "Gateway platform fees")
        assert await ledger.pending_platform_fees() == 0

    @pytest.mark.asyncio
    async def test_below_minimum(self, ledger):
        await self._fees(ledger, 100)  # 2 sats
        rail = AsyncMock()
        service = PayoutService(ledger, rail, platform_address="platform@getalby.com")
        assert await service.sweep_platform_fees() is None
        rail.pay_to_address.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_without_address(self, ledger):
        await self._fees(ledger, 10_000)
        rail = AsyncMock()
        assert await PayoutService(ledger, rail).sweep_platform_fees() is None
        rail.pay_to_address.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_sweep_is_retried_next_run(self, ledger):
        await self._fees(ledger, 10_000)
        rail = AsyncMock()
        rail.pay_to_address = AsyncMock(side_effect=PaymentRailError("no route"))
        service = PayoutService(ledger, rail, platform_address="platform@getalby.com")

        assert await service.sweep_platform_fees() is None
        assert await ledger.pending_platform_fees() == 200


class TestRunScheduled:
    @pytest.mark.asyncio
    async def test_sweep_then_payouts(self, ledger):
        developer = await earner_with_balance(ledger, 150)
        await TestPlatformSweep()._fees(ledger, 10_000)
        rail = AsyncMock()
        rail.pay_to_address = AsyncMock(return_value=paid())
        settings = SimpleNamespace(MIN_PAYOUT_SATS=100, PLATFORM_LIGHTNING_ADDRESS="platform@getalby.com")

        await run_scheduled(settings, ledger=ledger, rail=rail)

        addresses = [call.args[0] for call in rail.pay_to_address.await_args_list]
        assert addresses[0] == "platform@getalby.com"
        assert "alice@getalby.com" in addresses
        assert (await ledger.get_developer(developer.id)).balance_sats == 0
        rail.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_requires_real_rail(self, settings):
        with pytest.raises(PaymentRailError):
            await run_scheduled(settings)
