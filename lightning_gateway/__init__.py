"""
⚡ lightning-gateway: pay-per-request Lightning reverse proxy.

Put any HTTP API behind a metered gateway. Callers pay per request from a
prepaid session balance, or with an L402 voucher; earnings are split between
the API owner and the platform and settled in a SQL ledger.

Usage:
    from lightning_gateway import create_app

    app = create_app()  # settings from the environment / .env

    # uvicorn "lightning_gateway.app:create_app" --factory
"""

__version__ = "0.1.0"

from .app import create_app
from .config import Settings, get_settings
from .fees import FeeBreakdown, calculate_fees
from .ledger import Ledger
from .pricing import RouteRule, resolve_price
from .rails import AlbyRail, PaymentRail, SimulatedRail, create_rail
from .voucher import Voucher, VoucherCheck, create_voucher, verify_voucher

__all__ = [
    # Main API
    "create_app",
    "Settings",
    "get_settings",
    # Ledger
    "Ledger",
    # Pricing
    "calculate_fees",
    "FeeBreakdown",
    "resolve_price",
    "RouteRule",
    # Vouchers
    "create_voucher",
    "verify_voucher",
    "Voucher",
    "VoucherCheck",
    # Payment rails
    "create_rail",
    "PaymentRail",
    "SimulatedRail",
    "AlbyRail",
]
