"""
Gateway error taxonomy.

Each error carries an HTTP status and a stable machine-readable code. The
app renders them as {"success": false, "error": ..., "code": ...}.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    code = "INTERNAL_ERROR"
    message = "Internal error"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, "code": self.code, **self.extra}


class GatewayNotFound(GatewayError):
    status_code = 404
    code = "GATEWAY_NOT_FOUND"
    message = "Gateway not found"


class GatewayInactive(GatewayError):
    status_code = 503
    code = "GATEWAY_INACTIVE"
    message = "Gateway is not active"


class AuthRequired(GatewayError):
    status_code = 401
    code = "AUTH_REQUIRED"
    message = "Session key required"


class InvalidSession(GatewayError):
    status_code = 401
    code = "INVALID_SESSION"
    message = "Invalid session key"


class InvalidVoucher(GatewayError):
    status_code = 401
    code = "INVALID_VOUCHER"
    message = "Invalid voucher"

    def __init__(self, message: Optional[str] = None, reason: Optional[str] = None, **extra: Any):
        super().__init__(message, **extra)
        self.reason = reason
        if reason:
            self.code = f"VOUCHER_{reason.upper()}"


class ProxyError(GatewayError):
    status_code = 502
    code = "PROXY_ERROR"
    message = "Failed to reach target API"


class InsufficientBalance(GatewayError):
    status_code = 402
    code = "INSUFFICIENT_BALANCE"
    message = "Insufficient balance"


class SettlementError(GatewayError):
    status_code = 500
    code = "SETTLEMENT_FAILED"
    message = "Failed to settle request"


class PaymentRailError(GatewayError):
    status_code = 502
    code = "PAYMENT_RAIL_ERROR"
    message = "Payment rail unavailable"


class TopupNotFound(GatewayError):
    status_code = 404
    code = "TOPUP_NOT_FOUND"
    message = "Top-up not found"


class InvalidRequest(GatewayError):
    status_code = 400
    code = "INVALID_REQUEST"
    message = "Invalid request"
