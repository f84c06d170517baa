from sqlalchemy import JSON, BigInteger, Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from .db import Base


class Developer(Base):
    """
    Earner account: owns gateways and accumulates their earnings.
    """
    __tablename__ = "developers"
    __table_args__ = (CheckConstraint("balance_sats >= 0", name="developers_balance_non_negative"),)

    id = Column(String, primary_key=True)
    lightning_address = Column(String, nullable=True)  # payout address
    balance_sats = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Gateway(Base):
    """
    One proxied upstream: /g/{id}/... forwards to target_url.
    """
    __tablename__ = "gateways"
    __table_args__ = (CheckConstraint("price_per_request_sats >= 0", name="gateways_price_non_negative"),)

    id = Column(String, primary_key=True)
    developer_id = Column(String, ForeignKey("developers.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    target_url = Column(String, nullable=False)
    price_per_request_sats = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    description = Column(String, nullable=True)
    rules = Column(JSON, nullable=True)  # [{pattern, price, description?}], order matters
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Session(Base):
    """
    Anonymous prepaid credit account, keyed by a secret session key.
    Never deleted.
    """
    __tablename__ = "sessions"
    __table_args__ = (CheckConstraint("balance_sats >= 0", name="sessions_balance_non_negative"),)

    id = Column(String, primary_key=True)
    session_key = Column(String, nullable=False, unique=True, index=True)
    balance_sats = Column(BigInteger, nullable=False, default=0)
    developer_id = Column(String, ForeignKey("developers.id"), nullable=True, index=True)
    name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Topup(Base):
    """
    Lightning payment into a session: pending -> paid | expired.
    """
    __tablename__ = "topups"

    id = Column(String, primary_key=True)
    session_id = Column(String, ForeignKey("sessions.id"), nullable=False, index=True)
    amount_sats = Column(Integer, nullable=False)
    payment_hash = Column(String, nullable=True, index=True)
    payment_request = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")  # pending, paid, expired
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    paid_at = Column(DateTime(timezone=True), nullable=True)


class RequestLog(Base):
    """
    One settled proxy call. Append-only.
    dev_earnings_sats + platform_fee_sats == cost_sats.
    """
    __tablename__ = "requests"
    __table_args__ = (
        CheckConstraint("dev_earnings_sats + platform_fee_sats = cost_sats", name="requests_fee_split"),
    )

    id = Column(String, primary_key=True)
    gateway_id = Column(String, ForeignKey("gateways.id"), nullable=False, index=True)
    session_id = Column(String, ForeignKey("sessions.id"), nullable=False, index=True)
    cost_sats = Column(Integer, nullable=False)
    dev_earnings_sats = Column(Integer, nullable=False)
    platform_fee_sats = Column(Integer, nullable=False)
    method = Column(String, nullable=False)
    path = Column(String, nullable=False)
    status_code = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


class Payout(Base):
    """
    Earner withdrawal: pending (funds reserved) -> completed | failed (refunded).
    """
    __tablename__ = "payouts"

    id = Column(String, primary_key=True)
    developer_id = Column(String, ForeignKey("developers.id"), nullable=False, index=True)
    amount_sats = Column(Integer, nullable=False)
    lightning_address = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, completed, failed
    is_auto_payout = Column(Boolean, nullable=False, default=False)
    payment_hash = Column(String, nullable=True)
    fee_sats = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)


class PlatformSweep(Base):
    """
    Platform fee withdrawal: pending -> completed | failed.
    """
    __tablename__ = "platform_sweeps"

    id = Column(String, primary_key=True)
    amount_sats = Column(Integer, nullable=False)
    lightning_address = Column(String, nullable=False)
    payment_hash = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")  # pending, completed, failed
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
