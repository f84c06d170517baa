"""
Settlement ledger: balances, top-ups, request log, payouts.

Every balance mutation is a single conditional UPDATE inside a transaction
("debit if balance >= amount"), never a read followed by a separate write,
so concurrent callers against the same balance cannot overdraw it.

Public methods are coroutines; the blocking SQLAlchemy work runs in the
thread pool so the event loop keeps serving other requests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from starlette.concurrency import run_in_threadpool

from .db import init_db, make_engine, make_session_factory
from .errors import InsufficientBalance, SettlementError
from .fees import FeeBreakdown
from .models import Developer, Gateway, Payout, PlatformSweep, RequestLog, Session, Topup
from .pricing import parse_rules
from .tokens import generate_session_key, new_id

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; they were written as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass
class Settlement:
    """Outcome of a settled proxy call."""
    request_id: str
    balance_sats: int
    fees: FeeBreakdown


class Ledger:
    """Balance store backed by a SQLAlchemy engine."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = make_session_factory(engine)

    @classmethod
    def from_url(cls, database_url: str, create_tables: bool = True) -> "Ledger":
        engine = make_engine(database_url)
        if create_tables:
            init_db(engine)
        return cls(engine)

    def dispose(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Developers / gateways
    # ------------------------------------------------------------------

    def _create_developer(self, developer_id: Optional[str], lightning_address: Optional[str]) -> Developer:
        developer = Developer(
            id=developer_id or new_id(),
            lightning_address=lightning_address,
            balance_sats=0,
            created_at=utcnow(),
            updated_at=utcnow(),
        )
        with self._session_factory() as db, db.begin():
            db.add(developer)
        return developer

    async def create_developer(
        self,
        developer_id: Optional[str] = None,
        lightning_address: Optional[str] = None,
    ) -> Developer:
        return await run_in_threadpool(self._create_developer, developer_id, lightning_address)

    async def get_developer(self, developer_id: str) -> Optional[Developer]:
        return await run_in_threadpool(self._get, Developer, developer_id)

    def _create_gateway(self, **fields: Any) -> Gateway:
        if fields.get("price_per_request_sats", 0) < 0:
            raise ValueError("Gateway price must be >= 0")
        fields["rules"] = [
            {"pattern": r.pattern, "price": r.price, "description": r.description}
            for r in parse_rules(fields.get("rules"))
        ] or None
        now = utcnow()
        gateway = Gateway(id=fields.pop("id", None) or new_id(), created_at=now, updated_at=now, **fields)
        with self._session_factory() as db, db.begin():
            db.add(gateway)
        return gateway

    async def create_gateway(
        self,
        developer_id: str,
        target_url: str,
        price_per_request_sats: int = 1,
        name: Optional[str] = None,
        rules: Optional[List[Dict[str, Any]]] = None,
        description: Optional[str] = None,
        is_active: bool = True,
        gateway_id: Optional[str] = None,
    ) -> Gateway:
        return await run_in_threadpool(
            self._create_gateway,
            id=gateway_id,
            developer_id=developer_id,
            name=name or target_url,
            target_url=target_url,
            price_per_request_sats=price_per_request_sats,
            rules=rules,
            description=description,
            is_active=is_active,
        )

    def _set_gateway_active(self, gateway_id: str, developer_id: str, active: bool) -> bool:
        with self._session_factory() as db, db.begin():
            result = db.execute(
                update(Gateway)
                .where(Gateway.id == gateway_id, Gateway.developer_id == developer_id)
                .values(is_active=active, updated_at=utcnow())
            )
            return result.rowcount == 1

    async def set_gateway_active(self, gateway_id: str, developer_id: str, active: bool) -> bool:
        """Enable or disable a gateway. Only its owner may do this."""
        return await run_in_threadpool(self._set_gateway_active, gateway_id, developer_id, active)

    async def get_gateway(self, gateway_id: str) -> Optional[Gateway]:
        return await run_in_threadpool(self._get, Gateway, gateway_id)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _get(self, model: Any, row_id: str) -> Any:
        with self._session_factory() as db:
            return db.get(model, row_id)

    def _create_session(self, balance_sats: int, name: Optional[str], developer_id: Optional[str]) -> Session:
        session = Session(
            id=new_id(),
            session_key=generate_session_key(),
            balance_sats=balance_sats,
            name=name,
            developer_id=developer_id,
            created_at=utcnow(),
            updated_at=utcnow(),
        )
        with self._session_factory() as db, db.begin():
            db.add(session)
        return session

    async def create_session(
        self,
        balance_sats: int = 0,
        name: Optional[str] = None,
        developer_id: Optional[str] = None,
    ) -> Session:
        return await run_in_threadpool(self._create_session, balance_sats, name, developer_id)

    async def get_session(self, session_id: str) -> Optional[Session]:
        return await run_in_threadpool(self._get, Session, session_id)

    def _get_session_by_key(self, session_key: str) -> Optional[Session]:
        with self._session_factory() as db:
            return db.execute(
                select(Session).where(Session.session_key == session_key)
            ).scalar_one_or_none()

    async def get_session_by_key(self, session_key: str) -> Optional[Session]:
        return await run_in_threadpool(self._get_session_by_key, session_key)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _settle(
        self,
        session_id: str,
        gateway_id: str,
        developer_id: str,
        fees: FeeBreakdown,
        method: str,
        path: str,
        status_code: Optional[int],
    ) -> Settlement:
        now = utcnow()
        request_id = new_id()
        with self._session_factory() as db, db.begin():
            # The debit goes first so the transaction takes the write lock
            # before reading anything.
            debited = db.execute(
                update(Session)
                .where(Session.id == session_id, Session.balance_sats >= fees.total_cost)
                .values(balance_sats=Session.balance_sats - fees.total_cost, updated_at=now)
            ).rowcount
            if debited != 1:
                raise InsufficientBalance(requiredSats=fees.total_cost)

            if fees.dev_earnings > 0:
                credited = db.execute(
                    update(Developer)
                    .where(Developer.id == developer_id)
                    .values(balance_sats=Developer.balance_sats + fees.dev_earnings, updated_at=now)
                ).rowcount
                if credited != 1:
                    logger.error("Settlement for session %s: earner %s not found", session_id, developer_id)
                    raise SettlementError(f"Earner account {developer_id} not found")

            db.add(RequestLog(
                id=request_id,
                gateway_id=gateway_id,
                session_id=session_id,
                cost_sats=fees.total_cost,
                dev_earnings_sats=fees.dev_earnings,
                platform_fee_sats=fees.platform_fee,
                method=method,
                path=path,
                status_code=status_code,
                created_at=now,
            ))
            db.flush()

            balance = db.execute(
                select(Session.balance_sats).where(Session.id == session_id)
            ).scalar_one()

        return Settlement(request_id=request_id, balance_sats=balance, fees=fees)

    async def settle(
        self,
        session_id: str,
        gateway_id: str,
        developer_id: str,
        fees: FeeBreakdown,
        method: str,
        path: str,
        status_code: Optional[int],
    ) -> Settlement:
        """
        Debit the session, credit the earner, and log the request as one unit.

        Raises:
            InsufficientBalance: The session no longer covers the cost.
                Nothing was written.
            SettlementError: The earner account is missing. Nothing was written.
        """
        return await run_in_threadpool(
            self._settle, session_id, gateway_id, developer_id, fees, method, path, status_code
        )

    def _list_requests(self, gateway_id: Optional[str], session_id: Optional[str]) -> List[RequestLog]:
        query = select(RequestLog).order_by(RequestLog.created_at)
        if gateway_id:
            query = query.where(RequestLog.gateway_id == gateway_id)
        if session_id:
            query = query.where(RequestLog.session_id == session_id)
        with self._session_factory() as db:
            return list(db.execute(query).scalars())

    async def list_requests(
        self,
        gateway_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> List[RequestLog]:
        return await run_in_threadpool(self._list_requests, gateway_id, session_id)

    # ------------------------------------------------------------------
    # Top-ups
    # ------------------------------------------------------------------

    def _create_topup(
        self,
        session_id: str,
        amount_sats: int,
        payment_hash: str,
        payment_request: Optional[str],
        expires_at: Optional[datetime],
    ) -> Topup:
        topup = Topup(
            id=new_id(),
            session_id=session_id,
            amount_sats=amount_sats,
            payment_hash=payment_hash,
            payment_request=payment_request,
            status="pending",
            expires_at=expires_at,
            created_at=utcnow(),
        )
        with self._session_factory() as db, db.begin():
            db.add(topup)
        return topup

    async def create_topup(
        self,
        session_id: str,
        amount_sats: int,
        payment_hash: str,
        payment_request: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Topup:
        return await run_in_threadpool(
            self._create_topup, session_id, amount_sats, payment_hash, payment_request, expires_at
        )

    async def get_topup(self, topup_id: str) -> Optional[Topup]:
        return await run_in_threadpool(self._get, Topup, topup_id)

    def _list_topups(self, session_id: str) -> List[Topup]:
        with self._session_factory() as db:
            return list(db.execute(
                select(Topup).where(Topup.session_id == session_id).order_by(Topup.created_at)
            ).scalars())

    async def list_topups(self, session_id: str) -> List[Topup]:
        return await run_in_threadpool(self._list_topups, session_id)

    def _mark_topup_paid(self, topup_id: str) -> Optional[int]:
        now = utcnow()
        with self._session_factory() as db, db.begin():
            changed = db.execute(
                update(Topup)
                .where(Topup.id == topup_id, Topup.status == "pending")
                .values(status="paid", paid_at=now)
            ).rowcount
            if changed != 1:
                return None

            topup = db.get(Topup, topup_id)
            db.execute(
                update(Session)
                .where(Session.id == topup.session_id)
                .values(balance_sats=Session.balance_sats + topup.amount_sats, updated_at=now)
            )
            return db.execute(
                select(Session.balance_sats).where(Session.id == topup.session_id)
            ).scalar_one()

    async def mark_topup_paid(self, topup_id: str) -> Optional[int]:
        """
        Move a pending top-up to paid and credit its session, once.

        Returns:
            The session's new balance, or None if the top-up was not pending
            (already paid or expired). Repeat calls never credit twice.
        """
        return await run_in_threadpool(self._mark_topup_paid, topup_id)

    def _mark_topup_expired(self, topup_id: str) -> bool:
        with self._session_factory() as db, db.begin():
            return db.execute(
                update(Topup)
                .where(Topup.id == topup_id, Topup.status == "pending")
                .values(status="expired")
            ).rowcount == 1

    async def mark_topup_expired(self, topup_id: str) -> bool:
        return await run_in_threadpool(self._mark_topup_expired, topup_id)

    # ------------------------------------------------------------------
    # Payouts: reserve -> pay -> complete | release
    # ------------------------------------------------------------------

    def _reserve_payout(self, developer_id: str, amount_sats: int, address: str, auto: bool) -> Payout:
        payout = Payout(
            id=new_id(),
            developer_id=developer_id,
            amount_sats=amount_sats,
            lightning_address=address,
            status="pending",
            is_auto_payout=auto,
            created_at=utcnow(),
        )
        with self._session_factory() as db, db.begin():
            debited = db.execute(
                update(Developer)
                .where(Developer.id == developer_id, Developer.balance_sats >= amount_sats)
                .values(balance_sats=Developer.balance_sats - amount_sats, updated_at=utcnow())
            ).rowcount
            if debited != 1:
                raise InsufficientBalance(requiredSats=amount_sats)
            db.add(payout)
        return payout

    async def reserve_payout(
        self,
        developer_id: str,
        amount_sats: int,
        address: str,
        auto: bool = False,
    ) -> Payout:
        """Take the amount off the earner balance and record a pending payout."""
        return await run_in_threadpool(self._reserve_payout, developer_id, amount_sats, address, auto)

    def _complete_payout(self, payout_id: str, payment_hash: str, fee_sats: int) -> bool:
        with self._session_factory() as db, db.begin():
            return db.execute(
                update(Payout)
                .where(Payout.id == payout_id, Payout.status == "pending")
                .values(status="completed", payment_hash=payment_hash, fee_sats=fee_sats, completed_at=utcnow())
            ).rowcount == 1

    async def complete_payout(self, payout_id: str, payment_hash: str, fee_sats: int = 0) -> bool:
        return await run_in_threadpool(self._complete_payout, payout_id, payment_hash, fee_sats)

    def _release_payout(self, payout_id: str) -> bool:
        with self._session_factory() as db, db.begin():
            changed = db.execute(
                update(Payout)
                .where(Payout.id == payout_id, Payout.status == "pending")
                .values(status="failed")
            ).rowcount
            if changed != 1:
                return False
            payout = db.get(Payout, payout_id)
            db.execute(
                update(Developer)
                .where(Developer.id == payout.developer_id)
                .values(balance_sats=Developer.balance_sats + payout.amount_sats, updated_at=utcnow())
            )
            logger.info("Released payout %s, refunded %d sats to %s", payout_id, payout.amount_sats, payout.developer_id)
            return True

    async def release_payout(self, payout_id: str) -> bool:
        """Mark a pending payout failed and refund the reserved amount."""
        return await run_in_threadpool(self._release_payout, payout_id)

    async def get_payout(self, payout_id: str) -> Optional[Payout]:
        return await run_in_threadpool(self._get, Payout, payout_id)

    def _eligible_developers(self, min_sats: int) -> List[Developer]:
        with self._session_factory() as db:
            return list(db.execute(
                select(Developer).where(
                    Developer.balance_sats >= min_sats,
                    Developer.lightning_address.is_not(None),
                )
            ).scalars())

    async def eligible_developers(self, min_sats: int) -> List[Developer]:
        return await run_in_threadpool(self._eligible_developers, min_sats)

    # ------------------------------------------------------------------
    # Platform sweeps
    # ------------------------------------------------------------------

    @staticmethod
    def _unswept_fees(db: Any) -> int:
        total = db.execute(
            select(func.coalesce(func.sum(RequestLog.platform_fee_sats), 0))
        ).scalar_one()
        # Pending sweeps count as reserved.
        swept = db.execute(
            select(func.coalesce(func.sum(PlatformSweep.amount_sats), 0))
            .where(PlatformSweep.status != "failed")
        ).scalar_one()
        return int(total) - int(swept)

    def _pending_platform_fees(self) -> int:
        with self._session_factory() as db:
            return self._unswept_fees(db)

    async def pending_platform_fees(self) -> int:
        return await run_in_threadpool(self._pending_platform_fees)

    def _reserve_sweep(self, address: str, min_sats: int) -> Optional[PlatformSweep]:
        with self._session_factory() as db, db.begin():
            pending = self._unswept_fees(db)
            if pending < min_sats:
                return None
            sweep = PlatformSweep(
                id=new_id(),
                amount_sats=pending,
                lightning_address=address,
                status="pending",
                created_at=utcnow(),
            )
            db.add(sweep)
        return sweep

    async def reserve_sweep(self, address: str, min_sats: int) -> Optional[PlatformSweep]:
        """Record a pending sweep of all unswept platform fees, if above min_sats."""
        return await run_in_threadpool(self._reserve_sweep, address, min_sats)

    def _finish_sweep(self, sweep_id: str, status: str, payment_hash: Optional[str]) -> bool:
        values: Dict[str, Any] = {"status": status}
        if status == "completed":
            values.update(payment_hash=payment_hash, completed_at=utcnow())
        with self._session_factory() as db, db.begin():
            return db.execute(
                update(PlatformSweep)
                .where(PlatformSweep.id == sweep_id, PlatformSweep.status == "pending")
                .values(**values)
            ).rowcount == 1

    async def complete_sweep(self, sweep_id: str, payment_hash: str) -> bool:
        return await run_in_threadpool(self._finish_sweep, sweep_id, "completed", payment_hash)

    async def fail_sweep(self, sweep_id: str) -> bool:
        return await run_in_threadpool(self._finish_sweep, sweep_id, "failed", None)
