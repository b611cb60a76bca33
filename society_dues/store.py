"""Persistence layer for members, the billing configuration and payments.

The engine itself never touches storage. This module defines the store
interfaces the payment service depends on and a SQLAlchemy implementation
of them. It defaults to SQLite for local development, but accepts any
SQLAlchemy-compatible URL (e.g. PostgreSQL/MySQL) for shared deployments.

Besides the canonical ``members`` table there is a ``legacy_members`` table
kept for older admin screens. It is a best-effort mirror: it is written after
the primary update and is never read back as a source of truth.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Protocol
from uuid import uuid4

from sqlalchemy import BigInteger, Column, DateTime, Integer, Numeric, String, Text, create_engine, or_, select
from sqlalchemy.orm import declarative_base, sessionmaker

from .data_models import BillingConfig, MemberAccount, PaymentRecord
from .errors import MemberNotFound
from .serialization import config_from_dict, config_to_dict, payment_from_dict, payment_to_dict

logger = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_DATABASE_URL = "sqlite:///society_dues.sqlite3"

PaymentListener = Callable[[PaymentRecord], None]


class ProfileStore(Protocol):
    def get_member(self, member_id: str) -> Optional[MemberAccount]: ...

    def list_members(self) -> List[MemberAccount]: ...

    def add_member(self, member: MemberAccount) -> MemberAccount: ...

    def update_member(
        self, member_id: str, *, dues: Decimal, paid: Decimal, late_fee_assessed_on: Optional[str]
    ) -> MemberAccount: ...


class ConfigStore(Protocol):
    def get_config(self) -> Optional[BillingConfig]: ...

    def save_config(self, config: BillingConfig) -> None: ...


class PaymentLedger(Protocol):
    def append_payment(self, record: PaymentRecord) -> str: ...

    def list_payments(self) -> List[PaymentRecord]: ...

    def find_gateway_payment(self, gateway_payment_id: str) -> Optional[PaymentRecord]: ...

    def subscribe(self, listener: PaymentListener) -> Callable[[], None]: ...


class MirrorStore(Protocol):
    def apply_to_mirror(self, member: MemberAccount, amount: Decimal, new_pending: Decimal) -> bool: ...


class _MemberColumns:
    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False, default="")
    email = Column(String(255), index=True, nullable=False, default="")
    flat = Column(String(64), index=True, nullable=False, default="")
    dues = Column(Numeric(12, 2), nullable=False, default=0)
    paid = Column(Numeric(12, 2), nullable=False, default=0)
    late_fee_assessed_on = Column(String(7), nullable=True)
    status = Column(String(32), nullable=False, default="Active")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class MemberModel(_MemberColumns, Base):
    __tablename__ = "members"


class LegacyMemberModel(_MemberColumns, Base):
    __tablename__ = "legacy_members"


class BillingConfigModel(Base):
    __tablename__ = "billing_config"

    id = Column(Integer, primary_key=True)
    config_json = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class PaymentModel(Base):
    __tablename__ = "payments"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), index=True, nullable=True)
    flat = Column(String(64), index=True, nullable=True)
    occurred_at = Column(BigInteger, index=True, nullable=True)
    gateway_payment_id = Column(String(64), unique=True, nullable=True)
    record_json = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


def _dec(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


class SqlDuesStore:
    """Database-backed profile store, config store and payment ledger."""

    _CONFIG_ROW_ID = 1

    def __init__(self, url: str) -> None:
        self._engine = create_engine(url, future=True)
        Base.metadata.create_all(self._engine)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        self._listeners: List[PaymentListener] = []

    # -- members -----------------------------------------------------------

    def get_member(self, member_id: str) -> Optional[MemberAccount]:
        with self._session_factory() as session:
            row = session.get(MemberModel, member_id)
            return self._to_member(row) if row else None

    def list_members(self) -> List[MemberAccount]:
        with self._session_factory() as session:
            rows: Iterable[MemberModel] = session.execute(
                select(MemberModel).order_by(MemberModel.created_at.asc(), MemberModel.id.asc())
            ).scalars()
            return [self._to_member(row) for row in rows]

    def add_member(self, member: MemberAccount) -> MemberAccount:
        if not member.id:
            member.id = uuid4().hex
        with self._session_factory() as session:
            session.add(self._member_row(MemberModel, member))
            session.commit()
        return member

    def update_member(
        self, member_id: str, *, dues: Decimal, paid: Decimal, late_fee_assessed_on: Optional[str]
    ) -> MemberAccount:
        """Merge-update the payment fields of one member and return the result."""
        with self._session_factory() as session:
            row = session.get(MemberModel, member_id)
            if row is None:
                raise MemberNotFound(f"No member with id {member_id}")
            row.dues = dues
            row.paid = paid
            row.late_fee_assessed_on = late_fee_assessed_on
            session.commit()
            return self._to_member(row)

    # -- legacy mirror -----------------------------------------------------

    def add_legacy_member(self, member: MemberAccount) -> None:
        with self._session_factory() as session:
            session.add(self._member_row(LegacyMemberModel, member))
            session.commit()

    def get_legacy_member(self, member_id: str) -> Optional[MemberAccount]:
        with self._session_factory() as session:
            row = session.get(LegacyMemberModel, member_id)
            return self._to_member(row) if row else None

    def apply_to_mirror(self, member: MemberAccount, amount: Decimal, new_pending: Decimal) -> bool:
        """Add ``amount`` to the mirrored record's paid total and set its dues.

        The mirrored record is the first legacy row whose email or flat equals
        the member's. Returns False when there is none.
        """
        conditions = []
        if member.email:
            conditions.append(LegacyMemberModel.email == member.email)
        if member.flat:
            conditions.append(LegacyMemberModel.flat == member.flat)
        if not conditions:
            return False
        with self._session_factory() as session:
            row = session.execute(
                select(LegacyMemberModel).where(or_(*conditions)).order_by(LegacyMemberModel.created_at.asc())
            ).scalars().first()
            if row is None:
                return False
            row.paid = _dec(row.paid) + amount
            row.dues = new_pending
            session.commit()
            return True

    # -- config ------------------------------------------------------------

    def get_config(self) -> Optional[BillingConfig]:
        with self._session_factory() as session:
            row = session.get(BillingConfigModel, self._CONFIG_ROW_ID)
            if row is None:
                return None
            return config_from_dict(json.loads(row.config_json))

    def save_config(self, config: BillingConfig) -> None:
        payload = json.dumps(config_to_dict(config))
        with self._session_factory() as session:
            row = session.get(BillingConfigModel, self._CONFIG_ROW_ID)
            if row is None:
                session.add(BillingConfigModel(id=self._CONFIG_ROW_ID, config_json=payload))
            else:
                row.config_json = payload
            session.commit()
        logger.info("Billing configuration saved (recurring charge %s)", config.recurring_charge)

    # -- payments ----------------------------------------------------------

    def append_payment(self, record: PaymentRecord) -> str:
        payment_id = uuid4().hex
        payload = PaymentModel(
            id=payment_id,
            email=record.email or None,
            flat=record.flat or None,
            occurred_at=record.occurred_at,
            gateway_payment_id=record.gateway_payment_id or None,
            record_json=json.dumps(payment_to_dict(record)),
        )
        with self._session_factory() as session:
            session.add(payload)
            session.commit()
        self._notify(record)
        return payment_id

    def list_payments(self) -> List[PaymentRecord]:
        with self._session_factory() as session:
            rows = session.execute(
                select(PaymentModel).order_by(PaymentModel.created_at.asc(), PaymentModel.occurred_at.asc())
            ).scalars()
            return [self._to_payment(row) for row in rows]

    def find_gateway_payment(self, gateway_payment_id: str) -> Optional[PaymentRecord]:
        if not gateway_payment_id:
            return None
        with self._session_factory() as session:
            row = session.execute(
                select(PaymentModel).where(PaymentModel.gateway_payment_id == gateway_payment_id)
            ).scalar_one_or_none()
            return self._to_payment(row) if row is not None else None

    def payments_for_member(self, email: str) -> List[PaymentRecord]:
        if not email:
            return []
        # Emails are matched case-insensitively by the engine, so filter here
        # rather than in SQL.
        wanted = email.strip().lower()
        return [p for p in self.list_payments() if p.email.strip().lower() == wanted]

    def payments_between(self, start_ms: int, end_ms: int) -> List[PaymentRecord]:
        """Return payments whose timestamp lies in ``[start_ms, end_ms]``."""
        with self._session_factory() as session:
            rows = session.execute(
                select(PaymentModel)
                .where(PaymentModel.occurred_at >= start_ms, PaymentModel.occurred_at <= end_ms)
                .order_by(PaymentModel.occurred_at.asc())
            ).scalars()
            return [self._to_payment(row) for row in rows]

    def subscribe(self, listener: PaymentListener) -> Callable[[], None]:
        """Call ``listener`` with every payment appended from now on.

        Returns a function that removes the listener again.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, record: PaymentRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception:
                logger.exception("Payment listener %r failed", listener)

    # -- row conversion ----------------------------------------------------

    @staticmethod
    def _member_row(model, member: MemberAccount):
        return model(
            id=member.id or uuid4().hex,
            name=member.name,
            email=member.email,
            flat=member.flat,
            dues=member.dues_override,
            paid=member.paid_total,
            late_fee_assessed_on=member.late_fee_assessed_period,
            status=member.status,
        )

    @staticmethod
    def _to_member(row: _MemberColumns) -> MemberAccount:
        return MemberAccount(
            id=row.id,
            email=row.email or "",
            flat=row.flat or "",
            dues_override=_dec(row.dues),
            paid_total=_dec(row.paid),
            late_fee_assessed_period=row.late_fee_assessed_on,
            name=row.name or "",
            status=row.status or "Active",
        )

    @staticmethod
    def _to_payment(row: PaymentModel) -> PaymentRecord:
        data: Dict = json.loads(row.record_json)
        return payment_from_dict(data)


def create_store_from_env(url: Optional[str]) -> SqlDuesStore:
    return SqlDuesStore(url or DEFAULT_DATABASE_URL)
