"""
Durable store for joinings, admissions and the payment ledger.

All status changes are conditional writes (``UPDATE ... WHERE status = :expected``)
so concurrent callers resolve as "first valid transition wins". Admission
numbers come from a single counter row incremented inside the approving
transaction.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer,
    JSON, MetaData, String, Table, Text, Uuid, create_engine, func, insert,
    or_, select, update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .collaborators import FeeEntry
from .exceptions import ConflictError, PersistenceError
from .models import (
    Admission,
    AdmissionStatus,
    Joining,
    JoiningPayload,
    JoiningStatus,
    PaymentMode,
    PaymentStatus,
    PaymentTransaction,
)

logger = logging.getLogger(__name__)

ADMISSION_COUNTER = "admission_number"
MINOR_UNITS = Decimal("100")

metadata = MetaData()

joinings = Table(
    "joinings", metadata,
    Column("id", Uuid, primary_key=True),
    Column("lead_id", String(64), unique=True, nullable=True),
    Column("status", String(32), nullable=False, index=True),
    Column("payload", JSON, nullable=False),
    Column("draft_updated_at", DateTime(timezone=True)),
    Column("submitted_at", DateTime(timezone=True)),
    Column("submitted_by", String(128)),
    Column("approved_at", DateTime(timezone=True)),
    Column("approved_by", String(128)),
    Column("rejection_reason", Text),
    Column("created_by", String(128)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

admissions = Table(
    "admissions", metadata,
    Column("id", Uuid, primary_key=True),
    Column("joining_id", Uuid, ForeignKey("joinings.id"), unique=True, nullable=False),
    Column("lead_id", String(64), index=True),
    Column("admission_number", Integer, unique=True, nullable=False),
    Column("status", String(32), nullable=False, index=True),
    Column("admission_date", DateTime(timezone=True), nullable=False),
    Column("payload", JSON, nullable=False),
    Column("created_by", String(128)),
    Column("withdrawn_at", DateTime(timezone=True)),
    Column("withdrawal_reason", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

payment_transactions = Table(
    "payment_transactions", metadata,
    Column("id", Uuid, primary_key=True),
    Column("joining_id", Uuid, ForeignKey("joinings.id"), index=True),
    Column("admission_id", Uuid, ForeignKey("admissions.id"), index=True),
    Column("lead_id", String(64), index=True),
    Column("course_id", String(64)),
    Column("branch_id", String(64)),
    Column("amount_minor", BigInteger, nullable=False),
    Column("currency", String(8), nullable=False),
    Column("mode", String(16), nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("collected_by", String(128)),
    Column("gateway_order_id", String(64), unique=True),
    Column("payment_session_id", String(255)),
    Column("reference_id", String(128)),
    Column("notes", Text),
    Column("is_additional_fee", Boolean, nullable=False, default=False),
    Column("processed_at", DateTime(timezone=True)),
    Column("verified_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    CheckConstraint(
        "(joining_id IS NULL AND admission_id IS NOT NULL) OR "
        "(joining_id IS NOT NULL AND admission_id IS NULL)",
        name="ck_payment_single_reference",
    ),
    CheckConstraint("amount_minor > 0", name="ck_payment_positive_amount"),
)

counters = Table(
    "counters", metadata,
    Column("name", String(64), primary_key=True),
    Column("value", Integer, nullable=False),
)

fee_configs = Table(
    "fee_configs", metadata,
    Column("id", Uuid, primary_key=True),
    Column("course_id", String(64), nullable=False, index=True),
    Column("branch_id", String(64)),
    Column("quota", String(64)),
    Column("amount_minor", BigInteger, nullable=False),
    Column("currency", String(8), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("amount_minor >= 0", name="ck_fee_non_negative"),
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_minor(amount: Decimal) -> int:
    return int((amount * MINOR_UNITS).to_integral_value())


def from_minor(value: int) -> Decimal:
    return (Decimal(value) / MINOR_UNITS).quantize(Decimal("0.01"))


def _joining_from_row(row) -> Joining:
    data = dict(row._mapping)
    data["payload"] = JoiningPayload.model_validate(data["payload"])
    data["status"] = JoiningStatus(data["status"])
    return Joining(**data)


def _admission_from_row(row) -> Admission:
    data = dict(row._mapping)
    data["payload"] = JoiningPayload.model_validate(data["payload"])
    data["status"] = AdmissionStatus(data["status"])
    return Admission(**data)


def _transaction_from_row(row) -> PaymentTransaction:
    data = dict(row._mapping)
    data["amount"] = from_minor(data.pop("amount_minor"))
    data["mode"] = PaymentMode(data["mode"])
    data["status"] = PaymentStatus(data["status"])
    return PaymentTransaction(**data)


class Storage:
    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        if engine is None:
            url = database_url or "sqlite:///./admissions.db"
            connect_args = {"timeout": 30} if url.startswith("sqlite") else {}
            engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)
        self.engine = engine
        with self._translate_errors():
            metadata.create_all(self.engine)
        self._ensure_counter(ADMISSION_COUNTER)

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except IntegrityError as e:
            logger.warning(f"Integrity violation rolled back: {e.orig}")
            raise ConflictError("Conflicting write rejected by the store", original_error=e) from e
        except SQLAlchemyError as e:
            logger.error(f"Store error, transaction rolled back: {e}")
            raise PersistenceError("Storage unavailable, operation rolled back", original_error=e) from e

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Unit of work: commits on success, rolls back everything on any error."""
        with self._translate_errors():
            with self.engine.begin() as conn:
                yield conn

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        with self._translate_errors():
            with self.engine.connect() as conn:
                yield conn

    def _ensure_counter(self, name: str) -> None:
        try:
            with self.engine.begin() as conn:
                exists = conn.execute(select(counters.c.name).where(counters.c.name == name)).first()
                if exists is None:
                    conn.execute(insert(counters).values(name=name, value=0))
        except IntegrityError:
            logger.debug(f"Counter {name} created concurrently")
        except SQLAlchemyError as e:
            raise PersistenceError("Storage unavailable while initialising counters", original_error=e) from e

    # Counters

    def next_counter_value(self, conn: Connection, name: str = ADMISSION_COUNTER) -> int:
        result = conn.execute(
            update(counters).where(counters.c.name == name).values(value=counters.c.value + 1)
        )
        if result.rowcount != 1:
            raise PersistenceError(f"Counter {name} is missing")
        return conn.execute(select(counters.c.value).where(counters.c.name == name)).scalar_one()

    def current_counter_value(self, conn: Connection, name: str = ADMISSION_COUNTER) -> int:
        return conn.execute(select(counters.c.value).where(counters.c.name == name)).scalar_one()

    # Joinings

    def insert_joining(self, conn: Connection, values: dict) -> Joining:
        conn.execute(insert(joinings).values(**values))
        return self.get_joining(conn, values["id"])

    def get_joining(self, conn: Connection, joining_id: UUID) -> Optional[Joining]:
        row = conn.execute(select(joinings).where(joinings.c.id == joining_id)).first()
        return _joining_from_row(row) if row else None

    def get_joining_by_lead(self, conn: Connection, lead_id: str) -> Optional[Joining]:
        row = conn.execute(select(joinings).where(joinings.c.lead_id == lead_id)).first()
        return _joining_from_row(row) if row else None

    def update_joining_if_status(
        self, conn: Connection, joining_id: UUID, expected: JoiningStatus, values: dict
    ) -> bool:
        """Compare-and-set on the joining status. Returns False when another writer got there first."""
        result = conn.execute(
            update(joinings)
            .where(joinings.c.id == joining_id, joinings.c.status == expected.value)
            .values(**values)
        )
        return result.rowcount == 1

    def list_joinings(
        self, conn: Connection, status: Optional[JoiningStatus] = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[Joining], int]:
        query = select(joinings)
        count_query = select(func.count()).select_from(joinings)
        if status is not None:
            query = query.where(joinings.c.status == status.value)
            count_query = count_query.where(joinings.c.status == status.value)
        rows = conn.execute(query.order_by(joinings.c.created_at.desc()).limit(limit).offset(offset)).all()
        return [_joining_from_row(r) for r in rows], conn.execute(count_query).scalar_one()

    # Admissions

    def insert_admission(self, conn: Connection, values: dict) -> Admission:
        conn.execute(insert(admissions).values(**values))
        return self.get_admission(conn, values["id"])

    def get_admission(self, conn: Connection, admission_id: UUID) -> Optional[Admission]:
        row = conn.execute(select(admissions).where(admissions.c.id == admission_id)).first()
        return _admission_from_row(row) if row else None

    def get_admission_by_joining(self, conn: Connection, joining_id: UUID) -> Optional[Admission]:
        row = conn.execute(select(admissions).where(admissions.c.joining_id == joining_id)).first()
        return _admission_from_row(row) if row else None

    def update_admission_if_status(
        self, conn: Connection, admission_id: UUID, expected: AdmissionStatus, values: dict
    ) -> bool:
        result = conn.execute(
            update(admissions)
            .where(admissions.c.id == admission_id, admissions.c.status == expected.value)
            .values(**values)
        )
        return result.rowcount == 1

    def list_admissions(
        self, conn: Connection, status: Optional[AdmissionStatus] = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[Admission], int]:
        query = select(admissions)
        count_query = select(func.count()).select_from(admissions)
        if status is not None:
            query = query.where(admissions.c.status == status.value)
            count_query = count_query.where(admissions.c.status == status.value)
        rows = conn.execute(query.order_by(admissions.c.admission_number).limit(limit).offset(offset)).all()
        return [_admission_from_row(r) for r in rows], conn.execute(count_query).scalar_one()

    # Payment transactions

    def insert_transaction(self, conn: Connection, values: dict) -> PaymentTransaction:
        values = dict(values)
        values["amount_minor"] = to_minor(values.pop("amount"))
        conn.execute(insert(payment_transactions).values(**values))
        return self.get_transaction(conn, values["id"])

    def get_transaction(self, conn: Connection, transaction_id: UUID) -> Optional[PaymentTransaction]:
        row = conn.execute(
            select(payment_transactions).where(payment_transactions.c.id == transaction_id)
        ).first()
        return _transaction_from_row(row) if row else None

    def get_transaction_by_order(self, conn: Connection, gateway_order_id: str) -> Optional[PaymentTransaction]:
        row = conn.execute(
            select(payment_transactions).where(payment_transactions.c.gateway_order_id == gateway_order_id)
        ).first()
        return _transaction_from_row(row) if row else None

    def list_transactions(
        self,
        conn: Connection,
        joining_id: Optional[UUID] = None,
        admission_id: Optional[UUID] = None,
        lead_id: Optional[str] = None,
    ) -> list[PaymentTransaction]:
        query = select(payment_transactions)
        if joining_id is not None:
            query = query.where(payment_transactions.c.joining_id == joining_id)
        if admission_id is not None:
            query = query.where(payment_transactions.c.admission_id == admission_id)
        if lead_id is not None:
            query = query.where(payment_transactions.c.lead_id == lead_id)
        rows = conn.execute(query.order_by(payment_transactions.c.created_at)).all()
        return [_transaction_from_row(r) for r in rows]

    def transactions_for_scope(
        self, conn: Connection, joining_id: UUID, admission_id: Optional[UUID]
    ) -> list[PaymentTransaction]:
        """Every transaction of one student: those booked on the joining plus those on its admission."""
        clauses = [payment_transactions.c.joining_id == joining_id]
        if admission_id is not None:
            clauses.append(payment_transactions.c.admission_id == admission_id)
        rows = conn.execute(
            select(payment_transactions).where(or_(*clauses)).order_by(payment_transactions.c.created_at)
        ).all()
        return [_transaction_from_row(r) for r in rows]

    def list_pending_online(self, conn: Connection) -> list[PaymentTransaction]:
        rows = conn.execute(
            select(payment_transactions)
            .where(
                payment_transactions.c.mode == PaymentMode.ONLINE.value,
                payment_transactions.c.status == PaymentStatus.PENDING.value,
            )
            .order_by(payment_transactions.c.created_at)
        ).all()
        return [_transaction_from_row(r) for r in rows]

    def resolve_transaction(
        self, conn: Connection, transaction_id: UUID, status: PaymentStatus, values: dict
    ) -> bool:
        """One-way ``pending -> success|failed`` flip. False means it was already resolved."""
        if status == PaymentStatus.PENDING:
            raise ValueError("a transaction can only be resolved to success or failed")
        result = conn.execute(
            update(payment_transactions)
            .where(
                payment_transactions.c.id == transaction_id,
                payment_transactions.c.status == PaymentStatus.PENDING.value,
            )
            .values(status=status.value, **values)
        )
        return result.rowcount == 1

    # Fee configuration

    def fee_entries(self, conn: Connection, course_id: Optional[str] = None) -> list[FeeEntry]:
        query = select(fee_configs).where(fee_configs.c.is_active.is_(True))
        if course_id is not None:
            query = query.where(fee_configs.c.course_id == course_id)
        rows = conn.execute(query.order_by(fee_configs.c.course_id, fee_configs.c.branch_id)).all()
        return [
            FeeEntry(
                course_id=r.course_id,
                branch_id=r.branch_id,
                quota=r.quota,
                amount=from_minor(r.amount_minor),
                currency=r.currency,
            )
            for r in rows
        ]

    def upsert_fee(
        self,
        conn: Connection,
        course_id: str,
        branch_id: Optional[str],
        amount: Decimal,
        currency: str,
        quota: Optional[str] = None,
    ) -> None:
        """One active row per (course, branch, quota); NULL branch is the course default."""
        match = [
            fee_configs.c.course_id == course_id,
            fee_configs.c.branch_id.is_(None) if branch_id is None else fee_configs.c.branch_id == branch_id,
            fee_configs.c.quota.is_(None) if quota is None else fee_configs.c.quota == quota,
        ]
        values = {"amount_minor": to_minor(amount), "currency": currency, "is_active": True, "updated_at": utcnow()}
        result = conn.execute(update(fee_configs).where(*match).values(**values))
        if result.rowcount == 0:
            conn.execute(insert(fee_configs).values(
                id=uuid4(), course_id=course_id, branch_id=branch_id, quota=quota, **values
            ))
