import logging
from decimal import Decimal, InvalidOperation
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy.engine import Connection

from .collaborators import FeeSchedule, Notifier, StaticFeeSchedule, notify_safely
from .exceptions import ConflictError, GatewayError, NotFound, ValidationError
from .gateway import PaymentGateway, map_gateway_status
from .models import (
    Admission,
    EntityKind,
    EntityRef,
    GatewayCustomer,
    Joining,
    PaymentMode,
    PaymentStatus,
    PaymentSummary,
    PaymentTransaction,
    TransactionResult,
)
from .storage import Storage, utcnow
from .summary import summarize

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
MAX_AMOUNT = Decimal("9999999999.99")


def validate_amount(amount) -> Decimal:
    """Positive, at most two decimals and within the storable range."""
    try:
        amount = Decimal(str(amount))
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Payment amount must be positive", missing_fields=["amount"])
        if amount > MAX_AMOUNT:
            raise ValidationError(f"Payment amount cannot exceed {MAX_AMOUNT}")
        if amount != amount.quantize(CENT):
            raise ValidationError("Payment amount cannot have more than two decimal places")
    except InvalidOperation as e:
        raise ValidationError(f"Invalid payment amount: {amount}") from e
    return amount


class PaymentLedger:
    """
    Append-only payment ledger for joinings and admissions.

    Transactions are never edited except for the single ``pending`` to
    ``success``/``failed`` flip of an online payment. Summaries are always
    recomputed from the ledger.
    """

    def __init__(
        self,
        storage: Storage,
        fee_schedule: Optional[FeeSchedule] = None,
        gateway: Optional[PaymentGateway] = None,
        notifier: Optional[Notifier] = None,
        default_currency: str = "INR",
    ):
        self.storage = storage
        self.fee_schedule = fee_schedule or StaticFeeSchedule()
        self.gateway = gateway
        self.notifier = notifier
        self.default_currency = default_currency

    def _load_entity(self, conn: Connection, ref: EntityRef) -> tuple[Joining, Optional[Admission]]:
        if ref.kind == EntityKind.JOINING:
            joining = self.storage.get_joining(conn, ref.id)
            if joining is None:
                raise NotFound(f"Joining {ref.id} not found")
            return joining, self.storage.get_admission_by_joining(conn, joining.id)

        admission = self.storage.get_admission(conn, ref.id)
        if admission is None:
            raise NotFound(f"Admission {ref.id} not found")
        return self.storage.get_joining(conn, admission.joining_id), admission

    def _summarize_loaded(
        self, conn: Connection, joining: Joining, admission: Optional[Admission]
    ) -> PaymentSummary:
        payload = admission.payload if admission else joining.payload
        course = payload.course_info
        total_fee = self.fee_schedule.get_total_fee(course.course_id, course.branch_id, course.quota)
        transactions = self.storage.transactions_for_scope(
            conn, joining.id, admission.id if admission else None
        )
        return summarize(transactions, total_fee, self.default_currency)

    def summarize(self, ref: EntityRef) -> PaymentSummary:
        with self.storage.connection() as conn:
            joining, admission = self._load_entity(conn, ref)
            return self._summarize_loaded(conn, joining, admission)

    def record_transaction(
        self,
        ref: EntityRef,
        amount: Decimal,
        mode: PaymentMode,
        collected_by: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        currency: Optional[str] = None,
        notes: Optional[str] = None,
        is_additional_fee: bool = False,
        gateway_order_id: Optional[str] = None,
        payment_session_id: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> TransactionResult:
        amount = validate_amount(amount)

        if mode == PaymentMode.ONLINE:
            if status not in (None, PaymentStatus.PENDING):
                raise ValidationError("Online payments are confirmed by the gateway, not by the caller")
            if not gateway_order_id:
                raise ValidationError("Online payments need a gateway order id", missing_fields=["gateway_order_id"])
            status = PaymentStatus.PENDING
        else:
            status = status or PaymentStatus.SUCCESS
            if status == PaymentStatus.PENDING:
                raise ValidationError(f"{mode.value} payments must be recorded as success or failed")

        now = utcnow()
        with self.storage.transaction() as conn:
            joining, admission = self._load_entity(conn, ref)
            if gateway_order_id and self.storage.get_transaction_by_order(conn, gateway_order_id):
                raise ConflictError(f"Gateway order {gateway_order_id} is already recorded")
            payload = admission.payload if admission else joining.payload
            values = {
                "id": uuid4(),
                "joining_id": ref.id if ref.kind == EntityKind.JOINING else None,
                "admission_id": ref.id if ref.kind == EntityKind.ADMISSION else None,
                "lead_id": joining.lead_id,
                "course_id": payload.course_info.course_id,
                "branch_id": payload.course_info.branch_id,
                "amount": amount,
                "currency": currency or self.default_currency,
                "mode": mode.value,
                "status": status.value,
                "collected_by": collected_by,
                "gateway_order_id": gateway_order_id,
                "payment_session_id": payment_session_id,
                "reference_id": reference_id,
                "notes": notes,
                "is_additional_fee": is_additional_fee,
                "processed_at": None if status == PaymentStatus.PENDING else now,
                "verified_at": None,
                "created_at": now,
            }
            transaction = self.storage.insert_transaction(conn, values)

        # read-after-write: the summary is computed from committed rows
        summary = self.summarize(ref)
        logger.info(
            f"Recorded {mode.value} payment {transaction.id} of {amount} "
            f"({status.value}) against {ref.kind.value} {ref.id}"
        )
        return TransactionResult(transaction=transaction, summary=summary, message="Payment recorded")

    def create_online_order(
        self,
        ref: EntityRef,
        amount: Decimal,
        collected_by: Optional[str] = None,
        customer: Optional[GatewayCustomer] = None,
        currency: Optional[str] = None,
        notes: Optional[str] = None,
        is_additional_fee: bool = False,
    ) -> TransactionResult:
        if self.gateway is None:
            raise GatewayError("Payment gateway is not configured")
        # everything the ledger write checks must pass before an order exists at the gateway
        amount = validate_amount(amount)
        self.summarize(ref)

        order_id = f"order_{uuid4().hex}"
        order = self.gateway.create_order(
            order_id, amount, currency or self.default_currency, customer or GatewayCustomer()
        )
        result = self.record_transaction(
            ref,
            amount,
            PaymentMode.ONLINE,
            collected_by=collected_by,
            currency=currency,
            notes=notes,
            is_additional_fee=is_additional_fee,
            gateway_order_id=order.order_id,
            payment_session_id=order.payment_session_id,
        )
        result.message = "Gateway order created, payment pending"
        return result

    def list_transactions(
        self,
        joining_id: Optional[UUID] = None,
        admission_id: Optional[UUID] = None,
        lead_id: Optional[str] = None,
    ) -> list[PaymentTransaction]:
        with self.storage.connection() as conn:
            return self.storage.list_transactions(conn, joining_id, admission_id, lead_id)

    def get_transaction(self, transaction_id: UUID) -> PaymentTransaction:
        with self.storage.connection() as conn:
            transaction = self.storage.get_transaction(conn, transaction_id)
        if transaction is None:
            raise NotFound(f"Payment transaction {transaction_id} not found")
        return transaction

    def apply_gateway_status(
        self, transaction: PaymentTransaction, status: PaymentStatus, reference_id: Optional[str] = None
    ) -> bool:
        """
        Flip a pending transaction to its final status.

        Returns True only for the writer that performed the flip; any later or
        concurrent attempt is a no-op and returns False.
        """
        now = utcnow()
        values = {"processed_at": now, "verified_at": now}
        if reference_id:
            values["reference_id"] = reference_id
        with self.storage.transaction() as conn:
            applied = self.storage.resolve_transaction(conn, transaction.id, status, values)
            resolved = self.storage.get_transaction(conn, transaction.id)

        if applied:
            logger.info(f"Payment {transaction.id} resolved to {status.value}")
            if self.notifier is not None:
                notify_safely(self.notifier.payment_status_changed, resolved)
        else:
            logger.debug(f"Payment {transaction.id} already resolved as {resolved.status.value}")
        return applied

    def verify_order(self, gateway_order_id: str) -> PaymentTransaction:
        """On-demand confirmation of a single online order against the gateway."""
        with self.storage.connection() as conn:
            transaction = self.storage.get_transaction_by_order(conn, gateway_order_id)
        if transaction is None:
            raise NotFound(f"No payment recorded for gateway order {gateway_order_id}")
        if transaction.is_resolved():
            return transaction
        if self.gateway is None:
            raise GatewayError("Payment gateway is not configured")

        order = self.gateway.get_order(gateway_order_id)
        status = map_gateway_status(order.status)
        if status is not None:
            self.apply_gateway_status(transaction, status, order.reference_id)
        return self.get_transaction(transaction.id)
