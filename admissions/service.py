import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .collaborators import FeeSchedule, LeadDirectory, LoggingNotifier, Notifier, StoredFeeSchedule
from .config import Settings
from .converter import AdmissionConverter
from .exceptions import GatewayError
from .gateway import CashfreeGateway, PaymentGateway
from .joining import JoiningStateMachine
from .ledger import PaymentLedger
from .models import (
    Admission,
    AdmissionListResponse,
    AdmissionStatus,
    BranchFee,
    CourseFees,
    CourseFeesRequest,
    ApprovalResult,
    EntityRef,
    GatewayCustomer,
    Joining,
    JoiningListResponse,
    JoiningPatch,
    JoiningPayload,
    JoiningStatus,
    PaymentMode,
    PaymentStatus,
    PaymentSummary,
    PaymentTransaction,
    ReconciliationReport,
    TransactionListResponse,
    TransactionResult,
)
from .reconciliation import ReconciliationWorker
from .storage import Storage

logger = logging.getLogger(__name__)


def build_gateway(settings: Settings) -> Optional[PaymentGateway]:
    if not settings.gateway_configured:
        logger.warning("Cashfree credentials missing: online payments and reconciliation are disabled")
        return None
    return CashfreeGateway(
        client_id=settings.cashfree_client_id,
        client_secret=settings.cashfree_client_secret,
        base_url=settings.cashfree_base_url,
        api_version=settings.cashfree_api_version,
        timeout=settings.gateway_timeout_seconds,
    )


class AdmissionsService:
    """The stable contract other layers call. Reads always carry a freshly recomputed payment summary."""

    def __init__(
        self,
        storage: Optional[Storage] = None,
        fee_schedule: Optional[FeeSchedule] = None,
        gateway: Optional[PaymentGateway] = None,
        notifier: Optional[Notifier] = None,
        lead_directory: Optional[LeadDirectory] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or Settings()
        self.storage = storage or Storage(self.settings.database_url)
        self.notifier = notifier or LoggingNotifier()
        self.gateway = gateway
        self.ledger = PaymentLedger(
            self.storage,
            fee_schedule=fee_schedule or StoredFeeSchedule(self.storage),
            gateway=gateway,
            notifier=self.notifier,
            default_currency=self.settings.default_currency,
        )
        self.converter = AdmissionConverter(self.storage, notifier=self.notifier)
        self.joinings = JoiningStateMachine(self.storage, self.converter, lead_directory)
        self.reconciler = ReconciliationWorker(self.ledger, gateway) if gateway is not None else None

    def _with_summary(self, entity):
        ref = EntityRef.joining(entity.id) if isinstance(entity, Joining) else EntityRef.admission(entity.id)
        entity.payment_summary = self.ledger.summarize(ref)
        return entity

    # Joinings

    def create_draft(
        self, payload: JoiningPayload, lead_id: Optional[str] = None, created_by: Optional[str] = None
    ) -> Joining:
        return self._with_summary(self.joinings.create_draft(payload, lead_id, created_by))

    def update_draft(self, joining_id: UUID, patch: JoiningPatch) -> Joining:
        return self._with_summary(self.joinings.update_draft(joining_id, patch))

    def submit_for_approval(self, joining_id: UUID, submitted_by: Optional[str] = None) -> Joining:
        return self._with_summary(self.joinings.submit_for_approval(joining_id, submitted_by))

    def approve(self, joining_id: UUID, approver_id: str) -> ApprovalResult:
        result = self.joinings.approve(joining_id, approver_id)
        self._with_summary(result.joining)
        self._with_summary(result.admission)
        return result

    def reject(self, joining_id: UUID, reason: str, rejected_by: Optional[str] = None) -> Joining:
        return self._with_summary(self.joinings.reject(joining_id, reason, rejected_by))

    def get_joining(self, joining_id: UUID) -> Joining:
        return self._with_summary(self.joinings.get_joining(joining_id))

    def get_joining_by_lead(self, lead_id: str) -> Joining:
        return self._with_summary(self.joinings.get_joining_by_lead(lead_id))

    def list_joinings(
        self, status: Optional[JoiningStatus] = None, limit: int = 50, offset: int = 0
    ) -> JoiningListResponse:
        joinings, total = self.joinings.list_joinings(status, limit, offset)
        return JoiningListResponse(joinings=[self._with_summary(j) for j in joinings], total_count=total)

    # Admissions

    def get_admission(self, admission_id: UUID) -> Admission:
        return self._with_summary(self.converter.get_admission(admission_id))

    def get_admission_by_joining(self, joining_id: UUID) -> Admission:
        return self._with_summary(self.converter.get_admission_by_joining(joining_id))

    def list_admissions(
        self, status: Optional[AdmissionStatus] = None, limit: int = 50, offset: int = 0
    ) -> AdmissionListResponse:
        admissions, total = self.converter.list_admissions(status, limit, offset)
        return AdmissionListResponse(admissions=[self._with_summary(a) for a in admissions], total_count=total)

    def withdraw_admission(self, admission_id: UUID, reason: str) -> Admission:
        return self._with_summary(self.converter.withdraw_admission(admission_id, reason))

    # Payments

    def record_transaction(
        self,
        ref: EntityRef,
        amount: Decimal,
        mode: PaymentMode,
        collected_by: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        **extra,
    ) -> TransactionResult:
        return self.ledger.record_transaction(ref, amount, mode, collected_by, status, **extra)

    def create_online_order(
        self,
        ref: EntityRef,
        amount: Decimal,
        collected_by: Optional[str] = None,
        customer: Optional[GatewayCustomer] = None,
        **extra,
    ) -> TransactionResult:
        return self.ledger.create_online_order(ref, amount, collected_by, customer, **extra)

    def verify_order(self, gateway_order_id: str) -> PaymentTransaction:
        return self.ledger.verify_order(gateway_order_id)

    def get_summary(self, ref: EntityRef) -> PaymentSummary:
        return self.ledger.summarize(ref)

    def list_transactions(
        self,
        joining_id: Optional[UUID] = None,
        admission_id: Optional[UUID] = None,
        lead_id: Optional[str] = None,
    ) -> TransactionListResponse:
        transactions = self.ledger.list_transactions(joining_id, admission_id, lead_id)
        return TransactionListResponse(transactions=transactions, total_count=len(transactions))

    def reconcile_pending(self) -> ReconciliationReport:
        if self.reconciler is None:
            raise GatewayError("Payment gateway is not configured, nothing to reconcile against")
        return self.reconciler.reconcile_pending()

    # Fee configuration

    def get_course_fees(self, course_id: str) -> CourseFees:
        with self.storage.connection() as conn:
            entries = [e for e in self.storage.fee_entries(conn, course_id) if e.quota is None]
        default = next((e for e in entries if e.branch_id is None), None)
        return CourseFees(
            course_id=course_id,
            default_fee=default.amount if default else None,
            fees=[BranchFee(branch_id=e.branch_id, amount=e.amount) for e in entries if e.branch_id is not None],
            currency=entries[0].currency if entries else self.settings.default_currency,
        )

    def upsert_course_fees(self, course_id: str, request: CourseFeesRequest) -> CourseFees:
        """Sets the course default (when given) and each listed branch fee; other rows are left alone."""
        currency = request.currency or self.settings.default_currency
        with self.storage.transaction() as conn:
            if request.default_fee is not None:
                self.storage.upsert_fee(conn, course_id, None, request.default_fee, currency)
            for fee in request.fees:
                self.storage.upsert_fee(conn, course_id, fee.branch_id, fee.amount, currency)
        logger.info(f"Fees for course {course_id} updated: default={request.default_fee}, branches={len(request.fees)}")
        return self.get_course_fees(course_id)
