"""
Admission converter and numbering service.

Approval is a single database transaction: claim the joining
(``pending_approval -> approved``), allocate the next admission number from the
system-wide counter, and write the admission snapshot. If any step fails the
whole transaction rolls back, so the joining stays ``pending_approval`` and the
counter does not move.
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy.engine import Connection

from .collaborators import Notifier, notify_safely
from .exceptions import ConflictError, InvalidState, NotFound
from .models import (
    Admission,
    AdmissionStatus,
    ApprovalResult,
    JoiningStatus,
)
from .storage import ADMISSION_COUNTER, Storage, utcnow

logger = logging.getLogger(__name__)


class AdmissionNumberAllocator:
    def __init__(self, storage: Storage, counter_name: str = ADMISSION_COUNTER):
        self.storage = storage
        self.counter_name = counter_name

    def allocate(self, conn: Connection) -> int:
        """Must run inside the approving transaction so a rollback releases the number."""
        return self.storage.next_counter_value(conn, self.counter_name)


class AdmissionConverter:
    def __init__(
        self,
        storage: Storage,
        notifier: Optional[Notifier] = None,
        allocator: Optional[AdmissionNumberAllocator] = None,
    ):
        self.storage = storage
        self.notifier = notifier
        self.allocator = allocator or AdmissionNumberAllocator(storage)

    def convert(self, joining_id: UUID, approver_id: str) -> ApprovalResult:
        now = utcnow()
        with self.storage.transaction() as conn:
            # the claim must be the first write: it serializes concurrent approvers
            claimed = self.storage.update_joining_if_status(
                conn,
                joining_id,
                JoiningStatus.PENDING_APPROVAL,
                {
                    "status": JoiningStatus.APPROVED.value,
                    "approved_at": now,
                    "approved_by": approver_id,
                    "updated_at": now,
                },
            )
            if claimed:
                joining = self.storage.get_joining(conn, joining_id)
                if self.storage.get_admission_by_joining(conn, joining_id) is not None:
                    raise ConflictError(f"Joining {joining_id} already has an admission")
                number = self.allocator.allocate(conn)
                created_at = utcnow()
                admission = self.storage.insert_admission(conn, {
                    "id": uuid4(),
                    "joining_id": joining.id,
                    "lead_id": joining.lead_id,
                    "admission_number": number,
                    "status": AdmissionStatus.ACTIVE.value,
                    "admission_date": created_at,
                    "payload": joining.payload.model_dump(mode="json"),
                    "created_by": approver_id,
                    "created_at": created_at,
                })

        if not claimed:
            return self._existing_approval(joining_id)

        logger.info(f"Joining {joining_id} approved by {approver_id}: admission #{admission.admission_number}")
        if self.notifier is not None:
            notify_safely(self.notifier.joining_approved, joining, admission)
        return ApprovalResult(
            joining=joining,
            admission=admission,
            created=True,
            message=f"Admission #{admission.admission_number} created",
        )

    def _existing_approval(self, joining_id: UUID) -> ApprovalResult:
        with self.storage.connection() as conn:
            joining = self.storage.get_joining(conn, joining_id)
            admission = self.storage.get_admission_by_joining(conn, joining_id)

        if joining is None:
            raise NotFound(f"Joining {joining_id} not found")
        if joining.status != JoiningStatus.APPROVED:
            raise InvalidState(
                f"Cannot approve: joining is {joining.status.value}, expected pending_approval",
                current_status=joining.status.value,
            )
        if admission is None:
            raise ConflictError(f"Joining {joining_id} is approved but its admission is missing")
        logger.info(f"Joining {joining_id} already approved as admission #{admission.admission_number}")
        return ApprovalResult(
            joining=joining,
            admission=admission,
            created=False,
            message=f"Already approved as admission #{admission.admission_number}",
        )

    def get_admission(self, admission_id: UUID) -> Admission:
        with self.storage.connection() as conn:
            admission = self.storage.get_admission(conn, admission_id)
        if admission is None:
            raise NotFound(f"Admission {admission_id} not found")
        return admission

    def get_admission_by_joining(self, joining_id: UUID) -> Admission:
        with self.storage.connection() as conn:
            admission = self.storage.get_admission_by_joining(conn, joining_id)
        if admission is None:
            raise NotFound(f"No admission for joining {joining_id}")
        return admission

    def list_admissions(
        self, status: Optional[AdmissionStatus] = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[Admission], int]:
        with self.storage.connection() as conn:
            return self.storage.list_admissions(conn, status, limit, offset)

    def withdraw_admission(self, admission_id: UUID, reason: str) -> Admission:
        now = utcnow()
        with self.storage.transaction() as conn:
            applied = self.storage.update_admission_if_status(
                conn,
                admission_id,
                AdmissionStatus.ACTIVE,
                {"status": AdmissionStatus.WITHDRAWN.value, "withdrawn_at": now, "withdrawal_reason": reason},
            )
            admission = self.storage.get_admission(conn, admission_id)

        if admission is None:
            raise NotFound(f"Admission {admission_id} not found")
        if not applied:
            raise InvalidState(
                f"Cannot withdraw: admission is {admission.status.value}",
                current_status=admission.status.value,
            )
        logger.info(f"Admission #{admission.admission_number} withdrawn: {reason}")
        return admission
