import logging
from typing import Optional
from uuid import UUID, uuid4

from .collaborators import LeadDirectory
from .converter import AdmissionConverter
from .exceptions import ConflictError, InvalidState, NotFound, ValidationError
from .models import (
    ApprovalResult,
    Joining,
    JoiningPatch,
    JoiningPayload,
    JoiningStatus,
)
from .storage import Storage, utcnow

logger = logging.getLogger(__name__)

# The only legal edges. approved is terminal; ownership passes to the admission.
TRANSITIONS = {
    JoiningStatus.DRAFT: {JoiningStatus.PENDING_APPROVAL},
    JoiningStatus.PENDING_APPROVAL: {JoiningStatus.APPROVED, JoiningStatus.DRAFT},
    JoiningStatus.APPROVED: set(),
}


def can_transition(current: JoiningStatus, target: JoiningStatus) -> bool:
    return target in TRANSITIONS[current]


class JoiningStateMachine:
    def __init__(
        self,
        storage: Storage,
        converter: Optional[AdmissionConverter] = None,
        lead_directory: Optional[LeadDirectory] = None,
    ):
        self.storage = storage
        self.converter = converter or AdmissionConverter(storage)
        self.lead_directory = lead_directory

    def create_draft(
        self, payload: JoiningPayload, lead_id: Optional[str] = None, created_by: Optional[str] = None
    ) -> Joining:
        if lead_id is not None:
            self._check_lead(lead_id)

        now = utcnow()
        with self.storage.transaction() as conn:
            if lead_id is not None and self.storage.get_joining_by_lead(conn, lead_id) is not None:
                raise ConflictError(f"Lead {lead_id} already has a joining form")
            joining = self.storage.insert_joining(conn, {
                "id": uuid4(),
                "lead_id": lead_id,
                "status": JoiningStatus.DRAFT.value,
                "payload": payload.model_dump(mode="json"),
                "draft_updated_at": now,
                "created_by": created_by,
                "created_at": now,
                "updated_at": now,
            })
        logger.info(f"Created draft joining {joining.id}" + (f" for lead {lead_id}" if lead_id else ""))
        return joining

    def _check_lead(self, lead_id: str) -> None:
        if self.lead_directory is None:
            logger.debug(f"No lead directory configured, skipping confirmation check for {lead_id}")
            return
        status = self.lead_directory.get_lead_status(lead_id)
        if status is None:
            raise NotFound(f"Lead {lead_id} not found")
        if not self.lead_directory.is_confirmed(lead_id):
            raise ValidationError(f"Cannot create joining: lead {lead_id} is '{status}', not Confirmed")

    def get_joining(self, joining_id: UUID) -> Joining:
        with self.storage.connection() as conn:
            joining = self.storage.get_joining(conn, joining_id)
        if joining is None:
            raise NotFound(f"Joining {joining_id} not found")
        return joining

    def get_joining_by_lead(self, lead_id: str) -> Joining:
        with self.storage.connection() as conn:
            joining = self.storage.get_joining_by_lead(conn, lead_id)
        if joining is None:
            raise NotFound(f"No joining for lead {lead_id}")
        return joining

    def list_joinings(
        self, status: Optional[JoiningStatus] = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[Joining], int]:
        with self.storage.connection() as conn:
            return self.storage.list_joinings(conn, status, limit, offset)

    def _transition(
        self, joining_id: UUID, expected: JoiningStatus, target: JoiningStatus, action: str, values: dict
    ) -> Joining:
        if not can_transition(expected, target):
            raise InvalidState(f"Cannot {action}: {expected.value} -> {target.value} is not a legal transition")
        with self.storage.transaction() as conn:
            applied = self.storage.update_joining_if_status(
                conn, joining_id, expected, {"status": target.value, "updated_at": utcnow(), **values}
            )
            joining = self.storage.get_joining(conn, joining_id)

        if joining is None:
            raise NotFound(f"Joining {joining_id} not found")
        if not applied:
            raise InvalidState(
                f"Cannot {action}: joining is {joining.status.value}, expected {expected.value}",
                current_status=joining.status.value,
            )
        logger.info(f"Joining {joining_id}: {expected.value} -> {target.value}")
        return joining

    def update_draft(self, joining_id: UUID, patch: JoiningPatch) -> Joining:
        joining = self.get_joining(joining_id)
        if not joining.can_edit():
            raise InvalidState(
                f"Cannot edit: joining is {joining.status.value}, only drafts can change",
                current_status=joining.status.value,
            )
        payload = patch.apply_to(joining.payload)
        now = utcnow()
        with self.storage.transaction() as conn:
            applied = self.storage.update_joining_if_status(
                conn,
                joining_id,
                JoiningStatus.DRAFT,
                {"payload": payload.model_dump(mode="json"), "draft_updated_at": now, "updated_at": now},
            )
            updated = self.storage.get_joining(conn, joining_id)
        if not applied:
            raise InvalidState(
                f"Cannot edit: joining became {updated.status.value} while saving",
                current_status=updated.status.value,
            )
        return updated

    def submit_for_approval(self, joining_id: UUID, submitted_by: Optional[str] = None) -> Joining:
        joining = self.get_joining(joining_id)
        if not joining.can_submit():
            raise InvalidState(
                f"Cannot submit: joining is {joining.status.value}, expected draft",
                current_status=joining.status.value,
            )
        missing = joining.payload.missing_required_fields()
        if missing:
            raise ValidationError(f"Cannot submit: missing {', '.join(missing)}", missing_fields=missing)

        return self._transition(
            joining_id,
            JoiningStatus.DRAFT,
            JoiningStatus.PENDING_APPROVAL,
            "submit",
            {"submitted_at": utcnow(), "submitted_by": submitted_by},
        )

    def approve(self, joining_id: UUID, approver_id: str) -> ApprovalResult:
        joining = self.get_joining(joining_id)
        if joining.status == JoiningStatus.DRAFT:
            raise InvalidState(
                "Cannot approve: joining is draft, submit it for approval first",
                current_status=joining.status.value,
            )
        # approved joinings fall through: the converter returns the existing admission
        return self.converter.convert(joining_id, approver_id)

    def reject(self, joining_id: UUID, reason: str, rejected_by: Optional[str] = None) -> Joining:
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reject a joining", missing_fields=["reason"])
        joining = self._transition(
            joining_id,
            JoiningStatus.PENDING_APPROVAL,
            JoiningStatus.DRAFT,
            "reject",
            {"rejection_reason": reason.strip()},
        )
        logger.info(f"Joining {joining_id} rejected by {rejected_by or 'unknown'}: {reason}")
        return joining
