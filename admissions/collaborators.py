"""
Collaborators consumed by the admissions core.

The lead service, fee configuration and notification service live outside
this package; these interfaces are the seams they plug into, with simple
in-process implementations used by the default app and by the tests.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, Optional

from pydantic import BaseModel

from .models import Admission, Joining, PaymentTransaction

logger = logging.getLogger(__name__)

CONFIRMED_LEAD_STATUS = "confirmed"


class LeadDirectory(ABC):
    @abstractmethod
    def get_lead_status(self, lead_id: str) -> Optional[str]:
        """Current status of the lead, or None when the lead is unknown."""

    def is_confirmed(self, lead_id: str) -> bool:
        status = self.get_lead_status(lead_id)
        return status is not None and status.strip().lower() == CONFIRMED_LEAD_STATUS


class InMemoryLeadDirectory(LeadDirectory):
    def __init__(self, statuses: Optional[dict[str, str]] = None):
        self.statuses: dict[str, str] = dict(statuses or {})

    def set_status(self, lead_id: str, status: str) -> None:
        self.statuses[lead_id] = status

    def get_lead_status(self, lead_id: str) -> Optional[str]:
        return self.statuses.get(lead_id)


class FeeEntry(BaseModel):
    course_id: str
    branch_id: Optional[str] = None
    quota: Optional[str] = None
    amount: Decimal
    currency: str = "INR"
    is_active: bool = True


class FeeSchedule(ABC):
    @abstractmethod
    def get_total_fee(
        self, course_id: Optional[str], branch_id: Optional[str] = None, quota: Optional[str] = None
    ) -> Decimal:
        ...


class StaticFeeSchedule(FeeSchedule):
    """
    Fee table keyed by course, optionally narrowed by branch and quota.

    The most specific active entry wins: a branch match outranks a quota
    match, and both outrank the course default. Unknown courses cost nothing.
    """

    def __init__(self, entries: Optional[list[FeeEntry]] = None):
        self.entries: list[FeeEntry] = list(entries or [])

    def add(self, entry: FeeEntry) -> None:
        self.entries.append(entry)

    def get_total_fee(
        self, course_id: Optional[str], branch_id: Optional[str] = None, quota: Optional[str] = None
    ) -> Decimal:
        return select_fee(self.entries, course_id, branch_id, quota)


class StoredFeeSchedule(FeeSchedule):
    """Fee table kept in the ``fee_configs`` table of the store, editable at runtime."""

    def __init__(self, storage):
        self.storage = storage

    def get_total_fee(
        self, course_id: Optional[str], branch_id: Optional[str] = None, quota: Optional[str] = None
    ) -> Decimal:
        if not course_id:
            return Decimal("0.00")
        with self.storage.connection() as conn:
            entries = self.storage.fee_entries(conn, course_id)
        return select_fee(entries, course_id, branch_id, quota)


def select_fee(
    entries: list[FeeEntry], course_id: Optional[str], branch_id: Optional[str], quota: Optional[str]
) -> Decimal:
    best, best_rank = None, -1
    for entry in entries:
        if not entry.is_active or entry.course_id != course_id:
            continue
        if entry.branch_id is not None and entry.branch_id != branch_id:
            continue
        if entry.quota is not None and entry.quota != quota:
            continue
        rank = (2 if entry.branch_id else 0) + (1 if entry.quota else 0)
        if rank > best_rank:
            best, best_rank = entry, rank
    return best.amount if best else Decimal("0.00")


class Notifier(ABC):
    @abstractmethod
    def joining_approved(self, joining: Joining, admission: Admission) -> None:
        ...

    @abstractmethod
    def payment_status_changed(self, transaction: PaymentTransaction) -> None:
        ...


class LoggingNotifier(Notifier):
    def joining_approved(self, joining: Joining, admission: Admission) -> None:
        logger.info(f"Joining {joining.id} approved as admission #{admission.admission_number}")

    def payment_status_changed(self, transaction: PaymentTransaction) -> None:
        logger.info(f"Payment {transaction.id} ({transaction.gateway_order_id}) is now {transaction.status.value}")


def notify_safely(callback: Callable[..., None], *args) -> None:
    """Fire-and-forget: a failing notification never fails the core operation."""
    try:
        callback(*args)
    except Exception as e:
        logger.warning(f"Notification {getattr(callback, '__name__', callback)} failed: {e}")
