"""
Admissions Core

This package provides:
- Joining form lifecycle: draft → pending_approval → approved (reject returns to draft)
- Exactly-once conversion of an approved joining into a numbered admission
- Append-only payment ledger (cash, online gateway, UPI-QR)
- Payment summaries recomputed from the ledger on every read and write
- Idempotent reconciliation of pending online payments with the gateway
"""

from .models import (
    JoiningStatus,
    AdmissionStatus,
    PaymentMode,
    PaymentStatus,
    PaymentSummaryStatus,
    EntityRef,
    JoiningPayload,
    Joining,
    Admission,
    PaymentTransaction,
    PaymentSummary,
)
from .service import AdmissionsService

__all__ = [
    "JoiningStatus",
    "AdmissionStatus",
    "PaymentMode",
    "PaymentStatus",
    "PaymentSummaryStatus",
    "EntityRef",
    "JoiningPayload",
    "Joining",
    "Admission",
    "PaymentTransaction",
    "PaymentSummary",
    "AdmissionsService",
]
