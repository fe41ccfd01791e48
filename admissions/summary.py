from decimal import Decimal
from typing import Iterable

from .models import PaymentStatus, PaymentSummary, PaymentSummaryStatus, PaymentTransaction

ZERO = Decimal("0.00")


def summary_status(total_paid: Decimal, balance: Decimal) -> PaymentSummaryStatus:
    # nothing collected is never "paid", even when no fee is configured
    if total_paid <= 0:
        return PaymentSummaryStatus.NOT_STARTED
    if balance <= 0:
        return PaymentSummaryStatus.PAID
    return PaymentSummaryStatus.PARTIAL


def summarize(
    transactions: Iterable[PaymentTransaction], total_fee: Decimal, currency: str = "INR"
) -> PaymentSummary:
    """
    Recompute a payment summary from the ledger.

    Only ``success`` transactions count towards ``total_paid``. Pending online
    payments are reported separately so callers can show that reconciliation
    is still in progress. A negative balance is reported as ``overpaid``,
    never clamped.
    """
    total_paid = ZERO
    pending_amount = ZERO
    pending_count = 0
    last_payment_at = None

    for txn in transactions:
        if txn.status == PaymentStatus.SUCCESS:
            total_paid += txn.amount
            paid_at = txn.processed_at or txn.created_at
            if last_payment_at is None or paid_at > last_payment_at:
                last_payment_at = paid_at
        elif txn.status == PaymentStatus.PENDING:
            pending_amount += txn.amount
            pending_count += 1

    total_fee = Decimal(total_fee).quantize(ZERO)
    total_paid = total_paid.quantize(ZERO)
    balance = total_fee - total_paid

    return PaymentSummary(
        total_fee=total_fee,
        total_paid=total_paid,
        balance=balance,
        currency=currency,
        status=summary_status(total_paid, balance),
        last_payment_at=last_payment_at,
        pending_amount=pending_amount.quantize(ZERO),
        pending_count=pending_count,
        overpaid=balance < 0,
    )
