"""
Reconciliation of pending online payments against the payment gateway.

A pass selects every online transaction still ``pending``, asks the gateway
for the order status and applies the one-way flip. Gateway failures leave the
transaction pending for the next pass; they are never turned into ``failed``.
"""

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .exceptions import GatewayError
from .gateway import PaymentGateway, map_gateway_status
from .ledger import PaymentLedger
from .models import PaymentStatus, ReconciliationReport
from .storage import utcnow

logger = logging.getLogger(__name__)


class ReconciliationWorker:
    def __init__(self, ledger: PaymentLedger, gateway: PaymentGateway):
        self.ledger = ledger
        self.gateway = gateway

    def reconcile_pending(self) -> ReconciliationReport:
        report = ReconciliationReport(started_at=utcnow())
        storage = self.ledger.storage
        with storage.connection() as conn:
            pending = storage.list_pending_online(conn)

        for transaction in pending:
            report.checked += 1
            try:
                order = self.gateway.get_order(transaction.gateway_order_id)
            except GatewayError as e:
                report.errors += 1
                logger.warning(f"Gateway lookup for order {transaction.gateway_order_id} failed, left pending: {e}")
                continue

            status = map_gateway_status(order.status)
            if status is None:
                report.still_pending += 1
                continue

            if self.ledger.apply_gateway_status(transaction, status, order.reference_id):
                report.updated += 1
                if status == PaymentStatus.FAILED:
                    report.failed += 1

        report.finished_at = utcnow()
        logger.info(
            f"Reconciliation pass: checked={report.checked} updated={report.updated} "
            f"failed={report.failed} errors={report.errors} still_pending={report.still_pending}"
        )
        return report


class ReconciliationScheduler:
    JOB_ID = "reconcile_pending_payments"

    def __init__(self, worker: ReconciliationWorker, interval_minutes: int = 5):
        self.worker = worker
        self.interval_minutes = interval_minutes
        self.scheduler = BackgroundScheduler()
        self.is_running = False
        self.last_report: Optional[ReconciliationReport] = None

    def _run(self) -> None:
        try:
            self.last_report = self.worker.reconcile_pending()
        except Exception as e:
            logger.error(f"Reconciliation job failed: {e}")

    def start(self) -> None:
        if self.is_running:
            return
        self.scheduler.add_job(
            func=self._run,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=self.JOB_ID,
            name="Reconcile pending online payments",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self.is_running = True
        logger.info(f"Reconciliation scheduled every {self.interval_minutes} minutes")

    def stop(self) -> None:
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Reconciliation scheduler stopped")

    def get_jobs(self) -> list[dict]:
        return [
            {"id": job.id, "name": job.name, "next_run": str(job.next_run_time), "trigger": str(job.trigger)}
            for job in self.scheduler.get_jobs()
        ]
