from decimal import Decimal

import pytest

from admissions.collaborators import FeeEntry, InMemoryLeadDirectory, Notifier, StaticFeeSchedule
from admissions.gateway import PaymentGateway
from admissions.models import CourseInfo, GatewayOrder, JoiningPayload, StudentInfo
from admissions.service import AdmissionsService
from admissions.storage import Storage


class FakeGateway(PaymentGateway):
    """Gateway double: order statuses are set by the test, errors can be injected per order."""

    def __init__(self):
        self.statuses: dict[str, str] = {}
        self.errors: dict[str, Exception] = {}
        self.lookups: list[str] = []

    def create_order(self, order_id, amount, currency, customer):
        self.statuses[order_id] = "ACTIVE"
        return GatewayOrder(order_id=order_id, payment_session_id=f"session_{order_id}", status="ACTIVE")

    def get_order(self, order_id):
        self.lookups.append(order_id)
        if order_id in self.errors:
            raise self.errors[order_id]
        return GatewayOrder(
            order_id=order_id,
            status=self.statuses.get(order_id, "ACTIVE"),
            reference_id=f"cf_{order_id}",
        )


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.approvals = []
        self.payments = []

    def joining_approved(self, joining, admission):
        if self.fail:
            raise RuntimeError("notification service down")
        self.approvals.append((joining.id, admission.admission_number))

    def payment_status_changed(self, transaction):
        if self.fail:
            raise RuntimeError("notification service down")
        self.payments.append((transaction.id, transaction.status))


@pytest.fixture
def storage(tmp_path):
    return Storage(f"sqlite:///{tmp_path / 'admissions.db'}")


@pytest.fixture
def fee_schedule():
    return StaticFeeSchedule([
        FeeEntry(course_id="btech", amount=Decimal("45000.00")),
        FeeEntry(course_id="btech", branch_id="cse", amount=Decimal("50000.00")),
        FeeEntry(course_id="mba", amount=Decimal("80000.00")),
    ])


@pytest.fixture
def leads():
    return InMemoryLeadDirectory({
        "lead-confirmed": "Confirmed",
        "lead-other": "Confirmed",
        "lead-interested": "Interested",
    })


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(storage, fee_schedule, gateway, notifier, leads):
    return AdmissionsService(
        storage=storage,
        fee_schedule=fee_schedule,
        gateway=gateway,
        notifier=notifier,
        lead_directory=leads,
    )


@pytest.fixture
def payload():
    return JoiningPayload(
        student_info=StudentInfo(name="Ravi Kumar", phone="9876543210"),
        course_info=CourseInfo(course_id="btech", branch_id="cse", course="B.Tech", branch="CSE"),
    )


@pytest.fixture
def submitted_joining(service, payload):
    joining = service.create_draft(payload, created_by="operator-1")
    return service.submit_for_approval(joining.id, submitted_by="operator-1")


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)
