"""
Unit Tests for Admission Conversion and Numbering

Tests cover:
1. Approval creates exactly one admission with a snapshot of the joining
2. Admission numbers are unique and strictly increasing
3. Concurrent approvals (same joining and different joinings)
4. All-or-nothing rollback when number allocation fails
5. Withdrawal
"""

import threading
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from admissions.exceptions import InvalidState, NotFound, PersistenceError
from admissions.models import AdmissionStatus, JoiningStatus


def _submitted(service, payload, count):
    joinings = []
    for _ in range(count):
        joining = service.create_draft(payload)
        joinings.append(service.submit_for_approval(joining.id))
    return joinings


class TestApproval:
    """Tests for the approval flow."""

    def test_first_admission_gets_number_one(self, service, submitted_joining, notifier):
        result = service.approve(submitted_joining.id, "reviewer-1")

        assert result.created is True
        assert result.admission.admission_number == 1
        assert result.admission.status == AdmissionStatus.ACTIVE
        assert result.admission.joining_id == submitted_joining.id
        assert result.admission.created_by == "reviewer-1"

        # Joining moved to approved with its audit fields
        assert result.joining.status == JoiningStatus.APPROVED
        assert result.joining.approved_by == "reviewer-1"
        assert result.joining.approved_at is not None

        assert notifier.approvals == [(submitted_joining.id, 1)]

    def test_admission_snapshots_the_payload(self, service, submitted_joining):
        result = service.approve(submitted_joining.id, "reviewer-1")

        assert result.admission.payload == submitted_joining.payload
        assert service.get_admission(result.admission.id).payload.student_info.name == "Ravi Kumar"
        assert service.get_admission_by_joining(submitted_joining.id).id == result.admission.id

    def test_cannot_approve_draft(self, service, payload):
        joining = service.create_draft(payload)

        with pytest.raises(InvalidState) as exc_info:
            service.approve(joining.id, "reviewer-1")

        assert "draft" in exc_info.value.message
        with pytest.raises(NotFound):
            service.get_admission_by_joining(joining.id)

    def test_approve_unknown_joining(self, service):
        with pytest.raises(NotFound):
            service.approve(uuid4(), "reviewer-1")

    def test_second_approve_returns_existing_admission(self, service, submitted_joining, notifier):
        """Test a repeated approve is answered with the admission already created."""
        first = service.approve(submitted_joining.id, "reviewer-1")
        second = service.approve(submitted_joining.id, "reviewer-2")

        assert second.created is False
        assert second.admission.id == first.admission.id
        assert second.admission.admission_number == first.admission.admission_number
        assert "already approved" in second.message.lower()
        # The original approver is kept
        assert second.joining.approved_by == "reviewer-1"
        assert len(notifier.approvals) == 1

    def test_numbers_strictly_increase_in_creation_order(self, service, payload):
        joinings = _submitted(service, payload, 4)

        numbers = [service.approve(j.id, "reviewer-1").admission.admission_number for j in joinings]

        assert numbers == [1, 2, 3, 4]
        listed = service.list_admissions()
        assert [a.admission_number for a in listed.admissions] == [1, 2, 3, 4]
        assert listed.total_count == 4

    def test_rejected_then_approved_gets_next_number(self, service, payload):
        first, second = _submitted(service, payload, 2)
        service.reject(first.id, "Photo missing")

        assert service.approve(second.id, "reviewer-1").admission.admission_number == 1
        service.submit_for_approval(first.id)
        assert service.approve(first.id, "reviewer-1").admission.admission_number == 2

    def test_notifier_failure_does_not_fail_approval(self, storage, fee_schedule, failing_notifier, payload):
        from admissions.service import AdmissionsService

        service = AdmissionsService(storage=storage, fee_schedule=fee_schedule, notifier=failing_notifier)
        joining = service.create_draft(payload)
        service.submit_for_approval(joining.id)

        result = service.approve(joining.id, "reviewer-1")

        assert result.created is True
        assert service.get_joining(joining.id).status == JoiningStatus.APPROVED


class TestConcurrentApproval:
    """Tests for approvals racing each other."""

    def test_same_joining_yields_one_admission(self, service, submitted_joining):
        barrier = threading.Barrier(2)
        results, errors = [], []

        def approve(approver):
            barrier.wait()
            try:
                results.append(service.approve(submitted_joining.id, approver))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=approve, args=(f"reviewer-{i}",)) for i in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(results) == 2
        assert sorted(r.created for r in results) == [False, True]
        assert results[0].admission.admission_number == results[1].admission.admission_number
        assert results[0].admission.id == results[1].admission.id
        assert service.list_admissions().total_count == 1

    def test_different_joinings_never_share_a_number(self, service, payload):
        joinings = _submitted(service, payload, 6)
        barrier = threading.Barrier(len(joinings))
        results, errors = [], []
        lock = threading.Lock()

        def approve(joining_id):
            barrier.wait()
            try:
                result = service.approve(joining_id, "reviewer-1")
                with lock:
                    results.append(result)
            except Exception as e:
                with lock:
                    errors.append(e)

        threads = [threading.Thread(target=approve, args=(j.id,)) for j in joinings]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        numbers = sorted(r.admission.admission_number for r in results)
        assert numbers == [1, 2, 3, 4, 5, 6]

        # Creation order matches numbering order
        admissions = service.list_admissions().admissions
        created = [a.created_at for a in admissions]
        assert created == sorted(created)


class TestAtomicApproval:
    """Tests that a failed allocation leaves nothing behind."""

    def test_allocation_failure_rolls_back_everything(self, service, storage, submitted_joining, monkeypatch):
        def unavailable(conn, name="admission_number"):
            raise OperationalError("UPDATE counters", {}, Exception("database is locked"))

        monkeypatch.setattr(storage, "next_counter_value", unavailable)

        with pytest.raises(PersistenceError):
            service.approve(submitted_joining.id, "reviewer-1")

        joining = service.get_joining(submitted_joining.id)
        assert joining.status == JoiningStatus.PENDING_APPROVAL
        assert joining.approved_at is None
        assert joining.approved_by is None
        with pytest.raises(NotFound):
            service.get_admission_by_joining(submitted_joining.id)
        with storage.connection() as conn:
            assert storage.current_counter_value(conn) == 0

    def test_retry_after_failure_succeeds(self, service, storage, submitted_joining, monkeypatch):
        def unavailable(conn, name="admission_number"):
            raise OperationalError("UPDATE counters", {}, Exception("disk I/O error"))

        monkeypatch.setattr(storage, "next_counter_value", unavailable)
        with pytest.raises(PersistenceError):
            service.approve(submitted_joining.id, "reviewer-1")

        monkeypatch.undo()
        result = service.approve(submitted_joining.id, "reviewer-1")

        assert result.created is True
        assert result.admission.admission_number == 1


class TestWithdrawal:
    """Tests for withdrawing an admission."""

    def test_withdraw_active_admission(self, service, submitted_joining):
        admission = service.approve(submitted_joining.id, "reviewer-1").admission

        withdrawn = service.withdraw_admission(admission.id, "Joined another college")

        assert withdrawn.status == AdmissionStatus.WITHDRAWN
        assert withdrawn.withdrawal_reason == "Joined another college"
        assert withdrawn.withdrawn_at is not None
        assert withdrawn.admission_number == admission.admission_number

    def test_withdraw_is_terminal(self, service, submitted_joining):
        admission = service.approve(submitted_joining.id, "reviewer-1").admission
        service.withdraw_admission(admission.id, "First")

        with pytest.raises(InvalidState):
            service.withdraw_admission(admission.id, "Second")

    def test_withdraw_unknown_admission(self, service):
        with pytest.raises(NotFound):
            service.withdraw_admission(uuid4(), "Nope")

    def test_list_admissions_by_status(self, service, payload):
        first, second = _submitted(service, payload, 2)
        kept = service.approve(first.id, "reviewer-1").admission
        gone = service.approve(second.id, "reviewer-1").admission
        service.withdraw_admission(gone.id, "Dropped out")

        active = service.list_admissions(AdmissionStatus.ACTIVE)

        assert [a.id for a in active.admissions] == [kept.id]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
