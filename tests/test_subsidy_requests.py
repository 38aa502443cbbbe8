"""
Test suite for the subsidy request workflow
"""

import pytest
from decimal import Decimal

from sfd_lending.storage import InMemoryStorage
from sfd_lending.audit import ActivityLog, ActivityType
from sfd_lending.subsidies import SubsidyAllocationLedger
from sfd_lending.subsidy_requests import (
    Priority, RequestStatus, SubsidyRequestInput, SubsidyRequestWorkflow
)
from sfd_lending.notifications import NotificationDispatcher, NotificationType
from sfd_lending.exceptions import (
    InvalidAmountError, InvalidTransitionError, NotFoundError, ValidationError
)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def activity_log(storage):
    return ActivityLog(storage)


@pytest.fixture
def notifier(storage):
    return NotificationDispatcher(storage)


@pytest.fixture
def ledger(storage, activity_log, notifier):
    return SubsidyAllocationLedger(storage, activity_log, notifier)


@pytest.fixture
def workflow(storage, activity_log, ledger, notifier):
    return SubsidyRequestWorkflow(storage, activity_log, ledger, notifier)


def request_input(**overrides):
    data = dict(sfd_id="sfd-1", amount="5000000", purpose="Women's agricultural credit",
                justification="Harvest season", region="Dakar", requested_by="sfd-admin")
    data.update(overrides)
    return SubsidyRequestInput(**data)


class TestSubmit:
    """Submitting requests"""

    def test_submit_pending(self, workflow, activity_log):
        request = workflow.submit(request_input(priority="high"))

        assert request.status == RequestStatus.PENDING
        assert request.amount == Decimal('5000000')
        assert request.priority == Priority.HIGH
        assert workflow.get(request.id) == request
        assert activity_log.entries_for_subject(request.id)[0].activity_type == ActivityType.REQUEST_CREATED

    @pytest.mark.parametrize("amount", ["0", "-1000"])
    def test_non_positive_amount(self, workflow, amount):
        with pytest.raises(InvalidAmountError):
            workflow.submit(request_input(amount=amount))

    def test_purpose_required(self, workflow):
        with pytest.raises(ValidationError, match="purpose"):
            workflow.submit(request_input(purpose=" "))

    def test_unknown_priority(self, workflow):
        with pytest.raises(ValidationError, match="priority"):
            workflow.submit(request_input(priority="critical"))


class TestDecide:
    """Approval and rejection"""

    def test_approve_credits_pool(self, workflow, ledger, activity_log):
        request = workflow.submit(request_input())
        decided = workflow.decide(request.id, "meref-1", "approved", "Priority region")

        assert decided.status == RequestStatus.APPROVED
        assert decided.approved_amount == Decimal('5000000')
        assert decided.reviewed_by == "meref-1"
        assert decided.allocation_id == ledger.get_allocation("sfd-1").id
        assert ledger.get_allocation("sfd-1").amount == Decimal('5000000')
        assert ledger.get_allocation("sfd-1").source_request_id == request.id

        types = [e.activity_type for e in activity_log.all_entries()]
        assert ActivityType.SUBSIDY_CREDITED in types
        assert types[-1] == ActivityType.REQUEST_APPROVED

    def test_approve_with_custom_amount(self, workflow, ledger):
        request = workflow.submit(request_input(amount="1000000"))
        decided = workflow.decide(request.id, "meref-1", RequestStatus.APPROVED,
                                  approved_amount="1500000")

        assert decided.approved_amount == Decimal('1500000')
        assert ledger.get_allocation("sfd-1").amount == Decimal('1500000')

    @pytest.mark.parametrize("approved_amount", ["0", "1500001"])
    def test_approved_amount_bounds(self, workflow, ledger, approved_amount):
        request = workflow.submit(request_input(amount="1000000"))

        with pytest.raises(ValidationError, match="Approved amount"):
            workflow.decide(request.id, "meref-1", "approved", approved_amount=approved_amount)

        assert workflow.get(request.id).status == RequestStatus.PENDING
        assert ledger.get_allocation("sfd-1") is None

    def test_second_approval_adds_to_pool(self, workflow, ledger):
        first = workflow.submit(request_input(amount="1000000"))
        second = workflow.submit(request_input(amount="2000000"))
        workflow.decide(first.id, "meref-1", "approved")
        workflow.decide(second.id, "meref-1", "approved")

        assert ledger.get_allocation("sfd-1").amount == Decimal('3000000')

    def test_reject_requires_comments(self, workflow):
        request = workflow.submit(request_input())

        with pytest.raises(ValidationError, match="Comments"):
            workflow.decide(request.id, "meref-1", "rejected")

    def test_reject(self, workflow, ledger):
        request = workflow.submit(request_input())
        decided = workflow.decide(request.id, "meref-1", "rejected", "Budget exhausted")

        assert decided.status == RequestStatus.REJECTED
        assert decided.decision_comments == "Budget exhausted"
        assert decided.approved_amount is None
        assert ledger.get_allocation("sfd-1") is None

    def test_decision_is_final(self, workflow, ledger):
        """A decided request cannot be decided again"""
        request = workflow.submit(request_input())
        workflow.decide(request.id, "meref-1", "approved")

        with pytest.raises(InvalidTransitionError):
            workflow.decide(request.id, "meref-2", "approved")
        with pytest.raises(InvalidTransitionError):
            workflow.decide(request.id, "meref-2", "rejected", "Too late")

        assert ledger.get_allocation("sfd-1").amount == Decimal('5000000')

    def test_decision_must_be_terminal_status(self, workflow):
        request = workflow.submit(request_input())

        with pytest.raises(ValidationError):
            workflow.decide(request.id, "meref-1", "under_review")
        with pytest.raises(ValidationError):
            workflow.decide(request.id, "meref-1", "bogus")

    def test_decision_notifies_sfd(self, workflow, notifier):
        request = workflow.submit(request_input())
        workflow.decide(request.id, "meref-1", "approved")

        notifications = notifier.get_notifications(recipient_id="sfd-1")
        assert len(notifications) == 1
        assert notifications[0].notification_type == NotificationType.SUBSIDY_REQUEST_DECIDED
        assert notifications[0].subject_status == "approved"

    def test_unknown_request(self, workflow):
        with pytest.raises(NotFoundError):
            workflow.decide("missing", "meref-1", "approved")


class TestReview:
    """Review step and queue"""

    def test_under_review_then_decide(self, workflow, activity_log):
        request = workflow.submit(request_input())
        reviewed = workflow.mark_under_review(request.id, "meref-1")

        assert reviewed.status == RequestStatus.UNDER_REVIEW
        assert activity_log.entries_for_subject(request.id)[-1].activity_type == ActivityType.REQUEST_UNDER_REVIEW

        decided = workflow.decide(request.id, "meref-1", "approved")
        assert decided.status == RequestStatus.APPROVED

    def test_review_only_from_pending(self, workflow):
        request = workflow.submit(request_input())
        workflow.mark_under_review(request.id, "meref-1")

        with pytest.raises(InvalidTransitionError):
            workflow.mark_under_review(request.id, "meref-1")

    def test_queue_orders_by_priority_then_age(self, workflow):
        low = workflow.submit(request_input(priority="low"))
        urgent = workflow.submit(request_input(priority="urgent"))
        normal = workflow.submit(request_input())
        decided = workflow.submit(request_input(priority="urgent"))
        workflow.decide(decided.id, "meref-1", "rejected", "Duplicate")

        queue = workflow.list_queue()

        assert [r.id for r in queue] == [urgent.id, normal.id, low.id]

    def test_queue_by_region(self, workflow):
        workflow.submit(request_input(region="Thies"))
        dakar = workflow.submit(request_input(region="Dakar"))

        assert [r.id for r in workflow.list_queue(region="Dakar")] == [dakar.id]

    def test_list_for_sfd(self, workflow):
        mine = workflow.submit(request_input())
        workflow.submit(request_input(sfd_id="sfd-2"))

        assert [r.id for r in workflow.list_for_sfd("sfd-1")] == [mine.id]
