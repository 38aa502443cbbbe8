"""
Test suite for the subsidy allocation ledger

Pool credits and reservations, the used <= allocated invariant under
concurrent reservations, version-conflict retries and low-balance alerts.
"""

import pytest
import threading
from decimal import Decimal

from sfd_lending.storage import InMemoryStorage
from sfd_lending.audit import ActivityLog, ActivityType
from sfd_lending.subsidies import (
    AllocationStatus, SubsidyAllocationLedger, allocation_id_for
)
from sfd_lending.notifications import NotificationDispatcher, NotificationType
from sfd_lending.exceptions import (
    ConcurrentUpdateError, InsufficientSubsidyError, InvalidAmountError,
    InvalidTransitionError, NotFoundError, StaleRecordError, ValidationError
)


class FlakyStorage(InMemoryStorage):
    """Fails the first ``failures`` conditional writes with a version conflict"""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def compare_and_save(self, table, record_id, data, expected_version):
        if table == "subsidy_allocations":
            self.attempts += 1
            if self.attempts <= self.failures:
                raise StaleRecordError("simulated conflict", {"record_id": record_id})
        super().compare_and_save(table, record_id, data, expected_version)


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


class TestCredit:
    """Funding pools"""

    def test_first_credit_creates_pool(self, ledger, activity_log):
        allocation = ledger.credit("sfd-1", "100000", "meref-1")

        assert allocation.id == allocation_id_for("sfd-1")
        assert allocation.amount == Decimal('100000')
        assert allocation.used_amount == Decimal('0')
        assert allocation.status == AllocationStatus.ACTIVE
        assert allocation.version == 1
        entries = activity_log.entries_for_subject(allocation.id)
        assert entries[0].activity_type == ActivityType.SUBSIDY_CREDITED

    def test_credit_accumulates(self, ledger):
        ledger.credit("sfd-1", "100000")
        allocation = ledger.credit("sfd-1", "50000")

        assert allocation.amount == Decimal('150000')
        assert allocation.version == 2
        assert ledger.get_allocation("sfd-1").amount == Decimal('150000')

    def test_credit_reactivates_depleted_pool(self, ledger):
        ledger.credit("sfd-1", "10000")
        ledger.reserve("sfd-1", "10000", "loan-1")
        assert ledger.get_allocation("sfd-1").status == AllocationStatus.DEPLETED

        allocation = ledger.credit("sfd-1", "5000")

        assert allocation.status == AllocationStatus.ACTIVE
        assert allocation.remaining_amount == Decimal('5000')

    @pytest.mark.parametrize("amount", ["0", "-100", "10.5"])
    def test_invalid_credit_amount(self, ledger, amount):
        with pytest.raises(InvalidAmountError):
            ledger.credit("sfd-1", amount)

    def test_credit_to_revoked_pool(self, ledger, storage):
        allocation = ledger.credit("sfd-1", "10000")
        row = storage.load("subsidy_allocations", allocation.id)
        row["status"] = AllocationStatus.REVOKED.value
        storage.save("subsidy_allocations", allocation.id, row)

        with pytest.raises(InvalidTransitionError, match="revoked"):
            ledger.credit("sfd-1", "5000")


class TestReserve:
    """Drawing on pools"""

    def test_reserve_debits_pool(self, ledger):
        ledger.credit("sfd-1", "100000")
        usage = ledger.reserve("sfd-1", "30000", "loan-1", "cashier-1")

        assert usage.id == "loan-1"
        assert usage.amount == Decimal('30000')
        allocation = ledger.get_allocation("sfd-1")
        assert allocation.used_amount == Decimal('30000')
        assert allocation.remaining_amount == Decimal('70000')
        assert allocation.usage_percent == Decimal('30.00')

    def test_exact_remaining_depletes(self, ledger):
        ledger.credit("sfd-1", "100000")
        ledger.reserve("sfd-1", "100000", "loan-1")

        allocation = ledger.get_allocation("sfd-1")
        assert allocation.status == AllocationStatus.DEPLETED
        assert allocation.remaining_amount == Decimal('0')

    def test_over_reservation_rejected(self, ledger, activity_log):
        ledger.credit("sfd-1", "30000")
        count = activity_log.count_entries()

        with pytest.raises(InsufficientSubsidyError) as exc_info:
            ledger.reserve("sfd-1", "50000", "loan-1")

        assert exc_info.value.details["remaining"] == "30000"
        assert ledger.get_allocation("sfd-1").used_amount == Decimal('0')
        assert ledger.list_usage("sfd-1") == []
        assert activity_log.count_entries() == count

    def test_reserve_without_pool(self, ledger):
        with pytest.raises(InsufficientSubsidyError, match="no subsidy allocation"):
            ledger.reserve("sfd-9", "1000", "loan-1")

    def test_reserve_from_revoked_pool(self, ledger, storage):
        allocation = ledger.credit("sfd-1", "10000")
        row = storage.load("subsidy_allocations", allocation.id)
        row["status"] = AllocationStatus.REVOKED.value
        storage.save("subsidy_allocations", allocation.id, row)

        with pytest.raises(InsufficientSubsidyError, match="revoked"):
            ledger.reserve("sfd-1", "1000", "loan-1")

    def test_reserve_is_idempotent_per_loan(self, ledger):
        """A loan draws from the pool at most once"""
        ledger.credit("sfd-1", "100000")
        first = ledger.reserve("sfd-1", "30000", "loan-1")
        second = ledger.reserve("sfd-1", "30000", "loan-1")

        assert first == second
        assert ledger.get_allocation("sfd-1").used_amount == Decimal('30000')
        assert len(ledger.list_usage("sfd-1")) == 1

    def test_reserve_requires_loan(self, ledger):
        ledger.credit("sfd-1", "100000")

        with pytest.raises(ValidationError):
            ledger.reserve("sfd-1", "1000", "")

    def test_rolled_back_reservation(self, ledger, storage):
        """A reservation inside a failed unit of work leaves the pool untouched"""
        ledger.credit("sfd-1", "100000")

        with pytest.raises(RuntimeError):
            with storage.atomic():
                ledger.reserve("sfd-1", "40000", "loan-1")
                raise RuntimeError("disbursement failed")

        assert ledger.get_allocation("sfd-1").used_amount == Decimal('0')
        assert ledger.list_usage("sfd-1") == []


class TestConcurrency:
    """Pool invariant under parallel writers"""

    def test_parallel_reservations_never_overdraw(self, ledger):
        ledger.credit("sfd-1", "100000")
        successes = []
        failures = []

        def worker(n):
            try:
                ledger.reserve("sfd-1", "10000", f"loan-{n}")
                successes.append(n)
            except InsufficientSubsidyError:
                failures.append(n)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        allocation = ledger.get_allocation("sfd-1")
        assert len(successes) == 10
        assert len(failures) == 10
        assert allocation.used_amount == Decimal('100000')
        assert allocation.status == AllocationStatus.DEPLETED
        assert len(ledger.list_usage("sfd-1")) == 10

    def test_retries_version_conflicts(self):
        storage = FlakyStorage(failures=2)
        ledger = SubsidyAllocationLedger(storage, ActivityLog(storage), max_retries=5)
        storage.failures = 0
        ledger.credit("sfd-1", "100000")

        storage.attempts = 0
        storage.failures = 2
        ledger.reserve("sfd-1", "10000", "loan-1")

        assert storage.attempts == 3
        assert ledger.get_allocation("sfd-1").used_amount == Decimal('10000')
        assert ledger.get_allocation("sfd-1").version == 2

    def test_gives_up_after_retry_bound(self):
        storage = FlakyStorage(failures=0)
        ledger = SubsidyAllocationLedger(storage, ActivityLog(storage), max_retries=3)
        ledger.credit("sfd-1", "100000")

        storage.attempts = 0
        storage.failures = 10
        with pytest.raises(ConcurrentUpdateError):
            ledger.reserve("sfd-1", "10000", "loan-1")

        assert storage.attempts == 3
        assert ledger.get_allocation("sfd-1").used_amount == Decimal('0')
        assert ledger.list_usage("sfd-1") == []


class TestQueries:
    """Balances and usage"""

    def test_balance(self, ledger):
        ledger.credit("sfd-1", "200000")
        ledger.reserve("sfd-1", "50000", "loan-1")

        balance = ledger.get_balance("sfd-1")

        assert balance["allocated"] == Decimal('200000')
        assert balance["used"] == Decimal('50000')
        assert balance["remaining"] == Decimal('150000')
        assert balance["usage_percent"] == Decimal('25.00')
        assert balance["status"] == "active"

    def test_balance_without_pool(self, ledger):
        balance = ledger.get_balance("sfd-9")

        assert balance["allocated"] == Decimal('0')
        assert balance["status"] is None

    def test_require_allocation(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.require_allocation("sfd-9")

    def test_list_allocations(self, ledger):
        ledger.credit("sfd-1", "1000")
        ledger.credit("sfd-2", "2000")

        assert {a.sfd_id for a in ledger.list_allocations()} == {"sfd-1", "sfd-2"}


class TestAlerts:
    """Low-balance thresholds"""

    def test_threshold_crossing_notifies_once(self, ledger, notifier):
        ledger.credit("sfd-1", "100000")
        ledger.add_alert_threshold("Low", "25000", sfd_id="sfd-1")

        ledger.reserve("sfd-1", "70000", "loan-1")
        assert notifier.get_notifications(recipient_id="sfd-1") == []

        ledger.reserve("sfd-1", "10000", "loan-2")
        ledger.reserve("sfd-1", "5000", "loan-3")

        alerts = notifier.get_notifications(recipient_id="sfd-1")
        assert len(alerts) == 1
        assert alerts[0].notification_type == NotificationType.SUBSIDY_LOW_BALANCE
        assert "Low" in alerts[0].subject

    def test_global_threshold_applies_to_every_sfd(self, ledger):
        ledger.add_alert_threshold("Global", "5000")
        ledger.add_alert_threshold("SFD 2 only", "9000", sfd_id="sfd-2")
        ledger.credit("sfd-1", "10000")
        ledger.reserve("sfd-1", "6000", "loan-1")

        triggered = ledger.check_alerts("sfd-1")

        assert [t.threshold_name for t in triggered] == ["Global"]
        assert len(ledger.list_alert_thresholds("sfd-2")) == 2

    def test_threshold_validation(self, ledger):
        with pytest.raises(ValidationError):
            ledger.add_alert_threshold("", "1000")
        with pytest.raises(ValidationError):
            ledger.add_alert_threshold("Negative", "-1")

    def test_alert_registration_is_logged(self, ledger, activity_log):
        threshold = ledger.add_alert_threshold("Low", "1000", created_by="meref-1")

        entry = activity_log.entries_for_subject(threshold.id)[0]
        assert entry.activity_type == ActivityType.ALERT_THRESHOLD_CREATED
