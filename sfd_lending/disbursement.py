"""
Disbursement Coordinator Module

Releases an approved loan: checks and debits the SFD's subsidy pool,
activates the loan, generates its installment schedule and records the
activity, all in one unit of work. If any step fails nothing is written, so
the loan stays ``approved`` and the pool untouched. The client notification
and low-balance alerts go out only after the unit of work commits.
"""

from decimal import Decimal
from typing import Optional, Tuple
import logging

from .storage import StorageInterface
from .loans import Loan, LoanRecordStore, LoanStatus
from .subsidies import SubsidyAllocationLedger
from .notifications import NotificationType
from .logging_config import log_action
from .exceptions import InvalidTransitionError


logger = logging.getLogger("sfd_lending.disbursement")


class DisbursementCoordinator:
    """Orchestrates approved loan -> subsidy debit -> active loan"""

    def __init__(
        self,
        storage: StorageInterface,
        loans: LoanRecordStore,
        ledger: SubsidyAllocationLedger,
        max_retries: int = 5
    ):
        self.storage = storage
        self.loans = loans
        self.ledger = ledger
        self.max_retries = max_retries

    def disburse(self, loan_id: str, disburser_id: str,
                 idempotency_key: Optional[str] = None) -> Loan:
        """
        Disburse an approved loan.

        Replaying a call with the idempotency key of the disbursement that
        already activated the loan returns the loan unchanged.

        Raises:
            NotFoundError: If the loan does not exist
            InvalidTransitionError: If the loan is not approved
            InsufficientSubsidyError: If the SFD's pool cannot cover the subsidy
            ConcurrentUpdateError: If pool version conflicts persist past the retry bound
        """

        def operation() -> Tuple[Loan, bool]:
            loan = self.loans.require(loan_id)

            if (loan.status == LoanStatus.ACTIVE and idempotency_key
                    and loan.disbursement_key == idempotency_key):
                return loan, False

            if loan.status != LoanStatus.APPROVED:
                raise InvalidTransitionError(
                    f"Cannot disburse loan {loan_id} in status {loan.status.value}",
                    {"loan_id": loan_id, "status": loan.status.value}
                )

            if loan.subsidy_amount > Decimal('0'):
                self.ledger.reserve(loan.sfd_id, loan.subsidy_amount, loan.id, disburser_id)

            self.loans.mark_disbursed(loan, disburser_id, idempotency_key)
            return loan, True

        try:
            loan, applied = self.storage.run_atomic(operation, self.max_retries)
        except Exception as e:
            logger.warning(f"Disbursement of loan {loan_id} rolled back: {e}")
            raise

        if not applied:
            logger.info(f"Disbursement of loan {loan_id} replayed with key {idempotency_key}")
            return loan

        log_action(
            logger, "info", f"Loan {loan_id} disbursed",
            user_id=disburser_id, action="loan_disbursed", resource=loan_id,
            correlation_id=idempotency_key,
            extra={"amount": str(loan.amount), "subsidy_amount": str(loan.subsidy_amount),
                   "sfd_id": loan.sfd_id}
        )

        self.loans.notify(loan, NotificationType.LOAN_DISBURSED)
        if loan.subsidy_amount > Decimal('0'):
            try:
                self.ledger.check_alerts(loan.sfd_id)
            except Exception:
                logger.exception(f"Low-balance alert check failed for SFD {loan.sfd_id}")
        return loan
