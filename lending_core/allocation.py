"""
Repayment Allocation Module

Applies an incoming payment to a loan's schedule, oldest installment first.
Within an installment interest is settled before principal, then any
assessed penalty. A payment larger than everything owed is never dropped:
the excess comes back as an OverpaymentNotice for the caller to dispose of.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import List, Optional, TYPE_CHECKING
from enum import Enum

from .currency import Money, Currency
from .schedule import RepaymentScheduleEntry, InstallmentStatus
from .exceptions import ValidationError, ArithmeticInvariantViolation
from .logging_config import get_logger

if TYPE_CHECKING:
    from .loans import Loan


logger = get_logger("lending_core.allocation")


class OverpaymentPolicy(Enum):
    """What the caller wants done with a payment above the total owed"""
    REPORT = "report"   # Settle everything and report the excess
    REJECT = "reject"   # Refuse the payment before touching the schedule


@dataclass(frozen=True)
class OverpaymentNotice:
    """Not an error: the part of a payment that had nothing left to settle"""
    excess: Money

    @property
    def message(self) -> str:
        return f"Payment exceeds total outstanding by {self.excess.to_string()}"


@dataclass
class InstallmentAllocation:
    """What one payment contributed to one installment"""
    installment_number: int
    interest: Money
    principal: Money
    penalty: Money
    status: InstallmentStatus

    @property
    def total(self) -> Money:
        return self.interest + self.principal + self.penalty


@dataclass
class AllocationResult:
    """Aggregate outcome of allocating one payment"""
    payment_amount: Money
    interest_allocated: Money
    principal_allocated: Money
    penalty_allocated: Money
    allocations: List[InstallmentAllocation] = field(default_factory=list)
    overpayment: Optional[OverpaymentNotice] = None
    schedule_settled: bool = False

    @property
    def total_allocated(self) -> Money:
        return self.interest_allocated + self.principal_allocated + self.penalty_allocated


def total_outstanding(schedule: List[RepaymentScheduleEntry], currency: Currency) -> Money:
    total = Money.zero(currency)
    for entry in schedule:
        total = total + entry.amount_outstanding
    return total


class RepaymentAllocator:
    """
    Allocates payments across outstanding installments
    """

    @staticmethod
    def allocate(
        schedule: List[RepaymentScheduleEntry],
        payment_amount: Money,
        payment_date: date
    ) -> AllocationResult:
        """
        Allocate a payment, mutating the schedule entries it settles

        Args:
            schedule: Loan schedule, any order
            payment_amount: Positive amount received
            payment_date: Date the money was received

        Returns:
            AllocationResult with per-installment detail and any overpayment
        """
        if not payment_amount.is_positive():
            raise ValidationError("Payment amount must be positive")

        currency = payment_amount.currency
        zero = Money.zero(currency)
        remaining = payment_amount
        interest_total = principal_total = penalty_total = zero
        allocations = []

        open_entries = sorted(
            (e for e in schedule if e.status != InstallmentStatus.PAID),
            key=lambda e: e.installment_number
        )

        for entry in open_entries:
            # Keep walking while entries owe nothing so zero installments settle
            if not remaining.is_positive() and not entry.is_settled:
                break

            interest = remaining.min(entry.interest_outstanding)
            entry.interest_paid = entry.interest_paid + interest
            remaining = remaining - interest

            principal = remaining.min(entry.principal_outstanding)
            entry.principal_paid = entry.principal_paid + principal
            remaining = remaining - principal

            penalty = remaining.min(entry.penalty_outstanding)
            entry.penalty_paid = entry.penalty_paid + penalty
            remaining = remaining - penalty

            if entry.is_settled:
                entry.status = InstallmentStatus.PAID
                if entry.paid_date is None:
                    entry.paid_date = payment_date
            else:
                entry.status = InstallmentStatus.PARTIAL

            interest_total = interest_total + interest
            principal_total = principal_total + principal
            penalty_total = penalty_total + penalty
            allocations.append(InstallmentAllocation(
                installment_number=entry.installment_number,
                interest=interest,
                principal=principal,
                penalty=penalty,
                status=entry.status
            ))

        overpayment = OverpaymentNotice(excess=remaining) if remaining.is_positive() else None
        if overpayment:
            logger.info(overpayment.message)

        return AllocationResult(
            payment_amount=payment_amount,
            interest_allocated=interest_total,
            principal_allocated=principal_total,
            penalty_allocated=penalty_total,
            allocations=allocations,
            overpayment=overpayment,
            schedule_settled=all(e.status == InstallmentStatus.PAID for e in schedule)
        )

    @classmethod
    def apply_to_loan(
        cls,
        loan: 'Loan',
        schedule: List[RepaymentScheduleEntry],
        payment_amount: Money,
        payment_date: date
    ) -> AllocationResult:
        """
        Allocate a payment and move the loan's outstanding balances with it

        Raises:
            ArithmeticInvariantViolation: If balances stop reconciling with the schedule
        """
        result = cls.allocate(schedule, payment_amount, payment_date)

        loan.outstanding_principal = loan.outstanding_principal - result.principal_allocated
        loan.outstanding_interest = loan.outstanding_interest - result.interest_allocated
        loan.outstanding_penalty = loan.outstanding_penalty - result.penalty_allocated

        cls.check_balances(loan, schedule)
        return result

    @staticmethod
    def check_balances(loan: 'Loan', schedule: List[RepaymentScheduleEntry]) -> None:
        """outstanding + paid must equal the booked amount for principal and interest"""
        currency = loan.principal_amount.currency
        principal_paid = interest_paid = Money.zero(currency)
        for entry in schedule:
            principal_paid = principal_paid + entry.principal_paid
            interest_paid = interest_paid + entry.interest_paid

        problems = []
        if loan.outstanding_principal + principal_paid != loan.principal_amount:
            problems.append(
                f"outstanding principal {loan.outstanding_principal.to_string()} + paid "
                f"{principal_paid.to_string()} != {loan.principal_amount.to_string()}"
            )
        if loan.outstanding_interest + interest_paid != loan.total_interest:
            problems.append(
                f"outstanding interest {loan.outstanding_interest.to_string()} + paid "
                f"{interest_paid.to_string()} != {loan.total_interest.to_string()}"
            )
        if loan.outstanding_penalty.is_negative():
            problems.append("outstanding penalty is negative")

        if problems:
            message = f"Loan {loan.loan_number} balances do not reconcile: " + "; ".join(problems)
            logger.error(message)
            raise ArithmeticInvariantViolation(message)
