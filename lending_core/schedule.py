"""
Repayment Schedule Module

Expands a LoanCostBreakdown into the ordered installment table, derives
installment status from what has been paid and when it fell due, and
computes arrears figures.
"""

from datetime import date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import calendar

from .currency import Money, Currency
from .calculator import LoanCostBreakdown, get_strategy
from .exceptions import ValidationError, ArithmeticInvariantViolation
from .logging_config import get_logger


logger = get_logger("lending_core.schedule")


class InstallmentStatus(Enum):
    """Installment status"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


@dataclass
class RepaymentScheduleEntry:
    """Single installment of a repayment schedule"""
    installment_number: int
    due_date: date
    principal_due: Money
    interest_due: Money
    total_due: Money
    principal_paid: Money = None
    interest_paid: Money = None
    penalty_amount: Money = None
    penalty_paid: Money = None
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[date] = None
    loan_id: Optional[str] = None

    def __post_init__(self):
        zero = Money.zero(self.total_due.currency)
        for name in ('principal_paid', 'interest_paid', 'penalty_amount', 'penalty_paid'):
            if getattr(self, name) is None:
                setattr(self, name, zero)

        if self.principal_due + self.interest_due != self.total_due:
            raise ArithmeticInvariantViolation(
                f"Installment {self.installment_number}: total {self.total_due.to_string()} does not equal "
                f"principal {self.principal_due.to_string()} + interest {self.interest_due.to_string()}"
            )

    @property
    def currency(self) -> Currency:
        return self.total_due.currency

    @property
    def interest_outstanding(self) -> Money:
        return self.interest_due - self.interest_paid

    @property
    def principal_outstanding(self) -> Money:
        return self.principal_due - self.principal_paid

    @property
    def penalty_outstanding(self) -> Money:
        return self.penalty_amount - self.penalty_paid

    @property
    def amount_outstanding(self) -> Money:
        """Installment amount still owed, penalty included"""
        return self.interest_outstanding + self.principal_outstanding + self.penalty_outstanding

    @property
    def is_settled(self) -> bool:
        return self.amount_outstanding.is_zero()

    @property
    def is_open(self) -> bool:
        return self.status != InstallmentStatus.PAID

    def derive_status(self, as_of: date) -> InstallmentStatus:
        """Status implied by the paid amounts and the due date"""
        if self.is_settled:
            return InstallmentStatus.PAID
        if self.due_date < as_of:
            return InstallmentStatus.OVERDUE
        paid = self.principal_paid + self.interest_paid + self.penalty_paid
        if paid.is_positive():
            return InstallmentStatus.PARTIAL
        return InstallmentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'principal_due': self.principal_due.to_dict(),
            'interest_due': self.interest_due.to_dict(),
            'total_due': self.total_due.to_dict(),
            'principal_paid': self.principal_paid.to_dict(),
            'interest_paid': self.interest_paid.to_dict(),
            'penalty_amount': self.penalty_amount.to_dict(),
            'penalty_paid': self.penalty_paid.to_dict(),
            'status': self.status.value,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RepaymentScheduleEntry':
        return cls(
            loan_id=data.get('loan_id'),
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_due=Money.from_dict(data['principal_due']),
            interest_due=Money.from_dict(data['interest_due']),
            total_due=Money.from_dict(data['total_due']),
            principal_paid=Money.from_dict(data['principal_paid']),
            interest_paid=Money.from_dict(data['interest_paid']),
            penalty_amount=Money.from_dict(data['penalty_amount']),
            penalty_paid=Money.from_dict(data['penalty_paid']),
            status=InstallmentStatus(data['status']),
            paid_date=date.fromisoformat(data['paid_date']) if data.get('paid_date') else None
        )


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the end of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class ScheduleGenerator:
    """
    Builds the amortization table for a loan
    """

    @staticmethod
    def generate(
        breakdown: LoanCostBreakdown,
        start_date: date,
        loan_id: Optional[str] = None
    ) -> List[RepaymentScheduleEntry]:
        """
        Generate one installment per month of tenure

        The first installment falls due one month after ``start_date``; due
        dates are anchored on the start day so month-end clamping never
        accumulates.

        Raises:
            ValidationError: If tenure is zero
            ArithmeticInvariantViolation: If the table does not reconcile
        """
        if breakdown.tenure_months <= 0:
            raise ValidationError("Cannot generate a schedule for a zero-month tenure")

        strategy = get_strategy(breakdown.interest_type)
        parts = strategy.split(breakdown.principal, breakdown.tenure_months, breakdown.interest_rate)

        schedule = []
        for number, (principal_due, interest_due) in enumerate(parts, start=1):
            schedule.append(RepaymentScheduleEntry(
                installment_number=number,
                due_date=add_months(start_date, number),
                principal_due=principal_due,
                interest_due=interest_due,
                total_due=principal_due + interest_due,
                loan_id=loan_id
            ))

        ScheduleGenerator.reconcile(schedule, breakdown)
        return schedule

    @staticmethod
    def reconcile(schedule: List[RepaymentScheduleEntry], breakdown: LoanCostBreakdown) -> None:
        """Raise ArithmeticInvariantViolation unless the table sums to the breakdown"""
        totals = schedule_totals(schedule, breakdown.principal.currency)
        problems = []
        if len(schedule) != breakdown.tenure_months:
            problems.append(f"{len(schedule)} installments for a {breakdown.tenure_months}-month tenure")
        if totals['principal_due'] != breakdown.principal:
            problems.append(f"principal {totals['principal_due'].to_string()} != {breakdown.principal.to_string()}")
        if totals['interest_due'] != breakdown.total_interest:
            problems.append(f"interest {totals['interest_due'].to_string()} != {breakdown.total_interest.to_string()}")
        if totals['total_due'] != breakdown.total_payable:
            problems.append(f"total {totals['total_due'].to_string()} != {breakdown.total_payable.to_string()}")
        if any(e.principal_due.is_negative() or e.interest_due.is_negative() for e in schedule):
            problems.append("negative installment component")

        if problems:
            message = "Schedule does not reconcile: " + "; ".join(problems)
            logger.error(message)
            raise ArithmeticInvariantViolation(message)


def schedule_totals(schedule: List[RepaymentScheduleEntry], currency: Currency) -> Dict[str, Money]:
    """Column sums of a schedule"""
    totals = {name: Money.zero(currency) for name in (
        'principal_due', 'interest_due', 'total_due', 'principal_paid',
        'interest_paid', 'penalty_amount', 'penalty_paid'
    )}
    for entry in schedule:
        for name in totals:
            totals[name] = totals[name] + getattr(entry, name)
    return totals


def refresh_statuses(schedule: List[RepaymentScheduleEntry], as_of: date) -> List[RepaymentScheduleEntry]:
    """Re-derive every open installment's status as of a date; returns the changed entries"""
    changed = []
    for entry in schedule:
        if not entry.is_open:
            continue
        status = entry.derive_status(as_of)
        if status != entry.status:
            entry.status = status
            changed.append(entry)
    return changed


def overdue_entries(schedule: List[RepaymentScheduleEntry], as_of: date) -> List[RepaymentScheduleEntry]:
    """Unsettled installments whose due date is before ``as_of``"""
    return [e for e in schedule if e.due_date < as_of and not e.is_settled]


def days_in_arrears(schedule: List[RepaymentScheduleEntry], as_of: date) -> int:
    """Days since the oldest unpaid due date; 0 when the loan is current"""
    overdue = overdue_entries(schedule, as_of)
    if not overdue:
        return 0
    oldest = min(e.due_date for e in overdue)
    return (as_of - oldest).days


def arrears_amount(schedule: List[RepaymentScheduleEntry], as_of: date, currency: Currency) -> Money:
    """Total still owed on installments already past due"""
    total = Money.zero(currency)
    for entry in overdue_entries(schedule, as_of):
        total = total + entry.amount_outstanding
    return total
