"""
Portfolio Reporting Module

Dashboard statistics and arrears aging for the loan book. Reports are
read-only views computed from the LoanManager; nothing here mutates state.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from .currency import Money, Currency
from .config import get_config
from .loans import LoanManager, LoanStatus, ApplicationStatus
from .schedule import days_in_arrears, overdue_entries


AGING_BUCKETS = ('current', '1-30', '31-60', '61-90', '90+')


def aging_bucket(days_past_due: int) -> str:
    """Bucket name for a number of days in arrears"""
    if days_past_due > 90:
        return '90+'
    elif days_past_due > 60:
        return '61-90'
    elif days_past_due > 30:
        return '31-60'
    elif days_past_due > 0:
        return '1-30'
    return 'current'


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    as_of: date
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.metadata:
            self.metadata = {'row_count': len(self.data)}


class LoanPortfolioReporter:
    """
    Portfolio views over the loan book
    """

    def __init__(self, loan_manager: LoanManager):
        self.loan_manager = loan_manager

    def dashboard_stats(
        self,
        currency: Optional[Currency] = None,
        as_of: Optional[date] = None
    ) -> ReportResult:
        """
        Headline figures for the loan dashboard

        totalPortfolio is outstanding principal on open loans; monthlyRepayment
        is the sum of installments expected from active loans.
        """
        currency = currency or Currency.from_code(get_config().default_currency)
        as_of = as_of or date.today()
        zero = Money.zero(currency)

        loans = [
            loan for loan in self.loan_manager.list_loans()
            if loan.principal_amount.currency == currency
        ]
        open_loans = [loan for loan in loans if loan.is_open]
        active_loans = [loan for loan in loans if loan.status == LoanStatus.ACTIVE]

        total_portfolio = sum((loan.outstanding_principal for loan in open_loans), zero)
        monthly_repayment = sum((loan.monthly_installment for loan in active_loans), zero)
        overdue_loans = sum(
            1 for loan in open_loans
            if overdue_entries(self.loan_manager.get_schedule(loan.id), as_of)
        )
        pending_applications = len(self.loan_manager.list_applications(ApplicationStatus.PENDING))

        stats = {
            'totalLoans': len(loans),
            'activeLoans': len(active_loans),
            'totalPortfolio': total_portfolio.amount,
            'overdueLoans': overdue_loans,
            'pendingApplications': pending_applications,
            'monthlyRepayment': monthly_repayment.amount,
            'currency': currency.code
        }

        return ReportResult(
            report_id="dashboard_stats",
            generated_at=datetime.now(timezone.utc),
            as_of=as_of,
            data=[stats],
            totals=stats,
            metadata={'row_count': 1, 'currency': currency.code}
        )

    def arrears_aging(
        self,
        currency: Optional[Currency] = None,
        as_of: Optional[date] = None
    ) -> ReportResult:
        """
        Open loans bucketed by days in arrears

        Every bucket is present in the output even when empty. Balances are
        total outstanding (principal, interest and penalty).
        """
        currency = currency or Currency.from_code(get_config().default_currency)
        as_of = as_of or date.today()

        buckets = {name: {'loans': 0, 'balance': Decimal('0')} for name in AGING_BUCKETS}
        totals = {'total_loans': 0, 'total_balance': Decimal('0')}

        for loan in self.loan_manager.list_loans():
            if not loan.is_open or loan.principal_amount.currency != currency:
                continue
            schedule = self.loan_manager.get_schedule(loan.id)
            bucket = buckets[aging_bucket(days_in_arrears(schedule, as_of))]
            bucket['loans'] += 1
            bucket['balance'] += loan.total_outstanding.amount
            totals['total_loans'] += 1
            totals['total_balance'] += loan.total_outstanding.amount

        data = []
        for name, bucket in buckets.items():
            percentage = Decimal('0')
            if totals['total_balance'] > 0:
                percentage = (bucket['balance'] / totals['total_balance']) * 100
            data.append({
                'aging_bucket': name,
                'loan_count': bucket['loans'],
                'total_balance': bucket['balance'],
                'percentage': percentage,
                'currency': currency.code
            })

        return ReportResult(
            report_id="arrears_aging",
            generated_at=datetime.now(timezone.utc),
            as_of=as_of,
            data=data,
            totals=totals,
            metadata={'row_count': len(data), 'currency': currency.code}
        )
