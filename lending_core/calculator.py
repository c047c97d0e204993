"""
Loan Calculator Module

Pure computation of loan cost terms: interest, processing fee, total payable
and the monthly installment, plus the per-period principal/interest split
each interest method implies. Every screen or service that needs these
figures delegates here so that the numbers cannot drift between call sites.

Rounding: money is rounded half-up to the currency precision. When a total is
spread over installments the regular share is rounded and the final
installment absorbs the residual, so the parts always sum to the total.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from dataclasses import dataclass
from typing import List, Tuple

from .currency import Money, round_money
from .products import InterestType, LoanProduct
from .exceptions import ValidationError


MONTHS_PER_YEAR = Decimal('12')
HUNDRED = Decimal('100')


@dataclass(frozen=True)
class LoanCostBreakdown:
    """Cost terms of a loan, fixed at disbursement"""
    principal: Money
    tenure_months: int
    interest_rate: Decimal          # Annual percent
    processing_fee_rate: Decimal    # Percent of principal
    interest_type: InterestType
    annual_interest: Money
    total_interest: Money
    processing_fee: Money
    total_payable: Money
    monthly_installment: Money

    @property
    def net_disbursement(self) -> Money:
        """Cash handed over when the fee is withheld at disbursement"""
        return self.principal - self.processing_fee

    def to_dict(self) -> dict:
        return {
            'principal': str(self.principal.amount),
            'currency': self.principal.currency.code,
            'tenure_months': self.tenure_months,
            'interest_rate': str(self.interest_rate),
            'processing_fee_rate': str(self.processing_fee_rate),
            'interest_type': self.interest_type.value,
            'annual_interest': str(self.annual_interest.amount),
            'total_interest': str(self.total_interest.amount),
            'processing_fee': str(self.processing_fee.amount),
            'total_payable': str(self.total_payable.amount),
            'monthly_installment': str(self.monthly_installment.amount)
        }


def spread_evenly(total: Money, periods: int) -> List[Money]:
    """
    Split a money total into ``periods`` shares, residual on the last share

    The regular share is rounded half-up; if that would make the first
    ``periods - 1`` shares exceed the total, the share is truncated instead so
    the final share is never negative.
    """
    if periods <= 0:
        raise ValidationError("Cannot spread an amount over zero periods")

    currency = total.currency
    exact = total.amount / Decimal(periods)
    share = round_money(exact, currency)
    if share * (periods - 1) > total.amount:
        share = round_money(exact, currency, truncate=True)

    shares = [Money(share, currency)] * (periods - 1)
    shares.append(Money(total.amount - share * (periods - 1), currency))
    return shares


class InterestStrategy(ABC):
    """Interest method: totals and the per-period split they imply"""

    interest_type: InterestType

    @abstractmethod
    def split(self, principal: Money, tenure_months: int, annual_rate: Decimal) -> List[Tuple[Money, Money]]:
        """Return (principal_due, interest_due) per installment"""
        pass

    @abstractmethod
    def installment(self, principal: Money, tenure_months: int, annual_rate: Decimal) -> Money:
        """Regular monthly installment"""
        pass

    @abstractmethod
    def total_interest(self, principal: Money, tenure_months: int, annual_rate: Decimal) -> Money:
        """Interest over the whole term"""
        pass


class FlatRateStrategy(InterestStrategy):
    """Simple interest on the original principal for the whole term"""

    interest_type = InterestType.FLAT

    def total_interest(self, principal: Money, tenure_months: int, annual_rate: Decimal) -> Money:
        # Rounded once, so the yearly figure is never rounded twice
        exact = principal.amount * (annual_rate / HUNDRED) * (Decimal(tenure_months) / MONTHS_PER_YEAR)
        return Money(exact, principal.currency)

    def installment(self, principal: Money, tenure_months: int, annual_rate: Decimal) -> Money:
        total_payable = principal + self.total_interest(principal, tenure_months, annual_rate)
        return total_payable / Decimal(tenure_months)

    def split(self, principal: Money, tenure_months: int, annual_rate: Decimal) -> List[Tuple[Money, Money]]:
        principal_parts = spread_evenly(principal, tenure_months)
        interest_parts = spread_evenly(
            self.total_interest(principal, tenure_months, annual_rate), tenure_months
        )
        return list(zip(principal_parts, interest_parts))


class ReducingBalanceStrategy(InterestStrategy):
    """
    Equal installments (annuity); each period's interest is charged on the
    balance still outstanding, so the principal share grows over the term.
    """

    interest_type = InterestType.REDUCING

    @staticmethod
    def _periodic_rate(annual_rate: Decimal) -> Decimal:
        return annual_rate / HUNDRED / MONTHS_PER_YEAR

    def installment(self, principal: Money, tenure_months: int, annual_rate: Decimal) -> Money:
        rate = self._periodic_rate(annual_rate)
        if rate == Decimal('0'):
            return principal / Decimal(tenure_months)

        # P * r(1+r)^n / ((1+r)^n - 1)
        factor = (Decimal('1') + rate) ** tenure_months
        return Money(principal.amount * rate * factor / (factor - Decimal('1')), principal.currency)

    def split(self, principal: Money, tenure_months: int, annual_rate: Decimal) -> List[Tuple[Money, Money]]:
        rate = self._periodic_rate(annual_rate)
        if rate == Decimal('0'):
            zero = Money.zero(principal.currency)
            return [(part, zero) for part in spread_evenly(principal, tenure_months)]

        payment = self.installment(principal, tenure_months, annual_rate)
        balance = principal
        parts = []
        for number in range(1, tenure_months + 1):
            interest_due = balance * rate
            if number == tenure_months:
                principal_due = balance
            else:
                principal_due = (payment - interest_due).min(balance)
            balance = balance - principal_due
            parts.append((principal_due, interest_due))
        return parts

    def total_interest(self, principal: Money, tenure_months: int, annual_rate: Decimal) -> Money:
        total = Money.zero(principal.currency)
        for _, interest_due in self.split(principal, tenure_months, annual_rate):
            total = total + interest_due
        return total


STRATEGIES = {
    InterestType.FLAT: FlatRateStrategy(),
    InterestType.REDUCING: ReducingBalanceStrategy(),
}


def get_strategy(interest_type: InterestType) -> InterestStrategy:
    try:
        return STRATEGIES[interest_type]
    except KeyError:
        raise ValidationError(f"Unsupported interest type: {interest_type}")


class LoanCalculator:
    """
    Turns (principal, tenure, rates) into a LoanCostBreakdown
    """

    @staticmethod
    def calculate(
        principal: Money,
        tenure_months: int,
        annual_interest_rate: Decimal,
        processing_fee_rate: Decimal,
        interest_type: InterestType = InterestType.FLAT
    ) -> LoanCostBreakdown:
        """
        Compute loan cost terms

        Args:
            principal: Amount lent, must be positive
            tenure_months: Term in months, must be positive
            annual_interest_rate: Annual rate in percent (24 means 24%)
            processing_fee_rate: Fee in percent of principal
            interest_type: Flat or reducing balance

        Returns:
            LoanCostBreakdown

        Raises:
            ValidationError: On non-positive principal/tenure or negative rates
        """
        annual_interest_rate = Decimal(str(annual_interest_rate))
        processing_fee_rate = Decimal(str(processing_fee_rate))

        if not principal.is_positive():
            raise ValidationError("Principal must be positive")
        if tenure_months is None or int(tenure_months) <= 0:
            raise ValidationError("Tenure must be a positive number of months")
        if annual_interest_rate < Decimal('0'):
            raise ValidationError("Interest rate must not be negative")
        if processing_fee_rate < Decimal('0'):
            raise ValidationError("Processing fee rate must not be negative")
        tenure_months = int(tenure_months)

        strategy = get_strategy(interest_type)
        total_interest = strategy.total_interest(principal, tenure_months, annual_interest_rate)
        total_payable = principal + total_interest

        monthly_installment = strategy.installment(principal, tenure_months, annual_interest_rate)

        return LoanCostBreakdown(
            principal=principal,
            tenure_months=tenure_months,
            interest_rate=annual_interest_rate,
            processing_fee_rate=processing_fee_rate,
            interest_type=interest_type,
            annual_interest=principal * (annual_interest_rate / HUNDRED),
            total_interest=total_interest,
            processing_fee=principal * (processing_fee_rate / HUNDRED),
            total_payable=total_payable,
            monthly_installment=monthly_installment
        )

    @classmethod
    def calculate_for_product(
        cls,
        product: LoanProduct,
        principal: Money,
        tenure_months: int
    ) -> LoanCostBreakdown:
        """Validate against product bounds, then calculate with product pricing"""
        product.validate_amount(principal)
        product.validate_tenure(tenure_months)
        return cls.calculate(
            principal=principal,
            tenure_months=tenure_months,
            annual_interest_rate=product.interest_rate,
            processing_fee_rate=product.processing_fee_rate,
            interest_type=product.interest_type
        )
