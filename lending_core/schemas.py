"""
Pydantic schemas for lending requests and responses

Money travels as a Decimal amount plus a currency code; dates as ISO-8601.
"""

from decimal import Decimal
from datetime import date
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

from .currency import Money, Currency, decimal_from_string
from .products import LoanProduct, InterestType
from .schedule import RepaymentScheduleEntry
from .loans import Loan, LoanApplication, LoanTransaction, RepaymentResult, DisbursementMethod
from .allocation import OverpaymentPolicy


class MoneyModel(BaseModel):
    amount: Decimal = Field(..., description="Decimal amount")
    currency: str = Field(..., description="Currency code (GHS, USD, etc.)")

    @field_validator("amount", mode="before")
    @classmethod
    def parse_amount(cls, value):
        # Teller-entered text such as "GHS 1,200.00"
        if isinstance(value, str):
            return decimal_from_string(value)
        return value

    def to_money(self) -> Money:
        return Money(self.amount, Currency.from_code(self.currency))

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=money.amount, currency=money.currency.code)


# Product schemas
class CreateProductRequest(BaseModel):
    code: str
    name: str
    interest_rate: Decimal = Field(..., ge=0, description="Annual rate in percent")
    interest_type: str = Field("flat", description="Interest method (flat, reducing)")
    processing_fee_rate: Decimal = Field(Decimal('0'), ge=0)
    penalty_rate: Decimal = Field(Decimal('0'), ge=0)
    min_amount: MoneyModel
    max_amount: MoneyModel
    min_tenure_months: int = Field(..., ge=1)
    max_tenure_months: int = Field(..., ge=1)
    interest_income_account: Optional[str] = None
    processing_fee_account: Optional[str] = None
    penalty_income_account: Optional[str] = None

    @property
    def interest_type_enum(self) -> InterestType:
        return InterestType(self.interest_type)


class ProductResponse(BaseModel):
    id: str
    code: str
    name: str
    interest_rate: Decimal
    interest_type: str
    processing_fee_rate: Decimal
    penalty_rate: Decimal
    min_amount: MoneyModel
    max_amount: MoneyModel
    min_tenure_months: int
    max_tenure_months: int
    is_active: bool

    @classmethod
    def from_product(cls, product: LoanProduct) -> 'ProductResponse':
        return cls(
            id=product.id,
            code=product.code,
            name=product.name,
            interest_rate=product.interest_rate,
            interest_type=product.interest_type.value,
            processing_fee_rate=product.processing_fee_rate,
            penalty_rate=product.penalty_rate,
            min_amount=MoneyModel.from_money(product.min_amount),
            max_amount=MoneyModel.from_money(product.max_amount),
            min_tenure_months=product.min_tenure_months,
            max_tenure_months=product.max_tenure_months,
            is_active=product.is_active
        )


# Application schemas
class LoanApplicationRequest(BaseModel):
    customer_id: str
    product_id: str
    servicing_account_id: str
    amount: MoneyModel
    tenure_months: int = Field(..., ge=1)
    purpose: str
    applied_date: Optional[date] = None


class ApproveApplicationRequest(BaseModel):
    approved_amount: MoneyModel
    tenure_months: Optional[int] = Field(None, ge=1)
    approved_date: Optional[date] = None


class RejectApplicationRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class DisburseRequest(BaseModel):
    disbursement_date: Optional[date] = None
    disbursement_method: str = Field("cash", description="cash, cheque or bank_transfer")
    reference: Optional[str] = None

    @property
    def method(self) -> DisbursementMethod:
        return DisbursementMethod(self.disbursement_method)


class ApplicationResponse(BaseModel):
    id: str
    application_number: str
    customer_id: str
    product_id: str
    applied_amount: MoneyModel
    tenure_months: int
    purpose: str
    status: str
    applied_date: date
    approved_amount: Optional[MoneyModel] = None
    approved_date: Optional[date] = None
    interest_rate: Optional[Decimal] = None
    processing_fee_rate: Optional[Decimal] = None
    interest_type: Optional[str] = None
    rejection_reason: Optional[str] = None

    @classmethod
    def from_application(cls, application: LoanApplication) -> 'ApplicationResponse':
        return cls(
            id=application.id,
            application_number=application.application_number,
            customer_id=application.customer_id,
            product_id=application.product_id,
            applied_amount=MoneyModel.from_money(application.applied_amount),
            tenure_months=application.tenure_months,
            purpose=application.purpose,
            status=application.status.value,
            applied_date=application.applied_date,
            approved_amount=(
                MoneyModel.from_money(application.approved_amount)
                if application.approved_amount else None
            ),
            approved_date=application.approved_date,
            interest_rate=application.interest_rate,
            processing_fee_rate=application.processing_fee_rate,
            interest_type=application.interest_type.value if application.interest_type else None,
            rejection_reason=application.rejection_reason
        )


# Repayment schemas
class RepaymentRequest(BaseModel):
    amount: MoneyModel
    payment_date: Optional[date] = None
    reference: Optional[str] = None
    overpayment_policy: str = Field("report", description="report or reject")

    @property
    def policy(self) -> OverpaymentPolicy:
        return OverpaymentPolicy(self.overpayment_policy)


class WriteOffRequest(BaseModel):
    amount: MoneyModel
    reason: str = Field(..., min_length=1)
    write_off_date: Optional[date] = None


class ScheduleEntryResponse(BaseModel):
    installment_number: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    total_due: Decimal
    principal_paid: Decimal
    interest_paid: Decimal
    penalty_amount: Decimal
    penalty_paid: Decimal
    status: str
    paid_date: Optional[date] = None

    @classmethod
    def from_entry(cls, entry: RepaymentScheduleEntry) -> 'ScheduleEntryResponse':
        return cls(
            installment_number=entry.installment_number,
            due_date=entry.due_date,
            principal_due=entry.principal_due.amount,
            interest_due=entry.interest_due.amount,
            total_due=entry.total_due.amount,
            principal_paid=entry.principal_paid.amount,
            interest_paid=entry.interest_paid.amount,
            penalty_amount=entry.penalty_amount.amount,
            penalty_paid=entry.penalty_paid.amount,
            status=entry.status.value,
            paid_date=entry.paid_date
        )


class LoanResponse(BaseModel):
    id: str
    loan_number: str
    application_id: str
    customer_id: str
    currency: str
    principal_amount: Decimal
    interest_rate: Decimal
    interest_type: str
    tenure_months: int
    start_date: date
    maturity_date: date
    total_interest: Decimal
    processing_fee: Decimal
    total_payable: Decimal
    monthly_installment: Decimal
    net_disbursed_amount: Decimal
    outstanding_principal: Decimal
    outstanding_interest: Decimal
    outstanding_penalty: Decimal
    status: str
    days_in_arrears: int
    closed_date: Optional[date] = None

    @classmethod
    def from_loan(cls, loan: Loan) -> 'LoanResponse':
        return cls(
            id=loan.id,
            loan_number=loan.loan_number,
            application_id=loan.application_id,
            customer_id=loan.customer_id,
            currency=loan.principal_amount.currency.code,
            principal_amount=loan.principal_amount.amount,
            interest_rate=loan.interest_rate,
            interest_type=loan.interest_type.value,
            tenure_months=loan.tenure_months,
            start_date=loan.start_date,
            maturity_date=loan.maturity_date,
            total_interest=loan.total_interest.amount,
            processing_fee=loan.processing_fee.amount,
            total_payable=loan.total_payable.amount,
            monthly_installment=loan.monthly_installment.amount,
            net_disbursed_amount=loan.net_disbursed_amount.amount,
            outstanding_principal=loan.outstanding_principal.amount,
            outstanding_interest=loan.outstanding_interest.amount,
            outstanding_penalty=loan.outstanding_penalty.amount,
            status=loan.status.value,
            days_in_arrears=loan.days_in_arrears,
            closed_date=loan.closed_date
        )


class TransactionResponse(BaseModel):
    id: str
    loan_id: str
    transaction_type: str
    amount: Decimal
    principal_component: Decimal
    interest_component: Decimal
    penalty_component: Decimal
    transaction_date: date
    reference: str
    description: str
    actor_id: str

    @classmethod
    def from_transaction(cls, transaction: LoanTransaction) -> 'TransactionResponse':
        return cls(
            id=transaction.id,
            loan_id=transaction.loan_id,
            transaction_type=transaction.transaction_type.value,
            amount=transaction.amount.amount,
            principal_component=transaction.principal_component.amount,
            interest_component=transaction.interest_component.amount,
            penalty_component=transaction.penalty_component.amount,
            transaction_date=transaction.transaction_date,
            reference=transaction.reference,
            description=transaction.description,
            actor_id=transaction.actor_id
        )


class RepaymentResultResponse(BaseModel):
    loan: LoanResponse
    transaction: TransactionResponse
    installments_touched: List[int]
    overpayment: Optional[Decimal] = None
    loan_closed: bool

    @classmethod
    def from_result(cls, result: RepaymentResult) -> 'RepaymentResultResponse':
        return cls(
            loan=LoanResponse.from_loan(result.loan),
            transaction=TransactionResponse.from_transaction(result.transaction),
            installments_touched=[a.installment_number for a in result.allocation.allocations],
            overpayment=result.overpayment.excess.amount if result.overpayment else None,
            loan_closed=result.loan_closed
        )
