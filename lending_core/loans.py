"""
Loan Module

Loan applications, booked loans and their transaction ledger, and the
LoanManager that drives the lifecycle:

    application: pending -> approved -> disbursed -> closed
                 pending -> rejected
    loan:        active -> closed | defaulted | written_off
                 defaulted -> closed | written_off

Every mutating operation names its actor, is audited, and publishes an
OperationResult for presentation layers.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from contextlib import contextmanager
import uuid

from .currency import Money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType, require_actor
from .events import EventPublisherMixin, DomainEvent
from .config import LendingConfig, get_config
from .products import LoanProductCatalog, InterestType
from .calculator import LoanCalculator, LoanCostBreakdown
from .schedule import (
    ScheduleGenerator, RepaymentScheduleEntry, InstallmentStatus,
    refresh_statuses, overdue_entries, days_in_arrears, arrears_amount
)
from .allocation import (
    RepaymentAllocator, AllocationResult, OverpaymentNotice, OverpaymentPolicy,
    total_outstanding
)
from .exceptions import (
    LendingError, ValidationError, NotFoundError, StateConflictError,
    DuplicateReferenceError, ArithmeticInvariantViolation
)
from .logging_config import get_logger, log_action


logger = get_logger("lending_core.loans")


class ApplicationStatus(Enum):
    """Loan application lifecycle states"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"      # Terminal
    DISBURSED = "disbursed"    # A Loan record exists
    CLOSED = "closed"          # The loan has been repaid


class LoanStatus(Enum):
    """Booked loan lifecycle states"""
    ACTIVE = "active"
    CLOSED = "closed"
    DEFAULTED = "defaulted"
    WRITTEN_OFF = "written_off"


class TransactionType(Enum):
    DISBURSEMENT = "disbursement"
    REPAYMENT = "repayment"
    PENALTY = "penalty"
    WRITE_OFF = "write_off"
    RESTRUCTURE = "restructure"


class DisbursementMethod(Enum):
    CASH = "cash"
    CHEQUE = "cheque"
    BANK_TRANSFER = "bank_transfer"


APPLICATION_TRANSITIONS = {
    ApplicationStatus.PENDING: {ApplicationStatus.APPROVED, ApplicationStatus.REJECTED},
    ApplicationStatus.APPROVED: {ApplicationStatus.DISBURSED},
    ApplicationStatus.DISBURSED: {ApplicationStatus.CLOSED},
    ApplicationStatus.REJECTED: set(),
    ApplicationStatus.CLOSED: set(),
}

LOAN_TRANSITIONS = {
    LoanStatus.ACTIVE: {LoanStatus.CLOSED, LoanStatus.DEFAULTED, LoanStatus.WRITTEN_OFF},
    LoanStatus.DEFAULTED: {LoanStatus.CLOSED, LoanStatus.WRITTEN_OFF},
    LoanStatus.CLOSED: set(),
    LoanStatus.WRITTEN_OFF: set(),
}

# Loans in these states still owe money and accept repayments
OPEN_LOAN_STATES = (LoanStatus.ACTIVE, LoanStatus.DEFAULTED)


class _SerializedRecord(StorageRecord):
    """Field-type driven (de)serialization shared by the lending records"""

    _money_fields = ()
    _date_fields = ()
    _decimal_fields = ()
    _enum_fields = {}

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        for name in self._money_fields:
            value = getattr(self, name)
            result[name] = value.to_dict() if value is not None else None
        for name in self._date_fields:
            value = getattr(self, name)
            result[name] = value.isoformat() if value is not None else None
        for name in self._enum_fields:
            value = getattr(self, name)
            result[name] = value.value if value is not None else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        for name in cls._money_fields:
            if data.get(name) is not None:
                data[name] = Money.from_dict(data[name])
        for name in cls._date_fields:
            if data.get(name):
                data[name] = date.fromisoformat(data[name])
        for name in cls._decimal_fields:
            if data.get(name) is not None:
                data[name] = Decimal(data[name])
        for name, enum_type in cls._enum_fields.items():
            if data.get(name) is not None:
                data[name] = enum_type(data[name])
        return cls(**data)


@dataclass
class LoanApplication(_SerializedRecord):
    """Customer request for a loan under a product"""
    application_number: str
    customer_id: str
    product_id: str
    servicing_account_id: str
    applied_amount: Money
    tenure_months: int
    purpose: str
    applied_date: date
    submitted_by: str
    status: ApplicationStatus = ApplicationStatus.PENDING

    approved_amount: Optional[Money] = None
    approved_by: Optional[str] = None
    approved_date: Optional[date] = None
    # Pricing frozen from the product at approval
    interest_rate: Optional[Decimal] = None
    processing_fee_rate: Optional[Decimal] = None
    interest_type: Optional[InterestType] = None

    rejection_reason: Optional[str] = None
    rejected_by: Optional[str] = None
    rejected_date: Optional[date] = None

    version: int = 0

    _money_fields = ('applied_amount', 'approved_amount')
    _date_fields = ('applied_date', 'approved_date', 'rejected_date')
    _decimal_fields = ('interest_rate', 'processing_fee_rate')
    _enum_fields = {'status': ApplicationStatus, 'interest_type': InterestType}

    def __post_init__(self):
        self.validate_state()

    def validate_state(self) -> None:
        """approved_amount iff approved/disbursed/closed; rejection_reason iff rejected"""
        approved_states = (ApplicationStatus.APPROVED, ApplicationStatus.DISBURSED, ApplicationStatus.CLOSED)
        if (self.approved_amount is not None) != (self.status in approved_states):
            raise ValidationError(
                f"Application {self.application_number}: approved amount must be set exactly "
                f"when status is approved, disbursed or closed (status {self.status.value})"
            )
        if bool(self.rejection_reason) != (self.status == ApplicationStatus.REJECTED):
            raise ValidationError(
                f"Application {self.application_number}: rejection reason must be set exactly "
                f"when status is rejected (status {self.status.value})"
            )


@dataclass
class Loan(_SerializedRecord):
    """Loan booked at disbursement; cost terms are frozen"""
    loan_number: str
    application_id: str
    customer_id: str
    product_id: str
    servicing_account_id: str

    principal_amount: Money
    interest_rate: Decimal
    interest_type: InterestType
    tenure_months: int
    start_date: date
    maturity_date: date

    total_interest: Money
    processing_fee: Money
    total_payable: Money
    monthly_installment: Money
    net_disbursed_amount: Money

    outstanding_principal: Money
    outstanding_interest: Money
    outstanding_penalty: Money = None

    status: LoanStatus = LoanStatus.ACTIVE
    disbursement_method: DisbursementMethod = DisbursementMethod.CASH
    disbursed_by: Optional[str] = None
    days_in_arrears: int = 0
    last_payment_date: Optional[date] = None
    closed_date: Optional[date] = None
    write_off_reason: Optional[str] = None

    version: int = 0

    _money_fields = (
        'principal_amount', 'total_interest', 'processing_fee', 'total_payable',
        'monthly_installment', 'net_disbursed_amount', 'outstanding_principal',
        'outstanding_interest', 'outstanding_penalty'
    )
    _date_fields = ('start_date', 'maturity_date', 'last_payment_date', 'closed_date')
    _decimal_fields = ('interest_rate',)
    _enum_fields = {
        'interest_type': InterestType,
        'status': LoanStatus,
        'disbursement_method': DisbursementMethod
    }

    def __post_init__(self):
        if self.outstanding_penalty is None:
            self.outstanding_penalty = Money.zero(self.principal_amount.currency)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_LOAN_STATES

    @property
    def total_outstanding(self) -> Money:
        return self.outstanding_principal + self.outstanding_interest + self.outstanding_penalty


@dataclass
class LoanTransaction(_SerializedRecord):
    """Append-only ledger entry; one per financial event"""
    loan_id: str
    transaction_type: TransactionType
    amount: Money
    principal_component: Money
    interest_component: Money
    penalty_component: Money
    transaction_date: date
    reference: str
    description: str
    actor_id: str

    _money_fields = ('amount', 'principal_component', 'interest_component', 'penalty_component')
    _date_fields = ('transaction_date',)
    _enum_fields = {'transaction_type': TransactionType}


@dataclass
class RepaymentResult:
    """Outcome of posting one repayment"""
    loan: Loan
    transaction: LoanTransaction
    allocation: AllocationResult

    @property
    def overpayment(self) -> Optional[OverpaymentNotice]:
        return self.allocation.overpayment

    @property
    def loan_closed(self) -> bool:
        return self.loan.status == LoanStatus.CLOSED


@dataclass(frozen=True)
class ArrearsSummary:
    """Figures an external process needs to decide on default"""
    loan_id: str
    as_of: date
    days_in_arrears: int
    overdue_installments: int
    arrears_amount: Money
    outstanding_principal: Money
    outstanding_interest: Money
    outstanding_penalty: Money

    @property
    def total_outstanding(self) -> Money:
        return self.outstanding_principal + self.outstanding_interest + self.outstanding_penalty


class LoanManager(EventPublisherMixin):
    """
    Manages loans from application through closure
    """

    def __init__(
        self,
        storage: StorageInterface,
        product_catalog: LoanProductCatalog,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.product_catalog = product_catalog
        self.audit_trail = audit_trail
        self.config = config or get_config()

        self.applications_table = "loan_applications"
        self.loans_table = "loans"
        self.schedule_table = "repayment_schedules"
        self.transactions_table = "loan_transactions"

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def apply_for_loan(
        self,
        customer_id: str,
        product_id: str,
        servicing_account_id: str,
        amount: Money,
        tenure_months: int,
        purpose: str,
        actor_id: str,
        applied_date: Optional[date] = None
    ) -> LoanApplication:
        """
        Submit a loan application

        Args:
            customer_id: Borrower
            product_id: Loan product applied under
            servicing_account_id: Account disbursements and repayments go through
            amount: Requested principal
            tenure_months: Requested term
            purpose: Stated purpose of the loan
            actor_id: User capturing the application

        Returns:
            Pending LoanApplication

        Raises:
            ValidationError: Missing fields, inactive product, amount/tenure out of bounds
        """
        with self._operation("apply_for_loan", "application", product_id, actor_id):
            require_actor(actor_id)
            for name, value in (
                ("customer_id", customer_id),
                ("servicing_account_id", servicing_account_id),
                ("purpose", purpose)
            ):
                if not value or not str(value).strip():
                    raise ValidationError(f"{name} is required")

            product = self.product_catalog.get_product(product_id)
            if not product.is_active:
                raise ValidationError(f"Loan product {product.code} is not accepting applications")
            product.validate_amount(amount)
            product.validate_tenure(tenure_months)

            # Numbering and save under one lock
            with self.storage.atomic():
                now = datetime.now(timezone.utc)
                application = LoanApplication(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    application_number=self._next_business_key(
                        self.applications_table, "application_number", self.config.application_number_prefix
                    ),
                    customer_id=customer_id,
                    product_id=product_id,
                    servicing_account_id=servicing_account_id,
                    applied_amount=amount,
                    tenure_months=tenure_months,
                    purpose=purpose.strip(),
                    applied_date=applied_date or date.today(),
                    submitted_by=actor_id
                )
                self._save_application(application)

        self._audit(
            AuditEventType.APPLICATION_SUBMITTED, "application", application.id, actor_id,
            {
                "application_number": application.application_number,
                "customer_id": customer_id,
                "product_code": product.code,
                "applied_amount": amount.to_string(),
                "tenure_months": tenure_months
            }
        )
        log_action(logger, "info", f"Application {application.application_number} submitted",
                   user_id=actor_id, action="apply_for_loan", resource=application.id)
        self._notify(
            DomainEvent.APPLICATION_SUBMITTED, "application", application.id,
            {"application_number": application.application_number},
            f"Loan application {application.application_number} submitted"
        )
        return application

    def approve_application(
        self,
        application_id: str,
        approved_amount: Money,
        actor_id: str,
        tenure_months: Optional[int] = None,
        approved_date: Optional[date] = None
    ) -> LoanApplication:
        """
        Approve a pending application

        The approved amount (and tenure, when overridden) must fall within the
        product bounds. The product's interest rate, fee rate and interest type
        are frozen onto the application here.

        Raises:
            StateConflictError: If the application is not pending
            ValidationError: If the amount or tenure is out of bounds
        """
        with self._operation("approve_application", "application", application_id, actor_id):
            require_actor(actor_id)
            application = self.get_application(application_id)
            self._check_application_transition(application, ApplicationStatus.APPROVED)

            product = self.product_catalog.get_product(application.product_id)
            tenure = tenure_months if tenure_months is not None else application.tenure_months
            product.validate_amount(approved_amount)
            product.validate_tenure(tenure)

            application.status = ApplicationStatus.APPROVED
            application.approved_amount = approved_amount
            application.approved_by = actor_id
            application.approved_date = approved_date or date.today()
            application.tenure_months = tenure
            application.interest_rate = product.interest_rate
            application.processing_fee_rate = product.processing_fee_rate
            application.interest_type = product.interest_type
            application.updated_at = datetime.now(timezone.utc)
            self._save_application(application)

        self._audit(
            AuditEventType.APPLICATION_APPROVED, "application", application.id, actor_id,
            {
                "application_number": application.application_number,
                "approved_amount": approved_amount.to_string(),
                "tenure_months": tenure,
                "interest_rate": application.interest_rate,
                "processing_fee_rate": application.processing_fee_rate,
                "interest_type": application.interest_type
            }
        )
        log_action(logger, "info", f"Application {application.application_number} approved",
                   user_id=actor_id, action="approve_application", resource=application.id)
        self._notify(
            DomainEvent.APPLICATION_APPROVED, "application", application.id,
            {"approved_amount": str(approved_amount.amount)},
            f"Loan application {application.application_number} approved"
        )
        return application

    def reject_application(self, application_id: str, reason: str, actor_id: str) -> LoanApplication:
        """
        Reject a pending application; rejected is terminal

        Raises:
            ValidationError: If the reason is empty (status stays pending)
            StateConflictError: If the application is not pending
        """
        with self._operation("reject_application", "application", application_id, actor_id):
            require_actor(actor_id)
            if not reason or not reason.strip():
                raise ValidationError("A rejection reason is required")

            application = self.get_application(application_id)
            self._check_application_transition(application, ApplicationStatus.REJECTED)

            application.status = ApplicationStatus.REJECTED
            application.rejection_reason = reason.strip()
            application.rejected_by = actor_id
            application.rejected_date = date.today()
            application.updated_at = datetime.now(timezone.utc)
            self._save_application(application)

        self._audit(
            AuditEventType.APPLICATION_REJECTED, "application", application.id, actor_id,
            {"application_number": application.application_number, "reason": application.rejection_reason}
        )
        log_action(logger, "info", f"Application {application.application_number} rejected",
                   user_id=actor_id, action="reject_application", resource=application.id)
        self._notify(
            DomainEvent.APPLICATION_REJECTED, "application", application.id,
            {"reason": application.rejection_reason},
            f"Loan application {application.application_number} rejected"
        )
        return application

    def calculate_terms(self, application_id: str) -> LoanCostBreakdown:
        """
        Cost terms for an application as they would be booked at disbursement

        Uses the approved amount and the pricing frozen at approval once
        approved, otherwise the applied amount at the product's current pricing.
        """
        application = self.get_application(application_id)
        principal = application.approved_amount or application.applied_amount
        if application.interest_rate is not None:
            return LoanCalculator.calculate(
                principal=principal,
                tenure_months=application.tenure_months,
                annual_interest_rate=application.interest_rate,
                processing_fee_rate=application.processing_fee_rate,
                interest_type=application.interest_type
            )

        product = self.product_catalog.get_product(application.product_id)
        return LoanCalculator.calculate(
            principal=principal,
            tenure_months=application.tenure_months,
            annual_interest_rate=product.interest_rate,
            processing_fee_rate=product.processing_fee_rate,
            interest_type=product.interest_type
        )

    # ------------------------------------------------------------------
    # Disbursement
    # ------------------------------------------------------------------

    def disburse(
        self,
        application_id: str,
        actor_id: str,
        disbursement_date: Optional[date] = None,
        disbursement_method: DisbursementMethod = DisbursementMethod.CASH,
        reference: Optional[str] = None
    ) -> Loan:
        """
        Disburse an approved application, booking the loan exactly once

        Computes the cost terms, generates the schedule, creates the Loan and
        its disbursement transaction, and moves the application to disbursed.
        The first installment falls due one month after the disbursement date.

        Raises:
            StateConflictError: If the application is not approved (including
                when it has already been disbursed)
            DuplicateReferenceError: If the reference was used before
        """
        with self._operation("disburse", "application", application_id, actor_id):
            require_actor(actor_id)
            application = self.get_application(application_id)
            self._check_application_transition(application, ApplicationStatus.DISBURSED)
            if self.storage.find(self.loans_table, {"application_id": application_id}):
                raise StateConflictError(
                    f"Application {application.application_number} already has a loan",
                    current_state=application.status.value
                )
            if reference:
                self._check_reference_unused(reference)

            product = self.product_catalog.get_product(application.product_id)
            breakdown = self.calculate_terms(application_id)
            start_date = disbursement_date or date.today()

            loan_id = str(uuid.uuid4())
            schedule = ScheduleGenerator.generate(breakdown, start_date, loan_id=loan_id)

            currency = breakdown.principal.currency
            net_disbursed = (
                breakdown.net_disbursement if self.config.deduct_processing_fee else breakdown.principal
            )
            description = f"Loan disbursement by {disbursement_method.value}"
            if self.config.deduct_processing_fee and breakdown.processing_fee.is_positive():
                description += f"; processing fee {breakdown.processing_fee.to_string()} withheld"

            with self.storage.atomic():
                now = datetime.now(timezone.utc)
                loan = Loan(
                    id=loan_id,
                    created_at=now,
                    updated_at=now,
                    loan_number=self._next_business_key(
                        self.loans_table, "loan_number", self.config.loan_number_prefix
                    ),
                    application_id=application.id,
                    customer_id=application.customer_id,
                    product_id=product.id,
                    servicing_account_id=application.servicing_account_id,
                    principal_amount=breakdown.principal,
                    interest_rate=breakdown.interest_rate,
                    interest_type=breakdown.interest_type,
                    tenure_months=breakdown.tenure_months,
                    start_date=start_date,
                    maturity_date=schedule[-1].due_date,
                    total_interest=breakdown.total_interest,
                    processing_fee=breakdown.processing_fee,
                    total_payable=breakdown.total_payable,
                    monthly_installment=breakdown.monthly_installment,
                    net_disbursed_amount=net_disbursed,
                    outstanding_principal=breakdown.principal,
                    outstanding_interest=breakdown.total_interest,
                    disbursement_method=disbursement_method,
                    disbursed_by=actor_id
                )
                transaction = self._new_transaction(
                    loan=loan,
                    transaction_type=TransactionType.DISBURSEMENT,
                    amount=breakdown.principal,
                    principal=breakdown.principal,
                    interest=Money.zero(currency),
                    penalty=Money.zero(currency),
                    transaction_date=start_date,
                    reference=reference or self._generate_reference("DISB"),
                    description=description,
                    actor_id=actor_id
                )

                application.status = ApplicationStatus.DISBURSED
                application.updated_at = now
                self._save_application(application)
                self._save_loan(loan)
                self._save_schedule(schedule)
                self._record_transaction(transaction)

        self._audit(
            AuditEventType.LOAN_DISBURSED, "loan", loan.id, actor_id,
            {
                "loan_number": loan.loan_number,
                "application_number": application.application_number,
                "principal_amount": loan.principal_amount.to_string(),
                "net_disbursed_amount": loan.net_disbursed_amount.to_string(),
                "total_payable": loan.total_payable.to_string(),
                "method": disbursement_method,
                "reference": transaction.reference
            }
        )
        log_action(logger, "info", f"Loan {loan.loan_number} disbursed",
                   user_id=actor_id, action="disburse", resource=loan.id,
                   extra={"principal": str(loan.principal_amount.amount)})
        self._notify(
            DomainEvent.LOAN_DISBURSED, "loan", loan.id,
            {"loan_number": loan.loan_number, "net_disbursed_amount": str(net_disbursed.amount)},
            f"Loan {loan.loan_number} disbursed: {net_disbursed.to_string()}"
        )
        return loan

    # ------------------------------------------------------------------
    # Repayment
    # ------------------------------------------------------------------

    def post_repayment(
        self,
        loan_id: str,
        amount: Money,
        actor_id: str,
        payment_date: Optional[date] = None,
        reference: Optional[str] = None,
        overpayment_policy: OverpaymentPolicy = OverpaymentPolicy.REPORT
    ) -> RepaymentResult:
        """
        Post a repayment against a loan

        Installments are settled oldest first, interest before principal.
        A retried request carrying the same reference is refused rather than
        applied twice. The loan closes when the last installment is settled.

        Returns:
            RepaymentResult; ``overpayment`` is set when the payment exceeded
            everything owed

        Raises:
            ValidationError: Non-positive amount, wrong currency, or an
                overpayment under OverpaymentPolicy.REJECT
            StateConflictError: If the loan is closed or written off
            DuplicateReferenceError: If the reference was used before
        """
        with self._operation("post_repayment", "loan", loan_id, actor_id):
            require_actor(actor_id)
            loan = self.get_loan(loan_id)
            if not loan.is_open:
                raise StateConflictError(
                    f"Loan {loan.loan_number} is {loan.status.value} and cannot take repayments",
                    current_state=loan.status.value
                )
            if amount.currency != loan.principal_amount.currency:
                raise ValidationError(
                    f"Payment currency {amount.currency.code} does not match loan currency "
                    f"{loan.principal_amount.currency.code}"
                )
            if not amount.is_positive():
                raise ValidationError("Payment amount must be positive")
            if reference:
                self._check_reference_unused(reference)

            payment_date = payment_date or date.today()
            schedule = self.get_schedule(loan_id)

            owed = total_outstanding(schedule, amount.currency)
            if overpayment_policy == OverpaymentPolicy.REJECT and amount > owed:
                raise ValidationError(
                    f"Payment {amount.to_string()} exceeds total outstanding {owed.to_string()}"
                )

            with self.storage.atomic():
                allocation = RepaymentAllocator.apply_to_loan(loan, schedule, amount, payment_date)

                loan.last_payment_date = payment_date
                loan.days_in_arrears = days_in_arrears(schedule, payment_date)
                loan.updated_at = datetime.now(timezone.utc)

                closing = allocation.schedule_settled and loan.outstanding_principal.is_zero()
                if closing:
                    self._check_loan_transition(loan, LoanStatus.CLOSED)
                    loan.status = LoanStatus.CLOSED
                    loan.closed_date = payment_date

                description = "Loan repayment"
                if allocation.overpayment:
                    description += f"; {allocation.overpayment.message}"
                transaction = self._new_transaction(
                    loan=loan,
                    transaction_type=TransactionType.REPAYMENT,
                    amount=allocation.total_allocated,
                    principal=allocation.principal_allocated,
                    interest=allocation.interest_allocated,
                    penalty=allocation.penalty_allocated,
                    transaction_date=payment_date,
                    reference=reference or self._generate_reference("PMT"),
                    description=description,
                    actor_id=actor_id
                )

                touched = {a.installment_number for a in allocation.allocations}
                self._save_schedule([e for e in schedule if e.installment_number in touched])
                self._save_loan(loan)
                self._record_transaction(transaction)
                if closing:
                    self._close_application(loan.application_id)

        self._audit(
            AuditEventType.LOAN_REPAYMENT_POSTED, "loan", loan.id, actor_id,
            {
                "reference": transaction.reference,
                "amount": amount.to_string(),
                "interest": allocation.interest_allocated.to_string(),
                "principal": allocation.principal_allocated.to_string(),
                "penalty": allocation.penalty_allocated.to_string(),
                "overpayment": allocation.overpayment.excess.to_string() if allocation.overpayment else None,
                "outstanding_principal": loan.outstanding_principal.to_string()
            }
        )
        log_action(logger, "info", f"Repayment {transaction.reference} posted to loan {loan.loan_number}",
                   user_id=actor_id, action="post_repayment", resource=loan.id)
        self._notify(
            DomainEvent.LOAN_REPAYMENT, "loan", loan.id,
            {"reference": transaction.reference, "amount": str(allocation.total_allocated.amount)},
            f"Repayment of {allocation.total_allocated.to_string()} posted to {loan.loan_number}"
        )
        if allocation.overpayment:
            self._notify(
                DomainEvent.LOAN_OVERPAYMENT, "loan", loan.id,
                {"excess": str(allocation.overpayment.excess.amount)},
                allocation.overpayment.message
            )
        if loan.status == LoanStatus.CLOSED:
            self._audit(AuditEventType.LOAN_CLOSED, "loan", loan.id, actor_id,
                        {"loan_number": loan.loan_number, "closed_date": loan.closed_date})
            self._notify(DomainEvent.LOAN_CLOSED, "loan", loan.id,
                         {"loan_number": loan.loan_number}, f"Loan {loan.loan_number} fully repaid and closed")

        return RepaymentResult(loan=loan, transaction=transaction, allocation=allocation)

    # ------------------------------------------------------------------
    # Arrears and penalties
    # ------------------------------------------------------------------

    def get_arrears_summary(self, loan_id: str, as_of: Optional[date] = None) -> ArrearsSummary:
        """Read-only arrears figures as of a date"""
        as_of = as_of or date.today()
        loan = self.get_loan(loan_id)
        schedule = self.get_schedule(loan_id)
        currency = loan.principal_amount.currency
        return ArrearsSummary(
            loan_id=loan.id,
            as_of=as_of,
            days_in_arrears=days_in_arrears(schedule, as_of),
            overdue_installments=len(overdue_entries(schedule, as_of)),
            arrears_amount=arrears_amount(schedule, as_of, currency),
            outstanding_principal=loan.outstanding_principal,
            outstanding_interest=loan.outstanding_interest,
            outstanding_penalty=loan.outstanding_penalty
        )

    def refresh_arrears(self, loan_id: str, actor_id: str, as_of: Optional[date] = None) -> ArrearsSummary:
        """Persist overdue statuses and days in arrears as of a date"""
        require_actor(actor_id)
        as_of = as_of or date.today()
        loan = self.get_loan(loan_id)
        schedule = self.get_schedule(loan_id)

        changed = refresh_statuses(schedule, as_of)
        with self.storage.atomic():
            self._save_schedule(changed)
            arrears_days = days_in_arrears(schedule, as_of)
            if arrears_days != loan.days_in_arrears:
                loan.days_in_arrears = arrears_days
                loan.updated_at = datetime.now(timezone.utc)
                self._save_loan(loan)

        return self.get_arrears_summary(loan_id, as_of)

    def assess_penalties(
        self,
        loan_id: str,
        actor_id: str,
        as_of: Optional[date] = None
    ) -> List[LoanTransaction]:
        """
        Charge the product penalty once on each overdue installment

        An installment qualifies when it is unsettled and its due date is more
        than ``penalty_grace_days`` before ``as_of``. The penalty is the
        product penalty rate applied to the installment amount still owed.

        Returns:
            One penalty transaction per installment charged
        """
        with self._operation("assess_penalties", "loan", loan_id, actor_id):
            require_actor(actor_id)
            as_of = as_of or date.today()
            loan = self.get_loan(loan_id)
            if not loan.is_open:
                raise StateConflictError(
                    f"Loan {loan.loan_number} is {loan.status.value}; penalties cannot be assessed",
                    current_state=loan.status.value
                )
            product = self.product_catalog.get_product(loan.product_id)
            schedule = self.get_schedule(loan_id)
            currency = loan.principal_amount.currency
            zero = Money.zero(currency)

            refresh_statuses(schedule, as_of)
            charges = []
            for entry in overdue_entries(schedule, as_of):
                if (as_of - entry.due_date).days <= self.config.penalty_grace_days:
                    continue
                if entry.penalty_amount.is_positive():
                    continue
                base = entry.interest_outstanding + entry.principal_outstanding
                penalty = base * (product.penalty_rate / Decimal('100'))
                if not penalty.is_positive():
                    continue
                entry.penalty_amount = penalty
                loan.outstanding_penalty = loan.outstanding_penalty + penalty
                charges.append((entry, self._new_transaction(
                    loan=loan,
                    transaction_type=TransactionType.PENALTY,
                    amount=penalty,
                    principal=zero,
                    interest=zero,
                    penalty=penalty,
                    transaction_date=as_of,
                    reference=f"{self.config.reference_prefix}-PEN-{loan.loan_number}-{entry.installment_number}",
                    description=f"Late payment penalty on installment {entry.installment_number}",
                    actor_id=actor_id
                )))

            loan.days_in_arrears = days_in_arrears(schedule, as_of)
            loan.updated_at = datetime.now(timezone.utc)
            with self.storage.atomic():
                self._save_schedule(schedule)
                self._save_loan(loan)
                for _, transaction in charges:
                    self._record_transaction(transaction)

        for entry, transaction in charges:
            self._audit(
                AuditEventType.LOAN_PENALTY_ASSESSED, "loan", loan.id, actor_id,
                {"installment_number": entry.installment_number,
                 "penalty": transaction.amount.to_string(),
                 "reference": transaction.reference}
            )
        if charges:
            log_action(logger, "info", f"{len(charges)} penalties assessed on loan {loan.loan_number}",
                       user_id=actor_id, action="assess_penalties", resource=loan.id)
            total = sum((t.amount for _, t in charges), zero)
            self._notify(
                DomainEvent.LOAN_PENALTY, "loan", loan.id,
                {"installments": [e.installment_number for e, _ in charges], "total": str(total.amount)},
                f"Penalties of {total.to_string()} charged on {loan.loan_number}"
            )
        return [transaction for _, transaction in charges]

    # ------------------------------------------------------------------
    # Default, write-off, closure
    # ------------------------------------------------------------------

    def mark_default(self, loan_id: str, actor_id: str, reason: Optional[str] = None) -> Loan:
        """
        Move an active loan to defaulted

        The decision is taken outside the engine (see get_arrears_summary).
        """
        with self._operation("mark_default", "loan", loan_id, actor_id):
            require_actor(actor_id)
            loan = self.get_loan(loan_id)
            self._check_loan_transition(loan, LoanStatus.DEFAULTED)
            loan.status = LoanStatus.DEFAULTED
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)

        self._audit(AuditEventType.LOAN_DEFAULTED, "loan", loan.id, actor_id,
                    {"loan_number": loan.loan_number, "reason": reason,
                     "days_in_arrears": loan.days_in_arrears})
        log_action(logger, "info", f"Loan {loan.loan_number} marked as defaulted",
                   user_id=actor_id, action="mark_default", resource=loan.id)
        self._notify(DomainEvent.LOAN_DEFAULTED, "loan", loan.id,
                     {"loan_number": loan.loan_number}, f"Loan {loan.loan_number} marked as defaulted")
        return loan

    def write_off(
        self,
        loan_id: str,
        amount: Money,
        reason: str,
        actor_id: str,
        write_off_date: Optional[date] = None
    ) -> LoanTransaction:
        """
        Write off everything a loan still owes

        Args:
            amount: Must equal the loan's total outstanding balance
            reason: Why the balance is uncollectible

        Raises:
            ValidationError: Missing reason or amount not matching the balance
            StateConflictError: If the loan is closed or already written off
        """
        with self._operation("write_off", "loan", loan_id, actor_id):
            require_actor(actor_id)
            if not reason or not reason.strip():
                raise ValidationError("A write-off reason is required")
            loan = self.get_loan(loan_id)
            self._check_loan_transition(loan, LoanStatus.WRITTEN_OFF)
            if amount != loan.total_outstanding:
                raise ValidationError(
                    f"Write-off amount {amount.to_string()} must equal the outstanding balance "
                    f"{loan.total_outstanding.to_string()}"
                )

            write_off_date = write_off_date or date.today()
            transaction = self._new_transaction(
                loan=loan,
                transaction_type=TransactionType.WRITE_OFF,
                amount=amount,
                principal=loan.outstanding_principal,
                interest=loan.outstanding_interest,
                penalty=loan.outstanding_penalty,
                transaction_date=write_off_date,
                reference=self._generate_reference("WO"),
                description=f"Write-off: {reason.strip()}",
                actor_id=actor_id
            )

            zero = Money.zero(amount.currency)
            loan.outstanding_principal = zero
            loan.outstanding_interest = zero
            loan.outstanding_penalty = zero
            loan.status = LoanStatus.WRITTEN_OFF
            loan.write_off_reason = reason.strip()
            loan.closed_date = write_off_date
            loan.updated_at = datetime.now(timezone.utc)

            with self.storage.atomic():
                self._save_loan(loan)
                self._record_transaction(transaction)

        self._audit(AuditEventType.LOAN_WRITTEN_OFF, "loan", loan.id, actor_id,
                    {"loan_number": loan.loan_number, "amount": amount.to_string(), "reason": reason})
        log_action(logger, "info", f"Loan {loan.loan_number} written off",
                   user_id=actor_id, action="write_off", resource=loan.id)
        self._notify(DomainEvent.LOAN_WRITTEN_OFF, "loan", loan.id,
                     {"loan_number": loan.loan_number, "amount": str(amount.amount)},
                     f"Loan {loan.loan_number} written off: {amount.to_string()}")
        return transaction

    def close_loan(self, loan_id: str, actor_id: str, closed_date: Optional[date] = None) -> Loan:
        """
        Close a fully repaid loan

        Raises:
            StateConflictError: If any installment is unpaid or principal remains
        """
        with self._operation("close_loan", "loan", loan_id, actor_id):
            require_actor(actor_id)
            loan = self.get_loan(loan_id)
            self._check_loan_transition(loan, LoanStatus.CLOSED)
            schedule = self.get_schedule(loan_id)
            if not loan.outstanding_principal.is_zero() or any(
                e.status != InstallmentStatus.PAID for e in schedule
            ):
                raise StateConflictError(
                    f"Loan {loan.loan_number} still has unpaid installments",
                    current_state=loan.status.value
                )
            loan.status = LoanStatus.CLOSED
            loan.closed_date = closed_date or date.today()
            loan.updated_at = datetime.now(timezone.utc)
            with self.storage.atomic():
                self._save_loan(loan)
                self._close_application(loan.application_id)

        self._audit(AuditEventType.LOAN_CLOSED, "loan", loan.id, actor_id,
                    {"loan_number": loan.loan_number, "closed_date": loan.closed_date})
        log_action(logger, "info", f"Loan {loan.loan_number} closed",
                   user_id=actor_id, action="close_loan", resource=loan.id)
        self._notify(DomainEvent.LOAN_CLOSED, "loan", loan.id,
                     {"loan_number": loan.loan_number}, f"Loan {loan.loan_number} closed")
        return loan

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_application(self, application_id: str) -> LoanApplication:
        """Get application by ID, raising NotFoundError if absent"""
        data = self.storage.load(self.applications_table, application_id)
        if not data:
            raise NotFoundError(f"Loan application {application_id} not found")
        return LoanApplication.from_dict(data)

    def get_application_by_number(self, application_number: str) -> LoanApplication:
        matches = self.storage.find(self.applications_table, {"application_number": application_number})
        if not matches:
            raise NotFoundError(f"Loan application {application_number} not found")
        return LoanApplication.from_dict(matches[0])

    def list_applications(self, status: Optional[ApplicationStatus] = None) -> List[LoanApplication]:
        filters = {"status": status.value} if status else {}
        applications = [LoanApplication.from_dict(d) for d in self.storage.find(self.applications_table, filters)]
        applications.sort(key=lambda a: a.application_number)
        return applications

    def get_loan(self, loan_id: str) -> Loan:
        """Get loan by ID, raising NotFoundError if absent"""
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError(f"Loan {loan_id} not found")
        return Loan.from_dict(data)

    def get_loan_by_number(self, loan_number: str) -> Loan:
        matches = self.storage.find(self.loans_table, {"loan_number": loan_number})
        if not matches:
            raise NotFoundError(f"Loan {loan_number} not found")
        return Loan.from_dict(matches[0])

    def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        customer_id: Optional[str] = None
    ) -> List[Loan]:
        filters = {}
        if status:
            filters["status"] = status.value
        if customer_id:
            filters["customer_id"] = customer_id
        loans = [Loan.from_dict(d) for d in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda l: l.loan_number)
        return loans

    def get_schedule(self, loan_id: str) -> List[RepaymentScheduleEntry]:
        """Installments of a loan in installment order"""
        entries = [
            RepaymentScheduleEntry.from_dict(d)
            for d in self.storage.find(self.schedule_table, {"loan_id": loan_id})
        ]
        entries.sort(key=lambda e: e.installment_number)
        return entries

    def get_transactions(self, loan_id: str) -> List[LoanTransaction]:
        """Ledger of a loan, oldest first"""
        transactions = [
            LoanTransaction.from_dict(d)
            for d in self.storage.find(self.transactions_table, {"loan_id": loan_id})
        ]
        transactions.sort(key=lambda t: (t.transaction_date, t.created_at))
        return transactions

    def get_transaction_by_reference(self, reference: str) -> Optional[LoanTransaction]:
        matches = self.storage.find(self.transactions_table, {"reference": reference})
        return LoanTransaction.from_dict(matches[0]) if matches else None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _operation(self, action: str, entity_type: str, entity_id: Optional[str], actor_id: Optional[str]):
        """Log and publish a failed operation, then let the error propagate"""
        try:
            yield
        except LendingError as e:
            level = "error" if isinstance(e, ArithmeticInvariantViolation) else "warning"
            log_action(logger, level, f"{action} failed: {e}",
                       user_id=actor_id, action=action, resource=entity_id,
                       extra={"error": type(e).__name__})
            self._notify(
                DomainEvent.OPERATION_FAILED, entity_type, entity_id or "",
                {"action": action, "error": type(e).__name__},
                str(e), success=False
            )
            raise

    def _audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        actor_id: str,
        metadata: Dict[str, Any]
    ) -> None:
        if self.config.enable_audit_logging:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
                user_id=actor_id
            )

    def _notify(
        self,
        event_type: DomainEvent,
        entity_type: str,
        entity_id: str,
        data: Dict[str, Any],
        message: str,
        success: bool = True
    ) -> None:
        if self.config.enable_events:
            self.publish_event(event_type, entity_type, entity_id, data, message=message, success=success)

    def _check_application_transition(self, application: LoanApplication, target: ApplicationStatus) -> None:
        if target not in APPLICATION_TRANSITIONS[application.status]:
            raise StateConflictError(
                f"Application {application.application_number} is {application.status.value}; "
                f"cannot move to {target.value}",
                current_state=application.status.value
            )

    def _check_loan_transition(self, loan: Loan, target: LoanStatus) -> None:
        if target not in LOAN_TRANSITIONS[loan.status]:
            raise StateConflictError(
                f"Loan {loan.loan_number} is {loan.status.value}; cannot move to {target.value}",
                current_state=loan.status.value
            )

    def _close_application(self, application_id: str) -> None:
        application = self.get_application(application_id)
        self._check_application_transition(application, ApplicationStatus.CLOSED)
        application.status = ApplicationStatus.CLOSED
        application.updated_at = datetime.now(timezone.utc)
        self._save_application(application)

    def _next_business_key(self, table: str, field_name: str, prefix: str) -> str:
        sequence = self.storage.count(table) + 1
        while True:
            key = f"{prefix}-{sequence:06d}"
            if not self.storage.find(table, {field_name: key}):
                return key
            sequence += 1

    def _generate_reference(self, kind: str) -> str:
        return f"{self.config.reference_prefix}-{kind}-{uuid.uuid4().hex[:12].upper()}"

    def _check_reference_unused(self, reference: str) -> None:
        if self.storage.find(self.transactions_table, {"reference": reference}):
            raise DuplicateReferenceError(reference)

    def _new_transaction(
        self,
        loan: Loan,
        transaction_type: TransactionType,
        amount: Money,
        principal: Money,
        interest: Money,
        penalty: Money,
        transaction_date: date,
        reference: str,
        description: str,
        actor_id: str
    ) -> LoanTransaction:
        now = datetime.now(timezone.utc)
        return LoanTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            transaction_type=transaction_type,
            amount=amount,
            principal_component=principal,
            interest_component=interest,
            penalty_component=penalty,
            transaction_date=transaction_date,
            reference=reference,
            description=description,
            actor_id=actor_id
        )

    def _record_transaction(self, transaction: LoanTransaction) -> None:
        """Append to the ledger; references are globally unique"""
        self._check_reference_unused(transaction.reference)
        self.storage.save(self.transactions_table, transaction.id, transaction.to_dict())

    def _save_application(self, application: LoanApplication) -> None:
        application.validate_state()
        application.version = self.storage.save_versioned(
            self.applications_table, application.id, application.to_dict(), application.version
        )

    def _save_loan(self, loan: Loan) -> None:
        loan.version = self.storage.save_versioned(
            self.loans_table, loan.id, loan.to_dict(), loan.version
        )

    def _save_schedule(self, entries: List[RepaymentScheduleEntry]) -> None:
        for entry in entries:
            self.storage.save(
                self.schedule_table,
                f"{entry.loan_id}_{entry.installment_number}",
                entry.to_dict()
            )
