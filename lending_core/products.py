"""
Loan Product Module

Loan product definitions: pricing (interest, processing fee, penalty),
interest method and the amount/tenure bounds every application must respect.
Products are immutable once a loan has been booked against them.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType, require_actor
from .events import EventPublisherMixin, DomainEvent
from .exceptions import ValidationError, NotFoundError, StateConflictError
from .logging_config import get_logger, log_action


logger = get_logger("lending_core.products")


class InterestType(Enum):
    """Interest calculation methods"""
    FLAT = "flat"           # Simple interest on the original principal
    REDUCING = "reducing"   # Interest on the declining balance, equal installments


@dataclass
class LoanProduct(StorageRecord):
    """Loan product template"""
    code: str
    name: str
    interest_rate: Decimal          # Annual, percent: 24 means 24% p.a.
    interest_type: InterestType
    processing_fee_rate: Decimal    # Percent of principal
    penalty_rate: Decimal           # Percent of the overdue installment
    min_amount: Money
    max_amount: Money
    min_tenure_months: int
    max_tenure_months: int
    is_active: bool = True

    # General-ledger accounts income is booked to
    interest_income_account: Optional[str] = None
    processing_fee_account: Optional[str] = None
    penalty_income_account: Optional[str] = None

    def __post_init__(self):
        for name in ('interest_rate', 'processing_fee_rate', 'penalty_rate'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                value = Decimal(str(value))
                setattr(self, name, value)
            if value < Decimal('0'):
                raise ValidationError(f"{name} must not be negative")

        if not self.code:
            raise ValidationError("Product code is required")
        if self.min_amount.currency != self.max_amount.currency:
            raise ValidationError("Amount bounds must share a currency")
        if not self.min_amount.is_positive():
            raise ValidationError("Minimum amount must be positive")
        if self.min_amount > self.max_amount:
            raise ValidationError("Minimum amount exceeds maximum amount")
        if self.min_tenure_months < 1:
            raise ValidationError("Minimum tenure must be at least one month")
        if self.min_tenure_months > self.max_tenure_months:
            raise ValidationError("Minimum tenure exceeds maximum tenure")

    @property
    def currency(self) -> Currency:
        return self.min_amount.currency

    def validate_amount(self, amount: Money) -> None:
        """Raise ValidationError unless amount lies within the product bounds"""
        if amount.currency != self.currency:
            raise ValidationError(
                f"Amount currency {amount.currency.code} does not match product currency {self.currency.code}"
            )
        if not amount.is_positive():
            raise ValidationError("Amount must be positive")
        if amount < self.min_amount or amount > self.max_amount:
            raise ValidationError(
                f"Amount {amount.to_string()} is outside product limits "
                f"{self.min_amount.to_string()} - {self.max_amount.to_string()}"
            )

    def validate_tenure(self, tenure_months: int) -> None:
        """Raise ValidationError unless tenure lies within the product bounds"""
        if tenure_months is None or tenure_months <= 0:
            raise ValidationError("Tenure must be a positive number of months")
        if not self.min_tenure_months <= tenure_months <= self.max_tenure_months:
            raise ValidationError(
                f"Tenure {tenure_months} months is outside product limits "
                f"{self.min_tenure_months} - {self.max_tenure_months}"
            )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['interest_type'] = self.interest_type.value
        result['min_amount'] = self.min_amount.to_dict()
        result['max_amount'] = self.max_amount.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanProduct':
        data = dict(data)
        data.pop('version', None)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['interest_type'] = InterestType(data['interest_type'])
        for name in ('interest_rate', 'processing_fee_rate', 'penalty_rate'):
            data[name] = Decimal(data[name])
        data['min_amount'] = Money.from_dict(data['min_amount'])
        data['max_amount'] = Money.from_dict(data['max_amount'])
        return cls(**data)


# Fields that price or bound a loan; frozen once a loan references the product
PRICING_FIELDS = (
    'interest_rate', 'interest_type', 'processing_fee_rate', 'penalty_rate',
    'min_amount', 'max_amount', 'min_tenure_months', 'max_tenure_months'
)


class LoanProductCatalog(EventPublisherMixin):
    """
    Manages loan product definitions
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.products_table = "loan_products"
        self.loans_table = "loans"

    def create_product(
        self,
        code: str,
        name: str,
        interest_rate: Decimal,
        processing_fee_rate: Decimal,
        penalty_rate: Decimal,
        min_amount: Money,
        max_amount: Money,
        min_tenure_months: int,
        max_tenure_months: int,
        actor_id: str,
        interest_type: InterestType = InterestType.FLAT,
        interest_income_account: Optional[str] = None,
        processing_fee_account: Optional[str] = None,
        penalty_income_account: Optional[str] = None
    ) -> LoanProduct:
        """
        Create a new loan product

        Raises:
            ValidationError: If terms are invalid or the code is taken
        """
        require_actor(actor_id)
        if self.get_product_by_code(code):
            raise ValidationError(f"Product code {code} already exists")

        now = datetime.now(timezone.utc)
        product = LoanProduct(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            code=code,
            name=name,
            interest_rate=interest_rate,
            interest_type=interest_type,
            processing_fee_rate=processing_fee_rate,
            penalty_rate=penalty_rate,
            min_amount=min_amount,
            max_amount=max_amount,
            min_tenure_months=min_tenure_months,
            max_tenure_months=max_tenure_months,
            interest_income_account=interest_income_account,
            processing_fee_account=processing_fee_account,
            penalty_income_account=penalty_income_account
        )
        self.storage.save(self.products_table, product.id, product.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.PRODUCT_CREATED,
            entity_type="product",
            entity_id=product.id,
            metadata={
                "code": code,
                "interest_rate": product.interest_rate,
                "interest_type": product.interest_type,
                "processing_fee_rate": product.processing_fee_rate
            },
            user_id=actor_id
        )
        log_action(logger, "info", f"Loan product {code} created",
                   user_id=actor_id, action="create_product", resource=product.id)
        self.publish_event(DomainEvent.PRODUCT_CREATED, "product", product.id,
                           {"code": code}, message=f"Loan product {name} created")
        return product

    def get_product(self, product_id: str) -> LoanProduct:
        """Get product by ID, raising NotFoundError if absent"""
        data = self.storage.load(self.products_table, product_id)
        if not data:
            raise NotFoundError(f"Loan product {product_id} not found")
        return LoanProduct.from_dict(data)

    def get_product_by_code(self, code: str) -> Optional[LoanProduct]:
        matches = self.storage.find(self.products_table, {"code": code})
        return LoanProduct.from_dict(matches[0]) if matches else None

    def list_products(self, active_only: bool = False) -> List[LoanProduct]:
        products = [LoanProduct.from_dict(d) for d in self.storage.load_all(self.products_table)]
        if active_only:
            products = [p for p in products if p.is_active]
        products.sort(key=lambda p: p.code)
        return products

    def is_referenced(self, product_id: str) -> bool:
        """True once any loan has been booked against the product"""
        return bool(self.storage.find(self.loans_table, {"product_id": product_id}))

    def update_product(self, product_id: str, actor_id: str, **changes) -> LoanProduct:
        """
        Update product fields

        Pricing and bounds are frozen once a loan references the product.

        Raises:
            StateConflictError: If pricing changes target a referenced product
            ValidationError: If an unknown field is given or the result is invalid
        """
        require_actor(actor_id)
        product = self.get_product(product_id)

        unknown = set(changes) - set(PRICING_FIELDS) - {
            'name', 'interest_income_account', 'processing_fee_account', 'penalty_income_account'
        }
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        pricing_changes = [f for f in changes if f in PRICING_FIELDS]
        if pricing_changes and self.is_referenced(product_id):
            raise StateConflictError(
                f"Product {product.code} is referenced by existing loans; "
                f"{', '.join(sorted(pricing_changes))} cannot change"
            )

        data = product.to_dict()
        data.update({
            k: (v.value if isinstance(v, Enum) else v.to_dict() if isinstance(v, Money) else v)
            for k, v in changes.items()
        })
        data['updated_at'] = datetime.now(timezone.utc).isoformat()
        updated = LoanProduct.from_dict(data)
        self.storage.save(self.products_table, updated.id, updated.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.PRODUCT_UPDATED,
            entity_type="product",
            entity_id=product_id,
            metadata={"changed_fields": sorted(changes)},
            user_id=actor_id
        )
        self.publish_event(DomainEvent.PRODUCT_UPDATED, "product", product_id,
                           {"changed_fields": sorted(changes)},
                           message=f"Loan product {updated.name} updated")
        return updated

    def set_active(self, product_id: str, active: bool, actor_id: str) -> LoanProduct:
        """Activate or deactivate a product for new applications"""
        require_actor(actor_id)
        product = self.get_product(product_id)
        product.is_active = active
        product.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.products_table, product.id, product.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.PRODUCT_ACTIVATED if active else AuditEventType.PRODUCT_DEACTIVATED,
            entity_type="product",
            entity_id=product_id,
            metadata={"code": product.code},
            user_id=actor_id
        )
        return product
