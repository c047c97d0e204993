"""
Shared fixtures: an in-memory lending engine with one flat-rate product
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_core.currency import Money, Currency
from lending_core.storage import InMemoryStorage
from lending_core.audit import AuditTrail
from lending_core.config import LendingConfig
from lending_core.products import LoanProductCatalog, InterestType
from lending_core.loans import LoanManager


ACTOR = "officer-1"


def ghs(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.GHS)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def lending_config():
    return LendingConfig(penalty_grace_days=0, deduct_processing_fee=True)


@pytest.fixture
def catalog(storage, audit_trail):
    return LoanProductCatalog(storage, audit_trail)


@pytest.fixture
def product(catalog):
    """24% flat, 1% processing fee, 5% penalty"""
    return catalog.create_product(
        code="SME-FLAT",
        name="Small Business Loan",
        interest_rate=Decimal('24'),
        processing_fee_rate=Decimal('1'),
        penalty_rate=Decimal('5'),
        min_amount=ghs(100),
        max_amount=ghs(50000),
        min_tenure_months=1,
        max_tenure_months=36,
        actor_id=ACTOR,
        interest_type=InterestType.FLAT
    )


@pytest.fixture
def loan_manager(storage, catalog, audit_trail, lending_config):
    return LoanManager(storage, catalog, audit_trail, config=lending_config)


@pytest.fixture
def approved_application(loan_manager, product):
    application = loan_manager.apply_for_loan(
        customer_id="cust-1",
        product_id=product.id,
        servicing_account_id="acct-1",
        amount=ghs(1200),
        tenure_months=12,
        purpose="Working capital",
        actor_id=ACTOR,
        applied_date=date(2024, 1, 10)
    )
    return loan_manager.approve_application(
        application.id, ghs(1200), actor_id="manager-1", approved_date=date(2024, 1, 12)
    )


@pytest.fixture
def loan(loan_manager, approved_application):
    """1200 GHS over 12 months at 24% flat, disbursed 2024-01-15"""
    return loan_manager.disburse(
        approved_application.id, actor_id=ACTOR, disbursement_date=date(2024, 1, 15)
    )
