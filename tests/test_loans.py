"""
Test suite for loans module

Tests the application lifecycle, disbursement, repayment posting, penalties,
default, write-off and closure. All financial figures must reconcile exactly.
"""

import pytest
from decimal import Decimal
from datetime import date
from unittest.mock import Mock
import threading
import time

from lending_core.currency import Money, Currency
from lending_core.config import LendingConfig
from lending_core.products import InterestType
from lending_core.events import EventDispatcher, DomainEvent
from lending_core.audit import AuditEventType
from lending_core.schedule import InstallmentStatus
from lending_core.allocation import OverpaymentPolicy
from lending_core.loans import (
    LoanManager, LoanApplication, Loan, LoanTransaction, ApplicationStatus, LoanStatus,
    TransactionType, DisbursementMethod
)
from lending_core.exceptions import (
    ValidationError, NotFoundError, StateConflictError, DuplicateReferenceError,
    ConcurrentModificationError
)


ACTOR = "officer-1"


def ghs(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.GHS)


def apply(loan_manager, product, amount=1200, tenure=12, **overrides):
    params = dict(
        customer_id="cust-1",
        product_id=product.id,
        servicing_account_id="acct-1",
        amount=amount if isinstance(amount, Money) else ghs(amount),
        tenure_months=tenure,
        purpose="Working capital",
        actor_id=ACTOR
    )
    params.update(overrides)
    return loan_manager.apply_for_loan(**params)


class TestApplications:
    """Application intake, approval and rejection"""

    def test_apply(self, loan_manager, product):
        application = apply(loan_manager, product, applied_date=date(2024, 1, 10))

        assert application.status == ApplicationStatus.PENDING
        assert application.application_number == "LA-000001"
        assert application.applied_amount == ghs(1200)
        assert application.applied_date == date(2024, 1, 10)
        assert application.submitted_by == ACTOR
        assert application.approved_amount is None

        second = apply(loan_manager, product)
        assert second.application_number == "LA-000002"

    @pytest.mark.parametrize("overrides", [
        {"amount": ghs(50)},
        {"amount": ghs(60000)},
        {"tenure_months": 48},
        {"purpose": "  "},
        {"customer_id": ""},
        {"actor_id": ""},
        {"actor_id": None},
    ])
    def test_apply_validation(self, loan_manager, product, overrides):
        with pytest.raises(ValidationError):
            apply(loan_manager, product, **overrides)
        assert loan_manager.list_applications() == []

    def test_apply_to_inactive_product(self, loan_manager, catalog, product):
        catalog.set_active(product.id, False, actor_id=ACTOR)
        with pytest.raises(ValidationError, match="not accepting"):
            apply(loan_manager, product)

    def test_apply_to_unknown_product(self, loan_manager):
        with pytest.raises(NotFoundError):
            loan_manager.apply_for_loan(
                "cust-1", "missing", "acct-1", ghs(1000), 12, "Stock", actor_id=ACTOR
            )

    def test_approve(self, loan_manager, product):
        application = apply(loan_manager, product)
        approved = loan_manager.approve_application(
            application.id, ghs(1000), actor_id="manager-1", tenure_months=10,
            approved_date=date(2024, 1, 12)
        )

        assert approved.status == ApplicationStatus.APPROVED
        assert approved.approved_amount == ghs(1000)
        assert approved.approved_by == "manager-1"
        assert approved.tenure_months == 10
        assert approved.interest_rate == Decimal('24')
        assert approved.processing_fee_rate == Decimal('1')
        assert approved.interest_type == InterestType.FLAT

        stored = loan_manager.get_application(application.id)
        assert stored.status == ApplicationStatus.APPROVED
        assert stored.processing_fee_rate == Decimal('1')
        assert stored.interest_type == InterestType.FLAT

    def test_approve_out_of_bounds(self, loan_manager, product):
        application = apply(loan_manager, product)
        with pytest.raises(ValidationError):
            loan_manager.approve_application(application.id, ghs(99), actor_id=ACTOR)
        assert loan_manager.get_application(application.id).status == ApplicationStatus.PENDING

    def test_approve_twice(self, loan_manager, approved_application):
        with pytest.raises(StateConflictError) as exc_info:
            loan_manager.approve_application(approved_application.id, ghs(1200), actor_id=ACTOR)
        assert exc_info.value.current_state == "approved"

    def test_reject_requires_reason(self, loan_manager, product):
        application = apply(loan_manager, product)
        with pytest.raises(ValidationError):
            loan_manager.reject_application(application.id, "", actor_id=ACTOR)
        assert loan_manager.get_application(application.id).status == ApplicationStatus.PENDING

    def test_reject(self, loan_manager, product):
        application = apply(loan_manager, product)
        rejected = loan_manager.reject_application(application.id, "Insufficient cash flow", actor_id=ACTOR)

        assert rejected.status == ApplicationStatus.REJECTED
        assert rejected.rejection_reason == "Insufficient cash flow"

        with pytest.raises(StateConflictError):
            loan_manager.reject_application(application.id, "Again", actor_id=ACTOR)
        with pytest.raises(StateConflictError):
            loan_manager.disburse(application.id, actor_id=ACTOR)

    def test_application_state_invariants(self, loan_manager, product):
        application = apply(loan_manager, product)
        data = application.to_dict()
        data['status'] = 'approved'
        with pytest.raises(ValidationError):
            LoanApplication.from_dict(data)

    def test_lookups(self, loan_manager, product):
        application = apply(loan_manager, product)
        assert loan_manager.get_application_by_number("LA-000001").id == application.id
        assert loan_manager.list_applications(ApplicationStatus.PENDING)[0].id == application.id
        assert loan_manager.list_applications(ApplicationStatus.APPROVED) == []
        with pytest.raises(NotFoundError):
            loan_manager.get_application("missing")
        with pytest.raises(NotFoundError):
            loan_manager.get_application_by_number("LA-999999")

    def test_calculate_terms_before_approval(self, loan_manager, product):
        application = apply(loan_manager, product)
        terms = loan_manager.calculate_terms(application.id)
        assert terms.total_payable == ghs(1488)


class TestDisbursement:
    """Booking a loan"""

    def test_disburse(self, loan_manager, approved_application, loan):
        assert loan.loan_number == "LN-000001"
        assert loan.status == LoanStatus.ACTIVE
        assert loan.principal_amount == ghs(1200)
        assert loan.total_interest == ghs(288)
        assert loan.processing_fee == ghs(12)
        assert loan.total_payable == ghs(1488)
        assert loan.monthly_installment == ghs(124)
        assert loan.net_disbursed_amount == ghs(1188)
        assert loan.outstanding_principal == ghs(1200)
        assert loan.outstanding_interest == ghs(288)
        assert loan.outstanding_penalty.is_zero()
        assert loan.start_date == date(2024, 1, 15)
        assert loan.maturity_date == date(2025, 1, 15)

        application = loan_manager.get_application(approved_application.id)
        assert application.status == ApplicationStatus.DISBURSED

        schedule = loan_manager.get_schedule(loan.id)
        assert len(schedule) == 12
        assert schedule[0].due_date == date(2024, 2, 15)

        transactions = loan_manager.get_transactions(loan.id)
        assert len(transactions) == 1
        assert transactions[0].transaction_type == TransactionType.DISBURSEMENT
        assert transactions[0].amount == ghs(1200)
        assert "GHS 12.00" in transactions[0].description

    def test_disburse_is_exactly_once(self, loan_manager, approved_application, loan):
        with pytest.raises(StateConflictError):
            loan_manager.disburse(approved_application.id, actor_id=ACTOR)
        assert len(loan_manager.list_loans()) == 1
        assert len(loan_manager.get_schedule(loan.id)) == 12

    def test_disburse_pending_application(self, loan_manager, product):
        application = apply(loan_manager, product)
        with pytest.raises(StateConflictError):
            loan_manager.disburse(application.id, actor_id=ACTOR)

    def test_fee_not_deducted(self, storage, catalog, audit_trail, approved_application):
        manager = LoanManager(storage, catalog, audit_trail,
                              config=LendingConfig(deduct_processing_fee=False))
        loan = manager.disburse(approved_application.id, actor_id=ACTOR,
                                disbursement_method=DisbursementMethod.BANK_TRANSFER)
        assert loan.net_disbursed_amount == ghs(1200)
        assert loan.processing_fee == ghs(12)
        assert loan.disbursement_method == DisbursementMethod.BANK_TRANSFER

    def test_pricing_frozen_at_approval(self, loan_manager, catalog, product, approved_application):
        catalog.update_product(
            product.id, ACTOR, interest_rate=Decimal('30'), processing_fee_rate=Decimal('3'),
            interest_type=InterestType.REDUCING
        )
        assert loan_manager.calculate_terms(approved_application.id).processing_fee == ghs(12)

        loan = loan_manager.disburse(approved_application.id, actor_id=ACTOR,
                                     disbursement_date=date(2024, 1, 15))
        assert loan.interest_rate == Decimal('24')
        assert loan.interest_type == InterestType.FLAT
        assert loan.total_interest == ghs(288)
        assert loan.processing_fee == ghs(12)
        assert loan.net_disbursed_amount == ghs(1188)

    def test_product_pricing_frozen_once_referenced(self, catalog, product, loan):
        with pytest.raises(StateConflictError):
            catalog.update_product(product.id, ACTOR, interest_rate=Decimal('30'))
        renamed = catalog.update_product(product.id, ACTOR, name="SME Loan")
        assert renamed.name == "SME Loan"

    def test_disbursement_reference_must_be_unique(self, loan_manager, product):
        first = apply(loan_manager, product)
        second = apply(loan_manager, product)
        for application in (first, second):
            loan_manager.approve_application(application.id, ghs(1200), actor_id=ACTOR)

        loan_manager.disburse(first.id, actor_id=ACTOR, reference="DISB-1")
        with pytest.raises(DuplicateReferenceError):
            loan_manager.disburse(second.id, actor_id=ACTOR, reference="DISB-1")
        assert loan_manager.get_application(second.id).status == ApplicationStatus.APPROVED

    def test_record_round_trip(self, loan_manager, loan):
        restored = Loan.from_dict(loan.to_dict())
        assert restored.total_payable == loan.total_payable
        assert restored.interest_type == InterestType.FLAT
        assert restored.maturity_date == loan.maturity_date

        transaction = loan_manager.get_transactions(loan.id)[0]
        assert LoanTransaction.from_dict(transaction.to_dict()).reference == transaction.reference


class TestRepayments:
    """Posting repayments"""

    def test_single_installment(self, loan_manager, loan):
        result = loan_manager.post_repayment(loan.id, ghs(124), actor_id=ACTOR,
                                             payment_date=date(2024, 2, 14))

        schedule = loan_manager.get_schedule(loan.id)
        assert schedule[0].status == InstallmentStatus.PAID
        assert schedule[0].paid_date == date(2024, 2, 14)
        assert all(e.status == InstallmentStatus.PENDING for e in schedule[1:])

        assert result.transaction.transaction_type == TransactionType.REPAYMENT
        assert result.transaction.interest_component == ghs(24)
        assert result.transaction.principal_component == ghs(100)
        assert result.overpayment is None
        assert not result.loan_closed

        stored = loan_manager.get_loan(loan.id)
        assert stored.outstanding_principal == ghs(1100)
        assert stored.outstanding_interest == ghs(264)
        assert stored.last_payment_date == date(2024, 2, 14)

    def test_partial_payment(self, loan_manager, loan):
        loan_manager.post_repayment(loan.id, ghs(50), actor_id=ACTOR, payment_date=date(2024, 2, 14))
        entry = loan_manager.get_schedule(loan.id)[0]
        assert entry.status == InstallmentStatus.PARTIAL
        assert entry.interest_paid == ghs(24)
        assert entry.principal_paid == ghs(26)

    def test_duplicate_reference(self, loan_manager, loan):
        loan_manager.post_repayment(loan.id, ghs(124), actor_id=ACTOR, reference="RCPT-1")
        with pytest.raises(DuplicateReferenceError) as exc_info:
            loan_manager.post_repayment(loan.id, ghs(124), actor_id=ACTOR, reference="RCPT-1")

        assert exc_info.value.reference == "RCPT-1"
        assert loan_manager.get_loan(loan.id).outstanding_principal == ghs(1100)
        assert loan_manager.get_schedule(loan.id)[1].status == InstallmentStatus.PENDING
        assert len(loan_manager.get_transactions(loan.id)) == 2

    def test_overpayment_closes_loan(self, loan_manager, approved_application, loan):
        result = loan_manager.post_repayment(loan.id, ghs(1489), actor_id=ACTOR,
                                             payment_date=date(2024, 3, 1))

        assert result.overpayment.excess == ghs(1)
        assert result.transaction.amount == ghs(1488)
        assert result.loan_closed
        assert result.loan.closed_date == date(2024, 3, 1)
        assert all(e.status == InstallmentStatus.PAID for e in loan_manager.get_schedule(loan.id))

        stored = loan_manager.get_loan(loan.id)
        assert stored.status == LoanStatus.CLOSED
        assert stored.outstanding_principal.is_zero()
        assert stored.outstanding_interest.is_zero()
        assert loan_manager.get_application(approved_application.id).status == ApplicationStatus.CLOSED

        with pytest.raises(StateConflictError):
            loan_manager.post_repayment(loan.id, ghs(10), actor_id=ACTOR)

    def test_overpayment_rejected_by_policy(self, loan_manager, loan):
        with pytest.raises(ValidationError):
            loan_manager.post_repayment(loan.id, ghs(1489), actor_id=ACTOR,
                                        overpayment_policy=OverpaymentPolicy.REJECT)
        assert loan_manager.get_loan(loan.id).outstanding_principal == ghs(1200)
        assert len(loan_manager.get_transactions(loan.id)) == 1

    def test_exact_settlement_over_many_payments(self, loan_manager, loan):
        for month in range(12):
            result = loan_manager.post_repayment(loan.id, ghs(124), actor_id=ACTOR)
        assert result.loan_closed
        assert result.overpayment is None

    @pytest.mark.parametrize("amount", [ghs(0), ghs(-5), Money(Decimal('124'), Currency.USD)])
    def test_invalid_amount(self, loan_manager, loan, amount):
        with pytest.raises(ValidationError):
            loan_manager.post_repayment(loan.id, amount, actor_id=ACTOR)

    def test_actor_required(self, loan_manager, loan):
        with pytest.raises(ValidationError):
            loan_manager.post_repayment(loan.id, ghs(124), actor_id="")

    def test_unknown_loan(self, loan_manager):
        with pytest.raises(NotFoundError):
            loan_manager.post_repayment("missing", ghs(124), actor_id=ACTOR)

    def test_stale_write_is_refused(self, storage, loan_manager, loan):
        stale = loan_manager.get_loan(loan.id)
        loan_manager.post_repayment(loan.id, ghs(124), actor_id=ACTOR)

        with pytest.raises(ConcurrentModificationError):
            storage.save_versioned(loan_manager.loans_table, stale.id, stale.to_dict(), stale.version)

    def test_reducing_balance_loan_settles_exactly(self, loan_manager, catalog):
        product = catalog.create_product(
            code="AGRI-RB", name="Farm Input Loan", interest_rate=Decimal('18'),
            processing_fee_rate=Decimal('0'), penalty_rate=Decimal('2'),
            min_amount=ghs(500), max_amount=ghs(20000), min_tenure_months=3,
            max_tenure_months=24, actor_id=ACTOR, interest_type=InterestType.REDUCING
        )
        application = apply(loan_manager, product, amount=5000, tenure=6)
        loan_manager.approve_application(application.id, ghs(5000), actor_id=ACTOR)
        loan = loan_manager.disburse(application.id, actor_id=ACTOR, disbursement_date=date(2024, 1, 1))

        for entry in loan_manager.get_schedule(loan.id):
            loan_manager.post_repayment(loan.id, entry.total_due, actor_id=ACTOR)

        stored = loan_manager.get_loan(loan.id)
        assert stored.status == LoanStatus.CLOSED
        assert stored.total_outstanding.is_zero()

    def test_zero_installments_settle_with_the_last_payment(self, loan_manager, catalog):
        """A tiny reducing loan repays its principal early and owes nothing for the rest of the term"""
        product = catalog.create_product(
            code="MICRO-RB", name="Micro Loan", interest_rate=Decimal('24'),
            processing_fee_rate=Decimal('0'), penalty_rate=Decimal('0'),
            min_amount=ghs('0.01'), max_amount=ghs(100), min_tenure_months=1,
            max_tenure_months=12, actor_id=ACTOR, interest_type=InterestType.REDUCING
        )
        application = apply(loan_manager, product, amount=ghs('0.07'), tenure=12)
        loan_manager.approve_application(application.id, ghs('0.07'), actor_id=ACTOR)
        loan = loan_manager.disburse(application.id, actor_id=ACTOR, disbursement_date=date(2024, 1, 1))

        schedule = loan_manager.get_schedule(loan.id)
        assert [e.total_due for e in schedule[7:]] == [ghs(0)] * 5

        result = loan_manager.post_repayment(loan.id, loan.total_payable, actor_id=ACTOR,
                                             payment_date=date(2024, 2, 1))

        assert result.overpayment is None
        assert result.loan_closed
        assert all(e.status == InstallmentStatus.PAID for e in loan_manager.get_schedule(loan.id))
        assert loan_manager.get_application(application.id).status == ApplicationStatus.CLOSED


class TestConcurrentNumbering:
    """Business keys stay unique when requests race"""

    def _slow_count(self, storage, monkeypatch):
        count = storage.count

        def slow_count(table):
            result = count(table)
            time.sleep(0.02)
            return result

        monkeypatch.setattr(storage, "count", slow_count)

    def _run_together(self, worker, workers=8):
        barrier = threading.Barrier(workers)
        results, errors = [], []

        def run(index):
            barrier.wait()
            try:
                results.append(worker(index))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(i,)) for i in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert errors == []
        return results

    def test_application_numbers_unique(self, storage, loan_manager, product, monkeypatch):
        self._slow_count(storage, monkeypatch)

        applications = self._run_together(
            lambda i: apply(loan_manager, product, customer_id=f"cust-{i}")
        )

        numbers = [a.application_number for a in applications]
        assert len(set(numbers)) == 8
        assert sorted(numbers) == [f"LA-{n:06d}" for n in range(1, 9)]

    def test_loan_numbers_unique(self, storage, loan_manager, product, monkeypatch):
        application_ids = []
        for i in range(8):
            application = apply(loan_manager, product, customer_id=f"cust-{i}")
            loan_manager.approve_application(application.id, ghs(1200), actor_id=ACTOR)
            application_ids.append(application.id)
        self._slow_count(storage, monkeypatch)

        loans = self._run_together(
            lambda i: loan_manager.disburse(application_ids[i], actor_id=ACTOR,
                                            disbursement_date=date(2024, 1, 15))
        )

        assert len({loan.loan_number for loan in loans}) == 8
        assert storage.count(loan_manager.loans_table) == 8


class TestArrearsAndPenalties:
    """Overdue tracking and penalty assessment"""

    def test_arrears_summary(self, loan_manager, loan):
        summary = loan_manager.get_arrears_summary(loan.id, as_of=date(2024, 4, 1))
        assert summary.days_in_arrears == 46
        assert summary.overdue_installments == 2
        assert summary.arrears_amount == ghs(248)
        assert summary.total_outstanding == ghs(1488)
        # Read-only
        assert loan_manager.get_loan(loan.id).days_in_arrears == 0

    def test_refresh_arrears_persists(self, loan_manager, loan):
        loan_manager.refresh_arrears(loan.id, actor_id=ACTOR, as_of=date(2024, 4, 1))
        assert loan_manager.get_loan(loan.id).days_in_arrears == 46
        statuses = [e.status for e in loan_manager.get_schedule(loan.id)[:3]]
        assert statuses == [InstallmentStatus.OVERDUE, InstallmentStatus.OVERDUE, InstallmentStatus.PENDING]

    def test_assess_penalties_once_per_installment(self, loan_manager, loan):
        charges = loan_manager.assess_penalties(loan.id, actor_id=ACTOR, as_of=date(2024, 2, 20))
        assert len(charges) == 1
        assert charges[0].transaction_type == TransactionType.PENALTY
        assert charges[0].amount == ghs('6.20')
        assert loan_manager.get_loan(loan.id).outstanding_penalty == ghs('6.20')

        assert loan_manager.assess_penalties(loan.id, actor_id=ACTOR, as_of=date(2024, 2, 25)) == []

        later = loan_manager.assess_penalties(loan.id, actor_id=ACTOR, as_of=date(2024, 3, 20))
        assert len(later) == 1
        assert loan_manager.get_loan(loan.id).outstanding_penalty == ghs('12.40')

    def test_penalty_grace_days(self, storage, catalog, audit_trail, loan):
        manager = LoanManager(storage, catalog, audit_trail, config=LendingConfig(penalty_grace_days=10))
        assert manager.assess_penalties(loan.id, actor_id=ACTOR, as_of=date(2024, 2, 20)) == []
        assert len(manager.assess_penalties(loan.id, actor_id=ACTOR, as_of=date(2024, 2, 26))) == 1

    def test_penalty_paid_after_installment(self, loan_manager, loan):
        loan_manager.assess_penalties(loan.id, actor_id=ACTOR, as_of=date(2024, 2, 20))

        result = loan_manager.post_repayment(loan.id, ghs('130.20'), actor_id=ACTOR,
                                             payment_date=date(2024, 2, 21))
        assert result.allocation.penalty_allocated == ghs('6.20')
        assert loan_manager.get_schedule(loan.id)[0].status == InstallmentStatus.PAID
        assert loan_manager.get_loan(loan.id).outstanding_penalty.is_zero()


class TestDefaultWriteOffClosure:
    """Terminal transitions"""

    def test_mark_default(self, loan_manager, loan):
        defaulted = loan_manager.mark_default(loan.id, actor_id=ACTOR, reason="120 days in arrears")
        assert defaulted.status == LoanStatus.DEFAULTED
        with pytest.raises(StateConflictError):
            loan_manager.mark_default(loan.id, actor_id=ACTOR)

        # Recoveries are still accepted
        loan_manager.post_repayment(loan.id, ghs(124), actor_id=ACTOR)
        assert loan_manager.get_loan(loan.id).status == LoanStatus.DEFAULTED

    def test_write_off_amount_must_match_balance(self, loan_manager, loan):
        with pytest.raises(ValidationError):
            loan_manager.write_off(loan.id, ghs(1000), "Borrower deceased", actor_id=ACTOR)
        with pytest.raises(ValidationError):
            loan_manager.write_off(loan.id, ghs(1488), "", actor_id=ACTOR)
        assert loan_manager.get_loan(loan.id).status == LoanStatus.ACTIVE

    def test_write_off(self, loan_manager, loan):
        loan_manager.post_repayment(loan.id, ghs(124), actor_id=ACTOR)
        loan_manager.mark_default(loan.id, actor_id=ACTOR)

        transaction = loan_manager.write_off(loan.id, ghs(1364), "Borrower relocated", actor_id=ACTOR,
                                             write_off_date=date(2024, 12, 31))
        assert transaction.transaction_type == TransactionType.WRITE_OFF
        assert transaction.principal_component == ghs(1100)
        assert transaction.interest_component == ghs(264)

        stored = loan_manager.get_loan(loan.id)
        assert stored.status == LoanStatus.WRITTEN_OFF
        assert stored.total_outstanding.is_zero()
        assert stored.write_off_reason == "Borrower relocated"

        with pytest.raises(StateConflictError):
            loan_manager.post_repayment(loan.id, ghs(10), actor_id=ACTOR)

    def test_close_requires_full_repayment(self, loan_manager, loan):
        with pytest.raises(StateConflictError):
            loan_manager.close_loan(loan.id, actor_id=ACTOR)

    def test_close_already_closed(self, loan_manager, loan):
        loan_manager.post_repayment(loan.id, ghs(1488), actor_id=ACTOR)
        with pytest.raises(StateConflictError):
            loan_manager.close_loan(loan.id, actor_id=ACTOR)


class TestAuditAndEvents:
    """Every change is audited and reported"""

    def test_lifecycle_is_audited_with_actor(self, loan_manager, audit_trail, loan):
        loan_manager.post_repayment(loan.id, ghs(124), actor_id="teller-7")

        events = audit_trail.get_events_for_entity("loan", loan.id)
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_DISBURSED, AuditEventType.LOAN_REPAYMENT_POSTED
        ]
        assert events[1].user_id == "teller-7"
        assert events[1].metadata["principal"] == "GHS 100.00"
        assert audit_trail.verify_integrity()['valid']

    def test_audit_can_be_disabled(self, storage, catalog, audit_trail, product):
        manager = LoanManager(storage, catalog, audit_trail,
                              config=LendingConfig(enable_audit_logging=False))
        before = audit_trail.count_events()
        apply(manager, product)
        assert audit_trail.count_events() == before

    def test_operation_results_published(self, loan_manager, loan):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe_all(handler)
        loan_manager.set_event_dispatcher(dispatcher)

        loan_manager.post_repayment(loan.id, ghs(1489), actor_id=ACTOR)

        published = [call.args[0] for call in handler.call_args_list]
        assert [e.event_type for e in published] == [
            DomainEvent.LOAN_REPAYMENT, DomainEvent.LOAN_OVERPAYMENT, DomainEvent.LOAN_CLOSED
        ]
        assert all(e.result.success for e in published)
        assert "GHS 1.00" in published[1].result.message

    def test_failures_published(self, loan_manager, loan):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.OPERATION_FAILED, handler)
        loan_manager.set_event_dispatcher(dispatcher)

        with pytest.raises(ValidationError):
            loan_manager.post_repayment(loan.id, ghs(0), actor_id=ACTOR)

        event = handler.call_args.args[0]
        assert event.result.success is False
        assert event.data == {"action": "post_repayment", "error": "ValidationError"}
