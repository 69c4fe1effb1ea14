"""
Test suite for loan restructuring

Preview and application of new tenure/rate terms over the unpaid
installments.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_engine.amortization import add_months, calculate_emi
from loan_engine.emi import EMIStatus
from loan_engine.exceptions import InvalidArgumentError, InvalidStatusError, NoPendingEMIsError
from loan_engine.loans import LoanStatus, originate_loan
from loan_engine.products import Customer, LoanProduct
from loan_engine.restructuring import (
    outstanding_principal_of, preview_restructure, restructure_loan
)

START = date(2024, 1, 15)
TODAY = date(2024, 4, 1)


def active_loan(principal=80000, tenure=10):
    product = LoanProduct(id="prod-1", name="Personal Loan", code="PL01", interest_rate=Decimal("12"))
    customer = Customer(id="cust-1", monthly_income=Decimal("60000"), age=35, employment_type="salaried")
    loan, emis = originate_loan(product, customer, principal, tenure, START, "LS2401000001",
                                auto_approve=True)
    loan.disburse(loan.disbursed_amount, "bank_transfer", on=START)
    return loan, emis


class TestPreview:
    """Test restructure previews"""

    def test_longer_tenure_lowers_emi(self):
        """Test doubling the tenure over 80000 outstanding lowers the EMI"""
        loan, emis = active_loan()

        preview = preview_restructure(loan, emis, new_tenure=20)

        assert preview.current.remaining_emis == 10
        assert preview.proposed.outstanding_principal == Decimal("80000.00")
        assert preview.proposed.emi_amount == calculate_emi(80000, 12, 20)
        assert preview.proposed.emi_amount < preview.current.emi_amount
        assert preview.proposed.emi_reduction_percent >= 0
        assert preview.proposed.total_payable == preview.proposed.emi_amount * 20

    def test_preview_is_idempotent(self):
        """Test previews mutate nothing and repeat exactly"""
        loan, emis = active_loan()
        loan_before = loan.to_dict()
        emis_before = [e.to_dict() for e in emis]

        first = preview_restructure(loan, emis, new_tenure=20, new_rate=10)
        second = preview_restructure(loan, emis, new_tenure=20, new_rate=10)

        assert first.to_dict() == second.to_dict()
        assert loan.to_dict() == loan_before
        assert [e.to_dict() for e in emis] == emis_before

    def test_zero_rate_override(self):
        """Test a zero rate is a valid new rate"""
        loan, emis = active_loan()
        preview = preview_restructure(loan, emis, new_rate=0)
        assert preview.proposed.tenure == 10
        assert preview.proposed.emi_amount == Decimal("8000.00")

    def test_new_terms_required(self):
        """Test at least one of tenure or rate is required"""
        loan, emis = active_loan()
        with pytest.raises(InvalidArgumentError, match="new tenure or a new interest rate"):
            preview_restructure(loan, emis)

    def test_invalid_tenure(self):
        """Test non-positive tenures are rejected"""
        loan, emis = active_loan()
        with pytest.raises(InvalidArgumentError, match="New tenure must be positive"):
            preview_restructure(loan, emis, new_tenure=0)

    def test_nothing_pending(self):
        """Test fully paid ledgers cannot be restructured"""
        loan, emis = active_loan()
        for emi in emis:
            emi.record_payment(emi.total_due, emi.due_date, "cash")
        with pytest.raises(NoPendingEMIsError):
            preview_restructure(loan, emis, new_tenure=12)


class TestOutstandingPrincipal:
    """Test interest-first allocation of partial payments"""

    def test_partial_below_interest(self):
        """Test a payment smaller than the interest leaves principal untouched"""
        loan, emis = active_loan()
        emis[0].record_payment(500, emis[0].due_date, "cash")
        assert outstanding_principal_of(emis) == Decimal("80000.00")

    def test_partial_above_interest(self):
        """Test the excess over interest reduces principal"""
        loan, emis = active_loan()
        interest = emis[0].interest_component
        emis[0].record_payment(interest + 500, emis[0].due_date, "cash")
        assert outstanding_principal_of(emis) == Decimal("79500.00")


class TestRestructureLoan:
    """Test applying a restructure"""

    def test_replaces_pending_installments(self):
        """Test settled EMIs are kept and the new schedule continues the sequence"""
        loan, emis = active_loan()
        for emi in emis[:2]:
            emi.record_payment(emi.total_due, emi.due_date, "cash")
        expected_principal = outstanding_principal_of(emis[2:])

        result = restructure_loan(loan, emis, "Income reduced", new_tenure=12,
                                  today=TODAY, processed_by="officer")

        assert len(result.removed_emis) == 8
        assert len(result.new_emis) == 12
        assert [e.sequence for e in result.emis] == list(range(1, 15))
        assert result.new_emis[0].due_date == add_months(TODAY, 1)
        assert sum(e.principal_component for e in result.new_emis) == expected_principal
        assert loan.restructured
        assert loan.tenure_months == 14
        assert loan.total_emis == 14
        assert loan.emi_amount == calculate_emi(expected_principal, 12, 12)
        assert loan.status == LoanStatus.ACTIVE
        assert result.record.old_tenure == 10
        assert result.record.processed_by == "officer"
        assert loan.restructure_history == [result.record]

    def test_overdue_loan_becomes_active(self):
        """Test restructuring clears the arrears"""
        loan, emis = active_loan()
        loan.update_payment_stats(emis, as_of=TODAY)
        assert loan.status == LoanStatus.OVERDUE

        result = restructure_loan(loan, emis, "Hardship", new_rate=10, today=TODAY)

        assert loan.status == LoanStatus.ACTIVE
        assert loan.interest_rate == Decimal("10")
        assert all(e.status == EMIStatus.PENDING for e in result.emis)

    def test_partial_payment_kept_in_total_paid(self):
        """Test money paid on replaced partial EMIs still counts as paid"""
        loan, emis = active_loan()
        emis[0].record_payment(1300, emis[0].due_date, "cash")

        restructure_loan(loan, emis, "Rate cut", new_rate=11, today=TODAY)

        assert loan.archived_paid_amount == Decimal("1300.00")
        assert loan.total_paid == Decimal("1300.00")

    def test_reason_required(self):
        """Test a reason is mandatory"""
        loan, emis = active_loan()
        with pytest.raises(InvalidArgumentError, match="reason is required"):
            restructure_loan(loan, emis, " ", new_tenure=12, today=TODAY)

    def test_only_servicing_loans(self):
        """Test pending loans cannot be restructured"""
        product = LoanProduct(id="prod-1", name="Personal Loan", code="PL01", interest_rate=Decimal("12"))
        loan, emis = originate_loan(product, Customer(id="cust-1", employment_type="salaried"), 80000, 10, START, "LS1")
        with pytest.raises(InvalidStatusError, match="Only active or overdue"):
            restructure_loan(loan, emis, "Hardship", new_tenure=12, today=TODAY)
