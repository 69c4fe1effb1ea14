"""
Test suite for risk and credit scoring
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from loan_engine.loans import LoanStatus, RiskCategory, originate_loan
from loan_engine.products import Customer, LoanProduct
from loan_engine.risk import (
    FACTOR_WEIGHTS, calculate_customer_credit_score, calculate_loan_risk_score
)

START = date(2024, 1, 15)
AS_OF = date(2024, 7, 20)
CUSTOMER = Customer(id="cust-1", monthly_income=Decimal("60000"), age=35, employment_type="salaried")


def active_loan(principal=100000):
    product = LoanProduct(id="prod-1", name="Personal Loan", code="PL01", interest_rate=Decimal("12"))
    loan, emis = originate_loan(product, CUSTOMER, principal, 12, START, "LS2401000001",
                                auto_approve=True)
    loan.disburse(loan.disbursed_amount, "bank_transfer", on=START)
    return loan, emis


def punctual_loan():
    loan, emis = active_loan()
    for emi in emis[:6]:
        emi.record_payment(emi.total_due, emi.due_date, "upi")
    loan.update_payment_stats(emis, as_of=AS_OF)
    return loan, emis


def delinquent_loan(principal=100000):
    loan, emis = active_loan(principal)
    loan.update_payment_stats(emis, as_of=AS_OF)
    return loan, emis


class TestLoanRiskScore:
    """Test single-loan scoring"""

    def test_weights_sum_to_hundred(self):
        """Test the factor weights are a complete split"""
        assert sum(FACTOR_WEIGHTS.values()) == 100

    def test_new_loan_defaults(self):
        """Test a loan with no history scores on factor defaults"""
        loan, emis = active_loan()

        result = calculate_loan_risk_score(loan, emis, as_of=START)

        assert result.breakdown['payment_history'].score == 50
        assert result.breakdown['outstanding_dues'].score == 100
        assert result.breakdown['credit_utilization'].score == 70
        assert result.breakdown['account_age'].score == 40
        assert result.breakdown['payment_consistency'].score == 70
        assert result.score == 67
        assert result.category == RiskCategory.MEDIUM

    def test_punctual_borrower(self):
        """Test on-time payments score in the low-risk band"""
        loan, emis = punctual_loan()

        result = calculate_loan_risk_score(loan, emis, CUSTOMER, as_of=AS_OF)

        assert result.breakdown['payment_history'].score == 100
        assert result.breakdown['credit_utilization'].score == 100
        assert result.breakdown['account_age'].score == 70
        assert result.breakdown['payment_consistency'].score == 100
        assert result.score == 97
        assert result.category == RiskCategory.LOW
        assert result.recommendations == ["Excellent credit behavior! Keep it up."]

    def test_delinquent_borrower(self):
        """Test overdue installments pull the score down"""
        loan, emis = delinquent_loan()
        assert loan.status == LoanStatus.NPA or loan.status == LoanStatus.OVERDUE

        result = calculate_loan_risk_score(loan, emis, as_of=AS_OF)

        assert result.breakdown['outstanding_dues'].score == 0
        assert result.breakdown['outstanding_dues'].details['overdue_count'] == 6
        assert result.score == 45
        assert result.category == RiskCategory.HIGH
        assert "Clear overdue EMIs to improve credit standing" in result.recommendations

    def test_late_payments(self):
        """Test severe lateness is penalised beyond the on-time share"""
        loan, emis = active_loan()
        for emi in emis[:2]:
            emi.record_payment(emi.total_due, date(2024, 6, 1), "cash")
        loan.update_payment_stats(emis, as_of=AS_OF)

        result = calculate_loan_risk_score(loan, emis, as_of=AS_OF)

        assert result.breakdown['payment_history'].score == 0
        assert result.breakdown['payment_history'].details['severe_late'] == 2

    def test_score_is_bounded_integer(self):
        """Test scores are integers in 0-100"""
        for loan, emis in (punctual_loan(), delinquent_loan()):
            result = calculate_loan_risk_score(loan, emis, CUSTOMER, as_of=AS_OF)
            assert isinstance(result.score, int)
            assert 0 <= result.score <= 100
            for factor in result.breakdown.values():
                assert 0 <= factor.score <= 100

    def test_calculated_at_is_recorded(self):
        """Test the timestamp is carried onto the result"""
        loan, emis = active_loan()
        stamp = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)
        result = calculate_loan_risk_score(loan, emis, as_of=START, calculated_at=stamp)
        assert result.calculated_at == stamp
        assert result.to_dict()['category']['label'] == "Good"


class TestCustomerCreditScore:
    """Test aggregation across a customer's loans"""

    def test_no_history(self):
        """Test customers without loans score 50"""
        result = calculate_customer_credit_score([])
        assert result.score == 50
        assert result.category == RiskCategory.MEDIUM
        assert result.loans_analyzed == 0
        assert result.message == "No loan history available"

    def test_principal_weighted_mean(self):
        """Test larger loans weigh more"""
        result = calculate_customer_credit_score(
            [punctual_loan(), delinquent_loan(principal=50000)], CUSTOMER, as_of=AS_OF
        )

        assert [s.score for s in result.loan_scores] == [97, 49]
        assert result.score == 81
        assert result.loans_analyzed == 2

    def test_rejected_loans_ignored(self):
        """Test rejected and deleted loans do not count"""
        good = punctual_loan()
        product = LoanProduct(id="prod-1", name="Personal Loan", code="PL01", interest_rate=Decimal("12"))
        rejected, rejected_emis = originate_loan(product, CUSTOMER, 100000, 12, START, "LS2")
        rejected.reject("Policy")
        deleted = delinquent_loan()
        deleted[0].soft_delete()

        result = calculate_customer_credit_score(
            [good, (rejected, rejected_emis), deleted], CUSTOMER, as_of=AS_OF
        )

        assert result.loans_analyzed == 1
        assert result.score == 97
