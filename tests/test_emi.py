"""
Test suite for the EMI ledger

Installment state machine, lateness, payment application, penalty
bookkeeping and waivers.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from loan_engine.emi import (
    EMI, EMIStatus, PaymentMode, calculate_days_late, parse_payment_mode
)
from loan_engine.exceptions import (
    AlreadyPaidError, InvalidArgumentError, InvalidStatusError,
    NoPenaltyError, WaiverExceedsPenaltyError
)


def make_emi(amount="5000", penalty="0", due=date(2024, 3, 5), sequence=1):
    now = datetime.now(timezone.utc)
    return EMI(
        id=f"emi-{sequence}",
        created_at=now,
        updated_at=now,
        loan_id="loan-1",
        sequence=sequence,
        due_date=due,
        amount=Decimal(amount),
        principal_component=Decimal(amount) - Decimal("1000"),
        interest_component=Decimal("1000"),
        penalty_amount=Decimal(penalty)
    )


class TestDaysLate:
    """Test lateness calculation"""

    def test_on_or_before_due_date(self):
        """Test payments on or before the due date are not late"""
        assert calculate_days_late(date(2024, 3, 5), date(2024, 3, 5)) == 0
        assert calculate_days_late(date(2024, 3, 5), date(2024, 3, 1)) == 0

    def test_whole_days_after_due(self):
        """Test plain dates count whole days"""
        assert calculate_days_late(date(2024, 3, 5), date(2024, 3, 15)) == 10

    def test_instant_later_on_due_date(self):
        """Test any time on the due date itself is on time"""
        paid = datetime(2024, 3, 5, 23, 0, tzinfo=timezone.utc)
        assert calculate_days_late(date(2024, 3, 5), paid) == 0

    def test_instant_rounds_up(self):
        """Test a partial day past the due date counts as a full day"""
        paid = datetime(2024, 3, 6, 0, 30, tzinfo=timezone.utc)
        assert calculate_days_late(date(2024, 3, 5), paid) == 1


class TestPaymentModes:
    """Test payment mode parsing"""

    def test_parse_by_value(self):
        """Test modes may be given as strings"""
        assert parse_payment_mode("upi") == PaymentMode.UPI
        assert parse_payment_mode(PaymentMode.CHEQUE) == PaymentMode.CHEQUE

    def test_unknown_mode(self):
        """Test unknown modes are rejected"""
        with pytest.raises(InvalidArgumentError, match="Unknown payment mode"):
            parse_payment_mode("barter")


class TestEMIStateMachine:
    """Test installment transitions"""

    def test_legal_transitions(self):
        """Test pending can become overdue, partial then paid"""
        emi = make_emi()
        emi.transition_to(EMIStatus.OVERDUE)
        emi.transition_to(EMIStatus.PARTIAL)
        emi.transition_to(EMIStatus.PARTIAL)
        emi.transition_to(EMIStatus.PAID)
        assert emi.status == EMIStatus.PAID

    def test_terminal_states(self):
        """Test paid and waived EMIs cannot move"""
        emi = make_emi()
        emi.transition_to(EMIStatus.PAID)
        with pytest.raises(InvalidStatusError, match="cannot move from paid"):
            emi.transition_to(EMIStatus.PENDING)

    def test_partial_cannot_go_overdue(self):
        """Test a partially paid EMI does not revert to overdue"""
        emi = make_emi()
        emi.transition_to(EMIStatus.PARTIAL)
        assert not emi.can_transition_to(EMIStatus.OVERDUE)

    def test_materialize_due_state(self):
        """Test a pending EMI turns overdue only after its due date"""
        emi = make_emi(due=date(2024, 3, 5))
        assert not emi.materialize_due_state(date(2024, 3, 5))
        assert emi.status == EMIStatus.PENDING
        assert emi.materialize_due_state(date(2024, 3, 6))
        assert emi.status == EMIStatus.OVERDUE
        assert not emi.materialize_due_state(date(2024, 3, 7))

    def test_days_overdue(self):
        """Test days overdue counts from the due date and is 0 once settled"""
        emi = make_emi(due=date(2024, 3, 5))
        assert emi.days_overdue(date(2024, 4, 4)) == 30
        emi.transition_to(EMIStatus.PAID)
        assert emi.days_overdue(date(2024, 4, 4)) == 0


class TestRecordPayment:
    """Test applying payments"""

    def test_full_payment_with_penalty(self):
        """Test an EMI with a penalty is paid by amount plus penalty"""
        emi = make_emi(amount="5000", penalty="200")
        assert emi.total_due == Decimal("5200.00")

        result = emi.record_payment(Decimal("5200"), date(2024, 3, 20), PaymentMode.UPI)

        assert result.status == EMIStatus.PAID
        assert emi.balance_due == Decimal("0")
        assert emi.penalty_paid == Decimal("200.00")
        assert result.days_late == 15

    def test_partial_payment(self):
        """Test an underpayment leaves the EMI partial"""
        emi = make_emi()
        result = emi.record_payment(2000, date(2024, 3, 1), "cash")

        assert result.status == EMIStatus.PARTIAL
        assert result.balance_due == Decimal("3000.00")
        assert emi.paid_date == date(2024, 3, 1)
        assert len(emi.payments) == 1

    def test_partial_payments_complete(self):
        """Test successive partial payments settle the EMI"""
        emi = make_emi()
        emi.record_payment(2000, date(2024, 3, 1), "cash")
        emi.record_payment(2000, date(2024, 3, 2), "cash")
        result = emi.record_payment(1000, date(2024, 3, 3), "cash", reference="R-3")

        assert result.status == EMIStatus.PAID
        assert emi.paid_amount == Decimal("5000.00")
        assert [p.amount for p in emi.payments] == [
            Decimal("2000.00"), Decimal("2000.00"), Decimal("1000.00")
        ]
        assert emi.payment_reference == "R-3"

    def test_installment_settled_before_penalty(self):
        """Test penalty is only paid once the installment is covered"""
        emi = make_emi(amount="5000", penalty="200")
        emi.record_payment(5100, date(2024, 3, 20), "cash")
        assert emi.penalty_paid == Decimal("100.00")
        assert emi.status == EMIStatus.PARTIAL

    def test_penalty_levied_with_payment(self):
        """Test a supplied penalty overwrites the stored one"""
        emi = make_emi()
        result = emi.record_payment(1000, date(2024, 3, 20), "cash", penalty_amount=100)
        assert result.penalty_amount == Decimal("100.00")
        assert emi.total_due == Decimal("5100.00")

    def test_already_paid(self):
        """Test a paid EMI rejects further payments"""
        emi = make_emi()
        emi.record_payment(5000, date(2024, 3, 5), "cash")
        with pytest.raises(AlreadyPaidError, match="already paid"):
            emi.record_payment(1, date(2024, 3, 6), "cash")

    def test_waived_emi_rejects_payment(self):
        """Test a waived EMI cannot be paid"""
        emi = make_emi()
        emi.waive("Hardship")
        with pytest.raises(InvalidStatusError, match="waived"):
            emi.record_payment(100, date(2024, 3, 6), "cash")

    def test_invalid_amounts(self):
        """Test zero, negative and garbage amounts are rejected"""
        emi = make_emi()
        for amount in (0, -10, "abc"):
            with pytest.raises(InvalidArgumentError):
                emi.record_payment(amount, date(2024, 3, 5), "cash")
        assert emi.paid_amount == Decimal("0")
        assert emi.payments == []

    def test_negative_penalty_rejected(self):
        """Test a negative penalty is invalid"""
        emi = make_emi()
        with pytest.raises(InvalidArgumentError, match="cannot be negative"):
            emi.record_payment(100, date(2024, 3, 5), "cash", penalty_amount=-5)

    def test_serialization(self):
        """Test EMI to/from dict keeps payment history"""
        emi = make_emi(penalty="50")
        emi.record_payment(1000, date(2024, 3, 10), PaymentMode.CARD, reference="C-1", recorded_by="teller")

        restored = EMI.from_dict(emi.to_dict())

        assert restored.status == EMIStatus.PARTIAL
        assert restored.paid_amount == emi.paid_amount
        assert restored.penalty_amount == Decimal("50")
        assert restored.payments[0].recorded_by == "teller"
        assert restored.payment_mode == PaymentMode.CARD


class TestWaivers:
    """Test penalty and installment waivers"""

    def test_full_penalty_waiver(self):
        """Test waiving the whole penalty"""
        emi = make_emi(penalty="200")
        waived = emi.waive_penalty("First default", waived_by="manager")

        assert waived == Decimal("200.00")
        assert emi.penalty_waived == Decimal("200.00")
        assert emi.total_due == Decimal("5000.00")

    def test_partial_penalty_waiver(self):
        """Test waiving part of the penalty"""
        emi = make_emi(penalty="200")
        assert emi.waive_penalty("Goodwill", amount=50) == Decimal("50.00")
        assert emi.net_penalty == Decimal("150.00")

    def test_waiver_settles_covered_emi(self):
        """Test a waiver that leaves payments covering the EMI marks it paid"""
        emi = make_emi(penalty="200")
        emi.record_payment(5000, date(2024, 3, 20), "cash")
        assert emi.status == EMIStatus.PARTIAL

        emi.waive_penalty("Goodwill")

        assert emi.status == EMIStatus.PAID
        assert emi.balance_due == Decimal("0")

    def test_no_penalty(self):
        """Test waiving when there is no penalty"""
        emi = make_emi()
        with pytest.raises(NoPenaltyError):
            emi.waive_penalty("Nothing to waive")

    def test_fully_waived_penalty(self):
        """Test waiving a penalty twice"""
        emi = make_emi(penalty="200")
        emi.waive_penalty("Goodwill")
        with pytest.raises(NoPenaltyError, match="already fully waived"):
            emi.waive_penalty("Again")

    def test_waiver_exceeds_penalty(self):
        """Test a waiver larger than the remaining penalty"""
        emi = make_emi(penalty="200")
        with pytest.raises(WaiverExceedsPenaltyError):
            emi.waive_penalty("Too much", amount=250)

    def test_waiver_requires_reason(self):
        """Test the reason is mandatory"""
        emi = make_emi(penalty="200")
        with pytest.raises(InvalidArgumentError, match="reason is required"):
            emi.waive_penalty("  ")

    def test_administrative_waiver(self):
        """Test writing off an installment"""
        emi = make_emi()
        emi.record_payment(1000, date(2024, 3, 5), "cash")

        waived = emi.waive("Deceased borrower", waived_by="ops")

        assert waived == Decimal("4000.00")
        assert emi.status == EMIStatus.WAIVED
        assert emi.balance_due == Decimal("0")
        assert emi.is_settled

    def test_paid_emi_cannot_be_waived(self):
        """Test a paid EMI is terminal"""
        emi = make_emi()
        emi.record_payment(5000, date(2024, 3, 5), "cash")
        with pytest.raises(InvalidStatusError, match="cannot be waived"):
            emi.waive("Too late")


class TestForeclosureSettlement:
    """Test closing an EMI through foreclosure"""

    def test_settle_open_emi(self):
        """Test an open EMI is marked paid"""
        emi = make_emi()
        emi.settle_by_foreclosure(date(2024, 3, 1), "bank_transfer", "NEFT-1")
        assert emi.status == EMIStatus.PAID
        assert emi.payment_mode == PaymentMode.BANK_TRANSFER
        assert emi.remarks == "Foreclosure payment"

    def test_settled_emi_rejected(self):
        """Test a paid EMI cannot be settled again"""
        emi = make_emi()
        emi.record_payment(5000, date(2024, 3, 1), "cash")
        with pytest.raises(InvalidStatusError):
            emi.settle_by_foreclosure(date(2024, 3, 2), "cash")
