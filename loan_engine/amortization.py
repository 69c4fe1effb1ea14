"""
Amortization Engine Module

Pure calculations for installment loans: EMI, amortization schedules,
outstanding principal, late penalties, foreclosure quotes and income-based
eligibility. No I/O, no clock reads, no logging.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple
from enum import Enum
import calendar

from .exceptions import InvalidArgumentError
from .money import ZERO, HUNDRED, Number, to_decimal, round_money, percent_of


class InterestType(Enum):
    """How interest accrues over the tenure"""
    REDUCING = "reducing"  # On the remaining principal
    FLAT = "flat"          # On the original principal, spread evenly


class PenaltyType(Enum):
    """Late penalty calculation methods"""
    PERCENTAGE = "percentage"                  # One-off % of the EMI
    FIXED_PER_DAY = "fixed_per_day"            # Fixed amount per late day
    PERCENTAGE_PER_DAY = "percentage_per_day"  # % of the EMI per late day


def coerce_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidArgumentError(f"Unknown {label}: {value!r}")


def coerce_amount(value: Optional[Number], label: str) -> Decimal:
    try:
        return to_decimal(value)
    except ValueError:
        raise InvalidArgumentError(f"Invalid {label}: {value!r}")


def coerce_months(value, label: str = "Tenure") -> int:
    if isinstance(value, bool):
        raise InvalidArgumentError(f"{label} must be a whole number of months, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, Decimal) and value.is_finite() and value == value.to_integral_value():
        return int(value)
    raise InvalidArgumentError(f"{label} must be a whole number of months, got {value!r}")


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the end of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def validate_loan_terms(principal: Number, annual_rate: Number,
                        tenure_months) -> Tuple[Decimal, Decimal, int]:
    """
    Validate and normalize principal, annual rate (%) and tenure.

    Raises:
        InvalidArgumentError: principal <= 0, tenure <= 0 or rate < 0
    """
    principal = coerce_amount(principal, "principal")
    annual_rate = coerce_amount(annual_rate, "interest rate")
    tenure = coerce_months(tenure_months)

    if principal <= 0:
        raise InvalidArgumentError(f"Principal must be positive, got {principal}")
    if tenure <= 0:
        raise InvalidArgumentError(f"Tenure must be positive, got {tenure}")
    if annual_rate < 0:
        raise InvalidArgumentError(f"Interest rate cannot be negative, got {annual_rate}")

    return principal, annual_rate, tenure


def _monthly_rate(annual_rate: Decimal) -> Decimal:
    return annual_rate / Decimal('12') / HUNDRED


def _flat_total_interest(principal: Decimal, annual_rate: Decimal, tenure: int) -> Decimal:
    """P * rate * n / 1200, charged on the original principal"""
    return round_money(principal * annual_rate * Decimal(tenure) / Decimal('1200'))


def _raw_emi(principal: Decimal, annual_rate: Decimal, tenure: int,
             interest_type: InterestType) -> Decimal:
    if annual_rate == 0:
        return principal / Decimal(tenure)

    if interest_type == InterestType.FLAT:
        return (principal + _flat_total_interest(principal, annual_rate, tenure)) / Decimal(tenure)

    # P * r * (1+r)^n / ((1+r)^n - 1)
    r = _monthly_rate(annual_rate)
    factor = (Decimal('1') + r) ** tenure
    return principal * r * factor / (factor - Decimal('1'))


def calculate_emi(principal: Number, annual_rate: Number, tenure_months,
                  interest_type=InterestType.REDUCING) -> Decimal:
    """
    Calculate the equated monthly installment.

    Args:
        principal: Loan amount
        annual_rate: Annual interest rate in percent (12 means 12%)
        tenure_months: Number of monthly installments
        interest_type: REDUCING or FLAT

    Returns:
        EMI rounded to 2 decimal places
    """
    principal, annual_rate, tenure = validate_loan_terms(principal, annual_rate, tenure_months)
    interest_type = coerce_enum(InterestType, interest_type, "interest type")
    return round_money(_raw_emi(principal, annual_rate, tenure, interest_type))


def calculate_total_interest(principal: Number, annual_rate: Number, tenure_months,
                             interest_type=InterestType.REDUCING) -> Decimal:
    """Total interest over the tenure: EMI * n - principal, or P * rate * n / 1200 for flat rate"""
    principal, annual_rate, tenure = validate_loan_terms(principal, annual_rate, tenure_months)
    interest_type = coerce_enum(InterestType, interest_type, "interest type")
    if interest_type == InterestType.FLAT:
        return _flat_total_interest(principal, annual_rate, tenure)
    emi = calculate_emi(principal, annual_rate, tenure, interest_type)
    return round_money(emi * Decimal(tenure) - principal)


@dataclass
class ScheduleEntry:
    """Single installment in an amortization schedule"""
    sequence: int
    due_date: date
    emi_amount: Decimal
    principal_component: Decimal
    interest_component: Decimal
    opening_balance: Decimal
    closing_balance: Decimal

    def __post_init__(self):
        # EMI must equal principal + interest
        if self.principal_component + self.interest_component != self.emi_amount:
            raise ValueError(f"EMI {self.emi_amount} does not equal principal "
                             f"{self.principal_component} + interest {self.interest_component}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence': self.sequence,
            'due_date': self.due_date.isoformat(),
            'emi_amount': str(self.emi_amount),
            'principal_component': str(self.principal_component),
            'interest_component': str(self.interest_component),
            'opening_balance': str(self.opening_balance),
            'closing_balance': str(self.closing_balance),
        }


@dataclass
class ScheduleSummary:
    """Totals for an amortization schedule"""
    principal: Decimal
    annual_rate: Decimal
    tenure_months: int
    interest_type: InterestType
    emi_amount: Decimal
    total_interest: Decimal
    total_payable: Decimal
    start_date: date
    end_date: date

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal': str(self.principal),
            'annual_rate': str(self.annual_rate),
            'tenure_months': self.tenure_months,
            'interest_type': self.interest_type.value,
            'emi_amount': str(self.emi_amount),
            'total_interest': str(self.total_interest),
            'total_payable': str(self.total_payable),
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
        }


@dataclass
class AmortizationSchedule:
    """Installments plus summary"""
    entries: List[ScheduleEntry]
    summary: ScheduleSummary

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ScheduleEntry]:
        return iter(self.entries)

    @property
    def total_principal(self) -> Decimal:
        return round_money(sum((e.principal_component for e in self.entries), ZERO))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schedule': [entry.to_dict() for entry in self.entries],
            'summary': self.summary.to_dict(),
        }


def _iterate_installments(principal: Decimal, annual_rate: Decimal, tenure: int,
                          interest_type: InterestType
                          ) -> Iterator[Tuple[int, Decimal, Decimal, Decimal, Decimal, Decimal]]:
    """Yield (sequence, opening, emi, principal, interest, closing) per installment"""
    emi = round_money(_raw_emi(principal, annual_rate, tenure, interest_type))
    r = _monthly_rate(annual_rate)
    flat_interest = round_money(principal * annual_rate / Decimal('1200'))
    flat_total_interest = _flat_total_interest(principal, annual_rate, tenure)

    balance = round_money(principal)
    interest_charged = ZERO
    for sequence in range(1, tenure + 1):
        opening = balance

        if interest_type == InterestType.FLAT:
            interest = flat_interest
        else:
            interest = round_money(opening * r)

        if sequence == tenure:
            # Final installment absorbs rounding drift
            if interest_type == InterestType.FLAT:
                interest = round_money(flat_total_interest - interest_charged)
            principal_part = opening
            closing = ZERO
        else:
            principal_part = min(round_money(emi - interest), opening)
            closing = round_money(opening - principal_part)
        amount = round_money(principal_part + interest)

        yield sequence, opening, amount, principal_part, interest, closing
        interest_charged += interest
        balance = closing


def generate_amortization_schedule(principal: Number, annual_rate: Number, tenure_months,
                                   start_date: date,
                                   interest_type=InterestType.REDUCING) -> AmortizationSchedule:
    """
    Generate the full repayment schedule.

    Installment i falls due add_months(start_date, i). The final installment
    takes whatever principal remains so the schedule always closes at zero.

    Args:
        principal: Loan amount
        annual_rate: Annual interest rate in percent
        tenure_months: Number of installments
        start_date: Disbursement/start date; the first EMI is one month later
        interest_type: REDUCING or FLAT

    Returns:
        AmortizationSchedule with entries and summary
    """
    principal, annual_rate, tenure = validate_loan_terms(principal, annual_rate, tenure_months)
    interest_type = coerce_enum(InterestType, interest_type, "interest type")
    if not isinstance(start_date, date):
        raise InvalidArgumentError(f"start_date must be a date, got {start_date!r}")

    entries = []
    for sequence, opening, amount, principal_part, interest, closing in _iterate_installments(
            principal, annual_rate, tenure, interest_type):
        entries.append(ScheduleEntry(
            sequence=sequence,
            due_date=add_months(start_date, sequence),
            emi_amount=amount,
            principal_component=principal_part,
            interest_component=interest,
            opening_balance=opening,
            closing_balance=closing
        ))

    total_interest = round_money(sum((e.interest_component for e in entries), ZERO))
    summary = ScheduleSummary(
        principal=round_money(principal),
        annual_rate=annual_rate,
        tenure_months=tenure,
        interest_type=interest_type,
        emi_amount=round_money(_raw_emi(principal, annual_rate, tenure, interest_type)),
        total_interest=total_interest,
        total_payable=round_money(principal + total_interest),
        start_date=start_date,
        end_date=entries[-1].due_date
    )
    return AmortizationSchedule(entries=entries, summary=summary)


def calculate_outstanding_principal(principal: Number, annual_rate: Number, tenure_months,
                                    emis_paid: int,
                                    interest_type=InterestType.REDUCING) -> Decimal:
    """Principal still owed after `emis_paid` scheduled installments"""
    principal, annual_rate, tenure = validate_loan_terms(principal, annual_rate, tenure_months)
    interest_type = coerce_enum(InterestType, interest_type, "interest type")

    if emis_paid >= tenure:
        return ZERO
    if emis_paid <= 0:
        return round_money(principal)

    for sequence, _, _, _, _, closing in _iterate_installments(
            principal, annual_rate, tenure, interest_type):
        if sequence == emis_paid:
            return closing
    return ZERO


@dataclass(frozen=True)
class PenaltyRule:
    """Late penalty configuration"""
    penalty_type: PenaltyType = PenaltyType.PERCENTAGE
    rate: Decimal = Decimal('2')
    grace_period_days: int = 0
    max_penalty: Optional[Decimal] = None

    def __post_init__(self):
        object.__setattr__(self, 'penalty_type',
                           coerce_enum(PenaltyType, self.penalty_type, "penalty type"))
        object.__setattr__(self, 'rate', coerce_amount(self.rate, "penalty rate"))
        if self.max_penalty is not None:
            object.__setattr__(self, 'max_penalty',
                               coerce_amount(self.max_penalty, "penalty cap"))

        if self.rate < 0:
            raise InvalidArgumentError("Penalty rate cannot be negative")
        if self.grace_period_days < 0:
            raise InvalidArgumentError("Grace period cannot be negative")
        if self.max_penalty is not None and self.max_penalty < 0:
            raise InvalidArgumentError("Penalty cap cannot be negative")


def calculate_late_penalty(emi_amount: Number, days_late: int,
                           rule: Optional[PenaltyRule] = None) -> Decimal:
    """
    Late penalty for an installment paid `days_late` days after its due date.

    Nothing accrues inside the grace period. Per-day methods count only the
    days beyond grace.
    """
    rule = rule or PenaltyRule()
    emi_amount = coerce_amount(emi_amount, "EMI amount")
    if emi_amount < 0:
        raise InvalidArgumentError("EMI amount cannot be negative")

    if days_late <= rule.grace_period_days:
        return ZERO

    effective_days = Decimal(days_late - rule.grace_period_days)

    if rule.penalty_type == PenaltyType.FIXED_PER_DAY:
        penalty = rule.rate * effective_days
    elif rule.penalty_type == PenaltyType.PERCENTAGE_PER_DAY:
        penalty = emi_amount * rule.rate * effective_days / HUNDRED
    else:
        penalty = emi_amount * rule.rate / HUNDRED

    if rule.max_penalty is not None and penalty > rule.max_penalty:
        penalty = rule.max_penalty

    return round_money(penalty)


@dataclass
class ForeclosureQuote:
    """Amount needed to close a loan before maturity"""
    outstanding_principal: Decimal
    pending_interest: Decimal
    pending_penalty: Decimal
    prepayment_penalty: Decimal
    total_foreclosure_amount: Decimal
    interest_rebate: Decimal = ZERO
    pending_emis: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'outstanding_principal': str(self.outstanding_principal),
            'pending_interest': str(self.pending_interest),
            'pending_penalty': str(self.pending_penalty),
            'prepayment_penalty': str(self.prepayment_penalty),
            'total_foreclosure_amount': str(self.total_foreclosure_amount),
            'interest_rebate': str(self.interest_rebate),
            'pending_emis': self.pending_emis,
        }


def calculate_foreclosure_amount(outstanding_principal: Number,
                                 pending_interest: Number = ZERO,
                                 prepayment_penalty_rate: Number = ZERO,
                                 pending_penalty: Number = ZERO) -> ForeclosureQuote:
    """
    Foreclosure quote: outstanding principal plus pending interest and
    penalties, plus a prepayment penalty charged on the outstanding principal.
    """
    outstanding_principal = round_money(coerce_amount(outstanding_principal, "outstanding principal"))
    pending_interest = round_money(coerce_amount(pending_interest, "pending interest"))
    pending_penalty = round_money(coerce_amount(pending_penalty, "pending penalty"))
    rate = coerce_amount(prepayment_penalty_rate, "prepayment penalty rate")

    for label, value in (("Outstanding principal", outstanding_principal),
                         ("Pending interest", pending_interest),
                         ("Pending penalty", pending_penalty),
                         ("Prepayment penalty rate", rate)):
        if value < 0:
            raise InvalidArgumentError(f"{label} cannot be negative")

    prepayment_penalty = percent_of(outstanding_principal, rate)
    total = round_money(outstanding_principal + pending_interest + pending_penalty + prepayment_penalty)

    return ForeclosureQuote(
        outstanding_principal=outstanding_principal,
        pending_interest=pending_interest,
        pending_penalty=pending_penalty,
        prepayment_penalty=prepayment_penalty,
        total_foreclosure_amount=total
    )


@dataclass
class EligibilityResult:
    """Income-based borrowing capacity"""
    eligible: bool
    max_emi: Decimal
    max_loan_amount: Decimal
    emi_to_income_ratio: Decimal
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'eligible': self.eligible,
            'max_emi': str(self.max_emi),
            'max_loan_amount': str(self.max_loan_amount),
            'emi_to_income_ratio': str(self.emi_to_income_ratio),
        }
        if self.reason:
            result['reason'] = self.reason
        return result


def calculate_loan_eligibility(monthly_income: Number, existing_emis: Number,
                               annual_rate: Number, tenure_months,
                               max_emi_to_income_ratio: Number = Decimal('0.5')) -> EligibilityResult:
    """
    Largest loan whose EMI fits inside the income ratio after existing EMIs.

    Inverts the reducing-balance EMI formula:
    P = EMI * ((1+r)^n - 1) / (r * (1+r)^n)
    """
    income = coerce_amount(monthly_income, "monthly income")
    existing = coerce_amount(existing_emis or ZERO, "existing EMIs")
    rate = coerce_amount(annual_rate, "interest rate")
    ratio = coerce_amount(max_emi_to_income_ratio, "EMI to income ratio")
    tenure = coerce_months(tenure_months)

    if income < 0 or existing < 0:
        raise InvalidArgumentError("Income and existing EMIs cannot be negative")
    if rate < 0:
        raise InvalidArgumentError(f"Interest rate cannot be negative, got {rate}")
    if tenure <= 0:
        raise InvalidArgumentError(f"Tenure must be positive, got {tenure}")
    if ratio <= 0 or ratio > 1:
        raise InvalidArgumentError(f"EMI to income ratio must be in (0, 1], got {ratio}")

    max_emi = round_money(income * ratio - existing)
    if max_emi <= 0:
        return EligibilityResult(
            eligible=False,
            max_emi=ZERO,
            max_loan_amount=ZERO,
            emi_to_income_ratio=ratio,
            reason="Existing EMIs exceed the allowed EMI to income ratio"
        )

    if rate == 0:
        max_principal = max_emi * Decimal(tenure)
    else:
        r = _monthly_rate(rate)
        factor = (Decimal('1') + r) ** tenure
        max_principal = max_emi * (factor - Decimal('1')) / (r * factor)

    return EligibilityResult(
        eligible=True,
        max_emi=max_emi,
        max_loan_amount=round_money(max_principal),
        emi_to_income_ratio=ratio
    )
