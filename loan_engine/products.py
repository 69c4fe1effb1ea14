"""
Loan Product Module

Immutable product templates: pricing, tenure and amount bounds, fees,
late-penalty and prepayment rules, and customer eligibility criteria.
A loan copies these terms at origination; editing a product never
changes existing loans.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum

from .amortization import (
    InterestType, PenaltyType, PenaltyRule, coerce_amount, coerce_enum, coerce_months
)
from .exceptions import InvalidArgumentError
from .money import ZERO, Number, round_money, percent_of


class FeeType(Enum):
    """Processing fee calculation types"""
    PERCENTAGE = "percentage"  # Percentage of principal
    FIXED = "fixed"            # Fixed amount


class EmploymentType(Enum):
    SALARIED = "salaried"
    SELF_EMPLOYED = "self_employed"
    BUSINESS = "business"
    UNEMPLOYED = "unemployed"
    RETIRED = "retired"
    STUDENT = "student"


@dataclass(frozen=True)
class Customer:
    """Read-only snapshot of the borrower fields the engine needs"""
    id: str
    monthly_income: Optional[Decimal] = None
    employment_type: Optional[EmploymentType] = None
    age: Optional[int] = None
    credit_score: Optional[int] = None
    existing_emis: Decimal = ZERO

    def __post_init__(self):
        if self.monthly_income is not None:
            object.__setattr__(self, 'monthly_income',
                               coerce_amount(self.monthly_income, "monthly income"))
        object.__setattr__(self, 'existing_emis',
                           coerce_amount(self.existing_emis, "existing EMIs"))
        if self.employment_type is not None:
            object.__setattr__(self, 'employment_type',
                               coerce_enum(EmploymentType, self.employment_type, "employment type"))


@dataclass(frozen=True)
class EligibilityCriteria:
    """Minimum borrower requirements for a product"""
    min_age: int = 21
    max_age: int = 60
    min_income: Decimal = Decimal('10000')
    employment_types: Tuple[EmploymentType, ...] = (
        EmploymentType.SALARIED, EmploymentType.SELF_EMPLOYED, EmploymentType.BUSINESS
    )
    min_credit_score: int = 30

    def __post_init__(self):
        object.__setattr__(self, 'min_income', coerce_amount(self.min_income, "minimum income"))
        object.__setattr__(self, 'employment_types', tuple(
            coerce_enum(EmploymentType, e, "employment type") for e in self.employment_types
        ))
        if self.min_age > self.max_age:
            raise InvalidArgumentError("Minimum age cannot exceed maximum age")


@dataclass
class EligibilityCheck:
    """Outcome of checking a customer against a product"""
    eligible: bool
    reasons: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class LoanProduct:
    """Loan product template"""
    id: str
    name: str
    code: str
    interest_rate: Decimal
    interest_type: InterestType = InterestType.REDUCING
    min_tenure_months: int = 3
    max_tenure_months: int = 60
    min_amount: Decimal = Decimal('10000')
    max_amount: Decimal = Decimal('1000000')
    category: str = "personal"

    processing_fee: Decimal = ZERO
    processing_fee_type: FeeType = FeeType.PERCENTAGE

    late_penalty_type: PenaltyType = PenaltyType.PERCENTAGE
    late_penalty_rate: Decimal = Decimal('2')
    grace_period_days: int = 0
    max_penalty: Optional[Decimal] = None

    prepayment_allowed: bool = True
    prepayment_penalty_rate: Decimal = ZERO

    eligibility: EligibilityCriteria = field(default_factory=EligibilityCriteria)
    is_active: bool = True

    def __post_init__(self):
        for name in ('interest_rate', 'min_amount', 'max_amount', 'processing_fee',
                     'late_penalty_rate', 'prepayment_penalty_rate'):
            object.__setattr__(self, name, coerce_amount(getattr(self, name), name.replace('_', ' ')))
        if self.max_penalty is not None:
            object.__setattr__(self, 'max_penalty', coerce_amount(self.max_penalty, "penalty cap"))
        object.__setattr__(self, 'interest_type',
                           coerce_enum(InterestType, self.interest_type, "interest type"))
        object.__setattr__(self, 'processing_fee_type',
                           coerce_enum(FeeType, self.processing_fee_type, "fee type"))
        object.__setattr__(self, 'late_penalty_type',
                           coerce_enum(PenaltyType, self.late_penalty_type, "penalty type"))

        if not Decimal('0') <= self.interest_rate <= Decimal('50'):
            raise InvalidArgumentError(f"Interest rate must be between 0 and 50, got {self.interest_rate}")
        if self.min_tenure_months <= 0 or self.min_tenure_months > self.max_tenure_months:
            raise InvalidArgumentError("Tenure bounds must satisfy 0 < min <= max")
        if self.min_amount <= 0 or self.min_amount > self.max_amount:
            raise InvalidArgumentError("Amount bounds must satisfy 0 < min <= max")
        if not 0 <= self.grace_period_days <= 30:
            raise InvalidArgumentError(f"Grace period must be 0-30 days, got {self.grace_period_days}")
        if self.processing_fee < 0 or self.prepayment_penalty_rate < 0 or self.late_penalty_rate < 0:
            raise InvalidArgumentError("Fees and penalty rates cannot be negative")

    def calculate_processing_fee(self, principal: Number) -> Decimal:
        """Processing fee charged at origination"""
        principal = coerce_amount(principal, "principal")
        if self.processing_fee_type == FeeType.PERCENTAGE:
            return percent_of(principal, self.processing_fee)
        return round_money(self.processing_fee)

    def penalty_rule(self) -> PenaltyRule:
        return PenaltyRule(
            penalty_type=self.late_penalty_type,
            rate=self.late_penalty_rate,
            grace_period_days=self.grace_period_days,
            max_penalty=self.max_penalty
        )

    def validate_terms(self, principal: Number, tenure_months) -> Tuple[Decimal, int]:
        """
        Check a requested principal and tenure against the product bounds.

        Raises:
            InvalidArgumentError: Either value is outside the product bounds
        """
        principal = coerce_amount(principal, "principal")
        tenure = coerce_months(tenure_months)

        if principal < self.min_amount or principal > self.max_amount:
            raise InvalidArgumentError(
                f"Loan amount must be between {self.min_amount} and {self.max_amount}"
            )
        if tenure < self.min_tenure_months or tenure > self.max_tenure_months:
            raise InvalidArgumentError(
                f"Tenure must be between {self.min_tenure_months} and {self.max_tenure_months} months"
            )
        return principal, tenure

    def check_eligibility(self, customer: Customer) -> EligibilityCheck:
        """Collect every eligibility rule the customer fails"""
        criteria = self.eligibility
        reasons = []

        if customer.age is not None:
            if customer.age < criteria.min_age:
                reasons.append(f"Minimum age requirement is {criteria.min_age} years")
            if customer.age > criteria.max_age:
                reasons.append(f"Maximum age limit is {criteria.max_age} years")

        if customer.monthly_income is not None and customer.monthly_income < criteria.min_income:
            reasons.append(f"Minimum monthly income requirement is {criteria.min_income}")

        if criteria.employment_types and customer.employment_type not in criteria.employment_types:
            label = customer.employment_type.value if customer.employment_type else "unknown"
            reasons.append(f"Employment type {label} not eligible")

        if customer.credit_score is not None and customer.credit_score < criteria.min_credit_score:
            reasons.append(f"Minimum credit score requirement is {criteria.min_credit_score}")

        return EligibilityCheck(eligible=not reasons, reasons=reasons)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'code': self.code,
            'category': self.category,
            'interest_rate': str(self.interest_rate),
            'interest_type': self.interest_type.value,
            'min_tenure_months': self.min_tenure_months,
            'max_tenure_months': self.max_tenure_months,
            'min_amount': str(self.min_amount),
            'max_amount': str(self.max_amount),
            'processing_fee': str(self.processing_fee),
            'processing_fee_type': self.processing_fee_type.value,
            'late_penalty_type': self.late_penalty_type.value,
            'late_penalty_rate': str(self.late_penalty_rate),
            'grace_period_days': self.grace_period_days,
            'max_penalty': str(self.max_penalty) if self.max_penalty is not None else None,
            'prepayment_allowed': self.prepayment_allowed,
            'prepayment_penalty_rate': str(self.prepayment_penalty_rate),
            'eligibility': {
                'min_age': self.eligibility.min_age,
                'max_age': self.eligibility.max_age,
                'min_income': str(self.eligibility.min_income),
                'employment_types': [e.value for e in self.eligibility.employment_types],
                'min_credit_score': self.eligibility.min_credit_score,
            },
            'is_active': self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanProduct':
        eligibility = data.get('eligibility') or {}
        return cls(
            id=data['id'],
            name=data['name'],
            code=data['code'],
            category=data.get('category', 'personal'),
            interest_rate=Decimal(data['interest_rate']),
            interest_type=InterestType(data['interest_type']),
            min_tenure_months=data['min_tenure_months'],
            max_tenure_months=data['max_tenure_months'],
            min_amount=Decimal(data['min_amount']),
            max_amount=Decimal(data['max_amount']),
            processing_fee=Decimal(data['processing_fee']),
            processing_fee_type=FeeType(data['processing_fee_type']),
            late_penalty_type=PenaltyType(data['late_penalty_type']),
            late_penalty_rate=Decimal(data['late_penalty_rate']),
            grace_period_days=data['grace_period_days'],
            max_penalty=Decimal(data['max_penalty']) if data.get('max_penalty') else None,
            prepayment_allowed=data['prepayment_allowed'],
            prepayment_penalty_rate=Decimal(data['prepayment_penalty_rate']),
            eligibility=EligibilityCriteria(
                min_age=eligibility.get('min_age', 21),
                max_age=eligibility.get('max_age', 60),
                min_income=Decimal(eligibility.get('min_income', '10000')),
                employment_types=tuple(eligibility.get(
                    'employment_types', ('salaried', 'self_employed', 'business'))),
                min_credit_score=eligibility.get('min_credit_score', 30)
            ),
            is_active=data.get('is_active', True)
        )
