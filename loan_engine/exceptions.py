"""
Loan Engine Exceptions

Every error the engine raises carries a stable code so a controller can map
it to a response without string matching.
"""

from typing import Any, Dict, List, Optional


class LoanEngineError(Exception):
    """Base exception for all loan engine errors"""

    code = "LOAN_ENGINE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to an error response body"""
        result = {
            'error': self.__class__.__name__,
            'code': self.code,
            'message': self.message,
        }
        if self.details:
            result['details'] = self.details
        return result


class InvalidArgumentError(LoanEngineError, ValueError):
    """Input outside its valid domain"""

    code = "INVALID_ARGUMENT"


class AlreadyPaidError(LoanEngineError):
    """Payment attempted on an EMI that is already paid"""

    code = "ALREADY_PAID"


class NoPendingEMIsError(LoanEngineError):
    """Restructure or foreclosure with nothing outstanding"""

    code = "NO_PENDING_EMIS"


class AmountMismatchError(LoanEngineError):
    """Disbursed or settled amount differs from the expected amount"""

    code = "AMOUNT_MISMATCH"


class InvalidStatusError(LoanEngineError):
    """Operation not allowed in the current lifecycle state"""

    code = "INVALID_STATUS"


class NotEligibleError(LoanEngineError):
    """Customer fails the product eligibility rules"""

    code = "NOT_ELIGIBLE"

    def __init__(self, message: str, reasons: Optional[List[str]] = None):
        super().__init__(message, {'reasons': list(reasons or [])})
        self.reasons = list(reasons or [])


class NoPenaltyError(LoanEngineError):
    """Penalty waiver requested on an EMI with no outstanding penalty"""

    code = "NO_PENALTY"


class WaiverExceedsPenaltyError(LoanEngineError):
    """Waiver amount larger than the unwaived penalty"""

    code = "WAIVER_EXCEEDS_PENALTY"


class LoanNotFoundError(LoanEngineError):
    code = "LOAN_NOT_FOUND"


class EMINotFoundError(LoanEngineError):
    code = "EMI_NOT_FOUND"


class ProductNotFoundError(LoanEngineError):
    code = "PRODUCT_NOT_FOUND"
