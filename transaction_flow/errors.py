"""
Transaction Flow Errors

User-input errors (amount, recipient, balance) are raised as the terminal
error of a flow after the failed attempt has been recorded. Configuration
gaps never raise; they degrade to a zero rate.
"""

from typing import Dict, Optional


class TransactionFlowError(Exception):
    """Base class for all transaction flow errors"""


class InvalidAmount(TransactionFlowError):
    """Amount is non-numeric or not strictly positive"""

    def __init__(self, amount):
        self.amount = amount
        super().__init__(f"Invalid transaction amount: {amount!r}")


class ValidationFailed(TransactionFlowError):
    """Transaction input failed validation"""

    def __init__(self, field_errors: Dict[str, str]):
        self.field_errors = dict(field_errors)
        details = "; ".join(f"{field}: {message}" for field, message in self.field_errors.items())
        super().__init__(f"Validation failed: {details}")


class InsufficientBalance(TransactionFlowError):
    """Balance does not cover the requested debit"""

    def __init__(self, deficit: float, balance_check=None):
        self.deficit = deficit
        self.balance_check = balance_check
        super().__init__(f"Insufficient balance: short by ${deficit:,.2f}")


class BalanceCheckFailed(TransactionFlowError):
    """Balance collaborator could not answer the sufficiency check"""


class FeeCalculationFailed(TransactionFlowError):
    """Fee calculation could not produce a breakdown"""


class SubmissionFailed(TransactionFlowError):
    """Execution provider rejected or failed the transaction"""

    def __init__(self, provider_error: Optional[str]):
        self.provider_error = provider_error
        super().__init__(f"Submission failed: {provider_error or 'unknown provider error'}")


class DuplicateTransaction(TransactionFlowError):
    """Transaction id has already been reserved or applied"""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Duplicate transaction id: {transaction_id}")


class InvalidStateTransition(TransactionFlowError):
    """Flow operated from a state that does not allow the operation"""

    def __init__(self, current_state, operation: str):
        self.current_state = current_state
        self.operation = operation
        state = getattr(current_state, "value", current_state)
        super().__init__(f"Cannot {operation} from state '{state}'")


class FlowCancelled(TransactionFlowError):
    """Transaction abandoned by the user before submission"""

    def __init__(self, reason: str = "cancelled by user"):
        self.reason = reason
        super().__init__(f"Transaction cancelled: {reason}")
