"""
Transaction Flow Core

Fee calculation and transaction lifecycle for a consumer finance platform.

Components:
- fee_rates / fee_calculator: Rate tables and five-component fee breakdowns
- validator: Amount, recipient and asset validation
- balance: Per-user balances with serialized, idempotent mutation
- flow: Transaction state machine (validate -> fees -> confirm -> submit -> settle)
- failure_recorder / transaction_history: SQLite history of every attempt
- execution: Execution adapters (scripted, ccxt-backed)
- rate_table_parser: Excel/CSV rate sheet to YAML configuration
- service: Composition root exposing the public operations

Flow States:
1. idle
2. validating - input validation and balance check
3. calculating - fee calculation
4. confirming - immutable snapshot awaiting user confirmation
5. processing - reservation and submission
6. pending_external_confirmation - awaiting settlement
7. completed / error
"""

from .balance import (
    Balance,
    BalanceModel,
    InMemoryBalanceSource,
    StrategyBalance,
)
from .config import (
    DEFAULT_CONFIG,
    load_config,
)
from .errors import (
    BalanceCheckFailed,
    DuplicateTransaction,
    FeeCalculationFailed,
    FlowCancelled,
    InsufficientBalance,
    InvalidAmount,
    InvalidStateTransition,
    SubmissionFailed,
    TransactionFlowError,
    ValidationFailed,
)
from .events import (
    EventBus,
    FlowStateChanged,
    TransactionCancelled,
    TransactionCompleted,
    TransactionCreated,
    TransactionFailed,
    TransactionProcessingStarted,
)
from .execution import (
    CcxtExecutionAdapter,
    ScriptedExecutionAdapter,
    SubmissionResult,
)
from .fee_calculator import FeeCalculator
from .fee_rates import FeeRateTables
from .flow import (
    FlowResult,
    FlowState,
    TransactionFlow,
)
from .models import (
    BalanceCheck,
    BuyTransaction,
    ConfirmationSnapshot,
    DepositTransaction,
    FailedStep,
    FeeBreakdown,
    PaymentMethod,
    RoutingPlan,
    SellTransaction,
    SendTransaction,
    StartStrategyTransaction,
    StopStrategyTransaction,
    TransactionDescriptor,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
    TransferTransaction,
    ValidationResult,
    WithdrawTransaction,
    descriptor_from_dict,
)
from .rate_table_parser import RateTableParser
from .service import (
    TransactionService,
    create_transaction_service,
    fees_as_legacy_dict,
)
from .transaction_history import TransactionHistoryDB
from .validator import TransactionValidator

__all__ = [
    # Service
    'TransactionService',
    'create_transaction_service',
    'fees_as_legacy_dict',

    # Flow
    'TransactionFlow',
    'FlowState',
    'FlowResult',

    # Descriptors and results
    'TransactionDescriptor',
    'DepositTransaction',
    'WithdrawTransaction',
    'SendTransaction',
    'TransferTransaction',
    'BuyTransaction',
    'SellTransaction',
    'StartStrategyTransaction',
    'StopStrategyTransaction',
    'descriptor_from_dict',
    'TransactionType',
    'PaymentMethod',
    'RoutingPlan',
    'FeeBreakdown',
    'BalanceCheck',
    'ValidationResult',
    'ConfirmationSnapshot',
    'TransactionRecord',
    'TransactionStatus',
    'FailedStep',

    # Fees
    'FeeRateTables',
    'FeeCalculator',
    'RateTableParser',

    # Balances
    'Balance',
    'StrategyBalance',
    'BalanceModel',
    'InMemoryBalanceSource',

    # Validation, execution, history
    'TransactionValidator',
    'ScriptedExecutionAdapter',
    'CcxtExecutionAdapter',
    'SubmissionResult',
    'TransactionHistoryDB',

    # Events
    'EventBus',
    'TransactionCreated',
    'TransactionProcessingStarted',
    'TransactionCompleted',
    'TransactionFailed',
    'TransactionCancelled',
    'FlowStateChanged',

    # Configuration
    'DEFAULT_CONFIG',
    'load_config',

    # Errors
    'TransactionFlowError',
    'InvalidAmount',
    'ValidationFailed',
    'InsufficientBalance',
    'BalanceCheckFailed',
    'FeeCalculationFailed',
    'SubmissionFailed',
    'DuplicateTransaction',
    'InvalidStateTransition',
    'FlowCancelled',
]

__version__ = '1.0.0'
__author__ = 'Transaction Flow Core'
__description__ = 'Fee calculation and transaction flow with persisted history'
