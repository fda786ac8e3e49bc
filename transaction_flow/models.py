"""
Transaction Flow Models

Closed set of transaction descriptors (one frozen dataclass per transaction
type), routing plans, fee breakdowns, balance checks and the persisted
transaction record.
"""

import math
import uuid
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from .errors import InvalidAmount


class TransactionType(str, Enum):
    """Transaction types"""
    DEPOSIT = 'add'
    WITHDRAW = 'withdraw'
    SEND = 'send'
    TRANSFER = 'transfer'
    BUY = 'buy'
    SELL = 'sell'
    START_STRATEGY = 'start_strategy'
    STOP_STRATEGY = 'stop_strategy'


class PaymentMethod(str, Enum):
    """Funding instruments. Everything except PLATFORM_BALANCE is external."""
    APPLE_PAY = 'apple_pay'
    GOOGLE_PAY = 'google_pay'
    CREDIT_DEBIT_CARD = 'credit_debit_card'
    BANK_ACCOUNT = 'bank_account'
    PAYPAL = 'paypal'
    PLATFORM_BALANCE = 'platform_balance'

    @property
    def is_external(self) -> bool:
        return self is not PaymentMethod.PLATFORM_BALANCE


class FeeDirection(str, Enum):
    ONRAMP = 'onramp'
    OFFRAMP = 'offramp'


class FeeSource(str, Enum):
    """Which of provider/exchange fee a transaction is charged"""
    PROVIDER = 'provider'
    EXCHANGE = 'exchange'


class TransactionStatus(str, Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'


class FailedStep(str, Enum):
    """Diagnostic tag stored with every failed record"""
    VALIDATION = 'validation'
    BALANCE_CHECK = 'balance_check'
    FEE_CALCULATION = 'fee_calculation'
    CONFIRMATION = 'confirmation'
    SUBMISSION = 'submission'
    SETTLEMENT = 'settlement'


def parse_amount(value: Any) -> float:
    """
    Parse a transaction amount

    Args:
        value: int, float, Decimal or numeric string

    Returns:
        Amount as float

    Raises:
        InvalidAmount: non-numeric, non-finite or not strictly positive
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmount(value)

    try:
        if isinstance(value, str):
            amount = float(Decimal(value.strip()))
        else:
            amount = float(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(value)

    if not math.isfinite(amount) or amount <= 0:
        raise InvalidAmount(value)

    return amount


def _coerce_payment_method(value) -> Optional[PaymentMethod]:
    if value is None or isinstance(value, PaymentMethod):
        return value
    return PaymentMethod(value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TransactionDescriptor:
    """
    Base descriptor shared by every transaction type

    Subclasses declare the fields their type needs and how the type is
    funded, which fee direction applies, and which chain it settles on.
    """
    user_id: str
    amount: Any
    transaction_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    currency: str = 'USD'

    type: ClassVar[TransactionType]
    inbound: ClassVar[bool] = False

    def __post_init__(self):
        if type(self) is TransactionDescriptor:
            raise TypeError("TransactionDescriptor is abstract, use a concrete transaction type")
        if not self.user_id:
            raise ValueError("user_id is required")
        if not self.transaction_id:
            raise ValueError("transaction_id is required")

    @property
    def asset(self) -> Optional[str]:
        return None

    @property
    def recipient(self) -> Optional[str]:
        return None

    @property
    def payment_method(self) -> Optional[PaymentMethod]:
        return None

    @property
    def strategy_id(self) -> Optional[str]:
        return None

    @property
    def chain(self) -> Optional[str]:
        return None

    @property
    def externally_funded(self) -> bool:
        """True when an external instrument funds the transaction"""
        return False

    @property
    def fee_direction(self) -> Optional[FeeDirection]:
        return None

    def settlement_chain(self, asset_chains: Dict[str, str], default_chain: Optional[str]) -> Optional[str]:
        """Chain the transaction settles on (before routing overrides)"""
        return default_chain

    def describe(self) -> str:
        return f"{self.type.value} ${self._display_amount()}"

    def _display_amount(self) -> str:
        try:
            return f"{parse_amount(self.amount):,.2f}"
        except InvalidAmount:
            return str(self.amount)


@dataclass(frozen=True)
class DepositTransaction(TransactionDescriptor):
    """Inbound fiat funding from an external instrument"""
    payment_method: Optional[PaymentMethod] = None

    type: ClassVar[TransactionType] = TransactionType.DEPOSIT
    inbound: ClassVar[bool] = True

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, 'payment_method', _coerce_payment_method(self.payment_method))

    @property
    def externally_funded(self) -> bool:
        return True

    @property
    def fee_direction(self) -> Optional[FeeDirection]:
        return FeeDirection.ONRAMP

    def describe(self) -> str:
        method = self.payment_method.value if self.payment_method else 'unknown method'
        return f"Deposit ${self._display_amount()} via {method}"


@dataclass(frozen=True)
class WithdrawTransaction(TransactionDescriptor):
    """Outbound fiat to an external instrument"""
    payment_method: Optional[PaymentMethod] = None

    type: ClassVar[TransactionType] = TransactionType.WITHDRAW

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, 'payment_method', _coerce_payment_method(self.payment_method))

    @property
    def externally_funded(self) -> bool:
        return True

    @property
    def fee_direction(self) -> Optional[FeeDirection]:
        return FeeDirection.OFFRAMP

    def describe(self) -> str:
        method = self.payment_method.value if self.payment_method else 'unknown method'
        return f"Withdraw ${self._display_amount()} to {method}"


@dataclass(frozen=True)
class SendTransaction(TransactionDescriptor):
    """Peer transfer to another platform user (@username)"""
    recipient: Optional[str] = None

    type: ClassVar[TransactionType] = TransactionType.SEND

    @property
    def payment_method(self) -> Optional[PaymentMethod]:
        return PaymentMethod.PLATFORM_BALANCE

    def describe(self) -> str:
        return f"Send ${self._display_amount()} to {self.recipient or 'unknown recipient'}"


@dataclass(frozen=True)
class TransferTransaction(TransactionDescriptor):
    """On-chain transfer to an external wallet address"""
    recipient: Optional[str] = None
    asset: Optional[str] = 'USDC'
    chain: Optional[str] = None

    type: ClassVar[TransactionType] = TransactionType.TRANSFER

    @property
    def payment_method(self) -> Optional[PaymentMethod]:
        return PaymentMethod.PLATFORM_BALANCE

    def settlement_chain(self, asset_chains: Dict[str, str], default_chain: Optional[str]) -> Optional[str]:
        if self.chain:
            return self.chain.upper()
        return asset_chains.get((self.asset or '').upper())

    def describe(self) -> str:
        address = self.recipient or 'unknown address'
        short = address if len(address) <= 14 else f"{address[:10]}..."
        return f"Transfer ${self._display_amount()} {self.asset} to {short}"


@dataclass(frozen=True)
class BuyTransaction(TransactionDescriptor):
    """Asset purchase, funded internally or by an external instrument"""
    asset: Optional[str] = None
    payment_method: Optional[PaymentMethod] = PaymentMethod.PLATFORM_BALANCE

    type: ClassVar[TransactionType] = TransactionType.BUY

    def __post_init__(self):
        super().__post_init__()
        method = _coerce_payment_method(self.payment_method) or PaymentMethod.PLATFORM_BALANCE
        object.__setattr__(self, 'payment_method', method)

    @property
    def externally_funded(self) -> bool:
        return self.payment_method.is_external

    @property
    def fee_direction(self) -> Optional[FeeDirection]:
        return FeeDirection.ONRAMP if self.externally_funded else None

    def settlement_chain(self, asset_chains: Dict[str, str], default_chain: Optional[str]) -> Optional[str]:
        # The purchased asset's chain, never the funding chain
        return asset_chains.get((self.asset or '').upper())

    def describe(self) -> str:
        return f"Buy ${self._display_amount()} of {self.asset or 'unknown asset'}"


@dataclass(frozen=True)
class SellTransaction(TransactionDescriptor):
    """Asset sale back into the available balance"""
    asset: Optional[str] = None

    type: ClassVar[TransactionType] = TransactionType.SELL

    @property
    def payment_method(self) -> Optional[PaymentMethod]:
        return PaymentMethod.PLATFORM_BALANCE

    def settlement_chain(self, asset_chains: Dict[str, str], default_chain: Optional[str]) -> Optional[str]:
        return asset_chains.get((self.asset or '').upper())

    def describe(self) -> str:
        return f"Sell ${self._display_amount()} of {self.asset or 'unknown asset'}"


@dataclass(frozen=True)
class StartStrategyTransaction(TransactionDescriptor):
    """Move funds into a yield strategy"""
    strategy_id: Optional[str] = None
    payment_method: Optional[PaymentMethod] = PaymentMethod.PLATFORM_BALANCE

    type: ClassVar[TransactionType] = TransactionType.START_STRATEGY

    def __post_init__(self):
        super().__post_init__()
        method = _coerce_payment_method(self.payment_method) or PaymentMethod.PLATFORM_BALANCE
        object.__setattr__(self, 'payment_method', method)

    @property
    def externally_funded(self) -> bool:
        return self.payment_method.is_external

    @property
    def fee_direction(self) -> Optional[FeeDirection]:
        return FeeDirection.ONRAMP if self.externally_funded else None

    def describe(self) -> str:
        return f"Start strategy {self.strategy_id or 'unnamed'} with ${self._display_amount()}"


@dataclass(frozen=True)
class StopStrategyTransaction(TransactionDescriptor):
    """Withdraw funds from one strategy, or from all strategies when no id is given"""
    strategy_id: Optional[str] = None

    type: ClassVar[TransactionType] = TransactionType.STOP_STRATEGY

    @property
    def payment_method(self) -> Optional[PaymentMethod]:
        return PaymentMethod.PLATFORM_BALANCE

    def describe(self) -> str:
        return f"Stop strategy {self.strategy_id or '(all)'} for ${self._display_amount()}"


DESCRIPTOR_TYPES = {
    TransactionType.DEPOSIT: DepositTransaction,
    TransactionType.WITHDRAW: WithdrawTransaction,
    TransactionType.SEND: SendTransaction,
    TransactionType.TRANSFER: TransferTransaction,
    TransactionType.BUY: BuyTransaction,
    TransactionType.SELL: SellTransaction,
    TransactionType.START_STRATEGY: StartStrategyTransaction,
    TransactionType.STOP_STRATEGY: StopStrategyTransaction,
}


def descriptor_from_dict(data: Dict[str, Any]) -> TransactionDescriptor:
    """
    Build a typed descriptor from a loosely shaped transaction dict

    Accepted keys: type, userId/user_id, amount, id/transactionId,
    currency, asset, recipient, chain, paymentMethod, strategyId.
    Keys the target type does not declare are ignored.

    Raises:
        ValueError: unknown transaction type or payment method
    """
    tx_type = TransactionType(data['type'])
    descriptor_class = DESCRIPTOR_TYPES[tx_type]

    values = {
        'user_id': data.get('user_id') or data.get('userId'),
        'amount': data.get('amount'),
        'currency': data.get('currency', 'USD'),
        'asset': data.get('asset'),
        'recipient': data.get('recipient'),
        'chain': data.get('chain'),
        'payment_method': data.get('payment_method') or data.get('paymentMethod'),
        'strategy_id': data.get('strategy_id') or data.get('strategyId'),
    }
    tx_id = data.get('transaction_id') or data.get('transactionId') or data.get('id')
    if tx_id:
        values['transaction_id'] = tx_id

    declared = {f.name for f in fields(descriptor_class)}
    kwargs = {
        key: value for key, value in values.items()
        if key in declared and (value is not None or key in ('user_id', 'amount'))
    }
    return descriptor_class(**kwargs)


@dataclass(frozen=True)
class RoutingPlan:
    """Cross-chain settlement route. The last target chain is where funds land."""
    source_chain: Optional[str] = None
    target_chains: Tuple[str, ...] = ()

    @property
    def target_chain(self) -> Optional[str]:
        return self.target_chains[-1] if self.target_chains else None

    @property
    def needs_routing(self) -> bool:
        return bool(self.target_chains) and self.source_chain != self.target_chain

    def cache_key(self) -> Tuple:
        return (self.source_chain, self.target_chains)


@dataclass(frozen=True)
class FeeRates:
    """Rate applied per fee component"""
    platform: float
    network: float
    provider: float
    exchange: float
    protocol: float


@dataclass(frozen=True)
class FeeBreakdown:
    """
    Fee breakdown for one transaction

    total is always the sum of the five components; exactly one of
    provider_fee / exchange_fee can be non-zero, as indicated by fee_source.
    """
    amount: float
    platform_fee: float
    network_fee: float
    provider_fee: float
    exchange_fee: float
    protocol_fee: float
    total: float
    rates: FeeRates
    fee_source: FeeSource
    chain: Optional[str] = None

    @property
    def funding_fee(self) -> float:
        """Provider or exchange fee, whichever this transaction is charged"""
        return self.provider_fee if self.fee_source is FeeSource.PROVIDER else self.exchange_fee

    @property
    def effective_rate(self) -> float:
        """Total fee as a percentage of the amount"""
        return (self.total / self.amount) * 100 if self.amount else 0.0

    def breakdown_lines(self) -> List[Dict[str, Any]]:
        """Non-zero components as display lines"""
        lines = []
        components = [
            ('platform', 'Platform Fee', self.platform_fee, self.rates.platform),
            ('network', f"Network Fee ({self.chain or 'unresolved'})", self.network_fee, self.rates.network),
            ('provider', 'Payment Provider Fee', self.provider_fee, self.rates.provider),
            ('exchange', 'Exchange Fee', self.exchange_fee, self.rates.exchange),
            ('protocol', 'Strategy Protocol Fee', self.protocol_fee, self.rates.protocol),
        ]
        for fee_type, label, amount, rate in components:
            if amount > 0:
                lines.append({
                    'type': fee_type,
                    'description': f"{label} ({rate * 100:.3f}%)",
                    'amount': amount,
                    'rate': rate,
                })
        return lines

    def display_summary(self) -> str:
        parts = [line['type'] for line in self.breakdown_lines()]
        summary = ', '.join(parts) if parts else 'minimal fees'
        return f"Includes {summary} fees. Total: ${self.total:.2f} ({self.effective_rate:.2f}%)"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['fee_source'] = self.fee_source.value
        return data


@dataclass(frozen=True)
class BalanceCheck:
    """
    Result of a sufficiency check

    available_balance is the balance pool the rule compares against
    (available, invested or strategy). deficit is
    max(0, required_amount - available_balance) for internally covered debits
    and 0 when an external instrument covers the transaction.
    """
    sufficient: bool
    available_balance: float
    deficit: float
    required_amount: float


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ConfirmationSnapshot:
    """
    Immutable enriched transaction presented for confirmation and submitted
    for execution. net_amount is set for inbound types only; other types
    debit the full amount and track fees separately.
    """
    descriptor: TransactionDescriptor
    fees: FeeBreakdown
    balance_check: BalanceCheck
    validation: ValidationResult
    net_amount: Optional[float] = None
    routing_plan: Optional[RoutingPlan] = None

    @property
    def transaction_id(self) -> str:
        return self.descriptor.transaction_id

    @property
    def amount(self) -> float:
        return self.fees.amount


@dataclass
class TransactionRecord:
    """Persisted transaction history record"""
    id: str
    user_id: str
    type: str
    amount: float
    currency: str
    asset: Optional[str]
    recipient: Optional[str]
    payment_method: Optional[str]
    timestamp: datetime
    status: TransactionStatus
    description: str
    error: Optional[str] = None
    failed_at_step: Optional[FailedStep] = None
    fees_total: Optional[float] = None
    net_amount: Optional[float] = None
    correlation_id: Optional[str] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_descriptor(
        cls,
        descriptor: TransactionDescriptor,
        status: TransactionStatus,
        description: Optional[str] = None,
        **kwargs
    ) -> 'TransactionRecord':
        try:
            amount = parse_amount(descriptor.amount)
        except InvalidAmount:
            amount = 0.0

        method = descriptor.payment_method
        return cls(
            id=descriptor.transaction_id,
            user_id=descriptor.user_id,
            type=descriptor.type.value,
            amount=amount,
            currency=descriptor.currency,
            asset=descriptor.asset,
            recipient=descriptor.recipient,
            payment_method=method.value if method else None,
            timestamp=_now(),
            status=status,
            description=description or descriptor.describe(),
            **kwargs
        )

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['status'] = self.status.value
        data['failed_at_step'] = self.failed_at_step.value if self.failed_at_step else None
        data['timestamp'] = self.timestamp.isoformat()
        if self.completed_at:
            data['completed_at'] = self.completed_at.isoformat()
        return data
