"""
Balance Model

Holds available / invested / per-strategy balances per user and owns every
mutation of them.

Sufficiency rules:
- Deposit: always sufficient (external source)
- Withdraw / send / transfer: available >= amount
- Buy, start strategy: available >= amount + fees when funded from the
  platform balance, always sufficient when externally funded
- Sell: invested >= amount
- Stop strategy: strategy current amount >= amount (aggregate when no id)

Check-then-mutate is serialized per user: submission reserves the debit
under the user's lock, settlement re-checks and applies it under the same
lock, and every transaction id is applied at most once.
"""

import asyncio
import copy
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, Set, Tuple

from loguru import logger

from .errors import DuplicateTransaction, InsufficientBalance
from .models import (
    BalanceCheck,
    FeeBreakdown,
    PaymentMethod,
    TransactionDescriptor,
    TransactionType,
    parse_amount,
)


POOL_AVAILABLE = 'available'
POOL_INVESTED = 'invested'
POOL_STRATEGY = 'strategy'


@dataclass
class StrategyBalance:
    current_amount: float = 0.0


@dataclass
class Balance:
    """User balance snapshot"""
    available_for_spending: float = 0.0
    invested_amount: float = 0.0
    strategies: Dict[str, StrategyBalance] = field(default_factory=dict)

    @property
    def total_strategy_amount(self) -> float:
        return sum(s.current_amount for s in self.strategies.values())

    @classmethod
    def from_dict(cls, data: Dict) -> 'Balance':
        """Build from {availableForSpending, investedAmount, strategies: {id: {currentAmount}}}"""
        strategies = {
            strategy_id: StrategyBalance(float(info.get('currentAmount', info.get('current_amount', 0.0))))
            for strategy_id, info in (data.get('strategies') or {}).items()
        }
        return cls(
            available_for_spending=float(data.get('availableForSpending', data.get('available_for_spending', 0.0))),
            invested_amount=float(data.get('investedAmount', data.get('invested_amount', 0.0))),
            strategies=strategies,
        )

    def to_dict(self) -> Dict:
        return {
            'availableForSpending': self.available_for_spending,
            'investedAmount': self.invested_amount,
            'strategies': {
                strategy_id: {'currentAmount': s.current_amount}
                for strategy_id, s in self.strategies.items()
            },
        }


class BalanceSource(Protocol):
    """Collaborator providing the initial balance of a user"""

    def get_balance(self, user_id: str) -> Balance:
        ...


class InMemoryBalanceSource:
    """Balance source backed by a dict, used for tests and local runs"""

    def __init__(self, balances: Optional[Dict[str, Balance]] = None):
        self.balances: Dict[str, Balance] = balances or {}

    def get_balance(self, user_id: str) -> Balance:
        return copy.deepcopy(self.balances.get(user_id, Balance()))


@dataclass(frozen=True)
class Reservation:
    """Debit held between submission and settlement"""
    transaction_id: str
    user_id: str
    descriptor: TransactionDescriptor
    fees: FeeBreakdown
    net_amount: Optional[float]
    pool: Optional[str]
    required_amount: float


class BalanceModel:
    """
    Per-user balance ledger with serialized mutation

    Features:
    - Type-aware sufficiency checks
    - Reservations so concurrent transactions cannot spend the same funds
    - Idempotent settlement (duplicate transaction ids rejected, retries included)
    """

    def __init__(self, source: BalanceSource):
        """
        Initialize balance model

        Args:
            source: Collaborator returning each user's starting balance
        """
        self.source = source
        self._balances: Dict[str, Balance] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._locks_guard = threading.Lock()
        self._reservations: Dict[str, Reservation] = {}
        self._applied: Dict[str, str] = {}
        self._released: Set[str] = set()

        logger.info("Balance model initialized")

    def _balance(self, user_id: str) -> Balance:
        if user_id not in self._balances:
            self._balances[user_id] = self.source.get_balance(user_id)
        return self._balances[user_id]

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[user_id] = lock
            return lock

    def get_balance(self, user_id: str) -> Balance:
        """Copy of the user's current balance"""
        return copy.deepcopy(self._balance(user_id))

    def is_known_transaction(self, transaction_id: str) -> bool:
        """Reserved, applied or released ids; none of them may be reserved again"""
        return (
            transaction_id in self._reservations
            or transaction_id in self._applied
            or transaction_id in self._released
        )

    def is_reserved(self, transaction_id: str) -> bool:
        return transaction_id in self._reservations

    def _requirement(
        self,
        amount: float,
        tx_type: TransactionType,
        payment_method: Optional[PaymentMethod],
        fees_total: float
    ) -> Tuple[Optional[str], float]:
        """Return (pool, required_amount); pool None means externally covered"""
        external = payment_method is not None and payment_method.is_external

        if tx_type is TransactionType.DEPOSIT:
            return None, amount
        if tx_type in (TransactionType.WITHDRAW, TransactionType.SEND, TransactionType.TRANSFER):
            return POOL_AVAILABLE, amount
        if tx_type in (TransactionType.BUY, TransactionType.START_STRATEGY):
            if external:
                return None, amount
            return POOL_AVAILABLE, amount + fees_total
        if tx_type is TransactionType.SELL:
            return POOL_INVESTED, amount
        if tx_type is TransactionType.STOP_STRATEGY:
            return POOL_STRATEGY, amount

        raise ValueError(f"Unsupported transaction type: {tx_type}")

    def _pool_balance(self, user_id: str, pool: str, strategy_id: Optional[str],
                      exclude: Optional[str] = None) -> float:
        """Pool balance minus outstanding reservations against it"""
        balance = self._balance(user_id)

        if pool == POOL_AVAILABLE:
            value = balance.available_for_spending
        elif pool == POOL_INVESTED:
            value = balance.invested_amount
        elif strategy_id is not None:
            strategy = balance.strategies.get(strategy_id)
            value = strategy.current_amount if strategy else 0.0
        else:
            value = balance.total_strategy_amount

        for reservation in self._reservations.values():
            if reservation.user_id != user_id or reservation.pool != pool:
                continue
            if reservation.transaction_id == exclude:
                continue
            if pool == POOL_STRATEGY and strategy_id is not None:
                reserved_strategy = reservation.descriptor.strategy_id
                if reserved_strategy is not None and reserved_strategy != strategy_id:
                    continue
            value -= reservation.required_amount

        return value

    def check_sufficient_balance(
        self,
        user_id: str,
        amount,
        tx_type: TransactionType,
        payment_method: Optional[PaymentMethod] = None,
        fees_total: float = 0.0,
        strategy_id: Optional[str] = None,
        _exclude: Optional[str] = None
    ) -> BalanceCheck:
        """
        Check whether a balance covers a transaction

        Args:
            user_id: User id
            amount: Requested amount
            tx_type: Transaction type
            payment_method: Funding instrument (None means platform balance)
            fees_total: Fees added to the debit where the rule requires it
            strategy_id: Strategy for stop-strategy checks

        Returns:
            BalanceCheck

        Raises:
            InvalidAmount: amount is non-numeric or not positive
        """
        amount = parse_amount(amount)
        pool, required = self._requirement(amount, tx_type, payment_method, fees_total)

        if pool is None:
            return BalanceCheck(
                sufficient=True,
                available_balance=self._balance(user_id).available_for_spending,
                deficit=0.0,
                required_amount=required,
            )

        available = self._pool_balance(user_id, pool, strategy_id, exclude=_exclude)
        deficit = max(0.0, required - available)
        return BalanceCheck(
            sufficient=deficit == 0.0,
            available_balance=available,
            deficit=deficit,
            required_amount=required,
        )

    def check_descriptor(
        self,
        descriptor: TransactionDescriptor,
        fees: Optional[FeeBreakdown] = None
    ) -> BalanceCheck:
        """Sufficiency check for a descriptor (fees added where the rule requires them)"""
        return self.check_sufficient_balance(
            descriptor.user_id,
            descriptor.amount,
            descriptor.type,
            payment_method=descriptor.payment_method,
            fees_total=fees.total if fees else 0.0,
            strategy_id=descriptor.strategy_id,
        )

    async def reserve(
        self,
        descriptor: TransactionDescriptor,
        fees: FeeBreakdown,
        net_amount: Optional[float] = None
    ) -> Reservation:
        """
        Atomically re-check and hold the debit for a submitted transaction

        Raises:
            DuplicateTransaction: transaction id already reserved, applied or released
            InsufficientBalance: balance no longer covers the debit
        """
        user_id = descriptor.user_id
        async with self._lock_for(user_id):
            if self.is_known_transaction(descriptor.transaction_id):
                logger.warning(f"✗ Duplicate transaction rejected: {descriptor.transaction_id}")
                raise DuplicateTransaction(descriptor.transaction_id)

            check = self.check_descriptor(descriptor, fees)
            if not check.sufficient:
                raise InsufficientBalance(check.deficit, check)

            pool, required = self._requirement(
                fees.amount, descriptor.type, descriptor.payment_method, fees.total
            )
            reservation = Reservation(
                transaction_id=descriptor.transaction_id,
                user_id=user_id,
                descriptor=descriptor,
                fees=fees,
                net_amount=net_amount,
                pool=pool,
                required_amount=required,
            )
            self._reservations[descriptor.transaction_id] = reservation
            logger.debug(f"Reserved {required} from {pool or 'external'} for {descriptor.transaction_id}")
            return reservation

    async def release(self, transaction_id: str) -> bool:
        """Drop a reservation without mutating the balance; the id stays rejected"""
        reservation = self._reservations.get(transaction_id)
        if reservation is None:
            return False

        async with self._lock_for(reservation.user_id):
            released = self._reservations.pop(transaction_id, None) is not None
            self._released.add(transaction_id)

        if released:
            logger.info(f"Released reservation for {transaction_id}")
        return released

    async def settle(self, transaction_id: str) -> Balance:
        """
        Apply a reserved transaction to the balance exactly once

        Returns:
            Balance after the mutation

        Raises:
            DuplicateTransaction: transaction already applied
            KeyError: no reservation for the transaction
            InsufficientBalance: balance no longer covers the debit
        """
        if transaction_id in self._applied:
            raise DuplicateTransaction(transaction_id)

        reservation = self._reservations.get(transaction_id)
        if reservation is None:
            raise KeyError(f"No reservation for transaction {transaction_id}")

        async with self._lock_for(reservation.user_id):
            if transaction_id in self._applied:
                raise DuplicateTransaction(transaction_id)

            descriptor = reservation.descriptor
            check = self.check_sufficient_balance(
                descriptor.user_id,
                reservation.fees.amount,
                descriptor.type,
                payment_method=descriptor.payment_method,
                fees_total=reservation.fees.total,
                strategy_id=descriptor.strategy_id,
                _exclude=transaction_id,
            )
            if not check.sufficient:
                self._reservations.pop(transaction_id, None)
                self._released.add(transaction_id)
                raise InsufficientBalance(check.deficit, check)

            self._apply(reservation)
            self._reservations.pop(transaction_id, None)
            self._applied[transaction_id] = reservation.user_id

            balance = self.get_balance(reservation.user_id)

        logger.info(f"✓ Balance updated for {reservation.user_id} ({descriptor.type.value} {transaction_id}): "
                    f"available=${balance.available_for_spending:,.2f}, invested=${balance.invested_amount:,.2f}")
        return balance

    def _apply(self, reservation: Reservation):
        descriptor = reservation.descriptor
        balance = self._balance(descriptor.user_id)
        amount = reservation.fees.amount
        fees_total = reservation.fees.total
        tx_type = descriptor.type

        if tx_type is TransactionType.DEPOSIT:
            credit = reservation.net_amount if reservation.net_amount is not None else amount - fees_total
            balance.available_for_spending += max(0.0, credit)

        elif tx_type in (TransactionType.WITHDRAW, TransactionType.SEND, TransactionType.TRANSFER):
            balance.available_for_spending -= amount

        elif tx_type is TransactionType.BUY:
            if not descriptor.externally_funded:
                balance.available_for_spending -= amount
            balance.invested_amount += max(0.0, amount - fees_total)

        elif tx_type is TransactionType.SELL:
            balance.invested_amount -= amount
            balance.available_for_spending += max(0.0, amount - fees_total)

        elif tx_type is TransactionType.START_STRATEGY:
            if not descriptor.externally_funded:
                balance.available_for_spending -= amount
            strategy_id = descriptor.strategy_id or 'default'
            strategy = balance.strategies.setdefault(strategy_id, StrategyBalance())
            strategy.current_amount += max(0.0, amount - fees_total)

        elif tx_type is TransactionType.STOP_STRATEGY:
            self._withdraw_from_strategies(balance, descriptor.strategy_id, amount)
            balance.available_for_spending += max(0.0, amount - fees_total)

    def _withdraw_from_strategies(self, balance: Balance, strategy_id: Optional[str], amount: float):
        if strategy_id is not None:
            balance.strategies[strategy_id].current_amount -= amount
            return

        remaining = amount
        for sid in sorted(balance.strategies):
            strategy = balance.strategies[sid]
            taken = min(strategy.current_amount, remaining)
            strategy.current_amount -= taken
            remaining -= taken
            if remaining <= 0:
                break
