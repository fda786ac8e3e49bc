"""
Transaction Service

Composition root for the transaction core: builds the rate tables, fee
calculator, validator, balance model, history and failure recorder once and
hands the same instances to every flow.

Exposed operations:
- calculate_fees(descriptor, routing_plan)
- validate(descriptor)
- check_sufficient_balance(user_id, amount, type, chain, payment_method)
- execute_flow(descriptor, confirm, routing_plan)
- handle_settlement(transaction_id, success, error)
"""

from typing import Any, Dict, List, Optional

from loguru import logger

from .balance import Balance, BalanceModel, BalanceSource, InMemoryBalanceSource
from .config import load_config
from .events import EventBus
from .execution import ExecutionAdapter, ScriptedExecutionAdapter
from .failure_recorder import FailureRecorder
from .fee_calculator import FeeCalculator
from .fee_rates import FeeRateTables
from .flow import FEE_INCLUSIVE_TYPES, ConfirmCallback, FlowResult, FlowState, TransactionFlow
from .models import (
    BalanceCheck,
    BuyTransaction,
    FeeBreakdown,
    PaymentMethod,
    RoutingPlan,
    StartStrategyTransaction,
    TransactionDescriptor,
    TransactionRecord,
    TransactionType,
    ValidationResult,
)
from .transaction_history import TransactionHistoryDB
from .validator import TransactionValidator


def fees_as_legacy_dict(fees: FeeBreakdown) -> Dict[str, float]:
    """
    Fee breakdown in the legacy field layout expected by older callers

    The platform fee is published as diBoaS, and the funding fee (provider
    or exchange, whichever applied) as provider.
    """
    return {
        'diBoaS': fees.platform_fee,
        'diBoaSFee': fees.platform_fee,
        'network': fees.network_fee,
        'networkFee': fees.network_fee,
        'provider': fees.funding_fee,
        'providerFee': fees.provider_fee,
        'dexFee': fees.exchange_fee,
        'defiFee': fees.protocol_fee,
        'routing': 0.0,
        'total': fees.total,
        'totalFees': fees.total,
    }


class TransactionService:
    """
    Transaction core service

    Features:
    - Fee calculation and fee option comparison
    - Input validation and balance sufficiency checks
    - Transaction flow execution with persisted history
    - Settlement handling for submitted transactions
    - Rate table reload without restart
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        balance_source: Optional[BalanceSource] = None,
        executor: Optional[ExecutionAdapter] = None,
        history: Optional[TransactionHistoryDB] = None,
        events: Optional[EventBus] = None
    ):
        """
        Initialize transaction service

        Args:
            config: Configuration dict (defaults when None)
            balance_source: Collaborator providing starting balances
            executor: Execution adapter (scripted adapter when None)
            history: Transaction history repository
            events: Event bus shared with observers
        """
        self.config = config if config is not None else load_config(None)
        flow_config = self.config.get('flow', {})

        self.rate_tables = FeeRateTables(self.config)
        self.fee_calculator = FeeCalculator(
            self.rate_tables,
            cache_ttl_seconds=float(flow_config.get('fee_cache_ttl_seconds', 30.0)),
        )
        self.validator = TransactionValidator(
            self.config.get('minimum_amounts', {}),
            asset_chains=self.config.get('asset_chains', {}),
        )
        self.balance_model = BalanceModel(balance_source or InMemoryBalanceSource())
        self.executor = executor or ScriptedExecutionAdapter()
        self.history = history or TransactionHistoryDB(
            self.config.get('history', {}).get('db_path', 'transaction_history.db')
        )
        self.events = events or EventBus()
        self.recorder = FailureRecorder(self.history, self.events)
        self.submission_timeout_seconds = float(flow_config.get('submission_timeout_seconds', 30.0))

        self.active_flows: Dict[str, TransactionFlow] = {}

        logger.info("Transaction Service initialized")
        logger.info(f"  Executor: {type(self.executor).__name__}")
        logger.info(f"  Settlement chain: {self.rate_tables.settlement_chain}")
        logger.info(f"  Submission timeout: {self.submission_timeout_seconds}s")

    def calculate_fees(
        self,
        descriptor: TransactionDescriptor,
        routing_plan: Optional[RoutingPlan] = None
    ) -> FeeBreakdown:
        return self.fee_calculator.calculate_fees(descriptor, routing_plan)

    def compare_fee_options(
        self,
        descriptor: TransactionDescriptor,
        routing_plans: List[RoutingPlan]
    ) -> Dict[str, Any]:
        """
        Recommend the cheapest routing plan

        Returns:
            {'recommended', 'alternatives' (next two), 'savings' vs. the most expensive}
        """
        comparisons = self.fee_calculator.compare_fee_options(descriptor, routing_plans)
        if not comparisons:
            return {'recommended': None, 'alternatives': [], 'savings': 0.0}

        return {
            'recommended': comparisons[0],
            'alternatives': comparisons[1:3],
            'savings': comparisons[-1]['total_cost'] - comparisons[0]['total_cost'],
        }

    def validate(self, descriptor: TransactionDescriptor) -> ValidationResult:
        return self.validator.validate(descriptor)

    def check_sufficient_balance(
        self,
        user_id: str,
        amount,
        tx_type,
        chain: Optional[str] = None,
        payment_method=None,
        strategy_id: Optional[str] = None,
        fees_total: Optional[float] = None,
        asset: Optional[str] = None
    ) -> BalanceCheck:
        """
        Check whether a user's balance covers a transaction

        Internally funded buys and strategy starts must cover amount + fees;
        their fees are calculated here unless fees_total is given.

        Args:
            user_id: User id
            amount: Requested amount
            tx_type: TransactionType or its value
            chain: Settlement chain; prices a buy of the chain's native asset
                   when no asset is given
            payment_method: PaymentMethod or its value
            strategy_id: Strategy for start / stop strategy checks
            fees_total: Fees included in the debit for buy / start strategy
            asset: Purchased asset for buy checks

        Returns:
            BalanceCheck
        """
        tx_type = TransactionType(tx_type)
        method = PaymentMethod(payment_method) if payment_method else None
        if chain:
            logger.debug(f"Balance check for {tx_type.value} on {chain}")

        if fees_total is None:
            fees_total = self._fees_in_debit(user_id, amount, tx_type, method, asset or chain, strategy_id)

        return self.balance_model.check_sufficient_balance(
            user_id,
            amount,
            tx_type,
            payment_method=method,
            fees_total=fees_total,
            strategy_id=strategy_id,
        )

    def _fees_in_debit(
        self,
        user_id: str,
        amount,
        tx_type: TransactionType,
        method: Optional[PaymentMethod],
        asset: Optional[str],
        strategy_id: Optional[str]
    ) -> float:
        if tx_type not in FEE_INCLUSIVE_TYPES or (method is not None and method.is_external):
            return 0.0

        if tx_type is TransactionType.BUY:
            descriptor = BuyTransaction(user_id, amount, asset=asset, payment_method=method)
        else:
            descriptor = StartStrategyTransaction(user_id, amount, strategy_id=strategy_id, payment_method=method)
        return self.fee_calculator.calculate_fees(descriptor).total

    def get_balance(self, user_id: str) -> Balance:
        return self.balance_model.get_balance(user_id)

    def new_flow(self) -> TransactionFlow:
        """Create a flow wired to this service's collaborators"""
        return TransactionFlow(
            validator=self.validator,
            fee_calculator=self.fee_calculator,
            balance_model=self.balance_model,
            executor=self.executor,
            history=self.history,
            recorder=self.recorder,
            events=self.events,
            submission_timeout_seconds=self.submission_timeout_seconds,
        )

    async def execute_flow(
        self,
        descriptor: TransactionDescriptor,
        confirm: Optional[ConfirmCallback] = None,
        routing_plan: Optional[RoutingPlan] = None
    ) -> FlowResult:
        """
        Run a transaction through validation, fees, confirmation and submission

        Args:
            descriptor: Transaction descriptor
            confirm: Confirmation callback (None confirms automatically)
            routing_plan: Optional cross-chain routing plan

        Returns:
            FlowResult, normally in pending_external_confirmation

        Raises:
            TransactionFlowError: the flow's terminal error, after the failed
                attempt has been recorded
        """
        logger.info(f"Executing flow: {descriptor.describe()} ({descriptor.transaction_id})")
        self._prune_finished_flows()
        flow = self.new_flow()
        result = await flow.run(descriptor, confirm=confirm, routing_plan=routing_plan)

        if flow.state is FlowState.PENDING_EXTERNAL_CONFIRMATION:
            self.active_flows[descriptor.transaction_id] = flow
        return result

    def _prune_finished_flows(self):
        finished = [tx_id for tx_id, flow in self.active_flows.items() if flow.is_terminal]
        for tx_id in finished:
            del self.active_flows[tx_id]

    async def handle_settlement(
        self,
        transaction_id: str,
        success: bool,
        error: Optional[str] = None
    ) -> FlowResult:
        """
        Apply an external settlement callback to a submitted transaction

        Args:
            transaction_id: Transaction id
            success: Whether the provider settled it
            error: Provider error for failed settlements

        Returns:
            FlowResult in completed

        Raises:
            KeyError: no submitted transaction with this id awaits settlement
            TransactionFlowError: settlement failed (recorded at settlement)
        """
        flow = self.active_flows.get(transaction_id)
        if flow is None or flow.state is not FlowState.PENDING_EXTERNAL_CONFIRMATION:
            # A late submission failure already ended the flow
            if flow is not None and flow.is_terminal:
                self.active_flows.pop(transaction_id, None)
            raise KeyError(f"No transaction awaiting settlement: {transaction_id}")

        try:
            return await flow.settle(success=success, error=error)
        finally:
            if flow.is_terminal:
                self.active_flows.pop(transaction_id, None)

    def get_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        return self.history.get_transaction(transaction_id)

    def get_transactions(self, user_id: str) -> List[TransactionRecord]:
        return self.history.get_transactions(user_id)

    def get_statistics(self) -> Dict[str, Any]:
        return self.history.get_statistics()

    def reload_rates(self, config_path: str = "transaction_config.yaml"):
        """Reload rate tables from YAML; cached fees are discarded"""
        self.config = load_config(config_path)
        self.rate_tables.reload(self.config)
        logger.info(f"✓ Rate tables reloaded (version {self.rate_tables.version})")

    def close(self):
        self.history.close()


def create_transaction_service(
    config_path: Optional[str] = "transaction_config.yaml",
    db_path: Optional[str] = None,
    executor: Optional[ExecutionAdapter] = None,
    balance_source: Optional[BalanceSource] = None,
    events: Optional[EventBus] = None
) -> TransactionService:
    """
    Build a service from a YAML config file

    Args:
        config_path: Path to the YAML config (None for built-in defaults)
        db_path: History database path, overriding history.db_path
        executor: Execution adapter
        balance_source: Starting balance collaborator
        events: Event bus

    Returns:
        TransactionService
    """
    config = load_config(config_path)
    history = TransactionHistoryDB(db_path or config.get('history', {}).get('db_path', 'transaction_history.db'))
    return TransactionService(
        config=config,
        balance_source=balance_source,
        executor=executor,
        history=history,
        events=events,
    )
