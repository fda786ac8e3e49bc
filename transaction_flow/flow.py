"""
Transaction Flow State Machine

Drives one transaction from input to settlement:

    idle -> validating -> calculating -> confirming -> processing
         -> pending_external_confirmation -> completed

with a terminal error state reachable from every non-terminal state. Every
failure persists exactly one failed record before the error is re-raised.
Only reset() returns a flow to idle.
"""

import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from loguru import logger

from .balance import BalanceModel
from .errors import (
    BalanceCheckFailed,
    DuplicateTransaction,
    FeeCalculationFailed,
    FlowCancelled,
    InsufficientBalance,
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
    TransactionProcessingStarted,
)
from .execution import ExecutionAdapter, SubmissionResult
from .failure_recorder import FailureRecorder
from .fee_calculator import FeeCalculator
from .models import (
    ConfirmationSnapshot,
    FailedStep,
    FeeBreakdown,
    RoutingPlan,
    TransactionDescriptor,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
)
from .transaction_history import TransactionHistoryDB
from .validator import TransactionValidator


class FlowState(str, Enum):
    IDLE = 'idle'
    VALIDATING = 'validating'
    CALCULATING = 'calculating'
    CONFIRMING = 'confirming'
    PROCESSING = 'processing'
    PENDING_EXTERNAL_CONFIRMATION = 'pending_external_confirmation'
    COMPLETED = 'completed'
    ERROR = 'error'


ALLOWED_TRANSITIONS = {
    FlowState.IDLE: {FlowState.VALIDATING, FlowState.ERROR},
    FlowState.VALIDATING: {FlowState.CALCULATING, FlowState.ERROR},
    FlowState.CALCULATING: {FlowState.CONFIRMING, FlowState.ERROR},
    FlowState.CONFIRMING: {FlowState.PROCESSING, FlowState.ERROR},
    FlowState.PROCESSING: {FlowState.PENDING_EXTERNAL_CONFIRMATION, FlowState.ERROR},
    FlowState.PENDING_EXTERNAL_CONFIRMATION: {FlowState.COMPLETED, FlowState.ERROR},
    FlowState.COMPLETED: set(),
    FlowState.ERROR: set(),
}

CANCELLABLE_STATES = {FlowState.IDLE, FlowState.VALIDATING, FlowState.CALCULATING, FlowState.CONFIRMING}

# Buy / start strategy funded from the platform balance must cover amount + fees
FEE_INCLUSIVE_TYPES = {TransactionType.BUY, TransactionType.START_STRATEGY}

ConfirmCallback = Callable[[ConfirmationSnapshot], Union[bool, Awaitable[bool]]]


@dataclass(frozen=True)
class FlowResult:
    """Where a flow ended up after submission or settlement"""
    transaction_id: str
    state: FlowState
    snapshot: ConfirmationSnapshot
    correlation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transaction_id': self.transaction_id,
            'state': self.state.value,
            'correlation_id': self.correlation_id,
            'fees': self.snapshot.fees.to_dict(),
            'net_amount': self.snapshot.net_amount,
        }


class TransactionFlow:
    """
    State machine for a single transaction

    Features:
    - Validation, balance check and fee calculation before confirmation
    - Immutable confirmation snapshot
    - Reserved balance between submission and settlement
    - Bounded submission timeout; late provider results are still tracked
    - Exactly one failed record per failed or cancelled attempt
    """

    def __init__(
        self,
        validator: TransactionValidator,
        fee_calculator: FeeCalculator,
        balance_model: BalanceModel,
        executor: ExecutionAdapter,
        history: TransactionHistoryDB,
        recorder: FailureRecorder,
        events: EventBus,
        submission_timeout_seconds: float = 30.0
    ):
        """
        Initialize flow

        Args:
            validator: Transaction validator
            fee_calculator: Fee calculator
            balance_model: Balance model owning balance mutation
            executor: Execution adapter the confirmed transaction is submitted to
            history: Transaction history repository
            recorder: Failure recorder
            events: Event bus for observers
            submission_timeout_seconds: Bound on waiting for the executor
        """
        self.validator = validator
        self.fee_calculator = fee_calculator
        self.balance_model = balance_model
        self.executor = executor
        self.history = history
        self.recorder = recorder
        self.events = events
        self.submission_timeout_seconds = submission_timeout_seconds

        self._state = FlowState.IDLE
        self.state_history: List[FlowState] = [FlowState.IDLE]
        self._clear()

    def _clear(self):
        self.descriptor: Optional[TransactionDescriptor] = None
        self.routing_plan: Optional[RoutingPlan] = None
        self.snapshot: Optional[ConfirmationSnapshot] = None
        self.correlation_id: Optional[str] = None
        self.error: Optional[Exception] = None
        self.failed_at_step: Optional[FailedStep] = None
        self._submitted = False
        self._pending_submission: Optional[asyncio.Future] = None
        self._late_resolution: Optional[asyncio.Task] = None

    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def transaction_id(self) -> Optional[str]:
        return self.descriptor.transaction_id if self.descriptor else None

    @property
    def is_terminal(self) -> bool:
        return self._state in (FlowState.COMPLETED, FlowState.ERROR)

    @property
    def awaiting_submission_result(self) -> bool:
        """Submission timed out and the provider has not answered yet"""
        return self._pending_submission is not None and not self._pending_submission.done()

    def _transition(self, new_state: FlowState):
        previous = self._state
        if new_state not in ALLOWED_TRANSITIONS[previous]:
            raise InvalidStateTransition(previous, f"move to {new_state.value}")

        self._state = new_state
        self.state_history.append(new_state)
        logger.info(f"Flow {self.transaction_id}: {previous.value} -> {new_state.value}")

        if self.descriptor is not None:
            self.events.publish(FlowStateChanged(
                transaction_id=self.descriptor.transaction_id,
                user_id=self.descriptor.user_id,
                previous_state=previous.value,
                new_state=new_state.value,
            ))

    def _require(self, state: FlowState, operation: str):
        if self._state is not state:
            raise InvalidStateTransition(self._state, operation)

    def _fail(self, step: FailedStep, error: Exception, fees: Optional[FeeBreakdown] = None):
        """Persist a new failed record, move to error and raise"""
        self.error = error
        self.failed_at_step = step
        self.recorder.record_failure(self.descriptor, step, error, fees=fees)
        self._transition(FlowState.ERROR)
        raise error

    async def _fail_submitted(self, step: FailedStep, error: Exception):
        """Fail a transaction whose pending record and reservation already exist"""
        self.error = error
        self.failed_at_step = step
        await self.balance_model.release(self.descriptor.transaction_id)
        self.recorder.record_pending_failure(self.descriptor, step, error)
        self._transition(FlowState.ERROR)

    async def prepare(
        self,
        descriptor: TransactionDescriptor,
        routing_plan: Optional[RoutingPlan] = None
    ) -> ConfirmationSnapshot:
        """
        Validate, check balance and calculate fees for a transaction

        Args:
            descriptor: Transaction descriptor
            routing_plan: Optional cross-chain routing plan

        Returns:
            ConfirmationSnapshot for the user to confirm

        Raises:
            ValidationFailed: input failed validation
            InsufficientBalance: balance does not cover the transaction
            BalanceCheckFailed: balance could not be read
            FeeCalculationFailed: fees could not be calculated
        """
        self._require(FlowState.IDLE, "prepare a transaction")
        self.descriptor = descriptor
        self.routing_plan = routing_plan

        self._transition(FlowState.VALIDATING)
        try:
            validation = self.validator.validate(descriptor)
        except Exception as e:
            self._fail(FailedStep.VALIDATION, ValidationFailed({'transaction': f"validator error: {e}"}))
        if not validation.is_valid:
            self._fail(FailedStep.VALIDATION, ValidationFailed(validation.errors))

        balance_fees = None
        if descriptor.type in FEE_INCLUSIVE_TYPES and not descriptor.externally_funded:
            balance_fees = self._calculate_fees(descriptor, routing_plan)

        try:
            balance_check = self.balance_model.check_descriptor(descriptor, balance_fees)
        except TransactionFlowError as e:
            self._fail(FailedStep.BALANCE_CHECK, e, fees=balance_fees)
        except Exception as e:
            self._fail(
                FailedStep.BALANCE_CHECK,
                BalanceCheckFailed(f"Balance check error: {type(e).__name__}: {e}"),
                fees=balance_fees,
            )
        if not balance_check.sufficient:
            self._fail(
                FailedStep.BALANCE_CHECK,
                InsufficientBalance(balance_check.deficit, balance_check),
                fees=balance_fees,
            )

        self._transition(FlowState.CALCULATING)
        fees = self._calculate_fees(descriptor, routing_plan)

        net_amount = fees.amount - fees.total if descriptor.inbound else None
        self.snapshot = ConfirmationSnapshot(
            descriptor=descriptor,
            fees=fees,
            balance_check=balance_check,
            validation=validation,
            net_amount=net_amount,
            routing_plan=routing_plan,
        )

        self._transition(FlowState.CONFIRMING)
        logger.info(f"Awaiting confirmation: {descriptor.describe()} | {fees.display_summary()}")
        return self.snapshot

    def _calculate_fees(self, descriptor: TransactionDescriptor,
                        routing_plan: Optional[RoutingPlan]) -> FeeBreakdown:
        try:
            return self.fee_calculator.calculate_fees(descriptor, routing_plan)
        except FeeCalculationFailed as e:
            self._fail(FailedStep.FEE_CALCULATION, e)
        except Exception as e:
            self._fail(FailedStep.FEE_CALCULATION, FeeCalculationFailed(f"Fee calculation error: {e}"))

    async def confirm(self) -> FlowResult:
        """
        Submit the confirmed transaction for execution

        Returns:
            FlowResult in pending_external_confirmation

        Raises:
            DuplicateTransaction: transaction id was already submitted
            InsufficientBalance: balance changed since the check
            SubmissionFailed: provider rejected or failed the transaction
        """
        self._require(FlowState.CONFIRMING, "confirm")
        snapshot = self.snapshot
        descriptor = snapshot.descriptor

        self._transition(FlowState.PROCESSING)

        try:
            await self.balance_model.reserve(descriptor, snapshot.fees, snapshot.net_amount)
        except DuplicateTransaction as e:
            self._fail(FailedStep.SUBMISSION, e, fees=snapshot.fees)
        except InsufficientBalance as e:
            self._fail(FailedStep.BALANCE_CHECK, e, fees=snapshot.fees)

        record = TransactionRecord.from_descriptor(
            descriptor,
            TransactionStatus.PENDING,
            fees_total=snapshot.fees.total,
            net_amount=snapshot.net_amount,
        )
        self.history.record_transaction(record)
        self.history.record_fees(descriptor.transaction_id, snapshot.fees)
        self._submitted = True

        self.events.publish(TransactionCreated(
            transaction_id=descriptor.transaction_id,
            user_id=descriptor.user_id,
            transaction_type=descriptor.type.value,
            amount=snapshot.amount,
            fees_total=snapshot.fees.total,
        ))
        self.events.publish(TransactionProcessingStarted(
            transaction_id=descriptor.transaction_id,
            user_id=descriptor.user_id,
        ))

        submission = None
        try:
            submission = asyncio.ensure_future(self.executor.submit(snapshot))
            result = await asyncio.wait_for(asyncio.shield(submission), self.submission_timeout_seconds)
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError) and submission is not None and not submission.done():
                logger.warning(f"Submission of {descriptor.transaction_id} still in flight after "
                               f"{self.submission_timeout_seconds}s, tracking until the provider answers")
                self._pending_submission = submission
                submission.add_done_callback(self._on_late_submission)
                self._transition(FlowState.PENDING_EXTERNAL_CONFIRMATION)
                return self.result()

            error = SubmissionFailed(f"{type(e).__name__}: {e}")
            await self._fail_submitted(FailedStep.SUBMISSION, error)
            raise error

        if not result.success:
            error = SubmissionFailed(result.error)
            await self._fail_submitted(FailedStep.SUBMISSION, error)
            raise error

        self._attach_correlation_id(result)
        self._transition(FlowState.PENDING_EXTERNAL_CONFIRMATION)
        logger.info(f"✓ Submitted {descriptor.transaction_id} (provider id {self.correlation_id})")
        return self.result()

    def _attach_correlation_id(self, result: SubmissionResult):
        self.correlation_id = result.transaction_id
        if result.transaction_id:
            self.history.set_correlation_id(self.descriptor.transaction_id, result.transaction_id)

    def _on_late_submission(self, submission: asyncio.Future):
        self._late_resolution = asyncio.ensure_future(self._resolve_late_submission(submission))

    async def _resolve_late_submission(self, submission: asyncio.Future):
        if self._state is not FlowState.PENDING_EXTERNAL_CONFIRMATION:
            logger.warning(f"Late submission result for {self.transaction_id} ignored in state {self._state.value}")
            return

        if submission.cancelled():
            error = SubmissionFailed("submission was cancelled")
        elif submission.exception() is not None:
            exc = submission.exception()
            error = SubmissionFailed(f"{type(exc).__name__}: {exc}")
        elif not submission.result().success:
            error = SubmissionFailed(submission.result().error)
        else:
            self._attach_correlation_id(submission.result())
            logger.info(f"✓ Late submission result for {self.transaction_id}: provider id {self.correlation_id}")
            return

        await self._fail_submitted(FailedStep.SUBMISSION, error)

    async def wait_for_submission(self) -> Optional[str]:
        """Wait for a timed-out submission to resolve; returns the correlation id"""
        if self._pending_submission is not None:
            await asyncio.wait([self._pending_submission])
            # Done callbacks run on the next loop iteration
            while self._late_resolution is None:
                await asyncio.sleep(0)
            await self._late_resolution
        return self.correlation_id

    async def settle(self, success: bool = True, error: Optional[str] = None) -> FlowResult:
        """
        Apply the external settlement result

        Args:
            success: Whether the provider settled the transaction
            error: Provider error for failed settlements

        Returns:
            FlowResult in completed

        Raises:
            SubmissionFailed: provider reported a failed settlement
            InsufficientBalance: balance no longer covers the debit
            DuplicateTransaction: transaction was already applied
        """
        self._require(FlowState.PENDING_EXTERNAL_CONFIRMATION, "settle")
        descriptor = self.descriptor

        if not success:
            failure = SubmissionFailed(error)
            await self._fail_submitted(FailedStep.SETTLEMENT, failure)
            raise failure

        try:
            await self.balance_model.settle(descriptor.transaction_id)
        except (InsufficientBalance, DuplicateTransaction, KeyError) as e:
            failure = e if isinstance(e, TransactionFlowError) else SubmissionFailed(str(e))
            await self._fail_submitted(FailedStep.SETTLEMENT, failure)
            raise failure

        self.history.update_status(
            descriptor.transaction_id,
            TransactionStatus.COMPLETED,
            correlation_id=self.correlation_id,
        )
        self._transition(FlowState.COMPLETED)
        self.events.publish(TransactionCompleted(
            transaction_id=descriptor.transaction_id,
            user_id=descriptor.user_id,
            correlation_id=self.correlation_id,
        ))
        logger.info(f"✓ Transaction completed: {descriptor.describe()}")
        return self.result()

    def cancel(self, reason: str = "cancelled by user"):
        """
        Abandon the flow before submission

        The aborted attempt is persisted as a failed record tagged
        confirmation. Once submitted a transaction cannot be cancelled.

        Raises:
            InvalidStateTransition: flow is processing or later
        """
        if self._state not in CANCELLABLE_STATES:
            raise InvalidStateTransition(self._state, "cancel")

        if self.descriptor is None:
            logger.info("Cancelled idle flow with no transaction")
            return

        error = FlowCancelled(reason)
        self.error = error
        self.failed_at_step = FailedStep.CONFIRMATION
        fees = self.snapshot.fees if self.snapshot else None
        self.recorder.record_failure(self.descriptor, FailedStep.CONFIRMATION, error, fees=fees)
        self.events.publish(TransactionCancelled(
            transaction_id=self.descriptor.transaction_id,
            user_id=self.descriptor.user_id,
            reason=reason,
        ))
        self._transition(FlowState.ERROR)

    def reset(self):
        """
        Return the flow to idle, clearing all flow data

        A flow that was prepared but never submitted is cancelled first.

        Raises:
            InvalidStateTransition: a submitted transaction is still unresolved
        """
        if self._state in (FlowState.PROCESSING, FlowState.PENDING_EXTERNAL_CONFIRMATION):
            raise InvalidStateTransition(self._state, "reset")

        if self._state in CANCELLABLE_STATES and self.descriptor is not None:
            self.cancel("flow reset before submission")

        previous = self._state
        self._clear()
        self._state = FlowState.IDLE
        self.state_history = [FlowState.IDLE]
        logger.debug(f"Flow reset from {previous.value}")

    def result(self) -> FlowResult:
        return FlowResult(
            transaction_id=self.descriptor.transaction_id,
            state=self._state,
            snapshot=self.snapshot,
            correlation_id=self.correlation_id,
        )

    async def run(
        self,
        descriptor: TransactionDescriptor,
        confirm: Optional[ConfirmCallback] = None,
        routing_plan: Optional[RoutingPlan] = None
    ) -> FlowResult:
        """
        Run the flow up to pending_external_confirmation

        Args:
            descriptor: Transaction descriptor
            confirm: Callback shown the snapshot; returning False cancels.
                     None confirms automatically.
            routing_plan: Optional cross-chain routing plan

        Returns:
            FlowResult
        """
        snapshot = await self.prepare(descriptor, routing_plan)

        if confirm is not None:
            approved = confirm(snapshot)
            if inspect.isawaitable(approved):
                approved = await approved
            if not approved:
                self.cancel("declined at confirmation")
                raise self.error

        return await self.confirm()
