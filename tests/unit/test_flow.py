"""
Tests for the transaction flow state machine

Checked properties:
1. Happy path walks idle -> ... -> pending_external_confirmation -> completed
2. Every failure step persists exactly one failed record, then raises
3. Cancellation is free before processing and refused after
4. Duplicate transaction ids are rejected, the balance changes once
5. Timed-out submissions are tracked to resolution
"""

import asyncio
import copy

import pytest

from transaction_flow.errors import (
    BalanceCheckFailed,
    DuplicateTransaction,
    FeeCalculationFailed,
    FlowCancelled,
    InsufficientBalance,
    InvalidStateTransition,
    SubmissionFailed,
    ValidationFailed,
)
from transaction_flow.events import (
    FlowStateChanged,
    TransactionCancelled,
    TransactionCompleted,
    TransactionCreated,
    TransactionFailed,
)
from transaction_flow.execution import ScriptedExecutionAdapter, SubmissionResult
from transaction_flow.flow import FlowState
from transaction_flow.models import (
    BuyTransaction,
    DepositTransaction,
    FailedStep,
    PaymentMethod,
    SendTransaction,
    TransactionStatus,
    WithdrawTransaction,
)
from transaction_flow.service import TransactionService


def failed_attempts(history, transaction_id):
    return [a for a in history.get_attempts(transaction_id) if a.status is TransactionStatus.FAILED]


class UnreachableBalanceSource:
    """Balance collaborator whose backend is down."""

    def get_balance(self, user_id):
        raise ConnectionError('balance backend unreachable')


class SyncFailingExecutor:
    """Adapter that raises before returning an awaitable."""

    def submit(self, snapshot):
        raise RuntimeError('adapter misconfigured')


# =============================================================================
# Happy path
# =============================================================================


class TestHappyPath:
    """Prepare, confirm and settle."""

    def test_state_sequence(self, service):
        flow = service.new_flow()
        descriptor = SendTransaction('alice', 100, recipient='@bob_1')

        async def run():
            snapshot = await flow.prepare(descriptor)
            assert flow.state is FlowState.CONFIRMING
            assert snapshot.fees.total == pytest.approx(0.091)
            assert snapshot.net_amount is None
            await flow.confirm()
            return await flow.settle()

        result = asyncio.run(run())

        assert result.state is FlowState.COMPLETED
        assert flow.state_history == [
            FlowState.IDLE,
            FlowState.VALIDATING,
            FlowState.CALCULATING,
            FlowState.CONFIRMING,
            FlowState.PROCESSING,
            FlowState.PENDING_EXTERNAL_CONFIRMATION,
            FlowState.COMPLETED,
        ]

    def test_deposit_credits_net_amount(self, service, history):
        descriptor = DepositTransaction('bob', 100, payment_method=PaymentMethod.CREDIT_DEBIT_CARD)

        async def run():
            result = await service.execute_flow(descriptor)
            assert result.state is FlowState.PENDING_EXTERNAL_CONFIRMATION
            assert result.correlation_id == 'exec-000001'
            assert result.snapshot.net_amount == pytest.approx(98.909)
            return await service.handle_settlement(descriptor.transaction_id, success=True)

        result = asyncio.run(run())

        assert result.state is FlowState.COMPLETED
        assert service.get_balance('bob').available_for_spending == pytest.approx(50 + 98.909)
        record = history.get_transaction(descriptor.transaction_id)
        assert record.status is TransactionStatus.COMPLETED
        assert record.net_amount == pytest.approx(98.909)
        assert record.correlation_id == 'exec-000001'

    def test_internal_purchase_debits_full_amount(self, service):
        descriptor = BuyTransaction('alice', 1000, asset='BTC')

        async def run():
            result = await service.execute_flow(descriptor)
            assert result.snapshot.fees.total == pytest.approx(100.9)
            await service.handle_settlement(descriptor.transaction_id, success=True)

        asyncio.run(run())

        balance = service.get_balance('alice')
        assert balance.available_for_spending == pytest.approx(1000.0)
        assert balance.invested_amount == pytest.approx(500 + 899.1)

    def test_events_emitted(self, service, recorded_events):
        descriptor = SendTransaction('alice', 20, recipient='@bob_1')

        async def run():
            await service.execute_flow(descriptor)
            await service.handle_settlement(descriptor.transaction_id, success=True)

        asyncio.run(run())

        kinds = [type(e) for e in recorded_events if not isinstance(e, FlowStateChanged)]
        assert kinds[0] is TransactionCreated
        assert kinds[-1] is TransactionCompleted
        assert TransactionFailed not in kinds
        transitions = [e.new_state for e in recorded_events if isinstance(e, FlowStateChanged)]
        assert transitions[-1] == 'completed'

    def test_confirm_callback(self, service):
        seen = []

        async def approve(snapshot):
            seen.append(snapshot.fees.total)
            return True

        descriptor = SendTransaction('alice', 20, recipient='@bob_1')
        result = asyncio.run(service.execute_flow(descriptor, confirm=approve))

        assert result.state is FlowState.PENDING_EXTERNAL_CONFIRMATION
        assert len(seen) == 1


# =============================================================================
# Failure steps
# =============================================================================


class TestFailureSteps:
    """One failed record per failure, tagged with the failing step."""

    def test_validation_failure(self, service, history, recorded_events):
        descriptor = SendTransaction('alice', 100, recipient='not-a-username')

        with pytest.raises(ValidationFailed) as exc_info:
            asyncio.run(service.execute_flow(descriptor))

        assert 'recipient' in exc_info.value.field_errors
        failed = failed_attempts(history, descriptor.transaction_id)
        assert len(failed) == 1
        assert failed[0].failed_at_step is FailedStep.VALIDATION
        assert 'failed at validation' in failed[0].description
        assert sum(isinstance(e, TransactionFailed) for e in recorded_events) == 1

    def test_invalid_amount_fails_validation(self, service, history):
        descriptor = SendTransaction('alice', -5, recipient='@bob_1')

        with pytest.raises(ValidationFailed) as exc_info:
            asyncio.run(service.execute_flow(descriptor))

        assert exc_info.value.field_errors['amount'] == "Valid amount is required"
        assert failed_attempts(history, descriptor.transaction_id)[0].amount == 0.0

    def test_insufficient_balance(self, service, history):
        descriptor = WithdrawTransaction('bob', 100, payment_method='bank_account')

        with pytest.raises(InsufficientBalance) as exc_info:
            asyncio.run(service.execute_flow(descriptor))

        assert exc_info.value.deficit == pytest.approx(50.0)
        failed = failed_attempts(history, descriptor.transaction_id)
        assert len(failed) == 1
        assert failed[0].failed_at_step is FailedStep.BALANCE_CHECK
        assert service.get_balance('bob').available_for_spending == pytest.approx(50.0)

    def test_internal_purchase_must_cover_fees(self, service):
        descriptor = BuyTransaction('alice', 1950, asset='BTC')

        with pytest.raises(InsufficientBalance):
            asyncio.run(service.execute_flow(descriptor))

    def test_fee_calculation_failure(self, config, balance_source, history, events):
        config = copy.deepcopy(config)
        config['fees']['platform']['send'] = 0.0
        config['fees']['minimums']['platform'] = 0.0
        service = TransactionService(config=config, balance_source=balance_source, history=history, events=events)
        descriptor = SendTransaction('alice', 100, recipient='@bob_1')

        with pytest.raises(FeeCalculationFailed):
            asyncio.run(service.execute_flow(descriptor))

        failed = failed_attempts(history, descriptor.transaction_id)
        assert len(failed) == 1
        assert failed[0].failed_at_step is FailedStep.FEE_CALCULATION

    def test_balance_source_error_recorded(self, config, history, events, recorded_events):
        service = TransactionService(
            config=config, balance_source=UnreachableBalanceSource(), history=history, events=events
        )
        descriptor = SendTransaction('alice', 100, recipient='@bob_1')
        flow = service.new_flow()

        with pytest.raises(BalanceCheckFailed) as exc_info:
            asyncio.run(flow.prepare(descriptor))

        assert 'ConnectionError' in str(exc_info.value)
        assert flow.state is FlowState.ERROR
        failed = failed_attempts(history, descriptor.transaction_id)
        assert len(failed) == 1
        assert failed[0].failed_at_step is FailedStep.BALANCE_CHECK
        assert sum(isinstance(e, TransactionFailed) for e in recorded_events) == 1

    def test_validator_error_recorded(self, service, history, monkeypatch):
        def broken_validate(descriptor):
            raise RuntimeError('rules unavailable')

        monkeypatch.setattr(service.validator, 'validate', broken_validate)
        descriptor = SendTransaction('alice', 100, recipient='@bob_1')

        with pytest.raises(ValidationFailed) as exc_info:
            asyncio.run(service.execute_flow(descriptor))

        assert 'rules unavailable' in exc_info.value.field_errors['transaction']
        failed = failed_attempts(history, descriptor.transaction_id)
        assert len(failed) == 1
        assert failed[0].failed_at_step is FailedStep.VALIDATION

    def test_submission_rejected(self, service, executor, history):
        descriptor = WithdrawTransaction('alice', 100, payment_method='paypal')
        executor.fail(descriptor.transaction_id, 'card declined')

        with pytest.raises(SubmissionFailed) as exc_info:
            asyncio.run(service.execute_flow(descriptor))

        assert exc_info.value.provider_error == 'card declined'
        attempts = history.get_attempts(descriptor.transaction_id)
        assert len(attempts) == 1
        assert attempts[0].status is TransactionStatus.FAILED
        assert attempts[0].failed_at_step is FailedStep.SUBMISSION
        assert service.balance_model.is_reserved(descriptor.transaction_id) is False

    def test_submission_exception_wrapped(self, service, executor, history):
        descriptor = SendTransaction('alice', 10, recipient='@bob_1')
        executor.script(descriptor.transaction_id, ConnectionError('provider unreachable'))

        with pytest.raises(SubmissionFailed) as exc_info:
            asyncio.run(service.execute_flow(descriptor))

        assert 'provider unreachable' in str(exc_info.value)
        assert history.get_transaction(descriptor.transaction_id).failed_at_step is FailedStep.SUBMISSION

    def test_synchronous_submit_error_wrapped(self, config, balance_source, history, events):
        service = TransactionService(
            config=config, balance_source=balance_source, executor=SyncFailingExecutor(),
            history=history, events=events,
        )
        descriptor = SendTransaction('alice', 10, recipient='@bob_1')

        with pytest.raises(SubmissionFailed) as exc_info:
            asyncio.run(service.execute_flow(descriptor))

        assert 'adapter misconfigured' in str(exc_info.value)
        record = history.get_transaction(descriptor.transaction_id)
        assert record.status is TransactionStatus.FAILED
        assert record.failed_at_step is FailedStep.SUBMISSION
        assert service.balance_model.is_reserved(descriptor.transaction_id) is False

    def test_settlement_failure_releases_funds(self, service, history):
        descriptor = SendTransaction('bob', 40, recipient='@alice')

        async def run():
            await service.execute_flow(descriptor)
            with pytest.raises(SubmissionFailed):
                await service.handle_settlement(descriptor.transaction_id, success=False, error='chain reorg')
            retry = SendTransaction('bob', 40, recipient='@alice')
            await service.execute_flow(retry)
            await service.handle_settlement(retry.transaction_id, success=True)

        asyncio.run(run())

        record = history.get_transaction(descriptor.transaction_id)
        assert record.status is TransactionStatus.FAILED
        assert record.failed_at_step is FailedStep.SETTLEMENT
        assert service.get_balance('bob').available_for_spending == pytest.approx(10.0)


# =============================================================================
# Cancellation and reset
# =============================================================================


class TestCancellation:
    """Cancel before processing, never after."""

    def test_cancel_at_confirmation(self, service, history, recorded_events):
        flow = service.new_flow()
        descriptor = SendTransaction('alice', 100, recipient='@bob_1')

        asyncio.run(flow.prepare(descriptor))
        flow.cancel()

        assert flow.state is FlowState.ERROR
        failed = failed_attempts(history, descriptor.transaction_id)
        assert len(failed) == 1
        assert failed[0].failed_at_step is FailedStep.CONFIRMATION
        assert any(isinstance(e, TransactionCancelled) for e in recorded_events)
        assert service.get_balance('alice').available_for_spending == pytest.approx(2000.0)

    def test_declined_confirmation(self, service, history):
        descriptor = SendTransaction('alice', 100, recipient='@bob_1')

        with pytest.raises(FlowCancelled):
            asyncio.run(service.execute_flow(descriptor, confirm=lambda snapshot: False))

        assert history.get_transaction(descriptor.transaction_id).failed_at_step is FailedStep.CONFIRMATION

    def test_cancel_after_submission_refused(self, service):
        flow = service.new_flow()
        descriptor = SendTransaction('alice', 100, recipient='@bob_1')

        async def run():
            await flow.prepare(descriptor)
            await flow.confirm()

        asyncio.run(run())

        with pytest.raises(InvalidStateTransition):
            flow.cancel()
        with pytest.raises(InvalidStateTransition):
            flow.reset()
        assert flow.state is FlowState.PENDING_EXTERNAL_CONFIRMATION

    def test_cancel_idle_flow_records_nothing(self, service, history):
        flow = service.new_flow()

        flow.cancel()

        assert flow.state is FlowState.IDLE
        assert history.get_statistics()['total_transactions'] == 0

    def test_reset_returns_to_idle(self, service):
        flow = service.new_flow()

        with pytest.raises(ValidationFailed):
            asyncio.run(flow.prepare(SendTransaction('alice', 1, recipient='@bob_1')))
        assert flow.state is FlowState.ERROR

        flow.reset()

        assert flow.state is FlowState.IDLE
        assert flow.descriptor is None
        assert flow.error is None
        result = asyncio.run(flow.run(SendTransaction('alice', 10, recipient='@bob_1')))
        assert result.state is FlowState.PENDING_EXTERNAL_CONFIRMATION

    def test_operations_from_wrong_state(self, service):
        flow = service.new_flow()

        with pytest.raises(InvalidStateTransition):
            asyncio.run(flow.confirm())
        with pytest.raises(InvalidStateTransition):
            asyncio.run(flow.settle())


# =============================================================================
# Duplicates and concurrency
# =============================================================================


class TestDuplicatesAndConcurrency:
    """Idempotent rejection and per-user serialization."""

    def test_duplicate_transaction_id(self, service, history):
        descriptor = SendTransaction('alice', 100, recipient='@bob_1')

        async def run():
            await service.execute_flow(descriptor)
            await service.handle_settlement(descriptor.transaction_id, success=True)
            with pytest.raises(DuplicateTransaction):
                await service.execute_flow(descriptor)

        asyncio.run(run())

        attempts = history.get_attempts(descriptor.transaction_id)
        assert [a.status for a in attempts] == [TransactionStatus.COMPLETED, TransactionStatus.FAILED]
        assert attempts[1].failed_at_step is FailedStep.SUBMISSION
        assert service.get_balance('alice').available_for_spending == pytest.approx(1900.0)

    def test_duplicate_while_pending(self, service, executor):
        descriptor = SendTransaction('alice', 100, recipient='@bob_1')

        async def run():
            await service.execute_flow(descriptor)
            with pytest.raises(DuplicateTransaction):
                await service.execute_flow(descriptor)

        asyncio.run(run())

        assert len(executor.submissions) == 1

    def test_retry_after_rejected_submission(self, service, executor, history):
        descriptor = SendTransaction('alice', 100, recipient='@bob_1')
        executor.fail(descriptor.transaction_id, 'declined')

        async def run():
            with pytest.raises(SubmissionFailed):
                await service.execute_flow(descriptor)
            with pytest.raises(DuplicateTransaction):
                await service.execute_flow(descriptor)

        asyncio.run(run())

        assert len(executor.submissions) == 1
        attempts = history.get_attempts(descriptor.transaction_id)
        assert [a.failed_at_step for a in attempts] == [FailedStep.SUBMISSION, FailedStep.SUBMISSION]
        assert service.get_balance('alice').available_for_spending == pytest.approx(2000.0)

    def test_concurrent_flows_same_user(self, service):
        descriptors = [WithdrawTransaction('alice', 1200, payment_method='bank_account') for _ in range(2)]

        async def run():
            results = await asyncio.gather(
                *(service.execute_flow(d) for d in descriptors),
                return_exceptions=True,
            )
            for d, r in zip(descriptors, results):
                if not isinstance(r, Exception):
                    await service.handle_settlement(d.transaction_id, success=True)
            return results

        results = asyncio.run(run())

        assert sum(isinstance(r, InsufficientBalance) for r in results) == 1
        assert service.get_balance('alice').available_for_spending == pytest.approx(800.0)


# =============================================================================
# Submission timeout
# =============================================================================


class TestSubmissionTimeout:
    """Slow providers are tracked, not abandoned."""

    @pytest.fixture
    def slow_service(self, config, balance_source, history, events):
        config = copy.deepcopy(config)
        config['flow']['submission_timeout_seconds'] = 0.01
        executor = ScriptedExecutionAdapter(delay_seconds=0.05)
        return TransactionService(
            config=config, balance_source=balance_source, executor=executor, history=history, events=events
        )

    def test_late_success_attaches_correlation_id(self, slow_service, history):
        descriptor = SendTransaction('alice', 100, recipient='@bob_1')

        async def run():
            result = await slow_service.execute_flow(descriptor)
            assert result.state is FlowState.PENDING_EXTERNAL_CONFIRMATION
            assert result.correlation_id is None
            flow = slow_service.active_flows[descriptor.transaction_id]
            assert flow.awaiting_submission_result is True
            correlation_id = await flow.wait_for_submission()
            await slow_service.handle_settlement(descriptor.transaction_id, success=True)
            return correlation_id

        correlation_id = asyncio.run(run())

        assert correlation_id == 'exec-000001'
        record = history.get_transaction(descriptor.transaction_id)
        assert record.status is TransactionStatus.COMPLETED
        assert record.correlation_id == 'exec-000001'

    def test_late_failure_fails_at_submission(self, slow_service, history):
        descriptor = SendTransaction('alice', 100, recipient='@bob_1')
        slow_service.executor.script(
            descriptor.transaction_id, SubmissionResult(success=False, error='rejected late')
        )

        async def run():
            await slow_service.execute_flow(descriptor)
            flow = slow_service.active_flows[descriptor.transaction_id]
            await flow.wait_for_submission()
            return flow

        flow = asyncio.run(run())

        assert flow.state is FlowState.ERROR
        assert flow.failed_at_step is FailedStep.SUBMISSION
        record = history.get_transaction(descriptor.transaction_id)
        assert record.status is TransactionStatus.FAILED
        assert record.error == 'Submission failed: rejected late'
        assert slow_service.balance_model.is_reserved(descriptor.transaction_id) is False

    def test_late_failure_leaves_no_active_flow(self, slow_service):
        descriptor = SendTransaction('alice', 100, recipient='@bob_1')
        slow_service.executor.script(
            descriptor.transaction_id, SubmissionResult(success=False, error='rejected late')
        )

        async def run():
            await slow_service.execute_flow(descriptor)
            await slow_service.active_flows[descriptor.transaction_id].wait_for_submission()
            with pytest.raises(KeyError):
                await slow_service.handle_settlement(descriptor.transaction_id, success=True)

        asyncio.run(run())

        assert descriptor.transaction_id not in slow_service.active_flows
