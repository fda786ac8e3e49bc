"""
Failure Recorder

Persists every aborted or failed transaction attempt with a failure step tag
and emits a TransactionFailed event for observers.
"""

from typing import Optional

from loguru import logger

from .events import EventBus, TransactionFailed
from .models import (
    FailedStep,
    FeeBreakdown,
    TransactionDescriptor,
    TransactionRecord,
    TransactionStatus,
)
from .transaction_history import TransactionHistoryDB


STEP_LABELS = {
    FailedStep.VALIDATION: 'validation',
    FailedStep.BALANCE_CHECK: 'balance check',
    FailedStep.FEE_CALCULATION: 'fee calculation',
    FailedStep.CONFIRMATION: 'confirmation',
    FailedStep.SUBMISSION: 'submission',
    FailedStep.SETTLEMENT: 'settlement',
}


class FailureRecorder:
    """Writes failed transaction records and publishes failure events"""

    def __init__(self, history: TransactionHistoryDB, events: EventBus):
        self.history = history
        self.events = events

    def record_failure(
        self,
        descriptor: TransactionDescriptor,
        step: FailedStep,
        error: Exception,
        fees: Optional[FeeBreakdown] = None
    ) -> TransactionRecord:
        """
        Persist a new failed record for an attempt that never reached the ledger

        Args:
            descriptor: Transaction descriptor
            step: Step the attempt failed at
            error: The terminal error
            fees: Fees, when they were already calculated

        Returns:
            The failed TransactionRecord
        """
        message = str(error)
        description = f"{descriptor.describe()} failed at {STEP_LABELS[step]}: {message}"

        record = TransactionRecord.from_descriptor(
            descriptor,
            TransactionStatus.FAILED,
            description=description,
            error=message,
            failed_at_step=step,
            fees_total=fees.total if fees else None,
        )

        if not self.history.record_transaction(record):
            logger.error(f"✗ Failed record for {descriptor.transaction_id} could not be persisted")
        self.history.record_error(descriptor.transaction_id, type(error).__name__, message)

        self._publish(descriptor, step, message)
        logger.error(f"✗ Transaction {descriptor.transaction_id} failed at {step.value}: {message}")
        return record

    def record_pending_failure(
        self,
        descriptor: TransactionDescriptor,
        step: FailedStep,
        error: Exception
    ):
        """
        Fail the already persisted pending record of a submitted transaction

        Args:
            descriptor: Transaction descriptor
            step: Step the transaction failed at
            error: The terminal error
        """
        message = str(error)

        if not self.history.update_status(
            descriptor.transaction_id,
            TransactionStatus.FAILED,
            error=message,
            failed_at_step=step,
        ):
            logger.error(f"✗ Pending record for {descriptor.transaction_id} could not be marked failed")
        self.history.record_error(descriptor.transaction_id, type(error).__name__, message)

        self._publish(descriptor, step, message)
        logger.error(f"✗ Transaction {descriptor.transaction_id} failed at {step.value}: {message}")

    def _publish(self, descriptor: TransactionDescriptor, step: FailedStep, message: str):
        self.events.publish(TransactionFailed(
            transaction_id=descriptor.transaction_id,
            user_id=descriptor.user_id,
            error=message,
            failed_at_step=step.value,
        ))
