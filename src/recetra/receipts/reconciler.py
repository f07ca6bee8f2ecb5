"""
Channel status reconciliation.

Merges asynchronous channel outcomes back into stored receipts. Each channel
follows its own state machine:

    pending -> sent/completed   applied
    pending -> failed           applied
    failed  -> pending          only through reset_channel (manual retry)
    sent/completed -> *         dropped and logged as an anomalous transition

Outcomes carry the dispatch attempt that produced them; outcomes from an
attempt older than the stored one are stale and dropped, which keeps each
channel's outcomes in the order they were produced.
"""

from dataclasses import dataclass
from enum import Enum

import structlog

from recetra.receipts.exceptions import (
    AnomalousTransition,
    ChannelStateError,
    ReceiptValidationError,
)
from recetra.receipts.models import (
    STATUS_FIELD,
    SUCCESS_STATUS,
    Channel,
    ChannelOutcome,
    ChannelStatus,
    Receipt,
    is_success,
)
from recetra.receipts.store import ReceiptStore

logger = structlog.get_logger(__name__)


class ReconcileDecision(str, Enum):
    """What the reconciler did with an outcome."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    ANOMALOUS = "anomalous"


@dataclass(frozen=True)
class ReconcileResult:
    decision: ReconcileDecision
    receipt: Receipt

    @property
    def applied(self) -> bool:
        return self.decision == ReconcileDecision.APPLIED


def validate_outcome(outcome: ChannelOutcome) -> None:
    """An outcome must carry a terminal status belonging to its channel."""
    allowed = {SUCCESS_STATUS[outcome.channel], ChannelStatus.FAILED}
    if outcome.status not in allowed:
        raise ReceiptValidationError(
            f"Status '{outcome.status.value}' is not a terminal state of the "
            f"{outcome.channel.value} channel",
            field="status",
        )


class StatusReconciler:
    """Applies channel outcomes to receipts held in a store."""

    def __init__(self, store: ReceiptStore) -> None:
        self.store = store

    async def apply(self, receipt_id: str, outcome: ChannelOutcome) -> ReconcileResult:
        """
        Apply one channel outcome idempotently.

        Args:
            receipt_id: Receipt the outcome belongs to
            outcome: Final outcome of a channel dispatch attempt

        Returns:
            The decision taken and the receipt as stored afterwards
        """
        validate_outcome(outcome)
        channel = outcome.channel
        decision = ReconcileDecision.APPLIED

        def mutate(current: Receipt) -> dict | None:
            nonlocal decision
            status = current.status_of(channel)
            attempt = current.attempt_of(channel)

            if outcome.attempt < attempt:
                decision = ReconcileDecision.STALE
                return None

            if is_success(channel, status):
                if outcome.status == status:
                    decision = ReconcileDecision.DUPLICATE
                else:
                    decision = ReconcileDecision.ANOMALOUS
                return None

            if status == ChannelStatus.FAILED:
                if outcome.status == status and outcome.attempt == attempt:
                    decision = ReconcileDecision.DUPLICATE
                else:
                    decision = ReconcileDecision.ANOMALOUS
                return None

            patch: dict = {STATUS_FIELD[channel]: outcome.status}
            if outcome.attempt != attempt:
                patch["channel_attempts"] = {
                    **current.channel_attempts,
                    channel.value: outcome.attempt,
                }
            if outcome.provider_ref:
                patch["provider_refs"] = {
                    **current.provider_refs,
                    channel.value: outcome.provider_ref,
                }
            return patch

        receipt = await self.store.update(receipt_id, mutate)
        self._log_decision(receipt, outcome, decision)
        return ReconcileResult(decision=decision, receipt=receipt)

    async def reset_channel(self, receipt_id: str, channel: Channel) -> tuple[Receipt, int]:
        """
        Move a failed channel back to pending for a manual retry.

        A pending channel keeps its attempt number; a channel that already
        succeeded cannot be retried.

        Returns:
            The stored receipt and the attempt number the retry must report
        """

        def mutate(current: Receipt) -> dict | None:
            status = current.status_of(channel)
            if is_success(channel, status):
                raise ChannelStateError(
                    f"Cannot retry the {channel.value} channel of receipt {receipt_id}: "
                    f"it is already {status.value}",
                    channel=channel.value,
                    current_status=status.value,
                )
            if status == ChannelStatus.PENDING:
                return None
            return {
                STATUS_FIELD[channel]: ChannelStatus.PENDING,
                "channel_attempts": {
                    **current.channel_attempts,
                    channel.value: current.attempt_of(channel) + 1,
                },
            }

        receipt = await self.store.update(receipt_id, mutate)
        attempt = receipt.attempt_of(channel)
        logger.info(
            "Channel reset for retry",
            receipt_id=receipt_id,
            channel=channel.value,
            attempt=attempt,
        )
        return receipt, attempt

    @staticmethod
    def _log_decision(
        receipt: Receipt, outcome: ChannelOutcome, decision: ReconcileDecision
    ) -> None:
        context = {
            "receipt_id": receipt.id,
            "channel": outcome.channel.value,
            "outcome_status": outcome.status.value,
            "outcome_attempt": outcome.attempt,
        }
        if decision == ReconcileDecision.APPLIED:
            logger.info("Channel outcome applied", **context)
        elif decision == ReconcileDecision.ANOMALOUS:
            current = receipt.status_of(outcome.channel)
            anomaly = AnomalousTransition(
                "Channel outcome dropped: channel is no longer pending",
                channel=outcome.channel.value,
                current_status=current.value,
                requested_status=outcome.status.value,
            )
            logger.warning(
                anomaly.message,
                error_code=anomaly.error_code,
                current_status=current.value,
                **context,
            )
        else:
            logger.debug("Channel outcome ignored", decision=decision.value, **context)
