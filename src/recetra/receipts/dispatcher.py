"""
Channel dispatcher.

Fires the payment, email and SMS provider calls for a receipt as independent
asyncio tasks. Each channel retries transient failures (a declared ``failed``
result or a timeout) with a fixed backoff, then hands its final outcome to the
status reconciler. No channel waits on another's completion unless the caller
asked for notifications to follow payment.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from recetra.receipts.exceptions import ChannelStateError, ProviderFailure, ProviderInputError
from recetra.receipts.models import (
    SUCCESS_STATUS,
    Channel,
    ChannelOutcome,
    ChannelStatus,
    Receipt,
)
from recetra.receipts.providers import (
    EmailProvider,
    PaymentProvider,
    ProviderResult,
    SMSProvider,
)
from recetra.receipts.reconciler import StatusReconciler

logger = structlog.get_logger(__name__)

ProviderCall = Callable[[], Awaitable[ProviderResult]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy applied to every provider call."""

    max_retries: int = 2
    backoff_seconds: float = 0.5
    timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls, receipt_settings: Any) -> "RetryPolicy":
        return cls(
            max_retries=receipt_settings.max_retries,
            backoff_seconds=receipt_settings.retry_backoff_seconds,
            timeout_seconds=receipt_settings.provider_timeout_seconds,
        )


class _TransientFailure(Exception):
    """Provider call failed in a way worth retrying."""

    def __init__(self, result: ProviderResult) -> None:
        self.result = result
        super().__init__(result.error_message or "provider reported failure")


@dataclass
class DispatchHandle:
    """Running channel tasks of one receipt."""

    receipt_id: str
    tasks: dict[Channel, asyncio.Task] = field(default_factory=dict)
    cancelled: bool = False

    def cancel(self) -> None:
        """Suppress channels that have not started; in-flight calls finish."""
        self.cancelled = True

    async def wait(self) -> dict[Channel, ChannelOutcome | None]:
        """
        Wait for every channel and return its outcome.

        A skipped channel maps to None. Cancelling the waiter does not cancel
        in-flight channel calls.
        """
        if not self.tasks:
            return {}
        try:
            await asyncio.wait(self.tasks.values())
        except asyncio.CancelledError:
            self.cancel()
            raise
        return {channel: task.result() for channel, task in self.tasks.items()}


class ChannelDispatcher:
    """Orchestrates provider calls for the three receipt channels."""

    def __init__(
        self,
        payment_provider: PaymentProvider,
        email_provider: EmailProvider,
        sms_provider: SMSProvider,
        reconciler: StatusReconciler,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.payment_provider = payment_provider
        self.email_provider = email_provider
        self.sms_provider = sms_provider
        self.reconciler = reconciler
        self.policy = policy or RetryPolicy()
        self._tasks: set[asyncio.Task] = set()
        self._running: set[tuple[str, Channel]] = set()

    # ==================== Fan-out ====================

    def dispatch(
        self,
        receipt: Receipt,
        *,
        notify_before_payment: bool = True,
        template_data: Mapping[Channel, dict[str, Any]] | None = None,
    ) -> DispatchHandle:
        """
        Start all three channels for a freshly stored receipt.

        Args:
            receipt: The stored receipt
            notify_before_payment: Send email/SMS without waiting for payment;
                when False they start only after payment completes and are
                skipped if it fails
            template_data: Rendered message data for the email and SMS channels

        Returns:
            Handle over the running channel tasks
        """
        template_data = template_data or {}
        handle = DispatchHandle(receipt_id=receipt.id)

        payment = self._spawn(handle, receipt, Channel.PAYMENT, None, None)
        gate = None if notify_before_payment else payment
        for channel in (Channel.EMAIL, Channel.SMS):
            self._spawn(handle, receipt, channel, template_data.get(channel), gate)

        logger.info(
            "Channels dispatched",
            receipt_id=receipt.id,
            notify_before_payment=notify_before_payment,
        )
        return handle

    def _spawn(
        self,
        handle: DispatchHandle,
        receipt: Receipt,
        channel: Channel,
        data: dict[str, Any] | None,
        gate: asyncio.Task | None,
    ) -> asyncio.Task:
        key = (receipt.id, channel)
        self._claim(key)
        task = asyncio.create_task(
            self._run_dispatched(handle, receipt, channel, data, gate),
            name=f"receipt-{receipt.id}-{channel.value}",
        )
        handle.tasks[channel] = task
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        task.add_done_callback(lambda _: self._running.discard(key))
        return task

    async def _run_dispatched(
        self,
        handle: DispatchHandle,
        receipt: Receipt,
        channel: Channel,
        data: dict[str, Any] | None,
        gate: asyncio.Task | None,
    ) -> ChannelOutcome | None:
        if gate is not None:
            # asyncio.wait so that cancelling this task never cancels payment
            await asyncio.wait({gate})
            payment = None if gate.cancelled() or gate.exception() else gate.result()
            if payment is None or not payment.succeeded:
                logger.info(
                    "Channel skipped: payment did not complete",
                    receipt_id=receipt.id,
                    channel=channel.value,
                )
                return None

        if handle.cancelled:
            logger.info(
                "Channel suppressed by cancellation",
                receipt_id=receipt.id,
                channel=channel.value,
            )
            return None

        return await self.run_channel(
            receipt, channel, attempt=receipt.attempt_of(channel), template_data=data
        )

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Channel task crashed",
                task=task.get_name(),
                error=str(exc),
                exc_info=exc,
            )

    async def drain(self) -> None:
        """Wait until every background channel task has finished."""
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def is_running(self, receipt_id: str, channel: Channel) -> bool:
        """Whether a run of ``channel`` for the receipt is queued or in flight."""
        return (receipt_id, channel) in self._running

    @contextmanager
    def exclusive_channel(self, receipt_id: str, channel: Channel) -> Iterator[None]:
        """
        Hold a receipt's channel for a single run.

        Raises:
            ChannelStateError: another run of the channel has not finished
        """
        key = (receipt_id, channel)
        self._claim(key)
        try:
            yield
        finally:
            self._running.discard(key)

    def _claim(self, key: tuple[str, Channel]) -> None:
        receipt_id, channel = key
        if key in self._running:
            raise ChannelStateError(
                f"The {channel.value} channel of receipt {receipt_id} is still in flight",
                channel=channel.value,
                current_status="in flight",
            )
        self._running.add(key)

    # ==================== Single channel ====================

    async def run_channel(
        self,
        receipt: Receipt,
        channel: Channel,
        *,
        attempt: int,
        template_data: dict[str, Any] | None = None,
    ) -> ChannelOutcome:
        """
        Run one channel to its final outcome and reconcile it.

        Args:
            receipt: Receipt being delivered
            channel: Channel to run
            attempt: Dispatch attempt reported with the outcome
            template_data: Rendered message data for email/SMS

        Returns:
            The outcome handed to the reconciler
        """
        call = self._provider_call(receipt, channel, template_data or {})
        calls = 0

        if call is None:
            result = ProviderResult(
                status=ChannelStatus.FAILED,
                error_message=f"Receipt has no {channel.value} contact details",
            )
        else:
            try:
                result, calls = await self._call_with_retry(receipt, channel, call)
            except ProviderInputError as e:
                calls = 1
                result = ProviderResult(status=ChannelStatus.FAILED, error_message=e.message)
                logger.warning(
                    "Provider rejected input; not retrying",
                    receipt_id=receipt.id,
                    channel=channel.value,
                    error=e.message,
                )
            except Exception as e:
                calls = 1
                result = ProviderResult(status=ChannelStatus.FAILED, error_message=str(e))
                logger.exception(
                    "Provider call raised unexpectedly",
                    receipt_id=receipt.id,
                    channel=channel.value,
                )

        outcome = ChannelOutcome(
            channel=channel,
            status=result.status,
            provider_ref=result.provider_ref,
            attempt=attempt,
            error_message=result.error_message,
        )

        if result.failed:
            failure = ProviderFailure(
                f"{channel.value} channel failed",
                channel=channel.value,
                attempts=calls,
                provider_error=result.error_message,
            )
            logger.warning(
                failure.message,
                error_code=failure.error_code,
                receipt_id=receipt.id,
                **failure.context,
            )

        await self.reconciler.apply(receipt.id, outcome)
        return outcome

    def _provider_call(
        self, receipt: Receipt, channel: Channel, template_data: dict[str, Any]
    ) -> ProviderCall | None:
        if channel == Channel.PAYMENT:
            payer_ref = receipt.payer_email or receipt.payer
            return lambda: self.payment_provider.charge(receipt.amount, payer_ref)
        if channel == Channel.EMAIL:
            if not receipt.payer_email:
                return None
            email = receipt.payer_email
            return lambda: self.email_provider.send(email, template_data)
        if not receipt.payer_phone:
            return None
        phone = receipt.payer_phone
        return lambda: self.sms_provider.send(phone, template_data)

    async def _call_with_retry(
        self, receipt: Receipt, channel: Channel, call: ProviderCall
    ) -> tuple[ProviderResult, int]:
        calls = 0

        def log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.info(
                "Retrying provider call",
                receipt_id=receipt.id,
                channel=channel.value,
                call=retry_state.attempt_number,
                error=str(exc) if exc else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_retries + 1),
            wait=wait_fixed(self.policy.backoff_seconds),
            retry=retry_if_exception_type(_TransientFailure),
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            async for retry_attempt in retrying:
                with retry_attempt:
                    calls = retry_attempt.retry_state.attempt_number
                    result = await self._call_once(channel, call)
        except _TransientFailure as e:
            return e.result, calls
        return result, calls

    async def _call_once(self, channel: Channel, call: ProviderCall) -> ProviderResult:
        try:
            async with asyncio.timeout(self.policy.timeout_seconds):
                result = await call()
        except TimeoutError:
            raise _TransientFailure(
                ProviderResult(
                    status=ChannelStatus.FAILED,
                    error_message=(
                        f"{channel.value} provider timed out after "
                        f"{self.policy.timeout_seconds}s"
                    ),
                )
            ) from None

        if result.failed:
            raise _TransientFailure(result)
        if result.status != SUCCESS_STATUS[channel]:
            raise ProviderInputError(
                f"Provider returned status '{result.status.value}' for the {channel.value} channel",
                provider=channel.value,
            )
        return result
