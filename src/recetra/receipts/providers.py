"""
Payment, email and SMS provider interfaces.

Providers are untrusted external services with a declared latency and
failure-rate contract. They report a terminal status per call; a
``ProviderInputError`` signals input the provider will never accept.

The mock providers reproduce the contract of the placeholder services the
mobile and desktop apps shipped with.
"""

import asyncio
import random
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from recetra.receipts.exceptions import ProviderInputError
from recetra.receipts.models import ChannelStatus

logger = structlog.get_logger(__name__)


class ProviderResult(BaseModel):
    """Result of a single provider call."""

    model_config = ConfigDict(frozen=True)

    status: ChannelStatus
    provider_ref: str | None = None
    error_message: str | None = None

    @property
    def failed(self) -> bool:
        return self.status == ChannelStatus.FAILED


class PaymentProvider(ABC):
    """Charges the payer for a receipt."""

    name = "payment"

    @abstractmethod
    async def charge(self, amount: Decimal, payer_ref: str) -> ProviderResult:
        """Return ``completed`` or ``failed``."""


class EmailProvider(ABC):
    """Delivers receipt emails."""

    name = "email"

    @abstractmethod
    async def send(self, to: str, template_data: dict[str, Any]) -> ProviderResult:
        """Return ``sent`` or ``failed``."""


class SMSProvider(ABC):
    """Delivers receipt text messages."""

    name = "sms"

    @abstractmethod
    async def send(self, to: str, template_data: dict[str, Any]) -> ProviderResult:
        """Return ``sent`` or ``failed``."""


def _reference(prefix: str, rng: random.Random) -> str:
    alphabet = "abcdefghijklmnopqrstuvwxyz0123456789"
    tail = "".join(rng.choice(alphabet) for _ in range(9))
    return f"{prefix}-{int(time.time() * 1000)}-{tail}"


class _MockProvider:
    """Shared behaviour of the randomized mock providers."""

    ref_prefix = "MOCK"

    def __init__(
        self,
        latency_seconds: float = 0.0,
        failure_rate: float = 0.0,
        rng: random.Random | None = None,
    ) -> None:
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError("failure_rate must be between 0 and 1")
        self.latency_seconds = latency_seconds
        self.failure_rate = failure_rate
        self.rng = rng or random.Random()
        self.calls = 0

    async def _simulate(self, success_status: ChannelStatus, error_message: str) -> ProviderResult:
        self.calls += 1
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        if self.rng.random() < self.failure_rate:
            return ProviderResult(status=ChannelStatus.FAILED, error_message=error_message)
        return ProviderResult(
            status=success_status, provider_ref=_reference(self.ref_prefix, self.rng)
        )


class MockPaymentProvider(_MockProvider, PaymentProvider):
    """Payment gateway stand-in (default 1s latency, 10% failures)."""

    ref_prefix = "TXN"

    def __init__(
        self,
        latency_seconds: float = 1.0,
        failure_rate: float = 0.1,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(latency_seconds, failure_rate, rng)

    async def charge(self, amount: Decimal, payer_ref: str) -> ProviderResult:
        if amount <= 0:
            raise ProviderInputError("Charge amount must be positive", provider=self.name)
        logger.debug("Mock payment charge", amount=str(amount), payer_ref=payer_ref)
        return await self._simulate(
            ChannelStatus.COMPLETED, "Payment processing failed. Please try again."
        )


class MockEmailProvider(_MockProvider, EmailProvider):
    """Email delivery stand-in (default 0.5s latency, 5% failures)."""

    ref_prefix = "MSG"

    def __init__(
        self,
        latency_seconds: float = 0.5,
        failure_rate: float = 0.05,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(latency_seconds, failure_rate, rng)

    async def send(self, to: str, template_data: dict[str, Any]) -> ProviderResult:
        if "@" not in to:
            raise ProviderInputError(f"Invalid email address: {to!r}", provider=self.name)
        logger.debug("Mock email send", to=to, subject=template_data.get("subject"))
        return await self._simulate(
            ChannelStatus.SENT, "Failed to send email. Please check email configuration."
        )


class MockSMSProvider(_MockProvider, SMSProvider):
    """SMS delivery stand-in (default 0.4s latency, 10% failures)."""

    ref_prefix = "SMS"

    def __init__(
        self,
        latency_seconds: float = 0.4,
        failure_rate: float = 0.1,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(latency_seconds, failure_rate, rng)

    async def send(self, to: str, template_data: dict[str, Any]) -> ProviderResult:
        if not to.lstrip("+").isdigit():
            raise ProviderInputError(f"Invalid phone number: {to!r}", provider=self.name)
        logger.debug("Mock SMS send", to=to)
        return await self._simulate(
            ChannelStatus.SENT, "Failed to send SMS. Please check phone number."
        )
