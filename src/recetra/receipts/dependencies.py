"""
Receipt service wiring.

Builds the service and its collaborators from settings. Providers are always
injected here rather than looked up as globals, so tests and the CLI can swap
in their own.
"""

import random

from recetra.receipts.auth import AuthContext
from recetra.receipts.dispatcher import ChannelDispatcher, RetryPolicy
from recetra.receipts.providers import (
    EmailProvider,
    MockEmailProvider,
    MockPaymentProvider,
    MockSMSProvider,
    PaymentProvider,
    SMSProvider,
)
from recetra.receipts.reconciler import StatusReconciler
from recetra.receipts.service import ReceiptService
from recetra.receipts.store import InMemoryReceiptStore, ReceiptStore
from recetra.receipts.templates import InMemoryTemplateCatalog, TemplateCatalog
from recetra.settings import Settings, get_settings


def build_mock_providers(
    config: Settings.ProviderSettings,
) -> tuple[MockPaymentProvider, MockEmailProvider, MockSMSProvider]:
    """Mock providers sharing one (optionally seeded) random generator."""
    rng = random.Random(config.seed)
    return (
        MockPaymentProvider(config.payment_latency_seconds, config.payment_failure_rate, rng),
        MockEmailProvider(config.email_latency_seconds, config.email_failure_rate, rng),
        MockSMSProvider(config.sms_latency_seconds, config.sms_failure_rate, rng),
    )


def build_receipt_service(
    auth: AuthContext,
    store: ReceiptStore | None = None,
    payment_provider: PaymentProvider | None = None,
    email_provider: EmailProvider | None = None,
    sms_provider: SMSProvider | None = None,
    templates: TemplateCatalog | None = None,
    settings: Settings | None = None,
) -> ReceiptService:
    """
    Assemble a ReceiptService.

    Missing providers are replaced by the mock providers configured in
    ``settings.providers``; a missing store becomes an in-memory store.
    """
    settings = settings or get_settings()
    store = store if store is not None else InMemoryReceiptStore()

    mock_payment, mock_email, mock_sms = build_mock_providers(settings.providers)
    dispatcher = ChannelDispatcher(
        payment_provider or mock_payment,
        email_provider or mock_email,
        sms_provider or mock_sms,
        StatusReconciler(store),
        RetryPolicy.from_settings(settings.receipts),
    )
    return ReceiptService(
        store,
        dispatcher,
        auth,
        templates=templates or InMemoryTemplateCatalog(),
        config=settings.receipts,
    )
