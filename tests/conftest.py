"""
Global pytest configuration and fixtures for RECETRA tests.

Providers are replaced by scripted fakes so every channel outcome is
deterministic; the SQLAlchemy store runs on in-memory SQLite.
"""

import os
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio

# Configure settings before anything from recetra is imported
os.environ.setdefault("RECETRA_ENVIRONMENT", "test")
os.environ.setdefault("RECETRA_OBSERVABILITY__LOG_FORMAT", "console")
os.environ.setdefault("RECETRA_DATABASE__URL", "sqlite+aiosqlite:///:memory:")

from recetra.db import create_engine, create_session_factory, init_db  # noqa: E402
from recetra.receipts.auth import CurrentUser, StaticAuthContext, UserRole  # noqa: E402
from recetra.receipts.db_store import SQLAlchemyReceiptStore  # noqa: E402
from recetra.receipts.dispatcher import ChannelDispatcher, RetryPolicy  # noqa: E402
from recetra.receipts.identifiers import ReceiptIdentifierGenerator  # noqa: E402
from recetra.receipts.models import Receipt  # noqa: E402
from recetra.receipts.reconciler import StatusReconciler  # noqa: E402
from recetra.receipts.service import ReceiptService  # noqa: E402
from recetra.receipts.store import InMemoryReceiptStore  # noqa: E402
from recetra.receipts.templates import InMemoryTemplateCatalog  # noqa: E402
from recetra.settings import Settings  # noqa: E402
from tests.fakes import (  # noqa: E402
    ScriptedEmailProvider,
    ScriptedPaymentProvider,
    ScriptedSMSProvider,
)


# ==================== Users ====================


@pytest.fixture
def encoder() -> CurrentUser:
    return CurrentUser(
        id="user-encoder",
        full_name="Maria Santos",
        role=UserRole.ENCODER,
        organization="Computer Science Society",
    )


@pytest.fixture
def viewer() -> CurrentUser:
    return CurrentUser(id="user-viewer", full_name="Pedro Reyes", role=UserRole.VIEWER)


@pytest.fixture
def auth(encoder) -> StaticAuthContext:
    return StaticAuthContext(encoder)


# ==================== Engine ====================


@pytest.fixture
def store() -> InMemoryReceiptStore:
    return InMemoryReceiptStore()


@pytest.fixture
def payment() -> ScriptedPaymentProvider:
    return ScriptedPaymentProvider()


@pytest.fixture
def email() -> ScriptedEmailProvider:
    return ScriptedEmailProvider()


@pytest.fixture
def sms() -> ScriptedSMSProvider:
    return ScriptedSMSProvider()


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_retries=2, backoff_seconds=0, timeout_seconds=0.5)


@pytest.fixture
def reconciler(store) -> StatusReconciler:
    return StatusReconciler(store)


@pytest_asyncio.fixture
async def dispatcher(payment, email, sms, reconciler, policy):
    dispatcher = ChannelDispatcher(payment, email, sms, reconciler, policy)
    yield dispatcher
    await dispatcher.drain()


@pytest.fixture
def receipt_config() -> Settings.ReceiptSettings:
    return Settings.ReceiptSettings(retry_backoff_seconds=0, provider_timeout_seconds=0.5)


@pytest.fixture
def service(store, dispatcher, auth, receipt_config) -> ReceiptService:
    return ReceiptService(
        store,
        dispatcher,
        auth,
        templates=InMemoryTemplateCatalog(),
        config=receipt_config,
    )


# ==================== Data ====================


@pytest.fixture
def juan_request() -> dict[str, Any]:
    return {
        "payer": "Juan Dela Cruz",
        "amount": "500.00",
        "purpose": "Annual membership",
        "category": "Membership Fee",
        "organization": "Computer Science Society",
        "payer_email": "juan.delacruz@example.com",
        "payer_phone": "0917 123 4567",
    }


@pytest.fixture
def make_receipt():
    """Factory for stored-ready receipts with valid identifiers."""
    generator = ReceiptIdentifierGenerator()

    def _make(**overrides: Any) -> Receipt:
        issued_at = overrides.pop("issued_at", datetime(2024, 3, 15, 9, 30, tzinfo=UTC))
        organization_code = overrides.pop("organization_code", "CSS")
        number = generator.new_receipt_number(organization_code, issued_at.year)
        fields: dict[str, Any] = {
            "id": generator.new_receipt_id(),
            "receipt_number": number,
            "verification_token": generator.new_verification_token(number, issued_at),
            "payer": "Juan Dela Cruz",
            "amount": Decimal("500.00"),
            "currency": "PHP",
            "purpose": "Annual membership",
            "category": "Membership Fee",
            "organization": "Computer Science Society",
            "organization_code": organization_code,
            "issued_by": "Maria Santos",
            "issued_by_id": "user-encoder",
            "issued_at": issued_at,
            "template_id": "1",
            "payer_email": "juan.delacruz@example.com",
            "payer_phone": "09171234567",
        }
        fields.update(overrides)
        return Receipt(**fields)

    return _make


@pytest_asyncio.fixture
async def db_engine():
    engine = create_engine("sqlite+aiosqlite:///:memory:", echo=False)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sql_store(db_engine) -> SQLAlchemyReceiptStore:
    return SQLAlchemyReceiptStore(create_session_factory(db_engine))
