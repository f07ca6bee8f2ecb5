"""
Receipt lifecycle module.

Provides:
- Identifier and verification token generation
- Receipt stores (in-memory and SQLAlchemy)
- Channel dispatch with bounded retries
- Status reconciliation with sticky success
- Verification, statistics and the service facade
"""

from recetra.receipts.auth import CurrentUser, StaticAuthContext, UserRole
from recetra.receipts.dependencies import build_receipt_service
from recetra.receipts.dispatcher import ChannelDispatcher, DispatchHandle, RetryPolicy
from recetra.receipts.exceptions import (
    AnomalousTransition,
    ChannelStateError,
    DuplicateKeyError,
    PermissionDeniedError,
    ProviderFailure,
    ProviderInputError,
    ReceiptError,
    ReceiptNotFoundError,
    ReceiptValidationError,
    TemplateNotFoundError,
)
from recetra.receipts.models import (
    Channel,
    ChannelOutcome,
    ChannelStatus,
    IssueReceiptRequest,
    PaymentMethod,
    Receipt,
    ReceiptSummary,
    VerificationResult,
    VerificationStatus,
)
from recetra.receipts.reconciler import ReconcileDecision, ReconcileResult, StatusReconciler
from recetra.receipts.service import ReceiptService
from recetra.receipts.store import InMemoryReceiptStore, ReceiptStore
from recetra.receipts.verification import ReceiptVerifier

__all__ = [
    # Exceptions
    "ReceiptError",
    "ReceiptValidationError",
    "DuplicateKeyError",
    "ReceiptNotFoundError",
    "TemplateNotFoundError",
    "PermissionDeniedError",
    "ChannelStateError",
    "ProviderFailure",
    "AnomalousTransition",
    "ProviderInputError",
    # Models
    "Channel",
    "ChannelOutcome",
    "ChannelStatus",
    "IssueReceiptRequest",
    "PaymentMethod",
    "Receipt",
    "ReceiptSummary",
    "VerificationResult",
    "VerificationStatus",
    # Engine
    "ChannelDispatcher",
    "DispatchHandle",
    "RetryPolicy",
    "ReconcileDecision",
    "ReconcileResult",
    "StatusReconciler",
    "ReceiptStore",
    "InMemoryReceiptStore",
    "ReceiptVerifier",
    "ReceiptService",
    "build_receipt_service",
    # Auth
    "CurrentUser",
    "StaticAuthContext",
    "UserRole",
]
