"""
Receipt service.

Facade over the lifecycle engine used by screens and the CLI: issuance,
manual channel retries, lookups, verification, listings and statistics.
Issuance only fails for problems found before the receipt is stored; channel
failures are recorded on the receipt and never surface as exceptions.
"""

from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import structlog
from pydantic import ValidationError

from recetra.logging import log_audit_event
from recetra.receipts.auth import ISSUER_ROLES, AuthContext, CurrentUser, require_role
from recetra.receipts.dispatcher import ChannelDispatcher
from recetra.receipts.exceptions import DuplicateKeyError, ReceiptValidationError
from recetra.receipts.identifiers import ReceiptIdentifierGenerator
from recetra.receipts.models import (
    Channel,
    ChannelOutcome,
    IssueReceiptRequest,
    Receipt,
    VerificationResult,
)
from recetra.receipts.money_utils import MoneyHandler
from recetra.receipts.notifications import build_template_data, resolve_template
from recetra.receipts.reports import ReceiptStatistics, summarize_receipts
from recetra.receipts.store import ReceiptStore
from recetra.receipts.templates import TemplateCatalog
from recetra.receipts.verification import ReceiptVerifier
from recetra.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _validation_errors(error: ValidationError) -> list[dict[str, Any]]:
    return [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in error.errors()
    ]


class ReceiptService:
    """
    Operations exposed by the receipt lifecycle engine.

    Handles:
    - Receipt issuance with identifier regeneration on collisions
    - Channel fan-out through the dispatcher
    - Manual retries of failed or skipped channels
    - Verification, listings and statistics
    - Role checks and audit logging
    """

    def __init__(
        self,
        store: ReceiptStore,
        dispatcher: ChannelDispatcher,
        auth: AuthContext,
        templates: TemplateCatalog | None = None,
        identifiers: ReceiptIdentifierGenerator | None = None,
        money: MoneyHandler | None = None,
        config: Settings.ReceiptSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config or get_settings().receipts
        self.store = store
        self.dispatcher = dispatcher
        self.auth = auth
        self.templates = templates
        self.identifiers = identifiers or ReceiptIdentifierGenerator(self.config.number_prefix)
        self.money = money or MoneyHandler(
            self.config.default_currency, self.config.default_locale
        )
        self.verifier = ReceiptVerifier(store)
        self.clock = clock

    # ==================== Issuance ====================

    async def issue_receipt(
        self,
        request: IssueReceiptRequest | Mapping[str, Any],
        *,
        notify_before_payment: bool | None = None,
        wait_for_channels: bool = False,
    ) -> Receipt:
        """
        Issue a receipt and start its payment, email and SMS channels.

        Args:
            request: Issuance input, validated before any side effect
            notify_before_payment: Override of the configured notification
                ordering; False holds email/SMS until payment completes
            wait_for_channels: Wait for every channel and return the
                reconciled receipt instead of the freshly stored one

        Returns:
            The stored receipt (all statuses pending unless waited on)
        """
        user = self.auth.current_user()
        require_role(user, *ISSUER_ROLES, operation="issue_receipt")

        request = self._validate_request(request)
        currency, amount = self._normalize_amount(request)
        if notify_before_payment is None:
            notify_before_payment = self.config.notify_before_payment

        receipt = await self._store_new_receipt(request, user, currency, amount)

        log_audit_event(
            "receipt.issued",
            user_id=user.id,
            organization=receipt.organization,
            receipt_id=receipt.id,
            receipt_number=receipt.receipt_number,
            amount=str(receipt.amount),
            currency=receipt.currency,
        )
        logger.info(
            "Receipt issued",
            receipt_id=receipt.id,
            receipt_number=receipt.receipt_number,
            **request.to_log_context(),
        )

        handle = self.dispatcher.dispatch(
            receipt,
            notify_before_payment=notify_before_payment,
            template_data=self._template_data(
                receipt, "payment_pending" if notify_before_payment else "receipt_issued"
            ),
        )
        if not wait_for_channels:
            return receipt

        await handle.wait()
        return await self.store.get(receipt.id)

    def _validate_request(
        self, request: IssueReceiptRequest | Mapping[str, Any]
    ) -> IssueReceiptRequest:
        if isinstance(request, IssueReceiptRequest):
            return request
        try:
            return IssueReceiptRequest.model_validate(dict(request))
        except ValidationError as e:
            errors = _validation_errors(e)
            raise ReceiptValidationError(
                f"Invalid receipt request: {errors[0]['field']}: {errors[0]['message']}",
                field=errors[0]["field"],
                validation_errors=errors,
            ) from e

    def _normalize_amount(self, request: IssueReceiptRequest) -> tuple[str, Decimal]:
        try:
            currency = self.money.validate_currency(
                request.currency or self.config.default_currency
            )
        except ValueError as e:
            raise ReceiptValidationError(str(e), field="currency") from e

        amount = self.money.quantize_amount(request.amount, currency)
        if amount <= 0:
            raise ReceiptValidationError(
                f"Amount {request.amount} rounds to zero in {currency}", field="amount"
            )
        return currency, amount

    async def _store_new_receipt(
        self,
        request: IssueReceiptRequest,
        user: CurrentUser,
        currency: str,
        amount: Decimal,
    ) -> Receipt:
        organization_code = request.resolved_organization_code()
        max_attempts = self.config.identifier_max_attempts

        for attempt in range(1, max_attempts + 1):
            issued_at = self.clock()
            receipt_number = self.identifiers.new_receipt_number(
                organization_code, issued_at.year
            )
            receipt = Receipt(
                id=self.identifiers.new_receipt_id(),
                receipt_number=receipt_number,
                verification_token=self.identifiers.new_verification_token(
                    receipt_number, issued_at
                ),
                payer=request.payer,
                amount=amount,
                currency=currency,
                purpose=request.purpose,
                category=request.category,
                organization=request.organization,
                organization_code=organization_code,
                issued_by=user.full_name,
                issued_by_id=user.id,
                issued_at=issued_at,
                template_id=request.template_id or self.config.default_template_id,
                payer_email=request.payer_email,
                payer_phone=request.payer_phone,
                payment_method=request.payment_method,
            )
            try:
                return await self.store.put(receipt)
            except DuplicateKeyError as e:
                if attempt == max_attempts:
                    raise
                logger.warning(
                    "Receipt identifier collision; regenerating",
                    key=e.context.get("key"),
                    attempt=attempt,
                    max_attempts=max_attempts,
                )

    def _template_data(self, receipt: Receipt, message: str) -> dict[Channel, dict[str, Any]]:
        template = resolve_template(self.templates, receipt.template_id)
        return build_template_data(receipt, template, message)

    # ==================== Retries ====================

    async def retry_channel(self, receipt_id: str, channel: Channel | str) -> ChannelOutcome:
        """
        Run a failed or skipped channel once more.

        Raises:
            ChannelStateError: the channel already succeeded or is still in flight
            ReceiptNotFoundError: no such receipt
        """
        user = self.auth.current_user()
        require_role(user, *ISSUER_ROLES, operation="retry_channel")
        try:
            channel = Channel(channel)
        except ValueError as e:
            raise ReceiptValidationError(f"Unknown channel: {channel}", field="channel") from e

        # Held across reset and run so a retry never overlaps a live dispatch
        with self.dispatcher.exclusive_channel(receipt_id, channel):
            receipt, attempt = await self.dispatcher.reconciler.reset_channel(receipt_id, channel)
            template_data = None
            if channel != Channel.PAYMENT:
                template_data = self._template_data(receipt, "receipt_issued")[channel]

            outcome = await self.dispatcher.run_channel(
                receipt, channel, attempt=attempt, template_data=template_data
            )

        log_audit_event(
            "receipt.channel_retried",
            user_id=user.id,
            organization=receipt.organization,
            receipt_id=receipt.id,
            channel=channel.value,
            attempt=attempt,
            outcome=outcome.status.value,
        )
        return outcome

    # ==================== Queries ====================

    async def get_receipt(self, receipt_id: str) -> Receipt:
        return await self.store.get(receipt_id)

    async def get_receipt_by_number(self, receipt_number: str) -> Receipt:
        return await self.store.get_by_number(receipt_number)

    async def verify_token(self, token: str) -> VerificationResult:
        """Verify a raw token or QR payload."""
        return await self.verifier.verify(token)

    async def list_organization_receipts(self, organization: str) -> Sequence[Receipt]:
        return await self.store.list_by_organization(organization)

    async def list_issued_receipts(self, user_id: str | None = None) -> Sequence[Receipt]:
        """Receipts issued by ``user_id``, defaulting to the current user."""
        if user_id is None:
            user_id = self.auth.current_user().id
        return await self.store.list_by_issuer(user_id)

    async def get_statistics(
        self,
        organization: str | None = None,
        category: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        currency: str | None = None,
    ) -> ReceiptStatistics:
        """Statistics in ``currency``, defaulting to the configured currency."""
        try:
            currency = self.money.validate_currency(currency or self.config.default_currency)
        except ValueError as e:
            raise ReceiptValidationError(str(e), field="currency") from e

        receipts = await self.store.list_all()
        return summarize_receipts(
            receipts,
            now=self.clock(),
            organization=organization,
            category=category,
            start=start,
            end=end,
            currency=currency,
            money=self.money,
        )
