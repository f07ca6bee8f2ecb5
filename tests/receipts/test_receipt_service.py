"""
Tests for the receipt service facade.

Covers the issuance scenarios treasurers run into: a clean issuance, an SMS
outage, concurrent issuance, role checks, validation before side effects,
manual retries and cancellation of a waiting caller.
"""

import asyncio
import re
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import patch

import pytest

from recetra.receipts.auth import StaticAuthContext
from recetra.receipts.exceptions import (
    ChannelStateError,
    DuplicateKeyError,
    PermissionDeniedError,
    ReceiptNotFoundError,
    ReceiptValidationError,
)
from recetra.receipts.models import (
    Channel,
    ChannelStatus,
    IssueReceiptRequest,
    VerificationStatus,
)

pytestmark = pytest.mark.asyncio

FAILED = ChannelStatus.FAILED


class TestIssueReceipt:
    """Test receipt issuance."""

    async def test_juan_dela_cruz_membership(self, service, store, dispatcher, juan_request):
        """Test the standard issuance scenario end to end."""
        receipt = await service.issue_receipt(juan_request)

        year = datetime.now(UTC).year
        assert re.fullmatch(rf"OR-{year}-CSS-000001-[A-Z2-9]{{4}}", receipt.receipt_number)
        assert receipt.amount == Decimal("500.00")
        assert receipt.currency == "PHP"
        assert receipt.issued_by == "Maria Santos"
        assert receipt.issued_by_id == "user-encoder"
        assert receipt.payer_phone == "09171234567"
        assert receipt.payment_status == ChannelStatus.PENDING
        assert receipt.email_status == ChannelStatus.PENDING
        assert receipt.sms_status == ChannelStatus.PENDING

        await dispatcher.drain()

        stored = await service.get_receipt(receipt.id)
        assert stored.payment_status == ChannelStatus.COMPLETED
        assert stored.email_status == ChannelStatus.SENT
        assert stored.sms_status == ChannelStatus.SENT

        verification = await service.verify_token(receipt.verification_token)
        assert verification.status == VerificationStatus.GENUINE
        assert verification.summary.amount == Decimal("500.00")
        assert verification.summary.organization == "Computer Science Society"

    async def test_wait_for_channels_returns_reconciled_receipt(self, service, juan_request):
        """Test waiting returns the receipt after every channel finished."""
        receipt = await service.issue_receipt(juan_request, wait_for_channels=True)

        assert receipt.payment_status == ChannelStatus.COMPLETED
        assert receipt.email_status == ChannelStatus.SENT
        assert receipt.sms_status == ChannelStatus.SENT

    async def test_sms_outage_does_not_fail_issuance(self, service, sms, juan_request):
        """Test an SMS provider failure is recorded on the receipt only."""
        sms.script = [FAILED, FAILED, FAILED]

        receipt = await service.issue_receipt(juan_request, wait_for_channels=True)

        assert receipt.sms_status == ChannelStatus.FAILED
        assert receipt.payment_status == ChannelStatus.COMPLETED
        assert receipt.email_status == ChannelStatus.SENT
        assert len(sms.calls) == 3

    async def test_accepts_request_model(self, service, juan_request):
        """Test a pre-validated request model is accepted as is."""
        request = IssueReceiptRequest(**juan_request)

        receipt = await service.issue_receipt(request)

        assert receipt.payer == "Juan Dela Cruz"

    async def test_amount_quantized_to_currency(self, service, juan_request):
        """Test amounts are rounded to the currency's minor unit."""
        receipt = await service.issue_receipt({**juan_request, "amount": "100.456"})

        assert receipt.amount == Decimal("100.46")

    async def test_explicit_organization_code(self, service, juan_request):
        """Test a given organization code overrides the initials."""
        receipt = await service.issue_receipt({**juan_request, "organization_code": "cs"})

        assert "-CS-" in receipt.receipt_number
        assert receipt.organization_code == "CS"

    async def test_default_template_applied(self, service, juan_request, receipt_config):
        """Test receipts without a template use the configured default."""
        receipt = await service.issue_receipt(juan_request)

        assert receipt.template_id == receipt_config.default_template_id

    async def test_unknown_template_falls_back(self, service, dispatcher, email, juan_request):
        """Test an unknown template does not block issuance."""
        receipt = await service.issue_receipt({**juan_request, "template_id": "99"})
        await dispatcher.drain()

        assert receipt.template_id == "99"
        template_data = email.calls[0][1]
        assert receipt.receipt_number in template_data["subject"]
        assert "Standard Receipt" in template_data["text"]

    async def test_email_carries_rendered_message(self, service, dispatcher, email, sms, juan_request):
        """Test notification providers receive the rendered receipt message."""
        receipt = await service.issue_receipt(juan_request)
        await dispatcher.drain()

        to, data = email.calls[0]
        assert to == "juan.delacruz@example.com"
        assert data["template_id"] == "1"
        assert receipt.verification_token in data["text"]
        assert receipt.receipt_number in sms.calls[0][1]["text"]

    async def test_audit_event_written(self, service, juan_request):
        """Test issuance is recorded on the audit log."""
        with patch("recetra.receipts.service.log_audit_event") as audit:
            receipt = await service.issue_receipt(juan_request)

        audit.assert_called_once()
        args, kwargs = audit.call_args
        assert args == ("receipt.issued",)
        assert kwargs["receipt_id"] == receipt.id
        assert kwargs["user_id"] == "user-encoder"


class TestIssueValidation:
    """Test that bad input is rejected before any side effect."""

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"amount": "-5"}, "amount"),
            ({"amount": "0"}, "amount"),
            ({"amount": "abc"}, "amount"),
            ({"amount": "NaN"}, "amount"),
            ({"payer": "   "}, "payer"),
            ({"payer_email": "not-an-email"}, "payer_email"),
            ({"payer_phone": "12"}, "payer_phone"),
            ({"organization_code": "C$S"}, "organization_code"),
            ({"unexpected": "value"}, "unexpected"),
        ],
    )
    async def test_invalid_request(self, service, store, payment, juan_request, overrides, field):
        """Test invalid fields raise ReceiptValidationError and store nothing."""
        with pytest.raises(ReceiptValidationError) as exc_info:
            await service.issue_receipt({**juan_request, **overrides})

        assert exc_info.value.status_code == 422
        assert exc_info.value.context["field"] == field
        assert len(store) == 0
        assert payment.calls == []

    async def test_missing_fields(self, service, store):
        """Test every missing field is reported."""
        with pytest.raises(ReceiptValidationError) as exc_info:
            await service.issue_receipt({"payer": "Juan Dela Cruz"})

        fields = {err["field"] for err in exc_info.value.context["validation_errors"]}
        assert {"amount", "purpose", "category", "organization"} <= fields
        assert len(store) == 0

    async def test_unknown_currency(self, service, store, juan_request):
        """Test an unknown currency code is rejected."""
        with pytest.raises(ReceiptValidationError) as exc_info:
            await service.issue_receipt({**juan_request, "currency": "ZZZ"})

        assert exc_info.value.context["field"] == "currency"
        assert len(store) == 0

    async def test_amount_rounding_to_zero(self, service, store, juan_request):
        """Test an amount below the minor unit is rejected."""
        with pytest.raises(ReceiptValidationError) as exc_info:
            await service.issue_receipt({**juan_request, "amount": "0.001"})

        assert exc_info.value.context["field"] == "amount"
        assert len(store) == 0


class TestRoleGating:
    """Test role checks on write operations."""

    async def test_viewer_cannot_issue(self, service, store, viewer, juan_request):
        """Test viewers are refused before anything happens."""
        service.auth = StaticAuthContext(viewer)

        with pytest.raises(PermissionDeniedError) as exc_info:
            await service.issue_receipt(juan_request)

        assert exc_info.value.status_code == 403
        assert exc_info.value.context["required_roles"] == ["Admin", "Encoder"]
        assert len(store) == 0

    async def test_viewer_cannot_retry(self, service, viewer, juan_request):
        """Test viewers cannot retry channels."""
        receipt = await service.issue_receipt(juan_request, wait_for_channels=True)
        service.auth = StaticAuthContext(viewer)

        with pytest.raises(PermissionDeniedError):
            await service.retry_channel(receipt.id, Channel.SMS)

    async def test_viewer_can_verify(self, service, viewer, juan_request):
        """Test verification is open to every role."""
        receipt = await service.issue_receipt(juan_request)
        service.auth = StaticAuthContext(viewer)

        result = await service.verify_token(receipt.verification_token)

        assert result.is_genuine


class TestConcurrentIssuance:
    """Test identifier uniqueness under concurrency."""

    async def test_concurrent_issuance_never_duplicates(self, service, store, dispatcher, juan_request):
        """Test parallel issuances get distinct identifiers."""
        receipts = await asyncio.gather(
            *(service.issue_receipt(juan_request) for _ in range(25))
        )
        await dispatcher.drain()

        assert len({r.id for r in receipts}) == 25
        assert len({r.receipt_number for r in receipts}) == 25
        assert len({r.verification_token for r in receipts}) == 25
        assert len(store) == 25

    async def test_duplicate_key_regenerates(self, service, store, juan_request, monkeypatch):
        """Test a collision in the store is retried with fresh identifiers."""
        original_put = store.put
        attempts = []

        async def flaky_put(receipt):
            attempts.append(receipt.receipt_number)
            if len(attempts) == 1:
                raise DuplicateKeyError("collision", key="receipt_number", value="x")
            return await original_put(receipt)

        monkeypatch.setattr(store, "put", flaky_put)

        receipt = await service.issue_receipt(juan_request)

        assert len(attempts) == 2
        assert attempts[0] != attempts[1]
        assert receipt.receipt_number == attempts[1]

    async def test_duplicate_key_gives_up(self, service, store, payment, juan_request, monkeypatch):
        """Test issuance fails after the configured number of collisions."""
        attempts = []

        async def always_duplicate(receipt):
            attempts.append(receipt)
            raise DuplicateKeyError("collision", key="verification_token", value="x")

        monkeypatch.setattr(store, "put", always_duplicate)

        with pytest.raises(DuplicateKeyError):
            await service.issue_receipt(juan_request)

        assert len(attempts) == 3
        assert payment.calls == []


class TestRetryChannel:
    """Test manual channel retries."""

    async def test_retry_failed_sms(self, service, sms, juan_request):
        """Test a failed SMS can be retried to success."""
        sms.script = [FAILED, FAILED, FAILED]
        receipt = await service.issue_receipt(juan_request, wait_for_channels=True)

        outcome = await service.retry_channel(receipt.id, "sms")

        assert outcome.status == ChannelStatus.SENT
        assert outcome.attempt == 2
        stored = await service.get_receipt(receipt.id)
        assert stored.sms_status == ChannelStatus.SENT
        assert stored.attempt_of(Channel.SMS) == 2
        assert receipt.verification_token in sms.calls[-1][1]["text"]

    async def test_retry_failing_again(self, service, payment, juan_request):
        """Test a retry that fails again leaves the channel failed."""
        payment.script = [FAILED] * 6
        receipt = await service.issue_receipt(
            juan_request, notify_before_payment=False, wait_for_channels=True
        )

        outcome = await service.retry_channel(receipt.id, Channel.PAYMENT)

        assert outcome.status == ChannelStatus.FAILED
        stored = await service.get_receipt(receipt.id)
        assert stored.payment_status == ChannelStatus.FAILED
        assert stored.attempt_of(Channel.PAYMENT) == 2

    async def test_retry_succeeded_channel_refused(self, service, juan_request):
        """Test retrying a delivered channel raises ChannelStateError."""
        receipt = await service.issue_receipt(juan_request, wait_for_channels=True)

        with pytest.raises(ChannelStateError):
            await service.retry_channel(receipt.id, Channel.EMAIL)

    async def test_retry_skipped_notification(self, service, payment, email, juan_request):
        """Test a notification skipped by a failed payment can be sent later."""
        payment.script = [FAILED, FAILED, FAILED]
        receipt = await service.issue_receipt(
            juan_request, notify_before_payment=False, wait_for_channels=True
        )
        assert receipt.email_status == ChannelStatus.PENDING

        outcome = await service.retry_channel(receipt.id, Channel.EMAIL)

        assert outcome.status == ChannelStatus.SENT
        assert outcome.attempt == 1
        assert len(email.calls) == 1

    async def test_retry_refused_while_payment_in_flight(
        self, service, dispatcher, payment, juan_request
    ):
        """Test a retry never charges twice while the first charge is running."""
        payment.delay = 0.05
        receipt = await service.issue_receipt(juan_request)
        await payment.started.wait()

        with pytest.raises(ChannelStateError) as exc_info:
            await service.retry_channel(receipt.id, Channel.PAYMENT)
        await dispatcher.drain()

        assert exc_info.value.context == {"channel": "payment", "current_status": "in flight"}
        assert len(payment.calls) == 1
        stored = await service.get_receipt(receipt.id)
        assert stored.payment_status == ChannelStatus.COMPLETED
        assert stored.attempt_of(Channel.PAYMENT) == 1

    async def test_retry_refused_while_notification_waits_on_payment(
        self, service, dispatcher, payment, email, juan_request
    ):
        """Test a gated notification cannot be retried before its dispatch finishes."""
        payment.delay = 0.05
        receipt = await service.issue_receipt(juan_request, notify_before_payment=False)
        await payment.started.wait()

        with pytest.raises(ChannelStateError):
            await service.retry_channel(receipt.id, Channel.EMAIL)
        await dispatcher.drain()

        assert len(email.calls) == 1
        assert (await service.get_receipt(receipt.id)).email_status == ChannelStatus.SENT

    async def test_concurrent_retries_run_once(self, service, sms, juan_request):
        """Test two simultaneous retries of one channel make a single call."""
        sms.script = [FAILED, FAILED, FAILED]
        receipt = await service.issue_receipt(juan_request, wait_for_channels=True)
        sms.delay = 0.05

        results = await asyncio.gather(
            service.retry_channel(receipt.id, Channel.SMS),
            service.retry_channel(receipt.id, Channel.SMS),
            return_exceptions=True,
        )

        outcomes = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, ChannelStateError)]
        assert len(outcomes) == 1
        assert len(errors) == 1
        assert outcomes[0].status == ChannelStatus.SENT
        assert len(sms.calls) == 4
        assert (await service.get_receipt(receipt.id)).attempt_of(Channel.SMS) == 2

    async def test_retry_allowed_after_dispatch_finishes(self, service, dispatcher, sms, juan_request):
        """Test the channel is released once its run completes."""
        sms.script = [FAILED, FAILED, FAILED]
        receipt = await service.issue_receipt(juan_request, wait_for_channels=True)

        assert not dispatcher.is_running(receipt.id, Channel.SMS)
        outcome = await service.retry_channel(receipt.id, Channel.SMS)

        assert outcome.status == ChannelStatus.SENT
        assert not dispatcher.is_running(receipt.id, Channel.SMS)

    async def test_retry_unknown_receipt(self, service):
        """Test retrying a missing receipt raises ReceiptNotFoundError."""
        with pytest.raises(ReceiptNotFoundError):
            await service.retry_channel("missing", Channel.SMS)

    async def test_retry_unknown_channel(self, service, juan_request):
        """Test an unknown channel name is a validation error."""
        receipt = await service.issue_receipt(juan_request, wait_for_channels=True)

        with pytest.raises(ReceiptValidationError):
            await service.retry_channel(receipt.id, "fax")


class TestNotificationOrdering:
    """Test holding notifications until payment completes."""

    async def test_failed_payment_leaves_notifications_pending(
        self, service, payment, email, sms, juan_request
    ):
        """Test gated notifications are skipped when payment fails."""
        payment.script = [FAILED, FAILED, FAILED]

        receipt = await service.issue_receipt(
            juan_request, notify_before_payment=False, wait_for_channels=True
        )

        assert receipt.payment_status == ChannelStatus.FAILED
        assert receipt.email_status == ChannelStatus.PENDING
        assert receipt.sms_status == ChannelStatus.PENDING
        assert email.calls == []
        assert sms.calls == []

    async def test_gated_message_is_final_receipt(self, service, email, juan_request):
        """Test notifications sent after payment use the issued-receipt message."""
        receipt = await service.issue_receipt(
            juan_request, notify_before_payment=False, wait_for_channels=True
        )

        assert email.calls[0][1]["subject"].startswith(f"Official Receipt {receipt.receipt_number}")


class TestCancellation:
    """Test cancelling a caller waiting on issuance."""

    async def test_cancelled_caller_keeps_receipt_consistent(
        self, service, store, dispatcher, payment, juan_request
    ):
        """Test in-flight channels still apply their outcomes."""
        payment.delay = 0.05
        caller = asyncio.create_task(service.issue_receipt(juan_request, wait_for_channels=True))
        await payment.started.wait()

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await dispatcher.drain()

        [receipt] = await store.list_all()
        assert receipt.payment_status == ChannelStatus.COMPLETED


class TestQueries:
    """Test listings and statistics."""

    async def test_listings(self, service, juan_request):
        """Test organization and issuer listings."""
        await service.issue_receipt(juan_request)
        await service.issue_receipt({**juan_request, "organization": "Student Council"})

        css = await service.list_organization_receipts("Computer Science Society")
        mine = await service.list_issued_receipts()
        others = await service.list_issued_receipts("someone-else")

        assert len(css) == 1
        assert len(mine) == 2
        assert others == []

    async def test_get_by_number(self, service, juan_request):
        """Test lookups by receipt number."""
        receipt = await service.issue_receipt(juan_request)

        assert (await service.get_receipt_by_number(receipt.receipt_number)).id == receipt.id

    async def test_statistics(self, service, sms, juan_request):
        """Test statistics aggregate amounts and channel outcomes."""
        sms.script = [FAILED, FAILED, FAILED]
        await service.issue_receipt(juan_request, wait_for_channels=True)
        await service.issue_receipt(
            {**juan_request, "amount": "150", "category": "Event Fee"}, wait_for_channels=True
        )

        stats = await service.get_statistics()

        assert stats.total_receipts == 2
        assert stats.total_amount == Decimal("650.00")
        assert stats.receipts_this_month == 2
        assert stats.amount_by_category == {
            "Membership Fee": Decimal("500.00"),
            "Event Fee": Decimal("150.00"),
        }
        assert stats.status_counts["sms"] == {"failed": 1, "sent": 1}
        assert stats.status_counts["payment"] == {"completed": 2}

    async def test_statistics_filtered(self, service, juan_request):
        """Test statistics honour the organization filter."""
        await service.issue_receipt(juan_request)
        await service.issue_receipt({**juan_request, "organization": "Engineering Society"})

        stats = await service.get_statistics(organization="Engineering Society")

        assert stats.total_receipts == 1

    async def test_statistics_per_currency(self, service, juan_request):
        """Test peso and dollar receipts are totalled separately."""
        await service.issue_receipt(juan_request)
        await service.issue_receipt({**juan_request, "currency": "USD"})

        pesos = await service.get_statistics()
        dollars = await service.get_statistics(currency="usd")

        assert pesos.total_amount == Decimal("500.00")
        assert pesos.amount_by_currency == {"PHP": Decimal("500.00"), "USD": Decimal("500.00")}
        assert dollars.currency == "USD"
        assert dollars.total_receipts == 1
        assert dollars.total_amount == Decimal("500.00")

    async def test_statistics_unknown_currency(self, service):
        """Test an unknown report currency is a validation error."""
        with pytest.raises(ReceiptValidationError) as exc_info:
            await service.get_statistics(currency="XYZ")

        assert exc_info.value.context["field"] == "currency"
