"""
Receipt lifecycle exceptions.

Custom exceptions for receipt issuance, storage, delivery and verification.
Each error carries a machine-readable code, a status code, context data and a
recovery hint.
"""

from typing import Any


class ReceiptError(Exception):
    """
    Base receipt system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "RECEIPT_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class ReceiptValidationError(ReceiptError):
    """Bad input shape or amount, rejected before any side effect."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        validation_errors: list[dict[str, Any]] | None = None,
    ):
        context: dict[str, Any] = {}
        if field:
            context["field"] = field
        if validation_errors:
            context["validation_errors"] = validation_errors

        super().__init__(
            message,
            "RECEIPT_VALIDATION_ERROR",
            status_code=422,
            context=context,
            recovery_hint="Correct the highlighted fields and submit the receipt again",
        )


class DuplicateKeyError(ReceiptError):
    """Identifier collision in the receipt store."""

    def __init__(self, message: str, key: str, value: str) -> None:
        super().__init__(
            message,
            "DUPLICATE_KEY",
            status_code=409,
            context={"key": key, "value": value},
            recovery_hint="Generate new identifiers and store the receipt again",
        )


class ReceiptNotFoundError(ReceiptError):
    """Receipt lookup miss."""

    def __init__(
        self,
        message: str,
        receipt_id: str | None = None,
        receipt_number: str | None = None,
    ) -> None:
        context = {}
        if receipt_id:
            context["receipt_id"] = receipt_id
        if receipt_number:
            context["receipt_number"] = receipt_number

        super().__init__(
            message,
            "RECEIPT_NOT_FOUND",
            status_code=404,
            context=context,
            recovery_hint="Verify the receipt ID or number and ensure the receipt was issued",
        )


class TemplateNotFoundError(ReceiptError):
    """Receipt template not found in the template catalog."""

    def __init__(self, message: str, template_id: str | None = None) -> None:
        context = {}
        if template_id:
            context["template_id"] = template_id

        super().__init__(
            message,
            "TEMPLATE_NOT_FOUND",
            status_code=404,
            context=context,
            recovery_hint="Verify the template ID and ensure the template is active",
        )


class PermissionDeniedError(ReceiptError):
    """The current user's role may not invoke the operation."""

    def __init__(self, message: str, role: str, required_roles: list[str]) -> None:
        super().__init__(
            message,
            "PERMISSION_DENIED",
            status_code=403,
            context={"role": role, "required_roles": required_roles},
            recovery_hint="Sign in with an account holding one of the required roles",
        )


class ChannelStateError(ReceiptError):
    """Requested channel operation is not valid for the channel's current state."""

    def __init__(self, message: str, channel: str, current_status: str) -> None:
        super().__init__(
            message,
            "INVALID_CHANNEL_STATE",
            status_code=409,
            context={"channel": channel, "current_status": current_status},
            recovery_hint=f"The {channel} channel is already {current_status}; no retry is needed",
        )


class ProviderFailure(ReceiptError):
    """A channel ended in the failed state after exhausting retries.

    Recorded on the receipt and logged; never raised to the issuer.
    """

    def __init__(
        self,
        message: str,
        channel: str,
        attempts: int,
        provider_error: str | None = None,
    ) -> None:
        context: dict[str, Any] = {"channel": channel, "attempts": attempts}
        if provider_error:
            context["provider_error"] = provider_error

        super().__init__(
            message,
            "PROVIDER_FAILURE",
            status_code=502,
            context=context,
            recovery_hint="Retry the channel once the provider is reachable",
        )


class AnomalousTransition(ReceiptError):
    """An out-of-order outcome that would overwrite a sticky success.

    Dropped and logged; never surfaced to callers.
    """

    def __init__(
        self, message: str, channel: str, current_status: str, requested_status: str
    ) -> None:
        super().__init__(
            message,
            "ANOMALOUS_TRANSITION",
            status_code=409,
            context={
                "channel": channel,
                "current_status": current_status,
                "requested_status": requested_status,
            },
        )


class ProviderInputError(ReceiptError):
    """A provider rejected its input as malformed; not worth retrying."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        context = {}
        if provider:
            context["provider"] = provider

        super().__init__(
            message,
            "PROVIDER_INPUT_ERROR",
            status_code=400,
            context=context,
            recovery_hint="Fix the payer's contact details before retrying the channel",
        )
