"""
Receipt lifecycle models.

Pydantic models for receipts, channel outcomes, issuance requests and the
read-only projections handed to verification callers.
"""

import re
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class Channel(str, Enum):
    """Independent delivery/settlement paths of a receipt."""

    PAYMENT = "payment"
    EMAIL = "email"
    SMS = "sms"


class ChannelStatus(str, Enum):
    """Status of a single channel."""

    PENDING = "pending"
    SENT = "sent"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    """How the payer settled the receipt."""

    PAYMONGO = "paymongo"
    MANUAL = "manual"


class VerificationStatus(str, Enum):
    """Outcome of a verification query."""

    GENUINE = "genuine"
    UNKNOWN = "unknown"
    MALFORMED = "malformed"


# Success terminal of each channel
SUCCESS_STATUS: dict[Channel, ChannelStatus] = {
    Channel.PAYMENT: ChannelStatus.COMPLETED,
    Channel.EMAIL: ChannelStatus.SENT,
    Channel.SMS: ChannelStatus.SENT,
}

# Receipt field holding each channel's status
STATUS_FIELD: dict[Channel, str] = {
    Channel.PAYMENT: "payment_status",
    Channel.EMAIL: "email_status",
    Channel.SMS: "sms_status",
}

IMMUTABLE_FIELDS = frozenset(
    {
        "id",
        "receipt_number",
        "verification_token",
        "payer",
        "amount",
        "currency",
        "purpose",
        "category",
        "organization",
        "organization_code",
        "issued_by",
        "issued_by_id",
        "issued_at",
        "template_id",
    }
)


def _default_attempts() -> dict[str, int]:
    return {channel.value: 1 for channel in Channel}


def is_success(channel: Channel, status: ChannelStatus) -> bool:
    """Whether ``status`` is the success terminal of ``channel``."""
    return SUCCESS_STATUS[channel] == status


class Receipt(BaseModel):
    """Official receipt record.

    Instances are immutable; the store swaps in patched copies.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Opaque unique identifier")
    receipt_number: str = Field(description="Human-readable receipt number")
    verification_token: str = Field(description="QR payload resolving to this receipt")

    payer: str = Field(description="Name of the person who paid")
    amount: Decimal = Field(gt=0, description="Amount in the receipt's currency")
    currency: str = Field("PHP", description="ISO 4217 currency code")
    purpose: str = Field(description="Purpose of the payment")
    category: str = Field(description="Payment category, e.g. Membership Fee")
    organization: str = Field(description="Issuing organization")
    organization_code: str = Field(description="Short organization code, e.g. CSS")
    issued_by: str = Field(description="Full name of the issuing user")
    issued_by_id: str = Field(description="ID of the issuing user")
    issued_at: datetime = Field(description="Issue timestamp")
    template_id: str = Field(description="Receipt template reference")

    payer_email: str | None = Field(None, description="Email address for the receipt")
    payer_phone: str | None = Field(None, description="Phone number for the receipt")
    payment_method: PaymentMethod = Field(PaymentMethod.PAYMONGO, description="Payment method")

    payment_status: ChannelStatus = Field(ChannelStatus.PENDING)
    email_status: ChannelStatus = Field(ChannelStatus.PENDING)
    sms_status: ChannelStatus = Field(ChannelStatus.PENDING)

    channel_attempts: dict[str, int] = Field(default_factory=_default_attempts)
    provider_refs: dict[str, str] = Field(default_factory=dict)
    updated_at: datetime | None = Field(None, description="Last status change")

    def status_of(self, channel: Channel) -> ChannelStatus:
        """Current status of ``channel``."""
        return getattr(self, STATUS_FIELD[channel])

    def attempt_of(self, channel: Channel) -> int:
        """Current dispatch attempt of ``channel``."""
        return self.channel_attempts.get(channel.value, 1)

    def summary(self) -> "ReceiptSummary":
        """Read-only public projection."""
        return ReceiptSummary(
            receipt_number=self.receipt_number,
            payer=self.payer,
            amount=self.amount,
            currency=self.currency,
            organization=self.organization,
            purpose=self.purpose,
            issued_at=self.issued_at,
            payment_status=self.payment_status,
            email_status=self.email_status,
            sms_status=self.sms_status,
        )


class ReceiptSummary(BaseModel):
    """Public fields of a receipt returned to verification callers."""

    model_config = ConfigDict(frozen=True)

    receipt_number: str
    payer: str
    amount: Decimal
    currency: str
    organization: str
    purpose: str
    issued_at: datetime
    payment_status: ChannelStatus
    email_status: ChannelStatus
    sms_status: ChannelStatus


class ChannelOutcome(BaseModel):
    """Final outcome of one channel dispatch attempt."""

    model_config = ConfigDict(frozen=True)

    channel: Channel
    status: ChannelStatus
    provider_ref: str | None = None
    attempt: int = Field(1, ge=1, description="Dispatch attempt that produced this outcome")
    error_message: str | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def succeeded(self) -> bool:
        return is_success(self.channel, self.status)


class VerificationResult(BaseModel):
    """Answer to a verification query."""

    model_config = ConfigDict(frozen=True)

    status: VerificationStatus
    summary: ReceiptSummary | None = None

    @property
    def is_genuine(self) -> bool:
        return self.status == VerificationStatus.GENUINE


_ORG_CODE_PATTERN = re.compile(r"^[A-Z0-9]{1,10}$")


def derive_organization_code(organization: str) -> str:
    """Initials of an organization name, e.g. "Computer Science Society" -> "CSS"."""
    words = re.findall(r"[A-Za-z0-9]+", organization)
    code = "".join(word[0] for word in words).upper()
    return code[:10] or "ORG"


class IssueReceiptRequest(BaseModel):
    """Input of the issuance operation."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    payer: str = Field(min_length=1, max_length=255)
    amount: Decimal = Field(gt=0, description="Positive amount")
    currency: str | None = Field(None, min_length=3, max_length=3)
    purpose: str = Field(min_length=1, max_length=500)
    category: str = Field(min_length=1, max_length=100)
    organization: str = Field(min_length=1, max_length=255)
    organization_code: str | None = Field(None, description="Defaults to the name's initials")
    template_id: str | None = Field(None, min_length=1)
    payer_email: EmailStr | None = None
    payer_phone: str | None = None
    payment_method: PaymentMethod = PaymentMethod.PAYMONGO

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        """Reject non-finite amounts."""
        if not v.is_finite():
            raise ValueError("Amount must be a finite number")
        return v

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str | None) -> str | None:
        return v.upper() if v else v

    @field_validator("organization_code")
    @classmethod
    def validate_organization_code(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.upper()
        if not _ORG_CODE_PATTERN.match(v):
            raise ValueError("Organization code must be 1-10 letters or digits")
        return v

    @field_validator("payer_phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        digits = re.sub(r"[\s\-()]", "", v)
        if not re.fullmatch(r"\+?\d{7,15}", digits):
            raise ValueError("Phone number must contain 7 to 15 digits")
        return digits

    def resolved_organization_code(self) -> str:
        return self.organization_code or derive_organization_code(self.organization)

    def to_log_context(self) -> dict[str, Any]:
        return {
            "organization": self.organization,
            "category": self.category,
            "amount": str(self.amount),
            "has_email": self.payer_email is not None,
            "has_phone": self.payer_phone is not None,
        }
