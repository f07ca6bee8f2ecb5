"""
Message templates for receipt delivery.

Renders the data handed to the email and SMS providers. Templates support a
subject and plain-text body for email and a short text for SMS.
"""

from typing import Any

import structlog

from recetra.receipts.exceptions import TemplateNotFoundError
from recetra.receipts.identifiers import qr_payload
from recetra.receipts.models import Channel, Receipt
from recetra.receipts.money_utils import format_amount
from recetra.receipts.templates import ReceiptTemplate, TemplateCatalog

logger = structlog.get_logger(__name__)

# Message template registry
MESSAGE_TEMPLATES = {
    "receipt_issued": {
        "subject": "Official Receipt {receipt_number} from {organization}",
        "text": """
Hello {payer},

{organization} has issued official receipt {receipt_number} ({template_name}).

Receipt Details:
- Amount: {amount_formatted}
- Purpose: {purpose}
- Category: {category}
- Issued by: {issued_by}
- Issued at: {issued_at}

Verify this receipt at any time with the code below:
{qr_payload}
        """,
        "sms": "{organization}: OR {receipt_number} for {amount_formatted} ({purpose}). Verify: {qr_payload}",
    },
    "payment_pending": {
        "subject": "Receipt {receipt_number} is awaiting payment",
        "text": """
Hello {payer},

{organization} has prepared receipt {receipt_number} ({template_name}) for {amount_formatted}.
Your payment is still being processed; the receipt becomes final once it completes.

Purpose: {purpose}
Verification code: {qr_payload}
        """,
        "sms": "{organization}: payment of {amount_formatted} for OR {receipt_number} is pending.",
    },
}


def _fields(receipt: Receipt, template_name: str) -> dict[str, Any]:
    return {
        "payer": receipt.payer,
        "organization": receipt.organization,
        "receipt_number": receipt.receipt_number,
        "template_name": template_name,
        "amount_formatted": format_amount(receipt.amount, receipt.currency),
        "purpose": receipt.purpose,
        "category": receipt.category,
        "issued_by": receipt.issued_by,
        "issued_at": receipt.issued_at.strftime("%Y-%m-%d %H:%M UTC"),
        "qr_payload": qr_payload(receipt.verification_token),
    }


def resolve_template(catalog: TemplateCatalog | None, template_id: str) -> ReceiptTemplate | None:
    """Template from the catalog, or None when it is unknown."""
    if catalog is None:
        return None
    try:
        return catalog.get(template_id)
    except TemplateNotFoundError:
        logger.warning("Unknown receipt template; using default layout", template_id=template_id)
        return None


def build_template_data(
    receipt: Receipt,
    template: ReceiptTemplate | None = None,
    message: str = "receipt_issued",
) -> dict[Channel, dict[str, Any]]:
    """
    Render email and SMS payloads for a receipt.

    Args:
        receipt: Receipt being delivered
        template: Layout from the catalog, if any
        message: Key into MESSAGE_TEMPLATES

    Returns:
        Template data per notification channel
    """
    layout = MESSAGE_TEMPLATES[message]
    fields = _fields(receipt, template.name if template else "Standard Receipt")

    email = {
        "template_id": template.id if template else receipt.template_id,
        "subject": layout["subject"].format(**fields),
        "text": layout["text"].format(**fields).strip(),
        "receipt_id": receipt.id,
    }
    sms = {
        "text": layout["sms"].format(**fields),
        "receipt_id": receipt.id,
    }
    return {Channel.EMAIL: email, Channel.SMS: sms}
