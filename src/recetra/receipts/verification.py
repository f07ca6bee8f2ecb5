"""
Receipt verification.

Resolves a verification token (or the QR payload carrying it) back to a
receipt. Garbage input is rejected by a structural check before the store is
touched, and callers only ever get the read-only summary.
"""

import structlog

from recetra.receipts.exceptions import ReceiptNotFoundError
from recetra.receipts.identifiers import extract_token, is_well_formed_token
from recetra.receipts.models import VerificationResult, VerificationStatus
from recetra.receipts.store import ReceiptStore

logger = structlog.get_logger(__name__)


class ReceiptVerifier:
    """Answers "is this receipt genuine?" queries."""

    def __init__(self, store: ReceiptStore) -> None:
        self.store = store

    async def verify(self, token: str) -> VerificationResult:
        token = extract_token(token) if isinstance(token, str) else token
        if not is_well_formed_token(token):
            logger.info("Verification rejected malformed token")
            return VerificationResult(status=VerificationStatus.MALFORMED)

        try:
            receipt = await self.store.get_by_token(token)
        except ReceiptNotFoundError:
            logger.info("Verification found no receipt", token_prefix=token[:8])
            return VerificationResult(status=VerificationStatus.UNKNOWN)

        logger.info(
            "Receipt verified",
            receipt_id=receipt.id,
            receipt_number=receipt.receipt_number,
        )
        return VerificationResult(status=VerificationStatus.GENUINE, summary=receipt.summary())
