"""
Receipt identifier and verification token generation.

Receipt numbers combine a per organization+year sequence counter with a
random suffix, so two calls in the same millisecond never collide within a
process. Verification tokens are hex digests of the receipt number, the issue
timestamp and a random nonce, with a trailing checksum that lets verification
reject garbage without touching the store.
"""

import hashlib
import secrets
import string
import threading
import uuid
from collections import defaultdict
from datetime import datetime

TOKEN_BODY_LENGTH = 28
TOKEN_CHECKSUM_LENGTH = 4
TOKEN_LENGTH = TOKEN_BODY_LENGTH + TOKEN_CHECKSUM_LENGTH
QR_PAYLOAD_PREFIX = "recetra://verify/"

_HEX_DIGITS = frozenset(string.hexdigits.lower())
_SUFFIX_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O or 1/I
_SUFFIX_LENGTH = 4


def _checksum(body: str) -> str:
    return hashlib.sha256(body.encode("ascii")).hexdigest()[:TOKEN_CHECKSUM_LENGTH]


class ReceiptIdentifierGenerator:
    """Generates receipt numbers and verification tokens."""

    def __init__(self, prefix: str = "OR") -> None:
        self.prefix = prefix
        self._sequences: defaultdict[tuple[str, int], int] = defaultdict(int)
        self._lock = threading.Lock()

    def new_receipt_id(self) -> str:
        return str(uuid.uuid4())

    def new_receipt_number(self, organization_code: str, year: int) -> str:
        """Next receipt number, e.g. ``OR-2024-CSS-000001-K7QX``."""
        key = (organization_code.upper(), year)
        with self._lock:
            self._sequences[key] += 1
            sequence = self._sequences[key]
        suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(_SUFFIX_LENGTH))
        return f"{self.prefix}-{year}-{key[0]}-{sequence:06d}-{suffix}"

    def new_verification_token(self, receipt_number: str, issued_at: datetime) -> str:
        """Opaque token derived from the receipt number and issue time."""
        timestamp_ms = int(issued_at.timestamp() * 1000)
        material = f"{receipt_number}:{timestamp_ms}:{secrets.token_hex(8)}"
        body = hashlib.sha256(material.encode("utf-8")).hexdigest()[:TOKEN_BODY_LENGTH]
        return body + _checksum(body)

    def peek_sequence(self, organization_code: str, year: int) -> int:
        """Last sequence handed out for an organization and year."""
        with self._lock:
            return self._sequences.get((organization_code.upper(), year), 0)


def is_well_formed_token(token: str) -> bool:
    """Cheap structural check: length, charset and checksum."""
    if not isinstance(token, str) or len(token) != TOKEN_LENGTH:
        return False
    if not set(token) <= _HEX_DIGITS:
        return False
    body, checksum = token[:TOKEN_BODY_LENGTH], token[TOKEN_BODY_LENGTH:]
    return secrets.compare_digest(_checksum(body), checksum)


def qr_payload(token: str) -> str:
    """QR code contents for a verification token."""
    return f"{QR_PAYLOAD_PREFIX}{token}"


def extract_token(payload: str) -> str:
    """Accept either a raw token or a QR payload."""
    payload = payload.strip()
    if payload.startswith(QR_PAYLOAD_PREFIX):
        return payload[len(QR_PAYLOAD_PREFIX) :]
    return payload


# Process-wide generator used when none is injected
default_generator = ReceiptIdentifierGenerator()


def new_receipt_number(organization_code: str, year: int) -> str:
    return default_generator.new_receipt_number(organization_code, year)


def new_verification_token(receipt_number: str, issued_at: datetime) -> str:
    return default_generator.new_verification_token(receipt_number, issued_at)


__all__ = [
    "ReceiptIdentifierGenerator",
    "TOKEN_LENGTH",
    "QR_PAYLOAD_PREFIX",
    "default_generator",
    "extract_token",
    "is_well_formed_token",
    "new_receipt_number",
    "new_verification_token",
    "qr_payload",
]
