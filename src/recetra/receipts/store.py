"""
Receipt store contract and in-memory implementation.

The store is the only shared mutable resource of the lifecycle engine. All
mutation goes through ``update``, which serializes per receipt so concurrent
channel outcomes never interleave destructively.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from recetra.receipts.exceptions import (
    DuplicateKeyError,
    ReceiptNotFoundError,
    ReceiptValidationError,
)
from recetra.receipts.models import IMMUTABLE_FIELDS, Receipt

logger = structlog.get_logger(__name__)

# Returns the fields to change; an empty dict (or None) leaves the receipt alone
ReceiptMutator = Callable[[Receipt], dict[str, Any] | None]


def validate_patch(receipt_id: str, patch: dict[str, Any]) -> None:
    """Reject patches that touch immutable or unknown fields."""
    for name in patch:
        if name in IMMUTABLE_FIELDS:
            raise ReceiptValidationError(
                f"Field '{name}' of receipt {receipt_id} is immutable", field=name
            )
        if name not in Receipt.model_fields:
            raise ReceiptValidationError(f"Unknown receipt field '{name}'", field=name)


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ReceiptStore(ABC):
    """Keyed persistence of receipt records."""

    def __init__(self) -> None:
        self._locks: dict[str, _KeyLock] = {}

    @asynccontextmanager
    async def locked(self, receipt_id: str) -> AsyncIterator[None]:
        """Hold the receipt's lock; the lock is dropped once nobody holds or awaits it."""
        entry = self._locks.get(receipt_id)
        if entry is None:
            entry = self._locks[receipt_id] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if not entry.users:
                del self._locks[receipt_id]

    @property
    def held_locks(self) -> int:
        """Receipts with a lock currently held or awaited."""
        return len(self._locks)

    @abstractmethod
    async def put(self, receipt: Receipt) -> Receipt:
        """Store a new receipt; raises DuplicateKeyError on any key collision."""

    @abstractmethod
    async def get(self, receipt_id: str) -> Receipt:
        """Receipt by id; raises ReceiptNotFoundError."""

    @abstractmethod
    async def get_by_token(self, token: str) -> Receipt:
        """Receipt by verification token; raises ReceiptNotFoundError."""

    @abstractmethod
    async def get_by_number(self, receipt_number: str) -> Receipt:
        """Receipt by receipt number; raises ReceiptNotFoundError."""

    @abstractmethod
    async def list_by_organization(self, organization: str) -> Sequence[Receipt]:
        """Receipts of an organization, oldest first."""

    @abstractmethod
    async def list_by_issuer(self, issuer_id: str) -> Sequence[Receipt]:
        """Receipts issued by a user, oldest first."""

    @abstractmethod
    async def list_all(self) -> Sequence[Receipt]:
        """Every receipt, oldest first."""

    @abstractmethod
    async def _write_patch(self, receipt_id: str, patch: dict[str, Any]) -> Receipt:
        """Persist the patched fields and return the updated receipt."""

    async def update(self, receipt_id: str, mutator: ReceiptMutator) -> Receipt:
        """
        Apply a field-level patch atomically.

        The mutator sees the latest stored receipt while holding the
        receipt's lock, and only the fields it returns are written.
        """
        async with self.locked(receipt_id):
            current = await self.get(receipt_id)
            patch = mutator(current) or {}
            if not patch:
                return current
            validate_patch(receipt_id, patch)
            patch.setdefault("updated_at", datetime.now(UTC))
            updated = await self._write_patch(receipt_id, patch)
            logger.debug(
                "Receipt updated",
                receipt_id=receipt_id,
                fields=sorted(patch),
            )
            return updated


class InMemoryReceiptStore(ReceiptStore):
    """Dictionary-backed store with secondary indexes."""

    def __init__(self) -> None:
        super().__init__()
        self._receipts: dict[str, Receipt] = {}
        self._by_number: dict[str, str] = {}
        self._by_token: dict[str, str] = {}

    async def put(self, receipt: Receipt) -> Receipt:
        if receipt.id in self._receipts:
            raise DuplicateKeyError(
                f"Receipt id {receipt.id} already exists", key="id", value=receipt.id
            )
        if receipt.receipt_number in self._by_number:
            raise DuplicateKeyError(
                f"Receipt number {receipt.receipt_number} already exists",
                key="receipt_number",
                value=receipt.receipt_number,
            )
        if receipt.verification_token in self._by_token:
            raise DuplicateKeyError(
                "Verification token already exists",
                key="verification_token",
                value=receipt.verification_token,
            )

        self._receipts[receipt.id] = receipt
        self._by_number[receipt.receipt_number] = receipt.id
        self._by_token[receipt.verification_token] = receipt.id
        return receipt

    async def get(self, receipt_id: str) -> Receipt:
        try:
            return self._receipts[receipt_id]
        except KeyError:
            raise ReceiptNotFoundError(
                f"Receipt {receipt_id} not found", receipt_id=receipt_id
            ) from None

    async def get_by_token(self, token: str) -> Receipt:
        receipt_id = self._by_token.get(token)
        if receipt_id is None:
            raise ReceiptNotFoundError("No receipt matches the verification token")
        return self._receipts[receipt_id]

    async def get_by_number(self, receipt_number: str) -> Receipt:
        receipt_id = self._by_number.get(receipt_number)
        if receipt_id is None:
            raise ReceiptNotFoundError(
                f"Receipt {receipt_number} not found", receipt_number=receipt_number
            )
        return self._receipts[receipt_id]

    async def list_by_organization(self, organization: str) -> Sequence[Receipt]:
        return self._sorted(r for r in self._receipts.values() if r.organization == organization)

    async def list_by_issuer(self, issuer_id: str) -> Sequence[Receipt]:
        return self._sorted(r for r in self._receipts.values() if r.issued_by_id == issuer_id)

    async def list_all(self) -> Sequence[Receipt]:
        return self._sorted(self._receipts.values())

    async def _write_patch(self, receipt_id: str, patch: dict[str, Any]) -> Receipt:
        updated = self._receipts[receipt_id].model_copy(update=patch)
        self._receipts[receipt_id] = updated
        return updated

    def __len__(self) -> int:
        return len(self._receipts)

    @staticmethod
    def _sorted(receipts: Any) -> list[Receipt]:
        return sorted(receipts, key=lambda r: (r.issued_at, r.receipt_number))
