"""
SQLAlchemy-backed receipt store.

Receipts live in one ``receipts`` table with unique constraints on the id,
receipt number and verification token. Updates write only the patched
columns, inside the per-receipt lock held by ``ReceiptStore.update``.
"""

from collections.abc import Sequence
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import JSON, DateTime, Numeric, String, Text, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from recetra.db import Base, session_scope
from recetra.receipts.exceptions import DuplicateKeyError, ReceiptNotFoundError
from recetra.receipts.models import ChannelStatus, PaymentMethod, Receipt
from recetra.receipts.money_utils import money_handler
from recetra.receipts.store import ReceiptStore

logger = structlog.get_logger(__name__)


class ReceiptTable(Base):
    """SQLAlchemy table for issued receipts."""

    __tablename__ = "receipts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    receipt_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    verification_token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    payer: Mapped[str] = mapped_column(String(255), nullable=False)
    # Four places covers every ISO 4217 minor unit
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    purpose: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    organization: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    organization_code: Mapped[str] = mapped_column(String(10), nullable=False)
    issued_by: Mapped[str] = mapped_column(String(255), nullable=False)
    issued_by_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    template_id: Mapped[str] = mapped_column(String(64), nullable=False)

    payer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)

    payment_status: Mapped[str] = mapped_column(String(20), nullable=False)
    email_status: Mapped[str] = mapped_column(String(20), nullable=False)
    sms_status: Mapped[str] = mapped_column(String(20), nullable=False)

    channel_attempts: Mapped[dict[str, int]] = mapped_column(JSON, nullable=False, default=dict)
    provider_refs: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _to_row_values(data: dict[str, Any]) -> dict[str, Any]:
    values = {}
    for key, value in data.items():
        if isinstance(value, (ChannelStatus, PaymentMethod)):
            value = value.value
        values[key] = value
    return values


def _to_receipt(row: ReceiptTable) -> Receipt:
    return Receipt(
        id=row.id,
        receipt_number=row.receipt_number,
        verification_token=row.verification_token,
        payer=row.payer,
        amount=money_handler.quantize_amount(row.amount, row.currency),
        currency=row.currency,
        purpose=row.purpose,
        category=row.category,
        organization=row.organization,
        organization_code=row.organization_code,
        issued_by=row.issued_by,
        issued_by_id=row.issued_by_id,
        issued_at=_aware(row.issued_at),
        template_id=row.template_id,
        payer_email=row.payer_email,
        payer_phone=row.payer_phone,
        payment_method=PaymentMethod(row.payment_method),
        payment_status=ChannelStatus(row.payment_status),
        email_status=ChannelStatus(row.email_status),
        sms_status=ChannelStatus(row.sms_status),
        channel_attempts=dict(row.channel_attempts or {}),
        provider_refs=dict(row.provider_refs or {}),
        updated_at=_aware(row.updated_at),
    )


class SQLAlchemyReceiptStore(ReceiptStore):
    """Receipt store persisted through an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        super().__init__()
        self.session_factory = session_factory

    async def put(self, receipt: Receipt) -> Receipt:
        # Explicit checks give a precise key in the error; the unique
        # constraints still catch races with other processes.
        async with self.session_factory() as session:
            for column, value in (
                (ReceiptTable.id, receipt.id),
                (ReceiptTable.receipt_number, receipt.receipt_number),
                (ReceiptTable.verification_token, receipt.verification_token),
            ):
                existing = await session.scalar(select(ReceiptTable.id).where(column == value))
                if existing is not None:
                    raise DuplicateKeyError(
                        f"Receipt {column.key} already exists", key=column.key, value=value
                    )

        row = ReceiptTable(**_to_row_values(receipt.model_dump()))
        try:
            async with session_scope(self.session_factory) as session:
                session.add(row)
        except IntegrityError as e:
            logger.warning("Receipt insert hit a unique constraint", receipt_id=receipt.id)
            raise DuplicateKeyError(
                "Receipt identifiers already exist", key="receipt", value=receipt.id
            ) from e
        return receipt

    async def get(self, receipt_id: str) -> Receipt:
        return await self._get_one(
            ReceiptTable.id == receipt_id,
            ReceiptNotFoundError(f"Receipt {receipt_id} not found", receipt_id=receipt_id),
        )

    async def get_by_token(self, token: str) -> Receipt:
        return await self._get_one(
            ReceiptTable.verification_token == token,
            ReceiptNotFoundError("No receipt matches the verification token"),
        )

    async def get_by_number(self, receipt_number: str) -> Receipt:
        return await self._get_one(
            ReceiptTable.receipt_number == receipt_number,
            ReceiptNotFoundError(
                f"Receipt {receipt_number} not found", receipt_number=receipt_number
            ),
        )

    async def list_by_organization(self, organization: str) -> Sequence[Receipt]:
        return await self._list(ReceiptTable.organization == organization)

    async def list_by_issuer(self, issuer_id: str) -> Sequence[Receipt]:
        return await self._list(ReceiptTable.issued_by_id == issuer_id)

    async def list_all(self) -> Sequence[Receipt]:
        return await self._list()

    async def _write_patch(self, receipt_id: str, patch: dict[str, Any]) -> Receipt:
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(ReceiptTable)
                .where(ReceiptTable.id == receipt_id)
                .values(**_to_row_values(patch))
            )
        return await self.get(receipt_id)

    async def _get_one(self, condition: Any, not_found: ReceiptNotFoundError) -> Receipt:
        async with self.session_factory() as session:
            row = await session.scalar(select(ReceiptTable).where(condition))
        if row is None:
            raise not_found
        return _to_receipt(row)

    async def _list(self, *conditions: Any) -> list[Receipt]:
        stmt = select(ReceiptTable).where(*conditions).order_by(
            ReceiptTable.issued_at, ReceiptTable.receipt_number
        )
        async with self.session_factory() as session:
            result = await session.scalars(stmt)
            rows = result.all()
        return [_to_receipt(row) for row in rows]
