"""
Receipt statistics.

Aggregates the dashboard figures shown to treasurers and admins: totals,
this month's totals, collected amounts by category and the delivery status of
every channel. Filters mirror the receipt report screen (organization,
category and an issue-date window).

Amounts are only ever added within one currency. The figures describe the
report currency; ``amount_by_currency`` lists the total of every currency
that matched the filters.
"""

from collections import Counter, defaultdict
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal

from moneyed import Money
from pydantic import BaseModel, Field

from recetra.receipts.models import Channel, Receipt
from recetra.receipts.money_utils import MoneyHandler, money_handler


class ReceiptStatistics(BaseModel):
    """Aggregated receipt figures."""

    currency: str = "PHP"
    total_receipts: int = 0
    total_amount: Decimal = Decimal("0")
    receipts_this_month: int = 0
    amount_this_month: Decimal = Decimal("0")
    amount_by_category: dict[str, Decimal] = Field(default_factory=dict)
    amount_by_currency: dict[str, Decimal] = Field(default_factory=dict)
    status_counts: dict[str, dict[str, int]] = Field(default_factory=dict)

    @property
    def average_amount(self) -> Decimal:
        if not self.total_receipts:
            return Decimal("0")
        return (self.total_amount / self.total_receipts).quantize(Decimal("0.01"))


def filter_receipts(
    receipts: Iterable[Receipt],
    organization: str | None = None,
    category: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    currency: str | None = None,
) -> list[Receipt]:
    """Receipts matching every given filter; ``end`` is exclusive."""
    return [
        r
        for r in receipts
        if (organization is None or r.organization == organization)
        and (category is None or r.category == category)
        and (start is None or r.issued_at >= start)
        and (end is None or r.issued_at < end)
        and (currency is None or r.currency == currency)
    ]


def summarize_receipts(
    receipts: Iterable[Receipt],
    now: datetime,
    organization: str | None = None,
    category: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    currency: str | None = None,
    money: MoneyHandler = money_handler,
) -> ReceiptStatistics:
    """
    Compute statistics over a set of receipts.

    Args:
        receipts: Receipts to aggregate
        now: Reference time deciding what "this month" is
        organization: Only count this organization
        category: Only count this category
        start: Only count receipts issued at or after this time
        end: Only count receipts issued before this time
        currency: Report currency, defaulting to the handler's currency
        money: Handler used to add amounts

    Returns:
        Aggregated statistics
    """
    currency = money.validate_currency(currency or money.default_currency)
    matching = filter_receipts(receipts, organization, category, start, end)
    selected = [r for r in matching if r.currency == currency]

    by_currency: defaultdict[str, list[Money]] = defaultdict(list)
    for receipt in matching:
        by_currency[receipt.currency].append(money.to_money(receipt.amount, receipt.currency))

    by_category: defaultdict[str, list[Money]] = defaultdict(list)
    this_month: list[Money] = []
    counts = {channel: Counter() for channel in Channel}

    for receipt in selected:
        amount = money.to_money(receipt.amount, receipt.currency)
        by_category[receipt.category].append(amount)
        if (receipt.issued_at.year, receipt.issued_at.month) == (now.year, now.month):
            this_month.append(amount)
        for channel in Channel:
            counts[channel][receipt.status_of(channel).value] += 1

    return ReceiptStatistics(
        currency=currency,
        total_receipts=len(selected),
        total_amount=money.add_money(by_currency.get(currency, []), currency).amount,
        receipts_this_month=len(this_month),
        amount_this_month=money.add_money(this_month, currency).amount,
        amount_by_category={
            name: money.add_money(amounts, currency).amount
            for name, amounts in by_category.items()
        },
        amount_by_currency={
            code: money.add_money(amounts, code).amount for code, amounts in by_currency.items()
        },
        status_counts={channel.value: dict(counter) for channel, counter in counts.items()},
    )
