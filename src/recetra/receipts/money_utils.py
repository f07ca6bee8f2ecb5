"""
Currency handling for receipt amounts.

Receipts keep their amount as a ``Decimal`` next to an ISO 4217 code.
py-moneyed attaches the currency for arithmetic so totals never mix
currencies, and Babel supplies minor units and locale-aware formatting.
"""

from collections.abc import Iterable
from decimal import Decimal, InvalidOperation

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

DEFAULT_LOCALE = "en_PH"


def _is_known_locale(locale_code: str) -> bool:
    try:
        Locale.parse(locale_code)
    except (UnknownLocaleError, ValueError):
        return False
    return True


class MoneyHandler:
    """Validates, rounds, totals and formats receipt amounts."""

    def __init__(self, default_currency: str = "PHP", default_locale: str = DEFAULT_LOCALE) -> None:
        self.default_currency = self.validate_currency(default_currency)
        self.default_locale = default_locale if _is_known_locale(default_locale) else DEFAULT_LOCALE

    def validate_currency(self, currency_code: str) -> str:
        """Normalized ISO code; raises ValueError for unknown currencies."""
        try:
            return get_currency(currency_code.upper()).code
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}") from None

    def to_money(self, amount: Decimal | int | str, currency: str | None = None) -> Money:
        code = self.validate_currency(currency or self.default_currency)
        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {amount!r}") from None
        return Money(value, code)

    def minor_unit(self, currency: str) -> Decimal:
        """Smallest amount of ``currency``, e.g. 0.01 for PHP and 0.001 for BHD."""
        return Decimal(1).scaleb(-get_currency_precision(currency.upper()))

    def quantize_amount(self, amount: Decimal, currency: str) -> Decimal:
        """Amount rounded to the currency's minor unit."""
        return self.to_money(amount, currency).amount.quantize(self.minor_unit(currency))

    def add_money(self, amounts: Iterable[Money], currency: str | None = None) -> Money:
        """
        Total of ``amounts`` in ``currency``.

        Raises:
            ValueError: an amount is in another currency
        """
        total = self.to_money(Decimal("0"), currency)
        for money in amounts:
            if money.currency != total.currency:
                raise ValueError(f"Currency mismatch: {money.currency} != {total.currency}")
            total += money
        return total

    def format_amount(self, amount: Decimal, currency: str, locale: str | None = None) -> str:
        try:
            return format_currency(amount, currency.upper(), locale=locale or self.default_locale)
        except (UnknownLocaleError, ValueError):
            return f"{currency.upper()} {amount}"


# Shared handler for modules without an injected one
money_handler = MoneyHandler()


def format_amount(amount: Decimal, currency: str = "PHP", locale: str | None = None) -> str:
    return money_handler.format_amount(amount, currency, locale)


__all__ = [
    "MoneyHandler",
    "money_handler",
    "format_amount",
]
