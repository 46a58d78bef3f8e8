"""
Money normalization utilities.
Converts store-formatted currency strings and numbers into integer minor units.
"""
from decimal import Decimal
from typing import Union

from app.config import settings

AmountInput = Union[str, int, float, Decimal, None]


class MoneyNormalizer:
    """
    Converts amounts formatted with the store's currency settings into minor units.

    The fractional part is right-padded and then truncated to ``decimals`` digits,
    never rounded, so "100.9999" becomes 10099 with two decimals.
    """

    def __init__(
        self,
        decimals: int = 2,
        decimal_separator: str = ".",
        thousand_separator: str = ",",
        currency_symbol: str = "$",
    ):
        self.decimals = decimals
        self.decimal_separator = decimal_separator or "."
        self.thousand_separator = thousand_separator
        self.currency_symbol = currency_symbol or ""

    @classmethod
    def from_settings(cls) -> "MoneyNormalizer":
        """Build a normalizer from the configured store money formatting."""
        return cls(
            decimals=settings.price_decimals,
            decimal_separator=settings.price_decimal_separator,
            thousand_separator=settings.price_thousand_separator,
            currency_symbol=settings.currency_symbol,
        )

    def to_minor_units(self, value: AmountInput) -> int:
        """
        Convert a formatted amount into an integer number of minor units.

        Args:
            value: Amount as a formatted string, int, float or Decimal

        Returns:
            Non-negative amount in minor units (e.g. cents)

        Raises:
            ValueError: If the value does not contain a parseable amount
        """
        if value is None:
            return 0

        if isinstance(value, bool):
            raise ValueError(f"Unsupported amount: {value!r}")

        if isinstance(value, (int, float, Decimal)):
            text = self._format_number(value)
            decimal_separator = "."
            thousand_separator = ""
        else:
            text = str(value).strip(self.currency_symbol + "-+ \t\n\r\x0b\x00\xa0")
            decimal_separator = self.decimal_separator
            thousand_separator = self.thousand_separator

        if text == "":
            return 0

        whole, _, fraction = text.partition(decimal_separator)
        if thousand_separator:
            whole = whole.replace(thousand_separator, "")

        fraction = fraction.ljust(self.decimals, "0")[: self.decimals]
        digits = whole + fraction

        if not digits:
            return 0
        if not digits.isdigit():
            raise ValueError(f"Unable to normalize amount: {value!r}")

        return int(digits)

    def from_minor_units(self, amount: int) -> Decimal:
        """Convert minor units back to a Decimal in whole currency units."""
        return Decimal(amount).scaleb(-self.decimals)

    @staticmethod
    def _format_number(value: Union[int, float, Decimal]) -> str:
        if isinstance(value, int):
            return str(abs(value))
        if isinstance(value, float):
            # repr gives the shortest round-tripping form, so 0.1 stays "0.1"
            value = Decimal(repr(value))
        return format(abs(value), "f")


def to_minor_units(value: AmountInput, normalizer: MoneyNormalizer | None = None) -> int:
    """
    Convert an amount using the given normalizer or the configured store formatting.

    Args:
        value: Amount as a formatted string, int, float or Decimal
        normalizer: Optional normalizer, defaults to the store settings

    Returns:
        Amount in minor units
    """
    return (normalizer or MoneyNormalizer.from_settings()).to_minor_units(value)
