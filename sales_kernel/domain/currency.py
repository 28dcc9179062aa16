"""Currency -- registry of supported sale currencies and their precision."""

from dataclasses import dataclass
from decimal import Decimal
from typing import ClassVar


@dataclass(frozen=True)
class CurrencyInfo:
    """Information about a single supported currency."""

    code: str
    decimal_places: int
    name: str

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount (e.g. 0.01 for two decimal places)."""
        return Decimal(1).scaleb(-self.decimal_places)

    @property
    def quantize_string(self) -> str:
        """String for Decimal.quantize() to round to this currency's precision."""
        if self.decimal_places == 0:
            return "1"
        return "0." + "0" * self.decimal_places


class CurrencyRegistry:
    """
    Registry of the currencies a sale or payment may be denominated in.

    USD is the reference currency. Conversion rates are always quoted as units
    of the local currency per one USD (BS-per-USD).
    """

    BASE_CURRENCY: ClassVar[str] = "USD"

    _CURRENCIES: ClassVar[dict[str, CurrencyInfo]] = {
        "USD": CurrencyInfo("USD", 2, "US Dollar"),
        "BS": CurrencyInfo("BS", 2, "Venezuelan Bolivar"),
    }

    # ISO 4217 spellings accepted on input and normalized to the registry code
    _ALIASES: ClassVar[dict[str, str]] = {
        "VES": "BS",
        "VEF": "BS",
        "BSF": "BS",
    }

    @classmethod
    def normalize(cls, code: str) -> str:
        """Uppercase, strip and resolve aliases. Does not validate."""
        normalized = code.upper().strip() if code else ""
        return cls._ALIASES.get(normalized, normalized)

    @classmethod
    def is_valid(cls, code: str) -> bool:
        return cls.normalize(code) in cls._CURRENCIES

    @classmethod
    def get_info(cls, code: str) -> CurrencyInfo | None:
        return cls._CURRENCIES.get(cls.normalize(code))

    @classmethod
    def get_decimal_places(cls, code: str) -> int:
        info = cls.get_info(code)
        return info.decimal_places if info else 2

    @classmethod
    def all_codes(cls) -> list[str]:
        return sorted(cls._CURRENCIES)
