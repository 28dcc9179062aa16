"""
Values -- Immutable, self-validating money value objects.

Responsibility:
    Provides Currency and Money, the only types used for monetary amounts in
    the ledger and payment engines. Money stores an integer count of minor
    units (cents) so that sums of sale lines and partial payments are exact.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    No outward dependencies except sales_kernel.domain.currency and
    sales_kernel.exceptions.

Invariants enforced:
    - Amounts are integer minor units; floats are rejected at every boundary.
    - An amount never carries more fractional digits than its currency allows.
    - Conversion rates are positive Decimals quoted as local units per USD.
    - Arithmetic and comparison never mix currencies silently.

Failure modes:
    - InvalidAmountError on malformed, over-precise, float or disallowed
      negative amounts.
    - InvalidRateError on zero, negative, float or non-numeric rates.
    - InvalidCurrencyError on unsupported currency codes.
    - CurrencyMismatchError when arithmetic mixes currencies.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sales_kernel.domain.currency import CurrencyRegistry
from sales_kernel.exceptions import (
    CurrencyMismatchError,
    InvalidAmountError,
    InvalidCurrencyError,
    InvalidRateError,
)


def parse_rate(rate: Decimal | str | int) -> Decimal:
    """
    Validate and normalize a conversion rate.

    Raises:
        InvalidRateError: If the rate is a float, not numeric, or not > 0.
    """
    if isinstance(rate, (float, bool)) or rate is None:
        raise InvalidRateError(rate)
    try:
        value = rate if isinstance(rate, Decimal) else Decimal(str(rate).strip())
    except InvalidOperation as e:
        raise InvalidRateError(rate) from e
    if not value.is_finite() or value <= 0:
        raise InvalidRateError(rate)
    return value


@dataclass(frozen=True, slots=True)
class Currency:
    """
    Supported currency code value object.

    Validated and normalized on construction; ISO aliases such as ``VES``
    resolve to the registry code ``BS``.
    """

    code: str

    def __post_init__(self) -> None:
        normalized = CurrencyRegistry.normalize(self.code) if isinstance(self.code, str) else ""
        if not CurrencyRegistry.is_valid(normalized):
            raise InvalidCurrencyError(self.code)
        object.__setattr__(self, "code", normalized)

    @property
    def decimal_places(self) -> int:
        return CurrencyRegistry.get_decimal_places(self.code)

    @property
    def is_base(self) -> bool:
        """True for the reference currency that rates are quoted against."""
        return self.code == CurrencyRegistry.BASE_CURRENCY

    @property
    def name(self) -> str:
        info = CurrencyRegistry.get_info(self.code)
        return info.name if info else self.code

    def __str__(self) -> str:
        return self.code

    def __repr__(self) -> str:
        return f"Currency({self.code!r})"


def as_currency(currency: Currency | str) -> Currency:
    """Coerce a code or Currency to a Currency."""
    if isinstance(currency, Currency):
        return currency
    return Currency(currency)


@dataclass(frozen=True, slots=True)
class Money:
    """
    Monetary amount value object.

    Contract:
        Pairs an integer count of minor units with its Currency. Optionally
        carries the conversion-rate snapshot that was in force when the amount
        was produced; the snapshot is audit metadata and does not take part in
        equality.

    Guarantees:
        - Immutable and hashable.
        - minor_units is always an int, so addition, subtraction and
          multiplication by a quantity are exact.
        - Arithmetic enforces the same-currency constraint.

    Non-goals:
        - Does NOT look up exchange rates; callers supply the rate snapshot.
    """

    minor_units: int
    currency: Currency
    rate: Decimal | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if isinstance(self.minor_units, bool) or not isinstance(self.minor_units, int):
            raise InvalidAmountError(self.minor_units, "minor units must be an integer")
        if not isinstance(self.currency, Currency):
            object.__setattr__(self, "currency", as_currency(self.currency))
        if self.rate is not None:
            object.__setattr__(self, "rate", parse_rate(self.rate))

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def of(
        cls,
        amount: Decimal | str | int,
        currency: Currency | str,
        rate: Decimal | str | int | None = None,
        allow_negative: bool = False,
    ) -> Money:
        """
        Build Money from a major-unit amount.

        Preconditions:
            - amount is a Decimal, str or int (never float).
            - amount is written with at most ``currency.decimal_places``
              fractional digits ("10.5" and "10.50" are fine, "10.500" is not).

        Raises:
            InvalidAmountError: malformed, float, over-precise or negative
                (unless ``allow_negative``).
            InvalidCurrencyError: unsupported currency.
            InvalidRateError: rate given but not a positive decimal.
        """
        currency = as_currency(currency)
        if isinstance(amount, (float, bool)) or amount is None:
            raise InvalidAmountError(amount, "pass a str, int or Decimal; floats are not accepted")
        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount).strip())
        except InvalidOperation as e:
            raise InvalidAmountError(amount, "not a number") from e
        if not value.is_finite():
            raise InvalidAmountError(amount, "not a finite number")

        if value.as_tuple().exponent < -currency.decimal_places:
            raise InvalidAmountError(
                amount, f"more than {currency.decimal_places} fractional digits"
            )
        if value < 0 and not allow_negative:
            raise InvalidAmountError(amount, "negative amounts are not allowed")
        return cls(minor_units=int(value.scaleb(currency.decimal_places)), currency=currency, rate=rate)

    @classmethod
    def from_minor(
        cls,
        minor_units: int,
        currency: Currency | str,
        rate: Decimal | str | int | None = None,
    ) -> Money:
        return cls(minor_units=minor_units, currency=as_currency(currency), rate=rate)

    @classmethod
    def zero(cls, currency: Currency | str) -> Money:
        return cls(minor_units=0, currency=as_currency(currency))

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def amount(self) -> Decimal:
        """Exact major-unit amount, e.g. Decimal('100.50')."""
        return Decimal(self.minor_units).scaleb(-self.currency.decimal_places)

    @property
    def is_zero(self) -> bool:
        return self.minor_units == 0

    @property
    def is_positive(self) -> bool:
        return self.minor_units > 0

    @property
    def is_negative(self) -> bool:
        return self.minor_units < 0

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def with_rate(self, rate: Decimal | str | int) -> Money:
        """Same amount, stamped with a conversion-rate snapshot."""
        return Money(minor_units=self.minor_units, currency=self.currency, rate=rate)

    def convert(self, target_currency: Currency | str, rate: Decimal | str | int) -> Money:
        """
        Convert into ``target_currency`` using a BS-per-USD style rate.

        The rate is always quoted as units of the non-reference currency per
        one unit of the reference currency (USD), whichever way the conversion
        goes. The result is rounded half-up to the target's minor unit and
        carries ``rate`` as its snapshot.

        Raises:
            InvalidRateError: rate is not a positive decimal.
            CurrencyMismatchError: neither side is the reference currency.
        """
        target = as_currency(target_currency)
        rate_value = parse_rate(rate)
        if target == self.currency:
            return Money(minor_units=self.minor_units, currency=target, rate=rate_value)

        if self.currency.is_base:
            converted = self.amount * rate_value
        elif target.is_base:
            converted = self.amount / rate_value
        else:
            raise CurrencyMismatchError(self.currency.code, target.code, "convert")

        minor = converted.scaleb(target.decimal_places).quantize(
            Decimal(1), rounding=ROUND_HALF_UP
        )
        return Money(minor_units=int(minor), currency=target, rate=rate_value)

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def _check_currency(self, other: Money, operation: str) -> None:
        if self.currency != other.currency:
            raise CurrencyMismatchError(self.currency.code, other.currency.code, operation)

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "add")
        return Money(self.minor_units + other.minor_units, self.currency, self.rate)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "subtract")
        return Money(self.minor_units - other.minor_units, self.currency, self.rate)

    def __neg__(self) -> Money:
        return Money(-self.minor_units, self.currency, self.rate)

    def __mul__(self, quantity: int) -> Money:
        """Multiply by an integer quantity."""
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            return NotImplemented
        return Money(self.minor_units * quantity, self.currency, self.rate)

    def __rmul__(self, quantity: int) -> Money:
        return self.__mul__(quantity)

    def __lt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.minor_units < other.minor_units

    def __le__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.minor_units <= other.minor_units

    def __gt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.minor_units > other.minor_units

    def __ge__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.minor_units >= other.minor_units

    def __str__(self) -> str:
        return f"{self.amount} {self.currency.code}"

    def __repr__(self) -> str:
        return f"Money({str(self.amount)!r}, {self.currency.code!r})"


def sum_money(amounts: list[Money], currency: Currency | str) -> Money:
    """Sum a list of same-currency Money values; empty list gives zero."""
    total = Money.zero(currency)
    for amount in amounts:
        total = total + amount
    return total
