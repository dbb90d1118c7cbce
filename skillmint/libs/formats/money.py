"""Minor-unit money helpers.

Every amount stored by the core is an ``int`` in the currency's minor unit
(paise for INR). Fractions are applied with banker's rounding.
"""

from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation

from skillmint.core.errors import ValidationFailure

MINOR_PER_MAJOR = 100

CURRENCY_SYMBOLS = {"INR": "₹", "USD": "$", "EUR": "€", "GBP": "£"}

# static table, 1 INR expressed in each currency
CONVERSION_RATES = {
    "INR": Decimal("1"),
    "USD": Decimal("0.012"),
    "EUR": Decimal("0.011"),
    "GBP": Decimal("0.0095"),
}


def _round(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))


def to_minor(amount) -> int:
    """Major units (``"1000.50"``, ``Decimal``, ``float``) → minor units."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationFailure("Invalid amount", errors={"amount": str(amount)})
    if not value.is_finite():
        raise ValidationFailure("Invalid amount", errors={"amount": str(amount)})
    return _round(value * MINOR_PER_MAJOR)


def to_major(minor: int) -> Decimal:
    return (Decimal(minor) / MINOR_PER_MAJOR).quantize(Decimal("0.01"))


def percent_of(minor: int, percent) -> int:
    """``minor × percent / 100`` rounded half-even to the minor unit."""
    return _round(Decimal(minor) * Decimal(str(percent)) / Decimal(100))


def fraction_of(minor: int, fraction) -> int:
    return _round(Decimal(minor) * Decimal(str(fraction)))


def prorate(minor: int, part: int, whole: int) -> int:
    """Share of ``minor`` proportional to ``part / whole``."""
    if whole <= 0:
        return 0
    return _round(Decimal(minor) * Decimal(part) / Decimal(whole))


def _group_indian(integer: str) -> str:
    if len(integer) <= 3:
        return integer
    head, tail = integer[:-3], integer[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return ",".join(groups + [tail])


def format_amount(minor: int, currency: str = "INR") -> str:
    symbol = CURRENCY_SYMBOLS.get(currency, currency)
    sign = "-" if minor < 0 else ""
    major = to_major(abs(minor))
    integer, fraction = f"{major:.2f}".split(".")
    if currency == "INR":
        integer = _group_indian(integer)
    else:
        integer = f"{int(integer):,}"
    return f"{sign}{symbol}{integer}.{fraction}"


def convert(minor: int, from_currency: str, to_currency: str) -> int:
    try:
        from_rate = CONVERSION_RATES[from_currency]
        to_rate = CONVERSION_RATES[to_currency]
    except KeyError as e:
        raise ValidationFailure(
            "Unsupported currency", errors={"currency": e.args[0]}
        )
    return _round(Decimal(minor) / from_rate * to_rate)
