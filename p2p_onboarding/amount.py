"""Token amount input normalisation.

Amounts are raw token units, as the token contract sees them.
There is no decimal conversion and no rounding: anything that is not
an exact non-negative integer is rejected.
"""

from decimal import Decimal, InvalidOperation

from p2p_onboarding.errors import AmountParseError


def parse_amount(value: int | str | Decimal) -> int:
    """Convert user input to an exact raw token amount.

    Accepts:

    - ``int``
    - decimal digit strings, surrounding whitespace and ``_`` separators allowed
    - ``Decimal`` with an integral value, e.g. ``Decimal("1E+18")``

    Example:

    .. code-block:: python

        assert parse_amount("1_000_000") == 1_000_000

    :raise AmountParseError:
        With ``kind`` one of ``empty``, ``non_numeric``, ``non_integer``, ``negative``
    """

    if isinstance(value, bool):
        # bool is an int subclass, but never meant as an amount
        raise AmountParseError(f"Not an amount: {value!r}", kind="non_numeric", value=value)

    if isinstance(value, int):
        amount = value

    elif isinstance(value, Decimal):
        if not value.is_finite():
            raise AmountParseError(f"Not a finite amount: {value}", kind="non_numeric", value=value)
        if value != value.to_integral_value():
            raise AmountParseError(f"Amount must be a whole number of raw units: {value}", kind="non_integer", value=value)
        amount = int(value)

    elif isinstance(value, str):
        text = value.strip().replace("_", "")
        if not text:
            raise AmountParseError("Amount is empty", kind="empty", value=value)

        try:
            parsed = Decimal(text)
        except InvalidOperation as e:
            raise AmountParseError(f"Amount is not a number: {value!r}", kind="non_numeric", value=value) from e

        if not parsed.is_finite():
            raise AmountParseError(f"Not a finite amount: {value!r}", kind="non_numeric", value=value)

        if parsed != parsed.to_integral_value():
            raise AmountParseError(f"Amount must be a whole number of raw units: {value!r}", kind="non_integer", value=value)

        amount = int(parsed)

    elif value is None:
        raise AmountParseError("Amount is empty", kind="empty", value=value)

    else:
        raise AmountParseError(f"Unsupported amount type {type(value)}", kind="non_numeric", value=value)

    if amount < 0:
        raise AmountParseError(f"Amount cannot be negative: {value}", kind="negative", value=value)

    return amount
