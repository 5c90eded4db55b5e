"""
Numeric codec for on-chain integers.

Converts fixed-width unsigned integers (as raw bytes or JSON-RPC hex quantities)
to and from arbitrary-precision Decimal values used for storage and arithmetic.

Log decoding goes through eth_abi and block heights through hex_to_int.
bytes_to_decimal and decimal_to_bytes are the fixed-width half of the codec:
they are exported for callers holding raw little- or big-endian words and
are not used by the indexer itself.
"""

from decimal import Decimal
from typing import Union


Number = Union[int, Decimal]


def bytes_to_decimal(raw: bytes, byteorder: str = "little") -> Decimal:
    """Interpret `raw` as an unsigned integer."""
    return Decimal(int.from_bytes(bytes(raw), byteorder=byteorder, signed=False))


def decimal_to_int(value: Number) -> int:
    """Exact conversion to int. Fractional values are rejected, not truncated."""
    if isinstance(value, int):
        return value
    if not value.is_finite():
        raise ValueError(f"not a finite number: {value}")
    integral = value.to_integral_value()
    if integral != value:
        raise ValueError(f"not an integer: {value}")
    return int(integral)


def decimal_to_bytes(value: Number, width: int = 8, byteorder: str = "little") -> bytes:
    """
    Encode an unsigned value into exactly `width` bytes.

    Raises:
        ValueError: negative or fractional value
        OverflowError: value needs more than `width` bytes
    """
    as_int = decimal_to_int(value)
    if as_int < 0:
        raise ValueError(f"cannot encode negative value {as_int} as unsigned")
    # int.to_bytes raises OverflowError when the value does not fit
    return as_int.to_bytes(width, byteorder=byteorder, signed=False)


def hex_to_int(quantity: Union[str, int]) -> int:
    """Decode a JSON-RPC quantity ("0x1a") into an int."""
    if isinstance(quantity, int):
        return quantity
    if not isinstance(quantity, str) or not quantity.startswith(("0x", "0X")):
        raise ValueError(f"invalid hex quantity: {quantity!r}")
    digits = quantity[2:]
    return int(digits, 16) if digits else 0


def int_to_hex(value: Number) -> str:
    """Encode an unsigned value as a JSON-RPC quantity."""
    as_int = decimal_to_int(value)
    if as_int < 0:
        raise ValueError(f"cannot encode negative quantity {as_int}")
    return hex(as_int)
