"""
Unit tests for the on-chain integer codec.

Tests:
- Fixed-width bytes -> Decimal (both byte orders)
- Decimal -> fixed-width bytes, including overflow and negative rejection
- JSON-RPC hex quantities
"""

from decimal import Decimal

import pytest

from racer.chain.numeric import (
    bytes_to_decimal,
    decimal_to_bytes,
    decimal_to_int,
    hex_to_int,
    int_to_hex,
)


class TestBytesToDecimal:
    """Test bytes_to_decimal."""

    def test_little_endian_default(self):
        """Default byte order is little-endian."""
        assert bytes_to_decimal(b"\x01\x00") == Decimal(1)
        assert bytes_to_decimal(b"\x00\x01") == Decimal(256)

    def test_big_endian(self):
        assert bytes_to_decimal(b"\x00\x01", byteorder="big") == Decimal(1)

    def test_uint256_max_is_exact(self):
        """32 bytes of 0xff decode without precision loss."""
        assert bytes_to_decimal(b"\xff" * 32) == Decimal(2 ** 256 - 1)

    def test_empty_is_zero(self):
        assert bytes_to_decimal(b"") == Decimal(0)


class TestDecimalToBytes:
    """Test decimal_to_bytes."""

    def test_pads_to_width(self):
        assert decimal_to_bytes(Decimal(1), width=4) == b"\x01\x00\x00\x00"

    def test_big_endian(self):
        assert decimal_to_bytes(258, width=2, byteorder="big") == b"\x01\x02"

    def test_overflow_raises(self):
        """A value wider than the target width is an error, not truncated."""
        with pytest.raises(OverflowError):
            decimal_to_bytes(Decimal(2 ** 64), width=8)

    def test_negative_raises(self):
        with pytest.raises(ValueError):
            decimal_to_bytes(Decimal(-1))

    def test_fractional_raises(self):
        with pytest.raises(ValueError):
            decimal_to_bytes(Decimal("1.5"))

    def test_inverse_of_bytes_to_decimal(self):
        raw = bytes(range(8))
        assert decimal_to_bytes(bytes_to_decimal(raw), width=8) == raw


class TestDecimalToInt:
    """Test decimal_to_int."""

    def test_int_passthrough(self):
        assert decimal_to_int(7) == 7

    def test_integral_decimal(self):
        assert decimal_to_int(Decimal("42.000")) == 42

    def test_infinite_rejected(self):
        with pytest.raises(ValueError):
            decimal_to_int(Decimal("Infinity"))


class TestHexQuantities:
    """Test hex_to_int / int_to_hex."""

    def test_hex_to_int(self):
        assert hex_to_int("0x1a") == 26
        assert hex_to_int("0x0") == 0
        assert hex_to_int("0x") == 0

    def test_hex_to_int_accepts_int(self):
        assert hex_to_int(5) == 5

    def test_hex_to_int_rejects_plain_decimal(self):
        with pytest.raises(ValueError):
            hex_to_int("26")

    def test_int_to_hex(self):
        assert int_to_hex(26) == "0x1a"
        assert int_to_hex(Decimal(0)) == "0x0"

    def test_int_to_hex_rejects_negative(self):
        with pytest.raises(ValueError):
            int_to_hex(-1)
