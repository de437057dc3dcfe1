"""
Tests for the field decoder.

Covers primitive integer/float/bool reads in both byte orders, offset and
alignment handling, literal and referenced sizes, LEB128 varints,
length-prefixed buffers and strings, expect constraints, and the
per-candidate decode errors (EOF, UTF-8, size overflow, cursor range).
"""

import math
import struct

import pytest

from field_decoder import FieldDecoder
from query_ast import Endian, Field, Reference, ValueKind
from stream_errors import (
    ConstraintError, CursorRangeError, DecodeError, InvalidUtf8Error,
    SizeOverflowError, UnexpectedEofError, UnresolvedReferenceError,
)


@pytest.fixture
def decoder():
    return FieldDecoder()


class TestPrimitiveTypes:
    """Integer, float and bool primitives."""

    @pytest.mark.parametrize("type_name,fmt", [
        ('u8', 'B'), ('u16', 'H'), ('u32', 'I'), ('u64', 'Q'),
        ('i8', 'b'), ('i16', 'h'), ('i32', 'i'), ('i64', 'q'),
    ])
    @pytest.mark.parametrize("endian,prefix", [
        (Endian.LITTLE, '<'), (Endian.BIG, '>'),
    ])
    def test_integer_types(self, decoder, type_name, fmt, endian, prefix):
        raw = -5 if type_name.startswith('i') else 200
        buf = struct.pack(prefix + fmt, raw)

        value, consumed = decoder.decode(Field.primitive('v', type_name), buf, 0, endian)

        assert value.value == raw
        assert value.width == len(buf)
        assert consumed == len(buf)

    def test_u128_little_endian(self, decoder):
        buf = (2**100 + 7).to_bytes(16, 'little')
        value, consumed = decoder.decode(Field.primitive('v', 'u128'), buf, 0, Endian.LITTLE)
        assert value.value == 2**100 + 7
        assert value.kind == ValueKind.UINT
        assert consumed == 16

    def test_i128_twos_complement(self, decoder):
        buf = b'\xff' * 16
        value, _ = decoder.decode(Field.primitive('v', 'i128'), buf, 0, Endian.BIG)
        assert value.value == -1
        assert value.kind == ValueKind.SINT

    def test_byte_order_differs(self, decoder):
        buf = bytes([0x01, 0x02])
        le, _ = decoder.decode(Field.primitive('v', 'u16'), buf, 0, Endian.LITTLE)
        be, _ = decoder.decode(Field.primitive('v', 'u16'), buf, 0, Endian.BIG)
        assert le.value == 0x0201
        assert be.value == 0x0102

    def test_f32(self, decoder):
        buf = struct.pack('<f', 1.5)
        value, consumed = decoder.decode(Field.primitive('v', 'f32'), buf, 0, Endian.LITTLE)
        assert value.kind == ValueKind.F32
        assert value.value == 1.5
        assert consumed == 4

    def test_f64_big_endian(self, decoder):
        buf = struct.pack('>d', math.pi)
        value, consumed = decoder.decode(Field.primitive('v', 'f64'), buf, 0, Endian.BIG)
        assert value.kind == ValueKind.F64
        assert value.value == math.pi
        assert consumed == 8

    @pytest.mark.parametrize("raw,expected", [(0, False), (1, True), (0xFF, True)])
    def test_bool(self, decoder, raw, expected):
        value, consumed = decoder.decode(Field.primitive('v', 'bool'), bytes([raw]), 0,
                                         Endian.LITTLE)
        assert value.value is expected
        assert consumed == 1

    def test_reads_at_cursor(self, decoder):
        buf = bytes([0xAA, 0xBB, 0x34, 0x12])
        value, consumed = decoder.decode(Field.primitive('v', 'u16'), buf, 2, Endian.LITTLE)
        assert value.value == 0x1234
        assert consumed == 2


class TestOffsetAndAlignment:
    """Offset is applied before alignment; both count as consumed bytes."""

    def test_positive_offset(self, decoder):
        buf = bytes([0x00, 0x00, 0x00, 0x2A])
        field = Field.primitive('v', 'u8', offset=3)
        value, consumed = decoder.decode(field, buf, 0, Endian.LITTLE)
        assert value.value == 0x2A
        assert consumed == 4

    def test_negative_offset(self, decoder):
        buf = bytes([0x2A, 0x00, 0x00])
        field = Field.primitive('v', 'u8', offset=-2)
        value, consumed = decoder.decode(field, buf, 2, Endian.LITTLE)
        assert value.value == 0x2A
        assert consumed == -1

    def test_alignment_pads_to_boundary(self, decoder):
        buf = bytes(4) + bytes([0x07])
        field = Field.primitive('v', 'u8', align=4)
        value, consumed = decoder.decode(field, buf, 1, Endian.LITTLE)
        assert value.value == 7
        assert consumed == 4  # 3 padding + 1 data

    def test_alignment_noop_when_aligned(self, decoder):
        buf = bytes(8) + bytes([0x07])
        field = Field.primitive('v', 'u8', align=8)
        value, consumed = decoder.decode(field, buf, 8, Endian.LITTLE)
        assert value.value == 7
        assert consumed == 1

    def test_offset_then_alignment(self, decoder):
        buf = bytes(8) + bytes([0x09])
        field = Field.primitive('v', 'u8', offset=1, align=8)
        # cursor 2 -> offset 3 -> aligned 8
        value, consumed = decoder.decode(field, buf, 2, Endian.LITTLE)
        assert value.value == 9
        assert consumed == 7

    def test_offset_before_stream_start(self, decoder):
        field = Field.primitive('v', 'u8', offset=-4)
        with pytest.raises(CursorRangeError, match="before stream start"):
            decoder.decode(field, bytes(4), 2, Endian.LITTLE)

    def test_alignment_past_end(self, decoder):
        field = Field.buffer('v', 0, align=16)
        with pytest.raises(UnexpectedEofError, match="past end"):
            decoder.decode(field, bytes(5), 1, Endian.LITTLE)


class TestBuffersAndStrings:
    """Variable-length fields with literal and referenced sizes."""

    def test_literal_buffer(self, decoder):
        value, consumed = decoder.decode(Field.buffer('b', 3), b'ABCD', 0, Endian.LITTLE)
        assert value.kind == ValueKind.BYTES
        assert value.value == b'ABC'
        assert consumed == 3

    def test_referenced_buffer(self, decoder):
        field = Field.buffer('b', Reference('length'))
        value, consumed = decoder.decode(field, b'ABCD', 1, Endian.LITTLE,
                                         resolve_ref=lambda ref: 2)
        assert value.value == b'BC'
        assert consumed == 2

    def test_zero_size_buffer(self, decoder):
        value, consumed = decoder.decode(Field.buffer('b', 0), b'', 0, Endian.LITTLE)
        assert value.value == b''
        assert consumed == 0

    def test_zero_size_string(self, decoder):
        field = Field.string('s', Reference('n'))
        value, consumed = decoder.decode(field, b'xyz', 3, Endian.LITTLE,
                                         resolve_ref=lambda ref: 0)
        assert value.kind == ValueKind.STRING
        assert value.value == ''
        assert consumed == 0

    def test_utf8_string(self, decoder):
        data = 'héllo'.encode('utf-8')
        value, consumed = decoder.decode(Field.string('s', len(data)), data, 0, Endian.LITTLE)
        assert value.value == 'héllo'
        assert consumed == len(data)

    def test_invalid_utf8(self, decoder):
        with pytest.raises(InvalidUtf8Error, match="invalid UTF-8"):
            decoder.decode(Field.string('s', 2), b'\xff\xfe', 0, Endian.LITTLE)

    def test_truncated_buffer(self, decoder):
        with pytest.raises(UnexpectedEofError, match="need 4 bytes"):
            decoder.decode(Field.buffer('b', 4), b'AB', 0, Endian.LITTLE)

    def test_size_over_bound(self):
        decoder = FieldDecoder(max_size=16)
        field = Field.buffer('b', Reference('n'))
        with pytest.raises(SizeOverflowError):
            decoder.decode(field, bytes(64), 0, Endian.LITTLE, resolve_ref=lambda ref: 17)

    def test_default_bound_is_u32(self, decoder):
        field = Field.buffer('b', Reference('n'))
        with pytest.raises(SizeOverflowError):
            decoder.decode(field, b'', 0, Endian.LITTLE, resolve_ref=lambda ref: 2**32)

    def test_negative_size_rejected(self, decoder):
        field = Field.buffer('b', Reference('n'))
        with pytest.raises(SizeOverflowError):
            decoder.decode(field, bytes(4), 0, Endian.LITTLE, resolve_ref=lambda ref: -1)

    def test_reference_without_resolver(self, decoder):
        with pytest.raises(UnresolvedReferenceError):
            decoder.decode(Field.buffer('b', Reference('n')), bytes(4), 0, Endian.LITTLE)

    def test_error_carries_field_and_position(self, decoder):
        with pytest.raises(DecodeError) as exc_info:
            decoder.decode(Field.buffer('payload', 8), bytes(4), 2, Endian.LITTLE)
        assert exc_info.value.field == 'payload'
        assert exc_info.value.position == 2
        assert str(exc_info.value).startswith('payload:')


class TestCString:
    """NUL-terminated strings bounded by a maximum length."""

    def test_terminated(self, decoder):
        value, consumed = decoder.decode(Field.cstring('s', 16), b'abc\x00def', 0,
                                         Endian.LITTLE)
        assert value.value == 'abc'
        assert consumed == 4

    def test_empty(self, decoder):
        value, consumed = decoder.decode(Field.cstring('s', 4), b'\x00', 0, Endian.LITTLE)
        assert value.value == ''
        assert consumed == 1

    def test_too_long(self, decoder):
        with pytest.raises(SizeOverflowError, match="longer than 3"):
            decoder.decode(Field.cstring('s', 3), b'abcdef\x00', 0, Endian.LITTLE)

    def test_unterminated_at_eof(self, decoder):
        with pytest.raises(UnexpectedEofError):
            decoder.decode(Field.cstring('s', 16), b'abc', 0, Endian.LITTLE)


class TestShortBufferErrors:
    """All fixed-width types fail cleanly on short buffers."""

    @pytest.mark.parametrize("type_name,width", [
        ('u16', 2), ('u32', 4), ('u64', 8), ('u128', 16),
        ('i16', 2), ('i32', 4), ('i64', 8), ('i128', 16),
        ('f32', 4), ('f64', 8),
    ])
    def test_short_buffer_numeric(self, decoder, type_name, width):
        with pytest.raises(UnexpectedEofError):
            decoder.decode(Field.primitive('v', type_name), bytes(width - 1), 0,
                           Endian.LITTLE)

    @pytest.mark.parametrize("type_name", ['u8', 'i8', 'bool'])
    def test_empty_buffer_single_byte(self, decoder, type_name):
        with pytest.raises(UnexpectedEofError):
            decoder.decode(Field.primitive('v', type_name), b'', 0, Endian.LITTLE)


class TestVarint:
    """LEB128 varints."""

    @pytest.mark.parametrize("buf,expected", [
        (b'\x00', 0), (b'\x7f', 127), (b'\x80\x01', 128),
        (b'\xe5\x8e\x26', 624485), (b'\xff' * 9 + b'\x01', 2**64 - 1),
    ])
    def test_unsigned(self, decoder, buf, expected):
        value, consumed = decoder.decode(Field.varint('n'), buf + b'\xAA', 0, Endian.LITTLE)
        assert value.value == expected
        assert value.kind == ValueKind.UINT
        assert consumed == len(buf)

    @pytest.mark.parametrize("buf,expected", [
        (b'\x00', 0), (b'\x7f', -1), (b'\x3f', 63), (b'\x40', -64),
        (b'\x80\x7f', -128), (b'\xc0\xbb\x78', -123456),
    ])
    def test_signed(self, decoder, buf, expected):
        value, consumed = decoder.decode(Field.varint('n', 'sleb128'), buf, 0, Endian.BIG)
        assert value.value == expected
        assert value.kind == ValueKind.SINT
        assert consumed == len(buf)

    def test_byte_order_ignored(self, decoder):
        buf = b'\x80\x01'
        little, _ = decoder.decode(Field.varint('n'), buf, 0, Endian.LITTLE)
        big, _ = decoder.decode(Field.varint('n'), buf, 0, Endian.BIG)
        assert little == big

    def test_eof_inside_varint(self, decoder):
        with pytest.raises(UnexpectedEofError, match="inside varint"):
            decoder.decode(Field.varint('n'), b'\x80\x80', 0, Endian.LITTLE)

    def test_longer_than_ten_bytes(self, decoder):
        with pytest.raises(SizeOverflowError, match="longer than 10 bytes"):
            decoder.decode(Field.varint('n'), b'\x80' * 10 + b'\x00', 0, Endian.LITTLE)

    def test_unsigned_overflow(self, decoder):
        with pytest.raises(SizeOverflowError, match="64 bits"):
            decoder.decode(Field.varint('n'), b'\xff' * 9 + b'\x02', 0, Endian.LITTLE)


class TestLengthPrefixed:

    def test_lpbuffer_u8(self, decoder):
        value, consumed = decoder.decode(Field.lpbuffer('b'), b'\x03abcd', 0, Endian.LITTLE)
        assert value.value == b'abc'
        assert value.kind == ValueKind.BYTES
        assert consumed == 4

    @pytest.mark.parametrize("endian,prefix", [
        (Endian.LITTLE, b'\x05\x00'), (Endian.BIG, b'\x00\x05'),
    ])
    def test_lpstring_u16_follows_byte_order(self, decoder, endian, prefix):
        value, consumed = decoder.decode(Field.lpstring('s', 'u16'), prefix + b'hello', 0, endian)
        assert value.value == 'hello'
        assert value.kind == ValueKind.STRING
        assert consumed == 7

    def test_empty(self, decoder):
        value, consumed = decoder.decode(Field.lpstring('s', 'u32'), b'\x00' * 4, 0, Endian.BIG)
        assert value.value == ''
        assert consumed == 4

    def test_eof_in_prefix(self, decoder):
        with pytest.raises(UnexpectedEofError):
            decoder.decode(Field.lpbuffer('b', 'u32'), b'\x01\x00', 0, Endian.LITTLE)

    def test_eof_in_data(self, decoder):
        with pytest.raises(UnexpectedEofError, match="need 9 bytes"):
            decoder.decode(Field.lpbuffer('b'), b'\x09abc', 0, Endian.LITTLE)

    def test_prefix_above_max_size(self):
        decoder = FieldDecoder(max_size=0x10)
        with pytest.raises(SizeOverflowError, match="outside 0..16"):
            decoder.decode(Field.lpbuffer('b', 'u16'), b'\x00\x01' + b'x' * 0x100, 0, Endian.BIG)

    def test_invalid_utf8(self, decoder):
        with pytest.raises(InvalidUtf8Error):
            decoder.decode(Field.lpstring('s'), b'\x02\xff\xfe', 0, Endian.LITTLE)


class TestExpect:

    def test_accepted_value(self, decoder):
        field = Field.primitive('version', 'u16', expect=(0x14, 0x2d))
        value, _ = decoder.decode(field, b'\x2d\x00', 0, Endian.LITTLE)
        assert value.value == 0x2d

    def test_rejected_value(self, decoder):
        field = Field.primitive('version', 'u16', expect=(0x14, 0x2d))
        message = r"value 0x15 not in expected \[0x14, 0x2d\]"
        with pytest.raises(ConstraintError, match=message) as exc:
            decoder.decode(field, b'\x15\x00', 4, Endian.LITTLE)
        assert exc.value.field == 'version'
        assert isinstance(exc.value, DecodeError)

    def test_negative_expected(self, decoder):
        field = Field.primitive('delta', 'i8', expect=(-1,))
        value, _ = decoder.decode(field, b'\xff', 0, Endian.LITTLE)
        assert value.value == -1

    def test_varint_expect(self, decoder):
        with pytest.raises(ConstraintError):
            decoder.decode(Field.varint('n', expect=(1,)), b'\x02', 0, Endian.LITTLE)

    def test_bool_expect(self, decoder):
        field = Field.primitive('flag', 'bool', expect=(True,))
        value, _ = decoder.decode(field, b'\x01', 0, Endian.LITTLE)
        assert value.value is True
        with pytest.raises(ConstraintError, match="False"):
            decoder.decode(field, b'\x00', 0, Endian.LITTLE)
