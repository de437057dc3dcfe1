#!/usr/bin/env python3
"""
field_decoder.py - Decode one field at a stream position

Order of operations for every field:
    1. offset     cursor += offset (may be negative)
    2. align      round cursor up to a multiple of the alignment
    3. read       primitive / varint / buffer / string / cstring /
                  length-prefixed buffer or string
    4. expect     reject values outside the field's expect list

The returned byte count is the total cursor advance, offset and padding
included, so the caller can simply add it to its cursor.

Usage:
    decoder = FieldDecoder()
    value, consumed = decoder.decode(field, buf, cursor, Endian.LITTLE,
                                     resolve_ref=lambda ref: 3)
"""

import struct
from typing import Callable, Optional, Tuple

from query_ast import (
    Endian, Field, FieldKind, Reference, Value, ValueKind,
    MAX_REFERENCE_WIDTH, MAX_VARINT_BYTES, VARINT_TYPES,
)
from stream_errors import (
    ConstraintError, CursorRangeError, InvalidUtf8Error, SizeOverflowError,
    UnexpectedEofError, UnresolvedReferenceError,
)

# Upper bound for sizes taken from references and length prefixes
DEFAULT_MAX_SIZE = 2**32 - 1

RefResolver = Callable[[Reference], int]


class FieldDecoder:
    """Stateless decoder for single fields."""

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE):
        self.max_size = max_size

    def decode(self, field: Field, buf: bytes, cursor: int, endian: Endian,
               resolve_ref: Optional[RefResolver] = None) -> Tuple[Value, int]:
        """
        Decode field at cursor.

        Returns:
            (value, bytes_consumed) where bytes_consumed includes the
            offset and any alignment padding.

        Raises:
            DecodeError subclasses; the caller decides whether that is
            fatal.
        """
        pos = self._position(field, buf, cursor)

        if field.kind == FieldKind.PRIMITIVE:
            value, pos = self._read_primitive(field, buf, pos, endian)
        elif field.kind == FieldKind.VARINT:
            value, pos = self._read_varint(field, buf, pos)
        elif field.kind == FieldKind.BUFFER:
            size = self._resolve_size(field, resolve_ref)
            data, pos = self._read_bytes(field, buf, pos, size)
            value = Value(ValueKind.BYTES, data)
        elif field.kind == FieldKind.STRING:
            size = self._resolve_size(field, resolve_ref)
            data, pos = self._read_bytes(field, buf, pos, size)
            value = Value(ValueKind.STRING, self._utf8(field, data, pos - size))
        elif field.kind == FieldKind.CSTRING:
            max_size = self._resolve_size(field, resolve_ref)
            value, pos = self._read_cstring(field, buf, pos, max_size)
        elif field.kind in (FieldKind.LPBUFFER, FieldKind.LPSTRING):
            value, pos = self._read_length_prefixed(field, buf, pos, endian)
        else:
            raise ValueError(f"Unknown field kind: {field.kind}")

        if field.expect is not None and value.value not in field.expect:
            raise ConstraintError(
                f"value {_show(value.value)} not in expected "
                f"[{', '.join(_show(v) for v in field.expect)}]",
                field.name, cursor)

        return value, pos - cursor

    def _position(self, field: Field, buf: bytes, cursor: int) -> int:
        """Apply offset then alignment."""
        pos = cursor
        if field.offset:
            pos += field.offset
            if pos < 0:
                raise CursorRangeError(
                    f"offset {field.offset} moves cursor before stream start",
                    field.name, pos)

        if field.align and pos % field.align:
            pos += field.align - pos % field.align

        if pos > len(buf):
            raise UnexpectedEofError(
                f"cursor 0x{pos:x} is past end of stream (0x{len(buf):x})",
                field.name, pos)
        return pos

    def _resolve_size(self, field: Field, resolve_ref: Optional[RefResolver]) -> int:
        size = field.size
        if isinstance(size, Reference):
            if resolve_ref is None:
                raise UnresolvedReferenceError(
                    f"no resolver available for {size}", field.name)
            size = resolve_ref(size)

        if size < 0 or size > self.max_size:
            raise SizeOverflowError(
                f"size {size} outside 0..{self.max_size}", field.name)
        return size

    def _read_primitive(self, field: Field, buf: bytes, pos: int,
                        endian: Endian) -> Tuple[Value, int]:
        ptype = field.primitive_type
        data, new_pos = self._read_bytes(field, buf, pos, ptype.width)

        if ptype.is_integer:
            value = int.from_bytes(data, endian.value, signed=ptype.signed)
            return Value(ptype.kind, value, ptype.width), new_pos

        if ptype.kind == ValueKind.BOOL:
            return Value(ValueKind.BOOL, data[0] != 0, 1), new_pos

        prefix = '<' if endian == Endian.LITTLE else '>'
        fmt = prefix + ('f' if ptype.width == 4 else 'd')
        value = struct.unpack(fmt, data)[0]
        return Value(ptype.kind, value, ptype.width), new_pos

    def _read_varint(self, field: Field, buf: bytes, pos: int) -> Tuple[Value, int]:
        """LEB128: 7 bits per byte, least significant group first."""
        kind = VARINT_TYPES[field.type]
        result = shift = 0
        for i in range(MAX_VARINT_BYTES):
            if pos + i >= len(buf):
                raise UnexpectedEofError("stream ends inside varint", field.name, pos)
            byte = buf[pos + i]
            result |= (byte & 0x7F) << shift
            shift += 7
            if not byte & 0x80:
                break
        else:
            raise SizeOverflowError(
                f"varint longer than {MAX_VARINT_BYTES} bytes", field.name, pos)

        if kind == ValueKind.SINT:
            if byte & 0x40:
                result -= 1 << shift
            in_range = -2**63 <= result < 2**63
        else:
            in_range = result < 2**64
        if not in_range:
            raise SizeOverflowError("varint does not fit in 64 bits", field.name, pos)
        return Value(kind, result, MAX_REFERENCE_WIDTH), pos + i + 1

    def _read_length_prefixed(self, field: Field, buf: bytes, pos: int,
                              endian: Endian) -> Tuple[Value, int]:
        """Unsigned length prefix in the structure's byte order, then the data."""
        prefix, pos = self._read_bytes(field, buf, pos, field.primitive_type.width)
        size = int.from_bytes(prefix, endian.value)
        if size > self.max_size:
            raise SizeOverflowError(
                f"size {size} outside 0..{self.max_size}", field.name, pos)

        data, end = self._read_bytes(field, buf, pos, size)
        if field.kind == FieldKind.LPSTRING:
            return Value(ValueKind.STRING, self._utf8(field, data, pos)), end
        return Value(ValueKind.BYTES, data), end

    def _read_bytes(self, field: Field, buf: bytes, pos: int,
                    size: int) -> Tuple[bytes, int]:
        if pos + size > len(buf):
            raise UnexpectedEofError(
                f"need {size} bytes at 0x{pos:x}, "
                f"{max(len(buf) - pos, 0)} available",
                field.name, pos)
        return bytes(buf[pos:pos + size]), pos + size

    def _read_cstring(self, field: Field, buf: bytes, pos: int,
                      max_size: int) -> Tuple[Value, int]:
        """NUL-terminated string of at most max_size bytes, terminator included."""
        window = buf[pos:pos + max_size]
        end = window.find(b'\x00')
        if end < 0:
            if pos + max_size > len(buf):
                raise UnexpectedEofError(
                    "stream ends before string terminator", field.name, pos)
            raise SizeOverflowError(
                f"string is longer than {max_size} bytes", field.name, pos)
        text = self._utf8(field, bytes(window[:end]), pos)
        return Value(ValueKind.STRING, text), pos + end + 1

    def _utf8(self, field: Field, data: bytes, pos: int) -> str:
        try:
            return data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise InvalidUtf8Error(
                f"invalid UTF-8 at byte {e.start}", field.name, pos) from e


def _show(value) -> str:
    if isinstance(value, int) and not isinstance(value, bool):
        return f"0x{value:x}" if value >= 0 else f"-0x{-value:x}"
    return repr(value)
