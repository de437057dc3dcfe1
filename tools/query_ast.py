#!/usr/bin/env python3
"""
query_ast.py - Data model for stream query documents

A query document is a flat, ordered list of structures. Each structure is
anchored by a fixed byte signature and holds an ordered list of fields.
The front-end (see query_loader.py) builds these objects; the plan
builder compiles them; the matcher produces DecodedRecord instances.

Example:
    doc = Document(structures=[
        Structure(
            name='EOCD',
            signature=Signature(0x06054b50, 4),
            fields=[
                Field.primitive('disk_number', 'u16'),
                Field.primitive('comment_length', 'u16'),
                Field.buffer('comment', Reference('comment_length')),
            ],
        ),
    ])
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from stream_errors import QuerySyntaxError

HEX_LITERAL = re.compile(r'^(-?)0[xX]([0-9a-fA-F]{1,32})$')


class Endian(Enum):
    BIG = 'big'
    LITTLE = 'little'


class ValueKind(Enum):
    UINT = 'uint'
    SINT = 'sint'
    F32 = 'f32'
    F64 = 'f64'
    BOOL = 'bool'
    BYTES = 'bytes'
    STRING = 'string'


@dataclass(frozen=True)
class PrimitiveType:
    """Fixed-width numeric type."""
    name: str
    width: int  # bytes
    kind: ValueKind

    @property
    def is_integer(self) -> bool:
        return self.kind in (ValueKind.UINT, ValueKind.SINT)

    @property
    def signed(self) -> bool:
        return self.kind == ValueKind.SINT


def _build_primitive_table() -> Dict[str, PrimitiveType]:
    table = {}
    for bits in (8, 16, 32, 64, 128):
        table[f'u{bits}'] = PrimitiveType(f'u{bits}', bits // 8, ValueKind.UINT)
        table[f'i{bits}'] = PrimitiveType(f'i{bits}', bits // 8, ValueKind.SINT)
    table['f32'] = PrimitiveType('f32', 4, ValueKind.F32)
    table['f64'] = PrimitiveType('f64', 8, ValueKind.F64)
    table['bool'] = PrimitiveType('bool', 1, ValueKind.BOOL)
    return table


PRIMITIVE_TYPES: Dict[str, PrimitiveType] = _build_primitive_table()

# References may only name integers that fit in 64 bits
MAX_REFERENCE_WIDTH = 8

# LEB128 varints; ten 7-bit groups cover 64 bits
VARINT_TYPES = {'uleb128': ValueKind.UINT, 'sleb128': ValueKind.SINT}
MAX_VARINT_BYTES = 10

# Length prefixes of lpbuffer/lpstring fields
PREFIX_TYPES = ('u8', 'u16', 'u32', 'u64')


def parse_int_literal(value: Any, signed: bool = False) -> int:
    """Parse a hex literal string (or an int from a Python mapping)."""
    if isinstance(value, bool):
        raise QuerySyntaxError(f"Expected integer literal, got {value!r}")
    if isinstance(value, int):
        if value < 0 and not signed:
            raise QuerySyntaxError(f"Negative value not allowed here: {value}")
        return value
    if isinstance(value, str):
        match = HEX_LITERAL.match(value.strip())
        if match:
            sign, digits = match.groups()
            if sign and not signed:
                raise QuerySyntaxError(f"Negative value not allowed here: {value}")
            number = int(digits, 16)
            return -number if sign else number
    raise QuerySyntaxError(f"Invalid hex literal: {value!r}")


@dataclass(frozen=True)
class Reference:
    """
    Back-reference to an already decoded integer field.

    structure=None resolves against the enclosing structure's current
    candidate; otherwise against the latest record of that structure.
    """
    field: str
    structure: Optional[str] = None

    @property
    def is_foreign(self) -> bool:
        return self.structure is not None

    def __str__(self) -> str:
        if self.structure:
            return f"&{self.field}::{self.structure}"
        return f"&{self.field}"


SizeOperand = Union[int, Reference]


class FieldKind(Enum):
    PRIMITIVE = 'primitive'
    VARINT = 'varint'
    BUFFER = 'buffer'
    STRING = 'string'
    CSTRING = 'cstring'
    LPBUFFER = 'lpbuffer'
    LPSTRING = 'lpstring'


@dataclass(frozen=True)
class Field:
    """
    One field of a structure.

    PRIMITIVE fields carry `type`; VARINT fields carry `type` uleb128 or
    sleb128. BUFFER/STRING carry `size` (exact byte count); CSTRING
    carries `size` as the maximum length including the NUL terminator.
    LPBUFFER/LPSTRING carry the unsigned type of their inline length
    prefix in `type`.

    `expect` lists the values an integer or bool field may take; any
    other value rejects the candidate match.
    """
    name: str
    kind: FieldKind
    type: Optional[str] = None
    size: Optional[SizeOperand] = None
    align: Optional[int] = None
    offset: Optional[int] = None
    expect: Optional[Tuple[Any, ...]] = None

    @classmethod
    def primitive(cls, name: str, type_name: str, **kwargs) -> 'Field':
        return cls(name=name, kind=FieldKind.PRIMITIVE, type=type_name, **kwargs)

    @classmethod
    def varint(cls, name: str, type_name: str = 'uleb128', **kwargs) -> 'Field':
        return cls(name=name, kind=FieldKind.VARINT, type=type_name, **kwargs)

    @classmethod
    def buffer(cls, name: str, size: SizeOperand, **kwargs) -> 'Field':
        return cls(name=name, kind=FieldKind.BUFFER, size=size, **kwargs)

    @classmethod
    def string(cls, name: str, size: SizeOperand, **kwargs) -> 'Field':
        return cls(name=name, kind=FieldKind.STRING, size=size, **kwargs)

    @classmethod
    def cstring(cls, name: str, max_size: SizeOperand, **kwargs) -> 'Field':
        return cls(name=name, kind=FieldKind.CSTRING, size=max_size, **kwargs)

    @classmethod
    def lpbuffer(cls, name: str, prefix: str = 'u8', **kwargs) -> 'Field':
        return cls(name=name, kind=FieldKind.LPBUFFER, type=prefix, **kwargs)

    @classmethod
    def lpstring(cls, name: str, prefix: str = 'u8', **kwargs) -> 'Field':
        return cls(name=name, kind=FieldKind.LPSTRING, type=prefix, **kwargs)

    @property
    def primitive_type(self) -> Optional[PrimitiveType]:
        if self.kind not in (FieldKind.PRIMITIVE, FieldKind.LPBUFFER, FieldKind.LPSTRING):
            return None
        return PRIMITIVE_TYPES[self.type]

    @property
    def integer_width(self) -> Optional[int]:
        """Byte width if the field decodes to an integer, else None."""
        if self.kind == FieldKind.VARINT:
            return MAX_REFERENCE_WIDTH
        if self.kind == FieldKind.PRIMITIVE:
            ptype = PRIMITIVE_TYPES[self.type]
            return ptype.width if ptype.is_integer else None
        return None

    @property
    def reference(self) -> Optional[Reference]:
        return self.size if isinstance(self.size, Reference) else None


class HintKind(Enum):
    SKIP = 'skip'
    NEAR = 'near'


class NearAnchor(Enum):
    START = 'sos'
    END = 'eos'


@dataclass(frozen=True)
class Hint:
    """Where to begin the signature search (SKIP/NEAR directive)."""
    kind: HintKind
    target: Union[int, NearAnchor]

    @classmethod
    def skip(cls, offset: int) -> 'Hint':
        return cls(HintKind.SKIP, offset)

    @classmethod
    def near(cls, target: Union[int, NearAnchor]) -> 'Hint':
        return cls(HintKind.NEAR, target)


@dataclass(frozen=True)
class Signature:
    """
    Integer signature literal of a given byte width.

    The byte order is only known once the structure's effective
    endianness is resolved, so conversion to bytes happens at plan time.
    """
    value: int
    width: int

    def to_bytes(self, endian: Endian) -> bytes:
        return self.value.to_bytes(self.width, endian.value)


@dataclass
class Structure:
    name: str
    signature: Union[Signature, bytes]
    fields: List[Field] = field(default_factory=list)
    endian: Optional[Endian] = None
    hint: Optional[Hint] = None


@dataclass
class Document:
    structures: List[Structure] = field(default_factory=list)
    endian: Optional[Endian] = None
    options: Dict[str, Any] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Runtime output
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Value:
    """A decoded field value; width is the byte width for numerics."""
    kind: ValueKind
    value: Any
    width: Optional[int] = None

    @property
    def is_integer(self) -> bool:
        return self.kind in (ValueKind.UINT, ValueKind.SINT)

    def to_plain(self) -> Any:
        if self.kind == ValueKind.BYTES:
            return self.value.hex().upper()
        return self.value


@dataclass
class DecodedRecord:
    """
    One decoded structure instance.

    `offset` is the cursor right after the signature, so
    stream[offset - len(signature):offset] is the signature itself.
    """
    structure: str
    offset: int
    signature_offset: int
    end_offset: int
    fields: Dict[str, Value] = field(default_factory=dict)

    @property
    def data(self) -> Dict[str, Any]:
        return {name: v.value for name, v in self.fields.items()}

    @property
    def size(self) -> int:
        return self.end_offset - self.signature_offset

    def __getitem__(self, name: str) -> Any:
        return self.fields[name].value

    def to_dict(self) -> Dict[str, Any]:
        return {
            'structure': self.structure,
            'offset': self.offset,
            'signature_offset': self.signature_offset,
            'end_offset': self.end_offset,
            'fields': {name: v.to_plain() for name, v in self.fields.items()},
        }
