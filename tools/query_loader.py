#!/usr/bin/env python3
"""
query_loader.py - Load stream query documents from YAML mappings

The query document is a plain mapping tree; this module validates the
literal formats and builds query_ast objects from it.

Document format:

    endian: little                 # optional, little|big, any case
    options:                       # optional engine tunables
      near_margin: 0x1000
    constants:
      EOCD_SIG: u32 = 0x06054b50   # or {type: u32, value: 0x06054b50}
    structures:
      - name: EOCD
        signature: '&EOCD_SIG'     # constant, hex literal, or byte list
        endian: little             # optional override
        hint: {near: eos}          # {skip: 0x10} | {near: 0x200|sos|eos}
        fields:
          - {name: disk_number, type: u16}
          - {name: comment_length, type: u16}
          - {name: comment, type: buffer, size: '&comment_length'}
          - {name: name, type: string, size: 0x8, align: 0x4, offset: '-0x2'}
          - {name: label, type: cstring, max_size: 0x40}
          - {name: method, type: u16, expect: [0x0, 0x8]}
          - {name: note, type: lpstring, prefix: u16}
          - {name: count, type: uleb128}

Literals:
    hex integers   0x + 1..32 hex digits, quoted or not (decimal YAML
                   ints are accepted too)
    identifiers    letter or underscore, then letters, digits, _ or -
    references     &field or &field::structure

Usage:
    from query_loader import load_document
    document = load_document(yaml_text)
"""

import re
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from query_ast import (
    Document, Endian, Field, FieldKind, Hint, NearAnchor, Reference,
    Signature, SizeOperand, Structure, HEX_LITERAL, PRIMITIVE_TYPES,
    VARINT_TYPES, parse_int_literal,
)
from stream_errors import QuerySyntaxError

IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')
REFERENCE = re.compile(
    r'^&([A-Za-z_][A-Za-z0-9_-]*)(?:::([A-Za-z_][A-Za-z0-9_-]*))?$')
CONSTANT_DECL = re.compile(r'^\s*(\w+)\s*=\s*(\S+)\s*$')

# Accepted spellings, mapped to canonical primitive names
TYPE_ALIASES = {'float': 'f32', 'double': 'f64', 'boolean': 'bool'}
for _bits in (8, 16, 32, 64, 128):
    TYPE_ALIASES[f'uint{_bits}'] = f'u{_bits}'
    TYPE_ALIASES[f'int{_bits}'] = f'i{_bits}'
    TYPE_ALIASES[f's{_bits}'] = f'i{_bits}'

BUFFER_TYPES = {'buffer': FieldKind.BUFFER, 'bytes': FieldKind.BUFFER,
                'string': FieldKind.STRING, 'cstring': FieldKind.CSTRING}
LENGTH_PREFIXED_TYPES = {'lpbuffer': FieldKind.LPBUFFER, 'lpstring': FieldKind.LPSTRING}
VARINT_ALIASES = {'varint': 'uleb128', 'svarint': 'sleb128'}

FIELD_KEYS = {'name', 'type', 'size', 'max_size', 'align', 'offset',
              'prefix', 'expect'}
STRUCTURE_KEYS = {'name', 'signature', 'fields', 'endian', 'hint'}
DOCUMENT_KEYS = {'endian', 'options', 'constants', 'structures'}

YAML_HEX = re.compile(r'^[-+]?0x[0-9a-fA-F_]+$')


class QueryLoader(yaml.SafeLoader):
    """
    SafeLoader that keeps plain 0x... scalars as strings.

    YAML would turn 0x00004b50 into 0x4b50 and lose the digit count that
    gives a signature its width, and would accept any number of digits.
    """


def _construct_int(loader: yaml.SafeLoader, node: yaml.ScalarNode) -> Any:
    if YAML_HEX.match(node.value):
        return loader.construct_scalar(node)
    return loader.construct_yaml_int(node)


QueryLoader.add_constructor('tag:yaml.org,2002:int', _construct_int)


# =============================================================================
# Literals
# =============================================================================

def literal_width(value: Any) -> int:
    """Byte width implied by a literal: ceil(digits / 2) for hex strings."""
    if isinstance(value, str):
        match = HEX_LITERAL.match(value.strip())
        if match:
            return (len(match.group(2)) + 1) // 2
    number = parse_int_literal(value)
    return max(1, (number.bit_length() + 7) // 8)


def parse_identifier(value: Any, what: str = 'identifier') -> str:
    if not isinstance(value, str) or not IDENTIFIER.fullmatch(value):
        raise QuerySyntaxError(f"Invalid {what}: {value!r}")
    return value


def parse_reference(value: Any) -> Optional[Reference]:
    """Return a Reference for '&name' / '&name::structure', else None."""
    if not isinstance(value, str) or not value.startswith('&'):
        return None
    match = REFERENCE.match(value.strip())
    if not match:
        raise QuerySyntaxError(f"Invalid reference: {value!r}")
    return Reference(field=match.group(1), structure=match.group(2))


def parse_endian(value: Any) -> Optional[Endian]:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            return Endian(value.strip().lower())
        except ValueError:
            pass
    raise QuerySyntaxError(f"Invalid endianness: {value!r} (expected little or big)")


def parse_type(value: Any) -> str:
    """Canonical primitive type name for value (aliases resolved)."""
    if isinstance(value, str):
        name = value.strip().lower()
        name = TYPE_ALIASES.get(name, name)
        if name in PRIMITIVE_TYPES:
            return name
    raise QuerySyntaxError(f"Unknown type: {value!r}")


def parse_size(value: Any) -> SizeOperand:
    ref = parse_reference(value)
    if ref is not None:
        return ref
    return parse_int_literal(value)


def parse_alignment(value: Any) -> int:
    align = parse_int_literal(value)
    if align <= 0 or align & (align - 1):
        raise QuerySyntaxError(f"Alignment must be a power of two: {value!r}")
    return align


def parse_expect(value: Any) -> Tuple[Any, ...]:
    """One accepted value or a list of them; true/false stay booleans."""
    values = value if isinstance(value, list) else [value]
    return tuple(v if isinstance(v, bool) else parse_int_literal(v, signed=True)
                 for v in values)


def parse_hint(value: Any) -> Optional[Hint]:
    """{skip: 0x10} | {near: 0x200} | {near: sos} | {near: eos}"""
    if value is None:
        return None
    if not isinstance(value, Mapping) or len(value) != 1:
        raise QuerySyntaxError(f"Hint must be a single skip/near entry: {value!r}")

    kind, target = next(iter(value.items()))
    kind = str(kind).lower()
    if kind == 'skip':
        return Hint.skip(parse_int_literal(target))
    if kind == 'near':
        if isinstance(target, str) and target.strip().lower() in ('sos', 'start'):
            return Hint.near(NearAnchor.START)
        if isinstance(target, str) and target.strip().lower() in ('eos', 'end'):
            return Hint.near(NearAnchor.END)
        return Hint.near(parse_int_literal(target))
    raise QuerySyntaxError(f"Unknown hint '{kind}' (expected skip or near)")


# =============================================================================
# Document tree
# =============================================================================

def parse_constants(value: Any) -> Dict[str, Signature]:
    """
    Parse named integer constants.

    Accepts 'u32 = 0x06054b50' strings or {type: u32, value: 0x06054b50}.
    """
    if value is not None and not isinstance(value, Mapping):
        raise QuerySyntaxError(f"'constants' must be a mapping: {value!r}")
    constants = {}
    for name, decl in (value or {}).items():
        parse_identifier(name, 'constant name')
        if isinstance(decl, str):
            match = CONSTANT_DECL.match(decl)
            if not match:
                raise QuerySyntaxError(f"Invalid constant '{name}': {decl!r}")
            type_name, literal = match.groups()
        elif isinstance(decl, Mapping):
            type_name, literal = decl.get('type'), decl.get('value')
        else:
            raise QuerySyntaxError(f"Invalid constant '{name}': {decl!r}")

        ptype = PRIMITIVE_TYPES[parse_type(type_name)]
        if not ptype.is_integer:
            raise QuerySyntaxError(f"Constant '{name}' must have an integer type")
        number = parse_int_literal(literal, signed=ptype.signed)
        if number < 0:
            number += 1 << (ptype.width * 8)
        constants[name] = Signature(number, ptype.width)
    return constants


def parse_signature(value: Any, constants: Mapping[str, Signature]) -> Union[Signature, bytes]:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, list):
        try:
            return bytes(parse_int_literal(b) for b in value)
        except ValueError as e:
            raise QuerySyntaxError(f"Invalid signature bytes {value!r}: {e}") from e

    ref = parse_reference(value)
    if ref is not None:
        if ref.structure or ref.field not in constants:
            raise QuerySyntaxError(f"Unknown signature constant: {value!r}")
        return constants[ref.field]
    return Signature(parse_int_literal(value), literal_width(value))


def parse_field(value: Mapping[str, Any], structure: str = '') -> Field:
    if not isinstance(value, Mapping):
        raise QuerySyntaxError(f"Field of '{structure}' must be a mapping: {value!r}")
    unknown = set(value) - FIELD_KEYS
    if unknown:
        raise QuerySyntaxError(
            f"Unknown keys in field of '{structure}': {', '.join(sorted(map(str, unknown)))}")

    name = parse_identifier(value.get('name'), 'field name')
    type_name = value.get('type')
    kwargs = {}
    if value.get('align') is not None:
        kwargs['align'] = parse_alignment(value['align'])
    if value.get('offset') is not None:
        kwargs['offset'] = parse_int_literal(value['offset'], signed=True)
    if value.get('expect') is not None:
        kwargs['expect'] = parse_expect(value['expect'])

    type_key = str(type_name).strip().lower()
    type_key = VARINT_ALIASES.get(type_key, type_key)
    if type_key in VARINT_TYPES:
        return Field.varint(name, type_key, **kwargs)

    if type_key in LENGTH_PREFIXED_TYPES:
        prefix = parse_type(value.get('prefix', 'u8'))
        return Field(name=name, kind=LENGTH_PREFIXED_TYPES[type_key], type=prefix, **kwargs)
    if value.get('prefix') is not None:
        raise QuerySyntaxError(f"Field '{structure}.{name}': prefix needs lpbuffer or lpstring")

    kind = BUFFER_TYPES.get(type_key)
    if kind is None:
        return Field.primitive(name, parse_type(type_name), **kwargs)

    size = value.get('max_size', value.get('size'))
    if size is None:
        raise QuerySyntaxError(f"Field '{structure}.{name}' needs a size")
    return Field(name=name, kind=kind, size=parse_size(size), **kwargs)


def parse_structure(value: Mapping[str, Any],
                    constants: Optional[Mapping[str, Signature]] = None) -> Structure:
    if not isinstance(value, Mapping):
        raise QuerySyntaxError(f"Structure must be a mapping: {value!r}")
    name = parse_identifier(value.get('name'), 'structure name')
    unknown = set(value) - STRUCTURE_KEYS
    if unknown:
        raise QuerySyntaxError(
            f"Unknown keys in structure '{name}': {', '.join(sorted(map(str, unknown)))}")
    if value.get('signature') is None:
        raise QuerySyntaxError(f"Structure '{name}' has no signature")

    return Structure(
        name=name,
        signature=parse_signature(value['signature'], constants or {}),
        fields=[parse_field(f, name) for f in value.get('fields') or []],
        endian=parse_endian(value.get('endian')),
        hint=parse_hint(value.get('hint')),
    )


def _structure_entries(value: Any) -> List[Mapping[str, Any]]:
    """Structures may be a list, or a mapping keyed by structure name."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, Mapping):
        return [dict(body or {}, name=name) for name, body in value.items()]
    raise QuerySyntaxError(f"'structures' must be a list or mapping: {value!r}")


def document_from_dict(data: Mapping[str, Any]) -> Document:
    """Build a Document from an already-parsed mapping tree."""
    if not isinstance(data, Mapping):
        raise QuerySyntaxError("Query document must be a mapping")
    unknown = set(data) - DOCUMENT_KEYS
    if unknown:
        raise QuerySyntaxError(
            f"Unknown document keys: {', '.join(sorted(map(str, unknown)))}")

    constants = parse_constants(data.get('constants'))
    return Document(
        structures=[parse_structure(s, constants)
                    for s in _structure_entries(data.get('structures'))],
        endian=parse_endian(data.get('endian')),
        options=dict(data.get('options') or {}),
    )


def load_document(text: str) -> Document:
    """Parse YAML query text into a Document."""
    try:
        data = yaml.load(text, Loader=QueryLoader)
    except yaml.YAMLError as e:
        raise QuerySyntaxError(f"Invalid query document: {e}") from e
    return document_from_dict(data or {})
