#!/usr/bin/env python3
"""
plan_builder.py - Compile a query Document into an executable ScanPlan

Checks performed (all raise PlanError subclasses before any scanning):
    - structure names unique in the document
    - field names unique within a structure
    - primitive, varint and length-prefix types known, alignments powers
      of two
    - expect lists non-empty and within the field type's range
    - signatures 1..16 bytes
    - &field references name an earlier field of the same structure
    - &field::S references name a structure declared earlier than the
      referencing one (structures are scanned in declaration order)
    - referenced fields are integers of at most 64 bits
    - SKIP hints inside the stream, when the stream length is known

Effective endianness: structure override, else document default, else
little-endian.

Usage:
    plan = build_plan(document)
    for compiled in plan:
        print(compiled.name, compiled.signature.hex())
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from field_decoder import DEFAULT_MAX_SIZE
from hint_resolver import DEFAULT_NEAR_MARGIN, check_hint, near_window
from query_ast import (
    Document, Endian, Field, FieldKind, Hint, Reference, Signature, Structure,
    ValueKind, MAX_REFERENCE_WIDTH, PREFIX_TYPES, PRIMITIVE_TYPES, VARINT_TYPES,
    parse_int_literal,
)
from stream_errors import (
    DuplicateIdentifierError, InvalidReferenceError, PlanError, SignatureError,
)

MAX_SIGNATURE_BYTES = 16

OPTION_KEYS = ('near_margin', 'max_size', 'max_matches', 'search_limit')


@dataclass(frozen=True)
class ScanConfig:
    """
    Engine tunables.

    near_margin    lookback added to NEAR windows (see hint_resolver.near_window)
    max_size       upper bound for referenced sizes and length prefixes
    max_matches    stop a structure after this many records
    search_limit   signatures must start before this stream offset
    """
    near_margin: int = DEFAULT_NEAR_MARGIN
    max_size: int = DEFAULT_MAX_SIZE
    max_matches: Optional[int] = None
    search_limit: Optional[int] = None

    @classmethod
    def from_options(cls, options: Optional[Mapping[str, Any]]) -> 'ScanConfig':
        """Build from a document's `options:` mapping (ints or hex strings)."""
        options = options or {}
        unknown = set(options) - set(OPTION_KEYS)
        if unknown:
            raise PlanError(f"Unknown options: {', '.join(sorted(unknown))}")

        kwargs = {}
        for key in OPTION_KEYS:
            if options.get(key) is not None:
                kwargs[key] = parse_int_literal(options[key])
        return cls(**kwargs)


@dataclass(frozen=True)
class CompiledStructure:
    """A structure ready to be scanned."""
    name: str
    signature: bytes
    endian: Endian
    fields: Tuple[Field, ...]
    hint: Optional[Hint] = None
    required_bytes: int = 0

    def near_window(self, margin: int = DEFAULT_NEAR_MARGIN) -> int:
        return near_window(len(self.signature), self.required_bytes, margin)


@dataclass
class ScanPlan:
    structures: List[CompiledStructure] = field(default_factory=list)
    endian: Endian = Endian.LITTLE
    config: ScanConfig = field(default_factory=ScanConfig)

    def __iter__(self) -> Iterator[CompiledStructure]:
        return iter(self.structures)

    def __len__(self) -> int:
        return len(self.structures)

    @property
    def names(self) -> List[str]:
        return [s.name for s in self.structures]

    def structure(self, name: str) -> CompiledStructure:
        for compiled in self.structures:
            if compiled.name == name:
                return compiled
        raise KeyError(name)

    def check_stream_length(self, stream_len: int) -> None:
        """Validate SKIP hints against a stream whose length is now known."""
        for compiled in self.structures:
            check_hint(compiled.hint, stream_len, compiled.name)


def build_plan(document: Document, stream_length: Optional[int] = None,
               config: Optional[ScanConfig] = None) -> ScanPlan:
    """Validate document and compile it into a ScanPlan."""
    if config is None:
        config = ScanConfig.from_options(document.options)

    default_endian = document.endian or Endian.LITTLE
    # structure name -> {field name: Field}, in declaration order
    declared: Dict[str, Dict[str, Field]] = {}
    compiled_structures = []

    for structure in document.structures:
        if structure.name in declared:
            raise DuplicateIdentifierError(
                f"Duplicate structure identifier '{structure.name}'")

        endian = structure.endian or default_endian
        fields = _check_fields(structure, declared)
        signature = _signature_bytes(structure, endian)

        compiled = CompiledStructure(
            name=structure.name,
            signature=signature,
            endian=endian,
            fields=tuple(structure.fields),
            hint=structure.hint,
            required_bytes=required_bytes(structure.fields),
        )
        if stream_length is not None:
            check_hint(compiled.hint, stream_length, compiled.name)

        declared[structure.name] = fields
        compiled_structures.append(compiled)

    return ScanPlan(structures=compiled_structures, endian=default_endian,
                    config=config)


def _check_fields(structure: Structure,
                  declared: Mapping[str, Mapping[str, Field]]) -> Dict[str, Field]:
    seen: Dict[str, Field] = {}
    for f in structure.fields:
        where = f"{structure.name}.{f.name}"
        if f.name in seen:
            raise DuplicateIdentifierError(f"Duplicate field identifier '{where}'")

        if f.kind == FieldKind.PRIMITIVE:
            if f.type not in PRIMITIVE_TYPES:
                raise PlanError(f"Unknown primitive type '{f.type}' for {where}")
        elif f.kind == FieldKind.VARINT:
            if f.type not in VARINT_TYPES:
                raise PlanError(f"Unknown varint type '{f.type}' for {where}")
        elif f.kind in (FieldKind.LPBUFFER, FieldKind.LPSTRING):
            if f.type not in PREFIX_TYPES:
                raise PlanError(
                    f"{where}: length prefix '{f.type}' must be one of "
                    f"{', '.join(PREFIX_TYPES)}")
        elif f.size is None:
            raise PlanError(f"{where}: {f.kind.value} field needs a size")
        elif f.reference is not None:
            _check_reference(f.reference, where, structure.name, seen, declared)
        elif f.size < 0:
            raise PlanError(f"{where}: negative size {f.size}")

        if f.align is not None and (f.align <= 0 or f.align & (f.align - 1)):
            raise PlanError(f"{where}: alignment {f.align} is not a power of two")
        if f.expect is not None:
            _check_expect(f, where)

        seen[f.name] = f
    return seen


def _check_expect(f: Field, where: str) -> None:
    if not f.expect:
        raise PlanError(f"{where}: expect list is empty")

    if f.integer_width is None:
        ptype = f.primitive_type
        if f.kind != FieldKind.PRIMITIVE or ptype.kind != ValueKind.BOOL:
            raise PlanError(f"{where}: expect needs an integer or bool field")
        if not all(isinstance(v, bool) for v in f.expect):
            raise PlanError(f"{where}: expected values must be true or false")
        return

    if f.kind == FieldKind.VARINT:
        signed = VARINT_TYPES[f.type] == ValueKind.SINT
    else:
        signed = f.primitive_type.signed
    bits = f.integer_width * 8
    if signed:
        low, high = -(1 << (bits - 1)), (1 << (bits - 1)) - 1
    else:
        low, high = 0, (1 << bits) - 1
    for v in f.expect:
        if isinstance(v, bool) or not isinstance(v, int) or not low <= v <= high:
            raise PlanError(f"{where}: expected value {v!r} does not fit {f.type}")


def _check_reference(ref: Reference, where: str, current: str,
                     local: Mapping[str, Field],
                     declared: Mapping[str, Mapping[str, Field]]) -> None:
    if ref.is_foreign:
        if ref.structure == current:
            raise InvalidReferenceError(
                f"{where}: {ref} names its own structure; use &{ref.field}")
        if ref.structure not in declared:
            raise InvalidReferenceError(
                f"{where}: {ref} names a structure that is not declared "
                f"before '{current}'")
        target = declared[ref.structure].get(ref.field)
    else:
        target = local.get(ref.field)

    if target is None:
        raise InvalidReferenceError(
            f"{where}: {ref} does not name an earlier field")

    width = target.integer_width
    if width is None or width > MAX_REFERENCE_WIDTH:
        raise InvalidReferenceError(
            f"{where}: {ref} must name an integer field of at most 64 bits")


def _signature_bytes(structure: Structure, endian: Endian) -> bytes:
    sig = structure.signature
    if isinstance(sig, Signature):
        if not 1 <= sig.width <= MAX_SIGNATURE_BYTES:
            raise SignatureError(
                f"Signature of '{structure.name}' must be 1..16 bytes, "
                f"got {sig.width}")
        try:
            return sig.to_bytes(endian)
        except OverflowError as e:
            raise SignatureError(
                f"Signature 0x{sig.value:x} of '{structure.name}' does not fit "
                f"in {sig.width} bytes") from e

    sig = bytes(sig or b'')
    if not 1 <= len(sig) <= MAX_SIGNATURE_BYTES:
        raise SignatureError(
            f"Signature of '{structure.name}' must be 1..16 bytes, got {len(sig)}")
    return sig


def required_bytes(fields: List[Field]) -> int:
    """Minimum bytes after the signature needed to satisfy the field list."""
    total = 0
    for f in fields:
        if f.offset and f.offset > 0:
            total += f.offset
        if f.kind in (FieldKind.PRIMITIVE, FieldKind.LPBUFFER, FieldKind.LPSTRING):
            # the value itself, or the length prefix
            total += PRIMITIVE_TYPES[f.type].width
        elif f.kind in (FieldKind.VARINT, FieldKind.CSTRING):
            total += 1
        elif isinstance(f.size, int):
            total += f.size
    return total
