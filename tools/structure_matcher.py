#!/usr/bin/env python3
"""
structure_matcher.py - Find and decode every instance of one structure

For each signature occurrence (starting at the hint offset):
    cursor = occurrence + len(signature)
    decode fields in declared order
    success -> emit DecodedRecord, store it, resume after the signature
    failure -> discard candidate, resume at occurrence + 1

A signature that shows up inside unrelated data therefore never stops
the scan.

Usage:
    matcher = StructureMatcher(compiled, ReferenceResolver(store))
    for record in matcher.match_all(data):
        print(record.offset, record.data)
"""

import logging
from typing import Dict, Iterator, List, Optional

from field_decoder import FieldDecoder
from hint_resolver import resolve_hint
from plan_builder import CompiledStructure, ScanConfig
from query_ast import DecodedRecord, Value
from reference_resolver import ReferenceResolver
from signature_index import ByteBuffer, SignatureIndex
from stream_errors import DecodeError

logger = logging.getLogger(__name__)


class StructureMatcher:
    """
    Signature-anchored matcher for a compiled structure.

    Discarded candidates are kept in `discarded` as readable diagnostics;
    the list is reset at the start of each match_all() pass.
    """

    def __init__(self, structure: CompiledStructure,
                 resolver: Optional[ReferenceResolver] = None,
                 config: Optional[ScanConfig] = None):
        self.structure = structure
        self.resolver = resolver or ReferenceResolver()
        self.config = config or ScanConfig()
        self.decoder = FieldDecoder(max_size=self.config.max_size)
        self.discarded: List[str] = []

    def start_offset(self, stream_len: int) -> int:
        window = self.structure.near_window(self.config.near_margin)
        return resolve_hint(self.structure.hint, stream_len, window)

    def match_all(self, stream: ByteBuffer) -> Iterator[DecodedRecord]:
        """Lazily yield every decodable instance, in stream order."""
        self.discarded = []
        index = SignatureIndex(stream, self.structure.signature,
                               limit=self.config.search_limit)
        pos = index.find_next(self.start_offset(len(stream)))
        found = 0

        while pos is not None:
            if self.config.max_matches is not None and found >= self.config.max_matches:
                break
            try:
                record = self.decode_at(stream, pos)
            except DecodeError as e:
                self.discarded.append(
                    f"{self.structure.name} @0x{pos:x}: {e}")
                logger.debug("Discarded %s candidate at 0x%x: %s",
                             self.structure.name, pos, e)
                pos = index.find_next(pos + 1)
                continue

            found += 1
            self.resolver.store.put(record)
            yield record
            pos = index.find_next(record.offset)

        logger.debug("%s: %d match(es), %d discarded",
                     self.structure.name, found, len(self.discarded))

    def decode_at(self, stream: ByteBuffer, signature_offset: int) -> DecodedRecord:
        """
        Decode the structure whose signature starts at signature_offset.

        Raises:
            DecodeError if any field fails.
        """
        cursor = signature_offset + len(self.structure.signature)
        start = cursor
        values: Dict[str, Value] = {}

        def resolve(ref):
            return self.resolver.resolve(ref, values)

        for field in self.structure.fields:
            value, consumed = self.decoder.decode(
                field, stream, cursor, self.structure.endian, resolve)
            values[field.name] = value
            cursor += consumed

        return DecodedRecord(
            structure=self.structure.name,
            offset=start,
            signature_offset=signature_offset,
            end_offset=cursor,
            fields=values,
        )


def match_all(structure: CompiledStructure, stream: ByteBuffer,
              resolver: Optional[ReferenceResolver] = None,
              config: Optional[ScanConfig] = None) -> Iterator[DecodedRecord]:
    """Convenience wrapper around StructureMatcher.match_all."""
    return StructureMatcher(structure, resolver, config).match_all(stream)
