#!/usr/bin/env python3
"""
stream_query.py - Run a stream query document against a byte stream

Builds the scan plan once, then matches structures in declaration order.
Later structures may size their fields from earlier structures' most
recent records (&field::structure), so structures are never scanned out
of order. Each scan gets its own record store.

Usage:
    from stream_query import StreamQuery

    query = StreamQuery.from_yaml(document_text)
    result = query.scan(data)
    for record in result.matches['EOCD']:
        print(record.offset, record.data)

    # Or stop early between structures
    for step in query.iter_scan(data):
        if step.records:
            break
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, NamedTuple, Optional, Union

from plan_builder import ScanConfig, ScanPlan, build_plan
from query_ast import DecodedRecord, Document
from query_loader import document_from_dict, load_document
from reference_resolver import RecordStore, ReferenceResolver
from signature_index import ByteBuffer
from structure_matcher import StructureMatcher

logger = logging.getLogger(__name__)


class StructureScan(NamedTuple):
    """Outcome of scanning one structure."""
    name: str
    records: List[DecodedRecord]
    discarded: List[str]


@dataclass
class ScanResult:
    """Result of scanning a stream with a whole document."""
    matches: Dict[str, List[DecodedRecord]] = field(default_factory=dict)
    discarded: Dict[str, int] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def records(self) -> List[DecodedRecord]:
        """All records, structure by structure in declaration order."""
        return [r for records in self.matches.values() for r in records]

    @property
    def total_matches(self) -> int:
        return sum(len(records) for records in self.matches.values())

    def latest(self, structure: str) -> Optional[DecodedRecord]:
        records = self.matches.get(structure) or []
        return records[-1] if records else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'matches': {name: [r.to_dict() for r in records]
                        for name, records in self.matches.items()},
            'discarded': dict(self.discarded),
            'warnings': list(self.warnings),
        }


QuerySource = Union[ScanPlan, Document, Mapping[str, Any], str]


class StreamQuery:
    """A compiled query document, reusable across streams."""

    def __init__(self, source: QuerySource, config: Optional[ScanConfig] = None,
                 stream_length: Optional[int] = None):
        if isinstance(source, ScanPlan):
            self.plan = source
        else:
            if isinstance(source, str):
                source = load_document(source)
            elif not isinstance(source, Document):
                source = document_from_dict(source)
            self.plan = build_plan(source, stream_length=stream_length, config=config)

    @classmethod
    def from_yaml(cls, text: str, **kwargs) -> 'StreamQuery':
        return cls(load_document(text), **kwargs)

    @property
    def config(self) -> ScanConfig:
        return self.plan.config

    def iter_scan(self, stream: ByteBuffer) -> Iterator[StructureScan]:
        """
        Scan structure by structure.

        Stopping the iteration between structures abandons the scan
        without side effects; nothing outlives the generator.
        """
        buf = _as_buffer(stream)
        self.plan.check_stream_length(len(buf))
        resolver = ReferenceResolver(RecordStore())

        for compiled in self.plan:
            matcher = StructureMatcher(compiled, resolver, self.config)
            records = list(matcher.match_all(buf))
            yield StructureScan(compiled.name, records, list(matcher.discarded))

    def scan(self, stream: ByteBuffer) -> ScanResult:
        """Scan stream with every structure of the document."""
        buf = _as_buffer(stream)
        self.plan.check_stream_length(len(buf))

        result = ScanResult()
        for step in self.iter_scan(buf):
            result.matches[step.name] = step.records
            result.discarded[step.name] = len(step.discarded)
            result.warnings.extend(step.discarded)

        logger.debug("Scanned %d bytes: %d record(s), %d candidate(s) discarded",
                     len(buf), result.total_matches, len(result.warnings))
        return result


def _as_buffer(stream: Any) -> ByteBuffer:
    if isinstance(stream, (bytes, bytearray)):
        return stream
    return bytes(stream)


def scan_stream(document: QuerySource, stream: ByteBuffer) -> Dict[str, List[Dict[str, Any]]]:
    """Convenience function: structure name -> list of plain record dicts."""
    result = StreamQuery(document).scan(stream)
    return {name: [r.to_dict() for r in records]
            for name, records in result.matches.items()}


if __name__ == '__main__':
    # Demo
    print("=== Stream Query Demo ===\n")

    document = """
endian: little
constants:
  EOCD_SIG: u32 = 0x06054b50
structures:
  - name: EOCD
    signature: '&EOCD_SIG'
    hint: {near: eos}
    fields:
      - {name: disk_number, type: u16}
      - {name: comment_length, type: u16}
      - {name: comment, type: buffer, size: '&comment_length'}
"""

    data = bytes.fromhex('00112233') + bytes([0x50, 0x4B, 0x05, 0x06,
                                               0x00, 0x00, 0x03, 0x00,
                                               0x41, 0x42, 0x43])

    query = StreamQuery.from_yaml(document)
    print(f"Stream: {data.hex().upper()}")
    print(f"Structures: {', '.join(query.plan.names)}\n")

    result = query.scan(data)
    for name, records in result.matches.items():
        for record in records:
            print(f"{name} @0x{record.signature_offset:x}:")
            for k, v in record.to_dict()['fields'].items():
                print(f"  {k}: {v}")
