#!/usr/bin/env python3
"""
reference_resolver.py - Resolve &name and &name::structure size operands

Local references look at the fields decoded so far in the current
candidate match. Foreign references look at the most recent record of
another structure in the same scan, held by a RecordStore.

A RecordStore belongs to exactly one scan; concurrent scans each get
their own, so they never see each other's records.
"""

import logging
from typing import Dict, Mapping, Optional

from query_ast import DecodedRecord, Reference, Value, MAX_REFERENCE_WIDTH
from stream_errors import UnresolvedReferenceError

logger = logging.getLogger(__name__)


class RecordStore:
    """Most recent DecodedRecord per structure, with a write counter."""

    def __init__(self):
        self._latest: Dict[str, DecodedRecord] = {}
        self._versions: Dict[str, int] = {}

    def put(self, record: DecodedRecord) -> int:
        self._latest[record.structure] = record
        version = self._versions.get(record.structure, 0) + 1
        self._versions[record.structure] = version
        return version

    def latest(self, structure: str) -> Optional[DecodedRecord]:
        return self._latest.get(structure)

    def version(self, structure: str) -> int:
        """Number of records written for structure in this scan (0 = none)."""
        return self._versions.get(structure, 0)

    def __contains__(self, structure: str) -> bool:
        return structure in self._latest

    def __len__(self) -> int:
        return len(self._latest)


class ReferenceResolver:
    """Turns Reference operands into integers."""

    def __init__(self, store: Optional[RecordStore] = None):
        self.store = store if store is not None else RecordStore()

    def resolve(self, ref: Reference, local: Mapping[str, Value]) -> int:
        """
        Resolve ref against local values or the record store.

        Raises UnresolvedReferenceError if the field is missing or is not
        an integer of at most 64 bits.
        """
        if ref.is_foreign:
            record = self.store.latest(ref.structure)
            if record is None:
                raise UnresolvedReferenceError(
                    f"no decoded '{ref.structure}' record for {ref}")
            value = record.fields.get(ref.field)
        else:
            value = local.get(ref.field)

        if value is None:
            raise UnresolvedReferenceError(f"{ref} has not been decoded")
        if not value.is_integer or (value.width or 0) > MAX_REFERENCE_WIDTH:
            raise UnresolvedReferenceError(
                f"{ref} is not an integer of at most 64 bits")

        logger.debug("Resolved %s -> %d", ref, value.value)
        return value.value
