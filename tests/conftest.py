"""
pytest configuration and fixtures for stream query tests.

Provides reusable fixtures for:
- Query documents (ZIP end-of-central-directory and central-directory)
- Stream builders for signature-anchored records
- Hypothesis property-based testing configuration
"""

import os
import struct
import sys
from pathlib import Path

import pytest

# Add project paths
sys.path.insert(0, str(Path(__file__).parent.parent / "tools"))

# Configure Hypothesis profiles
from hypothesis import settings, Verbosity, Phase

# Default profile: balanced speed and coverage
settings.register_profile(
    "default",
    max_examples=100,
    deadline=None,
)

# CI profile: more thorough testing
settings.register_profile(
    "ci",
    max_examples=500,
    deadline=None,
    suppress_health_check=[],
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
)

# Dev profile: fast iteration
settings.register_profile(
    "dev",
    max_examples=10,
    deadline=None,
)

# Debug profile: verbose output
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)

# Load profile from environment
settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "default"))


EOCD_DOCUMENT = """
# ZIP end of central directory
endian: little
constants:
  EOCD_SIG: u32 = 0x06054b50
structures:
  - name: EOCD
    signature: '&EOCD_SIG'
    fields:
      - {name: disk_number, type: u16}
      - {name: comment_length, type: u16}
      - {name: comment, type: buffer, size: '&comment_length'}
"""

ZIP_DOCUMENT = """
endian: little
constants:
  EOCD_SIG: u32 = 0x06054b50
  CDH_SIG: u32 = 0x02014b50
structures:
  - name: EOCD
    signature: '&EOCD_SIG'
    hint: {near: eos}
    fields:
      - {name: disk_number, type: u16}
      - {name: cd_disk, type: u16}
      - {name: disk_entries, type: u16}
      - {name: total_entries, type: u16}
      - {name: cd_size, type: u32}
      - {name: cd_offset, type: u32}
      - {name: comment_length, type: u16}
      - {name: comment, type: string, size: '&comment_length'}
  - name: CDH
    signature: '&CDH_SIG'
    fields:
      - {name: version_made_by, type: u16}
      - {name: version_needed, type: u16}
      - {name: flags, type: u16}
      - {name: compression, type: u16}
      - {name: mod_time, type: u16}
      - {name: mod_date, type: u16}
      - {name: crc32, type: u32}
      - {name: compressed_size, type: u32}
      - {name: uncompressed_size, type: u32}
      - {name: name_length, type: u16}
      - {name: extra_length, type: u16}
      - {name: comment_length, type: u16}
      - {name: disk_start, type: u16}
      - {name: internal_attrs, type: u16}
      - {name: external_attrs, type: u32}
      - {name: local_header_offset, type: u32}
      - {name: file_name, type: string, size: '&name_length'}
      - {name: extra, type: buffer, size: '&extra_length'}
      - {name: file_comment, type: buffer, size: '&comment_length'}
"""


def eocd_bytes(comment: bytes = b'', disk_entries: int = 1, total_entries: int = 1,
               cd_size: int = 0, cd_offset: int = 0) -> bytes:
    """Full ZIP EOCD record, signature included."""
    return struct.pack('<IHHHHIIH', 0x06054b50, 0, 0, disk_entries, total_entries,
                       cd_size, cd_offset, len(comment)) + comment


def cdh_bytes(name: bytes, extra: bytes = b'', comment: bytes = b'') -> bytes:
    """ZIP central directory header, signature included."""
    return struct.pack('<IHHHHHHIIIHHHHHII', 0x02014b50, 20, 10, 0, 8, 0, 0,
                       0xDEADBEEF, 100, 200, len(name), len(extra), len(comment),
                       0, 0, 0, 0) + name + extra + comment


@pytest.fixture
def eocd_document():
    return EOCD_DOCUMENT


@pytest.fixture
def zip_document():
    return ZIP_DOCUMENT


@pytest.fixture
def zip_stream():
    """Two central directory entries followed by the EOCD."""
    entries = cdh_bytes(b'a.txt') + cdh_bytes(b'dir/b.bin', extra=b'\x01\x02')
    return b'\x00' * 16 + entries + eocd_bytes(
        comment=b'hello', disk_entries=2, total_entries=2,
        cd_size=len(entries), cd_offset=16)


# Markers for test categorization
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
