"""CRC-32 checksums for configuration change detection.

Uses zlib.crc32 (reflected polynomial 0xEDB88320). This is an equality test
between two versions of a small text file, not an integrity guarantee.
"""

import zlib
from pathlib import Path


def checksum(data: bytes) -> int:
    """Return the unsigned 32-bit CRC of data."""
    return zlib.crc32(data) & 0xFFFFFFFF


def file_checksum(path: Path) -> int | None:
    """Return the CRC of a file's contents, or None if it can't be read.

    None never compares equal to a real checksum, so an unreadable file is
    never mistaken for an unchanged one. An empty file checksums to 0.
    """
    try:
        return checksum(path.read_bytes())
    except OSError:
        return None
