"""
Checksum helpers shared by the archive readers, writers and the rebuilder
"""

import binascii
import hashlib
import os
from enum import IntFlag
from typing import BinaryIO, Dict

from .models import CatalogItem, FileEntry, ItemStatus


BUFFER_SIZE = 65536  # 64KB chunks for efficient hashing


class Hash(IntFlag):
    CRC = 1 << 0
    MD5 = 1 << 1
    SHA1 = 1 << 2
    SHA256 = 1 << 3
    SHA384 = 1 << 4
    SHA512 = 1 << 5

    STANDARD = CRC | MD5 | SHA1
    DEEP = SHA256 | SHA384 | SHA512
    ALL = STANDARD | DEEP


_DIGESTS = (
    (Hash.MD5, 'md5', hashlib.md5),
    (Hash.SHA1, 'sha1', hashlib.sha1),
    (Hash.SHA256, 'sha256', hashlib.sha256),
    (Hash.SHA384, 'sha384', hashlib.sha384),
    (Hash.SHA512, 'sha512', hashlib.sha512),
)


def hash_stream(stream: BinaryIO, name: str = "", hashes: Hash = Hash.STANDARD,
                rewind: bool = True) -> FileEntry:
    """
    Read a stream to the end and return its size and checksums.

    Args:
        stream: Binary stream positioned at the start of the content
        name: Name recorded on the returned entry
        hashes: Which checksums to compute (CRC32 is cheap, the rest are optional)
        rewind: Seek back to the start afterwards so the stream can be reused

    Returns:
        FileEntry with the requested hash fields filled in
    """
    crc = 0
    size = 0
    running = {attr: factory() for flag, attr, factory in _DIGESTS if hashes & flag}

    while True:
        data = stream.read(BUFFER_SIZE)
        if not data:
            break
        size += len(data)
        if hashes & Hash.CRC:
            crc = binascii.crc32(data, crc)
        for digest in running.values():
            digest.update(data)

    if rewind and stream.seekable():
        stream.seek(0)

    entry = FileEntry(name=name, size=size)
    if hashes & Hash.CRC:
        entry.crc32 = format(crc & 0xffffffff, '08x')
    for attr, digest in running.items():
        setattr(entry, attr, digest.hexdigest())
    return entry


def hash_file(filepath: str, hashes: Hash = Hash.STANDARD) -> FileEntry:
    """Hash a whole file on disk as one opaque entry"""
    with open(filepath, 'rb') as f:
        entry = hash_stream(f, name=os.path.basename(filepath), hashes=hashes, rewind=False)
    entry.parent = os.path.dirname(filepath)
    return entry


def common_hashes(a: CatalogItem, b: CatalogItem) -> Dict[str, tuple]:
    """Hash fields present on both items, as (a, b) value pairs"""
    left = a.hashes()
    right = b.hashes()
    return {k: (left[k], right[k]) for k in left if k in right}


def items_match(candidate: CatalogItem, other: CatalogItem) -> bool:
    """
    Weak equality used for duplicate lookup.

    A field missing on either side never causes a mismatch, so a CRC-only
    candidate matches a catalog entry that also lists SHA1 as long as the CRC
    agrees. At least one hash must be present on both sides, and sizes must
    agree when both are known.
    """
    if (candidate.status == ItemStatus.NO_DUMP and other.status == ItemStatus.NO_DUMP
            and not candidate.has_hashes() and not other.has_hashes()):
        return candidate.name == other.name

    if candidate.size >= 0 and other.size >= 0 and candidate.size != other.size:
        return False

    shared = common_hashes(candidate, other)
    if not shared:
        return False
    return all(left == right for left, right in shared.values())
