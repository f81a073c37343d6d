"""
Archive readers - list and extract entries from containers found in input trees
"""

import gzip
import logging
import lzma
import os
import re
import shutil
import struct
import tarfile
import tempfile
import zipfile
import zlib
from typing import BinaryIO, List, Optional

from .hashing import Hash, hash_file, hash_stream
from .models import SHA1_LENGTH, FileEntry, FileType, TreatAsFile

logger = logging.getLogger(__name__)

# Entries larger than this spill from memory to a temp file while extracted
SPOOL_SIZE = 64 * 1024 * 1024

TORRENT_GZ_HEADER = bytes([0x1f, 0x8b, 0x08, 0x04, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x1c, 0x00])
# mtime (4..7) and OS (9) are not checked
_TORRENT_GZ_IGNORED = {4, 5, 6, 7, 9}
TORRENT_GZ_MIN_SIZE = 40

_TORRENT_NAME_RE = {
    '.gz': re.compile(r'^[0-9a-f]{%d}\.gz$' % SHA1_LENGTH),
    '.xz': re.compile(r'^[0-9a-f]{%d}\.xz$' % SHA1_LENGTH),
}

_MAGIC = (
    (0, b'PK\x03\x04', FileType.ZIP),
    (0, b'PK\x05\x06', FileType.ZIP),
    (0, b'\x1f\x8b', FileType.GZIP),
    (0, b'\xfd7zXZ\x00', FileType.XZ),
    (0, b"7z\xbc\xaf'\x1c", FileType.SEVENZIP),
    (0, b'Rar!\x1a\x07', FileType.RAR),
    (0, b'MComprHD', FileType.CHD),
    (0, b'AARUFRMT', FileType.AARUFORMAT),
    (0, b'DICMFRMT', FileType.AARUFORMAT),
    (257, b'ustar', FileType.TAR),
)

_READ_ERRORS = (OSError, EOFError, zipfile.BadZipFile, tarfile.TarError, lzma.LZMAError, zlib.error)


def identify(filepath: str) -> Optional[FileType]:
    """Detect a container or special file format from its magic bytes"""
    try:
        with open(filepath, 'rb') as f:
            head = f.read(512)
    except OSError:
        return None
    for offset, magic, kind in _MAGIC:
        if head[offset:offset + len(magic)] == magic:
            return kind
    return None


def _spool(source: BinaryIO) -> BinaryIO:
    out = tempfile.SpooledTemporaryFile(max_size=SPOOL_SIZE)
    shutil.copyfileobj(source, out)
    out.seek(0)
    return out


class BaseArchive:
    """
    A container that can list its entries and stream one of them.

    get_children() returns None when the file cannot be read as this kind
    of container, so callers can fall back to hashing it as a plain file.
    """

    file_type = FileType.FILE

    def __init__(self, filepath: str, hashes: Hash = Hash.STANDARD):
        self.filepath = filepath
        self.hashes = hashes

    def get_children(self) -> Optional[List[FileEntry]]:
        raise NotImplementedError

    def open_entry(self, name: str) -> Optional[BinaryIO]:
        raise NotImplementedError

    def is_torrent(self) -> bool:
        """True for a well-formed single-entry canonical ("torrent") file"""
        return False

    def _entry(self, stream: BinaryIO, name: str) -> FileEntry:
        entry = hash_stream(stream, name=name, hashes=self.hashes, rewind=False)
        entry.parent = self.filepath
        entry.file_type = self.file_type
        return entry


class ZipArchive(BaseArchive):
    file_type = FileType.ZIP

    def get_children(self) -> Optional[List[FileEntry]]:
        results = []
        try:
            with zipfile.ZipFile(self.filepath, 'r') as zf:
                for info in zf.infolist():
                    if info.is_dir():
                        continue
                    if self.hashes == Hash.CRC:
                        # CRC straight from the ZIP header, no decompression
                        results.append(FileEntry(
                            name=info.filename,
                            size=info.file_size,
                            crc32=format(info.CRC & 0xffffffff, '08x'),
                            parent=self.filepath,
                            file_type=self.file_type,
                        ))
                        continue
                    with zf.open(info) as src:
                        results.append(self._entry(src, info.filename))
        except _READ_ERRORS as e:
            logger.debug("Could not read zip %s: %s", self.filepath, e)
            return None
        return results

    def open_entry(self, name: str) -> Optional[BinaryIO]:
        try:
            with zipfile.ZipFile(self.filepath, 'r') as zf:
                with zf.open(name) as src:
                    return _spool(src)
        except KeyError:
            return None
        except _READ_ERRORS as e:
            logger.debug("Could not extract %s from %s: %s", name, self.filepath, e)
            return None


class TarArchive(BaseArchive):
    file_type = FileType.TAR

    def get_children(self) -> Optional[List[FileEntry]]:
        results = []
        try:
            with tarfile.open(self.filepath, 'r:*') as tf:
                for member in tf.getmembers():
                    if not member.isfile():
                        continue
                    src = tf.extractfile(member)
                    if src is None:
                        continue
                    with src:
                        results.append(self._entry(src, member.name))
        except _READ_ERRORS as e:
            logger.debug("Could not read tar %s: %s", self.filepath, e)
            return None
        return results

    def open_entry(self, name: str) -> Optional[BinaryIO]:
        try:
            with tarfile.open(self.filepath, 'r:*') as tf:
                src = tf.extractfile(name)
                if src is None:
                    return None
                with src:
                    return _spool(src)
        except KeyError:
            return None
        except _READ_ERRORS as e:
            logger.debug("Could not extract %s from %s: %s", name, self.filepath, e)
            return None


class GZipArchive(BaseArchive):
    """
    Single-member gzip file.

    Torrent-gz files carry the MD5, CRC32 and size of the payload in the
    gzip extra field and are named after the payload SHA1, so they can be
    identified without decompressing.
    """

    file_type = FileType.GZIP
    extension = '.gz'

    def _inner_name(self) -> str:
        base = os.path.basename(self.filepath)
        if base.lower().endswith(self.extension):
            base = base[:-len(self.extension)]
        return base

    def get_torrent_info(self) -> Optional[FileEntry]:
        datum = os.path.basename(self.filepath).lower()
        if not _TORRENT_NAME_RE['.gz'].match(datum):
            return None
        try:
            if os.path.getsize(self.filepath) < TORRENT_GZ_MIN_SIZE:
                return None
            with open(self.filepath, 'rb') as f:
                header = f.read(12)
                header_md5 = f.read(16)
                header_crc = f.read(4)
                header_size = f.read(8)
        except OSError:
            return None

        if len(header) != 12 or len(header_size) != 8:
            return None
        for i, expected in enumerate(TORRENT_GZ_HEADER):
            if i in _TORRENT_GZ_IGNORED:
                continue
            if header[i] != expected:
                return None

        return FileEntry(
            name=datum[:-3],
            size=struct.unpack('<Q', header_size)[0],
            crc32=header_crc.hex(),
            md5=header_md5.hex(),
            sha1=datum[:-3],
            parent=self.filepath,
            file_type=self.file_type,
        )

    def is_torrent(self) -> bool:
        return self.get_torrent_info() is not None

    def get_children(self) -> Optional[List[FileEntry]]:
        info = self.get_torrent_info()
        if info is not None and not (self.hashes & ~Hash.STANDARD):
            return [info]
        try:
            with gzip.open(self.filepath, 'rb') as src:
                return [self._entry(src, self._inner_name())]
        except _READ_ERRORS as e:
            logger.debug("Could not read gzip %s: %s", self.filepath, e)
            return None

    def open_entry(self, name: str) -> Optional[BinaryIO]:
        try:
            with gzip.open(self.filepath, 'rb') as src:
                return _spool(src)
        except _READ_ERRORS as e:
            logger.debug("Could not decompress %s: %s", self.filepath, e)
            return None


class XZArchive(BaseArchive):
    """Single-member xz file; torrent-xz files are named after the payload SHA1"""

    file_type = FileType.XZ
    extension = '.xz'

    def _inner_name(self) -> str:
        base = os.path.basename(self.filepath)
        if base.lower().endswith(self.extension):
            base = base[:-len(self.extension)]
        return base

    def _looks_like_torrent(self) -> bool:
        datum = os.path.basename(self.filepath).lower()
        return bool(_TORRENT_NAME_RE['.xz'].match(datum)) and identify(self.filepath) == FileType.XZ

    def get_torrent_info(self) -> Optional[FileEntry]:
        if not self._looks_like_torrent():
            return None
        try:
            with lzma.open(self.filepath, 'rb') as src:
                entry = hash_stream(src, name=self._inner_name().lower(), hashes=Hash.STANDARD, rewind=False)
        except _READ_ERRORS:
            return None
        if entry.sha1 != self._inner_name().lower():
            return None
        entry.parent = self.filepath
        entry.file_type = self.file_type
        return entry

    def is_torrent(self) -> bool:
        return self._looks_like_torrent()

    def get_children(self) -> Optional[List[FileEntry]]:
        try:
            with lzma.open(self.filepath, 'rb') as src:
                return [self._entry(src, self._inner_name())]
        except _READ_ERRORS as e:
            logger.debug("Could not read xz %s: %s", self.filepath, e)
            return None

    def open_entry(self, name: str) -> Optional[BinaryIO]:
        try:
            with lzma.open(self.filepath, 'rb') as src:
                return _spool(src)
        except _READ_ERRORS as e:
            logger.debug("Could not decompress %s: %s", self.filepath, e)
            return None


class LibArchive(BaseArchive):
    """
    7z and RAR containers, read through libarchive.

    libarchive only streams entries in archive order, so extracting one
    entry walks the archive up to it.
    """

    @staticmethod
    def _spool_blocks(entry) -> BinaryIO:
        out = tempfile.SpooledTemporaryFile(max_size=SPOOL_SIZE)
        for block in entry.get_blocks():
            out.write(block)
        out.seek(0)
        return out

    def get_children(self) -> Optional[List[FileEntry]]:
        import libarchive

        results = []
        try:
            with libarchive.file_reader(self.filepath) as archive:
                for entry in archive:
                    if not entry.isfile:
                        continue
                    with self._spool_blocks(entry) as data:
                        results.append(self._entry(data, entry.pathname))
        except (libarchive.ArchiveError, OSError) as e:
            logger.debug("Could not read %s archive %s: %s", self.file_type.value, self.filepath, e)
            return None
        return results

    def open_entry(self, name: str) -> Optional[BinaryIO]:
        import libarchive

        try:
            with libarchive.file_reader(self.filepath) as archive:
                for entry in archive:
                    if entry.isfile and entry.pathname == name:
                        return self._spool_blocks(entry)
        except (libarchive.ArchiveError, OSError) as e:
            logger.debug("Could not extract %s from %s: %s", name, self.filepath, e)
        return None


class SevenZipArchive(LibArchive):
    file_type = FileType.SEVENZIP


class RarArchive(LibArchive):
    file_type = FileType.RAR


ARCHIVE_TYPES = {
    FileType.ZIP: ZipArchive,
    FileType.TAR: TarArchive,
    FileType.GZIP: GZipArchive,
    FileType.XZ: XZArchive,
    FileType.SEVENZIP: SevenZipArchive,
    FileType.RAR: RarArchive,
}


def create_archive(filepath: str, hashes: Hash = Hash.STANDARD) -> Optional[BaseArchive]:
    """
    Open a file as a multi-entry container, if it is one we can read.

    Anything else, including a container too damaged to list, is hashed
    as one opaque file by the caller.
    """
    kind = identify(filepath)
    cls = ARCHIVE_TYPES.get(kind)
    if cls is None:
        return None
    return cls(filepath, hashes)


# ── Special single-file formats ─────────────────────────────────

_CHD_HASH_OFFSETS = {
    # version: (md5 offset, sha1 offset)
    1: (44, None),
    2: (44, None),
    3: (44, 80),
    4: (None, 48),
    5: (None, 84),
}


def read_chd_info(filepath: str) -> Optional[FileEntry]:
    """Read the content hashes stored in a CHD header"""
    try:
        with open(filepath, 'rb') as f:
            header = f.read(124)
    except OSError:
        return None
    if header[:8] != b'MComprHD' or len(header) < 16:
        return None

    version = struct.unpack('>I', header[12:16])[0]
    offsets = _CHD_HASH_OFFSETS.get(version)
    if offsets is None:
        return None
    md5_offset, sha1_offset = offsets

    entry = FileEntry(
        name=os.path.basename(filepath),
        parent=os.path.dirname(filepath),
        file_type=FileType.CHD,
    )
    if md5_offset is not None and len(header) >= md5_offset + 16:
        entry.md5 = header[md5_offset:md5_offset + 16].hex()
    if sha1_offset is not None and len(header) >= sha1_offset + 20:
        entry.sha1 = header[sha1_offset:sha1_offset + 20].hex()
    return entry


def get_file_info(filepath: str, hashes: Hash = Hash.STANDARD,
                  as_files: TreatAsFile = TreatAsFile.NONE) -> FileEntry:
    """
    Describe a plain file on disk.

    CHD files report the hashes from their header and AaruFormat images are
    tagged as media, unless the matching TreatAsFile flag asks for them to
    be hashed like any other file.
    """
    kind = identify(filepath)
    if kind == FileType.CHD and not as_files & TreatAsFile.CHD:
        info = read_chd_info(filepath)
        if info is not None:
            return info

    entry = hash_file(filepath, hashes)
    if kind == FileType.AARUFORMAT and not as_files & TreatAsFile.AARUFORMAT:
        entry.file_type = FileType.AARUFORMAT
    return entry
