"""
Output writers - place one rebuilt entry into a folder or archive
"""

import logging
import lzma
import os
import shutil
import struct
import tarfile
import tempfile
import time
import zipfile
import zlib
from datetime import datetime
from typing import BinaryIO, Dict, Optional, Type

from .depot import get_depot_path
from .hashing import BUFFER_SIZE, Hash, hash_stream
from .archives import TORRENT_GZ_HEADER
from .models import CatalogItem, OutputFormat, UnsupportedFormatError
from .utils import safe_filename, sanitize_rel_path

logger = logging.getLogger(__name__)

TORRENTZIP_DATE = (1996, 12, 24, 23, 32, 0)

_DATE_FORMATS = (
    '%Y/%m/%d %H:%M:%S',
    '%Y-%m-%d %H:%M:%S',
    '%Y/%m/%d',
    '%Y-%m-%d',
)

_WRITE_ERRORS = (OSError, zipfile.BadZipFile, tarfile.TarError, lzma.LZMAError, zlib.error)


def parse_item_date(value: str) -> Optional[float]:
    """Turn a catalog date string into a POSIX timestamp, if it parses"""
    value = (value or '').strip()
    if not value:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return time.mktime(datetime.strptime(value, fmt).timetuple())
        except ValueError:
            continue
    return None


def format_label(fmt: OutputFormat) -> Optional[str]:
    """Short human label for an output format, used in log lines"""
    return {
        OutputFormat.FOLDER: 'directory',
        OutputFormat.PARENT_FOLDER: 'directory',
        OutputFormat.TAPE_ARCHIVE: 'TAR',
        OutputFormat.TORRENT_7ZIP: 'Torrent7Z',
        OutputFormat.TORRENT_GZIP: 'TorrentGZ',
        OutputFormat.TORRENT_GZIP_DEPOT: 'TorrentGZ',
        OutputFormat.TORRENT_LRZIP: 'TorrentLRZ',
        OutputFormat.TORRENT_RAR: 'TorrentRAR',
        OutputFormat.TORRENT_XZ: 'TorrentXZ',
        OutputFormat.TORRENT_XZ_DEPOT: 'TorrentXZ',
        OutputFormat.TORRENT_ZIP: 'TorrentZip',
    }.get(fmt)


def _machine_dir(item: CatalogItem) -> str:
    return safe_filename(item.machine) if item.machine else ''


def _atomic_target(dest: str) -> str:
    dest_dir = os.path.dirname(dest) or '.'
    os.makedirs(dest_dir, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix='.romrebuild-', suffix='.tmp', dir=dest_dir)
    os.close(fd)
    return tmp


def _discard(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


class BaseWriter:
    """
    Writes entries into one kind of output container.

    write() never raises for I/O problems; it logs them and returns False
    so the caller can carry on with the next matched item.
    """

    output_format = OutputFormat.FOLDER

    def __init__(self, use_dates: bool = False, depth: int = 4):
        self.use_dates = use_dates
        self.depth = depth

    def destination(self, out_dir: str, item: CatalogItem) -> str:
        raise NotImplementedError

    def write(self, stream: BinaryIO, out_dir: str, item: CatalogItem) -> bool:
        try:
            stream.seek(0)
            dest = self.destination(out_dir, item)
            ok = self._write(stream, dest, item)
        except _WRITE_ERRORS as e:
            logger.warning("Could not write '%s': %s", item.name, e)
            logger.debug("Write failure detail", exc_info=True)
            return False
        finally:
            stream.seek(0)
        if ok:
            logger.debug("Wrote '%s' to %s", item.name, dest)
        return ok

    def _write(self, stream: BinaryIO, dest: str, item: CatalogItem) -> bool:
        raise NotImplementedError

    def _item_timestamp(self, item: CatalogItem) -> Optional[float]:
        if not self.use_dates:
            return None
        return parse_item_date(item.date)


class FolderWriter(BaseWriter):
    """Plain files under <out>/<machine>/<name>"""

    output_format = OutputFormat.FOLDER

    def destination(self, out_dir: str, item: CatalogItem) -> str:
        rel = sanitize_rel_path(item.name)
        machine = _machine_dir(item)
        return os.path.join(out_dir, machine, rel) if machine else os.path.join(out_dir, rel)

    def _write(self, stream: BinaryIO, dest: str, item: CatalogItem) -> bool:
        # Existing files are never overwritten
        if os.path.exists(dest):
            return True
        tmp = _atomic_target(dest)
        try:
            with open(tmp, 'wb') as dst:
                shutil.copyfileobj(stream, dst, BUFFER_SIZE)
            os.replace(tmp, dest)
        except BaseException:
            _discard(tmp)
            raise
        stamp = self._item_timestamp(item)
        if stamp is not None:
            os.utime(dest, (stamp, stamp))
        return True


class ParentFolderWriter(FolderWriter):
    """Plain files directly under <out>/<name>, no machine folder"""

    output_format = OutputFormat.PARENT_FOLDER

    def destination(self, out_dir: str, item: CatalogItem) -> str:
        return os.path.join(out_dir, sanitize_rel_path(item.name))


class TorrentZipWriter(BaseWriter):
    """
    Deterministic ZIP per machine.

    Entries are sorted case-insensitively, stamped with the fixed TorrentZip
    date and deflated at level 9; the archive comment carries the CRC32 of
    the central directory.
    """

    output_format = OutputFormat.TORRENT_ZIP

    def destination(self, out_dir: str, item: CatalogItem) -> str:
        machine = _machine_dir(item) or safe_filename(os.path.splitext(os.path.basename(item.name))[0])
        return os.path.join(out_dir, f"{machine}.zip")

    def _write(self, stream: BinaryIO, dest: str, item: CatalogItem) -> bool:
        entry_name = item.name.replace('\\', '/')
        existing = []
        if os.path.exists(dest):
            with zipfile.ZipFile(dest, 'r') as old:
                existing = [info.filename for info in old.infolist() if not info.is_dir()]
            if entry_name in existing:
                return True

        names = sorted(existing + [entry_name], key=lambda n: (n.lower(), n))
        tmp = _atomic_target(dest)
        try:
            old = zipfile.ZipFile(dest, 'r') if existing else None
            try:
                with zipfile.ZipFile(tmp, 'w', compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
                    for name in names:
                        if name == entry_name:
                            stream.seek(0, os.SEEK_END)
                            size = stream.tell()
                            stream.seek(0)
                            self._add_entry(zf, name, stream, size)
                        else:
                            with old.open(name) as src:
                                self._add_entry(zf, name, src, old.getinfo(name).file_size)
            finally:
                if old is not None:
                    old.close()
            _write_torrentzip_comment(tmp)
            os.replace(tmp, dest)
        except BaseException:
            _discard(tmp)
            raise
        return True

    @staticmethod
    def _add_entry(zf: zipfile.ZipFile, name: str, src: BinaryIO, size: int) -> None:
        info = zipfile.ZipInfo(filename=name, date_time=TORRENTZIP_DATE)
        info.compress_type = zipfile.ZIP_DEFLATED
        if hasattr(zipfile.ZipInfo, 'compress_level'):
            info.compress_level = 9
        else:
            info._compresslevel = 9
        info.create_system = 0
        info.external_attr = 0
        # Sized up front so zipfile can pick zip64 headers when needed
        info.file_size = size
        with zf.open(info, 'w') as dst:
            shutil.copyfileobj(src, dst, BUFFER_SIZE)


# End of central directory record plus the longest possible comment
_EOCD_MAX_TAIL = 22 + 0xffff


def _central_directory_bounds(f: BinaryIO):
    """Offset of the EOCD record, then offset and size of the central directory"""
    f.seek(0, os.SEEK_END)
    file_size = f.tell()
    tail_start = max(0, file_size - _EOCD_MAX_TAIL)
    f.seek(tail_start)
    tail = f.read()
    found = tail.rfind(b'PK\x05\x06')
    if found < 0:
        raise zipfile.BadZipFile("End of central directory not found")
    eocd = tail_start + found
    cd_size, cd_offset = struct.unpack('<II', tail[found + 12:found + 20])
    if cd_offset == 0xffffffff or cd_size == 0xffffffff:
        locator = tail[found - 20:found] if found >= 20 else b''
        if not locator.startswith(b'PK\x06\x07'):
            raise zipfile.BadZipFile("Zip64 end locator not found")
        z64_offset, = struct.unpack('<Q', locator[8:16])
        f.seek(z64_offset)
        record = f.read(56)
        if len(record) < 56 or not record.startswith(b'PK\x06\x06'):
            raise zipfile.BadZipFile("Zip64 end record not found")
        cd_size, cd_offset = struct.unpack('<QQ', record[40:56])
    return eocd, cd_offset, cd_size


def _write_torrentzip_comment(path: str) -> None:
    with open(path, 'r+b') as f:
        eocd, cd_offset, cd_size = _central_directory_bounds(f)
        f.seek(cd_offset)
        crc = 0
        remaining = cd_size
        while remaining > 0:
            chunk = f.read(min(BUFFER_SIZE, remaining))
            if not chunk:
                raise zipfile.BadZipFile("Central directory is truncated")
            crc = zlib.crc32(chunk, crc)
            remaining -= len(chunk)
        comment = f"TORRENTZIPPED-{crc & 0xffffffff:08X}".encode('ascii')
        f.seek(eocd + 20)
        f.write(struct.pack('<H', len(comment)))
        f.write(comment)
        f.truncate()


class TapeArchiveWriter(BaseWriter):
    """One TAR per machine, members kept sorted"""

    output_format = OutputFormat.TAPE_ARCHIVE

    def destination(self, out_dir: str, item: CatalogItem) -> str:
        machine = _machine_dir(item) or safe_filename(os.path.splitext(os.path.basename(item.name))[0])
        return os.path.join(out_dir, f"{machine}.tar")

    def _write(self, stream: BinaryIO, dest: str, item: CatalogItem) -> bool:
        entry_name = item.name.replace('\\', '/')
        existing = []
        if os.path.exists(dest):
            with tarfile.open(dest, 'r') as old:
                existing = [m.name for m in old.getmembers() if m.isfile()]
            if entry_name in existing:
                return True

        stamp = self._item_timestamp(item)
        stream.seek(0, os.SEEK_END)
        size = stream.tell()
        stream.seek(0)

        names = sorted(existing + [entry_name], key=lambda n: (n.lower(), n))
        tmp = _atomic_target(dest)
        try:
            old = tarfile.open(dest, 'r') if existing else None
            try:
                with tarfile.open(tmp, 'w', format=tarfile.PAX_FORMAT) as tf:
                    for name in names:
                        if name == entry_name:
                            tf.addfile(self._tarinfo(name, size, stamp), stream)
                            continue
                        member = old.getmember(name)
                        src = old.extractfile(member)
                        with src:
                            tf.addfile(self._tarinfo(name, member.size, member.mtime), src)
            finally:
                if old is not None:
                    old.close()
            os.replace(tmp, dest)
        except BaseException:
            _discard(tmp)
            raise
        return True

    @staticmethod
    def _tarinfo(name: str, size: int, mtime: Optional[float]) -> tarfile.TarInfo:
        ti = tarfile.TarInfo(name=name)
        ti.size = size
        ti.mtime = int(mtime or 0)
        ti.uid = 0
        ti.gid = 0
        ti.uname = ""
        ti.gname = ""
        ti.mode = 0o644
        return ti


class TorrentGzipWriter(BaseWriter):
    """
    Single-entry torrent-gz named after the content SHA1.

    The depot variant nests the file under its hash-prefix directories.
    """

    output_format = OutputFormat.TORRENT_GZIP
    extension = '.gz'
    nested = False

    def destination(self, out_dir: str, item: CatalogItem) -> str:
        # Resolved in _write once the content hashes are known
        return out_dir

    def target_path(self, out_dir: str, sha1: str) -> str:
        if self.nested:
            return os.path.join(out_dir, get_depot_path(sha1, self.depth, self.extension))
        return os.path.join(out_dir, f"{sha1}{self.extension}")

    def _write(self, stream: BinaryIO, out_dir: str, item: CatalogItem) -> bool:
        info = hash_stream(stream, name=item.name, hashes=Hash.STANDARD)
        dest = self.target_path(out_dir, info.sha1)
        if os.path.exists(dest):
            return True
        tmp = _atomic_target(dest)
        try:
            with open(tmp, 'wb') as dst:
                self._encode(stream, dst, info)
            os.replace(tmp, dest)
        except BaseException:
            _discard(tmp)
            raise
        return True

    def _encode(self, stream: BinaryIO, dst: BinaryIO, info) -> None:
        dst.write(TORRENT_GZ_HEADER)
        dst.write(bytes.fromhex(info.md5))
        dst.write(bytes.fromhex(info.crc32))
        dst.write(struct.pack('<Q', info.size))

        compressor = zlib.compressobj(9, zlib.DEFLATED, -zlib.MAX_WBITS)
        while True:
            data = stream.read(BUFFER_SIZE)
            if not data:
                break
            dst.write(compressor.compress(data))
        dst.write(compressor.flush())
        dst.write(struct.pack('<II', int(info.crc32, 16), info.size & 0xffffffff))


class TorrentGzipDepotWriter(TorrentGzipWriter):
    output_format = OutputFormat.TORRENT_GZIP_DEPOT
    nested = True


class TorrentXZWriter(TorrentGzipWriter):
    """Single-entry xz named after the content SHA1"""

    output_format = OutputFormat.TORRENT_XZ
    extension = '.xz'

    FILTERS = [{'id': lzma.FILTER_LZMA2, 'preset': 9, 'dict_size': 16 * 1024 * 1024}]

    def _encode(self, stream: BinaryIO, dst: BinaryIO, info) -> None:
        with lzma.open(dst, 'wb', format=lzma.FORMAT_XZ, check=lzma.CHECK_CRC32,
                       filters=self.FILTERS) as xz:
            shutil.copyfileobj(stream, xz, BUFFER_SIZE)


class TorrentXZDepotWriter(TorrentXZWriter):
    output_format = OutputFormat.TORRENT_XZ_DEPOT
    nested = True


WRITER_MAP: Dict[OutputFormat, Type[BaseWriter]] = {
    OutputFormat.FOLDER: FolderWriter,
    OutputFormat.PARENT_FOLDER: ParentFolderWriter,
    OutputFormat.TORRENT_ZIP: TorrentZipWriter,
    OutputFormat.TAPE_ARCHIVE: TapeArchiveWriter,
    OutputFormat.TORRENT_GZIP: TorrentGzipWriter,
    OutputFormat.TORRENT_GZIP_DEPOT: TorrentGzipDepotWriter,
    OutputFormat.TORRENT_XZ: TorrentXZWriter,
    OutputFormat.TORRENT_XZ_DEPOT: TorrentXZDepotWriter,
}


def create_writer(fmt: OutputFormat, use_dates: bool = False, depth: int = 4) -> BaseWriter:
    """Build a writer for an output format, configured for dates and depot depth"""
    cls = WRITER_MAP.get(fmt)
    if cls is None:
        raise UnsupportedFormatError(f"No writer available for {format_label(fmt) or fmt.value}")
    return cls(use_dates=use_dates, depth=depth)
