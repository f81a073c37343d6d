import gzip
import hashlib
import io
import lzma
import os
import struct
import tarfile
import tempfile
import zipfile
import zlib

import libarchive

from romrebuild.archives import (
    GZipArchive, SevenZipArchive, TarArchive, XZArchive, ZipArchive, create_archive, get_file_info,
    identify,
)
from romrebuild.hashing import Hash
from romrebuild.models import CatalogItem, FileType, ItemType, TreatAsFile
from romrebuild.writers import TorrentGzipWriter, TorrentXZWriter

PAYLOAD = b'\x01\x02\x03\x04' * 512


def _write(path, data):
    with open(path, 'wb') as f:
        f.write(data)
    return path


def _zip(path, entries):
    with zipfile.ZipFile(path, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return path


def test_identify_by_magic():
    with tempfile.TemporaryDirectory() as tmp:
        assert identify(_zip(os.path.join(tmp, 'a.zip'), {'x': b'1'})) == FileType.ZIP
        assert identify(_write(os.path.join(tmp, 'a.gz'), gzip.compress(b'1'))) == FileType.GZIP
        assert identify(_write(os.path.join(tmp, 'a.xz'), lzma.compress(b'1'))) == FileType.XZ
        assert identify(_write(os.path.join(tmp, 'a.7z'), b"7z\xbc\xaf'\x1c" + b'\0' * 30)) == FileType.SEVENZIP
        assert identify(_write(os.path.join(tmp, 'a.bin'), b'plain')) is None
        assert identify(os.path.join(tmp, 'missing')) is None


def test_zip_children_standard_and_crc_only():
    with tempfile.TemporaryDirectory() as tmp:
        path = _zip(os.path.join(tmp, 'set.zip'), {'b.bin': PAYLOAD, 'a.bin': b'abc'})

        full = {e.name: e for e in ZipArchive(path).get_children()}
        assert full['b.bin'].sha1 == hashlib.sha1(PAYLOAD).hexdigest()
        assert full['b.bin'].size == len(PAYLOAD)
        assert full['b.bin'].parent == path

        quick = {e.name: e for e in ZipArchive(path, Hash.CRC).get_children()}
        assert quick['b.bin'].crc32 == format(zlib.crc32(PAYLOAD) & 0xffffffff, '08x')
        assert quick['b.bin'].sha1 == ''

        with ZipArchive(path).open_entry('b.bin') as stream:
            assert stream.read() == PAYLOAD
        assert ZipArchive(path).open_entry('nope') is None


def test_broken_zip_returns_none():
    with tempfile.TemporaryDirectory() as tmp:
        path = _write(os.path.join(tmp, 'bad.zip'), b'PK\x03\x04garbage')
        assert ZipArchive(path).get_children() is None


def test_tar_children_and_entry():
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'set.tar')
        with tarfile.open(path, 'w') as tf:
            info = tarfile.TarInfo('dir/game.bin')
            info.size = len(PAYLOAD)
            tf.addfile(info, io.BytesIO(PAYLOAD))

        archive = create_archive(path)
        assert isinstance(archive, TarArchive)
        children = archive.get_children()
        assert [c.name for c in children] == ['dir/game.bin']
        with archive.open_entry('dir/game.bin') as stream:
            assert stream.read() == PAYLOAD


def test_torrent_gzip_info_comes_from_header():
    with tempfile.TemporaryDirectory() as tmp:
        TorrentGzipWriter().write(io.BytesIO(PAYLOAD), tmp, CatalogItem(name='game.bin'))
        sha1 = hashlib.sha1(PAYLOAD).hexdigest()
        path = os.path.join(tmp, sha1 + '.gz')

        archive = GZipArchive(path)
        info = archive.get_torrent_info()
        assert archive.is_torrent()
        assert info.sha1 == sha1
        assert info.md5 == hashlib.md5(PAYLOAD).hexdigest()
        assert info.crc32 == format(zlib.crc32(PAYLOAD) & 0xffffffff, '08x')
        assert info.size == len(PAYLOAD)
        with archive.open_entry(info.name) as stream:
            assert stream.read() == PAYLOAD


def test_plain_gzip_is_not_torrent():
    with tempfile.TemporaryDirectory() as tmp:
        sha1 = hashlib.sha1(PAYLOAD).hexdigest()
        path = os.path.join(tmp, sha1 + '.gz')
        with gzip.open(path, 'wb') as f:
            f.write(PAYLOAD)

        archive = GZipArchive(path)
        assert not archive.is_torrent()
        children = archive.get_children()
        assert children[0].sha1 == sha1


def test_torrent_header_ignores_mtime_bytes():
    with tempfile.TemporaryDirectory() as tmp:
        TorrentGzipWriter().write(io.BytesIO(PAYLOAD), tmp, CatalogItem(name='game.bin'))
        path = os.path.join(tmp, hashlib.sha1(PAYLOAD).hexdigest() + '.gz')
        with open(path, 'r+b') as f:
            f.seek(4)
            f.write(struct.pack('<I', 0x12345678))
        assert GZipArchive(path).is_torrent()


def test_torrent_xz_checks_name_against_content():
    with tempfile.TemporaryDirectory() as tmp:
        TorrentXZWriter().write(io.BytesIO(PAYLOAD), tmp, CatalogItem(name='game.bin'))
        sha1 = hashlib.sha1(PAYLOAD).hexdigest()
        path = os.path.join(tmp, sha1 + '.xz')

        archive = XZArchive(path)
        assert archive.is_torrent()
        assert archive.get_torrent_info().sha1 == sha1

        wrong = os.path.join(tmp, 'ff' * 20 + '.xz')
        os.rename(path, wrong)
        assert XZArchive(wrong).get_torrent_info() is None


def test_damaged_seven_zip_is_hashed_as_plain_file():
    with tempfile.TemporaryDirectory() as tmp:
        path = _write(os.path.join(tmp, 'a.7z'), b"7z\xbc\xaf'\x1c" + b'\0' * 30)
        archive = create_archive(path)
        assert isinstance(archive, SevenZipArchive)
        assert archive.get_children() is None
        entry = get_file_info(path)
        assert entry.file_type == FileType.FILE
        assert entry.size == 36


def _seven_zip(path, entries):
    with libarchive.file_writer(path, '7zip') as archive:
        for name, data in entries.items():
            archive.add_file_from_memory(name, len(data), data)
    return path


def test_seven_zip_children_and_entry():
    with tempfile.TemporaryDirectory() as tmp:
        path = _seven_zip(os.path.join(tmp, 'set.7z'), {'game.bin': PAYLOAD, 'readme.txt': b'hello'})

        archive = create_archive(path)
        assert isinstance(archive, SevenZipArchive)
        children = {e.name: e for e in archive.get_children()}
        assert sorted(children) == ['game.bin', 'readme.txt']
        assert children['game.bin'].sha1 == hashlib.sha1(PAYLOAD).hexdigest()
        assert children['game.bin'].file_type == FileType.SEVENZIP

        with archive.open_entry('game.bin') as stream:
            assert stream.read() == PAYLOAD
        assert archive.open_entry('missing.bin') is None


def _chd_v5(sha1_bytes):
    header = bytearray(124)
    header[0:8] = b'MComprHD'
    header[8:12] = struct.pack('>I', 124)
    header[12:16] = struct.pack('>I', 5)
    header[84:104] = sha1_bytes
    return bytes(header)


def test_chd_reports_header_sha1_as_disk():
    with tempfile.TemporaryDirectory() as tmp:
        sha1 = hashlib.sha1(b'disk content').digest()
        path = _write(os.path.join(tmp, 'game.chd'), _chd_v5(sha1) + b'\0' * 64)

        entry = get_file_info(path)
        assert entry.file_type == FileType.CHD
        assert entry.sha1 == sha1.hex()
        assert entry.to_item().item_type == ItemType.DISK

        as_file = get_file_info(path, as_files=TreatAsFile.CHD)
        assert as_file.file_type == FileType.FILE
        with open(path, 'rb') as f:
            assert as_file.sha1 == hashlib.sha1(f.read()).hexdigest()


def test_aaruformat_is_media_unless_overridden():
    with tempfile.TemporaryDirectory() as tmp:
        path = _write(os.path.join(tmp, 'disc.aif'), b'AARUFRMT' + PAYLOAD)
        assert get_file_info(path).to_item().item_type == ItemType.MEDIA
        overridden = get_file_info(path, as_files=TreatAsFile.AARUFORMAT)
        assert overridden.to_item().item_type == ItemType.ROM
