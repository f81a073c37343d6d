import hashlib
import io
import zlib

from romrebuild.hashing import Hash, hash_stream, items_match
from romrebuild.models import CatalogItem, ItemStatus

DATA = b'hello world' * 1000


def test_hash_stream_standard_hashes():
    stream = io.BytesIO(DATA)
    entry = hash_stream(stream, name='x.bin')

    assert entry.name == 'x.bin'
    assert entry.size == len(DATA)
    assert entry.crc32 == format(zlib.crc32(DATA) & 0xffffffff, '08x')
    assert entry.md5 == hashlib.md5(DATA).hexdigest()
    assert entry.sha1 == hashlib.sha1(DATA).hexdigest()
    assert entry.sha256 == ''
    assert stream.tell() == 0


def test_hash_stream_crc_only_and_deep():
    crc_only = hash_stream(io.BytesIO(DATA), hashes=Hash.CRC)
    assert crc_only.crc32
    assert crc_only.md5 == '' and crc_only.sha1 == ''

    deep = hash_stream(io.BytesIO(DATA), hashes=Hash.ALL)
    assert deep.sha256 == hashlib.sha256(DATA).hexdigest()
    assert deep.sha512 == hashlib.sha512(DATA).hexdigest()


def test_hash_stream_without_rewind_leaves_stream_at_end():
    stream = io.BytesIO(DATA)
    hash_stream(stream, rewind=False)
    assert stream.tell() == len(DATA)


def test_crc_only_candidate_matches_fuller_catalog_entry():
    catalog = CatalogItem(name='a', size=4, crc32='deadbeef', sha1='11' * 20)
    candidate = CatalogItem(name='b', size=4, crc32='DEADBEEF')
    assert items_match(candidate, catalog)


def test_disagreeing_present_field_is_a_mismatch():
    catalog = CatalogItem(name='a', size=4, crc32='deadbeef', sha1='11' * 20)
    candidate = CatalogItem(name='b', size=4, crc32='deadbeef', sha1='22' * 20)
    assert not items_match(candidate, catalog)


def test_size_only_compared_when_both_known():
    catalog = CatalogItem(name='a', size=-1, crc32='deadbeef')
    assert items_match(CatalogItem(name='b', size=10, crc32='deadbeef'), catalog)
    sized = CatalogItem(name='a', size=4, crc32='deadbeef')
    assert not items_match(CatalogItem(name='b', size=10, crc32='deadbeef'), sized)


def test_no_shared_hash_never_matches():
    catalog = CatalogItem(name='a', size=4, sha1='11' * 20)
    candidate = CatalogItem(name='b', size=4, crc32='deadbeef')
    assert not items_match(candidate, catalog)


def test_hashless_nodump_items_match_by_name():
    a = CatalogItem(name='missing.bin', status=ItemStatus.NO_DUMP)
    b = CatalogItem(name='missing.bin', status=ItemStatus.NO_DUMP)
    c = CatalogItem(name='other.bin', status=ItemStatus.NO_DUMP)
    assert items_match(a, b)
    assert not items_match(a, c)
