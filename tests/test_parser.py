import gzip
import os
import tempfile

import pytest
import requests

from romrebuild.models import CatalogParseError, ItemStatus, ItemType, PackingFlag
from romrebuild.parser import CatalogParser, fetch_remote, is_remote, merge_catalogs

LOGIQX = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE datafile PUBLIC "-//Logiqx//DTD ROM Management Datafile//EN" "http://www.logiqx.com/dtds/datafile.dtd">
<datafile>
  <header>
    <name>Nintendo - Nintendo Entertainment System</name>
    <description>NES test set</description>
    <version>20240101</version>
    <clrmamepro forcepacking="partial" header="No-Intro_NES.xml"/>
  </header>
  <game name="Game (USA)">
    <description>Game (USA) description</description>
    <rom name="Game (USA).nes" size="40976" crc="ABCD1234" md5="-" sha1="0123456789ABCDEF0123456789ABCDEF01234567"/>
    <rom name="Missing.nes" crc="00000001" status="nodump"/>
  </game>
  <machine name="arcade">
    <disk name="arcade" sha1="89abcdef0123456789abcdef0123456789abcdef"/>
    <media name="disc" size="0x10" md5="00112233445566778899aabbccddeeff"/>
  </machine>
</datafile>
"""

CLRMAMEPRO = """clrmamepro (
\tname "Sega - Mega Drive"
\tversion "2024.01.01"
\tforcepacking "unzip"
)

game (
\tname "Sonic (World)"
\tdescription "Sonic the Hedgehog"
\trom ( name "Sonic (World).md" size 524288 crc 12345678 sha1 AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA )
)
"""


def _write(path, text):
    with open(path, 'w', encoding='utf-8') as f:
        f.write(text)
    return path


def test_parse_logiqx_header_and_items():
    with tempfile.TemporaryDirectory() as tmp:
        catalog = CatalogParser.parse(_write(os.path.join(tmp, 'nes.dat'), LOGIQX))

    header = catalog.header
    assert header.name == 'Nintendo - Nintendo Entertainment System'
    assert header.file_name == 'nes.dat'
    assert header.force_packing == PackingFlag.PARTIAL
    assert header.header_skipper == 'No-Intro_NES.xml'

    items = list(catalog.items)
    assert [i.item_type for i in items] == [ItemType.ROM, ItemType.ROM, ItemType.DISK, ItemType.MEDIA]

    game = items[0]
    assert game.machine == 'Game (USA)'
    assert game.description == 'Game (USA) description'
    assert game.size == 40976
    assert game.crc32 == 'abcd1234'
    assert game.md5 == ''
    assert game.sha1 == '0123456789abcdef0123456789abcdef01234567'

    assert items[1].size == -1
    assert items[1].status == ItemStatus.NO_DUMP
    assert items[2].machine == 'arcade'
    assert items[3].size == 16


def test_parse_clrmamepro_text():
    with tempfile.TemporaryDirectory() as tmp:
        catalog = CatalogParser.parse(_write(os.path.join(tmp, 'md.dat'), CLRMAMEPRO))

    assert catalog.header.name == 'Sega - Mega Drive'
    assert catalog.header.force_packing == PackingFlag.UNZIP
    items = list(catalog.items)
    assert len(items) == 1
    assert items[0].name == 'Sonic (World).md'
    assert items[0].machine == 'Sonic (World)'
    assert items[0].size == 524288
    assert items[0].sha1 == 'a' * 40


def test_parse_gzipped_catalog_names_header_after_file():
    content = LOGIQX.replace('<name>Nintendo - Nintendo Entertainment System</name>', '')
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, 'plain.dat.gz')
        with gzip.open(path, 'wt', encoding='utf-8') as f:
            f.write(content)
        catalog = CatalogParser.parse(path)

    assert catalog.header.name == 'plain.dat'
    assert len(catalog.items) == 4


def test_invalid_catalog_raises():
    with tempfile.TemporaryDirectory() as tmp:
        with pytest.raises(CatalogParseError):
            CatalogParser.parse(_write(os.path.join(tmp, 'bad.dat'), '<datafile><game></datafile>'))
        with pytest.raises(CatalogParseError):
            CatalogParser.parse(os.path.join(tmp, 'missing.dat'))


def test_merge_catalogs_keeps_first_header():
    with tempfile.TemporaryDirectory() as tmp:
        first = CatalogParser.parse(_write(os.path.join(tmp, 'nes.dat'), LOGIQX))
        second = CatalogParser.parse(_write(os.path.join(tmp, 'md.dat'), CLRMAMEPRO))

    merged = merge_catalogs([first, second])
    assert merged.header.name == first.header.name
    assert merged.items.total_count() == 5


class FakeResponse:
    def __init__(self, body, status=200):
        self.body = body
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def get(self, url, stream=False, timeout=None):
        self.calls.append((url, stream, timeout))
        return self.response


def test_remote_catalog_is_downloaded_then_parsed():
    url = 'https://example.org/dats/nes.dat?download=1'
    session = FakeSession(FakeResponse(LOGIQX.encode('utf-8')))
    with tempfile.TemporaryDirectory() as tmp:
        catalog = CatalogParser.parse(url, session=session, cache_dir=tmp, timeout=5)
        cached = os.listdir(tmp)

    assert is_remote(url)
    assert session.calls == [(url, True, 5)]
    assert len(cached) == 1 and cached[0].endswith('-nes.dat')
    assert catalog.header.file_name == cached[0]
    assert len(catalog.items) == 4


def test_remote_http_error_becomes_parse_error():
    session = FakeSession(FakeResponse(b'', status=404))
    with tempfile.TemporaryDirectory() as tmp:
        with pytest.raises(CatalogParseError):
            fetch_remote('http://example.org/missing.dat', cache_dir=tmp, session=session)
