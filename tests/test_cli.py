import hashlib
import io
import os
import tempfile
import zlib

from romrebuild.cli import build_options, create_parser, run_cli
from romrebuild.models import CatalogItem, OutputFormat
from romrebuild.settings import DEFAULT_SETTINGS
from romrebuild.writers import TorrentGzipDepotWriter

DATA = b'cli rom data ' * 64

DAT = """<?xml version="1.0"?>
<datafile>
  <header><name>CLI Test</name></header>
  <game name="game">
    <rom name="game.bin" size="{size}" crc="{crc}" sha1="{sha1}"/>
  </game>
</datafile>
""".format(
    size=len(DATA),
    crc=format(zlib.crc32(DATA) & 0xffffffff, '08x'),
    sha1=hashlib.sha1(DATA).hexdigest(),
)


def _setup(tmp):
    dat = os.path.join(tmp, 'test.dat')
    with open(dat, 'w', encoding='utf-8') as f:
        f.write(DAT)
    in_dir = os.path.join(tmp, 'in')
    os.makedirs(in_dir)
    with open(os.path.join(in_dir, 'dump.bin'), 'wb') as f:
        f.write(DATA)
    common = [
        '--settings', os.path.join(tmp, 'settings.json'),
        '--monitor-file', os.path.join(tmp, 'events.log'),
        '-q',
    ]
    return dat, in_dir, common


def test_run_cli_rebuilds_to_folder():
    with tempfile.TemporaryDirectory() as tmp:
        dat, in_dir, common = _setup(tmp)
        out = os.path.join(tmp, 'out')

        assert run_cli(['--dat', dat, in_dir, '--output', out] + common) == 0
        with open(os.path.join(out, 'game', 'game.bin'), 'rb') as f:
            assert f.read() == DATA


def test_run_cli_individual_uses_dat_file_name():
    with tempfile.TemporaryDirectory() as tmp:
        dat, in_dir, common = _setup(tmp)
        out = os.path.join(tmp, 'out')

        assert run_cli(['--dat', dat, in_dir, '--output', out, '--individual'] + common) == 0
        assert os.path.exists(os.path.join(out, 'test.dat', 'game', 'game.bin'))


def test_run_cli_missing_arguments():
    with tempfile.TemporaryDirectory() as tmp:
        _, in_dir, common = _setup(tmp)
        assert run_cli([in_dir] + common) == 1


def test_run_cli_bad_dat():
    with tempfile.TemporaryDirectory() as tmp:
        _, in_dir, common = _setup(tmp)
        bad = os.path.join(tmp, 'bad.dat')
        with open(bad, 'w', encoding='utf-8') as f:
            f.write('<datafile>')
        assert run_cli(['--dat', bad, in_dir, '--output', os.path.join(tmp, 'out')] + common) == 1


def test_run_cli_monitor_tail():
    with tempfile.TemporaryDirectory() as tmp:
        dat, in_dir, common = _setup(tmp)
        run_cli(['--dat', dat, in_dir, '--output', os.path.join(tmp, 'out')] + common)
        assert run_cli(['--monitor-tail'] + common) == 0


def test_romba_promotes_to_depot_format():
    parser = create_parser()
    args = parser.parse_args(['--torrent-gzip', '--romba', '--dat', 'x.dat', 'in', '-o', 'out'])
    assert build_options(args, DEFAULT_SETTINGS).output_format == OutputFormat.TORRENT_GZIP_DEPOT

    args = parser.parse_args(['--torrent-zip', '--romba', '--header', 'nes', '--quick'])
    options = build_options(args, DEFAULT_SETTINGS)
    assert options.output_format == OutputFormat.TORRENT_ZIP
    assert options.header_skipper == 'nes'
    assert options.quick_scan


def test_run_cli_depot_flag_reads_hash_nested_input():
    with tempfile.TemporaryDirectory() as tmp:
        dat, _, common = _setup(tmp)
        depot = os.path.join(tmp, 'depot')
        TorrentGzipDepotWriter(depth=2).write(io.BytesIO(DATA), depot, CatalogItem(name='x'))
        out = os.path.join(tmp, 'out')

        assert run_cli(['--dat', dat, depot, '--output', out, '--depot', '--depot-depth', '2'] + common) == 0
        with open(os.path.join(out, 'game', 'game.bin'), 'rb') as f:
            assert f.read() == DATA


def test_run_cli_unsupported_format_fails_without_output():
    with tempfile.TemporaryDirectory() as tmp:
        dat, in_dir, common = _setup(tmp)
        out = os.path.join(tmp, 'out')

        assert run_cli(['--dat', dat, in_dir, '--output', out, '--torrent-7zip'] + common) == 1
        assert not os.path.exists(out)
