"""
Command-line interface for romrebuild
"""

import argparse
import logging
import os
import sys
from typing import List

import requests

from . import __version__
from .catalog import Catalog
from .models import OutputFormat, RebuildError, TreatAsFile
from .monitor import log_event, setup_monitoring, tail_events
from .parser import DEFAULT_CACHE_DIR, DEFAULT_USER_AGENT, CatalogParser, is_remote, merge_catalogs
from .rebuilder import DEPOT_PROMOTION, Rebuilder, RebuildOptions
from .settings import DEFAULT_SETTINGS_PATH, build_rebuild_options, load_settings
from .skippers import SkipperMatcher
from .writers import format_label

# Output format flags, in the order they are checked
_FORMAT_FLAGS = (
    ('torrent_7zip', OutputFormat.TORRENT_7ZIP),
    ('tar', OutputFormat.TAPE_ARCHIVE),
    ('torrent_gzip', OutputFormat.TORRENT_GZIP),
    ('torrent_xz', OutputFormat.TORRENT_XZ),
    ('torrent_zip', OutputFormat.TORRENT_ZIP),
)


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser"""
    parser = argparse.ArgumentParser(
        prog='romrebuild',
        description='Rebuild ROM sets from loose files, archives and depots using DAT files',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  %(prog)s --dat nointro.dat ./incoming --output ./sets
  %(prog)s --dat a.dat --dat b.dat ./incoming --output ./sets --torrent-zip --individual
  %(prog)s --dat mame.dat --depot ./depot --depot-depth 4 --output ./sets
  %(prog)s --dat nes.dat ./incoming --output ./depot --torrent-gzip --romba --romba-depth 4
  %(prog)s --dat nes.dat ./incoming --output ./sets --header nes
        '''
    )

    parser.add_argument(
        'inputs',
        nargs='*',
        help='Files and folders to rebuild from (depot roots with --depot)'
    )

    cli_group = parser.add_argument_group('Rebuild')

    cli_group.add_argument(
        '--dat', '-d',
        type=str,
        action='append',
        help='Path or http(s) URL of a DAT file (can be specified multiple times)'
    )

    cli_group.add_argument(
        '--output', '-o',
        type=str,
        help='Path to output folder'
    )

    cli_group.add_argument(
        '--depot',
        action='store_true',
        help='Treat inputs as depot roots nested by SHA1'
    )

    cli_group.add_argument(
        '--depot-depth',
        type=int,
        help='Nesting depth of the input depots (default: from settings, 4)'
    )

    cli_group.add_argument(
        '--delete',
        action='store_true',
        help='Delete input files once they have been rebuilt'
    )

    cli_group.add_argument(
        '--inverse',
        action='store_true',
        help='Use the DAT as a filter: rebuild only files it does NOT list'
    )

    cli_group.add_argument(
        '--quick',
        action='store_true',
        help='Only read CRC32 from archives instead of hashing their contents'
    )

    cli_group.add_argument(
        '--chds-as-files',
        action='store_true',
        help='Hash CHD files as plain files instead of reading their header'
    )

    cli_group.add_argument(
        '--aaruformats-as-files',
        action='store_true',
        help='Hash AaruFormat images as plain files'
    )

    cli_group.add_argument(
        '--add-date',
        action='store_true',
        help='Stamp rebuilt files with the date from the DAT, where present'
    )

    cli_group.add_argument(
        '--individual',
        action='store_true',
        help='Rebuild each DAT separately into <output>/<DAT file name>'
    )

    fmt_group = parser.add_argument_group('Output format')
    formats = fmt_group.add_mutually_exclusive_group()
    formats.add_argument('--torrent-7zip', action='store_true', help='Torrent7Zip archives (not supported for writing)')
    formats.add_argument('--tar', action='store_true', help='TAR archives, one per set')
    formats.add_argument('--torrent-gzip', action='store_true', help='TorrentGZ files named by SHA1')
    formats.add_argument('--torrent-xz', action='store_true', help='TorrentXZ files named by SHA1')
    formats.add_argument('--torrent-zip', action='store_true', help='TorrentZip archives, one per set')

    fmt_group.add_argument(
        '--romba',
        action='store_true',
        help='Nest TorrentGZ/TorrentXZ output into a depot tree'
    )

    fmt_group.add_argument(
        '--romba-depth',
        type=int,
        help='Nesting depth of the output depot (default: from settings, 4)'
    )

    hdr_group = parser.add_argument_group('Headers')

    hdr_group.add_argument(
        '--header',
        type=str,
        metavar='NAME',
        help='Header skipper to use, overriding the one named in the DAT'
    )

    hdr_group.add_argument(
        '--detector-dir',
        type=str,
        help='Folder with extra XML header detectors'
    )

    misc_group = parser.add_argument_group('Misc')

    misc_group.add_argument(
        '--settings',
        type=str,
        default=DEFAULT_SETTINGS_PATH,
        help='Settings file (default: ~/.romrebuild/settings.json)'
    )

    misc_group.add_argument(
        '--quiet', '-q',
        action='store_true',
        help='Suppress progress output'
    )

    misc_group.add_argument(
        '--monitor',
        action='store_true',
        help='Echo log events to stderr while running'
    )

    misc_group.add_argument(
        '--monitor-file',
        type=str,
        help='Custom monitor log file path (default: ~/.romrebuild/events.log)'
    )

    misc_group.add_argument(
        '--monitor-tail',
        action='store_true',
        help='Print the last monitor log lines and exit'
    )

    parser.add_argument(
        '--version', '-v',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    return parser


def build_options(args, settings) -> RebuildOptions:
    """Settings file values, overridden by command-line flags"""
    options = build_rebuild_options(settings)

    for attr, fmt in _FORMAT_FLAGS:
        if getattr(args, attr, False):
            options.output_format = fmt
            break

    options.quick_scan = options.quick_scan or args.quick
    options.add_date = options.add_date or args.add_date
    options.delete = options.delete or args.delete
    options.inverse = options.inverse or args.inverse
    if args.chds_as_files:
        options.as_files |= TreatAsFile.CHD
    if args.aaruformats_as_files:
        options.as_files |= TreatAsFile.AARUFORMAT
    if args.header:
        options.header_skipper = args.header
    if args.detector_dir:
        options.detector_dir = args.detector_dir

    if args.romba:
        options.output_format = DEPOT_PROMOTION.get(options.output_format, options.output_format)
    return options


def configure_depots(catalog: Catalog, args, settings) -> None:
    """Apply depot layout flags to a catalog header"""
    depot = settings.get('depot', {})
    header = catalog.header

    header.input_depot.active = args.depot
    header.input_depot.depth = args.depot_depth if args.depot_depth is not None else int(depot.get('input_depth', 4))

    header.output_depot.active = args.romba
    header.output_depot.depth = args.romba_depth if args.romba_depth is not None else int(depot.get('output_depth', 4))


def run_cli(args=None):
    """Run the CLI"""
    parser = create_parser()
    args = parser.parse_args(args)

    settings = load_settings(args.settings)
    log_settings = settings.get('logging', {})
    log_file = args.monitor_file or log_settings.get('file')
    setup_monitoring(log_file=log_file, echo=args.monitor or bool(log_settings.get('echo')))

    if args.monitor_tail:
        for line in tail_events(log_file=log_file):
            print(line)
        return 0

    log_event('cli.start', 'CLI execution started')

    if not args.dat or not args.inputs or not args.output:
        log_event('cli.error', 'Missing required arguments: --dat, inputs and --output', logging.ERROR)
        parser.print_help()
        print("\nError: --dat, at least one input and --output are required.")
        return 1

    quiet = args.quiet

    def log(msg):
        if not quiet:
            print(msg)

    options = build_options(args, settings)
    network = settings.get('network', {})
    skippers = SkipperMatcher()
    if options.detector_dir:
        loaded = skippers.load_directory(options.detector_dir)
        log_event('headers.load', f'Loaded {loaded} detectors from {options.detector_dir}')

    session = None
    if any(is_remote(p) for p in args.dat):
        session = requests.Session()
        session.headers.update({'User-Agent': network.get('user_agent') or DEFAULT_USER_AGENT})

    # Load DAT(s)
    catalogs: List[Catalog] = []
    for dat_path in args.dat:
        log(f"Loading DAT: {dat_path}")
        log_event('dat.load.start', f'Loading DAT: {dat_path}')
        try:
            catalog = CatalogParser.parse(
                dat_path,
                session=session,
                cache_dir=network.get('cache_dir') or DEFAULT_CACHE_DIR,
                timeout=float(network.get('timeout', 30)),
            )
        except RebuildError as e:
            log_event('dat.load.error', f'Failed to load DAT {dat_path}: {e}', logging.ERROR)
            print(f"Error: Failed to load DAT file: {e}", file=sys.stderr)
            return 1
        configure_depots(catalog, args, settings)
        catalogs.append(catalog)
        log_event('dat.load.done', f'Loaded DAT {catalog.header.name} ({len(catalog.items)} items)')
        log(f"   Items in DAT: {len(catalog.items):,}")

    if args.individual:
        jobs = [(catalog, os.path.join(args.output, catalog.header.file_name)) for catalog in catalogs]
    else:
        merged = merge_catalogs(catalogs)
        configure_depots(merged, args, settings)
        jobs = [(merged, args.output)]

    label = format_label(options.output_format) or options.output_format.value
    success = True
    for catalog, out_dir in jobs:
        log(f"\nRebuilding {catalog.header.name} to {label}: {out_dir}")
        log_event('rebuild.start', f'{catalog.header.name} -> {out_dir} ({label})')
        rebuilder = Rebuilder(catalog, options, skippers=skippers)
        try:
            if catalog.header.input_depot.active:
                ok = rebuilder.rebuild_depot(args.inputs, out_dir)
            else:
                ok = rebuilder.rebuild_generic(args.inputs, out_dir)
        except RebuildError as e:
            log_event('rebuild.error', str(e), logging.ERROR)
            print(f"Error: {e}", file=sys.stderr)
            return 1
        log_event('rebuild.done', f'{catalog.header.name}: {"ok" if ok else "nothing rebuilt"}')
        success = success and ok

    log("\nDone." if success else "\nNothing was rebuilt.")
    return 0 if success else 1


def main():
    """Entry point"""
    sys.exit(run_cli())


if __name__ == '__main__':
    main()
