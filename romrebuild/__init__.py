"""
romrebuild - Rebuild ROM sets from loose files, archives and depots using DAT files

Supports Logiqx XML and clrmamepro DATs, TorrentZip, TorrentGZ/TorrentXZ
depots and copier header skippers.
"""

__version__ = '1.0.0'
__author__ = 'romrebuild'

from .models import (
    CatalogItem, CatalogHeader, DepotInfo, FileEntry, ItemStatus, ItemType,
    OutputFormat, PackingFlag, TreatAsFile,
    RebuildError, CatalogParseError, UnsupportedFormatError,
)
from .catalog import Catalog, CatalogStore, ItemKey, DedupeType
from .depot import get_depot_path
from .parser import CatalogParser
from .rebuilder import Rebuilder, RebuildOptions
from .skippers import SkipperMatcher
from .writers import create_writer, format_label
from .utils import safe_filename


__all__ = [
    'CatalogItem',
    'CatalogHeader',
    'DepotInfo',
    'FileEntry',
    'ItemStatus',
    'ItemType',
    'OutputFormat',
    'PackingFlag',
    'TreatAsFile',
    'RebuildError',
    'CatalogParseError',
    'UnsupportedFormatError',
    'Catalog',
    'CatalogStore',
    'ItemKey',
    'DedupeType',
    'get_depot_path',
    'CatalogParser',
    'Rebuilder',
    'RebuildOptions',
    'SkipperMatcher',
    'create_writer',
    'format_label',
    'safe_filename',
]
