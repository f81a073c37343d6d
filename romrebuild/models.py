"""
Data models for the ROM rebuilder
"""

from dataclasses import dataclass, field, replace
from enum import Enum, IntFlag
from typing import Dict, Optional


HASH_FIELDS = ('crc32', 'md5', 'sha1', 'sha256', 'sha384', 'sha512')

SHA1_LENGTH = 40


class RebuildError(Exception):
    """Base class for rebuilder errors"""


class CatalogParseError(RebuildError, ValueError):
    """Raised when a catalog (DAT) cannot be read"""


class UnsupportedFormatError(RebuildError):
    """Raised when an output format has no writer"""


class ItemType(Enum):
    ROM = 'rom'
    DISK = 'disk'
    MEDIA = 'media'
    BLANK = 'blank'


class ItemStatus(Enum):
    NONE = 'none'
    GOOD = 'good'
    BAD_DUMP = 'baddump'
    NO_DUMP = 'nodump'
    VERIFIED = 'verified'

    @classmethod
    def from_string(cls, value: Optional[str]) -> 'ItemStatus':
        value = (value or '').strip().lower()
        for status in cls:
            if status.value == value:
                return status
        return cls.NONE


class FileType(Enum):
    """What a candidate file on disk turned out to be"""
    FILE = 'file'
    CHD = 'chd'
    AARUFORMAT = 'aaruformat'
    ZIP = 'zip'
    TAR = 'tar'
    GZIP = 'gzip'
    XZ = 'xz'
    SEVENZIP = '7z'
    RAR = 'rar'


class TreatAsFile(IntFlag):
    """Special single-file formats that should be hashed as plain files"""
    NONE = 0
    CHD = 1
    AARUFORMAT = 2


class PackingFlag(Enum):
    NONE = 'none'
    ZIP = 'zip'
    UNZIP = 'unzip'
    PARTIAL = 'partial'
    FLAT = 'flat'

    @classmethod
    def from_string(cls, value: Optional[str]) -> 'PackingFlag':
        value = (value or '').strip().lower()
        if value in ('zip', 'yes'):
            return cls.ZIP
        if value in ('unzip', 'no', 'file'):
            return cls.UNZIP
        if value == 'partial':
            return cls.PARTIAL
        if value == 'flat':
            return cls.FLAT
        return cls.NONE


class OutputFormat(Enum):
    FOLDER = 'folder'
    PARENT_FOLDER = 'parentfolder'
    TORRENT_ZIP = 'torrentzip'
    TAPE_ARCHIVE = 'tar'
    TORRENT_7ZIP = 'torrent7z'
    TORRENT_GZIP = 'torrentgz'
    TORRENT_GZIP_DEPOT = 'torrentgz-depot'
    TORRENT_XZ = 'torrentxz'
    TORRENT_XZ_DEPOT = 'torrentxz-depot'
    TORRENT_LRZIP = 'torrentlrz'
    TORRENT_RAR = 'torrentrar'

    @classmethod
    def from_string(cls, value: Optional[str]) -> 'OutputFormat':
        value = (value or '').strip().lower()
        for fmt in cls:
            if fmt.value == value:
                return fmt
        raise ValueError(f"Unknown output format: {value}")


GZIP_FORMATS = (OutputFormat.TORRENT_GZIP, OutputFormat.TORRENT_GZIP_DEPOT)
XZ_FORMATS = (OutputFormat.TORRENT_XZ, OutputFormat.TORRENT_XZ_DEPOT)


@dataclass
class DepotInfo:
    """Layout of a hash-nested depot tree"""
    depth: int = 4
    active: bool = False
    extension: str = '.gz'


@dataclass
class CatalogItem:
    """One expected piece of content from a catalog (or a candidate shaped like one)"""
    name: str
    item_type: ItemType = ItemType.ROM
    machine: str = ""
    size: int = -1
    crc32: str = ""
    md5: str = ""
    sha1: str = ""
    sha256: str = ""
    sha384: str = ""
    sha512: str = ""
    status: ItemStatus = ItemStatus.NONE
    date: str = ""
    description: str = ""

    def hashes(self) -> Dict[str, str]:
        """Present hash fields only, lowercased"""
        out = {}
        for name in HASH_FIELDS:
            value = getattr(self, name)
            if value:
                out[name] = value.lower()
        return out

    def has_hashes(self) -> bool:
        return any(getattr(self, name) for name in HASH_FIELDS)

    def as_rom(self) -> 'CatalogItem':
        """Rom-equivalent of a Disk/Media item (same size and hashes)"""
        if self.item_type == ItemType.ROM:
            return self
        return replace(self, item_type=ItemType.ROM)


@dataclass
class FileEntry:
    """A file on disk, or one entry inside a container, with its hashes"""
    name: str
    size: int = -1
    crc32: str = ""
    md5: str = ""
    sha1: str = ""
    sha256: str = ""
    sha384: str = ""
    sha512: str = ""
    parent: str = ""
    file_type: FileType = FileType.FILE

    def to_item(self, item_type: Optional[ItemType] = None) -> CatalogItem:
        if item_type is None:
            if self.file_type == FileType.CHD:
                item_type = ItemType.DISK
            elif self.file_type == FileType.AARUFORMAT:
                item_type = ItemType.MEDIA
            else:
                item_type = ItemType.ROM
        return CatalogItem(
            name=self.name,
            item_type=item_type,
            size=self.size,
            crc32=self.crc32,
            md5=self.md5,
            sha1=self.sha1,
            sha256=self.sha256,
            sha384=self.sha384,
            sha512=self.sha512,
        )


@dataclass
class CatalogHeader:
    """Catalog-level directives that influence rebuilding"""
    name: str = ""
    description: str = ""
    file_name: str = ""
    version: str = ""
    force_packing: PackingFlag = PackingFlag.NONE
    header_skipper: str = ""
    input_depot: DepotInfo = field(default_factory=DepotInfo)
    output_depot: DepotInfo = field(default_factory=DepotInfo)
