"""
Rebuild engine - match candidate files against a catalog and write them out

Two entry points share one per-entry procedure:

- rebuild_depot() walks the catalog by SHA1 and looks each hash up in one or
  more hash-nested depot trees.
- rebuild_generic() walks arbitrary files and folders, opening containers
  where it can and treating everything else as one opaque entry.
"""

import logging
import os
import shutil
import stat
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional, Tuple

from .archives import SPOOL_SIZE, BaseArchive, GZipArchive, XZArchive, create_archive, get_file_info
from .catalog import Catalog, ItemKey
from .depot import get_depot_path
from .hashing import Hash, hash_stream
from .models import (
    GZIP_FORMATS, SHA1_LENGTH, XZ_FORMATS, CatalogItem, ItemType, OutputFormat,
    PackingFlag, TreatAsFile, UnsupportedFormatError,
)
from .skippers import SkipperMatcher
from .utils import remove_empty_dirs
from .writers import BaseWriter, create_writer, format_label

logger = logging.getLogger(__name__)


@dataclass
class RebuildOptions:
    """Run-wide switches for one rebuild"""
    output_format: OutputFormat = OutputFormat.FOLDER
    quick_scan: bool = False
    add_date: bool = False
    delete: bool = False
    inverse: bool = False
    as_files: TreatAsFile = TreatAsFile.NONE
    header_skipper: str = ""
    detector_dir: str = ""
    workers: int = 4


class SourceKind(Enum):
    """Where a candidate entry's bytes come from"""
    FILE = 'file'          # plain file read straight from disk
    TORRENT = 'torrent'    # sole entry of a canonical .gz/.xz file on disk
    ARCHIVE = 'archive'    # one entry of a multi-entry container


@dataclass
class Candidate:
    item: CatalogItem
    path: str
    kind: SourceKind = SourceKind.FILE
    archive: Optional[BaseArchive] = None
    entry_name: str = ""

    @property
    def display_name(self) -> str:
        return os.path.basename(self.item.name or self.item.item_type.value)


# ── Canonical file passthrough ──────────────────────────────────

@dataclass(frozen=True)
class FastPath:
    """
    Byte-exact copy of a canonical single-entry file.

    Applies when the candidate is such a file read directly from disk and
    the requested output is the same canonical format.
    """
    extension: str
    formats: Tuple[OutputFormat, ...]
    nested_format: OutputFormat
    is_canonical: Callable[[str], bool]

    def applies(self, candidate: Candidate, fmt: OutputFormat) -> bool:
        return (candidate.kind == SourceKind.TORRENT
                and fmt in self.formats
                and self.is_canonical(candidate.path))

    def destination(self, candidate: Candidate, out_dir: str, fmt: OutputFormat, depth: int) -> str:
        sha1 = candidate.item.sha1 or os.path.basename(candidate.path)[:SHA1_LENGTH]
        sha1 = sha1.lower()
        if fmt == self.nested_format:
            return os.path.join(out_dir, get_depot_path(sha1, depth, self.extension))
        return os.path.join(out_dir, f"{sha1}{self.extension}")

    def copy(self, candidate: Candidate, out_dir: str, fmt: OutputFormat, depth: int) -> bool:
        """Copy the source file as-is; False means the caller should write it normally"""
        dest = self.destination(candidate, out_dir, fmt, depth)
        if os.path.exists(dest):
            return False
        try:
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            shutil.copyfile(candidate.path, dest)
        except OSError as e:
            logger.debug("Passthrough copy of %s failed: %s", candidate.path, e)
            return False
        return True


FAST_PATHS: List[FastPath] = [
    FastPath('.gz', GZIP_FORMATS, OutputFormat.TORRENT_GZIP_DEPOT,
             lambda path: GZipArchive(path).is_torrent()),
    FastPath('.xz', XZ_FORMATS, OutputFormat.TORRENT_XZ_DEPOT,
             lambda path: XZArchive(path).is_torrent()),
]


DEPOT_PROMOTION = {
    OutputFormat.TORRENT_GZIP: OutputFormat.TORRENT_GZIP_DEPOT,
    OutputFormat.TORRENT_XZ: OutputFormat.TORRENT_XZ_DEPOT,
}


def output_format_for_packing(packing: PackingFlag) -> OutputFormat:
    """Default output format implied by a catalog's packing directive"""
    return {
        PackingFlag.ZIP: OutputFormat.TORRENT_ZIP,
        PackingFlag.UNZIP: OutputFormat.FOLDER,
        PackingFlag.PARTIAL: OutputFormat.FOLDER,
        PackingFlag.FLAT: OutputFormat.PARENT_FOLDER,
    }.get(packing, OutputFormat.FOLDER)


def _walk_files(folder: str) -> Iterator[str]:
    for root, dirs, filenames in os.walk(folder):
        dirs.sort()
        for filename in sorted(filenames):
            yield os.path.join(root, filename)


class Rebuilder:
    """
    Rebuilds catalog items from candidate inputs into an output folder.

    Matching, writing and deleting happen one entry at a time on the calling
    thread; only the depot root check is fanned out to a worker pool.
    """

    def __init__(self, catalog: Catalog, options: Optional[RebuildOptions] = None,
                 skippers: Optional[SkipperMatcher] = None):
        self.catalog = catalog
        self.options = options or RebuildOptions()
        if skippers is None:
            skippers = SkipperMatcher()
            if self.options.detector_dir:
                skippers.load_directory(self.options.detector_dir)
        self.skippers = skippers
        self._writers: Dict[OutputFormat, BaseWriter] = {}
        self._attempted = 0
        self._written = 0

    # ── Run setup ────────────────────────────────────────────────

    @property
    def header_skipper(self) -> str:
        return self.options.header_skipper or self.catalog.header.header_skipper

    def _has_work(self) -> bool:
        if self.catalog.items.total_count() == 0 and not self.options.inverse:
            logger.info("No entries were found to rebuild, exiting...")
            return False
        return True

    def _resolve_format(self) -> OutputFormat:
        """Requested format, defaulted from the packing directive and nested for an output depot"""
        fmt = self.options.output_format
        packing = self.catalog.header.force_packing
        if fmt == OutputFormat.FOLDER and packing != PackingFlag.NONE:
            fmt = output_format_for_packing(packing)
        if self.catalog.header.output_depot.active:
            fmt = DEPOT_PROMOTION.get(fmt, fmt)
        self._writer(fmt)
        return fmt

    def _writer(self, fmt: OutputFormat) -> BaseWriter:
        writer = self._writers.get(fmt)
        if writer is None:
            writer = create_writer(fmt, use_dates=self.options.add_date,
                                   depth=self.catalog.header.output_depot.depth)
            self._writers[fmt] = writer
        return writer

    def _start(self, out_dir: str) -> Optional[OutputFormat]:
        if not self._has_work():
            return None
        try:
            fmt = self._resolve_format()
        except UnsupportedFormatError as e:
            logger.warning("%s, nothing will be rebuilt", e)
            return None
        os.makedirs(out_dir, exist_ok=True)
        self._attempted = 0
        self._written = 0
        logger.info("Rebuilding all files to %s", format_label(fmt) or fmt.value)
        return fmt

    def _finish(self, started: float) -> bool:
        logger.info("Rebuild finished: %d of %d writes succeeded (%.2fs)",
                    self._written, self._attempted, time.time() - started)
        return self._attempted == 0 or self._written > 0

    # ── Entry points ─────────────────────────────────────────────

    def rebuild_depot(self, inputs: List[str], out_dir: str) -> bool:
        """
        Rebuild from depot trees, looking every catalog SHA1 up by path.

        Args:
            inputs: Depot roots, searched in order (first hit wins)
            out_dir: Output root

        Returns:
            False when there was nothing to rebuild, the output format has
            no writer, or no write succeeded
        """
        started = time.time()
        fmt = self._start(out_dir)
        if fmt is None:
            return False

        with ThreadPoolExecutor(max_workers=max(1, self.options.workers),
                                thread_name_prefix="romrebuild-depot") as pool:
            is_dir = list(pool.map(os.path.isdir, inputs))
        roots = [path for path, ok in zip(inputs, is_dir) if ok]
        for root in roots:
            logger.debug("Adding depot: %s", root)
        if not roots:
            return self._finish(started)

        depot = self.catalog.header.input_depot
        archive_cls = XZArchive if depot.extension == '.xz' else GZipArchive

        for sha1 in self.catalog.items.bucket_by(ItemKey.SHA1).sorted_keys():
            if len(sha1) != SHA1_LENGTH:
                continue
            logger.info("Checking hash '%s'", sha1)

            subpath = get_depot_path(sha1, depot.depth, depot.extension)
            found = None
            for root in roots:
                path = os.path.join(root, subpath)
                if os.path.isfile(path):
                    found = path
                    break
            if found is None:
                continue

            archive = archive_cls(found)
            info = archive.get_torrent_info()
            if info is None:
                logger.debug("Skipping unreadable depot file %s", found)
                continue

            items = self.catalog.items.bucket_by(ItemKey.SHA1).items_for_key(sha1)
            if not items:
                continue

            candidate = Candidate(
                item=info.to_item(items[0].item_type),
                path=found,
                kind=SourceKind.TORRENT,
                archive=archive,
                entry_name=info.name,
            )
            used = self._rebuild_individual_file(candidate, out_dir, fmt)
            if used and self.options.delete:
                self._delete_source(found)

        return self._finish(started)

    def rebuild_generic(self, inputs: List[str], out_dir: str) -> bool:
        """
        Rebuild from arbitrary files and folders.

        Args:
            inputs: Files and folders; folders are walked recursively
            out_dir: Output root

        Returns:
            False when there was nothing to rebuild, the output format has
            no writer, or no write succeeded
        """
        started = time.time()
        fmt = self._start(out_dir)
        if fmt is None:
            return False

        for input_path in inputs:
            if os.path.isfile(input_path):
                logger.info("Checking file: %s", input_path)
                if self._rebuild_generic_helper(input_path, out_dir, fmt) and self.options.delete:
                    self._delete_source(input_path)

            elif os.path.isdir(input_path):
                logger.debug("Checking directory: %s", input_path)
                for filepath in list(_walk_files(input_path)):
                    logger.info("Checking file: %s", filepath)
                    if self._rebuild_generic_helper(filepath, out_dir, fmt) and self.options.delete:
                        self._delete_source(filepath, stop_at=input_path)

                if self.options.delete:
                    try:
                        os.rmdir(input_path)
                    except OSError as e:
                        logger.warning("Directory was not deleted, files may remain in it: %s", e)
            else:
                logger.warning("Input not found: %s", input_path)

        return self._finish(started)

    # ── Per-file handling ────────────────────────────────────────

    def _rebuild_generic_helper(self, filepath: str, out_dir: str, fmt: OutputFormat) -> bool:
        """Rebuild every entry of one file; True if any entry was written"""
        hashes = Hash.CRC if self.options.quick_scan else Hash.STANDARD
        single_torrent = GZipArchive(filepath).is_torrent() or XZArchive(filepath).is_torrent()

        archive = create_archive(filepath, hashes)
        entries = archive.get_children() if archive is not None else None

        if entries is None:
            try:
                info = get_file_info(filepath, as_files=self.options.as_files)
            except OSError as e:
                logger.warning("Could not read %s: %s", filepath, e)
                return False
            candidate = Candidate(item=info.to_item(), path=filepath)
            return self._rebuild_individual_file(candidate, out_dir, fmt)

        kind = SourceKind.TORRENT if single_torrent else SourceKind.ARCHIVE
        used = False
        for entry in entries:
            candidate = Candidate(
                item=entry.to_item(),
                path=filepath,
                kind=kind,
                archive=archive,
                entry_name=entry.name,
            )
            used = self._rebuild_individual_file(candidate, out_dir, fmt) or used
        return used

    def _rebuild_individual_file(self, candidate: Candidate, out_dir: str, fmt: OutputFormat) -> bool:
        """
        Match one candidate entry and write it to every catalog item it satisfies.

        Returns:
            True if any write succeeded, raw or headerless
        """
        if (candidate.item.item_type in (ItemType.DISK, ItemType.MEDIA)
                and fmt not in GZIP_FORMATS + XZ_FORMATS):
            fmt = OutputFormat.FOLDER
        candidate = replace(candidate, item=candidate.item.as_rom())

        stream = self._get_file_stream(candidate)
        if stream is None:
            logger.debug("No stream for '%s' in %s", candidate.entry_name or candidate.display_name,
                         candidate.path)
            return False

        rebuilt = False
        stripped = None
        try:
            stripped = self._strip_header(stream)
            headerless_dupes = []
            if stripped is not None:
                headerless_dupes = self._headerless_dupes(stripped, candidate.item)

            dupes = self._should_rebuild(candidate.item, stream)
            if self.options.inverse and headerless_dupes:
                # Known content once its header is stripped
                dupes = []
            if dupes:
                depth = self.catalog.header.output_depot.depth
                for fast_path in FAST_PATHS:
                    if fast_path.applies(candidate, fmt) and fast_path.copy(candidate, out_dir, fmt, depth):
                        logger.info("Matches found for '%s', rebuilding accordingly...",
                                    candidate.display_name)
                        return True

                logger.info("%s found for '%s', rebuilding accordingly...",
                            "No matches" if self.options.inverse else "Matches",
                            candidate.display_name)
                rebuilt = self._write_matches(stream, dupes, out_dir, fmt)

            if headerless_dupes and not self.options.inverse:
                rebuilt = self._rebuild_headerless(stream, stripped, headerless_dupes, candidate,
                                                   out_dir, fmt) or rebuilt
        finally:
            if stripped is not None:
                stripped.close()
            stream.close()

        return rebuilt

    def _get_file_stream(self, candidate: Candidate) -> Optional[BinaryIO]:
        if candidate.archive is not None:
            return candidate.archive.open_entry(candidate.entry_name)
        try:
            return open(candidate.path, 'rb')
        except OSError as e:
            logger.warning("Could not open %s: %s", candidate.path, e)
            return None

    def _should_rebuild(self, item: CatalogItem, stream: BinaryIO) -> List[CatalogItem]:
        """
        Catalog items to write this candidate to.

        In inverse mode the catalog acts as a filter: known content is
        skipped and unknown content is written under its own name.
        """
        dupes = self.catalog.items.duplicates_of(item)
        if dupes:
            return [] if self.options.inverse else dupes
        if not self.options.inverse:
            return []

        info = hash_stream(stream, name=os.path.basename(item.name))
        machine = os.path.splitext(info.name)[0]
        synthetic = info.to_item(ItemType.ROM)
        synthetic.machine = machine
        synthetic.description = machine
        return [synthetic]

    def _write_matches(self, stream: BinaryIO, dupes: List[CatalogItem], out_dir: str,
                       fmt: OutputFormat) -> bool:
        machines = None
        if fmt == OutputFormat.FOLDER and self.catalog.header.force_packing == PackingFlag.PARTIAL:
            machines = self.catalog.items.bucket_by(ItemKey.MACHINE, lower=False)

        written = False
        for dupe in dupes:
            target = fmt
            if machines is not None:
                siblings = machines.items_for_key(dupe.machine)
                target = OutputFormat.PARENT_FOLDER if len(siblings) == 1 else OutputFormat.FOLDER
            written = self._write(target, stream, out_dir, dupe.as_rom()) or written
        return written

    def _strip_header(self, stream: BinaryIO) -> Optional[BinaryIO]:
        """Headerless copy of the stream, if the configured detector recognises it"""
        if not self.header_skipper:
            return None
        rule = self.skippers.get_matching_rule(stream, self.header_skipper)
        if rule is None:
            return None

        transformed = tempfile.SpooledTemporaryFile(max_size=SPOOL_SIZE)
        if not rule.transform(stream, transformed):
            transformed.close()
            return None
        return transformed

    def _headerless_dupes(self, stripped: BinaryIO, item: CatalogItem) -> List[CatalogItem]:
        headerless = hash_stream(stripped, name=item.name).to_item(ItemType.ROM)
        return self.catalog.items.duplicates_of(headerless)

    def _rebuild_headerless(self, stream: BinaryIO, stripped: BinaryIO, dupes: List[CatalogItem],
                            candidate: Candidate, out_dir: str, fmt: OutputFormat) -> bool:
        """
        Write the catalog matches of a header-stripped candidate.

        Each match gets the stripped bytes under the catalog name, plus the
        original headered bytes as "<name>_<crc32>" next to it.
        """
        logger.info("Headerless matches found for '%s', rebuilding accordingly...",
                    candidate.display_name)
        item = candidate.item
        headered_name = f"{item.name}_{item.crc32}"
        rebuilt = False
        for dupe in dupes:
            headered = replace(item, name=headered_name, machine=dupe.machine,
                               description=dupe.description)
            either = self._write(fmt, stripped, out_dir, dupe.as_rom())
            either = self._write(fmt, stream, out_dir, headered) or either
            rebuilt = rebuilt or either
        return rebuilt

    def _write(self, fmt: OutputFormat, stream: BinaryIO, out_dir: str, item: CatalogItem) -> bool:
        self._attempted += 1
        ok = self._writer(fmt).write(stream, out_dir, item)
        if ok:
            self._written += 1
        return ok

    # ── Cleanup ──────────────────────────────────────────────────

    def _delete_source(self, path: str, stop_at: str = "") -> None:
        """Best-effort removal of a consumed input and its emptied folders"""
        try:
            os.chmod(path, stat.S_IREAD | stat.S_IWRITE)
            os.remove(path)
        except OSError as e:
            logger.warning("Could not delete %s: %s", path, e)
            return
        if not stop_at:
            return
        try:
            remove_empty_dirs(os.path.dirname(path), stop_at=stop_at)
        except OSError as e:
            logger.warning("Could not remove emptied folder for %s: %s", path, e)
