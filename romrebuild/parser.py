"""
Catalog (DAT) parser for Logiqx XML and clrmamepro text formats
"""

import gzip
import hashlib
import logging
import os
import re
import xml.etree.ElementTree as ET
import zipfile
from typing import Dict, Iterator, List, Optional, Set, Tuple

import requests

from .catalog import Catalog, CatalogStore
from .models import (
    CatalogHeader, CatalogItem, CatalogParseError, ItemStatus,
    ItemType, PackingFlag,
)

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = os.path.expanduser("~/.romrebuild/cache")
DEFAULT_USER_AGENT = "romrebuild/1.0 (catalog fetch)"

# Catalog attribute name -> CatalogItem field
_HASH_ATTRS = {
    'crc': 'crc32',
    'md5': 'md5',
    'sha1': 'sha1',
    'sha256': 'sha256',
    'sha384': 'sha384',
    'sha512': 'sha512',
}

_ITEM_TAGS = {
    'rom': ItemType.ROM,
    'disk': ItemType.DISK,
    'media': ItemType.MEDIA,
}


def is_remote(path: str) -> bool:
    return path.lower().startswith(('http://', 'https://'))


def fetch_remote(url: str, cache_dir: str = DEFAULT_CACHE_DIR,
                 session: Optional[requests.Session] = None,
                 timeout: float = 30, user_agent: str = DEFAULT_USER_AGENT) -> str:
    """
    Download a remote catalog into the cache folder.

    Args:
        url: http(s) URL of the catalog
        cache_dir: Folder the download is stored in
        session: Optional requests session (a new one is created otherwise)
        timeout: Request timeout in seconds
        user_agent: User-Agent header for new sessions

    Returns:
        Local path of the downloaded file
    """
    if session is None:
        session = requests.Session()
        session.headers.update({'User-Agent': user_agent})

    os.makedirs(cache_dir, exist_ok=True)
    filename = url.rstrip('/').split('/')[-1].split('?')[0] or 'catalog.dat'
    # Prefix keeps catalogs with the same file name from different hosts apart
    prefix = hashlib.sha1(url.encode('utf-8')).hexdigest()[:8]
    dest_path = os.path.join(cache_dir, f"{prefix}-{filename}")

    try:
        resp = session.get(url, stream=True, timeout=timeout)
        resp.raise_for_status()
        with open(dest_path, 'wb') as f:
            for chunk in resp.iter_content(chunk_size=256 * 1024):
                if chunk:
                    f.write(chunk)
    except (requests.RequestException, OSError) as e:
        raise CatalogParseError(f"Could not download catalog {url}: {e}")

    logger.info("Downloaded catalog %s to %s", url, dest_path)
    return dest_path


class CatalogParser:
    """Parser for Logiqx XML and clrmamepro catalogs"""

    @staticmethod
    def parse(filepath: str, session: Optional[requests.Session] = None,
              cache_dir: str = DEFAULT_CACHE_DIR, timeout: float = 30) -> Catalog:
        """
        Parse a catalog into its header directives and items.

        Supports:
        - Plain XML/DAT files
        - Gzipped DAT files (.gz)
        - Zipped DAT files (.zip)
        - http(s) URLs, downloaded into cache_dir first
        """
        if is_remote(filepath):
            filepath = fetch_remote(filepath, cache_dir=cache_dir, session=session, timeout=timeout)

        content = CatalogParser._read_file(filepath)
        content = CatalogParser._clean_content(content)
        if CatalogParser._looks_like_clrmamepro(content):
            header, items = CatalogParser._parse_clrmamepro(content)
        else:
            root = CatalogParser._parse_xml(content)
            header = CatalogParser._extract_header(root)
            items = CatalogParser._extract_items(root)

        header.file_name = os.path.basename(filepath)
        if not header.name:
            header.name = os.path.splitext(header.file_name)[0]
        logger.debug("Parsed %d items from %s", len(items), filepath)
        return Catalog(header=header, items=CatalogStore(items))

    @staticmethod
    def _looks_like_clrmamepro(content: str) -> bool:
        """Best-effort detection for clrmamepro DAT text files."""
        sample = (content or "").lstrip()
        if not sample:
            return False
        if sample.startswith("<"):
            return False
        return sample.lower().startswith("clrmamepro") or "\ngame (" in sample.lower()

    # ── clrmamepro tokenizer ─────────────────────────────────────

    @staticmethod
    def _skip_ws(text: str, idx: int) -> int:
        size = len(text)
        i = idx
        while i < size and text[i].isspace():
            i += 1
        return i

    @staticmethod
    def _read_word(text: str, idx: int) -> Tuple[str, int]:
        size = len(text)
        i = idx
        while i < size and not text[i].isspace() and text[i] not in "()":
            i += 1
        return text[idx:i], i

    @staticmethod
    def _read_quoted(text: str, idx: int) -> Tuple[str, int]:
        if idx >= len(text) or text[idx] != '"':
            return "", idx
        i = idx + 1
        buf: List[str] = []
        size = len(text)
        while i < size:
            ch = text[i]
            if ch == "\\" and i + 1 < size:
                buf.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                return "".join(buf), i + 1
            buf.append(ch)
            i += 1
        return "".join(buf), i

    @staticmethod
    def _extract_parenthesized(text: str, open_idx: int) -> Tuple[str, int]:
        """Extract content inside (...) starting at open_idx."""
        if open_idx >= len(text) or text[open_idx] != "(":
            raise CatalogParseError("Expected '(' while parsing DAT")
        depth = 1
        i = open_idx + 1
        size = len(text)
        in_quote = False
        while i < size:
            ch = text[i]
            if ch == "\\" and in_quote:
                i += 2
                continue
            if ch == '"':
                in_quote = not in_quote
                i += 1
                continue
            if not in_quote:
                if ch == "(":
                    depth += 1
                elif ch == ")":
                    depth -= 1
                    if depth == 0:
                        return text[open_idx + 1:i], i + 1
            i += 1
        raise CatalogParseError("Unbalanced DAT parentheses")

    @staticmethod
    def _iter_named_blocks(text: str, names: Set[str]) -> Iterator[Tuple[str, str]]:
        """Yield (name, block_text) for entries like `name ( ... )`."""
        wanted = {str(n).lower() for n in names}
        i = 0
        size = len(text)
        while i < size:
            i = CatalogParser._skip_ws(text, i)
            if i >= size:
                break
            ch = text[i]
            if ch == '"':
                _, i = CatalogParser._read_quoted(text, i)
                continue
            if ch in "()":
                i += 1
                continue
            word, nxt = CatalogParser._read_word(text, i)
            if not word:
                i += 1
                continue
            j = CatalogParser._skip_ws(text, nxt)
            if j < size and text[j] == "(":
                block_text, after = CatalogParser._extract_parenthesized(text, j)
                key = word.lower()
                if key in wanted:
                    yield key, block_text
                i = after
                continue
            i = nxt

    @staticmethod
    def _parse_block_pairs(block_text: str) -> Dict[str, str]:
        """
        Parse top-level key/value pairs from a block, skipping nested (...) entries.
        Example: name "SNES" version "2026.01.17"
        """
        pairs: Dict[str, str] = {}
        i = 0
        size = len(block_text)
        while i < size:
            i = CatalogParser._skip_ws(block_text, i)
            if i >= size:
                break
            ch = block_text[i]
            if ch == '"':
                _, i = CatalogParser._read_quoted(block_text, i)
                continue
            if ch in "()":
                i += 1
                continue

            key, nxt = CatalogParser._read_word(block_text, i)
            if not key:
                i += 1
                continue

            i = CatalogParser._skip_ws(block_text, nxt)
            if i >= size:
                break
            if block_text[i] == "(":
                # Nested child block (e.g. rom (...)) -> skip entirely.
                _, i = CatalogParser._extract_parenthesized(block_text, i)
                continue

            if block_text[i] == '"':
                value, i = CatalogParser._read_quoted(block_text, i)
            else:
                value, i = CatalogParser._read_word(block_text, i)
            pairs[key.lower()] = value
        return pairs

    @staticmethod
    def _parse_clrmamepro(content: str) -> Tuple[CatalogHeader, List[CatalogItem]]:
        """Parse plain text clrmamepro DAT format."""
        header = CatalogHeader()
        items: List[CatalogItem] = []
        found_any = False

        for entry_name, entry_block in CatalogParser._iter_named_blocks(
            content, {"clrmamepro", "game", "machine", "resource"}
        ):
            found_any = True
            if entry_name == "clrmamepro":
                pairs = CatalogParser._parse_block_pairs(entry_block)
                header.name = pairs.get("name", "")
                header.description = pairs.get("description", "")
                header.version = pairs.get("version", "")
                header.force_packing = PackingFlag.from_string(pairs.get("forcepacking"))
                header.header_skipper = pairs.get("header", "")
                continue

            game_pairs = CatalogParser._parse_block_pairs(entry_block)
            game_name = str(game_pairs.get("name", "") or "").strip()
            description = str(game_pairs.get("description", "") or "").strip() or game_name

            for tag, block in CatalogParser._iter_named_blocks(entry_block, set(_ITEM_TAGS)):
                attrs = CatalogParser._parse_block_pairs(block)
                items.append(CatalogParser._build_item(_ITEM_TAGS[tag], attrs, game_name, description))

        if not found_any:
            raise CatalogParseError("Invalid DAT structure: expected XML or clrmamepro blocks")
        return header, items

    # ── Shared ───────────────────────────────────────────────────

    @staticmethod
    def _build_item(item_type: ItemType, attrs: Dict[str, str], machine: str,
                    description: str) -> CatalogItem:
        size_raw = str(attrs.get("size", "") or "").strip()
        try:
            size = int(size_raw, 16) if size_raw.lower().startswith("0x") else int(size_raw)
        except ValueError:
            size = -1

        item = CatalogItem(
            name=str(attrs.get("name", "") or "").strip() or machine,
            item_type=item_type,
            machine=machine,
            size=size,
            status=ItemStatus.from_string(attrs.get("status")),
            date=str(attrs.get("date", "") or "").strip(),
            description=description,
        )
        for attr, field_name in _HASH_ATTRS.items():
            value = str(attrs.get(attr, "") or "").strip().lower()
            if value and value != "-":
                setattr(item, field_name, value)
        return item

    @staticmethod
    def _read_file(filepath: str) -> str:
        """Read file content, handling compression"""
        try:
            if filepath.endswith('.gz'):
                with gzip.open(filepath, 'rt', encoding='utf-8', errors='ignore') as f:
                    return f.read()

            elif filepath.endswith('.zip') or zipfile.is_zipfile(filepath):
                with zipfile.ZipFile(filepath, 'r') as zf:
                    # Find XML/DAT file inside
                    xml_files = [n for n in zf.namelist()
                                 if n.endswith('.dat') or n.endswith('.xml')]
                    if not xml_files:
                        raise CatalogParseError("No DAT/XML file found in ZIP archive")
                    with zf.open(xml_files[0]) as f:
                        return f.read().decode('utf-8', errors='ignore')

            else:
                with open(filepath, 'r', encoding='utf-8', errors='ignore') as f:
                    return f.read()
        except (OSError, EOFError, zipfile.BadZipFile) as e:
            raise CatalogParseError(f"Could not read catalog {filepath}: {e}")

    @staticmethod
    def _clean_content(content: str) -> str:
        """Clean XML content of problematic characters"""
        # Remove BOM
        content = content.lstrip('\ufeff')
        # Remove control characters
        content = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f]', '', content)
        return content

    @staticmethod
    def _parse_xml(content: str) -> ET.Element:
        """Parse XML content"""
        try:
            return ET.fromstring(content)
        except ET.ParseError as e:
            raise CatalogParseError(f"Invalid XML in DAT file: {e}")

    @staticmethod
    def _extract_header(root: ET.Element) -> CatalogHeader:
        """Extract header information and rebuild directives"""
        header = CatalogHeader()
        header_elem = root.find('header')
        if header_elem is None:
            return header

        header.name = (header_elem.findtext('name') or "").strip()
        header.description = (header_elem.findtext('description') or "").strip()
        header.version = (header_elem.findtext('version') or "").strip()

        # Directives live on <clrmamepro> or <romvault>
        for tag in ('clrmamepro', 'romvault'):
            elem = header_elem.find(tag)
            if elem is None:
                continue
            packing = PackingFlag.from_string(elem.get('forcepacking'))
            if packing != PackingFlag.NONE:
                header.force_packing = packing
            if elem.get('header'):
                header.header_skipper = elem.get('header', '')
        return header

    @staticmethod
    def _extract_items(root: ET.Element) -> List[CatalogItem]:
        """Extract rom, disk and media entries from every game/machine"""
        items = []

        # Handle different DAT formats (game/machine elements)
        for game in root.findall('.//game') + root.findall('.//machine'):
            game_name = game.get('name', '')

            desc_elem = game.find('description')
            description = desc_elem.text if desc_elem is not None and desc_elem.text else game_name

            for child in game:
                item_type = _ITEM_TAGS.get(child.tag)
                if item_type is None:
                    continue
                attrs = {k.lower(): v for k, v in child.attrib.items()}
                items.append(CatalogParser._build_item(item_type, attrs, game_name, description))

        return items


def merge_catalogs(catalogs: List[Catalog]) -> Catalog:
    """Fold catalogs into one store; the first header carries the directives"""
    merged = Catalog()
    for catalog in catalogs:
        merged.merge(catalog)
    return merged
