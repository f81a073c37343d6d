"""
Catalog item store - holds catalog entries and answers duplicate lookups
"""

from dataclasses import dataclass, field
from enum import Enum
from collections.abc import Mapping
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .hashing import items_match
from .models import HASH_FIELDS, CatalogHeader, CatalogItem


class ItemKey(Enum):
    CRC32 = 'crc32'
    MD5 = 'md5'
    SHA1 = 'sha1'
    SHA256 = 'sha256'
    SHA384 = 'sha384'
    SHA512 = 'sha512'
    MACHINE = 'machine'


class DedupeType(Enum):
    NONE = 'none'
    FULL = 'full'


class BucketIndex(Mapping):
    """
    Read-only view of catalog items grouped under one key.

    Built by CatalogStore.bucket_by(); never mutated afterwards, so one
    pipeline stage re-bucketing the store cannot disturb another stage
    still holding an older index.
    """

    def __init__(self, key: ItemKey, buckets: Dict[str, List[CatalogItem]]):
        self.key = key
        self._buckets = buckets
        self._sorted = sorted(buckets)

    def __getitem__(self, key: str) -> List[CatalogItem]:
        return self._buckets[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._sorted)

    def __len__(self) -> int:
        return len(self._buckets)

    def items_for_key(self, key: str) -> List[CatalogItem]:
        return list(self._buckets.get(key, []))

    def sorted_keys(self) -> List[str]:
        return list(self._sorted)

    def total_count(self) -> int:
        return sum(len(items) for items in self._buckets.values())


class CatalogStore:
    """
    Catalog entries plus hash indexes for fast duplicate lookup.

    Uses one index per hash field, so a candidate carrying any subset of
    hashes finds every entry it could weakly match.
    """

    def __init__(self, items: Optional[Iterable[CatalogItem]] = None):
        self._items: List[CatalogItem] = []
        self._indexes: Dict[str, Dict[str, List[int]]] = {name: {} for name in HASH_FIELDS}
        self._bucket_cache: Dict[Tuple[ItemKey, DedupeType, bool], BucketIndex] = {}
        for item in items or []:
            self.add(item)

    def add(self, item: CatalogItem) -> None:
        """Add an item; any cached bucket index is dropped"""
        position = len(self._items)
        self._items.append(item)
        for name, value in item.hashes().items():
            self._indexes[name].setdefault(value, []).append(position)
        self._bucket_cache.clear()

    def extend(self, items: Iterable[CatalogItem]) -> None:
        for item in items:
            self.add(item)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[CatalogItem]:
        return iter(self._items)

    def total_count(self) -> int:
        return len(self._items)

    def bucket_by(self, key: ItemKey, dedupe: DedupeType = DedupeType.NONE,
                  lower: bool = True) -> BucketIndex:
        """
        Group items by a hash field or by machine name.

        Args:
            key: Field to group on
            dedupe: FULL collapses weakly equal items within a bucket
            lower: Lowercase machine names when grouping by machine

        Returns:
            A fresh BucketIndex; the store itself is left untouched
        """
        cache_key = (key, dedupe, lower)
        cached = self._bucket_cache.get(cache_key)
        if cached is not None:
            return cached

        buckets: Dict[str, List[CatalogItem]] = {}
        for item in self._items:
            if key == ItemKey.MACHINE:
                bucket = item.machine.lower() if lower else item.machine
            else:
                bucket = (getattr(item, key.value) or '').lower()
            members = buckets.setdefault(bucket, [])
            if dedupe == DedupeType.FULL and any(_same_item(item, other) for other in members):
                continue
            members.append(item)

        index = BucketIndex(key, buckets)
        self._bucket_cache[cache_key] = index
        return index

    def duplicates_of(self, candidate: CatalogItem) -> List[CatalogItem]:
        """
        Catalog items whose hashes are consistent with the candidate.

        Known limit: a candidate that only carries a weak hash (CRC32 from a
        quick scan) matches every entry sharing that CRC32, even when those
        entries disagree on SHA1 among themselves.
        """
        positions = set()
        for name, value in candidate.hashes().items():
            positions.update(self._indexes[name].get(value, ()))

        # Nodump items without hashes can only match by name
        if not positions and not candidate.has_hashes():
            positions = {i for i, item in enumerate(self._items) if not item.has_hashes()}

        return [self._items[i] for i in sorted(positions)
                if items_match(candidate, self._items[i])]


def _same_item(a: CatalogItem, b: CatalogItem) -> bool:
    return a.name == b.name and a.machine == b.machine and items_match(a, b)


@dataclass
class Catalog:
    """A loaded catalog: header directives plus its items"""
    header: CatalogHeader = field(default_factory=CatalogHeader)
    items: CatalogStore = field(default_factory=CatalogStore)

    def merge(self, other: 'Catalog') -> None:
        """Fold another catalog's items into this one (first header wins)"""
        self.items.extend(other.items)
        if not self.header.name:
            self.header = other.header
