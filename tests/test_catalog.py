from romrebuild.catalog import Catalog, CatalogStore, DedupeType, ItemKey
from romrebuild.models import CatalogHeader, CatalogItem


def _item(name, machine, crc, sha1='', size=4):
    return CatalogItem(name=name, machine=machine, size=size, crc32=crc, sha1=sha1)


def test_bucket_by_sha1_groups_and_sorts_keys():
    store = CatalogStore([
        _item('b.bin', 'set', '00000002', 'bb' * 20),
        _item('a.bin', 'set', '00000001', 'aa' * 20),
        _item('a2.bin', 'other', '00000001', 'aa' * 20),
    ])
    index = store.bucket_by(ItemKey.SHA1)

    assert index.sorted_keys() == ['aa' * 20, 'bb' * 20]
    assert [i.name for i in index.items_for_key('aa' * 20)] == ['a.bin', 'a2.bin']
    assert index.items_for_key('cc' * 20) == []
    assert index.total_count() == 3


def test_bucket_index_is_not_mutated_by_later_adds():
    store = CatalogStore([_item('a.bin', 'set', '00000001', 'aa' * 20)])
    before = store.bucket_by(ItemKey.SHA1)
    assert store.bucket_by(ItemKey.SHA1) is before

    store.add(_item('b.bin', 'set', '00000002', 'bb' * 20))
    after = store.bucket_by(ItemKey.SHA1)

    assert after is not before
    assert len(before) == 1
    assert len(after) == 2


def test_bucket_by_machine_respects_case_flag():
    store = CatalogStore([
        _item('a.bin', 'SetA', '00000001'),
        _item('b.bin', 'seta', '00000002'),
    ])
    assert len(store.bucket_by(ItemKey.MACHINE).items_for_key('seta')) == 2
    exact = store.bucket_by(ItemKey.MACHINE, lower=False)
    assert len(exact.items_for_key('SetA')) == 1
    assert len(exact.items_for_key('seta')) == 1


def test_full_dedupe_collapses_identical_items():
    store = CatalogStore([
        _item('a.bin', 'set', '00000001'),
        _item('a.bin', 'set', '00000001'),
    ])
    assert store.bucket_by(ItemKey.CRC32).total_count() == 2
    assert store.bucket_by(ItemKey.CRC32, DedupeType.FULL).total_count() == 1


def test_duplicates_of_keeps_insertion_order():
    store = CatalogStore([
        _item('first.bin', 'one', '00000001', 'aa' * 20),
        _item('unrelated.bin', 'two', '00000009', '99' * 20),
        _item('second.bin', 'three', '00000001', 'aa' * 20),
    ])
    dupes = store.duplicates_of(CatalogItem(name='x', size=4, sha1='AA' * 20))
    assert [d.name for d in dupes] == ['first.bin', 'second.bin']


def test_crc_only_candidate_matches_entries_that_disagree_on_sha1():
    # Known accuracy limit of weak equality: both entries are reported
    store = CatalogStore([
        _item('one.bin', 'one', '12345678', 'aa' * 20),
        _item('two.bin', 'two', '12345678', 'bb' * 20),
    ])
    dupes = store.duplicates_of(CatalogItem(name='x', size=4, crc32='12345678'))
    assert [d.name for d in dupes] == ['one.bin', 'two.bin']


def test_full_candidate_disambiguates():
    store = CatalogStore([
        _item('one.bin', 'one', '12345678', 'aa' * 20),
        _item('two.bin', 'two', '12345678', 'bb' * 20),
    ])
    dupes = store.duplicates_of(CatalogItem(name='x', size=4, crc32='12345678', sha1='bb' * 20))
    assert [d.name for d in dupes] == ['two.bin']


def test_catalog_merge_keeps_first_header():
    first = Catalog(CatalogHeader(name='first'), CatalogStore([_item('a.bin', 'a', '00000001')]))
    second = Catalog(CatalogHeader(name='second'), CatalogStore([_item('b.bin', 'b', '00000002')]))

    merged = Catalog()
    merged.merge(first)
    merged.merge(second)

    assert merged.header.name == 'first'
    assert [i.name for i in merged.items] == ['a.bin', 'b.bin']
