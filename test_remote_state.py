"""Tests for object key naming and remote state reconstruction."""

from conftest import FakeS3Client

from glacier_sync.remote_state import (
    RemoteStateReader,
    dataset_key_prefixes,
    object_key,
    parse_object_key,
    parse_remote_records,
)


def test_object_keys():
    assert object_key('tank/data', 's1') == 'full/tank/data@s1'
    assert object_key('tank/data', 's2', 's1') == 'incremental/tank/data@s2@s1'
    assert object_key('tank/data', 's1', prefix='/host-a/') == 'host-a/full/tank/data@s1'


def test_parse_object_key_inverts_object_key():
    for dataset, snapshot, parent, prefix in [
        ('tank/data', 's1', None, None),
        ('tank/deep/nested/fs', 'auto-2024-01-01_00.00', 'auto-2023-12-31_00.00', 'backups/zfs'),
    ]:
        key = object_key(dataset, snapshot, parent, prefix)
        assert parse_object_key(key, prefix) == (dataset, snapshot, parent)


def test_parse_object_key_rejects_foreign_keys():
    assert parse_object_key('notes/readme.txt') is None
    assert parse_object_key('full/tank/data') is None
    assert parse_object_key('full/tank/data@s1@s0') is None
    assert parse_object_key('incremental/tank/data@s2') is None
    assert parse_object_key('other/full/tank/data@s1', 'backups') is None


def test_dataset_prefixes_do_not_match_sibling_datasets():
    full_prefix, incremental_prefix = dataset_key_prefixes('tank/data', 'p')

    assert full_prefix == 'p/full/tank/data@'
    assert incremental_prefix == 'p/incremental/tank/data@'
    assert not object_key('tank/data2', 's1', prefix='p').startswith(full_prefix)


def test_parse_remote_records_groups_by_dataset():
    objects = [
        {'Key': 'full/tank/data@s1', 'Size': 100, 'ETag': '"abc-2"'},
        {'Key': 'incremental/tank/data@s3@s1', 'Size': 10, 'ETag': '"def"'},
        {'Key': 'full/tank/home@h1', 'Size': 50},
        {'Key': 'README', 'Size': 1},
    ]

    state = parse_remote_records(objects)

    assert state.datasets() == ['tank/data', 'tank/home']
    assert len(state) == 3
    data = state.for_dataset('tank/data')
    assert data['s1'].etag == 'abc-2'
    assert not data['s1'].is_incremental
    assert data['s3'].parent == 's1'
    assert data['s3'].size == 10
    assert state.has('tank/home', 'h1')
    assert state.for_dataset('tank/missing') == {}


def test_full_record_wins_over_incremental_for_same_snapshot():
    objects = [
        {'Key': 'full/tank/data@s2', 'Size': 100},
        {'Key': 'incremental/tank/data@s2@s1', 'Size': 10},
    ]

    record = parse_remote_records(objects).for_dataset('tank/data')['s2']

    assert record.parent is None


def test_incremental_with_complete_chain_wins_regardless_of_key_order():
    objects = [
        {'Key': 'full/tank/data@s1', 'Size': 100},
        {'Key': 'incremental/tank/data@s2@s1', 'Size': 10},
        {'Key': 'incremental/tank/data@s3@s1', 'Size': 10},
        {'Key': 'incremental/tank/data@s3@s2', 'Size': 10},
        {'Key': 'incremental/tank/data@s4@s3', 'Size': 10},
        {'Key': 'incremental/tank/data@s4@zz', 'Size': 10},
    ]

    data = parse_remote_records(objects).for_dataset('tank/data')

    assert data['s3'].key == 'incremental/tank/data@s3@s1'
    assert data['s4'].parent == 's3'


def test_only_broken_candidates_keep_first_by_key():
    objects = [
        {'Key': 'incremental/tank/data@s2@y', 'Size': 10},
        {'Key': 'incremental/tank/data@s2@x', 'Size': 10},
    ]

    assert parse_remote_records(objects).for_dataset('tank/data')['s2'].parent == 'x'


def test_reader_paginates_and_applies_prefix():
    s3 = FakeS3Client(page_size=1)
    s3.put_completed('zfs/full/tank/data@s1')
    s3.put_completed('zfs/incremental/tank/data@s2@s1')
    s3.put_completed('other/full/tank/data@s9')

    state = RemoteStateReader(s3, 'bucket', 'zfs').read()

    assert sorted(state.for_dataset('tank/data')) == ['s1', 's2']
    assert s3.operations('list_objects_v2') == [{'Bucket': 'bucket', 'Prefix': 'zfs/'}]
