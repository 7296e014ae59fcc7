"""Tests for the per-VM record directory store."""

import json
import os
from dataclasses import replace
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from metadata_store import RecordWriteConflict
from vm_config_record import RecordFormatError


def test_append_writes_timestamped_file(store, sql01_record):
    path = store.append(sql01_record)

    assert path == os.path.join(store.backup_dir, 'SQL01', 'SQL01_20240601_020000.json')
    with open(path, encoding='utf-8') as f:
        assert json.load(f)['vm']['name'] == 'SQL01'


def test_append_never_overwrites(store, sql01_record):
    store.append(sql01_record)

    with pytest.raises(RecordWriteConflict):
        store.append(replace(sql01_record, cpu_count=8))

    assert store.load(store.latest('SQL01')).cpu_count == 4


def test_list_for_is_newest_first(store, sql01_record):
    times = [datetime(2024, 6, 1, 2), datetime(2024, 6, 3, 2), datetime(2024, 6, 2, 2)]
    for captured_at in times:
        store.append(replace(sql01_record, captured_at=captured_at))

    listed = [captured_at for _, captured_at in store.list_for('SQL01')]

    assert listed == sorted(times, reverse=True)
    assert store.latest('SQL01').endswith('SQL01_20240603_020000.json')


def test_list_for_ignores_foreign_files(store, sql01_record):
    store.append(sql01_record)
    vm_dir = os.path.join(store.backup_dir, 'SQL01')
    for name in ('notes.txt', 'SQL01_latest.json', 'SQL01_extra_20240601_020000.json', 'SQL01_20241301_020000.json'):
        with open(os.path.join(vm_dir, name), 'w') as f:
            f.write('{}')

    assert len(store.list_for('SQL01')) == 1


def test_names_sharing_a_prefix_stay_apart(store, sql01_record):
    store.append(sql01_record)
    store.append(replace(sql01_record, name='SQL01_DR'))

    assert [os.path.basename(path) for path, _ in store.list_for('SQL01')] == ['SQL01_20240601_020000.json']
    assert store.entities() == ['SQL01', 'SQL01_DR']


def test_unknown_vm_has_no_records(store):
    assert store.list_for('NOPE') == []
    assert store.latest('NOPE') is None
    assert store.entities() == []


@pytest.mark.parametrize('name', ['..', '.', 'a/b', 'a\\b', ''])
def test_path_like_names_rejected(store, name):
    with pytest.raises(ValueError):
        store.list_for(name)


def test_load_rejects_invalid_document(store, sql01_record):
    path = store.append(sql01_record)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump({'version': '1.0'}, f)

    with pytest.raises(RecordFormatError):
        store.load(path)


@pytest.mark.parametrize('content', [b'{"version": "1.0", ', b'', b'{"version": "\xff\xfe"}'])
def test_load_rejects_unreadable_file(store, sql01_record, content):
    path = store.append(sql01_record)
    with open(path, 'wb') as f:
        f.write(content)

    with pytest.raises(RecordFormatError, match='not valid JSON') as excinfo:
        store.load(path)

    assert excinfo.value.field_name == '<document>'


class TestPrune:
    def test_deletes_strictly_older_than_cutoff(self, store, sql01_record):
        now = datetime(2024, 7, 1, 2, 0, 0)
        retention = timedelta(days=30)
        cutoff = now - retention
        old = store.append(replace(sql01_record, captured_at=cutoff - timedelta(seconds=1)))
        boundary = store.append(replace(sql01_record, captured_at=cutoff))
        recent = store.append(replace(sql01_record, captured_at=now))

        removed = store.prune('SQL01', retention, now=now)

        assert removed == [old]
        assert os.path.exists(boundary)
        assert os.path.exists(recent)

    def test_one_failed_deletion_does_not_stop_the_rest(self, store, sql01_record):
        now = datetime(2024, 7, 1)
        first = store.append(replace(sql01_record, captured_at=datetime(2024, 1, 1)))
        second = store.append(replace(sql01_record, captured_at=datetime(2024, 1, 2)))
        real_remove = os.remove

        def flaky_remove(path):
            if path == second:
                raise PermissionError('locked')
            real_remove(path)

        with patch('metadata_store.os.remove', side_effect=flaky_remove):
            removed = store.prune('SQL01', timedelta(days=30), now=now)

        assert removed == [first]
        assert os.path.exists(second)

    def test_only_touches_the_given_vm(self, store, sql01_record):
        other = store.append(replace(sql01_record, name='WEB01', captured_at=datetime(2020, 1, 1)))

        store.prune('SQL01', timedelta(days=1), now=datetime(2024, 7, 1))

        assert os.path.exists(other)
