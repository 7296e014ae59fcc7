"""Tests for the command line tool, with the hypervisor and storage replaced by fakes."""

import os
import sys
from unittest.mock import MagicMock, patch

import pytest

from conftest import GIB
from hypervisor import HypervisorError, MachineFacts, MemoryFacts
from restore_cli import build_parser, cmd_capture, cmd_cleanup, cmd_restore, main
from restore_settings import SettingsError


@pytest.fixture
def settings(store, mount_root):
    return {
        'backup_directory': store.backup_dir,
        'storage_settings': {'url': 'https://cluster1.example.com', 'user': 'admin', 'passwd': 'secret'},
        'ovirt_settings': {'url': 'https://engine/ovirt-engine/api', 'user': 'admin@internal', 'passwd': 'secret',
                           'insecure': True},
        'restore_settings': {'share_mount_root': mount_root},
    }


@pytest.fixture
def patched_hypervisor(hypervisor):
    with patch('restore_cli.build_hypervisor', return_value=hypervisor) as build:
        yield build


@pytest.fixture
def patched_storage(storage):
    with patch('restore_cli.StorageApiClient', return_value=storage) as client:
        yield client


def parse(*argv):
    return build_parser().parse_args(list(argv))


class TestCapture:
    def test_leader_captures(self, settings, store, hypervisor, patched_hypervisor):
        hypervisor.owners['HostedEngine'] = 'hv-node-01'
        hypervisor.facts['WEB01'] = MachineFacts('WEB01', 1, 2, MemoryFacts(2 * GIB))

        code = cmd_capture(parse('capture', '--identity', 'hv-node-01'), settings)

        assert code == 0
        assert store.entities() == ['WEB01']
        assert hypervisor.closed

    def test_non_leader_exits_cleanly(self, settings, store, hypervisor, patched_hypervisor, capsys):
        hypervisor.owners['HostedEngine'] = 'hv-node-02'
        hypervisor.facts['WEB01'] = MachineFacts('WEB01', 1, 2, MemoryFacts(2 * GIB))

        code = cmd_capture(parse('capture', '--identity', 'hv-node-01'), settings)

        assert code == 0
        assert store.entities() == []
        assert 'Skipped' in capsys.readouterr().out

    def test_destination_flag_wins(self, settings, tmp_path, hypervisor, patched_hypervisor):
        hypervisor.owners['HostedEngine'] = 'hv-node-01'
        hypervisor.facts['WEB01'] = MachineFacts('WEB01', 1, 2, MemoryFacts(2 * GIB))
        destination = tmp_path / 'elsewhere'

        code = cmd_capture(parse('capture', '--destination', str(destination), '--identity', 'hv-node-01'), settings)

        assert code == 0
        assert os.listdir(destination) == ['WEB01']

    def test_setup_failure(self, settings, capsys):
        with patch('restore_cli.build_hypervisor', side_effect=SettingsError('Missing setting ovirt_settings.url')):
            code = cmd_capture(parse('capture'), settings)

        assert code == 1
        assert 'ovirt_settings.url' in capsys.readouterr().err

    def test_negative_retention(self, settings, patched_hypervisor):
        assert cmd_capture(parse('capture', '--retention-days', '-1'), settings) == 1

    def test_missing_ovirt_extra(self, settings, capsys):
        with patch.dict(sys.modules, {'ovirt_hypervisor': None}):
            code = cmd_capture(parse('capture'), settings)

        assert code == 1
        assert '✗ ERROR: oVirt support is not installed' in capsys.readouterr().err

    def test_no_destination(self, settings):
        del settings['backup_directory']

        assert cmd_capture(parse('capture'), settings) == 1


class TestRestore:
    def test_non_interactive_restore(self, settings, store, sql01_record, hypervisor, storage,
                                     patched_hypervisor, patched_storage, capsys):
        store.append(sql01_record)
        args = parse('restore', '--vm', 'SQL01', '--volume', 'vm_datastore01',
                     '--record', 'latest', '--snapshot', 'daily_2024', '--yes')

        code = cmd_restore(args, settings, input_func=MagicMock(side_effect=AssertionError('no prompt expected')))

        assert code == 0
        assert 'SQL01_Restored' in hypervisor.machines
        output = capsys.readouterr().out
        assert 'RESTORE COMPLETED' in output
        assert 'cleanup --clone vm_datastore01_clone_' in output

    def test_interactive_restore(self, settings, store, sql01_record, hypervisor, storage,
                                 patched_hypervisor, patched_storage):
        store.append(sql01_record)
        answers = MagicMock(side_effect=['SQL01', '1', 'vm_datastore01', '1', 'yes'])

        code = cmd_restore(parse('restore'), settings, input_func=answers)

        assert code == 0
        assert answers.call_count == 5
        assert 'SQL01_Restored' in hypervisor.machines

    def test_operator_can_cancel(self, settings, store, sql01_record, storage, patched_hypervisor, patched_storage):
        store.append(sql01_record)
        args = parse('restore', '--vm', 'SQL01', '--volume', 'vm_datastore01', '--record', 'latest',
                     '--snapshot', 'daily_2024')

        code = cmd_restore(args, settings, input_func=MagicMock(return_value='no'))

        assert code == 0
        assert not any(call[0] == 'create_clone' for call in storage.calls)

    def test_failure_exits_1(self, settings, hypervisor, patched_hypervisor, patched_storage, capsys):
        args = parse('restore', '--vm', 'SQL01', '--volume', 'vm_datastore01', '--yes')

        code = cmd_restore(args, settings)

        assert code == 1
        assert '✗ ERROR: No configuration records found for VM SQL01' in capsys.readouterr().err
        assert hypervisor.closed

    @pytest.mark.parametrize('section', ['storage_settings', 'ovirt_settings'])
    def test_malformed_section_exits_1(self, settings, patched_hypervisor, patched_storage, capsys, section):
        settings[section] = 'https://cluster1.example.com'
        args = parse('restore', '--vm', 'SQL01', '--volume', 'vm_datastore01', '--yes')

        code = cmd_restore(args, settings)

        assert code == 1
        assert f'✗ ERROR: Setting {section}' in capsys.readouterr().err

    def test_connection_failure_exits_1(self, settings, patched_storage, capsys):
        with patch('restore_cli.build_hypervisor', side_effect=HypervisorError('Connecting to engine: refused')):
            code = cmd_restore(parse('restore', '--vm', 'SQL01', '--yes'), settings)

        assert code == 1
        assert 'refused' in capsys.readouterr().err

    def test_prompts_for_missing_password(self, settings, store, sql01_record, patched_hypervisor, patched_storage):
        del settings['storage_settings']['passwd']
        store.append(sql01_record)
        args = parse('restore', '--vm', 'SQL01', '--volume', 'vm_datastore01', '--record', 'latest',
                     '--snapshot', 'latest', '--yes')

        with patch('restore_cli.getpass.getpass', return_value='typed') as getpass:
            code = cmd_restore(args, settings)

        assert code == 0
        getpass.assert_called_once_with('Storage password: ')


class TestCleanup:
    def test_cleanup_after_confirmation(self, settings, storage, patched_storage):
        clone_name = 'vm_datastore01_clone_20240601030000000000_abc123'
        storage.create_clone(clone_name, storage.volumes['vm_datastore01'], 'daily_2024')
        storage.create_share(f'restore_{clone_name}', f'/{clone_name}', 'svm1')

        code = cmd_cleanup(parse('cleanup', '--clone', clone_name), settings, input_func=MagicMock(return_value='yes'))

        assert code == 0
        assert storage.clones == {} and storage.shares == {}

    def test_declined_cleanup_deletes_nothing(self, settings, storage, patched_storage):
        code = cmd_cleanup(parse('cleanup', '--clone', 'v_clone_1'), settings, input_func=MagicMock(return_value='n'))

        assert code == 0
        assert storage.calls == []

    def test_refuses_production_volume(self, settings, storage, patched_storage, capsys):
        code = cmd_cleanup(parse('cleanup', '--clone', 'vm_datastore01', '--yes'), settings)

        assert code == 1
        assert 'Refusing' in capsys.readouterr().err
        assert storage.calls == []

    def test_refuses_volume_merely_named_like_a_clone(self, settings, storage, patched_storage):
        storage.clones['erp-uuid'] = 'erp_clone_master'

        code = cmd_cleanup(parse('cleanup', '--clone', 'erp_clone_master', '--yes'), settings)

        assert code == 1
        assert storage.clones == {'erp-uuid': 'erp_clone_master'}

    def test_malformed_storage_section(self, settings, capsys):
        settings['storage_settings'] = ['https://cluster1.example.com']
        clone_name = 'vm_datastore01_clone_20240601030000000000_abc123'

        code = cmd_cleanup(parse('cleanup', '--clone', clone_name, '--yes'), settings)

        assert code == 1
        assert '✗ ERROR: Setting storage_settings' in capsys.readouterr().err


def test_main_reports_bad_settings_file(tmp_path, capsys):
    path = tmp_path / 'settings.yaml'
    path.write_text('- not\n- a mapping\n')

    assert main(['--config', str(path), 'cleanup', '--clone', 'x']) == 1
    assert '✗ ERROR' in capsys.readouterr().err


def test_subcommand_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
