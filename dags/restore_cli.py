#!/usr/bin/env python3
"""
VM configuration capture / restore tool.

Usage:
    # Capture the configuration of every VM (run on each node; only the
    # node owning the coordination VM writes)
    vm-config-restore --config settings.yaml capture --destination /mnt/vm_configs

    # Interactive restore from a storage snapshot
    vm-config-restore --config settings.yaml restore

    # Non-interactive restore
    vm-config-restore --config settings.yaml restore --vm SQL01 --volume vm_datastore01 \\
        --record latest --snapshot daily.2025-01-10_0010 --yes

    # Remove the clone and share left by a restore
    vm-config-restore --config settings.yaml cleanup --clone vm_datastore01_clone_20250110... --yes
"""

import argparse
import getpass
import logging
import os
import sys
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from config_snapshotter import run_capture
from hypervisor import Hypervisor, HypervisorError
from leader_gate import DEFAULT_COORDINATION_RESOURCE, LeaderGate
from metadata_store import MetadataStore, RecordWriteConflict
from restore_orchestrator import (
    CloneHandle,
    RestoreError,
    RestoreInputError,
    RestoreOrchestrator,
    cleanup_clone,
)
from restore_settings import (
    SettingsError,
    get_section,
    load_settings,
    restore_options,
    retention_from_settings,
    storage_connection_from_settings,
)
from selection import FixedSelector, LatestSelector, PromptSelector, SelectionError, Selector
from storage_client import StorageApiClient, StorageApiError, share_name_for
from vm_config_record import RecordFormatError

DEFAULT_SETTINGS_FILE = '/etc/vm-config-restore/settings.yaml'


def build_hypervisor(ovirt_settings: Dict, password: Optional[str] = None) -> Hypervisor:
    # ovirtsdk4 is an optional extra, only needed once a hypervisor is used
    try:
        from ovirt_hypervisor import build_ovirt_hypervisor
    except ImportError as e:
        raise HypervisorError(f'oVirt support is not installed (pip install vm-config-restore[ovirt]): {e}')
    return build_ovirt_hypervisor(ovirt_settings, password)


def banner(title: str):
    print('=' * 60)
    print(title)
    print('=' * 60)
    print()


def ask(value: Optional[str], prompt: str, input_func: Callable[[str], str] = input) -> str:
    """Flag or setting value, otherwise asked on the terminal"""
    while not value:
        value = input_func(prompt).strip()
    return value


def ask_password(stored: Optional[str], prompt: str) -> str:
    return stored or getpass.getpass(prompt)


def confirm(question: str, assume_yes: bool, input_func: Callable[[str], str] = input) -> bool:
    if assume_yes:
        return True
    return input_func(f'{question} (yes/no): ').strip().lower() in ('yes', 'y')


def selector_for(answer: Optional[str], input_func: Callable[[str], str] = input) -> Selector:
    if answer is None:
        return PromptSelector(input_func=input_func)
    if answer.lower() == 'latest':
        return LatestSelector()
    return FixedSelector(answer)


def cmd_capture(args, settings: Dict) -> int:
    destination = args.destination or settings.get('backup_directory')
    if not destination:
        print('✗ ERROR: no destination given (--destination or backup_directory)', file=sys.stderr)
        return 1

    try:
        os.makedirs(destination, exist_ok=True)
        if not os.access(destination, os.W_OK):
            raise OSError(f'{destination} is not writable')

        if args.retention_days is not None:
            if args.retention_days < 0:
                raise SettingsError('--retention-days must not be negative')
            retention = timedelta(days=args.retention_days)
        else:
            retention = retention_from_settings(settings)

        resource = get_section(settings, 'restore_settings').get('coordination_resource',
                                                                 DEFAULT_COORDINATION_RESOURCE)
        hypervisor = build_hypervisor(get_section(settings, 'ovirt_settings'))
    except (OSError, SettingsError, HypervisorError) as e:
        print(f'✗ ERROR: {e}', file=sys.stderr)
        return 1

    gate = LeaderGate(hypervisor, resource, local_identity=args.identity)

    try:
        summary = run_capture(hypervisor, MetadataStore(destination), retention=retention, gate=gate)
    except (HypervisorError, RecordWriteConflict, OSError) as e:
        print(f'✗ ERROR: {e}', file=sys.stderr)
        return 1
    finally:
        hypervisor.close()

    if summary['status'] == 'skipped':
        print(f'Skipped: this node does not own {resource}')
        return 0

    print(f"✓ Captured {len(summary['captured'])} VMs, {len(summary['failed'])} failed")
    for vm_name, error in summary['failed'].items():
        print(f'  ✗ {vm_name}: {error}')
    return 0


def cmd_restore(args, settings: Dict, input_func: Callable[[str], str] = input) -> int:
    banner('VM RESTORE FROM STORAGE SNAPSHOT')

    hypervisor = None

    try:
        storage_settings = dict(get_section(settings, 'storage_settings'))
        ovirt_settings = get_section(settings, 'ovirt_settings')
        options = restore_options(get_section(settings, 'restore_settings'))
        storage_settings['url'] = ask(args.storage_url or storage_settings.get('url'),
                                      'Storage controller URL: ', input_func)
        storage_settings['user'] = ask(args.storage_user or storage_settings.get('user'),
                                       'Storage user: ', input_func)
        storage_password = ask_password(storage_settings.get('passwd'), 'Storage password: ')
        storage = StorageApiClient(storage_connection_from_settings(storage_settings, storage_password))

        hypervisor = build_hypervisor(
            ovirt_settings,
            ask_password(ovirt_settings.get('passwd'), f"Password for {ovirt_settings.get('user')}: "),
        )

        orchestrator = RestoreOrchestrator(
            MetadataStore(ask(args.backup_dir or settings.get('backup_directory'), 'Record directory: ', input_func)),
            storage,
            hypervisor,
            share_mount_root=options['share_mount_root'],
            name_conflict_policy=options['name_conflict_policy'],
            restored_suffix=options['restored_suffix'],
        )

        vm_name = ask(args.vm, 'VM to restore: ', input_func)
        record = orchestrator.select_record(vm_name, selector_for(args.record, input_func))
        print(f'Record: {os.path.basename(orchestrator.record_path)} '
              f'({record.cpu_count} vCPU, {len(record.network_adapters)} adapters, {len(record.disks)} disks)')

        volume_name = ask(args.volume, 'Volume holding the VM files: ', input_func)
        snapshot = orchestrator.select_snapshot(volume_name, selector_for(args.snapshot, input_func))

        print(f'\nVM: {vm_name}')
        print(f'Volume: {volume_name}')
        print(f'Snapshot: {snapshot.name}')
        print()
        if not confirm('Create a clone of this snapshot and restore the VM under a new name?', args.yes, input_func):
            print('Restore cancelled')
            return 0

        orchestrator.provision()
        orchestrator.validate_clone()
        result = orchestrator.reconstruct()
    except (SettingsError, RestoreInputError, SelectionError, RecordFormatError,
            RestoreError, StorageApiError, HypervisorError) as e:
        print(f'\n✗ ERROR: {e}', file=sys.stderr)
        return 1
    finally:
        if hypervisor is not None:
            hypervisor.close()

    print()
    banner('✓ RESTORE COMPLETED')
    print(f'Restored VM: {result.vm_name} (from {result.source_vm})')
    print(f'Clone: {result.handle.clone_name}')
    print(f'Share: {result.handle.share_name} at {result.handle.mount_path}')
    if result.warnings:
        print(f'\n⚠️  {len(result.warnings)} warnings:')
        for warning in result.warnings:
            print(f'  - {warning}')
    print('\nWhen the VM data is no longer needed from the clone, run:')
    print(f'  vm-config-restore cleanup --clone {result.handle.clone_name}')
    return 0


def cmd_cleanup(args, settings: Dict, input_func: Callable[[str], str] = input) -> int:
    handle = CloneHandle(
        clone_name=args.clone,
        share_name=share_name_for(args.clone),
        mount_path='',
        clone_uuid=args.clone_uuid,
        share_id=args.share_id,
    )

    print(f'Clone: {handle.clone_name}')
    print(f'Share: {handle.share_name}')
    if not confirm('⚠️  Delete this clone and its share?', args.yes, input_func):
        print('Cleanup cancelled')
        return 0

    try:
        storage_settings = get_section(settings, 'storage_settings')
        storage = StorageApiClient(storage_connection_from_settings(
            storage_settings, ask_password(storage_settings.get('passwd'), 'Storage password: ')))
        result = cleanup_clone(storage, handle, confirmed=True)
    except (SettingsError, RestoreInputError) as e:
        print(f'✗ ERROR: {e}', file=sys.stderr)
        return 1

    if not result.ok:
        for error in result.errors:
            print(f'✗ {error}', file=sys.stderr)
        return 1
    print(f'✓ Share deleted: {result.share_deleted}, clone deleted: {result.clone_deleted}')
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Capture VM configurations and restore VMs from storage snapshots',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument('--config', default=DEFAULT_SETTINGS_FILE, help='YAML settings file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    capture = subparsers.add_parser('capture', help='Capture the configuration of every VM')
    capture.add_argument('--destination', help='Record directory (default: backup_directory setting)')
    capture.add_argument('--retention-days', type=int, help='Delete records older than this (default 30)')
    capture.add_argument('--identity', help='This node\'s name as reported by the hypervisor (default: hostname)')

    restore = subparsers.add_parser('restore', help='Restore a VM from a storage snapshot')
    restore.add_argument('--vm', help='VM to restore')
    restore.add_argument('--volume', help='Storage volume holding the VM files')
    restore.add_argument('--record', help='Record file name, list number or "latest"')
    restore.add_argument('--snapshot', help='Snapshot name, list number or "latest"')
    restore.add_argument('--backup-dir', help='Record directory (default: backup_directory setting)')
    restore.add_argument('--storage-url', help='Storage controller URL')
    restore.add_argument('--storage-user', help='Storage controller user')
    restore.add_argument('--yes', action='store_true', help='Do not ask for confirmation')

    cleanup = subparsers.add_parser('cleanup', help='Delete the clone and share of a restore')
    cleanup.add_argument('--clone', required=True, help='Clone volume name')
    cleanup.add_argument('--clone-uuid', help='Clone volume uuid, if known')
    cleanup.add_argument('--share-id', help='Share identifier, if known')
    cleanup.add_argument('--yes', action='store_true', help='Do not ask for confirmation')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )

    try:
        settings = load_settings(args.config) if os.path.exists(args.config) else {}
    except SettingsError as e:
        print(f'✗ ERROR: {e}', file=sys.stderr)
        return 1

    if args.command == 'capture':
        return cmd_capture(args, settings)
    if args.command == 'restore':
        return cmd_restore(args, settings)
    return cmd_cleanup(args, settings)


if __name__ == '__main__':
    sys.exit(main())
