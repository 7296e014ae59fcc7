"""
Restore Orchestrator
====================

Rebuilds a VM from a captured configuration record and a FlexClone of a
storage snapshot:

  SELECT_RECORD -> SELECT_SNAPSHOT -> PROVISIONING -> VALIDATING
      -> RECONSTRUCTING -> COMPLETE  [-> CLEANING_UP]

Rules the workflow never breaks:
- The restored VM always gets a new name. An existing VM is never deleted,
  stopped or reconfigured; the only question asked about other names is
  whether they exist.
- A clone or share created by this run is remembered in the CloneHandle as
  soon as the storage controller returns it. Failures never delete storage
  automatically; they report the orphaned resources instead.
- Cleanup runs only on explicit confirmation and only against restore-derived
  clone/share names.
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from hypervisor import Hypervisor, HypervisorError
from metadata_store import MetadataStore
from selection import Selector
from storage_client import (
    StorageApiClient,
    StorageApiError,
    StorageSnapshot,
    VolumeIdentity,
    clone_name_for,
    eligible_snapshots,
    is_restore_clone_name,
    junction_path_for,
    share_name_for,
)
from vm_config_record import ConfigurationRecord, DiskSpec, RecordFormatError

RESTORED_SUFFIX = '_Restored'

CONFLICT_DISAMBIGUATE = 'disambiguate'
CONFLICT_ABORT = 'abort'


class RestoreState(Enum):
    SELECT_RECORD = 'select_record'
    SELECT_SNAPSHOT = 'select_snapshot'
    PROVISIONING = 'provisioning'
    VALIDATING = 'validating'
    RECONSTRUCTING = 'reconstructing'
    COMPLETE = 'complete'
    CLEANING_UP = 'cleaning_up'
    FAILED = 'failed'


@dataclass
class CloneHandle:
    clone_name: str
    share_name: str
    mount_path: str
    clone_uuid: Optional[str] = None
    share_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'CloneHandle':
        return cls(
            clone_name=data['clone_name'],
            share_name=data['share_name'],
            mount_path=data.get('mount_path', ''),
            clone_uuid=data.get('clone_uuid'),
            share_id=data.get('share_id'),
        )


class RestoreInputError(ValueError):
    """Operator input does not match anything restorable; nothing was created"""


class RestoreError(RuntimeError):
    """Terminal failure of a restore step; carries the clone handle if one exists"""

    def __init__(self, message: str, handle: Optional[CloneHandle] = None):
        self.handle = handle
        if handle is not None and (handle.clone_uuid or handle.share_id):
            message = f'{message}. {orphan_notice(handle)}'
        super().__init__(message)


class CloneValidationError(RestoreError):
    """The clone does not hold the VM's files; wrong volume or snapshot chosen"""


@dataclass
class RestoreResult:
    vm_name: str
    source_vm: str
    record_path: str
    snapshot_name: str
    handle: CloneHandle
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'vm_name': self.vm_name,
            'source_vm': self.source_vm,
            'record_path': self.record_path,
            'snapshot_name': self.snapshot_name,
            'clone': self.handle.to_dict(),
            'warnings': list(self.warnings),
        }


@dataclass
class CleanupResult:
    share_deleted: bool = False
    clone_deleted: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def orphan_notice(handle: CloneHandle) -> str:
    clone = f'{handle.clone_name} ({handle.clone_uuid})' if handle.clone_uuid else handle.clone_name
    share = f'{handle.share_name} ({handle.share_id})' if handle.share_id else 'none'
    return f'orphaned resources: clone {clone}, share {share}'


def _find_by_name(root: str, file_name: str) -> Optional[str]:
    wanted = file_name.lower()
    for dirpath, _, filenames in sorted(os.walk(root)):
        for filename in sorted(filenames):
            if filename.lower() == wanted:
                return os.path.join(dirpath, filename)
    return None


def resolve_disk_file(disk: DiskSpec, vm_folder: str, clone_root: str) -> Optional[str]:
    """Locate a disk's file inside the clone by its original leaf name.

    Looks under the VM folder first, then anywhere under the clone.
    """
    file_name = disk.file_name
    if not file_name:
        return None
    return _find_by_name(vm_folder, file_name) or _find_by_name(clone_root, file_name)


def cleanup_clone(storage: StorageApiClient, handle: CloneHandle, confirmed: bool) -> CleanupResult:
    """Delete the share and then the clone of one restore run.

    Each deletion is attempted even if the other fails. Only names derived by
    the restore workflow are accepted, so a production volume can never be
    passed in by mistake.
    """
    if not confirmed:
        raise RestoreInputError('Cleanup requires explicit confirmation')
    if not is_restore_clone_name(handle.clone_name) or handle.share_name != share_name_for(handle.clone_name):
        raise RestoreInputError(
            f'Refusing cleanup: {handle.clone_name}/{handle.share_name} are not restore clone names'
        )

    result = CleanupResult()

    try:
        share_id = handle.share_id or storage.find_share(handle.share_name)
        if share_id:
            result.share_deleted = storage.delete_share(share_id)
        else:
            logging.info(f'Share {handle.share_name} not found, nothing to delete')
    except StorageApiError as e:
        result.errors.append(f'share {handle.share_name}: {e}')
        logging.error(f'✗ Failed to delete share {handle.share_name}: {e}')

    try:
        clone_uuid = handle.clone_uuid
        if not clone_uuid:
            volume = storage.find_volume(handle.clone_name)
            clone_uuid = volume.uuid if volume else None
        if clone_uuid:
            result.clone_deleted = storage.delete_clone(clone_uuid)
        else:
            logging.info(f'Clone {handle.clone_name} not found, nothing to delete')
    except StorageApiError as e:
        result.errors.append(f'clone {handle.clone_name}: {e}')
        logging.error(f'✗ Failed to delete clone {handle.clone_name}: {e}')

    if result.ok:
        logging.info(f'✓ Cleanup completed for {handle.clone_name}')
    else:
        logging.error(f'✗ Cleanup incomplete: {"; ".join(result.errors)}')
    return result


def _describe_record(item: Tuple[str, datetime]) -> str:
    return os.path.splitext(os.path.basename(item[0]))[0]


def _describe_snapshot(snapshot: StorageSnapshot) -> str:
    return snapshot.name


class RestoreOrchestrator:
    def __init__(self, store: MetadataStore, storage: StorageApiClient, hypervisor: Hypervisor,
                 share_mount_root: str, name_conflict_policy: str = CONFLICT_DISAMBIGUATE,
                 restored_suffix: str = RESTORED_SUFFIX, clock: Callable[[], datetime] = datetime.now):
        if name_conflict_policy not in (CONFLICT_DISAMBIGUATE, CONFLICT_ABORT):
            raise ValueError(f'Unknown name conflict policy: {name_conflict_policy}')
        self.store = store
        self.storage = storage
        self.hypervisor = hypervisor
        self.share_mount_root = share_mount_root
        self.name_conflict_policy = name_conflict_policy
        self.restored_suffix = restored_suffix
        self.clock = clock

        self.state = RestoreState.SELECT_RECORD
        self.record: Optional[ConfigurationRecord] = None
        self.record_path: Optional[str] = None
        self.volume: Optional[VolumeIdentity] = None
        self.snapshot: Optional[StorageSnapshot] = None
        self.handle: Optional[CloneHandle] = None
        self.vm_folder: Optional[str] = None
        self.disk_files: List[str] = []
        self.warnings: List[str] = []

    def _expect(self, state: RestoreState):
        if self.state != state:
            raise RuntimeError(f'Restore is in state {self.state.value}, expected {state.value}')

    def _fail(self, error: Exception):
        self.state = RestoreState.FAILED
        raise error

    def select_record(self, vm_name: str, selector: Selector) -> ConfigurationRecord:
        self._expect(RestoreState.SELECT_RECORD)

        records = self.store.list_for(vm_name)
        if not records:
            self._fail(RestoreInputError(f'No configuration records found for VM {vm_name}'))

        path, captured_at = selector.choose(f'Configuration records for {vm_name} (newest first):',
                                            records, _describe_record)
        try:
            record = self.store.load(path)
        except RecordFormatError as e:
            self._fail(e)
        if record.name != vm_name:
            self._fail(RestoreInputError(f'Record {path} belongs to {record.name}, not {vm_name}'))

        self.record = record
        self.record_path = path
        self.state = RestoreState.SELECT_SNAPSHOT
        logging.info(f'✓ Selected record {os.path.basename(path)} captured {captured_at.isoformat()}')
        return record

    def select_snapshot(self, volume_name: str, selector: Selector) -> StorageSnapshot:
        self._expect(RestoreState.SELECT_SNAPSHOT)

        volume = self.storage.find_volume(volume_name)
        if volume is None:
            self._fail(RestoreInputError(f'Volume {volume_name} not found'))

        candidates = eligible_snapshots(self.storage.list_snapshots(volume))
        if not candidates:
            self._fail(RestoreInputError(f'No eligible snapshots on volume {volume_name}'))
        candidates.sort(key=lambda s: s.create_time.timestamp() if s.create_time else float('-inf'),
                        reverse=True)

        snapshot = selector.choose(f'Snapshots of {volume_name} (newest first):', candidates, _describe_snapshot)

        self.volume = volume
        self.snapshot = snapshot
        self.state = RestoreState.PROVISIONING
        logging.info(f'✓ Selected snapshot {snapshot.name} of volume {volume.name}')
        return snapshot

    def provision(self) -> CloneHandle:
        self._expect(RestoreState.PROVISIONING)

        clone_name = clone_name_for(self.volume.name, self.clock())
        share_name = share_name_for(clone_name)
        self.handle = CloneHandle(
            clone_name=clone_name,
            share_name=share_name,
            mount_path=os.path.join(self.share_mount_root, share_name),
        )

        try:
            self.handle.clone_uuid = self.storage.create_clone(clone_name, self.volume, self.snapshot.name)
            self.handle.share_id = self.storage.create_share(share_name, junction_path_for(clone_name),
                                                             self.volume.svm_name)
        except StorageApiError as e:
            self._fail(RestoreError(f'Provisioning of {clone_name} failed: {e}', self.handle))

        self.state = RestoreState.VALIDATING
        logging.info(f'✓ Clone {clone_name} shared as {share_name} at {self.handle.mount_path}')
        return self.handle

    def validate_clone(self) -> List[str]:
        self._expect(RestoreState.VALIDATING)
        mount_path = self.handle.mount_path

        if not os.path.isdir(mount_path):
            self._fail(CloneValidationError(f'Clone mount path {mount_path} is not reachable', self.handle))

        # Layout of the VM's files inside the clone is the hypervisor's business
        vm_folder = self.hypervisor.machine_folder(mount_path, self.record)
        if vm_folder is None:
            self._fail(CloneValidationError(
                f'No folder for {self.record.name} in clone of snapshot {self.snapshot.name}', self.handle))

        disk_files = self.hypervisor.machine_disk_files(vm_folder, self.record)
        if not disk_files:
            self._fail(CloneValidationError(f'No virtual disk files under {vm_folder}', self.handle))

        self.vm_folder = vm_folder
        self.disk_files = disk_files
        self.state = RestoreState.RECONSTRUCTING
        logging.info(f'✓ Clone validated: {len(disk_files)} disk files under {vm_folder}')
        return disk_files

    def _machine_exists(self, name: str) -> bool:
        try:
            return self.hypervisor.machine_exists(name)
        except HypervisorError as e:
            self._fail(RestoreError(f'Checking whether VM {name} exists failed: {e}', self.handle))

    def target_vm_name(self) -> str:
        """New VM name; never the name of an existing VM"""
        base_name = f'{self.record.name}{self.restored_suffix}'
        if not self._machine_exists(base_name):
            return base_name

        if self.name_conflict_policy == CONFLICT_ABORT:
            self._fail(RestoreError(f'VM {base_name} already exists', self.handle))

        candidate = f'{base_name}_{self.clock().strftime("%Y%m%d_%H%M%S")}'
        if self._machine_exists(candidate):
            self._fail(RestoreError(f'VM {base_name} and {candidate} already exist', self.handle))
        logging.info(f'VM {base_name} already exists, restoring as {candidate}')
        return candidate

    def _warn(self, message: str):
        self.warnings.append(message)
        logging.warning(f'⚠ {message}')

    def reconstruct(self) -> RestoreResult:
        self._expect(RestoreState.RECONSTRUCTING)
        record = self.record
        vm_name = self.target_vm_name()
        hv = self.hypervisor

        try:
            hv.create_machine(vm_name, record.generation, record.memory.startup_bytes)
            logging.info(f'✓ VM created: {vm_name} (generation {record.generation})')

            # Drop adapters the new VM was created with; record adapters are added below
            for adapter_name in hv.list_adapters(vm_name):
                hv.remove_adapter(vm_name, adapter_name)

            hv.set_processor_count(vm_name, record.cpu_count)
            memory = record.memory
            if memory.dynamic:
                hv.set_dynamic_memory(vm_name, memory.minimum_bytes, memory.startup_bytes, memory.maximum_bytes)
            else:
                hv.set_static_memory(vm_name, memory.startup_bytes)
        except HypervisorError as e:
            self._fail(RestoreError(f'Building VM {vm_name} failed: {e}', self.handle))

        for adapter in record.network_adapters:
            try:
                hv.add_adapter(vm_name, adapter.name, adapter.switch_name)
                if adapter.mac_address:
                    hv.set_adapter_mac(vm_name, adapter.name, adapter.mac_address)
                if not adapter.vlan.is_none:
                    hv.set_adapter_vlan(vm_name, adapter.name, adapter.vlan)
                logging.info(f'✓ Adapter {adapter.name} on {adapter.switch_name} ({adapter.vlan.mode})')
            except HypervisorError as e:
                self._warn(f'Adapter {adapter.name} not configured: {e}')

        clone_root = self.handle.mount_path
        for disk in record.disks:
            location = f'{disk.controller_type} {disk.controller_number}:{disk.controller_location}'
            disk_path = resolve_disk_file(disk, self.vm_folder, clone_root)
            if disk_path is None:
                self._warn(f'Disk {disk.file_name} ({location}) not found in clone, skipped')
                continue
            try:
                hv.attach_disk(vm_name, disk.controller_type, disk.controller_number,
                               disk.controller_location, disk_path)
                logging.info(f'✓ Disk attached at {location}: {disk_path}')
            except HypervisorError as e:
                self._warn(f'Disk {disk.file_name} ({location}) not attached: {e}')

        self.state = RestoreState.COMPLETE
        logging.info(f'✓ Restore completed: {record.name} -> {vm_name}')
        if self.warnings:
            logging.warning(f'Restore finished with {len(self.warnings)} warnings')

        return RestoreResult(
            vm_name=vm_name,
            source_vm=record.name,
            record_path=self.record_path,
            snapshot_name=self.snapshot.name,
            handle=self.handle,
            warnings=list(self.warnings),
        )

    def run(self, vm_name: str, volume_name: str, record_selector: Selector,
            snapshot_selector: Selector) -> RestoreResult:
        self.select_record(vm_name, record_selector)
        self.select_snapshot(volume_name, snapshot_selector)
        self.provision()
        self.validate_clone()
        return self.reconstruct()

    def cleanup(self, confirmed: bool) -> CleanupResult:
        """Tear down this run's clone and share; never undoes the restored VM"""
        if self.handle is None:
            raise RuntimeError('No clone was created in this restore run')
        self.state = RestoreState.CLEANING_UP
        return cleanup_clone(self.storage, self.handle, confirmed)
