"""
Pytest configuration and shared fixtures for the capture/restore tests.

Provides an in-memory hypervisor, an in-memory storage controller that
materialises clone contents on disk, and sample configuration records.
"""

import os
from datetime import datetime
from typing import Dict, List, Optional

import pytest

from hypervisor import Hypervisor, HypervisorError, MachineFacts
from metadata_store import MetadataStore
from storage_client import StorageApiError, StorageSnapshot, VolumeIdentity
from vm_config_record import (
    ConfigurationRecord,
    DiskSpec,
    MemoryPolicy,
    NetworkAdapterSpec,
    VlanPolicy,
)

GIB = 1024 ** 3


# ==============================================================================
# Hypervisor
# ==============================================================================


class FakeHypervisor(Hypervisor):
    """In-memory hypervisor recording every call.

    `facts` feeds capture, `machines` holds the state of existing and created
    VMs. `errors` maps "method" or "method:key" (key = adapter name or disk
    file name) to the exception that call raises.
    """

    def __init__(self, default_adapters=('Network Adapter',)):
        self.facts: Dict[str, MachineFacts] = {}
        self.machines: Dict[str, Dict] = {}
        self.owners: Dict[str, str] = {}
        self.errors: Dict[str, Exception] = {}
        self.calls: List[tuple] = []
        self.default_adapters = default_adapters
        self.closed = False

    def _call(self, method: str, *args, key: Optional[str] = None):
        self.calls.append((method,) + args)
        for error_key in (f'{method}:{key}', method):
            if error_key in self.errors:
                raise self.errors[error_key]

    def _machine(self, name: str) -> Dict:
        if name not in self.machines:
            raise HypervisorError(f'VM {name} not found')
        return self.machines[name]

    def add_existing(self, name: str):
        self.machines[name] = {'existing': True, 'adapters': {}, 'disks': []}

    def list_machines(self):
        self._call('list_machines')
        return sorted(self.facts)

    def owner_of(self, resource_name):
        self._call('owner_of', resource_name)
        return self.owners.get(resource_name, '')

    def read_machine(self, name):
        self._call('read_machine', name, key=name)
        return self.facts[name]

    def machine_exists(self, name):
        self._call('machine_exists', name)
        return name in self.machines or name in self.facts

    def create_machine(self, name, generation, memory_bytes):
        self._call('create_machine', name, generation, memory_bytes)
        self.machines[name] = {
            'existing': False,
            'generation': generation,
            'memory': {'startup_bytes': memory_bytes, 'dynamic': False},
            'adapters': {adapter: {} for adapter in self.default_adapters},
            'disks': [],
        }

    def set_processor_count(self, name, count):
        self._call('set_processor_count', name, count)
        self._machine(name)['cpu_count'] = count

    def set_static_memory(self, name, startup_bytes):
        self._call('set_static_memory', name, startup_bytes)
        self._machine(name)['memory'] = {'startup_bytes': startup_bytes, 'dynamic': False}

    def set_dynamic_memory(self, name, minimum_bytes, startup_bytes, maximum_bytes):
        self._call('set_dynamic_memory', name, minimum_bytes, startup_bytes, maximum_bytes)
        self._machine(name)['memory'] = {
            'startup_bytes': startup_bytes,
            'dynamic': True,
            'minimum_bytes': minimum_bytes,
            'maximum_bytes': maximum_bytes,
        }

    def list_adapters(self, name):
        self._call('list_adapters', name)
        return list(self._machine(name)['adapters'])

    def add_adapter(self, name, adapter_name, switch_name):
        self._call('add_adapter', name, adapter_name, switch_name, key=adapter_name)
        self._machine(name)['adapters'][adapter_name] = {'switch_name': switch_name}

    def remove_adapter(self, name, adapter_name):
        self._call('remove_adapter', name, adapter_name)
        del self._machine(name)['adapters'][adapter_name]

    def set_adapter_mac(self, name, adapter_name, mac_address):
        self._call('set_adapter_mac', name, adapter_name, mac_address, key=adapter_name)
        self._machine(name)['adapters'][adapter_name]['mac_address'] = mac_address

    def set_adapter_vlan(self, name, adapter_name, policy):
        self._call('set_adapter_vlan', name, adapter_name, policy, key=adapter_name)
        self._machine(name)['adapters'][adapter_name]['vlan'] = policy

    def attach_disk(self, name, controller_type, controller_number, controller_location, path):
        self._call('attach_disk', name, controller_type, controller_number, controller_location, path,
                   key=os.path.basename(path))
        self._machine(name)['disks'].append((controller_type, controller_number, controller_location, path))

    def close(self):
        self.closed = True

    def calls_for(self, vm_name: str) -> List[tuple]:
        """Calls that named a VM, excluding existence checks"""
        return [call for call in self.calls if len(call) > 1 and call[1] == vm_name and call[0] != 'machine_exists']


# ==============================================================================
# Storage controller
# ==============================================================================


class FakeStorage:
    """In-memory storage controller with the StorageApiClient interface.

    When a share is created, `clone_files` (paths relative to the share root)
    are written under `<mount_root>/<share_name>` as the mounted clone.
    """

    def __init__(self, mount_root: str, volumes=None, snapshots=None, clone_files=()):
        self.mount_root = mount_root
        self.volumes: Dict[str, VolumeIdentity] = dict(volumes or {})
        self.snapshots: Dict[str, List[StorageSnapshot]] = dict(snapshots or {})
        self.clone_files = list(clone_files)
        self.clones: Dict[str, str] = {}
        self.shares: Dict[str, str] = {}
        self.errors: Dict[str, Exception] = {}
        self.calls: List[tuple] = []

    def _call(self, method: str, *args):
        self.calls.append((method,) + args)
        if method in self.errors:
            raise self.errors[method]

    def find_volume(self, name):
        self._call('find_volume', name)
        if name in self.volumes:
            return self.volumes[name]
        for clone_uuid, clone_name in self.clones.items():
            if clone_name == name:
                return VolumeIdentity(uuid=clone_uuid, name=clone_name, svm_name='svm1')
        return None

    def list_snapshots(self, volume):
        self._call('list_snapshots', volume.name)
        return list(self.snapshots.get(volume.name, []))

    def create_clone(self, clone_name, parent_volume, parent_snapshot):
        self._call('create_clone', clone_name, parent_volume.name, parent_snapshot)
        clone_uuid = f'uuid-{len(self.clones) + 1}'
        self.clones[clone_uuid] = clone_name
        return clone_uuid

    def create_share(self, share_name, path, svm_name=None):
        self._call('create_share', share_name, path, svm_name)
        share_id = f'svm-uuid/{share_name}'
        self.shares[share_id] = share_name
        share_root = os.path.join(self.mount_root, share_name)
        os.makedirs(share_root, exist_ok=True)
        for relative in self.clone_files:
            target = os.path.join(share_root, relative)
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, 'wb') as f:
                f.write(b'\0')
        return share_id

    def find_share(self, share_name):
        self._call('find_share', share_name)
        for share_id, name in self.shares.items():
            if name == share_name:
                return share_id
        return None

    def delete_share(self, share_id):
        self._call('delete_share', share_id)
        return self.shares.pop(share_id, None) is not None

    def delete_clone(self, clone_uuid):
        self._call('delete_clone', clone_uuid)
        return self.clones.pop(clone_uuid, None) is not None


def api_error(status: int = 500, body: str = 'internal error') -> StorageApiError:
    return StorageApiError(status, body, 'POST', 'https://cluster1/api/storage/volumes')


# ==============================================================================
# Records
# ==============================================================================


def make_sql01_record(captured_at: Optional[datetime] = None) -> ConfigurationRecord:
    return ConfigurationRecord(
        name='SQL01',
        owner_node='hv-node-02',
        storage_path='C:\\ClusterStorage\\Volume1',
        generation=2,
        cpu_count=4,
        memory=MemoryPolicy.dynamic_range(2 * GIB, 4 * GIB, 8 * GIB),
        network_adapters=(
            NetworkAdapterSpec(
                name='LAN',
                switch_name='vSwitch-Prod',
                mac_address='00155D010203',
                vlan=VlanPolicy.access(120),
            ),
            NetworkAdapterSpec(
                name='Trunk',
                switch_name='vSwitch-Prod',
                vlan=VlanPolicy.trunk([10, 20]),
            ),
        ),
        disks=(
            DiskSpec('SCSI', 0, 0, 'C:\\ClusterStorage\\Volume1\\SQL01\\Virtual Hard Disks\\os.vhdx'),
            DiskSpec('SCSI', 0, 1, 'C:\\ClusterStorage\\Volume1\\SQL01\\Virtual Hard Disks\\data.vhdx'),
        ),
        captured_at=captured_at or datetime(2024, 6, 1, 2, 0, 0),
    )


@pytest.fixture
def sql01_record() -> ConfigurationRecord:
    return make_sql01_record()


@pytest.fixture
def store(tmp_path) -> MetadataStore:
    return MetadataStore(str(tmp_path / 'records'))


@pytest.fixture
def hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def mount_root(tmp_path) -> str:
    root = tmp_path / 'mnt'
    root.mkdir()
    return str(root)


@pytest.fixture
def storage(mount_root) -> FakeStorage:
    """Volume vm_datastore01 with two system snapshots and one restorable snapshot"""
    volume = VolumeIdentity(uuid='vol-uuid-1', name='vm_datastore01', svm_name='svm1')
    return FakeStorage(
        mount_root,
        volumes={'vm_datastore01': volume},
        snapshots={
            'vm_datastore01': [
                StorageSnapshot('vserver_x', datetime(2024, 6, 1, 0, 0), volume.uuid),
                StorageSnapshot('snapmirror_y', datetime(2024, 6, 1, 1, 0), volume.uuid),
                StorageSnapshot('daily_2024', datetime(2024, 6, 1, 0, 10), volume.uuid),
            ],
        },
        clone_files=[
            'SQL01/Virtual Hard Disks/os.vhdx',
            'SQL01/Virtual Hard Disks/data.vhdx',
            'SQL01/Virtual Machines/config.xml',
        ],
    )
