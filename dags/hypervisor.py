"""
Hypervisor collaborator interface.

The capture and restore workflows only talk to the hypervisor through this
interface. Read methods return raw facts; turning them into a
ConfigurationRecord (VLAN reduction, controller address normalisation) is the
snapshotter's job.

Where a VM's files sit inside a mounted storage clone also belongs to the
hypervisor. The default is one folder named after the VM holding virtual disk
files; hypervisors storing disks differently override machine_folder and
machine_disk_files.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Union

from vm_config_record import ConfigurationRecord, VlanPolicy

VIRTUAL_DISK_EXTENSIONS = ('.vhdx', '.vhd', '.avhdx', '.qcow2', '.raw', '.img')


class HypervisorError(RuntimeError):
    """A hypervisor query or change failed"""


@dataclass
class MemoryFacts:
    startup_bytes: int
    dynamic: bool = False
    minimum_bytes: Optional[int] = None
    maximum_bytes: Optional[int] = None


@dataclass
class AdapterFacts:
    name: str
    switch_name: Optional[str] = None
    mac_address: Optional[str] = None
    # Access, Trunk or Untagged
    vlan_mode: Optional[str] = None
    access_vlan_id: Optional[int] = None
    allowed_vlan_ids: Union[None, str, List[int]] = None
    # Automatically assigned MACs are not worth keeping
    dynamic_mac: bool = False


@dataclass
class DiskFacts:
    controller_type: str
    controller_location: int
    path: str
    # None when the hypervisor only reports a flat slot number
    controller_number: Optional[int] = None


@dataclass
class MachineFacts:
    name: str
    generation: int
    cpu_count: int
    memory: MemoryFacts
    owner_node: Optional[str] = None
    storage_path: Optional[str] = None
    adapters: List[AdapterFacts] = field(default_factory=list)
    disks: List[DiskFacts] = field(default_factory=list)


class Hypervisor(ABC):
    """Machine lifecycle primitives used by capture and restore"""

    @abstractmethod
    def list_machines(self) -> List[str]:
        """Names of the clustered machines to capture"""

    @abstractmethod
    def owner_of(self, resource_name: str) -> str:
        """Node currently owning a cluster resource"""

    @abstractmethod
    def read_machine(self, name: str) -> MachineFacts:
        pass

    @abstractmethod
    def machine_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def create_machine(self, name: str, generation: int, memory_bytes: int) -> None:
        pass

    @abstractmethod
    def set_processor_count(self, name: str, count: int) -> None:
        pass

    @abstractmethod
    def set_static_memory(self, name: str, startup_bytes: int) -> None:
        pass

    @abstractmethod
    def set_dynamic_memory(self, name: str, minimum_bytes: int, startup_bytes: int, maximum_bytes: int) -> None:
        pass

    @abstractmethod
    def list_adapters(self, name: str) -> List[str]:
        pass

    @abstractmethod
    def add_adapter(self, name: str, adapter_name: str, switch_name: Optional[str]) -> None:
        pass

    @abstractmethod
    def remove_adapter(self, name: str, adapter_name: str) -> None:
        pass

    @abstractmethod
    def set_adapter_mac(self, name: str, adapter_name: str, mac_address: str) -> None:
        pass

    @abstractmethod
    def set_adapter_vlan(self, name: str, adapter_name: str, policy: VlanPolicy) -> None:
        pass

    @abstractmethod
    def attach_disk(self, name: str, controller_type: str, controller_number: int,
                    controller_location: int, path: str) -> None:
        pass

    def machine_folder(self, clone_root: str, record: ConfigurationRecord) -> Optional[str]:
        """Folder holding the VM's files inside a mounted storage clone, None if absent"""
        return find_vm_folder(clone_root, record.name)

    def machine_disk_files(self, folder: str, record: ConfigurationRecord) -> List[str]:
        """Virtual disk files of the VM found under its folder"""
        return find_disk_files(folder)

    def close(self) -> None:
        """Release the session to the hypervisor manager, if any"""


def find_vm_folder(clone_root: str, vm_name: str) -> Optional[str]:
    """VM folder at the clone root; exact name first, then case-insensitive"""
    exact = os.path.join(clone_root, vm_name)
    if os.path.isdir(exact):
        return exact
    if not os.path.isdir(clone_root):
        return None
    for entry in sorted(os.listdir(clone_root)):
        candidate = os.path.join(clone_root, entry)
        if entry.lower() == vm_name.lower() and os.path.isdir(candidate):
            return candidate
    return None


def find_disk_files(root: str) -> List[str]:
    found = []
    for dirpath, _, filenames in os.walk(root):
        for filename in filenames:
            if filename.lower().endswith(VIRTUAL_DISK_EXTENSIONS):
                found.append(os.path.join(dirpath, filename))
    return sorted(found)
