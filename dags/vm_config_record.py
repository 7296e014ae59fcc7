"""
VM Configuration Record
=======================

Typed model of one captured VM configuration and the JSON document it is
stored as. Records are written by the capture DAG and read by the restore
DAG; nothing else shares this format.

Document layout (version 1.0):

    {
      "version": "1.0",
      "captured_at": "2026-10-19T02:00:00",
      "vm": {
        "name": "SQL01",
        "owner_node": "hv-node-02",
        "storage_path": "/vol_sql",
        "generation": 2,
        "cpu_count": 4,
        "memory": {"dynamic": true, "startup_bytes": ..., "minimum_bytes": ..., "maximum_bytes": ...},
        "network_adapters": [
          {"name": "LAN", "mac_address": "00155D010203", "switch_name": "vSwitch",
           "vlan": {"mode": "access", "vlan_id": 120}}
        ],
        "disks": [
          {"controller_type": "SCSI", "controller_number": 0, "controller_location": 1,
           "path": "C:\\\\ClusterStorage\\\\VMs\\\\SQL01\\\\data.vhdx"}
        ]
      }
    }
"""

import ntpath
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

DOCUMENT_VERSION = '1.0'

CONTROLLER_TYPES = ('IDE', 'SCSI')

VLAN_NONE = 'none'
VLAN_ACCESS = 'access'
VLAN_TRUNK = 'trunk'

# Native VLAN applied to trunk ports on reconstruction
NEUTRAL_NATIVE_VLAN = 0


class RecordFormatError(ValueError):
    """A stored configuration document is missing a field or has a wrong type"""

    def __init__(self, field_name: str, problem: str):
        self.field_name = field_name
        super().__init__(f'Invalid configuration record field "{field_name}": {problem}')


@dataclass(frozen=True)
class VlanPolicy:
    mode: str = VLAN_NONE
    vlan_id: Optional[int] = None
    allowed_vlan_ids: Tuple[int, ...] = ()
    native_vlan_id: int = NEUTRAL_NATIVE_VLAN

    @classmethod
    def none(cls) -> 'VlanPolicy':
        return cls()

    @classmethod
    def access(cls, vlan_id: int) -> 'VlanPolicy':
        return cls(mode=VLAN_ACCESS, vlan_id=vlan_id)

    @classmethod
    def trunk(cls, allowed_vlan_ids: Iterable[int], native_vlan_id: int = NEUTRAL_NATIVE_VLAN) -> 'VlanPolicy':
        """Trunk policy; an empty tag set collapses to no policy"""
        tags = _ordered_unique(allowed_vlan_ids)
        if not tags:
            return cls()
        return cls(mode=VLAN_TRUNK, allowed_vlan_ids=tags, native_vlan_id=native_vlan_id)

    @property
    def is_none(self) -> bool:
        return self.mode == VLAN_NONE

    def to_dict(self) -> Dict[str, Any]:
        if self.mode == VLAN_ACCESS:
            return {'mode': VLAN_ACCESS, 'vlan_id': self.vlan_id}
        if self.mode == VLAN_TRUNK:
            return {
                'mode': VLAN_TRUNK,
                'allowed_vlan_ids': list(self.allowed_vlan_ids),
                'native_vlan_id': self.native_vlan_id,
            }
        return {'mode': VLAN_NONE}


@dataclass(frozen=True)
class MemoryPolicy:
    startup_bytes: int
    dynamic: bool = False
    minimum_bytes: Optional[int] = None
    maximum_bytes: Optional[int] = None

    @classmethod
    def static(cls, startup_bytes: int) -> 'MemoryPolicy':
        return cls(startup_bytes=startup_bytes)

    @classmethod
    def dynamic_range(cls, minimum_bytes: int, startup_bytes: int, maximum_bytes: int) -> 'MemoryPolicy':
        return cls(startup_bytes=startup_bytes, dynamic=True,
                   minimum_bytes=minimum_bytes, maximum_bytes=maximum_bytes)

    def to_dict(self) -> Dict[str, Any]:
        data = {'dynamic': self.dynamic, 'startup_bytes': self.startup_bytes}
        if self.dynamic:
            data['minimum_bytes'] = self.minimum_bytes
            data['maximum_bytes'] = self.maximum_bytes
        return data


@dataclass(frozen=True)
class NetworkAdapterSpec:
    name: str
    switch_name: Optional[str]
    mac_address: Optional[str] = None
    vlan: VlanPolicy = field(default_factory=VlanPolicy)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'mac_address': self.mac_address,
            'switch_name': self.switch_name,
            'vlan': self.vlan.to_dict(),
        }


@dataclass(frozen=True)
class DiskSpec:
    controller_type: str
    controller_number: int
    controller_location: int
    path: str

    @property
    def file_name(self) -> str:
        """Leaf name of the original disk file, Windows or POSIX separators"""
        return ntpath.basename(self.path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'controller_type': self.controller_type,
            'controller_number': self.controller_number,
            'controller_location': self.controller_location,
            'path': self.path,
        }


@dataclass(frozen=True)
class ConfigurationRecord:
    name: str
    generation: int
    cpu_count: int
    memory: MemoryPolicy
    captured_at: datetime
    owner_node: Optional[str] = None
    storage_path: Optional[str] = None
    network_adapters: Tuple[NetworkAdapterSpec, ...] = ()
    disks: Tuple[DiskSpec, ...] = ()

    def to_document(self) -> Dict[str, Any]:
        return {
            'version': DOCUMENT_VERSION,
            'captured_at': self.captured_at.replace(microsecond=0).isoformat(),
            'vm': {
                'name': self.name,
                'owner_node': self.owner_node,
                'storage_path': self.storage_path,
                'generation': self.generation,
                'cpu_count': self.cpu_count,
                'memory': self.memory.to_dict(),
                'network_adapters': [adapter.to_dict() for adapter in self.network_adapters],
                'disks': [disk.to_dict() for disk in self.disks],
            },
        }

    @classmethod
    def from_document(cls, document: Any) -> 'ConfigurationRecord':
        """Strict parse of a stored document; any bad field raises RecordFormatError"""
        if not isinstance(document, dict):
            raise RecordFormatError('<document>', 'expected an object')

        version = _require(document, 'version', str)
        if version != DOCUMENT_VERSION:
            raise RecordFormatError('version', f'unsupported version {version!r}')

        captured_raw = _require(document, 'captured_at', str)
        try:
            captured_at = datetime.fromisoformat(captured_raw)
        except ValueError:
            raise RecordFormatError('captured_at', f'not an ISO timestamp: {captured_raw!r}')

        vm = _require(document, 'vm', dict)
        name = _require(vm, 'name', str, 'vm.name')
        if not name:
            raise RecordFormatError('vm.name', 'must not be empty')

        generation = _require(vm, 'generation', int, 'vm.generation')
        if generation not in (1, 2):
            raise RecordFormatError('vm.generation', f'must be 1 or 2, got {generation}')

        cpu_count = _require(vm, 'cpu_count', int, 'vm.cpu_count')
        if cpu_count < 1:
            raise RecordFormatError('vm.cpu_count', f'must be positive, got {cpu_count}')

        adapters = _require(vm, 'network_adapters', list, 'vm.network_adapters')
        disks = _require(vm, 'disks', list, 'vm.disks')

        return cls(
            name=name,
            owner_node=_optional(vm, 'owner_node', str, 'vm.owner_node'),
            storage_path=_optional(vm, 'storage_path', str, 'vm.storage_path'),
            generation=generation,
            cpu_count=cpu_count,
            memory=_parse_memory(_require(vm, 'memory', dict, 'vm.memory')),
            network_adapters=tuple(
                _parse_adapter(item, f'vm.network_adapters[{index}]') for index, item in enumerate(adapters)
            ),
            disks=tuple(_parse_disk(item, f'vm.disks[{index}]') for index, item in enumerate(disks)),
            captured_at=captured_at,
        )


def reduce_vlan(mode: Optional[str], access_vlan_id: Optional[int] = None,
                allowed_vlan_ids: Union[None, str, Iterable[int]] = None) -> VlanPolicy:
    """Reduce a hypervisor's raw VLAN settings to a VlanPolicy.

    `mode` is the adapter's operation mode as reported by the hypervisor
    (Access, Trunk, Untagged; case-insensitive). Trunk tag lists may come as a
    list of ints or as a string such as "10,20,30-32".
    """
    normalized = (mode or '').strip().lower()

    if normalized == VLAN_ACCESS:
        if access_vlan_id:
            return VlanPolicy.access(int(access_vlan_id))
        return VlanPolicy.none()

    if normalized == VLAN_TRUNK:
        if isinstance(allowed_vlan_ids, str):
            tags = parse_vlan_list(allowed_vlan_ids)
        else:
            tags = [int(tag) for tag in (allowed_vlan_ids or [])]
        return VlanPolicy.trunk(tags)

    return VlanPolicy.none()


def parse_vlan_list(value: str) -> List[int]:
    """Parse "10,20,30-32" into [10, 20, 30, 31, 32]"""
    tags = []
    for part in re.split(r'[,;\s]+', value.strip()):
        if not part:
            continue
        if '-' in part:
            start, _, end = part.partition('-')
            low, high = int(start), int(end)
            if low > high:
                raise ValueError(f'Invalid VLAN range: {part}')
            tags.extend(range(low, high + 1))
        else:
            tags.append(int(part))
    return tags


def _ordered_unique(values: Iterable[int]) -> Tuple[int, ...]:
    seen = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return tuple(seen)


def _require(data: Dict, key: str, expected: type, label: Optional[str] = None):
    label = label or key
    if key not in data or data[key] is None:
        raise RecordFormatError(label, 'missing')
    value = data[key]
    # bool is a subclass of int and must not pass as a count
    if expected is int and isinstance(value, bool):
        raise RecordFormatError(label, 'expected int, got bool')
    if not isinstance(value, expected):
        raise RecordFormatError(label, f'expected {expected.__name__}, got {type(value).__name__}')
    return value


def _optional(data: Dict, key: str, expected: type, label: str):
    if data.get(key) is None:
        return None
    return _require(data, key, expected, label)


def _parse_memory(data: Dict) -> MemoryPolicy:
    dynamic = _require(data, 'dynamic', bool, 'vm.memory.dynamic')
    startup = _require(data, 'startup_bytes', int, 'vm.memory.startup_bytes')
    if startup <= 0:
        raise RecordFormatError('vm.memory.startup_bytes', 'must be positive')
    if not dynamic:
        return MemoryPolicy.static(startup)

    minimum = _require(data, 'minimum_bytes', int, 'vm.memory.minimum_bytes')
    maximum = _require(data, 'maximum_bytes', int, 'vm.memory.maximum_bytes')
    if not minimum <= startup <= maximum:
        raise RecordFormatError('vm.memory', f'expected minimum <= startup <= maximum, got {minimum}/{startup}/{maximum}')
    return MemoryPolicy.dynamic_range(minimum, startup, maximum)


def _parse_vlan(data: Dict, label: str) -> VlanPolicy:
    mode = _require(data, 'mode', str, f'{label}.mode')
    if mode == VLAN_NONE:
        return VlanPolicy.none()
    if mode == VLAN_ACCESS:
        return VlanPolicy.access(_require(data, 'vlan_id', int, f'{label}.vlan_id'))
    if mode == VLAN_TRUNK:
        tags = _require(data, 'allowed_vlan_ids', list, f'{label}.allowed_vlan_ids')
        for position, tag in enumerate(tags):
            if isinstance(tag, bool) or not isinstance(tag, int):
                raise RecordFormatError(f'{label}.allowed_vlan_ids[{position}]', 'expected int')
        native = _optional(data, 'native_vlan_id', int, f'{label}.native_vlan_id')
        return VlanPolicy.trunk(tags, NEUTRAL_NATIVE_VLAN if native is None else native)
    raise RecordFormatError(f'{label}.mode', f'unknown VLAN mode {mode!r}')


def _parse_adapter(data: Any, label: str) -> NetworkAdapterSpec:
    if not isinstance(data, dict):
        raise RecordFormatError(label, 'expected an object')
    return NetworkAdapterSpec(
        name=_require(data, 'name', str, f'{label}.name'),
        mac_address=_optional(data, 'mac_address', str, f'{label}.mac_address') or None,
        switch_name=_optional(data, 'switch_name', str, f'{label}.switch_name'),
        vlan=_parse_vlan(_require(data, 'vlan', dict, f'{label}.vlan'), f'{label}.vlan'),
    )


def _parse_disk(data: Any, label: str) -> DiskSpec:
    if not isinstance(data, dict):
        raise RecordFormatError(label, 'expected an object')
    controller_type = _require(data, 'controller_type', str, f'{label}.controller_type')
    if controller_type not in CONTROLLER_TYPES:
        raise RecordFormatError(f'{label}.controller_type', f'must be one of {CONTROLLER_TYPES}, got {controller_type!r}')
    path = _require(data, 'path', str, f'{label}.path')
    if not path:
        raise RecordFormatError(f'{label}.path', 'must not be empty')
    return DiskSpec(
        controller_type=controller_type,
        controller_number=_require(data, 'controller_number', int, f'{label}.controller_number'),
        controller_location=_require(data, 'controller_location', int, f'{label}.controller_location'),
        path=path,
    )
