"""
Configuration Snapshotter
=========================

Reads the live configuration of every clustered VM and writes one
configuration record per VM to the metadata store. Disk contents are not
touched; the storage controller's snapshots already hold the data.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from hypervisor import DiskFacts, Hypervisor, MachineFacts
from leader_gate import LeaderGate
from metadata_store import DEFAULT_RETENTION, MetadataStore
from vm_config_record import (
    CONTROLLER_TYPES,
    ConfigurationRecord,
    DiskSpec,
    MemoryPolicy,
    NetworkAdapterSpec,
    reduce_vlan,
)


def disk_spec_from_facts(disk: DiskFacts) -> DiskSpec:
    """Two-part controller address; a flat slot number means channel 0"""
    controller_type = disk.controller_type.upper()
    if controller_type not in CONTROLLER_TYPES:
        raise ValueError(f'Unsupported controller type {disk.controller_type!r} for {disk.path}')
    channel = disk.controller_number if disk.controller_number is not None else 0
    return DiskSpec(
        controller_type=controller_type,
        controller_number=int(channel),
        controller_location=int(disk.controller_location),
        path=disk.path,
    )


def record_from_facts(facts: MachineFacts, captured_at: datetime) -> ConfigurationRecord:
    memory = facts.memory
    if memory.dynamic:
        if memory.minimum_bytes is None or memory.maximum_bytes is None:
            raise ValueError(f'Dynamic memory of {facts.name} reported without bounds')
        memory_policy = MemoryPolicy.dynamic_range(memory.minimum_bytes, memory.startup_bytes, memory.maximum_bytes)
    else:
        memory_policy = MemoryPolicy.static(memory.startup_bytes)

    adapters = tuple(
        NetworkAdapterSpec(
            name=adapter.name,
            switch_name=adapter.switch_name,
            mac_address=None if adapter.dynamic_mac else (adapter.mac_address or None),
            vlan=reduce_vlan(adapter.vlan_mode, adapter.access_vlan_id, adapter.allowed_vlan_ids),
        )
        for adapter in facts.adapters
    )

    return ConfigurationRecord(
        name=facts.name,
        owner_node=facts.owner_node,
        storage_path=facts.storage_path,
        generation=facts.generation,
        cpu_count=facts.cpu_count,
        memory=memory_policy,
        network_adapters=adapters,
        disks=tuple(disk_spec_from_facts(disk) for disk in facts.disks),
        captured_at=captured_at.replace(microsecond=0),
    )


class ConfigurationSnapshotter:
    def __init__(self, hypervisor: Hypervisor, store: MetadataStore,
                 clock: Callable[[], datetime] = datetime.now):
        self.hypervisor = hypervisor
        self.store = store
        self.clock = clock
        self.failures: Dict[str, str] = {}

    def capture_all(self) -> List[ConfigurationRecord]:
        """Capture every machine; one machine's read failure never stops the others"""
        self.failures = {}
        machines = self.hypervisor.list_machines()
        logging.info(f'Capturing configuration of {len(machines)} VMs')

        captured = []
        for vm_name in machines:
            try:
                facts = self.hypervisor.read_machine(vm_name)
                record = record_from_facts(facts, self.clock())
            except Exception as e:
                self.failures[vm_name] = str(e)
                logging.error(f'✗ Failed to read configuration of {vm_name}: {e}')
                continue

            # Write failures are not isolated: pruning must not follow a failed write
            self.store.append(record)
            captured.append(record)
            logging.info(f'✓ {vm_name}: {record.cpu_count} vCPU, '
                         f'{len(record.network_adapters)} adapters, {len(record.disks)} disks')

        return captured


def run_capture(hypervisor: Hypervisor, store: MetadataStore,
                retention: timedelta = DEFAULT_RETENTION,
                gate: Optional[LeaderGate] = None,
                clock: Callable[[], datetime] = datetime.now) -> Dict:
    """Gate check, capture, then prune what was written in this run"""
    if gate is not None and not gate.is_authoritative():
        return {'status': 'skipped', 'reason': 'not the designated writer', 'captured': [], 'pruned': {}}

    snapshotter = ConfigurationSnapshotter(hypervisor, store, clock=clock)
    records = snapshotter.capture_all()

    now = clock()
    pruned = {}
    for record in records:
        removed = store.prune(record.name, retention, now=now)
        if removed:
            pruned[record.name] = removed

    logging.info('📊 CONFIGURATION CAPTURE SUMMARY')
    logging.info(f'  Captured: {len(records)}')
    logging.info(f'  Failed: {len(snapshotter.failures)}')
    logging.info(f'  Records pruned: {sum(len(paths) for paths in pruned.values())}')

    return {
        'status': 'success',
        'captured': [record.name for record in records],
        'failed': dict(snapshotter.failures),
        'pruned': pruned,
    }
