"""
oVirt / OLVM implementation of the Hypervisor interface.

Mapping used by capture and restore:
- generation 2 is a Q35 UEFI firmware, generation 1 legacy BIOS
- dynamic memory is a ballooned VM whose guaranteed memory is below its
  defined memory (minimum = guaranteed, maximum = memory_policy.max)
- the adapter "switch" is the vNIC profile's network; an access VLAN is the
  VLAN id of that network, a trunk rides on an untagged network
- disk controllers are IDE or VirtIO-SCSI; oVirt exposes no channel, so the
  slot is the attachment's position on that interface
- the owner of a coordination resource is the host running that VM
- a disk is captured as /<domain>/images/<disk id>/<image id>; in a clone of
  the storage domain volume the VM's files are those image files
- disk files found in a clone are registered from the import storage domain
  the clone's share is attached as, then attached to the VM
"""

import logging
import ntpath
import os
from contextlib import contextmanager
from typing import Dict, List, Optional

import ovirtsdk4 as sdk
import ovirtsdk4.types as types

from hypervisor import AdapterFacts, DiskFacts, Hypervisor, HypervisorError, MachineFacts, MemoryFacts
from leader_gate import DEFAULT_COORDINATION_RESOURCE
from restore_settings import ovirt_config_from_settings
from vm_config_record import VLAN_ACCESS, VLAN_TRUNK, ConfigurationRecord, VlanPolicy

UEFI_BIOS_TYPES = ('Q35_OVMF', 'Q35_SECURE_BOOT')

IMAGES_DIR = 'images'


def create_ovirt_connection(config: Dict) -> sdk.Connection:
    """Create connection to oVirt Engine"""
    logging.info(f"Connecting to oVirt engine: {config['url']} as {config['user']}")

    try:
        connection = sdk.Connection(
            url=config['url'],
            username=config['user'],
            password=config['passwd'],
            ca_file=config.get('certificate'),
            insecure=config.get('insecure', False),
            log=logging.getLogger(),
            debug=False,
            timeout=config.get('timeout', 30)
        )
        logging.info("✓ oVirt connection created")
        return connection
    except sdk.Error as e:
        logging.error(f"✗ oVirt connection failed: {e}")
        raise


@contextmanager
def _sdk_errors(action: str):
    try:
        yield
    except sdk.Error as e:
        raise HypervisorError(f'{action}: {e}')


def _enum_name(value) -> str:
    return getattr(value, 'name', str(value or '')).upper()


class OvirtHypervisor(Hypervisor):
    def __init__(self, connection: sdk.Connection, cluster_name: str = 'Default',
                 template_name: str = 'Blank', import_storage_domain: Optional[str] = None,
                 excluded_vms=(DEFAULT_COORDINATION_RESOURCE,)):
        self.connection = connection
        self.cluster_name = cluster_name
        self.template_name = template_name
        self.import_storage_domain = import_storage_domain
        self.excluded_vms = set(excluded_vms)

    def close(self) -> None:
        try:
            self.connection.close()
            logging.info('oVirt connection closed')
        except sdk.Error as e:
            logging.warning(f'Error closing oVirt connection: {e}')

    @property
    def _system(self):
        return self.connection.system_service()

    def _vms_service(self):
        return self._system.vms_service()

    def _find_vm(self, name: str) -> Optional[types.Vm]:
        # search= is a pattern match, keep exact names only
        for vm in self._vms_service().list(search=f'name={name}'):
            if vm.name == name:
                return vm
        return None

    def _vm_service(self, name: str):
        vm = self._find_vm(name)
        if vm is None:
            raise HypervisorError(f'VM {name} not found')
        return self._vms_service().vm_service(vm.id)

    def list_machines(self) -> List[str]:
        with _sdk_errors('Listing VMs'):
            vms = self._vms_service().list(search=f'cluster={self.cluster_name}')
        return sorted(vm.name for vm in vms if vm.name not in self.excluded_vms)

    def owner_of(self, resource_name: str) -> str:
        with _sdk_errors(f'Locating {resource_name}'):
            vm = self._find_vm(resource_name)
            if vm is None:
                raise HypervisorError(f'Coordination VM {resource_name} not found')
            if vm.host is None:
                raise HypervisorError(f'Coordination VM {resource_name} is not running on any host')
            host = self.connection.follow_link(vm.host)
        return host.name

    def machine_exists(self, name: str) -> bool:
        with _sdk_errors(f'Looking up VM {name}'):
            return self._find_vm(name) is not None

    def read_machine(self, name: str) -> MachineFacts:
        with _sdk_errors(f'Reading VM {name}'):
            vm = self._find_vm(name)
            if vm is None:
                raise HypervisorError(f'VM {name} not found')
            vm_service = self._vms_service().vm_service(vm.id)

            topology = vm.cpu.topology if vm.cpu and vm.cpu.topology else None
            cpu_count = 1
            if topology:
                cpu_count = (topology.sockets or 1) * (topology.cores or 1) * (topology.threads or 1)

            generation = 2 if vm.bios and _enum_name(vm.bios.type) in UEFI_BIOS_TYPES else 1

            owner_node = None
            if vm.host is not None:
                owner_node = self.connection.follow_link(vm.host).name

            adapters = [self._adapter_facts(nic) for nic in vm_service.nics_service().list()]
            disks, storage_path = self._disk_facts(vm_service)

        return MachineFacts(
            name=vm.name,
            generation=generation,
            cpu_count=cpu_count,
            memory=self._memory_facts(vm),
            owner_node=owner_node,
            storage_path=storage_path,
            adapters=adapters,
            disks=disks,
        )

    @staticmethod
    def _memory_facts(vm: types.Vm) -> MemoryFacts:
        policy = vm.memory_policy
        if policy and policy.ballooning and policy.guaranteed and policy.guaranteed < vm.memory:
            return MemoryFacts(
                startup_bytes=vm.memory,
                dynamic=True,
                minimum_bytes=policy.guaranteed,
                maximum_bytes=max(policy.max or vm.memory, vm.memory),
            )
        return MemoryFacts(startup_bytes=vm.memory)

    def _adapter_facts(self, nic: types.Nic) -> AdapterFacts:
        switch_name = None
        vlan_id = None
        if nic.vnic_profile is not None:
            profile = self.connection.follow_link(nic.vnic_profile)
            network = self.connection.follow_link(profile.network)
            switch_name = network.name
            if network.vlan is not None:
                vlan_id = network.vlan.id

        return AdapterFacts(
            name=nic.name,
            switch_name=switch_name,
            mac_address=nic.mac.address if nic.mac else None,
            vlan_mode='Access' if vlan_id else 'Untagged',
            access_vlan_id=vlan_id,
        )

    def _disk_facts(self, vm_service):
        disks = []
        storage_path = None
        positions = {}
        for attachment in vm_service.disk_attachments_service().list():
            disk = self.connection.follow_link(attachment.disk)
            controller_type = 'IDE' if _enum_name(attachment.interface) == 'IDE' else 'SCSI'
            slot = positions.get(controller_type, 0)
            positions[controller_type] = slot + 1

            domain_name = 'unknown'
            if disk.storage_domains:
                domain_name = self.connection.follow_link(disk.storage_domains[0]).name
                storage_path = storage_path or domain_name

            disks.append(DiskFacts(
                controller_type=controller_type,
                controller_location=slot,
                path=f'/{domain_name}/images/{disk.id}/{disk.image_id}',
            ))
        return disks, storage_path

    def create_machine(self, name: str, generation: int, memory_bytes: int) -> None:
        bios_type = types.BiosType.Q35_OVMF if generation == 2 else types.BiosType.I440FX_SEA_BIOS
        with _sdk_errors(f'Creating VM {name}'):
            vm = self._vms_service().add(
                types.Vm(
                    name=name,
                    cluster=types.Cluster(name=self.cluster_name),
                    template=types.Template(name=self.template_name),
                    memory=memory_bytes,
                    bios=types.Bios(type=bios_type),
                    description='Restored from storage clone by configuration restore',
                )
            )
        logging.info(f'VM created: {vm.name} (ID: {vm.id})')

    def set_processor_count(self, name: str, count: int) -> None:
        with _sdk_errors(f'Setting CPUs of {name}'):
            self._vm_service(name).update(
                types.Vm(cpu=types.Cpu(topology=types.CpuTopology(sockets=count, cores=1, threads=1)))
            )

    def set_static_memory(self, name: str, startup_bytes: int) -> None:
        with _sdk_errors(f'Setting memory of {name}'):
            self._vm_service(name).update(
                types.Vm(
                    memory=startup_bytes,
                    memory_policy=types.MemoryPolicy(guaranteed=startup_bytes, max=startup_bytes, ballooning=False),
                )
            )

    def set_dynamic_memory(self, name: str, minimum_bytes: int, startup_bytes: int, maximum_bytes: int) -> None:
        with _sdk_errors(f'Setting dynamic memory of {name}'):
            self._vm_service(name).update(
                types.Vm(
                    memory=startup_bytes,
                    memory_policy=types.MemoryPolicy(guaranteed=minimum_bytes, max=maximum_bytes, ballooning=True),
                )
            )

    def _find_nic(self, nics_service, adapter_name: str) -> types.Nic:
        for nic in nics_service.list():
            if nic.name == adapter_name:
                return nic
        raise HypervisorError(f'Adapter {adapter_name} not found')

    def list_adapters(self, name: str) -> List[str]:
        with _sdk_errors(f'Listing adapters of {name}'):
            return [nic.name for nic in self._vm_service(name).nics_service().list()]

    def _profile_for(self, network_name: Optional[str] = None, vlan_id: Optional[int] = None) -> types.VnicProfile:
        for profile in self._system.vnic_profiles_service().list():
            network = self.connection.follow_link(profile.network)
            network_vlan = network.vlan.id if network.vlan is not None else None
            if vlan_id is not None:
                if network_vlan == vlan_id:
                    return profile
            elif network.name == network_name:
                return profile
        wanted = f'VLAN {vlan_id}' if vlan_id is not None else f'network {network_name}'
        raise HypervisorError(f'No vNIC profile found for {wanted}')

    def add_adapter(self, name: str, adapter_name: str, switch_name: Optional[str]) -> None:
        with _sdk_errors(f'Adding adapter {adapter_name} to {name}'):
            nic = types.Nic(name=adapter_name)
            if switch_name:
                nic.vnic_profile = types.VnicProfile(id=self._profile_for(network_name=switch_name).id)
            self._vm_service(name).nics_service().add(nic)

    def remove_adapter(self, name: str, adapter_name: str) -> None:
        with _sdk_errors(f'Removing adapter {adapter_name} from {name}'):
            nics_service = self._vm_service(name).nics_service()
            nics_service.nic_service(self._find_nic(nics_service, adapter_name).id).remove()

    def set_adapter_mac(self, name: str, adapter_name: str, mac_address: str) -> None:
        with _sdk_errors(f'Setting MAC of {adapter_name} on {name}'):
            nics_service = self._vm_service(name).nics_service()
            nic = self._find_nic(nics_service, adapter_name)
            nics_service.nic_service(nic.id).update(types.Nic(mac=types.Mac(address=_format_mac(mac_address))))

    def set_adapter_vlan(self, name: str, adapter_name: str, policy: VlanPolicy) -> None:
        with _sdk_errors(f'Setting VLAN of {adapter_name} on {name}'):
            nics_service = self._vm_service(name).nics_service()
            nic = self._find_nic(nics_service, adapter_name)
            if policy.mode == VLAN_ACCESS:
                profile = self._profile_for(vlan_id=policy.vlan_id)
            elif policy.mode == VLAN_TRUNK:
                current = self.connection.follow_link(nic.vnic_profile) if nic.vnic_profile else None
                network = self.connection.follow_link(current.network) if current else None
                if network is not None and network.vlan is None:
                    logging.info(f'{adapter_name}: trunk {list(policy.allowed_vlan_ids)} carried by untagged network {network.name}')
                    return
                raise HypervisorError(f'Trunk on {adapter_name} needs an untagged network')
            else:
                return
            nics_service.nic_service(nic.id).update(types.Nic(vnic_profile=types.VnicProfile(id=profile.id)))

    def machine_folder(self, clone_root: str, record: ConfigurationRecord) -> Optional[str]:
        """Storage domain directory of the clone holding the VM's images.

        A cloned file storage domain has no per-VM folder; it is laid out as
        <sd uuid>/images/<disk id>/<image id>, image files without extension.
        """
        if not os.path.isdir(clone_root):
            return None
        for entry in sorted(os.listdir(clone_root)):
            domain_dir = os.path.join(clone_root, entry)
            if os.path.isdir(os.path.join(domain_dir, IMAGES_DIR)) and _domain_images(domain_dir, record):
                return domain_dir
        return None

    def machine_disk_files(self, folder: str, record: ConfigurationRecord) -> List[str]:
        return _domain_images(folder, record)

    def attach_disk(self, name: str, controller_type: str, controller_number: int,
                    controller_location: int, path: str) -> None:
        if not self.import_storage_domain:
            raise HypervisorError('No import storage domain configured for clone disks')

        image_id = ntpath.basename(path)
        with _sdk_errors(f'Attaching {image_id} to {name}'):
            domains = self._system.storage_domains_service().list(search=f'name={self.import_storage_domain}')
            domain = next((sd for sd in domains if sd.name == self.import_storage_domain), None)
            if domain is None:
                raise HypervisorError(f'Storage domain {self.import_storage_domain} not found')
            sd_disks_service = self._system.storage_domains_service().storage_domain_service(domain.id).disks_service()

            disk_id = None
            for disk in sd_disks_service.list():
                if image_id in (disk.image_id, disk.id):
                    disk_id = disk.id
                    break
            if disk_id is None:
                for disk in sd_disks_service.list(unregistered=True):
                    if image_id in (disk.image_id, disk.id):
                        sd_disks_service.add(types.Disk(id=disk.id), unregistered=True)
                        disk_id = disk.id
                        logging.info(f'Registered disk {disk.id} from {self.import_storage_domain}')
                        break
            if disk_id is None:
                raise HypervisorError(f'Disk image {image_id} not found on {self.import_storage_domain}')

            interface = types.DiskInterface.IDE if controller_type == 'IDE' else types.DiskInterface.VIRTIO_SCSI
            self._vm_service(name).disk_attachments_service().add(
                types.DiskAttachment(
                    disk=types.Disk(id=disk_id),
                    interface=interface,
                    bootable=controller_number == 0 and controller_location == 0,
                    active=True,
                )
            )


def _domain_images(domain_dir: str, record: ConfigurationRecord) -> List[str]:
    """Captured images of the record present under a storage domain directory"""
    found = []
    for disk in record.disks:
        # /<domain>/images/<disk id>/<image id>
        disk_id = ntpath.basename(ntpath.dirname(disk.path))
        image_path = os.path.join(domain_dir, IMAGES_DIR, disk_id, disk.file_name)
        if disk_id and os.path.isfile(image_path):
            found.append(image_path)
    return sorted(found)


def _format_mac(mac_address: str) -> str:
    """00155D010203 -> 00:15:5d:01:02:03; colon/dash forms are normalised"""
    digits = mac_address.replace(':', '').replace('-', '').lower()
    if len(digits) != 12:
        return mac_address
    return ':'.join(digits[i:i + 2] for i in range(0, 12, 2))


def build_ovirt_hypervisor(ovirt_settings: Dict, password: Optional[str] = None) -> OvirtHypervisor:
    config = ovirt_config_from_settings(ovirt_settings, password)
    with _sdk_errors(f"Connecting to {config['url']}"):
        connection = create_ovirt_connection(config)
    return OvirtHypervisor(
        connection,
        cluster_name=ovirt_settings.get('cluster', 'Default'),
        template_name=ovirt_settings.get('template', 'Blank'),
        import_storage_domain=ovirt_settings.get('import_storage_domain'),
        excluded_vms=ovirt_settings.get('excluded_vms', [DEFAULT_COORDINATION_RESOURCE]),
    )
