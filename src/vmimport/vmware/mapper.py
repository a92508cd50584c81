"""Translation of a VMware VM into a KubeVirt VirtualMachine spec."""

from __future__ import annotations

from typing import Optional

from vmimport.cluster import KUBEVIRT_API_VERSION, VIRTUAL_MACHINE
from vmimport.config import MappingItem, ResourceMapping
from vmimport.errors import PhaseFailedError
from vmimport.providers.base import Mapper, TransferDescriptor
from vmimport.utils.logging import get_logger
from vmimport.utils.naming import MAX_NAME_LENGTH, format_bytes, normalize_name
from vmimport.vmware.inventory import DiskInfo, VMInfo

logger = get_logger(__name__)

VM_NAME_PREFIX = "vmware-"
NETWORK_TYPE_POD = "pod"
NETWORK_TYPE_MULTUS = "multus"
VMWARE_DESCRIPTION = "vmware-description"
LABEL_TAGS = "tags"

BUS_TYPES = {"scsi": "scsi", "sata": "sata"}
DEFAULT_BUS = "sata"

BOOTLOADERS = {
    "efi": {"efi": {}},
    "bios": {"bios": {}},
}


def build_data_volume_name(target_vm_name: str, disk_id: str) -> str:
    """Name a disk's DataVolume ``<vm>-<disk id>``.

    The VM part is shortened first so the disk id always survives the
    63-character limit.
    """
    suffix = normalize_name(disk_id)
    room = MAX_NAME_LENGTH - len(suffix) - 1
    prefix = normalize_name(target_vm_name)[:room].rstrip("-") if room > 0 else ""
    if not prefix:
        return suffix
    return f"{prefix}-{suffix}"


def _template_spec(vm_spec: dict) -> dict:
    spec = vm_spec.setdefault("spec", {})
    template = spec.setdefault("template", {})
    template.setdefault("metadata", {})
    return template.setdefault("spec", {})


def _domain(vm_spec: dict) -> dict:
    return _template_spec(vm_spec).setdefault("domain", {})


class VmwareMapper(Mapper):
    """Maps one VMware VM, described by :class:`VMInfo`, onto target objects."""

    def __init__(self, vm: VMInfo, mappings: Optional[ResourceMapping], namespace: str):
        self.vm = vm
        self.mappings = mappings or ResourceMapping()
        self.namespace = namespace

    def resolve_vm_name(self, requested: Optional[str]) -> Optional[str]:
        if requested:
            return requested
        try:
            return normalize_name(self.vm.name)
        except ValueError as e:
            logger.warning(f"Cannot derive target name: {e}")
            return None

    def create_empty_vm(self, name: str) -> dict:
        return {
            "apiVersion": KUBEVIRT_API_VERSION,
            "kind": VIRTUAL_MACHINE,
            "metadata": {"labels": {"app": name}},
            "spec": {
                "template": {
                    "metadata": {
                        "labels": {
                            "kubevirt.io/domain": name,
                            "vm.kubevirt.io/name": name,
                        },
                    },
                    "spec": {"domain": {}},
                },
            },
        }

    def map_vm(self, target_name: Optional[str], vm_spec: dict) -> dict:
        meta = vm_spec.setdefault("metadata", {})
        meta["namespace"] = self.namespace
        if target_name is None:
            meta["generateName"] = VM_NAME_PREFIX
        else:
            meta["name"] = target_name

        template_spec = _template_spec(vm_spec)
        if self.vm.hostname:
            template_spec["hostname"] = self.vm.hostname

        domain = _domain(vm_spec)
        domain["cpu"] = self._map_cpu_topology()
        domain["firmware"] = self._map_firmware()
        self._map_memory(domain)
        clock = self._map_clock()
        if clock:
            domain["clock"] = clock

        meta["labels"] = self._map_labels(meta.get("labels"))
        annotations = meta.setdefault("annotations", {})
        annotations[VMWARE_DESCRIPTION] = self.vm.annotation

        networks = self._map_networks()
        template_spec["networks"] = networks
        network_types = {n["name"]: NETWORK_TYPE_MULTUS if "multus" in n else NETWORK_TYPE_POD
                         for n in networks if "multus" in n or "pod" in n}
        domain.setdefault("devices", {})["interfaces"] = self._map_interfaces(network_types)
        return vm_spec

    def map_data_volumes(self, target_name: str) -> dict[str, TransferDescriptor]:
        transfers = {}
        for disk in self.vm.disks:
            dv_name = build_data_volume_name(target_name, disk.id)
            if dv_name in transfers:
                raise PhaseFailedError(
                    f"Disks {transfers[dv_name].disk_id} and {disk.id} both map to data volume "
                    f"{self.namespace}/{dv_name}"
                )
            transfers[dv_name] = TransferDescriptor(
                name=dv_name,
                namespace=self.namespace,
                disk_id=disk.id,
                capacity=format_bytes(disk.capacity_bytes),
                bus=BUS_TYPES.get(disk.controller_type, DEFAULT_BUS),
                storage_class=self._storage_class_for(disk),
                source={"vddk": {"backingFile": disk.path, "uuid": self.vm.uuid}},
            )
        return transfers

    def map_disk(self, vm_spec: dict, transfer: TransferDescriptor) -> None:
        template_spec = _template_spec(vm_spec)
        volumes = template_spec.setdefault("volumes", [])
        disks = _domain(vm_spec).setdefault("devices", {}).setdefault("disks", [])

        volumes[:] = [v for v in volumes if v.get("name") != transfer.name]
        volumes.append({"name": transfer.name, "dataVolume": {"name": transfer.name}})

        existing = [d for d in disks if d.get("name") != transfer.name]
        disk = {"name": transfer.name, "disk": {"bus": transfer.bus}}
        if not any("bootOrder" in d for d in existing):
            disk["bootOrder"] = 1
        else:
            previous = next((d for d in disks if d.get("name") == transfer.name), None)
            if previous and "bootOrder" in previous:
                disk["bootOrder"] = previous["bootOrder"]
        disks[:] = existing + [disk]

    # ─── helpers ─────────────────────────────────────────────────────

    def _storage_class_for(self, disk: DiskInfo) -> Optional[str]:
        for mapping in self.mappings.disk_mappings:
            if mapping.source.matches(disk.id, disk.label) and mapping.target:
                return mapping.target
        for mapping in self.mappings.storage_mappings:
            if mapping.source.matches(disk.datastore_id, disk.datastore) and mapping.target:
                return mapping.target
        return None

    def _map_cpu_topology(self) -> dict:
        cores = self.vm.cores_per_socket or 1
        return {"sockets": max(self.vm.cpu // cores, 1), "cores": cores}

    def _map_memory(self, domain: dict) -> None:
        resources = domain.setdefault("resources", {})
        requests = resources.setdefault("requests", {})
        if self.vm.memory_reservation_mb:
            # the guest keeps its configured size; only the reservation is requested
            domain.setdefault("memory", {})["guest"] = f"{self.vm.memory_mb}Mi"
            requests["memory"] = f"{self.vm.memory_reservation_mb}Mi"
        else:
            requests["memory"] = f"{self.vm.memory_mb}Mi"
        if self.vm.memory_limit_mb:
            resources.setdefault("limits", {})["memory"] = f"{self.vm.memory_limit_mb}Mi"

    def _map_clock(self) -> Optional[dict]:
        if self.vm.host_gmt_offset is None:
            return None
        return {"utc": {"offsetSeconds": self.vm.host_gmt_offset}, "timer": {}}

    def _map_firmware(self) -> dict:
        firmware = {"serial": self.vm.uuid}
        bootloader = BOOTLOADERS.get(self.vm.firmware)
        if bootloader:
            firmware["bootloader"] = dict(bootloader)
        return firmware

    def _map_labels(self, labels: Optional[dict]) -> dict:
        labels = dict(labels or {})
        labels[LABEL_TAGS] = ",".join(self.vm.tags)
        return labels

    def _network_mapping(self, network: str) -> Optional[MappingItem]:
        for mapping in self.mappings.network_mappings:
            if mapping.source.matches(None, network):
                return mapping
        return None

    def _map_networks(self) -> list[dict]:
        networks = []
        for nic in self.vm.nics:
            net = {"name": normalize_name(nic.network or "default")}
            mapping = self._network_mapping(nic.network)
            if mapping is not None:
                if mapping.type == NETWORK_TYPE_POD:
                    net["pod"] = {}
                elif mapping.type == NETWORK_TYPE_MULTUS:
                    net["multus"] = {"networkName": mapping.target}
            networks.append(net)
        return networks

    def _map_interfaces(self, network_types: dict[str, str]) -> list[dict]:
        interfaces = []
        for nic in self.vm.nics:
            name = normalize_name(nic.network or "default")
            iface = {"name": name, "macAddress": nic.mac_address}
            if network_types.get(name) == NETWORK_TYPE_MULTUS:
                iface["bridge"] = {}
            elif network_types.get(name) == NETWORK_TYPE_POD:
                iface["masquerade"] = {}
            interfaces.append(iface)
        return interfaces
