"""VMware VM description collection and data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from pyVmomi import vim

from vmimport.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class DiskInfo:
    """Information about a VM disk."""
    id: str
    label: str
    capacity_bytes: int
    controller_type: str     # "scsi", "sata", "nvme", "ide"
    datastore: str = ""
    datastore_id: str = ""
    path: str = ""           # e.g. "[datastore1] vm/vm.vmdk"
    key: int = 0             # vSphere device key


@dataclass
class NICInfo:
    """Information about a VM network adapter."""
    mac_address: str
    network: str


@dataclass
class VMInfo:
    """The parts of a VMware VM a migration needs."""
    id: str
    name: str
    uuid: str
    cpu: int
    cores_per_socket: int
    memory_mb: int
    power_state: str
    guest_id: str              # VMware guest OS ID (e.g. "ubuntu64Guest")
    guest_full_name: Optional[str]
    firmware: str              # "bios" | "efi"
    hostname: str = ""
    annotation: str = ""
    tags: list[str] = field(default_factory=list)
    disks: list[DiskInfo] = field(default_factory=list)
    nics: list[NICInfo] = field(default_factory=list)
    snapshots: int = 0
    memory_reservation_mb: Optional[int] = None
    memory_limit_mb: Optional[int] = None   # None when unlimited
    host_gmt_offset: Optional[int] = None   # seconds east of UTC of the ESXi host

    @property
    def powered_on(self) -> bool:
        return self.power_state == "poweredOn"


def extract_vm_info(vm: vim.VirtualMachine) -> VMInfo:
    """Extract all relevant information from a VM managed object."""
    config = vm.config
    runtime = vm.runtime

    info = VMInfo(
        id=vm._moId,
        name=vm.name,
        uuid=config.instanceUuid if config else "",
        cpu=config.hardware.numCPU if config else 0,
        cores_per_socket=config.hardware.numCoresPerSocket if config else 0,
        memory_mb=config.hardware.memoryMB if config else 0,
        power_state=str(runtime.powerState) if runtime else "unknown",
        guest_id=config.guestId if config else "unknown",
        guest_full_name=config.guestFullName if config else None,
        firmware=config.firmware if config and hasattr(config, "firmware") else "bios",
        annotation=config.annotation if config and config.annotation else "",
    )

    if vm.guest:
        info.hostname = vm.guest.hostName or ""
    if vm.tag:
        info.tags = [tag.key for tag in vm.tag]
    if config and config.hardware:
        info.disks = _extract_disks(config.hardware.device)
        info.nics = _extract_nics(config.hardware.device)
    if vm.snapshot and vm.snapshot.rootSnapshotList:
        info.snapshots = len(vm.snapshot.rootSnapshotList)
    _extract_memory_allocation(vm, info)
    info.host_gmt_offset = _host_gmt_offset(runtime)

    return info


def _extract_memory_allocation(vm: vim.VirtualMachine, info: VMInfo) -> None:
    allocation = getattr(vm.resourceConfig, "memoryAllocation", None) if vm.resourceConfig else None
    if allocation is None:
        return
    if allocation.reservation:
        info.memory_reservation_mb = allocation.reservation
    # -1 means unlimited
    if allocation.limit is not None and allocation.limit >= 0:
        info.memory_limit_mb = allocation.limit


def _host_gmt_offset(runtime) -> Optional[int]:
    try:
        return runtime.host.config.dateTimeInfo.timeZone.gmtOffset
    except AttributeError:
        logger.debug("Host time zone not available")
        return None


def _extract_disks(devices: list) -> list[DiskInfo]:
    """Extract disk information from VM hardware devices."""
    disks = []
    controllers = {}

    # First pass: map controller keys to types
    for device in devices:
        if isinstance(device, vim.vm.device.VirtualSCSIController):
            controllers[device.key] = "scsi"
        elif isinstance(device, vim.vm.device.VirtualSATAController):
            controllers[device.key] = "sata"
        elif isinstance(device, vim.vm.device.VirtualNVMEController):
            controllers[device.key] = "nvme"
        elif isinstance(device, vim.vm.device.VirtualIDEController):
            controllers[device.key] = "ide"

    # Second pass: extract disk info
    for device in devices:
        if not isinstance(device, vim.vm.device.VirtualDisk):
            continue
        backing = device.backing
        label = device.deviceInfo.label if device.deviceInfo else f"disk-{device.key}"

        if getattr(device, "vDiskId", None) and device.vDiskId.id:
            disk_id = device.vDiskId.id
        elif getattr(device, "diskObjectId", None):
            disk_id = device.diskObjectId
        else:
            disk_id = label

        capacity = device.capacityInBytes or device.capacityInKB * 1024
        datastore = getattr(backing, "datastore", None)

        disks.append(DiskInfo(
            id=disk_id,
            label=label,
            capacity_bytes=capacity,
            controller_type=controllers.get(device.controllerKey, "unknown"),
            datastore=datastore.name if datastore else "",
            datastore_id=datastore._moId if datastore else "",
            path=getattr(backing, "fileName", ""),
            key=device.key,
        ))

    return disks


def _extract_nics(devices: list) -> list[NICInfo]:
    """Extract NIC information from VM hardware devices."""
    nics = []
    for device in devices:
        if not isinstance(device, vim.vm.device.VirtualEthernetCard):
            continue
        network = ""
        if hasattr(device.backing, "network") and device.backing.network:
            network = device.backing.network.name
        elif hasattr(device.backing, "port"):
            network = f"dvs-{device.backing.port.portgroupKey}"
        nics.append(NICInfo(mac_address=device.macAddress or "", network=network))
    return nics
