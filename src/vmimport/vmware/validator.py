"""Pre-import compatibility checks for VMware source VMs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from vmimport.providers.base import ValidationCheck
from vmimport.utils.logging import get_logger

if TYPE_CHECKING:
    from vmimport.vmware.inventory import VMInfo

logger = get_logger(__name__)

SUPPORTED_CONTROLLERS = {"scsi", "sata"}
SUPPORTED_FIRMWARE = {"bios", "efi"}


@dataclass
class ValidationReport:
    """All check results for one source VM."""
    vm_name: str
    checks: list[ValidationCheck] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks if c.blocking)

    @property
    def warnings(self) -> list[ValidationCheck]:
        return [c for c in self.checks if not c.blocking and not c.passed]


class VmwareValidator:
    """Runs independent checks against a VM description.

    Each check produces a pass/fail with a message; non-blocking checks are
    reported as warnings only.
    """

    def validate(self, vm_info: "VMInfo", warm: bool = False) -> ValidationReport:
        report = ValidationReport(vm_name=vm_info.name)
        checks = [
            self._check_disks_present,
            self._check_disk_controllers,
            self._check_firmware,
            self._check_snapshots,
            self._check_nics,
        ]
        for check_fn in checks:
            report.checks.append(check_fn(vm_info))
        report.checks.append(self._check_power_state(vm_info, warm))

        failed = [c.name for c in report.checks if c.blocking and not c.passed]
        if failed:
            logger.warning(f"VM '{vm_info.name}' failed checks: {', '.join(failed)}")
        return report

    def _check_disks_present(self, vm: "VMInfo") -> ValidationCheck:
        if vm.disks:
            total_gb = sum(d.capacity_bytes for d in vm.disks) / (1024 ** 3)
            return ValidationCheck("Disks", True, f"{len(vm.disks)} disk(s), {total_gb:.1f}GB total")
        return ValidationCheck("Disks", False, "VM has no virtual disks to import")

    def _check_disk_controllers(self, vm: "VMInfo") -> ValidationCheck:
        unsupported = sorted({d.controller_type for d in vm.disks} - SUPPORTED_CONTROLLERS)
        if not unsupported:
            return ValidationCheck("Disk controllers", True, "All disks on SCSI/SATA controllers")
        return ValidationCheck(
            "Disk controllers", False,
            f"Controller type(s) {', '.join(unsupported)} will be attached as SATA",
            blocking=False,
        )

    def _check_firmware(self, vm: "VMInfo") -> ValidationCheck:
        if vm.firmware in SUPPORTED_FIRMWARE:
            return ValidationCheck("Firmware", True, vm.firmware.upper())
        return ValidationCheck("Firmware", False, f"Unknown firmware '{vm.firmware}'")

    def _check_snapshots(self, vm: "VMInfo") -> ValidationCheck:
        if vm.snapshots == 0:
            return ValidationCheck("Snapshots", True, "No snapshots")
        return ValidationCheck(
            "Snapshots", False,
            f"VM has {vm.snapshots} snapshot tree(s); only the current disk state is imported",
            blocking=False,
        )

    def _check_nics(self, vm: "VMInfo") -> ValidationCheck:
        missing = [n.mac_address for n in vm.nics if not n.network]
        if not missing:
            return ValidationCheck("Networks", True, f"{len(vm.nics)} NIC(s)")
        return ValidationCheck(
            "Networks", False,
            f"NIC(s) {', '.join(missing)} are not attached to a network",
            blocking=False,
        )

    def _check_power_state(self, vm: "VMInfo", warm: bool) -> ValidationCheck:
        if warm and not vm.powered_on:
            return ValidationCheck(
                "Power state", False, "Warm import expects a running source VM", blocking=False
            )
        return ValidationCheck("Power state", True, vm.power_state)
