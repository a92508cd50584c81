"""Capability interfaces implemented by each source hypervisor.

The task engine only ever talks to a source through :class:`Provider` and
to the spec translation through :class:`Mapper`.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from vmimport.cluster import CDI_API_VERSION, DATA_VOLUME

if TYPE_CHECKING:
    from vmimport.config import MigrationRequest, ResourceMapping


class VMStatus(str, Enum):
    """Power state of a source VM as the engine sees it."""
    UP = "up"
    DOWN = "down"


@dataclass
class ValidationCheck:
    """Result of a single validation check."""
    name: str
    passed: bool
    message: str
    blocking: bool = True  # If False, it's a warning not an error


@dataclass
class TransferDescriptor:
    """One disk copy from source storage into a target DataVolume."""
    name: str
    namespace: str
    disk_id: str
    capacity: str                  # Kubernetes quantity, e.g. "20Gi"
    bus: str = "virtio"
    storage_class: Optional[str] = None
    source: dict[str, Any] = field(default_factory=dict)

    def to_manifest(self) -> dict:
        """Render the DataVolume object that performs this transfer."""
        pvc: dict[str, Any] = {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": self.capacity}},
        }
        if self.storage_class:
            pvc["storageClassName"] = self.storage_class
        return {
            "apiVersion": CDI_API_VERSION,
            "kind": DATA_VOLUME,
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "annotations": {"vmimport.kubevirt.io/source-disk-id": self.disk_id},
            },
            "spec": {"source": dict(self.source), "pvc": pvc},
        }


class Mapper(metaclass=abc.ABCMeta):
    """Translates a source VM into target VM spec fragments."""

    @abc.abstractmethod
    def resolve_vm_name(self, requested: Optional[str]) -> Optional[str]:
        """Return the requested name, or one derived from the source VM."""
        raise NotImplementedError

    @abc.abstractmethod
    def create_empty_vm(self, name: str) -> dict:
        """Return a blank target VM spec."""
        raise NotImplementedError

    @abc.abstractmethod
    def map_vm(self, target_name: Optional[str], vm_spec: dict) -> dict:
        """Fill ``vm_spec`` with attributes of the source VM."""
        raise NotImplementedError

    @abc.abstractmethod
    def map_data_volumes(self, target_name: str) -> dict[str, TransferDescriptor]:
        """Return the disk transfers the target VM needs, keyed by DataVolume name."""
        raise NotImplementedError

    @abc.abstractmethod
    def map_disk(self, vm_spec: dict, transfer: TransferDescriptor) -> None:
        """Attach a transfer's volume to the target VM spec."""
        raise NotImplementedError


class Provider(metaclass=abc.ABCMeta):
    """Hypervisor-specific operations on the source VM."""

    @abc.abstractmethod
    def init(self, credentials: dict[str, str], request: "MigrationRequest") -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def test_connection(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def load_vm(self, source: dict[str, Any]) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def prepare_resource_mapping(
        self, external: Optional["ResourceMapping"], source: dict[str, Any]
    ) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def validate(self) -> list[ValidationCheck]:
        raise NotImplementedError

    @abc.abstractmethod
    def validate_disk_status(self, disk_id: str) -> bool:
        """Return True when the disk can be transferred right now."""
        raise NotImplementedError

    @abc.abstractmethod
    def stop_vm(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def start_vm(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def get_vm_status(self) -> VMStatus:
        raise NotImplementedError

    @abc.abstractmethod
    def get_vm_name(self) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def clean_up(self, failed: bool) -> None:
        """Delete per-migration leftovers; on failure also roll back created objects.

        Raises:
            CleanUpError: With every sub-failure folded into one message
        """
        raise NotImplementedError

    @abc.abstractmethod
    def find_template(self) -> dict:
        """Raises TemplateNotFoundError when nothing matches."""
        raise NotImplementedError

    @abc.abstractmethod
    def process_template(self, template: dict, target_name: Optional[str], namespace: str) -> dict:
        raise NotImplementedError

    @abc.abstractmethod
    def create_mapper(self) -> Mapper:
        raise NotImplementedError

    def close(self) -> None:
        """Release the source connection (no-op by default)."""
        pass
