"""Shared fixtures: an in-memory cluster, a sample VMware VM and a fake provider."""

from typing import Optional

import pytest

from vmimport.cluster import ClusterError, InMemoryCluster
from vmimport.config import EngineSettings, MappingItem, MigrationRequest, ResourceMapping, SourceRef
from vmimport.errors import TemplateNotFoundError
from vmimport.providers.base import Provider, ValidationCheck, VMStatus
from vmimport.vmware.inventory import DiskInfo, NICInfo, VMInfo
from vmimport.vmware.mapper import VmwareMapper

GiB = 1024 ** 3


def make_vm_info(**overrides) -> VMInfo:
    values = dict(
        id="vm-2782",
        name="Web Server 01",
        uuid="4213b0a6-1e0b-4d5b-8a07-6b3c2d4f9e10",
        cpu=4,
        cores_per_socket=2,
        memory_mb=8192,
        power_state="poweredOn",
        guest_id="rhel8_64Guest",
        guest_full_name="Red Hat Enterprise Linux 8 (64-bit)",
        firmware="efi",
        hostname="web01.example.com",
        annotation="front-end",
        tags=["production", "web"],
        disks=[
            DiskInfo(id="disk-202", label="Hard disk 1", capacity_bytes=20 * GiB, controller_type="scsi",
                     datastore="ds-fast", datastore_id="datastore-11", path="[ds-fast] web01/web01.vmdk"),
            DiskInfo(id="disk-203", label="Hard disk 2", capacity_bytes=100 * GiB, controller_type="sata",
                     datastore="ds-bulk", datastore_id="datastore-12", path="[ds-bulk] web01/web01_1.vmdk"),
        ],
        nics=[NICInfo(mac_address="00:50:56:aa:bb:cc", network="VM Network")],
    )
    values.update(overrides)
    return VMInfo(**values)


class LockedCluster(InMemoryCluster):
    """In-memory cluster that refuses to delete the named objects."""

    def __init__(self, locked, objects=None):
        self.locked = set(locked)
        super().__init__(objects)

    def delete(self, kind, namespace, name):
        if name in self.locked:
            raise ClusterError(f"{kind} {namespace}/{name} is locked")
        super().delete(kind, namespace, name)


class FakeProvider(Provider):
    """Scriptable provider that records the source-side calls it receives."""

    def __init__(self, vm_info: Optional[VMInfo] = None, namespace: str = "default"):
        self.vm_info = vm_info or make_vm_info()
        self.namespace = namespace
        self.vm_status = VMStatus.UP
        self.template: Optional[dict] = None
        self.disk_ok = True
        self.stop_error: Optional[Exception] = None
        self.clean_up_error: Optional[Exception] = None
        self.calls: list[str] = []

    def init(self, credentials, request):
        self.calls.append("init")

    def test_connection(self):
        self.calls.append("test_connection")

    def load_vm(self, source):
        self.calls.append("load_vm")

    def prepare_resource_mapping(self, external, source):
        self.calls.append("prepare_resource_mapping")

    def validate(self):
        return [ValidationCheck("Disks", True, "ok")]

    def validate_disk_status(self, disk_id):
        return self.disk_ok

    def stop_vm(self):
        self.calls.append("stop_vm")
        if self.stop_error:
            raise self.stop_error

    def start_vm(self):
        self.calls.append("start_vm")

    def get_vm_status(self):
        self.calls.append("get_vm_status")
        return self.vm_status

    def get_vm_name(self):
        return self.vm_info.name

    def clean_up(self, failed):
        self.calls.append(f"clean_up(failed={failed})")
        if self.clean_up_error:
            raise self.clean_up_error

    def find_template(self):
        if self.template is None:
            raise TemplateNotFoundError("no template labelled for 'rhel8'")
        return self.template

    def process_template(self, template, target_name, namespace):
        vm = {"metadata": {"name": target_name, "namespace": namespace}, "spec": {"template": {"spec": {}}}}
        return vm

    def create_mapper(self):
        return VmwareMapper(self.vm_info, ResourceMapping(), self.namespace)

    def close(self):
        self.calls.append("close")


@pytest.fixture
def cluster():
    return InMemoryCluster()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def settings():
    return EngineSettings(import_without_template=True)


@pytest.fixture
def migration_request():
    return MigrationRequest(
        name="import-web01",
        namespace="default",
        uid="7f3c9a52-0d1e-4b8e-9a44-3f1d2c5b6a70",
        source={"id": "vm-2782"},
        target_vm_name="web01",
        mappings=ResourceMapping(
            storage_mappings=[MappingItem(source=SourceRef(name="ds-fast"), target="fast-ssd")],
        ),
    )


