"""Tests for the VMware provider, template lookup and validation.

The vCenter connection is replaced by a stub client; VM descriptions come
from ``make_vm_info`` instead of pyVmomi managed objects.
"""

import pytest
import yaml

from conftest import LockedCluster, make_vm_info

from vmimport.cluster import (
    CONFIG_MAP,
    DATA_VOLUME,
    SECRET,
    TEMPLATE,
    TRACKER_LABEL,
    VIRTUAL_MACHINE,
    ClusterError,
    InMemoryCluster,
)
from vmimport.config import MigrationRequest
from vmimport.errors import CleanUpError, TemplateNotFoundError, UnsupportedProviderError
from vmimport.providers.base import VMStatus
from vmimport.providers.factory import get_provider
from vmimport.vmware.inventory import DiskInfo
from vmimport.vmware.provider import VmwareProvider
from vmimport.vmware.templates import TemplateFinder, find_operating_system
from vmimport.vmware.validator import VmwareValidator

CREDENTIALS = {"vmware": yaml.safe_dump({"apiUrl": "vc.local", "username": "admin", "password": "pw"})}


class StubClient:
    def __init__(self):
        self.connected = False
        self.calls = []

    def connect(self, host, username, password, port=443, insecure=False):
        self.calls.append(("connect", host, username, password))
        self.connected = True

    def disconnect(self):
        self.calls.append(("disconnect",))
        self.connected = False

    def session_alive(self):
        return self.connected

    def get_vm_by_id(self, moref_id):
        self.calls.append(("get_vm_by_id", moref_id))
        return object()

    def get_vm_by_name(self, name):
        self.calls.append(("get_vm_by_name", name))
        return object()

    def power_on(self, vm):
        self.calls.append(("power_on",))

    def power_off(self, vm):
        self.calls.append(("power_off",))


def tracked(kind, name, request):
    return {
        "kind": kind,
        "metadata": {
            "name": name,
            "namespace": request.namespace,
            "labels": {TRACKER_LABEL: f"{request.namespace}-{request.name}"},
        },
    }


@pytest.fixture
def stub_client():
    return StubClient()


@pytest.fixture
def vmware_provider(migration_request, cluster, stub_client, monkeypatch):
    monkeypatch.setattr("vmimport.vmware.provider.extract_vm_info", lambda vm: make_vm_info())
    provider = VmwareProvider(migration_request, cluster, client=stub_client)
    provider.init(CREDENTIALS, migration_request)
    return provider


# ═══════════════════════════════════════════════════════════════════
#  Provider
# ═══════════════════════════════════════════════════════════════════

class TestVmwareProvider:
    def test_init_reads_yaml_credentials(self, vmware_provider):
        assert vmware_provider.config.vcenter == "vc.local"
        assert vmware_provider.config.password.get_secret_value() == "pw"

    def test_init_rejects_non_mapping(self, migration_request, cluster):
        provider = VmwareProvider(migration_request, cluster, client=StubClient())
        with pytest.raises(ValueError):
            provider.init({"vmware": "- a\n- b\n"}, migration_request)

    def test_lazy_connect_and_lookup_by_id(self, vmware_provider, stub_client):
        assert vmware_provider.get_vm_name() == "Web Server 01"
        assert stub_client.calls[:2] == [("connect", "vc.local", "admin", "pw"), ("get_vm_by_id", "vm-2782")]

    def test_lookup_by_name(self, vmware_provider, stub_client):
        vmware_provider.load_vm({"name": "Web Server 01"})
        assert ("get_vm_by_name", "Web Server 01") in stub_client.calls

    def test_lookup_needs_reference(self, vmware_provider):
        with pytest.raises(ValueError):
            vmware_provider.load_vm({})

    def test_power(self, vmware_provider, stub_client):
        assert vmware_provider.get_vm_status() is VMStatus.UP
        vmware_provider.stop_vm()
        vmware_provider.start_vm()
        assert [c[0] for c in stub_client.calls if c[0].startswith("power")] == ["power_off", "power_on"]

    def test_validate_disk_status(self, vmware_provider):
        assert vmware_provider.validate_disk_status("disk-202")
        assert not vmware_provider.validate_disk_status("disk-999")

    def test_mapper_uses_merged_mappings(self, vmware_provider):
        vmware_provider.prepare_resource_mapping(None, {"id": "vm-2782"})
        transfers = vmware_provider.create_mapper().map_data_volumes("web01")
        assert transfers["web01-disk-202"].storage_class == "fast-ssd"

    def test_close_disconnects(self, vmware_provider, stub_client):
        vmware_provider.test_connection()
        vmware_provider.close()
        assert stub_client.calls[-1] == ("disconnect",)


class TestCleanUp:
    @pytest.fixture
    def populated(self, migration_request, cluster):
        for kind in (SECRET, CONFIG_MAP, DATA_VOLUME, VIRTUAL_MACHINE):
            cluster.create(tracked(kind, "web01", migration_request))
        cluster.create({"kind": SECRET, "metadata": {"name": "unrelated", "namespace": "default"}})
        return cluster

    def test_success_keeps_imported_objects(self, vmware_provider, populated):
        vmware_provider.clean_up(failed=False)
        assert populated.list(SECRET, "default")[0]["metadata"]["name"] == "unrelated"
        assert populated.list(CONFIG_MAP, "default") == []
        assert len(populated.list(DATA_VOLUME, "default")) == 1
        assert len(populated.list(VIRTUAL_MACHINE, "default")) == 1

    def test_failure_rolls_back(self, vmware_provider, populated):
        vmware_provider.clean_up(failed=True)
        assert populated.list(DATA_VOLUME, "default") == []
        assert populated.list(VIRTUAL_MACHINE, "default") == []

    def test_rollback_continues_past_locked_volume(self, migration_request, stub_client, monkeypatch):
        monkeypatch.setattr("vmimport.vmware.provider.extract_vm_info", lambda vm: make_vm_info())
        cluster = LockedCluster({"web01-disk-202"})
        for name in ("web01-disk-202", "web01-disk-203"):
            cluster.create(tracked(DATA_VOLUME, name, migration_request))
        cluster.create(tracked(VIRTUAL_MACHINE, "web01", migration_request))
        provider = VmwareProvider(migration_request, cluster, client=stub_client)
        provider.init(CREDENTIALS, migration_request)

        with pytest.raises(CleanUpError, match="DataVolume default/web01-disk-202 is locked"):
            provider.clean_up(failed=True)
        assert [dv["metadata"]["name"] for dv in cluster.list(DATA_VOLUME, "default")] == ["web01-disk-202"]
        assert cluster.list(VIRTUAL_MACHINE, "default") == []

    def test_errors_folded(self, vmware_provider, populated, monkeypatch):
        def broken(kind, namespace, labels):
            raise ClusterError(f"cannot delete {kind}")
        monkeypatch.setattr(populated, "delete_collection", broken)

        with pytest.raises(CleanUpError) as exc:
            vmware_provider.clean_up(failed=False)
        assert str(exc.value) == (
            "clean-up for default/import-web01 failed: cannot delete Secret; cannot delete ConfigMap"
        )


# ═══════════════════════════════════════════════════════════════════
#  Templates
# ═══════════════════════════════════════════════════════════════════

RHEL8_TEMPLATE = {
    "kind": TEMPLATE,
    "metadata": {
        "name": "rhel8-server-medium",
        "namespace": "openshift",
        "labels": {"os.template.kubevirt.io/rhel8": "true", "workload.template.kubevirt.io/server": "true"},
    },
    "parameters": [{"name": "NAME"}, {"name": "MEMORY", "value": "4Gi"}],
    "objects": [{
        "apiVersion": "kubevirt.io/v1",
        "kind": "VirtualMachine",
        "metadata": {"name": "${NAME}", "labels": {"app": "${NAME}"}},
        "spec": {"template": {"spec": {"domain": {"resources": {"requests": {"memory": "${MEMORY}"}}}}}},
    }],
}


class TestTemplates:
    @pytest.mark.parametrize("guest_id,expected", [
        ("rhel8_64Guest", "rhel8"),
        ("windows2019srv_64Guest", "win2k19"),
        ("otherLinux64Guest", "rhel8"),
        ("winNetStandardGuest", "windows"),
    ])
    def test_find_operating_system(self, guest_id, expected):
        assert find_operating_system(make_vm_info(guest_id=guest_id)) == expected

    def test_unknown_os(self):
        with pytest.raises(TemplateNotFoundError):
            find_operating_system(make_vm_info(guest_id="solaris11_64Guest"))

    def test_find(self):
        finder = TemplateFinder(InMemoryCluster([RHEL8_TEMPLATE]))
        assert finder.find(make_vm_info())["metadata"]["name"] == "rhel8-server-medium"

    def test_find_missing(self):
        finder = TemplateFinder(InMemoryCluster([RHEL8_TEMPLATE]))
        with pytest.raises(TemplateNotFoundError):
            finder.find(make_vm_info(guest_id="ubuntu64Guest"))

    def test_process(self):
        finder = TemplateFinder(InMemoryCluster())
        vm = finder.process(RHEL8_TEMPLATE, "web01", "prod", make_vm_info())

        assert vm["metadata"]["name"] == "web01"
        assert vm["metadata"]["namespace"] == "prod"
        assert vm["metadata"]["labels"]["app"] == "web01"
        assert vm["metadata"]["labels"]["vm.kubevirt.io/template"] == "rhel8-server-medium"
        assert vm["spec"]["template"]["metadata"]["labels"]["os.template.kubevirt.io/rhel8"] == "true"
        assert vm["spec"]["template"]["spec"]["domain"]["resources"]["requests"]["memory"] == "4Gi"
        # the template itself is untouched
        assert RHEL8_TEMPLATE["objects"][0]["metadata"]["name"] == "${NAME}"

    def test_process_without_vm(self):
        finder = TemplateFinder(InMemoryCluster())
        with pytest.raises(ValueError):
            finder.process({"metadata": {"name": "empty"}, "objects": []}, "web01", "prod", make_vm_info())


# ═══════════════════════════════════════════════════════════════════
#  Validation
# ═══════════════════════════════════════════════════════════════════

class TestValidator:
    def test_clean_vm_passes(self):
        report = VmwareValidator().validate(make_vm_info())
        assert report.passed
        assert report.warnings == []

    def test_no_disks_blocks(self):
        report = VmwareValidator().validate(make_vm_info(disks=[]))
        assert not report.passed

    def test_warnings_do_not_block(self):
        info = make_vm_info(snapshots=2, power_state="poweredOff")
        info.disks.append(DiskInfo(id="disk-204", label="Hard disk 3", capacity_bytes=1024, controller_type="ide"))
        report = VmwareValidator().validate(info, warm=True)

        assert report.passed
        assert sorted(c.name for c in report.warnings) == ["Disk controllers", "Power state", "Snapshots"]


# ═══════════════════════════════════════════════════════════════════
#  Factory
# ═══════════════════════════════════════════════════════════════════

class TestFactory:
    def test_vmware(self, cluster):
        provider = get_provider(MigrationRequest(name="a", source_type="VMware"), cluster)
        assert isinstance(provider, VmwareProvider)

    def test_ovirt_not_bundled(self, cluster):
        with pytest.raises(UnsupportedProviderError, match="no bundled provider"):
            get_provider(MigrationRequest(name="a", source_type="ovirt"), cluster)

    def test_unknown(self, cluster):
        with pytest.raises(UnsupportedProviderError, match="Unknown source type"):
            get_provider(MigrationRequest(name="a", source_type="hyperv"), cluster)
