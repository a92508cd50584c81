"""VMware implementation of the source provider capability."""

from __future__ import annotations

from typing import Any, Optional

import yaml

from vmimport.cluster import (
    CONFIG_MAP,
    DATA_VOLUME,
    SECRET,
    TRACKER_LABEL,
    VIRTUAL_MACHINE,
    ClusterError,
    TargetCluster,
    tracker_label,
)
from vmimport.config import MigrationRequest, ResourceMapping, VMwareConfig
from vmimport.errors import CleanUpError
from vmimport.providers.base import Mapper, Provider, ValidationCheck, VMStatus
from vmimport.utils.logging import get_logger
from vmimport.utils.naming import fold_errors, loggable_name
from vmimport.vmware.client import VSphereClient
from vmimport.vmware.inventory import VMInfo, extract_vm_info
from vmimport.vmware.mapper import VmwareMapper
from vmimport.vmware.templates import TEMPLATE_NAMESPACE, TemplateFinder
from vmimport.vmware.validator import VmwareValidator

logger = get_logger(__name__)

VMWARE_SECRET_KEY = "vmware"


class VmwareProvider(Provider):
    """Source provider backed by a vCenter connection.

    The VM managed object and its description are fetched lazily and cached
    for the lifetime of one engine invocation.
    """

    def __init__(
        self,
        request: MigrationRequest,
        cluster: TargetCluster,
        client: Optional[VSphereClient] = None,
        template_namespace: str = TEMPLATE_NAMESPACE,
    ):
        self.request = request
        self.cluster = cluster
        self.client = client or VSphereClient()
        self.templates = TemplateFinder(cluster, template_namespace)
        self.config: Optional[VMwareConfig] = None
        self.resource_mapping: Optional[ResourceMapping] = None
        self._vm = None
        self._vm_info: Optional[VMInfo] = None

    # ─── Connection ──────────────────────────────────────────────────

    def init(self, credentials: dict[str, str], request: MigrationRequest) -> None:
        data = yaml.safe_load(credentials.get(VMWARE_SECRET_KEY, "")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Secret key '{VMWARE_SECRET_KEY}' does not hold a YAML mapping")
        self.config = VMwareConfig.from_secret(data)
        self.request = request

    def _connected_client(self) -> VSphereClient:
        if not self.client.connected:
            if self.config is None:
                raise ConnectionError("Provider was not initialized with credentials")
            self.client.connect(
                host=self.config.vcenter,
                username=self.config.username,
                password=self.config.password.get_secret_value(),
                port=self.config.port,
                insecure=self.config.insecure,
            )
        return self.client

    def test_connection(self) -> None:
        client = self._connected_client()
        if not client.session_alive():
            raise ConnectionError(f"vCenter session to {self.config.vcenter} is not authenticated")

    def close(self) -> None:
        self.client.disconnect()

    # ─── Source VM ───────────────────────────────────────────────────

    def load_vm(self, source: dict[str, Any]) -> None:
        client = self._connected_client()
        if source.get("id"):
            self._vm = client.get_vm_by_id(source["id"])
        elif source.get("name"):
            self._vm = client.get_vm_by_name(source["name"])
        else:
            raise ValueError("Source VM reference needs an 'id' or a 'name'")
        self._vm_info = None

    def _get_vm(self):
        if self._vm is None:
            self.load_vm(self.request.source)
        return self._vm

    def vm_info(self) -> VMInfo:
        if self._vm_info is None:
            self._vm_info = extract_vm_info(self._get_vm())
        return self._vm_info

    def prepare_resource_mapping(
        self, external: Optional[ResourceMapping], source: dict[str, Any]
    ) -> None:
        inline = source.get("mappings")
        if isinstance(inline, dict):
            inline = ResourceMapping(**inline)
        self.resource_mapping = ResourceMapping.merge(external, inline or self.request.mappings)

    def validate(self) -> list[ValidationCheck]:
        return VmwareValidator().validate(self.vm_info(), warm=self.request.warm).checks

    def validate_disk_status(self, disk_id: str) -> bool:
        # vSphere exposes no lock state for a disk; it only has to exist
        return any(d.id == disk_id for d in self.vm_info().disks)

    def stop_vm(self) -> None:
        self._connected_client().power_off(self._get_vm())

    def start_vm(self) -> None:
        self._connected_client().power_on(self._get_vm())

    def get_vm_status(self) -> VMStatus:
        if self.vm_info().powered_on:
            return VMStatus.UP
        return VMStatus.DOWN

    def get_vm_name(self) -> str:
        return self.vm_info().name

    # ─── Target side ─────────────────────────────────────────────────

    def clean_up(self, failed: bool) -> None:
        namespace = self.request.namespace
        labels = {TRACKER_LABEL: tracker_label(self.request.name, namespace)}
        kinds = [SECRET, CONFIG_MAP]
        if failed:
            kinds += [DATA_VOLUME, VIRTUAL_MACHINE]

        errors = []
        for kind in kinds:
            try:
                deleted = self.cluster.delete_collection(kind, namespace, labels)
                if deleted:
                    logger.info(f"Deleted {deleted} {kind}(s) of {self.request.key}")
            except ClusterError as e:
                errors.append(e)
        if errors:
            raise CleanUpError(fold_errors(errors, loggable_name(self.request.name, namespace)))

    def find_template(self) -> dict:
        return self.templates.find(self.vm_info())

    def process_template(self, template: dict, target_name: Optional[str], namespace: str) -> dict:
        return self.templates.process(template, target_name, namespace, self.vm_info())

    def create_mapper(self) -> Mapper:
        mappings = self.resource_mapping or self.request.mappings
        return VmwareMapper(self.vm_info(), mappings, self.request.namespace)
