"""Guest OS detection and VM template lookup for VMware sources."""

from __future__ import annotations

import copy
import re
from typing import Optional

from vmimport.cluster import TEMPLATE, VIRTUAL_MACHINE, TargetCluster
from vmimport.errors import TemplateNotFoundError
from vmimport.utils.logging import get_logger
from vmimport.vmware.inventory import VMInfo

logger = get_logger(__name__)

DEFAULT_LINUX = "rhel8"
DEFAULT_WINDOWS = "windows"

TEMPLATE_NAMESPACE = "openshift"
OS_LABEL_PREFIX = "os.template.kubevirt.io/"
WORKLOAD_LABEL = "workload.template.kubevirt.io/server"
TEMPLATE_NAME_LABEL = "vm.kubevirt.io/template"
TEMPLATE_NAMESPACE_LABEL = "vm.kubevirt.io/template.namespace"

NAME_PARAMETER = "NAME"

# VMware guest ids with a well-known common OS name
GUEST_ID_TO_OS = {
    "rhel8_64Guest": "rhel8",
    "rhel7_64Guest": "rhel7",
    "rhel6_64Guest": "rhel6",
    "centos8_64Guest": "centos8",
    "centos7_64Guest": "centos7",
    "fedora64Guest": "fedora",
    "ubuntu64Guest": "ubuntu",
    "windows9Server64Guest": "win2k16",
    "windows2019srv_64Guest": "win2k19",
    "windows9_64Guest": "win10",
}

_PARAMETER = re.compile(r"\$\{([A-Z0-9_]+)\}")


def find_operating_system(vm: VMInfo) -> str:
    """Return the common OS name of a VMware guest.

    Raises:
        TemplateNotFoundError: If the guest id gives no usable hint
    """
    if vm.guest_id in GUEST_ID_TO_OS:
        return GUEST_ID_TO_OS[vm.guest_id]
    os_type = (vm.guest_id or "").lower()
    if "linux" in os_type or "rhel" in os_type:
        return DEFAULT_LINUX
    if "win" in os_type:
        return DEFAULT_WINDOWS
    raise TemplateNotFoundError(f"Failed to find operating system for guest id '{vm.guest_id}'")


class TemplateFinder:
    """Looks up and instantiates VM templates stored in the target cluster."""

    def __init__(self, cluster: TargetCluster, namespace: str = TEMPLATE_NAMESPACE):
        self.cluster = cluster
        self.namespace = namespace

    def find(self, vm: VMInfo) -> dict:
        os_name = find_operating_system(vm)
        labels = {f"{OS_LABEL_PREFIX}{os_name}": "true", WORKLOAD_LABEL: "true"}
        templates = self.cluster.list(TEMPLATE, self.namespace, labels)
        if not templates:
            raise TemplateNotFoundError(
                f"No template labelled for '{os_name}' in namespace '{self.namespace}'"
            )
        return templates[0]

    def process(self, template: dict, target_name: Optional[str], namespace: str, vm: VMInfo) -> dict:
        """Instantiate the VirtualMachine object of a template.

        ``${PARAM}`` references are replaced with the parameter values; NAME
        takes ``target_name`` when given.
        """
        objects = [o for o in template.get("objects", []) if o.get("kind") == VIRTUAL_MACHINE]
        if not objects:
            raise ValueError(f"Template '{template.get('metadata', {}).get('name')}' has no VirtualMachine object")

        values = {
            p["name"]: str(p.get("value", ""))
            for p in template.get("parameters", [])
            if "name" in p
        }
        if target_name:
            values[NAME_PARAMETER] = target_name
        vm_spec = _substitute(copy.deepcopy(objects[0]), values)

        meta = vm_spec.setdefault("metadata", {})
        meta["namespace"] = namespace
        if target_name:
            meta["name"] = target_name
        elif not values.get(NAME_PARAMETER):
            meta.pop("name", None)

        labels = self.template_labels(template, vm)
        meta.setdefault("labels", {}).update(labels)
        template_meta = vm_spec.setdefault("spec", {}).setdefault("template", {}).setdefault("metadata", {})
        template_meta.setdefault("labels", {}).update(labels)
        return vm_spec

    def template_labels(self, template: dict, vm: VMInfo) -> dict[str, str]:
        template_meta = template.get("metadata", {})
        labels = {
            TEMPLATE_NAME_LABEL: template_meta.get("name", ""),
            TEMPLATE_NAMESPACE_LABEL: template_meta.get("namespace", self.namespace),
        }
        try:
            labels[f"{OS_LABEL_PREFIX}{find_operating_system(vm)}"] = "true"
        except TemplateNotFoundError:
            pass
        return labels


def _substitute(value, params: dict[str, str]):
    if isinstance(value, str):
        return _PARAMETER.sub(lambda m: params.get(m.group(1), m.group(0)), value)
    if isinstance(value, list):
        return [_substitute(v, params) for v in value]
    if isinstance(value, dict):
        return {k: _substitute(v, params) for k, v in value.items()}
    return value
