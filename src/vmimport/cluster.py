"""Target cluster object access.

Objects are plain Kubernetes-style manifests (``dict`` with ``kind``,
``metadata`` and ``spec``). The engine reads and writes them through
:class:`TargetCluster`; :class:`InMemoryCluster` keeps them in process.
"""

from __future__ import annotations

import abc
import copy
import uuid
from typing import Optional

from vmimport.errors import MigrationError

# Kinds
VIRTUAL_MACHINE = "VirtualMachine"
DATA_VOLUME = "DataVolume"
POD = "Pod"
SECRET = "Secret"
CONFIG_MAP = "ConfigMap"
TEMPLATE = "Template"

KUBEVIRT_API_VERSION = "kubevirt.io/v1"
CDI_API_VERSION = "cdi.kubevirt.io/v1beta1"
IMPORT_API_VERSION = "v2v.kubevirt.io/v1beta1"
IMPORT_KIND = "VirtualMachineImport"

TRACKER_LABEL = "vmimport.v2v.kubevirt.io/tracker"


class ClusterError(MigrationError):
    """Base class for target cluster failures."""


class NotFoundError(ClusterError):
    """The requested object does not exist (yet)."""


class AlreadyExistsError(ClusterError):
    """An object with the same kind, namespace and name already exists."""


def metadata(obj: dict) -> dict:
    return obj.setdefault("metadata", {})


def object_key(obj: dict) -> tuple[str, str, str]:
    meta = obj.get("metadata", {})
    name = meta.get("name")
    if not name:
        raise ClusterError(f"{obj.get('kind', 'Object')} has no metadata.name")
    return obj.get("kind", ""), meta.get("namespace", ""), name


def tracker_label(owner_name: str, owner_namespace: str) -> str:
    return f"{owner_namespace}-{owner_name}"


def set_tracker_label(obj: dict, owner_name: str, owner_namespace: str) -> None:
    labels = metadata(obj).setdefault("labels", {})
    labels[TRACKER_LABEL] = tracker_label(owner_name, owner_namespace)


def set_owner_reference(
    obj: dict,
    api_version: str,
    kind: str,
    name: str,
    uid: str,
    controller: bool = False,
) -> None:
    """Add (or replace) an owner reference to ``obj``."""
    refs = metadata(obj).setdefault("ownerReferences", [])
    refs[:] = [r for r in refs if not (r.get("kind") == kind and r.get("name") == name)]
    if controller:
        for ref in refs:
            ref.pop("controller", None)
    ref = {"apiVersion": api_version, "kind": kind, "name": name, "uid": uid}
    if controller:
        ref["controller"] = True
        ref["blockOwnerDeletion"] = True
    refs.append(ref)


def set_controller_reference(obj: dict, api_version: str, kind: str, name: str, uid: str) -> None:
    set_owner_reference(obj, api_version, kind, name, uid, controller=True)


def _labels_match(obj: dict, labels: Optional[dict[str, str]]) -> bool:
    if not labels:
        return True
    obj_labels = obj.get("metadata", {}).get("labels") or {}
    return all(obj_labels.get(k) == v for k, v in labels.items())


class TargetCluster(metaclass=abc.ABCMeta):
    """Object store of the target virtualization platform."""

    @abc.abstractmethod
    def get(self, kind: str, namespace: str, name: str) -> dict:
        """Return a copy of an object.

        Raises:
            NotFoundError: If the object does not exist
        """
        raise NotImplementedError

    @abc.abstractmethod
    def create(self, obj: dict) -> dict:
        """Create an object and return the stored copy.

        Raises:
            AlreadyExistsError: If the object already exists
        """
        raise NotImplementedError

    @abc.abstractmethod
    def update(self, obj: dict) -> dict:
        """Replace an existing object.

        Raises:
            NotFoundError: If the object does not exist
        """
        raise NotImplementedError

    @abc.abstractmethod
    def delete(self, kind: str, namespace: str, name: str) -> None:
        """Delete an object.

        Raises:
            NotFoundError: If the object does not exist
        """
        raise NotImplementedError

    @abc.abstractmethod
    def list(self, kind: str, namespace: str, labels: Optional[dict[str, str]] = None) -> list[dict]:
        """List objects of a kind in a namespace, filtered by labels."""
        raise NotImplementedError

    def delete_collection(self, kind: str, namespace: str, labels: dict[str, str]) -> int:
        """Delete every matching object; returns how many were removed.

        Each object is deleted independently: a failure on one does not stop
        the others. Failures are reported together once every object was tried.

        Raises:
            ClusterError: If one or more objects could not be deleted
        """
        deleted = 0
        failures: list[str] = []
        for obj in self.list(kind, namespace, labels):
            try:
                self.delete(kind, namespace, obj["metadata"]["name"])
                deleted += 1
            except NotFoundError:
                continue
            except ClusterError as e:
                failures.append(str(e))
        if failures:
            raise ClusterError("; ".join(failures))
        return deleted


class InMemoryCluster(TargetCluster):
    """Process-local :class:`TargetCluster` used for dry runs and tests."""

    def __init__(self, objects: Optional[list[dict]] = None):
        self._objects: dict[tuple[str, str, str], dict] = {}
        self._version = 0
        for obj in objects or []:
            self.create(obj)

    def _stamp(self, obj: dict) -> dict:
        self._version += 1
        stored = copy.deepcopy(obj)
        metadata(stored)["resourceVersion"] = str(self._version)
        return stored

    def get(self, kind: str, namespace: str, name: str) -> dict:
        try:
            return copy.deepcopy(self._objects[(kind, namespace, name)])
        except KeyError:
            raise NotFoundError(f"{kind} {namespace}/{name} not found") from None

    def create(self, obj: dict) -> dict:
        key = object_key(obj)
        if key in self._objects:
            raise AlreadyExistsError(f"{key[0]} {key[1]}/{key[2]} already exists")
        stored = self._stamp(obj)
        metadata(stored).setdefault("uid", str(uuid.uuid4()))
        self._objects[key] = stored
        return copy.deepcopy(self._objects[key])

    def update(self, obj: dict) -> dict:
        key = object_key(obj)
        if key not in self._objects:
            raise NotFoundError(f"{key[0]} {key[1]}/{key[2]} not found")
        self._objects[key] = self._stamp(obj)
        return copy.deepcopy(self._objects[key])

    def delete(self, kind: str, namespace: str, name: str) -> None:
        try:
            del self._objects[(kind, namespace, name)]
        except KeyError:
            raise NotFoundError(f"{kind} {namespace}/{name} not found") from None

    def list(self, kind: str, namespace: str, labels: Optional[dict[str, str]] = None) -> list[dict]:
        return [
            copy.deepcopy(obj)
            for (k, ns, _), obj in sorted(self._objects.items())
            if k == kind and ns == namespace and _labels_match(obj, labels)
        ]

    def set_status(self, kind: str, namespace: str, name: str, status: dict) -> None:
        """Overwrite an object's status, as the platform's own controllers would."""
        try:
            self._objects[(kind, namespace, name)]["status"] = copy.deepcopy(status)
        except KeyError:
            raise NotFoundError(f"{kind} {namespace}/{name} not found") from None
