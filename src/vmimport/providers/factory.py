"""Provider lookup keyed on the request's source-type tag."""

from __future__ import annotations

from typing import Callable

from vmimport.cluster import TargetCluster
from vmimport.config import MigrationRequest
from vmimport.errors import UnsupportedProviderError
from vmimport.providers.base import Provider

SOURCE_VMWARE = "vmware"
SOURCE_OVIRT = "ovirt"

KNOWN_SOURCES = (SOURCE_VMWARE, SOURCE_OVIRT)


def _vmware(request: MigrationRequest, cluster: TargetCluster) -> Provider:
    from vmimport.vmware.provider import VmwareProvider
    return VmwareProvider(request, cluster)


PROVIDERS: dict[str, Callable[[MigrationRequest, TargetCluster], Provider]] = {
    SOURCE_VMWARE: _vmware,
}


def get_provider(request: MigrationRequest, cluster: TargetCluster) -> Provider:
    """Build the provider for ``request.source_type``.

    Raises:
        UnsupportedProviderError: For tags without a bundled implementation
    """
    source_type = request.source_type.lower()
    factory = PROVIDERS.get(source_type)
    if factory is None:
        if source_type in KNOWN_SOURCES:
            raise UnsupportedProviderError(f"Source type '{source_type}' has no bundled provider")
        raise UnsupportedProviderError(
            f"Unknown source type '{request.source_type}'. Known: {', '.join(KNOWN_SOURCES)}"
        )
    return factory(request, cluster)
