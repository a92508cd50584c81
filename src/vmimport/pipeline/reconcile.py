"""One reconciliation step: load status, run one phase, persist status."""

from __future__ import annotations

import base64
from typing import Callable, Optional

import yaml

from vmimport.cluster import SECRET, NotFoundError, TargetCluster
from vmimport.config import AppConfig, MigrationRequest
from vmimport.errors import TransientError
from vmimport.pipeline.state import StatusStore, WorkflowStatus
from vmimport.pipeline.task import GuestConverter, RunResult, Task
from vmimport.providers.base import Provider
from vmimport.providers.factory import get_provider
from vmimport.utils.logging import get_logger

logger = get_logger(__name__)

ProviderFactory = Callable[[MigrationRequest, TargetCluster], Provider]


def secret_data(secret: dict) -> dict[str, str]:
    """Return a Secret's values, decoding ``data`` and overlaying ``stringData``."""
    values = {
        key: base64.b64decode(value).decode("utf-8")
        for key, value in (secret.get("data") or {}).items()
    }
    values.update(secret.get("stringData") or {})
    return values


def config_credentials(config: AppConfig) -> dict[str, str]:
    """Render the configured vCenter account in the secret layout providers read."""
    if config.vmware is None:
        return {}
    vmware = config.vmware
    document = {
        "vcenter": vmware.vcenter,
        "username": vmware.username,
        "password": vmware.password.get_secret_value(),
        "port": vmware.port,
        "insecure": vmware.insecure,
    }
    return {"vmware": yaml.safe_dump(document)}


class Reconciler:
    """Drives :class:`Task` for a request, one phase per call.

    Scheduling is left to the caller: it re-invokes :meth:`reconcile` after
    ``RunResult.requeue`` seconds until the result is done.
    """

    def __init__(
        self,
        config: AppConfig,
        cluster: TargetCluster,
        store: Optional[StatusStore] = None,
        provider_factory: ProviderFactory = get_provider,
        converter: Optional[GuestConverter] = None,
    ):
        self.config = config
        self.cluster = cluster
        self.store = store or StatusStore(config.state_dir)
        self.provider_factory = provider_factory
        self.converter = converter

    def credentials(self, request: MigrationRequest) -> dict[str, str]:
        if request.credentials_secret:
            try:
                secret = self.cluster.get(SECRET, request.namespace, request.credentials_secret)
            except NotFoundError as e:
                raise TransientError(f"credentials secret not available: {e}") from e
            return secret_data(secret)
        return config_credentials(self.config)

    def reconcile(self, request: MigrationRequest) -> Optional[RunResult]:
        """Run one phase of ``request``; None when credentials are not available yet."""
        status = self.store.load(request.key) or WorkflowStatus()
        try:
            credentials = self.credentials(request)
        except TransientError as e:
            logger.info(f"Postponing {request.key}: {e}")
            return None

        provider = self.provider_factory(request, self.cluster)
        try:
            provider.init(credentials, request)
            provider.prepare_resource_mapping(None, request.source)
            task = Task(
                request,
                status,
                provider,
                self.cluster,
                settings=self.config.engine,
                converter=self.converter,
            )
            result = task.run()
        finally:
            provider.close()
            self.store.save(request.key, status)

        if result.done:
            logger.info(f"[bold green]{request.key} reached {result.phase}[/bold green]")
        return result
