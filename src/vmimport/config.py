"""Configuration models for vmimport using Pydantic v2."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator


class EngineSettings(BaseModel):
    """Timing and policy knobs of the task engine."""

    fast_requeue: float = Field(0.1, ge=0, description="Seconds before re-invoking after a phase advanced")
    poll_requeue: float = Field(3.0, gt=0, description="Seconds between polls of a pending phase")
    importer_restart_tolerance: int = Field(
        3, ge=0, description="Importer pod restarts tolerated before an import is declared crash-looping"
    )
    import_without_template: bool = Field(
        False, description="Create the target VM from a blank spec when no template matches"
    )


class VMwareConfig(BaseModel):
    """Account used to reach the source vCenter."""

    vcenter: str = Field(..., description="vCenter host name or address")
    username: str = Field(..., description="Login, e.g. administrator@vsphere.local")
    password: Optional[SecretStr] = Field(None, description="Inline password; secrets and password_env are preferred")
    password_env: Optional[str] = Field(None, description="Name of the environment variable holding the password")
    insecure: bool = Field(False, description="Accept any TLS certificate")
    port: int = Field(443, description="vCenter API port")

    @model_validator(mode="after")
    def resolve_password(self) -> "VMwareConfig":
        if self.password is None and self.password_env:
            from_env = os.environ.get(self.password_env)
            if from_env:
                self.password = SecretStr(from_env)
        if self.password is None:
            raise ValueError(f"No password for {self.username}@{self.vcenter}: set password or password_env")
        return self

    @classmethod
    def from_secret(cls, data: dict[str, Any]) -> "VMwareConfig":
        """Build from the credential map stored in a migration secret.

        Accepts both the snake_case keys of this model and the
        ``apiUrl``/``username``/``password`` keys used by import secrets.
        """
        values = dict(data)
        if "apiUrl" in values and "vcenter" not in values:
            values["vcenter"] = values.pop("apiUrl")
        return cls(**values)


class AppConfig(BaseModel):
    """Root application configuration."""

    engine: EngineSettings = EngineSettings()
    vmware: Optional[VMwareConfig] = None
    state_dir: Path = Field(Path("/var/lib/vmimport/state"), description="Directory for persisted workflow status")

    @classmethod
    def from_yaml(cls, path: str | Path) -> "AppConfig":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def from_env_and_args(cls, **overrides) -> "AppConfig":
        """Build config from environment variables with CLI overrides."""
        base: dict[str, Any] = {
            "engine": {
                "import_without_template": os.environ.get(
                    "VMIMPORT_IMPORT_WITHOUT_TEMPLATE", "false"
                ).lower() == "true",
            },
        }
        if os.environ.get("VMIMPORT_STATE_DIR"):
            base["state_dir"] = os.environ["VMIMPORT_STATE_DIR"]
        if os.environ.get("VCENTER_HOST"):
            base["vmware"] = {
                "vcenter": os.environ["VCENTER_HOST"],
                "username": os.environ.get("VCENTER_USERNAME", ""),
                "password_env": "VCENTER_PASSWORD",
                "insecure": os.environ.get("VCENTER_INSECURE", "false").lower() == "true",
            }
        # Deep merge overrides
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                base[key].update(value)
            else:
                base[key] = value
        return cls(**base)


# --- Per-migration request ---

class SourceRef(BaseModel):
    """Identifies a source object by id and/or name."""

    id: Optional[str] = None
    name: Optional[str] = None

    def matches(self, obj_id: Optional[str], obj_name: Optional[str]) -> bool:
        if self.id is not None and self.id == obj_id:
            return True
        return self.name is not None and self.name == obj_name


class MappingItem(BaseModel):
    """Maps one source resource onto a target resource."""

    source: SourceRef
    target: str = Field("", description="Target name; empty selects the cluster default")
    type: Optional[str] = Field(None, description="Network type: pod or multus")


class ResourceMapping(BaseModel):
    """Disk, storage and network mappings of a migration."""

    disk_mappings: list[MappingItem] = Field(default_factory=list)
    storage_mappings: list[MappingItem] = Field(default_factory=list)
    network_mappings: list[MappingItem] = Field(default_factory=list)

    @classmethod
    def merge(
        cls, external: Optional["ResourceMapping"], inline: Optional["ResourceMapping"]
    ) -> "ResourceMapping":
        """Combine a shared mapping with the request's own mapping.

        Inline items come first so they win on lookup.
        """
        merged = cls()
        for mapping in (inline, external):
            if mapping is None:
                continue
            merged.disk_mappings.extend(mapping.disk_mappings)
            merged.storage_mappings.extend(mapping.storage_mappings)
            merged.network_mappings.extend(mapping.network_mappings)
        return merged


class MigrationRequest(BaseModel):
    """A request to import one VM; owner of every object the migration creates."""

    name: str
    namespace: str = "default"
    uid: str = ""
    source_type: str = Field("vmware", description="Source hypervisor tag: vmware or ovirt")
    source: dict[str, Any] = Field(default_factory=dict, description="Provider-specific source VM reference")
    target_vm_name: Optional[str] = None
    warm: bool = False
    mappings: ResourceMapping = ResourceMapping()
    credentials_secret: Optional[str] = None

    @classmethod
    def from_yaml(cls, path: str | Path) -> "MigrationRequest":
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls(**data)

    @property
    def key(self) -> str:
        return f"{self.namespace}_{self.name}"
