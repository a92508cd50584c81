"""Workflow status and its JSON persistence.

The engine only mutates :class:`WorkflowStatus`; saving and loading it is
the driver's job, done here with :class:`StatusStore`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from vmimport.utils.logging import get_logger

logger = get_logger(__name__)

# Durable annotations
SOURCE_VM_INITIAL_STATE = "vmimport.kubevirt.io/source-vm-initial-state"

ANNOTATION_KEYS = frozenset({SOURCE_VM_INITIAL_STATE})


@dataclass
class WorkflowStatus:
    """Persisted progress of one migration.

    Attributes:
        phase: Phase to execute on the next run
        itinerary: Name of the itinerary ``phase`` belongs to
        target_vm_name: Name of the VM created on the target cluster
        errors: Append-only log of every failure seen across runs
        annotations: Durable side-channel; only ``ANNOTATION_KEYS`` allowed
        failed: Set once the migration has been marked failed
        progress: Last observed import percentage per transfer
    """
    phase: str = ""
    itinerary: str = ""
    target_vm_name: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    annotations: dict[str, str] = field(default_factory=dict)
    failed: bool = False
    progress: dict[str, float] = field(default_factory=dict)

    def add_errors(self, messages: list[str]) -> None:
        self.errors.extend(messages)

    def mark_failed(self) -> None:
        """Route the next run onto the failure itinerary."""
        self.failed = True

    def get_annotation(self, key: str) -> Optional[str]:
        return self.annotations.get(key)

    def set_annotation(self, key: str, value: str) -> None:
        if key not in ANNOTATION_KEYS:
            raise KeyError(f"Unrecognized annotation '{key}'")
        self.annotations[key] = value

    def to_dict(self) -> dict:
        return {
            "phase": self.phase,
            "itinerary": self.itinerary,
            "target_vm_name": self.target_vm_name,
            "errors": list(self.errors),
            "annotations": dict(self.annotations),
            "failed": self.failed,
            "progress": dict(self.progress),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowStatus":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class StatusStore:
    """Persists workflow status to disk as JSON files.

    State files are stored at: {state_dir}/{key}.json
    """

    def __init__(self, state_dir: Path | str):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.state_dir / f"{key}.json"

    def save(self, key: str, status: WorkflowStatus) -> None:
        """Persist a workflow status."""
        with open(self._path(key), "w") as f:
            json.dump(status.to_dict(), f, indent=2)

    def load(self, key: str) -> Optional[WorkflowStatus]:
        """Load a workflow status, or None when nothing was saved yet."""
        path = self._path(key)
        if not path.exists():
            return None
        with open(path) as f:
            data = json.load(f)
        return WorkflowStatus.from_dict(data)

    def list_all(self) -> dict[str, WorkflowStatus]:
        """Return every readable persisted status keyed by workflow key."""
        states = {}
        for path in sorted(self.state_dir.glob("*.json")):
            try:
                states[path.stem] = self.load(path.stem)
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable state file {path.name}: {e}")
        return states

    def delete(self, key: str) -> None:
        """Remove a status file."""
        path = self._path(key)
        if path.exists():
            path.unlink()
