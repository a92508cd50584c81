"""Itinerary table and transition function.

An itinerary is a named, ordered pipeline of phase names. The first phase
is where a workflow starts; the last one is terminal. Tables are defined
once at import time and never mutated.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from vmimport.errors import ItineraryError

# Phases
CREATED = "Created"
STARTED = "Started"
PREPARE = "Prepare"
POWER_OFF_SOURCE = "PowerOffSource"
CREATE_VM = "CreateVM"
CREATE_DATA_VOLUMES = "CreateDataVolumes"
IMPORT_DISKS = "ImportDisks"
CONVERT_GUEST = "ConvertGuest"
CLEAN_UP = "CleanUp"
IMPORT_FAILED = "ImportFailed"
RESTORE_INITIAL_VM_STATE = "RestoreInitialVMState"
CLEAN_UP_AFTER_FAILURE = "CleanUpAfterFailure"
COMPLETED = "Completed"


@dataclass(frozen=True)
class Itinerary:
    """A named, ordered list of phases."""

    name: str
    pipeline: tuple[str, ...]

    def __post_init__(self):
        if not self.pipeline:
            raise ItineraryError(f"Itinerary '{self.name}' has no phases")
        if len(set(self.pipeline)) != len(self.pipeline):
            raise ItineraryError(f"Itinerary '{self.name}' repeats a phase")

    @property
    def first(self) -> str:
        return self.pipeline[0]

    @property
    def last(self) -> str:
        return self.pipeline[-1]

    def __contains__(self, phase: object) -> bool:
        return phase in self.pipeline

    def next(self, phase: str) -> tuple[Optional[str], bool]:
        """Return ``(next_phase, done)`` for a phase of this itinerary.

        ``done`` is True (and ``next_phase`` None) for the last phase.

        Raises:
            ItineraryError: If ``phase`` is not part of the pipeline
        """
        try:
            index = self.pipeline.index(phase)
        except ValueError:
            raise ItineraryError(
                f"Phase '{phase}' is not part of itinerary '{self.name}'"
            ) from None
        if index == len(self.pipeline) - 1:
            return None, True
        return self.pipeline[index + 1], False


COLD_ITINERARY = Itinerary(
    name="ColdImport",
    pipeline=(
        CREATED,
        STARTED,
        PREPARE,
        POWER_OFF_SOURCE,
        CREATE_VM,
        CREATE_DATA_VOLUMES,
        IMPORT_DISKS,
        CONVERT_GUEST,
        CLEAN_UP,
        COMPLETED,
    ),
)

# Source keeps running while disks are copied
WARM_ITINERARY = Itinerary(
    name="WarmImport",
    pipeline=(
        CREATED,
        STARTED,
        PREPARE,
        CREATE_VM,
        CREATE_DATA_VOLUMES,
        IMPORT_DISKS,
        CONVERT_GUEST,
        CLEAN_UP,
        COMPLETED,
    ),
)

FAILED_ITINERARY = Itinerary(
    name="Failed",
    pipeline=(
        IMPORT_FAILED,
        RESTORE_INITIAL_VM_STATE,
        CLEAN_UP_AFTER_FAILURE,
        COMPLETED,
    ),
)

ITINERARIES: dict[str, Itinerary] = {
    it.name: it for it in (COLD_ITINERARY, WARM_ITINERARY, FAILED_ITINERARY)
}


def get_itinerary(name: str) -> Itinerary:
    """Look up an itinerary by name."""
    try:
        return ITINERARIES[name]
    except KeyError:
        raise ItineraryError(
            f"Unknown itinerary '{name}'. Known: {', '.join(ITINERARIES)}"
        ) from None
