"""Tests for the itinerary tables and the transition function."""

import pytest

from vmimport.errors import ItineraryError
from vmimport.pipeline import itinerary as phases
from vmimport.pipeline.itinerary import (
    COLD_ITINERARY,
    FAILED_ITINERARY,
    ITINERARIES,
    WARM_ITINERARY,
    Itinerary,
    get_itinerary,
)


# ═══════════════════════════════════════════════════════════════════
#  Transition function
# ═══════════════════════════════════════════════════════════════════

class TestNext:
    @pytest.mark.parametrize("itinerary", list(ITINERARIES.values()), ids=list(ITINERARIES))
    def test_every_phase_leads_to_its_successor(self, itinerary):
        for current, following in zip(itinerary.pipeline, itinerary.pipeline[1:]):
            assert itinerary.next(current) == (following, False)

    @pytest.mark.parametrize("itinerary", list(ITINERARIES.values()), ids=list(ITINERARIES))
    def test_last_phase_is_done(self, itinerary):
        assert itinerary.next(itinerary.last) == (None, True)

    def test_unknown_phase_raises(self):
        with pytest.raises(ItineraryError, match="Bogus"):
            COLD_ITINERARY.next("Bogus")

    def test_phase_of_another_itinerary_raises(self):
        with pytest.raises(ItineraryError):
            WARM_ITINERARY.next(phases.POWER_OFF_SOURCE)
        with pytest.raises(ItineraryError):
            FAILED_ITINERARY.next(phases.CREATE_VM)


# ═══════════════════════════════════════════════════════════════════
#  Tables
# ═══════════════════════════════════════════════════════════════════

class TestTables:
    def test_cold_import(self):
        assert COLD_ITINERARY.name == "ColdImport"
        assert COLD_ITINERARY.pipeline == (
            "Created", "Started", "Prepare", "PowerOffSource", "CreateVM",
            "CreateDataVolumes", "ImportDisks", "ConvertGuest", "CleanUp", "Completed",
        )

    def test_warm_import_skips_power_off(self):
        assert WARM_ITINERARY.name == "WarmImport"
        assert phases.POWER_OFF_SOURCE not in WARM_ITINERARY
        assert [p for p in COLD_ITINERARY.pipeline if p != phases.POWER_OFF_SOURCE] == list(
            WARM_ITINERARY.pipeline
        )

    def test_failed(self):
        assert FAILED_ITINERARY.pipeline == (
            "ImportFailed", "RestoreInitialVMState", "CleanUpAfterFailure", "Completed",
        )

    def test_all_end_in_completed(self):
        for itinerary in ITINERARIES.values():
            assert itinerary.last == phases.COMPLETED

    def test_duplicate_phase_rejected(self):
        with pytest.raises(ItineraryError):
            Itinerary("Broken", (phases.CREATED, phases.CREATED, phases.COMPLETED))

    def test_empty_rejected(self):
        with pytest.raises(ItineraryError):
            Itinerary("Empty", ())

    def test_get_itinerary(self):
        assert get_itinerary("Failed") is FAILED_ITINERARY
        with pytest.raises(ItineraryError, match="Known"):
            get_itinerary("Hot")
