"""Tests for flow persistence, restoration and the staleness policy."""

import json
from datetime import datetime, timedelta, timezone

from consentflow.wizard.draft_store import (
    STORAGE_KEY,
    DraftStore,
    DraftStoreError,
    InMemoryStorage,
    SQLiteKeyValueStorage,
    UserPreferences,
    default_flow_state,
    is_stale,
    restore_flow_state,
)
from consentflow.wizard.controller import WizardController, build_summary_text
from consentflow.wizard.flow_state import FlowState, JurisdictionChoice, RecordingMethod, SelectionMode


NOW = datetime(2026, 3, 1, 20, 0, tzinfo=timezone.utc)


class FailingStorage:
    """Storage whose every operation fails."""

    def get_item(self, key):
        raise DraftStoreError("read failed")

    def set_item(self, key, value):
        raise DraftStoreError("quota exceeded")

    def remove_item(self, key):
        raise DraftStoreError("remove failed")


def _full_state() -> FlowState:
    return FlowState(
        encounter_type="date",
        selection_mode=SelectionMode.SELECT_STATE,
        state_code="CA",
        state_name="California",
        parties=["@alex", "@sam"],
        intimate_acts={"Kissing": "yes", "Oral Intercourse": "no"},
        contract_start_time=NOW,
        contract_duration=120,
        contract_end_time=NOW + timedelta(minutes=120),
        method=RecordingMethod.SIGNATURE,
        draft_id="abc123",
        method_payload={"signature": "data:image/png;base64,AAAA"},
        last_edited_at=NOW,
    )


class TestRoundTrip:
    def test_save_then_load_is_equivalent(self, draft_store):
        state = _full_state()
        assert draft_store.save(state)
        assert draft_store.load() == state

    def test_uses_well_known_key(self, storage, draft_store):
        draft_store.save(FlowState(encounter_type="other"))
        stored = json.loads(storage.get_item(STORAGE_KEY))
        assert stored["encounterType"] == "other"

    def test_nothing_stored_loads_none(self, draft_store):
        assert draft_store.load() is None

    def test_clear_removes_blob(self, storage, draft_store):
        draft_store.save(_full_state())
        assert draft_store.clear()
        assert storage.get_item(STORAGE_KEY) is None

    def test_sqlite_storage_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "flow.db"
        with SQLiteKeyValueStorage(path) as storage:
            DraftStore(storage).save(_full_state())
        with SQLiteKeyValueStorage(path) as storage:
            assert DraftStore(storage).load() == _full_state()


class TestRestore:
    def test_corrupt_json_loads_none(self, storage, draft_store):
        storage.set_item(STORAGE_KEY, "{not json")
        assert draft_store.load() is None

    def test_non_object_loads_none(self, storage, draft_store):
        storage.set_item(STORAGE_KEY, "[1, 2, 3]")
        assert draft_store.load() is None

    def test_invalid_fields_fall_back_individually(self):
        defaults = FlowState(encounter_type="conversation", parties=["@alex", ""])
        raw = {
            "encounterType": "party",  # unknown
            "parties": "not a list",
            "intimateActs": {"Kissing": "yes", "Massage": "maybe"},
            "stateCode": "NY",
            "method": "telepathy",
        }
        restored = restore_flow_state(raw, defaults)

        assert restored.encounter_type == "conversation"
        assert restored.parties == ["@alex", ""]
        assert restored.intimate_acts == {"Kissing": "yes"}
        assert restored.state_code == "NY"
        assert restored.method is None

    def test_partial_duration_falls_back_as_a_whole(self):
        raw = {"contractStartTime": NOW.isoformat(), "contractDuration": 60, "contractEndTime": None}
        restored = restore_flow_state(raw, FlowState())
        assert restored.contract_start_time is None
        assert restored.contract_duration is None
        assert restored.contract_end_time is None

    def test_javascript_timestamps_are_accepted(self):
        raw = {
            "contractStartTime": "2026-03-01T20:00:00.000Z",
            "contractDuration": 30,
            "contractEndTime": "2026-03-01T20:30:00.000Z",
        }
        restored = restore_flow_state(raw, FlowState())
        assert restored.contract_end_time == NOW + timedelta(minutes=30)

    def test_chosen_state_is_not_replaced_by_default_university(self):
        defaults = default_flow_state(
            UserPreferences(default_university_id="u1", default_university_name="Stanford")
        )
        raw = {"selectionMode": "select-state", "stateCode": "CA", "stateName": "California"}
        restored = restore_flow_state(raw, defaults)

        assert restored.selection_mode == SelectionMode.SELECT_STATE
        assert restored.university_id is None
        assert restored.university_name is None
        assert restored.jurisdiction_choice() == JurisdictionChoice.STATE

    def test_not_applicable_clears_both_pairs(self):
        defaults = default_flow_state(UserPreferences(state_of_residence="NY"))
        restored = restore_flow_state({"selectionMode": "not-applicable"}, defaults)
        assert restored.state_code is None
        assert restored.jurisdiction_choice() == JurisdictionChoice.NOT_APPLICABLE

    def test_stored_null_selection_mode_stays_unset(self):
        defaults = default_flow_state(UserPreferences(state_of_residence="NY"))
        restored = restore_flow_state({"selectionMode": None}, defaults)
        assert restored.selection_mode is None
        assert restored.state_code == "NY"

    def test_missing_state_name_is_looked_up(self):
        restored = restore_flow_state({"selectionMode": "select-state", "stateCode": "TX"}, FlowState())
        assert restored.state_name == "Texas"

    def test_reload_keeps_state_over_preferred_university(self, storage, clock):
        prefs = UserPreferences(default_university_id="u1", default_university_name="Stanford")

        def make():
            controller = WizardController(
                DraftStore(storage),
                user_id="user_alex",
                owner_handle="@alex",
                preferences_provider=lambda user_id: prefs,
                clock=clock,
            )
            controller.hydrate()
            return controller

        first = make()
        first.set_encounter_type("date")
        first.select_state("CA")

        reloaded = make()
        assert reloaded.state.university_id is None
        assert reloaded.state.state_code == "CA"
        assert reloaded.state.jurisdiction_choice() == JurisdictionChoice.STATE
        assert "Jurisdiction: California" in build_summary_text(reloaded.state)


class TestStorageFailures:
    def test_failed_read_loads_none(self):
        assert DraftStore(FailingStorage()).load() is None

    def test_failed_write_reports_false(self):
        assert DraftStore(FailingStorage()).save(FlowState()) is False

    def test_failed_clear_reports_false(self):
        assert DraftStore(FailingStorage()).clear() is False


class TestStaleness:
    def test_untouched_six_minute_old_flow_is_stale(self):
        state = FlowState(last_edited_at=NOW - timedelta(minutes=6))
        assert is_stale(state, NOW)

    def test_recent_flow_is_not_stale(self):
        state = FlowState(last_edited_at=NOW - timedelta(minutes=4))
        assert not is_stale(state, NOW)

    def test_flow_with_encounter_type_is_never_stale(self):
        state = FlowState(encounter_type="date", last_edited_at=NOW - timedelta(days=3))
        assert not is_stale(state, NOW)

    def test_flow_with_draft_is_never_stale(self):
        state = FlowState(draft_id="abc", last_edited_at=NOW - timedelta(days=3))
        assert not is_stale(state, NOW)

    def test_never_edited_flow_is_stale(self):
        assert is_stale(FlowState(), NOW)


class TestDefaults:
    def test_no_preferences(self):
        assert default_flow_state(None) == FlowState()

    def test_university_preference_wins_over_state(self):
        prefs = UserPreferences(
            default_university_id="ucla",
            default_university_name="UCLA",
            state_of_residence="CA",
            default_encounter_type="date",
        )
        state = default_flow_state(prefs)
        assert state.encounter_type == "date"
        assert state.selection_mode == SelectionMode.SELECT_UNIVERSITY
        assert state.university_id == "ucla"
        assert state.state_code is None

    def test_state_preference(self):
        state = default_flow_state(UserPreferences(state_of_residence="ny"))
        assert state.selection_mode == SelectionMode.SELECT_STATE
        assert state.state_code == "NY"
        assert state.state_name == "New York"

    def test_unknown_preferences_are_ignored(self):
        state = default_flow_state(UserPreferences(state_of_residence="ZZ", default_encounter_type="party"))
        assert state == FlowState()

    def test_in_memory_storage_is_independent_per_instance(self):
        a, b = InMemoryStorage(), InMemoryStorage()
        a.set_item("k", "v")
        assert b.get_item("k") is None
