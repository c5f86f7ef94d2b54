"""Tests for step planning, resume derivation and encounter type changes."""

from datetime import datetime, timedelta, timezone

import pytest

from consentflow.wizard.flow_state import FlowState, RecordingMethod, SelectionMode
from consentflow.wizard.steps import (
    WITH_JURISDICTION,
    WITHOUT_JURISDICTION,
    Step,
    compute_steps,
    derive_resume_step,
    jurisdiction_label,
    nearest_valid_step,
    reset_for_encounter_change,
)


START = datetime(2026, 3, 1, 20, 0, tzinfo=timezone.utc)


class TestComputeSteps:
    @pytest.mark.parametrize("encounter_type", ["intimate", "date"])
    def test_jurisdiction_types_get_six_steps(self, encounter_type):
        plan = compute_steps(encounter_type)
        assert plan is WITH_JURISDICTION
        assert plan.total_steps == 6
        assert plan.ordinal(Step.JURISDICTION) == 2
        assert plan.ordinal(Step.RECORDING_METHOD) == 6

    @pytest.mark.parametrize("encounter_type", ["conversation", "medical", "professional", "other", ""])
    def test_other_types_get_five_steps(self, encounter_type):
        plan = compute_steps(encounter_type)
        assert plan is WITHOUT_JURISDICTION
        assert plan.total_steps == 5
        assert plan.ordinal(Step.JURISDICTION) is None
        assert plan.ordinal(Step.PARTIES) == 2

    def test_first_detail_step(self):
        assert WITH_JURISDICTION.first_detail_step == Step.JURISDICTION
        assert WITHOUT_JURISDICTION.first_detail_step == Step.PARTIES

    def test_as_dict_includes_total(self):
        table = WITHOUT_JURISDICTION.as_dict()
        assert table["total_steps"] == 5
        assert table["duration"] == 4
        assert "jurisdiction" not in table

    def test_step_at_out_of_range(self):
        assert WITHOUT_JURISDICTION.step_at(6) is None
        assert WITHOUT_JURISDICTION.step_at(0) is None


class TestDeriveResumeStep:
    def test_empty_flow_starts_at_one(self):
        assert derive_resume_step(FlowState()) == 1

    def test_encounter_only_resumes_on_first_detail_step(self):
        assert derive_resume_step(FlowState(encounter_type="date")) == 2
        assert derive_resume_step(FlowState(encounter_type="medical")) == 2

    def test_jurisdiction_chosen_resumes_on_parties(self):
        state = FlowState(encounter_type="intimate", selection_mode=SelectionMode.NOT_APPLICABLE)
        assert derive_resume_step(state) == 3

    def test_second_party_resumes_on_acts(self):
        state = FlowState(encounter_type="conversation", parties=["@alex", "@sam"])
        assert derive_resume_step(state) == 3

    def test_owner_only_does_not_count_as_parties_done(self):
        state = FlowState(encounter_type="conversation", parties=["@alex", ""])
        assert derive_resume_step(state) == 2

    def test_acts_resume_on_duration(self):
        state = FlowState(encounter_type="date", state_code="CA", parties=["@alex", "@sam"],
                          intimate_acts={"Kissing": "yes"})
        assert derive_resume_step(state) == 5

    def test_duration_or_method_resumes_on_method(self):
        state = FlowState(
            encounter_type="date",
            contract_start_time=START,
            contract_duration=60,
            contract_end_time=START + timedelta(minutes=60),
        )
        assert derive_resume_step(state) == 6
        assert derive_resume_step(FlowState(encounter_type="other", method=RecordingMethod.VOICE)) == 5

    def test_derivation_is_idempotent(self):
        state = FlowState(encounter_type="date", state_code="CA", parties=["@alex", "@sam"])
        assert derive_resume_step(state) == derive_resume_step(state) == 4


class TestNearestValidStep:
    def test_clamps_into_plan(self):
        assert nearest_valid_step(WITHOUT_JURISDICTION, 6) == 5
        assert nearest_valid_step(WITHOUT_JURISDICTION, 0) == 1
        assert nearest_valid_step(WITHOUT_JURISDICTION, None) == 1
        assert nearest_valid_step(WITH_JURISDICTION, 4) == 4


class TestEncounterChange:
    def test_first_selection_does_not_reset(self):
        state = FlowState(parties=["@alex", "@sam"])
        updated, did_reset = reset_for_encounter_change(state, "date", "@alex")
        assert not did_reset
        assert updated.encounter_type == "date"
        assert updated.parties == ["@alex", "@sam"]

    def test_same_type_does_not_reset(self):
        state = FlowState(encounter_type="date", state_code="CA", intimate_acts={"Kissing": "yes"})
        updated, did_reset = reset_for_encounter_change(state, "date", "@alex")
        assert not did_reset
        assert updated.state_code == "CA"

    def test_change_clears_type_specific_fields(self):
        state = FlowState(
            encounter_type="date",
            selection_mode=SelectionMode.SELECT_STATE,
            state_code="CA",
            state_name="California",
            parties=["@alex", "@sam", "@jo"],
            intimate_acts={"Kissing": "yes"},
            contract_duration=60,
        )
        updated, did_reset = reset_for_encounter_change(state, "conversation", "@alex")

        assert did_reset
        assert updated.encounter_type == "conversation"
        assert updated.selection_mode is None
        assert updated.state_code is None
        assert updated.parties == ["@alex", ""]
        assert updated.intimate_acts == {}
        # Not type-specific
        assert updated.contract_duration == 60


class TestJurisdictionLabel:
    def test_labels(self):
        assert jurisdiction_label(FlowState(university_id="u1", university_name="UCLA")) == "UCLA"
        assert jurisdiction_label(FlowState(state_code="CA", state_name="California")) == "California"
        assert jurisdiction_label(FlowState(selection_mode=SelectionMode.NOT_APPLICABLE)) == "N/A"
        assert jurisdiction_label(FlowState()) == "N/A"
