"""Step sequencing for the consent wizard.

The step plan is a tagged variant: a flow either has a Jurisdiction step
(encounter types that need one) or it does not. Each variant carries its own
ordinal table, so no caller ever does arithmetic on step numbers.

The resume point is not stored. It is derived from the flow's data by
walking from the most complete step backward: a completed step means the
user resumes on the step after it.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from consentflow.wizard.flow_state import (
    ENCOUNTER_TYPES_REQUIRING_JURISDICTION,
    FlowState,
    JurisdictionChoice,
)


class Step(Enum):
    ENCOUNTER_TYPE = "encounter_type"
    JURISDICTION = "jurisdiction"
    PARTIES = "parties"
    INTIMATE_ACTS = "intimate_acts"
    DURATION = "duration"
    RECORDING_METHOD = "recording_method"


class PlanVariant(Enum):
    WITH_JURISDICTION = "with_jurisdiction"
    WITHOUT_JURISDICTION = "without_jurisdiction"


@dataclass(frozen=True)
class StepPlan:
    """Ordered steps for one plan variant; ordinals start at 1."""

    variant: PlanVariant
    steps: Tuple[Step, ...]

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def has_jurisdiction(self) -> bool:
        return Step.JURISDICTION in self.steps

    def ordinal(self, step: Step) -> Optional[int]:
        """Ordinal of `step` in this plan, or None if the plan omits it."""

        try:
            return self.steps.index(step) + 1
        except ValueError:
            return None

    def step_at(self, ordinal: int) -> Optional[Step]:
        if 1 <= ordinal <= len(self.steps):
            return self.steps[ordinal - 1]
        return None

    @property
    def first_detail_step(self) -> Step:
        """The step that follows EncounterType: Jurisdiction if present, else Parties."""

        return self.steps[1]

    def as_dict(self) -> Dict[str, int]:
        table = {step.value: index + 1 for index, step in enumerate(self.steps)}
        table["total_steps"] = self.total_steps
        return table


WITH_JURISDICTION = StepPlan(
    variant=PlanVariant.WITH_JURISDICTION,
    steps=(
        Step.ENCOUNTER_TYPE,
        Step.JURISDICTION,
        Step.PARTIES,
        Step.INTIMATE_ACTS,
        Step.DURATION,
        Step.RECORDING_METHOD,
    ),
)

WITHOUT_JURISDICTION = StepPlan(
    variant=PlanVariant.WITHOUT_JURISDICTION,
    steps=(
        Step.ENCOUNTER_TYPE,
        Step.PARTIES,
        Step.INTIMATE_ACTS,
        Step.DURATION,
        Step.RECORDING_METHOD,
    ),
)


def requires_jurisdiction(encounter_type: Optional[str]) -> bool:
    return bool(encounter_type) and encounter_type in ENCOUNTER_TYPES_REQUIRING_JURISDICTION


def compute_steps(encounter_type: Optional[str]) -> StepPlan:
    """Return the step plan for an encounter type.

    An unset encounter type yields the shorter plan; the user is still on
    step 1 in that case, which both plans share.
    """

    if requires_jurisdiction(encounter_type):
        return WITH_JURISDICTION
    return WITHOUT_JURISDICTION


def derive_resume_step(state: FlowState) -> int:
    """Infer the ordinal a user should resume on from the flow's data."""

    plan = compute_steps(state.encounter_type)

    if state.method is not None:
        return plan.ordinal(Step.RECORDING_METHOD)
    if state.has_duration():
        return plan.ordinal(Step.RECORDING_METHOD)
    if state.intimate_acts:
        return plan.ordinal(Step.DURATION)
    if any(p and p.strip() for p in state.parties[1:]):
        return plan.ordinal(Step.INTIMATE_ACTS)
    if plan.has_jurisdiction and state.jurisdiction_choice() is not None:
        return plan.ordinal(Step.PARTIES)
    if state.encounter_type:
        return plan.ordinal(plan.first_detail_step)
    return 1


def nearest_valid_step(plan: StepPlan, ordinal: Optional[int]) -> int:
    """Clamp a possibly dangling step pointer into `plan`."""

    if ordinal is None or ordinal < 1:
        return 1
    if ordinal > plan.total_steps:
        return plan.total_steps
    return ordinal


def reset_for_encounter_change(
    state: FlowState,
    new_type: str,
    owner_handle: str = "",
) -> Tuple[FlowState, bool]:
    """Apply an encounter type change.

    On first entry (no previous type) or when the type is unchanged, only the
    type is written. A genuine change clears the jurisdiction, resets the
    parties to the owner slot plus one empty slot, and clears the acts.

    Returns:
        (new_state, did_reset)
    """

    previous = state.encounter_type
    if not previous or previous == new_type:
        return dataclasses.replace(state, encounter_type=new_type), False

    reset = dataclasses.replace(
        state,
        encounter_type=new_type,
        selection_mode=None,
        university_id=None,
        university_name=None,
        state_code=None,
        state_name=None,
        parties=[owner_handle or "", ""],
        intimate_acts={},
    )
    return reset, True


def jurisdiction_label(state: FlowState) -> str:
    """Human-readable jurisdiction for summaries."""

    choice = state.jurisdiction_choice()
    if choice == JurisdictionChoice.UNIVERSITY:
        return state.university_name or state.university_id or "N/A"
    if choice == JurisdictionChoice.STATE:
        return state.state_name or state.state_code or "N/A"
    return "N/A"
