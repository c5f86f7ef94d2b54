"""Wizard Controller: owns the FlowState and drives the consent wizard.

Responsibilities:
- Hydrate from the draft store once user preferences have resolved.
- Apply mutations, stamp `last_edited_at`, and persist the current state.
- Gate "next" on per-step validity and hand off to the finalize screen.
- Build the payloads sent to the contract backend on save and share.

Storage and the preferences backend are injected; the controller never
reaches for a module-level singleton.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from consentflow.orchestrator.collaboration import CollaborationManager
from consentflow.orchestrator.errors import CollaborationStateError, ContractValidationError
from consentflow.orchestrator.lifecycle import COLLABORATIVE_DRAFT_MESSAGE, ContractLifecycle
from consentflow.orchestrator.records import Collaborator, DraftPayload, Invitation
from consentflow.orchestrator.state_machine import Contract
from consentflow.utils.jurisdictions import state_name
from consentflow.utils.time_utils import (
    DEFAULT_DURATION_MINUTES,
    coerce_dt,
    compute_end_time,
    format_duration,
    utcnow,
)
from consentflow.wizard import parties as party_ops
from consentflow.wizard.draft_store import DraftStore, UserPreferences, default_flow_state, is_stale
from consentflow.wizard.flow_state import (
    ENCOUNTER_TYPES,
    FlowState,
    RecordingMethod,
    SelectionMode,
    is_known_act,
    next_act_choice,
)
from consentflow.wizard.parties import PartyErrors, find_duplicates, validate_party
from consentflow.wizard.steps import (
    Step,
    StepPlan,
    compute_steps,
    derive_resume_step,
    jurisdiction_label,
    nearest_valid_step,
    reset_for_encounter_change,
)
from consentflow.wizard.validation import (
    DUPLICATE_PARTY,
    ENCOUNTER_TYPE_REQUIRED,
    END_TIME_IN_PAST,
    JURISDICTION_REQUIRED,
    METHOD_REQUIRED,
    PARTIES_REQUIRED,
    PARTY_ERRORS,
    ValidationIssue,
)


logger = logging.getLogger(__name__)

PreferencesProvider = Callable[[str], Optional[UserPreferences]]

FINALIZE_ROUTE = "/create/consent/{method}"


# ---------------------------------------------------------------------------
# Step gating (pure)
# ---------------------------------------------------------------------------


def step_issue(
    state: FlowState,
    step: Step,
    party_errors: Optional[PartyErrors] = None,
    now: Optional[datetime] = None,
) -> Optional[ValidationIssue]:
    """Return the issue blocking `step`, or None if the user may proceed."""

    if step == Step.ENCOUNTER_TYPE:
        if not state.encounter_type:
            return ValidationIssue(ENCOUNTER_TYPE_REQUIRED, "Please select an encounter type.")
        return None

    if step == Step.JURISDICTION:
        if state.jurisdiction_choice() is None:
            return ValidationIssue(
                JURISDICTION_REQUIRED,
                "Please select a university or state, or mark this as not applicable.",
            )
        return None

    if step == Step.PARTIES:
        if not state.non_empty_parties():
            return ValidationIssue(PARTIES_REQUIRED, "Please add at least one party.")
        if party_errors:
            return ValidationIssue(PARTY_ERRORS, "Please fix the highlighted parties.")
        for value in state.parties:
            issue = validate_party(value)
            if issue:
                return ValidationIssue(PARTY_ERRORS, issue.message)
        duplicates = find_duplicates(state.parties)
        if duplicates:
            first = duplicates[min(duplicates)]
            return ValidationIssue(DUPLICATE_PARTY, first.message)
        return None

    if step == Step.DURATION:
        if state.contract_start_time is None or state.contract_duration is None:
            return None
        end = compute_end_time(state.contract_start_time, state.contract_duration)
        current = coerce_dt(now) or utcnow()
        if end <= current:
            return ValidationIssue(END_TIME_IN_PAST, "The contract end time must be in the future.")
        return None

    if step == Step.RECORDING_METHOD:
        if state.method is None:
            return ValidationIssue(METHOD_REQUIRED, "Please choose how consent will be recorded.")
        return None

    return None


def can_proceed(
    state: FlowState,
    step: Step,
    party_errors: Optional[PartyErrors] = None,
    now: Optional[datetime] = None,
) -> bool:
    return step_issue(state, step, party_errors, now) is None


def build_summary_text(state: FlowState) -> str:
    """Plain-text contract summary used when no finalized text exists yet."""

    encounter = ENCOUNTER_TYPES.get(state.encounter_type, state.encounter_type or "Not specified")
    parties = ", ".join(state.non_empty_parties()) or "None"
    acts = ", ".join(state.selected_acts()) or "None"
    text = (
        "Consent Contract\n\n"
        f"Encounter Type: {encounter}\n"
        f"Parties: {parties}\n"
        f"Intimate Acts: {acts}\n"
        f"Jurisdiction: {jurisdiction_label(state)}\n"
    )
    if state.contract_duration:
        text += f"Duration: {format_duration(state.contract_duration)}\n"
    return text


@dataclass
class NavigationTarget:
    """Where the wizard goes after `next()`.

    kind is "step" (move within the wizard), "finalize" (hand off to the
    method-specific screen) or "blocked" (stay put; see `issue`).
    """

    kind: str
    step: Optional[int] = None
    route: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    issue: Optional[ValidationIssue] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "step": self.step,
            "route": self.route,
            "params": self.params,
            "issue": self.issue.to_dict() if self.issue else None,
        }


class WizardController:
    """Stateful controller for one user's consent flow."""

    def __init__(
        self,
        draft_store: DraftStore,
        user_id: str,
        owner_handle: str = "",
        preferences_provider: Optional[PreferencesProvider] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.draft_store = draft_store
        self.user_id = user_id
        self.owner_handle = party_ops.normalize_party(owner_handle)
        self.preferences_provider = preferences_provider
        self.clock = clock or utcnow

        self.preferences: Optional[UserPreferences] = None
        self.party_errors = PartyErrors()
        self.is_hydrated = False
        self.last_save_ok = True

        self._state = self._defaults()
        self._step = 1

    # ------------------------------------------------------------------
    # Hydration
    # ------------------------------------------------------------------

    def hydrate(self) -> FlowState:
        """Resolve preferences, read the stored flow, then reconcile.

        Preferences are fetched first; a failing provider counts as resolved
        with no preferences. Only then is the stored blob read and merged
        over the preference-seeded defaults.
        """

        self.preferences = self._fetch_preferences()
        defaults = self._defaults()

        stored = self.draft_store.load(defaults)
        self._state = stored if stored is not None else defaults
        self.party_errors = PartyErrors()
        for index, value in enumerate(self._state.parties):
            self.party_errors.set(index, validate_party(value))

        if self._state.draft_id or self._state.last_edited_at:
            self._step = derive_resume_step(self._state)
        else:
            self._step = 1

        self.is_hydrated = True
        logger.debug("Hydrated flow for %s at step %d", self.user_id, self._step)
        return self._state

    # ------------------------------------------------------------------
    # Exposed surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def plan(self) -> StepPlan:
        return compute_steps(self._state.encounter_type)

    @property
    def current_step(self) -> int:
        """Current ordinal, self-corrected into the current plan."""

        corrected = nearest_valid_step(self.plan, self._step)
        if corrected != self._step:
            logger.debug("Step %s not in plan, moving to %d", self._step, corrected)
            self._step = corrected
        return self._step

    @property
    def current_step_name(self) -> Step:
        return self.plan.step_at(self.current_step)

    def update_state(self, partial: Optional[Dict[str, Any]] = None, **changes: Any) -> FlowState:
        """Merge `partial` into the state, stamp it, and persist it.

        A change of encounter type mid-flow resets the type-specific fields
        and moves the step pointer to the new Jurisdiction-or-Parties step.
        """

        updates = dict(partial or {})
        updates.update(changes)
        known = {f.name for f in dataclasses.fields(FlowState)}
        unknown = set(updates) - known
        if unknown:
            raise ValueError(f"Unknown flow fields: {', '.join(sorted(unknown))}")

        state = self._state
        did_reset = False
        if "encounter_type" in updates:
            state, did_reset = reset_for_encounter_change(
                state, updates.pop("encounter_type") or "", self.owner_handle
            )
            if did_reset:
                for name in ("selection_mode", "university_id", "university_name",
                             "state_code", "state_name", "parties", "intimate_acts"):
                    updates.pop(name, None)

        updates["last_edited_at"] = self.clock()
        self._state = dataclasses.replace(state, **updates)

        if did_reset:
            self.party_errors.clear()
            self._step = self.plan.ordinal(self.plan.first_detail_step)
            logger.info("Encounter type changed to %s; flow reset", self._state.encounter_type)
        self._step = nearest_valid_step(self.plan, self._step)

        self._persist()
        return self._state

    def reset_state(self) -> FlowState:
        """Discard the flow and start over from preference-seeded defaults."""

        self._state = self._defaults()
        self._step = 1
        self.party_errors.clear()
        self.draft_store.clear()
        return self._state

    def reset_if_stale(self, now: Optional[datetime] = None) -> bool:
        """Reset only an abandoned flow; in-progress work is left alone."""

        if is_stale(self._state, coerce_dt(now) or self.clock()):
            logger.info("Discarding stale flow for %s", self.user_id)
            self.reset_state()
            return True
        return False

    def has_required_data(self) -> bool:
        return bool(self._state.encounter_type) and len(self._state.non_empty_parties()) >= 2

    # ------------------------------------------------------------------
    # Field setters
    # ------------------------------------------------------------------

    def set_encounter_type(self, encounter_type: str) -> FlowState:
        if encounter_type not in ENCOUNTER_TYPES:
            raise ValueError(f"Unknown encounter type: {encounter_type!r}")
        return self.update_state(encounter_type=encounter_type)

    def set_selection_mode(self, mode: Union[SelectionMode, str]) -> FlowState:
        """Switch how the jurisdiction is chosen; clears the other value pair."""

        mode = SelectionMode(mode)
        if mode == SelectionMode.SELECT_UNIVERSITY:
            return self.update_state(selection_mode=mode, state_code=None, state_name=None)
        if mode == SelectionMode.SELECT_STATE:
            return self.update_state(selection_mode=mode, university_id=None, university_name=None)
        return self.set_not_applicable()

    def select_university(self, university_id: str, university_name: Optional[str] = None) -> FlowState:
        return self.update_state(
            selection_mode=SelectionMode.SELECT_UNIVERSITY,
            university_id=university_id,
            university_name=university_name,
            state_code=None,
            state_name=None,
        )

    def select_state(self, state_code: str) -> FlowState:
        name = state_name(state_code)
        if name is None:
            raise ValueError(f"Unknown state code: {state_code!r}")
        return self.update_state(
            selection_mode=SelectionMode.SELECT_STATE,
            state_code=state_code.strip().upper(),
            state_name=name,
            university_id=None,
            university_name=None,
        )

    def set_not_applicable(self) -> FlowState:
        return self.update_state(
            selection_mode=SelectionMode.NOT_APPLICABLE,
            university_id=None,
            university_name=None,
            state_code=None,
            state_name=None,
        )

    def update_party(self, index: int, raw: str) -> Optional[ValidationIssue]:
        """Set party `index`; returns its validation issue, if any."""

        updated = party_ops.update_party(self._state.parties, self.party_errors, index, raw)
        self.update_state(parties=updated)
        return self.party_errors.get(index)

    def add_party(self) -> FlowState:
        return self.update_state(parties=party_ops.add_party(self._state.parties))

    def remove_party(self, index: int) -> FlowState:
        updated = party_ops.remove_party(self._state.parties, self.party_errors, index)
        return self.update_state(parties=updated)

    def add_contact(self, username: str) -> FlowState:
        return self.update_state(parties=party_ops.add_contact(self._state.parties, username))

    def toggle_act(self, act: str) -> Optional[str]:
        """Cycle `act` through unselected -> yes -> no; returns the new choice."""

        if not is_known_act(act):
            raise ValueError(f"Unknown intimate act: {act!r}")
        acts = dict(self._state.intimate_acts)
        choice = next_act_choice(acts.get(act))
        if choice is None:
            acts.pop(act, None)
        else:
            acts[act] = choice
        self.update_state(intimate_acts=acts)
        return choice

    def set_duration(self, start: datetime, minutes: Optional[int] = None) -> FlowState:
        """Set start and duration together; the end time is derived."""

        if minutes is None:
            minutes = (
                self.preferences.default_contract_duration
                if self.preferences and self.preferences.default_contract_duration
                else DEFAULT_DURATION_MINUTES
            )
        start_dt = coerce_dt(start)
        return self.update_state(
            contract_start_time=start_dt,
            contract_duration=minutes,
            contract_end_time=compute_end_time(start_dt, minutes),
        )

    def clear_duration(self) -> FlowState:
        return self.update_state(
            contract_start_time=None, contract_duration=None, contract_end_time=None
        )

    def set_method(self, method: Union[RecordingMethod, str]) -> FlowState:
        return self.update_state(method=RecordingMethod(method))

    def set_method_payload(self, **fields: Any) -> FlowState:
        payload = dict(self._state.method_payload)
        payload.update(fields)
        return self.update_state(method_payload=payload)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def step_issue(self, now: Optional[datetime] = None) -> Optional[ValidationIssue]:
        return step_issue(self._state, self.current_step_name, self.party_errors, now or self.clock())

    def can_proceed(self, now: Optional[datetime] = None) -> bool:
        return self.step_issue(now) is None

    def next(self, now: Optional[datetime] = None) -> NavigationTarget:
        """Advance one step, or hand off to the finalize screen on the last step."""

        issue = self.step_issue(now)
        if issue is not None:
            return NavigationTarget(kind="blocked", step=self.current_step, issue=issue)

        if self.current_step >= self.plan.total_steps:
            method = self._state.method.value
            return NavigationTarget(
                kind="finalize",
                route=FINALIZE_ROUTE.format(method=method),
                params=self.finalize_params(),
            )

        self._step = self.current_step + 1
        return NavigationTarget(kind="step", step=self._step)

    def back(self) -> int:
        self._step = max(1, self.current_step - 1)
        return self._step

    def finalize_params(self) -> Dict[str, Any]:
        """Accumulated state handed to the method-specific finalize screen."""

        state = self._state
        return {
            "encounterType": state.encounter_type,
            "universityId": state.university_id,
            "universityName": state.university_name,
            "stateCode": state.state_code,
            "stateName": state.state_name,
            "parties": state.non_empty_parties(),
            "intimateActs": dict(state.intimate_acts),
            "contractStartTime": state.to_dict()["contractStartTime"],
            "contractDuration": state.contract_duration,
            "contractEndTime": state.to_dict()["contractEndTime"],
            "method": state.method.value if state.method else None,
            "draftId": state.draft_id,
        }

    # ------------------------------------------------------------------
    # Outgoing payloads
    # ------------------------------------------------------------------

    def build_draft_payload(self) -> DraftPayload:
        return self._payload(status="draft", is_collaborative=False)

    def build_share_payload(self) -> DraftPayload:
        return self._payload(status="pending_approval", is_collaborative=True)

    def save_draft(self, lifecycle: ContractLifecycle) -> Contract:
        """Create the draft, or update it while it is still private.

        Raises:
            ContractValidationError: No encounter type chosen yet.
            CollaborationStateError: The draft has already been shared.
        """

        if not self._state.encounter_type:
            raise ContractValidationError(
                "Choose an encounter type before saving a draft.", code=ENCOUNTER_TYPE_REQUIRED
            )
        if self._state.is_collaborative:
            raise CollaborationStateError(COLLABORATIVE_DRAFT_MESSAGE, code="COLLABORATIVE_DRAFT")

        payload = self.build_draft_payload()
        if self._state.draft_id:
            contract = lifecycle.update_draft(self._state.draft_id, self.user_id, payload)
        else:
            contract = lifecycle.create_draft(self.user_id, payload)
            self.update_state(draft_id=contract.contract_id)
        return contract

    def share_draft(
        self,
        lifecycle: ContractLifecycle,
        collaboration: CollaborationManager,
        recipient_user_id: Optional[str] = None,
        recipient_email: Optional[str] = None,
    ) -> Union[Collaborator, Invitation]:
        """Share the draft; an already-shared draft can be re-shared but not edited."""

        if bool(recipient_user_id) == bool(recipient_email):
            raise ValueError("Provide exactly one of recipient_user_id or recipient_email")

        if not self._state.is_collaborative:
            if not self._state.encounter_type:
                raise ContractValidationError(
                    "Choose an encounter type before sharing.", code=ENCOUNTER_TYPE_REQUIRED
                )
            payload = self.build_share_payload()
            if self._state.draft_id:
                lifecycle.update_draft(self._state.draft_id, self.user_id, payload)
            else:
                contract = lifecycle.create_draft(self.user_id, payload)
                self.update_state(draft_id=contract.contract_id)

        if recipient_user_id:
            result = collaboration.share_with_user(self._state.draft_id, self.user_id, recipient_user_id)
        else:
            result = collaboration.share_with_email(self._state.draft_id, self.user_id, recipient_email)

        self.update_state(is_collaborative=True)
        return result

    def finalize_contract(self, lifecycle: ContractLifecycle) -> Contract:
        """Save and activate a private contract, then start a fresh flow."""

        issue = self.step_issue()
        if self.current_step < self.plan.total_steps or issue is not None:
            raise ContractValidationError(
                issue.message if issue else "Complete every step before finalizing.",
                code=issue.code if issue else "FLOW_INCOMPLETE",
            )

        contract = self.save_draft(lifecycle)
        contract = lifecycle.finalize(
            contract.contract_id,
            self.user_id,
            method=self._state.method.value,
            method_payload=self._state.method_payload,
        )
        self.reset_state()
        return contract

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _payload(self, status: str, is_collaborative: bool) -> DraftPayload:
        state = self._state
        return DraftPayload(
            encounter_type=state.encounter_type,
            parties=state.non_empty_parties(),
            intimate_acts=dict(state.intimate_acts),
            jurisdiction={
                "selection_mode": state.selection_mode.value if state.selection_mode else None,
                "university_id": state.university_id,
                "university_name": state.university_name,
                "state_code": state.state_code,
                "state_name": state.state_name,
            },
            contract_text=state.contract_text or build_summary_text(state),
            status=status,
            is_collaborative=is_collaborative,
            contract_start_time=state.contract_start_time,
            contract_duration=state.contract_duration,
            contract_end_time=state.contract_end_time,
            method=state.method.value if state.method else None,
            method_payload=dict(state.method_payload),
        )

    def _defaults(self) -> FlowState:
        state = default_flow_state(self.preferences)
        if self.owner_handle:
            state.parties = [self.owner_handle, ""]
        return state

    def _fetch_preferences(self) -> Optional[UserPreferences]:
        if self.preferences_provider is None:
            return None
        try:
            return self.preferences_provider(self.user_id)
        except Exception as e:
            logger.warning("Could not load preferences for %s: %s", self.user_id, e)
            return None

    def _persist(self) -> None:
        if not self.is_hydrated:
            return
        self.last_save_ok = self.draft_store.save(self._state)
        if not self.last_save_ok:
            logger.warning("Flow state kept in memory only; will retry on next change")
