"""In-progress wizard state (the "flow").

This module defines:
- Catalogues of encounter types, intimate acts and recording methods.
- The FlowState snapshot the wizard mutates and the draft store persists.

FlowState is a plain dataclass: callers produce new snapshots with
`dataclasses.replace`, which keeps persistence of "the current state"
unambiguous.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from consentflow.utils.time_utils import to_iso


ENCOUNTER_TYPES: Dict[str, str] = {
    "intimate": "Intimate Encounter",
    "date": "Date",
    "conversation": "Conversation",
    "medical": "Medical Consultation",
    "professional": "Professional Meeting",
    "other": "Other",
}

# Encounter types that must name a university or state (or opt out explicitly)
ENCOUNTER_TYPES_REQUIRING_JURISDICTION = frozenset({"intimate", "date"})

INTIMATE_ACT_OPTIONS: List[str] = [
    "Touching/Caressing",
    "Kissing",
    "Manual Stimulation",
    "Oral Stimulation",
    "Oral Intercourse",
    "Penetrative Intercourse",
    "Photography/Video Recording",
    "Other Acts (Specify in Contract)",
]


class SelectionMode(Enum):
    """How the jurisdiction step was answered."""

    SELECT_UNIVERSITY = "select-university"
    SELECT_STATE = "select-state"
    NOT_APPLICABLE = "not-applicable"


class RecordingMethod(Enum):
    SIGNATURE = "signature"
    VOICE = "voice"
    PHOTO = "photo"
    BIOMETRIC = "biometric"


class ActChoice(Enum):
    YES = "yes"
    NO = "no"


class JurisdictionChoice(Enum):
    UNIVERSITY = "university"
    STATE = "state"
    NOT_APPLICABLE = "not_applicable"


def next_act_choice(current: Optional[str]) -> Optional[str]:
    """Cycle an act through unselected -> yes -> no -> unselected."""

    if current is None:
        return ActChoice.YES.value
    if current == ActChoice.YES.value:
        return ActChoice.NO.value
    return None


def is_known_act(act: str) -> bool:
    return act in INTIMATE_ACT_OPTIONS


@dataclass
class FlowState:
    """Snapshot of an in-progress consent flow."""

    encounter_type: str = ""

    # Jurisdiction (selection_mode persists independently of the value pairs)
    selection_mode: Optional[SelectionMode] = None
    university_id: Optional[str] = None
    university_name: Optional[str] = None
    state_code: Optional[str] = None
    state_name: Optional[str] = None

    # Index 0 is reserved for the acting user's own handle
    parties: List[str] = field(default_factory=lambda: ["", ""])

    # act name -> "yes" | "no"; absence means unselected
    intimate_acts: Dict[str, str] = field(default_factory=dict)

    contract_start_time: Optional[datetime] = None
    contract_duration: Optional[int] = None  # minutes
    contract_end_time: Optional[datetime] = None

    method: Optional[RecordingMethod] = None

    draft_id: Optional[str] = None
    is_collaborative: bool = False
    contract_text: Optional[str] = None

    # Signature images, photo URL, credential material: forwarded untouched
    method_payload: Dict[str, Any] = field(default_factory=dict)

    last_edited_at: Optional[datetime] = None

    def jurisdiction_choice(self) -> Optional[JurisdictionChoice]:
        """Return the active jurisdiction choice, if any."""

        if self.selection_mode == SelectionMode.NOT_APPLICABLE:
            return JurisdictionChoice.NOT_APPLICABLE
        if self.selection_mode == SelectionMode.SELECT_UNIVERSITY:
            return JurisdictionChoice.UNIVERSITY if self.university_id else None
        if self.selection_mode == SelectionMode.SELECT_STATE:
            return JurisdictionChoice.STATE if self.state_code else None
        if self.university_id:
            return JurisdictionChoice.UNIVERSITY
        if self.state_code:
            return JurisdictionChoice.STATE
        return None

    def has_duration(self) -> bool:
        return (
            self.contract_start_time is not None
            and self.contract_duration is not None
            and self.contract_end_time is not None
        )

    def non_empty_parties(self) -> List[str]:
        return [p.strip() for p in self.parties if p and p.strip()]

    def selected_acts(self) -> List[str]:
        return [act for act, choice in self.intimate_acts.items() if choice == ActChoice.YES.value]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-friendly dict (camelCase keys, as stored)."""

        return {
            "encounterType": self.encounter_type,
            "selectionMode": self.selection_mode.value if self.selection_mode else None,
            "universityId": self.university_id,
            "universityName": self.university_name,
            "stateCode": self.state_code,
            "stateName": self.state_name,
            "parties": list(self.parties),
            "intimateActs": dict(self.intimate_acts),
            "contractStartTime": to_iso(self.contract_start_time),
            "contractDuration": self.contract_duration,
            "contractEndTime": to_iso(self.contract_end_time),
            "method": self.method.value if self.method else None,
            "draftId": self.draft_id,
            "isCollaborative": self.is_collaborative,
            "contractText": self.contract_text,
            "methodPayload": dict(self.method_payload),
            "lastEditedAt": to_iso(self.last_edited_at),
        }
