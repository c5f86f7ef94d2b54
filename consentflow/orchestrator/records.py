"""Records attached to a contract: collaborators, invitations, amendments
and in-app notifications, plus the draft payload the wizard hands over.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from consentflow.orchestrator.state_machine import (
    AmendmentStatus,
    CollaboratorStatus,
    InvitationStatus,
)
from consentflow.utils.time_utils import coerce_dt, to_iso


def new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ParticipantType(Enum):
    PMY_USER = "pmy_user"
    EXTERNAL = "external"


class AmendmentType(Enum):
    ADD_ACTS = "add_acts"
    REMOVE_ACTS = "remove_acts"
    EXTEND_DURATION = "extend_duration"
    SHORTEN_DURATION = "shorten_duration"


AMENDMENT_TYPE_LABELS: Dict[str, str] = {
    AmendmentType.ADD_ACTS.value: "Add Intimate Acts",
    AmendmentType.REMOVE_ACTS.value: "Remove Intimate Acts",
    AmendmentType.EXTEND_DURATION.value: "Extend Duration",
    AmendmentType.SHORTEN_DURATION.value: "Shorten Duration",
}


@dataclass
class Collaborator:
    """A party attached to a contract for approval purposes."""

    collaborator_id: str
    contract_id: str
    user_id: Optional[str]
    participant_type: ParticipantType = ParticipantType.PMY_USER
    role: str = "recipient"
    status: CollaboratorStatus = CollaboratorStatus.PENDING
    email: Optional[str] = None
    invited_by: Optional[str] = None
    invited_at: datetime = field(default_factory=_utcnow)
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    confirmed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collaborator_id": self.collaborator_id,
            "contract_id": self.contract_id,
            "user_id": self.user_id,
            "participant_type": self.participant_type.value,
            "role": self.role,
            "status": self.status.value,
            "email": self.email,
            "invited_by": self.invited_by,
            "invited_at": to_iso(self.invited_at),
            "approved_at": to_iso(self.approved_at),
            "rejected_at": to_iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "confirmed_at": to_iso(self.confirmed_at),
        }


@dataclass
class Invitation:
    """An email-based collaboration request for someone who may not have an account."""

    invitation_id: str
    contract_id: str
    invitation_code: str
    sender_id: str
    recipient_email: str
    expires_at: datetime
    status: InvitationStatus = InvitationStatus.PENDING
    created_at: datetime = field(default_factory=_utcnow)
    accepted_at: Optional[datetime] = None
    accepted_by: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Expired by status, or at/after expires_at regardless of status."""

        if self.status == InvitationStatus.EXPIRED:
            return True
        current = coerce_dt(now) or _utcnow()
        return current >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invitation_id": self.invitation_id,
            "contract_id": self.contract_id,
            "invitation_code": self.invitation_code,
            "sender_id": self.sender_id,
            "recipient_email": self.recipient_email,
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
            "expires_at": to_iso(self.expires_at),
            "accepted_at": to_iso(self.accepted_at),
            "accepted_by": self.accepted_by,
        }


@dataclass
class Amendment:
    """A proposed change to an active contract.

    `changes` is kept as the raw JSON text it was stored with; it is parsed
    on every read so that a malformed payload is detected, not trusted.
    """

    amendment_id: str
    contract_id: str
    requested_by: str
    amendment_type: str
    changes: str
    reason: Optional[str] = None
    status: AmendmentStatus = AmendmentStatus.PENDING
    approvers: List[str] = field(default_factory=list)
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != AmendmentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amendment_id": self.amendment_id,
            "contract_id": self.contract_id,
            "requested_by": self.requested_by,
            "amendment_type": self.amendment_type,
            "changes": self.changes,
            "reason": self.reason,
            "status": self.status.value,
            "approvers": list(self.approvers),
            "rejected_by": self.rejected_by,
            "rejection_reason": self.rejection_reason,
            "created_at": to_iso(self.created_at),
            "approved_at": to_iso(self.approved_at),
            "rejected_at": to_iso(self.rejected_at),
        }


@dataclass
class Notification:
    notification_id: str
    user_id: str
    type: str
    title: str
    message: str
    contract_id: Optional[str] = None
    amendment_id: Optional[str] = None
    is_read: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "contract_id": self.contract_id,
            "amendment_id": self.amendment_id,
            "is_read": self.is_read,
            "created_at": to_iso(self.created_at),
        }


@dataclass
class DraftPayload:
    """What the wizard sends to the contract backend on save or share."""

    encounter_type: str
    parties: List[str]
    intimate_acts: Dict[str, str]
    jurisdiction: Dict[str, Any]
    contract_text: str
    status: str = "draft"
    is_collaborative: bool = False
    contract_start_time: Optional[datetime] = None
    contract_duration: Optional[int] = None
    contract_end_time: Optional[datetime] = None
    method: Optional[str] = None
    method_payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "encounter_type": self.encounter_type,
            "parties": list(self.parties),
            "intimate_acts": dict(self.intimate_acts),
            "jurisdiction": dict(self.jurisdiction),
            "contract_text": self.contract_text,
            "status": self.status,
            "is_collaborative": self.is_collaborative,
            "contract_start_time": to_iso(self.contract_start_time),
            "contract_duration": self.contract_duration,
            "contract_end_time": to_iso(self.contract_end_time),
            "method": self.method,
            "method_payload": dict(self.method_payload),
        }
