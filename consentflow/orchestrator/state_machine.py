"""Deterministic contract lifecycle state machine (Orchestrator).

This module defines:
- Closed status enums for contracts, collaborators, invitations and
  amendments.
- Event-driven transition tables, one per record kind, evaluated by a single
  `transition(current, event)` function.
- The Contract record, its audit trail, and a ContractStateMachine that
  applies guarded transitions to a contract.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from consentflow.utils.time_utils import coerce_dt


logger = logging.getLogger(__name__)


class ContractStatus(Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class CollaboratorStatus(Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    REJECTED = "rejected"
    CONFIRMED = "confirmed"


class InvitationStatus(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"


class AmendmentStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


CONTRACT_TRANSITIONS: Dict[ContractStatus, Dict[str, ContractStatus]] = {
    ContractStatus.DRAFT: {
        "SHARE": ContractStatus.PENDING_APPROVAL,
        "FINALIZE": ContractStatus.ACTIVE,
    },
    ContractStatus.PENDING_APPROVAL: {
        "SHARE": ContractStatus.PENDING_APPROVAL,  # re-invite
        "ALL_PARTIES_CONFIRMED": ContractStatus.ACTIVE,
        "COLLABORATOR_REJECTED": ContractStatus.DRAFT,
        "REVOKE": ContractStatus.COMPLETED,
    },
    ContractStatus.ACTIVE: {
        "PAUSE": ContractStatus.PAUSED,
        "AMENDMENT_APPLIED": ContractStatus.ACTIVE,
        "EXPIRE": ContractStatus.COMPLETED,
        "REVOKE": ContractStatus.COMPLETED,
    },
    ContractStatus.PAUSED: {
        "RESUME": ContractStatus.ACTIVE,
        "AMENDMENT_APPLIED": ContractStatus.PAUSED,
        "EXPIRE": ContractStatus.COMPLETED,
        "REVOKE": ContractStatus.COMPLETED,
    },
    ContractStatus.COMPLETED: {},
}

COLLABORATOR_TRANSITIONS: Dict[CollaboratorStatus, Dict[str, CollaboratorStatus]] = {
    CollaboratorStatus.PENDING: {
        "START_REVIEW": CollaboratorStatus.REVIEWING,
        "APPROVE": CollaboratorStatus.APPROVED,
        "REJECT": CollaboratorStatus.REJECTED,
    },
    CollaboratorStatus.REVIEWING: {
        "APPROVE": CollaboratorStatus.APPROVED,
        "REJECT": CollaboratorStatus.REJECTED,
    },
    CollaboratorStatus.APPROVED: {
        "CONFIRM": CollaboratorStatus.CONFIRMED,
    },
    CollaboratorStatus.REJECTED: {},
    CollaboratorStatus.CONFIRMED: {},
}

INVITATION_TRANSITIONS: Dict[InvitationStatus, Dict[str, InvitationStatus]] = {
    InvitationStatus.PENDING: {
        "ACCEPT": InvitationStatus.ACCEPTED,
        "EXPIRE": InvitationStatus.EXPIRED,
    },
    InvitationStatus.ACCEPTED: {},
    InvitationStatus.EXPIRED: {},
}

AMENDMENT_TRANSITIONS: Dict[AmendmentStatus, Dict[str, AmendmentStatus]] = {
    AmendmentStatus.PENDING: {
        "QUORUM_REACHED": AmendmentStatus.APPROVED,
        "REJECT": AmendmentStatus.REJECTED,
    },
    AmendmentStatus.APPROVED: {},
    AmendmentStatus.REJECTED: {},
}

_TABLES: Dict[type, Dict[Any, Dict[str, Any]]] = {
    ContractStatus: CONTRACT_TRANSITIONS,
    CollaboratorStatus: COLLABORATOR_TRANSITIONS,
    InvitationStatus: INVITATION_TRANSITIONS,
    AmendmentStatus: AMENDMENT_TRANSITIONS,
}


class InvalidTransitionError(Exception):
    """Raised when an invalid transition is attempted."""

    def __init__(self, current: Enum, event: str, reason: Optional[str] = None) -> None:
        self.current = current
        self.event = event
        self.reason = reason or "Invalid transition"
        super().__init__(f"{self.reason}: {event} from {current.value}")


def allowed_events(current: Enum) -> List[str]:
    table = _TABLES.get(type(current))
    if table is None:
        raise TypeError(f"No transition table for {type(current).__name__}")
    return list(table.get(current, {}).keys())


def can_transition(current: Enum, event: str) -> bool:
    return event in allowed_events(current)


def transition(current: Enum, event: str) -> Enum:
    """Return the status reached by applying `event` to `current`.

    Raises:
        InvalidTransitionError: If `event` is not allowed from `current`.
    """

    table = _TABLES.get(type(current))
    if table is None:
        raise TypeError(f"No transition table for {type(current).__name__}")
    allowed = table.get(current, {})
    if event not in allowed:
        raise InvalidTransitionError(current, event)
    return allowed[event]


@dataclass
class ContractEvent:
    """Audit trail event for a contract."""

    event_type: str
    timestamp: datetime
    source: str
    old_state: Optional[str]
    new_state: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    success: bool = True
    reason: Optional[str] = None


@dataclass
class Contract:
    """In-memory representation of a contract."""

    contract_id: str
    owner_id: str
    status: ContractStatus = ContractStatus.DRAFT
    is_collaborative: bool = False

    encounter_type: str = ""
    jurisdiction: Dict[str, Any] = field(default_factory=dict)
    parties: List[str] = field(default_factory=list)
    intimate_acts: Dict[str, str] = field(default_factory=dict)

    contract_start_time: Optional[datetime] = None
    contract_duration: Optional[int] = None
    contract_end_time: Optional[datetime] = None

    method: Optional[str] = None
    contract_text: str = ""
    method_payload: Dict[str, Any] = field(default_factory=dict)

    # Owner plus every collaborator who has approved
    participant_ids: List[str] = field(default_factory=list)
    amendment_count: int = 0
    completion_reason: Optional[str] = None  # expired | revoked

    # Audit trail
    events: List[ContractEvent] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_participant(self, user_id: str) -> bool:
        return user_id == self.owner_id or user_id in self.participant_ids

    def all_participants(self) -> List[str]:
        ids = [self.owner_id]
        ids.extend(p for p in self.participant_ids if p != self.owner_id)
        return ids


class ContractStateMachine:
    """Event-driven state machine for a single contract."""

    def __init__(self, contract: Contract) -> None:
        self.contract = contract

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------

    @property
    def current_state(self) -> ContractStatus:
        return self.contract.status

    def can_transition(self, event: str) -> bool:
        """Return True if event is allowed from current state."""

        return can_transition(self.current_state, event)

    def get_allowed_events(self) -> List[str]:
        return allowed_events(self.current_state)

    def transition(
        self,
        event: str,
        source: str = "system",
        timestamp: Optional[datetime] = None,
        **context: Any,
    ) -> bool:
        """Attempt a transition based on an event.

        Args:
            event: Event name (e.g. "SHARE", "PAUSE").
            source: Actor that triggered the event (user id or "system").
            timestamp: Event time. Defaults to current UTC time.
            context: Optional event-specific metadata.

        Returns:
            True if transition occurred, False otherwise. Failed attempts
            are recorded in the audit trail with a reason.
        """

        if not self.can_transition(event):
            self._log_event(
                event, source, timestamp,
                old_state=self.current_state, new_state=None,
                metadata=context, success=False, reason="Invalid transition",
            )
            return False

        guard_failure = self._check_guards(event, timestamp)
        if guard_failure:
            self._log_event(
                event, source, timestamp,
                old_state=self.current_state, new_state=None,
                metadata=context, success=False, reason=guard_failure,
            )
            return False

        old_state = self.current_state
        new_state = transition(old_state, event)

        self.contract.status = new_state
        self.contract.updated_at = coerce_dt(timestamp) or self._utcnow()

        self._log_event(
            event, source, timestamp,
            old_state=old_state, new_state=new_state,
            metadata=context, success=True,
        )
        self._post_transition(event, context)
        return True

    def apply(
        self,
        event: str,
        source: str = "system",
        timestamp: Optional[datetime] = None,
        **context: Any,
    ) -> ContractStatus:
        """Like `transition`, but raise InvalidTransitionError on failure."""

        if not self.transition(event, source=source, timestamp=timestamp, **context):
            reason = self.contract.events[-1].reason if self.contract.events else None
            raise InvalidTransitionError(self.current_state, event, reason)
        return self.current_state

    def check_expiry(self, now: Optional[datetime] = None, source: str = "system") -> bool:
        """Complete the contract if its end time has passed."""

        end = self.contract.contract_end_time
        if end is None:
            return False

        current_now = coerce_dt(now) or self._utcnow()
        if current_now < end:
            return False

        if self.current_state not in (ContractStatus.ACTIVE, ContractStatus.PAUSED):
            return False

        return self.transition("EXPIRE", source=source, timestamp=current_now)

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    def _check_guards(self, event: str, timestamp: Optional[datetime]) -> Optional[str]:
        if event == "FINALIZE" and self.contract.is_collaborative:
            return "Collaborative contracts are activated by collaborator confirmation"

        if event == "FINALIZE" and self.contract.contract_end_time is not None:
            now = coerce_dt(timestamp) or self._utcnow()
            if self.contract.contract_end_time <= now:
                return "Contract end time is in the past"

        return None

    def _post_transition(self, event: str, context: Dict[str, Any]) -> None:
        if event == "EXPIRE":
            self.contract.completion_reason = "expired"
        elif event == "REVOKE":
            self.contract.completion_reason = "revoked"
        elif event == "AMENDMENT_APPLIED":
            self.contract.amendment_count += 1

    def _log_event(
        self,
        event_type: str,
        source: str,
        timestamp: Optional[datetime],
        old_state: Optional[ContractStatus],
        new_state: Optional[ContractStatus],
        metadata: Dict[str, Any],
        success: bool,
        reason: Optional[str] = None,
    ) -> None:
        ts = coerce_dt(timestamp) or self._utcnow()
        self.contract.events.append(
            ContractEvent(
                event_type=event_type,
                timestamp=ts,
                source=source,
                old_state=old_state.value if old_state else None,
                new_state=new_state.value if new_state else None,
                metadata=dict(metadata or {}),
                success=success,
                reason=reason,
            )
        )
        if success:
            logger.info(
                "Contract %s: %s -> %s (via %s)",
                self.contract.contract_id,
                old_state.value if old_state else None,
                new_state.value if new_state else None,
                event_type,
            )
        else:
            logger.debug(
                "Contract %s: rejected %s from %s (%s)",
                self.contract.contract_id,
                event_type,
                old_state.value if old_state else None,
                reason,
            )

    @staticmethod
    def _utcnow() -> datetime:
        return datetime.now(timezone.utc)
