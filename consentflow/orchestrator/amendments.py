"""Amendment Engine: dual-party approval of changes to live contracts.

An amendment moves pending -> approved | rejected and never leaves those
terminal states. It is approved once every participant other than the
requester has approved; the approval that completes the quorum applies the
change to the contract.

The stored `changes` text is parsed on every read. Text that fails the
structural parse makes the amendment permanently unusable: it renders as an
error state and refuses approve/reject until a fresh proposal replaces it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from consentflow.orchestrator.contract_store import ContractStore
from consentflow.orchestrator.errors import (
    AmendmentValidationError,
    CollaborationStateError,
    MalformedDataError,
    NotFoundError,
    PermissionDeniedError,
    SelfApprovalError,
)
from consentflow.orchestrator.notifications import Notifier
from consentflow.orchestrator.records import (
    AMENDMENT_TYPE_LABELS,
    Amendment,
    AmendmentType,
    new_id,
)
from consentflow.orchestrator.state_machine import (
    AmendmentStatus,
    Contract,
    ContractStateMachine,
    ContractStatus,
    transition,
)
from consentflow.utils.time_utils import coerce_dt, duration_between, to_iso, utcnow
from consentflow.wizard.flow_state import ActChoice, is_known_act


logger = logging.getLogger(__name__)

MAX_APPROVED_AMENDMENTS = 2
AMENDABLE_STATES = (ContractStatus.ACTIVE, ContractStatus.PAUSED)

ACT_KEYS = {
    AmendmentType.ADD_ACTS.value: "addedActs",
    AmendmentType.REMOVE_ACTS.value: "removedActs",
}
DURATION_TYPES = (AmendmentType.EXTEND_DURATION.value, AmendmentType.SHORTEN_DURATION.value)


def parse_changes(amendment_type: str, changes: str) -> Dict[str, Any]:
    """Structurally parse stored amendment changes.

    Returns:
        {"addedActs": [...]}, {"removedActs": [...]} or
        {"newEndTime": datetime}.

    Raises:
        MalformedDataError: If the text or its shape is not usable.
    """

    if amendment_type not in AMENDMENT_TYPE_LABELS:
        raise MalformedDataError(f"Unknown amendment type: {amendment_type!r}")

    try:
        data = json.loads(changes) if isinstance(changes, str) else None
    except json.JSONDecodeError as e:
        raise MalformedDataError(f"Amendment changes are not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedDataError("Amendment changes must be a JSON object.")

    if amendment_type in ACT_KEYS:
        key = ACT_KEYS[amendment_type]
        acts = data.get(key)
        if not isinstance(acts, list) or not acts or not all(isinstance(a, str) and a for a in acts):
            raise MalformedDataError(f"{key} must be a non-empty list of act names.")
        return {key: list(dict.fromkeys(acts))}

    end = coerce_dt(data.get("newEndTime")) if isinstance(data.get("newEndTime"), str) else None
    if end is None:
        raise MalformedDataError("newEndTime must be an ISO-8601 timestamp.")
    return {"newEndTime": end}


def validate_changes(
    contract: Contract,
    amendment_type: str,
    parsed: Dict[str, Any],
    now: datetime,
) -> None:
    """Check parsed changes against the contract.

    Raises:
        AmendmentValidationError: On unknown acts or an unusable end time.
    """

    if amendment_type in ACT_KEYS:
        unknown = [a for a in parsed[ACT_KEYS[amendment_type]] if not is_known_act(a)]
        if unknown:
            raise AmendmentValidationError(
                f"Unknown intimate acts: {', '.join(unknown)}", code="UNKNOWN_ACT"
            )
        return

    new_end: datetime = parsed["newEndTime"]
    if new_end <= now:
        raise AmendmentValidationError("New end time must be in the future.", code="END_TIME_IN_PAST")

    current_end = contract.contract_end_time
    if current_end is None:
        return
    if amendment_type == AmendmentType.EXTEND_DURATION.value and new_end <= current_end:
        raise AmendmentValidationError(
            "An extension must end later than the current end time.", code="NOT_AN_EXTENSION"
        )
    if amendment_type == AmendmentType.SHORTEN_DURATION.value and new_end >= current_end:
        raise AmendmentValidationError(
            "Shortening must end earlier than the current end time.", code="NOT_A_SHORTENING"
        )


def required_approvers(contract: Contract, amendment: Amendment) -> List[str]:
    """Every contract participant except the requester."""

    return [p for p in contract.all_participants() if p != amendment.requested_by]


@dataclass
class AmendmentView:
    """Render-safe projection of an amendment for one viewer."""

    amendment_id: str
    amendment_type: str
    label: str
    status: str
    reason: Optional[str]
    requested_by: str
    approvers: List[str]
    changes: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    is_requester: bool = False
    has_approved: bool = False
    can_approve: bool = False
    can_reject: bool = False
    rejection_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        changes = None
        if self.changes is not None:
            changes = {
                k: to_iso(v) if isinstance(v, datetime) else v for k, v in self.changes.items()
            }
        return {
            "amendment_id": self.amendment_id,
            "amendment_type": self.amendment_type,
            "label": self.label,
            "status": self.status,
            "reason": self.reason,
            "requested_by": self.requested_by,
            "approvers": list(self.approvers),
            "changes": changes,
            "error": self.error,
            "is_requester": self.is_requester,
            "has_approved": self.has_approved,
            "can_approve": self.can_approve,
            "can_reject": self.can_reject,
            "rejection_reason": self.rejection_reason,
        }


class AmendmentEngine:
    """Proposes and resolves amendments against a ContractStore."""

    def __init__(
        self,
        store: ContractStore,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.clock = clock or utcnow
        self.notifier = notifier or Notifier(store, clock=self.clock)

    # ------------------------------------------------------------------
    # Propose
    # ------------------------------------------------------------------

    def propose(
        self,
        contract_id: str,
        requester_id: str,
        amendment_type: Union[AmendmentType, str],
        changes: Union[Dict[str, Any], str],
        reason: Optional[str] = None,
    ) -> Amendment:
        """Create a pending amendment with no approvers."""

        type_value = amendment_type.value if isinstance(amendment_type, AmendmentType) else str(amendment_type)
        contract = self._load_contract(contract_id)

        if contract.status not in AMENDABLE_STATES:
            raise CollaborationStateError(
                "Only active or paused contracts can be amended.", code="NOT_AMENDABLE"
            )
        if not contract.is_participant(requester_id):
            raise PermissionDeniedError("Only contract participants can request amendments.")
        if contract.amendment_count >= MAX_APPROVED_AMENDMENTS:
            raise AmendmentValidationError(
                f"A contract can be amended at most {MAX_APPROVED_AMENDMENTS} times.",
                code="AMENDMENT_LIMIT",
            )

        changes_text = changes if isinstance(changes, str) else json.dumps(changes, default=str)
        try:
            parsed = parse_changes(type_value, changes_text)
        except MalformedDataError as e:
            raise AmendmentValidationError(e.message, code="MALFORMED_CHANGES") from e
        validate_changes(contract, type_value, parsed, self.clock())

        amendment = Amendment(
            amendment_id=new_id(),
            contract_id=contract_id,
            requested_by=requester_id,
            amendment_type=type_value,
            changes=changes_text,
            reason=(reason or "").strip() or None,
            created_at=self.clock(),
        )
        if not required_approvers(contract, amendment):
            raise AmendmentValidationError(
                "Amendments need another party with an account to approve them.",
                code="NO_APPROVER",
            )

        with self.store.transaction():
            self.store.upsert_amendment(amendment)
            self.notifier.amendment_requested(contract, amendment)

        logger.info("Amendment %s (%s) proposed on %s", amendment.amendment_id, type_value, contract_id)
        return amendment

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    def approve(self, amendment_id: str, user_id: str) -> Amendment:
        """Add `user_id` as an approver; apply the change on quorum.

        Approving twice is a no-op that returns the amendment unchanged.
        """

        amendment = self.get(amendment_id)
        parsed = parse_changes(amendment.amendment_type, amendment.changes)
        if user_id in amendment.approvers:
            logger.debug("Amendment %s already approved by %s", amendment_id, user_id)
            return amendment

        self._require_pending(amendment)
        if user_id == amendment.requested_by:
            raise SelfApprovalError("You cannot approve your own amendment.")

        contract = self._load_contract(amendment.contract_id)
        required = required_approvers(contract, amendment)
        if user_id not in required:
            raise PermissionDeniedError("Only contract participants can approve amendments.")

        now = self.clock()
        if not set(required).issubset([*amendment.approvers, user_id]):
            amendment.approvers.append(user_id)
            self.store.upsert_amendment(amendment)
            return amendment

        if contract.status not in AMENDABLE_STATES:
            raise CollaborationStateError(
                "The contract is no longer active.", code="NOT_AMENDABLE"
            )
        if contract.amendment_count >= MAX_APPROVED_AMENDMENTS:
            raise AmendmentValidationError(
                f"A contract can be amended at most {MAX_APPROVED_AMENDMENTS} times.",
                code="AMENDMENT_LIMIT",
            )
        validate_changes(contract, amendment.amendment_type, parsed, now)

        amendment.approvers.append(user_id)
        amendment.status = transition(amendment.status, "QUORUM_REACHED")
        amendment.approved_at = now
        self._apply(contract, amendment.amendment_type, parsed)
        ContractStateMachine(contract).apply(
            "AMENDMENT_APPLIED",
            source=user_id,
            timestamp=now,
            amendment_id=amendment.amendment_id,
            amendment_type=amendment.amendment_type,
        )

        with self.store.transaction():
            self.store.upsert_amendment(amendment)
            self.store.upsert_contract(contract)
            self.notifier.amendment_resolved(amendment, approved=True)

        logger.info("Amendment %s approved and applied to %s", amendment_id, contract.contract_id)
        return amendment

    def reject(self, amendment_id: str, user_id: str, reason: Optional[str] = None) -> Amendment:
        """Reject a pending amendment; terminal regardless of partial approvals."""

        amendment = self.get(amendment_id)
        parse_changes(amendment.amendment_type, amendment.changes)
        self._require_pending(amendment)
        if user_id == amendment.requested_by:
            raise SelfApprovalError("You cannot reject your own amendment.")

        contract = self._load_contract(amendment.contract_id)
        if user_id not in required_approvers(contract, amendment):
            raise PermissionDeniedError("Only contract participants can reject amendments.")

        amendment.status = transition(amendment.status, "REJECT")
        amendment.rejected_by = user_id
        amendment.rejected_at = self.clock()
        amendment.rejection_reason = (reason or "").strip() or None

        with self.store.transaction():
            self.store.upsert_amendment(amendment)
            self.notifier.amendment_resolved(amendment, approved=False)

        logger.info("Amendment %s rejected by %s", amendment_id, user_id)
        return amendment

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, amendment_id: str) -> Amendment:
        amendment = self.store.get_amendment(amendment_id)
        if amendment is None:
            raise NotFoundError(f"Amendment not found: {amendment_id}")
        return amendment

    def view(self, amendment: Amendment, viewer_id: str, contract: Optional[Contract] = None) -> AmendmentView:
        """Project an amendment for display; never raises on malformed changes."""

        view = AmendmentView(
            amendment_id=amendment.amendment_id,
            amendment_type=amendment.amendment_type,
            label=AMENDMENT_TYPE_LABELS.get(amendment.amendment_type, "Amendment"),
            status=amendment.status.value,
            reason=amendment.reason,
            requested_by=amendment.requested_by,
            approvers=list(amendment.approvers),
            is_requester=viewer_id == amendment.requested_by,
            has_approved=viewer_id in amendment.approvers,
            rejection_reason=amendment.rejection_reason,
        )

        try:
            view.changes = parse_changes(amendment.amendment_type, amendment.changes)
        except MalformedDataError:
            view.error = "Unable to display amendment"
            return view

        if amendment.is_terminal or view.is_requester:
            return view

        contract = contract or self.store.get_contract(amendment.contract_id, include_events=False)
        eligible = contract is not None and viewer_id in required_approvers(contract, amendment)
        view.can_approve = eligible and not view.has_approved
        view.can_reject = eligible
        return view

    def list_for_contract(self, contract_id: str, viewer_id: str) -> List[AmendmentView]:
        contract = self._load_contract(contract_id)
        return [self.view(a, viewer_id, contract) for a in self.store.list_amendments(contract_id)]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load_contract(self, contract_id: str) -> Contract:
        contract = self.store.get_contract(contract_id, include_events=False)
        if contract is None:
            raise NotFoundError(f"Contract not found: {contract_id}")
        return contract

    @staticmethod
    def _require_pending(amendment: Amendment) -> None:
        if amendment.status != AmendmentStatus.PENDING:
            raise CollaborationStateError(
                f"This amendment has already been {amendment.status.value}.",
                code="AMENDMENT_RESOLVED",
            )

    @staticmethod
    def _apply(contract: Contract, amendment_type: str, parsed: Dict[str, Any]) -> None:
        if amendment_type == AmendmentType.ADD_ACTS.value:
            for act in parsed["addedActs"]:
                contract.intimate_acts[act] = ActChoice.YES.value
        elif amendment_type == AmendmentType.REMOVE_ACTS.value:
            for act in parsed["removedActs"]:
                contract.intimate_acts[act] = ActChoice.NO.value
        elif amendment_type in DURATION_TYPES:
            new_end = parsed["newEndTime"]
            contract.contract_end_time = new_end
            if contract.contract_start_time is not None:
                contract.contract_duration = duration_between(contract.contract_start_time, new_end)
