"""Collaboration Manager: sharing contracts and resolving collaborators.

Sharing is the only operation that makes a contract collaborative. The flag
flip and the collaborator (or invitation) insert commit in one store
transaction, so a failed insert never leaves a collaborative contract with
nobody to collaborate with.

Collaborator lifecycle:
    pending -> reviewing -> approved -> confirmed
                        \\-> rejected
A contract under review becomes active once every collaborator has
confirmed and no invitation is still outstanding; a rejection sends it back
to draft.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from dotenv import load_dotenv

from consentflow.orchestrator.contract_store import ContractStore
from consentflow.orchestrator.errors import (
    CollaborationStateError,
    InvitationExpiredError,
    NotFoundError,
    PermissionDeniedError,
)
from consentflow.orchestrator.notifications import Notifier
from consentflow.orchestrator.records import (
    Collaborator,
    Invitation,
    ParticipantType,
    new_id,
)
from consentflow.orchestrator.state_machine import (
    CollaboratorStatus,
    Contract,
    ContractStateMachine,
    ContractStatus,
    InvalidTransitionError,
    InvitationStatus,
    transition,
)
from consentflow.utils.time_utils import utcnow


load_dotenv()

logger = logging.getLogger(__name__)

INVITATION_TTL = timedelta(days=int(os.getenv("CONSENTFLOW_INVITATION_TTL_DAYS", "7")))

SHAREABLE_STATES = (ContractStatus.DRAFT, ContractStatus.PENDING_APPROVAL)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def generate_invitation_code() -> str:
    return secrets.token_urlsafe(16)


class CollaborationManager:
    """Collaborator and invitation bookkeeping for contracts."""

    def __init__(
        self,
        store: ContractStore,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        invitation_ttl: timedelta = INVITATION_TTL,
    ) -> None:
        self.store = store
        self.clock = clock or utcnow
        self.notifier = notifier or Notifier(store, clock=self.clock)
        self.invitation_ttl = invitation_ttl

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------

    def share_with_user(self, contract_id: str, sender_id: str, recipient_user_id: str) -> Collaborator:
        """Share a contract with an existing account holder."""

        contract = self._load_shareable(contract_id, sender_id)
        if recipient_user_id == sender_id:
            raise CollaborationStateError("Cannot invite yourself.", code="SELF_INVITE")

        for existing in self.store.list_collaborators(contract_id):
            if existing.user_id == recipient_user_id and existing.status != CollaboratorStatus.REJECTED:
                raise CollaborationStateError(
                    "This user has already been invited.", code="ALREADY_INVITED"
                )

        now = self.clock()
        collaborator = Collaborator(
            collaborator_id=new_id(),
            contract_id=contract_id,
            user_id=recipient_user_id,
            participant_type=ParticipantType.PMY_USER,
            role="recipient",
            status=CollaboratorStatus.PENDING,
            invited_by=sender_id,
            invited_at=now,
        )

        self._mark_shared(contract, sender_id, now, recipient=recipient_user_id)
        with self.store.transaction():
            self.store.upsert_contract(contract)
            self.store.upsert_collaborator(collaborator)
            self.notifier.contract_shared(contract, recipient_user_id)

        logger.info("Contract %s shared with user %s", contract_id, recipient_user_id)
        return collaborator

    def share_with_email(
        self,
        contract_id: str,
        sender_id: str,
        recipient_email: str,
        sender_email: Optional[str] = None,
    ) -> Invitation:
        """Invite someone by email; they may not have an account yet."""

        email = (recipient_email or "").strip().lower()
        if not EMAIL_RE.match(email):
            raise CollaborationStateError("Please enter a valid email address.", code="INVALID_EMAIL")

        contract = self._load_shareable(contract_id, sender_id)
        if sender_email and email == sender_email.strip().lower():
            raise CollaborationStateError("Cannot invite yourself.", code="SELF_INVITE")

        now = self.clock()
        for existing in self.store.list_invitations(contract_id):
            if (
                existing.recipient_email == email
                and existing.status == InvitationStatus.PENDING
                and not existing.is_expired(now)
            ):
                raise CollaborationStateError(
                    "This email has already been invited.", code="ALREADY_INVITED"
                )

        invitation = Invitation(
            invitation_id=new_id(),
            contract_id=contract_id,
            invitation_code=generate_invitation_code(),
            sender_id=sender_id,
            recipient_email=email,
            status=InvitationStatus.PENDING,
            created_at=now,
            expires_at=now + self.invitation_ttl,
        )

        self._mark_shared(contract, sender_id, now, recipient=email)
        with self.store.transaction():
            self.store.upsert_contract(contract)
            self.store.upsert_invitation(invitation)

        logger.info("Contract %s shared by invitation (expires %s)", contract_id, invitation.expires_at)
        return invitation

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def get_invitation(self, code: str) -> Invitation:
        """Look up a live invitation.

        Raises:
            NotFoundError: Unknown code.
            InvitationExpiredError: Expired by status or by time.
            CollaborationStateError: Already accepted.
        """

        invitation = self.store.get_invitation_by_code(code)
        if invitation is None:
            raise NotFoundError("Invitation not found.")
        if invitation.is_expired(self.clock()):
            raise InvitationExpiredError("This invitation has expired.")
        if invitation.status != InvitationStatus.PENDING:
            raise CollaborationStateError(
                "This invitation has already been used.", code="INVITATION_USED"
            )
        return invitation

    def accept_invitation(self, code: str, user_id: str) -> Collaborator:
        """Turn a live invitation into a collaborator in `reviewing` status."""

        invitation = self.get_invitation(code)
        contract = self._load(invitation.contract_id)
        if contract.owner_id == user_id:
            raise CollaborationStateError("Cannot accept your own invitation.", code="SELF_INVITE")

        for existing in self.store.list_collaborators(contract.contract_id):
            if existing.user_id == user_id and existing.status != CollaboratorStatus.REJECTED:
                raise CollaborationStateError(
                    "You are already a collaborator on this contract.", code="ALREADY_INVITED"
                )

        now = self.clock()
        invitation.status = transition(invitation.status, "ACCEPT")
        invitation.accepted_at = now
        invitation.accepted_by = user_id

        collaborator = Collaborator(
            collaborator_id=new_id(),
            contract_id=contract.contract_id,
            user_id=user_id,
            participant_type=ParticipantType.PMY_USER,
            role="recipient",
            status=transition(CollaboratorStatus.PENDING, "START_REVIEW"),
            email=invitation.recipient_email,
            invited_by=invitation.sender_id,
            invited_at=now,
        )

        with self.store.transaction():
            self.store.upsert_invitation(invitation)
            self.store.upsert_collaborator(collaborator)

        logger.info("Invitation for contract %s accepted by %s", contract.contract_id, user_id)
        return collaborator

    # ------------------------------------------------------------------
    # Collaborator decisions
    # ------------------------------------------------------------------

    def approve(self, collaborator_id: str, user_id: str) -> Collaborator:
        """Record the collaborator's approval of the contract terms."""

        collaborator = self._load_own_collaborator(collaborator_id, user_id)
        contract = self._load(collaborator.contract_id)

        now = self.clock()
        collaborator.status = self._collaborator_transition(collaborator, "APPROVE")
        collaborator.approved_at = now

        if user_id not in contract.participant_ids:
            contract.participant_ids.append(user_id)
        contract.updated_at = now

        with self.store.transaction():
            self.store.upsert_collaborator(collaborator)
            self.store.upsert_contract(contract)
        return collaborator

    def reject(self, collaborator_id: str, user_id: str, reason: Optional[str] = None) -> Collaborator:
        """Decline the contract; a contract under review returns to draft."""

        collaborator = self._load_own_collaborator(collaborator_id, user_id)
        contract = self._load(collaborator.contract_id)

        now = self.clock()
        collaborator.status = self._collaborator_transition(collaborator, "REJECT")
        collaborator.rejected_at = now
        collaborator.rejection_reason = (reason or "").strip() or None

        sm = ContractStateMachine(contract)
        if sm.can_transition("COLLABORATOR_REJECTED"):
            sm.apply("COLLABORATOR_REJECTED", source=user_id, timestamp=now)

        with self.store.transaction():
            self.store.upsert_collaborator(collaborator)
            self.store.upsert_contract(contract)
            self.notifier.collaborator_rejected(contract, collaborator.rejection_reason)
        return collaborator

    def confirm_consent(self, contract_id: str, user_id: str) -> Contract:
        """Record an approved collaborator's final consent ("press for yes").

        When the last collaborator confirms, the contract becomes active.
        """

        contract = self._load(contract_id)
        if contract.status != ContractStatus.PENDING_APPROVAL:
            raise CollaborationStateError(
                "Only contracts awaiting approval can be confirmed.", code="NOT_PENDING"
            )

        collaborators = self.store.list_collaborators(contract_id)
        mine = [c for c in collaborators if c.user_id == user_id and c.status != CollaboratorStatus.REJECTED]
        if not mine:
            raise PermissionDeniedError("You are not a collaborator on this contract.")
        collaborator = mine[-1]

        now = self.clock()
        collaborator.status = self._collaborator_transition(collaborator, "CONFIRM")
        collaborator.confirmed_at = now

        activated = False
        if self._all_confirmed(contract, collaborators):
            ContractStateMachine(contract).apply("ALL_PARTIES_CONFIRMED", source=user_id, timestamp=now)
            activated = True

        with self.store.transaction():
            self.store.upsert_collaborator(collaborator)
            self.store.upsert_contract(contract)
            if activated:
                self.notifier.contract_activated(contract)
        return contract

    def list_collaborators(self, contract_id: str) -> List[Collaborator]:
        self._load(contract_id)
        return self.store.list_collaborators(contract_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load(self, contract_id: str) -> Contract:
        contract = self.store.get_contract(contract_id, include_events=False)
        if contract is None:
            raise NotFoundError(f"Contract not found: {contract_id}")
        return contract

    def _load_shareable(self, contract_id: str, sender_id: str) -> Contract:
        contract = self._load(contract_id)
        if contract.owner_id != sender_id:
            raise PermissionDeniedError("Only the contract owner can share it.")
        if contract.status not in SHAREABLE_STATES:
            raise CollaborationStateError(
                f"Contracts in status {contract.status.value} cannot be shared.",
                code="NOT_SHAREABLE",
            )
        return contract

    def _load_own_collaborator(self, collaborator_id: str, user_id: str) -> Collaborator:
        collaborator = self.store.get_collaborator(collaborator_id)
        if collaborator is None:
            raise NotFoundError(f"Collaborator not found: {collaborator_id}")
        if collaborator.user_id != user_id:
            raise PermissionDeniedError("You can only respond to your own invitation.")
        return collaborator

    def _mark_shared(self, contract: Contract, sender_id: str, now: datetime, recipient: str) -> None:
        ContractStateMachine(contract).apply("SHARE", source=sender_id, timestamp=now, recipient=recipient)
        contract.is_collaborative = True

    def _all_confirmed(self, contract: Contract, collaborators: List[Collaborator]) -> bool:
        live = [c for c in collaborators if c.status != CollaboratorStatus.REJECTED]
        if not live or any(c.status != CollaboratorStatus.CONFIRMED for c in live):
            return False
        now = self.clock()
        outstanding = [
            i
            for i in self.store.list_invitations(contract.contract_id)
            if i.status == InvitationStatus.PENDING and not i.is_expired(now)
        ]
        return not outstanding

    @staticmethod
    def _collaborator_transition(collaborator: Collaborator, event: str) -> CollaboratorStatus:
        try:
            return transition(collaborator.status, event)
        except InvalidTransitionError as e:
            raise CollaborationStateError(
                f"Cannot {event.lower()} a collaborator who is {collaborator.status.value}.",
                code="ALREADY_RESOLVED",
            ) from e
