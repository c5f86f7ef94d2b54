"""Tests for sharing, invitations and collaborator decisions."""

from datetime import timedelta

import pytest

from conftest import NOW, OWNER_ID, PARTNER_ID, THIRD_ID
from consentflow.orchestrator.collaboration import CollaborationManager
from consentflow.orchestrator.contract_store import ContractStoreError
from consentflow.orchestrator.errors import (
    CollaborationStateError,
    InvitationExpiredError,
    NotFoundError,
    PermissionDeniedError,
)
from consentflow.orchestrator.notifications import (
    CONTRACT_ACTIVATED,
    CONTRACT_INVITATION,
    CONTRACT_REJECTED,
)
from consentflow.orchestrator.state_machine import (
    CollaboratorStatus,
    ContractStatus,
    InvitationStatus,
)


class TestShareWithUser:
    def test_share_flips_flag_and_status(self, collaboration, lifecycle, draft):
        collaborator = collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)

        contract = lifecycle.get(draft.contract_id)
        assert contract.is_collaborative
        assert contract.status == ContractStatus.PENDING_APPROVAL
        assert collaborator.status == CollaboratorStatus.PENDING
        assert collaborator.invited_by == OWNER_ID

    def test_recipient_is_notified(self, collaboration, store, draft):
        collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)
        notifications = store.list_notifications(PARTNER_ID)
        assert [n.type for n in notifications] == [CONTRACT_INVITATION]

    def test_only_owner_can_share(self, collaboration, draft):
        with pytest.raises(PermissionDeniedError):
            collaboration.share_with_user(draft.contract_id, PARTNER_ID, THIRD_ID)

    def test_cannot_invite_self_or_twice(self, collaboration, draft):
        with pytest.raises(CollaborationStateError) as excinfo:
            collaboration.share_with_user(draft.contract_id, OWNER_ID, OWNER_ID)
        assert excinfo.value.code == "SELF_INVITE"

        collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)
        with pytest.raises(CollaborationStateError) as excinfo:
            collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)
        assert excinfo.value.code == "ALREADY_INVITED"

    def test_active_contract_cannot_be_shared(self, collaboration, active_contract):
        with pytest.raises(CollaborationStateError) as excinfo:
            collaboration.share_with_user(active_contract.contract_id, OWNER_ID, THIRD_ID)
        assert excinfo.value.code == "NOT_SHAREABLE"

    def test_unknown_contract(self, collaboration):
        with pytest.raises(NotFoundError):
            collaboration.share_with_user("missing", OWNER_ID, PARTNER_ID)

    def test_failed_insert_leaves_contract_untouched(self, collaboration, store, lifecycle, draft, monkeypatch):
        """The collaborative flag and the collaborator row commit together."""

        def broken_upsert(collaborator):
            raise ContractStoreError("disk full")

        monkeypatch.setattr(store, "upsert_collaborator", broken_upsert)

        with pytest.raises(ContractStoreError):
            collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)

        contract = lifecycle.get(draft.contract_id)
        assert not contract.is_collaborative
        assert contract.status == ContractStatus.DRAFT


class TestInvitations:
    def test_share_with_email_creates_live_invitation(self, collaboration, draft):
        invitation = collaboration.share_with_email(draft.contract_id, OWNER_ID, "  Sam@Example.com ")

        assert invitation.recipient_email == "sam@example.com"
        assert invitation.expires_at == NOW + timedelta(days=7)
        assert collaboration.get_invitation(invitation.invitation_code) == invitation

    def test_invalid_email(self, collaboration, draft):
        with pytest.raises(CollaborationStateError) as excinfo:
            collaboration.share_with_email(draft.contract_id, OWNER_ID, "not-an-email")
        assert excinfo.value.code == "INVALID_EMAIL"

    def test_duplicate_live_invitation_is_refused(self, collaboration, draft):
        collaboration.share_with_email(draft.contract_id, OWNER_ID, "sam@example.com")
        with pytest.raises(CollaborationStateError):
            collaboration.share_with_email(draft.contract_id, OWNER_ID, "SAM@example.com")

    def test_invitation_expires_after_seven_days(self, collaboration, store, draft, clock):
        """Accepting on day 8 fails and leaves the invitation untouched."""
        invitation = collaboration.share_with_email(draft.contract_id, OWNER_ID, "sam@example.com")
        clock.advance(days=8)

        with pytest.raises(InvitationExpiredError):
            collaboration.accept_invitation(invitation.invitation_code, PARTNER_ID)

        stored = store.get_invitation_by_code(invitation.invitation_code)
        assert stored.status == InvitationStatus.PENDING
        assert store.list_collaborators(draft.contract_id) == []

    def test_expiry_boundary_is_inclusive(self, collaboration, draft, clock):
        invitation = collaboration.share_with_email(draft.contract_id, OWNER_ID, "sam@example.com")
        clock.advance(days=7)
        with pytest.raises(InvitationExpiredError):
            collaboration.get_invitation(invitation.invitation_code)

    def test_accept_creates_reviewing_collaborator(self, collaboration, store, draft):
        invitation = collaboration.share_with_email(draft.contract_id, OWNER_ID, "sam@example.com")

        collaborator = collaboration.accept_invitation(invitation.invitation_code, PARTNER_ID)

        assert collaborator.status == CollaboratorStatus.REVIEWING
        assert collaborator.email == "sam@example.com"
        stored = store.get_invitation_by_code(invitation.invitation_code)
        assert stored.status == InvitationStatus.ACCEPTED
        assert stored.accepted_by == PARTNER_ID

    def test_used_invitation_cannot_be_reused(self, collaboration, draft):
        invitation = collaboration.share_with_email(draft.contract_id, OWNER_ID, "sam@example.com")
        collaboration.accept_invitation(invitation.invitation_code, PARTNER_ID)
        with pytest.raises(CollaborationStateError) as excinfo:
            collaboration.accept_invitation(invitation.invitation_code, THIRD_ID)
        assert excinfo.value.code == "INVITATION_USED"

    def test_owner_cannot_accept_own_invitation(self, collaboration, draft):
        invitation = collaboration.share_with_email(draft.contract_id, OWNER_ID, "sam@example.com")
        with pytest.raises(CollaborationStateError):
            collaboration.accept_invitation(invitation.invitation_code, OWNER_ID)

    def test_unknown_code(self, collaboration):
        with pytest.raises(NotFoundError):
            collaboration.get_invitation("nope")

    def test_custom_ttl(self, store, notifier, clock, draft):
        manager = CollaborationManager(store, notifier=notifier, clock=clock, invitation_ttl=timedelta(hours=1))
        invitation = manager.share_with_email(draft.contract_id, OWNER_ID, "sam@example.com")
        assert invitation.expires_at == NOW + timedelta(hours=1)


class TestDecisions:
    def test_approve_adds_participant(self, collaboration, lifecycle, draft):
        collaborator = collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)

        approved = collaboration.approve(collaborator.collaborator_id, PARTNER_ID)

        assert approved.status == CollaboratorStatus.APPROVED
        assert approved.approved_at == NOW
        assert lifecycle.get(draft.contract_id).participant_ids == [OWNER_ID, PARTNER_ID]

    def test_only_the_collaborator_can_decide(self, collaboration, draft):
        collaborator = collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)
        with pytest.raises(PermissionDeniedError):
            collaboration.approve(collaborator.collaborator_id, OWNER_ID)

    def test_approve_twice_is_refused(self, collaboration, draft):
        collaborator = collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)
        collaboration.approve(collaborator.collaborator_id, PARTNER_ID)
        with pytest.raises(CollaborationStateError) as excinfo:
            collaboration.approve(collaborator.collaborator_id, PARTNER_ID)
        assert excinfo.value.code == "ALREADY_RESOLVED"

    def test_reject_returns_contract_to_draft(self, collaboration, lifecycle, store, draft):
        collaborator = collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)

        rejected = collaboration.reject(collaborator.collaborator_id, PARTNER_ID, reason=" too soon ")

        assert rejected.status == CollaboratorStatus.REJECTED
        assert rejected.rejection_reason == "too soon"
        assert lifecycle.get(draft.contract_id).status == ContractStatus.DRAFT
        owner_notes = store.list_notifications(OWNER_ID)
        assert owner_notes[-1].type == CONTRACT_REJECTED
        assert "too soon" in owner_notes[-1].message

    def test_rejected_user_can_be_invited_again(self, collaboration, draft):
        collaborator = collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)
        collaboration.reject(collaborator.collaborator_id, PARTNER_ID)
        again = collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)
        assert again.collaborator_id != collaborator.collaborator_id


class TestConfirmConsent:
    def test_confirm_activates_when_all_confirmed(self, active_contract, store):
        assert active_contract.status == ContractStatus.ACTIVE
        for user_id in (OWNER_ID, PARTNER_ID):
            assert CONTRACT_ACTIVATED in [n.type for n in store.list_notifications(user_id)]

    def test_confirm_requires_approval_first(self, collaboration, draft):
        collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)
        with pytest.raises(CollaborationStateError):
            collaboration.confirm_consent(draft.contract_id, PARTNER_ID)

    def test_waits_for_every_collaborator(self, collaboration, lifecycle, draft):
        first = collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)
        second = collaboration.share_with_user(draft.contract_id, OWNER_ID, THIRD_ID)
        collaboration.approve(first.collaborator_id, PARTNER_ID)
        collaboration.approve(second.collaborator_id, THIRD_ID)

        contract = collaboration.confirm_consent(draft.contract_id, PARTNER_ID)
        assert contract.status == ContractStatus.PENDING_APPROVAL

        contract = collaboration.confirm_consent(draft.contract_id, THIRD_ID)
        assert contract.status == ContractStatus.ACTIVE

    def test_outstanding_invitation_blocks_activation(self, collaboration, draft):
        collaborator = collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)
        collaboration.share_with_email(draft.contract_id, OWNER_ID, "jo@example.com")
        collaboration.approve(collaborator.collaborator_id, PARTNER_ID)

        contract = collaboration.confirm_consent(draft.contract_id, PARTNER_ID)

        assert contract.status == ContractStatus.PENDING_APPROVAL

    def test_non_collaborator_cannot_confirm(self, collaboration, draft):
        collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)
        with pytest.raises(PermissionDeniedError):
            collaboration.confirm_consent(draft.contract_id, THIRD_ID)

    def test_only_pending_contracts_confirm(self, collaboration, draft):
        with pytest.raises(CollaborationStateError) as excinfo:
            collaboration.confirm_consent(draft.contract_id, PARTNER_ID)
        assert excinfo.value.code == "NOT_PENDING"
