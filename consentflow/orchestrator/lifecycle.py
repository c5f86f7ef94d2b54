"""Contract lifecycle service.

Creates drafts from wizard payloads and drives the owner/participant
operations that move a contract through its status machine: finalize,
pause, resume and revoke. Collaboration and amendments have their own
services; they share the same store and state machine.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from consentflow.orchestrator.contract_store import ContractStore
from consentflow.orchestrator.errors import (
    CollaborationStateError,
    ContractValidationError,
    NotFoundError,
    PermissionDeniedError,
)
from consentflow.orchestrator.records import DraftPayload, new_id
from consentflow.orchestrator.state_machine import (
    Contract,
    ContractEvent,
    ContractStateMachine,
    ContractStatus,
)
from consentflow.utils.time_utils import utcnow


logger = logging.getLogger(__name__)

COLLABORATIVE_DRAFT_MESSAGE = "Cannot save changes to a collaborative draft."


class ContractLifecycle:
    """Owner-facing contract operations backed by a ContractStore."""

    def __init__(self, store: ContractStore, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self.clock = clock or utcnow

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def create_draft(self, owner_id: str, payload: DraftPayload) -> Contract:
        """Persist a new draft owned by `owner_id`."""

        now = self.clock()
        contract = Contract(
            contract_id=new_id(),
            owner_id=owner_id,
            status=ContractStatus.DRAFT,
            participant_ids=[owner_id],
            created_at=now,
            updated_at=now,
        )
        self._apply_payload(contract, payload)
        contract.events.append(
            ContractEvent(
                event_type="DRAFT_CREATED",
                timestamp=now,
                source=owner_id,
                old_state=None,
                new_state=ContractStatus.DRAFT.value,
            )
        )
        self.store.upsert_contract(contract)
        logger.info("Created draft %s for %s", contract.contract_id, owner_id)
        return contract

    def update_draft(self, contract_id: str, user_id: str, payload: DraftPayload) -> Contract:
        """Overwrite a draft's content.

        Raises:
            CollaborationStateError: If the draft has been shared or is no
                longer a draft. Nothing is written in that case.
        """

        contract = self.get(contract_id)
        if contract.owner_id != user_id:
            raise PermissionDeniedError("Only the owner can edit this draft.")
        if contract.is_collaborative:
            raise CollaborationStateError(COLLABORATIVE_DRAFT_MESSAGE, code="COLLABORATIVE_DRAFT")
        if contract.status != ContractStatus.DRAFT:
            raise CollaborationStateError(
                f"Only drafts can be edited (status is {contract.status.value}).",
                code="NOT_A_DRAFT",
            )

        self._apply_payload(contract, payload)
        contract.updated_at = self.clock()
        self.store.upsert_contract(contract)
        return contract

    # ------------------------------------------------------------------
    # Status operations
    # ------------------------------------------------------------------

    def finalize(
        self,
        contract_id: str,
        user_id: str,
        method: Optional[str] = None,
        method_payload: Optional[Dict[str, Any]] = None,
    ) -> Contract:
        """Activate a non-collaborative draft once the consent artifact is recorded."""

        contract = self.get(contract_id)
        if contract.owner_id != user_id:
            raise PermissionDeniedError("Only the owner can finalize this contract.")
        if contract.is_collaborative:
            raise CollaborationStateError(
                "Shared contracts become active when every collaborator confirms.",
                code="COLLABORATIVE_CONTRACT",
            )

        now = self.clock()
        if contract.contract_end_time is not None and contract.contract_end_time <= now:
            raise ContractValidationError(
                "Contract end time must be in the future.", code="END_TIME_IN_PAST"
            )

        if method:
            contract.method = method
        if method_payload:
            contract.method_payload = dict(method_payload)

        ContractStateMachine(contract).apply("FINALIZE", source=user_id, timestamp=now)
        self.store.upsert_contract(contract)
        return contract

    def pause(self, contract_id: str, user_id: str) -> Contract:
        return self._participant_event(contract_id, user_id, "PAUSE")

    def resume(self, contract_id: str, user_id: str) -> Contract:
        return self._participant_event(contract_id, user_id, "RESUME")

    def revoke(self, contract_id: str, user_id: str, reason: Optional[str] = None) -> Contract:
        """Withdraw consent; any participant may revoke at any time before completion."""

        return self._participant_event(contract_id, user_id, "REVOKE", reason=reason)

    def get(self, contract_id: str) -> Contract:
        contract = self.store.get_contract(contract_id)
        if contract is None:
            raise NotFoundError(f"Contract not found: {contract_id}")
        return contract

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _participant_event(self, contract_id: str, user_id: str, event: str, **context: Any) -> Contract:
        contract = self.get(contract_id)
        if not contract.is_participant(user_id):
            raise PermissionDeniedError("Only contract participants can do that.")

        context = {k: v for k, v in context.items() if v is not None}
        ContractStateMachine(contract).apply(event, source=user_id, timestamp=self.clock(), **context)
        self.store.upsert_contract(contract)
        return contract

    @staticmethod
    def _apply_payload(contract: Contract, payload: DraftPayload) -> None:
        contract.encounter_type = payload.encounter_type
        contract.parties = list(payload.parties)
        contract.intimate_acts = dict(payload.intimate_acts)
        contract.jurisdiction = dict(payload.jurisdiction)
        contract.contract_text = payload.contract_text
        contract.contract_start_time = payload.contract_start_time
        contract.contract_duration = payload.contract_duration
        contract.contract_end_time = payload.contract_end_time
        contract.method = payload.method
        contract.method_payload = dict(payload.method_payload)
