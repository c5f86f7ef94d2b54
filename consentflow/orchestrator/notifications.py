"""In-app notifications for collaboration and amendment events.

Notifications are stored records only; push and email delivery belong to
external services that read them.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from consentflow.orchestrator.contract_store import ContractStore
from consentflow.orchestrator.records import (
    AMENDMENT_TYPE_LABELS,
    Amendment,
    Notification,
    new_id,
)
from consentflow.orchestrator.state_machine import Contract
from consentflow.utils.time_utils import utcnow


logger = logging.getLogger(__name__)

CONTRACT_INVITATION = "contract_invitation"
CONTRACT_REJECTED = "contract_rejected"
CONTRACT_ACTIVATED = "contract_activated"
AMENDMENT_REQUESTED = "amendment_requested"
AMENDMENT_APPROVED = "amendment_approved"
AMENDMENT_REJECTED = "amendment_rejected"


class Notifier:
    """Writes notification records through the contract store."""

    def __init__(self, store: ContractStore, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self.clock = clock or utcnow

    def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        contract_id: Optional[str] = None,
        amendment_id: Optional[str] = None,
    ) -> Notification:
        notification = Notification(
            notification_id=new_id(),
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            contract_id=contract_id,
            amendment_id=amendment_id,
            created_at=self.clock(),
        )
        self.store.add_notification(notification)
        logger.debug("Notified %s: %s", user_id, type)
        return notification

    def contract_shared(self, contract: Contract, recipient_id: str) -> Notification:
        return self.notify(
            recipient_id,
            CONTRACT_INVITATION,
            "New consent contract",
            "You have been invited to review a consent contract.",
            contract_id=contract.contract_id,
        )

    def collaborator_rejected(self, contract: Contract, reason: Optional[str]) -> Notification:
        message = "A collaborator declined your consent contract."
        if reason:
            message += f" Reason: {reason}"
        return self.notify(
            contract.owner_id,
            CONTRACT_REJECTED,
            "Contract declined",
            message,
            contract_id=contract.contract_id,
        )

    def contract_activated(self, contract: Contract) -> List[Notification]:
        return [
            self.notify(
                user_id,
                CONTRACT_ACTIVATED,
                "Contract active",
                "All parties have confirmed. Your consent contract is now active.",
                contract_id=contract.contract_id,
            )
            for user_id in contract.all_participants()
        ]

    def amendment_requested(self, contract: Contract, amendment: Amendment) -> List[Notification]:
        """Notify every participant except the requester."""

        label = AMENDMENT_TYPE_LABELS.get(amendment.amendment_type, "Amendment")
        return [
            self.notify(
                user_id,
                AMENDMENT_REQUESTED,
                "Amendment requested",
                f"An amendment ({label}) was requested and needs your approval.",
                contract_id=contract.contract_id,
                amendment_id=amendment.amendment_id,
            )
            for user_id in contract.all_participants()
            if user_id != amendment.requested_by
        ]

    def amendment_resolved(self, amendment: Amendment, approved: bool) -> Notification:
        label = AMENDMENT_TYPE_LABELS.get(amendment.amendment_type, "Amendment")
        if approved:
            return self.notify(
                amendment.requested_by,
                AMENDMENT_APPROVED,
                "Amendment approved",
                f"Your amendment ({label}) was approved and applied.",
                contract_id=amendment.contract_id,
                amendment_id=amendment.amendment_id,
            )
        message = f"Your amendment ({label}) was rejected."
        if amendment.rejection_reason:
            message += f" Reason: {amendment.rejection_reason}"
        return self.notify(
            amendment.requested_by,
            AMENDMENT_REJECTED,
            "Amendment rejected",
            message,
            contract_id=amendment.contract_id,
            amendment_id=amendment.amendment_id,
        )
