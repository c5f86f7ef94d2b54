"""Expiry monitoring for contracts and invitations.

The expiry monitor is a deterministic sweep that:
- Completes active or paused contracts whose end time has been reached.
- Marks pending invitations past their expiry as expired.

It reads due records from `ContractStore` and uses `ContractStateMachine`
for guard/transition logic, keeping business rules centralized.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Union

from consentflow.orchestrator.contract_store import ContractStore
from consentflow.orchestrator.state_machine import ContractStateMachine, transition
from consentflow.utils.time_utils import coerce_dt


logger = logging.getLogger(__name__)


class ExpiryMonitorError(Exception):
    """Raised when expiry monitor operations fail."""


@dataclass
class ExpirySweep:
    """Result of one sweep."""

    completed_contracts: List[str] = field(default_factory=list)
    expired_invitations: List[str] = field(default_factory=list)


class ExpiryMonitor:
    """Enforces contract end times and invitation expiry using a ContractStore."""

    def __init__(self, store: ContractStore) -> None:
        self.store = store

    def evaluate_due_contracts(self, now: Union[str, datetime], source: str = "system") -> List[str]:
        """Complete every contract whose end time is due.

        Args:
            now: Current time (ISO string or datetime).
            source: Source for generated EXPIRE events.

        Returns:
            List of contract_ids that were completed.
        """

        now_dt = self._require_now(now)
        completed: List[str] = []

        for contract_id, _end in self.store.get_due_expirations(now_dt):
            contract = self.store.get_contract(contract_id, include_events=False)
            if contract is None:
                continue

            sm = ContractStateMachine(contract)
            if sm.check_expiry(now=now_dt, source=source):
                self.store.upsert_contract(sm.contract)
                completed.append(contract_id)

        if completed:
            logger.info("Completed %d expired contract(s)", len(completed))
        return completed

    def evaluate_due_invitations(self, now: Union[str, datetime]) -> List[str]:
        """Mark overdue pending invitations as expired.

        Returns:
            List of invitation codes that were expired.
        """

        now_dt = self._require_now(now)
        expired: List[str] = []

        for invitation in self.store.get_expired_invitations(now_dt):
            invitation.status = transition(invitation.status, "EXPIRE")
            self.store.upsert_invitation(invitation)
            expired.append(invitation.invitation_code)

        if expired:
            logger.info("Expired %d invitation(s)", len(expired))
        return expired

    def run(self, now: Union[str, datetime], source: str = "system") -> ExpirySweep:
        """Run both sweeps."""

        return ExpirySweep(
            completed_contracts=self.evaluate_due_contracts(now, source=source),
            expired_invitations=self.evaluate_due_invitations(now),
        )

    @staticmethod
    def _require_now(value: Any) -> datetime:
        now_dt = coerce_dt(value)
        if now_dt is None:
            raise ExpiryMonitorError("Invalid now datetime")
        return now_dt
