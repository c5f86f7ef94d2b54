"""
Shared pytest fixtures for consent workflow testing.

Every service is wired to an in-memory SQLite store and a controllable
clock, so tests never depend on wall-clock time or on files on disk.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Iterator

import pytest

from consentflow.orchestrator.amendments import AmendmentEngine
from consentflow.orchestrator.collaboration import CollaborationManager
from consentflow.orchestrator.contract_store import ContractStore
from consentflow.orchestrator.lifecycle import ContractLifecycle
from consentflow.orchestrator.notifications import Notifier
from consentflow.orchestrator.records import DraftPayload
from consentflow.orchestrator.state_machine import Contract
from consentflow.wizard.draft_store import DraftStore, InMemoryStorage


OWNER_ID = "user_alex"
OWNER_HANDLE = "@alex"
PARTNER_ID = "user_sam"
PARTNER_HANDLE = "@sam"
THIRD_ID = "user_jo"

NOW = datetime(2026, 3, 1, 20, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_payload(**overrides: Any) -> DraftPayload:
    """Build a draft payload for a two-party date starting at NOW (2 hours)."""
    fields = {
        "encounter_type": "date",
        "parties": [OWNER_HANDLE, PARTNER_HANDLE],
        "intimate_acts": {"Kissing": "yes"},
        "jurisdiction": {"selection_mode": "select-state", "state_code": "CA", "state_name": "California"},
        "contract_text": "Consent Contract",
        "contract_start_time": NOW,
        "contract_duration": 120,
        "contract_end_time": NOW + timedelta(minutes=120),
        "method": "signature",
    }
    fields.update(overrides)
    return DraftPayload(**fields)


@pytest.fixture
def clock() -> FakeClock:
    """A clock frozen at NOW until advanced."""
    return FakeClock()


@pytest.fixture
def store() -> Iterator[ContractStore]:
    """In-memory contract store, closed after the test."""
    s = ContractStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def notifier(store: ContractStore, clock: FakeClock) -> Notifier:
    return Notifier(store, clock=clock)


@pytest.fixture
def lifecycle(store: ContractStore, clock: FakeClock) -> ContractLifecycle:
    return ContractLifecycle(store, clock=clock)


@pytest.fixture
def collaboration(store: ContractStore, notifier: Notifier, clock: FakeClock) -> CollaborationManager:
    return CollaborationManager(store, notifier=notifier, clock=clock)


@pytest.fixture
def amendments(store: ContractStore, notifier: Notifier, clock: FakeClock) -> AmendmentEngine:
    return AmendmentEngine(store, notifier=notifier, clock=clock)


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def draft_store(storage: InMemoryStorage) -> DraftStore:
    return DraftStore(storage)


@pytest.fixture
def draft(lifecycle: ContractLifecycle) -> Contract:
    """A private draft owned by OWNER_ID."""
    return lifecycle.create_draft(OWNER_ID, make_payload())


@pytest.fixture
def active_contract(
    draft: Contract,
    collaboration: CollaborationManager,
    lifecycle: ContractLifecycle,
) -> Contract:
    """
    A shared contract that PARTNER_ID has approved and confirmed.

    Participants are OWNER_ID and PARTNER_ID; it ends two hours after NOW.
    """
    collaborator = collaboration.share_with_user(draft.contract_id, OWNER_ID, PARTNER_ID)
    collaboration.approve(collaborator.collaborator_id, PARTNER_ID)
    collaboration.confirm_consent(draft.contract_id, PARTNER_ID)
    return lifecycle.get(draft.contract_id)
