#!/usr/bin/env python3
"""CLI entry point for the consent workflow engine.

Runs a scripted two-party walkthrough of the engine (wizard, sharing,
confirmation, amendment, expiry) against a SQLite database, or runs the
expiry sweep on its own.

Usage:
    python -m consentflow.main --demo          # Run full demo
    python -m consentflow.main --step share    # Run the demo up to a step
    python -m consentflow.main --sweep         # Expire due contracts/invitations
"""

from __future__ import annotations

import argparse
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

load_dotenv()

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

DB_PATH = Path(os.getenv("CONSENTFLOW_DB_PATH", str(PROJECT_ROOT / "data" / "consentflow.db")))

DEMO_STEPS = ["wizard", "share", "confirm", "amend", "expire"]


def print_section(title: str) -> None:
    """Print a section header."""
    print()
    print("=" * 70)
    print(f"  {title}")
    print("=" * 70)
    print()


def print_state_transition(old_state: str, new_state: str, event: str) -> None:
    """Print a state transition message."""
    print(f"  State: {old_state} -> {new_state} (via {event})")


class ConsentDemo:
    """Walks two demo users through the full contract lifecycle."""

    OWNER_ID = "user_alex"
    OWNER_HANDLE = "@alex"
    PARTNER_ID = "user_sam"
    PARTNER_HANDLE = "@sam"

    def __init__(self, db_path: Optional[Path] = None, verbose: bool = True):
        """Initialize the demo.

        Args:
            db_path: Path to SQLite database (use :memory: for tests)
            verbose: Whether to print detailed output
        """
        self.db_path = db_path or DB_PATH
        self.verbose = verbose

        # Lazy-loaded components
        self._store: Optional[Any] = None
        self._storage: Optional[Any] = None

        self.controller: Optional[Any] = None
        self.contract_id: Optional[str] = None
        self.amendment_id: Optional[str] = None
        self.transitions: List[Dict[str, str]] = []

    @property
    def store(self):
        """Lazy-load ContractStore."""
        if self._store is None:
            from consentflow.orchestrator.contract_store import ContractStore
            self._store = ContractStore(self.db_path)
        return self._store

    @property
    def storage(self):
        """Lazy-load the key-value storage used by the draft store."""
        if self._storage is None:
            from consentflow.wizard.draft_store import InMemoryStorage, SQLiteKeyValueStorage
            if str(self.db_path) == ":memory:":
                self._storage = InMemoryStorage()
            else:
                self._storage = SQLiteKeyValueStorage(self.db_path)
        return self._storage

    def print(self, message: str) -> None:
        """Print a message if verbose mode is on."""
        if self.verbose:
            print(message)

    def _record(self, old: str, new: str, event: str) -> None:
        self.transitions.append({"from": old, "to": new, "event": event})
        if self.verbose:
            print_state_transition(old, new, event)

    # =========================================================================
    # Step 1: Wizard
    # =========================================================================

    def run_wizard(self) -> None:
        """Fill in the wizard as the owner and save a draft."""
        print_section("STEP 1: Consent Wizard")

        from consentflow.orchestrator.lifecycle import ContractLifecycle
        from consentflow.wizard.draft_store import DraftStore
        from consentflow.wizard.controller import WizardController

        controller = WizardController(
            DraftStore(self.storage),
            user_id=self.OWNER_ID,
            owner_handle=self.OWNER_HANDLE,
        )
        controller.hydrate()
        controller.reset_state()

        controller.set_encounter_type("date")
        controller.next()
        controller.select_state("CA")
        controller.next()
        controller.update_party(1, self.PARTNER_HANDLE)
        controller.next()
        controller.toggle_act("Kissing")
        controller.next()
        start = datetime.now(timezone.utc) + timedelta(minutes=5)
        controller.set_duration(start, 120)
        controller.next()
        controller.set_method("signature")

        self.print(f"  Steps: {controller.plan.total_steps} (at step {controller.current_step})")
        self.print(f"  Parties: {', '.join(controller.state.non_empty_parties())}")

        contract = controller.save_draft(ContractLifecycle(self.store))
        self.contract_id = contract.contract_id
        self.controller = controller
        self.print(f"  Draft saved: {self.contract_id}")

    # =========================================================================
    # Step 2: Share
    # =========================================================================

    def share(self) -> None:
        print_section("STEP 2: Share With Partner")

        from consentflow.orchestrator.collaboration import CollaborationManager
        from consentflow.orchestrator.lifecycle import ContractLifecycle

        lifecycle = ContractLifecycle(self.store)
        collaboration = CollaborationManager(self.store)

        self.controller.share_draft(lifecycle, collaboration, recipient_user_id=self.PARTNER_ID)
        self._record("draft", lifecycle.get(self.contract_id).status.value, "SHARE")

    # =========================================================================
    # Step 3: Partner approves and confirms
    # =========================================================================

    def confirm(self) -> None:
        print_section("STEP 3: Partner Approves And Confirms")

        from consentflow.orchestrator.collaboration import CollaborationManager

        collaboration = CollaborationManager(self.store)
        collaborator = [
            c for c in collaboration.list_collaborators(self.contract_id)
            if c.user_id == self.PARTNER_ID
        ][-1]
        collaboration.approve(collaborator.collaborator_id, self.PARTNER_ID)
        contract = collaboration.confirm_consent(self.contract_id, self.PARTNER_ID)
        self._record("pending_approval", contract.status.value, "ALL_PARTIES_CONFIRMED")

    # =========================================================================
    # Step 4: Amendment
    # =========================================================================

    def amend(self) -> None:
        print_section("STEP 4: Extend Duration Amendment")

        from consentflow.orchestrator.amendments import AmendmentEngine
        from consentflow.orchestrator.records import AmendmentType

        engine = AmendmentEngine(self.store)
        contract = self.store.get_contract(self.contract_id)
        new_end = contract.contract_end_time + timedelta(minutes=60)

        amendment = engine.propose(
            self.contract_id,
            self.OWNER_ID,
            AmendmentType.EXTEND_DURATION,
            {"newEndTime": new_end.isoformat()},
            reason="Staying out later",
        )
        self.amendment_id = amendment.amendment_id
        self.print(f"  Proposed: {amendment.amendment_type} (approvers={amendment.approvers})")

        amendment = engine.approve(amendment.amendment_id, self.PARTNER_ID)
        contract = self.store.get_contract(self.contract_id)
        self.print(f"  Status: {amendment.status.value}; new end: {contract.contract_end_time.isoformat()}")

    # =========================================================================
    # Step 5: Expiry sweep
    # =========================================================================

    def expire(self) -> None:
        print_section("STEP 5: Expiry Sweep")

        from consentflow.orchestrator.expiry_monitor import ExpiryMonitor

        contract = self.store.get_contract(self.contract_id)
        sweep_at = contract.contract_end_time + timedelta(minutes=1)
        result = ExpiryMonitor(self.store).run(now=sweep_at)
        if self.contract_id in result.completed_contracts:
            self._record(contract.status.value, "completed", "EXPIRE")

    def run_demo(self, until: Optional[str] = None) -> List[Dict[str, str]]:
        """Run the demo steps in order, stopping after `until` if given."""
        steps = {
            "wizard": self.run_wizard,
            "share": self.share,
            "confirm": self.confirm,
            "amend": self.amend,
            "expire": self.expire,
        }
        for name in DEMO_STEPS:
            steps[name]()
            if name == until:
                break

        print_section("DEMO COMPLETE")
        contract = self.store.get_contract(self.contract_id)
        self.print(f"  Final status: {contract.status.value}")
        return self.transitions

    def close(self) -> None:
        """Clean up resources."""
        if self._store:
            self._store.close()
        if self._storage is not None and hasattr(self._storage, "close"):
            self._storage.close()


def run_sweep(db_path: Path, now: Optional[datetime] = None) -> None:
    """Run the expiry sweep once against an existing database."""
    from consentflow.orchestrator.contract_store import ContractStore
    from consentflow.orchestrator.expiry_monitor import ExpiryMonitor

    with ContractStore(db_path) as store:
        result = ExpiryMonitor(store).run(now or datetime.now(timezone.utc))
    logger.info(
        "Sweep complete: %d contract(s) completed, %d invitation(s) expired",
        len(result.completed_contracts),
        len(result.expired_invitations),
    )


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Consent Workflow Engine - Lifecycle Demo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m consentflow.main --demo           Run full demo workflow
  python -m consentflow.main --step confirm   Run demo through confirmation
  python -m consentflow.main --sweep          Expire due contracts and invitations
  python -m consentflow.main --reset          Reset database and exit
        """,
    )

    parser.add_argument("--demo", action="store_true", help="Run the full demo workflow")
    parser.add_argument(
        "--step",
        type=str,
        choices=DEMO_STEPS,
        help="Run the demo up to and including a step",
    )
    parser.add_argument("--sweep", action="store_true", help="Run the expiry sweep once")
    parser.add_argument("--db", type=Path, default=None, help="SQLite database path")
    parser.add_argument("--reset", action="store_true", help="Reset the database; exits if used alone")
    parser.add_argument("--quiet", action="store_true", help="Suppress verbose output")

    args = parser.parse_args(argv)
    db_path = args.db or DB_PATH

    actions_selected = any([args.demo, args.step, args.sweep])

    # Reset-only mode: allow clearing state without running demo.
    if args.reset and not actions_selected:
        if db_path.exists():
            print(f"Removing database: {db_path}")
            os.remove(db_path)
        else:
            print("No database to remove.")
        print("Database reset complete.")
        return

    if args.reset and db_path.exists():
        print(f"Removing database: {db_path}")
        os.remove(db_path)

    if args.quiet:
        logging.getLogger().setLevel(logging.WARNING)

    if args.sweep and not (args.demo or args.step):
        run_sweep(db_path)
        return

    demo = ConsentDemo(db_path=db_path, verbose=not args.quiet)
    try:
        demo.run_demo(until=args.step)
    finally:
        demo.close()


if __name__ == "__main__":
    main()
