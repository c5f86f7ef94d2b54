"""SQLite persistence layer for contracts (Orchestrator).

This module stores contracts, collaborators, invitations, amendments, audit
events and in-app notifications using Python's standard library `sqlite3`.

Each public write commits on its own unless it runs inside `transaction()`,
in which case the whole block commits or rolls back together. Sharing relies
on this to flip `is_collaborative` and insert the collaborator atomically.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple, Union

from consentflow.orchestrator.records import (
    Amendment,
    Collaborator,
    Invitation,
    Notification,
    ParticipantType,
)
from consentflow.orchestrator.state_machine import (
    AmendmentStatus,
    CollaboratorStatus,
    Contract,
    ContractEvent,
    ContractStatus,
    InvitationStatus,
)
from consentflow.utils.time_utils import coerce_dt, to_epoch, to_iso


class ContractStoreError(Exception):
    """Raised when persistence operations fail."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value if value is not None else {}, default=str)


def _json_loads(text: Optional[str], default: Any) -> Any:
    if not text:
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return default


class ContractStore:
    """SQLite-backed store for contracts and their attached records."""

    def __init__(self, db_path: Union[str, Path] = "contracts.db") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._tx_depth = 0
        self._init_schema()

    def close(self) -> None:
        """Close the underlying SQLite connection."""

        try:
            self.conn.close()
        except sqlite3.Error as e:
            raise ContractStoreError(str(e)) from e

    def __enter__(self) -> "ContractStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        """Create tables if they do not exist."""

        try:
            cur = self.conn.cursor()
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS contracts (
                    contract_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    is_collaborative INTEGER NOT NULL DEFAULT 0,
                    encounter_type TEXT NOT NULL,
                    jurisdiction_json TEXT NOT NULL,
                    parties_json TEXT NOT NULL,
                    intimate_acts_json TEXT NOT NULL,
                    contract_start_time TEXT,
                    contract_duration INTEGER,
                    contract_end_time TEXT,
                    contract_end_ts INTEGER,
                    method TEXT,
                    contract_text TEXT NOT NULL,
                    method_payload_json TEXT NOT NULL,
                    participant_ids_json TEXT NOT NULL,
                    amendment_count INTEGER NOT NULL DEFAULT 0,
                    completion_reason TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS collaborators (
                    collaborator_id TEXT PRIMARY KEY,
                    contract_id TEXT NOT NULL,
                    user_id TEXT,
                    participant_type TEXT NOT NULL,
                    role TEXT NOT NULL,
                    status TEXT NOT NULL,
                    email TEXT,
                    invited_by TEXT,
                    invited_at TEXT NOT NULL,
                    approved_at TEXT,
                    rejected_at TEXT,
                    rejection_reason TEXT,
                    confirmed_at TEXT,
                    FOREIGN KEY (contract_id) REFERENCES contracts(contract_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS invitations (
                    invitation_id TEXT PRIMARY KEY,
                    contract_id TEXT NOT NULL,
                    invitation_code TEXT NOT NULL UNIQUE,
                    sender_id TEXT NOT NULL,
                    recipient_email TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    expires_ts INTEGER NOT NULL,
                    accepted_at TEXT,
                    accepted_by TEXT,
                    FOREIGN KEY (contract_id) REFERENCES contracts(contract_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS amendments (
                    amendment_id TEXT PRIMARY KEY,
                    contract_id TEXT NOT NULL,
                    requested_by TEXT NOT NULL,
                    amendment_type TEXT NOT NULL,
                    changes TEXT NOT NULL,
                    reason TEXT,
                    status TEXT NOT NULL,
                    approvers_json TEXT NOT NULL,
                    rejected_by TEXT,
                    rejection_reason TEXT,
                    created_at TEXT NOT NULL,
                    approved_at TEXT,
                    rejected_at TEXT,
                    FOREIGN KEY (contract_id) REFERENCES contracts(contract_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS events (
                    event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    contract_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    source TEXT NOT NULL,
                    old_state TEXT,
                    new_state TEXT,
                    metadata_json TEXT NOT NULL,
                    success INTEGER NOT NULL,
                    reason TEXT,
                    UNIQUE (contract_id, event_type, timestamp, source),
                    FOREIGN KEY (contract_id) REFERENCES contracts(contract_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS notifications (
                    notification_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    contract_id TEXT,
                    amendment_id TEXT,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_collaborators_contract ON collaborators(contract_id);
                CREATE INDEX IF NOT EXISTS idx_invitations_contract ON invitations(contract_id);
                CREATE INDEX IF NOT EXISTS idx_amendments_contract ON amendments(contract_id);
                CREATE INDEX IF NOT EXISTS idx_events_contract ON events(contract_id);
                CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id);
                CREATE INDEX IF NOT EXISTS idx_contracts_end_ts ON contracts(contract_end_ts);
                """
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise ContractStoreError(f"Failed to initialize schema: {e}") from e

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["ContractStore"]:
        """Group several writes into one commit.

        Any exception inside the block rolls back every write made in it.
        Nested blocks join the outermost transaction.
        """

        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self.conn.rollback()
            raise
        else:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                try:
                    self.conn.commit()
                except sqlite3.Error as e:
                    self.conn.rollback()
                    raise ContractStoreError(f"Failed to commit transaction: {e}") from e

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self.conn.commit()

    def _rollback(self) -> None:
        if self._tx_depth == 0:
            self.conn.rollback()

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------

    def upsert_contract(self, contract: Contract, persist_events: bool = True) -> None:
        """Insert or update a contract.

        Args:
            contract: Contract object to persist.
            persist_events: If True, insert contract.events (idempotent).
        """

        try:
            cur = self.conn.cursor()
            cur.execute(
                """
                INSERT INTO contracts (
                    contract_id, owner_id, status, is_collaborative, encounter_type,
                    jurisdiction_json, parties_json, intimate_acts_json,
                    contract_start_time, contract_duration, contract_end_time, contract_end_ts,
                    method, contract_text, method_payload_json, participant_ids_json,
                    amendment_count, completion_reason, created_at, updated_at
                ) VALUES (
                    :contract_id, :owner_id, :status, :is_collaborative, :encounter_type,
                    :jurisdiction_json, :parties_json, :intimate_acts_json,
                    :contract_start_time, :contract_duration, :contract_end_time, :contract_end_ts,
                    :method, :contract_text, :method_payload_json, :participant_ids_json,
                    :amendment_count, :completion_reason, :created_at, :updated_at
                )
                ON CONFLICT(contract_id) DO UPDATE SET
                    status=excluded.status,
                    is_collaborative=excluded.is_collaborative,
                    encounter_type=excluded.encounter_type,
                    jurisdiction_json=excluded.jurisdiction_json,
                    parties_json=excluded.parties_json,
                    intimate_acts_json=excluded.intimate_acts_json,
                    contract_start_time=excluded.contract_start_time,
                    contract_duration=excluded.contract_duration,
                    contract_end_time=excluded.contract_end_time,
                    contract_end_ts=excluded.contract_end_ts,
                    method=excluded.method,
                    contract_text=excluded.contract_text,
                    method_payload_json=excluded.method_payload_json,
                    participant_ids_json=excluded.participant_ids_json,
                    amendment_count=excluded.amendment_count,
                    completion_reason=excluded.completion_reason,
                    updated_at=excluded.updated_at
                """,
                {
                    "contract_id": contract.contract_id,
                    "owner_id": contract.owner_id,
                    "status": contract.status.value,
                    "is_collaborative": 1 if contract.is_collaborative else 0,
                    "encounter_type": contract.encounter_type or "",
                    "jurisdiction_json": _json_dumps(contract.jurisdiction),
                    "parties_json": _json_dumps(list(contract.parties)),
                    "intimate_acts_json": _json_dumps(contract.intimate_acts),
                    "contract_start_time": to_iso(contract.contract_start_time),
                    "contract_duration": contract.contract_duration,
                    "contract_end_time": to_iso(contract.contract_end_time),
                    "contract_end_ts": to_epoch(contract.contract_end_time),
                    "method": contract.method,
                    "contract_text": contract.contract_text or "",
                    "method_payload_json": _json_dumps(contract.method_payload),
                    "participant_ids_json": _json_dumps(list(contract.participant_ids)),
                    "amendment_count": int(contract.amendment_count or 0),
                    "completion_reason": contract.completion_reason,
                    "created_at": to_iso(contract.created_at) or _now_iso(),
                    "updated_at": to_iso(contract.updated_at) or _now_iso(),
                },
            )

            if persist_events:
                for ev in contract.events:
                    self._insert_event(cur, contract.contract_id, ev)

            self._commit()
        except sqlite3.Error as e:
            self._rollback()
            raise ContractStoreError(f"Failed to upsert contract {contract.contract_id}: {e}") from e

    def get_contract(self, contract_id: str, include_events: bool = True) -> Optional[Contract]:
        """Retrieve a contract (optionally with its audit trail)."""

        try:
            cur = self.conn.cursor()
            row = cur.execute(
                "SELECT * FROM contracts WHERE contract_id=?",
                (contract_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise ContractStoreError(f"Failed to load contract {contract_id}: {e}") from e

        if row is None:
            return None

        contract = self._row_to_contract(row)

        if include_events:
            event_rows = cur.execute(
                "SELECT * FROM events WHERE contract_id=? ORDER BY timestamp ASC, event_id ASC",
                (contract_id,),
            ).fetchall()
            for e in event_rows:
                metadata = _json_loads(e["metadata_json"], {})
                contract.events.append(
                    ContractEvent(
                        event_type=str(e["event_type"]),
                        timestamp=coerce_dt(e["timestamp"]) or datetime.now(timezone.utc),
                        source=str(e["source"]),
                        old_state=e["old_state"],
                        new_state=e["new_state"],
                        metadata=metadata if isinstance(metadata, dict) else {},
                        success=bool(int(e["success"])),
                        reason=e["reason"],
                    )
                )

        return contract

    def list_contracts(self, user_id: Optional[str] = None) -> List[Contract]:
        """List contracts, optionally only those `user_id` owns or participates in."""

        rows = self._fetchall("SELECT * FROM contracts ORDER BY created_at DESC, rowid DESC")
        contracts = [self._row_to_contract(r) for r in rows]
        if user_id is None:
            return contracts
        return [c for c in contracts if c.is_participant(user_id)]

    def get_due_expirations(self, now: datetime) -> List[Tuple[str, datetime]]:
        """Return active or paused contracts whose end time has been reached.

        Returns:
            List of (contract_id, contract_end_time).
        """

        now_dt = coerce_dt(now) or datetime.now(timezone.utc)
        rows = self._fetchall(
            """
            SELECT contract_id, contract_end_time
            FROM contracts
            WHERE contract_end_ts IS NOT NULL
              AND contract_end_ts <= ?
              AND status IN (?, ?)
            ORDER BY contract_end_ts ASC
            """,
            (int(now_dt.timestamp()), ContractStatus.ACTIVE.value, ContractStatus.PAUSED.value),
        )

        results: List[Tuple[str, datetime]] = []
        for r in rows:
            end = coerce_dt(r["contract_end_time"])
            if end:
                results.append((str(r["contract_id"]), end))
        return results

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def upsert_collaborator(self, collaborator: Collaborator) -> None:
        try:
            self.conn.execute(
                """
                INSERT INTO collaborators (
                    collaborator_id, contract_id, user_id, participant_type, role, status,
                    email, invited_by, invited_at, approved_at, rejected_at,
                    rejection_reason, confirmed_at
                ) VALUES (
                    :collaborator_id, :contract_id, :user_id, :participant_type, :role, :status,
                    :email, :invited_by, :invited_at, :approved_at, :rejected_at,
                    :rejection_reason, :confirmed_at
                )
                ON CONFLICT(collaborator_id) DO UPDATE SET
                    user_id=excluded.user_id,
                    status=excluded.status,
                    email=excluded.email,
                    approved_at=excluded.approved_at,
                    rejected_at=excluded.rejected_at,
                    rejection_reason=excluded.rejection_reason,
                    confirmed_at=excluded.confirmed_at
                """,
                {
                    "collaborator_id": collaborator.collaborator_id,
                    "contract_id": collaborator.contract_id,
                    "user_id": collaborator.user_id,
                    "participant_type": collaborator.participant_type.value,
                    "role": collaborator.role,
                    "status": collaborator.status.value,
                    "email": collaborator.email,
                    "invited_by": collaborator.invited_by,
                    "invited_at": to_iso(collaborator.invited_at) or _now_iso(),
                    "approved_at": to_iso(collaborator.approved_at),
                    "rejected_at": to_iso(collaborator.rejected_at),
                    "rejection_reason": collaborator.rejection_reason,
                    "confirmed_at": to_iso(collaborator.confirmed_at),
                },
            )
            self._commit()
        except sqlite3.Error as e:
            self._rollback()
            raise ContractStoreError(
                f"Failed to upsert collaborator {collaborator.collaborator_id}: {e}"
            ) from e

    def get_collaborator(self, collaborator_id: str) -> Optional[Collaborator]:
        rows = self._fetchall(
            "SELECT * FROM collaborators WHERE collaborator_id=?", (collaborator_id,)
        )
        return self._row_to_collaborator(rows[0]) if rows else None

    def list_collaborators(self, contract_id: str) -> List[Collaborator]:
        rows = self._fetchall(
            "SELECT * FROM collaborators WHERE contract_id=? ORDER BY invited_at ASC, rowid ASC",
            (contract_id,),
        )
        return [self._row_to_collaborator(r) for r in rows]

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def upsert_invitation(self, invitation: Invitation) -> None:
        try:
            self.conn.execute(
                """
                INSERT INTO invitations (
                    invitation_id, contract_id, invitation_code, sender_id, recipient_email,
                    status, created_at, expires_at, expires_ts, accepted_at, accepted_by
                ) VALUES (
                    :invitation_id, :contract_id, :invitation_code, :sender_id, :recipient_email,
                    :status, :created_at, :expires_at, :expires_ts, :accepted_at, :accepted_by
                )
                ON CONFLICT(invitation_id) DO UPDATE SET
                    status=excluded.status,
                    accepted_at=excluded.accepted_at,
                    accepted_by=excluded.accepted_by
                """,
                {
                    "invitation_id": invitation.invitation_id,
                    "contract_id": invitation.contract_id,
                    "invitation_code": invitation.invitation_code,
                    "sender_id": invitation.sender_id,
                    "recipient_email": invitation.recipient_email,
                    "status": invitation.status.value,
                    "created_at": to_iso(invitation.created_at) or _now_iso(),
                    "expires_at": to_iso(invitation.expires_at),
                    "expires_ts": to_epoch(invitation.expires_at),
                    "accepted_at": to_iso(invitation.accepted_at),
                    "accepted_by": invitation.accepted_by,
                },
            )
            self._commit()
        except sqlite3.Error as e:
            self._rollback()
            raise ContractStoreError(
                f"Failed to upsert invitation {invitation.invitation_id}: {e}"
            ) from e

    def get_invitation_by_code(self, code: str) -> Optional[Invitation]:
        rows = self._fetchall("SELECT * FROM invitations WHERE invitation_code=?", (code,))
        return self._row_to_invitation(rows[0]) if rows else None

    def list_invitations(self, contract_id: str) -> List[Invitation]:
        rows = self._fetchall(
            "SELECT * FROM invitations WHERE contract_id=? ORDER BY created_at ASC, rowid ASC",
            (contract_id,),
        )
        return [self._row_to_invitation(r) for r in rows]

    def get_expired_invitations(self, now: datetime) -> List[Invitation]:
        """Return invitations still marked pending whose expiry has been reached."""

        now_dt = coerce_dt(now) or datetime.now(timezone.utc)
        rows = self._fetchall(
            """
            SELECT * FROM invitations
            WHERE status=? AND expires_ts <= ?
            ORDER BY expires_ts ASC
            """,
            (InvitationStatus.PENDING.value, int(now_dt.timestamp())),
        )
        return [self._row_to_invitation(r) for r in rows]

    # ------------------------------------------------------------------
    # Amendments
    # ------------------------------------------------------------------

    def upsert_amendment(self, amendment: Amendment) -> None:
        try:
            self.conn.execute(
                """
                INSERT INTO amendments (
                    amendment_id, contract_id, requested_by, amendment_type, changes, reason,
                    status, approvers_json, rejected_by, rejection_reason,
                    created_at, approved_at, rejected_at
                ) VALUES (
                    :amendment_id, :contract_id, :requested_by, :amendment_type, :changes, :reason,
                    :status, :approvers_json, :rejected_by, :rejection_reason,
                    :created_at, :approved_at, :rejected_at
                )
                ON CONFLICT(amendment_id) DO UPDATE SET
                    status=excluded.status,
                    approvers_json=excluded.approvers_json,
                    rejected_by=excluded.rejected_by,
                    rejection_reason=excluded.rejection_reason,
                    approved_at=excluded.approved_at,
                    rejected_at=excluded.rejected_at
                """,
                {
                    "amendment_id": amendment.amendment_id,
                    "contract_id": amendment.contract_id,
                    "requested_by": amendment.requested_by,
                    "amendment_type": amendment.amendment_type,
                    "changes": amendment.changes,
                    "reason": amendment.reason,
                    "status": amendment.status.value,
                    "approvers_json": _json_dumps(list(amendment.approvers)),
                    "rejected_by": amendment.rejected_by,
                    "rejection_reason": amendment.rejection_reason,
                    "created_at": to_iso(amendment.created_at) or _now_iso(),
                    "approved_at": to_iso(amendment.approved_at),
                    "rejected_at": to_iso(amendment.rejected_at),
                },
            )
            self._commit()
        except sqlite3.Error as e:
            self._rollback()
            raise ContractStoreError(
                f"Failed to upsert amendment {amendment.amendment_id}: {e}"
            ) from e

    def get_amendment(self, amendment_id: str) -> Optional[Amendment]:
        rows = self._fetchall("SELECT * FROM amendments WHERE amendment_id=?", (amendment_id,))
        return self._row_to_amendment(rows[0]) if rows else None

    def list_amendments(self, contract_id: str) -> List[Amendment]:
        rows = self._fetchall(
            "SELECT * FROM amendments WHERE contract_id=? ORDER BY created_at ASC, rowid ASC",
            (contract_id,),
        )
        return [self._row_to_amendment(r) for r in rows]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def add_notification(self, notification: Notification) -> None:
        try:
            self.conn.execute(
                """
                INSERT OR IGNORE INTO notifications (
                    notification_id, user_id, type, title, message,
                    contract_id, amendment_id, is_read, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    notification.notification_id,
                    notification.user_id,
                    notification.type,
                    notification.title,
                    notification.message,
                    notification.contract_id,
                    notification.amendment_id,
                    1 if notification.is_read else 0,
                    to_iso(notification.created_at) or _now_iso(),
                ),
            )
            self._commit()
        except sqlite3.Error as e:
            self._rollback()
            raise ContractStoreError(f"Failed to add notification: {e}") from e

    def list_notifications(self, user_id: str, unread_only: bool = False) -> List[Notification]:
        query = "SELECT * FROM notifications WHERE user_id=?"
        if unread_only:
            query += " AND is_read=0"
        rows = self._fetchall(query + " ORDER BY created_at ASC, rowid ASC", (user_id,))
        return [
            Notification(
                notification_id=str(r["notification_id"]),
                user_id=str(r["user_id"]),
                type=str(r["type"]),
                title=str(r["title"]),
                message=str(r["message"]),
                contract_id=r["contract_id"],
                amendment_id=r["amendment_id"],
                is_read=bool(int(r["is_read"])),
                created_at=coerce_dt(r["created_at"]) or datetime.now(timezone.utc),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[sqlite3.Row]:
        try:
            return self.conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise ContractStoreError(f"Query failed: {e}") from e

    def _row_to_contract(self, row: sqlite3.Row) -> Contract:
        try:
            status = ContractStatus(row["status"])
        except ValueError as e:
            raise ContractStoreError(f"Unknown contract status: {row['status']}") from e

        jurisdiction = _json_loads(row["jurisdiction_json"], {})
        parties = _json_loads(row["parties_json"], [])
        acts = _json_loads(row["intimate_acts_json"], {})
        payload = _json_loads(row["method_payload_json"], {})
        participants = _json_loads(row["participant_ids_json"], [])

        return Contract(
            contract_id=str(row["contract_id"]),
            owner_id=str(row["owner_id"]),
            status=status,
            is_collaborative=bool(int(row["is_collaborative"])),
            encounter_type=str(row["encounter_type"] or ""),
            jurisdiction=jurisdiction if isinstance(jurisdiction, dict) else {},
            parties=parties if isinstance(parties, list) else [],
            intimate_acts=acts if isinstance(acts, dict) else {},
            contract_start_time=coerce_dt(row["contract_start_time"]),
            contract_duration=row["contract_duration"],
            contract_end_time=coerce_dt(row["contract_end_time"]),
            method=row["method"],
            contract_text=str(row["contract_text"] or ""),
            method_payload=payload if isinstance(payload, dict) else {},
            participant_ids=participants if isinstance(participants, list) else [],
            amendment_count=int(row["amendment_count"] or 0),
            completion_reason=row["completion_reason"],
            created_at=coerce_dt(row["created_at"]) or datetime.now(timezone.utc),
            updated_at=coerce_dt(row["updated_at"]) or datetime.now(timezone.utc),
        )

    def _row_to_collaborator(self, row: sqlite3.Row) -> Collaborator:
        return Collaborator(
            collaborator_id=str(row["collaborator_id"]),
            contract_id=str(row["contract_id"]),
            user_id=row["user_id"],
            participant_type=ParticipantType(row["participant_type"]),
            role=str(row["role"]),
            status=CollaboratorStatus(row["status"]),
            email=row["email"],
            invited_by=row["invited_by"],
            invited_at=coerce_dt(row["invited_at"]) or datetime.now(timezone.utc),
            approved_at=coerce_dt(row["approved_at"]),
            rejected_at=coerce_dt(row["rejected_at"]),
            rejection_reason=row["rejection_reason"],
            confirmed_at=coerce_dt(row["confirmed_at"]),
        )

    def _row_to_invitation(self, row: sqlite3.Row) -> Invitation:
        return Invitation(
            invitation_id=str(row["invitation_id"]),
            contract_id=str(row["contract_id"]),
            invitation_code=str(row["invitation_code"]),
            sender_id=str(row["sender_id"]),
            recipient_email=str(row["recipient_email"]),
            status=InvitationStatus(row["status"]),
            created_at=coerce_dt(row["created_at"]) or datetime.now(timezone.utc),
            expires_at=coerce_dt(row["expires_at"]),
            accepted_at=coerce_dt(row["accepted_at"]),
            accepted_by=row["accepted_by"],
        )

    def _row_to_amendment(self, row: sqlite3.Row) -> Amendment:
        approvers = _json_loads(row["approvers_json"], [])
        return Amendment(
            amendment_id=str(row["amendment_id"]),
            contract_id=str(row["contract_id"]),
            requested_by=str(row["requested_by"]),
            amendment_type=str(row["amendment_type"]),
            changes=str(row["changes"]),
            reason=row["reason"],
            status=AmendmentStatus(row["status"]),
            approvers=approvers if isinstance(approvers, list) else [],
            rejected_by=row["rejected_by"],
            rejection_reason=row["rejection_reason"],
            created_at=coerce_dt(row["created_at"]) or datetime.now(timezone.utc),
            approved_at=coerce_dt(row["approved_at"]),
            rejected_at=coerce_dt(row["rejected_at"]),
        )

    def _insert_event(self, cur: sqlite3.Cursor, contract_id: str, event: ContractEvent) -> None:
        cur.execute(
            """
            INSERT OR IGNORE INTO events (
                contract_id, event_type, timestamp, source, old_state, new_state,
                metadata_json, success, reason
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                contract_id,
                event.event_type,
                to_iso(event.timestamp) or _now_iso(),
                event.source,
                event.old_state,
                event.new_state,
                _json_dumps(event.metadata),
                1 if event.success else 0,
                event.reason,
            ),
        )
