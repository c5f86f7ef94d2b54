"""Persistence of the in-progress wizard state (Draft Store).

This module provides:
- Key-value storage backends (in-memory and SQLite) holding one serialized
  FlowState blob under a well-known key.
- Per-field restoration that tolerates partially invalid stored data by
  falling back to defaults seeded from user preferences.
- The staleness policy for abandoned flows.

Storage failures never escape `DraftStore`: reads log and return None
(the caller falls back to defaults) and writes log and report False so the
next mutation can retry.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union

from dotenv import load_dotenv

from consentflow.utils.jurisdictions import state_name
from consentflow.utils.time_utils import coerce_dt, utcnow
from consentflow.wizard.flow_state import (
    ENCOUNTER_TYPES,
    ActChoice,
    FlowState,
    RecordingMethod,
    SelectionMode,
)


load_dotenv()

logger = logging.getLogger(__name__)

STORAGE_KEY = "pmy_consent_flow_state"
STALE_THRESHOLD = timedelta(minutes=int(os.getenv("CONSENTFLOW_STALE_MINUTES", "5")))


class DraftStoreError(Exception):
    """Raised by storage backends when a read or write fails."""


class KeyValueStorage(Protocol):
    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class InMemoryStorage:
    """Process-local storage, used by tests and the demo CLI."""

    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class SQLiteKeyValueStorage:
    """SQLite-backed key-value storage that survives process restarts."""

    def __init__(self, db_path: Union[str, Path] = "flow_state.db") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(self.db_path)
            self.conn.execute(
                "CREATE TABLE IF NOT EXISTS kv_store (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise DraftStoreError(f"Failed to open storage {self.db_path}: {e}") from e

    def get_item(self, key: str) -> Optional[str]:
        try:
            row = self.conn.execute("SELECT value FROM kv_store WHERE key=?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise DraftStoreError(f"Failed to read {key}: {e}") from e
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        try:
            self.conn.execute(
                """
                INSERT INTO kv_store (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value
                """,
                (key, value),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise DraftStoreError(f"Failed to write {key}: {e}") from e

    def remove_item(self, key: str) -> None:
        try:
            self.conn.execute("DELETE FROM kv_store WHERE key=?", (key,))
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise DraftStoreError(f"Failed to remove {key}: {e}") from e

    def close(self) -> None:
        try:
            self.conn.close()
        except sqlite3.Error as e:
            raise DraftStoreError(str(e)) from e

    def __enter__(self) -> "SQLiteKeyValueStorage":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


@dataclass
class UserPreferences:
    """Saved user preferences used only to seed defaults."""

    default_university_id: Optional[str] = None
    default_university_name: Optional[str] = None
    state_of_residence: Optional[str] = None
    default_encounter_type: Optional[str] = None
    default_contract_duration: Optional[int] = None


def default_flow_state(prefs: Optional[UserPreferences] = None) -> FlowState:
    """Build a fresh FlowState seeded from preferences."""

    state = FlowState()
    if prefs is None:
        return state

    if prefs.default_encounter_type in ENCOUNTER_TYPES:
        state.encounter_type = prefs.default_encounter_type

    if prefs.default_university_id:
        state.selection_mode = SelectionMode.SELECT_UNIVERSITY
        state.university_id = prefs.default_university_id
        state.university_name = prefs.default_university_name
    elif prefs.state_of_residence and state_name(prefs.state_of_residence):
        state.selection_mode = SelectionMode.SELECT_STATE
        state.state_code = prefs.state_of_residence.strip().upper()
        state.state_name = state_name(prefs.state_of_residence)

    return state


# ---------------------------------------------------------------------------
# Per-field restoration
# ---------------------------------------------------------------------------


def _non_empty_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _enum_or_none(enum_cls, value: Any):
    if not isinstance(value, str):
        return None
    try:
        return enum_cls(value)
    except ValueError:
        return None


def restore_flow_state(raw: Dict[str, Any], defaults: FlowState) -> FlowState:
    """Rebuild a FlowState from a stored dict, one field at a time.

    Each field that fails its type or non-empty check takes the value from
    `defaults` instead of invalidating the whole restore. The selection mode
    is the exception: it is never defaulted, and it decides which jurisdiction
    pair survives.
    """

    encounter_type = raw.get("encounterType")
    if not (isinstance(encounter_type, str) and encounter_type in ENCOUNTER_TYPES):
        encounter_type = defaults.encounter_type

    # A stored mode (or its absence) is kept as is; the pair it excludes stays empty
    selection_mode = _enum_or_none(SelectionMode, raw.get("selectionMode"))

    university_id = _non_empty_str(raw.get("universityId")) or defaults.university_id
    university_name = _non_empty_str(raw.get("universityName")) or defaults.university_name
    state_code = _non_empty_str(raw.get("stateCode")) or defaults.state_code
    state_label = _non_empty_str(raw.get("stateName")) or defaults.state_name
    if state_code and not state_label:
        state_label = state_name(state_code)
    if selection_mode in (SelectionMode.SELECT_STATE, SelectionMode.NOT_APPLICABLE):
        university_id = university_name = None
    if selection_mode in (SelectionMode.SELECT_UNIVERSITY, SelectionMode.NOT_APPLICABLE):
        state_code = state_label = None

    parties = raw.get("parties")
    if not (
        isinstance(parties, list)
        and parties
        and all(isinstance(p, str) for p in parties)
    ):
        parties = list(defaults.parties)

    acts = raw.get("intimateActs")
    allowed_choices = {c.value for c in ActChoice}
    if isinstance(acts, dict):
        acts = {
            str(name): choice
            for name, choice in acts.items()
            if isinstance(name, str) and choice in allowed_choices
        }
    else:
        acts = dict(defaults.intimate_acts)

    start = coerce_dt(raw.get("contractStartTime"))
    duration = raw.get("contractDuration")
    end = coerce_dt(raw.get("contractEndTime"))
    if not (
        start is not None
        and end is not None
        and isinstance(duration, int)
        and not isinstance(duration, bool)
        and duration > 0
    ):
        start, duration, end = (
            defaults.contract_start_time,
            defaults.contract_duration,
            defaults.contract_end_time,
        )

    is_collaborative = raw.get("isCollaborative")
    if not isinstance(is_collaborative, bool):
        is_collaborative = defaults.is_collaborative

    contract_text = raw.get("contractText")
    if not isinstance(contract_text, str):
        contract_text = defaults.contract_text

    payload = raw.get("methodPayload")
    if not isinstance(payload, dict):
        payload = dict(defaults.method_payload)

    return FlowState(
        encounter_type=encounter_type,
        selection_mode=selection_mode,
        university_id=university_id,
        university_name=university_name,
        state_code=state_code,
        state_name=state_label,
        parties=parties,
        intimate_acts=acts,
        contract_start_time=start,
        contract_duration=duration,
        contract_end_time=end,
        method=_enum_or_none(RecordingMethod, raw.get("method")) or defaults.method,
        draft_id=_non_empty_str(raw.get("draftId")) or defaults.draft_id,
        is_collaborative=is_collaborative,
        contract_text=contract_text,
        method_payload=payload,
        last_edited_at=coerce_dt(raw.get("lastEditedAt")) or defaults.last_edited_at,
    )


def is_stale(
    state: FlowState,
    now: Optional[datetime] = None,
    threshold: timedelta = STALE_THRESHOLD,
) -> bool:
    """Return True if the flow is old AND shows no sign of active work.

    A draft id or an encounter type means the user started something, so
    such a flow is never stale however old it is.
    """

    if state.draft_id or state.encounter_type:
        return False

    if state.last_edited_at is None:
        return True

    current = coerce_dt(now) or utcnow()
    return current - state.last_edited_at > threshold


class DraftStore:
    """Loads and saves the single FlowState blob."""

    def __init__(self, storage: KeyValueStorage, key: str = STORAGE_KEY) -> None:
        self.storage = storage
        self.key = key

    def load(self, defaults: Optional[FlowState] = None) -> Optional[FlowState]:
        """Read and restore the stored flow.

        Returns:
            The restored FlowState, or None when nothing usable is stored.
        """

        base = defaults or FlowState()
        try:
            text = self.storage.get_item(self.key)
        except DraftStoreError as e:
            logger.error("Failed to read flow state: %s", e)
            return None

        if not text:
            return None

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning("Discarding corrupt flow state: %s", e)
            return None

        if not isinstance(raw, dict):
            logger.warning("Discarding flow state of unexpected type %s", type(raw).__name__)
            return None

        return restore_flow_state(raw, base)

    def save(self, state: FlowState) -> bool:
        """Persist `state`. Returns False (after logging) on failure."""

        try:
            self.storage.set_item(self.key, json.dumps(state.to_dict(), default=str))
        except DraftStoreError as e:
            logger.error("Failed to save flow state: %s", e)
            return False
        return True

    def clear(self) -> bool:
        try:
            self.storage.remove_item(self.key)
        except DraftStoreError as e:
            logger.error("Failed to clear flow state: %s", e)
            return False
        return True

    def is_stale(self, state: FlowState, now: Optional[datetime] = None) -> bool:
        return is_stale(state, now)
