"""Party identifier normalization and validation.

A party is either a platform handle (leading "@") or a free-text legal name.
Handles are case-insensitive and stored lower-cased; legal names are kept as
typed apart from surrounding whitespace.

Per-index errors live in `PartyErrors`, which knows how to re-key itself
when a party is removed so that errors never point at the wrong row.
"""

from __future__ import annotations

import re
from typing import Dict, Iterator, List, Optional, Tuple

from consentflow.wizard.validation import (
    DUPLICATE_PARTY,
    INVALID_HANDLE,
    NAME_TOO_SHORT,
    PARTY_REQUIRED,
    ValidationIssue,
)


HANDLE_RE = re.compile(r"^@[a-z0-9_.]{1,30}$")
MIN_LEGAL_NAME_LENGTH = 2


def normalize_party(raw: Optional[str]) -> str:
    """Trim and, for handles, lower-case and collapse the leading "@" run.

    Examples:
        >>> normalize_party("  @@Alex_Doe ")
        '@alex_doe'
        >>> normalize_party(" Jane Smith ")
        'Jane Smith'
    """

    if not raw:
        return ""
    value = raw.strip()
    if value.startswith("@"):
        return "@" + value.lstrip("@").lower()
    return value


def validate_party(value: Optional[str], required: bool = False) -> Optional[ValidationIssue]:
    """Validate a single (already normalized or raw) party value.

    First failing rule wins:
    1. Empty: an error only when the slot is required.
    2. Handle: must match ``@[a-z0-9_.]{1,30}``.
    3. Legal name: at least two non-whitespace characters.
    """

    normalized = normalize_party(value)
    if not normalized:
        if required:
            return ValidationIssue(PARTY_REQUIRED, "Please enter a username or legal name.")
        return None

    if normalized.startswith("@"):
        if not HANDLE_RE.match(normalized):
            return ValidationIssue(
                INVALID_HANDLE,
                "Usernames may only contain lowercase letters, numbers, underscores "
                "and periods (max 30 characters).",
            )
        return None

    if len(re.sub(r"\s+", "", normalized)) < MIN_LEGAL_NAME_LENGTH:
        return ValidationIssue(NAME_TOO_SHORT, "Legal names must be at least 2 characters.")
    return None


def find_duplicates(parties: List[str]) -> Dict[int, ValidationIssue]:
    """Flag every repeat of a handle after its first occurrence.

    Duplicates are reported, never removed.
    """

    seen: Dict[str, int] = {}
    duplicates: Dict[int, ValidationIssue] = {}
    for index, raw in enumerate(parties):
        value = normalize_party(raw)
        if not value.startswith("@") or len(value) < 2:
            continue
        key = value.lower()
        if key in seen:
            duplicates[index] = ValidationIssue(
                DUPLICATE_PARTY, f"{value} has already been added to this contract."
            )
        else:
            seen[key] = index
    return duplicates


class PartyErrors:
    """Per-index validation errors for the parties list."""

    def __init__(self, errors: Optional[Dict[int, ValidationIssue]] = None) -> None:
        self._errors: Dict[int, ValidationIssue] = dict(errors or {})

    def set(self, index: int, issue: Optional[ValidationIssue]) -> None:
        if issue is None:
            self._errors.pop(index, None)
        else:
            self._errors[index] = issue

    def get(self, index: int) -> Optional[ValidationIssue]:
        return self._errors.get(index)

    def clear(self) -> None:
        self._errors.clear()

    def reindex_after_removal(self, removed: int, new_length: int) -> None:
        """Drop the error at `removed` and shift every higher index down by one."""

        shifted: Dict[int, ValidationIssue] = {}
        for index, issue in self._errors.items():
            if index == removed:
                continue
            target = index - 1 if index > removed else index
            if 0 <= target < new_length:
                shifted[target] = issue
        self._errors = shifted

    def as_dict(self) -> Dict[int, ValidationIssue]:
        return dict(self._errors)

    def items(self) -> Iterator[Tuple[int, ValidationIssue]]:
        return iter(sorted(self._errors.items()))

    def __len__(self) -> int:
        return len(self._errors)

    def __bool__(self) -> bool:
        return bool(self._errors)

    def __contains__(self, index: object) -> bool:
        return index in self._errors


# ---------------------------------------------------------------------------
# List operations (pure: return a new list)
# ---------------------------------------------------------------------------


def update_party(parties: List[str], errors: PartyErrors, index: int, raw: str) -> List[str]:
    """Replace the party at `index` with its normalized value and revalidate it."""

    if index < 0 or index >= len(parties):
        raise IndexError(f"Party index out of range: {index}")
    updated = list(parties)
    updated[index] = normalize_party(raw)
    errors.set(index, validate_party(updated[index]))
    return updated


def add_party(parties: List[str]) -> List[str]:
    return list(parties) + [""]


def remove_party(parties: List[str], errors: PartyErrors, index: int) -> List[str]:
    """Remove a party; an emptied list becomes a single blank slot."""

    if index < 0 or index >= len(parties):
        raise IndexError(f"Party index out of range: {index}")
    updated = [p for i, p in enumerate(parties) if i != index]
    if not updated:
        updated = [""]
    errors.reindex_after_removal(index, len(updated))
    return updated


def add_contact(parties: List[str], username: str) -> List[str]:
    """Add a contact's handle to the first free slot after the owner's.

    Already-present handles (case-insensitive) are left alone.
    """

    handle = normalize_party("@" + username.strip().lstrip("@"))
    if any(normalize_party(p).lower() == handle for p in parties):
        return list(parties)

    updated = list(parties)
    for index in range(1, len(updated)):
        if not updated[index].strip():
            updated[index] = handle
            return updated
    updated.append(handle)
    return updated
