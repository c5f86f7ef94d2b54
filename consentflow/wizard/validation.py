"""Inline validation results shared by the wizard modules.

Validation problems are values, not exceptions: each step reports at most
one `ValidationIssue` and the caller decides how to surface it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


ENCOUNTER_TYPE_REQUIRED = "ENCOUNTER_TYPE_REQUIRED"
JURISDICTION_REQUIRED = "JURISDICTION_REQUIRED"
PARTIES_REQUIRED = "PARTIES_REQUIRED"
PARTY_REQUIRED = "PARTY_REQUIRED"
INVALID_HANDLE = "INVALID_HANDLE"
NAME_TOO_SHORT = "NAME_TOO_SHORT"
PARTY_ERRORS = "PARTY_ERRORS"
DUPLICATE_PARTY = "DUPLICATE_PARTY"
END_TIME_IN_PAST = "END_TIME_IN_PAST"
METHOD_REQUIRED = "METHOD_REQUIRED"


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}
