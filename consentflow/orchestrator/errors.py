"""Error taxonomy for the contract orchestrator.

None of these errors is raised after a record has been mutated: callers
can surface them to the user and retry without cleaning anything up.
"""

from __future__ import annotations

from typing import Optional


class OrchestratorError(Exception):
    """Base class carrying a stable, machine-readable code."""

    default_code = "ERROR"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class CollaborationStateError(OrchestratorError):
    """The record is not in a state that allows the requested operation."""

    default_code = "INVALID_STATE"


class InvitationExpiredError(CollaborationStateError):
    default_code = "INVITATION_EXPIRED"


class SelfApprovalError(CollaborationStateError):
    default_code = "SELF_APPROVAL"


class PermissionDeniedError(CollaborationStateError):
    default_code = "FORBIDDEN"


class NotFoundError(OrchestratorError):
    default_code = "NOT_FOUND"


class MalformedDataError(OrchestratorError):
    """Stored data cannot be parsed; the record is permanently unusable."""

    default_code = "MALFORMED"


class ContractValidationError(OrchestratorError):
    default_code = "VALIDATION_FAILED"


class AmendmentValidationError(ContractValidationError):
    default_code = "INVALID_AMENDMENT"
