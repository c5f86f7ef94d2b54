#!/usr/bin/env python3
"""Flask JSON API for the consent workflow engine.

This module exposes:
- The wizard surface (state, updates, navigation, reset, save and share)
  backed by one WizardController per user.
- Contract lifecycle, collaboration and amendment operations.
- The custom text interpreter.

Authentication is handled upstream; the acting user arrives in the
`X-User-Id` header (and optionally their handle in `X-User-Handle`).
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from consentflow.agents.interpreter import interpret_custom_text
from consentflow.orchestrator.amendments import AmendmentEngine
from consentflow.orchestrator.collaboration import CollaborationManager
from consentflow.orchestrator.contract_store import ContractStore, ContractStoreError
from consentflow.orchestrator.errors import (
    CollaborationStateError,
    ContractValidationError,
    InvitationExpiredError,
    MalformedDataError,
    NotFoundError,
    OrchestratorError,
    PermissionDeniedError,
    SelfApprovalError,
)
from consentflow.orchestrator.lifecycle import ContractLifecycle
from consentflow.orchestrator.notifications import Notifier
from consentflow.orchestrator.records import Collaborator
from consentflow.orchestrator.state_machine import Contract, ContractStateMachine, InvalidTransitionError
from consentflow.utils.time_utils import coerce_dt, to_iso, utcnow
from consentflow.wizard.controller import WizardController
from consentflow.wizard.draft_store import (
    STORAGE_KEY,
    DraftStore,
    InMemoryStorage,
    KeyValueStorage,
    SQLiteKeyValueStorage,
    UserPreferences,
)


load_dotenv()

logger = logging.getLogger(__name__)

# Project root
PROJECT_ROOT = Path(__file__).parent.parent.parent

DB_PATH = os.getenv("CONSENTFLOW_DB_PATH", str(PROJECT_ROOT / "data" / "consentflow.db"))

app = Flask(__name__)

# Global services, populated by init_services()
services: Dict[str, Any] = {}

# One wizard controller per user id
controllers: Dict[str, WizardController] = {}


class AuthenticationError(Exception):
    """Raised when a request carries no user id."""


def init_services(
    db_path: Optional[Union[str, Path]] = None,
    storage: Optional[KeyValueStorage] = None,
    preferences_provider: Optional[Callable[[str], Optional[UserPreferences]]] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Dict[str, Any]:
    """(Re)build the service graph. Tests call this with ":memory:"."""

    close_services()
    db_path = db_path or DB_PATH
    clock = clock or utcnow
    store = ContractStore(db_path)
    if storage is None:
        storage = InMemoryStorage() if str(db_path) == ":memory:" else SQLiteKeyValueStorage(db_path)
    notifier = Notifier(store, clock=clock)

    services.update(
        {
            "store": store,
            "storage": storage,
            "clock": clock,
            "preferences_provider": preferences_provider,
            "lifecycle": ContractLifecycle(store, clock=clock),
            "collaboration": CollaborationManager(store, notifier=notifier, clock=clock),
            "amendments": AmendmentEngine(store, notifier=notifier, clock=clock),
        }
    )
    return services


def close_services() -> None:
    controllers.clear()
    store = services.get("store")
    if store is not None:
        store.close()
    services.clear()


def _services() -> Dict[str, Any]:
    if not services:
        init_services()
    return services


def current_user_id() -> str:
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise AuthenticationError("Missing X-User-Id header")
    return user_id


def controller_for(user_id: str) -> WizardController:
    """Return (hydrating on first use) the user's wizard controller."""

    controller = controllers.get(user_id)
    if controller is None:
        svc = _services()
        controller = WizardController(
            DraftStore(svc["storage"], key=f"{STORAGE_KEY}:{user_id}"),
            user_id=user_id,
            owner_handle=request.headers.get("X-User-Handle", ""),
            preferences_provider=svc["preferences_provider"],
            clock=svc["clock"],
        )
        controller.hydrate()
        controllers[user_id] = controller
    return controller


def require_contract_access(contract_id: str, user_id: str) -> Tuple[Contract, List[Collaborator]]:
    """Load a contract visible to `user_id` (a participant or an invited collaborator)."""

    contract = _services()["lifecycle"].get(contract_id)
    collaborators = _services()["store"].list_collaborators(contract_id)
    if not contract.is_participant(user_id) and not any(c.user_id == user_id for c in collaborators):
        raise PermissionDeniedError("You do not have access to this contract.")
    return contract, collaborators


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def flow_json(controller: WizardController) -> Dict[str, Any]:
    issue = controller.step_issue()
    return {
        "state": controller.state.to_dict(),
        "current_step": controller.current_step,
        "step_name": controller.current_step_name.value,
        "plan": controller.plan.as_dict(),
        "is_hydrated": controller.is_hydrated,
        "has_required_data": controller.has_required_data(),
        "party_errors": {str(i): e.to_dict() for i, e in controller.party_errors.items()},
        "can_proceed": issue is None,
        "issue": issue.to_dict() if issue else None,
        "last_save_ok": controller.last_save_ok,
    }


def contract_json(contract: Contract) -> Dict[str, Any]:
    return {
        "contract_id": contract.contract_id,
        "owner_id": contract.owner_id,
        "status": contract.status.value,
        "is_collaborative": contract.is_collaborative,
        "encounter_type": contract.encounter_type,
        "jurisdiction": contract.jurisdiction,
        "parties": contract.parties,
        "intimate_acts": contract.intimate_acts,
        "contract_start_time": to_iso(contract.contract_start_time),
        "contract_duration": contract.contract_duration,
        "contract_end_time": to_iso(contract.contract_end_time),
        "method": contract.method,
        "contract_text": contract.contract_text,
        "participant_ids": contract.participant_ids,
        "amendment_count": contract.amendment_count,
        "completion_reason": contract.completion_reason,
        "allowed_events": ContractStateMachine(contract).get_allowed_events(),
        "created_at": to_iso(contract.created_at),
        "updated_at": to_iso(contract.updated_at),
    }


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


def _error(message: str, code: str, status: int):
    return jsonify({"error": message, "code": code}), status


@app.errorhandler(AuthenticationError)
def handle_auth_error(e: AuthenticationError):
    return _error(str(e), "UNAUTHENTICATED", 401)


@app.errorhandler(OrchestratorError)
def handle_orchestrator_error(e: OrchestratorError):
    if isinstance(e, InvitationExpiredError):
        status = 410
    elif isinstance(e, (PermissionDeniedError, SelfApprovalError)):
        status = 403
    elif isinstance(e, CollaborationStateError):
        status = 409
    elif isinstance(e, NotFoundError):
        status = 404
    elif isinstance(e, MalformedDataError):
        status = 422
    elif isinstance(e, ContractValidationError):
        status = 400
    else:
        status = 400
    return _error(e.message, e.code, status)


@app.errorhandler(InvalidTransitionError)
def handle_transition_error(e: InvalidTransitionError):
    return _error(str(e), "INVALID_TRANSITION", 409)


@app.errorhandler(ContractStoreError)
def handle_store_error(e: ContractStoreError):
    logger.error("Contract store failure: %s", e)
    return _error("A storage error occurred. Please try again.", "STORE_ERROR", 500)


@app.errorhandler(ValueError)
def handle_value_error(e: ValueError):
    return _error(str(e), "BAD_REQUEST", 400)


# ---------------------------------------------------------------------------
# Wizard
# ---------------------------------------------------------------------------


@app.route("/api/flow")
def get_flow():
    """Current wizard state for the acting user."""
    return jsonify(flow_json(controller_for(current_user_id())))


@app.route("/api/flow", methods=["PATCH"])
def patch_flow():
    """Apply one or more wizard edits.

    Keys are applied in a fixed order so that an encounter type change
    (which resets type-specific fields) happens before the other edits.
    """
    controller = controller_for(current_user_id())
    body = _body()
    issues: Dict[str, Any] = {}

    if "encounterType" in body:
        controller.set_encounter_type(body["encounterType"])
    if "selectionMode" in body:
        controller.set_selection_mode(body["selectionMode"])
    if "university" in body:
        university = body["university"] or {}
        controller.select_university(university.get("id"), university.get("name"))
    if "stateCode" in body:
        controller.select_state(body["stateCode"])
    if body.get("notApplicable"):
        controller.set_not_applicable()
    if "party" in body:
        party = body["party"] or {}
        issue = controller.update_party(int(party.get("index", 0)), str(party.get("value", "")))
        if issue:
            issues["party"] = issue.to_dict()
    if body.get("addParty"):
        controller.add_party()
    if "removeParty" in body:
        controller.remove_party(int(body["removeParty"]))
    if "addContact" in body:
        controller.add_contact(str(body["addContact"]))
    if "toggleAct" in body:
        controller.toggle_act(str(body["toggleAct"]))
    if "duration" in body:
        duration = body["duration"]
        if duration is None:
            controller.clear_duration()
        else:
            start = coerce_dt(duration.get("start"))
            if start is None:
                raise ValueError("duration.start must be an ISO-8601 timestamp")
            minutes = duration.get("minutes")
            controller.set_duration(start, int(minutes) if minutes is not None else None)
    if "method" in body:
        controller.set_method(body["method"])
    if "methodPayload" in body:
        controller.set_method_payload(**(body["methodPayload"] or {}))
    if "contractText" in body:
        controller.update_state(contract_text=body["contractText"])

    result = flow_json(controller)
    result["field_issues"] = issues
    return jsonify(result)


@app.route("/api/flow/reset", methods=["POST"])
def reset_flow():
    controller = controller_for(current_user_id())
    controller.reset_state()
    return jsonify(flow_json(controller))


@app.route("/api/flow/reset-if-stale", methods=["POST"])
def reset_flow_if_stale():
    controller = controller_for(current_user_id())
    was_reset = controller.reset_if_stale()
    result = flow_json(controller)
    result["was_reset"] = was_reset
    return jsonify(result)


@app.route("/api/flow/next", methods=["POST"])
def next_step():
    controller = controller_for(current_user_id())
    target = controller.next()
    result = flow_json(controller)
    result["navigation"] = target.to_dict()
    return jsonify(result), (200 if target.kind != "blocked" else 422)


@app.route("/api/flow/back", methods=["POST"])
def previous_step():
    controller = controller_for(current_user_id())
    controller.back()
    return jsonify(flow_json(controller))


@app.route("/api/flow/draft", methods=["POST"])
def save_draft():
    controller = controller_for(current_user_id())
    contract = controller.save_draft(_services()["lifecycle"])
    return jsonify({"contract": contract_json(contract), "flow": flow_json(controller)})


@app.route("/api/flow/share", methods=["POST"])
def share_flow():
    controller = controller_for(current_user_id())
    body = _body()
    svc = _services()
    result = controller.share_draft(
        svc["lifecycle"],
        svc["collaboration"],
        recipient_user_id=body.get("recipientUserId"),
        recipient_email=body.get("recipientEmail"),
    )
    return jsonify({"share": result.to_dict(), "flow": flow_json(controller)}), 201


@app.route("/api/flow/finalize", methods=["POST"])
def finalize_flow():
    controller = controller_for(current_user_id())
    contract = controller.finalize_contract(_services()["lifecycle"])
    return jsonify({"contract": contract_json(contract), "flow": flow_json(controller)}), 201


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


@app.route("/api/contracts")
def list_contracts():
    user_id = current_user_id()
    contracts = _services()["store"].list_contracts(user_id)
    return jsonify({"contracts": [contract_json(c) for c in contracts]})


@app.route("/api/contracts/<contract_id>")
def get_contract(contract_id: str):
    contract, collaborators = require_contract_access(contract_id, current_user_id())
    result = contract_json(contract)
    result["collaborators"] = [c.to_dict() for c in collaborators]
    return jsonify(result)


@app.route("/api/contracts/<contract_id>/share", methods=["POST"])
def share_contract(contract_id: str):
    user_id = current_user_id()
    body = _body()
    collaboration: CollaborationManager = _services()["collaboration"]
    if body.get("recipientUserId"):
        result = collaboration.share_with_user(contract_id, user_id, body["recipientUserId"])
    elif body.get("recipientEmail"):
        result = collaboration.share_with_email(
            contract_id, user_id, body["recipientEmail"], sender_email=body.get("senderEmail")
        )
    else:
        raise ValueError("recipientUserId or recipientEmail is required")
    return jsonify(result.to_dict()), 201


@app.route("/api/contracts/<contract_id>/<action>", methods=["POST"])
def contract_action(contract_id: str, action: str):
    """pause | resume | revoke | confirm-consent"""
    user_id = current_user_id()
    svc = _services()
    if action == "pause":
        contract = svc["lifecycle"].pause(contract_id, user_id)
    elif action == "resume":
        contract = svc["lifecycle"].resume(contract_id, user_id)
    elif action == "revoke":
        contract = svc["lifecycle"].revoke(contract_id, user_id, reason=_body().get("reason"))
    elif action == "confirm-consent":
        contract = svc["collaboration"].confirm_consent(contract_id, user_id)
    else:
        return _error(f"Unknown action: {action}", "NOT_FOUND", 404)
    return jsonify(contract_json(contract))


@app.route("/api/contracts/<contract_id>/collaborators")
def list_collaborators(contract_id: str):
    _, collaborators = require_contract_access(contract_id, current_user_id())
    return jsonify({"collaborators": [c.to_dict() for c in collaborators]})


# ---------------------------------------------------------------------------
# Invitations and collaborators
# ---------------------------------------------------------------------------


@app.route("/api/invitations/<code>")
def get_invitation(code: str):
    invitation = _services()["collaboration"].get_invitation(code)
    return jsonify(invitation.to_dict())


@app.route("/api/invitations/<code>/accept", methods=["POST"])
def accept_invitation(code: str):
    collaborator = _services()["collaboration"].accept_invitation(code, current_user_id())
    return jsonify(collaborator.to_dict()), 201


@app.route("/api/collaborators/<collaborator_id>/approve", methods=["POST"])
def approve_collaborator(collaborator_id: str):
    collaborator = _services()["collaboration"].approve(collaborator_id, current_user_id())
    return jsonify(collaborator.to_dict())


@app.route("/api/collaborators/<collaborator_id>/reject", methods=["POST"])
def reject_collaborator(collaborator_id: str):
    collaborator = _services()["collaboration"].reject(
        collaborator_id, current_user_id(), reason=_body().get("reason")
    )
    return jsonify(collaborator.to_dict())


# ---------------------------------------------------------------------------
# Amendments
# ---------------------------------------------------------------------------


@app.route("/api/contracts/<contract_id>/amendments")
def list_amendments(contract_id: str):
    views = _services()["amendments"].list_for_contract(contract_id, current_user_id())
    return jsonify({"amendments": [v.to_dict() for v in views]})


@app.route("/api/contracts/<contract_id>/amendments", methods=["POST"])
def propose_amendment(contract_id: str):
    body = _body()
    if not body.get("amendmentType") or body.get("changes") is None:
        raise ValueError("amendmentType and changes are required")
    amendment = _services()["amendments"].propose(
        contract_id,
        current_user_id(),
        body["amendmentType"],
        body["changes"],
        reason=body.get("reason"),
    )
    return jsonify(amendment.to_dict()), 201


@app.route("/api/amendments/<amendment_id>/approve", methods=["POST"])
def approve_amendment(amendment_id: str):
    amendment = _services()["amendments"].approve(amendment_id, current_user_id())
    return jsonify(amendment.to_dict())


@app.route("/api/amendments/<amendment_id>/reject", methods=["POST"])
def reject_amendment(amendment_id: str):
    amendment = _services()["amendments"].reject(
        amendment_id, current_user_id(), reason=_body().get("reason")
    )
    return jsonify(amendment.to_dict())


# ---------------------------------------------------------------------------
# Notifications and interpreter
# ---------------------------------------------------------------------------


@app.route("/api/notifications")
def list_notifications():
    unread_only = request.args.get("unread") in {"1", "true", "yes"}
    notifications = _services()["store"].list_notifications(current_user_id(), unread_only=unread_only)
    return jsonify({"notifications": [n.to_dict() for n in notifications]})


@app.route("/api/consent/interpret-custom-text", methods=["POST"])
def interpret_text():
    current_user_id()
    body = _body()
    result = interpret_custom_text(body.get("text", ""), body.get("context", ""))
    return jsonify(result.to_dict())


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
    db_path: Optional[str] = None,
) -> None:
    """Run the Flask API server."""
    init_services(db_path)
    app.run(host=host, port=port, debug=debug, threaded=False)
