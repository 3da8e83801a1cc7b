import logging
import os
from dataclasses import dataclass
from typing import Any

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

import settings
from document_store import DocumentStore
from elections import ElectionLifecycleManager
from errors import AuthorizationError, ElectionError, LedgerUnavailable
from identity import IdentityResolver
from ledger import LedgerClient
from schemas import (
    CreateElectionRequest,
    LoginRequest,
    RegisterRequest,
    UpdateElectionRequest,
    ValidateVotersRequest,
    VoteRequest,
)
from session_utils import create_session_token, verify_session_token

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)


@dataclass
class Services:
    store: Any
    identity: IdentityResolver
    elections: ElectionLifecycleManager
    ledger: LedgerClient | None = None
    ledger_error: str | None = None


def build_services() -> Services:
    store = DocumentStore()
    ledger: LedgerClient | None = None
    ledger_error: str | None = None
    try:
        ledger = LedgerClient()
    except LedgerUnavailable as exc:
        ledger_error = exc.message
        logger.error("Blockchain client unavailable: %s", ledger_error)
    identity = IdentityResolver(store, ledger)
    return Services(
        store=store,
        identity=identity,
        elections=ElectionLifecycleManager(store, identity, ledger),
        ledger=ledger,
        ledger_error=ledger_error,
    )


def _services() -> Services:
    return current_app.extensions["election_services"]


def _extract_session() -> dict[str, Any]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise AuthorizationError("Missing bearer session token")
    token = auth_header.split(" ", 1)[1].strip()
    try:
        return verify_session_token(token)
    except ValueError as exc:
        raise AuthorizationError(str(exc)) from exc


def _require_organizer(session: dict[str, Any]) -> None:
    if not session.get("isOrganizer"):
        raise AuthorizationError()


def _body(schema: type[BaseModel]) -> Any:
    return schema.model_validate(request.get_json(silent=True) or {})


@api.app_errorhandler(ElectionError)
def handle_election_error(exc: ElectionError):
    return jsonify({"error": exc.message}), exc.status_code


@api.app_errorhandler(SchemaError)
def handle_schema_error(exc: SchemaError):
    details = [{"loc": [str(part) for part in err["loc"]], "msg": err["msg"]} for err in exc.errors()]
    return jsonify({"error": "Invalid request", "details": details}), 400


@api.route("/api/register", methods=["POST"])
def register():
    data = _body(RegisterRequest)
    user = _services().identity.register(data.name, data.email, data.password, data.isOrganizer)
    return jsonify({"message": "User successfully registered", "userID": user.uid})


@api.route("/api/login", methods=["POST"])
def login():
    data = _body(LoginRequest)
    user = _services().identity.authenticate(data.email, data.password)
    session_token = create_session_token(uid=user.uid, is_organizer=user.is_organizer)
    return jsonify({"message": "Login successful", "session_token": session_token, "isOrganizer": user.is_organizer})


@api.route("/api/logout", methods=["GET"])
def logout():
    # bearer tokens are stateless; the client drops its copy
    return jsonify({"message": "logged out"})


@api.route("/api/user/info", methods=["GET"])
def user_info():
    session = _extract_session()
    user = _services().identity.require_user(session["uid"])
    return jsonify(user.info())


@api.route("/api/election/create", methods=["POST"])
def create_election():
    session = _extract_session()
    _require_organizer(session)
    data = _body(CreateElectionRequest)
    election_id = _services().elections.create_draft(
        session["uid"],
        data.electionName,
        data.candidates,
        data.startTime,
        data.endTime,
        data.validVoters,
    )
    return jsonify({"electionID": election_id})


@api.route("/api/election", methods=["GET"], strict_slashes=False)
def list_elections():
    session = _extract_session()
    bucket = request.args.get("bucket") or request.args.get("time") or ""
    elections = _services().elections.list_for_user(session["uid"], bool(session.get("isOrganizer")), bucket)
    return jsonify(elections)


@api.route("/api/election/<election_id>", methods=["GET"])
def get_election(election_id: str):
    session = _extract_session()
    view = _services().elections.get_view(election_id, session["uid"], bool(session.get("isOrganizer")))
    return jsonify(view)


@api.route("/api/election/<election_id>/vote", methods=["PUT"])
def vote(election_id: str):
    session = _extract_session()
    if session.get("isOrganizer"):
        raise AuthorizationError()
    data = _body(VoteRequest)
    tx_id = _services().elections.cast_vote(election_id, session["uid"], False, data.candidateID)
    return jsonify({"transactionHash": tx_id})


@api.route("/api/election/<election_id>/validate", methods=["PUT"])
def validate_voters(election_id: str):
    session = _extract_session()
    _require_organizer(session)
    data = _body(ValidateVotersRequest)
    outcome = _services().elections.validate_voters(election_id, session["uid"], data.validVoters)
    return jsonify(
        {
            "invalidVoterIDs": outcome.invalid_ids,
            "ungrantedVoterIDs": outcome.ungranted_ids,
            "grantError": outcome.failure.message if outcome.failure else None,
        }
    )


@api.route("/api/election/<election_id>/deploy", methods=["PUT"])
def deploy(election_id: str):
    session = _extract_session()
    _require_organizer(session)
    result = _services().elections.deploy(election_id, session["uid"])
    return jsonify(result.to_dict())


@api.route("/api/election/<election_id>/update", methods=["PUT"])
def update_election(election_id: str):
    session = _extract_session()
    _require_organizer(session)
    data = _body(UpdateElectionRequest)
    _services().elections.update(election_id, session["uid"], data.model_dump(exclude_none=True))
    return jsonify({"electionID": election_id})


@api.route("/api/election/<election_id>/result", methods=["GET"])
def election_result(election_id: str):
    session = _extract_session()
    return jsonify(_services().elections.get_results(election_id, session["uid"]))


@api.route("/health")
def health():
    services = _services()
    try:
        store_status = "ready" if services.store.ping() else "unavailable"
    except Exception as exc:  # noqa: BLE001
        logger.warning("Document store health check failed: %s", exc)
        store_status = "unavailable"
    return jsonify(
        {
            "status": "ok",
            "document_store": store_status,
            "blockchain_client": "ready" if services.ledger else "unavailable",
            "blockchain_error": services.ledger_error,
        }
    )


def create_app(services: Services | None = None) -> Flask:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    app = Flask(__name__)
    CORS(app, origins=settings.CORS_ORIGINS)
    app.extensions["election_services"] = services or build_services()
    app.register_blueprint(api)
    return app


if __name__ == "__main__":
    application = create_app()
    application.extensions["election_services"].store.ensure_schema()
    application.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=os.getenv("FLASK_DEBUG") == "1")
