"""
HTTP routes for the Payer Data Broker.

Staff endpoints (Bearer INTERNAL_API_TOKEN + X-User-Id):
- POST /api/insurance-authorizations - Request patient consent
- GET  /api/patients/<id>/insurance-authorizations - List a patient's authorizations
- POST /api/insurance-authorizations/<id>/resend - Resend the consent link
- POST /api/insurance-authorizations/<id>/revoke - Revoke an authorized grant
- GET  /api/patients/<id>/insurance-data - Cached data within the active grant
- GET  /api/patients/<id>/insurance-data/<type> - One data type, fetched if not cached
- POST /api/patients/<id>/insurance-data/refresh - Force refresh from the payer
- GET  /api/patients/<id>/disclosures - Accounting of disclosures
- GET  /api/audit - Audit log query
- GET  /api/audit/integrity - Verify the audit hash chain
- GET  /api/payers - Configured payer integrations
- POST /api/payers - Create or update a payer integration
- PUT  /api/payers/<code>/credentials - Store or rotate a practice's credentials
- GET  /api/payers/health - Check every payer adapter
- POST /api/payers/<code>/health-check - Check one payer adapter

Patient endpoints (no auth, the link token is the credential):
- GET  /api/authorize/<token> - Consent page data
- POST /api/authorize/<token> - Authorize or deny

Views are plain Flask views; every service coroutine runs on the single
service loop through `_run`.
"""

import hmac
import json
import logging
from functools import wraps
from typing import List, Optional
from uuid import UUID

from flask import Blueprint, current_app, g, jsonify, request
from pydantic import ValidationError

from .audit import RESOURCE_PATIENT
from .exceptions import AuthorizationError
from .schemas import (
    Actor,
    ActorType,
    AuditEventType,
    AuditQuery,
    AuthorizationRequest,
    CredentialRequest,
    CredentialSummary,
    DataType,
    FetchOptions,
    PayerIntegrationRequest,
)
from .utils import ensure_aware

logger = logging.getLogger(__name__)

bp = Blueprint("payer_broker", __name__, url_prefix="/api")

EXTENSION_KEY = "payer_broker"


def _services():
    return current_app.extensions[EXTENSION_KEY]


def _run(coro):
    return _services().run(coro)


def _client_actor(actor_type: ActorType, actor_id: Optional[str] = None) -> Actor:
    return Actor(
        actor_type=actor_type,
        actor_id=actor_id,
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )


def _parse_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(value)
    except ValueError:
        return None


def _parse_types(raw) -> List[DataType]:
    """Accept 'a,b' or ['a', 'b']; unknown names are dropped."""
    if raw is None:
        return list(DataType)
    if isinstance(raw, str):
        raw = raw.split(",")
    types = []
    for value in raw:
        try:
            types.append(DataType(str(getattr(value, "value", value)).strip()))
        except ValueError:
            continue
    return types


def staff_required(view):
    """Require the internal Bearer token and an X-User-Id header."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = _services().settings.internal_api_token
        auth_header = request.headers.get("Authorization", "")
        if not expected or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Unauthorized"}), 401
        if not hmac.compare_digest(auth_header[7:].encode(), expected.encode()):
            return jsonify({"error": "Unauthorized"}), 401

        user_id = (request.headers.get("X-User-Id") or "").strip()
        if not user_id:
            return jsonify({"error": "X-User-Id header is required"}), 401

        g.actor = _client_actor(ActorType.USER, user_id)
        return view(*args, **kwargs)

    return wrapper


@bp.errorhandler(AuthorizationError)
def handle_authorization_error(error: AuthorizationError):
    return jsonify(error.to_dict()), error.http_status


@bp.errorhandler(ValidationError)
def handle_validation_error(error: ValidationError):
    return jsonify({"error": "Invalid request", "details": json.loads(error.json(include_url=False))}), 400


# =============================================================================
# Authorizations (staff)
# =============================================================================

@bp.route("/insurance-authorizations", methods=["POST"])
@staff_required
def create_authorization():
    """Create a pending authorization and send the patient a consent link."""
    data = request.get_json(silent=True) or {}
    auth_request = AuthorizationRequest.model_validate(data)

    services = _services()
    authorization = _run(services.workflow.create_authorization(auth_request, g.actor))
    summary = services.workflow.summarize(authorization)

    return jsonify({
        "ok": True,
        "authorization": summary.model_dump(mode="json"),
        "notification_sent": authorization.notification_sent,
    }), 201


@bp.route("/patients/<patient_id>/insurance-authorizations", methods=["GET"])
@staff_required
def list_authorizations(patient_id):
    pid = _parse_uuid(patient_id)
    if pid is None:
        return jsonify({"error": "Invalid patient ID"}), 400

    summaries = _run(_services().workflow.list_patient_authorizations(pid))
    return jsonify({"authorizations": [item.model_dump(mode="json") for item in summaries]})


@bp.route("/insurance-authorizations/<authorization_id>/resend", methods=["POST"])
@staff_required
def resend_authorization(authorization_id):
    aid = _parse_uuid(authorization_id)
    if aid is None:
        return jsonify({"error": "Invalid authorization ID"}), 400

    authorization = _run(_services().workflow.resend_authorization(aid, g.actor))
    return jsonify({
        "ok": True,
        "resend_count": authorization.resend_count,
        "token_expires_at": authorization.token_expires_at.isoformat(),
    })


@bp.route("/insurance-authorizations/<authorization_id>/revoke", methods=["POST"])
@staff_required
def revoke_authorization(authorization_id):
    aid = _parse_uuid(authorization_id)
    if aid is None:
        return jsonify({"error": "Invalid authorization ID"}), 400

    data = request.get_json(silent=True) or {}
    authorization = _run(_services().workflow.revoke_authorization(aid, g.actor, data.get("reason")))
    return jsonify({
        "ok": True,
        "status": authorization.status.value,
        "revoked_at": authorization.revoked_at.isoformat(),
        "revoked_reason": authorization.revoked_reason,
    })


# =============================================================================
# Consent link (patient)
# =============================================================================

@bp.route("/authorize/<token>", methods=["GET"])
def view_authorization(token):
    view = _run(_services().workflow.view_authorization(token, _client_actor(ActorType.PATIENT)))
    return jsonify(view.model_dump(mode="json"))


@bp.route("/authorize/<token>", methods=["POST"])
def submit_decision(token):
    data = request.get_json(silent=True) or {}
    authorization = _run(_services().workflow.submit_decision(
        token,
        str(data.get("decision") or ""),
        _client_actor(ActorType.PATIENT),
        signature=data.get("signature"),
    ))
    return jsonify({"ok": True, "status": authorization.status.value})


# =============================================================================
# Insurance data (staff)
# =============================================================================

def _requires_authorization():
    return jsonify({
        "error": "No active insurance authorization for this patient",
        "requiresAuthorization": True,
    }), 403


def _load_patient_grant(patient_id: str):
    """(patient, active grant, error response); exactly one of grant/error is set."""
    pid = _parse_uuid(patient_id)
    if pid is None:
        return None, None, (jsonify({"error": "Invalid patient ID"}), 400)

    services = _services()
    patient = _run(services.store.get_patient(pid))
    if patient is None:
        return None, None, (jsonify({"error": "Patient not found"}), 404)

    grant = _run(services.workflow.get_active_authorization(pid))
    if grant is None:
        return patient, None, _requires_authorization()
    return patient, grant, None


def _grant_json(grant) -> dict:
    return {
        "id": str(grant.id),
        "status": grant.status.value,
        "scopes": [scope.value for scope in grant.scopes],
        "expires_at": grant.expires_at.isoformat() if grant.expires_at else None,
        "authorized_at": grant.consent_given_at.isoformat() if grant.consent_given_at else None,
    }


@bp.route("/patients/<patient_id>/insurance-data", methods=["GET"])
@staff_required
def get_insurance_data(patient_id):
    """Cached insurance data, limited to the active grant's scopes. Never calls a payer."""
    patient, grant, error = _load_patient_grant(patient_id)
    if error is not None:
        return error

    services = _services()
    requested = [t for t in _parse_types(request.args.get("types")) if grant.has_scope(t)]
    entries = _run(services.broker.get_cached_data_for_patient(patient.id, requested))
    now = services.clock()

    data = {}
    for data_type, entry in entries.items():
        data[data_type.value] = {
            "data": entry.normalized_data,
            "cached_at": entry.fetched_at.isoformat(),
            "expires_at": entry.expires_at.isoformat(),
            "is_stale": entry.is_stale or ensure_aware(entry.expires_at) <= now,
        }

    _run(services.audit.record(
        AuditEventType.DATA_ACCESSED,
        resource_type=RESOURCE_PATIENT,
        resource_id=patient.id,
        actor=g.actor,
        practice_id=patient.practice_id,
        patient_id=patient.id,
        authorization_id=grant.id,
        details={
            "cached": True,
            "requested_types": [t.value for t in requested],
            "returned_types": sorted(data),
        },
    ))

    return jsonify({"patient_id": str(patient.id), "authorization": _grant_json(grant), "data": data})


@bp.route("/patients/<patient_id>/insurance-data/refresh", methods=["POST"])
@staff_required
def refresh_insurance_data(patient_id):
    patient, grant, error = _load_patient_grant(patient_id)
    if error is not None:
        return error

    services = _services()
    body = request.get_json(silent=True) or {}
    requested = [t for t in _parse_types(body.get("types") or grant.scopes) if grant.has_scope(t)]

    options = FetchOptions(force_refresh=True)
    results = {}
    for data_type in requested:
        result = _run(services.broker.fetch_insurance_data(grant, data_type, options, g.actor))
        results[data_type.value] = result.model_dump(mode="json", exclude={"data_type"})

    succeeded = sorted(name for name, result in results.items() if result["success"])
    _run(services.audit.record(
        AuditEventType.DATA_REFRESHED,
        resource_type=RESOURCE_PATIENT,
        resource_id=patient.id,
        actor=g.actor,
        practice_id=patient.practice_id,
        patient_id=patient.id,
        authorization_id=grant.id,
        details={"refreshed": succeeded, "failed": sorted(set(results) - set(succeeded))},
        success=len(succeeded) == len(results),
    ))

    return jsonify({"ok": True, "refreshed": succeeded, "results": results})


@bp.route("/patients/<patient_id>/insurance-data/<data_type>", methods=["GET"])
@staff_required
def get_insurance_data_type(patient_id, data_type):
    """One data type: served from cache when fresh, fetched from the payer otherwise."""
    try:
        requested = DataType(data_type)
    except ValueError:
        return jsonify({"error": "Invalid data type"}), 400

    patient, grant, error = _load_patient_grant(patient_id)
    if error is not None:
        return error
    if not grant.has_scope(requested):
        return jsonify({"error": f"Data type '{requested.value}' is not authorized for this patient"}), 403

    result = _run(_services().broker.fetch_insurance_data(grant, requested, actor=g.actor))
    body = result.model_dump(mode="json")
    if not result.success:
        body["message"] = "Failed to retrieve insurance data from payer"
        return jsonify(body), 502
    return jsonify(body)


# =============================================================================
# Audit (staff)
# =============================================================================

@bp.route("/patients/<patient_id>/disclosures", methods=["GET"])
@staff_required
def get_disclosures(patient_id):
    pid = _parse_uuid(patient_id)
    if pid is None:
        return jsonify({"error": "Invalid patient ID"}), 400

    services = _services()
    patient = _run(services.store.get_patient(pid))
    if patient is None:
        return jsonify({"error": "Patient not found"}), 404

    entries = _run(services.audit.accounting_of_disclosures(
        RESOURCE_PATIENT, pid, actor=g.actor, practice_id=patient.practice_id
    ))
    return jsonify({"patient_id": str(pid), "disclosures": [e.model_dump(mode="json") for e in entries]})


@bp.route("/audit", methods=["GET"])
@staff_required
def query_audit_log():
    query = AuditQuery.model_validate({
        key: value for key, value in request.args.items()
        if key in AuditQuery.model_fields
    })
    entries = _run(_services().audit.query(query))
    return jsonify({"entries": [e.model_dump(mode="json") for e in entries]})


@bp.route("/audit/integrity", methods=["GET"])
@staff_required
def verify_audit_integrity():
    report = _run(_services().audit.verify_integrity())
    return jsonify(report.model_dump(mode="json"))


# =============================================================================
# Payers (staff)
# =============================================================================

@bp.route("/payers", methods=["GET"])
@staff_required
def list_payers():
    services = _services()
    integrations = _run(services.store.list_payer_integrations())
    available = set(services.registry.get_available_payers())
    return jsonify({
        "payers": [
            {**integration.model_dump(mode="json"), "adapter_available": integration.payer_code in available}
            for integration in integrations
        ]
    })


@bp.route("/payers/health", methods=["GET"])
@staff_required
def payer_health():
    results = _run(_services().broker.check_all_payer_health())
    return jsonify({code: result.model_dump(mode="json") for code, result in results.items()})


@bp.route("/payers", methods=["POST"])
@staff_required
def configure_payer():
    """Create or update the integration row for a payer code."""
    payer_request = PayerIntegrationRequest.model_validate(request.get_json(silent=True) or {})
    integration = _run(_services().admin.configure_payer(payer_request, g.actor))
    return jsonify({"ok": True, "payer": integration.model_dump(mode="json")})


@bp.route("/payers/<payer_code>/credentials", methods=["PUT"])
@staff_required
def store_payer_credentials(payer_code):
    """Store or rotate a practice's credentials. The response never echoes the secret."""
    credential_request = CredentialRequest.model_validate(request.get_json(silent=True) or {})
    credential = _run(_services().admin.store_credentials(payer_code, credential_request, g.actor))
    return jsonify({"ok": True, "credential": CredentialSummary.model_validate(credential).model_dump(mode="json")})


@bp.route("/payers/<payer_code>/health-check", methods=["POST"])
@staff_required
def check_payer_health(payer_code):
    result = _run(_services().broker.check_payer_health(payer_code))
    if result is None:
        return jsonify({"error": "Unknown payer"}), 404
    return jsonify(result.model_dump(mode="json"))
