# -*- coding: utf-8 -*-
"""Agreement acceptance routes blueprint."""

from flask import Blueprint, request, current_app
from flask_login import login_required, current_user

from agreement_ledger.legal import AgreementType, parse_legal_confirm
from agreement_ledger.services import consent_service
from agreement_ledger.utils.http_helpers import api_ok, api_error, build_consent_context, get_json_object, log_rejection

bp = Blueprint("legal", __name__)


@bp.route("/api/agreements/<agreement_type>/current", methods=["GET"])
def current_agreement(agreement_type):
    """Current active version and exact text, so the client shows what is being accepted."""
    return api_ok(consent_service.get_current_version(AgreementType.parse(agreement_type)))


@bp.route("/api/agreements/verify-hash", methods=["POST"])
def verify_agreement_hash():
    """
    Payload:
    {
      "agreementType": "ORGANISER",
      "agreementText": "...",
      "agreementHash": "sha256_..."
    }
    """
    data = get_json_object()
    agreement_text = data.get("agreementText")
    provided_hash = data.get("agreementHash")
    agreement_type = data.get("agreementType")
    if agreement_text is None or provided_hash is None or agreement_type is None:
        return api_error(
            "missing_fields",
            "Missing required fields: agreementText, agreementHash, agreementType",
            status=400,
        )
    valid = consent_service.verify_integrity(AgreementType.parse(agreement_type), agreement_text, provided_hash)
    return api_ok({
        "valid": valid,
        "message": "Agreement integrity verified" if valid else "Agreement hash mismatch - possible tampering detected",
    })


@bp.route("/api/legal/<agreement_type>/accept", methods=["POST"])
@login_required
def accept_agreement(agreement_type):
    """
    Accept the active version of an agreement.

    Payload:
    {
      "legal_confirm": true,
      "agreement_text": "...",        # optional, verified against the active version
      "agreement_hash": "sha256_...", # optional, required when agreement_text is sent
      "session_id": "...", "referrer_url": "...", "browser_fingerprint": "..."  # optional audit fields
    }
    """
    agreement_type = AgreementType.parse(agreement_type)
    data = get_json_object()
    if not parse_legal_confirm(data.get("legal_confirm")):
        log_rejection("validation", f"{agreement_type.value} accept without legal_confirm")
        return api_error("TERMS_NOT_ACCEPTED", f"Please accept the {agreement_type.display_name} to continue.", status=412)

    if data.get("agreement_text") is not None or data.get("agreement_hash") is not None:
        consent_service.require_integrity(agreement_type, data.get("agreement_text"), data.get("agreement_hash"))

    record = consent_service.accept_agreement(agreement_type, current_user.id, build_consent_context(data))
    current_app.logger.info(
        "[LEGAL] member_id=%s accepted %s version=%s record=%s",
        current_user.id,
        agreement_type.value,
        record.agreement_version,
        record.id,
    )
    return api_ok({
        "agreement_type": agreement_type.value,
        "version": record.agreement_version,
        "record": record.to_dict(),
    })


@bp.route("/api/legal/<agreement_type>/status", methods=["GET"])
@login_required
def acceptance_status(agreement_type):
    agreement_type = AgreementType.parse(agreement_type)
    state = consent_service.consent_state(agreement_type, current_user.id)
    return api_ok({
        "agreement_type": agreement_type.value,
        "has_accepted": state.authorizes,
        "state": state.value,
    })


@bp.route("/api/legal/<agreement_type>/withdraw", methods=["POST"])
@login_required
def withdraw_agreement(agreement_type):
    agreement_type = AgreementType.parse(agreement_type)
    data = get_json_object()
    entry = consent_service.withdraw_consent(
        agreement_type,
        current_user.id,
        data.get("reason"),
        build_consent_context(data),
    )
    return api_ok({"agreement_type": agreement_type.value, "withdrawal": entry.to_dict()})


@bp.route("/api/legal/audit-trail", methods=["GET"])
@login_required
def audit_trail():
    raw_type = request.args.get("type")
    agreement_type = AgreementType.parse(raw_type) if raw_type else None
    records = consent_service.get_audit_trail(current_user.id, agreement_type)
    return api_ok({"records": [r.to_dict() for r in records]})
