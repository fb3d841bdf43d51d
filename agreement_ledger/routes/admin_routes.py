# -*- coding: utf-8 -*-
"""Owner-only agreement administration."""

from datetime import datetime, timezone
from functools import wraps

from flask import Blueprint, request, current_app
from flask_login import login_required, current_user

from agreement_ledger.exceptions import ValidationError
from agreement_ledger.legal import AgreementType
from agreement_ledger.services import acceptance_ledger, consent_service, member_state, version_store
from agreement_ledger.utils.http_helpers import api_ok, api_error, get_json_object, is_owner_user, log_rejection
from agreement_ledger.utils.transactions import unit_of_work

bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def owner_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        if not is_owner_user():
            log_rejection("forbidden", "owner-only endpoint")
            return api_error("forbidden", "Owner access required", status=403)
        return view(*args, **kwargs)
    return wrapper


def parse_effective_date(raw):
    if not raw or not str(raw).strip():
        return None
    try:
        return datetime.fromisoformat(str(raw).strip())
    except ValueError:
        current_app.logger.warning("[ADMIN] could not parse effective date %r; using current time", raw)
        return None


@bp.route("/agreements", methods=["GET"])
@login_required
@owner_required
def list_agreements():
    raw_type = request.args.get("type")
    if raw_type:
        limit = request.args.get("limit", default=20, type=int)
        versions = version_store.version_history(AgreementType.parse(raw_type), limit)
    else:
        versions = version_store.list_versions()
    return api_ok({"versions": [v.to_dict() for v in versions]})


@bp.route("/agreements", methods=["POST"])
@login_required
@owner_required
def update_agreement():
    """
    Rotate in new agreement text.

    Payload:
    {
      "agreement_type": "USER",
      "agreement_text": "...",
      "version": "2026-03-01",          # optional, generated from the clock when omitted
      "effective_date": "2026-03-01T00:00:00",  # optional ISO timestamp
      "change_description": "..."       # optional
    }
    """
    data = get_json_object()
    agreement_type = AgreementType.parse(data.get("agreement_type"))
    new_version = consent_service.create_version(
        agreement_type,
        data.get("version"),
        data.get("agreement_text"),
        current_user.email,
        effective_date=parse_effective_date(data.get("effective_date")),
        change_description=data.get("change_description"),
    )
    return api_ok({"version": new_version.to_dict()}, status=201)


@bp.route("/agreements/<agreement_type>/stats", methods=["GET"])
@login_required
@owner_required
def agreement_stats(agreement_type):
    agreement_type = AgreementType.parse(agreement_type)
    return api_ok({"agreement_type": agreement_type.value, **acceptance_ledger.audit_statistics(agreement_type)})


def parse_window_bound(field):
    raw = (request.args.get(field) or "").strip()
    if not raw:
        raise ValidationError(f"Query parameter '{field}' is required", field=field, code="missing_field")
    try:
        value = datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"'{field}' must be an ISO timestamp", field=field, code="invalid_timestamp") from None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@bp.route("/agreements/<agreement_type>/acceptances", methods=["GET"])
@login_required
@owner_required
def acceptances_in_window(agreement_type):
    """Acceptances recorded in [from, to), newest first."""
    agreement_type = AgreementType.parse(agreement_type)
    start = parse_window_bound("from")
    end = parse_window_bound("to")
    if end <= start:
        raise ValidationError("'to' must be later than 'from'", field="to", code="invalid_window")
    records = acceptance_ledger.acceptances_between(agreement_type, start, end)
    return api_ok({
        "agreement_type": agreement_type.value,
        "from": start.isoformat(),
        "to": end.isoformat(),
        "records": [r.to_dict() for r in records],
    })


@bp.route("/records/<int:record_id>/verify", methods=["GET"])
@login_required
@owner_required
def verify_record(record_id):
    return api_ok({"record_id": record_id, "valid": acceptance_ledger.verify_record_integrity(record_id)})


@bp.route("/members/<int:member_id>/reconcile", methods=["POST"])
@login_required
@owner_required
def reconcile_member(member_id):
    with unit_of_work("reconcile"):
        changed = member_state.reconcile_member(member_id)
    return api_ok({"member_id": member_id, "changed": changed})
