# -*- coding: utf-8 -*-
"""HTTP helper functions for routes."""

from typing import Optional, Mapping, Any, Dict
from flask import jsonify, g, current_app, request
from flask_login import current_user

from agreement_ledger.exceptions import ValidationError
from agreement_ledger.legal import ConsentContext, MAX_USER_AGENT_LENGTH, normalize_legal_ip, optional_string


def get_request_id() -> str:
    """Get the current request_id from Flask g object."""
    return getattr(g, 'request_id', 'unknown')


def api_ok(payload: Optional[dict] = None, status: int = 200, request_id: Optional[str] = None):
    """Standard API success response."""
    rid = request_id or get_request_id()
    resp = jsonify({"ok": True, "data": payload, "request_id": rid})
    resp.status_code = status
    resp.headers["X-Request-ID"] = rid
    return resp


def api_error(code: str, message: str, status: int = 400, details: Optional[Mapping[str, Any]] = None, request_id: Optional[str] = None):
    """Standard API error response."""
    rid = request_id or get_request_id()
    body: Dict[str, Any] = {"ok": False, "error": {"code": code, "message": message}, "request_id": rid}
    if details is not None:
        body["error"]["details"] = details
    resp = jsonify(body)
    resp.status_code = status
    resp.headers["X-Request-ID"] = rid
    return resp


def get_json_object() -> Dict[str, Any]:
    """Request JSON body as a dict; an absent or unparsable body is empty, a non-object body is rejected."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object", field="payload", code="invalid_payload")
    return data


def parse_owner_emails(raw: str) -> list:
    """
    Normalize OWNER_EMAILS env var into a clean, lowercase list.
    """
    return [
        item.strip().lower()
        for item in (raw or "").split(",")
        if item and item.strip()
    ]


def is_owner_user() -> bool:
    """Check if current user is an owner (uses app.config['OWNER_EMAILS'])."""
    if not current_user.is_authenticated:
        return False
    email = (getattr(current_user, "email", "") or "").lower()
    owner_emails = current_app.config.get('OWNER_EMAILS', set())
    return email in owner_emails


def get_client_ip() -> str:
    xff = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip() if request else ""
    ip = xff or (request.remote_addr or "")
    return ip[:64] if ip else "unknown"


def build_consent_context(data: Optional[Mapping[str, Any]] = None) -> ConsentContext:
    """
    Collect audit metadata for a consent event from the request.
    Body fields win over headers; the IP is reduced only when LEGAL_IP_MODE=normalized.
    """
    data = data or {}
    raw_ip = get_client_ip()
    if current_app.config.get("LEGAL_IP_MODE") == "normalized":
        raw_ip = normalize_legal_ip(raw_ip)
    user_agent = optional_string(data.get("user_agent"), "user_agent") or request.headers.get("User-Agent") or ""
    return ConsentContext(
        ip_address=raw_ip,
        user_agent=user_agent[:MAX_USER_AGENT_LENGTH] or None,
        session_id=optional_string(data.get("session_id"), "session_id") or None,
        referrer_url=optional_string(data.get("referrer_url"), "referrer_url") or request.headers.get("Referer") or None,
        browser_fingerprint=optional_string(data.get("browser_fingerprint"), "browser_fingerprint") or None,
    )


def log_rejection(reason: str, details: str = "") -> None:
    """
    Safely log rejection reasons without exposing sensitive data.

    Args:
        reason: Short category (unauthenticated, validation, not_found, conflict, integrity)
        details: Safe description of the issue (no secrets or DB details)
    """
    user_id = current_user.id if current_user.is_authenticated else "anonymous"
    endpoint = request.endpoint or "unknown"
    request_id = get_request_id()
    current_app.logger.warning(f"[REJECT] request_id={request_id} endpoint={endpoint} user={user_id} reason={reason} details={details}")
