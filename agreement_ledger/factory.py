# -*- coding: utf-8 -*-
# ===================================================================
# Agreement Ledger - consent versioning & audit trail
# ===================================================================

import os
import logging
import uuid
import time as pytime
from urllib.parse import urlparse

from flask import Flask, g, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import NotFound, RequestEntityTooLarge
from werkzeug.middleware.proxy_fix import ProxyFix

from agreement_ledger.commands import agreements_cli
from agreement_ledger.exceptions import ConsentError
from agreement_ledger.extensions import db, login_manager, migrate
from agreement_ledger.legal import LEGAL_IP_MODE
from agreement_ledger.models import Member
from agreement_ledger.services import organiser_role
from agreement_ledger.utils.db_bootstrap import ensure_consent_indexes
from agreement_ledger.utils.http_helpers import api_error, get_request_id, log_rejection, parse_owner_emails


@login_manager.user_loader
def load_member(member_id):
    """
    Load member by ID from database.
    If DB connection fails, treat as unauthenticated (return None).
    """
    try:
        return db.session.get(Member, int(member_id))
    except (SQLAlchemyError, ValueError) as e:
        logging.getLogger(__name__).warning("[AUTH] load_member failed: %s", e.__class__.__name__)
        db.session.rollback()
        return None


def create_app():
    app = Flask(__name__)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logger = logging.getLogger(__name__)

    trusted_proxy_count = int(os.environ.get("TRUSTED_PROXY_COUNT", "1"))
    app.wsgi_app = ProxyFix(
        app.wsgi_app,
        x_for=trusted_proxy_count,
        x_proto=trusted_proxy_count,
        x_host=trusted_proxy_count,
        x_prefix=0
    )
    logger.info(f"ProxyFix configured with trusted_proxy_count={trusted_proxy_count}")

    app.config['OWNER_EMAILS'] = set(parse_owner_emails(os.environ.get("OWNER_EMAILS", "")))
    app.config['LEGAL_IP_MODE'] = LEGAL_IP_MODE

    db_url = os.environ.get("DATABASE_URL", "").strip()
    secret_key = os.environ.get("SECRET_KEY", "").strip()

    # Normalize deprecated prefix for SQLAlchemy
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)

    app.config["SQLALCHEMY_DATABASE_URI"] = db_url if db_url else "sqlite:///:memory:"
    app.config["SECRET_KEY"] = secret_key if secret_key else "dev-secret-key-that-is-not-secret"
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["MAX_CONTENT_LENGTH"] = 256 * 1024  # agreement texts are posted whole
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"

    if db_url and "postgresql" in db_url:
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
            "pool_pre_ping": True,
            "pool_recycle": 240,
            "pool_size": 5,
            "max_overflow": 10,
        }

    if not db_url:
        logger.warning("[BOOT] DATABASE_URL not set. Using in-memory sqlite (LOCAL DEV ONLY).")
    else:
        parsed_db_url = urlparse(db_url)
        safe_host = parsed_db_url.hostname or ""
        safe_port = f":{parsed_db_url.port}" if parsed_db_url.port else ""
        safe_db = (parsed_db_url.path or "").lstrip("/")
        logger.info("[DB] DATABASE host=%s%s db=%s", safe_host, safe_port, safe_db or "(default)")
    if not secret_key:
        logger.warning("[BOOT] SECRET_KEY not set. Using dev fallback (LOCAL DEV ONLY).")

    db.init_app(app)
    login_manager.init_app(app)
    migrate.init_app(app, db)
    organiser_role.connect()

    with app.app_context():
        try:
            ensure_consent_indexes(db.engine, logger)
        except SQLAlchemyError:
            logger.exception("[DB] consent index ensure failed")

    @app.before_request
    def assign_request_id():
        if not getattr(g, "request_id", None):
            g.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        g.start_time = pytime.perf_counter()

    @login_manager.unauthorized_handler
    def unauthorized():
        log_rejection("unauthenticated", "Member not logged in, no valid session")
        return api_error("unauthenticated", "Login required", status=401)

    @app.errorhandler(ConsentError)
    def handle_consent_error(e):
        log_rejection(e.code, e.message)
        body = e.to_dict()
        return api_error(body.pop("code"), body.pop("message"), status=e.status, details=body or None)

    @app.errorhandler(SQLAlchemyError)
    def handle_db_error(e):
        db.session.rollback()
        logger.error("[DB] request_id=%s %s: %s", get_request_id(), e.__class__.__name__, e)
        return api_error("db_error", "Database error", status=500)

    @app.errorhandler(NotFound)
    def handle_not_found(e):
        return api_error("not_found", "Resource not found", status=404)

    @app.errorhandler(RequestEntityTooLarge)
    def handle_request_too_large(e):
        return api_error("payload_too_large", "Payload exceeds limit", status=413, details={"field": "payload"})

    @app.after_request
    def apply_response_headers(response):
        rid = get_request_id()
        response.headers.setdefault("X-Request-ID", rid)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Cache-Control", "no-store")
        try:
            duration_ms = int((pytime.perf_counter() - g.start_time) * 1000)
            logger.info(
                "[RESP] request_id=%s %s %s status=%s duration_ms=%s",
                rid,
                request.method,
                request.path,
                response.status_code,
                duration_ms,
            )
        except AttributeError:
            pass
        return response

    from agreement_ledger.routes.legal_routes import bp as legal_bp
    from agreement_ledger.routes.admin_routes import bp as admin_bp
    app.register_blueprint(legal_bp)
    app.register_blueprint(admin_bp)

    app.cli.add_command(agreements_cli)

    return app
