# -*- coding: utf-8 -*-
"""
Consent orchestration: accept, withdraw, query and rotate agreement versions.

Every mutating call is one unit of work on db.session. The authoritative answer to
"may this member act under agreement X" is has_accepted_current_version(); the flags
cached on Member are only a projection of the ledger.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from agreement_ledger import events
from agreement_ledger.exceptions import (
    AcceptanceConflict,
    HashMismatch,
    MemberNotFound,
    NoAcceptanceToWithdraw,
)
from agreement_ledger.extensions import VERSION_LABEL_FORMAT, db
from agreement_ledger.legal import (
    AgreementType,
    ConsentContext,
    ConsentState,
    MAX_USER_AGENT_LENGTH,
    RECORD_KIND_ACCEPTANCE,
    RECORD_KIND_WITHDRAWAL,
    WITHDRAWAL_CONSENT_METHOD,
    optional_string,
)
from agreement_ledger.models import AcceptanceRecord, AgreementVersion, Member
from agreement_ledger.services import acceptance_ledger, member_state, version_store
from agreement_ledger.utils.integrity import hash_agreement_text, verify_agreement_text
from agreement_ledger.utils.transactions import unit_of_work

logger = logging.getLogger(__name__)


def _load_member(member_id: int) -> Member:
    member = db.session.get(Member, member_id)
    if member is None:
        raise MemberNotFound(member_id)
    return member


def _clip(value: Optional[str], length: int) -> Optional[str]:
    if value is None:
        return None
    return str(value)[:length]


def _resolve_version_for_accept(agreement_type: AgreementType) -> AgreementVersion:
    """
    Active version for an acceptance. A stored hash that no longer matches its text
    (legacy seed data) is corrected in place; the check is advisory here.
    """
    active = version_store.get_active_version(agreement_type)
    if not verify_agreement_text(active.agreement_text, active.agreement_hash):
        corrected = hash_agreement_text(active.agreement_text)
        logger.warning(
            "[INTEGRITY] stored hash drift on %s version %s: stored=%s recomputed=%s; correcting",
            agreement_type.value,
            active.version,
            active.agreement_hash,
            corrected,
        )
        active.agreement_hash = corrected
    return active


def _insert_acceptance(member: Member, agreement_type: AgreementType, active: AgreementVersion,
                       ctx: ConsentContext, now: datetime) -> AcceptanceRecord:
    record = AcceptanceRecord(
        member_id=member.id,
        agreement_type=agreement_type.value,
        agreement_version=active.version,
        agreement_text=active.agreement_text,
        agreement_hash=active.agreement_hash,
        accepted_at=now,
        ip_address=_clip(ctx.ip_address, 64),
        user_agent=_clip(ctx.user_agent, MAX_USER_AGENT_LENGTH),
        consent_method=ctx.consent_method,
        session_id=_clip(ctx.session_id, 128),
        referrer_url=_clip(ctx.referrer_url, 2048),
        browser_fingerprint=_clip(ctx.browser_fingerprint, 256),
        record_kind=RECORD_KIND_ACCEPTANCE,
        is_withdrawn=False,
    )
    db.session.add(record)
    # IntegrityError here means a concurrent request won the open-acceptance index
    db.session.flush()
    return record


def _resolve_accept_race(agreement_type: AgreementType, member_id: int) -> AcceptanceRecord:
    active = version_store.get_active_version(agreement_type)
    winner = acceptance_ledger.find_open_acceptance(member_id, agreement_type, active.version)
    if winner is None:
        raise AcceptanceConflict(
            f"Concurrent {agreement_type.value} acceptance for member {member_id} could not be resolved"
        )
    logger.info(
        "[CONSENT] member_id=%s %s@%s accepted concurrently; reusing record %s",
        member_id,
        agreement_type.value,
        active.version,
        winner.id,
    )
    return winner


def accept_agreement(agreement_type, member_id: int, ctx: Optional[ConsentContext] = None,
                     *, now_utc: Optional[datetime] = None) -> AcceptanceRecord:
    """
    Record the member's acceptance of the currently active version.
    Idempotent: an open acceptance of the active version is returned unchanged.
    """
    agreement_type = AgreementType.parse(agreement_type)
    ctx = ctx or ConsentContext()
    now = now_utc or datetime.utcnow()
    logger.info("[CONSENT] %s acceptance requested member_id=%s", agreement_type.value, member_id)

    try:
        with unit_of_work("accept"):
            member = _load_member(member_id)
            active = _resolve_version_for_accept(agreement_type)

            existing = acceptance_ledger.find_latest_acceptance(member.id, agreement_type, active.version)
            if existing is not None and not existing.is_withdrawn:
                logger.info(
                    "[CONSENT] member_id=%s already accepted %s version %s (record %s)",
                    member.id,
                    agreement_type.value,
                    active.version,
                    existing.id,
                )
                return existing

            record = _insert_acceptance(member, agreement_type, active, ctx, now)
            member_state.refresh_member_flags(member)
            events.emit(events.ConsentGranted(
                agreement_type=agreement_type.value,
                member_id=member.id,
                version=active.version,
                record_id=record.id,
                occurred_at=now,
            ))
    except IntegrityError:
        # unit_of_work already rolled back; the concurrent winner's row is committed
        return _resolve_accept_race(agreement_type, member_id)

    logger.info(
        "[CONSENT] recorded %s acceptance member_id=%s version=%s audit_id=%s",
        agreement_type.value,
        member_id,
        record.agreement_version,
        record.id,
    )
    return record


def has_accepted_current_version(agreement_type, member_id: int) -> bool:
    agreement_type = AgreementType.parse(agreement_type)
    active = version_store.find_active_version(agreement_type)
    if active is None:
        logger.warning("[CONSENT] no active version for agreement type %s", agreement_type.value)
        return False
    return acceptance_ledger.find_open_acceptance(member_id, agreement_type, active.version) is not None


def consent_state(agreement_type, member_id: int) -> ConsentState:
    """Classify the member's consent relative to the currently active version."""
    agreement_type = AgreementType.parse(agreement_type)
    if has_accepted_current_version(agreement_type, member_id):
        return ConsentState.ACCEPTED_CURRENT
    if acceptance_ledger.find_latest_unwithdrawn(member_id, agreement_type) is not None:
        return ConsentState.ACCEPTED_STALE
    if acceptance_ledger.find_latest_any(member_id, agreement_type) is not None:
        return ConsentState.WITHDRAWN
    return ConsentState.NO_ACCEPTANCE


def withdraw_consent(agreement_type, member_id: int, reason: Optional[str] = None,
                     ctx: Optional[ConsentContext] = None, *,
                     now_utc: Optional[datetime] = None) -> AcceptanceRecord:
    """
    Withdraw the latest open acceptance (any version) and append a withdrawal entry.
    Returns the withdrawal entry.
    """
    agreement_type = AgreementType.parse(agreement_type)
    ctx = ctx or ConsentContext()
    now = now_utc or datetime.utcnow()
    reason = (optional_string(reason, "reason") or "").strip()[:1000] or None
    logger.info("[CONSENT] processing %s withdrawal member_id=%s", agreement_type.value, member_id)

    with unit_of_work("withdraw"):
        member = _load_member(member_id)
        current = acceptance_ledger.find_latest_unwithdrawn(member.id, agreement_type)
        if current is None:
            raise NoAcceptanceToWithdraw()

        current.withdraw(reason, now)

        entry_text = f"Consent withdrawn for agreement record {current.id}. Reason: {reason or 'not given'}"
        entry = AcceptanceRecord(
            member_id=member.id,
            agreement_type=agreement_type.value,
            agreement_version=current.agreement_version,
            agreement_text=entry_text,
            agreement_hash=hash_agreement_text(entry_text),
            accepted_at=now,
            ip_address=_clip(ctx.ip_address, 64),
            user_agent=_clip(ctx.user_agent, MAX_USER_AGENT_LENGTH),
            consent_method=WITHDRAWAL_CONSENT_METHOD,
            session_id=_clip(ctx.session_id, 128),
            referrer_url=_clip(ctx.referrer_url, 2048),
            browser_fingerprint=_clip(ctx.browser_fingerprint, 256),
            record_kind=RECORD_KIND_WITHDRAWAL,
            withdraws_record_id=current.id,
            is_withdrawn=False,
        )
        db.session.add(entry)
        db.session.flush()

        member_state.refresh_member_flags(member)
        events.emit(events.ConsentWithdrawn(
            agreement_type=agreement_type.value,
            member_id=member.id,
            version=current.agreement_version,
            record_id=current.id,
            withdrawal_record_id=entry.id,
            occurred_at=now,
        ))

    logger.info(
        "[CONSENT] withdrew %s record %s member_id=%s (entry %s)",
        agreement_type.value,
        current.id,
        member_id,
        entry.id,
    )
    return entry


def generate_version_label(now: Optional[datetime] = None) -> str:
    return (now or datetime.utcnow()).strftime(VERSION_LABEL_FORMAT)


def create_version(agreement_type, version: Optional[str], text: str, created_by: Optional[str] = None, *,
                   effective_date: Optional[datetime] = None, change_description: Optional[str] = None,
                   now_utc: Optional[datetime] = None) -> AgreementVersion:
    """Rotate in a new active version. The label defaults to the current timestamp."""
    agreement_type = AgreementType.parse(agreement_type)
    now = now_utc or datetime.utcnow()
    label = (optional_string(version, "version") or "").strip() or generate_version_label(now)

    with unit_of_work("rotate"):
        new_version = version_store.rotate_version(
            agreement_type,
            label,
            text,
            effective_date,
            created_by,
            change_description=change_description,
            now_utc=now,
        )

    logger.info(
        "[CONSENT] %s agreement rotated to version %s by %s",
        agreement_type.value,
        new_version.version,
        created_by or "unknown",
    )
    return new_version


def get_current_version(agreement_type) -> dict:
    active = version_store.get_active_version(agreement_type)
    return {
        "agreement_type": active.agreement_type,
        "version": active.version,
        "agreement_text": active.agreement_text,
        "agreement_hash": active.agreement_hash,
        "effective_date": active.effective_date.isoformat() if active.effective_date else None,
    }


def verify_integrity(agreement_type, text: str, provided_hash: str) -> bool:
    """
    True only if hash(text) == provided_hash and both match the active version.
    Rejects internally consistent payloads for an outdated or foreign text.
    """
    agreement_type = AgreementType.parse(agreement_type)
    text = optional_string(text, "agreement_text")
    provided_hash = optional_string(provided_hash, "agreement_hash")
    if not verify_agreement_text(text, provided_hash):
        logger.warning(
            "[INTEGRITY] %s hash mismatch: calculated=%s provided=%s",
            agreement_type.value,
            hash_agreement_text(text) if text is not None else None,
            provided_hash,
        )
        return False
    active = version_store.get_active_version(agreement_type)
    if active.agreement_hash != provided_hash or active.agreement_text != text:
        logger.warning("[INTEGRITY] %s text/hash does not match active version %s", agreement_type.value, active.version)
        return False
    return True


def require_integrity(agreement_type, text: str, provided_hash: str) -> None:
    if not verify_integrity(agreement_type, text, provided_hash):
        raise HashMismatch()


def get_audit_trail(member_id: int, agreement_type=None) -> List[AcceptanceRecord]:
    _load_member(member_id)
    return acceptance_ledger.audit_trail(member_id, agreement_type)
