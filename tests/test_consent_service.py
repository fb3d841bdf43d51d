from datetime import datetime, timedelta

import pytest
from sqlalchemy import text

from agreement_ledger import events
from agreement_ledger.exceptions import (
    HashMismatch,
    ImmutableRecordError,
    MemberNotFound,
    NoAcceptanceToWithdraw,
    NoActiveVersion,
    ValidationError,
)
from agreement_ledger.legal import ConsentContext, ConsentState, RECORD_KIND_WITHDRAWAL
from agreement_ledger.models import AcceptanceRecord, AgreementVersion
from agreement_ledger.services import consent_service, version_store
from agreement_ledger.utils.integrity import hash_agreement_text
from main import db, Member

from conftest import ORGANISER_TEXT_V1, USER_TEXT_V1, create_member

T0 = datetime(2026, 1, 10, 12, 0)


def ledger_rows(member_id):
    return AcceptanceRecord.query.filter_by(member_id=member_id).count()


def test_accept_then_has_accepted(app_ctx, versions, member_id):
    assert consent_service.has_accepted_current_version("USER", member_id) is False
    record = consent_service.accept_agreement("USER", member_id, now_utc=T0)
    assert consent_service.has_accepted_current_version("USER", member_id) is True
    assert record.agreement_version == "v1"
    assert record.agreement_text == USER_TEXT_V1
    assert record.agreement_hash == hash_agreement_text(USER_TEXT_V1)
    assert record.accepted_at == T0
    assert record.consent_method == "web_form"


def test_accept_is_idempotent(app_ctx, versions, member_id):
    first = consent_service.accept_agreement("USER", member_id, now_utc=T0)
    second = consent_service.accept_agreement("USER", member_id, now_utc=T0 + timedelta(minutes=5))
    assert first.id == second.id
    assert second.accepted_at == T0
    assert ledger_rows(member_id) == 1


def test_accept_updates_member_flags(app_ctx, versions, member_id):
    consent_service.accept_agreement("USER", member_id, now_utc=T0)
    member = db.session.get(Member, member_id)
    assert member.has_accepted_user_agreement is True
    assert member.user_agreement_accepted_at == T0
    assert member.has_accepted_organiser_agreement is False
    assert member.is_organiser is False


def test_accept_stores_context_verbatim(app_ctx, versions, member_id):
    ctx = ConsentContext(
        ip_address="203.0.113.7",
        user_agent="Mozilla/5.0 " + "x" * 600,
        session_id="sess-1",
        referrer_url="https://example.com/join",
        browser_fingerprint="fp-123",
    )
    record = consent_service.accept_agreement("ORGANISER", member_id, ctx, now_utc=T0)
    assert record.ip_address == "203.0.113.7"
    assert len(record.user_agent) == 512
    assert record.session_id == "sess-1"
    assert record.referrer_url == "https://example.com/join"
    assert record.browser_fingerprint == "fp-123"


def test_accept_unknown_member(app_ctx, versions):
    with pytest.raises(MemberNotFound):
        consent_service.accept_agreement("USER", 9999)
    assert AcceptanceRecord.query.count() == 0


def test_accept_without_active_version(app_ctx, member_id):
    with pytest.raises(NoActiveVersion):
        consent_service.accept_agreement("ORGANISER", member_id)
    assert ledger_rows(member_id) == 0
    assert db.session.get(Member, member_id).has_accepted_organiser_agreement is False


def test_has_accepted_without_active_version_is_false(app_ctx, member_id):
    assert consent_service.has_accepted_current_version("USER", member_id) is False


def test_rotation_invalidates_current_acceptance(app_ctx, versions, member_id):
    record = consent_service.accept_agreement("USER", member_id, now_utc=T0)
    consent_service.create_version("USER", "v2", "User Agreement v2", now_utc=T0 + timedelta(days=1))

    assert consent_service.has_accepted_current_version("USER", member_id) is False
    assert consent_service.consent_state("USER", member_id) is ConsentState.ACCEPTED_STALE
    kept = db.session.get(AcceptanceRecord, record.id)
    assert kept.agreement_version == "v1"
    assert kept.agreement_text == USER_TEXT_V1
    assert kept.is_withdrawn is False


def test_withdraw_without_acceptance(app_ctx, versions, member_id):
    with pytest.raises(NoAcceptanceToWithdraw):
        consent_service.withdraw_consent("USER", member_id)
    assert ledger_rows(member_id) == 0


def test_withdraw_flags_record_and_appends_entry(app_ctx, versions, member_id):
    record = consent_service.accept_agreement("USER", member_id, now_utc=T0)
    withdrawn_at = T0 + timedelta(hours=1)
    entry = consent_service.withdraw_consent("USER", member_id, "  changed my mind ", now_utc=withdrawn_at)

    original = db.session.get(AcceptanceRecord, record.id)
    assert original.is_withdrawn is True
    assert original.withdrawn_at == withdrawn_at
    assert original.withdrawal_reason == "changed my mind"
    assert original.agreement_text == USER_TEXT_V1

    assert entry.record_kind == RECORD_KIND_WITHDRAWAL
    assert entry.withdraws_record_id == record.id
    assert entry.consent_method == "withdrawal"
    assert entry.agreement_text == f"Consent withdrawn for agreement record {record.id}. Reason: changed my mind"
    assert entry.agreement_hash == hash_agreement_text(entry.agreement_text)
    assert entry.is_withdrawal_entry

    assert consent_service.has_accepted_current_version("USER", member_id) is False
    assert consent_service.consent_state("USER", member_id) is ConsentState.WITHDRAWN
    assert db.session.get(Member, member_id).has_accepted_user_agreement is False


def test_withdraw_twice_fails(app_ctx, versions, member_id):
    consent_service.accept_agreement("USER", member_id, now_utc=T0)
    consent_service.withdraw_consent("USER", member_id, now_utc=T0 + timedelta(hours=1))
    with pytest.raises(NoAcceptanceToWithdraw):
        consent_service.withdraw_consent("USER", member_id)
    assert ledger_rows(member_id) == 2


def test_withdraw_without_reason(app_ctx, versions, member_id):
    record = consent_service.accept_agreement("USER", member_id, now_utc=T0)
    entry = consent_service.withdraw_consent("USER", member_id, now_utc=T0 + timedelta(hours=1))
    assert entry.agreement_text.endswith("Reason: not given")
    assert db.session.get(AcceptanceRecord, record.id).withdrawal_reason is None


def test_withdraw_stale_acceptance(app_ctx, versions, member_id):
    record = consent_service.accept_agreement("USER", member_id, now_utc=T0)
    consent_service.create_version("USER", "v2", "User Agreement v2", now_utc=T0 + timedelta(days=1))
    entry = consent_service.withdraw_consent("USER", member_id, now_utc=T0 + timedelta(days=2))
    assert entry.withdraws_record_id == record.id
    assert entry.agreement_version == "v1"


def test_reaccept_after_withdraw_creates_new_row(app_ctx, versions, member_id):
    first = consent_service.accept_agreement("USER", member_id, now_utc=T0)
    consent_service.withdraw_consent("USER", member_id, now_utc=T0 + timedelta(hours=1))
    second = consent_service.accept_agreement("USER", member_id, now_utc=T0 + timedelta(hours=2))

    assert second.id != first.id
    assert db.session.get(AcceptanceRecord, first.id).is_withdrawn is True
    assert consent_service.has_accepted_current_version("USER", member_id) is True
    assert ledger_rows(member_id) == 3


def test_organiser_lifecycle(app_ctx, member_id):
    consent_service.create_version("ORGANISER", "2025-01-01", "T1", "admin", now_utc=datetime(2025, 1, 1))

    consent_service.accept_agreement("ORGANISER", member_id, now_utc=datetime(2025, 1, 5))
    member = db.session.get(Member, member_id)
    assert ledger_rows(member_id) == 1
    assert member.has_accepted_organiser_agreement is True
    assert member.is_organiser is True

    consent_service.create_version("ORGANISER", "2025-02-01", "T2", "admin", now_utc=datetime(2025, 2, 1))
    assert version_store.get_active_version("ORGANISER").version == "2025-02-01"
    assert consent_service.has_accepted_current_version("ORGANISER", member_id) is False
    assert ledger_rows(member_id) == 1

    second = consent_service.accept_agreement("ORGANISER", member_id, now_utc=datetime(2025, 2, 3))
    member = db.session.get(Member, member_id)
    assert second.agreement_text == "T2"
    assert ledger_rows(member_id) == 2
    assert member.has_accepted_organiser_agreement is True
    assert consent_service.has_accepted_current_version("ORGANISER", member_id) is True

    consent_service.withdraw_consent("ORGANISER", member_id, "leaving", now_utc=datetime(2025, 3, 1))
    member = db.session.get(Member, member_id)
    assert member.has_accepted_organiser_agreement is False
    assert member.is_organiser is False
    assert ledger_rows(member_id) == 3

    trail = consent_service.get_audit_trail(member_id, "ORGANISER")
    assert [r.record_kind for r in trail] == ["withdrawal", "acceptance", "acceptance"]
    assert [r.agreement_version for r in trail] == ["2025-02-01", "2025-02-01", "2025-01-01"]
    assert trail[2].is_withdrawn is False


def test_user_acceptance_does_not_grant_organiser(app_ctx, versions, member_id):
    consent_service.accept_agreement("USER", member_id, now_utc=T0)
    assert db.session.get(Member, member_id).is_organiser is False


def test_audit_trail_newest_first_and_filtered(app_ctx, versions, member_id):
    consent_service.accept_agreement("USER", member_id, now_utc=T0)
    consent_service.accept_agreement("ORGANISER", member_id, now_utc=T0 + timedelta(minutes=1))
    consent_service.withdraw_consent("USER", member_id, now_utc=T0 + timedelta(minutes=2))

    trail = consent_service.get_audit_trail(member_id)
    assert [r.accepted_at for r in trail] == sorted((r.accepted_at for r in trail), reverse=True)
    assert len(trail) == 3
    assert {r.agreement_type for r in consent_service.get_audit_trail(member_id, "USER")} == {"USER"}


def test_audit_trail_unknown_member(app_ctx):
    with pytest.raises(MemberNotFound):
        consent_service.get_audit_trail(4242)


def test_audit_trail_is_per_member(app_ctx, versions, member_id):
    other_id = create_member("other@example.com", "Other")
    consent_service.accept_agreement("USER", other_id, now_utc=T0)
    assert consent_service.get_audit_trail(member_id) == []


def test_verify_integrity(app_ctx, versions):
    assert consent_service.verify_integrity("USER", USER_TEXT_V1, hash_agreement_text(USER_TEXT_V1)) is True
    assert consent_service.verify_integrity("USER", USER_TEXT_V1, hash_agreement_text(USER_TEXT_V1 + "x")) is False


def test_verify_integrity_rejects_other_text(app_ctx, versions):
    forged = "User Agreement v1 (edited)"
    assert consent_service.verify_integrity("USER", forged, hash_agreement_text(forged)) is False
    assert consent_service.verify_integrity("USER", ORGANISER_TEXT_V1, hash_agreement_text(ORGANISER_TEXT_V1)) is False


def test_verify_integrity_rejects_superseded_text(app_ctx, versions):
    consent_service.create_version("USER", "v2", "User Agreement v2")
    assert consent_service.verify_integrity("USER", USER_TEXT_V1, hash_agreement_text(USER_TEXT_V1)) is False


def test_require_integrity_raises(app_ctx, versions):
    with pytest.raises(HashMismatch):
        consent_service.require_integrity("USER", USER_TEXT_V1, "sha256_" + "0" * 64)


def test_get_current_version(app_ctx, versions):
    current = consent_service.get_current_version("organiser")
    assert current["agreement_type"] == "ORGANISER"
    assert current["version"] == "v1"
    assert current["agreement_text"] == ORGANISER_TEXT_V1
    assert current["agreement_hash"] == hash_agreement_text(ORGANISER_TEXT_V1)


def _corrupt_stored_hash(agreement_type):
    db.session.execute(
        text("UPDATE agreement_versions SET agreement_hash = :h WHERE agreement_type = :t AND is_active = 1"),
        {"h": "sha256_" + "f" * 64, "t": agreement_type},
    )
    db.session.commit()


def test_accept_corrects_drifted_stored_hash(app_ctx, versions, member_id):
    _corrupt_stored_hash("USER")
    record = consent_service.accept_agreement("USER", member_id, now_utc=T0)
    assert record.agreement_hash == hash_agreement_text(USER_TEXT_V1)
    active = version_store.get_active_version("USER")
    assert active.agreement_hash == hash_agreement_text(USER_TEXT_V1)


def test_verify_integrity_does_not_correct_drifted_hash(app_ctx, versions):
    _corrupt_stored_hash("USER")
    assert consent_service.verify_integrity("USER", USER_TEXT_V1, hash_agreement_text(USER_TEXT_V1)) is False
    assert version_store.get_active_version("USER").agreement_hash == "sha256_" + "f" * 64


def test_concurrent_accept_resolves_to_existing_record(app_ctx, versions, member_id, monkeypatch):
    first = consent_service.accept_agreement("USER", member_id, now_utc=T0)
    first_id = first.id

    # simulate a second request whose existence check ran before the first committed
    monkeypatch.setattr(consent_service.acceptance_ledger, "find_latest_acceptance", lambda *a, **k: None)
    second = consent_service.accept_agreement("USER", member_id, now_utc=T0 + timedelta(seconds=1))

    assert second.id == first_id
    assert ledger_rows(member_id) == 1


def test_failed_event_handler_rolls_back_acceptance(app_ctx, versions, member_id):
    def failing_receiver(sender, event, **_):
        raise RuntimeError("authorization service down")

    events.consent_granted.connect(failing_receiver)
    try:
        with pytest.raises(RuntimeError):
            consent_service.accept_agreement("ORGANISER", member_id, now_utc=T0)
    finally:
        events.consent_granted.disconnect(failing_receiver)

    member = db.session.get(Member, member_id)
    assert ledger_rows(member_id) == 0
    assert member.has_accepted_organiser_agreement is False
    assert member.is_organiser is False


def test_events_are_emitted(app_ctx, versions, member_id):
    received = []

    def receiver(sender, event, **_):
        received.append((sender, event))

    events.consent_granted.connect(receiver)
    events.consent_withdrawn.connect(receiver)
    try:
        record = consent_service.accept_agreement("USER", member_id, now_utc=T0)
        entry = consent_service.withdraw_consent("USER", member_id, now_utc=T0 + timedelta(hours=1))
    finally:
        events.consent_granted.disconnect(receiver)
        events.consent_withdrawn.disconnect(receiver)

    assert [sender for sender, _ in received] == ["USER", "USER"]
    granted, withdrawn = received[0][1], received[1][1]
    assert isinstance(granted, events.ConsentGranted)
    assert granted.record_id == record.id
    assert granted.to_dict()["event_type"] == "consent.granted"
    assert isinstance(withdrawn, events.ConsentWithdrawn)
    assert withdrawn.record_id == record.id
    assert withdrawn.withdrawal_record_id == entry.id


def test_idempotent_accept_emits_nothing(app_ctx, versions, member_id):
    consent_service.accept_agreement("USER", member_id, now_utc=T0)
    received = []

    def receiver(sender, event, **_):
        received.append(event)

    events.consent_granted.connect(receiver)
    try:
        consent_service.accept_agreement("USER", member_id, now_utc=T0 + timedelta(minutes=1))
    finally:
        events.consent_granted.disconnect(receiver)
    assert received == []


def test_snapshot_columns_are_immutable(app_ctx, versions, member_id):
    record_id = consent_service.accept_agreement("USER", member_id, now_utc=T0).id
    record = db.session.get(AcceptanceRecord, record_id)
    record.agreement_text = "rewritten"
    with pytest.raises(ImmutableRecordError):
        db.session.commit()
    db.session.rollback()
    assert db.session.get(AcceptanceRecord, record_id).agreement_text == USER_TEXT_V1


def test_withdrawal_cannot_be_reversed(app_ctx, versions, member_id):
    record_id = consent_service.accept_agreement("USER", member_id, now_utc=T0).id
    consent_service.withdraw_consent("USER", member_id, now_utc=T0 + timedelta(hours=1))
    record = db.session.get(AcceptanceRecord, record_id)
    record.is_withdrawn = False
    with pytest.raises(ImmutableRecordError):
        db.session.commit()
    db.session.rollback()
    assert db.session.get(AcceptanceRecord, record_id).is_withdrawn is True


def test_withdrawal_details_cannot_be_rewritten(app_ctx, versions, member_id):
    record_id = consent_service.accept_agreement("USER", member_id, now_utc=T0).id
    consent_service.withdraw_consent("USER", member_id, "original reason", now_utc=T0 + timedelta(hours=1))
    record = db.session.get(AcceptanceRecord, record_id)
    db.session.commit()

    record.withdrawal_reason = "rewritten reason"
    with pytest.raises(ImmutableRecordError):
        db.session.commit()
    db.session.rollback()

    record.withdrawn_at = T0 + timedelta(days=30)
    with pytest.raises(ImmutableRecordError):
        db.session.commit()
    db.session.rollback()

    kept = db.session.get(AcceptanceRecord, record_id)
    assert kept.withdrawal_reason == "original reason"
    assert kept.withdrawn_at == T0 + timedelta(hours=1)


def test_withdrawal_details_require_withdrawn_flag(app_ctx, versions, member_id):
    record_id = consent_service.accept_agreement("USER", member_id, now_utc=T0).id
    record = db.session.get(AcceptanceRecord, record_id)
    record.withdrawal_reason = "no flag"
    with pytest.raises(ImmutableRecordError):
        db.session.commit()
    db.session.rollback()
    assert db.session.get(AcceptanceRecord, record_id).withdrawal_reason is None


def test_ledger_rows_cannot_be_deleted(app_ctx, versions, member_id):
    record_id = consent_service.accept_agreement("USER", member_id, now_utc=T0).id
    db.session.delete(db.session.get(AcceptanceRecord, record_id))
    with pytest.raises(ImmutableRecordError):
        db.session.commit()
    db.session.rollback()
    assert db.session.get(AcceptanceRecord, record_id) is not None


def test_rotations_leave_one_active(app_ctx, versions):
    for i in range(2, 7):
        consent_service.create_version("ORGANISER", f"v{i}", f"Organiser v{i}")
    assert AgreementVersion.query.filter_by(agreement_type="ORGANISER", is_active=True).count() == 1
    assert AgreementVersion.query.filter_by(agreement_type="ORGANISER").count() == 6


def test_clock_running_backwards_keeps_reacceptance_current(app_ctx, versions, member_id):
    first = consent_service.accept_agreement("USER", member_id, now_utc=T0)
    consent_service.withdraw_consent("USER", member_id, now_utc=T0 + timedelta(hours=1))
    # re-acceptance stamped earlier than the withdrawn row
    second = consent_service.accept_agreement("USER", member_id, now_utc=T0 - timedelta(hours=1))
    assert second.id != first.id

    assert consent_service.has_accepted_current_version("USER", member_id) is True
    assert consent_service.consent_state("USER", member_id) is ConsentState.ACCEPTED_CURRENT
    assert db.session.get(Member, member_id).has_accepted_user_agreement is True

    again = consent_service.accept_agreement("USER", member_id, now_utc=T0 + timedelta(hours=2))
    assert again.id == second.id
    assert ledger_rows(member_id) == 3


@pytest.mark.parametrize("reason", [5, ["a"], {"why": "x"}])
def test_withdraw_rejects_non_string_reason(app_ctx, versions, member_id, reason):
    consent_service.accept_agreement("USER", member_id, now_utc=T0)
    with pytest.raises(ValidationError) as excinfo:
        consent_service.withdraw_consent("USER", member_id, reason)
    assert excinfo.value.field == "reason"
    assert consent_service.has_accepted_current_version("USER", member_id) is True


def test_verify_integrity_rejects_non_string_input(app_ctx, versions):
    with pytest.raises(ValidationError) as excinfo:
        consent_service.verify_integrity("USER", 123, hash_agreement_text(USER_TEXT_V1))
    assert excinfo.value.field == "agreement_text"
    with pytest.raises(ValidationError) as excinfo:
        consent_service.verify_integrity("USER", USER_TEXT_V1, 42)
    assert excinfo.value.field == "agreement_hash"
