from datetime import datetime
from sqlalchemy import desc, event, inspect, select
from sqlalchemy.orm import validates
from flask_login import UserMixin

from agreement_ledger.exceptions import ImmutableRecordError
from agreement_ledger.extensions import db
from agreement_ledger.legal import (
    AgreementType,
    MAX_USER_AGENT_LENGTH,
    RECORD_KIND_ACCEPTANCE,
    RECORD_KIND_WITHDRAWAL,
)


def _iso(value):
    return value.isoformat() if value else None


class Member(db.Model, UserMixin):
    """
    Member record as seen by the consent core.
    The agreement columns are a cache recomputed from the ledger (see services.member_state).
    """

    __tablename__ = "member"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    display_name = db.Column(db.String(100))
    has_accepted_organiser_agreement = db.Column(db.Boolean, nullable=False, default=False)
    organiser_agreement_accepted_at = db.Column(db.DateTime, nullable=True)
    has_accepted_user_agreement = db.Column(db.Boolean, nullable=False, default=False)
    user_agreement_accepted_at = db.Column(db.DateTime, nullable=True)
    is_organiser = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<Member id={self.id} organiser={self.is_organiser}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "has_accepted_organiser_agreement": bool(self.has_accepted_organiser_agreement),
            "organiser_agreement_accepted_at": _iso(self.organiser_agreement_accepted_at),
            "has_accepted_user_agreement": bool(self.has_accepted_user_agreement),
            "user_agreement_accepted_at": _iso(self.user_agreement_accepted_at),
            "is_organiser": bool(self.is_organiser),
        }


class AgreementVersion(db.Model):
    """
    Master table for agreement versions with full text and content hash.
    At most one active row per agreement_type (partial unique index).
    """

    __tablename__ = "agreement_versions"

    id = db.Column(db.Integer, primary_key=True)
    agreement_type = db.Column(db.String(50), nullable=False)
    version = db.Column(db.String(32), nullable=False)
    effective_date = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expiry_date = db.Column(db.DateTime, nullable=True)
    agreement_text = db.Column(db.Text, nullable=False)
    agreement_hash = db.Column(db.String(71), nullable=False, index=True)
    created_by = db.Column(db.String(100), nullable=True)
    change_description = db.Column(db.String(500), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint("agreement_type", "version", name="uq_agreement_versions_type_version"),
        db.Index(
            "uq_agreement_versions_one_active",
            "agreement_type",
            unique=True,
            postgresql_where=db.text("is_active = true"),
            sqlite_where=db.text("is_active = 1"),
        ),
        db.Index("ix_agreement_versions_type_effective", "agreement_type", desc("effective_date")),
    )

    @validates("agreement_type")
    def validate_agreement_type(self, key, value):
        return AgreementType.parse(value).value

    def __repr__(self):
        return f"<AgreementVersion {self.agreement_type}@{self.version} active={self.is_active}>"

    def to_dict(self, include_text: bool = True) -> dict:
        data = {
            "id": self.id,
            "agreement_type": self.agreement_type,
            "version": self.version,
            "agreement_hash": self.agreement_hash,
            "effective_date": _iso(self.effective_date),
            "expiry_date": _iso(self.expiry_date),
            "created_by": self.created_by,
            "change_description": self.change_description,
            "is_active": bool(self.is_active),
            "created_at": _iso(self.created_at),
        }
        if include_text:
            data["agreement_text"] = self.agreement_text
        return data


class AcceptanceRecord(db.Model):
    """
    Append-mostly audit row for one consent event, with a verbatim snapshot of the
    accepted text and its hash. Only the withdrawal columns may change, and only once.
    Rows are never deleted.
    """

    __tablename__ = "legal_agreements"

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey("member.id"), nullable=False)
    agreement_type = db.Column(db.String(50), nullable=False)
    agreement_version = db.Column(db.String(32), nullable=False)
    agreement_text = db.Column(db.Text, nullable=False)
    agreement_hash = db.Column(db.String(71), nullable=False)
    accepted_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(MAX_USER_AGENT_LENGTH), nullable=True)
    consent_method = db.Column(db.String(32), nullable=False, default="web_form")
    session_id = db.Column(db.String(128), nullable=True)
    referrer_url = db.Column(db.String(2048), nullable=True)
    browser_fingerprint = db.Column(db.String(256), nullable=True)
    record_kind = db.Column(db.String(16), nullable=False, default=RECORD_KIND_ACCEPTANCE)
    withdraws_record_id = db.Column(db.Integer, db.ForeignKey("legal_agreements.id"), nullable=True)
    is_withdrawn = db.Column(db.Boolean, nullable=False, default=False)
    withdrawn_at = db.Column(db.DateTime, nullable=True)
    withdrawal_reason = db.Column(db.String(1000), nullable=True)

    __table_args__ = (
        db.Index(
            "uq_legal_agreements_open_acceptance",
            "member_id",
            "agreement_type",
            "agreement_version",
            unique=True,
            postgresql_where=db.text("is_withdrawn = false AND record_kind = 'acceptance'"),
            sqlite_where=db.text("is_withdrawn = 0 AND record_kind = 'acceptance'"),
        ),
        db.Index("ix_legal_agreements_member_accepted", "member_id", desc("accepted_at")),
        db.Index(
            "ix_legal_agreements_member_type_version",
            "member_id",
            "agreement_type",
            "agreement_version",
        ),
    )

    @validates("agreement_type")
    def validate_agreement_type(self, key, value):
        return AgreementType.parse(value).value

    @property
    def is_withdrawal_entry(self) -> bool:
        return self.record_kind == RECORD_KIND_WITHDRAWAL

    def withdraw(self, reason, at: datetime):
        if self.is_withdrawn:
            raise ImmutableRecordError(f"Acceptance record {self.id} is already withdrawn")
        if self.record_kind != RECORD_KIND_ACCEPTANCE:
            raise ImmutableRecordError(f"Record {self.id} is not an acceptance")
        self.is_withdrawn = True
        self.withdrawn_at = at
        self.withdrawal_reason = reason

    def __repr__(self):
        return (
            f"<AcceptanceRecord id={self.id} member_id={self.member_id} "
            f"{self.agreement_type}@{self.agreement_version} kind={self.record_kind} "
            f"withdrawn={self.is_withdrawn}>"
        )

    def to_dict(self, include_text: bool = False) -> dict:
        data = {
            "id": self.id,
            "member_id": self.member_id,
            "agreement_type": self.agreement_type,
            "agreement_version": self.agreement_version,
            "agreement_hash": self.agreement_hash,
            "accepted_at": _iso(self.accepted_at),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "consent_method": self.consent_method,
            "session_id": self.session_id,
            "referrer_url": self.referrer_url,
            "browser_fingerprint": self.browser_fingerprint,
            "record_kind": self.record_kind,
            "withdraws_record_id": self.withdraws_record_id,
            "is_withdrawn": bool(self.is_withdrawn),
            "withdrawn_at": _iso(self.withdrawn_at),
            "withdrawal_reason": self.withdrawal_reason,
        }
        if include_text:
            data["agreement_text"] = self.agreement_text
        return data


WITHDRAWAL_COLUMNS = ("is_withdrawn", "withdrawn_at", "withdrawal_reason")
IMMUTABLE_RECORD_COLUMNS = tuple(
    column.key
    for column in AcceptanceRecord.__table__.columns
    if column.key not in WITHDRAWAL_COLUMNS
)


@event.listens_for(AcceptanceRecord, "before_update")
def guard_acceptance_record_update(mapper, connection, target):
    state = inspect(target)
    for key in IMMUTABLE_RECORD_COLUMNS:
        if state.attrs[key].history.has_changes():
            raise ImmutableRecordError(f"legal_agreements.{key} is immutable (record {target.id})")

    touched = [key for key in WITHDRAWAL_COLUMNS if state.attrs[key].history.has_changes()]
    if not touched:
        return
    persisted = connection.scalar(
        select(AcceptanceRecord.__table__.c.is_withdrawn).where(AcceptanceRecord.__table__.c.id == target.id)
    )
    if persisted:
        raise ImmutableRecordError(f"Withdrawal of record {target.id} is final")
    if not target.is_withdrawn:
        raise ImmutableRecordError(f"Withdrawal details require is_withdrawn on record {target.id}")


@event.listens_for(AcceptanceRecord, "before_delete")
def guard_acceptance_record_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Ledger record {target.id} cannot be deleted")


@event.listens_for(AgreementVersion, "before_delete")
def guard_agreement_version_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Agreement version {target.agreement_type}@{target.version} cannot be deleted")
