# -*- coding: utf-8 -*-
"""Queries over the acceptance ledger (legal_agreements)."""

from datetime import datetime
from typing import Dict, Iterator, List, Optional

from agreement_ledger.exceptions import AcceptanceRecordNotFound
from agreement_ledger.extensions import db
from agreement_ledger.legal import AgreementType, RECORD_KIND_ACCEPTANCE
from agreement_ledger.models import AcceptanceRecord
from agreement_ledger.utils.integrity import verify_agreement_text


def _newest_first(query):
    return query.order_by(AcceptanceRecord.accepted_at.desc(), AcceptanceRecord.id.desc())


def _latest_written_first(query):
    # insertion order; accepted_at comes from a caller-supplied clock and may run backwards
    return query.order_by(AcceptanceRecord.id.desc())


def _acceptances(member_id: int, agreement_type: AgreementType):
    return AcceptanceRecord.query.filter_by(
        member_id=member_id,
        agreement_type=agreement_type.value,
        record_kind=RECORD_KIND_ACCEPTANCE,
    )


def find_latest_acceptance(member_id: int, agreement_type, version: str) -> Optional[AcceptanceRecord]:
    """Latest acceptance of one specific version, withdrawn or not."""
    agreement_type = AgreementType.parse(agreement_type)
    return _latest_written_first(_acceptances(member_id, agreement_type).filter_by(agreement_version=version)).first()


def find_open_acceptance(member_id: int, agreement_type, version: str) -> Optional[AcceptanceRecord]:
    agreement_type = AgreementType.parse(agreement_type)
    return (
        _acceptances(member_id, agreement_type)
        .filter_by(agreement_version=version, is_withdrawn=False)
        .first()
    )


def find_latest_unwithdrawn(member_id: int, agreement_type) -> Optional[AcceptanceRecord]:
    """Latest non-withdrawn acceptance across all versions."""
    agreement_type = AgreementType.parse(agreement_type)
    return _latest_written_first(_acceptances(member_id, agreement_type).filter_by(is_withdrawn=False)).first()


def find_latest_any(member_id: int, agreement_type) -> Optional[AcceptanceRecord]:
    agreement_type = AgreementType.parse(agreement_type)
    return _latest_written_first(_acceptances(member_id, agreement_type)).first()


def get_record(record_id: int) -> AcceptanceRecord:
    record = db.session.get(AcceptanceRecord, record_id)
    if record is None:
        raise AcceptanceRecordNotFound(record_id)
    return record


def audit_trail(member_id: int, agreement_type=None) -> List[AcceptanceRecord]:
    """Every ledger row for the member (acceptances and withdrawal entries), newest first."""
    query = AcceptanceRecord.query.filter_by(member_id=member_id)
    if agreement_type is not None:
        query = query.filter_by(agreement_type=AgreementType.parse(agreement_type).value)
    return _newest_first(query).all()


def acceptances_between(agreement_type, start: datetime, end: datetime) -> List[AcceptanceRecord]:
    agreement_type = AgreementType.parse(agreement_type)
    return _newest_first(
        AcceptanceRecord.query.filter(
            AcceptanceRecord.agreement_type == agreement_type.value,
            AcceptanceRecord.record_kind == RECORD_KIND_ACCEPTANCE,
            AcceptanceRecord.accepted_at >= start,
            AcceptanceRecord.accepted_at < end,
        )
    ).all()


def count_acceptances(agreement_type, *, withdrawn: bool) -> int:
    agreement_type = AgreementType.parse(agreement_type)
    return AcceptanceRecord.query.filter_by(
        agreement_type=agreement_type.value,
        record_kind=RECORD_KIND_ACCEPTANCE,
        is_withdrawn=withdrawn,
    ).count()


def audit_statistics(agreement_type) -> Dict[str, int]:
    active = count_acceptances(agreement_type, withdrawn=False)
    withdrawn = count_acceptances(agreement_type, withdrawn=True)
    return {"active": active, "withdrawn": withdrawn, "total": active + withdrawn}


def verify_record_integrity(record_id: int) -> bool:
    """Recompute the hash of a ledger row's text snapshot and compare with its stored hash."""
    record = get_record(record_id)
    return verify_agreement_text(record.agreement_text, record.agreement_hash)


def scan_ledger_integrity(batch_size: int = 500) -> Iterator[int]:
    """Yield ids of ledger rows whose stored hash no longer matches their text snapshot."""
    last_id = 0
    while True:
        batch = (
            AcceptanceRecord.query.filter(AcceptanceRecord.id > last_id)
            .order_by(AcceptanceRecord.id.asc())
            .limit(batch_size)
            .all()
        )
        if not batch:
            return
        for record in batch:
            if not verify_agreement_text(record.agreement_text, record.agreement_hash):
                yield record.id
        last_id = batch[-1].id
