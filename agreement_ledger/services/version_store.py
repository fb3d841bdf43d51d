# -*- coding: utf-8 -*-
"""Agreement version storage: one active version per agreement type."""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from agreement_ledger.exceptions import NoActiveVersion, VersionConflict
from agreement_ledger.extensions import db
from agreement_ledger.legal import AgreementType, optional_string, require_agreement_text, require_version_label
from agreement_ledger.models import AgreementVersion
from agreement_ledger.utils.integrity import hash_agreement_text

logger = logging.getLogger(__name__)


def _active_query(agreement_type: AgreementType):
    return AgreementVersion.query.filter_by(agreement_type=agreement_type.value, is_active=True)


def find_active_version(agreement_type, *, for_update: bool = False) -> Optional[AgreementVersion]:
    agreement_type = AgreementType.parse(agreement_type)
    query = _active_query(agreement_type)
    if for_update:
        # FOR UPDATE is dropped by dialects without row locks (sqlite)
        query = query.with_for_update()
    return query.first()


def get_active_version(agreement_type, *, for_update: bool = False) -> AgreementVersion:
    agreement_type = AgreementType.parse(agreement_type)
    version = find_active_version(agreement_type, for_update=for_update)
    if version is None:
        raise NoActiveVersion(agreement_type.value)
    return version


def get_version(agreement_type, version: str) -> Optional[AgreementVersion]:
    agreement_type = AgreementType.parse(agreement_type)
    return AgreementVersion.query.filter_by(agreement_type=agreement_type.value, version=version).first()


def list_versions(agreement_type=None) -> List[AgreementVersion]:
    query = AgreementVersion.query
    if agreement_type is not None:
        query = query.filter_by(agreement_type=AgreementType.parse(agreement_type).value)
    return query.order_by(AgreementVersion.created_at.desc(), AgreementVersion.id.desc()).all()


def version_history(agreement_type, limit: int = 20) -> List[AgreementVersion]:
    agreement_type = AgreementType.parse(agreement_type)
    return (
        AgreementVersion.query.filter_by(agreement_type=agreement_type.value)
        .order_by(AgreementVersion.effective_date.desc(), AgreementVersion.id.desc())
        .limit(max(1, int(limit)))
        .all()
    )


def count_active_versions(agreement_type) -> int:
    return _active_query(AgreementType.parse(agreement_type)).count()


def rotate_version(
    agreement_type,
    version: str,
    text: str,
    effective_date: Optional[datetime] = None,
    created_by: Optional[str] = None,
    *,
    change_description: Optional[str] = None,
    now_utc: Optional[datetime] = None,
) -> AgreementVersion:
    """
    Deactivate the current active version and insert the new one as active.

    Runs inside the caller's transaction; nothing is committed here. The old row is
    flushed inactive before the new row is inserted, so the one-active index never sees
    two active rows, and the caller's single commit means readers never see zero.
    """
    agreement_type = AgreementType.parse(agreement_type)
    label = require_version_label(version)
    text = require_agreement_text(text)
    created_by = optional_string(created_by, "created_by", 100) or None
    change_description = optional_string(change_description, "change_description", 500) or None
    now = now_utc or datetime.utcnow()

    if get_version(agreement_type, label) is not None:
        raise VersionConflict(agreement_type.value, label)

    current = find_active_version(agreement_type, for_update=True)
    if current is not None:
        current.is_active = False
        current.expiry_date = now
        db.session.flush()
        logger.info(
            "[VERSIONS] deactivated %s version %s (id=%s)",
            agreement_type.value,
            current.version,
            current.id,
        )

    new_version = AgreementVersion(
        agreement_type=agreement_type.value,
        version=label,
        effective_date=effective_date or now,
        agreement_text=text,
        agreement_hash=hash_agreement_text(text),
        created_by=created_by,
        change_description=change_description,
        is_active=True,
        created_at=now,
    )
    db.session.add(new_version)
    try:
        db.session.flush()
    except IntegrityError:
        logger.warning("[VERSIONS] concurrent rotation for %s version %s", agreement_type.value, label)
        raise VersionConflict(agreement_type.value, label) from None

    logger.info(
        "[VERSIONS] activated %s version %s hash=%s",
        agreement_type.value,
        label,
        new_version.agreement_hash,
    )
    return new_version
