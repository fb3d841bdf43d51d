# -*- coding: utf-8 -*-
"""
Derived member flags, recomputed from the ledger against the active versions.

The flags on Member are a cache for display. Decisions go through
consent_service.has_accepted_current_version, never through this module.
"""

import logging
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Dict, List, Optional

from agreement_ledger.exceptions import MemberNotFound
from agreement_ledger.extensions import db
from agreement_ledger.legal import AgreementType
from agreement_ledger.models import Member
from agreement_ledger.services import acceptance_ledger, version_store

logger = logging.getLogger(__name__)

FLAG_COLUMNS = {
    AgreementType.ORGANISER: ("has_accepted_organiser_agreement", "organiser_agreement_accepted_at"),
    AgreementType.USER: ("has_accepted_user_agreement", "user_agreement_accepted_at"),
}
CAPABILITY_COLUMN = "is_organiser"


@dataclass(frozen=True)
class MemberState:
    has_accepted_organiser_agreement: bool = False
    organiser_agreement_accepted_at: Optional[datetime] = None
    has_accepted_user_agreement: bool = False
    user_agreement_accepted_at: Optional[datetime] = None
    is_organiser: bool = False

    def as_dict(self) -> Dict[str, object]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def project_member_state(member_id: int) -> MemberState:
    values: Dict[str, object] = {}
    for agreement_type, (flag, accepted_at) in FLAG_COLUMNS.items():
        active = version_store.find_active_version(agreement_type)
        record = None
        if active is not None:
            record = acceptance_ledger.find_open_acceptance(member_id, agreement_type, active.version)
        current = record is not None
        values[flag] = current
        values[accepted_at] = record.accepted_at if current else None
    values[CAPABILITY_COLUMN] = bool(values["has_accepted_organiser_agreement"])
    return MemberState(**values)


def apply_member_state(member: Member, state: MemberState, include_capability: bool = True) -> List[str]:
    """Write the projection onto the member row. Returns the names of changed columns."""
    changed = []
    for name, value in state.as_dict().items():
        if name == CAPABILITY_COLUMN and not include_capability:
            continue
        if getattr(member, name) != value:
            setattr(member, name, value)
            changed.append(name)
    return changed


def refresh_member_flags(member: Member) -> List[str]:
    """Consent-service hook: refresh cached agreement flags, leaving the capability to its event handler."""
    return apply_member_state(member, project_member_state(member.id), include_capability=False)


def reconcile_member(member_id: int) -> List[str]:
    member = db.session.get(Member, member_id)
    if member is None:
        raise MemberNotFound(member_id)
    changed = apply_member_state(member, project_member_state(member_id))
    if changed:
        logger.info("[STATE] reconciled member_id=%s fields=%s", member_id, ",".join(changed))
    return changed


def reconcile_all_members(batch_size: int = 200) -> Dict[int, List[str]]:
    repaired: Dict[int, List[str]] = {}
    last_id = 0
    while True:
        batch = (
            Member.query.filter(Member.id > last_id)
            .order_by(Member.id.asc())
            .limit(batch_size)
            .all()
        )
        if not batch:
            return repaired
        for member in batch:
            changed = apply_member_state(member, project_member_state(member.id))
            if changed:
                repaired[member.id] = changed
        last_id = batch[-1].id
