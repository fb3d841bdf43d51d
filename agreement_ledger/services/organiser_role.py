# -*- coding: utf-8 -*-
"""Organiser capability: granted and revoked by ORGANISER consent events."""

import logging

from agreement_ledger.events import ConsentGranted, ConsentWithdrawn, consent_granted, consent_withdrawn
from agreement_ledger.extensions import db
from agreement_ledger.legal import AgreementType
from agreement_ledger.models import Member

logger = logging.getLogger(__name__)


def _set_organiser(member_id: int, value: bool) -> None:
    member = db.session.get(Member, member_id)
    if member is None:
        logger.warning("[ROLE] member_id=%s vanished before organiser update", member_id)
        return
    if bool(member.is_organiser) != value:
        member.is_organiser = value
        logger.info("[ROLE] member_id=%s is_organiser=%s", member_id, value)


def on_consent_granted(sender, event: ConsentGranted, **_):
    if sender == AgreementType.ORGANISER.value:
        _set_organiser(event.member_id, True)


def on_consent_withdrawn(sender, event: ConsentWithdrawn, **_):
    if sender == AgreementType.ORGANISER.value:
        _set_organiser(event.member_id, False)


def connect() -> None:
    # blinker keeps one connection per receiver, so repeated create_app() calls are harmless
    consent_granted.connect(on_consent_granted)
    consent_withdrawn.connect(on_consent_withdrawn)


def disconnect() -> None:
    consent_granted.disconnect(on_consent_granted)
    consent_withdrawn.disconnect(on_consent_withdrawn)
