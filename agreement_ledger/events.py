"""
Consent events emitted by the consent service.

Signals are delivered synchronously inside the emitting transaction, so a receiver's
writes commit or roll back together with the ledger row that triggered them.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from blinker import Namespace

_signals = Namespace()

consent_granted = _signals.signal("consent-granted")
consent_withdrawn = _signals.signal("consent-withdrawn")

CONSENT_GRANTED = "consent.granted"
CONSENT_WITHDRAWN = "consent.withdrawn"


@dataclass(frozen=True)
class ConsentGranted:
    agreement_type: str
    member_id: int
    version: str
    record_id: int
    occurred_at: datetime

    event_type = CONSENT_GRANTED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


@dataclass(frozen=True)
class ConsentWithdrawn:
    agreement_type: str
    member_id: int
    version: str
    record_id: int
    withdrawal_record_id: int
    occurred_at: datetime

    event_type = CONSENT_WITHDRAWN

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


def emit(event: ConsentGranted | ConsentWithdrawn) -> None:
    signal = consent_granted if isinstance(event, ConsentGranted) else consent_withdrawn
    signal.send(event.agreement_type, event=event)
