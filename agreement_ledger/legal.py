import hashlib
import os
from dataclasses import dataclass
from enum import Enum
from ipaddress import ip_address, ip_network
from typing import Optional

from agreement_ledger.exceptions import ValidationError

LEGAL_IP_HASH_SALT = os.environ.get("LEGAL_IP_HASH_SALT", "").strip()

# raw | normalized
LEGAL_IP_MODE = os.environ.get("LEGAL_IP_MODE", "raw").strip().lower() or "raw"

DEFAULT_CONSENT_METHOD = "web_form"
WITHDRAWAL_CONSENT_METHOD = "withdrawal"

RECORD_KIND_ACCEPTANCE = "acceptance"
RECORD_KIND_WITHDRAWAL = "withdrawal"

MAX_VERSION_LABEL_LENGTH = 32
MAX_USER_AGENT_LENGTH = 512


class AgreementType(str, Enum):
    ORGANISER = "ORGANISER"
    USER = "USER"

    @property
    def display_name(self) -> str:
        return "Organiser Agreement" if self is AgreementType.ORGANISER else "User Agreement"

    @classmethod
    def parse(cls, value) -> "AgreementType":
        """
        Parse a stored or user-supplied value ("organiser", "USER", enum member).
        Raises ValidationError for anything else.
        """
        if isinstance(value, cls):
            return value
        raw = str(value or "").strip().upper()
        try:
            return cls(raw)
        except ValueError:
            raise ValidationError(
                f"Unknown agreement type: {value}",
                field="agreement_type",
                code="unknown_agreement_type",
            ) from None

    def __str__(self) -> str:
        return self.value


class ConsentState(str, Enum):
    NO_ACCEPTANCE = "no_acceptance"
    ACCEPTED_CURRENT = "accepted_current"
    ACCEPTED_STALE = "accepted_stale"
    WITHDRAWN = "withdrawn"

    @property
    def authorizes(self) -> bool:
        return self is ConsentState.ACCEPTED_CURRENT


@dataclass(frozen=True)
class ConsentContext:
    """Request metadata captured with each consent event. Stored verbatim."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    referrer_url: Optional[str] = None
    browser_fingerprint: Optional[str] = None
    consent_method: str = DEFAULT_CONSENT_METHOD


def normalize_legal_ip(raw_ip: str) -> str:
    """
    Reduce IP precision before storing consent audit records.
    This keeps auditability while limiting exposure of full IP data.
    """
    if not raw_ip:
        return "unknown"
    if LEGAL_IP_HASH_SALT:
        digest = hashlib.sha256(f"{LEGAL_IP_HASH_SALT}{raw_ip}".encode("utf-8")).hexdigest()
        return digest
    try:
        parsed = ip_address(raw_ip)
    except ValueError:
        return raw_ip[:64]
    if parsed.version == 4:
        network = ip_network(f"{parsed}/24", strict=False)
        return str(network.network_address)
    network = ip_network(f"{parsed}/64", strict=False)
    return str(network.network_address)


def parse_legal_confirm(value) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def optional_string(value, field: str, max_length: Optional[int] = None) -> Optional[str]:
    """None passes through; anything else must be a string (JSON numbers, lists and objects are rejected)."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field=field, code="invalid_type")
    return value[:max_length] if max_length else value


def require_agreement_text(text) -> str:
    text = optional_string(text, "agreement_text")
    if text is None or not text.strip():
        raise ValidationError(
            "Agreement text cannot be empty",
            field="agreement_text",
            code="empty_agreement_text",
        )
    return text


def require_version_label(version) -> str:
    label = (optional_string(version, "version") or "").strip()
    if not label:
        raise ValidationError("Version is required", field="version", code="missing_version")
    if len(label) > MAX_VERSION_LABEL_LENGTH:
        raise ValidationError(
            f"Version label exceeds {MAX_VERSION_LABEL_LENGTH} characters",
            field="version",
            code="version_too_long",
        )
    return label
