"""Application-specific exceptions.

:class:`ValidationError` signals bad input (empty agreement text, unknown
agreement type). Everything the consent core raises on purpose derives from
:class:`ConsentError`, which carries a machine-readable code and the HTTP
status the route layer answers with.
"""

from __future__ import annotations


class ConsentError(Exception):
    """Base class for typed consent failures."""

    code = "consent_error"
    status = 400

    def __init__(self, message: str | None = None, *, details: object | None = None) -> None:
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Serialize the error into a JSON-friendly dictionary."""

        data = {"code": self.code, "message": self.message}
        if self.details is not None:
            data["details"] = self.details
        return data


class ValidationError(ConsentError, ValueError):
    """Raised when input validation fails.

    Parameters
    ----------
    message:
        Human-readable error message.
    field:
        Optional name of the field/parameter that failed validation.
    code:
        Optional machine-readable error code.
    details:
        Optional extra context (e.g. structured errors).
    """

    code = "validation_error"
    status = 400

    def __init__(
        self,
        message: str = "Validation error",
        *,
        field: str | None = None,
        code: str | None = None,
        details: object | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.field = field
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.field is not None:
            data["field"] = self.field
        return data


# --- NotFound ---

class NotFoundError(ConsentError):
    code = "not_found"
    status = 404


class MemberNotFound(NotFoundError):
    """Member not found."""

    code = "member_not_found"

    def __init__(self, member_id) -> None:
        super().__init__(f"Member not found: {member_id}")
        self.member_id = member_id


class NoActiveVersion(NotFoundError):
    """No active agreement version."""

    code = "no_active_version"

    def __init__(self, agreement_type) -> None:
        super().__init__(f"No active {agreement_type} agreement version found")
        self.agreement_type = agreement_type


class NoAcceptanceToWithdraw(NotFoundError):
    """No current agreement acceptance found to withdraw."""

    code = "no_acceptance_to_withdraw"


class AcceptanceRecordNotFound(NotFoundError):
    code = "acceptance_record_not_found"

    def __init__(self, record_id) -> None:
        super().__init__(f"Acceptance record not found: {record_id}")
        self.record_id = record_id


# --- Conflict ---

class ConflictError(ConsentError):
    code = "conflict"
    status = 409


class AcceptanceConflict(ConflictError):
    """Concurrent acceptance could not be reconciled."""

    code = "acceptance_conflict"


class VersionConflict(ConflictError):
    code = "version_conflict"

    def __init__(self, agreement_type, version) -> None:
        super().__init__(f"{agreement_type} agreement version {version!r} already exists")
        self.agreement_type = agreement_type
        self.version = version


# --- Integrity ---

class AgreementIntegrityError(ConsentError):
    code = "integrity_error"
    status = 422


class HashMismatch(AgreementIntegrityError):
    """Agreement hash mismatch - possible tampering detected."""

    code = "hash_mismatch"


class ImmutableRecordError(AgreementIntegrityError):
    """Ledger records cannot be modified or deleted."""

    code = "immutable_record"
    status = 500
