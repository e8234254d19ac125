"""
Error taxonomy.

Transient:
- SourceUnavailable / DirectoryUnavailable: retry with the same window

Surfaced, never retried:
- RegistryMiss (UnknownInsurer, UnknownProvider)
- WorkflowDenied (guard denials, always with the specific reason)
- Rejected (the ledger's authoritative refusal, kept verbatim)
"""

from enum import Enum
from typing import Optional


class DenialReason(str, Enum):
    """Why the workflow guard refused a transition."""
    UNKNOWN_INSURER = "UnknownInsurer"
    UNKNOWN_PROVIDER = "UnknownProvider"
    ALREADY_REQUESTED = "AlreadyRequested"
    NOT_REQUESTED = "NotRequested"
    WRONG_INSURER = "WrongInsurer"
    INSURANCE_NOT_APPROVED = "InsuranceNotApproved"
    ALREADY_VERIFIED = "AlreadyVerified"
    NOT_PROVIDER = "NotProvider"
    ROLE_NOT_PERMITTED = "RoleNotPermitted"


class MedverifyError(Exception):
    """Base exception for this package."""
    pass


# ------------------------------------------------------------
# Transport
# ------------------------------------------------------------

class SourceUnavailable(MedverifyError):
    """
    Raised when the ledger cannot be reached for a fetch or point call.

    Fetches are replayable: retry with the same window.
    """

    def __init__(self, message: str, window: Optional[tuple] = None):
        super().__init__(message)
        self.window = window


class DirectoryUnavailable(MedverifyError):
    """Raised when the directory service cannot be reached."""
    pass


class ContentUnavailable(MedverifyError):
    """Raised when content storage cannot be reached or refuses an upload."""
    pass


class RecordNotFound(MedverifyError):
    """Raised when no RecordCreated event exists for a token."""

    def __init__(self, token_id: int):
        super().__init__(f"Record {token_id} not found")
        self.token_id = token_id


class LookupFailed(MedverifyError):
    """Raised when a per-record point lookup fails during a build."""

    def __init__(self, token_id: int, message: str):
        super().__init__(f"Lookup failed for token {token_id}: {message}")
        self.token_id = token_id


# ------------------------------------------------------------
# Workflow denials
# ------------------------------------------------------------

class WorkflowDenied(MedverifyError):
    """Raised when the workflow guard refuses a transition."""
    reason: DenialReason = DenialReason.ROLE_NOT_PERMITTED

    def __init__(self, message: str, token_id: Optional[int] = None):
        super().__init__(message)
        self.token_id = token_id


class RegistryMiss(WorkflowDenied):
    """A name the workflow depends on is not in the directory."""
    pass


class UnknownInsurer(RegistryMiss):
    reason = DenialReason.UNKNOWN_INSURER


class UnknownProvider(RegistryMiss):
    reason = DenialReason.UNKNOWN_PROVIDER


class AlreadyRequested(WorkflowDenied):
    reason = DenialReason.ALREADY_REQUESTED


class NotRequested(WorkflowDenied):
    reason = DenialReason.NOT_REQUESTED


class WrongInsurer(WorkflowDenied):
    reason = DenialReason.WRONG_INSURER


class InsuranceNotApproved(WorkflowDenied):
    reason = DenialReason.INSURANCE_NOT_APPROVED


class AlreadyVerified(WorkflowDenied):
    reason = DenialReason.ALREADY_VERIFIED


class NotProvider(WorkflowDenied):
    reason = DenialReason.NOT_PROVIDER


class RoleNotPermitted(WorkflowDenied):
    reason = DenialReason.ROLE_NOT_PERMITTED


DENIAL_ERRORS: dict[DenialReason, type[WorkflowDenied]] = {
    cls.reason: cls
    for cls in (
        UnknownInsurer,
        UnknownProvider,
        AlreadyRequested,
        NotRequested,
        WrongInsurer,
        InsuranceNotApproved,
        AlreadyVerified,
        NotProvider,
        RoleNotPermitted,
    )
}


# ------------------------------------------------------------
# Ledger authority
# ------------------------------------------------------------

class Rejected(MedverifyError):
    """
    Raised when the ledger's own checks refuse an intent.

    The reason is kept verbatim. Never retried automatically: it reflects
    a ledger-enforced invariant, not a transient fault.
    """

    def __init__(self, reason: str, intent: Optional[str] = None):
        super().__init__(f"Ledger rejected {intent or 'intent'}: {reason}")
        self.reason = reason
        self.intent = intent
