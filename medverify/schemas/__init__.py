# Canonical Schemas for the record verification workflow
# These define the contract that ledger data must obey inside this system.

from .participant import (
    Actor,
    Participant,
    Role,
    normalize_address,
    normalize_name,
)
from .events import (
    EventKind,
    RawEvent,
    RecordCreatedPayload,
    VerificationRequestedPayload,
)
from .record import Record, RecordView, VerificationRequest
from .intents import (
    ApproveRequestIntent,
    CreateRecordIntent,
    IntentKind,
    IssueRequestIntent,
    Receipt,
    VerifyByProviderIntent,
    WriteIntent,
)

__all__ = [
    # Participants
    "Actor",
    "Participant",
    "Role",
    "normalize_address",
    "normalize_name",
    # Events
    "EventKind",
    "RawEvent",
    "RecordCreatedPayload",
    "VerificationRequestedPayload",
    # Records
    "Record",
    "RecordView",
    "VerificationRequest",
    # Intents
    "ApproveRequestIntent",
    "CreateRecordIntent",
    "IntentKind",
    "IssueRequestIntent",
    "Receipt",
    "VerifyByProviderIntent",
    "WriteIntent",
]
