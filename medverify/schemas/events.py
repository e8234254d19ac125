"""
Canonical Event Schema

The ledger is append-only. Nothing is "edited". Things happen.

This client never writes events itself: it reads them back by replaying
log windows. Events can therefore arrive more than once (overlapping or
retried windows) and must be identified by their natural key, not by the
window that delivered them.

Each event:
- Is immutable once emitted
- Is globally ordered by (log_position, log_index)
- Has a natural key used for deduplication
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .participant import normalize_name


class EventKind(str, Enum):
    """
    Ledger event kinds consumed by the projection.
    You can add more later, never remove.
    """
    RECORD_CREATED = "RecordCreated"
    VERIFICATION_REQUESTED = "VerificationRequested"


# ============================================================
# Event Payloads
# Typed views over RawEvent.args
# ============================================================

class RecordCreatedPayload(BaseModel):
    """
    Payload for RecordCreated.

    Emitted exactly once per upload. token_id is assigned by the ledger
    and never reassigned.
    """
    token_id: int = Field(..., ge=0)
    owner_address: str = Field(
        ...,
        description="Ledger identity of the patient who uploaded the record"
    )
    provider_name: str = Field(
        ...,
        description="Doctor/hospital that will review the record"
    )


class VerificationRequestedPayload(BaseModel):
    """
    Payload for VerificationRequested.

    Issued by the provider named on the record, addressed to an insurer
    by free-text name.
    """
    token_id: int = Field(..., ge=0)
    insurer_name: str
    doctor_name: str
    doctor_address: Optional[str] = None


# ============================================================
# The Raw Event Object
# ============================================================

class RawEvent(BaseModel):
    """
    One event as delivered by an EventSource fetch.

    Rules:
    - No UPDATE
    - No DELETE
    - The same event may be delivered by several fetches
    """
    model_config = ConfigDict(frozen=True)

    kind: EventKind
    log_position: int = Field(
        ...,
        ge=0,
        description="Block / log position the event was emitted at"
    )
    log_index: int = Field(
        default=0,
        ge=0,
        description="Index of the event within its log position"
    )
    transaction_hash: Optional[str] = None
    args: dict[str, Any] = Field(default_factory=dict)

    @property
    def token_id(self) -> int:
        return int(self.args["token_id"])

    @property
    def natural_key(self) -> tuple:
        """
        Identity of the event independent of the window that delivered it.

        RecordCreated:          (kind, token_id)
        VerificationRequested:  (kind, token_id, normalized insurer name)
        """
        if self.kind == EventKind.RECORD_CREATED:
            return (self.kind.value, self.token_id)
        if self.kind == EventKind.VERIFICATION_REQUESTED:
            return (
                self.kind.value,
                self.token_id,
                normalize_name(self.args.get("insurer_name")),
            )
        raise ValueError(f"No natural key defined for event kind {self.kind}")

    def record_created(self) -> RecordCreatedPayload:
        if self.kind != EventKind.RECORD_CREATED:
            raise ValueError(f"Expected {EventKind.RECORD_CREATED.value}, got {self.kind.value}")
        return RecordCreatedPayload.model_validate(self.args)

    def verification_requested(self) -> VerificationRequestedPayload:
        if self.kind != EventKind.VERIFICATION_REQUESTED:
            raise ValueError(
                f"Expected {EventKind.VERIFICATION_REQUESTED.value}, got {self.kind.value}"
            )
        return VerificationRequestedPayload.model_validate(self.args)
