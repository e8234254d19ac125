"""
Write Intents

State changes are never applied locally. A client expresses an intent,
the workflow guard pre-checks it, and the ledger decides.

Every intent carries the ledger address that sends it.
"""

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class IntentKind(str, Enum):
    """Ledger write calls this client submits."""
    CREATE_RECORD = "createRecord"
    ISSUE_REQUEST = "issueRequest"
    APPROVE_REQUEST = "approveRequest"
    VERIFY_BY_PROVIDER = "verifyByProvider"


class _Intent(BaseModel):
    model_config = ConfigDict(frozen=True)

    sender: str = Field(
        ...,
        min_length=1,
        description="Ledger address submitting the intent"
    )


class CreateRecordIntent(_Intent):
    """Patient uploads a record against a provider."""
    kind: IntentKind = IntentKind.CREATE_RECORD
    patient_name: str = Field(..., min_length=1)
    content_hash: str = Field(..., min_length=1)
    provider_name: str = Field(..., min_length=1)


class IssueRequestIntent(_Intent):
    """Provider asks an insurer to review a record."""
    kind: IntentKind = IntentKind.ISSUE_REQUEST
    token_id: int = Field(..., ge=0)
    insurer_name: str = Field(..., min_length=1)
    doctor_name: str = Field(..., min_length=1)


class ApproveRequestIntent(_Intent):
    """Insurer approves the live request on a record."""
    kind: IntentKind = IntentKind.APPROVE_REQUEST
    token_id: int = Field(..., ge=0)


class VerifyByProviderIntent(_Intent):
    """Provider marks the record verified."""
    kind: IntentKind = IntentKind.VERIFY_BY_PROVIDER
    token_id: int = Field(..., ge=0)


WriteIntent = Union[
    CreateRecordIntent,
    IssueRequestIntent,
    ApproveRequestIntent,
    VerifyByProviderIntent,
]


class Receipt(BaseModel):
    """
    Outcome of an accepted intent.

    Callers use it to refresh the affected record's projection; a
    follow-up build is the only way to observe the effect deterministically.
    """
    model_config = ConfigDict(frozen=True)

    intent: IntentKind
    transaction_hash: str
    log_position: int = Field(..., ge=0)
    token_id: Optional[int] = Field(
        default=None,
        description="Affected record; for createRecord, the newly assigned token"
    )
