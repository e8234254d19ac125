"""
Canonical Record Schema

A record is a single uploaded document's ledger identity plus its metadata.
Records are created once, never deleted, never reassigned.

RecordView is the read model exposed to consumers. It is produced only by
the projection builder and never hand-edited.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Record(BaseModel):
    """
    The record as registered on the ledger.

    token_id is assigned by the ledger at creation and is immutable.
    """
    model_config = ConfigDict(frozen=True)

    token_id: int = Field(..., ge=0)

    patient_name: Optional[str] = Field(
        default=None,
        description="Patient name as written at upload time"
    )

    content_hash: Optional[str] = Field(
        default=None,
        description="Pointer into external content storage (e.g. an IPFS CID)"
    )

    provider_name: str = Field(
        ...,
        description="Doctor/hospital that reviews this record"
    )

    owner_address: str = Field(
        ...,
        description="Ledger identity of the patient"
    )


class VerificationRequest(BaseModel):
    """
    A provider's request for insurer review of a record.

    Created by a doctor action; mutated only by the matching insurer's
    approval. At most one request is live (unapproved) per record in the
    supported workflow.
    """
    model_config = ConfigDict(frozen=True)

    token_id: int = Field(..., ge=0)
    insurer_name: str
    requesting_doctor_name: str
    issued_at: Optional[int] = Field(
        default=None,
        description="Log position the request was issued at"
    )
    approved: bool = False
    superseded: bool = Field(
        default=False,
        description="A later request to another insurer replaced this one on the ledger"
    )

    @property
    def is_live(self) -> bool:
        return not self.approved and not self.superseded


class RecordView(BaseModel):
    """
    Materialized, read-only projection of one record.

    doctor_verified and insurer_verified reflect point lookups taken after
    the event window was read; they may be newer than the attached request.
    """
    model_config = ConfigDict(frozen=True)

    record: Record
    verification_request: Optional[VerificationRequest] = None
    doctor_verified: bool = False
    insurer_verified: bool = False

    @property
    def token_id(self) -> int:
        return self.record.token_id

    @property
    def has_request(self) -> bool:
        return self.verification_request is not None

    @property
    def has_live_request(self) -> bool:
        return self.verification_request is not None and self.verification_request.is_live

    @property
    def is_terminal(self) -> bool:
        """Doctor-verified with an approved (or absent) request."""
        return self.doctor_verified and not self.has_live_request

    @property
    def fully_verified(self) -> bool:
        return self.doctor_verified and self.insurer_verified

    @property
    def insurance_status(self) -> str:
        if self.verification_request is not None and self.verification_request.superseded:
            return "Superseded"
        if self.insurer_verified:
            return "Approved"
        if self.has_request:
            return "Requested"
        return "Not Requested"
