"""
Canonical Participant Schema

Who may act on a record?
Doctors and insurers come from an external directory; patients are
identified only by their ledger address.

Names are free text on the ledger. They are used as foreign keys
(the insurer a request is addressed to, the provider a record is
uploaded against), so every comparison goes through normalize_name().
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def normalize_name(name: Optional[str]) -> str:
    """
    Canonical comparison key for a free-text participant name.

    The ledger stores names without canonicalization, so "Acme",
    " acme" and "ACME" all refer to the same insurer.
    """
    if name is None:
        return ""
    return name.strip().casefold()


def normalize_address(address: Optional[str]) -> str:
    """Canonical comparison key for a ledger address (hex, case-insensitive)."""
    if address is None:
        return ""
    return address.strip().lower()


class Role(str, Enum):
    """
    Workflow roles.

    Each role has its own allowed-transition table in the workflow guard.
    """
    PATIENT = "patient"     # Uploads records
    DOCTOR = "doctor"       # Provider: requests insurance review, verifies
    INSURER = "insurer"     # Approves verification requests


class Participant(BaseModel):
    """
    A directory entry.

    Immutable once registered: no renaming, no re-addressing.
    """
    model_config = ConfigDict(frozen=True)

    display_name: str = Field(
        ...,
        min_length=1,
        description="Name as registered (original case kept for display)"
    )

    role: Role = Field(
        ...,
        description="doctor or insurer"
    )

    address: Optional[str] = Field(
        default=None,
        description="Ledger address, when the directory exposes it"
    )

    @property
    def key(self) -> str:
        """Case-folded lookup key."""
        return normalize_name(self.display_name)


class Actor(BaseModel):
    """
    The identity proposing a state change.

    `name` is the registered display name for doctors and insurers and
    may be None for patients.
    """
    model_config = ConfigDict(frozen=True)

    address: str
    role: Role
    name: Optional[str] = None
