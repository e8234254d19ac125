# Core workflow services
from .errors import (
    AlreadyRequested,
    AlreadyVerified,
    ContentUnavailable,
    DenialReason,
    DirectoryUnavailable,
    InsuranceNotApproved,
    LookupFailed,
    MedverifyError,
    NotProvider,
    NotRequested,
    RecordNotFound,
    RegistryMiss,
    Rejected,
    RoleNotPermitted,
    SourceUnavailable,
    UnknownInsurer,
    UnknownProvider,
    WorkflowDenied,
    WrongInsurer,
)
from .dedup import count_duplicates, deduplicate
from .registry import (
    Directory,
    DirectoryClient,
    RegistryCache,
    RegistrySnapshot,
    StaticDirectory,
)
from .guard import ALLOWED_TRANSITIONS, GuardDecision, Transition, WorkflowGuard
from .submitter import ActionSubmitter
from .content import (
    ContentStore,
    InMemoryContentStore,
    PinataContentStore,
    create_content_store,
)
from .workflow import VerificationWorkflow

__all__ = [
    "AlreadyRequested",
    "AlreadyVerified",
    "ContentUnavailable",
    "DenialReason",
    "DirectoryUnavailable",
    "InsuranceNotApproved",
    "LookupFailed",
    "MedverifyError",
    "NotProvider",
    "NotRequested",
    "RecordNotFound",
    "RegistryMiss",
    "Rejected",
    "RoleNotPermitted",
    "SourceUnavailable",
    "UnknownInsurer",
    "UnknownProvider",
    "WorkflowDenied",
    "WrongInsurer",
    "count_duplicates",
    "deduplicate",
    "Directory",
    "DirectoryClient",
    "RegistryCache",
    "RegistrySnapshot",
    "StaticDirectory",
    "ALLOWED_TRANSITIONS",
    "GuardDecision",
    "Transition",
    "WorkflowGuard",
    "ActionSubmitter",
    "ContentStore",
    "InMemoryContentStore",
    "PinataContentStore",
    "create_content_store",
    "VerificationWorkflow",
]
