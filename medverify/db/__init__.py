"""
Ledger Access Layer for medverify

Provides:
- Ledger client abstraction (InMemory for dev, Web3 for a JSON-RPC node)
- Projection builder and projector (read models for dashboards)
- Connection and replay configuration
"""

from .config import (
    ContentConfig,
    DirectoryConfig,
    LedgerConfig,
    LedgerDriver,
    get_ledger_driver,
)
from .ledger import (
    EventSource,
    InMemoryLedger,
    LedgerClient,
    LedgerWriter,
    PointLookups,
    RecordDetails,
    RequestDetails,
    Web3Ledger,
    create_ledger,
)
from .projections import BuildResult, ProjectionBuilder, Projector, Viewer

__all__ = [
    "ContentConfig",
    "DirectoryConfig",
    "LedgerConfig",
    "LedgerDriver",
    "get_ledger_driver",
    "EventSource",
    "InMemoryLedger",
    "LedgerClient",
    "LedgerWriter",
    "PointLookups",
    "RecordDetails",
    "RequestDetails",
    "Web3Ledger",
    "create_ledger",
    "BuildResult",
    "ProjectionBuilder",
    "Projector",
    "Viewer",
]
