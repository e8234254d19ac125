"""
Ledger and Directory Configuration

Handles connection settings and environment-based configuration.

Environment Variables:
    MEDVERIFY_LEDGER_DRIVER: Which ledger driver to use
        - "memory" (default if no RPC URL configured)
        - "web3" (JSON-RPC node, default when MEDVERIFY_RPC_URL is set)
    MEDVERIFY_RPC_URL: Ledger JSON-RPC endpoint (http:// or https://)
    MEDVERIFY_CONTRACT_ADDRESS: Deployed record contract address
    MEDVERIFY_CONTRACT_ABI: Optional path to the contract ABI JSON
    MEDVERIFY_RPC_TIMEOUT: Seconds per RPC request (default 60)
    MEDVERIFY_START_POSITION: First log position to replay (default 0)
    MEDVERIFY_FETCH_WINDOW: Log positions per fetch window (default 5000)
    MEDVERIFY_FETCH_RETRIES: Retries of one window on SourceUnavailable (default 3)
    MEDVERIFY_LOOKUP_CONCURRENCY: Max concurrent point lookups (default 8)

    MEDVERIFY_DIRECTORY_URL: Directory service base URL
    MEDVERIFY_DIRECTORY_TIMEOUT: Seconds per directory request (default 10)

    MEDVERIFY_PINATA_API_KEY / MEDVERIFY_PINATA_SECRET: content storage keys
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class LedgerDriver(str, Enum):
    """Supported ledger drivers."""
    MEMORY = "memory"
    WEB3 = "web3"


@dataclass
class LedgerConfig:
    """Ledger connection and replay configuration."""
    driver: LedgerDriver = LedgerDriver.MEMORY
    rpc_url: Optional[str] = None
    contract_address: Optional[str] = None
    contract_abi_path: Optional[str] = None
    rpc_timeout: float = 60.0

    # Replay settings
    start_position: int = 0
    fetch_window: int = 5000
    fetch_retries: int = 3

    # Fan-out limiter for per-record point lookups
    lookup_concurrency: int = 8

    def __post_init__(self):
        if self.fetch_window < 1:
            raise ValueError(f"fetch_window must be >= 1, got {self.fetch_window}")
        if self.fetch_retries < 0:
            raise ValueError(f"fetch_retries must be >= 0, got {self.fetch_retries}")
        if self.lookup_concurrency < 1:
            raise ValueError(
                f"lookup_concurrency must be >= 1, got {self.lookup_concurrency}"
            )

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Load configuration from environment variables."""
        return cls(
            driver=get_ledger_driver(),
            rpc_url=os.getenv("MEDVERIFY_RPC_URL") or None,
            contract_address=os.getenv("MEDVERIFY_CONTRACT_ADDRESS") or None,
            contract_abi_path=os.getenv("MEDVERIFY_CONTRACT_ABI") or None,
            rpc_timeout=float(os.getenv("MEDVERIFY_RPC_TIMEOUT", "60")),
            start_position=int(os.getenv("MEDVERIFY_START_POSITION", "0")),
            fetch_window=int(os.getenv("MEDVERIFY_FETCH_WINDOW", "5000")),
            fetch_retries=int(os.getenv("MEDVERIFY_FETCH_RETRIES", "3")),
            lookup_concurrency=int(os.getenv("MEDVERIFY_LOOKUP_CONCURRENCY", "8")),
        )

    def describe(self) -> str:
        """Connection summary safe for logs."""
        if self.driver == LedgerDriver.MEMORY:
            return "in-memory ledger"
        return f"{self.rpc_url} contract={self.contract_address}"


@dataclass
class DirectoryConfig:
    """Directory service configuration."""
    base_url: Optional[str] = None
    timeout: float = 10.0
    providers_path: str = "/providers"
    insurers_path: str = "/insurers"

    @classmethod
    def from_env(cls) -> "DirectoryConfig":
        return cls(
            base_url=os.getenv("MEDVERIFY_DIRECTORY_URL") or None,
            timeout=float(os.getenv("MEDVERIFY_DIRECTORY_TIMEOUT", "10")),
            providers_path=os.getenv("MEDVERIFY_DIRECTORY_PROVIDERS_PATH", "/providers"),
            insurers_path=os.getenv("MEDVERIFY_DIRECTORY_INSURERS_PATH", "/insurers"),
        )


@dataclass
class ContentConfig:
    """Content storage configuration."""
    pinata_api_key: Optional[str] = None
    pinata_secret: Optional[str] = None
    pinata_url: str = "https://api.pinata.cloud/pinning/pinFileToIPFS"
    timeout: float = 60.0

    @property
    def enabled(self) -> bool:
        return bool(self.pinata_api_key and self.pinata_secret)

    @classmethod
    def from_env(cls) -> "ContentConfig":
        return cls(
            pinata_api_key=os.getenv("MEDVERIFY_PINATA_API_KEY") or None,
            pinata_secret=os.getenv("MEDVERIFY_PINATA_SECRET") or None,
        )


def get_ledger_driver() -> LedgerDriver:
    """
    Get the ledger driver to use.

    Checks MEDVERIFY_LEDGER_DRIVER, then falls back to:
    - web3 if MEDVERIFY_RPC_URL is set
    - memory otherwise
    """
    explicit = os.getenv("MEDVERIFY_LEDGER_DRIVER", "").lower()

    if explicit:
        if explicit == "memory":
            return LedgerDriver.MEMORY
        elif explicit == "web3":
            return LedgerDriver.WEB3
        else:
            raise ValueError(
                f"Unknown MEDVERIFY_LEDGER_DRIVER: {explicit}. "
                f"Valid values: memory, web3"
            )

    if os.getenv("MEDVERIFY_RPC_URL"):
        return LedgerDriver.WEB3

    return LedgerDriver.MEMORY
