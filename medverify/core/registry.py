"""
Registry Cache

Holds the participant directories (registered doctors, registered
insurers) fetched from the external directory service.

The cache is the only mutable structure shared across concurrent
readers. refresh() builds a complete new snapshot and swaps it in under
one lock; readers grab the current snapshot reference and never see a
half-updated directory.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from types import MappingProxyType
from typing import Any, Mapping, Optional

import requests

from ..db.config import DirectoryConfig
from ..observability import get_logger, get_metrics
from ..schemas import Participant, Role, normalize_name
from .errors import DirectoryUnavailable

logger = get_logger(__name__)


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable directory state at one refresh."""
    providers: Mapping[str, Participant] = field(
        default_factory=lambda: MappingProxyType({})
    )
    insurers: Mapping[str, Participant] = field(
        default_factory=lambda: MappingProxyType({})
    )
    refreshed_at: Optional[datetime] = None


# ============================================================
# DIRECTORY CLIENTS
# ============================================================

class Directory(ABC):
    """Source of participant names (GET /providers, GET /insurers)."""

    @abstractmethod
    def list_providers(self) -> list[Participant]:
        pass

    @abstractmethod
    def list_insurers(self) -> list[Participant]:
        pass


def _parse_entries(body: Any, role: Role, keys: tuple[str, ...]) -> list[Participant]:
    """
    Parse a directory response.

    Accepts a bare list, or an object wrapping the list under one of
    `keys`. Entries are {"name": ...}, {"username": ...} or plain strings.
    """
    items = body
    if isinstance(body, dict):
        items = next((body[k] for k in keys if k in body), [])

    if not isinstance(items, list):
        raise DirectoryUnavailable(
            f"Malformed {role.value} directory response: expected a list"
        )

    participants = []
    for item in items:
        if isinstance(item, str):
            name, address = item, None
        elif isinstance(item, dict):
            name = item.get("name") or item.get("username")
            address = item.get("address")
        else:
            continue
        if not name or not str(name).strip():
            continue
        participants.append(
            Participant(display_name=str(name).strip(), role=role, address=address)
        )
    return participants


class DirectoryClient(Directory):
    """
    HTTP client for the directory service.

    Never mutates the directory; used only to populate RegistryCache.
    """

    def __init__(self, config: DirectoryConfig, session: Optional[requests.Session] = None):
        if not config.base_url:
            raise ValueError("DirectoryClient requires a base_url")
        self._config = config
        self._session = session or requests.Session()

    def _get(self, path: str) -> Any:
        url = self._config.base_url.rstrip("/") + path
        try:
            response = self._session.get(url, timeout=self._config.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise DirectoryUnavailable(f"Directory request to {url} failed: {e}") from e
        except ValueError as e:
            raise DirectoryUnavailable(f"Directory response from {url} is not JSON") from e

    def list_providers(self) -> list[Participant]:
        body = self._get(self._config.providers_path)
        return _parse_entries(body, Role.DOCTOR, ("providers", "doctors"))

    def list_insurers(self) -> list[Participant]:
        body = self._get(self._config.insurers_path)
        return _parse_entries(body, Role.INSURER, ("insurers", "insurance"))


class StaticDirectory(Directory):
    """Fixed directory for development and tests."""

    def __init__(self, providers: Optional[list[str]] = None, insurers: Optional[list[str]] = None):
        self.providers = list(providers or [])
        self.insurers = list(insurers or [])

    def list_providers(self) -> list[Participant]:
        return _parse_entries(self.providers, Role.DOCTOR, ())

    def list_insurers(self) -> list[Participant]:
        return _parse_entries(self.insurers, Role.INSURER, ())


# ============================================================
# CACHE
# ============================================================

class RegistryCache:
    """
    Pure lookup over the latest directory snapshot; refreshable.

    Names are looked up case-insensitively. When two directory entries
    differ only in case, the first one listed is kept.
    """

    def __init__(self, directory: Directory):
        self._directory = directory
        self._snapshot = RegistrySnapshot()
        self._write_lock = Lock()

    @property
    def snapshot(self) -> RegistrySnapshot:
        """Current snapshot (a consistent, immutable view)."""
        return self._snapshot

    def refresh(self) -> RegistrySnapshot:
        """
        Replace the entire snapshot atomically.

        On DirectoryUnavailable the previous snapshot stays in place.
        """
        providers = self._index(self._directory.list_providers())
        insurers = self._index(self._directory.list_insurers())

        snapshot = RegistrySnapshot(
            providers=MappingProxyType(providers),
            insurers=MappingProxyType(insurers),
            refreshed_at=datetime.now(timezone.utc),
        )
        with self._write_lock:
            self._snapshot = snapshot

        get_metrics().record_registry_refresh()
        logger.info(
            "Registry refreshed",
            providers=len(providers),
            insurers=len(insurers),
        )
        return snapshot

    @staticmethod
    def _index(participants: list[Participant]) -> dict[str, Participant]:
        index: dict[str, Participant] = {}
        for participant in participants:
            index.setdefault(participant.key, participant)
        return index

    def lookup(self, name: str) -> Optional[Participant]:
        """Find a participant of either role by name (case-insensitive)."""
        snapshot = self._snapshot
        key = normalize_name(name)
        return snapshot.providers.get(key) or snapshot.insurers.get(key)

    def lookup_provider(self, name: str) -> Optional[Participant]:
        return self._snapshot.providers.get(normalize_name(name))

    def lookup_insurer(self, name: str) -> Optional[Participant]:
        return self._snapshot.insurers.get(normalize_name(name))

    def providers(self) -> list[Participant]:
        return list(self._snapshot.providers.values())

    def insurers(self) -> list[Participant]:
        return list(self._snapshot.insurers.values())
