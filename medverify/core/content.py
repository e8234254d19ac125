"""
Content storage for uploaded record documents.

The workflow only ever handles the content hash returned here. Document
bytes are opaque: nothing in this package reads them back or inspects them.
"""

import hashlib
from abc import ABC, abstractmethod
from threading import Lock
from typing import Optional

import requests

from ..db.config import ContentConfig
from ..observability import get_logger
from .errors import ContentUnavailable

logger = get_logger(__name__)


class ContentStore(ABC):
    """Stores document bytes and returns a content hash."""

    @abstractmethod
    def upload(self, data: bytes, filename: str) -> str:
        pass


class PinataContentStore(ContentStore):
    """Pins documents through the Pinata pinFileToIPFS endpoint."""

    def __init__(self, config: ContentConfig, session: Optional[requests.Session] = None):
        if not config.enabled:
            raise ValueError("PinataContentStore requires an API key and secret")
        self._config = config
        self._session = session or requests.Session()

    def upload(self, data: bytes, filename: str) -> str:
        headers = {
            "pinata_api_key": self._config.pinata_api_key,
            "pinata_secret_api_key": self._config.pinata_secret,
        }
        try:
            response = self._session.post(
                self._config.pinata_url,
                files={"file": (filename, data)},
                headers=headers,
                timeout=self._config.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            raise ContentUnavailable(f"Upload of {filename} failed: {e}") from e
        except ValueError as e:
            raise ContentUnavailable("Pinning service returned a non-JSON response") from e

        content_hash = body.get("IpfsHash")
        if not content_hash:
            raise ContentUnavailable("Pinning service response has no IpfsHash")

        logger.info("Content pinned", file_name=filename, content_hash=content_hash, size=len(data))
        return content_hash


class InMemoryContentStore(ContentStore):
    """Keeps documents in memory, keyed by their SHA-256."""

    def __init__(self):
        self._lock = Lock()
        self._blobs: dict[str, bytes] = {}

    def upload(self, data: bytes, filename: str) -> str:
        content_hash = hashlib.sha256(data).hexdigest()
        with self._lock:
            self._blobs[content_hash] = data
        return content_hash

    def get(self, content_hash: str) -> Optional[bytes]:
        return self._blobs.get(content_hash)


def create_content_store(config: ContentConfig) -> ContentStore:
    if config.enabled:
        return PinataContentStore(config)
    logger.info("Pinata keys not configured; using in-memory content store")
    return InMemoryContentStore()
