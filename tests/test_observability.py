"""
Tests for structured logging.
"""

import logging

from medverify.core import PinataContentStore
from medverify.db import ContentConfig
from medverify.observability import get_logger, setup_logging


class PinnedResponse:
    status_code = 200

    def raise_for_status(self):
        pass

    def json(self):
        return {"IpfsHash": "QmPinned"}


class PinningSession:
    def post(self, url, files=None, headers=None, timeout=None):
        return PinnedResponse()


class TestContextLogger:

    def test_record_attribute_names_are_prefixed(self, caplog):
        logger = get_logger("medverify.tests")
        with caplog.at_level(logging.INFO, logger="medverify.tests"):
            logger.info("Uploaded", filename="scan.pdf", module="content", size=4)

        record = caplog.records[-1]
        assert record.field_filename == "scan.pdf"
        assert record.field_module == "content"
        assert record.size == 4

    def test_pinned_upload_under_configured_logging(self, monkeypatch):
        monkeypatch.setenv("MEDVERIFY_LOG_LEVEL", "INFO")
        setup_logging()

        store = PinataContentStore(
            ContentConfig(pinata_api_key="key", pinata_secret="secret"),
            session=PinningSession(),
        )

        assert store.upload(b"scan", "scan.pdf") == "QmPinned"
