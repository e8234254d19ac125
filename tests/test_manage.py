"""
Tests for the management CLI.
"""

import json

import pytest

from medverify.core import RegistryCache, StaticDirectory, VerificationWorkflow
from medverify.db import InMemoryLedger, LedgerConfig, Projector
from medverify.schemas import CreateRecordIntent
from tools import manage

PATIENT = "0x1111111111111111111111111111111111111111"
HOSPITAL = "0x2222222222222222222222222222222222222222"


@pytest.fixture
def services(monkeypatch):
    ledger = InMemoryLedger()
    ledger.register_provider(HOSPITAL, "GeneralHospital")
    ledger.send(CreateRecordIntent(
        sender=PATIENT,
        patient_name="Jane Roe",
        content_hash="QmHash",
        provider_name="GeneralHospital",
    ))
    registry = RegistryCache(StaticDirectory(providers=["GeneralHospital"], insurers=["Acme"]))
    projector = Projector(ledger, LedgerConfig(fetch_window=10), retry_delay=0)
    workflow = VerificationWorkflow(ledger, registry, projector)
    monkeypatch.setattr(manage, "_services", lambda: (ledger, registry, projector, workflow))
    return ledger


class TestCommands:

    def test_records(self, services, capsys):
        assert manage.main(["records", "--role", "patient", "--address", PATIENT]) == 0
        out = capsys.readouterr().out
        assert "1 record(s)" in out
        assert "provider=GeneralHospital" in out

    def test_events_json(self, services, capsys):
        assert manage.main(["events", "--kind", "RecordCreated", "--json"]) == 0
        events = json.loads(capsys.readouterr().out)
        assert [e["args"]["token_id"] for e in events] == [1]

    def test_check_allowed(self, services, capsys):
        code = manage.main([
            "check", "--token-id", "1", "--transition", "verify_by_provider",
            "--role", "doctor", "--address", HOSPITAL, "--name", "GeneralHospital",
        ])
        assert code == 0
        assert "[OK]" in capsys.readouterr().out

    def test_check_denied(self, services, capsys):
        code = manage.main([
            "check", "--token-id", "1", "--transition", "approve_request",
            "--role", "doctor", "--address", HOSPITAL, "--name", "GeneralHospital",
        ])
        assert code == 2
        assert "[DENIED] RoleNotPermitted" in capsys.readouterr().out

    def test_registry(self, services, capsys):
        assert manage.main(["registry"]) == 0
        assert "Acme" in capsys.readouterr().out

    def test_no_command(self, capsys):
        assert manage.main([]) == 1
