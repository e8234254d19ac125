"""
Tests for the HTTP API.

The app is built over an in-memory ledger, a static directory and an
in-memory content store; nothing leaves the process.
"""

import pytest
from fastapi.testclient import TestClient

from medverify.core import InMemoryContentStore, PinataContentStore, StaticDirectory
from medverify.db import ContentConfig, InMemoryLedger, LedgerConfig
from medverify.main import create_app
from medverify.observability import setup_logging

PATIENT = "0x1111111111111111111111111111111111111111"
HOSPITAL = "0x2222222222222222222222222222222222222222"
ACME = "0x3333333333333333333333333333333333333333"
MERCY = "0x4444444444444444444444444444444444444444"

DOCTOR = {"address": HOSPITAL, "role": "doctor", "name": "GeneralHospital"}
INSURER = {"address": ACME, "role": "insurer"}


@pytest.fixture
def ledger():
    ledger = InMemoryLedger()
    ledger.register_provider(HOSPITAL, "GeneralHospital")
    ledger.register_provider(MERCY, "Mercy")
    ledger.register_insurer(ACME, "Acme")
    return ledger


@pytest.fixture
def content_store():
    return InMemoryContentStore()


@pytest.fixture
def client(ledger, content_store):
    app = create_app(
        ledger=ledger,
        directory=StaticDirectory(
            providers=["GeneralHospital", "Mercy"],
            insurers=["Acme"],
        ),
        content_store=content_store,
        ledger_config=LedgerConfig(fetch_window=10),
    )
    with TestClient(app) as client:
        yield client


@pytest.fixture
def token_id(client):
    response = client.post("/api/records", json={
        "address": PATIENT,
        "role": "patient",
        "patient_name": "Jane Roe",
        "content_hash": "QmHash",
        "provider_name": "GeneralHospital",
    })
    assert response.status_code == 201
    return response.json()["token_id"]


class TestSystemEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "medverify"}

    def test_detailed_health(self, client):
        response = client.get("/health/detailed")
        assert response.status_code == 200
        checks = response.json()["checks"]
        assert checks["ledger"]["driver"] == "InMemoryLedger"
        assert checks["registry"]["providers"] == 2

    def test_metrics_count_requests(self, client):
        client.get("/health")
        summary = client.get("/metrics").json()
        assert summary["requests_total"] >= 1
        assert "denials_by_reason" in summary

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "abc12345"})
        assert response.headers["X-Request-ID"] == "abc12345"


class TestRecordLifecycle:

    def test_create_returns_receipt(self, client, token_id):
        assert token_id == 1

    def test_full_lifecycle(self, client, token_id):
        response = client.post(
            f"/api/records/{token_id}/requests",
            json={**DOCTOR, "insurer_name": "acme"},
        )
        assert response.status_code == 201
        assert response.json()["intent"] == "issueRequest"

        response = client.post(f"/api/records/{token_id}/approve", json=INSURER)
        assert response.status_code == 200

        response = client.post(f"/api/records/{token_id}/verify", json=DOCTOR)
        assert response.status_code == 200

        record = client.get(
            f"/api/records/{token_id}",
            params={"role": "patient", "address": PATIENT},
        ).json()
        assert record["fully_verified"]
        assert record["insurance_status"] == "Approved"
        assert record["verification_request"]["insurer_name"] == "Acme"

    def test_dashboards_are_scoped(self, client, token_id):
        patient = client.get("/api/records", params={"role": "patient", "address": PATIENT}).json()
        assert [r["token_id"] for r in patient["records"]] == [token_id]

        insurer = client.get("/api/records", params={"role": "insurer", "address": ACME}).json()
        assert insurer["records"] == []

        client.post(f"/api/records/{token_id}/requests", json={**DOCTOR, "insurer_name": "Acme"})
        insurer = client.get("/api/records", params={"role": "insurer", "address": ACME}).json()
        assert [r["token_id"] for r in insurer["records"]] == [token_id]

    def test_check_is_a_dry_run(self, client, ledger, token_id):
        head = ledger.head()
        response = client.post(
            f"/api/records/{token_id}/check",
            json={**DOCTOR, "transition": "verify_by_provider"},
        )
        assert response.status_code == 200
        assert response.json()["allowed"] is True
        assert ledger.head() == head


class TestErrorMapping:

    def test_guard_denial_is_conflict(self, client, token_id):
        client.post(f"/api/records/{token_id}/requests", json={**DOCTOR, "insurer_name": "Acme"})

        response = client.post(f"/api/records/{token_id}/verify", json=DOCTOR)

        assert response.status_code == 409
        assert response.json()["detail"]["reason"] == "InsuranceNotApproved"

    def test_unknown_insurer_is_not_found(self, client, token_id):
        response = client.post(
            f"/api/records/{token_id}/requests",
            json={**DOCTOR, "insurer_name": "Initech"},
        )
        assert response.status_code == 404
        assert response.json()["detail"]["reason"] == "UnknownInsurer"

    def test_unknown_record(self, client):
        response = client.post("/api/records/404/verify", json=DOCTOR)
        assert response.status_code == 404

    def test_ledger_rejection_is_unprocessable(self, client, token_id):
        """Mercy's address claims GeneralHospital; the ledger knows better."""
        response = client.post(
            f"/api/records/{token_id}/verify",
            json={"address": MERCY, "role": "doctor", "name": "GeneralHospital"},
        )
        assert response.status_code == 422
        assert response.json()["detail"]["reason"] == "Not the doctor assigned to this record"

    def test_lookup_outage_is_unavailable(self, client, ledger, token_id):
        ledger.fail_lookups_for(token_id)
        response = client.get(
            f"/api/records/{token_id}",
            params={"role": "patient", "address": PATIENT},
        )
        assert response.status_code == 503

    def test_dashboard_lists_failures(self, client, ledger, token_id):
        ledger.fail_lookups_for(token_id)
        body = client.get("/api/records", params={"role": "patient", "address": PATIENT}).json()
        assert body["records"] == []
        assert list(body["failures"]) == [str(token_id)]


class TestRegistryEndpoints:

    def test_lists(self, client):
        providers = client.get("/api/registry/providers").json()
        assert [p["name"] for p in providers] == ["GeneralHospital", "Mercy"]
        assert client.get("/api/registry/insurers").json()[0]["role"] == "insurer"

    def test_refresh(self, client):
        response = client.post("/api/registry/refresh")
        assert response.status_code == 200
        assert response.json()["insurers"] == 1


class TestContentUpload:

    def test_upload_returns_hash(self, client, content_store):
        response = client.post(
            "/api/content",
            params={"filename": "scan.pdf"},
            content=b"%PDF-1.4 test",
        )
        assert response.status_code == 201
        body = response.json()
        assert body["size"] == 13
        assert content_store.get(body["content_hash"]) == b"%PDF-1.4 test"

    def test_empty_upload(self, client):
        assert client.post("/api/content", content=b"").status_code == 400


class PinnedResponse:
    status_code = 200

    def raise_for_status(self):
        pass

    def json(self):
        return {"IpfsHash": "QmPinned"}


class PinningSession:
    def post(self, url, files=None, headers=None, timeout=None):
        return PinnedResponse()


class TestPinnedContentUpload:

    def test_pinned_upload_is_created(self, ledger, monkeypatch):
        monkeypatch.setenv("MEDVERIFY_LOG_LEVEL", "INFO")
        setup_logging()
        app = create_app(
            ledger=ledger,
            directory=StaticDirectory(),
            content_store=PinataContentStore(
                ContentConfig(pinata_api_key="key", pinata_secret="secret"),
                session=PinningSession(),
            ),
            ledger_config=LedgerConfig(),
        )

        with TestClient(app) as client:
            response = client.post(
                "/api/content",
                params={"filename": "scan.pdf"},
                content=b"%PDF-1.4 test",
            )

        assert response.status_code == 201
        assert response.json()["content_hash"] == "QmPinned"
