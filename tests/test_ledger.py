"""
Tests for the ledger clients.

InMemoryLedger carries the contract's own checks; they are authoritative
and independent of the workflow guard.
"""

import pytest
from web3.exceptions import ContractLogicError, TimeExhausted

from medverify.core import Rejected, SourceUnavailable
from medverify.db import InMemoryLedger, LedgerConfig, LedgerDriver, Web3Ledger, create_ledger
from medverify.db.ledger import DEFAULT_CONTRACT_ABI, load_contract_abi
from medverify.schemas import (
    ApproveRequestIntent,
    CreateRecordIntent,
    EventKind,
    IntentKind,
    IssueRequestIntent,
    VerifyByProviderIntent,
)

PATIENT = "0x1111111111111111111111111111111111111111"
HOSPITAL = "0x2222222222222222222222222222222222222222"
ACME = "0x3333333333333333333333333333333333333333"
MERCY = "0x4444444444444444444444444444444444444444"
GLOBEX = "0x5555555555555555555555555555555555555555"


@pytest.fixture
def ledger():
    ledger = InMemoryLedger()
    ledger.register_provider(HOSPITAL, "GeneralHospital")
    ledger.register_provider(MERCY, "Mercy")
    ledger.register_insurer(ACME, "Acme")
    ledger.register_insurer(GLOBEX, "Globex")
    return ledger


def create(ledger, provider="GeneralHospital"):
    return ledger.send(CreateRecordIntent(
        sender=PATIENT,
        patient_name="Jane Roe",
        content_hash="QmHash",
        provider_name=provider,
    ))


def request(ledger, token_id, insurer="Acme", sender=HOSPITAL):
    return ledger.send(IssueRequestIntent(
        sender=sender,
        token_id=token_id,
        insurer_name=insurer,
        doctor_name="GeneralHospital",
    ))


class StubCall:
    def transact(self, transaction):
        return b"\x01" * 32


class StubFunctions:
    def __getattr__(self, name):
        return lambda *args: StubCall()


class StubContract:
    functions = StubFunctions()


class StubEth:
    """Accepts every transaction; waiting for the receipt raises `error`."""

    def __init__(self, error):
        self.error = error

    def contract(self, address, abi):
        return StubContract()

    def wait_for_transaction_receipt(self, tx_hash, timeout=None):
        raise self.error


class StubWeb3:
    def __init__(self, error):
        self.eth = StubEth(error)


class TestInMemoryLedgerWrites:

    def test_create_assigns_token_and_emits_event(self, ledger):
        receipt = create(ledger)

        assert receipt.intent == IntentKind.CREATE_RECORD
        assert receipt.token_id == 1
        assert receipt.log_position == 1
        assert receipt.transaction_hash.startswith("0x")

        events = ledger.fetch(EventKind.RECORD_CREATED, 0, ledger.head())
        assert len(events) == 1
        assert events[0].record_created().owner_address == PATIENT
        assert events[0].record_created().provider_name == "GeneralHospital"

    def test_tokens_are_sequential(self, ledger):
        assert [create(ledger).token_id for _ in range(3)] == [1, 2, 3]

    def test_record_details(self, ledger):
        token_id = create(ledger).token_id
        details = ledger.get_record_details(token_id, PATIENT)
        assert details.patient_name == "Jane Roe"
        assert details.content_hash == "QmHash"

    def test_request_emits_event_and_sets_details(self, ledger):
        token_id = create(ledger).token_id
        request(ledger, token_id, insurer="acme")

        details = ledger.get_request_details(token_id)
        assert details.requested
        assert details.insurer_name == "acme"
        event = ledger.fetch(EventKind.VERIFICATION_REQUESTED, 0, ledger.head())[0]
        assert event.verification_requested().doctor_address == HOSPITAL

    def test_full_lifecycle(self, ledger):
        token_id = create(ledger).token_id
        request(ledger, token_id)
        ledger.send(ApproveRequestIntent(sender=ACME, token_id=token_id))
        ledger.send(VerifyByProviderIntent(sender=HOSPITAL, token_id=token_id))

        assert ledger.is_insurer_verified(token_id)
        assert ledger.is_doctor_verified(token_id)

    def test_approval_matches_name_case_insensitively(self, ledger):
        token_id = create(ledger).token_id
        request(ledger, token_id, insurer="ACME")
        ledger.send(ApproveRequestIntent(sender=ACME, token_id=token_id))
        assert ledger.is_insurer_verified(token_id)

    def test_verify_without_request_accepted(self, ledger):
        token_id = create(ledger).token_id
        ledger.send(VerifyByProviderIntent(sender=HOSPITAL, token_id=token_id))
        assert ledger.is_doctor_verified(token_id)

    def test_new_request_supersedes_previous(self, ledger):
        token_id = create(ledger).token_id
        request(ledger, token_id, insurer="Acme")
        ledger.send(ApproveRequestIntent(sender=ACME, token_id=token_id))
        request(ledger, token_id, insurer="Globex")

        assert ledger.get_request_details(token_id).insurer_name == "Globex"
        assert not ledger.is_insurer_verified(token_id)


class TestInMemoryLedgerChecks:
    """The ledger's own refusals, surfaced as Rejected with a reason."""

    def test_unregistered_doctor_cannot_request(self, ledger):
        token_id = create(ledger).token_id
        with pytest.raises(Rejected) as exc_info:
            request(ledger, token_id, sender=PATIENT)
        assert "registered doctors" in exc_info.value.reason
        assert exc_info.value.intent == "issueRequest"

    def test_other_doctor_cannot_request(self, ledger):
        token_id = create(ledger).token_id
        with pytest.raises(Rejected):
            request(ledger, token_id, sender=MERCY)

    def test_unknown_record(self, ledger):
        with pytest.raises(Rejected) as exc_info:
            ledger.send(VerifyByProviderIntent(sender=HOSPITAL, token_id=99))
        assert exc_info.value.reason == "Record does not exist"

    def test_approve_without_request(self, ledger):
        token_id = create(ledger).token_id
        with pytest.raises(Rejected):
            ledger.send(ApproveRequestIntent(sender=ACME, token_id=token_id))

    def test_approve_by_wrong_insurer(self, ledger):
        token_id = create(ledger).token_id
        request(ledger, token_id, insurer="Acme")
        with pytest.raises(Rejected) as exc_info:
            ledger.send(ApproveRequestIntent(sender=GLOBEX, token_id=token_id))
        assert exc_info.value.reason == "Not the requested insurance company"

    def test_approve_twice(self, ledger):
        token_id = create(ledger).token_id
        request(ledger, token_id)
        ledger.send(ApproveRequestIntent(sender=ACME, token_id=token_id))
        with pytest.raises(Rejected):
            ledger.send(ApproveRequestIntent(sender=ACME, token_id=token_id))

    def test_verify_before_approval(self, ledger):
        token_id = create(ledger).token_id
        request(ledger, token_id)
        with pytest.raises(Rejected):
            ledger.send(VerifyByProviderIntent(sender=HOSPITAL, token_id=token_id))
        assert not ledger.is_doctor_verified(token_id)

    def test_verify_twice(self, ledger):
        token_id = create(ledger).token_id
        ledger.send(VerifyByProviderIntent(sender=HOSPITAL, token_id=token_id))
        with pytest.raises(Rejected):
            ledger.send(VerifyByProviderIntent(sender=HOSPITAL, token_id=token_id))

    def test_request_after_verification(self, ledger):
        token_id = create(ledger).token_id
        ledger.send(VerifyByProviderIntent(sender=HOSPITAL, token_id=token_id))
        with pytest.raises(Rejected):
            request(ledger, token_id)

    def test_rejected_write_mines_nothing(self, ledger):
        token_id = create(ledger).token_id
        head = ledger.head()
        with pytest.raises(Rejected):
            ledger.send(ApproveRequestIntent(sender=ACME, token_id=token_id))
        assert ledger.head() == head


class TestInMemoryLedgerReads:

    def test_fetch_window_is_inclusive(self, ledger):
        for _ in range(4):
            create(ledger)
        events = ledger.fetch(EventKind.RECORD_CREATED, 2, 3)
        assert [e.token_id for e in events] == [2, 3]

    def test_fetch_is_replayable(self, ledger):
        create(ledger)
        create(ledger)
        assert ledger.fetch(EventKind.RECORD_CREATED, 0, 2) == ledger.fetch(EventKind.RECORD_CREATED, 0, 2)

    def test_registration_lookups_ignore_address_case(self, ledger):
        ledger.register_provider("0xAbCdEf", "Mercy")
        assert ledger.is_registered_provider("0xABCDEF")
        assert ledger.is_registered_insurer(ACME)
        assert not ledger.is_registered_insurer(HOSPITAL)
        assert ledger.get_insurer_name(ACME) == "Acme"
        assert ledger.get_insurer_name(PATIENT) == ""

    def test_request_details_default(self, ledger):
        token_id = create(ledger).token_id
        details = ledger.get_request_details(token_id)
        assert not details.requested
        assert details.insurer_name == ""

    def test_injected_fetch_failure(self, ledger):
        ledger.fail_next_fetch()
        with pytest.raises(SourceUnavailable) as exc_info:
            ledger.fetch(EventKind.RECORD_CREATED, 0, 5)
        assert exc_info.value.window == (0, 5)
        assert ledger.fetch(EventKind.RECORD_CREATED, 0, 5) == []

    def test_injected_lookup_failure(self, ledger):
        first = create(ledger).token_id
        second = create(ledger).token_id
        ledger.fail_lookups_for(first)

        with pytest.raises(SourceUnavailable):
            ledger.is_doctor_verified(first)
        assert ledger.is_doctor_verified(second) is False


class TestWeb3Ledger:

    def test_log_mapped_to_raw_event(self):
        log = {
            "args": {
                "tokenId": 7,
                "insuranceCompanyName": "Acme",
                "doctor": HOSPITAL,
                "doctorName": "GeneralHospital",
            },
            "blockNumber": 120,
            "logIndex": 3,
            "transactionHash": bytes.fromhex("ab" * 32),
        }

        event = Web3Ledger._to_raw_event(EventKind.VERIFICATION_REQUESTED, log)

        assert event.log_position == 120
        assert event.log_index == 3
        assert event.transaction_hash == "0x" + "ab" * 32
        payload = event.verification_requested()
        assert payload.token_id == 7
        assert payload.insurer_name == "Acme"
        assert payload.doctor_name == "GeneralHospital"
        assert payload.doctor_address == HOSPITAL

    def test_created_log_mapped(self):
        log = {
            "args": {"tokenId": 1, "patient": PATIENT, "hospitalName": "GeneralHospital"},
            "blockNumber": 5,
            "logIndex": 0,
            "transactionHash": bytes.fromhex("01" * 32),
        }
        payload = Web3Ledger._to_raw_event(EventKind.RECORD_CREATED, log).record_created()
        assert payload.owner_address == PATIENT
        assert payload.provider_name == "GeneralHospital"

    def test_requires_contract_address(self):
        with pytest.raises(ValueError):
            Web3Ledger(LedgerConfig(driver=LedgerDriver.WEB3, rpc_url="http://localhost:8545"))

    def test_requires_http_url(self):
        config = LedgerConfig(
            driver=LedgerDriver.WEB3,
            rpc_url="ws://localhost:8546",
            contract_address=HOSPITAL,
        )
        with pytest.raises(ValueError):
            Web3Ledger(config)

    def test_default_abi(self):
        assert load_contract_abi(None) is DEFAULT_CONTRACT_ABI
        names = {entry["name"] for entry in DEFAULT_CONTRACT_ABI}
        assert {"NFTMinted", "InsuranceVerificationRequested", "verifyByDoctor"} <= names

    def test_abi_from_build_artifact(self, tmp_path):
        artifact = tmp_path / "Contract.json"
        artifact.write_text('{"abi": [{"type": "function", "name": "x"}]}')
        assert load_contract_abi(str(artifact)) == [{"type": "function", "name": "x"}]

    def stub_ledger(self, error):
        config = LedgerConfig(driver=LedgerDriver.WEB3, contract_address=HOSPITAL)
        return Web3Ledger(config, w3=StubWeb3(error))

    def test_receipt_timeout_is_unavailable(self):
        ledger = self.stub_ledger(TimeExhausted("Transaction not in chain after 60 seconds"))
        with pytest.raises(SourceUnavailable):
            ledger.send(VerifyByProviderIntent(sender=HOSPITAL, token_id=1))

    def test_contract_revert_is_rejected(self):
        ledger = self.stub_ledger(ContractLogicError("execution reverted: Already verified by doctor"))
        with pytest.raises(Rejected) as exc_info:
            ledger.send(VerifyByProviderIntent(sender=HOSPITAL, token_id=1))
        assert "Already verified by doctor" in exc_info.value.reason


class TestCreateLedger:

    def test_memory_driver(self):
        assert isinstance(create_ledger(LedgerConfig()), InMemoryLedger)
