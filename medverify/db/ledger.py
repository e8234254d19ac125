"""
Ledger Client Abstraction

This module defines the ledger surface the client consumes and provides
two implementations:
- InMemoryLedger: For development and testing
- Web3Ledger: JSON-RPC node + deployed record contract

The ledger is the single source of truth for:
- Which records exist (RecordCreated events)
- Which verification requests were issued (VerificationRequested events)
- Current verification flags (point calls)
- Whether an intent is accepted (its own checks, independent of the guard)

Three narrow roles:

    EventSource   fetch(kind, from, to) -> [RawEvent]   historical reads only
    PointLookups  is_doctor_verified(token) ...          current state
    LedgerWriter  send(intent) -> Receipt                state changes

Fetches must be replayable: asking twice for the same window returns the
same events. Transport failures raise SourceUnavailable and the caller
retries with the same window.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Optional

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception
from web3.logs import DISCARD

from ..core.errors import Rejected, SourceUnavailable
from ..observability import get_logger
from ..schemas import (
    ApproveRequestIntent,
    CreateRecordIntent,
    EventKind,
    IntentKind,
    IssueRequestIntent,
    RawEvent,
    Receipt,
    VerifyByProviderIntent,
    WriteIntent,
    normalize_address,
    normalize_name,
)
from .config import LedgerConfig

logger = get_logger(__name__)


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass(frozen=True)
class RequestDetails:
    """Result of getRequestDetails(tokenId)."""
    insurer_name: str
    requested: bool


@dataclass(frozen=True)
class RecordDetails:
    """Record metadata not carried by the RecordCreated event."""
    patient_name: str
    content_hash: str
    provider_name: str


# ============================================================
# ABSTRACT BASE CLASSES
# ============================================================

class EventSource(ABC):
    """
    Historical reads over the append-only log.

    The only component that talks to the ledger for history.
    """

    @abstractmethod
    def head(self) -> int:
        """Latest log position."""
        pass

    @abstractmethod
    def fetch(self, kind: EventKind, from_position: int, to_position: int) -> list[RawEvent]:
        """
        Fetch all events of `kind` with from_position <= position <= to_position.

        Returns events ordered by (log_position, log_index).

        Raises:
            SourceUnavailable: transport failure; retry with the same window
        """
        pass


class PointLookups(ABC):
    """Point calls against current ledger state."""

    @abstractmethod
    def is_doctor_verified(self, token_id: int) -> bool:
        pass

    @abstractmethod
    def is_insurer_verified(self, token_id: int) -> bool:
        pass

    @abstractmethod
    def get_request_details(self, token_id: int) -> RequestDetails:
        pass

    @abstractmethod
    def get_record_details(self, token_id: int, owner_address: str) -> RecordDetails:
        pass

    @abstractmethod
    def is_registered_provider(self, address: str) -> bool:
        pass

    @abstractmethod
    def is_registered_insurer(self, address: str) -> bool:
        pass

    @abstractmethod
    def get_insurer_name(self, address: str) -> str:
        pass


class LedgerWriter(ABC):
    """Submits write intents."""

    @abstractmethod
    def send(self, intent: WriteIntent) -> Receipt:
        """
        Submit an intent.

        Raises:
            Rejected: the ledger's own checks refused it
            SourceUnavailable: transport failure
        """
        pass


class LedgerClient(EventSource, PointLookups, LedgerWriter):
    """Full ledger surface."""
    pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

@dataclass
class _StoredRecord:
    owner_address: str
    patient_name: str
    content_hash: str
    provider_name: str


class InMemoryLedger(LedgerClient):
    """
    In-memory ledger with the contract's own checks.

    Every accepted write mines a new log position. Suitable for:
    - Development
    - Testing (supports fault injection)

    NOT suitable for:
    - Production (no durability, no consensus)
    """

    def __init__(self):
        self._lock = Lock()
        self._position = 0
        self._events: list[RawEvent] = []
        self._next_token_id = 1

        self._records: dict[int, _StoredRecord] = {}
        self._providers: dict[str, str] = {}  # address -> provider name
        self._insurers: dict[str, str] = {}  # address -> insurer name
        self._requests: dict[int, tuple[str, str]] = {}  # token -> (insurer, doctor)
        self._doctor_verified: set[int] = set()
        self._insurer_verified: set[int] = set()

        # Fault injection
        self._failing_fetches = 0
        self._failing_lookups: set[int] = set()
        self._redeliver = False
        self.fetch_log: list[tuple[EventKind, int, int]] = []

    # ================================================================
    # REGISTRATION (contract-side, outside this client's workflow)
    # ================================================================

    def register_provider(self, address: str, name: str) -> None:
        with self._lock:
            self._providers[normalize_address(address)] = name

    def register_insurer(self, address: str, name: str) -> None:
        with self._lock:
            self._insurers[normalize_address(address)] = name

    # ================================================================
    # FAULT INJECTION
    # ================================================================

    def fail_next_fetch(self, count: int = 1) -> None:
        """Make the next `count` fetch calls raise SourceUnavailable."""
        self._failing_fetches = count

    def fail_lookups_for(self, *token_ids: int) -> None:
        """Make point lookups for these tokens raise SourceUnavailable."""
        self._failing_lookups = set(token_ids)

    def redeliver_events(self, enabled: bool = True) -> None:
        """Return every fetched event twice, as a flaky node would."""
        self._redeliver = enabled

    def _check_lookup(self, token_id: int) -> None:
        if token_id in self._failing_lookups:
            raise SourceUnavailable(f"Injected lookup failure for token {token_id}")

    # ================================================================
    # EVENT SOURCE
    # ================================================================

    def head(self) -> int:
        return self._position

    def fetch(self, kind: EventKind, from_position: int, to_position: int) -> list[RawEvent]:
        self.fetch_log.append((kind, from_position, to_position))
        if self._failing_fetches > 0:
            self._failing_fetches -= 1
            raise SourceUnavailable(
                f"Injected transport failure fetching {kind.value}",
                window=(from_position, to_position),
            )

        with self._lock:
            events = [
                e for e in self._events
                if e.kind == kind and from_position <= e.log_position <= to_position
            ]
        if self._redeliver:
            events = events + events
        return events

    # ================================================================
    # POINT LOOKUPS
    # ================================================================

    def is_doctor_verified(self, token_id: int) -> bool:
        self._check_lookup(token_id)
        return token_id in self._doctor_verified

    def is_insurer_verified(self, token_id: int) -> bool:
        self._check_lookup(token_id)
        return token_id in self._insurer_verified

    def get_request_details(self, token_id: int) -> RequestDetails:
        self._check_lookup(token_id)
        request = self._requests.get(token_id)
        if request is None:
            return RequestDetails(insurer_name="", requested=False)
        return RequestDetails(insurer_name=request[0], requested=True)

    def get_record_details(self, token_id: int, owner_address: str) -> RecordDetails:
        self._check_lookup(token_id)
        record = self._records.get(token_id)
        if record is None:
            raise SourceUnavailable(f"Record {token_id} not found on ledger")
        return RecordDetails(
            patient_name=record.patient_name,
            content_hash=record.content_hash,
            provider_name=record.provider_name,
        )

    def is_registered_provider(self, address: str) -> bool:
        return normalize_address(address) in self._providers

    def is_registered_insurer(self, address: str) -> bool:
        return normalize_address(address) in self._insurers

    def get_insurer_name(self, address: str) -> str:
        return self._insurers.get(normalize_address(address), "")

    # ================================================================
    # WRITER
    # ================================================================

    def send(self, intent: WriteIntent) -> Receipt:
        with self._lock:
            if isinstance(intent, CreateRecordIntent):
                token_id = self._create_record(intent)
            elif isinstance(intent, IssueRequestIntent):
                token_id = self._issue_request(intent)
            elif isinstance(intent, ApproveRequestIntent):
                token_id = self._approve_request(intent)
            elif isinstance(intent, VerifyByProviderIntent):
                token_id = self._verify_by_provider(intent)
            else:
                raise Rejected(f"Unsupported intent {type(intent).__name__}")

            return Receipt(
                intent=intent.kind,
                transaction_hash=self._tx_hash(intent),
                log_position=self._position,
                token_id=token_id,
            )

    def _mine(self) -> int:
        self._position += 1
        return self._position

    def _tx_hash(self, intent: WriteIntent) -> str:
        material = json.dumps(
            {"position": self._position, "intent": intent.model_dump(mode="json")},
            sort_keys=True,
        )
        return "0x" + hashlib.sha256(material.encode("utf-8")).hexdigest()

    def _emit(self, kind: EventKind, position: int, args: dict[str, Any]) -> None:
        index = sum(1 for e in self._events if e.log_position == position)
        self._events.append(
            RawEvent(kind=kind, log_position=position, log_index=index, args=args)
        )

    def _require_record(self, token_id: int, intent: WriteIntent) -> _StoredRecord:
        record = self._records.get(token_id)
        if record is None:
            raise Rejected("Record does not exist", intent.kind.value)
        return record

    def _require_provider_of(self, record: _StoredRecord, intent: WriteIntent) -> None:
        name = self._providers.get(normalize_address(intent.sender))
        if name is None:
            raise Rejected("Only registered doctors can perform this action", intent.kind.value)
        if normalize_name(name) != normalize_name(record.provider_name):
            raise Rejected("Not the doctor assigned to this record", intent.kind.value)

    def _create_record(self, intent: CreateRecordIntent) -> int:
        token_id = self._next_token_id
        self._next_token_id += 1
        self._records[token_id] = _StoredRecord(
            owner_address=intent.sender,
            patient_name=intent.patient_name,
            content_hash=intent.content_hash,
            provider_name=intent.provider_name,
        )
        position = self._mine()
        self._emit(
            EventKind.RECORD_CREATED,
            position,
            {
                "token_id": token_id,
                "owner_address": intent.sender,
                "provider_name": intent.provider_name,
            },
        )
        return token_id

    def _issue_request(self, intent: IssueRequestIntent) -> int:
        record = self._require_record(intent.token_id, intent)
        self._require_provider_of(record, intent)
        if intent.token_id in self._doctor_verified:
            raise Rejected("Record already verified by doctor", intent.kind.value)

        # A new request supersedes the previous one.
        self._requests[intent.token_id] = (intent.insurer_name, intent.doctor_name)
        self._insurer_verified.discard(intent.token_id)

        position = self._mine()
        self._emit(
            EventKind.VERIFICATION_REQUESTED,
            position,
            {
                "token_id": intent.token_id,
                "insurer_name": intent.insurer_name,
                "doctor_name": intent.doctor_name,
                "doctor_address": intent.sender,
            },
        )
        return intent.token_id

    def _approve_request(self, intent: ApproveRequestIntent) -> int:
        self._require_record(intent.token_id, intent)
        name = self._insurers.get(normalize_address(intent.sender))
        if name is None:
            raise Rejected("Only registered insurance companies can verify", intent.kind.value)

        request = self._requests.get(intent.token_id)
        if request is None:
            raise Rejected("Verification not requested", intent.kind.value)
        if normalize_name(request[0]) != normalize_name(name):
            raise Rejected("Not the requested insurance company", intent.kind.value)
        if intent.token_id in self._insurer_verified:
            raise Rejected("Already verified by insurance", intent.kind.value)

        self._insurer_verified.add(intent.token_id)
        self._mine()
        return intent.token_id

    def _verify_by_provider(self, intent: VerifyByProviderIntent) -> int:
        record = self._require_record(intent.token_id, intent)
        self._require_provider_of(record, intent)
        if intent.token_id in self._doctor_verified:
            raise Rejected("Already verified by doctor", intent.kind.value)
        if intent.token_id in self._requests and intent.token_id not in self._insurer_verified:
            raise Rejected("Insurance verification required first", intent.kind.value)

        self._doctor_verified.add(intent.token_id)
        self._mine()
        return intent.token_id


# ============================================================
# WEB3 IMPLEMENTATION
# ============================================================

# Names on the deployed contract.
_EVENT_NAMES = {
    EventKind.RECORD_CREATED: "NFTMinted",
    EventKind.VERIFICATION_REQUESTED: "InsuranceVerificationRequested",
}

# Contract argument name -> RawEvent arg name
_EVENT_ARGS = {
    EventKind.RECORD_CREATED: {
        "tokenId": "token_id",
        "patient": "owner_address",
        "hospitalName": "provider_name",
    },
    EventKind.VERIFICATION_REQUESTED: {
        "tokenId": "token_id",
        "insuranceCompanyName": "insurer_name",
        "doctorName": "doctor_name",
        "doctor": "doctor_address",
    },
}


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[str], mutates: bool = False) -> dict:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in outputs],
        "stateMutability": "nonpayable" if mutates else "view",
    }


DEFAULT_CONTRACT_ABI: list[dict] = [
    {
        "type": "event",
        "name": "NFTMinted",
        "anonymous": False,
        "inputs": [
            {"name": "tokenId", "type": "uint256", "indexed": False},
            {"name": "patient", "type": "address", "indexed": False},
            {"name": "hospitalName", "type": "string", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "InsuranceVerificationRequested",
        "anonymous": False,
        "inputs": [
            {"name": "tokenId", "type": "uint256", "indexed": False},
            {"name": "insuranceCompanyName", "type": "string", "indexed": False},
            {"name": "doctor", "type": "address", "indexed": False},
            {"name": "doctorName", "type": "string", "indexed": False},
        ],
    },
    _fn("isVerifiedByDoctor", [("tokenId", "uint256")], ["bool"]),
    _fn("isVerifiedByInsurance", [("tokenId", "uint256")], ["bool"]),
    _fn("getInsuranceRequest", [("tokenId", "uint256")], ["string", "bool"]),
    _fn("getMedicalRecord", [("patient", "address")], ["string", "string", "string"]),
    _fn("doctors", [("account", "address")], ["bool"]),
    _fn("insuranceCompanies", [("account", "address")], ["bool"]),
    _fn("getInsuranceCompanyName", [("account", "address")], ["string"]),
    _fn(
        "uploadMedicalRecord",
        [("patientName", "string"), ("ipfsHash", "string"), ("hospitalName", "string")],
        [],
        mutates=True,
    ),
    _fn(
        "requestVerificationByInsurance",
        [("tokenId", "uint256"), ("insuranceCompanyName", "string"), ("doctorName", "string")],
        [],
        mutates=True,
    ),
    _fn("verifyByInsurance", [("tokenId", "uint256")], [], mutates=True),
    _fn("verifyByDoctor", [("tokenId", "uint256")], [], mutates=True),
]


def load_contract_abi(path: Optional[str]) -> list[dict]:
    """Load an ABI JSON file (bare list or a build artifact with an "abi" key)."""
    if not path:
        return DEFAULT_CONTRACT_ABI
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return data["abi"] if isinstance(data, dict) else data


_TRANSPORT_ERRORS = (requests.RequestException, ConnectionError, TimeoutError)


class Web3Ledger(LedgerClient):
    """
    Ledger client over a JSON-RPC node.

    Log positions are block numbers. Writes are sent from the intent's
    sender, which must be an account the node can sign for.
    """

    def __init__(self, config: LedgerConfig, w3: Optional[Web3] = None, abi: Optional[list[dict]] = None):
        if not config.contract_address:
            raise ValueError("Web3Ledger requires MEDVERIFY_CONTRACT_ADDRESS")

        if w3 is None:
            if not config.rpc_url or not config.rpc_url.startswith(("http://", "https://")):
                raise ValueError(f"Web3Ledger requires an http(s) RPC URL, got {config.rpc_url!r}")
            w3 = Web3(Web3.HTTPProvider(
                config.rpc_url,
                request_kwargs={
                    "timeout": config.rpc_timeout,
                    "headers": {
                        "Content-Type": "application/json",
                        "User-Agent": "medverify/0.1",
                    },
                },
            ))

        self._w3 = w3
        self._config = config
        self._contract = w3.eth.contract(
            address=Web3.to_checksum_address(config.contract_address),
            abi=abi or DEFAULT_CONTRACT_ABI,
        )

    def _call(self, what: str, fn):
        """Run a read, mapping transport failures to SourceUnavailable."""
        try:
            return fn()
        except _TRANSPORT_ERRORS as e:
            raise SourceUnavailable(f"{what} failed: {e}") from e
        except Web3Exception as e:
            raise SourceUnavailable(f"{what} failed: {e}") from e

    # ================================================================
    # EVENT SOURCE
    # ================================================================

    def head(self) -> int:
        return self._call("eth_blockNumber", lambda: self._w3.eth.block_number)

    def fetch(self, kind: EventKind, from_position: int, to_position: int) -> list[RawEvent]:
        event = getattr(self._contract.events, _EVENT_NAMES[kind])
        try:
            logs = event().get_logs(from_block=from_position, to_block=to_position)
        except (_TRANSPORT_ERRORS + (Web3Exception,)) as e:
            raise SourceUnavailable(
                f"Fetching {kind.value} [{from_position}, {to_position}] failed: {e}",
                window=(from_position, to_position),
            ) from e

        events = [self._to_raw_event(kind, log) for log in logs]
        return sorted(events, key=lambda e: (e.log_position, e.log_index))

    @staticmethod
    def _to_raw_event(kind: EventKind, log: Any) -> RawEvent:
        names = _EVENT_ARGS[kind]
        args = {
            names[k]: (int(v) if k == "tokenId" else v)
            for k, v in dict(log["args"]).items()
            if k in names
        }
        return RawEvent(
            kind=kind,
            log_position=int(log["blockNumber"]),
            log_index=int(log["logIndex"]),
            transaction_hash=Web3.to_hex(log["transactionHash"]),
            args=args,
        )

    # ================================================================
    # POINT LOOKUPS
    # ================================================================

    def is_doctor_verified(self, token_id: int) -> bool:
        return bool(self._call(
            "isVerifiedByDoctor",
            lambda: self._contract.functions.isVerifiedByDoctor(token_id).call(),
        ))

    def is_insurer_verified(self, token_id: int) -> bool:
        return bool(self._call(
            "isVerifiedByInsurance",
            lambda: self._contract.functions.isVerifiedByInsurance(token_id).call(),
        ))

    def get_request_details(self, token_id: int) -> RequestDetails:
        name, requested = self._call(
            "getInsuranceRequest",
            lambda: self._contract.functions.getInsuranceRequest(token_id).call(),
        )
        return RequestDetails(insurer_name=name or "", requested=bool(requested))

    def get_record_details(self, token_id: int, owner_address: str) -> RecordDetails:
        # The contract keys record metadata by patient address.
        patient_name, content_hash, provider_name = self._call(
            "getMedicalRecord",
            lambda: self._contract.functions.getMedicalRecord(
                Web3.to_checksum_address(owner_address)
            ).call(),
        )
        return RecordDetails(
            patient_name=patient_name,
            content_hash=content_hash,
            provider_name=provider_name,
        )

    def is_registered_provider(self, address: str) -> bool:
        return bool(self._call(
            "doctors",
            lambda: self._contract.functions.doctors(Web3.to_checksum_address(address)).call(),
        ))

    def is_registered_insurer(self, address: str) -> bool:
        return bool(self._call(
            "insuranceCompanies",
            lambda: self._contract.functions.insuranceCompanies(
                Web3.to_checksum_address(address)
            ).call(),
        ))

    def get_insurer_name(self, address: str) -> str:
        return self._call(
            "getInsuranceCompanyName",
            lambda: self._contract.functions.getInsuranceCompanyName(
                Web3.to_checksum_address(address)
            ).call(),
        ) or ""

    # ================================================================
    # WRITER
    # ================================================================

    def _contract_call(self, intent: WriteIntent):
        functions = self._contract.functions
        if isinstance(intent, CreateRecordIntent):
            return functions.uploadMedicalRecord(
                intent.patient_name, intent.content_hash, intent.provider_name
            )
        if isinstance(intent, IssueRequestIntent):
            return functions.requestVerificationByInsurance(
                intent.token_id, intent.insurer_name, intent.doctor_name
            )
        if isinstance(intent, ApproveRequestIntent):
            return functions.verifyByInsurance(intent.token_id)
        if isinstance(intent, VerifyByProviderIntent):
            return functions.verifyByDoctor(intent.token_id)
        raise Rejected(f"Unsupported intent {type(intent).__name__}")

    def send(self, intent: WriteIntent) -> Receipt:
        call = self._contract_call(intent)
        sender = Web3.to_checksum_address(intent.sender)

        try:
            tx_hash = call.transact({"from": sender})
            receipt = self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._config.rpc_timeout
            )
        except ContractLogicError as e:
            raise Rejected(str(e.message or e), intent.kind.value) from e
        except _TRANSPORT_ERRORS as e:
            raise SourceUnavailable(f"Submitting {intent.kind.value} failed: {e}") from e
        except Web3Exception as e:
            # TimeExhausted and provider errors: the outcome is unknown, not refused
            raise SourceUnavailable(f"Submitting {intent.kind.value} failed: {e}") from e

        if receipt["status"] != 1:
            raise Rejected("Transaction reverted", intent.kind.value)

        token_id = getattr(intent, "token_id", None)
        if intent.kind == IntentKind.CREATE_RECORD:
            minted = self._contract.events.NFTMinted().process_receipt(receipt, errors=DISCARD)
            if not minted:
                raise Rejected("No NFTMinted event in transaction receipt", intent.kind.value)
            token_id = int(minted[0]["args"]["tokenId"])

        return Receipt(
            intent=intent.kind,
            transaction_hash=Web3.to_hex(receipt["transactionHash"]),
            log_position=int(receipt["blockNumber"]),
            token_id=token_id,
        )


def create_ledger(config: LedgerConfig) -> LedgerClient:
    """Create the configured ledger client."""
    from .config import LedgerDriver

    if config.driver == LedgerDriver.WEB3:
        logger.info("Using web3 ledger", target=config.describe())
        return Web3Ledger(config, abi=load_contract_abi(config.contract_abi_path))

    logger.info("Using in-memory ledger (no persistence)")
    return InMemoryLedger()
