"""
Tests for the workflow guard.

The guard is a pre-check only: it answers allow/deny for a proposed
transition against a RecordView and never touches the ledger.
"""

import pytest

from medverify.core import (
    AlreadyRequested,
    AlreadyVerified,
    DenialReason,
    InsuranceNotApproved,
    NotRequested,
    RegistryCache,
    StaticDirectory,
    Transition,
    UnknownInsurer,
    WorkflowGuard,
    WrongInsurer,
)
from medverify.schemas import Actor, Record, RecordView, Role, VerificationRequest

PATIENT = Actor(address="0x1111", role=Role.PATIENT)
DOCTOR = Actor(address="0x2222", role=Role.DOCTOR, name="GeneralHospital")
OTHER_DOCTOR = Actor(address="0x4444", role=Role.DOCTOR, name="Mercy")
ACME = Actor(address="0x3333", role=Role.INSURER, name="Acme")
GLOBEX = Actor(address="0x5555", role=Role.INSURER, name="Globex")


def make_view(
    token_id=1,
    request_to=None,
    approved=False,
    doctor_verified=False,
    provider="GeneralHospital",
):
    request = None
    if request_to is not None:
        request = VerificationRequest(
            token_id=token_id,
            insurer_name=request_to,
            requesting_doctor_name=provider,
            approved=approved,
        )
    return RecordView(
        record=Record(token_id=token_id, provider_name=provider, owner_address=PATIENT.address),
        verification_request=request,
        doctor_verified=doctor_verified,
        insurer_verified=approved,
    )


@pytest.fixture
def guard():
    registry = RegistryCache(StaticDirectory(
        providers=["GeneralHospital", "Mercy"],
        insurers=["Acme", "Globex"],
    ))
    registry.refresh()
    return WorkflowGuard(registry)


class TestRoleTable:
    """Each role may only attempt the transitions in its table."""

    @pytest.mark.parametrize("actor,transition", [
        (PATIENT, Transition.ISSUE_REQUEST),
        (PATIENT, Transition.VERIFY_BY_PROVIDER),
        (PATIENT, Transition.APPROVE_REQUEST),
        (DOCTOR, Transition.APPROVE_REQUEST),
        (DOCTOR, Transition.CREATE_RECORD),
        (ACME, Transition.VERIFY_BY_PROVIDER),
        (ACME, Transition.ISSUE_REQUEST),
    ])
    def test_transition_outside_table_denied(self, guard, actor, transition):
        decision = guard.check(transition, actor, view=make_view(request_to="Acme"))
        assert not decision.allowed
        assert decision.reason == DenialReason.ROLE_NOT_PERMITTED

    def test_view_required_for_record_transitions(self, guard):
        with pytest.raises(ValueError):
            guard.check(Transition.VERIFY_BY_PROVIDER, DOCTOR)


class TestCreateRecord:

    def test_registered_provider_allowed(self, guard):
        decision = guard.check(Transition.CREATE_RECORD, PATIENT, provider_name="generalhospital")
        assert decision.allowed

    def test_unknown_provider_denied(self, guard):
        decision = guard.check(Transition.CREATE_RECORD, PATIENT, provider_name="Nowhere Clinic")
        assert decision.reason == DenialReason.UNKNOWN_PROVIDER


class TestIssueRequest:

    def test_allowed_on_fresh_record(self, guard):
        decision = guard.check(
            Transition.ISSUE_REQUEST, DOCTOR, view=make_view(), insurer_name="Acme"
        )
        assert decision.allowed

    def test_unknown_insurer_denied(self, guard):
        with pytest.raises(UnknownInsurer):
            guard.require(
                Transition.ISSUE_REQUEST, DOCTOR, view=make_view(), insurer_name="Initech"
            )

    def test_not_the_records_provider(self, guard):
        decision = guard.check(
            Transition.ISSUE_REQUEST, OTHER_DOCTOR, view=make_view(), insurer_name="Acme"
        )
        assert decision.reason == DenialReason.NOT_PROVIDER

    def test_live_request_to_same_insurer_denied(self, guard):
        """Case differences do not make it a different insurer."""
        view = make_view(request_to="acme")
        with pytest.raises(AlreadyRequested):
            guard.require(Transition.ISSUE_REQUEST, DOCTOR, view=view, insurer_name="ACME")

    def test_live_request_to_other_insurer_allowed(self, guard):
        view = make_view(request_to="Acme")
        decision = guard.check(Transition.ISSUE_REQUEST, DOCTOR, view=view, insurer_name="Globex")
        assert decision.allowed

    def test_verified_record_is_terminal(self, guard):
        view = make_view(request_to="Acme", approved=True, doctor_verified=True)
        with pytest.raises(AlreadyVerified):
            guard.require(Transition.ISSUE_REQUEST, DOCTOR, view=view, insurer_name="Globex")


class TestApproveRequest:

    def test_matching_insurer_allowed(self, guard):
        decision = guard.check(Transition.APPROVE_REQUEST, ACME, view=make_view(request_to="Acme"))
        assert decision.allowed

    def test_case_insensitive_match(self, guard):
        """Request stored as 'acme', insurer registered as 'Acme'."""
        decision = guard.check(Transition.APPROVE_REQUEST, ACME, view=make_view(request_to="acme"))
        assert decision.allowed

    def test_no_request(self, guard):
        with pytest.raises(NotRequested):
            guard.require(Transition.APPROVE_REQUEST, ACME, view=make_view())

    def test_already_approved_is_not_live(self, guard):
        view = make_view(request_to="Acme", approved=True)
        decision = guard.check(Transition.APPROVE_REQUEST, ACME, view=view)
        assert decision.reason == DenialReason.NOT_REQUESTED

    def test_wrong_insurer(self, guard):
        with pytest.raises(WrongInsurer) as exc_info:
            guard.require(Transition.APPROVE_REQUEST, GLOBEX, view=make_view(token_id=4, request_to="Acme"))
        assert exc_info.value.token_id == 4


class TestVerifyByProvider:

    def test_unapproved_live_request_denied(self, guard):
        """Soundness: any unapproved live request blocks verification."""
        for insurer in ("Acme", "acme", "Globex"):
            decision = guard.check(
                Transition.VERIFY_BY_PROVIDER, DOCTOR, view=make_view(request_to=insurer)
            )
            assert decision.reason == DenialReason.INSURANCE_NOT_APPROVED

    def test_no_request_allowed(self, guard):
        """Completeness: a record that was never sent to an insurer may be verified."""
        decision = guard.check(Transition.VERIFY_BY_PROVIDER, DOCTOR, view=make_view())
        assert decision.allowed

    def test_approved_request_allowed(self, guard):
        view = make_view(request_to="Acme", approved=True)
        assert guard.check(Transition.VERIFY_BY_PROVIDER, DOCTOR, view=view).allowed

    def test_reverification_denied(self, guard):
        view = make_view(doctor_verified=True)
        with pytest.raises(AlreadyVerified):
            guard.require(Transition.VERIFY_BY_PROVIDER, DOCTOR, view=view)

    def test_other_provider_denied(self, guard):
        decision = guard.check(Transition.VERIFY_BY_PROVIDER, OTHER_DOCTOR, view=make_view())
        assert decision.reason == DenialReason.NOT_PROVIDER

    def test_provider_name_case_insensitive(self, guard):
        view = make_view(provider="GENERALHOSPITAL")
        assert guard.check(Transition.VERIFY_BY_PROVIDER, DOCTOR, view=view).allowed


class TestRequire:

    def test_denial_is_counted(self, guard, metrics):
        with pytest.raises(InsuranceNotApproved):
            guard.require(Transition.VERIFY_BY_PROVIDER, DOCTOR, view=make_view(request_to="Acme"))

        summary = metrics.get_summary()
        assert summary["guard_denials"] == 1
        assert summary["denials_by_reason"] == {"InsuranceNotApproved": 1}

    def test_allowed_returns_none(self, guard):
        assert guard.require(Transition.VERIFY_BY_PROVIDER, DOCTOR, view=make_view()) is None

    def test_allowed_decision_has_no_error(self, guard):
        decision = guard.check(Transition.VERIFY_BY_PROVIDER, DOCTOR, view=make_view())
        with pytest.raises(ValueError):
            decision.to_error()
