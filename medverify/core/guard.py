"""
Workflow Guard - client-side pre-check of state transitions

The ledger is the authority. The guard only answers allow/deny before an
intent is submitted, to avoid wasted round trips and to surface a
specific reason instead of an opaque revert.

State machine per record:

    Created ──issue request──> RequestIssued ──approve──> InsurerApproved
       │                                                      │
       └──────────────verify by provider──────────────────────┴──> DoctorVerified

Rules (enforced here):
- Each role may only attempt the transitions in its table
- Issue request: actor is the record's provider, insurer is registered,
  no live request for (token, insurer)
- Approve: a live request exists and names the actor's insurer
- Verify: actor is the record's provider; if a request exists it must be
  approved; a verified record cannot be verified again
- DoctorVerified is terminal

The guard never mutates anything. It must be re-evaluated against the
freshest projection immediately before submission.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..observability import get_logger, get_metrics
from ..schemas import Actor, RecordView, Role, normalize_name
from .errors import DENIAL_ERRORS, DenialReason, WorkflowDenied
from .registry import RegistryCache

logger = get_logger(__name__)


class Transition(str, Enum):
    """Proposed state changes."""
    CREATE_RECORD = "create_record"
    ISSUE_REQUEST = "issue_request"
    APPROVE_REQUEST = "approve_request"
    VERIFY_BY_PROVIDER = "verify_by_provider"


# One allowed-transition table per role, consumed uniformly by the guard.
ALLOWED_TRANSITIONS: dict[Role, frozenset[Transition]] = {
    Role.PATIENT: frozenset({Transition.CREATE_RECORD}),
    Role.DOCTOR: frozenset({Transition.ISSUE_REQUEST, Transition.VERIFY_BY_PROVIDER}),
    Role.INSURER: frozenset({Transition.APPROVE_REQUEST}),
}


@dataclass(frozen=True)
class GuardDecision:
    """Allow/deny plus the reason."""
    allowed: bool
    reason: Optional[DenialReason] = None
    message: str = ""

    @classmethod
    def allow(cls) -> "GuardDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenialReason, message: str) -> "GuardDecision":
        return cls(allowed=False, reason=reason, message=message)

    def to_error(self, token_id: Optional[int] = None) -> WorkflowDenied:
        if self.allowed:
            raise ValueError("An allowed decision has no error")
        return DENIAL_ERRORS[self.reason](self.message, token_id=token_id)


class WorkflowGuard:
    """
    Validates proposed transitions against a RecordView.

    Registry lookups use the snapshot in effect when check() is called.
    """

    def __init__(self, registry: RegistryCache):
        self._registry = registry

    # ================================================================
    # PUBLIC API
    # ================================================================

    def check(
        self,
        transition: Transition,
        actor: Actor,
        view: Optional[RecordView] = None,
        insurer_name: Optional[str] = None,
        provider_name: Optional[str] = None,
    ) -> GuardDecision:
        """
        Decide whether `actor` may perform `transition`.

        Args:
            transition: The proposed transition
            actor: Who proposes it
            view: Freshest projection of the record (not needed for CREATE_RECORD)
            insurer_name: Target insurer (ISSUE_REQUEST)
            provider_name: Target provider (CREATE_RECORD)
        """
        if transition not in ALLOWED_TRANSITIONS[actor.role]:
            return GuardDecision.deny(
                DenialReason.ROLE_NOT_PERMITTED,
                f"Role '{actor.role.value}' may not perform {transition.value}",
            )

        if transition == Transition.CREATE_RECORD:
            return self._check_create(provider_name)

        if view is None:
            raise ValueError(f"{transition.value} requires the record's current view")

        if transition == Transition.ISSUE_REQUEST:
            return self._check_issue_request(view, actor, insurer_name)
        if transition == Transition.APPROVE_REQUEST:
            return self._check_approve(view, actor)
        if transition == Transition.VERIFY_BY_PROVIDER:
            return self._check_verify(view, actor)

        raise ValueError(f"Unhandled transition: {transition}")

    def require(
        self,
        transition: Transition,
        actor: Actor,
        view: Optional[RecordView] = None,
        insurer_name: Optional[str] = None,
        provider_name: Optional[str] = None,
    ) -> None:
        """
        Like check(), but raises the specific WorkflowDenied subclass.

        Denials are logged and counted; they always block submission.
        """
        decision = self.check(
            transition,
            actor,
            view=view,
            insurer_name=insurer_name,
            provider_name=provider_name,
        )
        if decision.allowed:
            return

        token_id = view.token_id if view is not None else None
        get_metrics().record_denial(decision.reason.value)
        logger.warning(
            "Transition denied",
            transition=transition.value,
            reason=decision.reason.value,
            token_id=token_id,
            actor=actor.address,
        )
        raise decision.to_error(token_id)

    # ================================================================
    # TRANSITION CHECKS
    # ================================================================

    def _check_create(self, provider_name: Optional[str]) -> GuardDecision:
        if not provider_name or self._registry.lookup_provider(provider_name) is None:
            return GuardDecision.deny(
                DenialReason.UNKNOWN_PROVIDER,
                f"Provider '{provider_name}' is not registered",
            )
        return GuardDecision.allow()

    def _is_record_provider(self, view: RecordView, actor: Actor) -> bool:
        return normalize_name(actor.name) == normalize_name(view.record.provider_name)

    def _check_issue_request(
        self,
        view: RecordView,
        actor: Actor,
        insurer_name: Optional[str],
    ) -> GuardDecision:
        if not self._is_record_provider(view, actor):
            return GuardDecision.deny(
                DenialReason.NOT_PROVIDER,
                f"Only '{view.record.provider_name}' may request review of record {view.token_id}",
            )

        if not insurer_name or self._registry.lookup_insurer(insurer_name) is None:
            return GuardDecision.deny(
                DenialReason.UNKNOWN_INSURER,
                f"Insurer '{insurer_name}' is not registered",
            )

        if view.doctor_verified:
            return GuardDecision.deny(
                DenialReason.ALREADY_VERIFIED,
                f"Record {view.token_id} is already verified; no further requests",
            )

        request = view.verification_request
        if (
            request is not None
            and request.is_live
            and normalize_name(request.insurer_name) == normalize_name(insurer_name)
        ):
            return GuardDecision.deny(
                DenialReason.ALREADY_REQUESTED,
                f"Record {view.token_id} already has a pending request to '{request.insurer_name}'",
            )

        return GuardDecision.allow()

    def _check_approve(self, view: RecordView, actor: Actor) -> GuardDecision:
        request = view.verification_request
        if request is None or not request.is_live:
            return GuardDecision.deny(
                DenialReason.NOT_REQUESTED,
                f"Record {view.token_id} has no pending verification request",
            )

        if normalize_name(actor.name) != normalize_name(request.insurer_name):
            return GuardDecision.deny(
                DenialReason.WRONG_INSURER,
                f"Request on record {view.token_id} is addressed to "
                f"'{request.insurer_name}', not '{actor.name}'",
            )

        return GuardDecision.allow()

    def _check_verify(self, view: RecordView, actor: Actor) -> GuardDecision:
        if not self._is_record_provider(view, actor):
            return GuardDecision.deny(
                DenialReason.NOT_PROVIDER,
                f"Only '{view.record.provider_name}' may verify record {view.token_id}",
            )

        if view.doctor_verified:
            return GuardDecision.deny(
                DenialReason.ALREADY_VERIFIED,
                f"Record {view.token_id} is already verified",
            )

        # A record with no request at all may be verified directly.
        if view.has_live_request:
            return GuardDecision.deny(
                DenialReason.INSURANCE_NOT_APPROVED,
                f"Record {view.token_id} is waiting on approval from "
                f"'{view.verification_request.insurer_name}'",
            )

        return GuardDecision.allow()

