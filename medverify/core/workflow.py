"""
Verification Workflow

Orchestrates one state change end to end:

    resolve actor -> freshest view -> guard -> submit -> refresh projection

Rules:
- The guard runs against a view built immediately before submission,
  never against a cached dashboard
- A denial blocks submission
- The ledger's rejection is surfaced verbatim
- The projection is refreshed from the receipt; a failed refresh does not
  undo an accepted write
"""

from typing import Optional, TYPE_CHECKING

from ..observability import get_logger
from ..schemas import (
    Actor,
    ApproveRequestIntent,
    CreateRecordIntent,
    IssueRequestIntent,
    Receipt,
    RecordView,
    Role,
    VerifyByProviderIntent,
)
from .errors import (
    LookupFailed,
    RecordNotFound,
    SourceUnavailable,
    UnknownInsurer,
    UnknownProvider,
)
from .guard import GuardDecision, Transition, WorkflowGuard
from .registry import RegistryCache
from .submitter import ActionSubmitter

if TYPE_CHECKING:
    from ..db.ledger import LedgerClient
    from ..db.projections import Projector, Viewer

logger = get_logger(__name__)


class VerificationWorkflow:
    """Entry point for every write the dashboards make."""

    def __init__(
        self,
        ledger: "LedgerClient",
        registry: RegistryCache,
        projector: "Projector",
        guard: Optional[WorkflowGuard] = None,
        submitter: Optional[ActionSubmitter] = None,
    ):
        self._ledger = ledger
        self._registry = registry
        self._projector = projector
        self._guard = guard or WorkflowGuard(registry)
        self._submitter = submitter or ActionSubmitter(ledger)

    @property
    def guard(self) -> WorkflowGuard:
        return self._guard

    # ================================================================
    # IDENTITY
    # ================================================================

    def resolve_actor(self, address: str, role: Role, name: Optional[str] = None) -> Actor:
        """
        Establish who is acting.

        Doctors must be registered on the ledger and name a provider known
        to the directory. Insurers must be registered on the ledger, which
        also supplies their name. Patients are identified by address only.

        Raises:
            UnknownProvider: doctor address or name not registered
            UnknownInsurer: insurer address not registered
        """
        if role == Role.PATIENT:
            return Actor(address=address, role=role)

        if role == Role.DOCTOR:
            if not self._ledger.is_registered_provider(address):
                raise UnknownProvider(f"Address {address} is not a registered provider")
            participant = self._registry.lookup_provider(name or "")
            if participant is None:
                raise UnknownProvider(f"Provider '{name}' is not in the directory")
            return Actor(address=address, role=role, name=participant.display_name)

        if role == Role.INSURER:
            if not self._ledger.is_registered_insurer(address):
                raise UnknownInsurer(f"Address {address} is not a registered insurer")
            insurer_name = self._ledger.get_insurer_name(address)
            if not insurer_name:
                raise UnknownInsurer(f"No insurer name registered for {address}")
            return Actor(address=address, role=role, name=insurer_name)

        raise ValueError(f"Unknown role: {role}")

    @staticmethod
    def viewer_for(actor: Actor) -> "Viewer":
        from ..db.projections import Viewer

        return Viewer(role=actor.role, address=actor.address, name=actor.name)

    # ================================================================
    # READS
    # ================================================================

    def fresh_view(self, token_id: int) -> RecordView:
        """
        Scope-free view of one record, built from fresh lookups.

        Raises:
            RecordNotFound: no RecordCreated event for token_id
            LookupFailed: a point lookup failed
        """
        view = self._projector.view_for(token_id)
        if view is None:
            raise RecordNotFound(token_id)
        return view

    def check(
        self,
        actor: Actor,
        transition: Transition,
        token_id: Optional[int] = None,
        insurer_name: Optional[str] = None,
        provider_name: Optional[str] = None,
    ) -> GuardDecision:
        """Dry-run the guard against the freshest view. Never submits."""
        view = None
        if transition != Transition.CREATE_RECORD:
            if token_id is None:
                raise ValueError(f"{transition.value} requires a token_id")
            view = self.fresh_view(token_id)
        return self._guard.check(
            transition,
            actor,
            view=view,
            insurer_name=insurer_name,
            provider_name=provider_name,
        )

    # ================================================================
    # WRITES
    # ================================================================

    def create_record(
        self,
        actor: Actor,
        patient_name: str,
        content_hash: str,
        provider_name: str,
    ) -> Receipt:
        self._guard.require(Transition.CREATE_RECORD, actor, provider_name=provider_name)
        provider = self._registry.lookup_provider(provider_name)

        receipt = self._submitter.submit(CreateRecordIntent(
            sender=actor.address,
            patient_name=patient_name,
            content_hash=content_hash,
            provider_name=provider.display_name,
        ))
        self._refresh(receipt, actor)
        return receipt

    def issue_request(self, actor: Actor, token_id: int, insurer_name: str) -> Receipt:
        view = self.fresh_view(token_id)
        self._guard.require(Transition.ISSUE_REQUEST, actor, view=view, insurer_name=insurer_name)
        insurer = self._registry.lookup_insurer(insurer_name)

        receipt = self._submitter.submit(IssueRequestIntent(
            sender=actor.address,
            token_id=token_id,
            insurer_name=insurer.display_name,
            doctor_name=actor.name,
        ))
        self._refresh(receipt, actor)
        return receipt

    def approve_request(self, actor: Actor, token_id: int) -> Receipt:
        view = self.fresh_view(token_id)
        self._guard.require(Transition.APPROVE_REQUEST, actor, view=view)

        receipt = self._submitter.submit(ApproveRequestIntent(
            sender=actor.address,
            token_id=token_id,
        ))
        self._refresh(receipt, actor)
        return receipt

    def verify_by_provider(self, actor: Actor, token_id: int) -> Receipt:
        view = self.fresh_view(token_id)
        self._guard.require(Transition.VERIFY_BY_PROVIDER, actor, view=view)

        receipt = self._submitter.submit(VerifyByProviderIntent(
            sender=actor.address,
            token_id=token_id,
        ))
        self._refresh(receipt, actor)
        return receipt

    def _refresh(self, receipt: Receipt, actor: Actor) -> None:
        if receipt.token_id is None:
            return
        try:
            self._projector.refresh_record(receipt.token_id, self.viewer_for(actor))
        except (LookupFailed, SourceUnavailable) as e:
            # The write stands; the next full build will pick it up.
            logger.warning(
                "Projection refresh after receipt failed",
                token_id=receipt.token_id,
                transaction_hash=receipt.transaction_hash,
                error=str(e),
            )
