"""
Demonstration: Complete Record Lifecycle

A patient uploads a record against GeneralHospital, the hospital asks
Acme to review it, Acme approves, and the hospital verifies. Along the
way the guard refuses two out-of-order writes.

Run with: python -m examples.demo_lifecycle
"""

from medverify.core import (
    InMemoryContentStore,
    RegistryCache,
    StaticDirectory,
    VerificationWorkflow,
    WorkflowDenied,
)
from medverify.db import InMemoryLedger, LedgerConfig, Projector, Viewer
from medverify.schemas import Role

PATIENT = "0x1111111111111111111111111111111111111111"
HOSPITAL = "0x2222222222222222222222222222222222222222"
ACME = "0x3333333333333333333333333333333333333333"


def show(projector, viewer, label):
    result = projector.rebuild(viewer)
    print(f"   {label} dashboard (generation {result.generation}):")
    for view in result.views:
        print(
            f"     #{view.token_id} {view.record.patient_name} @ {view.record.provider_name}"
            f" | insurance: {view.insurance_status}"
            f" | doctor verified: {view.doctor_verified}"
        )
    print()


def main():
    print("=" * 60)
    print("medverify - Record Lifecycle Demonstration")
    print("=" * 60)
    print()

    # Initialize services
    ledger = InMemoryLedger()
    ledger.register_provider(HOSPITAL, "GeneralHospital")
    ledger.register_insurer(ACME, "acme")

    registry = RegistryCache(StaticDirectory(
        providers=["GeneralHospital"],
        insurers=["Acme"],
    ))
    registry.refresh()

    projector = Projector(ledger, LedgerConfig(fetch_window=2), retry_delay=0)
    workflow = VerificationWorkflow(ledger, registry, projector)
    content = InMemoryContentStore()

    patient = workflow.resolve_actor(PATIENT, Role.PATIENT)
    doctor = workflow.resolve_actor(HOSPITAL, Role.DOCTOR, "GeneralHospital")
    insurer = workflow.resolve_actor(ACME, Role.INSURER)

    # ================================================================
    # STEP 1: PATIENT UPLOADS
    # ================================================================
    print("STEP 1: PATIENT UPLOADS A RECORD")
    content_hash = content.upload(b"%PDF-1.4 lab results", "labs.pdf")
    receipt = workflow.create_record(patient, "Jane Roe", content_hash, "generalhospital")
    token_id = receipt.token_id
    print(f"[OK] Record #{token_id} created at position {receipt.log_position}")
    show(projector, Viewer(Role.PATIENT, address=PATIENT), "Patient")

    # ================================================================
    # STEP 2: OUT-OF-ORDER APPROVAL IS REFUSED
    # ================================================================
    print("STEP 2: INSURER TRIES TO APPROVE BEFORE ANY REQUEST")
    try:
        workflow.approve_request(insurer, token_id)
    except WorkflowDenied as e:
        print(f"[DENIED] {e.reason.value}: {e}")
    print()

    # ================================================================
    # STEP 3: DOCTOR REQUESTS REVIEW
    # ================================================================
    print("STEP 3: DOCTOR REQUESTS REVIEW FROM ACME")
    receipt = workflow.issue_request(doctor, token_id, "ACME")
    print(f"[OK] Request issued ({receipt.transaction_hash[:18]}...)")
    show(projector, Viewer(Role.INSURER, address=ACME, name=insurer.name), "Insurer")

    print("STEP 4: DOCTOR TRIES TO VERIFY BEFORE APPROVAL")
    try:
        workflow.verify_by_provider(doctor, token_id)
    except WorkflowDenied as e:
        print(f"[DENIED] {e.reason.value}: {e}")
    print()

    # ================================================================
    # STEP 5: APPROVAL AND VERIFICATION
    # ================================================================
    print("STEP 5: ACME APPROVES, DOCTOR VERIFIES")
    workflow.approve_request(insurer, token_id)
    workflow.verify_by_provider(doctor, token_id)
    print("[OK] Record fully verified")
    show(projector, Viewer(Role.DOCTOR, address=HOSPITAL, name=doctor.name), "Doctor")

    print("=" * 60)
    print("DEMONSTRATION COMPLETE")
    print("=" * 60)


if __name__ == "__main__":
    main()
