#!/usr/bin/env python3
"""
medverify Management CLI

Commands for inspecting the ledger and the directory:
- records: Print the projection for one viewer
- registry: Print the directory snapshot
- events: Print deduplicated raw events in a log range
- check: Dry-run the workflow guard for one transition
- health-check: Check ledger and directory reachability

Configuration comes from the same MEDVERIFY_* environment variables as
the API server.

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage records --role patient --address 0xabc...
    python -m tools.manage events --kind VerificationRequested --from 0 --to 20000
    python -m tools.manage check --token-id 7 --transition approve_request \\
        --role insurer --address 0xdef...
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _services():
    from medverify.core import RegistryCache, VerificationWorkflow
    from medverify.db import DirectoryConfig, LedgerConfig, Projector, create_ledger
    from medverify.main import create_directory

    config = LedgerConfig.from_env()
    ledger = create_ledger(config)
    registry = RegistryCache(create_directory(DirectoryConfig.from_env()))
    projector = Projector(ledger, config)
    workflow = VerificationWorkflow(ledger, registry, projector)
    return ledger, registry, projector, workflow


def _print_view(view):
    request = view.verification_request
    print(f"  #{view.token_id}  provider={view.record.provider_name}  owner={view.record.owner_address}")
    print(f"      patient={view.record.patient_name or '-'}  content={view.record.content_hash or '-'}")
    print(f"      insurance={view.insurance_status}"
          + (f" ({request.insurer_name}, requested by {request.requesting_doctor_name or '?'})" if request else ""))
    print(f"      doctor_verified={view.doctor_verified}  insurer_verified={view.insurer_verified}")


def cmd_records(args):
    """Rebuild and print one viewer's projection."""
    from medverify.core import MedverifyError
    from medverify.schemas import Role

    ledger, registry, projector, workflow = _services()
    role = Role(args.role)
    try:
        if role == Role.DOCTOR:
            registry.refresh()
        actor = workflow.resolve_actor(args.address, role, args.name)
        result = projector.rebuild(workflow.viewer_for(actor))
    except MedverifyError as e:
        print(f"[FAIL] {e}")
        return 1

    print(f"Generation {result.generation}, window {result.window[0]}..{result.window[1]}")
    print(f"{len(result.views)} record(s)")
    for view in result.views:
        _print_view(view)

    if result.failures:
        print(f"\n[WARN] {len(result.failures)} record(s) omitted:")
        for token_id, error in sorted(result.failures.items()):
            print(f"  #{token_id}: {error}")
    return 0


def cmd_registry(args):
    """Fetch and print the directory."""
    from medverify.core import DirectoryUnavailable

    _, registry, _, _ = _services()
    try:
        snapshot = registry.refresh()
    except DirectoryUnavailable as e:
        print(f"[FAIL] {e}")
        return 1

    print(f"Providers ({len(snapshot.providers)}):")
    for participant in snapshot.providers.values():
        print(f"  {participant.display_name}")
    print(f"Insurers ({len(snapshot.insurers)}):")
    for participant in snapshot.insurers.values():
        print(f"  {participant.display_name}")
    return 0


def cmd_events(args):
    """Print deduplicated raw events of one kind."""
    from medverify.core import SourceUnavailable, count_duplicates, deduplicate
    from medverify.schemas import EventKind

    ledger, _, projector, _ = _services()
    kind = EventKind(args.kind)
    try:
        to_position = args.to_position if args.to_position is not None else ledger.head()
        events = projector.fetch_all(kind, to_position, from_position=args.from_position)
    except SourceUnavailable as e:
        print(f"[FAIL] {e}")
        return 1

    unique = deduplicate(events)
    if args.json:
        print(json.dumps([e.model_dump(mode="json") for e in unique], indent=2))
        return 0

    print(f"{len(unique)} {kind.value} event(s) ({count_duplicates(events)} duplicate(s) dropped)")
    for event in unique:
        print(f"  [{event.log_position}:{event.log_index}] {json.dumps(event.args, default=str)}")
    return 0


def cmd_check(args):
    """Dry-run the guard for one transition."""
    from medverify.core import MedverifyError, Transition
    from medverify.schemas import Role

    _, registry, _, workflow = _services()
    try:
        registry.refresh()
        actor = workflow.resolve_actor(args.address, Role(args.role), args.name)
        decision = workflow.check(
            actor,
            Transition(args.transition),
            token_id=args.token_id,
            insurer_name=args.insurer,
            provider_name=args.provider,
        )
    except MedverifyError as e:
        print(f"[FAIL] {e}")
        return 1

    if decision.allowed:
        print("[OK] Allowed")
        return 0
    print(f"[DENIED] {decision.reason.value}: {decision.message}")
    return 2


def cmd_health_check(args):
    """Check ledger and directory reachability."""
    from medverify.core import DirectoryUnavailable
    from medverify.observability import check_health

    ledger, registry, _, _ = _services()

    print("=== medverify Health Check ===\n")
    try:
        registry.refresh()
    except DirectoryUnavailable as e:
        print(f"Directory: [FAIL] {e}")

    status = check_health(ledger=ledger, registry=registry)
    for name, check in status.checks.items():
        marker = {"healthy": "[OK]", "degraded": "[WARN]"}.get(check["status"], "[FAIL]")
        details = ", ".join(f"{k}={v}" for k, v in check.items() if k != "status")
        print(f"{name}: {marker} {details}")

    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def build_parser():
    parser = argparse.ArgumentParser(
        description="medverify Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # records
    p_records = subparsers.add_parser("records", help="Print the projection for one viewer")
    p_records.add_argument("--role", required=True, choices=["patient", "doctor", "insurer"])
    p_records.add_argument("--address", required=True, help="Viewer ledger address")
    p_records.add_argument("--name", help="Provider name (doctors)")

    # registry
    subparsers.add_parser("registry", help="Print the directory snapshot")

    # events
    p_events = subparsers.add_parser("events", help="Print deduplicated raw events")
    p_events.add_argument(
        "--kind",
        required=True,
        choices=["RecordCreated", "VerificationRequested"],
    )
    p_events.add_argument("--from", dest="from_position", type=int, default=None)
    p_events.add_argument("--to", dest="to_position", type=int, default=None)
    p_events.add_argument("--json", action="store_true", help="Print as JSON")

    # check
    p_check = subparsers.add_parser("check", help="Dry-run the workflow guard")
    p_check.add_argument("--token-id", type=int, default=None)
    p_check.add_argument(
        "--transition",
        required=True,
        choices=["create_record", "issue_request", "approve_request", "verify_by_provider"],
    )
    p_check.add_argument("--role", required=True, choices=["patient", "doctor", "insurer"])
    p_check.add_argument("--address", required=True)
    p_check.add_argument("--name", help="Provider name (doctors)")
    p_check.add_argument("--insurer", help="Target insurer (issue_request)")
    p_check.add_argument("--provider", help="Target provider (create_record)")

    # health-check
    subparsers.add_parser("health-check", help="Check ledger and directory reachability")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "records": cmd_records,
        "registry": cmd_registry,
        "events": cmd_events,
        "check": cmd_check,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
