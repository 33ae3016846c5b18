#!/usr/bin/env python3
"""
Proof Registry Command Line Interface

Usage:
    proof-registry keygen [--rotate]
    proof-registry init-db
    proof-registry issue --hash <hex> --type <t> --namespace <ns> --id <id>
    proof-registry issue --file <path> --type <t> --namespace <ns> --id <id>
    proof-registry verify (--hash <hex> | --file <path>)
    proof-registry snapshot
    proof-registry archive [--limit N]
    proof-registry audit [--enhanced] [--force]
    proof-registry status
    proof-registry verify-manifest --manifest <file> [--trust-store <file>]

Configuration comes from the environment (see proof_registry.config).
"""

import argparse
import json
import sys

from .config import load_settings
from .errors import RegistryError


def load_json(path: str) -> dict:
    """Load JSON from file."""
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def emit(data) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def _registry():
    from .registry import build_registry
    return build_registry(load_settings())


def cmd_keygen(args):
    """Generate an Ed25519 signing key and publish it to the trust store."""
    from .keys import generate_signing_key

    settings = load_settings()
    fp = generate_signing_key(settings.signing_key_path, settings.trust_store_path, rotate=args.rotate)
    emit({"fingerprint": fp, "signing_key": settings.signing_key_path,
          "trust_store": settings.trust_store_path})
    return 0


def cmd_init_db(args):
    from .db import SqliteDatastore

    settings = load_settings()
    SqliteDatastore(settings.db_path).init_db()
    print(f"Initialized {settings.db_path}", file=sys.stderr)
    return 0


def cmd_issue(args):
    """Issue a proof for a hash or a file."""
    reg = _registry()
    subject = {"type": args.type, "namespace": args.namespace, "id": args.id}
    metadata = json.loads(args.metadata) if args.metadata else {}
    if args.file:
        with open(args.file, 'rb') as f:
            proof = reg.issuer.create_proof_from_stream(f, subject, metadata)
    else:
        proof = reg.issuer.create_proof(args.hash, subject, metadata)
    emit(proof.to_dict())
    return 0


def cmd_verify(args):
    reg = _registry()
    if args.file:
        with open(args.file, 'rb') as f:
            result = reg.cascade.verify_by_file(f, concurrent=args.concurrent)
    else:
        result = reg.cascade.verify_by_hash(args.hash, concurrent=args.concurrent)
    emit(result.to_dict())
    if result.valid:
        print(f"\n✓ VALID (signer {result.signer})", file=sys.stderr)
        return 0
    print("\n✗ INVALID", file=sys.stderr)
    for err in result.errors:
        print(f"  - {err}", file=sys.stderr)
    return 1


def cmd_snapshot(args):
    result = _registry().batcher.check_and_create_snapshot()
    emit(result.to_dict())
    return 0 if result.success else 1


def cmd_archive(args):
    reg = _registry()
    if not reg.publisher.archive_enabled:
        print("Archive backend is not configured (ARCHIVE_BACKEND=none)", file=sys.stderr)
        return 1
    summary = reg.publisher.process_archive_queue(limit=args.limit)
    emit(summary)
    return 0 if summary["failed"] == 0 else 1


def cmd_audit(args):
    auditor = _registry().auditor
    if args.force:
        summary = auditor.run_recovery_audit(enhanced=args.enhanced).to_dict()
        emit(summary)
        return 0 if summary["failed_recoveries"] == 0 else 1
    outcome = auditor.run_recovery_audit_if_needed(enhanced=args.enhanced)
    emit(outcome)
    if outcome["ran"] and outcome["summary"]["failed_recoveries"]:
        return 1
    return 0


def cmd_status(args):
    reg = _registry()
    emit({
        "snapshots": reg.batcher.get_snapshot_status(),
        "statistics": reg.batcher.get_snapshot_statistics(),
        "audit": reg.auditor.should_run_recovery_audit(),
    })
    return 0


def cmd_verify_manifest(args):
    """Offline check of a published manifest against a trust store."""
    from .publisher import verify_manifest

    manifest = load_json(args.manifest)
    trust_path = args.trust_store or load_settings().trust_store_path
    ok, reason = verify_manifest(manifest, load_json(trust_path))
    if ok:
        print(f"VALID: batch {manifest['batch']} root {manifest['merkle_root']}")
        return 0
    print(f"INVALID: {reason}")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proof-registry",
        description="File-integrity proof registry"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("keygen", help="Generate a signing key")
    p.add_argument("--rotate", action="store_true", help="Keep the previous key trusted")
    p.set_defaults(func=cmd_keygen)

    p = sub.add_parser("init-db", help="Create the datastore schema")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("issue", help="Issue a proof")
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--hash", help="SHA-256 of the file (64 hex chars)")
    src.add_argument("--file", help="File to hash")
    p.add_argument("--type", required=True, help="Subject type")
    p.add_argument("--namespace", required=True, help="Subject namespace")
    p.add_argument("--id", required=True, help="Subject id")
    p.add_argument("--metadata", help="Metadata as a JSON object")
    p.set_defaults(func=cmd_issue)

    p = sub.add_parser("verify", help="Verify a hash or file")
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--hash")
    src.add_argument("--file")
    p.add_argument("--concurrent", action="store_true", help="Query all sources at once")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("snapshot", help="Create a snapshot batch if one is due")
    p.set_defaults(func=cmd_snapshot)

    p = sub.add_parser("archive", help="Process the archive publication queue")
    p.add_argument("--limit", type=int, default=10)
    p.set_defaults(func=cmd_archive)

    p = sub.add_parser("audit", help="Run the recovery audit")
    p.add_argument("--enhanced", action="store_true", help="Cross-mirror validation")
    p.add_argument("--force", action="store_true", help="Run even if not due")
    p.set_defaults(func=cmd_audit)

    p = sub.add_parser("status", help="Snapshot and audit status")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("verify-manifest", help="Verify a snapshot manifest offline")
    p.add_argument("--manifest", required=True)
    p.add_argument("--trust-store")
    p.set_defaults(func=cmd_verify_manifest)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except RegistryError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
