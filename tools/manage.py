#!/usr/bin/env python3
"""
Attested Clearing Management CLI

Commands for operating the clearing pipeline:
- generate-keypair: Generate an Ed25519 signing keypair
- derive-transfer-id: Show the ledger transfer id derived from a claim id
- attest: Attest a claim (JSON file) with the configured system key
- verify: Verify an attestation against a claim
- create-accounts: Create the clearing accounts on the configured ledger
- balance: Show the ledger balance of an account
- health-check: Check ledger and mirror connectivity

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage generate-keypair
    python -m tools.manage derive-transfer-id --claim-id c1
    python -m tools.manage attest --claim claim.json -o attestation.json
    python -m tools.manage verify --claim claim.json --attestation attestation.json
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _load_json(path: str) -> dict:
    with open(path) as f:
        return json.load(f)


def cmd_generate_keypair(args):
    """Generate a new system signing keypair."""
    from clearing.core import Signer

    private_key, public_key = Signer.generate_keypair()

    print("[OK] Generated Ed25519 keypair")
    print(f"\n  Public key (share with verifiers):")
    print(f"  {public_key}")
    print(f"\n  Private key (KEEP SECRET!):")
    print(f"  {private_key}")
    print("\n  Set these environment variables:")
    print(f"  CLEARING_SIGNING_PRIVATE_KEY={private_key}")
    print(f"  CLEARING_SIGNING_PUBLIC_KEY={public_key}")


def cmd_derive_transfer_id(args):
    """Print the deterministic transfer id for a claim id."""
    from clearing.core import derive_transfer_id

    transfer_id = derive_transfer_id(args.claim_id)
    print(f"claim_id:    {args.claim_id}")
    print(f"transfer_id: {transfer_id:032x}")
    print(f"decimal:     {transfer_id}")


def cmd_attest(args):
    """Attest a claim with the configured key."""
    from pydantic import ValidationError

    from clearing.config import Settings
    from clearing.core import CanonicalSerializationError
    from clearing.schemas import Claim
    from clearing.wiring import create_engine

    try:
        claim = Claim.model_validate(_load_json(args.claim))
    except ValidationError as e:
        print(f"[FAIL] Invalid claim: {e}")
        return 1

    engine = create_engine(Settings.from_env())
    try:
        attestation = engine.attest(claim)
    except CanonicalSerializationError as e:
        print(f"[FAIL] Claim is not canonically serializable: {e}")
        return 1

    output = attestation.model_dump_json(indent=2)
    if args.output:
        with open(args.output, "w") as f:
            f.write(output)
        print(f"[OK] Attestation for {claim.id} written to {args.output}")
    else:
        print(output)
    return 0


def cmd_verify(args):
    """Verify an attestation against its claim."""
    from pydantic import ValidationError

    from clearing.config import Settings
    from clearing.core import InvalidAttestationError
    from clearing.schemas import Attestation, Claim
    from clearing.wiring import create_engine

    try:
        claim = Claim.model_validate(_load_json(args.claim))
        attestation = Attestation.model_validate(_load_json(args.attestation))
    except ValidationError as e:
        print(f"[FAIL] Invalid input: {e}")
        return 1

    engine = create_engine(Settings.from_env())
    try:
        engine.verify(claim, attestation)
    except InvalidAttestationError as e:
        print(f"[FAIL] Attestation invalid: {e.reason}")
        return 1

    print(f"[OK] Attestation verified for claim {claim.id}")
    print(f"  Signer: {attestation.signer_id}")
    print(f"  Claim hash: {attestation.proof.claim_hash[:16]}...")
    return 0


def cmd_create_accounts(args):
    """Create the debit and credit clearing accounts."""
    from clearing.config import Settings
    from clearing.wiring import create_ledger, ensure_accounts

    settings = Settings.from_env()
    ledger = create_ledger(settings)
    try:
        results = ensure_accounts(ledger, settings)
    finally:
        ledger.close()

    failed = 0
    for result in results:
        if result.created:
            print(f"  Account {result.account_id}: [OK] created")
        elif result.exists:
            print(f"  Account {result.account_id}: [OK] already exists")
        else:
            failed += 1
            print(f"  Account {result.account_id}: [FAIL] {result.reason}")
    return 1 if failed else 0


def cmd_balance(args):
    """Show an account's ledger balance."""
    from clearing.config import Settings
    from clearing.ledger import AccountNotFoundError
    from clearing.wiring import create_ledger

    ledger = create_ledger(Settings.from_env())
    try:
        balance = ledger.lookup_balance(args.account_id)
    except AccountNotFoundError:
        print(f"[FAIL] Account {args.account_id} not found")
        return 1
    finally:
        ledger.close()

    print(f"Account {args.account_id}: {balance}")
    return 0


def cmd_health_check(args):
    """Run connectivity checks."""
    from clearing.config import Settings
    from clearing.ledger import LedgerGatewayError
    from clearing.wiring import create_ledger, create_narrative_store

    settings = Settings.from_env()
    print("=== Attested Clearing Health Check ===\n")

    print("Ledger:")
    print(f"  Driver: {settings.ledger_driver}")
    try:
        ledger = create_ledger(settings)
    except (LedgerGatewayError, ImportError) as e:
        print(f"  Status: [FAIL] {e}")
        return 1
    try:
        reachable = ledger.ping()
    finally:
        ledger.close()
    print(f"  Status: {'[OK] Reachable' if reachable else '[FAIL] Unreachable'}")
    if not reachable:
        return 1

    print("\nNarrative mirror:")
    store = create_narrative_store(settings)
    try:
        print(f"  Type: {type(store).__name__}")
        print(f"  Entries: {store.count()}")
        print(f"  Status: {'[OK]' if store.ping() else '[WARN] Degraded'}")
    finally:
        store.close()

    print("\nEnvironment:")
    if settings.signing_private_key:
        print("  System signing key: [OK] Set")
    else:
        print("  System signing key: [WARN] Using ephemeral (development)")

    print("\n=== Health Check Complete ===")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Attested Clearing Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser(
        "generate-keypair",
        help="Generate an Ed25519 signing keypair"
    )

    p_derive = subparsers.add_parser(
        "derive-transfer-id",
        help="Show the transfer id derived from a claim id"
    )
    p_derive.add_argument("--claim-id", required=True, help="Claim id")

    p_attest = subparsers.add_parser(
        "attest",
        help="Attest a claim JSON file"
    )
    p_attest.add_argument("--claim", required=True, help="Path to claim JSON")
    p_attest.add_argument("--output", "-o", help="Write attestation JSON here (default: stdout)")

    p_verify = subparsers.add_parser(
        "verify",
        help="Verify an attestation against a claim"
    )
    p_verify.add_argument("--claim", required=True, help="Path to claim JSON")
    p_verify.add_argument("--attestation", required=True, help="Path to attestation JSON")

    subparsers.add_parser(
        "create-accounts",
        help="Create the clearing accounts on the ledger"
    )

    p_balance = subparsers.add_parser(
        "balance",
        help="Show the ledger balance of an account"
    )
    p_balance.add_argument("account_id", type=int, help="Ledger account id")

    subparsers.add_parser(
        "health-check",
        help="Check ledger and mirror connectivity"
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "generate-keypair": cmd_generate_keypair,
        "derive-transfer-id": cmd_derive_transfer_id,
        "attest": cmd_attest,
        "verify": cmd_verify,
        "create-accounts": cmd_create_accounts,
        "balance": cmd_balance,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
