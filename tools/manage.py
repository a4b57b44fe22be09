#!/usr/bin/env python3
"""
claimflow Management CLI

Commands for managing the claim system:
- init-db: Create the PostgreSQL tables
- set-role: Grant or revoke the ADMIN role by e-mail
- list-claims: List claims, optionally by status
- verify-audit: Verify every claim's audit chain
- health-check: Check configuration and store connectivity

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-db
    python -m tools.manage set-role alex@example.edu --role ADMIN
    python -m tools.manage list-claims --status UNDER_REVIEW
"""

import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def cmd_init_db(args):
    """Create tables and indexes."""
    from claimflow.db import create_store, PostgresClaimStore

    store = create_store()
    if not isinstance(store, PostgresClaimStore):
        print("No database configured (in-memory store). Nothing to initialize.")
        return 0

    store.create_schema()
    print("[OK] Schema created")
    return 0


def cmd_set_role(args):
    """Set a user's role (the way admins are made)."""
    from claimflow.db import create_store
    from claimflow.schemas import UserRole

    store = create_store()
    user = store.get_user_by_email(args.email)
    if user is None:
        print(f"Error: no user with e-mail {args.email}")
        return 1

    role = UserRole(args.role.upper())
    if user.role == role:
        print(f"{user.email} is already {role.value}")
        return 0

    store.save_user(user.model_copy(update={"role": role}))
    print(f"[OK] {user.email}: {user.role.value} -> {role.value}")
    return 0


def cmd_list_claims(args):
    """Print claims, grouped by status, newest first."""
    from claimflow.core import ClaimService
    from claimflow.db import create_store

    service = ClaimService(create_store())
    claims = service.get_all_claims(args.status.upper() if args.status else None)

    if not claims:
        print("No claims.")
        return 0

    for claim in claims:
        target = claim.target
        print(
            f"{claim.id}  {claim.status.value:<17} "
            f"{target.kind.value}:{target.id}  "
            f"{claim.requester_name} <{claim.requester_email}>  "
            f"{claim.created_at:%Y-%m-%d}"
        )
    print(f"\n{len(claims)} claim(s)")
    return 0


def cmd_verify_audit(args):
    """Verify every claim's audit chain."""
    from claimflow.core import ClaimService
    from claimflow.db import create_store

    service = ClaimService(create_store())
    results = service.verify_audit_logs()
    broken = {cid: idx for cid, idx in results.items() if idx is not None}

    print(f"Checked {len(results)} claim(s)")
    if not broken:
        print("[OK] All audit chains verified")
        return 0

    for claim_id, index in broken.items():
        print(f"[FAIL] Claim {claim_id}: chain breaks at entry {index}")
    return 1


def cmd_health_check(args):
    """Run health checks."""
    from claimflow.db import create_store
    from claimflow.db.config import get_database_config, get_store_driver, StoreDriver
    from claimflow.observability import check_health

    driver = get_store_driver()

    print("=== claimflow Health Check ===\n")

    print("Store:")
    if driver == StoreDriver.MEMORY:
        print("  Type: In-Memory")
    else:
        config = get_database_config()
        print(f"  Type: PostgreSQL ({driver.value})")
        if config is not None:
            print(f"  Host: {config.host}:{config.port}/{config.database}")

    status = check_health(store=create_store())
    store_check = status.checks.get("claim_store", {})
    if status.healthy:
        print(f"  Status: [OK] {store_check.get('claim_count', 0)} claim(s)")
    else:
        print(f"  Status: [FAIL] {store_check.get('error')}")
        return 1

    print("\n=== Health Check Complete ===")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="claimflow Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create the PostgreSQL schema")

    p_role = subparsers.add_parser("set-role", help="Set a user's role by e-mail")
    p_role.add_argument("email", help="User e-mail")
    p_role.add_argument(
        "--role",
        default="ADMIN",
        choices=["ADMIN", "USER", "admin", "user"],
        help="Role to set (default: ADMIN)",
    )

    p_list = subparsers.add_parser("list-claims", help="List claims")
    p_list.add_argument("--status", help="Only claims in this status")

    subparsers.add_parser("verify-audit", help="Verify every claim's audit chain")

    subparsers.add_parser("health-check", help="Run health checks")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init-db": cmd_init_db,
        "set-role": cmd_set_role,
        "list-claims": cmd_list_claims,
        "verify-audit": cmd_verify_audit,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
