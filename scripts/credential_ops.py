"""
Operations CLI for the weekly secondary credential.

Run `ensure` from the weekly scheduler (Monday 00:00); `rotate` is the manual
override when a credential leaks.
"""

import argparse
import json
import sys
from pathlib import Path

# Add repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from stepguard.core.config import DB_PATH, USAGE_STATS_DEFAULT_DAYS, validate_config
from stepguard.core.credentials import CredentialManager, week_id
from stepguard.core.errors import StepGuardError
from stepguard.core.store import DocumentStore
from util.logging import logger


def _manager(args) -> CredentialManager:
    return CredentialManager(DocumentStore(args.db_path))


def _print_credential(label: str, credential, show: bool):
    expires_at = credential["expiresAt"]
    print(f"✅ {label} for week {week_id(expires_at)}")
    print(f"   Expires: {expires_at.isoformat()}")
    if show:
        print(f"   Credential: {credential['plaintext']}")


def ensure_command(args) -> int:
    """Make sure this week's credential exists."""
    credential = _manager(args).current()
    _print_credential("Credential active", credential, args.show)
    logger.log_operation("credential.ensure", "success", {"expires_at": credential["expiresAt"].isoformat()})
    return 0


def rotate_command(args) -> int:
    """Invalidate the active credential and issue a new one."""
    if not args.yes:
        print("⚠️  WARNING: Rotating invalidates the credential every administrator is using")
        response = input("Are you sure you want to continue? (yes/no): ").strip().lower()
        if response != "yes":
            print("Rotation cancelled.")
            return 0

    credential = _manager(args).force_rotate()
    _print_credential("Credential rotated", credential, args.show)
    logger.log_operation("credential.rotate", "success", {"expires_at": credential["expiresAt"].isoformat()})
    return 0


def show_command(args) -> int:
    credential = _manager(args).current()
    _print_credential("Current credential", credential, show=True)
    return 0


def stats_command(args) -> int:
    stats = _manager(args).stats(args.days)

    if args.json:
        print(json.dumps(stats, indent=2, default=str))
        return 0

    print(f"📊 Credential usage, last {args.days} days")
    print(f"   Total uses: {stats['totalUsage']}")
    for row in stats["actionBreakdown"]:
        print(f"     - {row['action']}: {row['count']}")
    if stats["userBreakdown"]:
        print("   By user:")
        for row in stats["userBreakdown"][:5]:
            print(f"     - {row['userId']}: {row['count']}")
        if len(stats["userBreakdown"]) > 5:
            print(f"     ... and {len(stats['userBreakdown']) - 5} more")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="StepGuard secondary credential operations",
        prog="python scripts/credential_ops.py"
    )
    parser.add_argument("--db-path", default=DB_PATH, help=f"Database path (default: {DB_PATH})")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    ensure_parser = subparsers.add_parser("ensure", help="Create this week's credential if missing")
    ensure_parser.add_argument("--show", action="store_true", help="Print the credential")
    ensure_parser.set_defaults(func=ensure_command)

    rotate_parser = subparsers.add_parser("rotate", help="Force a new credential")
    rotate_parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    rotate_parser.add_argument("--show", action="store_true", help="Print the new credential")
    rotate_parser.set_defaults(func=rotate_command)

    show_parser = subparsers.add_parser("show", help="Print the current credential")
    show_parser.set_defaults(func=show_command)

    stats_parser = subparsers.add_parser("stats", help="Show credential usage statistics")
    stats_parser.add_argument(
        "--days",
        type=int,
        default=USAGE_STATS_DEFAULT_DAYS,
        help=f"Trailing window in days (default: {USAGE_STATS_DEFAULT_DAYS})"
    )
    stats_parser.add_argument("--json", action="store_true", help="Output statistics in JSON format")
    stats_parser.set_defaults(func=stats_command)

    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    issues = validate_config()
    if issues:
        for issue in issues:
            print(f"❌ ERROR: {issue}")
        return 1

    try:
        return args.func(args)
    except StepGuardError as e:
        print(f"❌ {args.command} failed: {e.reason}")
        logger.error(f"CLI {args.command} failed: {e.kind}: {e.reason}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
