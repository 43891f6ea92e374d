#!/usr/bin/env python3
"""Copy one workspace's tools, variables, assistants and flows into another.

Usage:
    python scripts/copy_workspace.py --from ws-source --to ws-target

    # Show what would be created/updated without writing:
    python scripts/copy_workspace.py --from ws-source --to ws-target --dry-run

    # Create the import-key unique indexes once per database:
    python scripts/copy_workspace.py --ensure-indexes

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    FROM_WORKSPACE_ID / TO_WORKSPACE_ID: defaults for --from / --to
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def copy_workspace(source: str, destination: str, dry_run: bool = False) -> dict:
    """Run (or preview) a copy and return per-kind counts."""
    # Import here to avoid loading config before env vars are set
    from flowsync.service.runtime import get_runtime

    runtime = get_runtime()
    service = runtime.workspace_copy
    summary = (
        service.preview(source, destination)
        if dry_run
        else service.copy_workspace(source, destination)
    )
    return {
        "status": "dry_run" if dry_run else "copied",
        "created": summary.created,
        "updated": summary.updated,
        "kinds": {
            kind: {"created": counts.created, "updated": counts.updated}
            for kind, counts in summary.kinds.items()
        },
    }


def ensure_indexes() -> list:
    """Create the import-key unique indexes on the platform tables."""
    from flowsync.storage.postgres import PostgresStore

    store = PostgresStore(os.environ["DATABASE_URL"], min_size=1, max_size=1)
    try:
        return store.ensure_import_key_indexes()
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Copy workspace records between workspaces",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--from",
        dest="source",
        default=os.environ.get("FROM_WORKSPACE_ID"),
        help="Source workspace id (or set FROM_WORKSPACE_ID env var)",
    )
    parser.add_argument(
        "--to",
        dest="destination",
        default=os.environ.get("TO_WORKSPACE_ID"),
        help="Destination workspace id (or set TO_WORKSPACE_ID env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    parser.add_argument(
        "--ensure-indexes",
        action="store_true",
        help="Create the import-key unique indexes on the record tables and exit",
    )

    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL is required")
        sys.exit(1)

    # Aborts are irrelevant here; never require Redis for a copy
    os.environ.setdefault("MODE", "main")

    if args.ensure_indexes:
        try:
            tables = ensure_indexes()
        except Exception as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(f"Import-key indexes present on: {', '.join(tables)}")
        return

    if not args.source or not args.destination:
        print("Error: --from and --to (or FROM_WORKSPACE_ID/TO_WORKSPACE_ID) are required")
        sys.exit(1)

    try:
        result = copy_workspace(args.source, args.destination, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    label = "[DRY RUN] Would copy" if args.dry_run else "Copied"
    print(f"{label} {args.source} -> {args.destination}")
    for kind, counts in result["kinds"].items():
        print(f"  {kind}: {counts['created']} created, {counts['updated']} updated")
    print(f"  total: {result['created']} created, {result['updated']} updated")


if __name__ == "__main__":
    main()
