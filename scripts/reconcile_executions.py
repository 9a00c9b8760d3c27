#!/usr/bin/env python3
"""Fail workflow executions left RUNNING or PENDING by a dead process.

Usage:
    # Sweep everything (only safe while no engine process is running):
    python scripts/reconcile_executions.py --all

    # Sweep one tenant's executions older than 45 minutes:
    python scripts/reconcile_executions.py --tenant acme --older-than 45

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: Use the file-backed memory store under SHARED_FS_ROOT
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def reconcile(tenant: str | None, older_than: float | None, dry_run: bool) -> dict:
    # Import here to avoid loading config before env vars are set
    from flowkernel.config import get_settings
    from flowkernel.service.reconcile import reconcile_stuck_executions
    from flowkernel.service.runtime import build_store
    from flowkernel.storage.models import ExecutionStatus, utcnow

    settings = get_settings()
    store = build_store(settings)
    try:
        if dry_run:
            cutoff = utcnow() - timedelta(minutes=older_than) if older_than is not None else None
            candidates = store.list_executions(
                statuses=(ExecutionStatus.RUNNING, ExecutionStatus.PENDING),
                organization_id=tenant,
                created_before=cutoff,
            )
            return {"dry_run": True, "would_fail": [execution.id for execution in candidates]}
        stale_after = timedelta(minutes=older_than) if older_than is not None else None
        report = await reconcile_stuck_executions(store, stale_after=stale_after, organization_id=tenant)
        return report.to_dict()
    finally:
        close = getattr(store, "close", None)
        if close is not None:
            close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Fail orphaned workflow executions")
    parser.add_argument("--tenant", help="Only sweep this organization's executions")
    scope = parser.add_mutually_exclusive_group(required=True)
    scope.add_argument("--all", action="store_true", help="Sweep every RUNNING/PENDING execution")
    scope.add_argument(
        "--older-than",
        type=float,
        metavar="MINUTES",
        help="Only sweep executions created more than MINUTES ago",
    )
    parser.add_argument("--dry-run", action="store_true", help="List candidates without changing them")
    args = parser.parse_args()

    if args.older_than is not None and args.older_than < 0:
        print("Error: --older-than must be non-negative", file=sys.stderr)
        return 1

    try:
        result = asyncio.run(reconcile(args.tenant, args.older_than, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
