#!/usr/bin/env python3
"""Register a client application and print its one-time secret.

Usage:
    # Against the configured Postgres store:
    JWT_SECRET=... DATABASE_URL=postgresql://... python scripts/bootstrap_client.py --name "Billing Portal"

    # Preview without writing anything:
    python scripts/bootstrap_client.py --name "Billing Portal" --dry-run

Environment Variables:
    JWT_SECRET: Token signing secret (required by the settings loader)
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE / MEMORY_STORE_PATH: Register into a memory store snapshot instead

The client secret is shown exactly once; only its hash is stored.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MAX_NAME_LENGTH = 100


async def bootstrap_client(name: str, dry_run: bool = False) -> dict:
    """Register a client application.

    Returns:
        dict with client_id, client_secret, name, and status ('created' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are checked
    from tenantauth.schemas import RegisterClientRequest
    from tenantauth.service.runtime import get_runtime

    if dry_run:
        print(f"[DRY RUN] Would register client: {name}")
        return {"client_id": None, "client_secret": None, "name": name, "status": "dry_run"}

    runtime = get_runtime()
    try:
        result = await runtime.auth.register_client(RegisterClientRequest(name=name))
    finally:
        runtime.close()
    if not result.success:
        raise RuntimeError(result.message)
    return {
        "client_id": result.client_id,
        "client_secret": result.client_secret,
        "name": name,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Register a client application for tenantauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("CLIENT_NAME"),
        help="Client application name (or set CLIENT_NAME env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    name = (args.name or "").strip()
    if not name:
        print("Error: --name or CLIENT_NAME environment variable required")
        sys.exit(1)
    if len(name) > MAX_NAME_LENGTH:
        print(f"Error: client name must be at most {MAX_NAME_LENGTH} characters")
        sys.exit(1)

    try:
        result = asyncio.run(bootstrap_client(name, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nClient registered successfully!")
        print(f"  Name: {result['name']}")
        print(f"  Client ID: {result['client_id']}")
        print(f"  Client Secret: {result['client_secret']}")
        print("\nStore the secret now; it cannot be retrieved again.")


if __name__ == "__main__":
    main()
