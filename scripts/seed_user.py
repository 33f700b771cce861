#!/usr/bin/env python3
"""Seed a user, and optionally a few starter tasks, into a persisted store.

Usage:
    # Using environment variables:
    SEED_EMAIL=ada@example.com SEED_PASSWORD=secret123 DATA_DIR=./data python scripts/seed_user.py

    # Or with command line args:
    python scripts/seed_user.py --name Ada --email ada@example.com --password secret123 \
        --data-dir ./data --sample-tasks

Environment Variables:
    SEED_NAME: Display name for the user (default: derived from the email)
    SEED_EMAIL: Email for the user
    SEED_PASSWORD: Password for the user
    DATA_DIR: Directory holding the JSON state the server loads at startup
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

SAMPLE_TASKS = [
    {"title": "Read the onboarding notes", "priority": "low"},
    {"title": "Plan the week", "priority": "medium", "tags": ["planning"]},
    {"title": "Ship the first task", "priority": "high", "is_important": True},
]


async def seed_user(
    name: str,
    email: str,
    password: str,
    *,
    sample_tasks: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the user unless the email is taken.

    Returns:
        dict with user_id, email, tasks and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from taskboard.service.runtime import get_runtime

    runtime = get_runtime()

    existing_user = runtime.store.get_user_by_email(email)
    if existing_user:
        print(f"User {email} already exists (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "tasks": 0, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "tasks": 0, "status": "dry_run"}

    result = await runtime.auth.register(name, email, password)
    created_tasks = 0
    if sample_tasks:
        for task in SAMPLE_TASKS:
            await runtime.tasks.create_task(result.user.id, **task)
            created_tasks += 1

    print(f"Created user: {email} (id: {result.user.id})")
    return {
        "user_id": result.user.id,
        "email": email,
        "tasks": created_tasks,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Seed a Taskboard user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("SEED_NAME"),
        help="Display name (or set SEED_NAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SEED_EMAIL"),
        help="User email (or set SEED_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SEED_PASSWORD"),
        help="User password (or set SEED_PASSWORD env var)",
    )
    parser.add_argument(
        "--data-dir",
        default=os.environ.get("DATA_DIR"),
        help="State directory shared with the server (or set DATA_DIR env var)",
    )
    parser.add_argument(
        "--sample-tasks",
        action="store_true",
        help="Also create a handful of starter tasks",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SEED_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or SEED_PASSWORD environment variable required")
        sys.exit(1)

    if not args.data_dir:
        print("Error: --data-dir or DATA_DIR required; an in-memory seed would be lost on exit")
        sys.exit(1)

    os.environ["DATA_DIR"] = args.data_dir
    name = args.name or args.email.split("@", 1)[0]

    try:
        result = asyncio.run(
            seed_user(
                name,
                args.email,
                args.password,
                sample_tasks=args.sample_tasks,
                dry_run=args.dry_run,
            )
        )
        if result["status"] == "created":
            print("\nUser created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
            if result["tasks"]:
                print(f"  Sample tasks: {result['tasks']}")
        elif result["status"] == "exists":
            print("\nNo changes needed - the email is already registered.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
