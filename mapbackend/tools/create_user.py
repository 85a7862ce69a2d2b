#!/usr/bin/env python3
"""
Provision a user row with a bcrypt-hashed password.

Usage:
  mapbackend-create-user --username alice --password 'S3cure!pass' --role editor
  mapbackend-create-user --username bob --password 'S3cure!pass' --dry-run
"""
from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError

from mapbackend.config.settings import get_settings
from mapbackend.security.auth import Role, hash_password, password_problems
from mapbackend.services.supabase_service import SupabaseClients

def build_user_row(
    username: str,
    password_hash: Optional[str],
    role: Role,
    full_name: Optional[str] = None,
) -> Dict[str, Any]:
    now = datetime.now(timezone.utc).isoformat()
    row: Dict[str, Any] = {
        "username": username,
        "role": role.value,
        "full_name": full_name or username,
        "created_at": now,
        "updated_at": now,
    }
    if password_hash is not None:
        row["password"] = password_hash
    return row


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Create a user with a bcrypt-hashed password.")
    ap.add_argument("--username", required=True)
    ap.add_argument("--password", required=True)
    ap.add_argument("--role", default=Role.NORMAL.value, choices=[r.value for r in Role])
    ap.add_argument("--full-name", default=None)
    ap.add_argument("--dry-run", action="store_true", help="print the row, write nothing")
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None, clients: Optional[SupabaseClients] = None) -> int:
    args = parse_args(argv)
    username = args.username.strip()
    if not username:
        print("ERROR: username must not be blank", file=sys.stderr)
        return 2

    problems = password_problems(args.password)
    if problems:
        print("ERROR: password needs " + ", ".join(problems), file=sys.stderr)
        return 2

    role = Role(args.role)
    if args.dry_run:
        print(json.dumps(build_user_row(username, None, role, args.full_name), indent=2))
        return 0

    row = build_user_row(username, hash_password(args.password), role, args.full_name)
    clients = clients or SupabaseClients.from_settings(get_settings())
    try:
        res = clients.elevated.table("users").insert(row).execute()
    except APIError as e:
        print(f"ERROR: could not create user: {e.message}", file=sys.stderr)
        return 1

    created = (res.data or [{}])[0]
    print(f"created user id={created.get('id')} username={username} role={role.value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
