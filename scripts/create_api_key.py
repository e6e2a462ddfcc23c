from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

from leasekeeper.persistence.db import SessionLocal
from leasekeeper.services.audit import record_event
from leasekeeper.services.auth.api_keys import provision_api_key


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an API key for a tenant user")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--role", required=True, help="Role: user|api|infra|admin")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--user-id", default=None, help="Existing user id to attach")
    parser.add_argument("--email", default=None, help="Optional user email")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        issued = await provision_api_key(
            session,
            tenant_id=args.tenant,
            user_id=args.user_id or uuid4().hex,
            role=args.role,
            name=args.name,
            email=args.email,
        )
        await record_event(
            session=session,
            tenant_id=issued.tenant_id,
            actor_type="system",
            actor_id="create_api_key",
            actor_role=issued.role,
            event_type="auth.api_key.created",
            outcome="success",
            resource_type="api_key",
            resource_id=issued.key_id,
            metadata={
                "user_id": issued.user_id,
                "key_prefix": issued.key_prefix,
                "key_name": args.name,
            },
            commit=True,
            best_effort=False,
        )

    print("API key created:")
    print(f"  key_id: {issued.key_id}")
    print(f"  user_id: {issued.user_id}")
    print(f"  key_prefix: {issued.key_prefix}")
    print("  api_key: ")
    print(f"    {issued.raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
