from __future__ import annotations

import argparse
import asyncio
import sys

from xbrch.core.config import get_settings
from xbrch.persistence.db import Database
from xbrch.persistence.repos import tenants as tenants_repo
from xbrch.services.audit import record_event
from xbrch.services.auth.api_keys import issue_api_key, provision_tenant


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Provision a tenant or issue it a new API key")
    parser.add_argument("--tenant", default=None, help="Existing tenant id; omit to create one")
    parser.add_argument("--email", default=None, help="Tenant email for new tenants")
    parser.add_argument("--plan", default="free", help="Plan: free|pro|authority")
    parser.add_argument("--role", default="user", help="Role: user|admin")
    parser.add_argument("--monthly-limit", type=int, default=None, help="Override the plan limit")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    database = Database(get_settings().database_url)
    try:
        async with database.session() as session:
            issued = None
            if args.tenant:
                tenant = await tenants_repo.get_tenant(session, args.tenant)
                if tenant is not None:
                    issued = await issue_api_key(session, tenant_id=tenant.id, name=args.name)
            if issued is None:
                issued = await provision_tenant(
                    session,
                    email=args.email,
                    plan=args.plan,
                    role=args.role,
                    monthly_limit=args.monthly_limit,
                    key_name=args.name,
                    tenant_id=args.tenant,
                )
            # Record key creation in the same commit as the key itself.
            await record_event(
                session=session,
                tenant_id=issued.tenant_id,
                actor_id="create_api_key",
                actor_role="system",
                action="CREATE_API_KEY",
                resource_type="api_key",
                resource_id=issued.key_id,
                new_values={"key_prefix": issued.key_prefix, "key_name": args.name},
                commit=True,
                best_effort=False,
            )
    finally:
        await database.dispose()

    print("API key created:")
    print(f"  tenant_id: {issued.tenant_id}")
    print(f"  key_id: {issued.key_id}")
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
