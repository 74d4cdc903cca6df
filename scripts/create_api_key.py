from __future__ import annotations

import argparse
import asyncio
import json
import sys

from tenantrag.core.config import get_settings
from tenantrag.domain.types import TenantTier
from tenantrag.persistence.db import build_engine, build_sessionmaker
from tenantrag.persistence.tenants import SqlTenantStore, TenantRecord


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Create an API key for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--name", required=True, help="Key label for operators")
    parser.add_argument(
        "--tier",
        default=None,
        choices=[tier.value for tier in TenantTier],
        help="Create or re-tier the tenant before issuing the key",
    )
    parser.add_argument("--tenant-name", default=None, help="Display name when creating the tenant")
    parser.add_argument("--config", default=None, help="JSON tenant config (e.g. rate limit overrides)")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    settings = get_settings()
    engine = build_engine(settings.database_url)
    try:
        await SqlTenantStore.create_schema(engine)
        store = SqlTenantStore(build_sessionmaker(engine))

        tenant = await store.get_tenant(args.tenant)
        if tenant is None and args.tier is None:
            raise ValueError("Tenant does not exist; pass --tier to create it")
        if args.tier is not None or args.config is not None:
            # Re-tiering takes effect for new buckets; running API processes keep cached contexts until TTL.
            await store.upsert_tenant(
                TenantRecord(
                    id=args.tenant,
                    tier=TenantTier(args.tier or tenant.tier),
                    name=args.tenant_name or (tenant.name if tenant else None),
                    config=json.loads(args.config) if args.config else (dict(tenant.config) if tenant else {}),
                    is_active=True if tenant is None else tenant.is_active,
                )
            )

        issued = await store.issue_api_key(args.tenant, name=args.name)
    finally:
        await engine.dispose()

    print("API key created:")
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
