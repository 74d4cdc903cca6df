from __future__ import annotations

import argparse
import asyncio
import sys

from tenantrag.core.config import get_settings
from tenantrag.persistence.db import build_engine, build_sessionmaker
from tenantrag.persistence.tenants import SqlTenantStore


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI usage minimal to avoid revoking the wrong key.
    parser = argparse.ArgumentParser(description="Revoke an API key by id")
    parser.add_argument("key_id", help="API key id to revoke")
    return parser


async def _revoke_key(key_id: str) -> int:
    # Mark the key revoked without deleting history.
    settings = get_settings()
    engine = build_engine(settings.database_url)
    try:
        store = SqlTenantStore(build_sessionmaker(engine))
        record = await store.revoke_api_key_by_id(key_id)
    finally:
        await engine.dispose()
    if record is None:
        raise ValueError("API key not found")
    print(f"Revoked API key {key_id} (tenant {record.tenant_id})")
    print(f"Running API processes stop accepting it within {settings.auth_cache_ttl_s}s.")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_revoke_key(args.key_id))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"revoke_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
