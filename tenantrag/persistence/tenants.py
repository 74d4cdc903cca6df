from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tenantrag.core.errors import StorageFailure
from tenantrag.domain.models import ApiKey, Base, Tenant
from tenantrag.domain.types import TenantTier
from tenantrag.services.auth.api_keys import KEY_PREFIX_CHARS, generate_api_key, hash_api_key


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantRecord:
    id: str
    tier: TenantTier = TenantTier.STANDARD
    name: str | None = None
    config: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True


@dataclass(frozen=True)
class ApiKeyRecord:
    id: str
    tenant_id: str
    key_hash: str
    key_prefix: str
    name: str | None = None
    revoked_at: datetime | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass(frozen=True)
class IssuedApiKey:
    # Raw key is returned exactly once; only the hash is stored.
    key_id: str
    tenant_id: str
    raw_key: str
    key_prefix: str


class TenantStore(Protocol):
    async def get_tenant(self, tenant_id: str) -> TenantRecord | None:
        ...

    async def get_api_key(self, key_hash: str) -> ApiKeyRecord | None:
        ...

    async def upsert_tenant(self, record: TenantRecord) -> TenantRecord:
        ...

    async def issue_api_key(self, tenant_id: str, *, name: str | None = None) -> IssuedApiKey:
        ...

    async def revoke_api_key(self, key_hash: str) -> ApiKeyRecord | None:
        ...


class InMemoryTenantStore:
    """Process-local tenant registry used for development and tests."""

    def __init__(self) -> None:
        self._tenants: dict[str, TenantRecord] = {}
        self._keys: dict[str, ApiKeyRecord] = {}

    async def get_tenant(self, tenant_id: str) -> TenantRecord | None:
        return self._tenants.get(tenant_id)

    async def get_api_key(self, key_hash: str) -> ApiKeyRecord | None:
        return self._keys.get(key_hash)

    async def upsert_tenant(self, record: TenantRecord) -> TenantRecord:
        return self.add_tenant(record)

    def add_tenant(self, record: TenantRecord) -> TenantRecord:
        self._tenants[record.id] = record
        return record

    async def issue_api_key(self, tenant_id: str, *, name: str | None = None) -> IssuedApiKey:
        material = generate_api_key()
        self._keys[material.key_hash] = ApiKeyRecord(
            id=material.key_id,
            tenant_id=tenant_id,
            key_hash=material.key_hash,
            key_prefix=material.key_prefix,
            name=name,
        )
        return IssuedApiKey(
            key_id=material.key_id, tenant_id=tenant_id, raw_key=material.raw_key, key_prefix=material.key_prefix
        )

    def add_api_key(self, tenant_id: str, raw_key: str, *, name: str | None = None) -> ApiKeyRecord:
        # Register a known raw key, used by seeding and tests.
        key_hash = hash_api_key(raw_key)
        record = ApiKeyRecord(
            id=uuid4().hex,
            tenant_id=tenant_id,
            key_hash=key_hash,
            key_prefix=raw_key[:KEY_PREFIX_CHARS],
            name=name,
        )
        self._keys[key_hash] = record
        return record

    async def revoke_api_key(self, key_hash: str) -> ApiKeyRecord | None:
        record = self._keys.get(key_hash)
        if record is None:
            return None
        if not record.is_revoked:
            record = ApiKeyRecord(
                id=record.id,
                tenant_id=record.tenant_id,
                key_hash=record.key_hash,
                key_prefix=record.key_prefix,
                name=record.name,
                revoked_at=datetime.now(timezone.utc),
            )
            self._keys[key_hash] = record
        return record


def seed_tenants(store: InMemoryTenantStore, raw_json: str | None) -> int:
    # Seed tenants and their known keys from JSON: [{"id", "tier", "api_keys": [...]}].
    if not raw_json:
        return 0
    entries = json.loads(raw_json)
    for entry in entries:
        record = TenantRecord(
            id=str(entry["id"]),
            tier=TenantTier(entry.get("tier", TenantTier.STANDARD.value)),
            name=entry.get("name"),
            config=dict(entry.get("config") or {}),
            is_active=bool(entry.get("is_active", True)),
        )
        store.add_tenant(record)
        for raw_key in entry.get("api_keys") or []:
            store.add_api_key(record.id, str(raw_key))
    logger.info("tenants_seeded count=%s", len(entries))
    return len(entries)


def _tenant_record(row: Tenant) -> TenantRecord:
    return TenantRecord(
        id=row.id,
        tier=TenantTier(row.tier),
        name=row.name,
        config=dict(row.config_json or {}),
        is_active=bool(row.is_active),
    )


def _api_key_record(row: ApiKey) -> ApiKeyRecord:
    return ApiKeyRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        name=row.name,
        revoked_at=row.revoked_at,
    )


class SqlTenantStore:
    """Durable tenant registry backed by the tenants and api_keys tables."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    @staticmethod
    async def create_schema(engine: AsyncEngine) -> None:
        # Idempotent create-if-absent DDL for the registry tables.
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def get_tenant(self, tenant_id: str) -> TenantRecord | None:
        try:
            async with self._sessionmaker() as session:
                row = await session.get(Tenant, tenant_id)
        except SQLAlchemyError as exc:
            raise StorageFailure("Tenant lookup failed") from exc
        return _tenant_record(row) if row is not None else None

    async def get_api_key(self, key_hash: str) -> ApiKeyRecord | None:
        try:
            async with self._sessionmaker() as session:
                result = await session.execute(select(ApiKey).where(ApiKey.key_hash == key_hash))
                row = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StorageFailure("API key lookup failed") from exc
        return _api_key_record(row) if row is not None else None

    async def upsert_tenant(self, record: TenantRecord) -> TenantRecord:
        try:
            async with self._sessionmaker() as session:
                row = await session.get(Tenant, record.id)
                if row is None:
                    row = Tenant(id=record.id)
                    session.add(row)
                row.name = record.name
                row.tier = TenantTier(record.tier).value
                row.config_json = dict(record.config)
                row.is_active = record.is_active
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageFailure("Tenant upsert failed") from exc
        return record

    async def issue_api_key(self, tenant_id: str, *, name: str | None = None) -> IssuedApiKey:
        material = generate_api_key()
        try:
            async with self._sessionmaker() as session:
                session.add(
                    ApiKey(
                        id=material.key_id,
                        tenant_id=tenant_id,
                        key_prefix=material.key_prefix,
                        key_hash=material.key_hash,
                        name=name,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageFailure("API key creation failed") from exc
        return IssuedApiKey(
            key_id=material.key_id, tenant_id=tenant_id, raw_key=material.raw_key, key_prefix=material.key_prefix
        )

    async def revoke_api_key(self, key_hash: str) -> ApiKeyRecord | None:
        try:
            async with self._sessionmaker() as session:
                result = await session.execute(select(ApiKey).where(ApiKey.key_hash == key_hash))
                row = result.scalar_one_or_none()
                if row is None:
                    return None
                if row.revoked_at is None:
                    await session.execute(
                        update(ApiKey)
                        .where(ApiKey.id == row.id)
                        .values(revoked_at=datetime.now(timezone.utc))
                    )
                    await session.commit()
                    await session.refresh(row)
                return _api_key_record(row)
        except SQLAlchemyError as exc:
            raise StorageFailure("API key revocation failed") from exc

    async def revoke_api_key_by_id(self, key_id: str) -> ApiKeyRecord | None:
        # Operators usually know the key id rather than the raw secret.
        try:
            async with self._sessionmaker() as session:
                row = await session.get(ApiKey, key_id)
        except SQLAlchemyError as exc:
            raise StorageFailure("API key lookup failed") from exc
        if row is None:
            return None
        return await self.revoke_api_key(row.key_hash)
