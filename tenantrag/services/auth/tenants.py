from __future__ import annotations

import asyncio
from dataclasses import dataclass
import hashlib
import logging
import time
from typing import Callable

import jwt

from tenantrag.core.config import Settings
from tenantrag.core.errors import Forbidden, Unauthorized
from tenantrag.domain.types import TenantContext
from tenantrag.persistence.tenants import TenantRecord, TenantStore
from tenantrag.services.auth.api_keys import hash_api_key, key_id_from_raw


logger = logging.getLogger(__name__)

_SCHEME_BEARER = "bearer"
_SCHEME_API_KEY = "apikey"


@dataclass(frozen=True)
class Credential:
    # Parsed credential; kind is "api_key" or "token".
    kind: str
    value: str

    @property
    def cache_key(self) -> str:
        # API key cache keys equal the stored key hash so revocation can evict directly.
        if self.kind == "api_key":
            return hash_api_key(self.value)
        return "token:" + hashlib.sha256(self.value.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class _CacheEntry:
    expires_at: float
    tenant: TenantContext


def _looks_like_jwt(value: str) -> bool:
    parts = value.split(".")
    return len(parts) == 3 and all(parts)


def parse_credential(raw: str | None) -> Credential:
    # Accept "Bearer <key|jwt>", "ApiKey <key>" or a bare key.
    if raw is None or not raw.strip():
        raise Unauthorized("Missing credential")
    parts = raw.strip().split()
    if len(parts) == 1:
        value = parts[0]
        return Credential("token" if _looks_like_jwt(value) else "api_key", value)
    if len(parts) != 2:
        raise Unauthorized("Malformed credential")
    scheme, value = parts[0].lower(), parts[1]
    if scheme == _SCHEME_API_KEY:
        return Credential("api_key", value)
    if scheme == _SCHEME_BEARER:
        return Credential("token" if _looks_like_jwt(value) else "api_key", value)
    raise Unauthorized("Unsupported authorization scheme")


def _context_from_record(record: TenantRecord) -> TenantContext:
    return TenantContext(
        tenant_id=record.id,
        tier=record.tier,
        config=dict(record.config),
        name=record.name,
    )


class TenantDirectory:
    """Resolve credentials to tenant contexts with a TTL cache.

    Concurrent resolutions of the same credential share one in-flight lookup;
    the cache only ever stores fully built, frozen contexts.
    """

    def __init__(
        self,
        store: TenantStore,
        *,
        cache_ttl_s: int = 300,
        jwt_secret: str | None = None,
        jwt_algorithm: str = "HS256",
        jwt_audience: str | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._cache_ttl_s = cache_ttl_s
        self._jwt_secret = jwt_secret
        self._jwt_algorithm = jwt_algorithm
        self._jwt_audience = jwt_audience
        # Allow injecting time for deterministic cache expiry tests.
        self._time_provider = time_provider or time.monotonic
        self._cache: dict[str, _CacheEntry] = {}
        self._inflight: dict[str, asyncio.Future[tuple[TenantContext, float]]] = {}
        # Bumped on every revocation or invalidation; lookups that straddle a bump are not cached.
        self._epoch = 0
        self._next_prune_at = self._time_provider() + max(cache_ttl_s, 1)

    @classmethod
    def from_settings(cls, store: TenantStore, settings: Settings) -> "TenantDirectory":
        return cls(
            store,
            cache_ttl_s=settings.auth_cache_ttl_s,
            jwt_secret=settings.auth_jwt_secret,
            jwt_algorithm=settings.auth_jwt_algorithm,
            jwt_audience=settings.auth_jwt_audience,
        )

    @property
    def store(self) -> TenantStore:
        return self._store

    async def resolve(self, raw_credential: str | None) -> TenantContext:
        credential = parse_credential(raw_credential)
        cache_key = credential.cache_key
        now = self._time_provider()

        entry = self._cache.get(cache_key)
        if entry is not None:
            if entry.expires_at > now:
                return entry.tenant
            self._cache.pop(cache_key, None)

        epoch = self._epoch
        inflight = self._inflight.get(cache_key)
        if inflight is None:
            inflight = asyncio.ensure_future(self._load(credential))
            self._inflight[cache_key] = inflight
            inflight.add_done_callback(lambda done: self._drop_inflight(cache_key, done))

        # Shield so one caller's cancellation does not fail other waiters.
        tenant, expires_at = await asyncio.shield(inflight)
        if self._cache_ttl_s > 0 and epoch == self._epoch:
            self._prune_if_due()
            self._cache[cache_key] = _CacheEntry(expires_at=expires_at, tenant=tenant)
        return tenant

    def _drop_inflight(self, cache_key: str, done: asyncio.Future) -> None:
        # A revocation may already have replaced this lookup with a newer one.
        if self._inflight.get(cache_key) is done:
            self._inflight.pop(cache_key, None)

    def _prune_if_due(self) -> None:
        now = self._time_provider()
        if now >= self._next_prune_at:
            self.prune_expired()
            self._next_prune_at = now + max(self._cache_ttl_s, 1)

    async def _load(self, credential: Credential) -> tuple[TenantContext, float]:
        expires_at = self._time_provider() + self._cache_ttl_s
        if credential.kind == "token":
            tenant_id, token_expires_at = self._decode_token(credential.value)
            if token_expires_at is not None:
                # Never cache a token past its own expiry.
                remaining = token_expires_at - time.time()
                expires_at = min(expires_at, self._time_provider() + max(0.0, remaining))
        else:
            key = await self._store.get_api_key(hash_api_key(credential.value))
            if key is None:
                logger.info("auth_denied reason=unknown_key key_id=%s", key_id_from_raw(credential.value))
                raise Forbidden("Unknown API key")
            if key.is_revoked:
                logger.info("auth_denied reason=revoked_key key_id=%s", key.id)
                raise Forbidden("API key revoked")
            tenant_id = key.tenant_id

        record = await self._store.get_tenant(tenant_id)
        if record is None:
            logger.info("auth_denied reason=unknown_tenant tenant_id=%s", tenant_id)
            raise Forbidden("Unknown tenant")
        if not record.is_active:
            logger.info("auth_denied reason=inactive_tenant tenant_id=%s", tenant_id)
            raise Forbidden("Tenant disabled")
        return _context_from_record(record), expires_at

    async def lookup_tenant(self, tenant_id: str) -> TenantContext:
        # Rebuild a context from the registry for work that outlives the request (jobs).
        record = await self._store.get_tenant(tenant_id)
        if record is None or not record.is_active:
            raise Forbidden("Unknown tenant")
        return _context_from_record(record)

    def _decode_token(self, token: str) -> tuple[str, float | None]:
        if not self._jwt_secret:
            raise Unauthorized("Bearer tokens are not accepted")
        try:
            claims = jwt.decode(
                token,
                self._jwt_secret,
                algorithms=[self._jwt_algorithm],
                audience=self._jwt_audience,
                options={"verify_aud": self._jwt_audience is not None},
            )
        except jwt.ExpiredSignatureError as exc:
            raise Unauthorized("Token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise Unauthorized("Invalid token") from exc
        tenant_id = claims.get("tenant_id")
        if not isinstance(tenant_id, str) or not tenant_id:
            raise Unauthorized("Token missing tenant_id claim")
        exp = claims.get("exp")
        return tenant_id, float(exp) if exp is not None else None

    async def revoke_api_key(self, raw_key: str) -> bool:
        # Revoke in the store and evict eagerly so the next request is denied.
        key_hash = hash_api_key(raw_key)
        record = await self._store.revoke_api_key(key_hash)
        self._epoch += 1
        self._cache.pop(key_hash, None)
        self._inflight.pop(key_hash, None)
        if record is None:
            return False
        logger.info("api_key_revoked key_id=%s tenant_id=%s", record.id, record.tenant_id)
        return True

    def invalidate_tenant(self, tenant_id: str) -> int:
        # Drop every cached credential for a tenant (re-tiering, suspension).
        self._epoch += 1
        stale = [key for key, entry in list(self._cache.items()) if entry.tenant.tenant_id == tenant_id]
        for key in stale:
            self._cache.pop(key, None)
        return len(stale)

    def prune_expired(self) -> int:
        now = self._time_provider()
        stale = [key for key, entry in list(self._cache.items()) if entry.expires_at <= now]
        for key in stale:
            self._cache.pop(key, None)
        return len(stale)

    def cache_size(self) -> int:
        return len(self._cache)
