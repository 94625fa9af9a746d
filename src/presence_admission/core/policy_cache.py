"""Versioned, ETag-cached policy distribution.

PolicyCache sits between the pipeline and the persistent policy store:

- Policies are cached under `policy:{id}` and, for "applicable policy"
  lookups, under `policy:office:{generation}:{office_id}`. Each entry has an
  `:etag` sibling holding a content hash of the document.
- Invalidating a global policy replaces the office generation stored at
  `policy:office-generation`, since any office may have resolved to it.
  Entries of older generations are never read again and expire with their
  TTL.
- Loads accept an If-None-Match value. When it equals the current ETag the
  result carries modified=False and no policy body, mirroring HTTP 304.
- Store fetches retry once on TransientStoreError; a second failure, or any
  other store error, resolves to "no policy" so the caller fails closed.
- invalidate() purges the id entry and the office entry (or the office
  generation for a global policy) and then notifies every registered
  hook. A failing hook is logged and the remaining hooks still run.

The read path may race an in-flight invalidation. That costs at most one stale
read inside the TTL window; evaluation is idempotent per policy version.
"""

import hashlib
import json
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from presence_admission.core.interfaces import ICacheStore, InvalidationHook, IPolicyStore
from presence_admission.core.schemas import (
    Policy,
    PolicyLoadResult,
    PolicyValidationIssue,
    PolicyValidationResult,
)
from presence_admission.errors import PresenceError, TransientStoreError
from presence_admission.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_TTL_SECONDS = 300
_ETAG_SUFFIX = ":etag"
_OFFICE_GENERATION_KEY = "policy:office-generation"
_INITIAL_GENERATION = "0"


def compute_etag(policy: Policy) -> str:
    """Deterministic quoted ETag for a policy document."""
    canonical = json.dumps(policy.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f'"{digest[:16]}"'


def validate_policy_document(data: Any) -> PolicyValidationResult:
    """Validate a raw policy document and report field-level problems."""
    try:
        policy = Policy.model_validate(data)
    except PydanticValidationError as exc:
        issues = [
            PolicyValidationIssue(
                field=".".join(str(part) for part in error["loc"]),
                message=error["msg"],
                code=error["type"],
            )
            for error in exc.errors()
        ]
        return PolicyValidationResult(valid=False, errors=issues)
    return PolicyValidationResult(valid=True, policy=policy)


class PolicyCache:
    """ETag-aware policy loader with TTL caching and invalidation hooks.

    Args:
        cache: Key/value cache with TTL.
        policy_store: Persistent policy store.
        ttl_seconds: TTL for cached documents and ETags.
    """

    def __init__(
        self,
        cache: ICacheStore,
        policy_store: IPolicyStore,
        ttl_seconds: int = _DEFAULT_TTL_SECONDS,
    ) -> None:
        self._cache = cache
        self._policy_store = policy_store
        self._ttl_seconds = ttl_seconds
        self._invalidation_hooks: list[InvalidationHook] = []

    @staticmethod
    def _id_key(policy_id: str) -> str:
        return f"policy:{policy_id}"

    async def _office_key(self, office_id: str) -> str | None:
        """Office entry key under the current generation, None when the cache is unreachable."""
        try:
            generation = await self._cache.get(_OFFICE_GENERATION_KEY)
        except Exception as exc:
            logger.warning("Policy office generation read failed", office_id=office_id, error=str(exc))
            return None
        return f"policy:office:{generation or _INITIAL_GENERATION}:{office_id}"

    def register_invalidation_hook(self, hook: InvalidationHook) -> None:
        """Register a coroutine called as hook(policy_id, office_id) after each invalidation."""
        self._invalidation_hooks.append(hook)

    async def load_by_id(self, policy_id: str, if_none_match: str | None = None) -> PolicyLoadResult:
        """Load an active policy by id with conditional-fetch semantics."""
        return await self._load(
            cache_key=self._id_key(policy_id),
            fetch=lambda: self._policy_store.get_active_by_id(policy_id),
            if_none_match=if_none_match,
        )

    async def load_applicable_for_office(
        self,
        office_id: str,
        if_none_match: str | None = None,
    ) -> PolicyLoadResult:
        """Load the single applicable policy for an office with conditional-fetch semantics."""
        return await self._load(
            cache_key=await self._office_key(office_id),
            fetch=lambda: self._policy_store.get_applicable_for_office(office_id),
            if_none_match=if_none_match,
        )

    async def _load(
        self,
        cache_key: str | None,
        fetch: Callable[[], Awaitable[Policy | None]],
        if_none_match: str | None,
    ) -> PolicyLoadResult:
        cached = await self._read_cached(cache_key) if cache_key is not None else None
        if cached is not None:
            policy, etag = cached
            logger.debug("Policy cache hit", cache_key=cache_key, etag=etag)
            if if_none_match is not None and if_none_match == etag:
                return PolicyLoadResult(policy=None, etag=etag, cached=True, modified=False)
            return PolicyLoadResult(policy=policy, etag=etag, cached=True, modified=True)

        policy = await self._fetch_with_retry(cache_key, fetch)
        if policy is None:
            return PolicyLoadResult(policy=None, etag=None, cached=False, modified=True)

        if cache_key is None:
            etag = compute_etag(policy)
        else:
            etag = await self._write_cached(cache_key, policy)
        if if_none_match is not None and if_none_match == etag:
            return PolicyLoadResult(policy=None, etag=etag, cached=False, modified=False)
        return PolicyLoadResult(policy=policy, etag=etag, cached=False, modified=True)

    async def _read_cached(self, cache_key: str) -> tuple[Policy, str] | None:
        try:
            raw = await self._cache.get(cache_key)
            if raw is None:
                return None
            etag = await self._cache.get(cache_key + _ETAG_SUFFIX)
        except Exception as exc:
            logger.warning("Policy cache read failed", cache_key=cache_key, error=str(exc))
            return None

        try:
            policy = Policy.model_validate_json(raw)
        except PydanticValidationError as exc:
            logger.warning("Discarding unreadable cached policy", cache_key=cache_key, error=str(exc))
            return None
        return policy, etag or compute_etag(policy)

    async def _write_cached(self, cache_key: str, policy: Policy) -> str:
        etag = compute_etag(policy)
        try:
            await self._cache.set(cache_key, policy.model_dump_json(), self._ttl_seconds)
            await self._cache.set(cache_key + _ETAG_SUFFIX, etag, self._ttl_seconds)
        except Exception as exc:
            logger.warning("Policy cache write failed", cache_key=cache_key, error=str(exc))
        return etag

    async def _fetch_with_retry(
        self,
        cache_key: str | None,
        fetch: Callable[[], Awaitable[Policy | None]],
    ) -> Policy | None:
        for attempt in (1, 2):
            try:
                return await fetch()
            except TransientStoreError as exc:
                logger.warning(
                    "Transient policy store error",
                    cache_key=cache_key,
                    attempt=attempt,
                    error=str(exc),
                )
            except PresenceError as exc:
                logger.error("Policy store fetch failed", cache_key=cache_key, error=str(exc))
                return None
        logger.error("Policy store fetch failed after retry", cache_key=cache_key)
        return None

    async def invalidate(self, policy_id: str, office_id: str | None = None) -> None:
        """Purge cached entries for a policy and notify hooks.

        Args:
            policy_id: The mutated policy.
            office_id: Its office scope. None marks a global policy, which
                retires every office entry by moving to a new generation.
        """
        await self._delete_entry(self._id_key(policy_id))
        if office_id:
            await self.invalidate_office(office_id)
        else:
            await self.invalidate_all_offices()

        logger.info("Policy cache invalidated", policy_id=policy_id, office_id=office_id)

        for hook in list(self._invalidation_hooks):
            try:
                await hook(policy_id, office_id)
            except Exception as exc:
                logger.error(
                    "Policy invalidation hook failed",
                    policy_id=policy_id,
                    hook=getattr(hook, "__name__", repr(hook)),
                    error=str(exc),
                )

    async def invalidate_office(self, office_id: str) -> None:
        """Purge only the office-keyed entry (e.g. after a policy moves away from the office)."""
        key = await self._office_key(office_id)
        if key is not None:
            await self._delete_entry(key)

    async def invalidate_all_offices(self) -> None:
        """Retire every office-keyed entry by starting a new office generation."""
        try:
            await self._cache.set(_OFFICE_GENERATION_KEY, uuid.uuid4().hex)
        except Exception as exc:
            logger.error("Policy office generation bump failed", error=str(exc))

    async def _delete_entry(self, key: str) -> None:
        await self._delete_quietly(key)
        await self._delete_quietly(key + _ETAG_SUFFIX)

    async def _delete_quietly(self, key: str) -> None:
        try:
            await self._cache.delete(key)
        except Exception as exc:
            logger.warning("Policy cache delete failed", cache_key=key, error=str(exc))
