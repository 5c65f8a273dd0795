from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable, Protocol

from redis.asyncio import Redis
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relaygate.core.config import Settings, get_settings
from relaygate.core.errors import QuotaExceededError, QuotaUnavailableError, ValidationError
from relaygate.domain.state import PlanTier
from relaygate.persistence.repos import usage as usage_repo


logger = logging.getLogger(__name__)

ACTION_MESSAGE = "message"
ACTION_SESSION = "session"

SCOPE_CREDENTIAL = "credential"
SCOPE_TENANT = "tenant"


@dataclass(frozen=True)
class QuotaWindow:
    # Fixed UTC-aligned windows; seconds == 0 selects calendar months.
    seconds: int = 0

    @property
    def monthly(self) -> bool:
        return self.seconds <= 0

    def bounds(self, now: datetime) -> tuple[datetime, datetime]:
        # Return [start, reset) for the window containing now.
        now = now.astimezone(timezone.utc)
        if self.monthly:
            start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
            if start.month == 12:
                reset = start.replace(year=start.year + 1, month=1)
            else:
                reset = start.replace(month=start.month + 1)
            return start, reset
        epoch = int(now.timestamp())
        start_ts = epoch - (epoch % self.seconds)
        start = datetime.fromtimestamp(start_ts, tz=timezone.utc)
        return start, start + timedelta(seconds=self.seconds)

    @property
    def label(self) -> str:
        return "month" if self.monthly else f"{self.seconds}s"


MONTHLY = QuotaWindow(0)
HOURLY = QuotaWindow(3600)


@dataclass(frozen=True)
class ScopeCheck:
    scope: str
    scope_key: str
    limit: int
    window_start: datetime
    reset_at: datetime


@dataclass(frozen=True)
class StoreResult:
    allowed: bool
    # Post-increment counts when allowed; current counts otherwise.
    counts: list[int]
    rejected: int | None = None


@dataclass(frozen=True)
class QuotaDecision:
    # Capture the outcome and header hints for one gated action.
    allowed: bool
    scope: str | None
    limit: int | None
    used: int | None
    reset_at: datetime | None
    degraded: bool = False

    @property
    def remaining(self) -> int | None:
        if self.limit is None or self.used is None:
            return None
        return max(0, self.limit - self.used)


class WindowStore(Protocol):
    async def acquire(self, checks: list[ScopeCheck], now: datetime) -> StoreResult:
        ...


class MemoryWindowStore:
    """Single-process counters guarded by one asyncio lock."""

    def __init__(self) -> None:
        self._counts: dict[tuple[str, datetime], tuple[int, datetime]] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, checks: list[ScopeCheck], now: datetime) -> StoreResult:
        async with self._lock:
            self._prune(now)
            counts = [self._counts.get((c.scope_key, c.window_start), (0, c.reset_at))[0] for c in checks]
            for index, (check, count) in enumerate(zip(checks, counts)):
                if count >= check.limit:
                    return StoreResult(allowed=False, counts=counts, rejected=index)
            updated: list[int] = []
            for check, count in zip(checks, counts):
                self._counts[(check.scope_key, check.window_start)] = (count + 1, check.reset_at)
                updated.append(count + 1)
            return StoreResult(allowed=True, counts=updated)

    def _prune(self, now: datetime) -> None:
        expired = [key for key, (_, reset_at) in self._counts.items() if reset_at <= now]
        for key in expired:
            del self._counts[key]

    def reset(self) -> None:
        self._counts.clear()


_FIXED_WINDOW_LUA = r"""
local n = #KEYS
local counts = {}
local rejected = 0
for i = 1, n do
  local current = tonumber(redis.call("GET", KEYS[i]) or "0")
  counts[i] = current
  if rejected == 0 and current >= tonumber(ARGV[i]) then
    rejected = i
  end
end
if rejected == 0 then
  for i = 1, n do
    counts[i] = redis.call("INCR", KEYS[i])
    redis.call("EXPIREAT", KEYS[i], tonumber(ARGV[n + i]))
  end
end
local result = {rejected}
for i = 1, n do
  result[i + 1] = counts[i]
end
return result
"""


class RedisWindowStore:
    """Shared counters; one Lua script checks every scope then increments all of them."""

    def __init__(self, *, redis: Redis | None = None, prefix: str | None = None, redis_url: str | None = None) -> None:
        settings = get_settings()
        self._redis = redis
        self._redis_url = redis_url or settings.redis_url
        self._prefix = prefix or settings.quota_redis_prefix

    def _client(self) -> Redis:
        # Create the client lazily so importing the service never opens sockets.
        if self._redis is None:
            self._redis = Redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
        return self._redis

    def _key(self, check: ScopeCheck) -> str:
        return f"{self._prefix}:{check.scope_key}:{int(check.window_start.timestamp())}"

    async def acquire(self, checks: list[ScopeCheck], now: datetime) -> StoreResult:
        keys = [self._key(check) for check in checks]
        # Keep keys a little past the boundary so late readers still see final counts.
        args: list[int] = [check.limit for check in checks]
        args += [int(check.reset_at.timestamp()) + 60 for check in checks]
        result = await self._client().eval(_FIXED_WINDOW_LUA, len(keys), *keys, *args)
        rejected = int(result[0])
        counts = [int(value) for value in result[1:]]
        if rejected:
            return StoreResult(allowed=False, counts=counts, rejected=rejected - 1)
        return StoreResult(allowed=True, counts=counts)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class DatabaseWindowStore:
    """Counters in ``usage_windows`` using conditional updates inside one transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def acquire(self, checks: list[ScopeCheck], now: datetime) -> StoreResult:
        # A racing first insert raises IntegrityError; the retry then takes the update path.
        for attempt in range(2):
            async with self._session_factory() as session:
                try:
                    return await self._acquire(session, checks)
                except IntegrityError:
                    await session.rollback()
                    if attempt:
                        raise
        raise AssertionError("unreachable")

    async def _acquire(self, session: AsyncSession, checks: list[ScopeCheck]) -> StoreResult:
        counts: list[int] = []
        for index, check in enumerate(checks):
            allowed, count = await usage_repo.try_increment_window(
                session,
                scope_key=check.scope_key,
                window_start=check.window_start,
                reset_at=check.reset_at,
                limit=check.limit,
            )
            counts.append(count)
            if not allowed:
                # Undo increments of earlier scopes so rejection never consumes budget.
                await session.rollback()
                counts.extend(0 for _ in checks[index + 1 :])
                return StoreResult(allowed=False, counts=counts, rejected=index)
        await session.commit()
        return StoreResult(allowed=True, counts=counts)


def build_window_store(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> WindowStore:
    settings = settings or get_settings()
    backend = settings.quota_backend.strip().lower()
    if backend == "memory":
        return MemoryWindowStore()
    if backend == "redis":
        return RedisWindowStore(prefix=settings.quota_redis_prefix, redis_url=settings.redis_url)
    if backend == "database":
        if session_factory is None:
            raise ValidationError("database quota backend requires a session factory")
        return DatabaseWindowStore(session_factory)
    raise ValidationError(f"Unsupported quota backend: {settings.quota_backend}")


class QuotaEnforcer:
    """Gate session actions and outbound messages against fixed usage windows.

    ``enforce`` evaluates the credential scope and the tenant scope together:
    either both windows are incremented or neither is.
    """

    def __init__(
        self,
        *,
        store: WindowStore,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        # Allow injecting time for deterministic tests.
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def store(self) -> WindowStore:
        return self._store

    def _plan_limits(self, tier: str | None) -> tuple[int, int]:
        # Return (monthly messages, hourly actions) for a plan tier.
        settings = self._settings
        normalized = (tier or settings.default_plan_tier).upper()
        if normalized == PlanTier.MAX.value:
            return settings.plan_max_monthly_messages, settings.plan_max_hourly_actions
        if normalized == PlanTier.PRO.value:
            return settings.plan_pro_monthly_messages, settings.plan_pro_hourly_actions
        return settings.plan_basic_monthly_messages, settings.plan_basic_hourly_actions

    async def _resolve_limits(self, credential_id: str, tenant_id: str) -> tuple[int, str | None]:
        credential_limit: int | None = None
        tier: str | None = None
        if self._session_factory is not None:
            async with self._session_factory() as session:
                credential_limit = await usage_repo.get_credential_limit(session, credential_id)
                tier = await usage_repo.get_tenant_tier(session, tenant_id)
        if credential_limit is None:
            credential_limit = self._settings.credential_default_limit
        return credential_limit, tier

    def _build_check(self, scope: str, scope_key: str, limit: int, window: QuotaWindow, now: datetime) -> ScopeCheck:
        start, reset_at = window.bounds(now)
        return ScopeCheck(
            scope=scope,
            scope_key=f"{scope_key}:{window.label}",
            limit=limit,
            window_start=start,
            reset_at=reset_at,
        )

    async def check_and_record(
        self,
        scope_key: str,
        scope_limit: int,
        window: QuotaWindow,
        *,
        scope: str | None = None,
    ) -> QuotaDecision:
        # Gate one scope: reject at or above the limit, otherwise count the action.
        now = self._clock()
        check = self._build_check(scope or scope_key, scope_key, scope_limit, window, now)
        return await self._evaluate([check], now)

    async def enforce(self, action: str, *, credential_id: str, tenant_id: str) -> QuotaDecision:
        # Gate one logical action against the credential and tenant scopes atomically.
        if action not in (ACTION_MESSAGE, ACTION_SESSION):
            raise ValidationError(f"Unsupported quota action: {action}")
        if not self._settings.quota_enabled:
            return QuotaDecision(allowed=True, scope=None, limit=None, used=None, reset_at=None)
        now = self._clock()
        try:
            credential_limit, tier = await self._resolve_limits(credential_id, tenant_id)
        except Exception as exc:  # noqa: BLE001 - limit lookup failures follow the configured fail mode
            return self._degraded(exc, action=action, tenant_id=tenant_id)
        monthly_messages, hourly_actions = self._plan_limits(tier)
        checks = [
            self._build_check(
                SCOPE_CREDENTIAL,
                f"credential:{credential_id}",
                credential_limit,
                QuotaWindow(self._settings.credential_window_s),
                now,
            )
        ]
        if action == ACTION_MESSAGE:
            checks.append(self._build_check(SCOPE_TENANT, f"tenant:{tenant_id}:messages", monthly_messages, MONTHLY, now))
        else:
            checks.append(self._build_check(SCOPE_TENANT, f"tenant:{tenant_id}:actions", hourly_actions, HOURLY, now))
        return await self._evaluate(checks, now, action=action, tenant_id=tenant_id)

    async def _evaluate(
        self,
        checks: list[ScopeCheck],
        now: datetime,
        *,
        action: str | None = None,
        tenant_id: str | None = None,
    ) -> QuotaDecision:
        try:
            result = await self._store.acquire(checks, now)
        except Exception as exc:  # noqa: BLE001 - guard against backend connectivity failures
            return self._degraded(exc, action=action, tenant_id=tenant_id)
        if not result.allowed:
            index = result.rejected or 0
            check = checks[index]
            used = result.counts[index]
            logger.info(
                "quota_rejected scope=%s scope_key=%s used=%s limit=%s",
                check.scope,
                check.scope_key,
                used,
                check.limit,
            )
            raise QuotaExceededError(scope=check.scope, used=used, limit=check.limit, reset_at=check.reset_at)
        # Report the scope with the least headroom so clients see the binding limit.
        index = min(range(len(checks)), key=lambda i: checks[i].limit - result.counts[i])
        return QuotaDecision(
            allowed=True,
            scope=checks[index].scope,
            limit=checks[index].limit,
            used=result.counts[index],
            reset_at=checks[index].reset_at,
        )

    def _degraded(self, exc: Exception, *, action: str | None, tenant_id: str | None) -> QuotaDecision:
        if self._settings.quota_fail_mode.strip().lower() == "closed":
            logger.error("quota_backend_unavailable action=%s tenant_id=%s fail_mode=closed", action, tenant_id)
            raise QuotaUnavailableError("Quota enforcement unavailable") from exc
        logger.warning(
            "quota_backend_degraded action=%s tenant_id=%s fail_mode=open",
            action,
            tenant_id,
            exc_info=exc,
        )
        return QuotaDecision(allowed=True, scope=None, limit=None, used=None, reset_at=None, degraded=True)
