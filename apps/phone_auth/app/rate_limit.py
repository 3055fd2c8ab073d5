from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Protocol

import redis
from fastapi import Request
from sqlalchemy import delete, func
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .clock import Clock, SystemClock, seconds_until
from .database import SessionFactory, SessionLocal, session_scope
from .errors import RateLimited, failure_body
from .metrics import RATE_LIMITED
from .models import RequestLog

logger = logging.getLogger("phoneguard.ratelimit")

DEFAULT_EXEMPT_PATHS = frozenset({"/health", "/metrics"})


def _epoch(moment: datetime) -> float:
    return moment.replace(tzinfo=timezone.utc).timestamp()


def _from_epoch(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int = 0


class RequestLogStore(Protocol):
    def count_since(self, client_id: str, since: datetime) -> int: ...

    def oldest_since(self, client_id: str, since: datetime) -> Optional[datetime]: ...

    def append(self, client_id: str, at: datetime, endpoint: Optional[str], user_agent: Optional[str]) -> None: ...

    def prune(self, before: datetime) -> int: ...


class SqlRequestLog:
    """Request log kept in the ``request_logs`` table, one row per request."""

    def __init__(self, session_factory: SessionFactory = SessionLocal, scope: str = "global"):
        self.session_factory = session_factory
        self.scope = scope

    def count_since(self, client_id: str, since: datetime) -> int:
        with session_scope(self.session_factory) as db:
            return (
                db.query(func.count(RequestLog.id))
                .filter(
                    RequestLog.ip == client_id,
                    RequestLog.scope == self.scope,
                    RequestLog.created_at >= since,
                )
                .scalar()
                or 0
            )

    def oldest_since(self, client_id: str, since: datetime) -> Optional[datetime]:
        with session_scope(self.session_factory) as db:
            return (
                db.query(func.min(RequestLog.created_at))
                .filter(
                    RequestLog.ip == client_id,
                    RequestLog.scope == self.scope,
                    RequestLog.created_at >= since,
                )
                .scalar()
            )

    def append(self, client_id: str, at: datetime, endpoint: Optional[str], user_agent: Optional[str]) -> None:
        with session_scope(self.session_factory) as db:
            db.add(
                RequestLog(
                    ip=client_id[:64],
                    scope=self.scope,
                    endpoint=(endpoint or "")[:256] or None,
                    user_agent=(user_agent or "")[:512] or None,
                    created_at=at,
                )
            )

    def prune(self, before: datetime) -> int:
        with session_scope(self.session_factory) as db:
            result = db.execute(
                delete(RequestLog).where(RequestLog.scope == self.scope, RequestLog.created_at < before)
            )
            return result.rowcount or 0


class RedisRequestLog:
    """Request log kept as one sorted set per client, scored by epoch seconds.

    Entries older than the window are trimmed on every append and the key
    expires shortly after the window, so there is nothing to prune.
    """

    def __init__(self, client: "redis.Redis", prefix: str = "rl_phone_auth", scope: str = "global", window_secs: int = 900):
        self.client = client
        self.prefix = prefix
        self.scope = scope
        self.window_secs = window_secs

    def _key(self, client_id: str) -> str:
        return f"{self.prefix}:{self.scope}:{client_id}"

    def count_since(self, client_id: str, since: datetime) -> int:
        return int(self.client.zcount(self._key(client_id), _epoch(since), "+inf"))

    def oldest_since(self, client_id: str, since: datetime) -> Optional[datetime]:
        rows = self.client.zrangebyscore(self._key(client_id), _epoch(since), "+inf", start=0, num=1, withscores=True)
        if not rows:
            return None
        return _from_epoch(float(rows[0][1]))

    def append(self, client_id: str, at: datetime, endpoint: Optional[str], user_agent: Optional[str]) -> None:
        key = self._key(client_id)
        ts = _epoch(at)
        pipe = self.client.pipeline()
        pipe.zadd(key, {f"{ts:.6f}:{uuid.uuid4().hex}": ts})
        pipe.zremrangebyscore(key, "-inf", f"({ts - self.window_secs}")
        pipe.expire(key, self.window_secs + 60)
        pipe.execute()

    def prune(self, before: datetime) -> int:
        return 0


class RateLimiter:
    """Sliding-window limiter over a request log.

    A request is admitted when the entries already inside the window plus
    this one stay within ``limit``. Counting and appending are two store
    operations, so a concurrent burst from one client can slip a few
    requests past the limit.
    """

    def __init__(
        self,
        store: RequestLogStore,
        clock: Optional[Clock] = None,
        limit: int = 100,
        window_secs: int = 15 * 60,
        name: str = "global",
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.limit = limit
        self.window = timedelta(seconds=window_secs)
        self.name = name

    def allow(self, client_id: str) -> RateDecision:
        now = self.clock.now()
        since = now - self.window
        count = self.store.count_since(client_id, since)
        if count + 1 <= self.limit:
            return RateDecision(allowed=True, count=count, limit=self.limit)
        oldest = self.store.oldest_since(client_id, since)
        retry_after = seconds_until(oldest + self.window, now) if oldest is not None else 1
        return RateDecision(allowed=False, count=count, limit=self.limit, retry_after=max(retry_after, 1))

    def record(self, client_id: str, endpoint: Optional[str] = None, user_agent: Optional[str] = None) -> None:
        self.store.append(client_id, self.clock.now(), endpoint, user_agent)

    def hit(self, client_id: str, endpoint: Optional[str] = None, user_agent: Optional[str] = None) -> RateDecision:
        decision = self.allow(client_id)
        if decision.allowed:
            self.record(client_id, endpoint, user_agent)
        return decision

    def prune(self) -> int:
        return self.store.prune(self.clock.now() - self.window)


def connect_redis(url: str, timeout_secs: float = 2.0) -> "redis.Redis":
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=timeout_secs,
        socket_connect_timeout=timeout_secs,
    )


def build_request_log(
    backend: str,
    scope: str,
    *,
    window_secs: int,
    session_factory: SessionFactory = SessionLocal,
    redis_client: Optional["redis.Redis"] = None,
    prefix: str = "rl_phone_auth",
) -> RequestLogStore:
    backend = (backend or "db").lower()
    if backend == "db":
        return SqlRequestLog(session_factory, scope=scope)
    if backend == "redis":
        if redis_client is None:
            raise ValueError("redis rate limit backend requires a redis client")
        return RedisRequestLog(redis_client, prefix=prefix, scope=scope, window_secs=window_secs)
    raise ValueError(f"Unknown RATE_LIMIT_BACKEND: {backend}")


def client_ip(request: Request, trust_proxy_headers: bool = False) -> str:
    if trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies a :class:`RateLimiter` per client IP.

    ``paths`` restricts the limiter to those exact paths; by default every
    path except ``exempt_paths`` is limited. ``on_denied(ip, reason)`` is
    called for each rejected request.
    """

    def __init__(
        self,
        app,
        limiter: RateLimiter,
        paths: Optional[Iterable[str]] = None,
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
        trust_proxy_headers: bool = False,
        on_denied: Optional[Callable[[str, str], None]] = None,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.paths = frozenset(paths) if paths is not None else None
        self.exempt_paths = frozenset(exempt_paths)
        self.trust_proxy_headers = trust_proxy_headers
        self.on_denied = on_denied

    def _applies(self, path: str) -> bool:
        if path in self.exempt_paths:
            return False
        return self.paths is None or path in self.paths

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not self._applies(path):
            return await call_next(request)
        ip = client_ip(request, self.trust_proxy_headers)
        try:
            decision = await run_in_threadpool(self.limiter.hit, ip, path, request.headers.get("user-agent"))
        except Exception:
            # fail open
            logger.warning("Rate limiter %s unavailable, allowing request from %s", self.limiter.name, ip, exc_info=True)
            return await call_next(request)
        if decision.allowed:
            return await call_next(request)

        RATE_LIMITED.labels(self.limiter.name).inc()
        logger.warning("Rate limit exceeded for %s on %s (%d/%d)", ip, path, decision.count, decision.limit)
        if self.on_denied is not None:
            try:
                await run_in_threadpool(self.on_denied, ip, f"Rate limit exceeded on {path}")
            except Exception:
                logger.warning("Could not record rate limit denial for %s", ip, exc_info=True)
        err = RateLimited(retryAfter=decision.retry_after)
        return JSONResponse(
            status_code=err.status_code,
            content=failure_body(err.message, err.error_body()),
            headers={"Retry-After": str(decision.retry_after)},
        )
