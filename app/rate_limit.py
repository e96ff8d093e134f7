"""Token bucket rate limiter backed by Redis.

Buckets are per client and per endpoint category. Payment initiation and
verification get a small bucket of their own because each call reaches a paid
provider API. Webhook buckets are keyed by provider rather than by IP, since
providers deliver from rotating address pools.
"""

import time

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request, Response

from app.config import settings
from app.redis import get_redis

# Atomic refill-and-take. Returns {allowed, tokens_left, retry_after_seconds}.
_TOKEN_BUCKET_SCRIPT = """
local capacity = tonumber(ARGV[1])
local refill_per_sec = tonumber(ARGV[2]) / 60.0
local now = tonumber(ARGV[3])

local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1]) or capacity
local ts = tonumber(state[2]) or now

tokens = math.min(capacity, tokens + math.max(0, now - ts) * refill_per_sec)

local allowed = 0
local retry_after = 0
if tokens >= 1 then
    tokens = tokens - 1
    allowed = 1
elseif refill_per_sec > 0 then
    retry_after = math.ceil((1 - tokens) / refill_per_sec)
else
    retry_after = 60
end

redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', now)
local ttl = 120
if refill_per_sec > 0 then
    ttl = math.max(ttl, math.ceil(capacity / refill_per_sec))
end
redis.call('EXPIRE', KEYS[1], ttl)
return {allowed, math.floor(tokens), retry_after}
"""


def _get_rate_config(method: str, path: str) -> tuple[int, int, str]:
    """Return (capacity, refill_per_min, category) based on endpoint."""
    if path.startswith("/webhooks"):
        return (
            settings.rate_limit_webhook_capacity,
            settings.rate_limit_webhook_refill_per_min,
            "webhook",
        )
    if method == "POST" and (path.endswith("/pay") or path.endswith("/verify")):
        return (
            settings.rate_limit_payment_capacity,
            settings.rate_limit_payment_refill_per_min,
            "payment",
        )
    if method in ("POST", "PATCH", "DELETE"):
        return (
            settings.rate_limit_write_capacity,
            settings.rate_limit_write_refill_per_min,
            "write",
        )
    return (
        settings.rate_limit_read_capacity,
        settings.rate_limit_read_refill_per_min,
        "read",
    )


def _client_key(request: Request, category: str) -> str:
    if category == "webhook":
        provider = request.url.path.rstrip("/").rsplit("/", 1)[-1]
        return f"ratelimit:provider:{provider}:{category}"

    ip = None
    if settings.trust_forwarded_for:
        # First address in the chain is the original client
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            ip = forwarded_for.split(",")[0].strip()
    if ip is None:
        ip = request.client.host if request.client is not None else "unknown"
    return f"ratelimit:ip:{ip}:{category}"


async def check_rate_limit(
    request: Request,
    response: Response,
    redis: aioredis.Redis = Depends(get_redis),
) -> None:
    """Rate limit dependency. Sets X-RateLimit-* headers; 429 with Retry-After when empty."""
    capacity, refill_rate, category = _get_rate_config(request.method.upper(), request.url.path)
    result = await redis.eval(
        _TOKEN_BUCKET_SCRIPT, 1, _client_key(request, category), capacity, refill_rate, time.time()
    )
    allowed, remaining, retry_after = (int(v) for v in result)

    response.headers["X-RateLimit-Limit"] = str(capacity)
    response.headers["X-RateLimit-Remaining"] = str(remaining)

    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(retry_after)},
        )
