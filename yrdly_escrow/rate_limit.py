"""Per-IP token bucket rate limiting backed by Redis.

Buckets are Redis hashes ``{tokens, ts}`` refilled continuously at
``refill_per_min / 60`` tokens per second. The check-and-consume runs as a
single Lua script so concurrent requests from one client cannot overdraw.
Payment calls get the smallest bucket because each one costs a round trip
to Flutterwave.
"""

import math
import time

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request, Response

from yrdly_escrow.config import settings
from yrdly_escrow.redis import get_redis

# KEYS[1] bucket, ARGV: capacity, refill per minute, now, ttl
# Returns {allowed, tokens left, seconds until one token}
_CONSUME_TOKEN = """
local capacity = tonumber(ARGV[1])
local per_second = tonumber(ARGV[2]) / 60.0
local now = tonumber(ARGV[3])

local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1]) or capacity
local ts = tonumber(state[2]) or now
tokens = math.min(capacity, tokens + math.max(0, now - ts) * per_second)

local allowed = 0
if tokens >= 1 then
    tokens = tokens - 1
    allowed = 1
end
redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[4]))

local wait = 0
if allowed == 0 then
    if per_second > 0 then
        wait = math.ceil((1 - tokens) / per_second)
    else
        wait = 60
    end
end
return {allowed, math.floor(tokens), wait}
"""


def _get_rate_config(method: str, path: str) -> tuple[int, int, str]:
    """Return (capacity, refill_per_min, category) based on endpoint."""
    # Anything that reaches the payment gateway
    if method == "POST" and (path.startswith("/payments") or path.rstrip("/").endswith("/checkout")):
        return (
            settings.rate_limit_payment_capacity,
            settings.rate_limit_payment_refill_per_min,
            "payment",
        )
    if method in ("POST", "PATCH", "PUT", "DELETE"):
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


def _get_client_ip(request: Request) -> str:
    """Extract client IP, respecting X-Forwarded-For for reverse proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # First IP in the chain is the original client
        return forwarded_for.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


def _bucket_ttl(capacity: int, refill_per_min: int) -> int:
    """Seconds until an idle bucket is full again; after that it can be dropped."""
    if refill_per_min <= 0:
        return 3600
    return math.ceil(capacity * 60 / refill_per_min) + 1


async def check_rate_limit(
    request: Request,
    response: Response,
    redis: aioredis.Redis = Depends(get_redis),
) -> None:
    """Consume one token from the caller's bucket for this endpoint category."""
    capacity, refill_per_min, category = _get_rate_config(
        request.method.upper(), request.url.path
    )
    bucket_key = f"ratelimit:ip:{_get_client_ip(request)}:{category}"

    allowed, remaining, retry_after = (
        int(value)
        for value in await redis.eval(
            _CONSUME_TOKEN,
            1,
            bucket_key,
            capacity,
            refill_per_min,
            time.time(),
            _bucket_ttl(capacity, refill_per_min),
        )
    )

    response.headers["X-RateLimit-Limit"] = str(capacity)
    response.headers["X-RateLimit-Remaining"] = str(remaining)

    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(retry_after)},
        )
