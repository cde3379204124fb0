import time


async def token_bucket(redis, key: str, capacity: int, refill_per_sec: float, now: float | None = None) -> bool:
    now = time.time() if now is None else now
    bucket_key = f"rl:{key}"

    # read-then-write: concurrent scans from one IP may overdraw by a token
    data = await redis.hgetall(bucket_key)
    tokens = float(data.get("tokens", capacity))
    last = float(data.get("last", now))

    # Refill
    tokens = min(capacity, tokens + max(now - last, 0.0) * refill_per_sec)

    allowed = tokens >= 1.0
    if allowed:
        tokens -= 1.0

    await redis.hset(bucket_key, mapping={"tokens": tokens, "last": now})
    await redis.expire(bucket_key, 3600)
    return allowed
