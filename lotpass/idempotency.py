import json


async def get_cached_response(redis, idem_key: str, namespace: str = "idem"):
    raw = await redis.get(f"{namespace}:{idem_key}")
    return json.loads(raw) if raw else None


async def set_cached_response(redis, idem_key: str, response: dict, ttl_seconds: int = 300, namespace: str = "idem"):
    await redis.setex(f"{namespace}:{idem_key}", ttl_seconds, json.dumps(response, default=str))


async def claim(redis, key: str, ttl_seconds: int, namespace: str = "claim") -> bool:
    """SET NX: True for exactly one caller until the claim expires or is released."""
    return bool(await redis.set(f"{namespace}:{key}", "1", nx=True, ex=ttl_seconds))


async def release(redis, key: str, namespace: str = "claim") -> None:
    await redis.delete(f"{namespace}:{key}")
