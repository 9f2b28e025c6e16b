# backend/pawbook/redis_client.py

from redis import Redis

from .config import settings

# None when no Redis is configured: locks stay in-process and events are dropped
redis_client: Redis | None = (
    Redis.from_url(settings.redis_url, socket_timeout=2.0)
    if settings.redis_url
    else None
)
