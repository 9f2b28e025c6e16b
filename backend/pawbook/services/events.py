"""
backend/pawbook/services/events.py

Event emitter: pushes events to a Redis queue for the notification worker.

Queue:
- events:p2p: instant delivery (booking confirmations to client and admin)

Email rendering and delivery live in the consumer, not here.
"""

import json
import time
import logging

from redis import Redis
from redis.exceptions import RedisError

from ..redis_client import redis_client

logger = logging.getLogger(__name__)

P2P_QUEUE = "events:p2p"


def emit_event(event_type: str, payload: dict, redis: Redis | None = None) -> bool:
    """
    Emit a p2p event (instant delivery).

    Pushed to Redis list `events:p2p` for the consumer loop. Delivery is
    best effort: a booking is committed whether or not the event goes out.

    Returns:
        True if the event was queued.
    """
    client = redis if redis is not None else redis_client
    if client is None:
        logger.debug(f"Event {event_type} dropped: no Redis configured")
        return False

    event = {
        "type": event_type,
        **payload,
        "ts": int(time.time()),
    }
    try:
        client.rpush(P2P_QUEUE, json.dumps(event, default=str))
        logger.info(f"Event emitted: {event_type} → {P2P_QUEUE}")
        return True
    except RedisError as e:
        logger.error(f"Failed to emit event {event_type}: {e}")
        return False
