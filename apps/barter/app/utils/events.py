import json
import logging
from typing import Any, Dict

import redis

from ..config import settings


log = logging.getLogger("barter.events")

_client: redis.Redis | None = None


def _redis_client() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL)
    return _client


def publish(event: str, payload: Dict[str, Any]) -> None:
    """Fan a lifecycle event out to the configured sink (log|redis|none)."""
    sink = settings.EVENT_SINK
    if sink == "none":
        return
    body = json.dumps({"event": event, "data": payload}, default=str, separators=(",", ":"))
    if sink == "redis":
        try:
            _redis_client().publish("barter.events", body)
            return
        except redis.RedisError as e:
            log.warning("publish(redis) failed: %s; falling back to log", e)
    log.info(body)
