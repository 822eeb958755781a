import logging
from typing import Optional

import redis

from .events import Event

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "global:announcements"


class EventPublisher:
    """
    Fire-and-forget publisher for domain events.

    Events go to ``tournament:<id>:events`` and to the global announcement
    channel, and are appended to a capped per-tournament log. A publisher built
    without a redis client only logs; redis failures are logged, never raised.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, log_size: int = 1000):
        self.redis = redis_client
        self.log_size = log_size

    @classmethod
    def from_url(cls, redis_url: str) -> "EventPublisher":
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        return cls(client)

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    def publish_tournament_event(self, tournament_id: str, event: Event) -> bool:
        logger.info("event %s for %s: %s", event.type, tournament_id, event.data)
        if self.redis is None:
            return False

        payload = event.to_json()
        try:
            self.redis.publish(f"tournament:{tournament_id}:events", payload)
            self.redis.publish(GLOBAL_CHANNEL, payload)
            key = f"tournament:{tournament_id}:event_log"
            self.redis.lpush(key, payload)
            self.redis.ltrim(key, 0, self.log_size - 1)
            return True
        except redis.RedisError as e:
            logger.warning("Failed to publish %s for %s: %s", event.type, tournament_id, e)
            return False

    def get_recent_events(self, tournament_id: str, count: int = 50) -> list:
        if self.redis is None:
            return []
        key = f"tournament:{tournament_id}:event_log"
        events_json = self.redis.lrange(key, 0, count - 1)
        return [Event.from_json(e) for e in events_json]

    def ping(self) -> bool:
        if self.redis is None:
            return False
        try:
            return bool(self.redis.ping())
        except redis.RedisError:
            return False
