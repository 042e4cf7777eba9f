import json
import logging
from typing import Iterator, Optional

import redis

from config import Settings

logger = logging.getLogger(__name__)


class ChangeNotifier:
    """Fan-out of job record mutations over redis pub/sub, one channel per owner.

    Events are shaped ``{"eventType": "insert"|"update"|"delete",
    "previous": {...}|None, "current": {...}}``. Consumers filter by job id.
    """

    def __init__(self, conn: redis.Redis):
        self._conn = conn

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChangeNotifier":
        return cls(redis.from_url(settings.redis_url))

    @staticmethod
    def channel_for(owner_id: str) -> str:
        return f"jobs:{owner_id}"

    def publish(
        self,
        owner_id: str,
        event_type: str,
        current: Optional[dict],
        previous: Optional[dict] = None,
    ) -> None:
        event = {"eventType": event_type, "previous": previous, "current": current}
        try:
            self._conn.publish(self.channel_for(owner_id), json.dumps(event, default=str))
        except redis.RedisError as exc:
            # The write already succeeded; subscribers recover with a re-fetch.
            logger.warning("Failed to publish %s event for owner %s: %s", event_type, owner_id, exc)

    def listen(self, owner_id: str, heartbeat_sec: float = 15.0) -> Iterator[Optional[dict]]:
        """Yield events for ``owner_id``.

        Yields None once the subscription is live and again whenever the
        channel stays idle for ``heartbeat_sec``.
        """
        pubsub = self._conn.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(self.channel_for(owner_id))
        logger.info("Subscribed to change events for owner %s", owner_id)
        try:
            # Subscription is live from here on.
            yield None
            while True:
                message = pubsub.get_message(timeout=heartbeat_sec)
                if message is None:
                    yield None
                    continue
                if message.get("type") != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except (TypeError, ValueError) as exc:
                    logger.warning("Dropping undecodable change event for %s: %s", owner_id, exc)
        finally:
            pubsub.close()
            logger.info("Unsubscribed from change events for owner %s", owner_id)
