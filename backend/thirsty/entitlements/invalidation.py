"""
Cross-process entitlement cache invalidation over Redis pub/sub.

Every process keeps its own in-memory EntitlementCache. When one process
commits a ledger or grant change it invalidates locally and publishes the
user id on INVALIDATION_CHANNEL; every other process drops its entry.

Enabled only when REDIS_URL is configured.
"""

import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Optional

import redis

from thirsty.entitlements.cache import EntitlementCache

logger = logging.getLogger(__name__)

INVALIDATION_CHANNEL = "entitlements:invalidations"
ALL_USERS = "*"


class RedisInvalidationBus:
    """
    Publishes local invalidations and applies remote ones.

    Messages carry the publishing instance id so a process ignores its own
    broadcasts.
    """

    def __init__(
        self,
        client: "redis.Redis",
        cache: EntitlementCache,
        channel: str = INVALIDATION_CHANNEL,
        instance_id: Optional[str] = None,
    ):
        self._redis = client
        self._cache = cache
        self._channel = channel
        self.instance_id = instance_id or uuid.uuid4().hex
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pubsub = None

    @classmethod
    def from_url(cls, redis_url: str, cache: EntitlementCache) -> "RedisInvalidationBus":
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )
        return cls(client, cache)

    def attach(self) -> None:
        """Route the cache's local invalidations through this bus."""
        self._cache.set_publisher(self.publish)

    def publish(self, user_id: str, reason: Optional[str] = None) -> int:
        """
        Broadcast an invalidation.

        Publishing is best effort: the TTL bounds staleness in other
        processes if Redis is unreachable.
        """
        message = json.dumps({
            "user_id": user_id,
            "reason": reason,
            "origin": self.instance_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        try:
            return self._redis.publish(self._channel, message)
        except redis.RedisError as e:
            logger.warning("Redis PUBLISH failed for entitlement invalidation", extra={
                "user_id": user_id, "error": str(e),
            })
            return 0

    def handle_message(self, data: str) -> bool:
        """
        Apply one pub/sub payload to the local cache.

        Returns:
            True if the message was applied
        """
        try:
            message = json.loads(data)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed invalidation message", extra={"data": data})
            return False

        if message.get("origin") == self.instance_id:
            return False

        user_id = message.get("user_id")
        reason = f"remote:{message.get('reason')}"
        if user_id == ALL_USERS:
            self._cache.invalidate_all(reason=reason, broadcast=False)
            return True
        if user_id:
            self._cache.invalidate(user_id, reason=reason, broadcast=False)
            return True
        return False

    def start(self) -> None:
        """Subscribe and start the listener thread."""
        if self._thread is not None:
            return
        self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(self._channel)
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._listen,
            name="entitlement-invalidation-listener",
            daemon=True,
        )
        self._thread.start()
        logger.info("Entitlement invalidation listener started", extra={
            "channel": self._channel, "instance_id": self.instance_id,
        })

    def _listen(self) -> None:
        while not self._stop.is_set():
            try:
                message = self._pubsub.get_message(timeout=1.0)
            except redis.RedisError as e:
                logger.warning("Invalidation listener error, retrying", extra={"error": str(e)})
                self._stop.wait(1.0)
                continue
            if message and message.get("type") == "message":
                self.handle_message(message.get("data"))

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None
        self._cache.set_publisher(None)
        logger.info("Entitlement invalidation listener stopped")
