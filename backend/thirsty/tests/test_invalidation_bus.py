"""
Tests for cross-process cache invalidation over Redis pub/sub.

Redis is replaced by a MagicMock; no server is needed.
"""

import json
import time
from unittest.mock import MagicMock

import pytest
import redis

from thirsty.entitlements.cache import EntitlementCache
from thirsty.entitlements.invalidation import INVALIDATION_CHANNEL, RedisInvalidationBus


@pytest.fixture
def mock_redis():
    client = MagicMock()
    client.publish.return_value = 1
    client.pubsub.return_value.get_message.side_effect = lambda timeout=None: time.sleep(0.01)
    return client


@pytest.fixture
def local_cache(resolver, clock, catalog):
    return EntitlementCache(resolver, clock=clock, catalog=catalog)


@pytest.fixture
def bus(mock_redis, local_cache):
    bus = RedisInvalidationBus(mock_redis, local_cache, instance_id="instance-a")
    bus.attach()
    return bus


def _message(user_id, origin="instance-b", reason="subscription_updated"):
    return json.dumps({"user_id": user_id, "reason": reason, "origin": origin})


class TestPublish:
    """Local invalidations are broadcast."""

    def test_local_invalidate_publishes(self, bus, mock_redis, local_cache):
        local_cache.invalidate("user_1", reason="grant_changed")

        mock_redis.publish.assert_called_once()
        channel, payload = mock_redis.publish.call_args.args
        message = json.loads(payload)
        assert channel == INVALIDATION_CHANNEL
        assert message["user_id"] == "user_1"
        assert message["reason"] == "grant_changed"
        assert message["origin"] == "instance-a"

    def test_publish_failure_is_not_raised(self, bus, mock_redis):
        mock_redis.publish.side_effect = redis.ConnectionError("down")

        assert bus.publish("user_1", "grant_changed") == 0

    def test_invalidate_all_publishes_wildcard(self, bus, mock_redis, local_cache):
        local_cache.invalidate_all(reason="catalog_reload")

        message = json.loads(mock_redis.publish.call_args.args[1])
        assert message["user_id"] == "*"


class TestHandleMessage:
    """Remote invalidations are applied without re-broadcast."""

    def test_remote_invalidation_drops_entry(self, bus, mock_redis, local_cache):
        local_cache.get("user_1")
        assert local_cache.peek("user_1") is not None

        assert bus.handle_message(_message("user_1")) is True

        assert local_cache.peek("user_1") is None
        mock_redis.publish.assert_not_called()

    def test_own_messages_are_ignored(self, bus, local_cache):
        local_cache.get("user_1")

        assert bus.handle_message(_message("user_1", origin="instance-a")) is False
        assert local_cache.peek("user_1") is not None

    def test_wildcard_clears_everything(self, bus, local_cache):
        local_cache.get("user_1")
        local_cache.get("user_2")

        assert bus.handle_message(_message("*")) is True
        assert local_cache.stats()["entries"] == 0

    def test_malformed_message_is_ignored(self, bus):
        assert bus.handle_message("not json") is False
        assert bus.handle_message(json.dumps({"origin": "instance-b"})) is False


class TestLifecycle:
    """start/stop wiring."""

    def test_stop_detaches_publisher(self, bus, mock_redis, local_cache):
        bus.start()
        mock_redis.pubsub.return_value.subscribe.assert_called_once_with(INVALIDATION_CHANNEL)

        bus.stop()
        local_cache.invalidate("user_1")

        mock_redis.publish.assert_not_called()
        mock_redis.pubsub.return_value.close.assert_called_once()
