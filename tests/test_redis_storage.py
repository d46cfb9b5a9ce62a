"""Redis-backed shared storage, with the Redis clients mocked out."""

import json
from unittest.mock import MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from crmauth.storage.redis_storage import RedisDeviceStorage, RedisStorageChannel


def _storage(client, tab_id="tab-a"):
    return RedisDeviceStorage("redis://localhost:6379/0", tab_id=tab_id, client=client)


def test_set_item_writes_hash_and_publishes():
    client = MagicMock()
    client.hget.return_value = None
    storage = _storage(client)

    storage.set_item("sb-proj-auth-token", "{}")

    client.hset.assert_called_once_with("crm:device:items", "sb-proj-auth-token", "{}")
    channel, raw = client.publish.call_args[0]
    assert channel == "crm:device:signals"
    assert json.loads(raw) == {"key": "sb-proj-auth-token", "old": None, "new": "{}", "origin": "tab-a"}


def test_remove_item_publishes_removal():
    client = MagicMock()
    client.hget.return_value = "{}"
    storage = _storage(client)

    storage.remove_item("sb-proj-auth-token")

    client.hdel.assert_called_once_with("crm:device:items", "sb-proj-auth-token")
    payload = json.loads(client.publish.call_args[0][1])
    assert payload["new"] is None
    assert payload["old"] == "{}"


def test_remove_missing_key_is_silent():
    client = MagicMock()
    client.hget.return_value = None
    _storage(client).remove_item("absent")
    client.publish.assert_not_called()


def test_publish_failure_does_not_break_write():
    client = MagicMock()
    client.hget.return_value = None
    client.publish.side_effect = RedisConnectionError("gone")
    storage = _storage(client)

    storage.set_item("k", "v")

    client.hset.assert_called_once()


def test_channel_delivers_other_tabs_signals():
    channel = RedisStorageChannel("redis://localhost:6379/0", tab_id="tab-b", client=MagicMock())
    received = []
    channel.subscribe(received.append)

    channel.handle_message(json.dumps({"key": "k", "old": "v", "new": None, "origin": "tab-a"}))
    channel.handle_message(json.dumps({"key": "k", "old": None, "new": "v", "origin": "tab-b"}))
    channel.handle_message("not json")

    assert len(received) == 1
    assert received[0].key == "k"
    assert received[0].new_value is None
    assert received[0].origin == "tab-a"


def test_channel_unsubscribe():
    channel = RedisStorageChannel("redis://localhost:6379/0", tab_id="tab-b", client=MagicMock())
    received = []
    unsubscribe = channel.subscribe(received.append)
    unsubscribe()
    channel.handle_message(json.dumps({"key": "k", "new": None, "origin": "tab-a"}))
    assert received == []


def test_close_releases_client():
    client = MagicMock()
    _storage(client).close()
    client.close.assert_called_once()
