from __future__ import annotations

import asyncio
import json
import uuid
from typing import Callable, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from crmauth.logging import get_logger
from crmauth.storage.device import StorageListener
from crmauth.storage.models import StorageSignal

logger = get_logger(__name__)


class RedisDeviceStorage:
    """Device storage held in a Redis hash, shared by tabs in separate processes.

    Every write publishes a ``StorageSignal`` on ``<namespace>:signals`` tagged
    with the writing tab, which ``RedisStorageChannel`` turns back into storage
    events for the other tabs.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "crm:device",
        tab_id: Optional[str] = None,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.tab_id = tab_id or uuid.uuid4().hex[:8]
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @property
    def hash_key(self) -> str:
        return f"{self.namespace}:items"

    @property
    def channel(self) -> str:
        return f"{self.namespace}:signals"

    def verify_connection(self) -> None:
        self.client.ping()

    def close(self) -> None:
        self.client.close()

    def get_item(self, key: str) -> Optional[str]:
        return self.client.hget(self.hash_key, key)

    def set_item(self, key: str, value: str) -> None:
        old = self.client.hget(self.hash_key, key)
        self.client.hset(self.hash_key, key, value)
        if old != value:
            self._publish(key, old, value)

    def remove_item(self, key: str) -> None:
        old = self.client.hget(self.hash_key, key)
        if old is None:
            return
        self.client.hdel(self.hash_key, key)
        self._publish(key, old, None)

    def _publish(self, key: str, old: Optional[str], new: Optional[str]) -> None:
        payload = json.dumps(
            {"key": key, "old": old, "new": new, "origin": self.tab_id}
        )
        try:
            self.client.publish(self.channel, payload)
        except RedisError as exc:
            # The write itself succeeded; other tabs re-read on their next check
            logger.warning("storage_signal_publish_failed", key=key, error=str(exc))


class RedisStorageChannel:
    """Pub/sub listener delivering other tabs' storage writes to this tab."""

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "crm:device",
        tab_id: str,
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.channel = f"{namespace}:signals"
        self.tab_id = tab_id
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._listeners: List[StorageListener] = []
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def handle_message(self, raw: str) -> None:
        try:
            data = json.loads(raw)
            signal = StorageSignal(
                key=data["key"],
                old_value=data.get("old"),
                new_value=data.get("new"),
                origin=data.get("origin"),
            )
        except (TypeError, ValueError, KeyError) as exc:
            logger.warning("storage_signal_malformed", error=str(exc))
            return
        if signal.origin == self.tab_id:
            return
        for listener in list(self._listeners):
            try:
                listener(signal)
            except Exception as exc:
                logger.error("storage_listener_failed", key=signal.key, error=str(exc))

    async def run(self) -> None:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                self.handle_message(message.get("data"))
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.close()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def close(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self.client.close()
