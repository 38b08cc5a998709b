# notification_service.py — delivery of balance change events
# - NotificationSink: anything with `async deliver(event)`
# - NotificationDispatcher: drains the detector outbox, one failure never blocks the rest
# - ExpoPushSink: Expo push (tokens per user in the devices table), burst dedupe + sound throttle

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Dict, List, Optional

import httpx

from detector import ChangeEvent
from registry import TrackedWalletRegistry
from settings import EXPO_PUSH_URL

logger = logging.getLogger("balance_guard")

DEDUPE_KEYS_PER_TOKEN = 50


class NotificationSink(ABC):
    @abstractmethod
    async def deliver(self, event: ChangeEvent) -> None:
        ...


class LogSink(NotificationSink):
    async def deliver(self, event: ChangeEvent) -> None:
        logger.info(
            f"Balance {event.direction} for user {event.user_id}: {event.token} "
            f"{event.previous_amount} -> {event.current_amount} ({event.delta}, {event.kind})"
        )


class CollectingSink(NotificationSink):
    """Keeps delivered events in memory; handy for admin inspection and tests."""

    def __init__(self) -> None:
        self.events: List[ChangeEvent] = []

    async def deliver(self, event: ChangeEvent) -> None:
        self.events.append(event)


def build_message(event: ChangeEvent) -> Dict[str, str]:
    if event.kind == "new_token":
        title = "New token received"
        body = f"You received {event.current_amount} {event.token}"
    elif event.direction == "increase":
        title = "Balance increased"
        body = f"+{event.delta} {event.token} (now {event.current_amount})"
    else:
        title = "Balance decreased"
        body = f"{event.delta} {event.token} (now {event.current_amount})"
    return {"title": title, "body": body}


class ExpoPushSink(NotificationSink):
    def __init__(
        self,
        registry: TrackedWalletRegistry,
        push_url: str = EXPO_PUSH_URL,
        client: Optional[httpx.AsyncClient] = None,
        dedupe_ttl_seconds: float = 3600.0,
        sound_min_interval_seconds: float = 2.0,
        timeout: float = 10.0,
    ) -> None:
        self.registry = registry
        self.push_url = push_url
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout
        self.dedupe_ttl_seconds = float(dedupe_ttl_seconds)
        self.sound_min_interval_seconds = float(sound_min_interval_seconds)
        # (user, token) -> OrderedDict[burst_key, sent_at]
        self._sent: Dict[tuple, "OrderedDict[str, float]"] = {}
        self._last_sound: Dict[str, float] = {}

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    @staticmethod
    def burst_key(event: ChangeEvent) -> str:
        return f"{event.token}_{event.kind}_{event.delta}_{event.current_amount}"

    def _seen_recently(self, event: ChangeEvent, now: float) -> bool:
        bucket = self._sent.setdefault((event.user_id, event.token), OrderedDict())
        for key in [k for k, ts in bucket.items() if now - ts > self.dedupe_ttl_seconds]:
            bucket.pop(key, None)
        key = self.burst_key(event)
        if key in bucket:
            return True
        bucket[key] = now
        while len(bucket) > DEDUPE_KEYS_PER_TOKEN:
            bucket.popitem(last=False)
        return False

    def _take_sound(self, user_id: str, now: float) -> bool:
        last = self._last_sound.get(user_id)
        if last is not None and now - last < self.sound_min_interval_seconds:
            return False
        self._last_sound[user_id] = now
        return True

    async def deliver(self, event: ChangeEvent) -> None:
        now = time.time()
        if self._seen_recently(event, now):
            logger.info(f"Duplicate notification suppressed for user {event.user_id}: {self.burst_key(event)}")
            return
        tokens = await asyncio.to_thread(self.registry.tokens_for, event.user_id)
        if not tokens:
            logger.warning(f"No device registered for notifications: user {event.user_id}")
            return
        message = build_message(event)
        sound = "default" if self._take_sound(event.user_id, now) else None
        payload = [
            {
                "to": token,
                "sound": sound,
                "title": message["title"],
                "body": message["body"],
                "data": {
                    "type": "balance_change",
                    "token": event.token,
                    "delta": event.delta,
                    "network": event.network.value,
                    "kind": event.kind,
                },
            }
            for token in tokens
        ]
        resp = await self._http().post(self.push_url, json=payload)
        resp.raise_for_status()
        logger.info(f"Push sent to {len(tokens)} device(s) for user {event.user_id}: {message['title']}")

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class NotificationDispatcher:
    """Moves events from the detector outbox to every sink."""

    def __init__(self, queue: asyncio.Queue, sinks: List[NotificationSink]) -> None:
        self.queue = queue
        self.sinks = list(sinks)
        self.delivered = 0
        self.failed = 0

    async def _deliver(self, event: ChangeEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.deliver(event)
                self.delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                logger.error(f"{type(sink).__name__} failed for user {event.user_id} ({event.token}): {e}")

    async def flush(self) -> int:
        """Deliver everything currently queued; returns how many events were handled."""
        handled = 0
        while True:
            try:
                event = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                return handled
            try:
                await self._deliver(event)
            finally:
                self.queue.task_done()
            handled += 1

    async def run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self._deliver(event)
            finally:
                self.queue.task_done()

    def stats(self) -> Dict[str, Any]:
        return {"queued": self.queue.qsize(), "delivered": self.delivered, "failed": self.failed}
