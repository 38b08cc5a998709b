import asyncio
import json

import httpx
import pytest

from detector import ChangeEvent
from notification_service import (
    CollectingSink,
    ExpoPushSink,
    NotificationDispatcher,
    NotificationSink,
    build_message,
)
from registry import TrackedWalletRegistry
from snapshots import Network, Source, utcnow

from conftest import ADDRESS


def event(user_id="u1", token="cBRL", delta="1.000000", current="1.500000", kind="change", direction="increase"):
    return ChangeEvent(
        user_id=user_id,
        address=ADDRESS,
        network=Network.TESTNET,
        token=token,
        previous_amount="0.500000",
        current_amount=current,
        delta=delta,
        direction=direction,
        kind=kind,
        source=Source.CHAIN,
        detected_at=utcnow(),
    )


class ExplodingSink(NotificationSink):
    async def deliver(self, event):
        raise RuntimeError("push provider down")


@pytest.fixture
def registry(tmp_path):
    return TrackedWalletRegistry(tmp_path / "registry.db")


@pytest.fixture
def pushes():
    return []


@pytest.fixture
def expo(registry, pushes):
    def handler(request: httpx.Request) -> httpx.Response:
        pushes.append(json.loads(request.content))
        return httpx.Response(200, json={"data": [{"status": "ok"}]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ExpoPushSink(registry, push_url="https://push.test/send", client=client)


def test_messages_for_each_kind():
    assert build_message(event(kind="new_token"))["title"] == "New token received"
    assert build_message(event())["body"] == "+1.000000 cBRL (now 1.500000)"
    down = build_message(event(delta="-0.250000", current="0.250000", direction="decrease"))
    assert down == {"title": "Balance decreased", "body": "-0.250000 cBRL (now 0.250000)"}


async def test_dispatcher_isolates_failing_sinks():
    queue: asyncio.Queue = asyncio.Queue()
    collected = CollectingSink()
    dispatcher = NotificationDispatcher(queue, [ExplodingSink(), collected])
    await queue.put(event(token="cBRL"))
    await queue.put(event(token="STT"))

    assert await dispatcher.flush() == 2
    assert [e.token for e in collected.events] == ["cBRL", "STT"]
    assert dispatcher.stats() == {"queued": 0, "delivered": 2, "failed": 2}


async def test_dispatcher_run_drains_queue():
    queue: asyncio.Queue = asyncio.Queue()
    collected = CollectingSink()
    task = asyncio.create_task(NotificationDispatcher(queue, [collected]).run())
    await queue.put(event())
    await asyncio.wait_for(queue.join(), timeout=1)
    task.cancel()
    assert len(collected.events) == 1


async def test_expo_push_to_every_registered_device(expo, registry, pushes):
    registry.register_tokens("u1", ["ExponentPushToken[a]", "ExponentPushToken[b]"])
    await expo.deliver(event())

    assert len(pushes) == 1
    messages = pushes[0]
    assert [m["to"] for m in messages] == ["ExponentPushToken[a]", "ExponentPushToken[b]"]
    assert messages[0]["sound"] == "default"
    assert messages[0]["data"]["token"] == "cBRL"


async def test_expo_suppresses_duplicate_bursts(expo, registry, pushes):
    registry.register_tokens("u1", ["ExponentPushToken[a]"])
    await expo.deliver(event())
    await expo.deliver(event())
    assert len(pushes) == 1


async def test_expo_throttles_sound_between_pushes(expo, registry, pushes):
    registry.register_tokens("u1", ["ExponentPushToken[a]"])
    await expo.deliver(event(token="cBRL"))
    await expo.deliver(event(token="STT"))
    assert pushes[0][0]["sound"] == "default"
    assert pushes[1][0]["sound"] is None


async def test_expo_without_devices_sends_nothing(expo, pushes):
    await expo.deliver(event(user_id="nobody"))
    assert pushes == []


async def test_expo_http_failure_raises(registry):
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    sink = ExpoPushSink(registry, client=client)
    registry.register_tokens("u1", ["ExponentPushToken[a]"])
    with pytest.raises(httpx.HTTPStatusError):
        await sink.deliver(event())
