"""
Brief: Unit tests for ResponseScheduler timing, reply bursts and shutdown.

Inputs:
  - None

Outputs:
  - None
"""

import asyncio
import threading

import pytest

from huebeacon.identity import BridgeTarget, IdentityCache
from huebeacon.servers.scheduler import ResponseScheduler
from huebeacon.stats import ResponderStats

TARGET = BridgeTarget("bridge.local", "80")


class _RecordingSender:
    def __init__(self, fail_on=()):
        self.sent = []
        self.fail_on = set(fail_on)
        self.calls = 0

    def __call__(self, data, addr):
        self.calls += 1
        if self.calls in self.fail_on:
            raise OSError("network unreachable")
        self.sent.append((data, addr))


class _StubCache:
    """IdentityCache stand-in that never fetches."""

    def __init__(self, identifier=""):
        self.identifier = identifier
        self.calls = 0

    def ensure_fresh(self):
        self.calls += 1
        return None


def _st_lines(sent):
    out = []
    for data, _ in sent:
        for line in data.decode().split("\r\n"):
            if line.startswith("ST: "):
                out.append(line)
    return out


def test_request_sends_three_replies_after_delay():
    sender = _RecordingSender()
    cache = _StubCache("ABC-123")
    stats = ResponderStats()

    async def scenario():
        scheduler = ResponseScheduler(
            TARGET, cache, sender, rng=lambda: 0.05, stats=stats
        )
        scheduler.request("10.0.0.5", 51000, 2)
        assert scheduler.pending == 1
        assert sender.sent == []
        await asyncio.sleep(0.3)
        return scheduler

    scheduler = asyncio.run(scenario())
    assert cache.calls == 1
    assert scheduler.pending == 0
    assert len(sender.sent) == 3
    assert all(addr == ("10.0.0.5", 51000) for _, addr in sender.sent)
    assert _st_lines(sender.sent) == [
        "ST: upnp:rootdevice",
        "ST: uuid:ABC-123",
        "ST: urn:schemas-upnp-org:device:basic:1",
    ]
    assert stats.replies_sent == 3


def test_delay_is_max_delay_times_random_draw():
    scheduled = []

    async def scenario():
        loop = asyncio.get_running_loop()
        original = loop.call_later

        scheduler = ResponseScheduler(
            TARGET, _StubCache(), _RecordingSender(), rng=lambda: 0.25
        )

        def spy(delay, cb, *args, **kwargs):
            # asyncio.sleep also goes through call_later
            if cb == scheduler._fire:
                scheduled.append(delay)
                delay = 0
            return original(delay, cb, *args, **kwargs)

        loop.call_later = spy
        scheduler.request("10.0.0.5", 1, 4)
        scheduler.request("10.0.0.5", 1, 0)
        await asyncio.sleep(0.01)

    asyncio.run(scenario())
    assert scheduled == [1.0, 0.0]


def test_mx_zero_fires_on_next_loop_iteration():
    sender = _RecordingSender()

    async def scenario():
        scheduler = ResponseScheduler(TARGET, _StubCache("Z"), sender)
        scheduler.request("192.0.2.1", 1900, 0)
        await asyncio.sleep(0.01)

    asyncio.run(scenario())
    assert len(sender.sent) == 3


def test_duplicate_requests_are_scheduled_independently():
    sender = _RecordingSender()

    async def scenario():
        scheduler = ResponseScheduler(TARGET, _StubCache("D"), sender, rng=lambda: 0.0)
        r1 = scheduler.request("10.0.0.5", 51000, 1)
        r2 = scheduler.request("10.0.0.5", 51000, 1)
        assert r1 != r2
        assert scheduler.pending == 2
        await asyncio.sleep(0.01)
        return scheduler

    scheduler = asyncio.run(scenario())
    assert len(sender.sent) == 6
    assert scheduler.pending == 0


def test_identifier_is_read_when_timer_fires():
    sender = _RecordingSender()
    cache = _StubCache("OLD")

    async def scenario():
        scheduler = ResponseScheduler(TARGET, cache, sender, rng=lambda: 0.05)
        scheduler.request("10.0.0.5", 51000, 1)
        cache.identifier = "NEW"
        await asyncio.sleep(0.2)

    asyncio.run(scenario())
    assert all(b"hue-bridgeid: NEW\r\n" in data for data, _ in sender.sent)


def test_reply_waits_for_the_fetch_it_triggered():
    release = threading.Event()
    sender = _RecordingSender()

    def fetch():
        release.wait(5)
        return "FETCHED"

    async def scenario():
        cache = IdentityCache(fetch, 300)
        scheduler = ResponseScheduler(TARGET, cache, sender, rng=lambda: 0.0)
        scheduler.request("10.0.0.5", 51000, 0)
        await asyncio.sleep(0.05)
        assert sender.sent == []
        assert scheduler.pending == 1
        release.set()
        for _ in range(100):
            if sender.sent:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.01)
        cache.close()

    asyncio.run(scenario())
    assert len(sender.sent) == 3
    assert all(b"hue-bridgeid: FETCHED\r\n" in data for data, _ in sender.sent)


def test_reply_still_sent_when_fetch_fails():
    sender = _RecordingSender()

    def fetch():
        raise RuntimeError("no route to bridge")

    async def scenario():
        cache = IdentityCache(fetch, 300)
        scheduler = ResponseScheduler(TARGET, cache, sender, rng=lambda: 0.0)
        scheduler.request("10.0.0.5", 51000, 0)
        for _ in range(100):
            if sender.sent:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.01)
        cache.close()

    asyncio.run(scenario())
    assert len(sender.sent) == 3
    assert b"hue-bridgeid: \r\n" in sender.sent[0][0]


def test_send_error_is_logged_and_remaining_replies_sent():
    sender = _RecordingSender(fail_on={1})
    stats = ResponderStats()
    scheduler = ResponseScheduler(TARGET, _StubCache("E"), sender, stats=stats)

    sent = scheduler.respond("10.0.0.5", 51000)
    assert sent == 2
    assert len(sender.sent) == 2
    assert stats.send_errors == 1
    assert stats.replies_sent == 2


def test_cancel_and_close_prevent_sends():
    sender = _RecordingSender()

    async def scenario():
        scheduler = ResponseScheduler(TARGET, _StubCache("C"), sender, rng=lambda: 0.5)
        r1 = scheduler.request("10.0.0.5", 1, 1)
        scheduler.request("10.0.0.6", 2, 1)
        assert scheduler.cancel(r1) is True
        assert scheduler.cancel(r1) is False
        assert scheduler.pending == 1
        scheduler.close()
        assert scheduler.pending == 0
        await asyncio.sleep(0.6)
        return scheduler

    scheduler = asyncio.run(scenario())
    assert sender.sent == []
    with pytest.raises(RuntimeError):
        scheduler.request("10.0.0.5", 1, 1)
