from __future__ import annotations

import asyncio

import aiohttp
import pytest

from conftest import FakeClock, FakeFetcher, drain
from discovery.models import DeviceEndpoint
from link_errors import WaiterTimeout
from polling.poller import DUMMY_UID, DevicePoller, normalize_host, normalize_path

UID = "04:BE:F3:0E:BF:2A:81"


def make_poller(fetcher: FakeFetcher, clock: FakeClock | None = None, **kwargs) -> DevicePoller:
    kwargs.setdefault("jitter_ms", 0)
    return DevicePoller("192.168.43.27", fetcher=fetcher, clock=clock or FakeClock(), **kwargs)


# ================== host handling ==================

@pytest.mark.parametrize(
    "value, expected",
    [
        ("192.168.43.27", "http://192.168.43.27"),
        ("http://192.168.43.27:80/", "http://192.168.43.27"),
        ("http://10.0.0.5:8080//", "http://10.0.0.5:8080"),
        (DeviceEndpoint("9.9.9.9", 8080), "http://9.9.9.9:8080"),
    ],
)
def test_normalize_host(value, expected: str) -> None:
    assert normalize_host(value) == expected


def test_normalize_host_requires_value() -> None:
    with pytest.raises(ValueError):
        normalize_host("  ")


def test_normalize_path() -> None:
    assert normalize_path(None) == "/getData"
    assert normalize_path("status") == "/status"
    assert normalize_path("/getData") == "/getData"


# ================== decoding and de-duplication ==================

async def test_repeated_uid_within_window_is_delivered_once(clock: FakeClock) -> None:
    fetcher = FakeFetcher(default=UID)
    poller = make_poller(fetcher, clock)
    events = []
    poller.subscribe(events.append)

    await poller.poll_once()
    clock.advance(1.0)
    await poller.poll_once()
    assert [e.uid for e in events] == [UID]

    clock.advance(1.6)
    await poller.poll_once()
    assert [e.uid for e in events] == [UID, UID]


async def test_last_reading_refreshes_while_delivery_is_suppressed(clock: FakeClock) -> None:
    poller = make_poller(FakeFetcher(default=UID), clock)

    await poller.poll_once()
    first = poller.get_last_reading()
    clock.advance(0.5)
    await poller.poll_once()

    assert poller.get_last_reading() is not first
    assert poller.get_last_reading().uid == UID
    assert poller.event_count == 1


async def test_different_uid_is_delivered_immediately(clock: FakeClock) -> None:
    poller = make_poller(FakeFetcher([UID, "04:AA:BB:CC"]), clock)
    events = []
    poller.subscribe(events.append)

    await poller.poll_once()
    clock.advance(0.2)
    await poller.poll_once()

    assert [e.uid for e in events] == [UID, "04:AA:BB:CC"]


async def test_sentinel_never_delivers(clock: FakeClock) -> None:
    poller = make_poller(FakeFetcher(["No Card Scanned Yet", "no card scanned", ""]), clock)
    events = []
    poller.subscribe(events.append)

    for _ in range(3):
        assert await poller.poll_once() is None
        clock.advance(2)

    assert events == []
    assert poller.get_last_reading() is None


async def test_json_body_yields_uid_field() -> None:
    poller = make_poller(FakeFetcher(['{"uid": "04:11:22:33"}', '{"status": "idle"}']))

    assert await poller.poll_once() == "04:11:22:33"
    assert await poller.poll_once() is None


async def test_event_carries_host_and_path() -> None:
    poller = make_poller(FakeFetcher([UID]))
    events = []
    poller.subscribe(events.append)

    await poller.poll_once()

    assert events[0].host == "http://192.168.43.27"
    assert events[0].path == "/getData"
    assert events[0].to_dict()["uid"] == UID


# ================== subscribers ==================

async def test_failing_subscriber_does_not_block_others() -> None:
    poller = make_poller(FakeFetcher([UID]))
    delivered = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    poller.subscribe(broken)
    poller.subscribe(delivered.append)

    assert await poller.poll_once() == UID
    assert [e.uid for e in delivered] == [UID]


async def test_unsubscribe_is_idempotent(clock: FakeClock) -> None:
    poller = make_poller(FakeFetcher(default=UID), clock)
    events = []
    unsubscribe = poller.subscribe(events.append)

    unsubscribe()
    unsubscribe()
    await poller.poll_once()

    assert events == []
    assert poller.subscriber_count == 0


async def test_same_callback_subscribed_twice_gets_two_handles() -> None:
    poller = make_poller(FakeFetcher([UID]))
    events = []
    first = poller.subscribe(events.append)
    poller.subscribe(events.append)

    first()
    await poller.poll_once()

    assert len(events) == 1


# ================== waiters ==================

async def test_waiter_resolves_with_next_uid() -> None:
    poller = make_poller(FakeFetcher([UID]))

    waiter = asyncio.create_task(poller.wait_for_next_uid(2000))
    await drain()
    assert poller.pending_waiters == 1

    await poller.poll_once()

    assert await waiter == UID
    assert poller.pending_waiters == 0


async def test_all_pending_waiters_resolve_on_one_event() -> None:
    poller = make_poller(FakeFetcher([UID]))

    waiters = [asyncio.create_task(poller.wait_for_next_uid(2000)) for _ in range(3)]
    await drain()
    await poller.poll_once()

    assert await asyncio.gather(*waiters) == [UID, UID, UID]


async def test_waiter_times_out_and_leaves_pending_set(clock: FakeClock) -> None:
    poller = make_poller(FakeFetcher(default=UID), clock)

    with pytest.raises(WaiterTimeout):
        await poller.wait_for_next_uid(500)
    assert poller.pending_waiters == 0

    # A later event must not touch the expired waiter
    await poller.poll_once()
    assert poller.pending_waiters == 0


async def test_waiter_timeout_is_a_timeout_error() -> None:
    poller = make_poller(FakeFetcher())
    with pytest.raises(TimeoutError):
        await poller.wait_for_next_uid(100)  # floor raises this to 500ms


async def test_cancelled_waiter_is_removed() -> None:
    poller = make_poller(FakeFetcher())
    waiter = asyncio.create_task(poller.wait_for_next_uid(5000))
    await drain()

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert poller.pending_waiters == 0


# ================== failures ==================

@pytest.mark.parametrize(
    "error",
    [aiohttp.ClientConnectionError("refused"), asyncio.TimeoutError(), OSError("unreachable")],
)
async def test_transport_errors_are_no_data(error: BaseException) -> None:
    poller = make_poller(FakeFetcher([error, UID]))

    assert await poller.poll_once() is None
    assert poller.error_count == 1
    assert await poller.poll_once() == UID


async def test_stale_response_is_discarded() -> None:
    slow_gate = asyncio.Event()
    calls = 0

    async def fetch(url: str, timeout: float) -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            await slow_gate.wait()
            return "04:00:00:01"
        return "04:00:00:02"

    poller = DevicePoller("10.0.0.5", fetcher=fetch, jitter_ms=0)
    slow = asyncio.create_task(poller.poll_once())
    await drain()
    assert await poller.poll_once() == "04:00:00:02"

    slow_gate.set()
    assert await slow is None
    assert poller.get_last_reading().uid == "04:00:00:02"


# ================== schedule ==================

async def test_start_polls_immediately_and_is_idempotent() -> None:
    fetcher = FakeFetcher()
    poller = make_poller(fetcher, interval_ms=1000)

    poller.start()
    poller.start()
    await asyncio.sleep(0.05)

    assert len(fetcher.urls) == 1
    assert fetcher.urls[0] == "http://192.168.43.27/getData"
    assert poller.is_running
    await poller.close()


async def test_polls_repeat_at_interval() -> None:
    fetcher = FakeFetcher()
    poller = make_poller(fetcher, interval_ms=150)

    poller.start()
    await asyncio.sleep(0.5)
    await poller.close()

    assert 3 <= len(fetcher.urls) <= 5


async def test_interval_floor_is_enforced() -> None:
    fetcher = FakeFetcher()
    poller = make_poller(fetcher)
    poller.set_interval_ms(10)   # ignored, below the setter floor

    assert poller.config["interval_ms"] == 200


async def test_no_delivery_after_stop_even_for_in_flight_request() -> None:
    gate = asyncio.Event()
    calls = []

    async def slow_fetch(url: str, timeout: float) -> str:
        calls.append(url)
        await gate.wait()
        return UID

    poller = DevicePoller("10.0.0.5", interval_ms=150, jitter_ms=0, fetcher=slow_fetch)
    events = []
    poller.subscribe(events.append)

    poller.start()
    await asyncio.sleep(0.02)
    manual = asyncio.create_task(poller.poll_once())
    await drain()

    poller.stop()
    gate.set()
    await asyncio.sleep(0.6)

    assert await manual is None
    assert events == []
    assert len(calls) == 2
    assert not poller.is_running


async def test_stop_when_not_running_is_safe() -> None:
    poller = make_poller(FakeFetcher())
    poller.stop()
    poller.stop()
    await poller.close()
    assert not poller.is_running


async def test_set_host_retargets_following_requests() -> None:
    fetcher = FakeFetcher()
    poller = make_poller(fetcher, interval_ms=150)

    poller.start()
    await asyncio.sleep(0.05)
    change = poller.set_host("10.0.0.9:8080")
    seen = len(fetcher.urls)
    await asyncio.sleep(0.4)
    await poller.close()

    assert change == {"old": "http://192.168.43.27", "host": "http://10.0.0.9:8080"}
    assert len(fetcher.urls) > seen
    assert all(url.startswith("http://10.0.0.9:8080/") for url in fetcher.urls[seen:])


async def test_set_host_ignores_empty_value() -> None:
    poller = make_poller(FakeFetcher())
    assert poller.set_host("") is None
    assert poller.get_host() == "http://192.168.43.27"


async def test_interval_change_keeps_subscribers_and_last_reading() -> None:
    fetcher = FakeFetcher([UID])
    poller = make_poller(fetcher, interval_ms=1000)
    events = []
    poller.subscribe(events.append)

    poller.start()
    await asyncio.sleep(0.05)
    poller.set_interval_ms(150)
    await asyncio.sleep(0.4)
    await poller.close()

    assert poller.config["interval_ms"] == 150
    assert [e.uid for e in events] == [UID]
    assert poller.get_last_reading().uid == UID
    assert poller.subscriber_count == 1
    assert len(fetcher.urls) >= 3


async def test_request_timeout_is_passed_to_fetcher() -> None:
    fetcher = FakeFetcher()
    poller = make_poller(fetcher)
    poller.set_request_timeout_ms(750)
    poller.set_request_timeout_ms(5)  # ignored

    await poller.poll_once()

    assert fetcher.timeouts == [0.75]


async def test_dummy_data_skips_network() -> None:
    fetcher = FakeFetcher()
    poller = make_poller(fetcher)
    poller.enable_dummy_data()

    assert await poller.poll_once() == DUMMY_UID
    assert fetcher.urls == []

    poller.disable_dummy_data()
    assert await poller.poll_once() is None
    assert not poller.is_dummy_data_enabled


async def test_status_snapshot() -> None:
    poller = make_poller(FakeFetcher([UID]))
    await poller.poll_once()

    status = poller.get_status()
    assert status["host"] == "http://192.168.43.27"
    assert status["poll_count"] == 1
    assert status["event_count"] == 1
    assert status["last_reading"]["uid"] == UID


def test_start_outside_event_loop_leaves_poller_stopped() -> None:
    poller = make_poller(FakeFetcher())

    with pytest.raises(RuntimeError):
        poller.start()

    assert not poller.is_running
