"""
Interval poller for a DisperSync NFC device

The device answers GET /getData with the UID of the card currently on the
reader (kept for ~5 seconds) or "No Card Scanned Yet". The poller turns that
into de-duplicated UIDEvents for subscribers and one-shot waiters.

    poller = DevicePoller("http://192.168.43.27")
    unsubscribe = poller.subscribe(lambda event: print(event.uid))
    poller.start()
    uid = await poller.wait_for_next_uid(timeout_ms=5000)
    poller.stop()
"""

import asyncio
import itertools
import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from http_helper import fetch_text
from link_errors import WaiterTimeout
from discovery.models import DeviceEndpoint
from .models import UIDEvent
from .payload import decode_payload

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/getData"
DEFAULT_INTERVAL_MS = 200
DEFAULT_REQUEST_TIMEOUT_MS = 2000
DEFAULT_DEDUPE_WINDOW_MS = 1500
DEFAULT_JITTER_MS = 40
DEFAULT_WAIT_TIMEOUT_MS = 5000

MIN_INTERVAL_MS = 150       # floor applied when scheduling ticks
MIN_SETTING_MS = 100        # runtime setters ignore anything lower
MIN_WAIT_TIMEOUT_MS = 500

DUMMY_UID = "AA:BB:CC:DD:EE"

Fetcher = Callable[[str, float], Awaitable[str]]
Subscriber = Callable[[UIDEvent], Any]


def normalize_host(value: Union[str, DeviceEndpoint, None]) -> str:
    """Scheme added if missing, trailing slashes and a default :80 removed"""
    if isinstance(value, DeviceEndpoint):
        value = value.base_url

    host = str(value or "").strip()
    if not host:
        raise ValueError("Host is required for DevicePoller (e.g. http://172.20.10.2)")
    if not re.match(r"^https?://", host, re.IGNORECASE):
        host = "http://" + host
    host = host.rstrip("/")
    return re.sub(r":80$", "", host)


def normalize_path(path: Optional[str]) -> str:
    if not path:
        return DEFAULT_PATH
    return path if path.startswith("/") else f"/{path}"


def _valid_ms(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value >= MIN_SETTING_MS


@dataclass(eq=False)
class _Waiter:
    """Pending wait_for_next_uid() call"""
    future: asyncio.Future
    deadline: float
    timer: Optional[asyncio.TimerHandle] = None


class DevicePoller:
    """Polls one device endpoint and fans UID readings out to subscribers"""

    def __init__(
        self,
        host: Union[str, DeviceEndpoint],
        path: str = DEFAULT_PATH,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
        dedupe_window_ms: int = DEFAULT_DEDUPE_WINDOW_MS,
        jitter_ms: int = DEFAULT_JITTER_MS,
        fetcher: Optional[Fetcher] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._host = normalize_host(host)
        self._path = normalize_path(path)
        self._interval_ms = interval_ms if _valid_ms(interval_ms) else DEFAULT_INTERVAL_MS
        self._request_timeout_ms = request_timeout_ms if _valid_ms(request_timeout_ms) else DEFAULT_REQUEST_TIMEOUT_MS
        self.dedupe_window_ms = dedupe_window_ms
        self.jitter_ms = max(0, jitter_ms)
        self._fetch = fetcher or fetch_text
        self._clock = clock

        # Schedule state
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._generation = 0
        self._request_seq = 0
        self._applied_seq = 0

        # Reading state
        self._last_reading: Optional[UIDEvent] = None
        self._last_emit_uid: Optional[str] = None
        self._last_emit_at: Optional[float] = None

        self._subscribers: Dict[int, Subscriber] = {}
        self._tokens = itertools.count()
        self._waiters: Set[_Waiter] = set()
        self._dummy_data = False

        # Stats
        self.poll_count = 0
        self.error_count = 0
        self.event_count = 0

    # ================== LIFECYCLE ==================

    def start(self) -> None:
        """Poll immediately, then every interval. No-op while running"""
        if self._running:
            return
        self._schedule()
        self._running = True
        logger.info(f"Polling {self._host}{self._path} every {max(MIN_INTERVAL_MS, self._interval_ms)}ms")

    def stop(self) -> None:
        """Cancel the schedule; results of requests already in flight are discarded"""
        self._generation += 1
        if self._task:
            self._task.cancel()
            self._task = None
        if self._running:
            self._running = False
            logger.info(f"Stopped polling {self._host}{self._path}")

    async def close(self) -> None:
        """Stop and wait for the polling task to unwind"""
        task = self._task
        self.stop()
        if task:
            await asyncio.gather(task, return_exceptions=True)

    def _schedule(self) -> None:
        self._generation += 1
        self._task = asyncio.get_running_loop().create_task(self._run(self._generation))

    async def _run(self, generation: int) -> None:
        # Immediate poll so state is visible without waiting a full interval
        await self._poll(generation)
        while generation == self._generation:
            await asyncio.sleep(self._next_delay())
            if generation != self._generation:
                break
            await self._poll(generation)

    def _next_delay(self) -> float:
        # Jitter keeps several pollers from hitting the device in lockstep
        jitter = random.uniform(0, self.jitter_ms) if self.jitter_ms else 0
        return (max(MIN_INTERVAL_MS, self._interval_ms) + jitter) / 1000

    # ================== POLLING ==================

    async def poll_once(self) -> Optional[str]:
        """Run a single poll now; returns the UID read, if any"""
        return await self._poll(self._generation)

    async def _poll(self, generation: int) -> Optional[str]:
        self._request_seq += 1
        seq = self._request_seq
        host, path = self._host, self._path

        if self._dummy_data:
            text = DUMMY_UID
        else:
            url = f"{host}{path}"
            try:
                text = await self._fetch(url, self._request_timeout_ms / 1000)
            except Exception as e:
                # Unreachable device is normal; the next tick retries
                self.error_count += 1
                logger.debug(f"Poll of {url} failed: {type(e).__name__}: {e}")
                return None

        self.poll_count += 1

        if generation != self._generation or host != self._host or path != self._path:
            logger.debug(f"Discarding response from superseded poll of {host}{path}")
            return None
        if seq < self._applied_seq:
            logger.debug(f"Discarding stale response #{seq} (already applied #{self._applied_seq})")
            return None
        self._applied_seq = seq

        decoded = decode_payload(text)
        if not decoded.has_uid:
            return None

        self._emit(decoded.uid, host, path)
        return decoded.uid

    def _emit(self, uid: str, host: str, path: str) -> bool:
        """Record a reading and deliver it unless it repeats the last delivery inside the window"""
        now = self._clock()
        event = UIDEvent(uid=uid, host=host, path=path)
        self._last_reading = event

        # A card left on the reader is reported on every tick
        if (uid == self._last_emit_uid and self._last_emit_at is not None
                and (now - self._last_emit_at) * 1000 < self.dedupe_window_ms):
            return False

        self._last_emit_uid = uid
        self._last_emit_at = now
        self.event_count += 1
        logger.debug(f"UID {uid} from {host}")

        for callback in list(self._subscribers.values()):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"UID subscriber {callback!r} failed: {e}")

        for waiter in list(self._waiters):
            self._settle_waiter(waiter)
            if not waiter.future.done():
                waiter.future.set_result(uid)

        return True

    # ================== SUBSCRIBERS & WAITERS ==================

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback(UIDEvent); returns an idempotent unsubscribe()"""
        token = next(self._tokens)
        self._subscribers[token] = callback

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    async def wait_for_next_uid(self, timeout_ms: int = DEFAULT_WAIT_TIMEOUT_MS) -> str:
        """
        Wait for the next delivered UID

        Raises:
            WaiterTimeout: no UID was delivered within timeout_ms
        """
        timeout = max(MIN_WAIT_TIMEOUT_MS, timeout_ms) / 1000
        loop = asyncio.get_running_loop()

        waiter = _Waiter(future=loop.create_future(), deadline=loop.time() + timeout)
        waiter.timer = loop.call_later(timeout, self._expire_waiter, waiter)
        self._waiters.add(waiter)

        try:
            return await waiter.future
        finally:
            self._settle_waiter(waiter)

    def _settle_waiter(self, waiter: _Waiter) -> None:
        if waiter.timer:
            waiter.timer.cancel()
        self._waiters.discard(waiter)

    def _expire_waiter(self, waiter: _Waiter) -> None:
        self._settle_waiter(waiter)
        if not waiter.future.done():
            waiter.future.set_exception(WaiterTimeout("Timed out waiting for next UID"))

    # ================== RUNTIME CONTROLS ==================

    def set_host(self, new_host: Union[str, DeviceEndpoint, None]) -> Optional[Dict[str, str]]:
        """Retarget subsequent requests; empty values are ignored"""
        if not new_host:
            return None
        old = self._host
        self._host = normalize_host(new_host)
        if old != self._host:
            logger.info(f"Poll host changed: {old} -> {self._host}")
        return {"old": old, "host": self._host}

    def get_host(self) -> str:
        return self._host

    def set_path(self, new_path: Optional[str] = DEFAULT_PATH) -> None:
        self._path = normalize_path(new_path)

    def set_interval_ms(self, ms) -> None:
        if not _valid_ms(ms):
            return
        self._interval_ms = ms
        if self._running:
            # Restart the schedule; subscribers, waiters and last reading are kept
            self._task.cancel()
            self._schedule()

    def set_request_timeout_ms(self, ms) -> None:
        if _valid_ms(ms):
            self._request_timeout_ms = ms

    def enable_dummy_data(self) -> None:
        """Report DUMMY_UID on every tick without touching the network"""
        self._dummy_data = True

    def disable_dummy_data(self) -> None:
        self._dummy_data = False

    # ================== STATE ==================

    def get_last_reading(self) -> Optional[UIDEvent]:
        return self._last_reading

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_dummy_data_enabled(self) -> bool:
        return self._dummy_data

    @property
    def pending_waiters(self) -> int:
        return len(self._waiters)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def config(self) -> Dict[str, Any]:
        return {
            "host": self._host,
            "path": self._path,
            "interval_ms": self._interval_ms,
            "request_timeout_ms": self._request_timeout_ms,
        }

    def get_status(self) -> Dict[str, Any]:
        """Poller status for monitoring"""
        last = self._last_reading
        return {
            **self.config,
            "running": self._running,
            "dummy_data": self._dummy_data,
            "last_reading": last.to_dict() if last else None,
            "poll_count": self.poll_count,
            "error_count": self.error_count,
            "event_count": self.event_count,
            "pending_waiters": len(self._waiters),
        }
