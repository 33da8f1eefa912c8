from __future__ import annotations

import asyncio

import pytest


class FakeFetcher:
    """Scripted stand-in for http_helper.fetch_text"""

    def __init__(self, responses: list | None = None, default: str = "No Card Scanned Yet") -> None:
        self.responses = list(responses or [])
        self.default = default
        self.urls: list[str] = []
        self.timeouts: list[float] = []

    async def __call__(self, url: str, timeout: float) -> str:
        self.urls.append(url)
        self.timeouts.append(timeout)
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, BaseException):
            raise response
        return response


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePoller:
    """Records lifecycle calls made by DeviceSessionContext"""

    def __init__(self, endpoint) -> None:
        self.endpoint = endpoint
        self.running = False
        self.start_calls = 0
        self.stop_calls = 0
        self.subscribers: list = []

    def start(self) -> None:
        self.start_calls += 1
        self.running = True

    def stop(self) -> None:
        self.stop_calls += 1
        self.running = False

    async def close(self) -> None:
        self.stop()

    def subscribe(self, callback):
        self.subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self.subscribers:
                self.subscribers.remove(callback)

        return unsubscribe

    @property
    def is_running(self) -> bool:
        return self.running

    def get_last_reading(self):
        return None

    def get_status(self) -> dict:
        return {"running": self.running}


class BrokenStore:
    async def get(self, key: str):
        raise OSError("storage unavailable")

    async def set(self, key: str, value: str) -> None:
        raise OSError("storage unavailable")

    async def remove(self, key: str) -> None:
        raise OSError("storage unavailable")


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


async def drain() -> None:
    """Let scheduled callbacks and tasks run"""
    for _ in range(5):
        await asyncio.sleep(0)
