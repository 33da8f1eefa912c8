"""
Device session context
Owns the bound device endpoint and the single poller built for it, and keeps
the last endpoint across restarts
"""

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, Optional, Set, Union

from discovery.models import DeviceEndpoint
from link_errors import DeviceNotReady, WaiterTimeout
from polling.models import UIDEvent
from polling.poller import DevicePoller, DEFAULT_PATH, DEFAULT_WAIT_TIMEOUT_MS, MIN_WAIT_TIMEOUT_MS
from .storage import KeyValueStore, MemoryStore

logger = logging.getLogger(__name__)

STORAGE_KEY = "@ds:lastBaseUrl"

PollerFactory = Callable[[DeviceEndpoint], DevicePoller]


class DeviceSessionContext:
    """One device session: at most one endpoint and exactly one poller for it"""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        poller_factory: Optional[PollerFactory] = None,
        storage_key: str = STORAGE_KEY,
        autostart: bool = False,
        poller_options: Optional[Dict[str, Any]] = None,
    ):
        self.store = store if store is not None else MemoryStore()
        self.storage_key = storage_key
        self.autostart = autostart
        self._poller_options = dict(poller_options or {})
        self._poller_factory = poller_factory or self._default_poller_factory

        self._endpoint: Optional[DeviceEndpoint] = None
        self._poller: Optional[DevicePoller] = None

        # Session-level subscribers are re-attached to every new poller
        self._subscribers: Dict[int, Callable[[UIDEvent], Any]] = {}
        self._attached: Dict[int, Callable[[], None]] = {}
        self._tokens = itertools.count()

        self._persist_lock = asyncio.Lock()
        self._persist_tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: Dict, store: Optional[KeyValueStore] = None) -> "DeviceSessionContext":
        """Build from the full config (uses 'session' and 'polling' sections)"""
        session_config = config.get('session', {})
        polling = config.get('polling', {})
        return cls(
            store=store,
            storage_key=session_config.get('storage_key', STORAGE_KEY),
            autostart=session_config.get('autostart_polling', True),
            poller_options={
                'path': polling.get('path', DEFAULT_PATH),
                'interval_ms': polling.get('interval_ms'),
                'request_timeout_ms': polling.get('request_timeout_ms'),
                'dedupe_window_ms': polling.get('dedupe_window_ms'),
                'jitter_ms': polling.get('jitter_ms'),
            },
        )

    def _default_poller_factory(self, endpoint: DeviceEndpoint) -> DevicePoller:
        options = {k: v for k, v in self._poller_options.items() if v is not None}
        return DevicePoller(endpoint, **options)

    # ================== ENDPOINT LIFECYCLE ==================

    async def restore(self) -> Optional[DeviceEndpoint]:
        """
        Bind the last persisted endpoint, if any
        A stale or unreadable value is expected and never raises
        """
        try:
            saved = await self.store.get(self.storage_key)
        except Exception as e:
            logger.warning(f"Could not read persisted device endpoint: {e}")
            return None

        if not saved:
            logger.info("No persisted device endpoint")
            return None

        if self._endpoint is not None:
            # An endpoint bound before restore finished wins
            return self._endpoint

        try:
            endpoint = DeviceEndpoint.from_base_url(saved)
        except ValueError as e:
            logger.warning(f"Ignoring invalid persisted endpoint {saved!r}: {e}")
            return None

        logger.info(f"Restored device endpoint {endpoint.base_url}")
        self._bind(endpoint)
        return endpoint

    def set_endpoint(self, endpoint: Union[DeviceEndpoint, str, None]) -> Optional[DeviceEndpoint]:
        """
        Bind a new endpoint (or None) and rebuild the poller
        The previous poller is stopped before the replacement exists
        """
        if isinstance(endpoint, str):
            endpoint = DeviceEndpoint.from_base_url(endpoint)

        if endpoint == self._endpoint:
            return self._endpoint

        self._bind(endpoint)
        if endpoint is not None:
            self._schedule_persist(endpoint.base_url)
        return self._endpoint

    def get_endpoint(self) -> Optional[DeviceEndpoint]:
        return self._endpoint

    @property
    def poller(self) -> Optional[DevicePoller]:
        return self._poller

    @property
    def is_ready(self) -> bool:
        return self._endpoint is not None

    async def clear(self) -> None:
        """Tear down the poller, forget the endpoint and the persisted value"""
        self._bind(None)
        # Writes queued for earlier endpoints must land before the removal
        await self._flush_persist()
        await self._write(None)
        logger.info("Device session cleared")

    async def close(self) -> None:
        """Stop the poller and wait for pending persistence writes"""
        if self._poller:
            await self._poller.close()
        self._bind(None)
        await self._flush_persist()

    def _bind(self, endpoint: Optional[DeviceEndpoint]) -> None:
        self._teardown_poller()
        self._endpoint = endpoint

        if endpoint is None:
            return

        poller = self._poller_factory(endpoint)
        for token, callback in self._subscribers.items():
            self._attached[token] = poller.subscribe(callback)
        self._poller = poller
        logger.info(f"Device endpoint bound: {endpoint.base_url}")

        if self.autostart:
            poller.start()

    def _teardown_poller(self) -> None:
        if self._poller is None:
            return
        for unsubscribe in self._attached.values():
            unsubscribe()
        self._attached.clear()
        self._poller.stop()
        self._poller = None

    # ================== PERSISTENCE ==================

    def _schedule_persist(self, value: Optional[str]) -> None:
        """Fire-and-forget write; ordering is kept by the persist lock"""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, endpoint not persisted")
            return
        task = loop.create_task(self._write(value))
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    async def _flush_persist(self) -> None:
        if self._persist_tasks:
            await asyncio.gather(*list(self._persist_tasks), return_exceptions=True)

    async def _write(self, value: Optional[str]) -> None:
        async with self._persist_lock:
            try:
                if value is None:
                    await self.store.remove(self.storage_key)
                else:
                    await self.store.set(self.storage_key, value)
            except Exception as e:
                logger.warning(f"Could not persist device endpoint: {e}")

    # ================== EVENTS ==================

    def subscribe(self, callback: Callable[[UIDEvent], Any]) -> Callable[[], None]:
        """Subscribe to UID events from whichever poller is current, now and later"""
        token = next(self._tokens)
        self._subscribers[token] = callback
        if self._poller is not None:
            self._attached[token] = self._poller.subscribe(callback)

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)
            detach = self._attached.pop(token, None)
            if detach:
                detach()

        return unsubscribe

    async def wait_for_next_uid(self, timeout_ms: int = DEFAULT_WAIT_TIMEOUT_MS) -> str:
        """
        Wait for the next UID delivered by the session
        The wait is held at session level so it survives an endpoint rebind

        Raises:
            DeviceNotReady: no endpoint is bound
            WaiterTimeout: no UID was delivered within timeout_ms
        """
        if self._poller is None:
            raise DeviceNotReady("No device endpoint bound; run discovery first")

        future = asyncio.get_running_loop().create_future()

        def on_event(event: UIDEvent) -> None:
            if not future.done():
                future.set_result(event.uid)

        unsubscribe = self.subscribe(on_event)
        try:
            return await asyncio.wait_for(future, max(MIN_WAIT_TIMEOUT_MS, timeout_ms) / 1000)
        except asyncio.TimeoutError:
            raise WaiterTimeout("Timed out waiting for next UID") from None
        finally:
            unsubscribe()

    def get_status(self) -> Dict[str, Any]:
        """Session status for monitoring"""
        return {
            "ready": self.is_ready,
            "base_url": self._endpoint.base_url if self._endpoint else None,
            "poller": self._poller.get_status() if self._poller else None,
        }
