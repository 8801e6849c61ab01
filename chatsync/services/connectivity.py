"""Connectivity signal consumed by the outbound queue.

ConnectivityMonitor holds the current online flag and notifies listeners on
transitions. HttpConnectivityProbe optionally drives a monitor by polling a
health URL with httpx.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

import httpx

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Any]


class ConnectivityMonitor:
    """Boolean online signal with change notification.

    Listeners receive the new state only on actual transitions. They may be
    sync or async callables; exceptions are logged per listener.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register a transition listener.

        Returns:
            Zero-argument callable that removes the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def set_online(self, online: bool) -> None:
        """Update the signal, notifying listeners if it changed."""
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            try:
                result = listener(online)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Connectivity listener failed: %s", e)


class HttpConnectivityProbe:
    """Polls a URL and reports reachability to a ConnectivityMonitor.

    Any response below 500 counts as online; connection errors, timeouts and
    5xx responses count as offline.
    """

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        url: str,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._monitor = monitor
        self._url = url
        self._timeout = timeout
        self._client = client

    @property
    def url(self) -> str:
        return self._url

    async def check(self) -> bool:
        """Probe once and push the result into the monitor."""
        try:
            if self._client is not None:
                resp = await self._client.get(self._url, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.get(self._url)
            online = resp.status_code < 500
        except httpx.TimeoutException:
            logger.debug("Connectivity probe timed out: %s", self._url)
            online = False
        except httpx.HTTPError as e:
            logger.debug("Connectivity probe failed: %s (%s)", self._url, e)
            online = False
        await self._monitor.set_online(online)
        return online

    async def run(self, interval: float, stop_event: asyncio.Event) -> None:
        """Probe every ``interval`` seconds until stop_event is set."""
        while not stop_event.is_set():
            await self.check()
            try:
                await asyncio.wait_for(stop_event.wait(), interval)
            except asyncio.TimeoutError:
                continue
