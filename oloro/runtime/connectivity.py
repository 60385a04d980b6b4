from __future__ import annotations

import asyncio
from typing import Callable

import aiohttp
from loguru import logger

from oloro.config import Config

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    """Online/offline flag with change notifications."""

    def __init__(self, *, initial_online: bool = True):
        self._online = bool(initial_online)
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def set_online(self, online: bool) -> bool:
        """Update the flag; returns True when it actually changed."""
        online = bool(online)
        if online == self._online:
            return False
        self._online = online
        logger.info("Connectivity restored" if online else "Connectivity lost; working offline")
        for callback in list(self._listeners):
            try:
                callback(online)
            except Exception:
                logger.exception("Connectivity listener failed")
        return True


async def probe(session: aiohttp.ClientSession, url: str, *, timeout_secs: float = 5.0) -> bool:
    try:
        async with session.head(
            url,
            timeout=aiohttp.ClientTimeout(total=timeout_secs),
            allow_redirects=True,
        ) as resp:
            return resp.status < 500
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.debug(f"Connectivity probe to {url} failed: {exc}")
        return False


async def run_probe_loop(
    monitor: ConnectivityMonitor,
    *,
    session: aiohttp.ClientSession,
    url: str | None = None,
    interval_secs: float | None = None,
) -> None:
    """Poll ``url`` until cancelled, feeding results into ``monitor``."""
    target = url or Config.CONNECTIVITY_PROBE_URL
    interval = max(0.5, float(interval_secs if interval_secs is not None else Config.CONNECTIVITY_PROBE_INTERVAL_SECONDS))
    while True:
        monitor.set_online(await probe(session, target))
        await asyncio.sleep(interval)
