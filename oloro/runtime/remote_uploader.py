from __future__ import annotations

import json

import aiohttp
from loguru import logger

from oloro.config import Config
from oloro.core.errors import RemoteSyncFailure
from oloro.data.record_queue import Record


class HttpRecordUploader:
    """Mirrors records to a remote endpoint with ``PUT <endpoint>/<record id>``."""

    def __init__(
        self,
        *,
        endpoint: str | None = None,
        token: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        self._endpoint = (endpoint if endpoint is not None else Config.SYNC_ENDPOINT).rstrip("/")
        self._token = token if token is not None else Config.SYNC_TOKEN
        self._session = session

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _put(self, session: aiohttp.ClientSession, record: Record) -> None:
        url = f"{self._endpoint}/{record.id}"
        body = json.dumps(record.to_public(), ensure_ascii=False)
        try:
            async with session.put(url, data=body, headers=self._headers()) as resp:
                if resp.status >= 400:
                    raw = await resp.text()
                    raise RemoteSyncFailure(f"Remote store rejected record ({resp.status}): {raw[:300]}")
        except aiohttp.ClientError as exc:
            raise RemoteSyncFailure(f"Connection error while syncing: {exc}") from exc
        logger.debug(f"Uploaded record {record.id} to {url}")

    async def __call__(self, record: Record) -> None:
        if not self._endpoint:
            raise RemoteSyncFailure("Missing sync endpoint configuration (OLORO_SYNC_ENDPOINT)")
        if self._session:
            await self._put(self._session, record)
        else:
            async with aiohttp.ClientSession() as session:
                await self._put(session, record)
