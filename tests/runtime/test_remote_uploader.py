import json

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from oloro.core.errors import RemoteSyncFailure
from oloro.data.record_queue import Record
from oloro.runtime.remote_uploader import HttpRecordUploader


async def _start_store(status: int = 200):
    received: list[dict] = []

    async def _put(request: web.Request) -> web.Response:
        body = json.loads(await request.text())
        received.append(
            {
                "id": request.match_info["record_id"],
                "auth": request.headers.get("Authorization"),
                "body": body,
            }
        )
        if status >= 400:
            return web.Response(status=status, text="store says no")
        return web.json_response({"ok": True})

    app = web.Application()
    app.router.add_put("/records/{record_id}", _put)
    server = TestServer(app)
    await server.start_server()
    return server, received


@pytest.mark.asyncio
async def test_put_sends_public_record_with_bearer_token():
    server, received = await _start_store()
    try:
        record = Record.new("Standup")
        async with aiohttp.ClientSession() as session:
            uploader = HttpRecordUploader(endpoint=str(server.make_url("/records")), token="tok", session=session)
            await uploader(record)
    finally:
        await server.close()

    assert len(received) == 1
    assert received[0]["id"] == record.id
    assert received[0]["auth"] == "Bearer tok"
    assert received[0]["body"]["title"] == "Standup"


@pytest.mark.asyncio
async def test_rejection_raises_remote_sync_failure():
    server, _ = await _start_store(status=503)
    try:
        uploader = HttpRecordUploader(endpoint=str(server.make_url("/records")), token="")
        with pytest.raises(RemoteSyncFailure, match="503"):
            await uploader(Record.new("Standup"))
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_missing_endpoint_raises():
    uploader = HttpRecordUploader(endpoint="", token="")
    with pytest.raises(RemoteSyncFailure, match="Missing sync endpoint"):
        await uploader(Record.new("Standup"))


@pytest.mark.asyncio
async def test_connection_error_is_wrapped():
    server, _ = await _start_store()
    url = str(server.make_url("/records"))
    await server.close()

    uploader = HttpRecordUploader(endpoint=url, token="")
    with pytest.raises(RemoteSyncFailure, match="Connection error"):
        await uploader(Record.new("Standup"))
