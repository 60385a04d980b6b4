import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from oloro import web_api
from oloro.config import Config
from oloro.data.kv_store import MemoryKeyValueStore
from oloro.runtime.connectivity import ConnectivityMonitor
from oloro.web_api import OloroWebController, create_app


class _Uploader:
    def __init__(self):
        self.uploaded: list[str] = []

    async def __call__(self, record):
        self.uploaded.append(record.id)


class _Backend:
    def __init__(self, error: Exception | None = None):
        self.error = error

    async def __call__(self, api_key, prompt):
        if self.error is not None:
            raise self.error
        return f"summary of {prompt}", 64


async def _client(*, online: bool = False, backend: _Backend | None = None):
    loop = asyncio.get_running_loop()
    uploader = _Uploader()
    ctl = OloroWebController(
        loop,
        store=MemoryKeyValueStore(),
        uploader=uploader,
        backend=backend or _Backend(),
        connectivity=ConnectivityMonitor(initial_online=online),
    )
    client = TestClient(TestServer(create_app(ctl)))
    await client.start_server()
    return client, ctl, uploader


@pytest.mark.asyncio
async def test_health_and_state():
    client, _, _ = await _client()
    try:
        resp = await client.get("/api/health")
        assert resp.status == 200
        assert await resp.json() == {"ok": True}

        state = await (await client.get("/api/state")).json()
        assert state["online"] is False
        assert state["pendingCount"] == 0
        assert state["healthyKeys"] == 0
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_key_crud_never_exposes_secret():
    client, _, _ = await _client()
    try:
        resp = await client.post("/api/keys", json={"key": "AIza-secret-9876", "label": "Work"})
        assert resp.status == 201
        created = await resp.json()
        assert created["key"] == "...9876"
        assert created["label"] == "Work"
        assert created["isActive"] is True

        listing = await client.get("/api/keys")
        assert "AIza-secret" not in await listing.text()

        resp = await client.put(f"/api/keys/{created['id']}/active", json={"active": False})
        assert resp.status == 200
        assert (await resp.json())["isActive"] is False

        resp = await client.delete(f"/api/keys/{created['id']}")
        assert resp.status == 200
        assert await (await client.get("/api/keys")).json() == []
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_key_errors_map_to_status_codes():
    client, _, _ = await _client()
    try:
        assert (await client.post("/api/keys", json={"key": "   "})).status == 400
        assert (await client.post("/api/keys", data="not json")).status == 400
        assert (await client.delete("/api/keys/missing")).status == 404
        assert (await client.put("/api/keys/missing/active", json={"active": True})).status == 404
        assert (await client.put("/api/keys/missing/active", json={"active": "yes"})).status == 400
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_offline_record_is_pending_until_retry():
    client, ctl, uploader = await _client(online=False)
    try:
        resp = await client.post("/api/records", json={"title": "Standup"})
        assert resp.status == 201
        created = await resp.json()
        assert created["syncStatus"] == "pending"

        count = await (await client.get("/api/records/pending-count")).json()
        assert count == {"pendingCount": 1}

        groups = await (await client.get("/api/records")).json()
        assert len(groups) == 1
        assert groups[0]["records"][0]["id"] == created["id"]

        # Retrying while offline uploads nothing.
        retry = await (await client.post("/api/records/retry")).json()
        assert retry == {"synced": 0, "pendingCount": 1}
        assert uploader.uploaded == []

        resp = await client.post("/api/connectivity", json={"online": True})
        assert (await resp.json()) == {"online": True}
        retry = await (await client.post("/api/records/retry")).json()
        assert retry == {"synced": 1, "pendingCount": 0}
        assert uploader.uploaded == [created["id"]]
    finally:
        await ctl.shutdown()
        await client.close()


@pytest.mark.asyncio
async def test_record_payload_must_be_object():
    client, _, _ = await _client()
    try:
        resp = await client.post("/api/records", json={"title": "x", "payload": [1, 2]})
        assert resp.status == 400
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_settings_and_vocabulary_routes():
    client, _, _ = await _client()
    try:
        settings = await (await client.get("/api/settings")).json()
        assert settings["theme_color"] == "blue"

        resp = await client.put("/api/settings", json={"theme_color": "purple"})
        assert resp.status == 200
        assert (await resp.json())["theme_color"] == "purple"

        assert (await client.put("/api/settings", json={"no_such_setting": 1})).status == 400

        resp = await client.post("/api/settings/vocabulary", json={"term": "Kubernetes"})
        assert (await resp.json())["vocabulary"] == ["Kubernetes"]
        resp = await client.delete("/api/settings/vocabulary", json={"term": "Kubernetes"})
        assert (await resp.json())["vocabulary"] == []
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_generate_without_keys_requires_setup(monkeypatch):
    monkeypatch.setattr(Config, "GEMINI_API_KEY", None)
    client, _, _ = await _client()
    try:
        resp = await client.post("/api/generate", json={"prompt": "hello"})
        assert resp.status == 409
        body = await resp.json()
        assert body["setupRequired"] is True
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_generate_meters_stored_key():
    client, ctl, _ = await _client()
    try:
        created = await (await client.post("/api/keys", json={"key": "secret-abcd"})).json()
        resp = await client.post("/api/generate", json={"prompt": "hello"})
        assert resp.status == 200
        body = await resp.json()
        assert body == {"text": "summary of hello", "tokensUsed": 64, "keyId": created["id"]}
        assert ctl.keys.get_credential(created["id"]).usage.total_tokens == 64
    finally:
        await ctl.shutdown()
        await client.close()


@pytest.mark.asyncio
async def test_generate_backend_failure_returns_user_message():
    client, ctl, _ = await _client(backend=_Backend(RuntimeError("503 service unavailable")))
    try:
        created = await (await client.post("/api/keys", json={"key": "secret-abcd"})).json()
        resp = await client.post("/api/generate", json={"prompt": "hello"})
        assert resp.status == 502
        assert "temporarily unavailable" in (await resp.json())["message"]
        assert ctl.keys.get_credential(created["id"]).error_count == 1
    finally:
        await ctl.shutdown()
        await client.close()


@pytest.mark.asyncio
async def test_disallowed_origin_is_rejected(monkeypatch):
    monkeypatch.delenv("OLORO_ALLOWED_ORIGINS", raising=False)
    client, _, _ = await _client()
    try:
        resp = await client.get("/api/health", headers={"Origin": "https://evil.example"})
        assert resp.status == 403
        resp = await client.get("/api/health", headers={"Origin": "http://localhost:5173"})
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"
    finally:
        await client.close()


def test_origin_allowed_defaults(monkeypatch):
    monkeypatch.delenv("OLORO_ALLOWED_ORIGINS", raising=False)
    assert web_api._origin_allowed("http://localhost:3000")
    assert web_api._origin_allowed("http://[::1]:5173")
    assert not web_api._origin_allowed("https://evil.example")
    assert not web_api._origin_allowed("null")


def test_origin_allowed_from_env(monkeypatch):
    monkeypatch.setenv("OLORO_ALLOWED_ORIGINS", "https://example.com, *")
    assert web_api._origin_allowed("https://anything.example")
