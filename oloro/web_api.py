import asyncio
import json
import os
import signal
from typing import Any, Optional
from urllib.parse import urlparse

from aiohttp import ClientSession, ClientTimeout, WSMsgType, web
from loguru import logger

from oloro.config import Config
from oloro.core.error_taxonomy import user_message_for_exception
from oloro.core.errors import NoCredentialAvailable, NotFoundError, OloroError, StorageError, ValidationError
from oloro.core.logging_setup import setup_logging
from oloro.core.sync_state import SyncTransition
from oloro.core.ws_contracts import (
    connectivity_event,
    credentials_updated_event,
    records_updated_event,
    settings_changed_event,
    sync_status_event,
    validate_event_payload,
)
from oloro.data.key_registry import KeyRegistry
from oloro.data.kv_store import KeyValueStore, SqliteKeyValueStore
from oloro.data.record_queue import Record, RecordSyncQueue, Uploader
from oloro.data.settings_store import SettingsStore
from oloro.runtime.connectivity import ConnectivityMonitor, run_probe_loop
from oloro.runtime.generation_client import GenerationBackend, GenerationClient, gemini_backend
from oloro.runtime.remote_uploader import HttpRecordUploader
from oloro.runtime.sync_coordinator import SyncCoordinator

_ALLOWED_ORIGINS_ENV = "OLORO_ALLOWED_ORIGINS"
_VALIDATE_WS_ENV = "OLORO_VALIDATE_WS_CONTRACTS"


def _parse_allowed_origins() -> list[str]:
    raw = os.getenv(_ALLOWED_ORIGINS_ENV, "")
    if not raw:
        return []
    cleaned: list[str] = []
    for entry in raw.split(","):
        val = entry.strip().rstrip("/")
        if val:
            cleaned.append(val)
    return cleaned


def _origin_allowed(origin: str) -> bool:
    origin = (origin or "").strip()
    if not origin:
        return False
    allowed = _parse_allowed_origins()
    if "*" in allowed:
        return True
    if allowed:
        return origin in allowed
    parsed = urlparse(origin)
    if parsed.scheme not in {"http", "https"}:
        return False
    host = parsed.hostname
    if not host:
        return False
    return host in {"localhost", "127.0.0.1", "::1"}


class OloroWebController:
    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        *,
        store: Optional[KeyValueStore] = None,
        uploader: Optional[Uploader] = None,
        backend: Optional[GenerationBackend] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
    ):
        self._loop = loop
        self._clients: set[web.WebSocketResponse] = set()
        self._clients_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

        self._store = store or SqliteKeyValueStore(Config.DB_PATH)
        self.connectivity = connectivity or ConnectivityMonitor()
        self.keys = KeyRegistry(self._store)
        self.settings = SettingsStore(self._store)
        self.records = RecordSyncQueue(
            self._store,
            uploader=uploader or HttpRecordUploader(),
            connectivity=self.connectivity,
        )
        self.generation = GenerationClient(self.keys, backend or gemini_backend())
        self.coordinator = SyncCoordinator(self.records, self.connectivity, loop=loop)

        self.records.subscribe(self._on_record_changed)
        self.settings.subscribe(self._on_settings_changed)
        self.connectivity.subscribe(self._on_connectivity_changed)

    def start(self) -> None:
        self.coordinator.start()

    async def shutdown(self) -> None:
        await self.coordinator.stop()
        pending = [task for task in self._background if not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = self._loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def add_client(self, ws: web.WebSocketResponse) -> None:
        async with self._clients_lock:
            self._clients.add(ws)

    async def remove_client(self, ws: web.WebSocketResponse) -> None:
        async with self._clients_lock:
            self._clients.discard(ws)

    async def broadcast(self, payload: dict[str, Any]) -> None:
        if os.getenv(_VALIDATE_WS_ENV, "0") in ("1", "true", "True"):
            validate_event_payload(payload)
        msg = json.dumps(payload, ensure_ascii=False)
        async with self._clients_lock:
            clients = list(self._clients)
        if not clients:
            return

        async def send_safe(ws: web.WebSocketResponse):
            try:
                await ws.send_str(msg)
            except Exception:
                await self.remove_client(ws)

        await asyncio.gather(*(send_safe(ws) for ws in clients))

    def _on_record_changed(self, record: Record, change: Optional[SyncTransition]) -> None:
        pending = self.records.pending_count()
        if change is None:
            payload = records_updated_event(pending_count=pending)
        else:
            payload = sync_status_event(
                record.to_public(),
                pending_count=pending,
                message=RecordSyncQueue.failure_message(record),
            )
        self._spawn(self.broadcast(payload))

    def _on_settings_changed(self, settings: dict[str, Any], changed: set[str]) -> None:
        if "gemini_model" in changed:
            Config.set_gemini_model(str(settings.get("gemini_model") or Config.GEMINI_MODEL))
        self._spawn(self.broadcast(settings_changed_event(changed)))

    def _on_connectivity_changed(self, online: bool) -> None:
        self._spawn(self.broadcast(connectivity_event(online)))

    async def _broadcast_credentials(self) -> None:
        await self.broadcast(
            credentials_updated_event(healthy=self.keys.healthy_count(), total=len(self.keys.list_credentials()))
        )

    def get_state(self) -> dict[str, Any]:
        return {
            "online": self.connectivity.is_online,
            "pendingCount": self.records.pending_count(),
            "healthyKeys": self.keys.healthy_count(),
            "usage": self.keys.usage_summary(),
        }

    def list_keys(self) -> list[dict[str, Any]]:
        return [rec.to_public() for rec in self.keys.list_credentials()]

    async def add_key(self, payload: dict[str, Any]) -> dict[str, Any]:
        rec = self.keys.add_credential(str(payload.get("key") or ""), str(payload.get("label") or ""))
        await self._broadcast_credentials()
        return rec.to_public()

    async def remove_key(self, credential_id: str) -> None:
        if self.keys.get_credential(credential_id) is None:
            raise NotFoundError("API key", credential_id)
        self.keys.remove_credential(credential_id)
        await self._broadcast_credentials()

    async def set_key_active(self, credential_id: str, active: bool) -> dict[str, Any]:
        rec = self.keys.set_active(credential_id, active)
        if rec is None:
            raise NotFoundError("API key", credential_id)
        await self._broadcast_credentials()
        return rec.to_public()

    def list_records(self) -> list[dict[str, Any]]:
        out = []
        for day, items in self.records.grouped_by_date():
            out.append({"date": day, "records": [rec.to_public() for rec in items]})
        return out

    def create_record(self, payload: dict[str, Any]) -> dict[str, Any]:
        body = payload.get("payload")
        if body is not None and not isinstance(body, dict):
            raise ValidationError("'payload' must be an object")
        rec = self.records.create_record(str(payload.get("title") or ""), body)
        if self.connectivity.is_online:
            self._spawn(self.records.attempt_sync(rec.id))
        return rec.to_public()

    async def generate(self, prompt: str) -> dict[str, Any]:
        if not (prompt or "").strip():
            raise ValidationError("Prompt must not be empty")
        result = await self.generation.generate_with_rotation(prompt)
        self._spawn(self._broadcast_credentials())
        return {"text": result.text, "tokensUsed": result.tokens_used, "keyId": result.credential_id}


@web.middleware
async def cors_middleware(request: web.Request, handler):
    origin = request.headers.get("Origin")
    if origin and not _origin_allowed(origin):
        return web.json_response({"message": "Origin not allowed"}, status=403)

    if request.method == "OPTIONS":
        resp = web.Response(status=204)
    else:
        try:
            resp = await handler(request)
        except web.HTTPException as exc:
            resp = exc

    if origin:
        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Credentials"] = "true"
    else:
        resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    return resp


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except ValidationError as exc:
        return web.json_response({"message": str(exc)}, status=400)
    except NotFoundError as exc:
        return web.json_response({"message": str(exc)}, status=404)
    except NoCredentialAvailable as exc:
        return web.json_response({"message": str(exc), "setupRequired": True}, status=409)
    except StorageError as exc:
        logger.exception("Local store failure")
        return web.json_response({"message": f"Local storage is unavailable: {exc}"}, status=500)
    except OloroError as exc:
        return web.json_response({"message": str(exc)}, status=400)


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except Exception:
        raise ValidationError("Invalid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Expected a JSON object")
    return payload


def create_app(controller: OloroWebController) -> web.Application:
    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app["controller"] = controller

    async def http_session_ctx(app_: web.Application):
        timeout = ClientTimeout(total=15)
        session = ClientSession(timeout=timeout)
        app_["http_session"] = session
        probe_task = None
        if Config.CONNECTIVITY_PROBE_ENABLED:
            probe_task = asyncio.create_task(run_probe_loop(controller.connectivity, session=session))
        yield
        if probe_task is not None:
            probe_task.cancel()
            await asyncio.gather(probe_task, return_exceptions=True)
        await session.close()

    app.cleanup_ctx.append(http_session_ctx)

    async def health(_request: web.Request):
        return web.json_response({"ok": True})

    async def ws_handler(request: web.Request):
        origin = request.headers.get("Origin")
        if origin and not _origin_allowed(origin):
            return web.json_response({"message": "Origin not allowed"}, status=403)

        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        ctl: OloroWebController = request.app["controller"]
        await ctl.add_client(ws)
        await ws.send_str(json.dumps({"type": "state", **ctl.get_state()}))

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    if msg.data == "ping":
                        await ws.send_str("pong")
                elif msg.type == WSMsgType.ERROR:
                    break
        finally:
            await ctl.remove_client(ws)
        return ws

    async def get_state(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        return web.json_response(ctl.get_state())

    async def list_keys(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        return web.json_response(ctl.list_keys())

    async def add_key(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        created = await ctl.add_key(await _read_json(request))
        return web.json_response(created, status=201)

    async def delete_key(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        key_id = request.match_info.get("id", "")
        await ctl.remove_key(key_id)
        return web.json_response({"success": True, "id": key_id})

    async def set_key_active(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        payload = await _read_json(request)
        if not isinstance(payload.get("active"), bool):
            raise ValidationError("'active' must be a boolean")
        updated = await ctl.set_key_active(request.match_info.get("id", ""), payload["active"])
        return web.json_response(updated)

    async def list_records(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        return web.json_response(ctl.list_records())

    async def create_record(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        created = ctl.create_record(await _read_json(request))
        return web.json_response(created, status=201)

    async def retry_records(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        synced = await ctl.records.retry_pending()
        return web.json_response({"synced": synced, "pendingCount": ctl.records.pending_count()})

    async def pending_count(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        return web.json_response({"pendingCount": ctl.records.pending_count()})

    async def get_settings(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        return web.json_response(ctl.settings.get_settings())

    async def put_settings(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        updated = ctl.settings.update_settings(await _read_json(request))
        return web.json_response(updated)

    async def add_vocabulary(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        payload = await _read_json(request)
        vocab = ctl.settings.add_vocabulary_term(str(payload.get("term") or ""))
        return web.json_response({"vocabulary": vocab})

    async def remove_vocabulary(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        payload = await _read_json(request)
        vocab = ctl.settings.remove_vocabulary_term(str(payload.get("term") or ""))
        return web.json_response({"vocabulary": vocab})

    async def set_connectivity(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        payload = await _read_json(request)
        if not isinstance(payload.get("online"), bool):
            raise ValidationError("'online' must be a boolean")
        ctl.connectivity.set_online(payload["online"])
        return web.json_response({"online": ctl.connectivity.is_online})

    async def generate(request: web.Request):
        ctl: OloroWebController = request.app["controller"]
        payload = await _read_json(request)
        try:
            result = await ctl.generate(str(payload.get("prompt") or ""))
        except OloroError:
            raise
        except Exception as exc:
            logger.warning(f"Generation failed: {exc}")
            return web.json_response({"message": user_message_for_exception(exc)}, status=502)
        return web.json_response(result)

    app.router.add_get("/api/health", health)
    app.router.add_get("/ws", ws_handler)
    app.router.add_get("/api/state", get_state)

    app.router.add_get("/api/keys", list_keys)
    app.router.add_post("/api/keys", add_key)
    app.router.add_delete("/api/keys/{id}", delete_key)
    app.router.add_put("/api/keys/{id}/active", set_key_active)

    app.router.add_get("/api/records", list_records)
    app.router.add_post("/api/records", create_record)
    app.router.add_post("/api/records/retry", retry_records)
    app.router.add_get("/api/records/pending-count", pending_count)

    app.router.add_get("/api/settings", get_settings)
    app.router.add_put("/api/settings", put_settings)
    app.router.add_post("/api/settings/vocabulary", add_vocabulary)
    app.router.add_delete("/api/settings/vocabulary", remove_vocabulary)

    app.router.add_post("/api/connectivity", set_connectivity)
    app.router.add_post("/api/generate", generate)

    return app


async def run_server(host: str, port: int) -> None:
    loop = asyncio.get_running_loop()
    controller = OloroWebController(loop)
    controller.start()

    app = create_app(controller)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=host, port=port)
    await site.start()
    logger.info(f"Oloro API listening on http://{host}:{port} (ws://{host}:{port}/ws)")

    stop_event = asyncio.Event()

    def _request_stop(*_args: Any) -> None:
        loop.call_soon_threadsafe(stop_event.set)

    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", signal.SIGINT)):
        try:
            signal.signal(sig, _request_stop)
        except Exception:  # pragma: no cover - platform dependent
            pass

    await stop_event.wait()
    await controller.shutdown()
    await runner.cleanup()


def main() -> None:
    setup_logging(component="web")
    asyncio.run(run_server(Config.WEB_HOST, Config.WEB_PORT))


if __name__ == "__main__":
    main()
