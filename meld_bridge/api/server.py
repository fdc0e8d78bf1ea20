"""
api/server.py — FastAPI REST API + WebSocket relay over the Meld instance.

The relay exposes what the host callbacks receive (actions, feedbacks,
presets, variables, connection status) and lets remote clients run actions
and evaluate feedbacks:

  - GET  /health, /healthz (503 unless the WebChannel is ready)
  - GET  /state, /actions, /feedbacks, /presets, /variables
  - POST /actions/{action_id}            body: {"options": {...}}
  - POST /feedbacks/{feedback_id}/evaluate
  - PUT  /config                         body: {"host": ..., "port": ...}
  - WS   /ws  snapshot on connect, then every store change as
              {"event": <actions|feedbacks|presets|variables|status>, "data": ...}
              inbound {"action": id, "options": {...}} runs an action.

Bearer API key on REST, ?token= on the WebSocket.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from meld_bridge import __version__
from meld_bridge.config import get_settings
from meld_bridge.core import ConnectionStatus, get_meld_instance
from meld_bridge.host import DescriptorStore, to_jsonable

log = logging.getLogger(__name__)

_store: Optional[DescriptorStore] = None
_osc_bridge = None


def set_managers(store: Optional[DescriptorStore], osc=None):
    global _store, _osc_bridge
    _store = store
    _osc_bridge = osc


# ──────────────────────────────────────────────────────────────────────────────
# WebSocket connection pool
# ──────────────────────────────────────────────────────────────────────────────

class WSConnectionPool:
    def __init__(self):
        self._connections: list[WebSocket] = []

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._connections.append(ws)
        log.info(f"WS client connected. Total: {len(self._connections)}")

    def disconnect(self, ws: WebSocket) -> None:
        if ws in self._connections:
            self._connections.remove(ws)
        log.info(f"WS client disconnected. Total: {len(self._connections)}")

    async def broadcast(self, message: dict) -> None:
        if not self._connections:
            return
        data = json.dumps(message)
        dead = []
        for ws in self._connections:
            try:
                await ws.send_text(data)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)

    def count(self) -> int:
        return len(self._connections)


ws_pool = WSConnectionPool()


def _relay_store_event(event: str, payload: Any) -> None:
    """Store listener: push every change to the WebSocket clients."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        log.debug(f"No running loop; '{event}' not relayed")
        return
    loop.create_task(ws_pool.broadcast({"event": event, "data": payload}))


# ──────────────────────────────────────────────────────────────────────────────
# App factory
# ──────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    log.info(f"meld-bridge API starting on {settings.api.host}:{settings.api.port}")

    if _store is not None:
        _store.subscribe(_relay_store_event)
        log.info("Descriptor relay to WebSocket clients registered")

    yield

    if _store is not None:
        _store.unsubscribe(_relay_store_event)
    log.info("meld-bridge API shutting down.")


class ActionBody(BaseModel):
    options: dict[str, Any] = Field(default_factory=dict)


class FeedbackBody(BaseModel):
    options: dict[str, Any] = Field(default_factory=dict)


class ConfigBody(BaseModel):
    host: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="meld-bridge",
        description="Meld Studio WebChannel bridge — actions, feedbacks and presets over HTTP",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── REST auth dependency ──────────────────────────────────────────

    async def verify_api_key(authorization: Optional[str] = Header(None)):
        if settings.api.api_key:
            if not authorization or not authorization.startswith("Bearer "):
                raise HTTPException(status_code=401, detail="Missing Bearer token")
            token = authorization.removeprefix("Bearer ").strip()
            if token != settings.api.api_key:
                raise HTTPException(status_code=403, detail="Invalid API key")

    auth = Depends(verify_api_key)

    def meld():
        try:
            return get_meld_instance()
        except RuntimeError:
            raise HTTPException(status_code=503, detail="Meld instance not initialized")

    def store() -> DescriptorStore:
        if _store is None:
            raise HTTPException(status_code=503, detail="Descriptor store not initialized")
        return _store

    # ─────────────────────────────────────────────────────────────────
    # Health
    # ─────────────────────────────────────────────────────────────────

    @app.get("/health", tags=["System"])
    async def health():
        instance = meld()
        return {
            "status": "ok",
            "meld_status": instance.status.value,
            "meld_ready": instance.ready,
            "endpoint": instance.endpoint.url,
            "ws_clients": ws_pool.count(),
            "osc_active": _osc_bridge.is_running() if _osc_bridge else False,
            "version": __version__,
        }

    @app.get("/healthz", tags=["System"])
    async def healthz():
        """Machine-readable health check. Returns 503 unless Meld is connected."""
        instance = meld()
        if instance.status is not ConnectionStatus.OK:
            raise HTTPException(
                status_code=503,
                detail={
                    "status": instance.status.value,
                    "reason": instance.status_reason or "Meld not connected",
                },
            )
        return {"status": "ok"}

    # ─────────────────────────────────────────────────────────────────
    # Session state & descriptors
    # ─────────────────────────────────────────────────────────────────

    @app.get("/state", tags=["Meld"], dependencies=[auth])
    async def session_state():
        instance = meld()
        return {
            "status": store().status_payload(),
            "session": instance.state.to_dict(),
        }

    @app.get("/actions", tags=["Descriptors"], dependencies=[auth])
    async def list_actions():
        return [to_jsonable(a) for a in store().actions]

    @app.get("/feedbacks", tags=["Descriptors"], dependencies=[auth])
    async def list_feedbacks():
        return [to_jsonable(f) for f in store().feedbacks]

    @app.get("/presets", tags=["Descriptors"], dependencies=[auth])
    async def list_presets():
        return [to_jsonable(p) for p in store().presets]

    @app.get("/variables", tags=["Descriptors"], dependencies=[auth])
    async def list_variables():
        return dict(store().variables)

    # ─────────────────────────────────────────────────────────────────
    # Actions & feedbacks
    # ─────────────────────────────────────────────────────────────────

    @app.post("/actions/{action_id:path}", tags=["Meld"], dependencies=[auth])
    async def run_action(action_id: str, body: Optional[ActionBody] = None):
        instance = meld()
        if instance.descriptors.action(action_id) is None:
            raise HTTPException(status_code=404, detail=f"Unknown action '{action_id}'")
        options = body.options if body else {}
        return {"action": action_id, "dispatched": instance.run_action(action_id, options)}

    @app.post("/feedbacks/{feedback_id}/evaluate", tags=["Meld"], dependencies=[auth])
    async def evaluate_feedback(feedback_id: str, body: Optional[FeedbackBody] = None):
        instance = meld()
        if instance.descriptors.feedback(feedback_id) is None:
            raise HTTPException(status_code=404, detail=f"Unknown feedback '{feedback_id}'")
        options = body.options if body else {}
        return {
            "feedback": feedback_id,
            "active": instance.evaluate_feedback(feedback_id, options),
            "style": to_jsonable(instance.feedback_style(feedback_id, options)),
        }

    # ─────────────────────────────────────────────────────────────────
    # Configuration
    # ─────────────────────────────────────────────────────────────────

    @app.put("/config", tags=["System"], dependencies=[auth])
    async def update_config(body: ConfigBody):
        """Point the bridge at another Meld endpoint; reconnects only on change."""
        instance = meld()
        reconnecting = instance.update_config(body.host, body.port)
        return {"endpoint": instance.endpoint.url, "reconnecting": reconnecting}

    # ─────────────────────────────────────────────────────────────────
    # OSC Status
    # ─────────────────────────────────────────────────────────────────

    @app.get("/osc/status", tags=["OSC"], dependencies=[auth])
    async def osc_status():
        return {
            "enabled": settings.osc.enabled,
            "running": _osc_bridge.is_running() if _osc_bridge else False,
            "listen_port": settings.osc.listen_port,
            "reply_port": settings.osc.reply_port,
        }

    # ─────────────────────────────────────────────────────────────────
    # WebSocket relay — with auth
    # ─────────────────────────────────────────────────────────────────

    @app.websocket("/ws")
    async def websocket_endpoint(
        websocket: WebSocket,
        token: Optional[str] = Query(None),
    ):
        # Auth check: if API key is set, require it as ?token= query param
        if settings.api.api_key:
            if not token or token != settings.api.api_key:
                await websocket.close(code=4001, reason="Unauthorized")
                return

        await ws_pool.connect(websocket)
        try:
            await websocket.send_text(json.dumps({
                "event": "snapshot",
                "data": _store.snapshot() if _store else None,
            }))
        except Exception as e:
            log.warning(f"Could not send snapshot to WS client: {e}")

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    msg = json.loads(raw)
                    response = _handle_ws_command(msg)
                    await websocket.send_text(json.dumps(response))
                except json.JSONDecodeError:
                    await websocket.send_text(json.dumps({"error": "Invalid JSON"}))
                except Exception as e:
                    await websocket.send_text(json.dumps({"error": str(e)}))
        except WebSocketDisconnect:
            ws_pool.disconnect(websocket)

    def _handle_ws_command(msg: Any) -> dict:
        if not isinstance(msg, dict):
            return {"error": "Expected a JSON object"}
        try:
            instance = get_meld_instance()
        except RuntimeError:
            raise ValueError("Meld instance not initialized")

        match msg:
            case {"action": str(action_id)}:
                if instance.descriptors.action(action_id) is None:
                    return {"error": f"Unknown action '{action_id}'"}
                options = msg.get("options") or {}
                return {"action": action_id, "dispatched": instance.run_action(action_id, options)}
            case {"feedback": str(feedback_id)}:
                if instance.descriptors.feedback(feedback_id) is None:
                    return {"error": f"Unknown feedback '{feedback_id}'"}
                options = msg.get("options") or {}
                return {
                    "feedback": feedback_id,
                    "active": instance.evaluate_feedback(feedback_id, options),
                }
            case {"cmd": "get_status"}:
                return {
                    "status": {"status": instance.status.value, "reason": instance.status_reason},
                    "session": instance.state.to_dict(),
                }
            case _:
                return {"error": f"Unknown message: {json.dumps(msg)[:120]}"}

    return app
