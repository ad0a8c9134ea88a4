"""Admin HTTP server for dnsguard (stats, devices, rules, events, health).

This module provides a small FastAPI application and helpers to run it in a
background thread alongside the DNS listeners.

All handlers return JSON data structures and are backed by the in-process
QueryPipeline, so HTTP mutations go through the same cache invalidation and
broadcast path as programmatic ones.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..errors import ValidationError
from ..pipeline import QueryPipeline
from ..rules.store import normalize_domain

logger = logging.getLogger("dnsguard.webserver")


class RingBuffer:
    """Thread-safe fixed-size ring buffer of arbitrary items.

    Inputs (constructor):
      - capacity: Maximum number of items to retain (int, >= 1)

    Outputs:
      - RingBuffer instance with push() and snapshot() helpers.

    Example:
      >>> buf = RingBuffer(capacity=2)
      >>> buf.push(1)
      >>> buf.push(2)
      >>> buf.push(3)
      >>> buf.snapshot()
      [2, 3]
    """

    def __init__(self, capacity: int = 500) -> None:
        self._capacity = max(1, int(capacity))
        self._items: List[Any] = []
        self._lock = threading.Lock()

    def push(self, item: Any) -> None:
        with self._lock:
            self._items.append(item)
            overflow = len(self._items) - self._capacity
            if overflow > 0:
                del self._items[:overflow]

    def snapshot(self, limit: Optional[int] = None) -> List[Any]:
        """Return a copy of buffered items, optionally truncated to the newest N."""

        with self._lock:
            data = list(self._items)
        if limit is not None and limit >= 0:
            data = data[-limit:] if limit else []
        return data

    def record_event(self, topic: str, payload: Dict[str, Any]) -> None:
        """Broadcaster subscriber: keep the topic alongside the payload."""

        self.push({"topic": topic, "received_at": time.time(), "payload": payload})


class DomainBody(BaseModel):
    domain: str


class ModeBody(BaseModel):
    mode: str


class DeviceNameBody(BaseModel):
    name: str


class EnforcementBody(BaseModel):
    enabled: bool


def _build_auth_dependency(web_cfg: Dict[str, Any]):
    """Build a FastAPI dependency enforcing optional admin auth.

    Inputs:
      - web_cfg: webserver config mapping (or {}).

    Outputs:
      - Dependency callable usable with FastAPI Depends().

    Modes:
      - none (default): no authentication.
      - token: require Authorization: Bearer <token> or X-API-Key header.
    """

    auth_cfg = (web_cfg.get("auth") or {}) if isinstance(web_cfg, dict) else {}
    mode = str(auth_cfg.get("mode", "none")).lower()
    token = auth_cfg.get("token")

    async def _no_auth(_request: Request) -> None:
        return None

    async def _token_auth(request: Request) -> None:
        if not token:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="webserver.auth.token not configured",
            )
        hdr = request.headers.get("authorization") or ""
        api_key = request.headers.get("x-api-key")
        if hdr.lower().startswith("bearer "):
            provided = hdr[7:].strip()
        else:
            provided = api_key.strip() if api_key else ""
        if not provided or provided != str(token):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="unauthorized",
                headers={"WWW-Authenticate": "Bearer"},
            )

    if mode == "token":
        return _token_auth
    return _no_auth


def create_app(
    pipeline: QueryPipeline,
    config: Dict[str, Any],
    event_buffer: Optional[RingBuffer] = None,
) -> FastAPI:
    """Create the FastAPI app exposing dnsguard admin endpoints.

    Inputs:
      - pipeline: QueryPipeline serving DNS queries.
      - config: Configuration mapping (AppConfig.model_dump()); only the
        ``webserver`` section is read.
      - event_buffer: Optional RingBuffer fed by the broadcaster.

    Outputs:
      - Configured FastAPI application.

    Example:
      >>> app = create_app(QueryPipeline(), {"webserver": {"enabled": True}})
    """

    web_cfg = (config.get("webserver") or {}) if isinstance(config, dict) else {}
    auth = _build_auth_dependency(web_cfg)
    buffer = event_buffer if event_buffer is not None else RingBuffer(
        int(web_cfg.get("event_buffer_size", 500) or 500)
    )

    app = FastAPI(title="dnsguard Admin HTTP API")
    app.state.pipeline = pipeline
    app.state.event_buffer = buffer
    app.state.started_at = time.time()

    @app.exception_handler(ValidationError)
    async def _validation_error(_request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "uptime_seconds": round(time.time() - app.state.started_at, 3),
        }

    @app.get("/api/v1/stats", dependencies=[Depends(auth)])
    def get_stats(history: bool = True) -> Dict[str, Any]:
        data = pipeline.get_stats().to_dict(include_history=history)
        data["cache"] = pipeline.cache.stats()
        data["privacy"] = pipeline.sanitizer.settings()
        return data

    @app.post("/api/v1/stats/reset", dependencies=[Depends(auth)])
    def reset_stats() -> Dict[str, Any]:
        return pipeline.clear_stats().to_dict(include_history=False)

    @app.get("/api/v1/history", dependencies=[Depends(auth)])
    def query_history(
        limit: int = Query(100, ge=0), offset: int = Query(0, ge=0)
    ) -> Dict[str, Any]:
        return pipeline.get_history(limit=limit, offset=offset)

    @app.get("/api/v1/privacy/settings", dependencies=[Depends(auth)])
    def privacy_settings() -> Dict[str, Any]:
        return pipeline.get_privacy_settings()

    @app.put("/api/v1/privacy/settings", dependencies=[Depends(auth)])
    def set_privacy_settings(body: ModeBody) -> Dict[str, Any]:
        return pipeline.set_privacy_mode(body.mode)

    @app.post("/api/v1/privacy/clear", dependencies=[Depends(auth)])
    def clear_private_data() -> Dict[str, Any]:
        pipeline.clear_private_data()
        return {"status": "ok", "message": "Private data cleared"}

    @app.get("/api/v1/devices", dependencies=[Depends(auth)])
    def list_devices() -> Dict[str, Any]:
        return {"devices": pipeline.get_devices()}

    @app.get("/api/v1/devices/active", dependencies=[Depends(auth)])
    def list_active_devices() -> Dict[str, Any]:
        return {"devices": pipeline.get_active_devices()}

    @app.get("/api/v1/devices/{ip}", dependencies=[Depends(auth)])
    def get_device(ip: str) -> Dict[str, Any]:
        device = pipeline.stats.device(ip)
        if device is None:
            raise HTTPException(status_code=404, detail=f"unknown device {ip}")
        return device

    @app.put("/api/v1/devices/{ip}/name", dependencies=[Depends(auth)])
    def rename_device(ip: str, body: DeviceNameBody) -> Dict[str, Any]:
        name = body.name.strip()
        if not name:
            raise ValidationError("device name must be non-empty")
        device = pipeline.set_device_name(ip, name)
        return device if device is not None else {"ip": ip, "name": name}

    @app.get("/api/v1/rules", dependencies=[Depends(auth)])
    def get_rules() -> Dict[str, Any]:
        return pipeline.get_rules()

    @app.post("/api/v1/rules/blocked", dependencies=[Depends(auth)])
    def add_blocked(body: DomainBody) -> Dict[str, Any]:
        pipeline.add_blocked_domain(body.domain)
        return pipeline.get_rules()

    @app.delete("/api/v1/rules/blocked", dependencies=[Depends(auth)])
    def remove_blocked(body: DomainBody) -> Dict[str, Any]:
        pipeline.remove_blocked_domain(body.domain)
        return pipeline.get_rules()

    @app.post("/api/v1/rules/allowed", dependencies=[Depends(auth)])
    def add_allowed(body: DomainBody) -> Dict[str, Any]:
        pipeline.add_allowed_domain(body.domain)
        return pipeline.get_rules()

    @app.delete("/api/v1/rules/allowed", dependencies=[Depends(auth)])
    def remove_allowed(body: DomainBody) -> Dict[str, Any]:
        pipeline.remove_allowed_domain(body.domain)
        return pipeline.get_rules()

    @app.post("/api/v1/rules/categories/{name}/toggle", dependencies=[Depends(auth)])
    def toggle_category(name: str) -> Dict[str, Any]:
        pipeline.toggle_category(name)
        return pipeline.get_rules()

    @app.put("/api/v1/rules/mode", dependencies=[Depends(auth)])
    def set_mode(body: ModeBody) -> Dict[str, Any]:
        pipeline.set_mode(body.mode)
        return pipeline.get_rules()

    @app.get("/api/v1/test/{domain}", dependencies=[Depends(auth)])
    def test_domain(domain: str) -> Dict[str, Any]:
        verdict = pipeline.test_domain(domain)
        data = verdict.to_dict()
        data["domain"] = normalize_domain(domain)
        data["action"] = verdict.action
        return data

    @app.get("/api/v1/events", dependencies=[Depends(auth)])
    def recent_events(limit: Optional[int] = None, topic: Optional[str] = None) -> Dict[str, Any]:
        items = buffer.snapshot()
        if topic:
            items = [e for e in items if e.get("topic") == topic]
        if limit is not None and limit >= 0:
            items = items[-limit:] if limit else []
        return {"events": items}

    @app.get("/api/v1/enforcement", dependencies=[Depends(auth)])
    def enforcement_status() -> Dict[str, Any]:
        return pipeline.enforcement.status()

    @app.put("/api/v1/enforcement", dependencies=[Depends(auth)])
    def set_enforcement(body: EnforcementBody) -> Dict[str, Any]:
        if body.enabled:
            return pipeline.enforcement.enable()
        return pipeline.enforcement.disable()

    return app


class WebServerHandle:
    """Handle for a background admin webserver thread.

    Inputs (constructor):
      - thread: Thread running the uvicorn server loop.
      - server: Optional uvicorn.Server whose should_exit flag ends the loop.

    Outputs:
      - WebServerHandle instance with stop() and is_running().
    """

    def __init__(self, thread: threading.Thread, server: Any | None = None) -> None:
        self._thread = thread
        self._server = server

    def is_running(self) -> bool:
        return self._thread.is_alive()

    def stop(self, timeout: float = 5.0) -> None:
        """Ask the server loop to exit and wait for the thread."""

        if self._server is not None:
            self._server.should_exit = True
        self._thread.join(timeout=timeout)


def start_webserver(
    pipeline: QueryPipeline,
    config: Dict[str, Any],
    event_buffer: Optional[RingBuffer] = None,
) -> Optional[WebServerHandle]:
    """Start the admin HTTP server with uvicorn in a daemon thread.

    Inputs:
      - pipeline: QueryPipeline exposed over HTTP.
      - config: Full configuration mapping.
      - event_buffer: Optional RingBuffer for the /api/v1/events endpoint.

    Outputs:
      - WebServerHandle when webserver.enabled is true; otherwise None.
    """

    web_cfg = (config.get("webserver") or {}) if isinstance(config, dict) else {}
    if not bool(web_cfg.get("enabled", False)):
        return None

    import uvicorn

    host = str(web_cfg.get("host", "127.0.0.1"))
    port = int(web_cfg.get("port", 5380))

    auth_cfg = web_cfg.get("auth") or {}
    mode = str(auth_cfg.get("mode", "none")).lower()
    if mode == "none" and host in ("0.0.0.0", "::"):
        logger.warning(
            "dnsguard webserver is bound to %s without authentication; consider using auth.mode or restricting host",
            host,
        )

    app = create_app(pipeline, config, event_buffer)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))

    def _runner() -> None:
        try:
            server.run()
        except Exception:  # pragma: no cover
            logger.exception("Unhandled exception in webserver thread")

    thread = threading.Thread(target=_runner, name="dnsguard-webserver", daemon=True)
    thread.start()
    logger.info("Started dnsguard webserver on %s:%d", host, port)
    return WebServerHandle(thread, server=server)
