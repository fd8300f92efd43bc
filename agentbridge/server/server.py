"""HTTP + SSE transport for the session bridge.

Endpoints:
    POST /rpc      JSON-RPC 2.0 requests (``session/*`` methods)
    GET  /events   Server-sent events for one client
    GET  /health   Liveness and runtime info

Clients identify themselves with an ``X-Client-ID`` header (or a
``client_id`` query parameter); the same id ties their RPC calls to
their event stream.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from agentbridge.adapters.event_hub import EventHub
from agentbridge.engine.config import BridgeConfig
from agentbridge.engine.errors import BridgeError, InvalidParamsError
from agentbridge.engine.runtime import SessionRuntime

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
PARSE_ERROR = -32700
INVALID_REQUEST = -32600


def _rpc_error(req_id: Any, code: int, message: str, data: Any = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": req_id, "error": error}


class BridgeServer:
    """Thin HTTP adapter around SessionRuntime and EventHub.

    All session state lives in the runtime; this class only handles
    routing, JSON-RPC framing and SSE fan-out.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        runtime: SessionRuntime | None = None,
        hub: EventHub | None = None,
    ) -> None:
        self._config = config or BridgeConfig()
        self._host = self._config.host
        self._port = self._config.port
        self._hub = hub or EventHub(maxsize=self._config.sse_queue_size)
        self._runtime = runtime or SessionRuntime(self._config, self._hub)
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def hub(self) -> EventHub:
        return self._hub

    @property
    def runtime(self) -> SessionRuntime:
        return self._runtime

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-bridge-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        r.add_post("/rpc", self._handle_rpc)

    @staticmethod
    def _client_id(request: web.Request) -> str:
        return (
            request.headers.get("X-Client-ID")
            or request.query.get("client_id")
            or ""
        ).strip()

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        registry = self._runtime.registry
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "clients": len(self._hub.client_ids),
            "sessions": len(registry.list_sessions()) if registry is not None else 0,
            "methods": self._runtime.methods,
        })

    async def _handle_rpc(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response(_rpc_error(None, PARSE_ERROR, "Parse error"))
        client_id = self._client_id(request) or f"anon-{request.get('req_id', 'unknown')}"

        if isinstance(body, list):
            return web.json_response(
                _rpc_error(None, INVALID_REQUEST, "Batch requests are not supported")
            )

        reply = await self._call(body, client_id)
        if reply is None:
            return web.Response(status=204)
        return web.json_response(reply)

    async def _call(self, message: Any, client_id: str) -> dict[str, Any] | None:
        """Run one JSON-RPC request; None for notifications."""
        if not isinstance(message, dict) or not isinstance(message.get("method"), str):
            req_id = message.get("id") if isinstance(message, dict) else None
            return _rpc_error(req_id, INVALID_REQUEST, "Invalid Request")
        is_notification = "id" not in message
        req_id = message.get("id")
        method = message["method"]
        try:
            result = await self._runtime.dispatch(method, message.get("params"), client_id)
        except BridgeError as exc:
            logger.info(
                "RPC error method=%s client=%s code=%d message=%s",
                method, client_id, exc.code, exc.message,
            )
            if is_notification:
                return None
            return {"jsonrpc": JSONRPC_VERSION, "id": req_id, "error": exc.to_dict()}
        if is_notification:
            return None
        return {"jsonrpc": JSONRPC_VERSION, "id": req_id, "result": result}

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        client_id = self._client_id(request)
        if not client_id:
            err = InvalidParamsError("client_id is required")
            return web.json_response({"error": err.to_dict()}, status=400)
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)
        logger.info("SSE client connected client=%s req=%s", client_id, request.get("req_id", "unknown"))

        try:
            await response.write(
                f"event: connected\ndata: {json.dumps({'client_id': client_id})}\n\n".encode()
            )
            async for msg in self._hub.consume(client_id, timeout=self._config.sse_keepalive_seconds):
                try:
                    if msg is None:
                        await response.write(b": keepalive\n\n")
                        continue
                    data = json.dumps(msg["data"])
                    await response.write(f"event: {msg['event']}\ndata: {data}\n\n".encode())
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            await self._runtime.disconnect(client_id)
            self._hub.disconnect(client_id)
            logger.info("SSE client disconnected client=%s req=%s", client_id, request.get("req_id", "unknown"))
        return response

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("Bridge server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("Bridge server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._runtime.shutdown()
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None
