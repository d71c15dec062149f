# Panelplay
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
PlayerService: shared plumbing for the Panelplay player services.

A service owns one SessionCoordinator, the StateReconciler its sessions feed,
and an aiohttp app that is the seam to whatever UI draws the panel: HTTP
endpoints for commands and a WebSocket feed for state pushes.

Subclass contract:

    class MyService(PlayerService):
        id   = "radio"
        name = "Radio"
        port = 8781

        def add_routes(self, app): ...      # extra endpoints
        async def on_start(self): ...        # after HTTP server is up
        async def on_stop(self): ...         # during shutdown

Built-in routes:
    GET  /ws               state_update + session_event push
    POST /player/toggle    toggle pause on the current session
    POST /player/stop      stop the current session
    POST /player/volume    {"volume": 0..100}
    GET  /player/state     current PlaybackState
    GET  /player/status    service + session status
    GET  /settings         exposed settings
    POST /settings         {key: value, ...}
"""

import asyncio
import json
import logging
import signal

from aiohttp import web

from .coordinator import SessionCoordinator
from .notify import Notifier
from .reconciler import StateReconciler
from .retry import RetryPolicy
from .session import EVENTS, PlayerSession
from .settings import Settings
from .watchdog import sd_notify, watchdog_loop

log = logging.getLogger(__name__)


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response()
    else:
        resp = await handler(request)
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp


async def read_json(request: web.Request):
    """Request body as a dict, or None if it isn't a JSON object."""
    try:
        data = await request.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def is_percent(value) -> bool:
    # bool is an int subclass, true/false is not a volume
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 100


def invalid_json() -> web.Response:
    return web.json_response({"error": "invalid json"}, status=400)


class PlayerService:
    # ── Subclass must set these ──
    id: str = ""
    name: str = ""
    port: int = 8780
    # keys the /settings endpoint exposes
    setting_keys: tuple = ()

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self.reconciler = StateReconciler()
        self.notifier = Notifier()
        self.retry = RetryPolicy()
        self.coordinator = SessionCoordinator()
        self.running = False
        self._ws_clients: set[web.WebSocketResponse] = set()
        self._runner: web.AppRunner | None = None
        self._pending: set[asyncio.Task] = set()
        self._session_tokens: list = []
        self._watchdog: asyncio.Task | None = None
        self._state_token = self.reconciler.subscribe(self._on_state_change)

    @property
    def session(self) -> PlayerSession | None:
        return self.coordinator.current

    def session_kwargs(self) -> dict:
        """Collaborators every session of this service shares."""
        return {"reconciler": self.reconciler, "retry": self.retry, "notifier": self.notifier}

    # ── Session events -> WebSocket ──

    def watch_session(self, session: PlayerSession):
        """Forward ``session``'s events to WebSocket clients."""
        self.unwatch_session()
        for event in EVENTS:
            self._session_tokens.append(session.connect(
                event, lambda *args, event=event: self._on_session_event(event, args)))

    def unwatch_session(self):
        tokens, self._session_tokens = self._session_tokens, []
        for token in tokens:
            token.release()

    def _on_session_event(self, event: str, args: tuple):
        data = {}
        if event == "session_started":
            data = args[0].to_dict()
        elif event == "session_failed":
            data = {"reason": args[0]}
        elif event == "play_state_changed":
            data = {"paused": args[0]}
        self._schedule(self.broadcast("session_event", data, reason=event))

    def _on_state_change(self, state):
        self._schedule(self.broadcast("state_update", state.to_dict(), reason="reconcile"))

    def _schedule(self, coro):
        if not self._ws_clients:
            coro.close()
            return
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # ── WebSocket broadcasting ──

    async def broadcast(self, msg_type: str, data: dict, reason: str = "update"):
        """Push a message to all connected WebSocket clients."""
        if not self._ws_clients:
            return

        message = json.dumps({"type": msg_type, "reason": reason, "data": data})

        disconnected = set()
        for ws in list(self._ws_clients):
            try:
                await ws.send_str(message)
            except Exception:
                disconnected.add(ws)

        self._ws_clients -= disconnected
        log.debug("Broadcast %s to %d clients: %s", msg_type, len(self._ws_clients), reason)

    # ── HTTP + WebSocket server ──

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware])

        app.router.add_get("/ws", self._handle_ws)

        app.router.add_post("/player/toggle", self._handle_toggle)
        app.router.add_post("/player/stop", self._handle_stop)
        app.router.add_post("/player/volume", self._handle_volume)
        app.router.add_get("/player/state", self._handle_state)
        app.router.add_get("/player/status", self._handle_status)
        app.router.add_get("/settings", self._handle_settings_get)
        app.router.add_post("/settings", self._handle_settings_set)

        # Let subclass add extra routes
        self.add_routes(app)
        return app

    async def start(self):
        """Build the app, start listening, then run on_start()."""
        self.running = True
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, "127.0.0.1", self.port)
        await site.start()
        log.info("%s: HTTP + WebSocket on port %d", self.name, self.port)

        await self.on_start()

        # watchdog after on_start so the first STATUS= is meaningful
        self._watchdog = asyncio.create_task(watchdog_loop(
            status=lambda: f"{self.name}: {self.reconciler.state.label}",
            healthy=lambda: self.running))

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Stop sessions and close every client."""
        self.running = False
        sd_notify("STOPPING=1")
        await self.on_stop()

        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

        self.unwatch_session()
        await self.coordinator.dispose()
        self.reconciler.unsubscribe(self._state_token)

        for task in list(self._pending):
            task.cancel()

        for ws in list(self._ws_clients):
            await ws.close()
        self._ws_clients.clear()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── WebSocket handler ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        self._ws_clients.add(ws)
        log.info("WebSocket client connected (%d total)", len(self._ws_clients))

        try:
            await ws.send_json({"type": "state_update", "reason": "client_connect",
                                "data": self.reconciler.state.to_dict()})
            # push-only, client messages are ignored
            async for _ in ws:
                pass
        finally:
            self._ws_clients.discard(ws)
            log.info("WebSocket client disconnected (%d remaining)", len(self._ws_clients))

        return ws

    # ── HTTP route handlers ──

    async def _handle_toggle(self, request: web.Request) -> web.Response:
        return web.json_response(await self.toggle())

    async def _handle_stop(self, request: web.Request) -> web.Response:
        await self.coordinator.stop()
        return web.json_response({"status": "ok"})

    async def _handle_volume(self, request: web.Request) -> web.Response:
        data = await read_json(request)
        if data is None:
            return invalid_json()
        volume = data.get("volume")
        if volume is None or isinstance(volume, bool) or not isinstance(volume, (int, float)):
            return web.json_response({"error": "missing or invalid 'volume'"}, status=400)
        level = max(0, min(100, int(volume)))
        await self.set_volume(level)
        return web.json_response({"status": "ok", "volume": level})

    async def _handle_state(self, request: web.Request) -> web.Response:
        return web.json_response(self.reconciler.state.to_dict())

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.get_status())

    async def _handle_settings_get(self, request: web.Request) -> web.Response:
        return web.json_response({key: self.settings.get(key) for key in self.setting_keys})

    async def _handle_settings_set(self, request: web.Request) -> web.Response:
        data = await read_json(request)
        if data is None:
            return invalid_json()
        unknown = [key for key in data if key not in self.setting_keys]
        if unknown:
            return web.json_response({"error": f"unknown settings: {', '.join(unknown)}"},
                                     status=400)
        # all or nothing: one bad value rejects the whole request
        for key, value in data.items():
            problem = self.check_setting(key, value)
            if problem:
                return web.json_response({"error": problem, "key": key}, status=400)
        changed = [key for key, value in data.items() if self.settings.set(key, value)]
        return web.json_response({"status": "ok", "changed": changed})

    def get_status(self) -> dict:
        """Override in subclass for richer data."""
        session = self.session
        return {
            "service": self.id,
            "name": self.name,
            "ws_clients": len(self._ws_clients),
            "session": session.get_status() if session else None,
        }

    async def toggle(self) -> dict:
        """Toggle pause on the current session.  Override for idle fallbacks."""
        session = self.session
        if session is None or not session.ready:
            return {"status": "idle"}
        paused = await session.toggle_pause()
        if paused is None:
            return {"status": "dropped"}
        return {"status": "ok", "paused": paused}

    async def set_volume(self, level: int):
        if self.session is not None:
            await self.session.set_volume(level)

    # ── Subclass hooks ──

    def check_setting(self, key: str, value) -> str | None:
        """Why ``value`` can't be stored under ``key``, or None if it can."""
        return None

    async def on_start(self):
        """Called after HTTP server is up."""

    async def on_stop(self):
        """Called during shutdown."""

    def add_routes(self, app: web.Application):
        """Add extra aiohttp routes to the app."""
