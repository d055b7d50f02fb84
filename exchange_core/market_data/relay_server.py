"""
Market Data - Relay Server.

============================================================
PURPOSE
============================================================
Process-local websocket multiplexer. Holds ONE upstream
connection to the exchange stream and fans the ticker table
out to any number of clients.

Frames sent to clients:
- {"type": "status", "connected": bool}   on connect and on
                                          every upstream change
- {"type": "tickers", "data": [...]}      snapshot on connect,
                                          then every broadcast
                                          interval
- {"type": "alert_triggered", "data": {...}}  via broadcast_alert()

============================================================
ROUTES
============================================================
GET <path>     websocket endpoint (default /ws/market)
GET /health    upstream status and client count

============================================================
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import aiohttp
from aiohttp import web

from ..config import RelayConfig
from .tickers import TickerTable, tickers_from_upstream


logger = logging.getLogger(__name__)


Connector = Callable[[str], Awaitable[Any]]


def json_response(data: Any, status: int = 200) -> web.Response:
    """Create JSON response."""
    return web.Response(
        text=json.dumps(data),
        status=status,
        content_type="application/json",
    )


class RelayServer:
    """Single-upstream, many-client ticker relay."""

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        table: Optional[TickerTable] = None,
        connect: Optional[Connector] = None,
    ):
        self._config = config or RelayConfig()
        self._table = table if table is not None else TickerTable()
        self._connect = connect or self._default_connect

        self._clients: Set[web.WebSocketResponse] = set()
        self._upstream_connected = False
        self._upstream_task: Optional[asyncio.Task] = None
        self._broadcast_task: Optional[asyncio.Task] = None
        self._session: Optional[aiohttp.ClientSession] = None

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def table(self) -> TickerTable:
        return self._table

    @property
    def upstream_connected(self) -> bool:
        return self._upstream_connected

    @property
    def client_count(self) -> int:
        return len(self._clients)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self) -> None:
        if self._upstream_task is not None:
            return
        logger.info(f"Relay server starting upstream: {self._config.upstream_stream_url()}")
        self._upstream_task = asyncio.create_task(self._upstream_loop(), name="relay-server:upstream")
        self._broadcast_task = asyncio.create_task(self._broadcast_loop(), name="relay-server:broadcast")

    async def stop(self) -> None:
        tasks = [t for t in (self._upstream_task, self._broadcast_task) if t is not None]
        self._upstream_task = self._broadcast_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for ws in list(self._clients):
            await ws.close()
        self._clients.clear()

        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        self._upstream_connected = False
        logger.info("Relay server stopped")

    def create_app(self) -> web.Application:
        """Create the aiohttp application with lifecycle hooks attached."""
        app = web.Application()
        app.router.add_get(self._config.path, self.handle_client)
        app.router.add_get("/health", self.health)

        async def on_startup(_app: web.Application) -> None:
            await self.start()

        async def on_cleanup(_app: web.Application) -> None:
            await self.stop()

        app.on_startup.append(on_startup)
        app.on_cleanup.append(on_cleanup)
        return app

    def run(self) -> None:
        """Serve until interrupted."""
        logger.info(f"Relay listening on {self._config.host}:{self._config.port}{self._config.path}")
        web.run_app(self.create_app(), host=self._config.host, port=self._config.port)

    # --------------------------------------------------------
    # HANDLERS
    # --------------------------------------------------------

    async def handle_client(self, request: web.Request) -> web.WebSocketResponse:
        """GET <path> - websocket client session."""
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        self._clients.add(ws)
        logger.info(f"Relay client connected ({len(self._clients)} total)")

        try:
            await ws.send_str(json.dumps(self._status_frame()))
            tickers = self._tickers_frame()
            if tickers["data"]:
                await ws.send_str(json.dumps(tickers))

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"Relay client error: {ws.exception()}")
                    break
        finally:
            self._clients.discard(ws)
            logger.info(f"Relay client disconnected ({len(self._clients)} total)")

        return ws

    async def health(self, request: web.Request) -> web.Response:
        """GET /health"""
        return json_response({
            "status": "ok" if self._upstream_connected else "degraded",
            "upstream_connected": self._upstream_connected,
            "clients": len(self._clients),
            "symbols": len(self._table),
        })

    # --------------------------------------------------------
    # BROADCAST
    # --------------------------------------------------------

    async def broadcast(self, frame: Dict[str, Any]) -> int:
        """
        Send a frame to every connected client.

        Returns:
            Number of clients the frame was delivered to
        """
        if not self._clients:
            return 0
        text = json.dumps(frame)
        delivered = 0
        for ws in list(self._clients):
            if ws.closed:
                self._clients.discard(ws)
                continue
            try:
                await ws.send_str(text)
                delivered += 1
            except (ConnectionResetError, RuntimeError) as e:
                logger.warning(f"Dropping relay client: {e}")
                self._clients.discard(ws)
        return delivered

    async def broadcast_alert(self, alert: Dict[str, Any]) -> int:
        return await self.broadcast({"type": "alert_triggered", "data": alert})

    def _status_frame(self) -> Dict[str, Any]:
        return {"type": "status", "connected": self._upstream_connected}

    def _tickers_frame(self) -> Dict[str, Any]:
        return {"type": "tickers", "data": [t.to_dict() for t in self._table.snapshot()]}

    async def _broadcast_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.broadcast_interval_seconds)
            frame = self._tickers_frame()
            if frame["data"]:
                await self.broadcast(frame)

    # --------------------------------------------------------
    # UPSTREAM
    # --------------------------------------------------------

    async def _set_upstream(self, connected: bool) -> None:
        if connected == self._upstream_connected:
            return
        self._upstream_connected = connected
        logger.info(f"Relay upstream {'connected' if connected else 'disconnected'}")
        await self.broadcast(self._status_frame())

    async def _upstream_loop(self) -> None:
        url = self._config.upstream_stream_url()
        while True:
            try:
                ws = await self._connect(url)
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                logger.error(f"Relay upstream connect failed: {e}")
                await self._set_upstream(False)
                await asyncio.sleep(self._config.upstream_failure_delay_seconds)
                continue

            await self._set_upstream(True)
            try:
                await self._pump(ws)
            finally:
                if not ws.closed:
                    await ws.close()
            await self._set_upstream(False)
            await asyncio.sleep(self._config.upstream_reconnect_delay_seconds)

    async def _pump(self, ws: Any) -> None:
        while True:
            msg = await ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = json.loads(msg.data)
                except ValueError:
                    continue
                self._table.update_many(tickers_from_upstream(frame))
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"Relay upstream error: {msg.data}")
                return
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                logger.warning("Relay upstream closed")
                return

    async def _default_connect(self, url: str) -> aiohttp.ClientWebSocketResponse:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(url, heartbeat=30)
