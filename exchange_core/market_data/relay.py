"""
Market Data - Relay Client.

============================================================
PURPOSE
============================================================
Keeps the process-wide ticker table fed from one of two
websocket transports:

- Primary: the relay, which multiplexes a single upstream
  connection to many clients and reports its upstream health
  with {"type": "status", "connected": bool} frames
- Fallback: a direct connection to the upstream exchange stream

============================================================
STATE MACHINE
============================================================
DISCONNECTED -> CONNECTING        start()
CONNECTING   -> RELAY_CONNECTED   relay status connected=true
CONNECTING   -> DEGRADED          direct transport connected
DEGRADED     -> RELAY_CONNECTED   relay status connected=true
                                  (direct transport closed)
any          -> CONNECTING        force reconnect / all sources lost
any          -> DISCONNECTED      stop()

Fallback triggers:
- Relay status connected=false   -> open direct immediately
- No status within status_timeout -> open direct
- Relay connect failure / close   -> open direct after the
                                     direct reconnect delay

Every timer is a named task owned by the relay. Arming a timer
that is already pending is a no-op, and opening a transport
that is open or connecting is a no-op. stop() cancels and
awaits all of them.

============================================================
"""

import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import aiohttp

from ..config import RelayConfig
from ..types import Ticker
from .tickers import TickerTable, ticker_from_snapshot, tickers_from_upstream


logger = logging.getLogger(__name__)


Connector = Callable[[str], Awaitable[Any]]

CONNECT_ERRORS = (aiohttp.ClientError, OSError, asyncio.TimeoutError)

CLOSED_TYPES = (
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
)


class RelayState(Enum):
    """Relay client connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    RELAY_CONNECTED = "relay_connected"
    DEGRADED = "degraded"


# Timer names
STATUS_TIMER = "relay_status"
RELAY_RECONNECT_TIMER = "relay_reconnect"
DIRECT_RECONNECT_TIMER = "direct_reconnect"


class MarketDataRelay:
    """Relay client with direct-upstream fallback and health monitor."""

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        table: Optional[TickerTable] = None,
        connect: Optional[Connector] = None,
        clock: Callable[[], float] = time.monotonic,
        on_event: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        """
        Initialize relay client.

        Args:
            config: Relay configuration
            table: Ticker table to feed (shared process-wide)
            connect: Async connect(url) -> websocket; defaults to aiohttp
            clock: Monotonic clock used for staleness checks
            on_event: Callback for non-ticker relay events (alerts)
        """
        self._config = config or RelayConfig()
        self._table = table if table is not None else TickerTable()
        self._connect = connect or self._default_connect
        self._clock = clock
        self._on_event = on_event

        self._state = RelayState.DISCONNECTED
        self._running = False

        self._relay_task: Optional[asyncio.Task] = None
        self._direct_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._relay_ws: Any = None
        self._direct_ws: Any = None
        self._relay_upstream_ok: Optional[bool] = None

        self._timers: Dict[str, asyncio.Task] = {}
        self._closing: Set[asyncio.Task] = set()
        self._last_data_at: Optional[float] = None

        self._session: Optional[aiohttp.ClientSession] = None
        self._state_listeners: List[Callable[[RelayState], None]] = []

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def table(self) -> TickerTable:
        return self._table

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def relay_open(self) -> bool:
        return self._relay_ws is not None

    @property
    def direct_open(self) -> bool:
        return self._direct_ws is not None

    @property
    def pending_timers(self) -> Set[str]:
        return {name for name, task in self._timers.items() if not task.done()}

    @property
    def last_data_at(self) -> Optional[float]:
        return self._last_data_at

    def add_state_listener(self, listener: Callable[[RelayState], None]) -> None:
        self._state_listeners.append(listener)

    def list_tickers(self) -> List[Ticker]:
        return self._table.snapshot()

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self) -> None:
        """Connect to the relay and start the health monitor."""
        if self._running:
            return
        self._running = True
        self._last_data_at = self._clock()
        self._set_state(RelayState.CONNECTING)
        self._open_relay()
        self._health_task = asyncio.create_task(self._health_loop(), name="relay:health")

    async def stop(self) -> None:
        """Close both transports and cancel every timer. Safe to call twice."""
        self._running = False

        tasks = list(self._timers.values()) + list(self._closing)
        tasks += [self._health_task, self._reconnect_task, self._relay_task, self._direct_task]
        self._timers.clear()
        self._closing.clear()
        self._health_task = self._reconnect_task = None
        self._relay_task = self._direct_task = None

        tasks = [task for task in tasks if task is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._close_ws(self._relay_ws)
        await self._close_ws(self._direct_ws)
        self._relay_ws = self._direct_ws = None
        self._relay_upstream_ok = None

        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

        self._set_state(RelayState.DISCONNECTED)

    # --------------------------------------------------------
    # RELAY TRANSPORT
    # --------------------------------------------------------

    def _relay_active(self) -> bool:
        return self._relay_task is not None and not self._relay_task.done()

    def _open_relay(self) -> None:
        if not self._running or self._relay_active():
            return
        self._cancel_timer(RELAY_RECONNECT_TIMER)
        self._relay_task = asyncio.create_task(self._run_relay(), name="relay:relay")

    async def _run_relay(self) -> None:
        url = self._config.relay_url
        try:
            ws = await self._connect(url)
        except CONNECT_ERRORS as e:
            logger.warning(f"Relay connect failed ({url}): {e}")
            self._on_relay_lost()
            return

        self._relay_ws = ws
        self._relay_upstream_ok = None
        logger.info(f"Relay connected: {url}")
        self._arm_timer(STATUS_TIMER, self._config.status_timeout_seconds, self._on_status_timeout)

        try:
            await self._read(ws, self._handle_relay_frame, "relay")
        finally:
            # A forced reconnect may already own the status timer
            if self._relay_ws is ws:
                self._relay_ws = None
                self._cancel_timer(STATUS_TIMER)
            await self._close_ws(ws)

        self._on_relay_lost()

    def _on_relay_lost(self) -> None:
        self._relay_upstream_ok = None
        if not self._running:
            return
        self._arm_timer(RELAY_RECONNECT_TIMER, self._config.relay_reconnect_delay_seconds, self._open_relay)
        if not self._direct_active():
            self._set_state(RelayState.CONNECTING)
            self._arm_timer(DIRECT_RECONNECT_TIMER, self._config.direct_reconnect_delay_seconds, self._open_direct)

    def _on_status_timeout(self) -> None:
        if self._relay_ws is not None and self._relay_upstream_ok is None:
            logger.warning("Relay sent no status frame in time, falling back to direct upstream")
            self._open_direct()

    def _handle_relay_frame(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("type")

        if frame_type == "status":
            self._cancel_timer(STATUS_TIMER)
            connected = bool(frame.get("connected"))
            self._relay_upstream_ok = connected
            if connected:
                if self._direct_active() or DIRECT_RECONNECT_TIMER in self.pending_timers:
                    logger.info("Relay upstream restored, closing direct connection")
                    self._drop_direct()
                self._set_state(RelayState.RELAY_CONNECTED)
            else:
                logger.warning("Relay reports no upstream connection, falling back to direct upstream")
                self._open_direct()

        elif frame_type == "tickers":
            items = frame.get("data") or []
            self._apply([t for t in (ticker_from_snapshot(item) for item in items) if t is not None])

        elif frame_type == "alert_triggered":
            if self._on_event is not None:
                self._on_event(frame)

        elif "stream" in frame and "data" in frame:
            self._apply(tickers_from_upstream(frame))

    # --------------------------------------------------------
    # DIRECT TRANSPORT
    # --------------------------------------------------------

    def _direct_active(self) -> bool:
        return self._direct_task is not None and not self._direct_task.done()

    def _open_direct(self) -> None:
        if not self._running or self._direct_active():
            return
        self._cancel_timer(DIRECT_RECONNECT_TIMER)
        self._direct_task = asyncio.create_task(self._run_direct(), name="relay:direct")

    async def _run_direct(self) -> None:
        url = self._config.upstream_stream_url()
        try:
            ws = await self._connect(url)
        except CONNECT_ERRORS as e:
            logger.warning(f"Direct upstream connect failed: {e}")
            self._on_direct_lost()
            return

        self._direct_ws = ws
        self._last_data_at = self._clock()
        if not self._relay_upstream_ok:
            self._set_state(RelayState.DEGRADED)
        logger.warning("Streaming market data directly from upstream")

        try:
            await self._read(ws, lambda frame: self._apply(tickers_from_upstream(frame)), "direct")
        finally:
            if self._direct_ws is ws:
                self._direct_ws = None
            await self._close_ws(ws)

        self._on_direct_lost()

    def _on_direct_lost(self) -> None:
        if not self._running:
            return
        if self._relay_upstream_ok:
            self._set_state(RelayState.RELAY_CONNECTED)
            return
        self._set_state(RelayState.CONNECTING)
        self._arm_timer(DIRECT_RECONNECT_TIMER, self._config.direct_reconnect_delay_seconds, self._open_direct)

    def _drop_direct(self) -> None:
        self._cancel_timer(DIRECT_RECONNECT_TIMER)
        self._retire(self._direct_task)
        self._direct_task = None

    def _drop_relay(self) -> None:
        self._cancel_timer(STATUS_TIMER)
        self._retire(self._relay_task)
        self._relay_task = None

    # --------------------------------------------------------
    # HEALTH MONITOR
    # --------------------------------------------------------

    async def _health_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._config.health_check_interval_seconds)
            self.check_health()

    def check_health(self) -> bool:
        """
        Force-reconnect when connected but silent for stale_timeout.

        Returns:
            True if a reconnect was forced
        """
        if not self._running or self._state not in (RelayState.RELAY_CONNECTED, RelayState.DEGRADED):
            return False
        if self._last_data_at is None:
            return False

        silent_for = self._clock() - self._last_data_at
        if silent_for < self._config.stale_timeout_seconds:
            return False

        logger.warning(f"No market data for {silent_for:.1f}s while {self._state.value}, reconnecting")
        self._force_reconnect()
        return True

    def _force_reconnect(self) -> None:
        was_degraded = self._state == RelayState.DEGRADED

        for name in (RELAY_RECONNECT_TIMER, DIRECT_RECONNECT_TIMER):
            self._cancel_timer(name)
        retired = [t for t in (self._relay_task, self._direct_task) if t is not None and not t.done()]
        self._drop_relay()
        self._drop_direct()

        self._relay_upstream_ok = None
        self._last_data_at = self._clock()
        self._set_state(RelayState.CONNECTING)

        self._reconnect_task = asyncio.create_task(
            self._reopen(retired, was_degraded), name="relay:reconnect",
        )

    async def _reopen(self, retired: List[asyncio.Task], with_direct: bool) -> None:
        """Open fresh transports once the retired ones have closed their sockets."""
        if retired:
            await asyncio.wait(retired)
        self._open_relay()
        if with_direct:
            self._open_direct()

    # --------------------------------------------------------
    # FRAMES
    # --------------------------------------------------------

    async def _read(self, ws: Any, handler: Callable[[Dict[str, Any]], None], source: str) -> None:
        while True:
            msg = await ws.receive()

            if msg.type == aiohttp.WSMsgType.TEXT:
                self._dispatch(msg.data, handler, source)
            elif msg.type == aiohttp.WSMsgType.BINARY:
                self._dispatch(msg.data.decode("utf-8", "replace"), handler, source)
            elif msg.type in CLOSED_TYPES:
                logger.info(f"{source} connection closed")
                return
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"{source} connection error: {msg.data}")
                return

    def _dispatch(self, raw: str, handler: Callable[[Dict[str, Any]], None], source: str) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.debug(f"Ignoring non-JSON {source} frame")
            return
        if isinstance(frame, dict):
            handler(frame)

    def _apply(self, tickers: List[Ticker]) -> None:
        if not tickers:
            return
        self._last_data_at = self._clock()
        self._table.update_many(tickers)

    # --------------------------------------------------------
    # TIMERS
    # --------------------------------------------------------

    def _arm_timer(self, name: str, delay: float, callback: Callable[[], None]) -> None:
        existing = self._timers.get(name)
        if existing is not None and not existing.done():
            return
        self._timers[name] = asyncio.create_task(self._fire(name, delay, callback), name=f"relay:timer:{name}")

    async def _fire(self, name: str, delay: float, callback: Callable[[], None]) -> None:
        await asyncio.sleep(delay)
        if self._timers.get(name) is asyncio.current_task():
            del self._timers[name]
        if self._running:
            callback()

    def _cancel_timer(self, name: str) -> None:
        task = self._timers.pop(name, None)
        if task is not None and task is not asyncio.current_task():
            self._retire(task)

    def _retire(self, task: Optional[asyncio.Task]) -> None:
        """Cancel a task and keep it until it finishes so stop() can await it."""
        if task is None or task.done():
            return
        task.cancel()
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    def _set_state(self, state: RelayState) -> None:
        if state == self._state:
            return
        logger.info(f"Market data relay: {self._state.value} -> {state.value}")
        self._state = state
        for listener in list(self._state_listeners):
            listener(state)

    async def _default_connect(self, url: str) -> aiohttp.ClientWebSocketResponse:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(url, heartbeat=30)

    @staticmethod
    async def _close_ws(ws: Any) -> None:
        if ws is None or getattr(ws, "closed", False):
            return
        try:
            await ws.close()
        except CONNECT_ERRORS as e:
            logger.debug(f"Error closing websocket: {e}")
