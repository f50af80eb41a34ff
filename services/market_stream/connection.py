# Reconnecting stream connection that multiplexes one websocket to many listeners

import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Optional

import aiohttp

from core.config.settings import Settings
from core.logging import get_market_data_logger_safe, get_error_logger_safe
from core.utils.exceptions import FrameParseError, StreamTransportError

from .history import HistoryRequestTracker
from .models import (
    BarCallback,
    CandleSnapshot,
    CandleUpdate,
    ConnectionState,
    ConnectionStats,
    HistoryError,
    HistorySuccess,
    StreamSubscription,
)
from .protocol import decode_frame, encode_history_request, encode_subscribe
from .registry import SubscriptionRegistry
from .symbols import normalize_symbol

NOT_CONNECTED_DURING_EXECUTION = "WebSocket not connected during execution"

# Returns an open websocket: awaitable send_str(), close(), async iteration of aiohttp WSMessage
SocketConnector = Callable[[str], Awaitable[Any]]
QueuedRequest = Callable[[], Awaitable[None]]


class StreamConnection:
    """
    Owns the single duplex market-data stream.

    Reconnects after a fixed delay forever, replays the union of subscribed
    symbols on every open, and holds requests issued while disconnected in a
    FIFO queue that is drained right after the replay.
    """

    def __init__(self, settings: Settings, connector: Optional[SocketConnector] = None):
        self.settings = settings
        self.url = settings.stream.url
        self.reconnect_delay = settings.stream.reconnect_delay_seconds
        self.history_count = settings.stream.history_count

        self.registry = SubscriptionRegistry()
        self.history = HistoryRequestTracker()
        self.stats = ConnectionStats()

        self._connector = connector
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws = None
        self._state = ConnectionState.DISCONNECTED
        self._queue: Deque[QueuedRequest] = deque()
        self._draining = False
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._opened = asyncio.Event()

        self.logger = get_market_data_logger_safe("market_stream")
        self.error_logger = get_error_logger_safe("market_stream_errors")

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == ConnectionState.OPEN and self._ws is not None

    @property
    def pending_requests(self) -> int:
        return len(self._queue)

    async def connect(self) -> None:
        """Start the connect/reconnect loop in the background. Idempotent."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="market-stream")
        self.logger.info("🚀 Starting market stream", url=self.url)

    async def close(self) -> None:
        """Stop reconnecting and release the socket and HTTP session."""
        self._running = False
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                self.logger.debug("Error closing websocket", error=str(e))
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        self._set_state(ConnectionState.DISCONNECTED)
        self.logger.info("🛑 Market stream stopped")

    async def wait_until_open(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._opened.wait(), timeout)

    async def subscribe(self, symbol: str, resolution: str, callback: BarCallback) -> StreamSubscription:
        """Register a live-bar listener; returns the token used to unsubscribe."""
        subscription = self.registry.add(symbol, resolution, callback)
        if not subscription.normalized_symbol:
            return subscription

        message = encode_subscribe([subscription.normalized_symbol])
        if self._draining:
            # Consolidated replay already went out; keep order behind queued requests
            self._queue.append(lambda: self._send(message))
        elif self.is_open:
            try:
                await self._send(message)
            except StreamTransportError as e:
                # Replayed by the consolidated subscribe on the next open
                self.logger.debug("Immediate subscribe not sent", symbol=symbol, error=e.message)
        return subscription

    def unsubscribe(self, subscription: StreamSubscription) -> bool:
        """Drop the listener locally; the server is not told."""
        return self.registry.remove(subscription)

    async def get_history(self, symbol: str, timeframe: str, count: Optional[int],
                          on_success: HistorySuccess, on_error: HistoryError) -> None:
        """Request a bar snapshot; deferred until the next open when disconnected."""
        count = count or self.history_count

        async def run_request() -> None:
            if not self.is_open:
                on_error(NOT_CONNECTED_DURING_EXECUTION)
                return
            normalized = normalize_symbol(symbol)
            key = self.history.register(normalized, timeframe, on_success, on_error)
            try:
                await self._send(encode_history_request(normalized, timeframe, count))
            except StreamTransportError as e:
                self.history.discard(key)
                on_error(e.message)

        if self.is_open and not self._draining:
            await run_request()
        else:
            self._queue.append(run_request)

    async def _run(self) -> None:
        while self._running:
            self._set_state(ConnectionState.CONNECTING)
            self.stats.connection_attempts += 1
            try:
                ws = await self._open_socket()
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                self.logger.warning(
                    "Stream connect failed",
                    url=self.url,
                    attempt=self.stats.connection_attempts,
                    error=str(e),
                )
            else:
                self._ws = ws
                self.stats.successful_connections += 1
                self.stats.last_connection_time = datetime.now(timezone.utc)
                self._set_state(ConnectionState.OPEN)
                self.logger.info("✅ Stream connected", url=self.url)
                try:
                    await self._on_open()
                    await self._read_loop(ws)
                except StreamTransportError as e:
                    self.logger.warning("Stream transport error", url=self.url, error=e.message)
                finally:
                    self._ws = None
                    self._opened.clear()
                    self.stats.disconnections += 1
                    self.stats.last_disconnection_time = datetime.now(timezone.utc)
                    self.logger.warning("⚠️ Stream closed", url=self.url)

            self._set_state(ConnectionState.DISCONNECTED)
            if not self._running:
                break
            await asyncio.sleep(self.reconnect_delay)

    async def _open_socket(self):
        if self._connector is not None:
            return await self._connector(self.url)
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(self.url, heartbeat=self.settings.stream.heartbeat_seconds)

    async def _on_open(self) -> None:
        """Replay subscriptions as one message, then drain queued requests in order."""
        symbols = self.registry.symbols()
        if symbols:
            await self._send(encode_subscribe(symbols))

        self._draining = True
        try:
            while self._queue:
                request = self._queue.popleft()
                await request()
        finally:
            self._draining = False
        self._opened.set()

    async def _read_loop(self, ws) -> None:
        async for msg in ws:
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                self._handle_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise StreamTransportError(f"Websocket error: {ws.exception()}", url=self.url)
            else:
                break

    def _handle_frame(self, raw) -> None:
        self.stats.frames_received += 1
        try:
            frame = decode_frame(raw)
        except FrameParseError as e:
            self.stats.frames_dropped += 1
            self.logger.debug("Dropped malformed frame", error=e.message)
            return

        if isinstance(frame, CandleSnapshot):
            self.history.resolve(frame)
        elif isinstance(frame, CandleUpdate):
            self.registry.dispatch(frame)

    async def _send(self, message: str) -> None:
        ws = self._ws
        if ws is None:
            raise StreamTransportError("Websocket is not open", url=self.url)
        try:
            await ws.send_str(message)
        except (ConnectionResetError, aiohttp.ClientError, RuntimeError) as e:
            raise StreamTransportError(f"Send failed: {e}", url=self.url)

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        self.stats.current_status = state
