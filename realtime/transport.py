"""
Socket Transport

Callback-style transport capability consumed by the connection controller,
plus an implementation on top of the ``websockets`` asyncio client. Any
full-duplex, text-message transport can stand in for it (tests use an
in-memory one).

Contract:
- ``Transport.open(url, callbacks)`` returns a handle or raises synchronously.
- Callbacks run on the event loop and are never invoked before ``open``
  returns.
- ``on_close(code, reason)`` fires at most once per handle, also when the
  connection failed before opening (code 1006).
"""

import asyncio
import gzip
import logging
import ssl
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from .exceptions import TransportError


logger = logging.getLogger(__name__)

ABNORMAL_CLOSURE = 1006
NORMAL_CLOSURE = 1000


@dataclass
class TransportCallbacks:
    """Event slots filled in by the transport owner."""
    on_open: Callable[[], None]
    on_message: Callable[[str], None]
    on_close: Callable[[int, str], None]
    on_error: Callable[[Exception], None]


class TransportHandle(Protocol):
    def send(self, text: str) -> None:
        ...

    def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        ...


class Transport(Protocol):
    def open(self, url: str, callbacks: TransportCallbacks) -> TransportHandle:
        ...


@dataclass
class WebsocketsOptions:
    """Options forwarded to :func:`websockets.asyncio.client.connect`."""
    headers: Dict[str, str] = field(default_factory=dict)
    subprotocols: List[str] = field(default_factory=list)
    ssl_context: Optional[ssl.SSLContext] = None
    max_size: int = 2**20  # 1MB default
    max_queue: int = 32
    per_message_deflate: bool = True
    # Protocol-level pings; liveness is normally handled by the heartbeat
    ping_interval: Optional[float] = None
    close_timeout: float = 10.0
    # Decode gzip-compressed binary frames
    decompress_binary: bool = True


class WebsocketsConnection:
    """
    One ``websockets`` connection driven by a background task.

    Received frames are pushed to ``on_message``; outgoing text goes through
    an unbounded queue drained by a send loop so that :meth:`send` stays
    synchronous.
    """

    def __init__(self, url: str, callbacks: TransportCallbacks, options: WebsocketsOptions):
        self.url = url
        self.options = options
        self._callbacks = callbacks
        self._websocket: Optional[ClientConnection] = None
        self._outgoing: asyncio.Queue = asyncio.Queue()
        self._run_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._closing = False
        self._close_fired = False

    def start(self) -> None:
        """Begin connecting; requires a running event loop."""
        self._run_task = asyncio.get_running_loop().create_task(self._run())

    @property
    def is_open(self) -> bool:
        return self._websocket is not None and not (self._closing or self._close_fired)

    def send(self, text: str) -> None:
        if not self.is_open:
            raise TransportError("WebSocket is not open")
        self._outgoing.put_nowait(text)

    def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        if self._closing:
            return
        self._closing = True

        if self._websocket is None:
            # Still opening: abandon the handshake
            if self._run_task is not None and not self._run_task.done():
                self._run_task.add_done_callback(lambda _: self._fire_close(code, reason))
                self._run_task.cancel()
            return

        self._close_task = asyncio.get_running_loop().create_task(
            self._websocket.close(code=code, reason=reason)
        )

    # Private methods

    def _connect_kwargs(self) -> dict:
        connect_kwargs = {
            'open_timeout': None,  # enforced by the connection controller
            'ping_interval': self.options.ping_interval,
            'close_timeout': self.options.close_timeout,
            'max_size': self.options.max_size,
            'max_queue': self.options.max_queue,
            'compression': 'deflate' if self.options.per_message_deflate else None,
        }

        if self.options.headers:
            connect_kwargs['additional_headers'] = self.options.headers

        if self.options.subprotocols:
            connect_kwargs['subprotocols'] = self.options.subprotocols

        if self.options.ssl_context:
            connect_kwargs['ssl'] = self.options.ssl_context

        return connect_kwargs

    async def _open_websocket(self) -> ClientConnection:
        return await connect(self.url, **self._connect_kwargs())

    def _close_abandoned(self, opening: asyncio.Task) -> None:
        if opening.cancelled() or opening.exception() is not None:
            return
        logger.debug(f"Closing connection to {self.url} opened after close()")
        self._close_task = asyncio.get_running_loop().create_task(opening.result().close())

    async def _run(self) -> None:
        opening = asyncio.get_running_loop().create_task(self._open_websocket())
        try:
            self._websocket = await asyncio.shield(opening)
        except asyncio.CancelledError:
            # close() during the handshake; the socket may have opened regardless
            opening.cancel()
            opening.add_done_callback(self._close_abandoned)
            raise
        except Exception as e:
            logger.warning(f"WebSocket connection to {self.url} failed: {e}")
            self._callbacks.on_error(e)
            self._fire_close(ABNORMAL_CLOSURE, str(e))
            return

        self._send_task = asyncio.get_running_loop().create_task(self._send_loop())
        self._callbacks.on_open()

        try:
            async for message in self._websocket:
                self._callbacks.on_message(self._decode(message))
        except ConnectionClosed:
            pass
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Receive error: {e}")
            self._callbacks.on_error(e)
        finally:
            if self._send_task is not None:
                self._send_task.cancel()
            code = self._websocket.close_code
            reason = self._websocket.close_reason or ""
            self._fire_close(code if code is not None else ABNORMAL_CLOSURE, reason)

    async def _send_loop(self) -> None:
        while True:
            text = await self._outgoing.get()
            try:
                await self._websocket.send(text)
            except ConnectionClosed:
                logger.info("WebSocket connection closed during send")
                break
            except Exception as e:
                logger.error(f"Send error: {e}")
                self._callbacks.on_error(e)

    def _decode(self, message) -> str:
        if isinstance(message, str):
            return message

        if self.options.decompress_binary and message.startswith(b'\x1f\x8b'):  # GZIP magic number
            try:
                message = gzip.decompress(message)
            except (OSError, EOFError) as e:
                logger.warning(f"Message decompression failed: {e}")

        return message.decode('utf-8', errors='replace')

    def _fire_close(self, code: int, reason: str) -> None:
        if self._close_fired:
            return
        self._close_fired = True
        self._callbacks.on_close(code, reason)


class WebsocketsTransport:
    """:class:`Transport` backed by the ``websockets`` library."""

    def __init__(self, options: Optional[WebsocketsOptions] = None):
        self.options = options or WebsocketsOptions()

    def open(self, url: str, callbacks: TransportCallbacks) -> WebsocketsConnection:
        if not url.startswith(("ws://", "wss://")):
            raise ValueError(f"Unsupported WebSocket URL: {url!r}")
        handle = WebsocketsConnection(url, callbacks, self.options)
        handle.start()
        return handle
