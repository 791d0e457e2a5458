"""Log tailing over the log bus WebSocket endpoint."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Callable

import aiohttp

from lattice import colors
from lattice.envelope import DecodeError, Envelope, EventType, LogMessage, MessageType
from lattice.errors import NetworkError, NetworkTimeoutError
from lattice.resilience import RetryPolicy
from lattice.urls import sanitize_url

logger = logging.getLogger(__name__)

# Log stream carrying component (not application) output.
LATTICE_DEBUG_APP_ID = "lattice-debug"

TIME_FORMAT = "%d %b %H:%M"
DEFAULT_CONNECT_TIMEOUT = 10.0


def format_log_message(message: LogMessage) -> str:
    """``<time> [<source>|<instance>] <message>`` with ERR lines in red."""
    when = datetime.fromtimestamp(message.timestamp / 1e9)
    text = message.message.decode("utf-8", "replace")
    if message.message_type == MessageType.ERR:
        text = colors.red(text)
    return (
        f"{colors.cyan(when.strftime(TIME_FORMAT))} "
        f"[{colors.yellow(message.source_type)}|{colors.yellow(message.source_instance)}] "
        f"{text}"
    )


def format_raw_message(message: LogMessage) -> str:
    return message.message.decode("utf-8", "replace")


class LogReader:
    """Streams LogMessages for one app id from the log bus.

    One connection per ``tail`` call. The initial connect is retried with
    ``connect_policy``; a dropped connection ends the stream.
    """

    def __init__(
        self,
        log_url: str,
        connect_policy: RetryPolicy | None = None,
        timeout: float | None = None,
    ):
        self.log_url = log_url.rstrip("/")
        self.connect_policy = connect_policy or RetryPolicy()
        self.timeout = timeout
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop: asyncio.Event | None = None

    def stream_url(self, app_guid: str) -> str:
        return f"{self.log_url}/tail/?app={app_guid}"

    async def _connect(self, session: aiohttp.ClientSession, url: str) -> aiohttp.ClientWebSocketResponse:
        try:
            return await session.ws_connect(url)
        except asyncio.TimeoutError as e:
            raise NetworkTimeoutError(f"Timed out connecting to {sanitize_url(url)}") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Error connecting to {sanitize_url(url)}: {str(e) or type(e).__name__}") from e

    async def tail(self, app_guid: str) -> AsyncIterator[LogMessage]:
        """Yield log messages until ``stop`` is called or the stream closes.

        Raises:
            NetworkError: If the connection cannot be established or fails.
        """
        self._loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()
        url = self.stream_url(app_guid)

        timeout = aiohttp.ClientTimeout(total=None, connect=self.timeout or DEFAULT_CONNECT_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            ws = await self.connect_policy.execute_or_raise_last(
                lambda: self._connect(session, url),
                description=f"connect {sanitize_url(url)}",
            )
            logger.debug(f"Tailing logs for {app_guid} from {sanitize_url(url)}")
            try:
                while not self._stop.is_set():
                    msg = await self._next_frame(ws)
                    if msg is None:
                        break
                    if msg.type == aiohttp.WSMsgType.BINARY:
                        message = self._decode(msg.data)
                        if message is not None:
                            yield message
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        raise NetworkError(f"Error reading log stream: {ws.exception()}")
                    elif msg.type in (
                        aiohttp.WSMsgType.CLOSE,
                        aiohttp.WSMsgType.CLOSING,
                        aiohttp.WSMsgType.CLOSED,
                    ):
                        logger.debug(f"Log stream for {app_guid} closed by server")
                        break
            finally:
                await ws.close()

    async def _next_frame(self, ws: aiohttp.ClientWebSocketResponse) -> aiohttp.WSMessage | None:
        """Next frame, or None once stopped."""
        receive = asyncio.ensure_future(ws.receive())
        stopped = asyncio.ensure_future(self._stop.wait())
        done, _ = await asyncio.wait({receive, stopped}, return_when=asyncio.FIRST_COMPLETED)
        if receive in done:
            stopped.cancel()
            return receive.result()
        receive.cancel()
        return None

    def _decode(self, data: bytes) -> LogMessage | None:
        try:
            envelope = Envelope.decode(data)
        except DecodeError as e:
            logger.warning(f"Skipping undecodable envelope ({len(data)} bytes): {e}")
            return None
        if envelope.event_type != EventType.LOG_MESSAGE or envelope.log_message is None:
            return None
        return envelope.log_message

    async def tail_logs(
        self,
        app_guid: str,
        on_log: Callable[[LogMessage], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        """Callback form of ``tail``; transport errors go to ``on_error``."""
        try:
            async for message in self.tail(app_guid):
                on_log(message)
        except NetworkError as e:
            on_error(e)

    def stop(self) -> None:
        """Stop tailing. Safe to call from any thread."""
        if self._loop is None or self._stop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._stop.set)
