"""UDP event emitter and line-oriented log sender for the log bus agent.

The emitter sends one protobuf Envelope per datagram to the local agent
(metron). Heartbeat requests sent back by the agent on the same socket are
answered with the emitter's counters.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from typing import BinaryIO, Callable

from lattice.envelope import (
    ControlMessage,
    DecodeError,
    Envelope,
    EventType,
    Heartbeat,
    LogMessage,
    MessageType,
    ValueMetric,
    wrap_log_message,
)

logger = logging.getLogger(__name__)

MAX_LINE_BYTES = 64 * 1024
DROPPED_LINE_MESSAGE = "Dropped log message: message too long (>64K without a newline)"
TOTAL_MESSAGES_METRIC = "logSenderTotalMessagesRead"
STATS_INTERVAL = 10.0
# Large enough for any control message the agent sends.
_RECV_BUFFER = 65535


def parse_destination(destination: str) -> tuple[str, int]:
    """Split ``host:port``.

    Raises:
        ValueError: If the port is missing or not a number.
    """
    host, sep, port = destination.rpartition(":")
    if not sep or not host:
        raise ValueError(f"invalid destination {destination!r}: expected host:port")
    return host, int(port)


def make_origin(*origins: str) -> str:
    return "/".join(origins)


class UdpEmitter:
    """Sends envelopes over UDP and answers heartbeat requests.

    Counters follow the agent's heartbeat semantics: ``received_count`` counts
    events handed to ``emit``, ``sent_count`` successful writes and
    ``error_count`` failed writes. Heartbeat replies are not counted.
    """

    def __init__(self, destination: str, origin: str):
        self.address = parse_destination(destination)
        self.origin = origin
        self.sent_count = 0
        self.received_count = 0
        self.error_count = 0
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._responder: threading.Thread | None = None
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        # Bind now so heartbeat requests can reach us before the first emit.
        self._socket.bind(("", 0))

    @property
    def local_address(self) -> tuple[str, int]:
        return self._socket.getsockname()

    def _send(self, data: bytes) -> None:
        self._socket.sendto(data, self.address)

    def emit_envelope(self, envelope: Envelope) -> bool:
        """Encode and send one envelope.

        Returns:
            True if the datagram was written.
        """
        with self._lock:
            self.received_count += 1
        data = envelope.encode()
        try:
            self._send(data)
        except OSError as e:
            with self._lock:
                self.error_count += 1
            logger.warning(f"Failed to emit {envelope.event_type.name} event: {e}")
            return False
        with self._lock:
            self.sent_count += 1
        logger.debug(f"Emitted {envelope.event_type.name} envelope ({len(data)} bytes)")
        return True

    def emit_log_message(self, message: LogMessage) -> bool:
        return self.emit_envelope(wrap_log_message(self.origin, message))

    def emit_value_metric(self, metric: ValueMetric) -> bool:
        return self.emit_envelope(
            Envelope(
                origin=self.origin,
                event_type=EventType.VALUE_METRIC,
                timestamp=time.time_ns(),
                value_metric=metric,
            )
        )

    def heartbeat(self, control: ControlMessage) -> Envelope:
        """Build the reply to a heartbeat request."""
        with self._lock:
            event = Heartbeat(
                sent_count=self.sent_count,
                received_count=self.received_count,
                error_count=self.error_count,
                control_message_identifier=control.identifier,
            )
        return Envelope(
            origin=self.origin,
            event_type=EventType.HEARTBEAT,
            timestamp=time.time_ns(),
            heartbeat=event,
        )

    def respond(self, data: bytes, reply_to: tuple[str, int]) -> None:
        """Answer one inbound control datagram."""
        try:
            control = ControlMessage.decode(data)
        except DecodeError as e:
            logger.warning(f"Ignoring undecodable control message from {reply_to}: {e}")
            return
        try:
            self._socket.sendto(self.heartbeat(control).encode(), reply_to)
        except OSError as e:
            logger.warning(f"Problem while emitting heartbeat data: {e}")

    def start_heartbeat_responder(self) -> threading.Thread:
        """Listen for control messages on the emitter socket in a daemon thread."""
        if self._responder is not None:
            return self._responder

        def listen() -> None:
            while not self._closed.is_set():
                try:
                    data, sender = self._socket.recvfrom(_RECV_BUFFER)
                except OSError:
                    # Socket closed underneath us.
                    return
                self.respond(data, sender)

        self._responder = threading.Thread(target=listen, name="heartbeat-responder", daemon=True)
        self._responder.start()
        return self._responder

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            # UDP sockets that never connected report ENOTCONN here.
            pass
        self._socket.close()


# =============================================================================
# Line framing
# =============================================================================


def iter_lines(reader: BinaryIO, max_line: int = MAX_LINE_BYTES):
    """Split a byte stream on ``\\n``.

    Yields each line without its terminator (and without a trailing ``\\r``).
    A run of ``max_line`` bytes with no newline yields ``None`` in its place;
    reading resumes with the byte after the dropped run.
    """
    while True:
        chunk = reader.readline(max_line)
        if not chunk:
            return
        if chunk.endswith(b"\n"):
            line = chunk[:-1]
        elif len(chunk) >= max_line:
            yield None
            continue
        else:
            line = chunk
        if line.endswith(b"\r"):
            line = line[:-1]
        yield line


class LogSender:
    """Turns application output into LogMessage events."""

    def __init__(
        self,
        emitter: UdpEmitter,
        stats_interval: float = STATS_INTERVAL,
        clock: Callable[[], int] = time.time_ns,
    ):
        self.emitter = emitter
        self.stats_interval = stats_interval
        self.clock = clock
        self.total_messages = 0
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._ticker: threading.Thread | None = None

    def _send(
        self,
        app_id: str,
        message: str | bytes,
        source_type: str,
        source_instance: str,
        message_type: MessageType,
    ) -> bool:
        with self._lock:
            self.total_messages += 1
        payload = message.encode("utf-8") if isinstance(message, str) else message
        return self.emitter.emit_log_message(
            LogMessage(
                message=payload,
                message_type=message_type,
                timestamp=self.clock(),
                app_id=app_id,
                source_type=source_type,
                source_instance=source_instance,
            )
        )

    def send_app_log(self, app_id: str, message: str | bytes, source_type: str, source_instance: str) -> bool:
        return self._send(app_id, message, source_type, source_instance, MessageType.OUT)

    def send_app_error_log(
        self, app_id: str, message: str | bytes, source_type: str, source_instance: str
    ) -> bool:
        return self._send(app_id, message, source_type, source_instance, MessageType.ERR)

    def _scan(
        self,
        app_id: str,
        source_type: str,
        source_instance: str,
        reader: BinaryIO,
        message_type: MessageType,
    ) -> None:
        try:
            for line in iter_lines(reader):
                if line is None:
                    logger.warning(f"Dropped oversized line on log stream for {app_id}/{source_instance}")
                    self.send_app_error_log(app_id, DROPPED_LINE_MESSAGE, source_type, source_instance)
                    continue
                if not line.strip():
                    continue
                self._send(app_id, line, source_type, source_instance, message_type)
        except (OSError, ValueError) as e:
            logger.info(f"Error while reading log stream for {app_id}/{source_instance}: {e}")
            return
        logger.debug(f"EOF on log stream for app {app_id}/{source_instance}")

    def scan_log_stream(self, app_id: str, source_type: str, source_instance: str, reader: BinaryIO) -> None:
        """Send every non-blank line of ``reader`` as an OUT message until EOF."""
        self._scan(app_id, source_type, source_instance, reader, MessageType.OUT)

    def scan_error_log_stream(
        self, app_id: str, source_type: str, source_instance: str, reader: BinaryIO
    ) -> None:
        """Like ``scan_log_stream`` with ERR messages."""
        self._scan(app_id, source_type, source_instance, reader, MessageType.ERR)

    def emit_counters(self) -> None:
        with self._lock:
            total = float(self.total_messages)
        self.emitter.emit_value_metric(ValueMetric(name=TOTAL_MESSAGES_METRIC, value=total, unit="count"))

    def start(self) -> None:
        """Emit the message counter every ``stats_interval`` seconds."""
        if self._ticker is not None:
            return

        def tick() -> None:
            while not self._stopped.wait(self.stats_interval):
                self.emit_counters()

        self._ticker = threading.Thread(target=tick, name="log-sender-stats", daemon=True)
        self._ticker.start()

    def stop(self) -> None:
        self._stopped.set()
