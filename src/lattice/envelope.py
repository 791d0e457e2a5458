"""Log bus event envelopes and their protocol-buffer wire format.

Only the messages ltc and the cell helpers exchange are modeled:
Envelope (with LogMessage, ValueMetric or Heartbeat payloads) and the
ControlMessage carrying heartbeat requests. Unknown fields are skipped when
decoding, so newer senders remain readable.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterator

# Wire types
VARINT = 0
FIXED64 = 1
LENGTH_DELIMITED = 2
FIXED32 = 5


class DecodeError(ValueError):
    """Raised for truncated or malformed protobuf input."""


class EventType(IntEnum):
    HEARTBEAT = 1
    HTTP_START = 2
    HTTP_STOP = 3
    HTTP_START_STOP = 4
    LOG_MESSAGE = 5
    VALUE_METRIC = 6
    COUNTER_EVENT = 7
    ERROR = 8
    CONTAINER_METRIC = 9


class MessageType(IntEnum):
    OUT = 1
    ERR = 2


class ControlType(IntEnum):
    HEARTBEAT_REQUEST = 1


# =============================================================================
# Primitive codec
# =============================================================================


def encode_varint(value: int) -> bytes:
    """Base-128 varint; negative values use 64-bit two's complement."""
    if value < 0:
        value += 1 << 64
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(data: bytes, pos: int) -> tuple[int, int]:
    """Decode a varint at ``pos``.

    Returns:
        Tuple of (value, position after the varint).
    """
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise DecodeError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 70:
            raise DecodeError("varint too long")


def _signed64(value: int) -> int:
    return value - (1 << 64) if value >= 1 << 63 else value


def _key(number: int, wire_type: int) -> bytes:
    return encode_varint((number << 3) | wire_type)


def field_varint(number: int, value: int) -> bytes:
    return _key(number, VARINT) + encode_varint(value)


def field_bytes(number: int, value: bytes) -> bytes:
    return _key(number, LENGTH_DELIMITED) + encode_varint(len(value)) + value


def field_string(number: int, value: str) -> bytes:
    return field_bytes(number, value.encode("utf-8"))


def field_double(number: int, value: float) -> bytes:
    return _key(number, FIXED64) + struct.pack("<d", value)


def iter_fields(data: bytes) -> Iterator[tuple[int, int, int | bytes]]:
    """Yield (field number, wire type, value) for each field in ``data``.

    Varints are yielded as unsigned ints, fixed64/fixed32 as raw bytes,
    length-delimited fields as bytes.
    """
    pos = 0
    while pos < len(data):
        key, pos = decode_varint(data, pos)
        number, wire_type = key >> 3, key & 0x7
        if wire_type == VARINT:
            value, pos = decode_varint(data, pos)
            yield number, wire_type, value
        elif wire_type == FIXED64:
            if pos + 8 > len(data):
                raise DecodeError("truncated fixed64")
            yield number, wire_type, data[pos : pos + 8]
            pos += 8
        elif wire_type == LENGTH_DELIMITED:
            length, pos = decode_varint(data, pos)
            if pos + length > len(data):
                raise DecodeError("truncated length-delimited field")
            yield number, wire_type, data[pos : pos + length]
            pos += length
        elif wire_type == FIXED32:
            if pos + 4 > len(data):
                raise DecodeError("truncated fixed32")
            yield number, wire_type, data[pos : pos + 4]
            pos += 4
        else:
            raise DecodeError(f"unsupported wire type {wire_type}")


# =============================================================================
# Messages
# =============================================================================


@dataclass
class UUID:
    low: int = 0
    high: int = 0

    def encode(self) -> bytes:
        return field_varint(1, self.low) + field_varint(2, self.high)

    @classmethod
    def decode(cls, data: bytes) -> UUID:
        uuid = cls()
        for number, wire_type, value in iter_fields(data):
            if number == 1 and wire_type == VARINT:
                uuid.low = value
            elif number == 2 and wire_type == VARINT:
                uuid.high = value
        return uuid


@dataclass
class LogMessage:
    """One line of application or component output."""

    message: bytes
    message_type: MessageType
    timestamp: int
    app_id: str = ""
    source_type: str = ""
    source_instance: str = ""

    def encode(self) -> bytes:
        out = field_bytes(1, self.message)
        out += field_varint(2, int(self.message_type))
        out += field_varint(3, self.timestamp)
        if self.app_id:
            out += field_string(4, self.app_id)
        if self.source_type:
            out += field_string(5, self.source_type)
        if self.source_instance:
            out += field_string(6, self.source_instance)
        return out

    @classmethod
    def decode(cls, data: bytes) -> LogMessage:
        msg = cls(message=b"", message_type=MessageType.OUT, timestamp=0)
        for number, wire_type, value in iter_fields(data):
            if number == 1 and wire_type == LENGTH_DELIMITED:
                msg.message = value
            elif number == 2 and wire_type == VARINT:
                msg.message_type = MessageType(value) if value in (1, 2) else MessageType.OUT
            elif number == 3 and wire_type == VARINT:
                msg.timestamp = _signed64(value)
            elif number == 4 and wire_type == LENGTH_DELIMITED:
                msg.app_id = value.decode("utf-8", "replace")
            elif number == 5 and wire_type == LENGTH_DELIMITED:
                msg.source_type = value.decode("utf-8", "replace")
            elif number == 6 and wire_type == LENGTH_DELIMITED:
                msg.source_instance = value.decode("utf-8", "replace")
        return msg


@dataclass
class ValueMetric:
    name: str
    value: float
    unit: str = ""

    def encode(self) -> bytes:
        return field_string(1, self.name) + field_double(2, self.value) + field_string(3, self.unit)

    @classmethod
    def decode(cls, data: bytes) -> ValueMetric:
        metric = cls(name="", value=0.0)
        for number, wire_type, value in iter_fields(data):
            if number == 1 and wire_type == LENGTH_DELIMITED:
                metric.name = value.decode("utf-8", "replace")
            elif number == 2 and wire_type == FIXED64:
                metric.value = struct.unpack("<d", value)[0]
            elif number == 3 and wire_type == LENGTH_DELIMITED:
                metric.unit = value.decode("utf-8", "replace")
        return metric


@dataclass
class Heartbeat:
    """Emitter counters, sent in reply to a heartbeat request."""

    sent_count: int = 0
    received_count: int = 0
    error_count: int = 0
    control_message_identifier: UUID | None = None

    def encode(self) -> bytes:
        out = field_varint(1, self.sent_count)
        out += field_varint(2, self.received_count)
        out += field_varint(3, self.error_count)
        if self.control_message_identifier is not None:
            out += field_bytes(4, self.control_message_identifier.encode())
        return out

    @classmethod
    def decode(cls, data: bytes) -> Heartbeat:
        hb = cls()
        for number, wire_type, value in iter_fields(data):
            if number == 1 and wire_type == VARINT:
                hb.sent_count = value
            elif number == 2 and wire_type == VARINT:
                hb.received_count = value
            elif number == 3 and wire_type == VARINT:
                hb.error_count = value
            elif number == 4 and wire_type == LENGTH_DELIMITED:
                hb.control_message_identifier = UUID.decode(value)
        return hb


@dataclass
class Envelope:
    """Wrapper carrying exactly one event and its origin."""

    origin: str
    event_type: EventType
    timestamp: int = 0
    log_message: LogMessage | None = None
    value_metric: ValueMetric | None = None
    heartbeat: Heartbeat | None = None

    def encode(self) -> bytes:
        out = field_string(1, self.origin) + field_varint(2, int(self.event_type))
        if self.heartbeat is not None:
            out += field_bytes(3, self.heartbeat.encode())
        if self.timestamp:
            out += field_varint(6, self.timestamp)
        if self.log_message is not None:
            out += field_bytes(8, self.log_message.encode())
        if self.value_metric is not None:
            out += field_bytes(9, self.value_metric.encode())
        return out

    @classmethod
    def decode(cls, data: bytes) -> Envelope:
        """Decode an envelope.

        Raises:
            DecodeError: If the input is malformed or lacks an event type.
        """
        origin = ""
        event_type: int | None = None
        env = cls(origin="", event_type=EventType.LOG_MESSAGE)
        for number, wire_type, value in iter_fields(data):
            if number == 1 and wire_type == LENGTH_DELIMITED:
                origin = value.decode("utf-8", "replace")
            elif number == 2 and wire_type == VARINT:
                event_type = value
            elif number == 3 and wire_type == LENGTH_DELIMITED:
                env.heartbeat = Heartbeat.decode(value)
            elif number == 6 and wire_type == VARINT:
                env.timestamp = _signed64(value)
            elif number == 8 and wire_type == LENGTH_DELIMITED:
                env.log_message = LogMessage.decode(value)
            elif number == 9 and wire_type == LENGTH_DELIMITED:
                env.value_metric = ValueMetric.decode(value)
        if event_type is None:
            raise DecodeError("envelope has no event type")
        try:
            env.event_type = EventType(event_type)
        except ValueError:
            raise DecodeError(f"unknown event type {event_type}")
        env.origin = origin
        return env


@dataclass
class ControlMessage:
    """Request sent by the log bus agent to an emitter."""

    origin: str
    identifier: UUID = field(default_factory=UUID)
    timestamp: int = 0
    control_type: ControlType = ControlType.HEARTBEAT_REQUEST

    def encode(self) -> bytes:
        out = field_string(1, self.origin)
        out += field_bytes(2, self.identifier.encode())
        out += field_varint(3, self.timestamp)
        out += field_varint(4, int(self.control_type))
        if self.control_type == ControlType.HEARTBEAT_REQUEST:
            out += field_bytes(5, b"")
        return out

    @classmethod
    def decode(cls, data: bytes) -> ControlMessage:
        msg = cls(origin="")
        control_type: int | None = None
        for number, wire_type, value in iter_fields(data):
            if number == 1 and wire_type == LENGTH_DELIMITED:
                msg.origin = value.decode("utf-8", "replace")
            elif number == 2 and wire_type == LENGTH_DELIMITED:
                msg.identifier = UUID.decode(value)
            elif number == 3 and wire_type == VARINT:
                msg.timestamp = _signed64(value)
            elif number == 4 and wire_type == VARINT:
                control_type = value
        if control_type != ControlType.HEARTBEAT_REQUEST:
            raise DecodeError(f"unsupported control type {control_type}")
        return msg


def wrap_log_message(origin: str, message: LogMessage) -> Envelope:
    return Envelope(
        origin=origin,
        event_type=EventType.LOG_MESSAGE,
        timestamp=message.timestamp,
        log_message=message,
    )
