"""Binary encoding of dialog requests and responses exchanged during a session.

The layout is fixed-width and little-endian: an optional offset is a tag byte
(0 or 1) followed by a u32 when present, a list is a u64 length followed by its
elements, and each message is a u64 length, its bytes and a u32 message id.
Trailing bytes after a decoded value are ignored.
"""

from __future__ import annotations

import struct
from collections.abc import Iterable

from .msg_queue import MessageId

_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_U32_MAX = 0xFFFFFFFF
_MIN_MESSAGE_SIZE = _U64.size + _U32.size

MessageLog = list[tuple[bytes, MessageId]]


class WireError(ValueError):
    """Raised when a dialog message cannot be encoded or decoded."""


def _put_u32(out: bytearray, value: int) -> None:
    if not 0 <= value <= _U32_MAX:
        raise WireError(f"value {value} does not fit into an unsigned 32-bit integer")
    out += _U32.pack(value)


def _put_offset(out: bytearray, offset: MessageId | None) -> None:
    if offset is None:
        out.append(0)
    else:
        out.append(1)
        _put_u32(out, offset)


def _put_messages(out: bytearray, messages: Iterable[tuple[bytes, MessageId]]) -> None:
    items = [(bytes(msg), message_id) for msg, message_id in messages]
    out += _U64.pack(len(items))
    for msg, message_id in items:
        out += _U64.pack(len(msg))
        out += msg
        _put_u32(out, message_id)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def take(self, size: int) -> bytes:
        if size > self.remaining:
            raise WireError(
                f"unexpected end of data: needed {size} bytes, {self.remaining} left"
            )
        chunk = self._data[self._pos : self._pos + size]
        self._pos += size
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u32(self) -> int:
        return _U32.unpack(self.take(_U32.size))[0]

    def u64(self) -> int:
        return _U64.unpack(self.take(_U64.size))[0]

    def offset(self) -> MessageId | None:
        tag = self.u8()
        if tag == 0:
            return None
        if tag == 1:
            return self.u32()
        raise WireError(f"invalid option tag {tag}")

    def messages(self) -> MessageLog:
        total = self.u64()
        if total > self.remaining // _MIN_MESSAGE_SIZE:
            raise WireError(f"message count {total} exceeds the available data")
        return [(self.take(self.u64()), self.u32()) for _ in range(total)]


def encode_dialog_request(
    last_offset: MessageId | None, messages: Iterable[tuple[bytes, MessageId]]
) -> bytes:
    """Encode the client's last received offset and its outgoing messages."""
    out = bytearray()
    _put_offset(out, last_offset)
    _put_messages(out, messages)
    return bytes(out)


def decode_dialog_request(data: bytes) -> tuple[MessageId | None, MessageLog]:
    """Decode a request produced by :func:`encode_dialog_request`."""
    reader = _Reader(data)
    last_offset = reader.offset()
    return last_offset, reader.messages()


def encode_dialog_response(
    messages: Iterable[tuple[bytes, MessageId]], committed_offset: MessageId | None
) -> bytes:
    """Encode the server's outgoing messages and the last client message it committed."""
    out = bytearray()
    _put_messages(out, messages)
    _put_offset(out, committed_offset)
    return bytes(out)


def decode_dialog_response(data: bytes) -> tuple[MessageLog, MessageId | None]:
    """Decode a response produced by :func:`encode_dialog_response`."""
    reader = _Reader(data)
    messages = reader.messages()
    return messages, reader.offset()