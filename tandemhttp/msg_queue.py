"""Outgoing message queue with logical message ids and acknowledgement-based flushing."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator
from itertools import count

MessageId = int


class MsgQueue:
    """Holds sent messages until the peer confirms it has durably received them.

    Every message gets a logical id, counting from 0 in the order of sending.
    Messages stay queued until :meth:`flush_queue` drops them.
    """

    def __init__(self) -> None:
        self._queue: deque[bytes] = deque()
        self._counter = 0

    def __len__(self) -> int:
        return len(self._queue)

    def __repr__(self) -> str:
        return f"MsgQueue(queued={len(self._queue)}, sent={self._counter})"

    @property
    def _first_id(self) -> MessageId:
        return self._counter - len(self._queue)

    def flush_queue(self, last_durably_received_offset: MessageId) -> int:
        """Drop every queued message whose id is at most the given offset.

        Afterwards every queued message has an id strictly greater than the
        offset. Returns how many messages were removed.
        """
        removable = last_durably_received_offset - self._first_id + 1
        removed = max(0, min(len(self._queue), removable))
        for _ in range(removed):
            self._queue.popleft()
        return removed

    def send(self, msg: bytes) -> None:
        """Queue a message, assigning it the next logical id."""
        self._counter += 1
        self._queue.append(bytes(msg))

    def msgs_iter(self) -> Iterator[tuple[bytes, MessageId]]:
        """Iterate over the queued messages paired with their logical ids."""
        return zip(list(self._queue), count(self._first_id))