"""Running engines on the server side and the registry that holds them."""

from __future__ import annotations

import threading
from typing import Protocol

from .msg_queue import MessageId, MsgQueue
from .responses import ApiError, ErrorKind
from .types import EngineId, HandleMpcRequestFn, MpcRequest, MpcSession


class Contributor(Protocol):
    """The contributing party of the protocol, as seen by the server."""

    def steps(self) -> int:
        """How many client messages this party still has to process."""

    def run(self, msg: bytes) -> tuple[Contributor, bytes]:
        """Process one client message, returning the next state and the reply."""


class EngineRef:
    """A running engine: the contributor state and its queue of outgoing messages.

    Callers that share an engine between threads hold :attr:`lock` while using it.
    """

    def __init__(self, contributor: Contributor, initial_message: bytes) -> None:
        self._contributor: Contributor | None = contributor
        self._steps_remaining = contributor.steps()
        self._context = MsgQueue()
        self._context.send(initial_message)
        self._last_offset: MessageId | None = None
        self.lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"EngineRef(steps_remaining={self._steps_remaining}, "
            f"last_offset={self._last_offset}, queued={len(self._context)})"
        )

    @property
    def last_durably_received_client_event_offset(self) -> MessageId | None:
        """The id of the last client message that was accepted, if any."""
        return self._last_offset

    def process_message(self, msg: bytes, offset: MessageId) -> None:
        """Accept the client message with the given id and queue the reply.

        Messages must arrive in order, starting with id 0.
        """
        expected = 0 if self._last_offset is None else self._last_offset + 1
        if offset != expected:
            raise ApiError(ErrorKind.UNEXPECTED_MESSAGE_ID)
        self._last_offset = offset
        contributor, self._contributor = self._contributor, None
        if contributor is None:
            return
        try:
            next_state, reply = contributor.run(msg)
        except ApiError:
            raise
        except Exception as exc:
            raise ApiError(ErrorKind.ENGINE) from exc
        self._contributor = next_state
        self._steps_remaining = max(0, self._steps_remaining - 1)
        self._context.send(reply)

    def flush_queue(self, last_durably_received_offset: MessageId) -> None:
        """Drop the replies the client has confirmed receiving."""
        self._context.flush_queue(last_durably_received_offset)

    def dump_messages(self) -> list[tuple[bytes, MessageId]]:
        """All unconfirmed replies with their ids, oldest first."""
        return list(self._context.msgs_iter())

    def is_done(self) -> bool:
        """Whether the contributor has processed all of its steps."""
        return self._steps_remaining == 0


class EngineRegistry:
    """Thread-safe map from engine ids to running engines."""

    def __init__(self, handler: HandleMpcRequestFn) -> None:
        self._engines: dict[EngineId, EngineRef] = {}
        self._lock = threading.Lock()
        self._handler = handler

    def __len__(self) -> int:
        with self._lock:
            return len(self._engines)

    def insert_engine(self, engine_id: EngineId, engine: EngineRef) -> bool:
        """Register an engine; returns False if the id is already taken."""
        with self._lock:
            if engine_id in self._engines:
                return False
            self._engines[engine_id] = engine
            return True

    def drop_engine(self, engine_id: EngineId) -> bool:
        """Remove an engine; returns whether it was present."""
        with self._lock:
            return self._engines.pop(engine_id, None) is not None

    def lookup(self, engine_id: EngineId) -> EngineRef:
        """Return the engine with the given id or raise ``NoSuchEngineId``."""
        with self._lock:
            engine = self._engines.get(engine_id)
        if engine is None:
            raise ApiError(ErrorKind.NO_SUCH_ENGINE_ID, {"engine_id": engine_id})
        return engine

    def handle_input(self, request: MpcRequest) -> MpcSession:
        """Ask the handler for a session; a failing handler rejects the request."""
        try:
            return self._handler(request)
        except ApiError:
            raise
        except Exception as exc:
            raise ApiError(ErrorKind.MPC_REQUEST_REJECTED, str(exc)) from exc