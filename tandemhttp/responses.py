"""Errors reported by the server, with their HTTP status and JSON form."""

from __future__ import annotations

import json
from collections.abc import Mapping
from enum import Enum
from http import HTTPStatus
from typing import Any


class ErrorKind(Enum):
    """The kinds of error a server can report."""

    CIRCUIT_HASH_MISMATCH = "CircuitHashMismatch"
    UNEXPECTED_WIRE_FORMAT = "UnexpectedWireFormat"
    MPC_REQUEST_REJECTED = "MpcRequestRejected"
    DUPLICATE_ENGINE_ID = "DuplicateEngineId"
    UNEXPECTED_MESSAGE_ID = "UnexpectedMessageId"
    NO_SUCH_ENGINE_ID = "NoSuchEngineId"
    INTERNAL = "Internal"
    BINCODE = "Bincode"
    ENGINE = "Engine"
    INCOMPATIBLE_VERSIONS = "IncompatibleVersions"


# None: no payload; str: a single string; tuple: named string fields.
_PAYLOAD: dict[ErrorKind, type[str] | tuple[str, ...] | None] = {
    ErrorKind.CIRCUIT_HASH_MISMATCH: None,
    ErrorKind.UNEXPECTED_WIRE_FORMAT: str,
    ErrorKind.MPC_REQUEST_REJECTED: str,
    ErrorKind.DUPLICATE_ENGINE_ID: ("engine_id",),
    ErrorKind.UNEXPECTED_MESSAGE_ID: None,
    ErrorKind.NO_SUCH_ENGINE_ID: ("engine_id",),
    ErrorKind.INTERNAL: ("message",),
    ErrorKind.BINCODE: None,
    ErrorKind.ENGINE: None,
    ErrorKind.INCOMPATIBLE_VERSIONS: ("client_version", "server_version"),
}

_STATUS: dict[ErrorKind, HTTPStatus] = {
    ErrorKind.INCOMPATIBLE_VERSIONS: HTTPStatus.BAD_REQUEST,
    ErrorKind.CIRCUIT_HASH_MISMATCH: HTTPStatus.BAD_REQUEST,
    ErrorKind.UNEXPECTED_WIRE_FORMAT: HTTPStatus.BAD_REQUEST,
    ErrorKind.MPC_REQUEST_REJECTED: HTTPStatus.BAD_REQUEST,
    ErrorKind.DUPLICATE_ENGINE_ID: HTTPStatus.BAD_REQUEST,
    ErrorKind.UNEXPECTED_MESSAGE_ID: HTTPStatus.BAD_REQUEST,
    ErrorKind.BINCODE: HTTPStatus.BAD_REQUEST,
    ErrorKind.NO_SUCH_ENGINE_ID: HTTPStatus.NOT_FOUND,
    ErrorKind.INTERNAL: HTTPStatus.INTERNAL_SERVER_ERROR,
    ErrorKind.ENGINE: HTTPStatus.INTERNAL_SERVER_ERROR,
}


def _check_detail(kind: ErrorKind, detail: Any) -> str | dict[str, str] | None:
    shape = _PAYLOAD[kind]
    if shape is None:
        if detail is not None:
            raise TypeError(f"{kind.value} carries no detail")
        return None
    if shape is str:
        if not isinstance(detail, str):
            raise TypeError(f"{kind.value} needs a string detail")
        return detail
    if not isinstance(detail, Mapping) or set(detail) != set(shape):
        raise TypeError(f"{kind.value} needs the fields {', '.join(shape)}")
    if not all(isinstance(detail[name], str) for name in shape):
        raise TypeError(f"{kind.value} fields must be strings")
    return {name: detail[name] for name in shape}


class ApiError(Exception):
    """An error reported by the server, carrying its kind and optional detail.

    The detail is ``None``, a string, or a dict of named strings, depending on
    the kind.
    """

    def __init__(self, kind: ErrorKind, detail: str | Mapping[str, str] | None = None):
        checked = _check_detail(kind, detail)
        super().__init__(kind, checked)
        self.kind = kind
        self.detail = checked

    def __str__(self) -> str:
        if self.detail is None:
            return self.kind.value
        if isinstance(self.detail, str):
            return f"{self.kind.value}: {self.detail}"
        fields = ", ".join(f"{name}={value}" for name, value in self.detail.items())
        return f"{self.kind.value}: {fields}"

    def status(self) -> HTTPStatus:
        """The HTTP status code this error is answered with."""
        return _STATUS[self.kind]

    def to_json(self) -> str:
        """Serialise as ``{"error": <kind>, "args": <detail>}``, omitting empty args."""
        payload: dict[str, Any] = {"error": self.kind.value}
        if self.detail is not None:
            payload["args"] = self.detail
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str | bytes) -> ApiError:
        """Parse the JSON form produced by :meth:`to_json`."""
        payload = json.loads(text)
        if not isinstance(payload, dict) or "error" not in payload:
            raise ValueError("error JSON must be an object with an 'error' field")
        try:
            kind = ErrorKind(payload["error"])
        except ValueError:
            raise ValueError(f"unknown error kind {payload['error']!r}") from None
        try:
            return cls(kind, payload.get("args"))
        except TypeError as exc:
            raise ValueError(str(exc)) from exc