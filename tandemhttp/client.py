"""Client running the evaluating party of a session against a remote server."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Protocol
from urllib.parse import urljoin, urlsplit

import requests

from .msg_queue import MessageId, MsgQueue
from .server import VERSION
from .types import EngineCreationResult, NewSession
from .wire import MessageLog, WireError, decode_dialog_response, encode_dialog_request

INVALID_INPUT = "The input does not match the circuit's expected input."


class TandemClientError(Exception):
    """Raised when validating or running a session fails on the client side."""


class ServerError(TandemClientError):
    """The server answered a request with an error."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"An error occurred on the server side: {self.message}"


class ValidationError(TandemClientError):
    """The program or the input is invalid."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"The MPC program or the input is invalid: {self.message}"


class MessageOffsetMismatch(TandemClientError):
    """The client's message ids did not agree with the server's."""

    def __init__(self) -> None:
        super().__init__("The client's message id did not match the server's message id.")


class Evaluator(Protocol):
    """The evaluating party of the protocol, as seen by the client."""

    def steps(self) -> int:
        """How many server messages must be processed before the output is known."""

    def run(self, msg: bytes) -> tuple[Evaluator, bytes]:
        """Process one server message, returning the next state and the reply."""

    def output(self, msg: bytes) -> list[bool]:
        """Compute the output bits from the final server message."""


def _parse_url(url: str) -> str:
    try:
        parts = urlsplit(url)
        parts.port  # noqa: B018 - validates the port
    except ValueError as exc:
        raise TandemClientError(f"The provided URL is invalid: {exc}") from exc
    if not parts.scheme or not parts.netloc:
        raise TandemClientError(f"The provided URL is invalid: {url!r} is not absolute")
    return url


def _post(url: str, **kwargs) -> requests.Response:
    try:
        return requests.post(url, **kwargs)
    except requests.RequestException as exc:
        raise TandemClientError(
            f"An error occurred while trying to send a request to the server: {exc}"
        ) from exc


def response_or_error(response: requests.Response) -> requests.Response:
    """Return a successful response, or raise ``ServerError`` with its message."""
    if 200 <= response.status_code < 300:
        return response
    text = response.text
    message = text
    try:
        payload = json.loads(text)
    except ValueError:
        payload = None
    if (
        isinstance(payload, dict)
        and isinstance(payload.get("error"), str)
        and isinstance(payload.get("args"), str)
    ):
        message = f"{payload['error']}: {payload['args']}"
    raise ServerError(message)


class TandemSession:
    """A session on the server, identified by its URL."""

    def __init__(self, url: str, request_headers: Mapping[str, str] | None = None) -> None:
        self.url = url
        self.request_headers = dict(request_headers or {})

    def __repr__(self) -> str:
        return f"TandemSession(url={self.url!r})"

    def dialog(
        self,
        last_durably_received_offset: MessageId | None,
        messages: Sequence[tuple[bytes, MessageId]],
    ) -> tuple[MessageLog, MessageId | None]:
        """Send one round of messages and return the server's messages and committed offset."""
        try:
            body = encode_dialog_request(last_durably_received_offset, messages)
        except WireError as exc:
            raise TandemClientError("A message could not be serialized/deserialized.") from exc
        response = response_or_error(
            _post(self.url, data=body, headers=self.request_headers)
        )
        try:
            return decode_dialog_response(response.content)
        except WireError as exc:
            raise TandemClientError("A message could not be serialized/deserialized.") from exc

    def evaluate(self, evaluator: Evaluator) -> list[bool]:
        """Run the protocol with the server until the evaluator yields its output."""
        context = MsgQueue()
        last_offset: MessageId | None = None
        steps_remaining = evaluator.steps()
        while True:
            messages = list(context.msgs_iter())
            upstream, committed = self.dialog(last_offset, messages)
            sent_last = messages[-1][1] if messages else None
            if sent_last != committed:
                raise MessageOffsetMismatch()
            if committed is not None:
                context.flush_queue(committed)

            for msg, server_offset in upstream:
                expected = 0 if last_offset is None else last_offset + 1
                if server_offset != expected:
                    raise MessageOffsetMismatch()
                try:
                    if steps_remaining <= 0:
                        return list(evaluator.output(msg))
                    evaluator, reply = evaluator.run(msg)
                except TandemClientError:
                    raise
                except Exception as exc:
                    raise TandemClientError(
                        "An error occurred during the client's execution of the MPC "
                        f"protocol: {exc}"
                    ) from exc
                steps_remaining -= 1
                context.send(reply)
                last_offset = server_offset


class TandemClient:
    """Creates sessions on the server at a base URL."""

    def __init__(self, url: str) -> None:
        self.url = _parse_url(url)

    def __repr__(self) -> str:
        return f"TandemClient(url={self.url!r})"

    def new_session(
        self,
        circuit_hash: bytes,
        source_code: str,
        function: str,
        plaintext_metadata: str,
    ) -> TandemSession:
        """Ask the server to start a session for the given program and function."""
        request = NewSession(
            plaintext_metadata=plaintext_metadata,
            program=source_code,
            function=function,
            circuit_hash=circuit_hash,
            client_version=VERSION,
        )
        response = response_or_error(
            _post(
                self.url,
                data=request.to_json().encode("utf-8"),
                headers={"Content-Type": "application/json"},
            )
        )
        try:
            result = EngineCreationResult.from_json(response.content)
        except ValueError as exc:
            raise TandemClientError(
                f"The server's session response could not be read: {exc}"
            ) from exc
        return TandemSession(urljoin(self.url, result.engine_id), result.request_headers)


def compute(
    url: str,
    plaintext_metadata: str,
    source_code: str,
    function: str,
    circuit_hash: bytes,
    evaluator: Evaluator,
    expected_input_len: int,
    input_len: int,
) -> list[bool]:
    """Compute a program jointly with the server, keeping the evaluator's input private.

    The plaintext metadata is sent to the server unencrypted and may influence
    its choice of input. Returns the output bits.
    """
    url = _parse_url(url)
    if expected_input_len != input_len:
        raise ValidationError(INVALID_INPUT)
    client = TandemClient(url)
    session = client.new_session(
        circuit_hash, source_code.strip(), function, plaintext_metadata
    )
    return session.evaluate(evaluator)