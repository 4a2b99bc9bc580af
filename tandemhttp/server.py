"""WSGI application serving the contributor side of a session over HTTP."""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable, Iterable, Mapping
from http import HTTPStatus
from urllib.parse import urlsplit

from werkzeug.exceptions import NotFound
from werkzeug.routing import Map, Rule
from werkzeug.wrappers import Request, Response

from .responses import ApiError, ErrorKind
from .state import Contributor, EngineRef, EngineRegistry
from .types import (
    Circuit,
    EngineCreationResult,
    HandleMpcRequestFn,
    MpcRequest,
    NewSession,
)
from .wire import WireError, decode_dialog_request, encode_dialog_response

VERSION = "0.3.0"
"""Protocol version; clients must send exactly this version."""

DIALOG_BODY_LIMIT = 20 * 1024 * 1024

StartContributor = Callable[[Circuit, list[bool]], tuple[Contributor, bytes]]
"""Starts the contributor for a circuit and input, returning it and its first message."""

_ALLOW_ORIGIN = "Access-Control-Allow-Origin"
_LOCAL_HOSTS = frozenset({"127.0.0.1", "localhost"})
_DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443, "ftp": 21}


def _normalize_origin(origin: str) -> tuple[str, str | None] | None:
    try:
        parts = urlsplit(origin.strip())
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if not scheme:
        return None
    host = parts.hostname
    if scheme in _DEFAULT_PORTS and not host:
        return None
    netloc = host or ""
    if parts.username is not None:
        credentials = parts.username
        if parts.password is not None:
            credentials += f":{parts.password}"
        netloc = f"{credentials}@{netloc}"
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        netloc += f":{port}"
    path = parts.path or ("/" if netloc else "")
    normalized = f"{scheme}://{netloc}{path}"
    if parts.query:
        normalized += f"?{parts.query}"
    if parts.fragment:
        normalized += f"#{parts.fragment}"
    return normalized, host


def cors_headers(origin: str | None, allowed_origins: Iterable[str] | None) -> dict[str, str]:
    """The CORS headers for a response to a request from ``origin``.

    Without configured origins every origin is allowed. Otherwise the origin
    must be configured or be a local host; if not, no allow-origin header is set.
    """
    headers: dict[str, str] = {}
    if allowed_origins is None:
        headers[_ALLOW_ORIGIN] = "*"
    elif origin is not None:
        parsed = _normalize_origin(origin)
        if parsed is not None:
            normalized, host = parsed
            if normalized in set(allowed_origins) or host in _LOCAL_HOSTS:
                headers[_ALLOW_ORIGIN] = origin
    headers["Access-Control-Allow-Methods"] = "POST, GET, PATCH, OPTIONS"
    headers["Access-Control-Allow-Headers"] = "*"
    headers["Access-Control-Allow-Credentials"] = "true"
    return headers


class TandemApp:
    """WSGI application creating sessions and exchanging protocol messages.

    Routes: ``POST /`` creates a session, ``POST /<engine_id>`` runs one dialog
    round, ``DELETE /<engine_id>`` ends a session, and ``OPTIONS`` answers
    preflight requests.
    """

    def __init__(
        self,
        handler: HandleMpcRequestFn,
        start_contributor: StartContributor,
        cors_origins: Iterable[str] | None = None,
    ) -> None:
        self._registry = EngineRegistry(handler)
        self._start_contributor = start_contributor
        self._cors_origins = None if cors_origins is None else frozenset(cors_origins)
        self._url_map = Map(
            [Rule("/", endpoint="root"), Rule("/<engine_id>", endpoint="engine")],
            strict_slashes=False,
        )

    def create_session(self, new_session: NewSession) -> EngineCreationResult:
        """Validate a session request and start a new engine for it."""
        if new_session.client_version != VERSION:
            raise ApiError(
                ErrorKind.INCOMPATIBLE_VERSIONS,
                {"client_version": new_session.client_version, "server_version": VERSION},
            )
        handled = self._registry.handle_input(
            MpcRequest(
                plaintext_metadata=new_session.plaintext_metadata,
                program=new_session.program,
                function=new_session.function,
            )
        )
        if handled.circuit.blake3_hash() != new_session.circuit_hash:
            raise ApiError(ErrorKind.CIRCUIT_HASH_MISMATCH)

        try:
            contributor, initial_message = self._start_contributor(
                handled.circuit, list(handled.input_from_server)
            )
        except ApiError:
            raise
        except Exception as exc:
            raise ApiError(ErrorKind.ENGINE) from exc

        engine_id = str(uuid.uuid4())
        if not self._registry.insert_engine(engine_id, EngineRef(contributor, initial_message)):
            raise ApiError(ErrorKind.DUPLICATE_ENGINE_ID, {"engine_id": engine_id})
        return EngineCreationResult(
            engine_id=engine_id,
            request_headers=dict(handled.request_headers),
            server_version=VERSION,
        )

    def delete_session(self, engine_id: str) -> None:
        """End a session, raising ``NoSuchEngineId`` if it does not exist."""
        if not self._registry.drop_engine(engine_id):
            raise ApiError(ErrorKind.NO_SUCH_ENGINE_ID, {"engine_id": engine_id})

    def dialog(self, engine_id: str, body: bytes) -> bytes:
        """Run one dialog round and return the encoded response.

        The engine is removed once its contributor has finished.
        """
        try:
            last_offset, messages = decode_dialog_request(body)
        except WireError as exc:
            raise ApiError(ErrorKind.BINCODE) from exc

        engine = self._registry.lookup(engine_id)
        with engine.lock:
            if last_offset is not None:
                engine.flush_queue(last_offset)
            for msg, offset in messages:
                engine.process_message(msg, offset)
            try:
                payload = encode_dialog_response(
                    engine.dump_messages(),
                    engine.last_durably_received_client_event_offset,
                )
            except WireError as exc:
                raise ApiError(ErrorKind.BINCODE) from exc
            if engine.is_done():
                self._registry.drop_engine(engine_id)
        return payload

    def _create_from_request(self, request: Request) -> Response:
        if request.mimetype != "application/json":
            raise NotFound()
        try:
            payload = json.loads(request.get_data())
        except ValueError:
            return Response("Bad Request", status=HTTPStatus.BAD_REQUEST)
        try:
            new_session = NewSession.from_json(payload)
        except ValueError:
            return Response("Unprocessable Entity", status=HTTPStatus.UNPROCESSABLE_ENTITY)
        result = self.create_session(new_session)
        return Response(
            result.to_json(),
            status=HTTPStatus.CREATED,
            content_type="application/json",
            headers={"Location": f"/{result.engine_id}"},
        )

    def _dispatch(self, request: Request) -> Response:
        adapter = self._url_map.bind_to_environ(request.environ)
        endpoint, values = adapter.match()
        method = request.method
        if method == "OPTIONS":
            return Response(status=HTTPStatus.OK)
        if endpoint == "root":
            if method == "POST":
                return self._create_from_request(request)
            raise NotFound()
        engine_id = values["engine_id"]
        if method == "DELETE":
            self.delete_session(engine_id)
            return Response(status=HTTPStatus.OK)
        if method == "POST":
            body = request.stream.read(DIALOG_BODY_LIMIT)
            return Response(
                self.dialog(engine_id, body), content_type="application/octet-stream"
            )
        raise NotFound()

    def __call__(self, environ: Mapping, start_response: Callable) -> Iterable[bytes]:
        request = Request(environ)
        try:
            response = self._dispatch(request)
        except ApiError as error:
            response = Response(
                error.to_json(), status=int(error.status()), content_type="application/json"
            )
        except NotFound:
            response = Response("Not Found", status=HTTPStatus.NOT_FOUND)
        response.headers.update(cors_headers(request.headers.get("Origin"), self._cors_origins))
        return response(environ, start_response)


def build(
    handler: HandleMpcRequestFn,
    start_contributor: StartContributor,
    cors_origins: Iterable[str] | None = None,
) -> TandemApp:
    """Create a server application choosing circuits and inputs with ``handler``."""
    return TandemApp(handler, start_contributor, cors_origins)