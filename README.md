# tandemhttp

`tandemhttp` carries a two-party secure computation over plain HTTP. One side,
the **contributor**, runs as a WSGI server. The other side, the **evaluator**,
is an HTTP client that opens a session with that server, exchanges protocol
messages with it and ends up holding the output bits.

The package provides the transport and the session bookkeeping. The protocol
states themselves (the contributor and the evaluator) are supplied by you; see
"What the package does not do" below.

## Modules

- `tandemhttp.server` – the contributor side.
  `build(handler, start_contributor, cors_origins=None)` returns a `TandemApp`,
  a WSGI application with these routes:
  - `POST /` with a `Content-Type` of `application/json` creates a session from
    a `NewSession` body and answers `201 Created` with an
    `EngineCreationResult` (engine id, headers the client must send on every
    later request, server version) and a `Location: /<engine_id>` header.
  - `POST /<engine_id>` runs one round of the message dialog; at most
    `DIALOG_BODY_LIMIT` (20 MiB) of the body is read.
  - `DELETE /<engine_id>` drops a session.
  - `OPTIONS` on either path answers preflight requests.

  The same work is available without HTTP through `TandemApp.create_session`,
  `TandemApp.delete_session` and `TandemApp.dialog`. The server only accepts
  clients whose version equals `tandemhttp.server.VERSION`.

  `cors_headers(origin, allowed_origins)` computes the CORS headers added to
  every response: with `allowed_origins` set to `None` every origin is allowed
  (`*`); otherwise a listed origin, or any origin on `localhost` or
  `127.0.0.1`, is echoed back, and other origins get no allow-origin header.
- `tandemhttp.client` – the evaluator side. `TandemClient(url).new_session(...)`
  creates a session and returns a `TandemSession`, whose `evaluate(evaluator)`
  drives an `Evaluator` through the dialog until it yields the output bits.
  `compute(url, plaintext_metadata, source_code, function, circuit_hash,
  evaluator, expected_input_len, input_len)` does all of this in one call,
  first refusing the input with `ValidationError` when `input_len` differs from
  `expected_input_len`. Failures are raised as `TandemClientError` or one of
  its subclasses `ServerError`, `ValidationError` and `MessageOffsetMismatch`.
  `response_or_error` turns a non-2xx response into a `ServerError`, using the
  `"error: args"` form when the body is the server's JSON error.
- `tandemhttp.state` – per-session bookkeeping on the server: `EngineRef`
  checks that client messages arrive in order and keeps the replies not yet
  confirmed by the client; `EngineRegistry` holds the running sessions and the
  request handler. `Contributor` is the protocol the contributor state must
  follow (`steps()` and `run(msg)`).
- `tandemhttp.msg_queue` – `MsgQueue`, the resend queue both sides use. Every
  message gets a consecutive id starting at 0; `flush_queue(offset)` drops
  every message with an id up to `offset` and returns how many were dropped,
  and `msgs_iter()` yields the remaining `(message, id)` pairs.
- `tandemhttp.wire` – the little-endian binary encoding of dialog requests and
  responses (`encode_dialog_request`, `decode_dialog_request`,
  `encode_dialog_response`, `decode_dialog_response`); malformed data raises
  `WireError`.
- `tandemhttp.responses` – `ApiError` and `ErrorKind`, the server's errors.
  Each is sent as JSON of the form `{"error": ..., "args": ...}` (`args`
  omitted when there is no detail) with its own status: `404` for
  `NoSuchEngineId`, `500` for `Internal` and `Engine`, `400` for everything
  else.
- `tandemhttp.types` – `Circuit` (gates as tuples such as `("InContrib",)`,
  `("Xor", 0, 1)`, plus output gate indices, with `blake3_hash()`),
  `MpcRequest`, `MpcSession`, `NewSession` and `EngineCreationResult`.
- `tandemhttp.server_config` – a handler for a server with one fixed program.
  `load_config(directory=None, environ=None)` reads the handler table (function
  name → plaintext metadata → input literal) from `Tandem.json`, `Tandem.toml`
  and `TANDEM_`-prefixed environment variables, later sources overriding
  earlier ones. `ConfiguredHandler(source_code, handlers)` takes, per function,
  a `Circuit` and a table from metadata to input bits; it rejects requests whose
  program differs from its own (described by `program_mismatch`) or whose
  function or metadata it has no entry for. `fly_instance_headers(environ=None)`
  returns a `fly-force-instance-id` header taken from `FLY_ALLOC_ID`, if set.

## Writing a server

The handler receives an `MpcRequest` (the client's plaintext metadata, program
and function name) and returns an `MpcSession` holding the circuit to run, the
server's private input bits and any headers the client should repeat. A
handler that will not serve a request raises, and the client receives an
`MpcRequestRejected` error with the exception's message.

```python
from werkzeug.serving import run_simple

from tandemhttp.server import build
from tandemhttp.types import MpcSession


def handler(request):
    circuit, server_input = choose_circuit_and_input(request)  # your own logic
    return MpcSession(circuit=circuit, input_from_server=server_input)


app = build(handler, start_contributor, cors_origins=None)
run_simple("127.0.0.1", 8000, app)
```

`start_contributor(circuit, input_bits)` must return the contributor state and
its first message.

## The session protocol

1. The client sends a `NewSession`: plaintext metadata, program source,
   function name, circuit hash and client version. The server refuses a
   client whose version differs from its own, and a session whose circuit
   hash does not match the circuit its handler chose.
2. Each dialog round, the client posts the id of the last server message it
   durably received together with all of its own unconfirmed messages. The
   server discards what the client confirmed, processes the new messages in
   strict id order and answers with its own unconfirmed messages and the id
   of the last client message it accepted.
3. When the contributor has no steps left, the server removes the session;
   the client computes the output from the final message.

Messages out of order are refused with `UnexpectedMessageId` on the server and
with `MessageOffsetMismatch` on the client.

## What the package does not do

- It contains no secure-computation engine: the `Contributor` and `Evaluator`
  states, and the `start_contributor` callable, must come from elsewhere.
- It does not parse, type-check or compile programs into circuits, and does
  not turn input literals into bits. `load_config` returns the literals as
  strings; converting them is up to you before building a `ConfiguredHandler`.
- It installs no command-line programs; run the WSGI application with a server
  of your choice and call the client from Python.