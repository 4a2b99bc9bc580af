import json

import pytest
from werkzeug.test import Client

from tandemhttp.msg_queue import MsgQueue
from tandemhttp.responses import ApiError, ErrorKind
from tandemhttp.server import VERSION, TandemApp, build, cors_headers
from tandemhttp.types import Circuit, MpcSession, NewSession
from tandemhttp.wire import decode_dialog_response, encode_dialog_request

XOR_AND_PROGRAM = "pub fn main(a: bool, b: bool) -> (bool, bool) { (a ^ b, a & b) }"
XOR_AND = Circuit(
    gates=(("InContrib",), ("InEval",), ("Xor", 0, 1), ("And", 0, 1)),
    output_gates=(2, 3),
)


def _plain_eval(circuit, contrib_bits, eval_bits):
    contrib, evals, wires = iter(contrib_bits), iter(eval_bits), []
    for name, *args in circuit.gates:
        if name == "InContrib":
            wires.append(next(contrib))
        elif name == "InEval":
            wires.append(next(evals))
        elif name == "Xor":
            wires.append(wires[args[0]] ^ wires[args[1]])
        elif name == "And":
            wires.append(wires[args[0]] & wires[args[1]])
        else:
            wires.append(not wires[args[0]])
    return [wires[o] for o in circuit.output_gates]


class PlainContributor:
    def __init__(self, circuit, bits, remaining=1):
        self.circuit, self.bits, self.remaining = circuit, bits, remaining

    def steps(self):
        return self.remaining

    def run(self, msg):
        outputs = _plain_eval(self.circuit, self.bits, [bool(b) for b in msg])
        return PlainContributor(self.circuit, self.bits, self.remaining - 1), bytes(outputs)


class PlainEvaluator:
    def __init__(self, bits):
        self.bits = bits

    def steps(self):
        return 1

    def run(self, msg):
        return self, bytes(self.bits)

    def output(self, msg):
        return [bool(b) for b in msg]


def start_contributor(circuit, bits):
    return PlainContributor(circuit, bits), bytes(bits)


def handler(request):
    if request.function != "main":
        raise ValueError(f"unknown function {request.function}")
    return MpcSession(
        circuit=XOR_AND,
        input_from_server=[request.plaintext_metadata == "true"],
        request_headers={"fly-force-instance-id": "instance"},
    )


@pytest.fixture
def client():
    return Client(build(handler, start_contributor, None))


def new_session(client, metadata, function="main", circuit=XOR_AND, version=VERSION):
    session = NewSession(
        plaintext_metadata=metadata,
        program=XOR_AND_PROGRAM,
        function=function,
        circuit_hash=circuit.blake3_hash(),
        client_version=version,
    )
    return client.post("/", data=session.to_json(), content_type="application/json")


def dialog(client, engine_id, last_offset, messages):
    response = client.post(f"/{engine_id}", data=encode_dialog_request(last_offset, messages))
    assert response.status_code == 200
    return decode_dialog_response(response.get_data())


def run_protocol(client, engine_id, bits):
    queue = MsgQueue()
    evaluator = PlainEvaluator(bits)
    last_offset = None
    steps_remaining = evaluator.steps()
    while True:
        messages = list(queue.msgs_iter())
        upstream, committed = dialog(client, engine_id, last_offset, messages)
        assert (messages[-1][1] if messages else None) == committed
        if committed is not None:
            queue.flush_queue(committed)
        for msg, server_offset in upstream:
            assert server_offset == (0 if last_offset is None else last_offset + 1)
            if steps_remaining > 0:
                evaluator, reply = evaluator.run(msg)
                steps_remaining -= 1
                queue.send(reply)
            else:
                return evaluator.output(msg)
            last_offset = server_offset


def test_multiple_engines(client):
    r1 = new_session(client, "false")
    assert r1.status_code == 201
    r2 = new_session(client, "false")
    assert r2.status_code == 201
    assert r1.get_json() != r2.get_json()
    assert r1.get_json()["engine_id"] != r2.get_json()["engine_id"]


def test_delete_session(client):
    r1 = new_session(client, "false")
    assert r1.status_code == 201
    engine_id = r1.get_json()["engine_id"]
    r3 = client.delete(f"/{engine_id}")
    assert r3.status_code == 200
    r4 = new_session(client, "false")
    assert r4.status_code == 201
    gone = client.post(f"/{engine_id}", data=encode_dialog_request(None, []))
    assert gone.status_code == 404


@pytest.mark.parametrize("party_a", [False, True])
@pytest.mark.parametrize("party_b", [False, True])
def test_protocol_xor_and(client, party_a, party_b):
    r1 = new_session(client, str(party_a).lower())
    assert r1.status_code == 201
    engine_id = r1.get_json()["engine_id"]
    result = run_protocol(client, engine_id, [party_b])
    assert result == [party_a ^ party_b, party_a & party_b]
    finished = client.post(f"/{engine_id}", data=encode_dialog_request(None, []))
    assert finished.status_code == 404
    assert finished.get_json()["error"] == "NoSuchEngineId"


def test_create_session_response(client):
    response = new_session(client, "true")
    body = response.get_json()
    assert response.headers["Location"] == f"/{body['engine_id']}"
    assert body["request_headers"] == {"fly-force-instance-id": "instance"}
    assert body["server_version"] == VERSION


def test_incompatible_versions(client):
    response = new_session(client, "true", version="0.0.0-other")
    assert response.status_code == 400
    assert response.get_json() == {
        "error": "IncompatibleVersions",
        "args": {"client_version": "0.0.0-other", "server_version": VERSION},
    }


def test_circuit_hash_mismatch(client):
    other = Circuit(gates=(("InContrib",), ("InEval",), ("Xor", 0, 1)), output_gates=(2,))
    response = new_session(client, "true", circuit=other)
    assert response.status_code == 400
    assert response.get_json() == {"error": "CircuitHashMismatch"}


def test_rejected_request(client):
    response = new_session(client, "true", function="other")
    assert response.status_code == 400
    assert response.get_json() == {
        "error": "MpcRequestRejected",
        "args": "unknown function other",
    }


def test_create_requires_json(client):
    response = client.post("/", data=b"{}", content_type="text/plain")
    assert response.status_code == 404


def test_create_with_missing_fields(client):
    response = client.post("/", data=json.dumps({"program": "x"}), content_type="application/json")
    assert response.status_code == 422


def test_delete_unknown_session(client):
    response = client.delete("/missing")
    assert response.status_code == 404
    assert response.get_json() == {"error": "NoSuchEngineId", "args": {"engine_id": "missing"}}


def test_dialog_with_garbage_body(client):
    engine_id = new_session(client, "true").get_json()["engine_id"]
    response = client.post(f"/{engine_id}", data=b"\x07")
    assert response.status_code == 400
    assert response.get_json() == {"error": "Bincode"}


def test_dialog_with_unexpected_message_id(client):
    engine_id = new_session(client, "true").get_json()["engine_id"]
    response = client.post(f"/{engine_id}", data=encode_dialog_request(None, [(b"\x01", 5)]))
    assert response.status_code == 400
    assert response.get_json() == {"error": "UnexpectedMessageId"}


def test_first_dialog_returns_initial_message(client):
    engine_id = new_session(client, "true").get_json()["engine_id"]
    messages, committed = dialog(client, engine_id, None, [])
    assert messages == [(bytes([True]), 0)]
    assert committed is None


def test_preflight_has_cors_headers(client):
    response = client.options("/")
    assert response.status_code == 200
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert response.headers["Access-Control-Allow-Methods"] == "POST, GET, PATCH, OPTIONS"
    assert response.headers["Access-Control-Allow-Credentials"] == "true"


def test_configured_origins_in_app():
    app = TandemApp(handler, start_contributor, ["https://app.example.com/"])
    client = Client(app)
    allowed = client.options("/x", headers={"Origin": "https://app.example.com"})
    assert allowed.headers["Access-Control-Allow-Origin"] == "https://app.example.com"
    denied = client.options("/x", headers={"Origin": "https://other.example.com"})
    assert "Access-Control-Allow-Origin" not in denied.headers


def test_cors_headers_without_config():
    headers = cors_headers("https://anything.example.com", None)
    assert headers["Access-Control-Allow-Origin"] == "*"
    assert headers["Access-Control-Allow-Headers"] == "*"


def test_cors_headers_localhost_always_allowed():
    headers = cors_headers("http://localhost:3000", [])
    assert headers["Access-Control-Allow-Origin"] == "http://localhost:3000"


def test_cors_headers_unknown_origin_denied():
    headers = cors_headers("https://evil.example.com", ["https://app.example.com/"])
    assert "Access-Control-Allow-Origin" not in headers
    assert headers["Access-Control-Allow-Methods"] == "POST, GET, PATCH, OPTIONS"


def test_cors_headers_invalid_origin_denied():
    headers = cors_headers("not a url", ["not a url"])
    assert "Access-Control-Allow-Origin" not in headers


def test_create_session_directly():
    app = TandemApp(handler, start_contributor)
    session = NewSession("false", XOR_AND_PROGRAM, "main", XOR_AND.blake3_hash(), VERSION)
    result = app.create_session(session)
    assert result.server_version == VERSION
    app.delete_session(result.engine_id)
    with pytest.raises(ApiError) as info:
        app.delete_session(result.engine_id)
    assert info.value.kind is ErrorKind.NO_SUCH_ENGINE_ID


def test_failing_contributor_start_is_engine_error():
    def broken(circuit, bits):
        raise RuntimeError("cannot start")

    app = TandemApp(handler, broken)
    session = NewSession("false", XOR_AND_PROGRAM, "main", XOR_AND.blake3_hash(), VERSION)
    with pytest.raises(ApiError) as info:
        app.create_session(session)
    assert info.value.kind is ErrorKind.ENGINE