import json

import pytest

from tandemhttp.types import (
    Circuit,
    EngineCreationResult,
    MpcRequest,
    MpcSession,
    NewSession,
    _blake3,
)


def _xor_and_circuit():
    return Circuit(
        [("InContrib",), ("InEval",), ("Xor", 0, 1), ("And", 1, 0)],
        [2, 3],
    )


def test_blake3_known_vectors():
    assert _blake3(b"").hex() == (
        "af1349b9f5f9a1a6a0404dea36dcc9499bcb25c9adc112b7cc9a93cae41f3262"
    )
    assert _blake3(b"abc").hex() == (
        "6437b3ac38465133ffb63b75273a8db548c558465d79db03fd359c6cd5bd9d85"
    )


def test_blake3_multi_chunk_inputs_are_distinct():
    digests = {_blake3(bytes(size)) for size in (1024, 1025, 2048, 3073, 5000)}
    assert len(digests) == 5
    assert all(len(d) == 32 for d in digests)


def test_circuit_hash_is_deterministic():
    assert _xor_and_circuit().blake3_hash() == _xor_and_circuit().blake3_hash()
    assert len(_xor_and_circuit().blake3_hash()) == 32


def test_circuit_hash_depends_on_gates_and_outputs():
    base = _xor_and_circuit().blake3_hash()
    other_gates = Circuit([("InContrib",), ("InEval",), ("Xor", 0, 1), ("And", 0, 1)], [2, 3])
    other_outputs = Circuit([("InContrib",), ("InEval",), ("Xor", 0, 1), ("And", 1, 0)], [3])
    assert other_gates.blake3_hash() != base
    assert other_outputs.blake3_hash() != base


def test_circuit_normalises_to_tuples():
    circuit = Circuit([["Not", 0]], [0])
    assert circuit.gates == (("Not", 0),)
    assert circuit.output_gates == (0,)


@pytest.mark.parametrize(
    "gates",
    [
        [("Nand", 0, 1)],
        [("Xor", 0)],
        [("Not", -1)],
        [("InEval", 3)],
        [()],
    ],
)
def test_invalid_gates_are_rejected(gates):
    with pytest.raises(ValueError):
        Circuit(gates, [0])


def _new_session():
    return NewSession(
        plaintext_metadata="false",
        program="pub fn main(a: bool, b: bool) -> (bool, bool) { (a ^ b, a & b) }",
        function="main",
        circuit_hash=_xor_and_circuit().blake3_hash(),
        client_version="0.1.0",
    )


def test_new_session_round_trip():
    session = _new_session()
    assert NewSession.from_json(session.to_json()) == session


def test_new_session_hash_is_a_byte_array_in_json():
    payload = json.loads(_new_session().to_json())
    assert payload["circuit_hash"] == list(_xor_and_circuit().blake3_hash())
    assert list(payload) == [
        "plaintext_metadata",
        "program",
        "function",
        "circuit_hash",
        "client_version",
    ]


def test_new_session_from_mapping():
    payload = json.loads(_new_session().to_json())
    assert NewSession.from_json(payload) == _new_session()


def test_new_session_rejects_short_hash():
    payload = json.loads(_new_session().to_json())
    payload["circuit_hash"] = payload["circuit_hash"][:-1]
    with pytest.raises(ValueError):
        NewSession.from_json(payload)


def test_new_session_rejects_missing_field():
    payload = json.loads(_new_session().to_json())
    del payload["function"]
    with pytest.raises(ValueError):
        NewSession.from_json(payload)


def test_new_session_rejects_invalid_json():
    with pytest.raises(ValueError):
        NewSession.from_json("{")


def test_engine_creation_result_round_trip():
    result = EngineCreationResult(
        engine_id="engine-1",
        request_headers={"fly-force-instance-id": "b996131a"},
        server_version="0.1.0",
    )
    assert EngineCreationResult.from_json(result.to_json()) == result


def test_engine_creation_result_rejects_bad_headers():
    with pytest.raises(ValueError):
        EngineCreationResult.from_json(
            '{"engine_id":"e","request_headers":{"a":1},"server_version":"v"}'
        )


def test_engine_creation_result_rejects_missing_engine_id():
    with pytest.raises(ValueError):
        EngineCreationResult.from_json('{"request_headers":{},"server_version":"v"}')


def test_mpc_request_and_session_hold_their_values():
    request = MpcRequest(plaintext_metadata="true", program="p", function="main")
    session = MpcSession(circuit=_xor_and_circuit(), input_from_server=[True])
    assert request == MpcRequest("true", "p", "main")
    assert session.request_headers == {}
    assert session.circuit.output_gates == (2, 3)