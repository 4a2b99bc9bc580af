"""Circuits, session requests and the JSON messages used to create sessions."""

from __future__ import annotations

import json
import struct
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

EngineId = str
Gate = tuple  # ("InContrib",), ("InEval",), ("Xor", a, b), ("And", a, b), ("Not", a)

_GATE_LAYOUT: dict[str, tuple[int, int]] = {
    # name: (variant tag, number of wire operands)
    "InContrib": (0, 0),
    "InEval": (1, 0),
    "Xor": (2, 2),
    "And": (3, 2),
    "Not": (4, 1),
}

_HASH_LEN = 32

# --- BLAKE3 -----------------------------------------------------------------

_MASK = 0xFFFFFFFF
_IV = (
    0x6A09E667, 0xBB67AE85, 0x3C6EF372, 0xA54FF53A,
    0x510E527F, 0x9B05688C, 0x1F83D9AB, 0x5BE0CD19,
)
_PERMUTATION = (2, 6, 3, 10, 7, 0, 4, 13, 1, 11, 12, 5, 9, 14, 15, 8)
_CHUNK_START = 1
_CHUNK_END = 2
_PARENT = 4
_ROOT = 8
_BLOCK_LEN = 64
_CHUNK_LEN = 1024
_BLOCK_WORDS = struct.Struct("<16I")
_OUT_WORDS = struct.Struct("<8I")


def _rotr(value: int, bits: int) -> int:
    return ((value >> bits) | (value << (32 - bits))) & _MASK


def _g(s: list[int], a: int, b: int, c: int, d: int, mx: int, my: int) -> None:
    s[a] = (s[a] + s[b] + mx) & _MASK
    s[d] = _rotr(s[d] ^ s[a], 16)
    s[c] = (s[c] + s[d]) & _MASK
    s[b] = _rotr(s[b] ^ s[c], 12)
    s[a] = (s[a] + s[b] + my) & _MASK
    s[d] = _rotr(s[d] ^ s[a], 8)
    s[c] = (s[c] + s[d]) & _MASK
    s[b] = _rotr(s[b] ^ s[c], 7)


def _compress(
    cv: tuple[int, ...], block: tuple[int, ...], counter: int, block_len: int, flags: int
) -> list[int]:
    s = [*cv, *_IV[:4], counter & _MASK, (counter >> 32) & _MASK, block_len, flags]
    m = list(block)
    for round_index in range(7):
        _g(s, 0, 4, 8, 12, m[0], m[1])
        _g(s, 1, 5, 9, 13, m[2], m[3])
        _g(s, 2, 6, 10, 14, m[4], m[5])
        _g(s, 3, 7, 11, 15, m[6], m[7])
        _g(s, 0, 5, 10, 15, m[8], m[9])
        _g(s, 1, 6, 11, 12, m[10], m[11])
        _g(s, 2, 7, 8, 13, m[12], m[13])
        _g(s, 3, 4, 9, 14, m[14], m[15])
        if round_index < 6:
            m = [m[i] for i in _PERMUTATION]
    return [s[i] ^ s[i + 8] for i in range(8)] + [s[i + 8] ^ cv[i] for i in range(8)]


def _words(block: bytes) -> tuple[int, ...]:
    return _BLOCK_WORDS.unpack(block.ljust(_BLOCK_LEN, b"\x00"))


@dataclass(frozen=True)
class _Output:
    cv: tuple[int, ...]
    block: tuple[int, ...]
    counter: int
    block_len: int
    flags: int

    def chaining_value(self) -> tuple[int, ...]:
        return tuple(_compress(self.cv, self.block, self.counter, self.block_len, self.flags)[:8])

    def root_bytes(self) -> bytes:
        words = _compress(self.cv, self.block, 0, self.block_len, self.flags | _ROOT)
        return _OUT_WORDS.pack(*words[:8])


def _chunk_output(chunk: bytes, counter: int) -> _Output:
    blocks = [chunk[i : i + _BLOCK_LEN] for i in range(0, len(chunk), _BLOCK_LEN)] or [b""]
    cv: tuple[int, ...] = _IV
    for index, block in enumerate(blocks[:-1]):
        start = _CHUNK_START if index == 0 else 0
        cv = tuple(_compress(cv, _words(block), counter, _BLOCK_LEN, start)[:8])
    last = blocks[-1]
    flags = _CHUNK_END | (_CHUNK_START if len(blocks) == 1 else 0)
    return _Output(cv, _words(last), counter, len(last), flags)


def _subtree(chunks: list[bytes], first_counter: int) -> _Output:
    if len(chunks) == 1:
        return _chunk_output(chunks[0], first_counter)
    left = 1 << ((len(chunks) - 1).bit_length() - 1)
    left_cv = _subtree(chunks[:left], first_counter).chaining_value()
    right_cv = _subtree(chunks[left:], first_counter + left).chaining_value()
    return _Output(_IV, left_cv + right_cv, 0, _BLOCK_LEN, _PARENT)


def _blake3(data: bytes) -> bytes:
    """The 32-byte BLAKE3 digest of ``data``."""
    chunks = [data[i : i + _CHUNK_LEN] for i in range(0, len(data), _CHUNK_LEN)] or [b""]
    return _subtree(chunks, 0).root_bytes()


# --- Circuits and session types --------------------------------------------


def _check_wire(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _MASK:
        raise ValueError(f"wire index {value!r} is not an unsigned 32-bit integer")
    return value


def _check_gate(gate: Any) -> Gate:
    gate = tuple(gate)
    if not gate or gate[0] not in _GATE_LAYOUT:
        raise ValueError(f"unknown gate {gate!r}")
    _, arity = _GATE_LAYOUT[gate[0]]
    if len(gate) != arity + 1:
        raise ValueError(f"gate {gate[0]} takes {arity} wire(s), got {gate!r}")
    return (gate[0], *(_check_wire(wire) for wire in gate[1:]))


@dataclass(frozen=True)
class Circuit:
    """A boolean circuit: a list of gates and the indices of its output gates."""

    gates: tuple[Gate, ...]
    output_gates: tuple[int, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "gates", tuple(_check_gate(g) for g in self.gates))
        object.__setattr__(
            self, "output_gates", tuple(_check_wire(o) for o in self.output_gates)
        )

    def _serialize(self) -> bytes:
        out = bytearray(struct.pack("<Q", len(self.gates)))
        for name, *wires in self.gates:
            tag, _ = _GATE_LAYOUT[name]
            out += struct.pack(f"<{1 + len(wires)}I", tag, *wires)
        out += struct.pack(f"<Q{len(self.output_gates)}I", len(self.output_gates), *self.output_gates)
        return bytes(out)

    def blake3_hash(self) -> bytes:
        """A 32-byte BLAKE3 digest identifying this circuit."""
        return _blake3(self._serialize())


@dataclass(frozen=True)
class MpcRequest:
    """A client's request to start a multi-party computation."""

    plaintext_metadata: str
    program: str
    function: str


@dataclass
class MpcSession:
    """What the server needs to run a session: circuit, its own input, client headers."""

    circuit: Circuit
    input_from_server: list[bool]
    request_headers: dict[str, str] = field(default_factory=dict)


HandleMpcRequestFn = Callable[[MpcRequest], MpcSession]
"""Chooses the circuit and server input for a request; raises to reject it."""


def _load_object(data: str | bytes | Mapping[str, Any]) -> Mapping[str, Any]:
    obj = json.loads(data) if isinstance(data, (str, bytes, bytearray)) else data
    if not isinstance(obj, Mapping):
        raise ValueError("expected a JSON object")
    return obj


def _string_field(obj: Mapping[str, Any], name: str) -> str:
    if name not in obj:
        raise ValueError(f"missing field {name!r}")
    value = obj[name]
    if not isinstance(value, str):
        raise ValueError(f"field {name!r} must be a string")
    return value


def _check_hash(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        digest = bytes(value)
    elif isinstance(value, (list, tuple)) and all(
        isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in value
    ):
        digest = bytes(value)
    else:
        raise ValueError("circuit hash must be a sequence of bytes")
    if len(digest) != _HASH_LEN:
        raise ValueError(f"circuit hash must be {_HASH_LEN} bytes long")
    return digest


def _dumps(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"))


@dataclass(frozen=True)
class NewSession:
    """The JSON body a client posts to create a session."""

    plaintext_metadata: str
    program: str
    function: str
    circuit_hash: bytes
    client_version: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "circuit_hash", _check_hash(self.circuit_hash))

    def to_json(self) -> str:
        """Serialise with the hash as an array of byte values."""
        return _dumps(
            {
                "plaintext_metadata": self.plaintext_metadata,
                "program": self.program,
                "function": self.function,
                "circuit_hash": list(self.circuit_hash),
                "client_version": self.client_version,
            }
        )

    @classmethod
    def from_json(cls, data: str | bytes | Mapping[str, Any]) -> NewSession:
        """Parse a JSON text or an already decoded object."""
        obj = _load_object(data)
        if "circuit_hash" not in obj:
            raise ValueError("missing field 'circuit_hash'")
        return cls(
            plaintext_metadata=_string_field(obj, "plaintext_metadata"),
            program=_string_field(obj, "program"),
            function=_string_field(obj, "function"),
            circuit_hash=_check_hash(obj["circuit_hash"]),
            client_version=_string_field(obj, "client_version"),
        )


@dataclass(frozen=True)
class EngineCreationResult:
    """The server's answer to a created session."""

    engine_id: str
    request_headers: dict[str, str]
    server_version: str

    def to_json(self) -> str:
        """Serialise as a JSON object."""
        return _dumps(
            {
                "engine_id": self.engine_id,
                "request_headers": dict(self.request_headers),
                "server_version": self.server_version,
            }
        )

    @classmethod
    def from_json(cls, data: str | bytes | Mapping[str, Any]) -> EngineCreationResult:
        """Parse a JSON text or an already decoded object."""
        obj = _load_object(data)
        headers = obj.get("request_headers")
        if not isinstance(headers, Mapping) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in headers.items()
        ):
            raise ValueError("field 'request_headers' must map strings to strings")
        return cls(
            engine_id=_string_field(obj, "engine_id"),
            request_headers=dict(headers),
            server_version=_string_field(obj, "server_version"),
        )