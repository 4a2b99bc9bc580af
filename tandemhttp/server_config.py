"""Request handling for a server configured with one fixed program and fixed inputs.

The configuration maps function names to tables from plaintext metadata to the
server's input literal. It is read from ``Tandem.json``, ``Tandem.toml`` and
``TANDEM_``-prefixed environment variables, later sources overriding earlier
ones.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from .types import Circuit, MpcRequest, MpcSession, _blake3

HandlerTable = dict[str, dict[str, str]]
"""Function name -> plaintext metadata -> the server's input literal."""

CONFIG_JSON = "Tandem.json"
CONFIG_TOML = "Tandem.toml"
ENV_PREFIX = "TANDEM_"
FLY_ALLOC_VAR = "FLY_ALLOC_ID"
FLY_INSTANCE_HEADER = "fly-force-instance-id"

_SNIPPET_LEN = 10


def fly_instance_headers(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Headers pinning the client to this instance when running on fly.io."""
    env = os.environ if environ is None else environ
    alloc_id = env.get(FLY_ALLOC_VAR)
    if alloc_id is None:
        return {}
    return {FLY_INSTANCE_HEADER: alloc_id.split("-")[0]}


def _snippet(code: str, index: int) -> str:
    snippet = code[index : index + _SNIPPET_LEN]
    snippet = snippet.replace("\\", "\\\\").replace("\n", "\\n")
    return f"'{snippet}...'"


def program_mismatch(client_program: str, server_program: str) -> str | None:
    """Describe where two programs first differ, or return None if they agree.

    Only the common prefix is compared, so a program that is a prefix of the
    other counts as matching.
    """
    index = next(
        (i for i, (a, b) in enumerate(zip(client_program, server_program)) if a != b),
        None,
    )
    if index is None:
        return None
    client = _snippet(client_program, index)
    server = _snippet(server_program, index)
    return f"Programs differ at character {index}: {client}, {server}"


def _deep_merge(base: Any, override: Any) -> Any:
    if isinstance(base, Mapping) and isinstance(override, Mapping):
        merged = dict(base)
        for key, value in override.items():
            merged[key] = _deep_merge(merged[key], value) if key in merged else value
        return merged
    return override


def _parse_env_value(raw: str) -> Any:
    try:
        return tomllib.loads(f"value = {raw}")["value"]
    except tomllib.TOMLDecodeError:
        return raw


def _read_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if path.suffix == ".json" else tomllib.loads(text)
    except ValueError as exc:
        raise ValueError(f"could not parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain an object at the top level")
    return data


def _check_handlers(value: Any) -> HandlerTable:
    if not isinstance(value, Mapping):
        raise ValueError("'handlers' must map function names to tables")
    table: HandlerTable = {}
    for fn_name, inputs in value.items():
        if not isinstance(inputs, Mapping):
            raise ValueError(f"handlers for {fn_name!r} must map metadata to inputs")
        if not all(isinstance(k, str) and isinstance(v, str) for k, v in inputs.items()):
            raise ValueError(f"handlers for {fn_name!r} must map strings to strings")
        table[str(fn_name)] = dict(inputs)
    return table


def load_config(
    directory: str | os.PathLike[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> HandlerTable:
    """Read and merge the handler configuration; empty if nothing is configured."""
    base = Path.cwd() if directory is None else Path(directory)
    env = os.environ if environ is None else environ

    config: Any = {"handlers": {}}
    config = _deep_merge(config, _read_file(base / CONFIG_JSON))
    config = _deep_merge(config, _read_file(base / CONFIG_TOML))
    for key, raw in env.items():
        if key.upper().startswith(ENV_PREFIX) and len(key) > len(ENV_PREFIX):
            name = key[len(ENV_PREFIX) :].lower()
            config = _deep_merge(config, {name: _parse_env_value(raw)})
    return _check_handlers(config.get("handlers", {}))


def _check_bits(fn_name: str, metadata: str, bits: Sequence[Any]) -> list[bool]:
    values = list(bits)
    if not all(isinstance(bit, bool) for bit in values):
        raise TypeError(f"input of handler {fn_name!r}, {metadata!r} must be booleans")
    return values


class ConfiguredHandler:
    """Chooses circuit and input from fixed tables for requests running one program.

    ``handlers`` maps each function name to its circuit and a table from
    plaintext metadata to the server's input bits.
    """

    def __init__(
        self,
        source_code: str,
        handlers: Mapping[str, tuple[Circuit, Mapping[str, Sequence[bool]]]],
    ) -> None:
        self.source_code = source_code.strip()
        self._handlers: dict[str, tuple[Circuit, dict[str, list[bool]]]] = {}
        for fn_name, (circuit, inputs) in handlers.items():
            if not isinstance(circuit, Circuit):
                raise TypeError(f"handler {fn_name!r} needs a Circuit")
            self._handlers[fn_name] = (
                circuit,
                {meta: _check_bits(fn_name, meta, bits) for meta, bits in inputs.items()},
            )

    def __repr__(self) -> str:
        return f"ConfiguredHandler(functions={sorted(self._handlers)})"

    def __call__(self, request: MpcRequest) -> MpcSession:
        """Return the session for a request, raising ValueError if none is configured."""
        mismatch = program_mismatch(request.program, self.source_code)
        if mismatch is not None:
            raise ValueError(mismatch)

        program_hash = _blake3(request.program.strip().encode("utf-8")).hex()
        entry = self._handlers.get(request.function)
        if entry is None:
            raise ValueError(
                f"could not find a handler for the function '{request.function}' "
                f"(in the program with hash {program_hash}):\n{request.program}"
            )
        circuit, inputs = entry
        bits = inputs.get(request.plaintext_metadata)
        if bits is None:
            raise ValueError(
                f"could not find a handler for metadata '{request.plaintext_metadata}' "
                f"(for the function '{request.function}' in the program with hash "
                f"{program_hash}):\n{request.program} "
            )
        return MpcSession(circuit=circuit, input_from_server=list(bits), request_headers={})