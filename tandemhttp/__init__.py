"""HTTP transport and session bookkeeping for two-party secure computation."""

__version__ = "0.1.0"

__all__ = [
    "client",
    "msg_queue",
    "responses",
    "server",
    "server_config",
    "state",
    "types",
    "wire",
]