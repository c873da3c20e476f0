"""Persisted state stores."""

from kubeplan.state.store import (
    FileStateStore,
    MemoryStateStore,
    StateStore,
    decode_state,
    encode_state,
)

__all__ = [
    "FileStateStore",
    "MemoryStateStore",
    "StateStore",
    "decode_state",
    "encode_state",
]
