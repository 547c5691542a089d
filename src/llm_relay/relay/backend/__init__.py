"""Backend adapter implementations."""

from llm_relay.relay.backend.base import BackendAdapter, BackendContext
from llm_relay.relay.backend.command import CommandBackend
from llm_relay.relay.backend.scripted import ScriptedBackend, ScriptStep

__all__ = [
    "BackendAdapter",
    "BackendContext",
    "CommandBackend",
    "ScriptStep",
    "ScriptedBackend",
]
