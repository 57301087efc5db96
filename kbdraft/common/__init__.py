"""
kbdraft Common Module

Shared infrastructure: configuration, errors, schemas and the LLM client.
"""

from .config import KbDraftConfig, load_config, validate_config
from .errors import (
    KbDraftError,
    ConfigurationError,
    TransientExternalError,
    MalformedResponseError,
    PersistenceError,
    PublishError,
    InvalidTransitionError,
)
from .llm_client import LLMClient, resolve_provider
from .schemas import EntryState, QueueEntry

__all__ = [
    "KbDraftConfig",
    "load_config",
    "validate_config",
    "KbDraftError",
    "ConfigurationError",
    "TransientExternalError",
    "MalformedResponseError",
    "PersistenceError",
    "PublishError",
    "InvalidTransitionError",
    "LLMClient",
    "resolve_provider",
    "EntryState",
    "QueueEntry",
]
