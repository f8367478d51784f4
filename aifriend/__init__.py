"""Persona chat service: storage, prompt composition and inference."""

from . import config as _config
from .chat_function import ChatFunctionClient, ChatFunctionError, chat_with_friend
from .inference import ConfigurationError, GatewayClient, InferenceDecodeError, InferenceError
from .memory_extractor import MemoryCandidate, extract_memory
from .models import Importance, Memory, Persona, PersonaDraft, PersonaValidationError, Turn
from .prompt_composer import ComposedPrompt, compose_prompt, compose_system_prompt, context_window
from .realtime import TurnSubscription
from .store import FriendStore, PersonaNotFoundError, StoreError, build_store

reload_from_environment = _config.reload_from_environment

__all__ = [
    "ChatFunctionClient",
    "ChatFunctionError",
    "ComposedPrompt",
    "ConfigurationError",
    "FriendStore",
    "GatewayClient",
    "Importance",
    "InferenceDecodeError",
    "InferenceError",
    "Memory",
    "MemoryCandidate",
    "Persona",
    "PersonaDraft",
    "PersonaNotFoundError",
    "PersonaValidationError",
    "StoreError",
    "Turn",
    "TurnSubscription",
    "build_store",
    "chat_with_friend",
    "compose_prompt",
    "compose_system_prompt",
    "context_window",
    "extract_memory",
    "reload_from_environment",
]


def __getattr__(name: str):
    if hasattr(_config, name):
        return getattr(_config, name)
    raise AttributeError(name)
