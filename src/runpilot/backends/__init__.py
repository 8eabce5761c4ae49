from runpilot.backends.base import (
    BackendExecutionError,
    BackendTimeoutError,
    ReasoningBackend,
)
from runpilot.backends.openai_chat import OpenAIChatBackend
from runpilot.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "BackendExecutionError",
    "BackendTimeoutError",
    "OpenAIChatBackend",
    "ReasoningBackend",
    "ResilientBackend",
    "RetryPolicy",
]
