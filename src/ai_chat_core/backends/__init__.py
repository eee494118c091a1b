"""Message backends that produce assistant responses."""

from .base import ChatBackend
from .anthropic_sdk import AnthropicSDKBackend
from .scripted import ScriptedBackend

__all__ = ["ChatBackend", "AnthropicSDKBackend", "ScriptedBackend"]
