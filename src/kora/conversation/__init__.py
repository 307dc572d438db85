"""Shared conversation log, turn queue and rapid-fire coalescing."""

from .state import ConversationConfig, ConversationState, content_to_text, strip_thinking

__all__ = ["ConversationConfig", "ConversationState", "content_to_text", "strip_thinking"]
