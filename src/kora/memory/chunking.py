"""Conversation chunking.

Turns windows of messages into embeddable chunks: 3-5 message segments
with speaker labels and timestamps, skipping acknowledgement noise.
"""

import re
from dataclasses import dataclass

from .models import Chunk, Message, parse_iso

TRIVIAL_PATTERNS = [
    re.compile(
        r"^(ok|okay|k|yes|no|yeah|yep|nope|sure|thanks|thank you|ty|thx|cool|nice|"
        r"great|good|fine|alright|lol|haha|heh|hmm|ah|oh|uh)\.?$",
        re.IGNORECASE,
    ),
]


@dataclass
class ChunkingConfig:
    """Configuration for chunk construction."""

    min_turns: int = 3
    max_turns: int = 5
    min_content_length: int = 20

    def __post_init__(self) -> None:
        if self.min_turns < 1:
            raise ValueError("min_turns must be at least 1")
        if self.max_turns < self.min_turns:
            raise ValueError("max_turns must be >= min_turns")


DEFAULT_CONFIG = ChunkingConfig()


def is_trivial(content: str) -> bool:
    """Check if a message is filler not worth embedding on its own."""
    trimmed = content.strip()
    return any(pattern.match(trimmed) for pattern in TRIVIAL_PATTERNS)


def format_message(message: Message) -> str:
    """Format a message as a chunk line: '[02:30 PM] User: ...'."""
    try:
        time = parse_iso(message.timestamp).astimezone().strftime("%I:%M %p")
    except ValueError:
        time = message.timestamp
    role = "User" if message.role == "user" else "Assistant"
    return f"[{time}] {role}: {message.content}"


def _build_chunk(messages: list[Message]) -> Chunk:
    return Chunk(
        content="\n".join(format_message(m) for m in messages),
        channel=messages[0].channel,
        turn_count=len(messages),
        start_time=messages[0].timestamp,
        end_time=messages[-1].timestamp,
    )


def create_chunks(
    messages: list[Message], config: ChunkingConfig = DEFAULT_CONFIG
) -> list[Chunk]:
    """Convert a message sequence into chunks.

    Short bursts (fewer than min_turns) become a single chunk only when
    the formatted text clears the length floor and at least one message
    is substantive. Longer sequences use a sliding window of up to
    max_turns messages that advances by size - 1, so consecutive chunks
    share one message. A short tail backs the last window up to
    min_turns messages so every message lands in some window.

    Args:
        messages: Messages in chronological order.
        config: Window and length limits.

    Returns:
        The chunks, possibly empty.
    """
    if not messages:
        return []

    if len(messages) < config.min_turns:
        chunk = _build_chunk(messages)
        if len(chunk.content) >= config.min_content_length and any(
            not is_trivial(m.content) for m in messages
        ):
            return [chunk]
        return []

    chunks: list[Chunk] = []
    i = 0

    while True:
        remaining = len(messages) - i
        if remaining < config.min_turns:
            i = len(messages) - config.min_turns
            remaining = config.min_turns

        size = min(config.max_turns, remaining)
        window = messages[i : i + size]
        chunk = _build_chunk(window)

        if len(chunk.content) >= config.min_content_length and any(
            not is_trivial(m.content) for m in window
        ):
            chunks.append(chunk)

        if i + size >= len(messages):
            break
        i += max(1, size - 1)

    return chunks


def create_recent_chunk(
    messages: list[Message], config: ChunkingConfig = DEFAULT_CONFIG
) -> Chunk | None:
    """Combine the given messages into one chunk for immediate storage.

    Trivial messages stay in the text for context, but a window made only
    of trivial messages, or one below the length floor, yields None.
    """
    if not messages:
        return None

    if all(is_trivial(m.content) for m in messages):
        return None

    chunk = _build_chunk(messages)
    if len(chunk.content) < config.min_content_length:
        return None

    return chunk
