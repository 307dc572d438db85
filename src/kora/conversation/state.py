"""Shared conversation state across all channels.

One ordered log of turn entries for the whole process. Every channel goes
through the same ConversationState: turns are serialized on a FIFO queue,
the log is persisted after each completed turn, and closely spaced
messages from one sender are coalesced into a single user turn.
"""

import asyncio
import copy
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

from ..memory.models import utc_now_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")

BatchCallback = Callable[[str], Awaitable[None]]

STATE_FILENAME = "conversation-state.json"
RAPID_FIRE_WINDOW = 3.0
BATCH_SEPARATOR = "\n\n"

THINKING_BLOCK_TYPES = frozenset({"thinking", "redacted_thinking"})
_THINK_TAG = re.compile(r"<think>.*?</think>\s*", re.DOTALL)


@dataclass
class ConversationConfig:
    """Configuration for the conversation state."""

    workspace: Path | None = None
    rapid_fire_window: float = RAPID_FIRE_WINDOW  # seconds
    filename: str = STATE_FILENAME

    def __post_init__(self) -> None:
        if self.workspace is None:
            self.workspace = Path.home() / ".kora" / "workspace"
        self.workspace = Path(self.workspace)
        if self.rapid_fire_window < 0:
            raise ValueError("rapid_fire_window must be >= 0")

    @property
    def state_path(self) -> Path:
        """Path of the persisted conversation document."""
        assert self.workspace is not None
        return self.workspace / "conversations" / self.filename


def strip_thinking(content: str | list[Any]) -> str | list[Any]:
    """Remove ephemeral reasoning from assistant content.

    Block lists lose their thinking blocks; strings lose <think> segments.
    """
    if isinstance(content, str):
        return _THINK_TAG.sub("", content).strip()

    return [
        block
        for block in content
        if not (isinstance(block, dict) and block.get("type") in THINKING_BLOCK_TYPES)
    ]


def content_to_text(content: Any) -> str:
    """Flatten entry content to plain text, joining text blocks."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(p for p in parts if p)
    return ""


class ConversationState:
    """Owner of the shared turn log.

    Nothing else mutates the log; callers go through these operations.
    """

    def __init__(self, config: ConversationConfig | None = None) -> None:
        self.config = config or ConversationConfig()
        self._messages: list[dict[str, Any]] = []
        self._last_persisted: str | None = None
        # Resolves once the most recently enqueued turn and all before it have settled
        self._settled: asyncio.Future[None] | None = None

        # Rapid-fire buffers, keyed by sender
        self._pending: dict[str, list[str]] = {}
        self._callbacks: dict[str, BatchCallback] = {}
        self._flush_tasks: dict[str, asyncio.Task[None]] = {}

    # --- Read access ---

    @property
    def messages(self) -> list[dict[str, Any]]:
        """A copy of the log."""
        return copy.deepcopy(self._messages)

    @property
    def message_count(self) -> int:
        return len(self._messages)

    @property
    def last_persisted(self) -> str | None:
        """When the log was last written to disk, if ever."""
        return self._last_persisted

    def get_recent_messages(self, limit: int = 10) -> list[dict[str, Any]]:
        """A copy of the last `limit` entries."""
        if limit <= 0:
            return []
        return copy.deepcopy(self._messages[-limit:])

    def get_last_assistant_text(self) -> str | None:
        """Text of the most recent assistant entry."""
        for entry in reversed(self._messages):
            if entry.get("role") == "assistant":
                return content_to_text(entry.get("content")) or None
        return None

    def messages_for_llm(self) -> list[dict[str, Any]]:
        """The log in chat-completions shape, block content flattened to text."""
        result = []
        for entry in self._messages:
            item = {k: v for k, v in entry.items() if k != "content"}
            item["content"] = content_to_text(entry.get("content"))
            result.append(copy.deepcopy(item))
        return result

    # --- Mutation ---

    def append_user_message(self, content: str) -> None:
        """Append a user entry."""
        self._messages.append({"role": "user", "content": content})

    def append_assistant_response(self, content: str | list[Any]) -> dict[str, Any]:
        """Append an assistant entry with thinking stripped.

        Returns:
            The stored entry.
        """
        entry = {"role": "assistant", "content": strip_thinking(content)}
        self._messages.append(entry)
        return copy.deepcopy(entry)

    def append_raw_message(self, entry: dict[str, Any]) -> None:
        """Append a tool-call or tool-result entry.

        Assistant entries still have their thinking stripped.
        """
        if "role" not in entry:
            raise ValueError("Turn entry must have a role")
        stored = copy.deepcopy(entry)
        if stored["role"] == "assistant" and "content" in stored:
            stored["content"] = strip_thinking(stored["content"] or "")
        self._messages.append(stored)

    def rollback_last_user_message(self) -> bool:
        """Drop the last entry if it is a user message.

        Returns:
            True if an entry was removed.
        """
        if self._messages and self._messages[-1].get("role") == "user":
            self._messages.pop()
            logger.info("Rolled back last user message after failed turn")
            return True
        return False

    # --- Turn queue ---

    def enqueue_turn(self, work: Callable[[], Awaitable[T]]) -> "asyncio.Task[T]":
        """Run `work` after everything enqueued before it has settled.

        A failed or cancelled turn does not block the ones behind it.
        Must be called from a running event loop.

        Returns:
            A task resolving to the result of `work`.
        """
        previous = self._settled
        settled: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._settled = settled

        def mark_settled(_: Any = None) -> None:
            if not settled.done():
                settled.set_result(None)

        def on_done(_: "asyncio.Task[T]") -> None:
            # A turn cancelled while still queued must not release the
            # next one before everything ahead of it has finished.
            if previous is None or previous.done():
                mark_settled()
            else:
                previous.add_done_callback(mark_settled)

        async def run() -> T:
            if previous is not None:
                await asyncio.shield(previous)
            return await work()

        task = asyncio.create_task(run())
        task.add_done_callback(on_done)
        return task

    async def idle(self) -> None:
        """Wait until every enqueued turn has settled."""
        while self._settled is not None and not self._settled.done():
            await asyncio.shield(self._settled)

    # --- Persistence ---

    def persist_state(self) -> bool:
        """Write the log to disk atomically.

        Failures are logged; the in-memory log stays authoritative.

        Returns:
            True if the document was written.
        """
        path = self.config.state_path
        persisted_at = utc_now_iso()
        data = {"messages": self._messages, "lastPersisted": persisted_at}

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, ensure_ascii=False)
                os.replace(tmp_path, path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError):
            logger.exception("Failed to persist conversation state")
            return False

        self._last_persisted = persisted_at
        logger.debug("Persisted %d messages to %s", len(self._messages), path)
        return True

    def load(self) -> int:
        """Replace the log with the persisted document.

        A missing or unreadable document leaves an empty log.

        Returns:
            Number of entries restored.
        """
        path = self.config.state_path
        self._messages = []
        self._last_persisted = None

        if not path.exists():
            logger.info("No prior conversation state, starting fresh")
            return 0

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to load %s: %s, starting fresh", path, e)
            return 0

        messages = data.get("messages") if isinstance(data, dict) else None
        if not isinstance(messages, list):
            logger.warning("Conversation state in %s has no message list, starting fresh", path)
            return 0

        self._messages = [m for m in messages if isinstance(m, dict) and "role" in m]
        self._last_persisted = data.get("lastPersisted")
        logger.info("Restored %d messages from disk", len(self._messages))
        return len(self._messages)

    def request_reload(self) -> "asyncio.Task[int]":
        """Re-read the persisted document once queued turns have settled."""

        async def reload() -> int:
            return self.load()

        return self.enqueue_turn(reload)

    # --- Rapid-fire coalescing ---

    def queue_rapid_fire_message(
        self, content: str, on_batch: BatchCallback, sender: str = "owner"
    ) -> None:
        """Buffer a message and (re)start the sender's debounce timer.

        When the window passes with no new message from the sender, the
        buffered messages are joined with a blank line and handed to
        `on_batch` as one combined message.
        """
        self._pending.setdefault(sender, []).append(content)
        self._callbacks[sender] = on_batch

        timer = self._flush_tasks.pop(sender, None)
        if timer is not None:
            timer.cancel()

        self._flush_tasks[sender] = asyncio.create_task(self._flush_after_window(sender))

    def pending_count(self, sender: str = "owner") -> int:
        """Messages buffered for a sender."""
        return len(self._pending.get(sender, []))

    async def _flush_after_window(self, sender: str) -> None:
        await asyncio.sleep(self.config.rapid_fire_window)
        if self._flush_tasks.get(sender) is asyncio.current_task():
            del self._flush_tasks[sender]
        await self._deliver(sender)

    async def _deliver(self, sender: str) -> None:
        batch = self._pending.pop(sender, [])
        on_batch = self._callbacks.pop(sender, None)
        if not batch or on_batch is None:
            return

        if len(batch) > 1:
            logger.info("Coalesced %d rapid-fire messages from %s", len(batch), sender)

        try:
            await on_batch(BATCH_SEPARATOR.join(batch))
        except Exception:
            logger.exception("Rapid-fire batch handler failed for %s", sender)

    async def flush_pending(self) -> None:
        """Deliver all buffered batches now, without waiting for timers."""
        for sender in list(self._pending):
            timer = self._flush_tasks.pop(sender, None)
            if timer is not None:
                timer.cancel()
            await self._deliver(sender)

    def cancel_pending(self) -> int:
        """Drop all buffered messages and stop their timers.

        Returns:
            Number of messages dropped.
        """
        for timer in self._flush_tasks.values():
            timer.cancel()
        self._flush_tasks.clear()
        self._callbacks.clear()

        dropped = sum(len(batch) for batch in self._pending.values())
        self._pending.clear()
        if dropped:
            logger.info("Dropped %d pending rapid-fire messages", dropped)
        return dropped
