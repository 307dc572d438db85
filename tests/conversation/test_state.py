"""Tests for the shared conversation state."""

import asyncio
import json
from pathlib import Path

import pytest

from kora.conversation import (
    ConversationConfig,
    ConversationState,
    content_to_text,
    strip_thinking,
)


@pytest.fixture
def config(tmp_path: Path) -> ConversationConfig:
    return ConversationConfig(workspace=tmp_path, rapid_fire_window=0.05)


@pytest.fixture
def state(config: ConversationConfig) -> ConversationState:
    return ConversationState(config)


class TestConfig:
    def test_default_workspace(self):
        config = ConversationConfig()
        assert config.workspace == Path.home() / ".kora" / "workspace"

    def test_state_path(self, tmp_path: Path):
        config = ConversationConfig(workspace=tmp_path)
        assert config.state_path == tmp_path / "conversations" / "conversation-state.json"

    def test_negative_window_rejected(self):
        with pytest.raises(ValueError):
            ConversationConfig(rapid_fire_window=-1)


class TestThinking:
    def test_think_tags_removed(self):
        assert strip_thinking("<think>plan the answer</think>\nHello!") == "Hello!"

    def test_thinking_blocks_removed(self):
        blocks = [
            {"type": "thinking", "thinking": "hmm"},
            {"type": "redacted_thinking", "data": "xyz"},
            {"type": "text", "text": "Hi there"},
        ]
        assert strip_thinking(blocks) == [{"type": "text", "text": "Hi there"}]

    def test_content_to_text(self):
        blocks = [{"type": "text", "text": "one"}, {"type": "image"}, {"type": "text", "text": "two"}]
        assert content_to_text(blocks) == "one\ntwo"
        assert content_to_text("plain") == "plain"
        assert content_to_text(None) == ""


class TestLog:
    def test_append_and_read(self, state: ConversationState):
        state.append_user_message("hello")
        stored = state.append_assistant_response("<think>greet</think>hi!")

        assert stored == {"role": "assistant", "content": "hi!"}
        assert state.message_count == 2
        assert state.get_last_assistant_text() == "hi!"

    def test_messages_is_a_copy(self, state: ConversationState):
        state.append_user_message("hello")
        state.messages[0]["content"] = "changed"
        assert state.messages[0]["content"] == "hello"

    def test_recent_messages(self, state: ConversationState):
        for i in range(5):
            state.append_user_message(f"m{i}")
        assert [m["content"] for m in state.get_recent_messages(2)] == ["m3", "m4"]
        assert state.get_recent_messages(0) == []

    def test_messages_for_llm_flattens_blocks(self, state: ConversationState):
        state.append_user_message("ping")
        state.append_assistant_response([{"type": "text", "text": "pong"}])

        assert state.messages_for_llm() == [
            {"role": "user", "content": "ping"},
            {"role": "assistant", "content": "pong"},
        ]

    def test_raw_message_needs_role(self, state: ConversationState):
        with pytest.raises(ValueError):
            state.append_raw_message({"content": "no role"})

    def test_raw_assistant_entry_loses_thinking(self, state: ConversationState):
        """Tool-call entries go through the same stripping as final answers."""
        call = {"id": "c1", "type": "function", "function": {"name": "echo", "arguments": "{}"}}
        state.append_raw_message(
            {"role": "assistant", "content": "<think>private</think>Checking.", "tool_calls": [call]}
        )
        state.append_raw_message({"role": "tool", "tool_call_id": "c1", "content": "<think>kept</think>"})

        assert state.messages[0] == {"role": "assistant", "content": "Checking.", "tool_calls": [call]}
        assert state.messages[1]["content"] == "<think>kept</think>"

    def test_rollback(self, state: ConversationState):
        """Only a trailing user message is removed."""
        assert state.rollback_last_user_message() is False

        state.append_user_message("first")
        state.append_assistant_response("reply")
        state.append_user_message("second")

        assert state.rollback_last_user_message() is True
        assert state.rollback_last_user_message() is False
        assert [m["content"] for m in state.messages] == ["first", "reply"]


class TestPersistence:
    def test_round_trip(self, state: ConversationState, config: ConversationConfig):
        state.append_user_message("remember this")
        state.append_assistant_response("noted")

        assert state.persist_state() is True
        assert state.last_persisted is not None

        data = json.loads(config.state_path.read_text(encoding="utf-8"))
        assert data["lastPersisted"] == state.last_persisted

        restored = ConversationState(config)
        assert restored.load() == 2
        assert restored.messages == state.messages
        assert restored.last_persisted == state.last_persisted

    def test_no_temp_files_left(self, state: ConversationState, config: ConversationConfig):
        state.append_user_message("hello")
        state.persist_state()
        state.persist_state()
        assert [p.name for p in config.state_path.parent.iterdir()] == [config.filename]

    def test_missing_file_starts_empty(self, state: ConversationState):
        assert state.load() == 0
        assert state.messages == []

    def test_corrupt_file_starts_empty(self, state: ConversationState, config: ConversationConfig):
        config.state_path.parent.mkdir(parents=True)
        config.state_path.write_text("{not json", encoding="utf-8")

        state.append_user_message("in memory")
        assert state.load() == 0
        assert state.messages == []

    def test_wrong_shape_starts_empty(self, state: ConversationState, config: ConversationConfig):
        config.state_path.parent.mkdir(parents=True)
        config.state_path.write_text(json.dumps(["not", "a", "document"]), encoding="utf-8")
        assert state.load() == 0

    def test_persist_failure_keeps_memory(self, tmp_path: Path):
        """A write failure is reported, the log itself survives."""
        (tmp_path / "conversations").write_text("a file, not a directory")
        state = ConversationState(ConversationConfig(workspace=tmp_path))
        state.append_user_message("hello")

        assert state.persist_state() is False
        assert state.message_count == 1
        assert state.last_persisted is None


class TestTurnQueue:
    @pytest.mark.asyncio
    async def test_turns_run_in_order(self, state: ConversationState):
        """Later turns wait for earlier ones even when they would finish first."""
        finished = []

        def make_turn(i: int):
            async def turn() -> int:
                await asyncio.sleep(0.01 * (5 - i))
                finished.append(i)
                return i

            return turn

        tasks = [state.enqueue_turn(make_turn(i)) for i in range(5)]
        results = await asyncio.gather(*tasks)

        assert finished == [0, 1, 2, 3, 4]
        assert results == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_failure_does_not_block_queue(self, state: ConversationState):
        async def failing() -> None:
            raise RuntimeError("turn failed")

        async def succeeding() -> str:
            return "ok"

        first = state.enqueue_turn(failing)
        second = state.enqueue_turn(succeeding)

        with pytest.raises(RuntimeError):
            await first
        assert await second == "ok"

    @pytest.mark.asyncio
    async def test_idle_waits_for_all(self, state: ConversationState):
        done = []

        async def slow() -> None:
            await asyncio.sleep(0.02)
            done.append(True)

        state.enqueue_turn(slow)
        state.enqueue_turn(slow)
        await state.idle()

        assert done == [True, True]

    @pytest.mark.asyncio
    async def test_cancelled_queued_turn_keeps_order(self, state: ConversationState):
        """Cancelling a waiting turn does not let the next one jump ahead."""
        events = []
        release = asyncio.Event()

        async def slow() -> None:
            events.append("A start")
            await release.wait()
            events.append("A end")

        def make_turn(name: str):
            async def turn() -> str:
                events.append(f"{name} start")
                return name

            return turn

        first = state.enqueue_turn(slow)
        middle = state.enqueue_turn(make_turn("B"))
        last = state.enqueue_turn(make_turn("C"))

        await asyncio.sleep(0.01)
        middle.cancel()
        await asyncio.sleep(0.01)
        assert events == ["A start"]

        release.set()
        assert await last == "C"
        await first

        assert events == ["A start", "A end", "C start"]
        assert middle.cancelled()

    @pytest.mark.asyncio
    async def test_turn_cancelled_before_starting(self, state: ConversationState):
        """A turn cancelled before it ever ran still releases the queue."""
        ran = []

        async def turn() -> None:
            ran.append(True)

        skipped = state.enqueue_turn(turn)
        skipped.cancel()
        after = state.enqueue_turn(turn)

        await after
        await state.idle()

        assert skipped.cancelled()
        assert ran == [True]

    @pytest.mark.asyncio
    async def test_idle_waits_past_cancelled_turn(self, state: ConversationState):
        events = []
        release = asyncio.Event()

        async def slow() -> None:
            await release.wait()
            events.append("slow done")

        async def quick() -> None:
            events.append("quick done")

        state.enqueue_turn(slow)
        state.enqueue_turn(quick).cancel()

        idle = asyncio.create_task(state.idle())
        await asyncio.sleep(0.01)
        assert not idle.done()

        release.set()
        await idle
        assert events == ["slow done"]

    @pytest.mark.asyncio
    async def test_request_reload(self, state: ConversationState):
        """Reload replaces in-memory entries with the persisted document."""
        state.append_user_message("persisted")
        state.persist_state()
        state.append_user_message("not persisted")

        assert await state.request_reload() == 1
        assert [m["content"] for m in state.messages] == ["persisted"]


class TestRapidFire:
    @pytest.mark.asyncio
    async def test_burst_coalesced(self, state: ConversationState):
        batches = []

        async def on_batch(combined: str) -> None:
            batches.append(combined)

        for part in ("a", "b", "c"):
            state.queue_rapid_fire_message(part, on_batch)
        assert state.pending_count() == 3

        await asyncio.sleep(0.2)

        assert batches == ["a\n\nb\n\nc"]
        assert state.pending_count() == 0

    @pytest.mark.asyncio
    async def test_spaced_messages_separate(self, tmp_path: Path):
        state = ConversationState(ConversationConfig(workspace=tmp_path, rapid_fire_window=0.02))
        batches = []

        async def on_batch(combined: str) -> None:
            batches.append(combined)

        state.queue_rapid_fire_message("a", on_batch)
        await asyncio.sleep(0.15)
        state.queue_rapid_fire_message("b", on_batch)
        await asyncio.sleep(0.15)

        assert batches == ["a", "b"]

    @pytest.mark.asyncio
    async def test_senders_buffered_separately(self, state: ConversationState):
        batches = []

        async def on_batch(combined: str) -> None:
            batches.append(combined)

        state.queue_rapid_fire_message("from cli", on_batch, sender="cli")
        state.queue_rapid_fire_message("from telegram", on_batch, sender="telegram")
        await asyncio.sleep(0.2)

        assert sorted(batches) == ["from cli", "from telegram"]

    @pytest.mark.asyncio
    async def test_handler_error_contained(self, state: ConversationState):
        calls = []

        async def on_batch(combined: str) -> None:
            calls.append(combined)
            raise RuntimeError("handler broke")

        state.queue_rapid_fire_message("first", on_batch)
        await asyncio.sleep(0.2)
        state.queue_rapid_fire_message("second", on_batch)
        await asyncio.sleep(0.2)

        assert calls == ["first", "second"]

    @pytest.mark.asyncio
    async def test_flush_pending(self, tmp_path: Path):
        state = ConversationState(ConversationConfig(workspace=tmp_path, rapid_fire_window=10))
        batches = []

        async def on_batch(combined: str) -> None:
            batches.append(combined)

        state.queue_rapid_fire_message("a", on_batch)
        state.queue_rapid_fire_message("b", on_batch)
        await state.flush_pending()

        assert batches == ["a\n\nb"]
        assert state.pending_count() == 0

    @pytest.mark.asyncio
    async def test_cancel_pending(self, tmp_path: Path):
        state = ConversationState(ConversationConfig(workspace=tmp_path, rapid_fire_window=0.05))
        batches = []

        async def on_batch(combined: str) -> None:
            batches.append(combined)

        state.queue_rapid_fire_message("a", on_batch)
        state.queue_rapid_fire_message("b", on_batch)

        assert state.cancel_pending() == 2
        await asyncio.sleep(0.15)
        assert batches == []
