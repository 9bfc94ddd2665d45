"""
Tests for the ConversationManager turn scheduler.

Covers start/stop/reset transitions, turn alternation, persistence after
every turn and discarding of replies that land after a stop or reset.
"""
import asyncio
import json

import pytest

from backrooms.images import ImageSideChannel
from backrooms.states import ConversationState, Message, RunState, SYSTEM_ENTITY, Turn

from fakes import FakeClock, FakeImageGenerator


def drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestStartStop:

    @pytest.mark.asyncio
    async def test_start_seeds_opening_message(self, manager, hub, store):
        viewer = hub.subscribe()
        drain(viewer)

        assert manager.start() is True
        assert manager.run_state is RunState.RUNNING
        assert [m.id for m in manager.state.messages] == ["init-0"]
        assert manager.state.messages[0].entity == SYSTEM_ENTITY
        assert manager.state.total_exchanges == 0

        events = drain(viewer)
        assert events[0]["type"] == "message"
        assert events[-1] == {"type": "status", "isRunning": True}
        assert json.loads(store.path.read_text(encoding="utf-8"))["isRunning"] is True
        manager.stop()

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, manager):
        assert manager.start() is True
        assert manager.start() is False
        assert len(manager.state.messages) == 1
        manager.stop()

    @pytest.mark.asyncio
    async def test_stop_keeps_history(self, manager, store):
        manager.start()
        manager.stop()
        assert manager.run_state is RunState.STOPPED
        assert manager.state.is_running is False
        assert len(manager.state.messages) == 1
        assert store.load().is_running is False

    @pytest.mark.asyncio
    async def test_restart_after_stop_does_not_reseed(self, manager):
        manager.start()
        manager.stop()
        manager.start()
        assert [m.id for m in manager.state.messages] == ["init-0"]
        manager.stop()

    @pytest.mark.asyncio
    async def test_reset_clears_everything(self, manager, hub, store):
        manager.start()
        await manager.run_turn()
        viewer = hub.subscribe()
        drain(viewer)

        manager.reset()
        assert manager.state.messages == []
        assert manager.state.total_exchanges == 0
        assert manager.state.current_turn is Turn.A
        assert {"type": "reset"} in drain(viewer)
        assert store.load().messages == []

    @pytest.mark.asyncio
    async def test_stale_running_flag_does_not_block_start(self, manager):
        manager.state.is_running = True
        assert manager.is_active is False
        assert manager.start() is True
        manager.stop()


class TestTurns:

    @pytest.mark.asyncio
    async def test_run_turn_appends_and_flips(self, manager, chat, store):
        chat.replies = ["alpha speaks", "omega answers"]
        manager.start()

        first = await manager.run_turn()
        second = await manager.run_turn()
        assert first.entity == "CLAUDE_ALPHA"
        assert second.entity == "CLAUDE_OMEGA"
        assert manager.state.total_exchanges == 2
        assert manager.state.current_turn is Turn.A

        saved = store.load()
        assert [m.content for m in saved.messages][-2:] == ["alpha speaks", "omega answers"]
        manager.stop()

    @pytest.mark.asyncio
    async def test_run_turn_when_stopped_does_nothing(self, manager):
        assert await manager.run_turn() is None
        assert manager.state.messages == []

    @pytest.mark.asyncio
    async def test_reply_after_stop_is_discarded(self, manager, chat):
        chat.delay = 0.2
        manager.start()
        pending = asyncio.create_task(manager.run_turn())
        await asyncio.sleep(0.05)
        manager.stop()

        assert await pending is None
        assert [m.id for m in manager.state.messages] == ["init-0"]
        assert manager.state.total_exchanges == 0

    @pytest.mark.asyncio
    async def test_reply_after_reset_is_discarded(self, manager, chat):
        chat.delay = 0.2
        manager.start()
        pending = asyncio.create_task(manager.run_turn())
        await asyncio.sleep(0.05)
        manager.reset()

        assert await pending is None
        assert manager.state.messages == []

    @pytest.mark.asyncio
    async def test_model_failure_still_advances(self, manager, chat):
        chat.error = RuntimeError("rate limited")
        manager.start()
        message = await manager.run_turn()
        assert message is not None
        assert manager.state.total_exchanges == 1
        manager.stop()

    @pytest.mark.asyncio
    async def test_history_is_truncated(self, manager):
        manager.max_messages = 5
        manager.start()
        for _ in range(8):
            await manager.run_turn()
        assert len(manager.state.messages) == 5
        assert manager.state.total_exchanges == 8
        manager.stop()

    @pytest.mark.asyncio
    async def test_significant_replies_reach_memory(self, manager, chat, memory):
        chat.replies = ["I remember when the walls were a different color. " * 4]
        manager.start()
        await manager.run_turn()
        assert len(memory.recent("alpha")) == 1
        manager.stop()

    @pytest.mark.asyncio
    async def test_image_marker_attaches_then_cools_down(self, manager, chat, hub):
        clock = FakeClock()
        generator = FakeImageGenerator()
        manager.images = ImageSideChannel(generator, cooldown=600, clock=clock)
        chat.replies = [
            "The hallway folds. [IMAGE: a flickering exit sign]",
            "Something answers. [IMAGE: a door with no handle]",
        ]
        manager.start()
        viewer = hub.subscribe()
        drain(viewer)

        first = await manager.run_turn()
        clock.advance(60)
        second = await manager.run_turn()

        assert first.image == "https://images.example/backrooms.png"
        assert second.image is None
        assert len(generator.prompts) == 1
        assert "a flickering exit sign" in generator.prompts[0]

        published = [e["message"] for e in drain(viewer) if e["type"] == "message"]
        assert published[0]["image"] == "https://images.example/backrooms.png"
        assert "image" not in published[1]
        manager.stop()


class TestScheduler:

    @pytest.mark.asyncio
    async def test_loop_runs_on_its_own(self, manager, chat):
        manager.initial_delay = 0.01
        manager.start()
        await asyncio.sleep(0.5)
        manager.stop()
        await manager.shutdown()

        entities = [m.entity for m in manager.state.messages[1:]]
        assert len(entities) >= 2
        assert entities[0] == "CLAUDE_ALPHA"
        assert entities[1] == "CLAUDE_OMEGA"

    @pytest.mark.asyncio
    async def test_stop_halts_the_loop(self, manager):
        manager.initial_delay = 0.01
        manager.start()
        await asyncio.sleep(0.2)
        manager.stop()
        count = manager.state.total_exchanges
        await asyncio.sleep(0.2)
        assert manager.state.total_exchanges == count
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_loop_survives_turn_error(self, manager, monkeypatch):
        calls = []

        async def failing():
            calls.append(1)
            raise RuntimeError("turn blew up")

        monkeypatch.setattr(manager, "run_turn", failing)
        manager.initial_delay = 0.01
        manager.start()
        await asyncio.sleep(0.3)
        manager.stop()
        await manager.shutdown()

        assert len(calls) >= 2
        assert manager.state.total_exchanges == 0

    def test_delay_within_bounds(self, manager):
        manager.min_delay, manager.max_delay = 25.0, 35.0
        assert all(25.0 <= manager.next_delay() <= 35.0 for _ in range(200))


class TestBootAndChat:

    @pytest.mark.asyncio
    async def test_resume_with_history(self, manager):
        manager.state = ConversationState(messages=[Message.create("CLAUDE_ALPHA", "before the crash")])
        assert manager.resume_on_boot() is True
        assert manager.is_active
        assert manager.state.messages[0].content == "before the crash"
        manager.stop()

    @pytest.mark.asyncio
    async def test_fresh_boot_waits_for_admin(self, manager):
        assert manager.resume_on_boot(auto_start=False) is False
        assert manager.is_active is False

    @pytest.mark.asyncio
    async def test_fresh_boot_auto_start(self, manager):
        assert manager.resume_on_boot(auto_start=True) is True
        manager.stop()

    @pytest.mark.asyncio
    async def test_visitor_chat_leaves_conversation_untouched(self, manager, chat, memory):
        chat.replies = ["hello, visitor"]
        reply = await manager.chat_with(Turn.B, "User-7", "hi there")
        assert reply == "hello, visitor"
        assert manager.state.messages == []
        assert memory.data["omega"]["chatTurns"] == 1
