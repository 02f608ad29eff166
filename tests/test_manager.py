"""Tests for AcpAgentManager, with an in-process agent double."""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from acp.schema import PermissionOption, ToolCallUpdate

from acpkit.backends import LaunchSpec
from acpkit.bus import CONFIRMATION_ADD, CONFIRMATION_REMOVE, RESPONSE_STREAM, ResponseBus
from acpkit.busy import BusyGuard
from acpkit.config import AgentsConfig
from acpkit.errors import AgentNotRunningError, AgentStartError
from acpkit.manager import FILES_MARKER, AcpAgentManager, AgentState
from acpkit.models import Conversation, PermissionRequest, ResponseEvent
from acpkit.skills import SkillDistributor
from acpkit.storage import SqliteConversationStore
from acpkit.utils import ASSISTANT_RULES_HEADER, USER_REQUEST_HEADER, WORKSPACE_ACCESS_HEADER


class FakeAgent:
    """Stands in for AcpAgent: records calls and plays back scripted replies."""

    def __init__(self, conversation: Conversation, launch: LaunchSpec) -> None:
        self.conversation_id = conversation.id
        self.launch = launch
        # A reply is one chunk, or a list of chunks streamed under one msg_id
        self.replies: list[str | list[str]] = []
        self.sent: list[tuple[str, list[str] | None, str | None]] = []
        self.send_errors: dict[int, Exception] = {}
        self.confirmed: list[tuple[str, str]] = []
        self.fail_start = False
        self.fail_send = False
        self.hang_on_stop = False
        self.stop_released = asyncio.Event()
        self.stops = 0
        self.kills = 0
        self.adapter = MagicMock()
        self.on_stream_event = None
        self.on_signal_event = None
        self.on_session_id_update = None
        self.on_exit = None

    async def start(self) -> None:
        await asyncio.sleep(0.05)
        if self.fail_start:
            raise AgentStartError("handshake failed")
        if self.on_session_id_update is not None:
            self.on_session_id_update("sess-1")

    async def send_message(
        self, content: str, files: list[str] | None = None, msg_id: str | None = None
    ) -> dict[str, Any]:
        self.sent.append((content, files, msg_id))
        if self.fail_send:
            raise AgentNotRunningError("agent went away")
        if len(self.sent) in self.send_errors:
            raise self.send_errors[len(self.sent)]
        turn = f"turn-{len(self.sent)}"
        self.on_signal_event(ResponseEvent(type="start", conversation_id="c1", msg_id=turn))
        reply = self.replies.pop(0) if self.replies else "done"
        for chunk in [reply] if isinstance(reply, str) else reply:
            self.on_stream_event(
                ResponseEvent(
                    type="content", conversation_id="c1", msg_id=f"reply-{turn}", data=chunk
                )
            )
        self.on_signal_event(
            ResponseEvent(
                type="finish",
                conversation_id="c1",
                msg_id=turn,
                data={"stop_reason": "end_turn"},
            )
        )
        return {"success": True, "stop_reason": "end_turn"}

    def confirm_message(self, option_id: str, call_id: str) -> bool:
        self.confirmed.append((option_id, call_id))
        return True

    async def stop(self) -> None:
        self.stops += 1
        if self.hang_on_stop:
            await self.stop_released.wait()

    def force_kill(self) -> None:
        self.kills += 1


class Harness:
    """A manager wired to a fake agent factory, a bus recorder and a busy guard."""

    def __init__(
        self,
        conversation: Conversation,
        config: AgentsConfig,
        distributor: SkillDistributor,
        busy: BusyGuard,
        store: SqliteConversationStore | None = None,
        configure=None,
    ) -> None:
        self.agents: list[FakeAgent] = []
        self.events: list[ResponseEvent] = []
        self.added: list[dict] = []
        self.removed: list[dict] = []
        self.busy = busy
        self.bus = ResponseBus()
        self.bus.on(RESPONSE_STREAM, self.events.append)
        self.bus.on(CONFIRMATION_ADD, self.added.append)
        self.bus.on(CONFIRMATION_REMOVE, self.removed.append)

        def factory(conversation: Conversation, launch: LaunchSpec) -> FakeAgent:
            agent = FakeAgent(conversation, launch)
            if configure is not None:
                configure(agent, len(self.agents))
            self.agents.append(agent)
            return agent

        self.manager = AcpAgentManager(
            conversation,
            config=config,
            store=store,
            bus=self.bus,
            distributor=distributor,
            busy=busy,
            agent_factory=factory,
        )

    @property
    def agent(self) -> FakeAgent:
        return self.agents[-1]

    def event_types(self) -> list[str]:
        return [e.type for e in self.events]


@pytest.fixture
def conversation(workspace: Path) -> Conversation:
    return Conversation(id="c1", workspace=str(workspace), backend="claude")


@pytest.fixture
def harness(conversation, config, distributor, busy) -> Harness:
    return Harness(conversation, config, distributor, busy)


# ----------------------------------------------------------------------
# Bootstrap
# ----------------------------------------------------------------------


class TestBootstrap:
    """Tests for starting the agent on demand."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_start(self, harness: Harness) -> None:
        manager = harness.manager

        results = await asyncio.gather(*(manager.init_agent() for _ in range(3)))

        assert len(harness.agents) == 1
        assert all(agent is harness.agent for agent in results)
        assert manager.state is AgentState.READY

    @pytest.mark.asyncio
    async def test_failed_start_is_retried(
        self, conversation, config, distributor, busy
    ) -> None:
        def configure(agent: FakeAgent, index: int) -> None:
            agent.fail_start = index == 0

        harness = Harness(conversation, config, distributor, busy, configure=configure)

        with pytest.raises(AgentStartError):
            await harness.manager.init_agent()
        assert harness.manager.state is AgentState.STOPPED

        agent = await harness.manager.init_agent()

        assert len(harness.agents) == 2
        assert agent is harness.agents[1]

    @pytest.mark.asyncio
    async def test_exit_forgets_agent(self, harness: Harness) -> None:
        await harness.manager.init_agent()

        harness.agent.on_exit(1)

        assert harness.manager.state is AgentState.STOPPED
        await harness.manager.init_agent()
        assert len(harness.agents) == 2

    @pytest.mark.asyncio
    async def test_launch_resolved_from_conversation(self, harness: Harness) -> None:
        await harness.manager.init_agent()

        assert harness.agent.launch.backend == "claude"
        assert harness.agent.launch.cli_path == "claude-code-acp"


# ----------------------------------------------------------------------
# Sending
# ----------------------------------------------------------------------


class TestSendMessage:
    """Tests for user turns."""

    @pytest.mark.asyncio
    async def test_preamble_on_first_message_only(
        self, conversation, config, distributor, busy
    ) -> None:
        conversation.preset_context = "Answer briefly."
        harness = Harness(conversation, config, distributor, busy)

        await harness.manager.send_message("hi", msg_id="m1")
        await harness.manager.send_message("again", msg_id="m2")

        first, second = harness.agent.sent
        assert first[0].startswith(f"{ASSISTANT_RULES_HEADER}\nAnswer briefly.")
        assert first[0].endswith(f"{USER_REQUEST_HEADER}\nhi")
        assert second[0] == "again"

    @pytest.mark.asyncio
    async def test_no_preamble_without_context(self, harness: Harness) -> None:
        await harness.manager.send_message("hi", msg_id="m1")

        assert harness.agent.sent[0] == ("hi", None, "m1")

    @pytest.mark.asyncio
    async def test_workspace_access_on_first_message(
        self, conversation, config, distributor, busy, tmp_path: Path
    ) -> None:
        shared = tmp_path / "shared"
        conversation.additional_dirs = [f"  {shared}  ", "", conversation.workspace, str(shared)]
        harness = Harness(conversation, config, distributor, busy)

        await harness.manager.send_message("read files", msg_id="m1")
        await harness.manager.send_message("more", msg_id="m2")

        first, second = harness.agent.sent
        assert first[0] == (
            f"{WORKSPACE_ACCESS_HEADER}\n"
            f"Primary workspace (cwd): {conversation.workspace}\n"
            f"Additional accessible directories:\n- {shared}\n"
            "Use absolute paths when operating outside the primary workspace.\n\n"
            f"{USER_REQUEST_HEADER}\nread files"
        )
        assert second[0] == "more"

    @pytest.mark.asyncio
    async def test_files_marker_stripped(
        self, conversation, config, distributor, busy, tmp_path: Path
    ) -> None:
        store = SqliteConversationStore(tmp_path / "chat.db")
        harness = Harness(conversation, config, distributor, busy, store=store)
        content = f"look at this\n{FILES_MARKER}\n- a.txt"

        await harness.manager.send_message(content, files=["a.txt"], msg_id="m1")

        assert harness.agent.sent[0] == ("look at this", ["a.txt"], "m1")
        user = store.get_messages("c1")[0]
        assert user.position == "right"
        assert user.content == {"content": content}

    @pytest.mark.asyncio
    async def test_user_content_echoed_before_reply(self, harness: Harness) -> None:
        await harness.manager.send_message("hi", msg_id="m1")

        assert harness.event_types() == ["user_content", "start", "content", "finish"]
        assert harness.events[0].data == "hi"
        assert harness.events[0].msg_id == "m1"

    @pytest.mark.asyncio
    async def test_reply_persisted(
        self, conversation, config, distributor, busy, tmp_path: Path
    ) -> None:
        store = SqliteConversationStore(tmp_path / "chat.db")
        harness = Harness(conversation, config, distributor, busy, store=store)

        await harness.manager.send_message("hi", msg_id="m1")

        contents = [m.content["content"] for m in store.get_messages("c1")]
        assert contents == ["hi", "done"]

    @pytest.mark.asyncio
    async def test_raw_send_skips_echo(self, harness: Harness) -> None:
        await harness.manager.send_message("continue")

        assert "user_content" not in harness.event_types()
        assert harness.agent.sent[0] == ("continue", None, None)

    @pytest.mark.asyncio
    async def test_busy_cleared_at_finish(self, harness: Harness, busy: BusyGuard) -> None:
        seen = []
        harness.bus.on(RESPONSE_STREAM, lambda e: seen.append(busy.is_processing("c1")))

        await harness.manager.send_message("hi", msg_id="m1")

        assert seen[0] is True
        assert not busy.is_processing("c1")

    @pytest.mark.asyncio
    async def test_failure_reported_and_raised(
        self, conversation, config, distributor, busy, tmp_path: Path
    ) -> None:
        def configure(agent: FakeAgent, index: int) -> None:
            agent.fail_send = True

        store = SqliteConversationStore(tmp_path / "chat.db")
        harness = Harness(
            conversation, config, distributor, busy, store=store, configure=configure
        )

        with pytest.raises(AgentNotRunningError):
            await harness.manager.send_message("hi", msg_id="m1")

        error = harness.events[-1]
        assert error.type == "error"
        assert error.data == "agent went away"
        assert not busy.is_processing("c1")
        tips = [m for m in store.get_messages("c1") if m.type == "tips"]
        assert tips[0].content == {"content": "agent went away", "type": "error"}


class TestSkillDistribution:
    """Tests for skill placement ahead of each turn."""

    @pytest.mark.asyncio
    async def test_skills_placed_before_send(self, harness: Harness, workspace: Path) -> None:
        await harness.manager.send_message("hi", msg_id="m1")

        skills = workspace / ".claude" / "skills"
        assert sorted(p.name for p in skills.iterdir() if p.is_dir()) == [
            "cron",
            "office",
            "pdf",
            "xlsx",
        ]

    @pytest.mark.asyncio
    async def test_enabled_skills_respected(
        self, conversation, config, distributor, busy, workspace: Path
    ) -> None:
        conversation.enabled_skills = ["pdf"]
        harness = Harness(conversation, config, distributor, busy)

        await harness.manager.send_message("hi", msg_id="m1")

        skills = workspace / ".claude" / "skills"
        assert (skills / "pdf" / "SKILL.md").exists()
        assert (skills / "cron" / "SKILL.md").exists()
        assert not (skills / "xlsx").exists()

    def test_engine_without_skill_dir(self, conversation, config, distributor, busy) -> None:
        conversation.backend = "goose"
        harness = Harness(conversation, config, distributor, busy)

        assert harness.manager.distribute_skills() is None

    @pytest.mark.asyncio
    async def test_distribution_runs_off_the_event_loop(
        self, harness: Harness, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        threads = []
        distributor = harness.manager.distributor
        original = distributor.distribute_for

        def recording(*args, **kwargs):
            threads.append(threading.current_thread())
            return original(*args, **kwargs)

        monkeypatch.setattr(distributor, "distribute_for", recording)

        await harness.manager.send_message("hi", msg_id="m1")

        assert len(threads) == 1
        assert threads[0] is not threading.main_thread()


# ----------------------------------------------------------------------
# Directives
# ----------------------------------------------------------------------


class TestDirectives:
    """Tests for directives in agent replies."""

    @pytest.mark.asyncio
    async def test_results_fed_back(self, harness: Harness) -> None:
        await harness.manager.init_agent()
        harness.agent.replies = ["Checking.\n[CRON_LIST]"]

        await harness.manager.send_message("what is scheduled?", msg_id="m1")
        await harness.manager.drain()

        system = [e for e in harness.events if e.type == "system"]
        assert [e.data for e in system] == ["No scheduled tasks"]
        assert harness.agent.sent[-1] == ("[System Response]\nNo scheduled tasks", None, None)

    @pytest.mark.asyncio
    async def test_directive_split_across_chunks(self, harness: Harness) -> None:
        await harness.manager.init_agent()
        harness.agent.replies = [["Checking [CRON_", "LIST] now"]]

        await harness.manager.send_message("what is scheduled?", msg_id="m1")
        await harness.manager.drain()

        system = [e for e in harness.events if e.type == "system"]
        assert [e.data for e in system] == ["No scheduled tasks"]
        assert harness.agent.sent[-1] == ("[System Response]\nNo scheduled tasks", None, None)

    @pytest.mark.asyncio
    async def test_feedback_failure_clears_busy(
        self, harness: Harness, busy: BusyGuard, caplog: pytest.LogCaptureFixture
    ) -> None:
        await harness.manager.init_agent()
        harness.agent.replies = ["[CRON_LIST]"]
        harness.agent.send_errors[2] = RuntimeError("stdin closed")

        with caplog.at_level(logging.WARNING, logger="acpkit.manager"):
            await harness.manager.send_message("what is scheduled?", msg_id="m1")
            await harness.manager.drain()

        assert len(harness.agent.sent) == 2
        assert not busy.is_processing("c1")
        assert harness.manager.state is AgentState.READY
        assert "Failed to send directive results to agent: stdin closed" in caplog.text
        assert "Background task" not in caplog.text

    @pytest.mark.asyncio
    async def test_plain_reply_not_fed_back(self, harness: Harness) -> None:
        await harness.manager.send_message("hi", msg_id="m1")
        await harness.manager.drain()

        assert len(harness.agent.sent) == 1


# ----------------------------------------------------------------------
# Confirmations
# ----------------------------------------------------------------------


def _permission_event() -> ResponseEvent:
    request = PermissionRequest(
        session_id="sess-1",
        tool_call=ToolCallUpdate(
            tool_call_id="call-1",
            title="Run tests",
            raw_input={"description": "pytest -q"},
        ),
        options=[
            PermissionOption(option_id="allow", name="Allow", kind="allow_once"),
            PermissionOption(option_id="deny", name="Deny", kind="reject_once"),
        ],
    )
    return ResponseEvent(type="acp_permission", conversation_id="c1", msg_id="call-1", data=request)


class TestConfirmations:
    """Tests for permission prompts surfaced as confirmations."""

    @pytest.mark.asyncio
    async def test_confirmation_published(self, harness: Harness) -> None:
        await harness.manager.init_agent()

        harness.agent.on_signal_event(_permission_event())

        [payload] = harness.added
        assert payload["id"] == "call-1"
        assert payload["call_id"] == "call-1"
        assert payload["title"] == "Run tests"
        assert payload["description"] == "pytest -q"
        assert [o["label"] for o in payload["options"]] == ["Allow", "Deny"]
        assert harness.manager.state is AgentState.AWAITING_CONFIRMATION
        assert len(harness.manager.get_confirmations()) == 1

    @pytest.mark.asyncio
    async def test_confirm_forwards_option(self, harness: Harness) -> None:
        await harness.manager.init_agent()
        harness.agent.on_signal_event(_permission_event())
        option = harness.added[0]["options"][1]["value"]

        assert await harness.manager.confirm("call-1", "call-1", option)

        assert harness.agent.confirmed == [("deny", "call-1")]
        assert harness.removed == [{"conversation_id": "c1", "id": "call-1"}]
        assert harness.manager.get_confirmations() == []

    @pytest.mark.asyncio
    async def test_confirm_accepts_plain_id(self, harness: Harness) -> None:
        await harness.manager.init_agent()

        await harness.manager.confirm("call-1", "call-1", "allow")

        assert harness.agent.confirmed == [("allow", "call-1")]

    @pytest.mark.asyncio
    async def test_confirm_without_agent(self, harness: Harness) -> None:
        assert not await harness.manager.confirm("call-1", "call-1", "allow")

    @pytest.mark.asyncio
    async def test_stop_clears_confirmations(self, harness: Harness) -> None:
        await harness.manager.init_agent()
        harness.agent.on_signal_event(_permission_event())

        await harness.manager.stop()

        assert harness.manager.get_confirmations() == []
        assert harness.removed == [{"conversation_id": "c1", "id": "call-1"}]


# ----------------------------------------------------------------------
# Teardown
# ----------------------------------------------------------------------


class TestStopAndKill:
    """Tests for stop and kill."""

    @pytest.mark.asyncio
    async def test_stop_forgets_session(self, conversation, config, distributor, busy) -> None:
        conversation.acp_session_id = "sess-old"
        harness = Harness(conversation, config, distributor, busy)
        await harness.manager.init_agent()

        await harness.manager.stop()

        assert harness.agent.stops == 1
        assert conversation.acp_session_id is None
        assert harness.manager.state is AgentState.STOPPED

    @pytest.mark.asyncio
    async def test_kill_after_grace(self, harness: Harness) -> None:
        await harness.manager.init_agent()

        await harness.manager.kill()

        assert harness.agent.stops == 1
        assert harness.agent.kills == 1
        assert harness.manager.state is AgentState.STOPPED

    @pytest.mark.asyncio
    async def test_hard_timeout_when_stop_hangs(self, harness: Harness) -> None:
        await harness.manager.init_agent()
        harness.agent.hang_on_stop = True

        harness.manager.kill()
        await asyncio.sleep(0.4)

        assert harness.agent.kills == 1
        await harness.manager.close()
        assert harness.agent.kills == 1

    @pytest.mark.asyncio
    async def test_kill_is_idempotent(self, harness: Harness) -> None:
        await harness.manager.init_agent()

        await harness.manager.kill()
        await asyncio.sleep(0.3)
        await harness.manager.kill()

        assert harness.agent.kills == 1

    @pytest.mark.asyncio
    async def test_close_cancels_timers(self, harness: Harness) -> None:
        await harness.manager.init_agent()
        harness.agent.hang_on_stop = True

        harness.manager.kill()
        await harness.manager.close()
        await asyncio.sleep(0.3)

        assert harness.agent.kills == 0
        harness.agent.adapter.close.assert_called()

    @pytest.mark.asyncio
    async def test_late_kill_spares_restarted_agent(self, harness: Harness) -> None:
        await harness.manager.init_agent()
        old = harness.agent
        old.hang_on_stop = True

        harness.manager.kill()
        await asyncio.sleep(0.3)
        assert old.kills == 1
        assert harness.manager.state is AgentState.STOPPED

        new = await harness.manager.init_agent()
        old.stop_released.set()
        await harness.manager.drain()

        assert new is not old
        assert old.kills == 1
        assert new.kills == 0
        assert harness.manager.state is AgentState.READY

    @pytest.mark.asyncio
    async def test_replaced_agent_callbacks_ignored(self, harness: Harness) -> None:
        await harness.manager.init_agent()
        old = harness.agent
        old.on_exit(0)
        new = await harness.manager.init_agent()

        old.on_exit(-9)
        old.on_stream_event(
            ResponseEvent(type="content", conversation_id="c1", msg_id="stale", data="late")
        )
        old.on_signal_event(_permission_event())

        assert harness.manager.state is AgentState.READY
        assert await harness.manager.init_agent() is new
        assert len(harness.agents) == 2
        assert harness.events == []
        assert harness.manager.get_confirmations() == []


# ----------------------------------------------------------------------
# Session id persistence
# ----------------------------------------------------------------------


class TestSessionPersistence:
    """Tests for storing the agent's session id."""

    @pytest.fixture
    def store(self, tmp_path: Path) -> SqliteConversationStore:
        return SqliteConversationStore(tmp_path / "chat.db")

    @pytest.mark.asyncio
    async def test_saved_on_start(
        self, conversation, config, distributor, busy, store, workspace: Path
    ) -> None:
        store.create_conversation("c1", extra={"workspace": str(workspace)})
        harness = Harness(conversation, config, distributor, busy, store=store)

        await harness.manager.init_agent()

        extra = store.get_conversation("c1")["extra"]
        assert extra["workspace"] == str(workspace)
        assert extra["acpSessionId"] == "sess-1"
        assert extra["acpSessionUpdatedAt"] == conversation.acp_session_updated_at
        assert conversation.acp_session_id == "sess-1"

    def test_other_conversation_types_skipped(
        self, conversation, config, distributor, busy, store
    ) -> None:
        store.create_conversation("c1", type="gemini")
        harness = Harness(conversation, config, distributor, busy, store=store)

        assert not harness.manager.save_acp_session_id("sess-9")
        assert "acpSessionId" not in store.get_conversation("c1")["extra"]
        assert conversation.acp_session_id == "sess-9"

    def test_missing_record(self, conversation, config, distributor, busy, store) -> None:
        harness = Harness(conversation, config, distributor, busy, store=store)

        assert not harness.manager.save_acp_session_id("sess-9")

    def test_no_store(self, harness: Harness) -> None:
        assert not harness.manager.save_acp_session_id("sess-9")
