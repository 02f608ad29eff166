"""
Per-conversation agent session manager.

``AcpAgentManager`` owns the agent process of one conversation. It starts or
resumes it on demand (one bootstrap shared by concurrent callers), keeps the
workspace's skill directory current before every turn, persists and
publishes the normalized stream, surfaces permission prompts as
confirmations, runs directives found in the agent's reply once the turn ends
and feeds their results back, and tears the process down on stop or kill.

Example:
    manager = AcpAgentManager(conversation, config=load_config(), bus=bus)
    await manager.send_message("fix the failing test", msg_id="m1")
    ...
    manager.kill()
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import Callable
from functools import partial
from enum import Enum
from typing import Any

from acpkit.agent import AcpAgent
from acpkit.backends import LaunchSpec, resolve_launch, skill_engine_for
from acpkit.bus import CONFIRMATION_ADD, CONFIRMATION_REMOVE, RESPONSE_STREAM, ResponseBus
from acpkit.busy import BusyGuard, busy_guard
from acpkit.config import AgentsConfig
from acpkit.directives import DirectiveContext, DirectiveRegistry, has_directives
from acpkit.logging import get_logger
from acpkit.messages import transform_message
from acpkit.models import (
    Confirmation,
    ConfirmationOption,
    Conversation,
    Message,
    PermissionOption,
    PermissionRequest,
    ResponseEvent,
)
from acpkit.skills import DistributionResult, SkillDistributor, SkillLibrary
from acpkit.storage import ConversationStore
from acpkit.utils import (
    new_id,
    normalize_additional_dirs,
    now_ms,
    parse_error,
    prepare_first_message,
)

logger = get_logger("manager")

# Everything from this marker on is UI-only file listing, not sent to the agent
FILES_MARKER = "[[ACPKIT_FILES]]"

SYSTEM_RESPONSE_HEADER = "[System Response]"

AgentFactory = Callable[[Conversation, LaunchSpec], AcpAgent]


class AgentState(str, Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    READY = "ready"
    STREAMING = "streaming"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    STOPPED = "stopped"


class AcpAgentManager:
    """Drives the agent process of a single conversation."""

    def __init__(
        self,
        conversation: Conversation,
        config: AgentsConfig | None = None,
        store: ConversationStore | None = None,
        bus: ResponseBus | None = None,
        distributor: SkillDistributor | None = None,
        directives: DirectiveRegistry | None = None,
        busy: BusyGuard | None = None,
        agent_factory: AgentFactory | None = None,
    ) -> None:
        self.conversation = conversation
        self.config = config or AgentsConfig()
        self.store = store
        self.bus = bus or ResponseBus()
        self.distributor = distributor or SkillDistributor(SkillLibrary(self.config.skills_dir))
        self.directives = directives or DirectiveRegistry()
        self.busy = busy or busy_guard
        self._agent_factory = agent_factory or self._create_agent

        self.agent: AcpAgent | None = None
        self._state = AgentState.UNINITIALIZED
        self._bootstrap: asyncio.Task | None = None
        self._is_first_message = True
        self._confirmations: dict[str, Confirmation] = {}
        self._tasks: set[asyncio.Task] = set()
        self._timers: set[asyncio.TimerHandle] = set()
        self._killed_agents: weakref.WeakSet[AcpAgent] = weakref.WeakSet()

        # Reply text of the current merge-key, for directive detection
        self._current_msg_id: str | None = None
        self._current_msg_content = ""

    @property
    def conversation_id(self) -> str:
        return self.conversation.id

    @property
    def workspace(self) -> str:
        return self.conversation.workspace

    @property
    def state(self) -> AgentState:
        return self._state

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def _create_agent(self, conversation: Conversation, launch: LaunchSpec) -> AcpAgent:
        return AcpAgent(
            conversation.id,
            launch,
            workspace=conversation.workspace or None,
            session_id=conversation.acp_session_id,
            tool_call_retention=self.config.tool_call_retention_seconds,
            request_timeout=self.config.request_timeout_seconds,
        )

    async def init_agent(self) -> AcpAgent:
        """
        Start (or resume) the agent. Concurrent callers share one attempt.

        A failed attempt is forgotten so the next call starts over.
        """
        if self._bootstrap is None:
            self._bootstrap = asyncio.ensure_future(self._start_agent())
        return await asyncio.shield(self._bootstrap)

    async def _start_agent(self) -> AcpAgent:
        self._state = AgentState.STARTING
        try:
            launch = resolve_launch(self.conversation, self.config)
            agent = self._agent_factory(self.conversation, launch)
            # Callbacks carry their agent so a replaced one cannot touch state
            agent.on_stream_event = partial(self._handle_stream_event, agent)
            agent.on_signal_event = partial(self._handle_signal_event, agent)
            agent.on_session_id_update = self.save_acp_session_id
            agent.on_exit = partial(self._handle_agent_exit, agent)
            self.agent = agent
            await agent.start()
        except BaseException:
            self._bootstrap = None
            self._state = AgentState.STOPPED
            raise
        self._state = AgentState.READY
        return agent

    def distribute_skills(self) -> DistributionResult | None:
        """Reconcile the workspace skill directory of this conversation's engine."""
        engine = skill_engine_for(self.conversation.backend)
        if not self.workspace or engine is None:
            return None
        return self.distributor.distribute_for(
            engine, self.workspace, self.conversation.enabled_skills
        )

    async def start(self) -> AcpAgent:
        await asyncio.to_thread(self.distribute_skills)
        return await self.init_agent()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(
        self,
        content: str,
        files: list[str] | None = None,
        msg_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Send user input to the agent.

        With a ``msg_id`` the input is a user message: it is stored and echoed
        as ``user_content`` before dispatch, and the first one carries the
        conversation preamble. Failures are stored and published as an error
        message and then re-raised.
        """
        self.busy.set_processing(self.conversation_id, True)
        try:
            await asyncio.to_thread(self.distribute_skills)
            agent = await self.init_agent()

            if not (msg_id and content):
                return await agent.send_message(content, files)

            content_to_send = content
            if FILES_MARKER in content_to_send:
                content_to_send = content_to_send.split(FILES_MARKER)[0].rstrip()

            if self._is_first_message:
                content_to_send = prepare_first_message(
                    content_to_send,
                    preset_context=self.conversation.preset_context,
                    workspace=self.workspace,
                    additional_dirs=normalize_additional_dirs(
                        self.workspace, self.conversation.additional_dirs
                    ),
                )

            user_message = Message(
                type="text",
                conversation_id=self.conversation_id,
                id=msg_id,
                msg_id=msg_id,
                position="right",
                content={"content": content},
            )
            self._persist(user_message, update=False)
            self.bus.emit(
                RESPONSE_STREAM,
                ResponseEvent(
                    type="user_content",
                    conversation_id=self.conversation_id,
                    msg_id=msg_id,
                    data=content,
                ),
            )

            self._state = AgentState.STREAMING
            result = await agent.send_message(content_to_send, files, msg_id)
            self._is_first_message = False
            return result
        except Exception as e:
            self.busy.set_processing(self.conversation_id, False)
            if self._state is AgentState.STREAMING:
                self._state = AgentState.READY
            event = ResponseEvent(
                type="error",
                conversation_id=self.conversation_id,
                msg_id=msg_id or new_id(),
                data=parse_error(e),
            )
            message = transform_message(event)
            if message is not None:
                self._persist(message)
            self.bus.emit(RESPONSE_STREAM, event)
            raise

    # ------------------------------------------------------------------
    # Agent callbacks
    # ------------------------------------------------------------------

    def _handle_stream_event(self, agent: AcpAgent, event: ResponseEvent) -> None:
        if agent is not self.agent:
            logger.debug("Dropping stream event from replaced agent of %s", self.conversation_id)
            return
        message = transform_message(event)
        if message is not None:
            self._persist(message)
            if message.type == "text" and event.type == "content":
                text = message.content.get("content", "")
                if message.msg_id != self._current_msg_id:
                    self._current_msg_id = message.msg_id
                    self._current_msg_content = text
                else:
                    self._current_msg_content += text
        self.bus.emit(RESPONSE_STREAM, event)

    def _handle_signal_event(self, agent: AcpAgent, event: ResponseEvent) -> None:
        if agent is not self.agent:
            logger.debug("Dropping %s signal from replaced agent", event.type)
            return
        if event.type == "acp_permission":
            self.add_confirmation(self._confirmation_from(event))
            return

        if event.type == "finish":
            self.busy.set_processing(self.conversation_id, False)
            if self._state in (AgentState.STREAMING, AgentState.AWAITING_CONFIRMATION):
                self._state = AgentState.READY
            text = self._current_msg_content
            if text and has_directives(text):
                self._current_msg_id = None
                self._current_msg_content = ""
                self._spawn(self._run_directives(text))

        self.bus.emit(RESPONSE_STREAM, event)

    def _handle_agent_exit(self, agent: AcpAgent, returncode: int | None) -> None:
        logger.info("Agent for %s exited (code=%s)", self.conversation_id, returncode)
        if agent is not self.agent:
            return
        self._state = AgentState.STOPPED
        self._bootstrap = None
        self.busy.set_processing(self.conversation_id, False)
        self._clear_confirmations()

    async def _run_directives(self, text: str) -> None:
        context = DirectiveContext(
            conversation_id=self.conversation_id, backend=self.conversation.backend
        )
        results = await self.directives.process(text, context)
        for result in results:
            self.bus.emit(
                RESPONSE_STREAM,
                ResponseEvent(
                    type="system",
                    conversation_id=self.conversation_id,
                    msg_id=new_id(),
                    data=result,
                ),
            )
        agent = self.agent
        if not results or agent is None:
            return

        feedback = f"{SYSTEM_RESPONSE_HEADER}\n" + "\n".join(results)
        self.busy.set_processing(self.conversation_id, True)
        self._state = AgentState.STREAMING
        try:
            await agent.send_message(feedback)
        except Exception as e:
            self.busy.set_processing(self.conversation_id, False)
            if self._state is AgentState.STREAMING:
                self._state = AgentState.READY
            logger.warning("Failed to send directive results to agent: %s", e)

    # ------------------------------------------------------------------
    # Confirmations
    # ------------------------------------------------------------------

    def _confirmation_from(self, event: ResponseEvent) -> Confirmation:
        request: PermissionRequest = event.data
        return Confirmation(
            id=event.msg_id,
            call_id=request.call_id or event.msg_id,
            title=request.title or "Permission request",
            description=request.description or "The agent is requesting permission",
            action="command",
            options=[ConfirmationOption(label=o.name, value=o) for o in request.options],
        )

    def add_confirmation(self, confirmation: Confirmation) -> None:
        self._confirmations[confirmation.id] = confirmation
        self._state = AgentState.AWAITING_CONFIRMATION
        self.bus.emit(CONFIRMATION_ADD, _confirmation_payload(self.conversation_id, confirmation))

    def get_confirmations(self) -> list[Confirmation]:
        return list(self._confirmations.values())

    async def confirm(
        self, confirmation_id: str, call_id: str, option: PermissionOption | dict[str, Any] | str
    ) -> bool:
        """Answer a pending confirmation with the chosen option."""
        self._confirmations.pop(confirmation_id, None)
        self.bus.emit(
            CONFIRMATION_REMOVE, {"conversation_id": self.conversation_id, "id": confirmation_id}
        )
        if not self._confirmations and self._state is AgentState.AWAITING_CONFIRMATION:
            self._state = AgentState.STREAMING

        if isinstance(option, PermissionOption):
            option_id = option.option_id
        elif isinstance(option, dict):
            option_id = option.get("optionId") or option.get("option_id", "")
        else:
            option_id = option

        if self._bootstrap is not None:
            await asyncio.shield(self._bootstrap)
        if self.agent is None:
            return False
        return self.agent.confirm_message(option_id, call_id)

    def _clear_confirmations(self) -> None:
        for confirmation_id in list(self._confirmations):
            self.bus.emit(
                CONFIRMATION_REMOVE,
                {"conversation_id": self.conversation_id, "id": confirmation_id},
            )
        self._confirmations.clear()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Stop the agent and forget its session; the next send starts fresh."""
        if self.agent is not None:
            await self.agent.stop()
        self._bootstrap = None
        self.conversation.acp_session_id = None
        self.conversation.acp_session_updated_at = None
        self._state = AgentState.STOPPED
        self.busy.set_processing(self.conversation_id, False)
        self._clear_confirmations()

    def kill(self) -> asyncio.Task:
        """
        Terminate the agent: stop, wait the grace period, then force kill.

        A hard timer force-kills after ``hard_timeout_seconds`` whether or not
        the graceful path has finished. Both paths act on the agent running
        when ``kill`` was called, never on one started afterwards. Returns the
        graceful task.
        """
        agent = self.agent
        loop = asyncio.get_running_loop()
        hard_timer = loop.call_later(self.config.hard_timeout_seconds, self._force_kill, agent)
        self._timers.add(hard_timer)

        async def graceful() -> None:
            try:
                if agent is not None:
                    await agent.stop()
            except Exception as e:
                logger.debug("Graceful stop failed: %s", e)
            try:
                await asyncio.sleep(self.config.grace_period_seconds)
            finally:
                hard_timer.cancel()
                self._timers.discard(hard_timer)
                self._force_kill(agent)

        return self._spawn(graceful())

    def _force_kill(self, agent: AcpAgent | None) -> None:
        if agent is not None:
            if agent in self._killed_agents:
                return
            self._killed_agents.add(agent)
            agent.force_kill()
        if agent is not self.agent:
            logger.info("Killed replaced agent for %s", self.conversation_id)
            return
        self._bootstrap = None
        self._state = AgentState.STOPPED
        self.busy.set_processing(self.conversation_id, False)
        self._clear_confirmations()
        logger.info("Killed agent for %s", self.conversation_id)

    async def drain(self) -> None:
        """Wait for background work (directive follow-ups) to finish."""
        while True:
            tasks = [t for t in self._tasks if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        """Cancel every pending task and timer owned by this manager."""
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self.agent is not None:
            self.agent.adapter.close()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_acp_session_id(self, session_id: str) -> bool:
        """Store the agent's session id for resume. Returns False on failure."""
        self.conversation.acp_session_id = session_id
        self.conversation.acp_session_updated_at = now_ms()
        if self.store is None:
            return False
        try:
            record = self.store.get_conversation(self.conversation_id)
            if not record or record.get("type") != "acp":
                return False
            extra = {
                **(record.get("extra") or {}),
                "acpSessionId": session_id,
                "acpSessionUpdatedAt": self.conversation.acp_session_updated_at,
            }
            self.store.update_conversation(self.conversation_id, {"extra": extra})
        except Exception as e:
            logger.error("Failed to save ACP session id for %s: %s", self.conversation_id, e)
            return False
        logger.info("Saved ACP session id %s for %s", session_id, self.conversation_id)
        return True

    def _persist(self, message: Message, update: bool = True) -> None:
        if self.store is None:
            return
        try:
            if update:
                self.store.add_or_update_message(self.conversation_id, message)
            else:
                self.store.add_message(self.conversation_id, message)
        except Exception as e:
            logger.warning("Failed to persist message %s: %s", message.msg_id, e)

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Background task for %s failed: %s", self.conversation_id, task.exception()
            )


def _confirmation_payload(conversation_id: str, confirmation: Confirmation) -> dict[str, Any]:
    return {
        "conversation_id": conversation_id,
        "id": confirmation.id,
        "call_id": confirmation.call_id,
        "title": confirmation.title,
        "description": confirmation.description,
        "action": confirmation.action,
        "options": [{"label": o.label, "value": o.value} for o in confirmation.options],
    }
