"""
One external agent process driving one conversation.

``AcpAgent`` ties an ``AcpConnection`` to an ``AcpAdapter``: protocol updates
become response events on ``on_stream_event``, turn boundaries and permission
prompts become signals on ``on_signal_event``.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from typing import Any

from acp.helpers import ContentBlock, text_block
from acp.schema import ResourceContentBlock

from acpkit.backends import LaunchSpec
from acpkit.errors import AcpError, AgentNotRunningError, AgentStartError, ProtocolError
from acpkit.logging import get_logger
from acpkit.messages import message_to_event
from acpkit.models import PermissionRequest, ResponseEvent
from acpkit.protocol.adapter import DEFAULT_TOOL_CALL_RETENTION, AcpAdapter, SessionUpdate
from acpkit.protocol.connection import AcpConnection
from acpkit.utils import new_id

logger = get_logger("agent")

EventCallback = Callable[[ResponseEvent], Any]


def _file_link(path: str) -> ResourceContentBlock:
    return ResourceContentBlock(
        type="resource_link", name=os.path.basename(path), uri=f"file://{path}"
    )


class AcpAgent:
    """
    Wraps one agent subprocess for one conversation.

    Usage:
        agent = AcpAgent("conv-1", launch, workspace="/repo")
        agent.on_stream_event = print
        await agent.start()
        await agent.send_message("hello")
        await agent.stop()
    """

    def __init__(
        self,
        conversation_id: str,
        launch: LaunchSpec,
        workspace: str | None = None,
        session_id: str | None = None,
        tool_call_retention: float = DEFAULT_TOOL_CALL_RETENTION,
        request_timeout: float | None = None,
        connection: AcpConnection | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.launch = launch
        self.workspace = workspace or os.getcwd()
        self.session_id = session_id
        self.yolo_mode = launch.yolo_mode

        self.on_stream_event: EventCallback | None = None
        self.on_signal_event: EventCallback | None = None
        self.on_session_id_update: Callable[[str], Any] | None = None
        self.on_exit: Callable[[int | None], Any] | None = None

        self.adapter = AcpAdapter(conversation_id, launch.backend, tool_call_retention)
        self.connection = connection or AcpConnection(request_timeout=request_timeout)
        self.connection.on_session_update = self._handle_session_update
        self.connection.on_permission_request = self._handle_permission_request
        self.connection.on_disconnect = self._handle_disconnect

        self._pending_permissions: dict[str, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()
        self._loading = False
        self._prompting = False

    @property
    def is_running(self) -> bool:
        return self.connection.is_connected and self.session_id is not None

    @property
    def is_prompting(self) -> bool:
        return self._prompting

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the agent, complete the handshake and open a session."""
        await self.connection.start(
            self.launch.cli_path,
            self.launch.args,
            cwd=self.workspace,
            env=self.launch.env,
        )
        previous = self.session_id
        try:
            await self.connection.initialize()
            self.session_id = await self._open_session(previous)
        except (AcpError, asyncio.TimeoutError) as e:
            self.connection.force_kill()
            self.session_id = previous
            raise AgentStartError(f"Agent handshake failed: {e}") from e

        if self.session_id != previous and self.on_session_id_update is not None:
            try:
                self.on_session_id_update(self.session_id)
            except Exception as e:
                logger.warning("Session id callback failed: %s", e)
        logger.info("Agent ready for %s (session=%s)", self.conversation_id, self.session_id)

    async def _open_session(self, previous: str | None) -> str:
        if previous:
            # The agent replays history while loading; it is already stored
            self._loading = True
            try:
                await self.connection.load_session(previous, self.workspace)
                return previous
            except ProtocolError as e:
                logger.info("Resume of session %s failed (%s), starting a new one", previous, e)
            finally:
                self._loading = False
        return await self.connection.new_session(self.workspace)

    async def stop(self) -> None:
        """Cancel the running turn, if any, and shut the process down."""
        self._release_permissions()
        if self._prompting and self.session_id and self.connection.is_connected:
            try:
                await self.connection.cancel(self.session_id)
            except AgentNotRunningError:
                pass
        await self.connection.disconnect()
        self.adapter.close()

    def force_kill(self) -> None:
        self._release_permissions()
        self.connection.force_kill()
        self.adapter.close()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send_message(
        self,
        content: str,
        files: list[str] | None = None,
        msg_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Run one prompt turn.

        Emits a ``start`` signal, streams updates while the prompt runs and a
        ``finish`` signal once the agent reports the end of the turn.
        """
        if not self.is_running:
            raise AgentNotRunningError("Agent is not running")

        turn_id = msg_id or new_id()
        self.adapter.reset_message_tracking()
        blocks: list[ContentBlock] = [text_block(content)]
        for path in files or []:
            blocks.append(_file_link(os.path.join(self.workspace, path)))

        self._emit_signal(
            ResponseEvent(type="start", conversation_id=self.conversation_id, msg_id=turn_id)
        )
        self._prompting = True
        try:
            result = await self.connection.prompt(self.session_id, blocks)  # type: ignore[arg-type]
        finally:
            self._prompting = False

        self._emit_signal(
            ResponseEvent(
                type="finish",
                conversation_id=self.conversation_id,
                msg_id=turn_id,
                data={"stop_reason": result.stop_reason},
            )
        )
        return {"success": True, "stop_reason": result.stop_reason}

    def confirm_message(self, confirm_key: str, call_id: str) -> bool:
        """Answer a pending permission request. Returns False if none is pending."""
        future = self._pending_permissions.pop(call_id, None)
        if future is None or future.done():
            logger.warning("No pending permission request for call %s", call_id)
            return False
        future.set_result(confirm_key)
        return True

    # ------------------------------------------------------------------
    # Connection callbacks
    # ------------------------------------------------------------------

    def _handle_session_update(self, session_id: str, update: SessionUpdate) -> None:
        if self._loading:
            return
        for message in self.adapter.convert_session_update(session_id, update):
            self._emit_stream(message_to_event(message))

    async def _handle_permission_request(self, request: PermissionRequest) -> str | None:
        """Pick an option for the agent, or None to decline."""
        if self.yolo_mode:
            allow = next((o for o in request.options if o.kind.startswith("allow")), None)
            option = allow or request.options[0]
            logger.debug("Auto-approving %s with %s", request.call_id, option.option_id)
            return option.option_id

        call_id = request.call_id or new_id()
        future = asyncio.get_running_loop().create_future()
        self._pending_permissions[call_id] = future
        self._emit_signal(
            ResponseEvent(
                type="acp_permission",
                conversation_id=self.conversation_id,
                msg_id=call_id,
                data=request,
            )
        )
        return await future

    def _handle_disconnect(self, returncode: int | None) -> None:
        self._release_permissions()
        if self.on_exit is not None:
            self.on_exit(returncode)

    def _release_permissions(self) -> None:
        for future in self._pending_permissions.values():
            if not future.done():
                future.set_result(None)
        self._pending_permissions.clear()

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def _emit_stream(self, event: ResponseEvent) -> None:
        if self.on_stream_event is None:
            return
        try:
            self.on_stream_event(event)
        except Exception as e:
            logger.warning("Stream handler error: %s", e)

    def _emit_signal(self, event: ResponseEvent) -> None:
        if self.on_signal_event is None:
            return
        try:
            result = self.on_signal_event(event)
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except Exception as e:
            logger.warning("Signal handler error: %s", e)
