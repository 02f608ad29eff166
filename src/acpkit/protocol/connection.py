"""
Client side of the Agent Client Protocol over a subprocess' stdio.

Framing, request routing and payload validation come from the ``acp`` SDK's
client-side connection. This module owns what the SDK leaves to the host:
the subprocess itself, spawned in its own process group so the whole tree can
be signalled, its stderr, and the ``Client`` callbacks that answer the agent's
own requests (permission prompts and workspace file access).
"""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import Awaitable, Callable, Coroutine
from pathlib import Path
from typing import Any

from acp import (
    PROTOCOL_VERSION,
    InitializeResponse,
    PromptResponse,
    ReadTextFileResponse,
    RequestError,
    RequestPermissionResponse,
    WriteTextFileResponse,
    connect_to_agent,
)
from acp.client.connection import ClientSideConnection
from acp.helpers import ContentBlock
from acp.schema import (
    AllowedOutcome,
    ClientCapabilities,
    DeniedOutcome,
    FileSystemCapability,
    Implementation,
    PermissionOption,
    ToolCallUpdate,
)

from acpkit.errors import AgentNotRunningError, AgentStartError, ProtocolError
from acpkit.logging import AGENT_STDERR_LOGGER, get_logger
from acpkit.models import PermissionRequest

logger = get_logger("protocol.connection")
stderr_logger = get_logger(AGENT_STDERR_LOGGER)

# Agents can emit very long lines (diffs, file contents)
STREAM_LIMIT = 16 * 1024 * 1024

CLIENT_INFO = Implementation(name="acpkit", title="acpkit", version="0.1.0")

UpdateHandler = Callable[[str, Any], Any]
PermissionHandler = Callable[[PermissionRequest], Awaitable[str | None]]
DisconnectHandler = Callable[[int | None], Any]


class WorkspaceClient:
    """
    The ``Client`` half of the protocol, answering requests from the agent.

    Permission prompts are handed to the connection's ``on_permission_request``
    handler; file reads and writes are served from disk, with relative paths
    taken against the session's working directory.
    """

    def __init__(self, connection: AcpConnection) -> None:
        self._connection = connection

    def on_connect(self, conn: ClientSideConnection) -> None:
        logger.debug("ACP client connection established")

    async def request_permission(
        self,
        options: list[PermissionOption],
        session_id: str,
        tool_call: ToolCallUpdate,
        **kwargs: Any,
    ) -> RequestPermissionResponse:
        handler = self._connection.on_permission_request
        option_id = None
        if handler is not None and options:
            request = PermissionRequest(
                session_id=session_id, tool_call=tool_call, options=list(options)
            )
            option_id = await handler(request)
        if option_id is None:
            return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))
        return RequestPermissionResponse(
            outcome=AllowedOutcome(option_id=option_id, outcome="selected")
        )

    async def session_update(self, session_id: str, update: Any, **kwargs: Any) -> None:
        handler = self._connection.on_session_update
        if handler is None:
            return
        try:
            result = handler(session_id, update)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Session update handler error: %s", e)

    async def read_text_file(
        self,
        path: str,
        session_id: str,
        limit: int | None = None,
        line: int | None = None,
        **kwargs: Any,
    ) -> ReadTextFileResponse:
        target = self._connection.resolve_path(path)
        try:
            text = target.read_text(encoding="utf-8")
        except OSError as e:
            raise RequestError.internal_error({"path": str(target), "error": str(e)}) from e
        if line is not None or limit is not None:
            lines = text.splitlines(keepends=True)
            start = max((line or 1) - 1, 0)
            end = start + limit if limit is not None else len(lines)
            text = "".join(lines[start:end])
        return ReadTextFileResponse(content=text)

    async def write_text_file(
        self, content: str, path: str, session_id: str, **kwargs: Any
    ) -> WriteTextFileResponse:
        target = self._connection.resolve_path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            raise RequestError.internal_error({"path": str(target), "error": str(e)}) from e
        return WriteTextFileResponse()

    # Terminals are not offered in the client capabilities

    async def create_terminal(self, *args: Any, **kwargs: Any) -> Any:
        raise RequestError.method_not_found("terminal/create")

    async def terminal_output(self, *args: Any, **kwargs: Any) -> Any:
        raise RequestError.method_not_found("terminal/output")

    async def release_terminal(self, *args: Any, **kwargs: Any) -> Any:
        raise RequestError.method_not_found("terminal/release")

    async def wait_for_terminal_exit(self, *args: Any, **kwargs: Any) -> Any:
        raise RequestError.method_not_found("terminal/wait_for_exit")

    async def kill_terminal(self, *args: Any, **kwargs: Any) -> Any:
        raise RequestError.method_not_found("terminal/kill")

    async def ext_method(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        raise RequestError.method_not_found(method)

    async def ext_notification(self, method: str, params: dict[str, Any]) -> None:
        logger.debug("Ignoring extension notification %s", method)


class AcpConnection:
    """
    An ACP client connection to one agent subprocess.

    Usage:
        conn = AcpConnection()
        conn.on_session_update = handle_update
        await conn.start("claude-code-acp", [], cwd="/repo", env={})
        await conn.initialize()
        session_id = await conn.new_session("/repo")
        await conn.prompt(session_id, [text_block("hello")])
        await conn.disconnect()
    """

    def __init__(
        self,
        request_timeout: float | None = None,
        shutdown_timeout: float = 5.0,
    ) -> None:
        self.request_timeout = request_timeout
        self.shutdown_timeout = shutdown_timeout
        self.cwd: str | None = None

        self.on_session_update: UpdateHandler | None = None
        self.on_permission_request: PermissionHandler | None = None
        self.on_disconnect: DisconnectHandler | None = None

        self.client = WorkspaceClient(self)
        self._conn: ClientSideConnection | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._exit_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._killed = False

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def start(
        self,
        cli_path: str,
        args: list[str] | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        """Spawn the agent and attach the protocol connection to its stdio."""
        if self.is_connected:
            return

        full_env = os.environ.copy()
        if env:
            full_env.update(env)
        self.cwd = cwd
        self._killed = False

        try:
            self._process = await asyncio.create_subprocess_exec(
                cli_path,
                *(args or []),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd or None,
                env=full_env,
                limit=STREAM_LIMIT,
                start_new_session=os.name == "posix",
            )
        except (OSError, ValueError) as e:
            raise AgentStartError(f"Failed to launch agent '{cli_path}': {e}") from e

        logger.info("Started agent %s (pid=%s)", cli_path, self._process.pid)
        self._conn = connect_to_agent(self.client, self._process.stdin, self._process.stdout)
        self._exit_task = asyncio.create_task(self._watch_exit(self._process))
        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process))

    async def disconnect(self) -> None:
        """
        Ask the agent to exit: close stdin and SIGTERM its process group.

        Escalates to SIGKILL if the process is still alive after
        ``shutdown_timeout`` seconds.
        """
        process = self._process
        if process is None or process.returncode is not None:
            await self._close_conn()
            return

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        self._signal(signal.SIGTERM)

        try:
            await asyncio.wait_for(process.wait(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning("Agent pid=%s ignored SIGTERM, killing", process.pid)
            self.force_kill()
            await process.wait()
        await self._close_conn()

    def force_kill(self) -> None:
        """SIGKILL the agent's process group. Safe to call repeatedly."""
        if self._killed:
            return
        self._killed = True
        process = self._process
        if process is None or process.returncode is not None:
            return
        self._signal(signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM)

    def _signal(self, sig: int) -> None:
        process = self._process
        if process is None:
            return
        try:
            if os.name == "posix":
                os.killpg(process.pid, sig)
            elif sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except (ProcessLookupError, PermissionError):
            pass

    async def _close_conn(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await conn.close()
        except Exception as e:
            logger.debug("Closing ACP connection failed: %s", e)

    # ------------------------------------------------------------------
    # Protocol methods
    # ------------------------------------------------------------------

    async def initialize(self) -> InitializeResponse:
        return await self._call(
            lambda conn: conn.initialize(
                protocol_version=PROTOCOL_VERSION,
                client_capabilities=ClientCapabilities(
                    fs=FileSystemCapability(read_text_file=True, write_text_file=True),
                    terminal=False,
                ),
                client_info=CLIENT_INFO,
            )
        )

    async def new_session(self, cwd: str, mcp_servers: list[Any] | None = None) -> str:
        response = await self._call(
            lambda conn: conn.new_session(cwd=cwd, mcp_servers=mcp_servers or [])
        )
        if not response.session_id:
            raise ProtocolError("session/new returned no sessionId")
        return response.session_id

    async def load_session(
        self, session_id: str, cwd: str, mcp_servers: list[Any] | None = None
    ) -> None:
        await self._call(
            lambda conn: conn.load_session(
                cwd=cwd, session_id=session_id, mcp_servers=mcp_servers or []
            )
        )
        await _settle()

    async def prompt(self, session_id: str, blocks: list[ContentBlock]) -> PromptResponse:
        # A turn can take arbitrarily long, so no request timeout here
        response = await self._call(
            lambda conn: conn.prompt(session_id=session_id, prompt=blocks), timeout=None
        )
        await _settle()
        return response

    async def cancel(self, session_id: str) -> None:
        await self._call(lambda conn: conn.cancel(session_id=session_id))

    async def ext_method(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Call a vendor extension method on the agent."""
        return await self._call(lambda conn: conn.ext_method(method, params or {}))

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _call(
        self,
        make_call: Callable[[ClientSideConnection], Coroutine[Any, Any, Any]],
        timeout: float | None | bool = False,
    ) -> Any:
        """
        Run one SDK call, failing fast if the agent process goes away.

        ``RequestError`` responses become ``ProtocolError``; a call still
        outstanding when the process exits raises ``AgentNotRunningError``.
        """
        conn, exit_task = self._conn, self._exit_task
        if conn is None or exit_task is None or not self.is_connected:
            raise AgentNotRunningError("Agent process is not running")
        if timeout is False:
            timeout = self.request_timeout

        call = asyncio.ensure_future(make_call(conn))
        try:
            done, _ = await asyncio.wait(
                {call, exit_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            call.cancel()
            raise

        if call not in done:
            call.cancel()
            if not done:
                raise asyncio.TimeoutError()
            raise AgentNotRunningError("Agent process exited")

        try:
            return call.result()
        except RequestError as e:
            raise ProtocolError(str(e), code=e.code, data=getattr(e, "data", None)) from e
        except (ConnectionError, BrokenPipeError) as e:
            raise AgentNotRunningError(f"Agent pipe closed: {e}") from e

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        logger.info("Agent pid=%s exited with code %s", process.pid, returncode)
        if self.on_disconnect is not None:
            try:
                self.on_disconnect(returncode)
            except Exception as e:
                logger.warning("Disconnect handler error: %s", e)

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        if process.stderr is None:
            return
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            stderr_logger.debug("%s", line.decode("utf-8", errors="replace").rstrip())

    def resolve_path(self, raw: str) -> Path:
        """Resolve a path the agent sent against the session's working directory."""
        if not raw:
            raise RequestError.invalid_params({"path": "missing"})
        path = Path(raw)
        if not path.is_absolute() and self.cwd:
            path = Path(self.cwd) / path
        return path


async def _settle() -> None:
    # Updates read before a response are queued for the SDK's notification
    # worker; yield so they are delivered before the caller resumes.
    for _ in range(3):
        await asyncio.sleep(0)
