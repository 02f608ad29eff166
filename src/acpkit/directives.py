"""
Directives embedded in agent replies.

An agent can ask the host to do something by writing a small bracketed
command into its reply text. Directives are detected once the turn has
finished, executed, and their textual results are sent back to the agent.

Grammar:

    [CRON_CREATE]
    name: Daily summary
    schedule: 0 9 * * *
    message: Summarize yesterday's commits
    [/CRON_CREATE]

    [CRON_LIST]

    [CRON_DELETE: <job id>]
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from acpkit.logging import get_logger
from acpkit.utils import new_id, now_ms

logger = get_logger("directives")

CRON_CREATE = "cron_create"
CRON_LIST = "cron_list"
CRON_DELETE = "cron_delete"

_CREATE_PATTERN = re.compile(r"\[CRON_CREATE\]\s*\n?([\s\S]*?)\[/CRON_CREATE\]")
_LIST_PATTERN = re.compile(r"\[CRON_LIST\]")
_DELETE_PATTERN = re.compile(r"\[CRON_DELETE:\s*([^\]\s]+)\s*\]")
_FIELD_PATTERN = re.compile(r"^\s*(name|schedule|message)\s*:\s*(.*)$", re.IGNORECASE)


@dataclass
class Directive:
    """One parsed directive, in the order it appeared in the text."""

    name: str
    args: dict[str, str] = field(default_factory=dict)
    raw: str = ""
    position: int = 0


def has_directives(text: str) -> bool:
    """Cheap check used before the full parse."""
    if not text or "[CRON_" not in text:
        return False
    return bool(
        _CREATE_PATTERN.search(text) or _LIST_PATTERN.search(text) or _DELETE_PATTERN.search(text)
    )


def _parse_create_body(body: str) -> dict[str, str]:
    args: dict[str, str] = {}
    current: str | None = None
    for line in body.splitlines():
        match = _FIELD_PATTERN.match(line)
        if match:
            current = match.group(1).lower()
            args[current] = match.group(2).strip()
        elif current == "message" and line.strip():
            # Messages may wrap onto following lines
            args["message"] = f"{args['message']}\n{line.strip()}".strip()
    return args


def parse_directives(text: str) -> list[Directive]:
    """Extract all directives from ``text`` in order of appearance."""
    if not text:
        return []
    found: list[Directive] = []
    for match in _CREATE_PATTERN.finditer(text):
        found.append(
            Directive(
                name=CRON_CREATE,
                args=_parse_create_body(match.group(1)),
                raw=match.group(0),
                position=match.start(),
            )
        )
    for match in _LIST_PATTERN.finditer(text):
        found.append(Directive(name=CRON_LIST, raw=match.group(0), position=match.start()))
    for match in _DELETE_PATTERN.finditer(text):
        found.append(
            Directive(
                name=CRON_DELETE,
                args={"id": match.group(1)},
                raw=match.group(0),
                position=match.start(),
            )
        )
    found.sort(key=lambda d: d.position)
    return found


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------


@dataclass
class CronJob:
    id: str
    conversation_id: str
    name: str
    schedule: str
    message: str
    backend: str = ""
    created_at: int = field(default_factory=now_ms)


class CronJobStore:
    """In-memory store of scheduled prompts created by agents."""

    def __init__(self) -> None:
        self._jobs: dict[str, CronJob] = {}

    def add(
        self, conversation_id: str, name: str, schedule: str, message: str, backend: str = ""
    ) -> CronJob:
        job = CronJob(
            id=new_id()[:8],
            conversation_id=conversation_id,
            name=name,
            schedule=schedule,
            message=message,
            backend=backend,
        )
        self._jobs[job.id] = job
        return job

    def list_jobs(self, conversation_id: str | None = None) -> list[CronJob]:
        jobs = sorted(self._jobs.values(), key=lambda j: j.created_at)
        if conversation_id is None:
            return jobs
        return [j for j in jobs if j.conversation_id == conversation_id]

    def get(self, job_id: str) -> CronJob | None:
        return self._jobs.get(job_id)

    def remove(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass
class DirectiveContext:
    """What a handler knows about the turn that produced the directive."""

    conversation_id: str
    backend: str = ""


DirectiveHandler = Callable[[Directive, DirectiveContext], Any]


class DirectiveRegistry:
    """
    Maps directive names to handlers.

    Handlers return a result string (or ``None`` for no result) and may be
    sync or async.
    """

    def __init__(self, store: CronJobStore | None = None, register_defaults: bool = True) -> None:
        self.store = store or CronJobStore()
        self._handlers: dict[str, DirectiveHandler] = {}
        if register_defaults:
            self._register_defaults()

    def _register_defaults(self) -> None:
        self.register(CRON_CREATE, self._cron_create)
        self.register(CRON_LIST, self._cron_list)
        self.register(CRON_DELETE, self._cron_delete)

    def register(self, name: str, handler: DirectiveHandler) -> None:
        self._handlers[name] = handler

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def has(self, name: str) -> bool:
        return name in self._handlers

    async def execute(self, directive: Directive, context: DirectiveContext) -> str | None:
        handler = self._handlers.get(directive.name)
        if handler is None:
            logger.warning("No handler for directive %s", directive.name)
            return None
        try:
            result = handler(directive, context)
            if asyncio.iscoroutine(result):
                result = await result
        except Exception as e:
            logger.warning("Directive %s failed: %s", directive.name, e)
            return f"{directive.name} failed: {e}"
        return None if result is None else str(result)

    async def process(self, text: str, context: DirectiveContext) -> list[str]:
        """Execute every directive in ``text``; return the non-empty results."""
        results: list[str] = []
        for directive in parse_directives(text):
            result = await self.execute(directive, context)
            if result:
                results.append(result)
        return results

    # -- default handlers ---------------------------------------------------

    def _cron_create(self, directive: Directive, context: DirectiveContext) -> str:
        name = directive.args.get("name", "").strip()
        schedule = directive.args.get("schedule", "").strip()
        message = directive.args.get("message", "").strip()
        fields = (("name", name), ("schedule", schedule), ("message", message))
        missing = [key for key, value in fields if not value]
        if missing:
            return f"Failed to create scheduled task: missing {', '.join(missing)}"
        job = self.store.add(context.conversation_id, name, schedule, message, context.backend)
        logger.info("Created cron job %s (%s) for %s", job.id, schedule, context.conversation_id)
        return f"Scheduled task created: {name} (id: {job.id}, schedule: {schedule})"

    def _cron_list(self, directive: Directive, context: DirectiveContext) -> str:
        jobs = self.store.list_jobs(context.conversation_id)
        if not jobs:
            return "No scheduled tasks"
        lines = [f"Scheduled tasks ({len(jobs)}):"]
        lines.extend(f"- {j.name} (id: {j.id}, schedule: {j.schedule})" for j in jobs)
        return "\n".join(lines)

    def _cron_delete(self, directive: Directive, context: DirectiveContext) -> str:
        job_id = directive.args.get("id", "")
        job = self.store.get(job_id)
        if job is None or job.conversation_id != context.conversation_id:
            return f"Scheduled task not found: {job_id}"
        self.store.remove(job_id)
        return f"Scheduled task deleted: {job.name} (id: {job_id})"
