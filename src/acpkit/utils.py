"""Small helpers shared by the manager, agent and adapter."""

from __future__ import annotations

import os
import time
import uuid
from typing import Any

ASSISTANT_RULES_HEADER = "[Assistant Rules - You MUST follow these instructions]"
WORKSPACE_ACCESS_HEADER = "[Workspace Access]"
USER_REQUEST_HEADER = "[User Request]"


def new_id() -> str:
    """Return a fresh random identifier."""
    return str(uuid.uuid4())


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


def normalize_additional_dirs(workspace: str, additional_dirs: Any = None) -> list[str] | None:
    """
    Normalize the list of extra directories an agent may access.

    Trims whitespace, drops empty and non-string entries, resolves to absolute
    paths, removes duplicates (keeping first occurrence) and drops entries that
    resolve to the workspace root. Returns ``None`` when nothing is left.
    """
    if not isinstance(additional_dirs, (list, tuple)) or not additional_dirs:
        return None

    workspace_root = os.path.abspath(workspace)
    seen: list[str] = []
    for raw in additional_dirs:
        if not isinstance(raw, str):
            continue
        stripped = raw.strip()
        if not stripped:
            continue
        resolved = os.path.abspath(stripped)
        if resolved not in seen:
            seen.append(resolved)

    normalized = [d for d in seen if d != workspace_root]
    return normalized or None


def prepare_first_message(
    content: str,
    preset_context: str | None = None,
    workspace: str | None = None,
    additional_dirs: list[str] | None = None,
) -> str:
    """
    Build the content of the first user message of a conversation.

    Prepends an assistant-rules block when ``preset_context`` is given and a
    workspace-access block when additional directories are configured. The
    blocks use plain bracketed headers rather than XML tags so that external
    CLIs recognize them. Content passes through unchanged when neither block
    applies.
    """
    sections: list[str] = []

    if preset_context:
        sections.append(f"{ASSISTANT_RULES_HEADER}\n{preset_context}")

    # additional_dirs is expected to be normalized already
    dirs = [d for d in (additional_dirs or []) if isinstance(d, str) and d.strip()]
    if dirs:
        primary = (workspace or "").strip() or "(not set)"
        dir_list = "\n".join(f"- {d.strip()}" for d in dirs)
        sections.append(
            f"{WORKSPACE_ACCESS_HEADER}\n"
            f"Primary workspace (cwd): {primary}\n"
            f"Additional accessible directories:\n{dir_list}\n"
            "Use absolute paths when operating outside the primary workspace."
        )

    if not sections:
        return content

    return "\n\n".join(sections) + f"\n\n{USER_REQUEST_HEADER}\n{content}"


def parse_error(error: Any) -> str:
    """Turn an exception (or anything else) into a user-facing message."""
    if isinstance(error, BaseException):
        message = str(error)
        return message or error.__class__.__name__
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)
