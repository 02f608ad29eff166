"""
Command-line interface for acpkit.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import yaml
from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from acpkit.backends import BACKENDS, CUSTOM_BACKEND, available_backends, detect_backends
from acpkit.bus import CONFIRMATION_ADD, RESPONSE_STREAM, ResponseBus
from acpkit.config import AgentsConfig, config_search_paths, load_config
from acpkit.errors import AcpError
from acpkit.logging import setup_logging
from acpkit.manager import AcpAgentManager
from acpkit.models import Conversation, ResponseEvent
from acpkit.skills import SkillDistributor, SkillLibrary, detect_global_skills
from acpkit.utils import new_id

console = Console()


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Drive ACP coding agents and manage their skills",
        prog="acpkit",
    )

    # Global options
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output (debug logging)",
    )
    parser.add_argument(
        "-c",
        "--config",
        help="Config file (default: $ACPKIT_CONFIG, ./acpkit.yaml, ~/.acpkit/config.yaml)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # skills
    skills_parser = subparsers.add_parser("skills", help="Managed skill library")
    skills_subparsers = skills_parser.add_subparsers(dest="skills_command", help="Skill commands")

    skills_list = skills_subparsers.add_parser("list", help="List managed skills")
    skills_list.add_argument("--json", action="store_true", help="Output as JSON")

    skills_distribute = skills_subparsers.add_parser(
        "distribute", help="Copy managed skills into a workspace"
    )
    skills_distribute.add_argument("workspace", help="Workspace directory")
    skills_distribute.add_argument(
        "-e",
        "--engine",
        action="append",
        dest="engines",
        choices=["claude", "codex", "gemini"],
        help="Engine directory to reconcile (default: all)",
    )
    skills_distribute.add_argument(
        "--enable",
        action="append",
        dest="enabled",
        help="Optional skill to enable (default: all)",
    )

    skills_native = skills_subparsers.add_parser(
        "native", help="List skills engines created in a workspace"
    )
    skills_native.add_argument("workspace", help="Workspace directory")

    skills_global = skills_subparsers.add_parser(
        "global", help="List skills installed in home-level engine directories"
    )
    skills_global.add_argument("--home", help="Home directory (default: ~)")

    # backends
    subparsers.add_parser("backends", help="List engines and their availability")

    # run
    run_parser = subparsers.add_parser("run", help="Run one prompt against an agent")
    run_parser.add_argument("workspace", help="Workspace directory")
    run_parser.add_argument("prompt", help="Prompt text")
    run_parser.add_argument("-b", "--backend", default="claude", help="Engine id")
    run_parser.add_argument("--agent-id", help="Custom agent id (with --backend custom)")
    run_parser.add_argument(
        "--yolo",
        action="store_true",
        help="Approve every permission request automatically",
    )
    run_parser.add_argument(
        "-a",
        "--add-dir",
        action="append",
        dest="additional_dirs",
        help="Additional directory the agent may access",
    )

    # config
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("path", help="Show config file paths")

    args = parser.parse_args()

    # Setup logging based on verbosity
    if getattr(args, "verbose", False):
        setup_logging("DEBUG", agent_stderr=True)
    else:
        setup_logging("WARNING")

    config = load_config(Path(args.config) if args.config else None)

    if args.command == "skills":
        cmd_skills(args, config)
    elif args.command == "backends":
        cmd_backends(config)
    elif args.command == "run":
        sys.exit(asyncio.run(cmd_run(args, config)))
    elif args.command == "config":
        cmd_config(args, config)
    else:
        parser.print_help()


def cmd_skills(args: argparse.Namespace, config: AgentsConfig) -> None:
    """Skill library commands."""
    library = SkillLibrary(config.skills_dir)
    if args.skills_command == "list":
        _skills_list(library, args.json)
    elif args.skills_command == "distribute":
        _skills_distribute(library, args.workspace, args.engines, args.enabled)
    elif args.skills_command == "native":
        _skills_native(library, args.workspace)
    elif args.skills_command == "global":
        _skills_global(args.home)
    else:
        console.print("[yellow]Usage: acpkit skills <list|distribute|native|global>[/yellow]")


def _skills_list(library: SkillLibrary, as_json: bool) -> None:
    skills = library.list_skills()
    if as_json:
        data = [
            {
                "name": s.name,
                "description": s.description,
                "builtin": s.builtin,
                "path": str(s.path),
            }
            for s in skills
        ]
        console.print_json(json.dumps(data, indent=2))
        return

    table = Table(title=f"Managed Skills ({library.skills_dir})")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    table.add_column("Kind", style="dim")

    for skill in skills:
        kind = "builtin" if skill.builtin else "optional"
        if skill.legacy:
            kind += " (legacy)"
        table.add_row(skill.name, skill.description[:60], kind)

    console.print(table)
    console.print(f"\n[dim]Total: {len(skills)} skills[/dim]")


def _skills_distribute(
    library: SkillLibrary,
    workspace: str,
    engines: list[str] | None,
    enabled: list[str] | None,
) -> None:
    distributor = SkillDistributor(library)
    failed = False
    for engine in engines or ["claude", "codex", "gemini"]:
        result = distributor.distribute_for(engine, workspace, enabled)
        if result is None:
            continue
        console.print(f"\n[bold]{engine}[/bold] [dim]{result.target_dir}[/dim]")
        for name in result.distributed:
            marker = "[green]+[/green]" if name in result.copied else "[dim]=[/dim]"
            console.print(f"  {marker} {name}")
        for name in result.skipped:
            console.print(f"  [yellow]·[/yellow] {name} [dim](not managed, left alone)[/dim]")
        for name in result.removed:
            console.print(f"  [red]-[/red] {name}")
        for name, error in result.errors.items():
            failed = True
            console.print(f"  [red]✗[/red] {name}: {error}")
    if failed:
        sys.exit(1)


def _skills_native(library: SkillLibrary, workspace: str) -> None:
    skills = SkillDistributor(library).detect_engine_native_skills(workspace)
    if not skills:
        console.print("[dim]No engine-native skills found.[/dim]")
        return
    table = Table(title="Engine-native Skills")
    table.add_column("Name", style="cyan")
    table.add_column("Engine")
    table.add_column("SKILL.md")
    table.add_column("Path", style="dim")
    for skill in skills:
        marker = "✓" if skill.has_skill_md else "·"
        table.add_row(skill.name, skill.engine, marker, str(skill.path))
    console.print(table)


def _skills_global(home: str | None) -> None:
    skills = detect_global_skills(home)
    if not skills:
        console.print("[dim]No global skills found.[/dim]")
        return
    table = Table(title="Global Skills")
    table.add_column("Name", style="cyan")
    table.add_column("Engine")
    table.add_column("SKILL.md")
    table.add_column("Path", style="dim")
    for skill in skills:
        marker = "✓" if skill.has_skill_md else "·"
        table.add_row(skill.name, skill.engine, marker, str(skill.path))
    console.print(table)


def cmd_backends(config: AgentsConfig) -> None:
    """List built-in and custom engines."""
    detected = detect_backends()
    available = available_backends(detected, config)

    table = Table(title="Engines")
    table.add_column("Id", style="cyan")
    table.add_column("Name")
    table.add_column("Command", style="dim")
    table.add_column("Status")

    for backend in BACKENDS.values():
        if backend.id == CUSTOM_BACKEND:
            continue
        if config.is_disabled(backend.id):
            status = "[dim]disabled[/dim]"
        elif backend.id in available:
            status = "[green]available[/green]"
        else:
            status = "[yellow]not installed[/yellow]"
        command = " ".join([backend.cli_command or "", *backend.acp_args]).strip()
        table.add_row(backend.id, backend.name, command, status)

    for agent in config.custom_agents:
        status = "[green]enabled[/green]" if agent.enabled else "[dim]disabled[/dim]"
        table.add_row(f"custom:{agent.id}", agent.name or agent.id, agent.default_cli_path, status)

    console.print(table)


async def cmd_run(args: argparse.Namespace, config: AgentsConfig) -> int:
    """Run one prompt and print the streamed reply."""
    conversation = Conversation(
        id=new_id(),
        workspace=str(Path(args.workspace).resolve()),
        backend=args.backend,
        custom_agent_id=args.agent_id,
        additional_dirs=args.additional_dirs,
        yolo_mode=True if args.yolo else None,
    )
    bus = ResponseBus()
    manager = AcpAgentManager(conversation, config=config, bus=bus)

    @bus.on(RESPONSE_STREAM)
    def show(event: ResponseEvent) -> None:
        _print_event(event)

    @bus.on(CONFIRMATION_ADD)
    async def ask(confirmation: dict) -> None:
        console.print(f"\n[bold yellow]{confirmation['title']}[/bold yellow]")
        console.print(f"[dim]{confirmation['description']}[/dim]")
        options = confirmation["options"]
        for index, option in enumerate(options, 1):
            console.print(f"  {index}. {option['label']}")
        choice = await asyncio.to_thread(
            Prompt.ask,
            "Choose",
            choices=[str(i) for i in range(1, len(options) + 1)],
            default="1",
        )
        chosen = options[int(choice) - 1]["value"]
        await manager.confirm(confirmation["id"], confirmation["call_id"], chosen)

    try:
        await manager.send_message(args.prompt, msg_id=new_id())
        # Directive results may trigger a follow-up turn
        await manager.drain()
    except AcpError as e:
        console.print(f"\n[red]Error:[/red] {e}")
        return 1
    finally:
        await manager.stop()
        await manager.close()
    console.print()
    return 0


def _print_event(event: ResponseEvent) -> None:
    if event.type == "content":
        console.print(event.data, end="", markup=False, highlight=False)
    elif event.type == "thought":
        console.print(f"[dim italic]{event.data}[/dim italic]")
    elif event.type == "acp_tool_call":
        tool_call = event.data.get("tool_call", {})
        console.print(
            f"\n[cyan]⚙ {tool_call.get('title') or tool_call.get('kind')}[/cyan]"
            f" [dim]{tool_call.get('status')}[/dim]"
        )
    elif event.type == "plan":
        for entry in event.data.get("entries", []):
            console.print(f"  [dim]- [{entry.get('status', '')}][/dim] {entry.get('content', '')}")
    elif event.type == "system":
        console.print(f"\n[yellow]{event.data}[/yellow]")
    elif event.type == "error":
        console.print(f"\n[red]{event.data}[/red]")


def cmd_config(args: argparse.Namespace, config: AgentsConfig) -> None:
    """Configuration management commands."""
    if args.config_command == "show":
        console.print("[bold]Current Configuration:[/bold]\n")
        console.print(yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=False))
    elif args.config_command == "path":
        console.print("[bold]Config file search paths:[/bold]\n")
        for path in config_search_paths():
            exists = "[green]✓[/green]" if path.exists() else "[dim]·[/dim]"
            console.print(f"  {exists} {path}")
    else:
        console.print("[yellow]Usage: acpkit config <show|path>[/yellow]")


if __name__ == "__main__":
    main()
