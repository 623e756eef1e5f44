"""CLI for inspecting commands and managing global approval rules.

Usage:
    toolgate classify "cd src && make build || echo 'fail'"
    toolgate rules list
    toolgate rules allow-command git ls
    toolgate rules allow-command rm --deny
    toolgate rules remove-command rm
    toolgate rules seed
    toolgate rules allow-mcp-server github
    toolgate rules allow-mcp-tool github search_issues
    toolgate rules sensitive-file "env files" --description "Edits to .env"
"""
from __future__ import annotations

import argparse
import logging
import sys

from rich.console import Console
from rich.table import Table

from .config import GateConfig
from .errors import ToolGateError
from .yaml_config import ToolGateSettings, load_yaml_config
from toolgate.shared.services.approval_rules import RuleKind
from toolgate.shared.services.command_classifier import (
    extract_command_name,
    split_sub_commands,
)
from toolgate.shared.services.rule_store import ApprovalRuleStore

logger = logging.getLogger(__name__)

_KIND_CHOICES = {
    "terminal": RuleKind.TERMINAL,
    "sensitive": RuleKind.SENSITIVE_FILE,
    "mcp": RuleKind.MCP,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toolgate",
        description="Tool-call confirmation rules and command classification",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (default: ~/.toolgate/config.yaml)",
    )
    parser.add_argument(
        "--rules-dir",
        default=None,
        help="Directory holding the global rule files (overrides config)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    classify = commands.add_parser(
        "classify", help="Show the sub-commands and command names of a command line",
    )
    classify.add_argument("command_line", help="Shell command line to classify")

    rules = commands.add_parser("rules", help="Manage global approval rules")
    actions = rules.add_subparsers(dest="action", required=True)

    list_cmd = actions.add_parser("list", help="List global rules")
    list_cmd.add_argument(
        "--kind",
        choices=sorted(_KIND_CHOICES),
        default=None,
        help="Only list one rule type",
    )

    allow_cmd = actions.add_parser(
        "allow-command", help="Auto-approve command names or exact command lines",
    )
    allow_cmd.add_argument("names", nargs="+", help="Command names or quoted command lines")
    allow_cmd.add_argument(
        "--deny", action="store_true", help="Record the entries as not auto-approved",
    )

    actions.add_parser(
        "seed", help="Add the config file's terminal.allow commands that have no rule yet",
    )

    remove_cmd = actions.add_parser("remove-command", help="Delete terminal rules")
    remove_cmd.add_argument("names", nargs="+")

    server_cmd = actions.add_parser(
        "allow-mcp-server", help="Auto-approve every tool of an MCP server",
    )
    server_cmd.add_argument("server")
    server_cmd.add_argument("--deny", action="store_true", help="Revoke the server approval")

    tool_cmd = actions.add_parser("allow-mcp-tool", help="Auto-approve one MCP tool")
    tool_cmd.add_argument("server")
    tool_cmd.add_argument("tool")
    tool_cmd.add_argument("--deny", action="store_true", help="Revoke the tool approval")

    sensitive_cmd = actions.add_parser(
        "sensitive-file", help="Auto-approve edits to a kind of sensitive file",
    )
    sensitive_cmd.add_argument("key", help='File key, e.g. "env files"')
    sensitive_cmd.add_argument("--description", default="")
    sensitive_cmd.add_argument("--deny", action="store_true", help="Record as not auto-approved")
    return parser


def _load_settings(args: argparse.Namespace) -> ToolGateSettings:
    settings = load_yaml_config(args.config)
    if args.rules_dir is not None:
        settings.gate.rules_dir = args.rules_dir
    return settings


def _apply_log_level(config: GateConfig, verbose: bool) -> None:
    if verbose:
        return
    logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))


def _classify(console: Console, command_line: str) -> int:
    table = Table(title="Sub-commands")
    table.add_column("#", justify="right")
    table.add_column("Sub-command")
    table.add_column("Command name", style="cyan")
    for index, sub in enumerate(split_sub_commands(command_line), start=1):
        table.add_row(str(index), sub, extract_command_name(sub) or "-")
    if not table.row_count:
        console.print("[dim]No commands found.[/dim]")
        return 0
    console.print(table)
    return 0


def _yes_no(value: bool) -> str:
    return "[green]yes[/green]" if value else "[red]no[/red]"


def _list_rules(console: Console, store: ApprovalRuleStore, kind: RuleKind | None) -> int:
    kinds = [kind] if kind else list(RuleKind)
    if RuleKind.TERMINAL in kinds:
        table = Table(title=f"Terminal commands ({store.path_for(RuleKind.TERMINAL)})")
        table.add_column("Command", style="cyan")
        table.add_column("Auto-approve")
        for name, allowed in sorted(store.terminal_rules().commands.items()):
            table.add_row(name, _yes_no(allowed))
        console.print(table)
    if RuleKind.SENSITIVE_FILE in kinds:
        table = Table(title=f"Sensitive files ({store.path_for(RuleKind.SENSITIVE_FILE)})")
        table.add_column("File key", style="cyan")
        table.add_column("Description")
        table.add_column("Auto-approve")
        for key, rule in sorted(store.sensitive_file_rules().rules.items()):
            table.add_row(key, rule.description, _yes_no(rule.auto_approve))
        console.print(table)
    if RuleKind.MCP in kinds:
        table = Table(title=f"MCP servers ({store.path_for(RuleKind.MCP)})")
        table.add_column("Server", style="cyan")
        table.add_column("All tools")
        table.add_column("Allowed tools")
        for server, state in sorted(store.mcp_servers().servers.items()):
            table.add_row(server, _yes_no(state.is_server_allowed), ", ".join(sorted(state.allowed_tools)))
        console.print(table)
    return 0


def _run_rules(
    console: Console,
    store: ApprovalRuleStore,
    settings: ToolGateSettings,
    args: argparse.Namespace,
) -> int:
    action = args.action
    if action == "list":
        return _list_rules(console, store, _KIND_CHOICES.get(args.kind) if args.kind else None)

    if action == "allow-command":
        for name in args.names:
            store.set_command_rule(name, not args.deny)
        verb = "Denied" if args.deny else "Allowed"
        console.print(f"{verb}: {', '.join(args.names)}")
        return 0

    if action == "seed":
        seeded = store.seed_commands(settings.seed_terminal_commands)
        if seeded:
            console.print(f"Seeded: {', '.join(seeded)}")
        else:
            console.print("[dim]Nothing to seed.[/dim]")
        return 0

    if action == "remove-command":
        missing = [name for name in args.names if not store.remove_command_rule(name)]
        for name in missing:
            console.print(f"[yellow]No rule for {name}[/yellow]")
        return 1 if missing else 0

    if action == "allow-mcp-server":
        store.set_mcp_server_allowed(args.server, not args.deny)
        console.print(f"MCP server {args.server}: all tools {'revoked' if args.deny else 'allowed'}")
        return 0

    if action == "allow-mcp-tool":
        store.set_mcp_tool_allowed(args.server, args.tool, not args.deny)
        console.print(f"MCP tool {args.server}/{args.tool}: {'revoked' if args.deny else 'allowed'}")
        return 0

    if action == "sensitive-file":
        # Keys derived from confirmation messages are lowercase.
        key = args.key.strip().lower()
        store.set_sensitive_file_rule(key, args.description, not args.deny)
        console.print(f"Sensitive file rule {key!r} saved")
        return 0

    console.print(f"[red]Unknown rules action: {action}[/red]")
    return 2


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    console = Console()
    if args.command == "classify":
        return _classify(console, args.command_line)

    try:
        settings = _load_settings(args)
        _apply_log_level(settings.gate, args.verbose)
        store = ApprovalRuleStore(settings.gate.rules_path)
        store.load()
        return _run_rules(console, store, settings, args)
    except ToolGateError as exc:
        logger.debug("CLI command failed", exc_info=True)
        console.print(f"[red]Error:[/red] {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
