"""CLI entry points for orpar.

Commands:
  orpar tools [--json]            List ORPAR tool definitions
  orpar transitions               Show the phase transition table
  orpar replay <script.yaml>      Run a scripted sequence of tool calls
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import yaml

from orpar.config import load_config
from orpar.lifecycle import VALID_TRANSITIONS, format_cycle_summary
from orpar.mcp_server import OrparMCPServer
from orpar.runtime import OrparRuntime
from orpar.store import state_key

logger = logging.getLogger(__name__)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="orpar",
        description="Observe-Reason-Plan-Act-Reflect cycle tools for agents",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable verbose logging",
    )
    subparsers = parser.add_subparsers(dest="command")

    # tools
    p_tools = subparsers.add_parser("tools", help="List ORPAR tool definitions")
    p_tools.add_argument("--json", action="store_true", dest="json_output", help="Output full definitions as JSON")

    # transitions
    subparsers.add_parser("transitions", help="Show the phase transition table")

    # replay
    p_replay = subparsers.add_parser("replay", help="Run a YAML script of tool calls")
    p_replay.add_argument("script", help="Path to the YAML script")
    p_replay.add_argument("--config", default=None, help="Path to orpar.yaml")

    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.INFO, format="%(message)s")

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "tools":
        cmd_tools(args)
    elif args.command == "transitions":
        cmd_transitions(args)
    elif args.command == "replay":
        sys.exit(asyncio.run(cmd_replay(args)))


def cmd_tools(args: argparse.Namespace) -> None:
    """List tool definitions."""
    tools = OrparMCPServer(OrparRuntime()).list_tools()
    if args.json_output:
        print(json.dumps(tools, indent=2))
        return
    for tool in tools:
        summary = tool["description"].splitlines()[0]
        print(f"  {tool['name']:15s} {summary}")


def cmd_transitions(args: argparse.Namespace) -> None:
    """Print the transition table."""
    for src, targets in VALID_TRANSITIONS.items():
        print(f"  {src.value:8s} → {', '.join(t.value for t in targets)}")


def load_script(path: str | Path) -> list[dict]:
    """Load a replay script: a list of {tool, arguments, context} entries.

    The list may be top-level or under a ``calls`` key.
    """
    path = Path(path)
    with open(path) as f:
        raw = yaml.safe_load(f) or []
    if isinstance(raw, dict):
        raw = raw.get("calls", [])
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a list of calls")
    for i, call in enumerate(raw):
        if not isinstance(call, dict) or "tool" not in call:
            raise ValueError(f"{path}: call #{i + 1} needs a 'tool' key")
    return raw


async def cmd_replay(args: argparse.Namespace) -> int:
    """Replay scripted calls. Exit code 1 if any call failed, 2 if the script or config is bad."""
    try:
        config = load_config(args.config)
        calls = load_script(args.script)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    runtime = OrparRuntime(config)
    runtime.init()
    server = OrparMCPServer(runtime)

    failures = 0
    try:
        for call in calls:
            result = await server.call_tool(
                call["tool"], call.get("arguments") or {}, call.get("context") or {},
            )
            if result.get("success") is False:
                failures += 1
            print(json.dumps({"tool": call["tool"], "result": result}, indent=2))
    finally:
        await runtime.shutdown()

    for (agent_id, channel_id), state in runtime.states().items():
        print(format_cycle_summary(state, state_key(agent_id, channel_id)))
    return 1 if failures else 0


if __name__ == "__main__":
    main()
