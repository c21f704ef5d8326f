#!/usr/bin/env python3
"""
agent_main.py: Command-line entrypoint for mcpagent.

Usage:
  mcpagent                          # Interactive REPL
  mcpagent "task description"       # One-shot mode
  mcpagent --list-tools             # Connect servers, print the catalog, exit
  mcpagent --mode auto "run tests"  # Allow deny-listed !commands to reach the model

Inside the REPL every line goes through ChatSession.send(), so prefix modes
(!cmd, !!, !*, /help, &server:tool {...}) work the same as in the web host.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from agent_core import (
    VERSION, Config, Colors, Log, LLMError, ToolCall, ToolResult, colored,
)
from agent_llm import AgentObserver, create_llm_client
from agent_mcp import ToolRegistry
from agent_session import MODES, ChatSession, create_session


# =============================================================================
# WORKSPACE
# =============================================================================

def _lock_workspace(raw_path: str) -> Path:
    """Resolve *raw_path*, create it if needed, and pin Config.WORKSPACE.

    Exits if the path cannot be resolved or created; tool servers are
    launched with this directory as their sandbox root.
    """
    try:
        resolved = Path(raw_path).expanduser().resolve()
    except Exception as e:
        print(colored(f"\n[!] Could not resolve workspace path {raw_path!r}: {e}", Colors.RED))
        sys.exit(1)
    try:
        resolved.mkdir(parents=True, exist_ok=True)
    except Exception as e:
        print(colored(f"\n[!] Cannot create workspace {resolved}: {e}", Colors.RED))
        sys.exit(1)
    Config.WORKSPACE = str(resolved)
    return resolved


# =============================================================================
# TERMINAL OUTPUT
# =============================================================================

class TerminalObserver(AgentObserver):
    """Prints streamed answer text, a thinking indicator, and tool progress."""

    def __init__(self):
        self._header_printed = False
        self._thinking       = False

    def reset(self) -> None:
        self._header_printed = False

    @property
    def printed(self) -> bool:
        return self._header_printed

    def write(self, text: str) -> None:
        if not self._header_printed:
            self._header_printed = True
            sys.stdout.write(colored("\nAssistant:\n\n", Colors.CYAN, bold=True))
        sys.stdout.write(text)
        sys.stdout.flush()

    def on_thinking(self, active: bool) -> None:
        if active and not self._thinking:
            sys.stdout.write(colored("  … thinking\n", Colors.GRAY))
            sys.stdout.flush()
        self._thinking = active

    def on_tool_complete(self, call: ToolCall, result: ToolResult) -> None:
        if result.is_error:
            line = colored(f"  ✗ {call.qualified_name}: {str(result.content)[:160]}", Colors.RED)
        else:
            line = colored(f"  ✓ {call.qualified_name}", Colors.GREEN)
        print(line)


def print_banner() -> None:
    banner = r"""
   __  __  ___ ___    _                    _
  |  \/  |/ __| _ \  /_\  __ _ ___ _ _  __| |_
  | |\/| | (__|  _/ / _ \/ _` / -_) ' \/ _|  _|
  |_|  |_|\___|_|  /_/ \_\__, \___|_||_\__|\__|
                         |___/
    """
    print(colored(banner, Colors.MAGENTA, bold=True))


def print_tools(registry: ToolRegistry) -> None:
    status = registry.server_status()
    if not status:
        print("No tool servers configured.")
        return
    print(colored("\nTool servers:", Colors.CYAN, bold=True))
    for name, state in sorted(status.items()):
        color = Colors.GREEN if state == "ready" else Colors.RED
        print(f"  {name:<12} {colored(state, color)}")
    tools = sorted(registry.tools(), key=lambda t: t.qualified_name)
    print(colored(f"\nTools ({len(tools)}):", Colors.CYAN, bold=True))
    for t in tools:
        print(f"  {colored(t.qualified_name, Colors.YELLOW):<40} {t.description}")
    print()


# =============================================================================
# RUN MODES
# =============================================================================

def run_once(session: ChatSession, observer: TerminalObserver, text: str) -> int:
    observer.reset()
    try:
        reply = session.send(text, on_chunk=observer.write)
    except LLMError as e:
        Log.error(f"{e} [{e.code}]" + (" (retryable)" if e.retryable else ""))
        return 1
    if not observer.printed and reply:
        print(reply)
    elif observer.printed:
        print()
    return 0


def repl(session: ChatSession, observer: TerminalObserver) -> int:
    Log.info("Type /help for commands, 'quit' to exit.\n")

    def _prompt() -> str:
        return colored(f"[{session.mode}]> ", Colors.YELLOW, bold=True)

    while True:
        try:
            line = input(_prompt()).strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break
        if not line:
            continue
        if line.lower() in ("quit", "exit", "q"):
            break
        try:
            run_once(session, observer, line)
        except KeyboardInterrupt:
            print(colored("\n  Interrupted.", Colors.YELLOW))
        print()
    return 0


# =============================================================================
# CLI ENTRYPOINT
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcpagent",
        description=f"mcpagent v{VERSION} — coding assistant with subprocess tool servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "TOOL SERVERS:\n"
            "  Built-in git/explorer/runner servers start automatically.\n"
            "  Add your own in ~/.mcpagent/mcp.json:\n"
            '    {"mcpServers": {"name": {"command": "...", "args": [], "env": {}}}}\n\n'
            "PROVIDERS:\n"
            "  LLM_PROVIDER=local|openai|glm, LLM_API_KEY, LLM_MODEL, LLM_URL\n"
        ),
    )
    parser.add_argument("task", nargs="?", help="Task to execute (omit for the REPL)")
    parser.add_argument("--workspace", help="Project directory (default: WORKSPACE or cwd)")
    parser.add_argument("--provider", help="LLM provider: local, openai, glm")
    parser.add_argument("--model", help="Model name")
    parser.add_argument("--url", help="Chat-completions endpoint URL")
    parser.add_argument("--mcp-config", metavar="PATH", help="Tool-server config file")
    parser.add_argument("--no-mcp", action="store_true", help="Start without tool servers")
    parser.add_argument("--no-builtin", action="store_true",
                        help="Skip the built-in git/explorer/runner servers")
    parser.add_argument("--mode", choices=MODES, default="ask", help="Session mode")
    parser.add_argument("--max-turns", type=int, help=f"Turn limit (default {Config.MAX_TURNS})")
    parser.add_argument("--no-stream", action="store_true", help="Disable response streaming")
    parser.add_argument("--list-tools", action="store_true",
                        help="Connect tool servers, list their tools, and exit")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--version", action="version", version=f"v{VERSION}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    workspace = _lock_workspace(args.workspace or Config.WORKSPACE)
    if args.no_mcp:      Config.ENABLE_MCP             = False
    if args.no_builtin:  Config.ENABLE_BUILTIN_SERVERS = False
    if args.max_turns:   Config.MAX_TURNS              = args.max_turns
    if args.no_stream:   Config.LLM_STREAM             = False
    if args.debug:       Config.DEBUG                  = True

    try:
        Config.init()
    except ValueError as e:
        print(colored(f"Config error: {e}", Colors.RED))
        return 1

    if args.list_tools:
        registry = ToolRegistry()
        try:
            registry.connect(args.mcp_config)
            print_tools(registry)
        finally:
            registry.shutdown()
        return 0

    try:
        llm = create_llm_client(args.provider, url=args.url, model=args.model)
    except LLMError as e:
        Log.error(f"{e} [{e.code}]")
        return 1

    if not args.task:
        print_banner()
    Log.info(f"Workspace : {workspace}")
    Log.info(f"LLM       : {llm.provider} → {llm.url}")

    session  = create_session(args.mcp_config, llm=llm, mode=args.mode)
    observer = TerminalObserver()
    session.loop.subscribe(observer)
    try:
        if args.task:
            return run_once(session, observer, args.task)
        return repl(session, observer)
    finally:
        session.close()
        Log.info("Goodbye!")


if __name__ == "__main__":
    sys.exit(main())
