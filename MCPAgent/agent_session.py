#!/usr/bin/env python3
"""
agent_session.py: Host-side orchestration shared by the CLI and web hosts.

    parse_input()   prefix modes: !cmd  !!  !*  !c  !u  !r  /cmd  &tool  @agent  >file
    ToolActivity    live tool-call records, last successful call, pending batch
    ChatSession     UI transcript around a ConversationLoop; owns the registry

Dependency graph (no cycles):
    agent_core ← agent_mcp ← agent_session
    agent_core ← agent_llm ← agent_session
"""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from agent_core import (
    VERSION, Config, Log, Safety, AgentEvent,
    Role, ToolCall, ToolExecution, ToolResult,
    now_ms, short_id, run_with_timeout, truncate_output,
)
from agent_llm import AgentObserver, ConversationLoop, LLMClient, create_llm_client
from agent_mcp import ToolRegistry, content_text


# =============================================================================
# PREFIX PARSING
# =============================================================================

MODES            = ("ask", "plan", "auto", "discuss", "yolo")
AUTONOMOUS_MODES = frozenset({"auto", "yolo"})

_SHORTCUTS = {
    "!!": "repeat_last",
    "!*": "execute_all",
    "!c": "continue",
    "!u": "undo",
    "!r": "redo",
}

_PREFIXES = {
    "!": "bash",
    "/": "command",
    "@": "agent",
    "&": "tool",
    ">": "file",
}


@dataclass
class ParsedInput:
    mode:     str
    raw:      str
    clean:    str
    prefix:   Optional[str] = None
    shortcut: Optional[str] = None

    @property
    def is_prefixed(self) -> bool:
        return self.prefix is not None


def parse_input(text: str) -> ParsedInput:
    trimmed = text.strip()
    if trimmed in _SHORTCUTS:
        return ParsedInput("bash", text, trimmed, "!", _SHORTCUTS[trimmed])
    if trimmed and trimmed[0] in _PREFIXES:
        return ParsedInput(_PREFIXES[trimmed[0]], text, trimmed[1:].strip(), trimmed[0])
    return ParsedInput("normal", text, trimmed)


def split_head(clean: str) -> Tuple[str, str]:
    """``"name rest of line"`` → ``("name", "rest of line")``."""
    head, _, rest = clean.partition(" ")
    return head, rest.strip()


@dataclass(frozen=True)
class PresetTool:
    tool:        str
    input:       Dict[str, Any]
    description: str


PRESET_TOOL_CALLS: Dict[str, PresetTool] = {
    "git_status": PresetTool("git:git_status",         {},                "Show git status"),
    "git_diff":   PresetTool("git:git_diff",           {},                "Show git diff"),
    "git_log":    PresetTool("git:git_log",            {"limit": 10},     "Show recent commits"),
    "git_branch": PresetTool("git:git_branch",         {},                "List branches"),
    "test":       PresetTool("runner:run_tests",       {},                "Run tests"),
    "build":      PresetTool("runner:build",           {},                "Build project"),
    "lint":       PresetTool("runner:lint",            {},                "Run linter"),
    "format":     PresetTool("runner:format",          {},                "Format code"),
    "detect":     PresetTool("runner:detect_project",  {},                "Detect project type"),
    "ls":         PresetTool("explorer:project_map",   {"max_depth": 2},  "List project structure"),
}


# =============================================================================
# TOOL ACTIVITY
# =============================================================================

PENDING, RUNNING, SUCCESS, ERROR = "pending", "running", "success", "error"


@dataclass
class ActiveToolCall:
    id:       str
    name:     str
    input:    Dict[str, Any] = field(default_factory=dict)
    status:   str = PENDING
    result:   Optional[str] = None
    error:    Optional[str] = None
    started:  int = field(default_factory=now_ms)
    finished: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "input": self.input,
                "status": self.status, "result": self.result, "error": self.error,
                "started": self.started, "finished": self.finished}


@dataclass
class StoredToolCall:
    name:      str
    input:     Dict[str, Any]
    timestamp: int = field(default_factory=now_ms)


class ToolActivity:
    """Executes tool calls on behalf of the host and records them for display.

    Every tracked call moves ``pending → running → success|error`` (or starts
    at running). Calls that time out are abandoned, not cancelled.
    """

    def __init__(self, registry: ToolRegistry, timeout: Optional[float] = None,
                 max_workers: int = 8):
        self.registry    = registry
        self.timeout     = timeout or Config.TOOL_TIMEOUT
        self.max_workers = max_workers
        self._calls: List[ActiveToolCall] = []
        self._last:  Optional[StoredToolCall] = None
        self._lock = threading.Lock()
        self._listeners: List[Callable[[ActiveToolCall], None]] = []

    @property
    def active_calls(self) -> List[ActiveToolCall]:
        with self._lock:
            return list(self._calls)

    @property
    def pending_calls(self) -> List[ActiveToolCall]:
        with self._lock:
            return [c for c in self._calls if c.status == PENDING]

    @property
    def last_tool_call(self) -> Optional[StoredToolCall]:
        return self._last

    def add_listener(self, fn: Callable[[ActiveToolCall], None]) -> None:
        self._listeners.append(fn)

    def clear(self, keep_pending: bool = True) -> None:
        with self._lock:
            self._calls = [c for c in self._calls if keep_pending and c.status == PENDING]

    def _track(self, name: str, tool_input: Dict[str, Any], status: str,
               call_id: Optional[str] = None) -> ActiveToolCall:
        call = ActiveToolCall(id=call_id or f"{name}_{now_ms()}_{short_id()}",
                              name=name, input=dict(tool_input), status=status)
        with self._lock:
            self._calls.append(call)
        self._notify(call)
        return call

    def _set(self, call: ActiveToolCall, status: str, execution: Optional[ToolExecution] = None) -> None:
        with self._lock:
            call.status = status
            if execution is not None:
                if execution.success:
                    call.result = json.dumps(execution.data, ensure_ascii=False,
                                             default=str)[:200]
                else:
                    call.error = execution.error
            if status in (SUCCESS, ERROR):
                call.finished = now_ms()
        self._notify(call)

    def _notify(self, call: ActiveToolCall) -> None:
        for fn in list(self._listeners):
            try:
                fn(call)
            except Exception as e:
                Log.warning(f"Tool activity listener failed: {e}")

    def _dispatch(self, call: ActiveToolCall) -> ToolExecution:
        self._set(call, RUNNING)
        try:
            execution = run_with_timeout(
                lambda: self.registry.execute_tool(call.name, call.input), self.timeout)
        except Exception as e:
            execution = ToolExecution(False, call.name, call.name.partition(":")[0],
                                      error=str(e))
        self._set(call, SUCCESS if execution.success else ERROR, execution)
        if execution.success:
            self._last = StoredToolCall(call.name, dict(call.input))
        return execution

    def execute(self, name: str, tool_input: Optional[Dict[str, Any]] = None) -> ToolExecution:
        """Run one call now, tracked from ``running``."""
        return self._dispatch(self._track(name, tool_input or {}, RUNNING))

    def executor(self, call: ToolCall) -> ToolResult:
        """Tool executor handed to the ConversationLoop."""
        return self._dispatch(self._track(call.qualified_name, call.input, RUNNING,
                                          call_id=call.id)).to_result(call.id)

    def queue_pending(self, name: str, tool_input: Optional[Dict[str, Any]] = None) -> ActiveToolCall:
        return self._track(name, tool_input or {}, PENDING)

    def execute_all_pending_tools(self) -> List[ToolResult]:
        """Fan out every pending call concurrently; one result per call."""
        pending = self.pending_calls
        if not pending:
            return []
        Log.info(f"Executing {len(pending)} pending tool call(s)")
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(pending)),
                                thread_name_prefix="pending-tool") as pool:
            executions = list(pool.map(self._dispatch, pending))
        return [ex.to_result(call.id) for call, ex in zip(pending, executions)]

    def repeat_last_tool(self) -> Optional[ToolResult]:
        last = self._last
        if last is None:
            return None
        call = self._track(last.name, last.input, RUNNING)
        return self._dispatch(call).to_result(call.id)


# =============================================================================
# CHAT SESSION
# =============================================================================

@dataclass
class ChatMessage:
    id:         str
    role:       str
    content:    str
    timestamp:  int = field(default_factory=now_ms)
    streaming:  bool = False
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "role": self.role, "content": self.content,
                "timestamp": self.timestamp, "streaming": self.streaming,
                "tool_calls": self.tool_calls}


class _SessionObserver(AgentObserver):
    def __init__(self, session: "ChatSession"):
        self.session = session

    def on_turn_start(self, turn: int) -> None:
        self.session._emit("turn", {"turn": turn})

    def on_thinking(self, active: bool) -> None:
        self.session.is_thinking = active
        self.session._emit("thinking", {"active": active})

    def on_tool_start(self, call: ToolCall) -> None:
        self.session._emit("tool_start", {"id": call.id, "name": call.qualified_name,
                                          "input": call.input})

    def on_tool_complete(self, call: ToolCall, result: ToolResult) -> None:
        self.session._on_tool_complete(call, result)


class ChatSession:
    """UI transcript plus prefix-mode dispatch around one ConversationLoop.

    The transcript is separate from the loop's model history. An assistant
    placeholder is added before each loop run and removed again if the run
    fails.
    """

    def __init__(self, loop: ConversationLoop, registry: Optional[ToolRegistry] = None,
                 activity: Optional[ToolActivity] = None, mode: str = "ask"):
        self.loop        = loop
        self.registry    = registry
        self.activity    = activity or (ToolActivity(registry) if registry else None)
        self.mode        = mode
        self.is_thinking = False
        self.messages: List[ChatMessage] = []
        self._lock = threading.RLock()
        self._listeners: List[Callable[[AgentEvent], None]] = []
        self._send_lock = threading.Lock()

        loop.subscribe(_SessionObserver(self))
        if self.activity:
            loop.set_tool_executor(self.activity.executor)
            self.activity.add_listener(
                lambda call: self._emit("tool_status", call.to_dict()))

        self._commands: Dict[str, Tuple[Callable[[str], str], str]] = {
            "help":    (self._cmd_help,    "Show this help"),
            "tools":   (self._cmd_tools,   "List tools (optional filter)"),
            "status":  (self._cmd_status,  "Show session and server status"),
            "servers": (self._cmd_servers, "Show tool-server connection status"),
            "mode":    (self._cmd_mode,    "Show or switch mode: " + "|".join(MODES)),
            "clear":   (self._cmd_clear,   "Clear the conversation"),
        }

    # ── events ───────────────────────────────────────────────────────────────

    def on_event(self, fn: Callable[[AgentEvent], None]) -> Callable[[], None]:
        self._listeners.append(fn)

        def _remove() -> None:
            if fn in self._listeners:
                self._listeners.remove(fn)
        return _remove

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        event = AgentEvent(event_type, data)
        for fn in list(self._listeners):
            try:
                fn(event)
            except Exception as e:
                Log.warning(f"Session listener failed on '{event_type}': {e}")

    # ── transcript ───────────────────────────────────────────────────────────

    def add_message(self, role: str, content: str, streaming: bool = False,
                    tool_calls: Optional[List[Dict[str, Any]]] = None) -> ChatMessage:
        msg = ChatMessage(id=short_id(), role=role, content=content,
                          streaming=streaming, tool_calls=tool_calls or [])
        with self._lock:
            self.messages.append(msg)
        self._emit("message", msg.to_dict())
        return msg

    def transcript(self) -> List[ChatMessage]:
        with self._lock:
            return list(self.messages)

    def undo_last_exchange(self) -> None:
        """Drop the last user message and everything after it, in both transcripts."""
        with self._lock:
            for i in range(len(self.messages) - 1, -1, -1):
                if self.messages[i].role == "user":
                    self.messages = self.messages[:i]
                    break
        history = self.loop.history
        for i in range(len(history) - 1, -1, -1):
            if history[i].role == Role.USER:
                self.loop.set_history(history[:i])
                break

    def clear(self) -> None:
        with self._lock:
            self.messages = []
        self.loop.clear_history()
        if self.activity:
            self.activity.clear(keep_pending=False)

    def _system(self, content: str) -> str:
        self.add_message("system", content)
        return content

    def _on_tool_complete(self, call: ToolCall, result: ToolResult) -> None:
        status = ERROR if result.is_error else SUCCESS
        text   = (f'Tool "{call.qualified_name}" completed successfully' if not result.is_error
                  else f'Tool "{call.qualified_name}" failed: {result.content}')
        self.add_message("assistant", f"[Tool Result] {text}",
                         tool_calls=[{"id": call.id, "name": call.qualified_name,
                                      "status": status}])
        self._emit("tool_complete", {"id": call.id, "name": call.qualified_name,
                                     "is_error": result.is_error,
                                     "content": truncate_output(str(result.content), 500)})

    # ── main entry ───────────────────────────────────────────────────────────

    def send(self, text: str, on_chunk: Optional[Callable[[str], None]] = None) -> str:
        """Handle one line of user input; returns the reply shown to the user."""
        parsed = parse_input(text)
        if not parsed.clean and not parsed.is_prefixed:
            return ""

        if parsed.shortcut:
            return self._shortcut(parsed.shortcut, on_chunk)
        if parsed.mode == "bash":
            return self._bash(parsed.clean, on_chunk)
        if parsed.mode == "command":
            return self._slash(parsed.clean)
        if parsed.mode == "tool":
            return self._queue_tool(parsed.clean)
        if parsed.mode == "agent":
            agent, instruction = split_head(parsed.clean)
            if not agent or not instruction:
                return self._system("Usage: @agent <instruction>")
            return self.chat(f"Acting as the '{agent}' agent, {instruction}",
                             display=parsed.raw.strip(), on_chunk=on_chunk)
        if parsed.mode == "file":
            path, question = split_head(parsed.clean)
            if not path:
                return self._system("Usage: >path [question]")
            prompt = f"Read the file {path} and use it as context."
            if question:
                prompt += f" {question}"
            return self.chat(prompt, display=parsed.raw.strip(), on_chunk=on_chunk)
        return self.chat(parsed.clean, on_chunk=on_chunk)

    def chat(self, content: str, display: Optional[str] = None,
             on_chunk: Optional[Callable[[str], None]] = None) -> str:
        """Run the conversation loop for *content* behind an assistant placeholder."""
        with self._send_lock:
            self.add_message("user", display or content)
            placeholder = self.add_message("assistant", "", streaming=True)
            parts: List[str] = []

            def _on_chunk(chunk: str) -> None:
                parts.append(chunk)
                self.is_thinking = False
                with self._lock:
                    placeholder.content = "".join(parts)
                self._emit("text", {"id": placeholder.id, "delta": chunk})
                if on_chunk:
                    on_chunk(chunk)

            try:
                answer = self.loop.send_message(content, on_chunk=_on_chunk)
            except Exception as e:
                with self._lock:
                    self.messages = [m for m in self.messages if m.id != placeholder.id]
                self.is_thinking = False
                if self.activity:
                    self.activity.clear()
                self._emit("error", {"message": str(e)})
                raise

            with self._lock:
                placeholder.content   = answer or "".join(parts)
                placeholder.streaming = False
                # keep the answer after the tool-result lines it summarises
                self.messages.remove(placeholder)
                self.messages.append(placeholder)
            self.is_thinking = False
            if self.activity:
                self.activity.clear()
            self._emit("complete", placeholder.to_dict())
            return placeholder.content

    # ── prefix handlers ──────────────────────────────────────────────────────

    def _shortcut(self, shortcut: str, on_chunk: Optional[Callable[[str], None]]) -> str:
        if shortcut == "repeat_last":
            if not self.activity or self.activity.last_tool_call is None:
                return self._system("No previous tool call to repeat. "
                                    "Use a tool first, then !! will replay it.")
            name = self.activity.last_tool_call.name
            self._system(f"Repeating tool: {name}")
            result = self.activity.repeat_last_tool()
            return self._tool_reply(name, result)

        if shortcut == "execute_all":
            if not self.activity or not self.activity.pending_calls:
                return self._system("No pending tool calls to execute.")
            pending = self.activity.pending_calls
            self._system(f"Executing {len(pending)} pending tool(s)...")
            results = self.activity.execute_all_pending_tools()
            for call, result in zip(pending, results):
                self._tool_reply(call.name, result)
            failed = sum(1 for r in results if r.is_error)
            return self._system(f"Batch execution complete for {len(results)} tool(s)"
                                + (f", {failed} failed" if failed else ""))

        if shortcut == "continue":
            self._system("Continuing last task...")
            return self.chat("Continue with the previous task.", display="!c",
                             on_chunk=on_chunk)

        if shortcut == "undo":
            self.undo_last_exchange()
            return self._system("Undid last exchange")

        return self._system("Redo is not available")

    def _tool_reply(self, name: str, result: Optional[ToolResult]) -> str:
        if result is None:
            return self._system(f'Tool "{name}" did not run')
        if result.is_error:
            return self._system(f'Tool "{name}" failed: {result.content}')
        body = content_text(result.content) if isinstance(result.content, dict) else str(result.content)
        self.add_message("assistant", f"[Tool Result] {name}\n{truncate_output(body, 4000)}",
                         tool_calls=[{"id": result.tool_call_id, "name": name,
                                      "status": SUCCESS}])
        return body

    def _bash(self, command: str, on_chunk: Optional[Callable[[str], None]]) -> str:
        preset = PRESET_TOOL_CALLS.get(command)
        if preset:
            self.add_message("user", f"!{command}")
            if not self.activity:
                return self._system("No tool servers connected.")
            execution = self.activity.execute(preset.tool, preset.input)
            return self._tool_reply(preset.tool, execution.to_result(short_id("preset_")))

        warnings = Safety.command_warnings(command)
        if warnings and self.mode not in AUTONOMOUS_MODES:
            self._system("Dangerous command detected:\n" + "\n".join(warnings)
                         + "\n\nSwitch to auto or yolo mode to override.")
            return "Command blocked - dangerous operation detected"
        return self.chat(f"Execute this bash command: {command}", display=f"!{command}",
                         on_chunk=on_chunk)

    def _slash(self, clean: str) -> str:
        name, args = split_head(clean)
        entry = self._commands.get(name)
        if entry is None:
            return self._system(f"Unknown command: /{name}\nType /help for available commands")
        return self._system(entry[0](args))

    def _queue_tool(self, clean: str) -> str:
        name, raw_args = split_head(clean)
        if ":" not in name:
            return self._system("Usage: &server:tool {json arguments}")
        try:
            args = json.loads(raw_args) if raw_args else {}
        except json.JSONDecodeError as e:
            return self._system(f"Invalid JSON arguments: {e}")
        if not isinstance(args, dict):
            return self._system("Tool arguments must be a JSON object")
        if not self.activity:
            return self._system("No tool servers connected.")
        call = self.activity.queue_pending(name, args)
        return self._system(f"Queued {call.name} ({len(self.activity.pending_calls)} pending). "
                            f"Use !* to execute.")

    # ── slash commands ───────────────────────────────────────────────────────

    def _cmd_help(self, args: str) -> str:
        lines = ["Prefix commands:",
                 "  !command     run a shell command through the model (deny-list checked)",
                 "  !!           repeat last tool call",
                 "  !*           execute all pending tool calls",
                 "  !c  !u  !r   continue / undo last exchange / redo",
                 "  &srv:tool {json}  queue a tool call",
                 "  @agent text  address a named agent",
                 "  >file text   ask about a file",
                 "", "Slash commands:"]
        lines += [f"  /{name:<8} {desc}" for name, (_, desc) in self._commands.items()]
        lines += ["", "Preset tools:"]
        lines += [f"  !{name:<11} {p.description}" for name, p in PRESET_TOOL_CALLS.items()]
        return "\n".join(lines)

    def _cmd_tools(self, args: str) -> str:
        tools = self.registry.tools() if self.registry else []
        tools = [t for t in tools if not args or args in t.qualified_name]
        if not tools:
            return "No tools available"
        return "\n".join(f"{t.qualified_name:<28} {t.description}" for t in
                         sorted(tools, key=lambda t: t.qualified_name))

    def _cmd_servers(self, args: str) -> str:
        status = self.registry.server_status() if self.registry else {}
        if not status:
            return "No tool servers configured"
        return "\n".join(f"{name:<12} {state}" for name, state in sorted(status.items()))

    def _cmd_status(self, args: str) -> str:
        llm = self.loop.llm
        ready = sum(1 for s in (self.registry.server_status() if self.registry else {}).values()
                    if s == "ready")
        total = len(self.registry.server_status()) if self.registry else 0
        return "\n".join([
            f"mcpagent v{VERSION}",
            f"Provider:  {getattr(llm, 'provider', '?')} ({getattr(llm, 'model', '') or 'default model'})",
            f"Mode:      {self.mode}",
            f"Workspace: {Config.WORKSPACE}",
            f"Servers:   {ready}/{total} ready",
            f"Tools:     {len(self.registry.tools()) if self.registry else 0}",
            f"Messages:  {len(self.loop.history)} in model history",
        ])

    def _cmd_mode(self, args: str) -> str:
        if not args:
            return f"Current mode: {self.mode}\nAvailable modes: {', '.join(MODES)}"
        if args.lower() not in MODES:
            return f"Unknown mode: {args}\nAvailable modes: {', '.join(MODES)}"
        self.mode = args.lower()
        return f"Switched to {self.mode.upper()} mode"

    def _cmd_clear(self, args: str) -> str:
        self.clear()
        return "Conversation cleared"

    # ── lifecycle ────────────────────────────────────────────────────────────

    def status(self) -> Dict[str, Any]:
        return {
            "version":     VERSION,
            "mode":        self.mode,
            "is_thinking": self.is_thinking,
            "connected":   self.registry.is_connected() if self.registry else False,
            "servers":     self.registry.server_status() if self.registry else {},
            "tools":       len(self.registry.tools()) if self.registry else 0,
            "messages":    len(self.messages),
            "active_tool_calls": [c.to_dict() for c in self.activity.active_calls]
                                 if self.activity else [],
        }

    def close(self) -> None:
        if self.registry:
            self.registry.shutdown()


def create_session(config_path: Optional[str] = None, llm: Optional[LLMClient] = None,
                   registry: Optional[ToolRegistry] = None, mode: str = "ask") -> ChatSession:
    """Connect tool servers and wire an LLM client, loop, and session together.

    LLMError from provider configuration propagates before any server is spawned.
    """
    llm = llm or create_llm_client()
    registry = registry or ToolRegistry()
    registry.connect(config_path)
    loop = ConversationLoop(llm, tools=registry.tools())
    return ChatSession(loop, registry=registry, mode=mode)
