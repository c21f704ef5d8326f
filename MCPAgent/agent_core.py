#!/usr/bin/env python3
"""
agent_core.py: Foundation layer for MCPAgent.

Contains configuration, console logging, the command deny-list, and the data
model shared by every other module:

    ServerSpec / ConnectionStatus / ToolDescriptor / QualifiedName
    ToolCall / ToolResult / ToolExecution
    ConversationMessage / RetryPolicy / StreamEvent / AgentEvent
    LLMError / ToolNameError

Dependency graph (no cycles):
    agent_core
        ↑
    agent_retry, agent_stream
        ↑
    agent_mcp, agent_llm
        ↑
    agent_session
        ↑
    agent_main, agent_web
"""
import json
import os
import platform
import re
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

try:
    import requests  # noqa: F401
except ImportError:
    sys.exit("ERROR: 'requests' required.  pip install requests")

try:
    import colorama
    colorama.init()
except ImportError:
    pass

VERSION = "1.4.0"

_IS_WINDOWS = platform.system() == "Windows"


# =============================================================================
# .ENV FILE LOADER
# Loaded before Config so env-var defaults pick up the values.
# Searches: <script dir>/.env, then cwd/.env. Does NOT override existing vars.
# =============================================================================

def _load_dotenv():
    """Load key=value pairs from a .env file into os.environ.

    Checks (in order):
      1. Directory containing this script
      2. Current working directory
    Existing environment variables are never overridden.
    Lines starting with # and blank lines are ignored.
    Values may be optionally quoted with single or double quotes.
    """
    candidates = [
        Path(__file__).parent / ".env",
        Path.cwd() / ".env",
    ]
    for env_file in candidates:
        if not env_file.exists():
            continue
        try:
            loaded = 0
            for raw in env_file.read_text(encoding="utf-8").splitlines():
                line = raw.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, _, val = line.partition("=")
                key = key.strip()
                val = val.strip()
                if len(val) >= 2 and val[0] in ('"', "'") and val[-1] == val[0]:
                    val = val[1:-1]
                if key and key not in os.environ:
                    os.environ[key] = val
                    loaded += 1
            if loaded:
                # Log is not defined yet
                print(f"[INFO] Loaded {loaded} variable(s) from {env_file}")
        except Exception as e:
            print(f"[!] Could not read {env_file}: {e}")
        break


_load_dotenv()


def _env_list(name: str, default: str) -> List[str]:
    return [p.strip() for p in os.getenv(name, default).split(",") if p.strip()]


# =============================================================================
# CONFIGURATION
# =============================================================================

class Config:
    """Central config; every value overridable via environment variable."""

    HOME = os.getenv("MCPAGENT_HOME", str(Path.home() / ".mcpagent"))

    # LLM
    LLM_PROVIDER    = os.getenv("LLM_PROVIDER",    "local")
    LLM_URL         = os.getenv("LLM_URL",         "")
    LLM_API_KEY     = os.getenv("LLM_API_KEY",     "")
    LLM_MODEL       = os.getenv("LLM_MODEL",       "")
    TEMPERATURE     = float(os.getenv("LLM_TEMPERATURE", "0.7"))
    MAX_TOKENS      = int(os.getenv("LLM_MAX_TOKENS",    "4000"))
    LLM_TIMEOUT     = int(os.getenv("LLM_TIMEOUT",       "300"))
    LLM_STREAM      = os.getenv("LLM_STREAM", "true").lower() == "true"

    # Retry
    LLM_MAX_RETRIES         = int(os.getenv("LLM_MAX_RETRIES",           "3"))
    LLM_RETRY_INITIAL_DELAY = float(os.getenv("LLM_RETRY_INITIAL_DELAY", "1.0"))
    LLM_RETRY_MAX_DELAY     = float(os.getenv("LLM_RETRY_MAX_DELAY",     "10.0"))
    LLM_RETRY_BACKOFF       = float(os.getenv("LLM_RETRY_BACKOFF",       "2.0"))
    LLM_RETRY_STATUSES      = tuple(int(s) for s in _env_list(
        "LLM_RETRY_STATUSES", "408,429,500,502,503,504"))
    LLM_RETRY_JITTER        = float(os.getenv("LLM_RETRY_JITTER",        "0.5"))

    # Tool servers
    ENABLE_MCP             = os.getenv("ENABLE_MCP",             "true").lower() == "true"
    ENABLE_BUILTIN_SERVERS = os.getenv("ENABLE_BUILTIN_SERVERS", "true").lower() == "true"
    MCP_CONFIG             = os.getenv("MCP_CONFIG", str(Path(HOME) / "mcp.json"))
    MCP_CONNECT_TIMEOUT    = float(os.getenv("MCP_CONNECT_TIMEOUT", "15"))
    MCP_REQUEST_TIMEOUT    = float(os.getenv("MCP_REQUEST_TIMEOUT", "60"))
    MCP_INHERIT_ENV        = _env_list("MCP_INHERIT_ENV", "PATH,HOME,LANG,SYSTEMROOT,TMPDIR")

    # Agent loop
    MAX_TURNS       = int(os.getenv("MAX_TURNS",         "20"))
    TOOL_TIMEOUT    = float(os.getenv("TOOL_TIMEOUT",    "30"))
    THINKING_TAGS   = tuple(_env_list("THINKING_TAGS",   "thinking,think"))
    MAX_TOOL_OUTPUT = int(os.getenv("MAX_TOOL_OUTPUT",   "100000"))

    # Workspace
    WORKSPACE = os.getenv("WORKSPACE", str(Path.cwd()))

    # Tool-server output limits
    MAX_FILE_READ    = int(os.getenv("MAX_FILE_READ",    "1000000"))
    MAX_GREP_RESULTS = int(os.getenv("MAX_GREP_RESULTS", "50"))
    MAX_LS_ENTRIES   = int(os.getenv("MAX_LS_ENTRIES",   "200"))
    RUNNER_TIMEOUT   = int(os.getenv("RUNNER_TIMEOUT",   "600"))

    # Safety
    REQUIRE_WORKSPACE = os.getenv("REQUIRE_WORKSPACE", "true").lower() == "true"
    BLOCKED_COMMANDS  = [c for c in os.getenv(
        "BLOCKED_COMMANDS",
        "rm -rf,rm -fr,dd ,mkfs,:(){:|:&};:,sudo rm,chmod 000",
    ).split(",") if c]

    DEBUG = os.getenv("MCPAGENT_DEBUG", "false").lower() == "true"

    BINARY_EXTS = frozenset({
        ".png", ".jpg", ".jpeg", ".gif", ".webp", ".pdf", ".zip",
        ".gz", ".tar", ".exe", ".dll", ".so", ".pyc", ".bin", ".dat",
        ".mp4", ".mp3", ".avi", ".mov", ".iso", ".dmg",
    })

    @classmethod
    def init(cls):
        Path(cls.HOME).mkdir(parents=True, exist_ok=True)
        cls._validate()

    @classmethod
    def _validate(cls):
        if cls.MAX_TURNS < 1:
            raise ValueError("MAX_TURNS must be >= 1")
        if cls.LLM_MAX_RETRIES < 1:
            raise ValueError("LLM_MAX_RETRIES must be >= 1")
        if cls.TOOL_TIMEOUT <= 0:
            raise ValueError("TOOL_TIMEOUT must be > 0")
        if cls.MCP_CONNECT_TIMEOUT <= 0:
            raise ValueError("MCP_CONNECT_TIMEOUT must be > 0")


# =============================================================================
# COLORS & LOGGING
# =============================================================================

class Colors:
    RESET   = "\033[0m"
    BOLD    = "\033[1m"
    RED     = "\033[38;5;196m"
    GREEN   = "\033[38;5;114m"
    YELLOW  = "\033[38;5;214m"
    BLUE    = "\033[38;5;117m"
    MAGENTA = "\033[38;5;176m"
    CYAN    = "\033[38;5;80m"
    GRAY    = "\033[38;5;250m"


def colored(text: str, color: str, bold: bool = False) -> str:
    return f"{Colors.BOLD if bold else ''}{color}{text}{Colors.RESET}"


# Log._silent is thread-local; concurrent sessions don't interfere.
_log_local = threading.local()


class Log:
    """Coloured logger. Call Log.set_silent(True) in service mode.
    Silent state is per-thread; concurrent sessions don't interfere."""

    @classmethod
    def set_silent(cls, silent: bool):
        _log_local.silent = silent

    @staticmethod
    def _is_silent() -> bool:
        return getattr(_log_local, "silent", False)

    @staticmethod
    def _print(prefix: str, msg: str, color: str):
        if not Log._is_silent():
            print(colored(f"{prefix} {msg}", color), file=sys.stderr)

    @staticmethod
    def info(msg: str):    Log._print("[INFO]", msg, Colors.CYAN)
    @staticmethod
    def success(msg: str): Log._print("[✓]",    msg, Colors.GREEN)
    @staticmethod
    def warning(msg: str): Log._print("[!]",    msg, Colors.YELLOW)
    @staticmethod
    def error(msg: str):   Log._print("[✗]",    msg, Colors.RED)
    @staticmethod
    def debug(msg: str):
        if Config.DEBUG:
            Log._print("[DEBUG]", msg, Colors.GRAY)
    @staticmethod
    def tool(name: str, args: str):
        if not Log._is_silent():
            print(colored(f"[→] {name}({args})", Colors.MAGENTA), file=sys.stderr)


# =============================================================================
# UTILITIES
# =============================================================================

def truncate_output(text: str, max_length: int, label: str = "output") -> str:
    if len(text) <= max_length:
        return text
    half        = max_length // 2
    tail        = max_length - half - 100
    total_lines = text.count("\n") + 1
    return (text[:half]
            + f"\n\n... [TRUNCATED {len(text) - max_length} chars of {label},"
              f" {total_lines} total lines] ...\n\n"
            + (text[-tail:] if tail > 0 else ""))


def now_ms() -> int:
    return int(time.time() * 1000)


def short_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex[:8]}"


def run_with_timeout(fn: Callable[[], Any], timeout: float) -> Any:
    """Run *fn* on a daemon thread and wait at most *timeout* seconds.

    Raises TimeoutError when the deadline passes. The worker is abandoned,
    not cancelled: it may still finish in the background and its result is
    discarded. Exceptions raised by *fn* are re-raised in the caller.
    """
    done = threading.Event()
    box: Dict[str, Any] = {}

    def _worker():
        try:
            box["value"] = fn()
        except BaseException as e:
            box["error"] = e
        finally:
            done.set()

    threading.Thread(target=_worker, daemon=True, name="tool-call").start()
    if not done.wait(timeout):
        raise TimeoutError(f"Tool execution timeout after {int(timeout * 1000)}ms")
    if "error" in box:
        raise box["error"]
    return box.get("value")


# =============================================================================
# SAFETY
# =============================================================================

class Safety:
    _SENSITIVE_WINDOWS = (
        "\\Windows\\System32", "C:\\Windows", "\\Program Files",
        "id_rsa", "id_ed25519", ".pem", ".key",
    )
    _SENSITIVE_POSIX = (
        "/etc/passwd", "/etc/shadow", "/etc/sudoers",
        "/boot/", "/sys/",
        "id_rsa", "id_ed25519", ".pem", ".key",
    )
    _SENSITIVE = _SENSITIVE_WINDOWS if _IS_WINDOWS else _SENSITIVE_POSIX

    @staticmethod
    def validate_path(workspace: Path, path: str,
                      must_exist: bool = False) -> Tuple[bool, str, Path]:
        try:
            p        = Path(path)
            resolved = ((workspace / path) if not p.is_absolute()
                        else p.expanduser()).resolve()
            if must_exist and not resolved.exists():
                return False, f"Path does not exist: {path}", resolved
            if Config.REQUIRE_WORKSPACE:
                try:
                    resolved.relative_to(workspace.resolve())
                except ValueError:
                    return False, f"Path outside workspace: {path}", resolved
            for s in Safety._SENSITIVE:
                if s.lower() in str(resolved).lower():
                    return False, f"Access denied: {path}", resolved
            return True, "", resolved
        except Exception as e:
            return False, f"Invalid path: {e}", Path(path)

    @staticmethod
    def command_warnings(cmd: str) -> List[str]:
        """Every deny-list entry that *cmd* contains, as a warning line."""
        cmd_lower = cmd.lower()
        return [f"Dangerous command detected: {blocked}"
                for blocked in Config.BLOCKED_COMMANDS
                if blocked and blocked.lower() in cmd_lower]

    @staticmethod
    def validate_command(cmd: str) -> Tuple[bool, str]:
        warnings = Safety.command_warnings(cmd)
        if warnings:
            return False, warnings[0]
        return True, ""


# =============================================================================
# ERRORS
# =============================================================================

class LLMError(Exception):
    """Failure of an LLM request.

    ``retryable`` is set by the retry wrapper to reflect the classification of
    the last attempt; it is ``None`` until the error has been classified.
    """

    MISSING_API_KEY      = "MISSING_API_KEY"
    NOT_IMPLEMENTED      = "NOT_IMPLEMENTED"
    UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"
    API_ERROR            = "API_ERROR"
    NETWORK_ERROR        = "NETWORK_ERROR"
    STREAM_ERROR         = "STREAM_ERROR"

    CONFIGURATION_CODES = frozenset({MISSING_API_KEY, NOT_IMPLEMENTED, UNSUPPORTED_PROVIDER})

    def __init__(self, message: str, code: Optional[str] = None,
                 status_code: Optional[int] = None,
                 retryable: Optional[bool] = None):
        super().__init__(message)
        self.code        = code
        self.status_code = status_code
        self.retryable   = retryable

    @property
    def is_configuration_error(self) -> bool:
        return self.code in self.CONFIGURATION_CODES


class ToolNameError(ValueError):
    """A tool name that does not parse as ``server:tool``."""


# =============================================================================
# TOOL DATA MODEL
# =============================================================================

_SERVER_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
FUNCTION_SEPARATOR = "__"


def valid_server_name(name: str) -> bool:
    return bool(_SERVER_NAME_RE.match(name or "")) and FUNCTION_SEPARATOR not in name


@dataclass(frozen=True)
class ServerSpec:
    server_name: str
    command:     str
    args:        Tuple[str, ...] = ()
    env:         Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def from_config(cls, name: str, settings: Dict[str, Any]) -> "ServerSpec":
        env = settings.get("env") or {}
        return cls(
            server_name=name,
            command=str(settings.get("command", "")),
            args=tuple(str(a) for a in settings.get("args") or ()),
            env=tuple(sorted((str(k), str(v)) for k, v in env.items())),
        )

    @property
    def env_dict(self) -> Dict[str, str]:
        return dict(self.env)


class ConnectionStatus(Enum):
    CONNECTING = "connecting"
    READY      = "ready"
    FAILED     = "failed"
    CLOSED     = "closed"


@dataclass(frozen=True)
class QualifiedName:
    """Routing key ``server:tool``. Parsing fails closed with ToolNameError."""
    server: str
    tool:   str

    @classmethod
    def parse(cls, name: str) -> "QualifiedName":
        server, sep, tool = (name or "").partition(":")
        if not sep or not server or not tool:
            raise ToolNameError(f"Invalid tool name: {name!r} (expected 'server:tool')")
        return cls(server, tool)

    @classmethod
    def from_function_name(cls, name: str) -> "QualifiedName":
        server, sep, tool = (name or "").partition(FUNCTION_SEPARATOR)
        if not sep or not server or not tool:
            raise ToolNameError(f"Invalid function name: {name!r} (expected 'server__tool')")
        return cls(server, tool)

    @property
    def qualified(self) -> str:
        return f"{self.server}:{self.tool}"

    @property
    def function_name(self) -> str:
        return f"{self.server}{FUNCTION_SEPARATOR}{self.tool}"

    def __str__(self) -> str:
        return self.qualified


def resolve_tool_name(name: str) -> str:
    """Map a provider-side function name back to its ``server:tool`` key.

    Names that are already qualified, or that cannot be mapped, are returned
    unchanged so dispatch can reject them explicitly.
    """
    if ":" in name:
        return name
    try:
        return QualifiedName.from_function_name(name).qualified
    except ToolNameError:
        return name


@dataclass(frozen=True)
class ToolDescriptor:
    qualified_name: str
    description:    str
    input_schema:   Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def server_name(self) -> str:
        return QualifiedName.parse(self.qualified_name).server

    def to_function(self) -> Dict[str, Any]:
        """OpenAI-style ``{type: function, function: {...}}`` entry."""
        schema = self.input_schema or {"type": "object", "properties": {}}
        return {
            "type": "function",
            "function": {
                "name":        QualifiedName.parse(self.qualified_name).function_name,
                "description": self.description,
                "parameters":  schema,
            },
        }


@dataclass
class ToolCall:
    id:             str
    qualified_name: str
    input:          Dict[str, Any] = field(default_factory=dict)
    # Set when the provider's argument string could not be decoded.
    parse_error:    Optional[str] = None

    @staticmethod
    def generate_id() -> str:
        return f"toolu_{now_ms()}_{uuid.uuid4().hex[:7]}"


@dataclass
class ToolResult:
    tool_call_id: str
    content:      Any
    is_error:     bool = False

    def message_content(self) -> str:
        """String placed in the tool message sent back to the model."""
        if self.is_error:
            return str(self.content)
        return json.dumps(self.content, ensure_ascii=False, default=str)


@dataclass
class ToolExecution:
    """Outcome of one registry dispatch, with routing metadata."""
    success:        bool
    qualified_name: str
    server_name:    str
    data:           Any = None
    error:          Optional[str] = None
    timestamp:      int = field(default_factory=now_ms)

    def to_result(self, tool_call_id: str) -> ToolResult:
        if self.success:
            return ToolResult(tool_call_id, self.data, False)
        return ToolResult(tool_call_id, self.error or "Unknown error", True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success":        self.success,
            "qualified_name": self.qualified_name,
            "server":         self.server_name,
            "data":           self.data,
            "error":          self.error,
            "timestamp":      self.timestamp,
        }


# =============================================================================
# CONVERSATION DATA MODEL
# =============================================================================

class Role(Enum):
    SYSTEM    = "system"
    USER      = "user"
    ASSISTANT = "assistant"
    TOOL      = "tool"


@dataclass
class ConversationMessage:
    role:             Role
    content:          str = ""
    tool_calls:       Optional[List[ToolCall]] = None
    tool_result_for:  Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        msg: Dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            msg["content"] = self.content or None
            msg["tool_calls"] = [{
                "id":   tc.id,
                "type": "function",
                "function": {
                    "name":      _function_name_for(tc.qualified_name),
                    "arguments": json.dumps(tc.input, ensure_ascii=False),
                },
            } for tc in self.tool_calls]
        if self.tool_result_for is not None:
            msg["tool_call_id"] = self.tool_result_for
        return msg


def _function_name_for(qualified_name: str) -> str:
    try:
        return QualifiedName.parse(qualified_name).function_name
    except ToolNameError:
        return qualified_name


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts:            int = 3
    initial_delay:           float = 1.0
    max_delay:               float = 10.0
    backoff_factor:          float = 2.0
    retryable_status_codes:  Tuple[int, ...] = (408, 429, 500, 502, 503, 504)
    jitter:                  float = 0.5

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_attempts=Config.LLM_MAX_RETRIES,
            initial_delay=Config.LLM_RETRY_INITIAL_DELAY,
            max_delay=Config.LLM_RETRY_MAX_DELAY,
            backoff_factor=Config.LLM_RETRY_BACKOFF,
            retryable_status_codes=tuple(Config.LLM_RETRY_STATUSES),
            jitter=Config.LLM_RETRY_JITTER,
        )


# =============================================================================
# STREAM & AGENT EVENTS
# =============================================================================

@dataclass(frozen=True)
class StreamEvent:
    """Tagged union produced by the tag splitter: text | tag_open | tag_close."""
    TEXT      = "text"
    TAG_OPEN  = "tag_open"
    TAG_CLOSE = "tag_close"

    type:     str
    content:  str = ""
    tag_name: Optional[str] = None

    @classmethod
    def text(cls, content: str) -> "StreamEvent":
        return cls(cls.TEXT, content=content)

    @classmethod
    def tag_open(cls, name: str) -> "StreamEvent":
        return cls(cls.TAG_OPEN, tag_name=name)

    @classmethod
    def tag_close(cls, name: str) -> "StreamEvent":
        return cls(cls.TAG_CLOSE, tag_name=name)


@dataclass
class AgentEvent:
    type:      str
    data:      Dict[str, Any]
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": self.data, "timestamp": self.timestamp}
