#!/usr/bin/env python3
"""
agent_mcp.py: Multi-server tool client.

MCPConnection   one tool-server subprocess speaking JSON-RPC 2.0 over stdio
ToolRegistry    owns every connection; one flat ``server:tool`` catalog

Failure isolation: a server that cannot be spawned, does not answer the
handshake within Config.MCP_CONNECT_TIMEOUT, or fails discovery is logged and
left out; the others are unaffected. A server that dies mid-session is only
noticed by the next execute_tool() against it, which returns an error
result. Nothing is restarted automatically.
"""

import json
import os
import subprocess
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional

from agent_core import (
    VERSION, Config, Log, _IS_WINDOWS,
    ServerSpec, ConnectionStatus, ToolDescriptor, QualifiedName,
    ToolExecution, ToolNameError, valid_server_name,
)

PROTOCOL_VERSION = "2024-11-05"

_TOOLS_SCRIPT = Path(__file__).resolve().parent / "agent_tools.py"


# =============================================================================
# SERVER CONFIGURATION
# =============================================================================

def builtin_server_config() -> Dict[str, Dict[str, Any]]:
    """Tool servers shipped with the package (see agent_tools.py)."""
    if not Config.ENABLE_BUILTIN_SERVERS:
        return {}
    servers = {}
    for name in ("git", "explorer", "runner"):
        servers[name] = {
            "command": sys.executable,
            "args":    [str(_TOOLS_SCRIPT), "--server", name,
                        "--workspace", str(Path(Config.WORKSPACE).resolve())],
            "env":     {},
        }
    return servers


def load_user_config(config_path: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    path = Path(config_path or Config.MCP_CONFIG).expanduser()
    if not path.exists():
        return {}
    try:
        cfg = json.loads(path.read_text(encoding="utf-8"))
    except Exception as e:
        Log.warning(f"Failed to load tool-server config from {path}: {e}")
        return {}
    servers = cfg.get("mcpServers", {}) if isinstance(cfg, dict) else {}
    if not isinstance(servers, dict):
        Log.warning(f"'mcpServers' in {path} is not an object — ignored")
        return {}
    return servers


def load_server_specs(config_path: Optional[str] = None,
                      overrides: Optional[Dict[str, Dict[str, Any]]] = None
                      ) -> Dict[str, ServerSpec]:
    """Built-in defaults merged with user entries; a user entry replaces a
    built-in of the same name."""
    merged: Dict[str, Dict[str, Any]] = {**builtin_server_config(),
                                         **load_user_config(config_path)}
    if overrides:
        merged.update(overrides)
    specs: Dict[str, ServerSpec] = {}
    for name, settings in merged.items():
        if not valid_server_name(name):
            Log.warning(f"Skipping tool server '{name}': names must match "
                        f"[A-Za-z0-9_-]+ and not contain '__'")
            continue
        if not isinstance(settings, dict) or not settings.get("command"):
            Log.warning(f"Skipping tool server '{name}': no command configured")
            continue
        specs[name] = ServerSpec.from_config(name, settings)
    return specs


def server_environment(spec: ServerSpec) -> Dict[str, str]:
    """Restricted inherited environment overlaid with the server's own env."""
    env = {k: os.environ[k] for k in Config.MCP_INHERIT_ENV if k in os.environ}
    env.update(spec.env_dict)
    return env


# =============================================================================
# SINGLE CONNECTION
# =============================================================================

class MCPConnection:
    """JSON-RPC 2.0 client for one tool-server subprocess.

    Requests are written under a lock in issue order; a reader thread routes
    responses to waiting callers by request id, so calls from several threads
    may be in flight at once.
    """

    def __init__(self, spec: ServerSpec):
        self.spec    = spec
        self.status  = ConnectionStatus.CONNECTING
        self.process: Optional[subprocess.Popen] = None
        self.tools:   List[Dict[str, Any]] = []
        self.error:   Optional[str] = None
        self._request_id  = 0
        self._pending:    Dict[int, threading.Event] = {}
        self._responses:  Dict[int, Dict[str, Any]]  = {}
        self._reader:     Optional[threading.Thread] = None
        self._lock        = threading.Lock()
        self._write_lock  = threading.Lock()
        self._closing     = threading.Event()
        self._last_stderr = ""

    @property
    def name(self) -> str:
        return self.spec.server_name

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def start(self, timeout: Optional[float] = None) -> None:
        """Spawn and handshake. Raises on spawn failure or timeout."""
        timeout = timeout if timeout is not None else Config.MCP_CONNECT_TIMEOUT
        popen_kwargs: Dict[str, Any] = dict(
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=server_environment(self.spec),
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
        if _IS_WINDOWS:
            popen_kwargs["creationflags"] = getattr(subprocess, "CREATE_NO_WINDOW", 0)
        try:
            self.process = subprocess.Popen(
                [self.spec.command] + list(self.spec.args), **popen_kwargs
            )
            self._reader = threading.Thread(target=self._read_loop, daemon=True,
                                            name=f"mcp-{self.name}-stdout")
            self._reader.start()
            threading.Thread(target=self._read_stderr, daemon=True,
                             name=f"mcp-{self.name}-stderr").start()
            self._send("initialize", {
                "protocolVersion": PROTOCOL_VERSION, "capabilities": {},
                "clientInfo": {"name": "mcpagent", "version": VERSION},
            }, timeout=timeout)
            self._notify("notifications/initialized", {})
            self.status = ConnectionStatus.READY
        except Exception as e:
            self.error  = str(e)
            self.status = ConnectionStatus.FAILED
            self._kill()
            raise

    def list_tools(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        result = self._send("tools/list", {},
                            timeout=timeout or Config.MCP_REQUEST_TIMEOUT)
        tools = (result or {}).get("tools", [])
        self.tools = [t for t in tools if isinstance(t, dict) and t.get("name")]
        return self.tools

    def call_tool(self, tool_name: str, arguments: Dict[str, Any],
                  timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._send("tools/call", {"name": tool_name, "arguments": arguments},
                          timeout=timeout or Config.MCP_REQUEST_TIMEOUT)

    def is_alive(self) -> bool:
        return (self.process is not None and self.process.poll() is None
                and self._reader is not None and self._reader.is_alive())

    def close(self) -> None:
        self._kill()
        self.status = ConnectionStatus.CLOSED

    def _kill(self) -> None:
        self._closing.set()
        proc, self.process = self.process, None
        if proc:
            for stream in (proc.stdin, proc.stdout, proc.stderr):
                try:
                    if stream:
                        stream.close()
                except Exception:
                    pass
            try:
                proc.kill()
                proc.wait(timeout=2)
            except Exception as e:
                Log.debug(f"MCP '{self.name}' kill: {e}")
        with self._lock:
            for ev in self._pending.values():
                ev.set()

    def _read_stderr(self) -> None:
        proc = self.process
        if not proc or not proc.stderr:
            return
        try:
            for line in proc.stderr:
                self._last_stderr = (self._last_stderr + line)[-1000:]
        except Exception:
            pass

    def _read_loop(self) -> None:
        proc = self.process
        try:
            for line in proc.stdout:
                line = line.strip()
                if not line:
                    continue
                try:
                    resp = json.loads(line)
                except json.JSONDecodeError:
                    Log.debug(f"MCP '{self.name}' non-JSON output: {line[:80]!r}")
                    continue
                rid = resp.get("id") if isinstance(resp, dict) else None
                if rid is None:
                    continue
                with self._lock:
                    if rid not in self._pending:
                        Log.debug(f"MCP '{self.name}' dropped late response id={rid}")
                        continue
                    self._responses[rid] = resp
                    self._pending[rid].set()
        except Exception as e:
            if not self._closing.is_set():
                Log.error(f"MCP '{self.name}' reader: {e}")
        with self._lock:
            if not self._closing.is_set() and self.status == ConnectionStatus.READY:
                self.status = ConnectionStatus.FAILED
                self.error  = "server process exited"
            for ev in self._pending.values():
                ev.set()

    def _write(self, message: Dict[str, Any]) -> None:
        if not self.process or not self.process.stdin:
            raise RuntimeError(f"Server '{self.name}' not running")
        with self._write_lock:
            self.process.stdin.write(json.dumps(message) + "\n")
            self.process.stdin.flush()

    def _notify(self, method: str, params: Dict[str, Any]) -> None:
        self._write({"jsonrpc": "2.0", "method": method, "params": params})

    def _send(self, method: str, params: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        if not self._reader or not self._reader.is_alive():
            raise RuntimeError(f"Server '{self.name}' not running")
        event = threading.Event()
        with self._lock:
            self._request_id += 1
            rid = self._request_id
            self._pending[rid] = event
        try:
            self._write({"jsonrpc": "2.0", "id": rid, "method": method, "params": params})
        except Exception as e:
            with self._lock:
                self._pending.pop(rid, None)
            raise RuntimeError(f"Failed to send request to '{self.name}': {e}")
        if not event.wait(timeout):
            with self._lock:
                self._pending.pop(rid, None)
                self._responses.pop(rid, None)
            raise TimeoutError(f"Timeout after {timeout:g}s (server={self.name}, method={method})")
        with self._lock:
            resp = self._responses.pop(rid, None)
            self._pending.pop(rid, None)
        if resp is None:
            detail = f": {self._last_stderr.strip()[-200:]}" if self._last_stderr.strip() else ""
            raise RuntimeError(f"No response from '{self.name}' (server exited){detail}")
        if "error" in resp:
            err = resp["error"] or {}
            raise RuntimeError(err.get("message", "Unknown error") if isinstance(err, dict) else str(err))
        return resp.get("result") or {}


# =============================================================================
# REGISTRY
# =============================================================================

class ToolRegistry:
    """Single owner of every tool-server connection and of the tool catalog.

    connect / discover_tools / shutdown mutate state and must not run
    concurrently with each other. execute_tool may be called from many
    threads at once.
    """

    def __init__(self, connect_timeout: Optional[float] = None):
        self.connect_timeout = connect_timeout or Config.MCP_CONNECT_TIMEOUT
        self._connections: Dict[str, MCPConnection] = {}
        self._catalog:     Dict[str, ToolDescriptor] = {}
        self._initialized = False
        self._lock = threading.RLock()

    # ── lifecycle ────────────────────────────────────────────────────────────

    def connect(self, config_path: Optional[str] = None,
                specs: Optional[Dict[str, ServerSpec]] = None) -> None:
        """Spawn every configured server, then discover their tools.

        *specs* replaces config loading entirely (used by hosts and tests).
        A second call while initialised is a no-op.
        """
        if self._initialized:
            return
        if specs is None:
            specs = load_server_specs(config_path) if Config.ENABLE_MCP else {}

        connections = {name: MCPConnection(spec) for name, spec in specs.items()}
        if connections:
            with ThreadPoolExecutor(max_workers=min(8, len(connections)),
                                    thread_name_prefix="mcp-connect") as pool:
                list(pool.map(self._start_one, connections.values()))

        with self._lock:
            self._connections = connections
        self.discover_tools()
        self._initialized = True

        ready = sum(1 for c in connections.values() if c.status == ConnectionStatus.READY)
        Log.info(f"Tool servers: {ready}/{len(connections)} ready, "
                 f"{len(self._catalog)} tools")

    def _start_one(self, conn: MCPConnection) -> None:
        try:
            conn.start(timeout=self.connect_timeout)
            Log.success(f"Tool server '{conn.name}' started")
        except FileNotFoundError as e:
            Log.error(f"Tool server '{conn.name}' failed to spawn: {e}")
        except Exception as e:
            Log.error(f"Tool server '{conn.name}' failed to connect: {e}")
            if conn._last_stderr:
                Log.error(f"Tool server '{conn.name}' stderr: {conn._last_stderr[:200]}")

    def discover_tools(self) -> List[ToolDescriptor]:
        """Rebuild the catalog from every ready connection."""
        ready = [c for c in self._snapshot() if c.status == ConnectionStatus.READY]
        per_server: Dict[str, List[Dict[str, Any]]] = {}
        if ready:
            with ThreadPoolExecutor(max_workers=min(8, len(ready)),
                                    thread_name_prefix="mcp-discover") as pool:
                for conn, tools in zip(ready, pool.map(self._list_one, ready)):
                    per_server[conn.name] = tools

        catalog: Dict[str, ToolDescriptor] = {}
        for server, tools in per_server.items():
            for tool in tools:
                key = QualifiedName(server, tool["name"]).qualified
                catalog[key] = ToolDescriptor(
                    qualified_name=key,
                    description=tool.get("description") or "",
                    input_schema=tool.get("inputSchema") or {"type": "object", "properties": {}},
                )
            Log.debug(f"Tool server '{server}': {len(tools)} tools")
        with self._lock:
            self._catalog = catalog
        return list(catalog.values())

    def _list_one(self, conn: MCPConnection) -> List[Dict[str, Any]]:
        try:
            return conn.list_tools()
        except Exception as e:
            Log.warning(f"Tool discovery failed for '{conn.name}': {e}")
            return []

    def shutdown(self) -> None:
        """Close every connection (best effort) and clear the catalog."""
        with self._lock:
            connections = list(self._connections.values())
            self._connections = {}
            self._catalog = {}
            self._initialized = False
        for conn in connections:
            try:
                conn.close()
                Log.debug(f"Tool server '{conn.name}' shut down")
            except Exception as e:
                Log.error(f"Error shutting down tool server '{conn.name}': {e}")

    # ── dispatch ─────────────────────────────────────────────────────────────

    def execute_tool(self, qualified_name: str, arguments: Optional[Dict[str, Any]] = None
                     ) -> ToolExecution:
        """Route one call. Never raises; failures come back as data."""
        try:
            key = QualifiedName.parse(qualified_name)
        except ToolNameError as e:
            return ToolExecution(False, qualified_name, "unknown", error=str(e))

        with self._lock:
            conn = self._connections.get(key.server)
        if conn is None or conn.status != ConnectionStatus.READY:
            return ToolExecution(False, key.qualified, key.server,
                                 error=f"Server not connected: {key.server}")

        try:
            result = conn.call_tool(key.tool, arguments or {})
        except Exception as e:
            Log.warning(f"Tool '{key.qualified}' failed: {str(e)[:200]}")
            return ToolExecution(False, key.qualified, key.server, error=str(e))

        if isinstance(result, dict) and result.get("isError"):
            return ToolExecution(False, key.qualified, key.server,
                                 error=content_text(result) or "Tool reported an error")
        return ToolExecution(True, key.qualified, key.server, data=result)

    # ── views ────────────────────────────────────────────────────────────────

    def _snapshot(self) -> List[MCPConnection]:
        with self._lock:
            return list(self._connections.values())

    def tools(self) -> List[ToolDescriptor]:
        with self._lock:
            return list(self._catalog.values())

    def get_tool(self, qualified_name: str) -> Optional[ToolDescriptor]:
        with self._lock:
            return self._catalog.get(qualified_name)

    def format_for_llm(self) -> List[Dict[str, Any]]:
        return [t.to_function() for t in self.tools()]

    def server_status(self) -> Dict[str, str]:
        return {c.name: c.status.value for c in self._snapshot()}

    def connection(self, server_name: str) -> Optional[MCPConnection]:
        with self._lock:
            return self._connections.get(server_name)

    def is_connected(self) -> bool:
        return self._initialized and any(
            c.status == ConnectionStatus.READY for c in self._snapshot())


def content_text(result: Dict[str, Any]) -> str:
    """Join the text blocks of a ``tools/call`` result."""
    blocks = result.get("content") if isinstance(result, dict) else None
    if not isinstance(blocks, list):
        return ""
    return "\n\n".join(b["text"] for b in blocks
                       if isinstance(b, dict) and b.get("type") == "text" and b.get("text"))
