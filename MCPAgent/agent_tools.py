#!/usr/bin/env python3
"""
agent_tools.py: Built-in tool servers.

Each server is this script run as a subprocess:

    python agent_tools.py --server git      --workspace /path/to/project
    python agent_tools.py --server explorer --workspace /path/to/project
    python agent_tools.py --server runner   --workspace /path/to/project

and speaks newline-delimited JSON-RPC 2.0 on stdin/stdout (initialize,
tools/list, tools/call). stdout carries protocol messages only; logging
goes to stderr through Log.

Handlers return ``{"success": bool, ...}`` dictionaries. A failed handler
becomes a tool-level error (``isError: true``); an unknown tool or bad
arguments becomes a JSON-RPC error.
"""

import argparse
import json
import re
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable, Dict, IO, List, Optional, Tuple

from agent_core import VERSION, Config, Log, Safety, truncate_output

# JSON-RPC error codes
METHOD_NOT_FOUND = -32601
INVALID_PARAMS   = -32602
INTERNAL_ERROR   = -32603

_NOISE_DIRS = frozenset({
    ".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build",
    ".mypy_cache", ".pytest_cache", ".tox", "target", ".idea", ".vscode",
})


def _rel(workspace: Path, p: Path) -> str:
    try:
        return str(p.relative_to(workspace)).replace("\\", "/")
    except ValueError:
        return str(p).replace("\\", "/")


def _run(workspace: Path, argv: List[str], timeout: Optional[int] = None) -> Tuple[str, int]:
    """Run *argv* in the workspace without a shell; stdout and stderr merged.

    The command deny-list applies to caller-supplied arguments only (see
    _run_action).
    """
    if not shutil.which(argv[0]):
        raise FileNotFoundError(f"Command not found: {argv[0]}")
    proc = subprocess.run(
        argv, cwd=str(workspace), stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL, text=True, encoding="utf-8", errors="replace",
        timeout=timeout or Config.RUNNER_TIMEOUT,
    )
    return proc.stdout or "", proc.returncode


# =============================================================================
# GIT
# =============================================================================

_GIT_REF_RE = re.compile(r'^[A-Za-z0-9_.\-/]+$')


def _validate_git_ref(name: str) -> Tuple[bool, str]:
    if not name:
        return False, "Empty ref name"
    if not _GIT_REF_RE.match(name):
        bad = sorted({c for c in name if not re.match(r'[A-Za-z0-9_.\-/]', c)})
        return False, (f"Ref name '{name}' contains disallowed characters: {bad!r}. "
                       "Only alphanumerics, hyphens, underscores, dots, and slashes are permitted.")
    if ".." in name:
        return False, f"Ref name '{name}' contains '..' (path-traversal sequence)"
    return True, ""


def _git(workspace: Path, *args: str) -> Tuple[str, int]:
    return _run(workspace, ["git", *args], timeout=60)


def tool_git_status(workspace: Path) -> Dict[str, Any]:
    output, code = _git(workspace, "status", "--porcelain")
    if code != 0:
        return {"success": False, "error": "Not a git repository"}
    files: Dict[str, List[str]] = {"modified": [], "added": [], "deleted": [],
                                   "renamed": [], "untracked": []}
    lines = output.splitlines()
    for line in lines[:Config.MAX_LS_ENTRIES]:
        if len(line) < 4:
            continue
        status, path = line[:2], line[3:]
        if   "?" in status: files["untracked"].append(path)
        elif "R" in status: files["renamed"].append(path)
        elif "A" in status: files["added"].append(path)
        elif "D" in status: files["deleted"].append(path)
        elif "M" in status: files["modified"].append(path)
    branch, _ = _git(workspace, "branch", "--show-current")
    return {"success": True, "branch": branch.strip(), **files,
            "total_changes": len(lines),
            "clean":         not lines,
            "truncated":     len(lines) > Config.MAX_LS_ENTRIES}


def tool_git_diff(workspace: Path, path: str = "", staged: bool = False) -> Dict[str, Any]:
    args = ["diff"]
    if staged:
        args.append("--staged")
    if path:
        ok, err, _ = Safety.validate_path(workspace, path)
        if not ok:
            return {"success": False, "error": f"Invalid diff path: {err}"}
        args += ["--", path]
    output, code = _git(workspace, *args)
    if code != 0:
        return {"success": False, "error": truncate_output(output, 500) or "Git diff failed"}
    return {"success":     True,
            "diff":        truncate_output(output, Config.MAX_TOOL_OUTPUT, "diff"),
            "has_changes": bool(output.strip())}


def tool_git_log(workspace: Path, limit: int = 10, path: str = "") -> Dict[str, Any]:
    limit = max(1, min(int(limit), 100))
    args  = ["log", f"-n{limit}", "--pretty=format:%h%x1f%an%x1f%ad%x1f%s", "--date=short"]
    if path:
        ok, err, _ = Safety.validate_path(workspace, path)
        if not ok:
            return {"success": False, "error": f"Invalid log path: {err}"}
        args += ["--", path]
    output, code = _git(workspace, *args)
    if code != 0:
        return {"success": False, "error": truncate_output(output, 500) or "Git log failed"}
    commits = []
    for line in output.splitlines():
        parts = line.split("\x1f")
        if len(parts) == 4:
            commits.append({"hash": parts[0], "author": parts[1],
                            "date": parts[2], "subject": parts[3]})
    return {"success": True, "commits": commits, "count": len(commits)}


def tool_git_stage(workspace: Path, paths: List[str]) -> Dict[str, Any]:
    if not paths:
        return {"success": False, "error": "No paths given"}
    for p in paths:
        ok, err, _ = Safety.validate_path(workspace, p)
        if not ok:
            return {"success": False, "error": f"{p}: {err}"}
    output, code = _git(workspace, "add", "--", *paths)
    if code != 0:
        return {"success": False, "error": truncate_output(output, 500)}
    return {"success": True, "staged": len(paths)}


def tool_git_commit(workspace: Path, message: str, allow_empty: bool = False) -> Dict[str, Any]:
    if not message.strip():
        return {"success": False, "error": "Empty commit message"}
    args = ["commit", "-m", message]
    if allow_empty:
        args.append("--allow-empty")
    output, code = _git(workspace, *args)
    if code != 0:
        return {"success": False, "error": truncate_output(output, 500)}
    rev, _ = _git(workspace, "rev-parse", "HEAD")
    return {"success": True, "commit": rev.strip()[:8]}


def tool_git_branch(workspace: Path, name: str = "",
                    create: bool = False, switch: bool = False) -> Dict[str, Any]:
    if not name:
        output, code = _git(workspace, "branch")
        if code != 0:
            return {"success": False, "error": "Failed to list branches"}
        branches, current = [], None
        for line in output.splitlines()[:50]:
            line = line.strip()
            if line.startswith("* "):
                current = line[2:]
            elif line:
                branches.append(line)
        return {"success": True, "action": "list", "branches": branches, "current": current}
    ok, err = _validate_git_ref(name)
    if not ok:
        return {"success": False, "error": err}
    if create:
        args, action = ["checkout", "-b", name], "created"
    elif switch:
        args, action = ["checkout", name], "switched"
    else:
        args, action = ["branch", name], "created_local"
    output, code = _git(workspace, *args)
    if code != 0:
        return {"success": False, "error": truncate_output(output, 500)}
    return {"success": True, "action": action, "branch": name}


# =============================================================================
# EXPLORER
# =============================================================================

def _visible(workspace: Path, p: Path) -> bool:
    parts = Path(_rel(workspace, p)).parts
    return not any(part.startswith(".") or part in _NOISE_DIRS for part in parts)


def tool_read_file(workspace: Path, path: str,
                   start_line: int = 0, end_line: int = 0) -> Dict[str, Any]:
    ok, err, fp = Safety.validate_path(workspace, path, must_exist=True)
    if not ok:
        return {"success": False, "error": err}
    if not fp.is_file():
        return {"success": False, "error": "Not a file"}
    if fp.suffix.lower() in Config.BINARY_EXTS:
        return {"success": False, "error": "Cannot read binary file"}
    content = fp.read_text(encoding="utf-8", errors="replace")
    total   = content.count("\n") + 1
    if start_line or end_line:
        lines   = content.splitlines(keepends=True)
        first   = max(1, int(start_line or 1))
        last    = min(len(lines), int(end_line or len(lines)))
        content = "".join(lines[first - 1:last])
    return {"success": True,
            "path":    _rel(workspace, fp),
            "content": truncate_output(content, Config.MAX_FILE_READ, path),
            "lines":   total}


def tool_list_dir(workspace: Path, path: str = ".") -> Dict[str, Any]:
    ok, err, dp = Safety.validate_path(workspace, path)
    if not ok:
        return {"success": False, "error": err}
    if not dp.exists():
        return {"success": False, "error": "Path does not exist"}
    if not dp.is_dir():
        return {"success": False, "error": "Not a directory"}
    all_entries = sorted(dp.iterdir())
    entries     = []
    for item in all_entries[:Config.MAX_LS_ENTRIES]:
        if item.name.startswith("."):
            continue
        entries.append({"name": item.name,
                        "type": "dir" if item.is_dir() else "file",
                        "size": item.stat().st_size if item.is_file() else 0})
    return {"success": True, "path": _rel(workspace, dp) or ".", "entries": entries,
            "total":     len(all_entries),
            "truncated": len(all_entries) > Config.MAX_LS_ENTRIES}


def tool_glob(workspace: Path, pattern: str) -> Dict[str, Any]:
    if Path(pattern).is_absolute() or ".." in Path(pattern).parts:
        return {"success": False, "error": "Pattern must be workspace-relative"}
    matches = []
    for m in workspace.glob(pattern):
        ok, _, fp = Safety.validate_path(workspace, str(m))
        if ok and fp.is_file() and _visible(workspace, fp):
            matches.append(fp)
    files   = sorted(_rel(workspace, m) for m in matches)
    return {"success": True, "files": files[:Config.MAX_LS_ENTRIES],
            "count":     min(len(files), Config.MAX_LS_ENTRIES),
            "total_matches": len(files),
            "truncated": len(files) > Config.MAX_LS_ENTRIES}


def tool_grep(workspace: Path, pattern: str, paths: Optional[List[str]] = None,
              regex: bool = False, ignore_case: bool = False) -> Dict[str, Any]:
    if regex:
        try:
            matcher = re.compile(pattern, re.IGNORECASE if ignore_case else 0)
        except re.error as e:
            return {"success": False, "error": f"Invalid regex: {e}"}
        hit: Callable[[str], bool] = lambda line: bool(matcher.search(line))
    elif ignore_case:
        needle = pattern.lower()
        hit = lambda line: needle in line.lower()
    else:
        hit = lambda line: pattern in line

    search_files: List[Path] = []
    if paths:
        for p in paths:
            if any(c in p for c in "*?["):
                if Path(p).is_absolute() or ".." in Path(p).parts:
                    return {"success": False, "error": "Pattern must be workspace-relative"}
                for f in workspace.glob(p):
                    ok, _, fp = Safety.validate_path(workspace, str(f))
                    if ok and fp.is_file() and _visible(workspace, fp):
                        search_files.append(fp)
                continue
            ok, err, fp = Safety.validate_path(workspace, p, must_exist=True)
            if not ok:
                return {"success": False, "error": f"{p}: {err}"}
            if fp.is_dir():
                search_files.extend(f for f in fp.rglob("*")
                                    if f.is_file() and _visible(workspace, f))
            else:
                search_files.append(fp)
    else:
        search_files = [f for f in workspace.rglob("*")
                        if f.is_file() and _visible(workspace, f)]

    matches: List[Dict[str, Any]] = []
    for fp in search_files:
        if fp.suffix.lower() in Config.BINARY_EXTS:
            continue
        try:
            with open(fp, "r", encoding="utf-8", errors="ignore") as fh:
                for i, line in enumerate(fh, 1):
                    if hit(line):
                        matches.append({"file":    _rel(workspace, fp),
                                        "line":    i,
                                        "content": line.rstrip()[:200]})
                        if len(matches) >= Config.MAX_GREP_RESULTS:
                            break
        except OSError:
            continue
        if len(matches) >= Config.MAX_GREP_RESULTS:
            break
    return {"success":   True,
            "matches":   matches,
            "truncated": len(matches) >= Config.MAX_GREP_RESULTS}


def tool_project_map(workspace: Path, path: str = ".", max_depth: int = 3) -> Dict[str, Any]:
    ok, err, root = Safety.validate_path(workspace, path, must_exist=True)
    if not ok:
        return {"success": False, "error": err}
    if not root.is_dir():
        return {"success": False, "error": "Not a directory"}
    max_depth = max(1, min(int(max_depth), 8))
    lines: List[str] = [f"{root.name or _rel(workspace, root)}/"]
    counts = {"files": 0, "dirs": 0}
    limit  = Config.MAX_LS_ENTRIES * 5

    def walk(d: Path, depth: int, prefix: str) -> None:
        try:
            children = sorted((c for c in d.iterdir()
                               if not c.name.startswith(".") and c.name not in _NOISE_DIRS),
                              key=lambda c: (not c.is_dir(), c.name.lower()))
        except OSError:
            return
        for i, child in enumerate(children):
            if len(lines) >= limit:
                return
            last      = i == len(children) - 1
            connector = "└── " if last else "├── "
            if child.is_dir():
                counts["dirs"] += 1
                lines.append(f"{prefix}{connector}{child.name}/")
                if depth < max_depth:
                    walk(child, depth + 1, prefix + ("    " if last else "│   "))
            else:
                counts["files"] += 1
                lines.append(f"{prefix}{connector}{child.name}")

    walk(root, 1, "")
    return {"success": True, "root": _rel(workspace, root) or ".",
            "tree": "\n".join(lines), **counts,
            "truncated": len(lines) >= limit}


# =============================================================================
# RUNNER
# =============================================================================

# marker file → (project type, {action: command})
_PROJECT_TYPES: List[Tuple[str, str, Dict[str, str]]] = [
    ("package.json",     "node",   {"test": "npm test", "build": "npm run build",
                                    "lint": "npm run lint", "format": "npx prettier --write ."}),
    ("pyproject.toml",   "python", {"test": "python -m pytest", "build": "python -m build",
                                    "lint": "ruff check .", "format": "ruff format ."}),
    ("setup.py",         "python", {"test": "python -m pytest", "build": "python -m build",
                                    "lint": "ruff check .", "format": "ruff format ."}),
    ("requirements.txt", "python", {"test": "python -m pytest",
                                    "lint": "ruff check .", "format": "ruff format ."}),
    ("Cargo.toml",       "rust",   {"test": "cargo test", "build": "cargo build",
                                    "lint": "cargo clippy", "format": "cargo fmt"}),
    ("go.mod",           "go",     {"test": "go test ./...", "build": "go build ./...",
                                    "lint": "go vet ./...", "format": "gofmt -w ."}),
    ("Makefile",         "make",   {"test": "make test", "build": "make", "lint": "make lint"}),
]


def _detect(workspace: Path) -> Optional[Tuple[str, str, Dict[str, str]]]:
    for marker, kind, commands in _PROJECT_TYPES:
        if (workspace / marker).exists():
            return marker, kind, commands
    return None


def tool_detect_project(workspace: Path) -> Dict[str, Any]:
    found = _detect(workspace)
    if not found:
        return {"success": True, "type": "unknown", "commands": {},
                "message": "No recognised project marker file"}
    marker, kind, commands = found
    return {"success": True, "type": kind, "marker": marker, "commands": commands}


def _run_action(workspace: Path, action: str, extra_args: str = "") -> Dict[str, Any]:
    found = _detect(workspace)
    if not found:
        return {"success": False, "error": "Could not detect project type"}
    _, kind, commands = found
    if action not in commands:
        return {"success": False, "error": f"No '{action}' command for {kind} projects"}
    argv = shlex.split(commands[action])
    if argv[0] == "python":
        argv[0] = sys.executable
    if extra_args:
        ok, reason = Safety.validate_command(extra_args)
        if not ok:
            return {"success": False, "error": reason}
        argv += shlex.split(extra_args)
    try:
        output, code = _run(workspace, argv)
    except subprocess.TimeoutExpired:
        return {"success": False, "error": f"{action} timed out after {Config.RUNNER_TIMEOUT}s"}
    return {"success": code == 0, "command": " ".join(shlex.quote(a) for a in argv),
            "exit_code": code,
            "output":    truncate_output(output, Config.MAX_TOOL_OUTPUT, action),
            **({} if code == 0 else {"error": f"{action} failed with exit code {code}\n"
                                              f"{truncate_output(output, 2000, action)}"})}


def tool_run_tests(workspace: Path, args: str = "") -> Dict[str, Any]:
    return _run_action(workspace, "test", args)


def tool_build(workspace: Path, args: str = "") -> Dict[str, Any]:
    return _run_action(workspace, "build", args)


def tool_lint(workspace: Path, args: str = "") -> Dict[str, Any]:
    return _run_action(workspace, "lint", args)


def tool_format(workspace: Path, args: str = "") -> Dict[str, Any]:
    return _run_action(workspace, "format", args)


# =============================================================================
# TOOL CATALOG
# =============================================================================

def _schema(properties: Optional[Dict[str, Any]] = None,
            required: Optional[List[str]] = None) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return schema


_STR  = {"type": "string"}
_BOOL = {"type": "boolean"}
_INT  = {"type": "integer"}
_ARGS = {"type": "string", "description": "Extra command-line arguments."}

# server → tool → (handler, description, input schema)
SERVERS: Dict[str, Dict[str, Tuple[Callable[..., Dict[str, Any]], str, Dict[str, Any]]]] = {
    "git": {
        "git_status": (tool_git_status, "Get git status of the workspace.", _schema()),
        "git_diff":   (tool_git_diff, "Show git diff, optionally for one path or staged changes.",
                       _schema({"path": _STR, "staged": _BOOL})),
        "git_log":    (tool_git_log, "Show recent commits.",
                       _schema({"limit": _INT, "path": _STR})),
        "git_stage":  (tool_git_stage, "Stage files for commit.",
                       _schema({"paths": {"type": "array", "items": _STR}}, ["paths"])),
        "git_commit": (tool_git_commit, "Commit staged changes.",
                       _schema({"message": _STR, "allow_empty": _BOOL}, ["message"])),
        "git_branch": (tool_git_branch,
                       "Manage git branches. No args → list. With name+flags → create/switch.",
                       _schema({"name": _STR, "create": _BOOL, "switch": _BOOL})),
    },
    "explorer": {
        "read_file":   (tool_read_file, "Read a text file (workspace only), optionally a line range.",
                        _schema({"path": _STR, "start_line": _INT, "end_line": _INT}, ["path"])),
        "list_dir":    (tool_list_dir, "List directory contents (workspace only).",
                        _schema({"path": _STR})),
        "glob":        (tool_glob, "Find files matching a glob pattern (workspace only).",
                        _schema({"pattern": _STR}, ["pattern"])),
        "grep":        (tool_grep, "Search for a text pattern in files (workspace only).",
                        _schema({"pattern": _STR, "paths": {"type": "array", "items": _STR},
                                 "regex": _BOOL, "ignore_case": _BOOL}, ["pattern"])),
        "project_map": (tool_project_map, "Show the project directory tree.",
                        _schema({"path": _STR, "max_depth": _INT})),
    },
    "runner": {
        "detect_project": (tool_detect_project, "Detect project type and its test/build/lint commands.",
                           _schema()),
        "run_tests":      (tool_run_tests, "Run the project's test suite.", _schema({"args": _ARGS})),
        "build":          (tool_build, "Build the project.", _schema({"args": _ARGS})),
        "lint":           (tool_lint, "Run the project's linter.", _schema({"args": _ARGS})),
        "format":         (tool_format, "Format the project's sources.", _schema({"args": _ARGS})),
    },
}


# =============================================================================
# JSON-RPC SERVER
# =============================================================================

class RPCError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code


class ToolServer:
    """Serves one entry of SERVERS over a line-oriented JSON-RPC stream."""

    def __init__(self, name: str, workspace: Path):
        if name not in SERVERS:
            raise ValueError(f"Unknown server: {name}")
        self.name      = name
        self.workspace = workspace.resolve()
        self.tools     = SERVERS[name]

    def list_tools(self) -> List[Dict[str, Any]]:
        return [{"name": n, "description": desc, "inputSchema": schema}
                for n, (_, desc, schema) in self.tools.items()]

    def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        if name not in self.tools:
            raise RPCError(INVALID_PARAMS, f"Unknown tool: {name}")
        if not isinstance(arguments, dict):
            raise RPCError(INVALID_PARAMS, "arguments must be an object")
        handler = self.tools[name][0]
        try:
            result = handler(self.workspace, **arguments)
        except TypeError as e:
            raise RPCError(INVALID_PARAMS, f"Bad arguments for {name}: {e}")
        except (ValueError, FileNotFoundError, subprocess.TimeoutExpired) as e:
            result = {"success": False, "error": str(e)}
        except Exception as e:
            Log.error(f"{self.name}:{name} crashed: {e}")
            raise RPCError(INTERNAL_ERROR, f"{name} failed: {e}")

        if not result.get("success", False):
            return {"content": [{"type": "text", "text": result.get("error") or "Tool failed"}],
                    "isError": True}
        return {"content": [{"type": "text",
                             "text": json.dumps(result, indent=2, ensure_ascii=False)}]}

    def handle(self, request: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """One request in, one response out (None for notifications)."""
        rid    = request.get("id")
        method = request.get("method")
        params = request.get("params") or {}
        try:
            if method == "initialize":
                result: Dict[str, Any] = {
                    "protocolVersion": params.get("protocolVersion", "2024-11-05"),
                    "capabilities":    {"tools": {}},
                    "serverInfo":      {"name": f"mcpagent-{self.name}", "version": VERSION},
                }
            elif method == "tools/list":
                result = {"tools": self.list_tools()}
            elif method == "tools/call":
                result = self.call_tool(params.get("name", ""), params.get("arguments") or {})
            elif method == "ping":
                result = {}
            elif rid is None:
                return None
            else:
                raise RPCError(METHOD_NOT_FOUND, f"Method not found: {method}")
        except RPCError as e:
            if rid is None:
                return None
            return {"jsonrpc": "2.0", "id": rid, "error": {"code": e.code, "message": str(e)}}
        if rid is None:
            return None
        return {"jsonrpc": "2.0", "id": rid, "result": result}

    def serve(self, stdin: IO[str] = None, stdout: IO[str] = None) -> None:
        stdin  = stdin or sys.stdin
        stdout = stdout or sys.stdout
        Log.debug(f"Tool server '{self.name}' serving {self.workspace}")
        for line in stdin:
            line = line.strip()
            if not line:
                continue
            try:
                request = json.loads(line)
            except json.JSONDecodeError:
                Log.warning(f"Tool server '{self.name}': ignoring non-JSON input")
                continue
            if not isinstance(request, dict):
                continue
            response = self.handle(request)
            if response is not None:
                stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
                stdout.flush()


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="mcpagent built-in tool server")
    parser.add_argument("--server", required=True, choices=sorted(SERVERS))
    parser.add_argument("--workspace", default=Config.WORKSPACE)
    args = parser.parse_args(argv)

    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8")
        sys.stdin.reconfigure(encoding="utf-8")
    try:
        ToolServer(args.server, Path(args.workspace)).serve()
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
