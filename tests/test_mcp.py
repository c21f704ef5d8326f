"""
Tool registry tests: real subprocesses running tests/fixtures/fake_server.py.
"""

import json
import sys
from unittest import mock

import pytest

from agent_core import Config, ConnectionStatus, ServerSpec
from agent_mcp import (
    MCPConnection, ToolRegistry, builtin_server_config, content_text,
    load_server_specs, load_user_config, server_environment,
)


@pytest.fixture
def registry():
    reg = ToolRegistry(connect_timeout=10)
    yield reg
    reg.shutdown()


# ═══════════════════════════════════════════════════════════════════════════
# 1. Server configuration
# ═══════════════════════════════════════════════════════════════════════════

class TestServerConfig:

    def test_builtin_servers_point_at_tool_script(self, workspace, monkeypatch):
        monkeypatch.setattr(Config, "ENABLE_BUILTIN_SERVERS", True)
        servers = builtin_server_config()
        assert set(servers) == {"git", "explorer", "runner"}
        git = servers["git"]
        assert git["command"] == sys.executable
        assert git["args"][0].endswith("agent_tools.py")
        assert git["args"][1:3] == ["--server", "git"]
        assert git["args"][-1] == str(workspace.resolve())

    def test_builtins_disabled(self, monkeypatch):
        monkeypatch.setattr(Config, "ENABLE_BUILTIN_SERVERS", False)
        assert builtin_server_config() == {}

    def test_user_entry_replaces_builtin(self, tmp_path, workspace, monkeypatch):
        monkeypatch.setattr(Config, "ENABLE_BUILTIN_SERVERS", True)
        cfg = tmp_path / "mcp.json"
        cfg.write_text(json.dumps({"mcpServers": {
            "git":    {"command": "my-git-server", "args": ["--fast"]},
            "extra":  {"command": "extra-server", "env": {"TOKEN": "x"}},
        }}))
        specs = load_server_specs(str(cfg))
        assert specs["git"].command == "my-git-server"
        assert specs["git"].args == ("--fast",)
        assert specs["extra"].env_dict == {"TOKEN": "x"}
        assert "explorer" in specs

    def test_invalid_names_and_missing_commands_skipped(self, tmp_path, monkeypatch):
        monkeypatch.setattr(Config, "ENABLE_BUILTIN_SERVERS", False)
        cfg = tmp_path / "mcp.json"
        cfg.write_text(json.dumps({"mcpServers": {
            "bad:name": {"command": "x"},
            "dou__ble": {"command": "x"},
            "nocmd":    {"args": []},
            "ok":       {"command": "x"},
        }}))
        assert list(load_server_specs(str(cfg))) == ["ok"]

    def test_missing_or_broken_config_file(self, tmp_path):
        assert load_user_config(str(tmp_path / "absent.json")) == {}
        broken = tmp_path / "broken.json"
        broken.write_text("{not json")
        assert load_user_config(str(broken)) == {}

    def test_environment_is_restricted_and_overlaid(self, monkeypatch):
        monkeypatch.setattr(Config, "MCP_INHERIT_ENV", ["PATH"])
        monkeypatch.setenv("PATH", "/usr/bin")
        monkeypatch.setenv("SECRET_TOKEN", "leak")
        spec = ServerSpec.from_config("s", {"command": "x", "env": {"FOO": "bar"}})
        env = server_environment(spec)
        assert env == {"PATH": "/usr/bin", "FOO": "bar"}


# ═══════════════════════════════════════════════════════════════════════════
# 2. Connect / discover
# ═══════════════════════════════════════════════════════════════════════════

class TestConnect:

    def test_one_invalid_server_does_not_block_the_other(self, registry, fake_server_spec):
        specs = {
            "good": fake_server_spec("good"),
            "bad":  ServerSpec.from_config("bad", {"command": "/nonexistent/tool-server-binary"}),
        }
        registry.connect(specs=specs)

        status = registry.server_status()
        assert status == {"good": "ready", "bad": "failed"}
        names = {t.qualified_name for t in registry.tools()}
        assert names == {"good:echo", "good:fail", "good:slow", "good:boom"}
        assert registry.is_connected()

    def test_handshake_timeout_marks_failed(self, fake_server_spec):
        reg = ToolRegistry(connect_timeout=0.5)
        try:
            reg.connect(specs={"hung": fake_server_spec("hung", "--hang"),
                               "ok":   fake_server_spec("ok")})
            assert reg.server_status() == {"hung": "failed", "ok": "ready"}
            assert "Timeout" in reg.connection("hung").error
        finally:
            reg.shutdown()

    def test_connect_is_idempotent(self, registry, fake_server_spec):
        registry.connect(specs={"a": fake_server_spec("a")})
        first = registry.connection("a")
        registry.connect(specs={"b": fake_server_spec("b")})
        assert registry.connection("a") is first
        assert registry.connection("b") is None

    def test_no_servers(self, registry):
        registry.connect(specs={})
        assert registry.tools() == []
        assert not registry.is_connected()

    def test_mcp_disabled_skips_config(self, registry, monkeypatch):
        monkeypatch.setattr(Config, "ENABLE_MCP", False)
        with mock.patch("agent_mcp.load_server_specs") as loader:
            registry.connect()
        loader.assert_not_called()
        assert registry.server_status() == {}

    def test_catalog_serialises_function_names(self, registry, fake_server_spec):
        registry.connect(specs={"fake": fake_server_spec()})
        fns = {f["function"]["name"] for f in registry.format_for_llm()}
        assert "fake__echo" in fns
        echo = registry.get_tool("fake:echo")
        assert echo.server_name == "fake"
        assert echo.input_schema["required"] == ["text"]


# ═══════════════════════════════════════════════════════════════════════════
# 3. Execute
# ═══════════════════════════════════════════════════════════════════════════

class TestExecute:

    @pytest.fixture
    def connected(self, registry, fake_server_spec):
        registry.connect(specs={"fake": fake_server_spec()})
        return registry

    def test_success(self, connected):
        ex = connected.execute_tool("fake:echo", {"text": "hi"})
        assert ex.success
        assert ex.server_name == "fake"
        assert content_text(ex.data) == "hi"

    def test_tool_level_error(self, connected):
        ex = connected.execute_tool("fake:fail", {})
        assert not ex.success
        assert ex.error == "deliberate failure"

    def test_jsonrpc_error_becomes_result(self, connected):
        ex = connected.execute_tool("fake:boom", {})
        assert not ex.success
        assert "boom" in ex.error

    def test_unconfigured_server_never_raises(self, connected):
        ex = connected.execute_tool("nowhere:echo", {"text": "x"})
        assert not ex.success
        assert ex.error == "Server not connected: nowhere"
        assert ex.to_result("id1").is_error

    def test_malformed_name(self, connected):
        ex = connected.execute_tool("no-colon", {})
        assert not ex.success
        assert ex.server_name == "unknown"
        assert "Invalid tool name" in ex.error

    def test_crashed_server_reports_error(self, connected):
        conn = connected.connection("fake")
        conn.process.kill()
        conn.process.wait(timeout=5)
        conn._reader.join(timeout=5)
        ex = connected.execute_tool("fake:echo", {"text": "x"})
        assert not ex.success
        assert conn.status == ConnectionStatus.FAILED

    def test_concurrent_calls_are_routed_by_id(self, connected):
        from concurrent.futures import ThreadPoolExecutor
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda i: connected.execute_tool("fake:echo", {"text": f"m{i}"}), range(20)))
        assert [content_text(r.data) for r in results] == [f"m{i}" for i in range(20)]

    def test_late_response_after_timeout_is_dropped(self, connected):
        conn = connected.connection("fake")
        with pytest.raises(TimeoutError):
            conn.call_tool("slow", {"seconds": 0.3}, timeout=0.05)
        # the server answers in order, so the late reply arrives before this one
        assert content_text(conn.call_tool("echo", {"text": "after"})) == "after"
        assert conn._responses == {}
        assert conn._pending == {}


# ═══════════════════════════════════════════════════════════════════════════
# 4. Shutdown
# ═══════════════════════════════════════════════════════════════════════════

class TestShutdown:

    def test_shutdown_twice_is_safe(self, fake_server_spec):
        reg = ToolRegistry(connect_timeout=10)
        reg.connect(specs={"fake": fake_server_spec()})
        conn = reg.connection("fake")
        reg.shutdown()
        reg.shutdown()
        assert conn.status == ConnectionStatus.CLOSED
        assert reg.tools() == []
        assert reg.server_status() == {}

    def test_reconnect_after_shutdown(self, registry, fake_server_spec):
        registry.connect(specs={"a": fake_server_spec("a")})
        registry.shutdown()
        registry.connect(specs={"b": fake_server_spec("b")})
        assert registry.server_status() == {"b": "ready"}

    def test_connection_close_without_start(self):
        conn = MCPConnection(ServerSpec.from_config("x", {"command": "x"}))
        conn.close()
        assert conn.status == ConnectionStatus.CLOSED


def test_content_text_joins_text_blocks():
    result = {"content": [{"type": "text", "text": "a"},
                          {"type": "image", "data": "..."},
                          {"type": "text", "text": "b"}]}
    assert content_text(result) == "a\n\nb"
    assert content_text({}) == ""
