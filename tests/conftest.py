import os
import sys
from pathlib import Path

import pytest

MCPAGENT_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "MCPAgent")
if MCPAGENT_DIR not in sys.path:
    sys.path.insert(0, MCPAGENT_DIR)

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_server.py"


@pytest.fixture(autouse=True)
def _quiet_log():
    from agent_core import Log
    Log.set_silent(True)
    yield
    Log.set_silent(False)


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    from agent_core import Config
    monkeypatch.setattr(Config, "WORKSPACE", str(tmp_path))
    monkeypatch.setattr(Config, "REQUIRE_WORKSPACE", True)
    return tmp_path


@pytest.fixture
def fake_server_spec():
    """ServerSpec factory for the scripted JSON-RPC fixture server."""
    from agent_core import ServerSpec

    def _make(name="fake", *extra_args):
        return ServerSpec.from_config(name, {
            "command": sys.executable,
            "args":    [str(FAKE_SERVER), *extra_args],
        })
    return _make
