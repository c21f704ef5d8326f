"""
Web host routes via Flask's test client.
"""

import json
import threading
import time

import pytest

from agent_core import AgentEvent, LLMError, ToolDescriptor, ToolExecution
from agent_llm import ConversationLoop, LLMResponse
from agent_session import ChatSession
from agent_web import EventHub, create_app


class FakeRegistry:

    def __init__(self):
        self.calls = []
        self._tools = [
            ToolDescriptor("fake:echo", "Echo text back",
                           {"type": "object", "properties": {"text": {"type": "string"}},
                            "required": ["text"]}),
            ToolDescriptor("fake:fail", "Always fails"),
        ]

    def execute_tool(self, name, arguments=None):
        self.calls.append((name, dict(arguments or {})))
        if name == "fake:fail":
            return ToolExecution(False, name, "fake", error="nope")
        return ToolExecution(True, name, "fake",
                             data={"content": [{"type": "text", "text": f"echo {arguments}"}]})

    def tools(self):
        return list(self._tools)

    def get_tool(self, name):
        return next((t for t in self._tools if t.qualified_name == name), None)

    def server_status(self):
        return {"fake": "ready"}

    def is_connected(self):
        return True

    def shutdown(self):
        pass


class ScriptedLLM:
    provider, model, url = "local", "test-model", "http://llm.test"

    def __init__(self, *replies):
        self.replies = list(replies)
        self.release = threading.Event()
        self.release.set()

    def complete(self, messages, tools=None, on_delta=None, stream=None):
        self.release.wait(5)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if on_delta:
            on_delta(reply)
        return LLMResponse(reply)


@pytest.fixture
def registry():
    return FakeRegistry()


def _app(registry, *replies, keepalive=15):
    llm     = ScriptedLLM(*(replies or ("pong",)))
    session = ChatSession(ConversationLoop(llm, tools=registry.tools()), registry=registry)
    app     = create_app(session, keepalive=keepalive)
    return app, session, llm


def _frames(resp, count):
    out, it = [], iter(resp.response)
    while len(out) < count:
        chunk = next(it)
        out.append(chunk.decode() if isinstance(chunk, bytes) else chunk)
    return out


def _wait_idle(client, timeout=5.0):
    deadline = time.monotonic() + timeout
    while client.get("/status").get_json()["busy"]:
        assert time.monotonic() < deadline
        time.sleep(0.02)


# ═══════════════════════════════════════════════════════════════════════════
# 1. Chat
# ═══════════════════════════════════════════════════════════════════════════

class TestChat:

    def test_empty_message_rejected(self, registry):
        app, _, _ = _app(registry)
        resp = app.test_client().post("/chat", json={"message": "   "})
        assert resp.status_code == 400

    def test_wait_returns_reply(self, registry):
        app, session, _ = _app(registry, "hello there")
        resp = app.test_client().post("/chat", json={"message": "hi", "wait": True,
                                                     "request_id": "r1"})
        assert resp.status_code == 200
        assert resp.get_json() == {"ok": True, "request_id": "r1", "reply": "hello there"}
        assert [m.role for m in session.transcript()] == ["user", "assistant"]

    def test_llm_failure_is_502(self, registry):
        error = LLMError("rate limited", LLMError.API_ERROR, status_code=429, retryable=True)
        app, _, _ = _app(registry, error)
        resp = app.test_client().post("/chat", json={"message": "hi", "wait": True})
        body = resp.get_json()
        assert resp.status_code == 502
        assert body["code"] == LLMError.API_ERROR
        assert body["retryable"] is True

    def test_background_chat_and_busy(self, registry):
        app, session, llm = _app(registry, "later")
        client = app.test_client()
        llm.release.clear()
        resp = client.post("/chat", json={"message": "go"})
        assert resp.get_json()["ok"] is True
        assert resp.get_json()["request_id"].startswith("req_")

        assert client.post("/chat", json={"message": "again"}).status_code == 409
        llm.release.set()
        _wait_idle(client)
        assert client.get("/messages").get_json()[-1]["content"] == "later"


# ═══════════════════════════════════════════════════════════════════════════
# 2. State
# ═══════════════════════════════════════════════════════════════════════════

class TestState:

    def test_status(self, registry):
        app, _, _ = _app(registry)
        body = app.test_client().get("/status").get_json()
        assert body["llm_model"] == "test-model"
        assert body["servers"] == {"fake": "ready"}
        assert body["busy"] is False
        assert body["sse_clients"] == 0

    def test_mode(self, registry):
        app, session, _ = _app(registry)
        client = app.test_client()
        assert client.post("/mode", json={"mode": "plan"}).get_json() == {"ok": True, "mode": "plan"}
        assert session.mode == "plan"
        assert client.post("/mode", json={"mode": "chaos"}).status_code == 400

    def test_clear(self, registry):
        app, session, _ = _app(registry)
        client = app.test_client()
        client.post("/chat", json={"message": "hi", "wait": True})
        assert client.post("/clear").get_json() == {"ok": True}
        assert session.loop.history == []
        assert client.get("/messages").get_json() == []


# ═══════════════════════════════════════════════════════════════════════════
# 3. Tools
# ═══════════════════════════════════════════════════════════════════════════

class TestTools:

    def test_listing_grouped_by_server(self, registry):
        app, _, _ = _app(registry)
        body = app.test_client().get("/tools").get_json()
        assert body["servers"] == {"fake": "ready"}
        echo = body["tools"]["fake"][0]
        assert echo == {"name": "fake:echo", "description": "Echo text back",
                        "params": ["text"], "required": ["text"]}

    def test_queue_validation(self, registry):
        app, _, _ = _app(registry)
        client = app.test_client()
        assert client.post("/tools/queue", json={"tool": "fake:nope"}).status_code == 404
        assert client.post("/tools/queue", json={"tool": "fake:echo", "input": [1]}).status_code == 400

    def test_queue_then_execute(self, registry):
        app, session, _ = _app(registry)
        client = app.test_client()
        queued = client.post("/tools/queue", json={"tool": "fake:echo", "input": {"text": "a"}})
        assert queued.get_json()["call"]["status"] == "pending"
        client.post("/tools/queue", json={"tool": "fake:fail"})

        body = client.post("/tools/execute-pending").get_json()
        assert [r["is_error"] for r in body["results"]] == [False, True]
        assert session.activity.pending_calls == []

    def test_repeat(self, registry):
        app, _, _ = _app(registry)
        client = app.test_client()
        assert client.post("/tools/repeat").status_code == 404
        client.post("/tools/queue", json={"tool": "fake:echo", "input": {"text": "b"}})
        client.post("/tools/execute-pending")

        body = client.post("/tools/repeat").get_json()
        assert body["tool"] == "fake:echo"
        assert body["result"]["is_error"] is False
        assert registry.calls[-1] == ("fake:echo", {"text": "b"})

    def test_no_tool_servers(self):
        llm     = ScriptedLLM("x")
        session = ChatSession(ConversationLoop(llm))
        client  = create_app(session).test_client()
        assert client.post("/tools/queue", json={"tool": "a:b"}).status_code == 503
        assert client.get("/tools").get_json() == {"servers": {}, "tools": {}}


# ═══════════════════════════════════════════════════════════════════════════
# 4. Event stream
# ═══════════════════════════════════════════════════════════════════════════

class TestStream:

    def test_connect_frame_then_events_then_keepalive(self, registry):
        app, _, _ = _app(registry, keepalive=0.2)
        resp = app.test_client().get("/stream", buffered=False)
        try:
            assert resp.mimetype == "text/event-stream"
            hub = app.config["HUB"]
            assert hub.clients == 1

            first = _frames(resp, 1)[0]
            payload = json.loads(first[len("data: "):])
            assert payload["type"] == "connect"
            assert payload["data"]["status"]["mode"] == "ask"

            hub.broadcast(AgentEvent("text", {"content": "hi"}))
            frame, keepalive = _frames(resp, 2)
            assert json.loads(frame[len("data: "):]) == {"type": "text", "data": {"content": "hi"}}
            assert keepalive == ": ka\n\n"
        finally:
            resp.close()

    def test_session_events_reach_hub(self, registry):
        app, session, _ = _app(registry)
        q = app.config["HUB"].register()
        session.send("hi")
        kinds = []
        while not q.empty():
            kinds.append(q.get_nowait()["type"])
        assert kinds[0] == "message"
        assert kinds[-1] == "complete"


def test_hub_unregister_twice():
    hub = EventHub()
    q = hub.register()
    hub.unregister(q)
    hub.unregister(q)
    assert hub.clients == 0
