"""
LLM client (mocked HTTP session), tool-call parsing, provider factory, and the
conversation loop driven by a scripted model.
"""

import json
import time
from unittest import mock

import pytest
import requests

from agent_core import (
    Config, LLMError, RetryPolicy, Role, ToolCall, ToolDescriptor, ToolExecution,
)
from agent_llm import (
    AgentObserver, ConversationLoop, LLMClient, LLMResponse, PROVIDER_DEFAULTS,
    build_system_prompt, create_llm_client, parse_tool_calls,
)

NO_WAIT = RetryPolicy(max_attempts=3, initial_delay=0, max_delay=0, jitter=0)


def _resp(status=200, chunks=None, body=None, text=""):
    resp = mock.MagicMock()
    resp.status_code = status
    resp.text = text
    if chunks is not None:
        resp.iter_content.return_value = iter(chunks)
    if body is not None:
        resp.json.return_value = body
    return resp


def _sse(*contents):
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': c}}]})}\n" for c in contents]
    return [l.encode() for l in lines] + [b"data: [DONE]\n"]


def _client(*responses, **kw):
    session = mock.MagicMock()
    session.post.side_effect = list(responses)
    kw.setdefault("retry_policy", NO_WAIT)
    return LLMClient(provider="local", url="http://llm.test/v1/chat/completions",
                     model="test-model", session=session, **kw), session


# ═══════════════════════════════════════════════════════════════════════════
# 1. LLMClient
# ═══════════════════════════════════════════════════════════════════════════

class TestLLMClient:

    def test_streaming_deltas(self):
        client, session = _client(_resp(chunks=_sse("Hel", "lo")), stream=True)
        seen = []
        out = client.complete([{"role": "user", "content": "hi"}], on_delta=seen.append)
        assert seen == ["Hel", "lo"]
        assert out.text == "Hello"
        assert out.tool_calls == []
        assert session.post.call_args.kwargs["stream"] is True

    def test_non_streaming_tool_calls(self):
        body = {"choices": [{"finish_reason": "tool_calls", "message": {
            "content": None,
            "tool_calls": [{"id": "c1", "type": "function", "function": {
                "name": "git__git_log", "arguments": "{\"limit\": 3}"}}],
        }}]}
        client, _ = _client(_resp(body=body), stream=False)
        out = client.complete([], tools=[{"type": "function"}])
        assert out.finish_reason == "tool_calls"
        assert [(c.id, c.qualified_name, c.input) for c in out.tool_calls] == \
               [("c1", "git:git_log", {"limit": 3})]

    def test_payload_and_headers(self):
        client, session = _client(_resp(chunks=_sse("x")), stream=True, api_key="sk-1",
                                  max_tokens=99, temperature=0.1)
        client.complete([{"role": "user", "content": "q"}], tools=[{"type": "function"}])
        kwargs = session.post.call_args.kwargs
        payload = kwargs["json"]
        assert payload["model"] == "test-model"
        assert payload["max_tokens"] == 99
        assert payload["temperature"] == 0.1
        assert payload["tool_choice"] == "auto"
        assert kwargs["headers"]["Authorization"] == "Bearer sk-1"

    def test_no_tools_no_tool_choice(self):
        client, session = _client(_resp(chunks=_sse("x")), stream=True)
        client.complete([])
        payload = session.post.call_args.kwargs["json"]
        assert "tools" not in payload and "tool_choice" not in payload

    def test_429_twice_then_success(self):
        client, session = _client(_resp(429, text="slow down"), _resp(429, text="slow down"),
                                  _resp(chunks=_sse("ok")), stream=True)
        assert client.complete([]).text == "ok"
        assert session.post.call_count == 3

    def test_client_error_not_retried(self):
        client, session = _client(_resp(401, text="bad key"), stream=True)
        with pytest.raises(LLMError) as exc:
            client.complete([])
        assert exc.value.code == LLMError.API_ERROR
        assert exc.value.status_code == 401
        assert exc.value.retryable is False
        assert session.post.call_count == 1

    def test_connection_error_exhausts_retries(self):
        client, session = _client(*[requests.ConnectionError("refused")] * 3, stream=True)
        with pytest.raises(LLMError) as exc:
            client.complete([])
        assert exc.value.code == LLMError.NETWORK_ERROR
        assert exc.value.retryable is True
        assert session.post.call_count == 3

    def test_tool_choice_rejection_retries_without_it(self):
        client, session = _client(_resp(400, text="unsupported parameter: tool_choice"),
                                  _resp(chunks=_sse("fine")), _resp(chunks=_sse("again")),
                                  stream=True)
        tools = [{"type": "function"}]
        assert client.complete([], tools=tools).text == "fine"
        assert "tool_choice" not in session.post.call_args.kwargs["json"]
        client.complete([], tools=tools)
        assert "tool_choice" not in session.post.call_args.kwargs["json"]

    def test_broken_stream_is_not_retried(self):
        resp = _resp()
        resp.iter_content.return_value = _broken_iter()
        client, session = _client(resp, stream=True)
        seen = []
        with pytest.raises(LLMError) as exc:
            client.complete([], on_delta=seen.append)
        assert exc.value.code == LLMError.STREAM_ERROR
        assert seen == ["part"]
        assert session.post.call_count == 1

    def test_non_stream_delivers_text_once(self):
        body = {"choices": [{"message": {"content": "whole answer"}}]}
        client, _ = _client(_resp(body=body), stream=False)
        seen = []
        client.complete([], on_delta=seen.append)
        assert seen == ["whole answer"]


def _broken_iter():
    yield _sse("part")[0]
    raise requests.exceptions.ChunkedEncodingError("connection reset")


# ═══════════════════════════════════════════════════════════════════════════
# 2. Provider factory
# ═══════════════════════════════════════════════════════════════════════════

class TestProviderFactory:

    def test_anthropic_not_implemented(self):
        with pytest.raises(LLMError) as exc:
            create_llm_client("anthropic", api_key="k")
        assert exc.value.code == LLMError.NOT_IMPLEMENTED
        assert exc.value.is_configuration_error

    def test_unknown_provider(self):
        with pytest.raises(LLMError) as exc:
            create_llm_client("mystery", api_key="k")
        assert exc.value.code == LLMError.UNSUPPORTED_PROVIDER

    @pytest.mark.parametrize("provider", ["openai", "glm"])
    def test_missing_key(self, provider, monkeypatch):
        monkeypatch.setattr(Config, "LLM_API_KEY", "")
        with pytest.raises(LLMError) as exc:
            create_llm_client(provider)
        assert exc.value.code == LLMError.MISSING_API_KEY

    def test_local_needs_no_key(self, monkeypatch):
        monkeypatch.setattr(Config, "LLM_API_KEY", "")
        monkeypatch.setattr(Config, "LLM_URL", "")
        client = create_llm_client("local")
        assert client.url == PROVIDER_DEFAULTS["local"]["url"]

    def test_provider_defaults(self, monkeypatch):
        monkeypatch.setattr(Config, "LLM_URL", "")
        monkeypatch.setattr(Config, "LLM_MODEL", "")
        client = create_llm_client("OpenAI", api_key="sk")
        assert client.provider == "openai"
        assert client.url == PROVIDER_DEFAULTS["openai"]["url"]
        assert client.model == PROVIDER_DEFAULTS["openai"]["model"]

    def test_explicit_overrides(self):
        client = create_llm_client("glm", api_key="k", url="http://x/v1", model="m")
        assert (client.url, client.model) == ("http://x/v1", "m")


# ═══════════════════════════════════════════════════════════════════════════
# 3. Tool-call parsing
# ═══════════════════════════════════════════════════════════════════════════

def _raw(name, arguments, cid="c1"):
    return {"id": cid, "function": {"name": name, "arguments": arguments}}


class TestParseToolCalls:

    def test_function_name_mapped_to_qualified(self):
        [call] = parse_tool_calls([_raw("explorer__read_file", '{"path": "a"}')])
        assert call.qualified_name == "explorer:read_file"
        assert call.input == {"path": "a"}
        assert call.parse_error is None

    def test_missing_braces_repaired(self):
        [call] = parse_tool_calls([_raw("git__git_log", '{"limit": 2')])
        assert call.input == {"limit": 2}
        assert call.parse_error is None

    def test_unrepairable_arguments_carry_parse_error(self):
        [call] = parse_tool_calls([_raw("git__git_log", '{"limit": }')])
        assert call.parse_error
        assert call.input == {}

    def test_non_object_arguments(self):
        [call] = parse_tool_calls([_raw("git__git_log", "[1, 2]")])
        assert "JSON object" in call.parse_error

    def test_empty_and_dict_arguments(self):
        a, b = parse_tool_calls([_raw("git__git_status", ""), _raw("git__git_log", {"limit": 1})])
        assert a.input == {} and a.parse_error is None
        assert b.input == {"limit": 1}

    def test_nameless_calls_dropped_and_ids_generated(self):
        calls = parse_tool_calls([{"function": {"arguments": "{}"}},
                                  {"function": {"name": "git__git_status"}}])
        assert len(calls) == 1
        assert calls[0].id.startswith("toolu_")


# ═══════════════════════════════════════════════════════════════════════════
# 4. Conversation loop
# ═══════════════════════════════════════════════════════════════════════════

class ScriptedLLM:
    """Stands in for LLMClient: each complete() pops the next scripted reply."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def complete(self, messages, tools=None, on_delta=None, stream=None):
        self.calls.append(messages)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, LLMResponse):
            return reply
        chunks, tool_calls = reply
        for c in chunks:
            if on_delta:
                on_delta(c)
        return LLMResponse("".join(chunks), [ToolCall(**tc) for tc in tool_calls])


def _say(*chunks):
    return (list(chunks), [])


def _use(name, cid="t1", **tool_input):
    return ([], [{"id": cid, "qualified_name": name, "input": tool_input}])


ECHO = ToolDescriptor("fake:echo", "Echo", {"type": "object", "properties": {}})


class Recorder(AgentObserver):
    def __init__(self):
        self.events = []

    def on_turn_start(self, turn):               self.events.append(("turn", turn))
    def on_thinking(self, active):               self.events.append(("thinking", active))
    def on_text(self, text):                     self.events.append(("text", text))
    def on_tool_start(self, call):               self.events.append(("tool_start", call.qualified_name))
    def on_tool_complete(self, call, result):    self.events.append(("tool_complete", result.is_error))
    def on_complete(self, text):                 self.events.append(("complete", text))


def _echo_executor(call):
    return ToolExecution(True, call.qualified_name, "fake", data={"echo": call.input})


class TestConversationLoop:

    def test_plain_answer(self):
        llm = ScriptedLLM(_say("Hi ", "there"))
        loop = ConversationLoop(llm, tools=[ECHO])
        chunks = []
        assert loop.send_message("hello", on_chunk=chunks.append) == "Hi there"
        assert chunks == ["Hi ", "there"]
        assert [m.role for m in loop.history] == [Role.USER, Role.ASSISTANT]
        assert len(llm.calls) == 1
        assert llm.calls[0][0]["role"] == "system"

    def test_tool_round_trip_and_event_order(self):
        llm = ScriptedLLM(_use("fake:echo", text="x"), _say("done"))
        loop = ConversationLoop(llm, tools=[ECHO], tool_executor=_echo_executor)
        rec = Recorder()
        loop.subscribe(rec)
        assert loop.send_message("go") == "done"

        assert rec.events == [
            ("turn", 1), ("tool_start", "fake:echo"), ("tool_complete", False),
            ("turn", 2), ("text", "done"), ("complete", "done"),
        ]
        roles = [m.role for m in loop.history]
        assert roles == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
        tool_msg = loop.history[2]
        assert tool_msg.tool_result_for == "t1"
        assert json.loads(tool_msg.content) == {"echo": {"text": "x"}}

    def test_max_turns_bounds_llm_calls(self):
        llm = ScriptedLLM(LLMResponse("still working", [ToolCall("t", "fake:echo")]))
        loop = ConversationLoop(llm, tools=[ECHO], tool_executor=_echo_executor, max_turns=3)
        assert loop.send_message("loop forever") == "still working"
        assert len(llm.calls) == 3

    def test_tool_timeout_becomes_error_result(self):
        def slow(call):
            time.sleep(2)
            return _echo_executor(call)

        llm = ScriptedLLM(_use("fake:echo"), _say("recovered"))
        loop = ConversationLoop(llm, tools=[ECHO], tool_executor=slow, tool_timeout=0.2)
        results = []
        loop.subscribe(_on_complete(results))
        started = time.monotonic()
        assert loop.send_message("go") == "recovered"
        assert time.monotonic() - started < 1.5
        assert results[0].is_error
        assert results[0].content == "Tool execution timeout after 200ms"

    def test_executor_exception_fed_back(self):
        def broken(call):
            raise RuntimeError("kaput")

        llm = ScriptedLLM(_use("fake:echo"), _say("ok"))
        loop = ConversationLoop(llm, tools=[ECHO], tool_executor=broken)
        loop.send_message("go")
        assert loop.history[2].content == "kaput"

    def test_parse_error_not_dispatched(self):
        executor = mock.Mock()
        bad = ToolCall("t9", "fake:echo", parse_error="Could not parse arguments")
        llm = ScriptedLLM(LLMResponse("", [bad]), _say("ok"))
        loop = ConversationLoop(llm, tools=[ECHO], tool_executor=executor)
        loop.send_message("go")
        executor.assert_not_called()
        assert loop.history[2].content == "Could not parse arguments"

    def test_no_executor_yields_error(self):
        llm = ScriptedLLM(_use("fake:echo"), _say("ok"))
        loop = ConversationLoop(llm, tools=[ECHO])
        loop.send_message("go")
        assert "not configured" in loop.history[2].content

    def test_thinking_hidden_from_text_and_history(self):
        llm = ScriptedLLM(_say("<thinking>hm", "m</thinking>", "Answer"))
        loop = ConversationLoop(llm, thinking_tags=["thinking"])
        rec = Recorder()
        loop.subscribe(rec)
        chunks = []
        assert loop.send_message("q", on_chunk=chunks.append) == "Answer"
        assert "".join(chunks) == "Answer"
        assert ("thinking", True) in rec.events and ("thinking", False) in rec.events
        assert loop.history[-1].content == "Answer"

    def test_unclosed_thinking_keeps_earlier_text(self):
        llm = ScriptedLLM(_say("Final answer 42. ", "<thinking>and more"))
        loop = ConversationLoop(llm, thinking_tags=["thinking"])
        assert loop.send_message("q") == "Final answer 42."
        assert loop.history[-1].content == "Final answer 42."

    def test_llm_error_propagates(self):
        llm = ScriptedLLM(LLMError("down", LLMError.NETWORK_ERROR, retryable=True))
        loop = ConversationLoop(llm)
        with pytest.raises(LLMError):
            loop.send_message("hi")

    def test_callback_pair(self):
        started, finished = [], []
        llm = ScriptedLLM(_use("fake:echo", text="a"), _say("ok"))
        loop = ConversationLoop(llm, tools=[ECHO], tool_executor=_echo_executor,
                                on_tool_start=lambda n, i: started.append((n, i)),
                                on_tool_complete=lambda n, r: finished.append((n, r.is_error)))
        loop.send_message("go")
        assert started == [("fake:echo", {"text": "a"})]
        assert finished == [("fake:echo", False)]

    def test_unsubscribe_and_failing_observer(self):
        class Broken(AgentObserver):
            def on_text(self, text):
                raise ValueError("observer bug")

        llm = ScriptedLLM(_say("fine"))
        loop = ConversationLoop(llm)
        loop.subscribe(Broken())
        rec = Recorder()
        unsubscribe = loop.subscribe(rec)
        unsubscribe()
        assert loop.send_message("hi") == "fine"
        assert rec.events == []

    def test_history_management(self):
        loop = ConversationLoop(ScriptedLLM(_say("a")))
        loop.send_message("one")
        loop.set_history(loop.history[:1])
        assert len(loop.history) == 1
        loop.clear_history()
        assert loop.api_messages()[0]["role"] == "system"
        assert len(loop.api_messages()) == 1


def _on_complete(sink):
    class _Obs(AgentObserver):
        def on_tool_complete(self, call, result):
            sink.append(result)
    return _Obs()


def test_system_prompt_lists_tools_by_server():
    tools = [ECHO, ToolDescriptor("git:git_status", "status")]
    prompt = build_system_prompt(tools, workspace="/ws")
    assert "/ws" in prompt
    assert "fake: echo" in prompt
    assert "git: git_status" in prompt
