#!/usr/bin/env python3
"""
agent_llm.py: LLM client, response parsing, and the agent conversation loop.

Dependency graph (no cycles):
    agent_core
        ↑
    agent_retry   agent_stream
        ↑             ↑
    agent_llm ────────┘

The loop never talks to the tool registry directly: the host hands it a
tool catalog and an executor callable (see agent_session.ToolActivity).
"""

import json
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import requests

from agent_core import (
    Config, Log,
    ConversationMessage, Role, ToolCall, ToolDescriptor, ToolExecution,
    ToolResult, LLMError, RetryPolicy, StreamEvent,
    resolve_tool_name, run_with_timeout, truncate_output,
)
from agent_retry import with_retry
from agent_stream import SSEDecoder, TagSplitter, extract_path, iter_deltas, strip_tags

ToolExecutor = Callable[[ToolCall], Union[ToolResult, ToolExecution]]

# Above this length a broken argument string is not worth repairing.
_REPAIR_LIMIT = 500


# =============================================================================
# SYSTEM PROMPT
# =============================================================================

SYSTEM_PROMPT = """You are a coding assistant working in the user's project at {workspace}.
You have real tools that make real changes. Tools are named server__tool.

## WHEN TO USE TOOLS
- Questions about repository state (status, branches, diffs) → git tools.
- Questions about a specific file → read it first, then answer.
- "Run the tests", "build", "lint" → runner tools.
- General knowledge, opinions, or things already in this conversation → answer directly.

## RULES
1. One tool call per question about external state, then answer.
2. Every call needs ALL required arguments. Unknown path? list or glob first.
3. A tool error is information: read it, adapt once, and say so if still blocked.
4. Reason inside <thinking>...</thinking> if you need to. Keep the answer outside it.

## TOOLS
{tool_section}
"""


def build_system_prompt(tools: Sequence[ToolDescriptor], workspace: Optional[str] = None) -> str:
    by_server: Dict[str, List[str]] = {}
    for t in tools:
        by_server.setdefault(t.server_name, []).append(t.qualified_name.split(":", 1)[1])
    if by_server:
        tool_section = "\n".join(f"{server}: {', '.join(sorted(names))}"
                                 for server, names in sorted(by_server.items()))
    else:
        tool_section = "(no tools available, answer from your own knowledge)"
    return SYSTEM_PROMPT.format(workspace=workspace or Config.WORKSPACE,
                                tool_section=tool_section)


# =============================================================================
# LLM CLIENT
# =============================================================================

PROVIDER_DEFAULTS: Dict[str, Dict[str, str]] = {
    "openai": {"url": "https://api.openai.com/v1/chat/completions",
               "model": "gpt-4o-mini"},
    "glm":    {"url": "https://api.z.ai/api/coding/paas/v4/chat/completions",
               "model": "glm-4.7"},
    "local":  {"url": "http://localhost:1234/v1/chat/completions",
               "model": ""},
}


@dataclass
class LLMResponse:
    text:          str
    tool_calls:    List[ToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None


class LLMClient:
    """OpenAI-compatible chat-completions client (openai, glm, local servers)."""

    _HEADERS: Dict[str, str] = {"Content-Type": "application/json"}

    def __init__(self, provider: str = "local", url: str = "", api_key: str = "",
                 model: str = "", temperature: Optional[float] = None,
                 max_tokens: Optional[int] = None, timeout: Optional[float] = None,
                 stream: Optional[bool] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 session: Optional[requests.Session] = None):
        defaults          = PROVIDER_DEFAULTS.get(provider, PROVIDER_DEFAULTS["local"])
        self.provider     = provider
        self.url          = url or defaults["url"]
        self.api_key      = api_key
        self.model        = model or defaults["model"]
        self.temperature  = Config.TEMPERATURE if temperature is None else temperature
        self.max_tokens   = Config.MAX_TOKENS if max_tokens is None else max_tokens
        self.timeout      = Config.LLM_TIMEOUT if timeout is None else timeout
        self.stream       = Config.LLM_STREAM if stream is None else stream
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self.session      = session or requests.Session()
        self._tool_choice_rejected = False

    def _headers(self) -> Dict[str, str]:
        headers = dict(self._HEADERS)
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_payload(self, messages: List[Dict[str, Any]],
                      tools: List[Dict[str, Any]], stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "messages":    messages,
            "temperature": self.temperature,
            "stream":      stream,
        }
        if self.model:          payload["model"]      = self.model
        if self.max_tokens > 0: payload["max_tokens"] = self.max_tokens
        if tools:
            payload["tools"] = tools
            if not self._tool_choice_rejected:
                payload["tool_choice"] = "auto"
        return payload

    def complete(self, messages: List[Dict[str, Any]],
                 tools: Optional[List[Dict[str, Any]]] = None,
                 on_delta: Optional[Callable[[str], None]] = None,
                 stream: Optional[bool] = None) -> LLMResponse:
        """One chat completion. Only establishing the request is retried;
        once deltas have been delivered a broken stream is a STREAM_ERROR."""
        stream  = self.stream if stream is None else stream
        payload = self.build_payload(messages, tools or [], stream)
        resp = with_retry(lambda: self._post(payload, stream), self.retry_policy,
                          context=f"{self.provider} request")
        if stream:
            return self._read_stream(resp, on_delta)
        response = self._read_json(resp)
        if on_delta and response.text:
            on_delta(response.text)
        return response

    def _post(self, payload: Dict[str, Any], stream: bool) -> requests.Response:
        try:
            resp = self.session.post(self.url, json=payload, headers=self._headers(),
                                     stream=stream, timeout=self.timeout)
            if (resp.status_code == 400 and "tool_choice" in payload
                    and "tool_choice" in (resp.text or "").lower()):
                Log.warning("Model rejected tool_choice — disabling for this client")
                self._tool_choice_rejected = True
                payload.pop("tool_choice", None)
                resp = self.session.post(self.url, json=payload, headers=self._headers(),
                                         stream=stream, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise LLMError(f"Cannot reach {self.url}: {e}", LLMError.NETWORK_ERROR)
        except requests.RequestException as e:
            raise LLMError(f"Request failed: {e}", LLMError.API_ERROR)

        if resp.status_code >= 400:
            detail = (resp.text or "")[:300]
            resp.close()
            raise LLMError(f"{self.provider} API error: {resp.status_code} - {detail}",
                           LLMError.API_ERROR, status_code=resp.status_code)
        return resp

    def _read_stream(self, resp: requests.Response,
                     on_delta: Optional[Callable[[str], None]]) -> LLMResponse:
        decoder = SSEDecoder()
        try:
            for delta in iter_deltas(resp.iter_content(chunk_size=None), decoder):
                if on_delta:
                    on_delta(delta)
        except requests.RequestException as e:
            raise LLMError(f"Stream interrupted: {e}", LLMError.STREAM_ERROR)
        finally:
            resp.close()
        if decoder.malformed:
            Log.debug(f"Skipped {decoder.malformed} malformed stream line(s)")
        _warn_finish(decoder.finish_reason)
        return LLMResponse(decoder.text, parse_tool_calls(decoder.tool_calls()),
                           decoder.finish_reason)

    def _read_json(self, resp: requests.Response) -> LLMResponse:
        try:
            body = resp.json()
        except ValueError as e:
            raise LLMError(f"Invalid JSON response: {e}", LLMError.API_ERROR,
                           status_code=resp.status_code)
        choice  = extract_path(body, ("choices", 0)) or {}
        message = choice.get("message") or {}
        _warn_finish(choice.get("finish_reason"))
        return LLMResponse(message.get("content") or "",
                           parse_tool_calls(message.get("tool_calls") or []),
                           choice.get("finish_reason"))


def _warn_finish(finish_reason: Optional[str]) -> None:
    if finish_reason == "length":
        Log.warning("Generation stopped: output token limit hit (finish_reason=length)")


def create_llm_client(provider: Optional[str] = None, api_key: Optional[str] = None,
                      url: Optional[str] = None, model: Optional[str] = None,
                      **kwargs: Any) -> LLMClient:
    """Build a client for *provider* (defaults from Config).

    Raises LLMError with a configuration code; these are never retried.
    """
    provider = (provider or Config.LLM_PROVIDER).strip().lower()
    if provider == "anthropic":
        raise LLMError("The anthropic provider is not implemented; use an "
                       "OpenAI-compatible endpoint (openai, glm, local)",
                       LLMError.NOT_IMPLEMENTED)
    if provider not in PROVIDER_DEFAULTS:
        raise LLMError(f"Unsupported provider: {provider!r} "
                       f"(choose from {', '.join(sorted(PROVIDER_DEFAULTS))})",
                       LLMError.UNSUPPORTED_PROVIDER)
    key = Config.LLM_API_KEY if api_key is None else api_key
    if provider != "local" and not key:
        raise LLMError(f"No API key configured for provider '{provider}' (set LLM_API_KEY)",
                       LLMError.MISSING_API_KEY)
    return LLMClient(provider=provider, url=url or Config.LLM_URL, api_key=key,
                     model=model or Config.LLM_MODEL, **kwargs)


# =============================================================================
# TOOL-CALL PARSING
# =============================================================================

def _repair_arguments(args_str: str) -> Optional[Dict[str, Any]]:
    if len(args_str) >= _REPAIR_LIMIT:
        return None
    opens, closes = args_str.count("{"), args_str.count("}")
    if opens <= closes:
        return None
    try:
        value = json.loads(args_str + "}" * (opens - closes))
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def parse_tool_calls(raw_calls: Sequence[Dict[str, Any]]) -> List[ToolCall]:
    """Provider tool-call entries → ToolCall list.

    Entries without a function name are dropped. Undecodable arguments do
    not raise: the ToolCall carries ``parse_error`` instead.
    """
    calls: List[ToolCall] = []
    for i, tc in enumerate(raw_calls):
        if not isinstance(tc, dict):
            continue
        fn   = tc.get("function") or {}
        name = fn.get("name")
        if not name:
            Log.warning(f"Tool call {i} missing name — skipping")
            continue
        call = ToolCall(id=tc.get("id") or ToolCall.generate_id(),
                        qualified_name=resolve_tool_name(name))
        args = fn.get("arguments")
        if isinstance(args, dict):
            call.input = args
        elif args is None or (isinstance(args, str) and not args.strip()):
            call.input = {}
        elif isinstance(args, str):
            try:
                value = json.loads(args)
            except json.JSONDecodeError as e:
                value = _repair_arguments(args)
                if value is None:
                    Log.error(f"'{name}' arguments are not valid JSON "
                              f"({e.msg} at pos {e.pos}, {len(args)} chars)")
                    call.parse_error = (f"Could not parse arguments for {call.qualified_name}: "
                                        f"{e.msg} at position {e.pos}")
                else:
                    Log.info(f"Auto-repaired '{name}' arguments (unbalanced braces)")
            if call.parse_error is None:
                if isinstance(value, dict):
                    call.input = value
                else:
                    call.parse_error = (f"Arguments for {call.qualified_name} must be a "
                                        f"JSON object, got {type(value).__name__}")
        else:
            call.parse_error = f"Unsupported argument type: {type(args).__name__}"
        calls.append(call)
    return calls


# =============================================================================
# OBSERVERS
# =============================================================================

class AgentObserver:
    """Subscriber interface for loop progress. Every hook is optional."""

    def on_turn_start(self, turn: int) -> None: pass
    def on_stream_event(self, event: StreamEvent) -> None: pass
    def on_text(self, text: str) -> None: pass
    def on_thinking(self, active: bool) -> None: pass
    def on_tool_start(self, call: ToolCall) -> None: pass
    def on_tool_complete(self, call: ToolCall, result: ToolResult) -> None: pass
    def on_complete(self, text: str) -> None: pass


class CallbackObserver(AgentObserver):
    """Adapts the plain ``on_tool_start(name, input)`` /
    ``on_tool_complete(name, result)`` callback pair."""

    def __init__(self, on_tool_start: Optional[Callable[[str, Dict[str, Any]], None]] = None,
                 on_tool_complete: Optional[Callable[[str, ToolResult], None]] = None):
        self._start    = on_tool_start
        self._complete = on_tool_complete

    def on_tool_start(self, call: ToolCall) -> None:
        if self._start:
            self._start(call.qualified_name, call.input)

    def on_tool_complete(self, call: ToolCall, result: ToolResult) -> None:
        if self._complete:
            self._complete(call.qualified_name, result)


# =============================================================================
# CONVERSATION LOOP
# =============================================================================

class ConversationLoop:
    """Turns one user message into a final answer, dispatching tools between
    LLM calls.

    The message list is append-only while send_message runs. LLMError
    (configuration, or transient after retries) propagates to the caller;
    tool failures are fed back to the model as error results.
    """

    def __init__(self, llm: LLMClient,
                 tools: Optional[Sequence[ToolDescriptor]] = None,
                 tool_executor: Optional[ToolExecutor] = None,
                 max_turns: Optional[int] = None,
                 tool_timeout: Optional[float] = None,
                 system_prompt: Optional[str] = None,
                 thinking_tags: Optional[Sequence[str]] = None,
                 on_tool_start: Optional[Callable[[str, Dict[str, Any]], None]] = None,
                 on_tool_complete: Optional[Callable[[str, ToolResult], None]] = None):
        self.llm           = llm
        self.max_turns     = max_turns or Config.MAX_TURNS
        self.tool_timeout  = tool_timeout or Config.TOOL_TIMEOUT
        self.thinking_tags = tuple(thinking_tags or Config.THINKING_TAGS)
        self._tools: List[ToolDescriptor] = list(tools or [])
        self._executor     = tool_executor
        self._system_prompt = system_prompt
        self._messages: List[ConversationMessage] = []
        self._observers: List[AgentObserver] = []
        self._observer_lock = threading.Lock()
        self._region_depth = 0
        if on_tool_start or on_tool_complete:
            self.subscribe(CallbackObserver(on_tool_start, on_tool_complete))

    # ── configuration ────────────────────────────────────────────────────────

    def set_tools(self, tools: Sequence[ToolDescriptor]) -> None:
        self._tools = list(tools)

    def set_tool_executor(self, executor: Optional[ToolExecutor]) -> None:
        self._executor = executor

    def subscribe(self, observer: AgentObserver) -> Callable[[], None]:
        """Register *observer*; returns a callable that unsubscribes it."""
        with self._observer_lock:
            self._observers.append(observer)

        def _unsubscribe() -> None:
            with self._observer_lock:
                if observer in self._observers:
                    self._observers.remove(observer)
        return _unsubscribe

    # ── history ──────────────────────────────────────────────────────────────

    @property
    def history(self) -> List[ConversationMessage]:
        return list(self._messages)

    def set_history(self, messages: Sequence[ConversationMessage]) -> None:
        self._messages = list(messages)

    def clear_history(self) -> None:
        self._messages = []

    def system_prompt(self) -> str:
        return self._system_prompt or build_system_prompt(self._tools)

    def api_messages(self) -> List[Dict[str, Any]]:
        return ([{"role": Role.SYSTEM.value, "content": self.system_prompt()}]
                + [m.to_api() for m in self._messages])

    # ── main loop ────────────────────────────────────────────────────────────

    def send_message(self, text: str,
                     on_chunk: Optional[Callable[[str], None]] = None) -> str:
        self._messages.append(ConversationMessage(Role.USER, text))
        functions = [t.to_function() for t in self._tools]
        final_text = ""

        for turn in range(1, self.max_turns + 1):
            self._emit("on_turn_start", turn)
            response, visible = self._call_llm(functions, on_chunk)
            final_text = visible

            self._messages.append(ConversationMessage(
                Role.ASSISTANT, visible, tool_calls=list(response.tool_calls) or None))

            if not response.tool_calls:
                self._emit("on_complete", final_text)
                return final_text

            for call in response.tool_calls:
                result  = self._run_tool(call)
                content = truncate_output(result.message_content(),
                                          Config.MAX_TOOL_OUTPUT, call.qualified_name)
                self._messages.append(ConversationMessage(
                    Role.TOOL, content, tool_result_for=call.id))

        Log.warning(f"Reached max turns ({self.max_turns}) — stopping tool chain")
        self._emit("on_complete", final_text)
        return final_text

    def _call_llm(self, functions: List[Dict[str, Any]],
                  on_chunk: Optional[Callable[[str], None]]):
        splitter = TagSplitter(self.thinking_tags)
        self._region_depth = 0
        received: List[str] = []

        def on_delta(delta: str) -> None:
            received.append(delta)
            self._route(splitter.process(delta), on_chunk)

        response = self.llm.complete(self.api_messages(), functions, on_delta=on_delta)
        if not received and response.text:
            self._route(splitter.process(response.text), on_chunk)
        self._route(splitter.flush(), on_chunk)
        visible, _ = strip_tags(response.text, self.thinking_tags)
        return response, visible.strip()

    def _route(self, events: List[StreamEvent], on_chunk: Optional[Callable[[str], None]]) -> None:
        for ev in events:
            self._emit("on_stream_event", ev)
            if ev.type == StreamEvent.TAG_OPEN:
                self._region_depth += 1
                self._emit("on_thinking", True)
            elif ev.type == StreamEvent.TAG_CLOSE:
                self._region_depth = max(0, self._region_depth - 1)
                self._emit("on_thinking", False)
            elif self._region_depth:
                # region text arrives just before its TagClose, or at flush()
                continue
            else:
                self._emit("on_text", ev.content)
                if on_chunk:
                    on_chunk(ev.content)

    def _run_tool(self, call: ToolCall) -> ToolResult:
        self._emit("on_tool_start", call)
        Log.tool(call.qualified_name, json.dumps(call.input, ensure_ascii=False)[:120])
        if call.parse_error:
            result = ToolResult(call.id, call.parse_error, True)
        elif self._executor is None:
            result = ToolResult(call.id, f"Tool execution not configured: no executor "
                                         f"available for {call.qualified_name}", True)
        else:
            executor = self._executor
            try:
                outcome = run_with_timeout(lambda: executor(call), self.tool_timeout)
                result  = _as_result(call, outcome)
            except TimeoutError as e:
                Log.warning(f"Tool '{call.qualified_name}' abandoned: {e}")
                result = ToolResult(call.id, str(e), True)
            except Exception as e:
                result = ToolResult(call.id, str(e) or type(e).__name__, True)
        self._emit("on_tool_complete", call, result)
        return result

    def _emit(self, hook: str, *args: Any) -> None:
        with self._observer_lock:
            observers = list(self._observers)
        for obs in observers:
            try:
                getattr(obs, hook)(*args)
            except Exception as e:
                Log.warning(f"Observer {type(obs).__name__}.{hook} failed: {e}")


def _as_result(call: ToolCall, outcome: Any) -> ToolResult:
    if isinstance(outcome, ToolResult):
        return outcome
    if isinstance(outcome, ToolExecution):
        return outcome.to_result(call.id)
    return ToolResult(call.id, outcome, False)
