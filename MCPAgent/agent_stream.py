#!/usr/bin/env python3
"""
agent_stream.py: Incremental response streaming.

SSEDecoder   raw body bytes → text deltas (``data: <json>`` framing)
TagSplitter  text deltas    → StreamEvent(text | tag_open | tag_close)

Both are push-style: the caller feeds whatever the network delivered and
gets back whatever is complete. Neither ever drops or duplicates input.
"""

import codecs
import json
import re
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from agent_core import Config, Log, StreamEvent

DATA_PREFIX   = "data:"
DONE_SENTINEL = "[DONE]"

# choices[0].delta.content in an OpenAI-compatible streaming chunk
OPENAI_DELTA_PATH: Tuple[Union[str, int], ...] = ("choices", 0, "delta", "content")


def extract_path(payload: Any, path: Sequence[Union[str, int]]) -> Any:
    cur = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(cur, list) or len(cur) <= key:
                return None
        elif not isinstance(cur, dict):
            return None
        cur = cur[key] if isinstance(key, int) else cur.get(key)
        if cur is None:
            return None
    return cur


# =============================================================================
# SSE DECODER
# =============================================================================

class SSEDecoder:
    """Line-assembling decoder for server-sent-event response bodies.

    A read may end mid-line or mid-UTF-8 sequence; both are carried over to
    the next feed(). Lines that are not ``data:`` lines are keep-alives or
    comments and are ignored. A data line whose payload is not JSON is
    skipped without aborting the stream.
    """

    def __init__(self, content_path: Sequence[Union[str, int]] = OPENAI_DELTA_PATH):
        self.content_path  = tuple(content_path)
        self.done          = False
        self.finish_reason: Optional[str] = None
        self.malformed     = 0
        self._decoder      = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer       = ""
        self._parts: List[str] = []
        self._tool_calls: Dict[int, Dict[str, Any]] = {}
        self._next_idx     = 0

    @property
    def text(self) -> str:
        """Everything emitted so far, concatenated."""
        return "".join(self._parts)

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        if self.done:
            return []
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._process_lines(lines)

    def finish(self) -> List[str]:
        """Flush at connection close; an unterminated last line still counts."""
        if self.done:
            return []
        tail = self._decoder.decode(b"", final=True)
        lines = [self._buffer + tail]
        self._buffer = ""
        out = self._process_lines(lines)
        self.done = True
        return out

    def _process_lines(self, lines: List[str]) -> List[str]:
        out: List[str] = []
        for line in lines:
            delta = self._process_line(line)
            if delta:
                out.append(delta)
                self._parts.append(delta)
            if self.done:
                self._buffer = ""
                break
        return out

    def _process_line(self, raw: str) -> Optional[str]:
        line = raw.strip()
        if not line or not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX):].strip()
        if data == DONE_SENTINEL:
            self.done = True
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            self.malformed += 1
            Log.debug(f"Skipping malformed SSE line: {data[:80]!r}")
            return None
        self._collect_tool_calls(payload)
        delta = extract_path(payload, self.content_path)
        return delta if isinstance(delta, str) and delta else None

    def _collect_tool_calls(self, payload: Any) -> None:
        choice = extract_path(payload, ("choices", 0))
        if not isinstance(choice, dict):
            return
        if choice.get("finish_reason"):
            self.finish_reason = choice["finish_reason"]
        for tc in (choice.get("delta") or {}).get("tool_calls") or []:
            if not isinstance(tc, dict):
                continue
            idx = tc.get("index", self._next_idx)
            if idx not in self._tool_calls:
                self._tool_calls[idx] = {
                    "id":       tc.get("id"),
                    "type":     "function",
                    "function": {"name": None, "arguments": ""},
                }
                self._next_idx += 1
            entry = self._tool_calls[idx]
            if tc.get("id") and not entry["id"]:
                entry["id"] = tc["id"]
            fn = tc.get("function") or {}
            if fn.get("name"):
                entry["function"]["name"] = fn["name"]
            if isinstance(fn.get("arguments"), str):
                entry["function"]["arguments"] += fn["arguments"]

    def tool_calls(self) -> List[Dict[str, Any]]:
        """Streamed tool-call fragments assembled per index, in index order."""
        return [self._tool_calls[i] for i in sorted(self._tool_calls)]


def iter_deltas(chunks: Iterable[Union[bytes, str]],
                decoder: Optional[SSEDecoder] = None) -> Iterator[str]:
    """Yield text deltas from an iterable of raw body chunks.

    Stops at the sentinel line or when *chunks* is exhausted (connection
    close). The decoder keeps the accumulated text for the caller.
    """
    decoder = decoder or SSEDecoder()
    for chunk in chunks:
        for delta in decoder.feed(chunk):
            yield delta
        if decoder.done:
            return
    for delta in decoder.finish():
        yield delta


# =============================================================================
# TAG-AWARE SPLITTER
# =============================================================================

_OPEN_RE    = re.compile(r"<([A-Za-z0-9]+)>")
_CLOSE_RE   = re.compile(r"</([A-Za-z0-9]+)>")
_PARTIAL_RE = re.compile(r"</?[A-Za-z0-9]*\Z")

# Minimum tail inspected for a split marker, whatever the tag names.
_MIN_HOLD = 10


class TagSplitter:
    """Re-segments a text-delta stream into text and recognised tag events.

    Unrecognised tags are passed through as literal text. A trailing partial
    marker (``<thi``) is withheld until the next chunk decides it. Text inside
    a recognised region is gathered and emitted as one Text event just before
    the event that ends the region (or at flush()).
    """

    def __init__(self, tags: Optional[Sequence[str]] = None):
        self.tags = tuple(tags if tags is not None else Config.THINKING_TAGS)
        self._hold = max([_MIN_HOLD] + [len(t) + 3 for t in self.tags])
        self._buffer = ""
        self._region = ""
        self._active: set = set()

    @property
    def pending(self) -> str:
        """Text received but not yet emitted."""
        return self._region + self._buffer

    def process(self, chunk: str) -> List[StreamEvent]:
        self._buffer += chunk
        events: List[StreamEvent] = []

        while self._buffer:
            open_m  = _OPEN_RE.search(self._buffer)
            close_m = _CLOSE_RE.search(self._buffer)

            if open_m is None and close_m is None:
                cut = self._safe_cut()
                self._text(events, self._buffer[:cut])
                self._buffer = self._buffer[cut:]
                break

            if close_m is None or (open_m is not None and open_m.start() < close_m.start()):
                match, closing = open_m, False
            else:
                match, closing = close_m, True

            self._text(events, self._buffer[:match.start()])
            name = match.group(1)
            if name in self.tags:
                self._release_region(events)
                if closing:
                    self._active.discard(name)
                    events.append(StreamEvent.tag_close(name))
                else:
                    self._active.add(name)
                    events.append(StreamEvent.tag_open(name))
            else:
                self._text(events, match.group(0))
            self._buffer = self._buffer[match.end():]

        return events

    def _text(self, events: List[StreamEvent], text: str) -> None:
        if not text:
            return
        if self._active:
            self._region += text
        else:
            events.append(StreamEvent.text(text))

    def _release_region(self, events: List[StreamEvent]) -> None:
        if self._region:
            events.append(StreamEvent.text(self._region))
            self._region = ""

    def _safe_cut(self) -> int:
        """Length of the buffer prefix that can be emitted now."""
        idx = self._buffer.rfind("<")
        if idx == -1 or idx < len(self._buffer) - self._hold:
            return len(self._buffer)
        if _PARTIAL_RE.match(self._buffer, idx):
            return idx
        return len(self._buffer)

    def flush(self) -> List[StreamEvent]:
        """End of stream: release everything still held as literal text."""
        text = self._region + self._buffer
        self._region = ""
        self._buffer = ""
        return [StreamEvent.text(text)] if text else []

    def reset(self) -> None:
        self._buffer = ""
        self._region = ""
        self._active.clear()

    def is_in_tag(self, name: str) -> bool:
        return name in self._active

    @property
    def active_tags(self) -> frozenset:
        return frozenset(self._active)


def strip_tags(content: str, tags: Optional[Sequence[str]] = None) -> Tuple[str, str]:
    """Split *content* into (visible text, text inside recognised tags)."""
    splitter = TagSplitter(tags)
    visible: List[str] = []
    hidden:  List[str] = []
    depth = 0
    for ev in splitter.process(content) + splitter.flush():
        if ev.type == StreamEvent.TAG_OPEN:
            depth += 1
        elif ev.type == StreamEvent.TAG_CLOSE:
            depth = max(0, depth - 1)
        elif depth:
            # includes an unterminated region released by flush()
            hidden.append(ev.content)
        else:
            visible.append(ev.content)
    return "".join(visible), "".join(hidden)
