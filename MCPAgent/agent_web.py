"""
mcpagent Web
------------------------------------
  agent_session.py ChatSession, ToolActivity, prefix modes
  agent_mcp.py     ToolRegistry and tool-server connections
  agent_llm.py     LLMClient, ConversationLoop

JSON API plus a Server-Sent Events stream of agent events. Every SSE client
gets its own queue; session events are broadcast to all of them. Chat runs
in a background thread so /chat returns immediately unless the request asks
to wait.
"""

import argparse
import json
import queue
import socket
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional

from flask import Flask, Response, jsonify, request

from agent_core import VERSION, AgentEvent, Config, Log, LLMError, short_id
from agent_llm import create_llm_client
from agent_session import MODES, ChatSession, create_session

KEEPALIVE_SECONDS = 15


def _sse_response(generator) -> Response:
    return Response(
        generator,
        mimetype="text/event-stream",
        headers={
            "Cache-Control":     "no-cache, no-transform",
            "X-Accel-Buffering": "no",
            "Connection":        "keep-alive",
            "Content-Type":      "text/event-stream; charset=utf-8",
        },
    )


def _sse_frame(kind: str, payload) -> str:
    return f"data: {json.dumps({'type': kind, 'data': payload}, ensure_ascii=False)}\n\n"


class EventHub:
    """Fan-out of session events to per-client queues."""

    def __init__(self):
        self._queues: List[queue.Queue] = []
        self._lock = threading.Lock()

    def broadcast(self, event: AgentEvent) -> None:
        item = event.to_dict()
        with self._lock:
            for q in self._queues:
                q.put_nowait(item)

    def register(self) -> queue.Queue:
        q: queue.Queue = queue.Queue()
        with self._lock:
            self._queues.append(q)
        return q

    def unregister(self, q: queue.Queue) -> None:
        with self._lock:
            try:
                self._queues.remove(q)
            except ValueError:
                pass

    @property
    def clients(self) -> int:
        with self._lock:
            return len(self._queues)


def _tools_payload(session: ChatSession) -> dict:
    registry = session.registry
    if registry is None:
        return {"servers": {}, "tools": {}}
    groups: dict = {}
    for t in sorted(registry.tools(), key=lambda t: t.qualified_name):
        props = t.input_schema.get("properties", {}) if isinstance(t.input_schema, dict) else {}
        groups.setdefault(t.server_name, []).append({
            "name":        t.qualified_name,
            "description": t.description,
            "params":      list(props.keys()),
            "required":    (t.input_schema or {}).get("required", []),
        })
    return {"servers": registry.server_status(), "tools": groups}


def create_app(session: ChatSession, keepalive: float = KEEPALIVE_SECONDS) -> Flask:
    app = Flask(__name__)
    hub = EventHub()
    session.on_event(hub.broadcast)
    app.config["SESSION"] = session
    app.config["HUB"] = hub

    agent_lock = threading.Lock()

    # ── chat ─────────────────────────────────────────────────────────────────

    def _run_chat(message: str) -> None:
        Log.set_silent(True)
        try:
            session.send(message)
        except LLMError as e:
            # session already emitted the error event to the stream
            Log.error(f"Chat failed [{e.code}]: {e}")
        except Exception as e:
            Log.error(f"Chat failed: {e}")
        finally:
            agent_lock.release()

    @app.route("/chat", methods=["POST"])
    def chat():
        data    = request.get_json(force=True, silent=True) or {}
        message = (data.get("message") or "").strip()
        if not message:
            return jsonify({"error": "empty message"}), 400
        if not agent_lock.acquire(blocking=False):
            return jsonify({"error": "agent busy, try again in a moment"}), 409

        rid = data.get("request_id") or short_id("req_")
        if not data.get("wait"):
            threading.Thread(target=_run_chat, args=(message,),
                             daemon=True, name="agent-chat").start()
            return jsonify({"ok": True, "request_id": rid})

        try:
            reply = session.send(message)
        except LLMError as e:
            return jsonify({"ok": False, "request_id": rid, "error": str(e),
                            "code": e.code, "retryable": e.retryable}), 502
        finally:
            agent_lock.release()
        return jsonify({"ok": True, "request_id": rid, "reply": reply})

    # ── stream ───────────────────────────────────────────────────────────────

    @app.route("/stream")
    def stream():
        q = hub.register()
        connect_payload = {
            "status":   session.status(),
            "messages": [m.to_dict() for m in session.transcript()],
        }

        def generate():
            yield _sse_frame("connect", connect_payload)
            last = time.time()
            try:
                while True:
                    timeout = max(0.1, keepalive - (time.time() - last))
                    try:
                        item = q.get(timeout=timeout)
                    except queue.Empty:
                        yield ": ka\n\n"
                        last = time.time()
                        continue
                    yield _sse_frame(item["type"], item["data"])
                    last = time.time()
            finally:
                hub.unregister(q)

        return _sse_response(generate())

    # ── state ────────────────────────────────────────────────────────────────

    @app.route("/status")
    def status():
        payload = session.status()
        payload.update({
            "workspace":   Config.WORKSPACE,
            "llm_url":     session.loop.llm.url,
            "llm_model":   session.loop.llm.model,
            "busy":        agent_lock.locked(),
            "sse_clients": hub.clients,
        })
        return jsonify(payload)

    @app.route("/messages")
    def messages():
        return jsonify([m.to_dict() for m in session.transcript()])

    @app.route("/mode", methods=["POST"])
    def set_mode():
        data = request.get_json(force=True, silent=True) or {}
        mode = (data.get("mode") or "").strip().lower()
        if mode not in MODES:
            return jsonify({"ok": False, "error": f"Invalid mode. Choose: {', '.join(MODES)}"}), 400
        session.mode = mode
        return jsonify({"ok": True, "mode": mode})

    @app.route("/clear", methods=["POST"])
    def clear():
        session.clear()
        return jsonify({"ok": True})

    # ── tools ────────────────────────────────────────────────────────────────

    @app.route("/tools")
    def list_tools():
        return jsonify(_tools_payload(session))

    @app.route("/tools/queue", methods=["POST"])
    def queue_tool():
        if session.activity is None:
            return jsonify({"ok": False, "error": "no tool servers"}), 503
        data = request.get_json(force=True, silent=True) or {}
        name = (data.get("tool") or "").strip()
        tool_input = data.get("input") or {}
        if not isinstance(tool_input, dict):
            return jsonify({"ok": False, "error": "input must be an object"}), 400
        if session.registry.get_tool(name) is None:
            return jsonify({"ok": False, "error": f"Unknown tool: {name}"}), 404
        call = session.activity.queue_pending(name, tool_input)
        return jsonify({"ok": True, "call": call.to_dict()})

    @app.route("/tools/execute-pending", methods=["POST"])
    def execute_pending():
        if session.activity is None:
            return jsonify({"ok": False, "error": "no tool servers"}), 503
        results = session.activity.execute_all_pending_tools()
        return jsonify({"ok": True, "results": [
            {"tool_call_id": r.tool_call_id, "content": r.content, "is_error": r.is_error}
            for r in results
        ]})

    @app.route("/tools/repeat", methods=["POST"])
    def repeat_tool():
        if session.activity is None or session.activity.last_tool_call is None:
            return jsonify({"ok": False, "error": "No previous tool call to repeat"}), 404
        name   = session.activity.last_tool_call.name
        result = session.activity.repeat_last_tool()
        return jsonify({"ok": True, "tool": name, "result": {
            "tool_call_id": result.tool_call_id, "content": result.content,
            "is_error": result.is_error,
        }})

    return app


# =============================================================================
# STARTUP
# =============================================================================

def _local_ip() -> str:
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "localhost"


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="mcpagent-web",
                                     description=f"mcpagent web host v{VERSION}")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=5000)
    parser.add_argument("--workspace", help="Project directory (default: WORKSPACE or cwd)")
    parser.add_argument("--mcp-config", metavar="PATH", help="Tool-server config file")
    parser.add_argument("--provider", help="LLM provider: local, openai, glm")
    parser.add_argument("--model", help="Model name")
    args = parser.parse_args(argv)

    if args.workspace:
        Config.WORKSPACE = str(Path(args.workspace).expanduser().resolve())
    try:
        Config.init()
        llm = create_llm_client(args.provider, model=args.model)
    except (ValueError, LLMError) as e:
        sys.exit(f"ERROR: {e}")

    session = create_session(args.mcp_config, llm=llm)
    app     = create_app(session)
    servers = session.registry.server_status()

    print("\n" + "═" * 58)
    print(f"  mcpagent Web  v{VERSION}")
    print("═" * 58)
    print(f"  Local  →  http://localhost:{args.port}")
    print(f"  LAN    →  http://{_local_ip()}:{args.port}")
    print(f"  Workspace : {Config.WORKSPACE}")
    print(f"  LLM       : {llm.url}")
    print(f"  Servers   : {len(servers)} configured, "
          f"{sum(1 for s in servers.values() if s == 'ready')} ready")
    print("═" * 58 + "\n")

    Log.set_silent(True)
    try:
        app.run(host=args.host, port=args.port, threaded=True, debug=False)
    finally:
        session.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
