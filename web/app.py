"""
Flask web server for the querybox core.

Routes
──────
GET    /health                        Liveness probe
GET    /api/suggest?q=...             Ranked suggestions + inline completion (JSON)
POST   /api/suggest/select            Record a chosen suggestion
POST   /api/suggest/hide              Blocklist a suggestion
GET    /api/sessions                  List chat sessions (JSON)
POST   /api/sessions                  Start a new chat session
DELETE /api/sessions/<id>             Delete a chat session
POST   /api/sessions/<id>/pin         Toggle a session's pin
POST   /api/sessions/<id>/select      Make a session active
POST   /api/models                    Model discovery across configured providers
GET    /api/chat/stream?prompt=...    SSE: stream an AI answer into the active session
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
import sys
import threading
from typing import Optional

import httpx
from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request, stream_with_context
from pydantic import ValidationError

# Allow running as `python web/app.py` from the project root
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

load_dotenv()

from config.settings import Settings
from querybox.completions import ChatClient, ProviderCredentials
from querybox.gateway import AutocompleteGateway
from querybox.models import SuggestionCandidate
from querybox.orchestrator import Orchestrator
from querybox.search import WebSearcher
from querybox.sessions import ChatSessionStore
from querybox.store import LocalStore
from querybox.suggestions import SuggestionEngine, SuggestMode

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = Settings()
settings.validate()

store = LocalStore(settings.db_path or None)
chat_sessions = ChatSessionStore(store)

app = Flask(__name__)


def _flag(name: str, default: bool) -> bool:
    raw = request.args.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ── Shared async runtime ───────────────────────────────────────────────────

class Runtime:
    """Async services shared by every request.

    One event loop runs on a daemon thread and Flask handlers hand coroutines
    to it. The HTTP client, the autocomplete cache, the suggestion sequence
    counter and the single running AI stream live here for the life of the
    process.
    """

    def __init__(self, store: LocalStore, chat_sessions: ChatSessionStore, settings: Settings,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self.loop.run_forever, name="querybox-loop", daemon=True)
        self._thread.start()
        self.client = httpx.AsyncClient(follow_redirects=True, transport=transport)
        self.gateway = AutocompleteGateway.from_settings(self.client, settings)
        self.engine = SuggestionEngine(store, self.gateway)
        self.orchestrator = Orchestrator(
            chat_sessions,
            ChatClient.from_settings(self.client, settings),
            WebSearcher(self.client, settings),
            settings,
        )

    def run(self, coro):
        """Run *coro* on the shared loop and wait for its result."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result()

    def close(self) -> None:
        self.run(self.client.aclose())
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)
        self.loop.close()


_runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = Runtime(store, chat_sessions, settings)
        return _runtime


def _candidate_from_body():
    try:
        return SuggestionCandidate.model_validate(request.get_json(silent=True) or {}), None
    except ValidationError as exc:
        return None, (jsonify({"error": "invalid suggestion", "detail": exc.errors(include_url=False)}), 400)


@app.route("/health")
def health():
    return jsonify({"status": "ok"})


# ── Suggestions ────────────────────────────────────────────────────────────

@app.route("/api/suggest")
def suggest():
    """Return ranked suggestions for ``q``.

    Query params:
      q          the partial query
      provider   autocomplete provider override
      cap_small  "1" to cap at 7 interleaved entries
      edge_bias  "1" to order the list for an input placed below it
      workspace  active workspace category
    """
    query = request.args.get("q", "")
    provider = request.args.get("provider", "").strip().lower()
    source = dataclasses.replace(settings, suggest_provider=provider) if provider else settings
    mode = SuggestMode.from_settings(
        source,
        immediate=False,
        cap_small=_flag("cap_small", settings.cap_suggestions_small),
        edge_bias=_flag("edge_bias", settings.suggestions_at_bottom),
        active_workspace=request.args.get("workspace") or None,
    )

    rt = get_runtime()
    result = rt.run(rt.engine.suggest(query, mode, lambda _result: None))
    return jsonify({
        "query": query,
        "suggestions": [c.model_dump(mode="json") for c in result.suggestions] if result else [],
        "ghost": result.ghost if result else None,
    })


@app.route("/api/suggest/select", methods=["POST"])
def select_suggestion():
    candidate, error = _candidate_from_body()
    if error:
        return error

    get_runtime().engine.record_selection(candidate)
    return jsonify({"recorded": candidate.key})


@app.route("/api/suggest/hide", methods=["POST"])
def hide_suggestion():
    candidate, error = _candidate_from_body()
    if error:
        return error

    get_runtime().engine.hide(candidate)
    return jsonify({"hidden": candidate.key})


# ── Chat sessions ──────────────────────────────────────────────────────────

@app.route("/api/sessions")
def list_sessions():
    return jsonify({
        "active": chat_sessions.active.id,
        "sessions": [s.model_dump(mode="json") for s in chat_sessions.sessions],
    })


@app.route("/api/sessions", methods=["POST"])
def create_session():
    return jsonify(chat_sessions.create().model_dump(mode="json")), 201


@app.route("/api/sessions/<session_id>", methods=["DELETE"])
def delete_session(session_id: str):
    if not chat_sessions.delete(session_id):
        return jsonify({"error": "Not found"}), 404
    return jsonify({"deleted": session_id, "active": chat_sessions.active.id})


@app.route("/api/sessions/<session_id>/pin", methods=["POST"])
def pin_session(session_id: str):
    try:
        pinned = chat_sessions.toggle_pin(session_id)
    except KeyError:
        return jsonify({"error": "Not found"}), 404
    return jsonify({"id": session_id, "pinned": pinned})


@app.route("/api/sessions/<session_id>/select", methods=["POST"])
def select_session(session_id: str):
    try:
        session = chat_sessions.select(session_id)
    except KeyError:
        return jsonify({"error": "Not found"}), 404
    return jsonify(session.model_dump(mode="json"))


# ── Models ─────────────────────────────────────────────────────────────────

@app.route("/api/models", methods=["POST"])
def discover_models():
    """Union of models from every configured provider.

    The JSON body may override any credential (``openai_api_key``,
    ``lmstudio_base_url``, ...); the rest come from settings.
    """
    body = request.get_json(silent=True) or {}
    known = {f.name for f in dataclasses.fields(ProviderCredentials)}
    credentials = dataclasses.replace(
        ProviderCredentials.from_settings(settings),
        **{k: v for k, v in body.items() if k in known},
    )

    rt = get_runtime()
    result = rt.run(ChatClient(rt.client, credentials).list_models())
    return jsonify({"models": result.models, "status": result.status})


# ── Chat stream ────────────────────────────────────────────────────────────

def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _event_payload(kind: str, payload) -> dict:
    if kind == "token":
        return {"type": "token", "text": payload}
    if kind == "state":
        return {"type": "state", "state": payload}
    if kind == "error":
        return {"type": "error", "message": payload}
    return {"type": kind, "data": payload}


async def _next_event(events):
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return None


async def _close_events(events):
    await events.aclose()


@app.route("/api/chat/stream")
def chat_stream():
    """SSE endpoint that streams one AI answer into the active session.

    Query params:
      prompt  (required) the user prompt
      web     "1" to augment with web results (default from settings)
      model   model id to use instead of routing

    SSE events emitted:
      {"type": "token",   "text": "..."}       streamed text chunk
      {"type": "message", "data": {...}}       a complete assistant message
      {"type": "panels",  "data": [...]}       web citations for the answer
      {"type": "state",   "state": "..."}      orchestrator state change
      {"type": "error",   "message": "..."}    request failed
    """
    prompt = request.args.get("prompt", "").strip()
    if not prompt:
        return jsonify({"error": "prompt query param is required"}), 400
    web = _flag("web", settings.ai_web_search)
    model = request.args.get("model", "").strip() or None

    def generate():
        rt = get_runtime()
        # A newer prompt aborts this stream through the shared orchestrator.
        events = rt.orchestrator.events(prompt, web=web, model=model)
        try:
            while True:
                event = rt.run(_next_event(events))
                if event is None:
                    break
                kind, payload = event
                yield _sse(_event_payload(kind, payload))
        except Exception as exc:
            logger.exception("Chat stream error for prompt=%r", prompt[:80])
            yield _sse({"type": "error", "message": str(exc)})
        finally:
            # Closing the generator aborts a stream the client walked away from.
            rt.run(_close_events(events))

        yield "data: [DONE]\n\n"

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ── Entry point ────────────────────────────────────────────────────────────

if __name__ == "__main__":
    app.run(debug=settings.debug, host="0.0.0.0", port=settings.port)
