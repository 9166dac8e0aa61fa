"""AI response streaming orchestrator.

One request runs through::

    idle → routing → (web_augmenting) → streaming → success | aborted | failed

Responsibilities:
- Resolve a model (pinned, routing table, provider defaults, or discovery)
- Fetch web context before the completion request when augmentation is on
- Append streamed text to a single assistant message, in arrival order
- Keep at most one stream alive: a new prompt cancels the running one, and
  overlapping submissions start one after another
- Turn failures into a visible assistant message instead of raising

Cancellation is silent: partial text stays in the transcript and the state
becomes ``aborted``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from querybox.errors import AbortError, QueryBoxError, RoutingError
from querybox.models import ChatMessage, ChatRole, ChatSession, WebResult
from querybox.routing import filter_discovered, resolve_route
from querybox.search import CITE_SOURCES_INSTRUCTION, format_context

if TYPE_CHECKING:
    from config.settings import Settings
    from querybox.completions import ChatClient
    from querybox.search import WebSearcher
    from querybox.sessions import ChatSessionStore

logger = logging.getLogger(__name__)

AI_DISABLED_MESSAGE = "AI features are disabled. Enable them in settings to ask questions here."
NO_CONTENT_MESSAGE = "(AI returned no content)"
FAILURE_PREFIX = "AI request failed: "


class StreamState(str, Enum):
    IDLE = "idle"
    ROUTING = "routing"
    WEB_AUGMENTING = "web_augmenting"
    STREAMING = "streaming"
    SUCCESS = "success"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def settled(self) -> bool:
        return self in (StreamState.SUCCESS, StreamState.ABORTED, StreamState.FAILED)


#: Observer signature: ``(kind, payload)``; kind is token, message, panels, state or error.
Observer = Callable[[str, Any], None]


@dataclass
class _Run:
    """State owned by a single request."""

    session_id: str
    assistant_id: Optional[str] = None
    aborted: bool = False
    observers: list[Observer] = field(default_factory=list)


class Orchestrator:
    """Runs prompts against the chat client and streams answers into sessions.

    Args:
        sessions: Chat Session Store; only the session active at submit time
            is written to by that run.
        chat_client: Streaming chat-completion client.
        web_searcher: Web-search provider for augmentation.
        settings: AI switches, pinned model, routing table, memory, context size.
        on_update: Optional callback invoked with the session after each mutation.
    """

    def __init__(
        self,
        sessions: ChatSessionStore,
        chat_client: ChatClient,
        web_searcher: WebSearcher,
        settings: Settings,
        on_update: Optional[Callable[[ChatSession], None]] = None,
    ) -> None:
        self.sessions = sessions
        self.chat_client = chat_client
        self.web_searcher = web_searcher
        self.settings = settings
        self.on_update = on_update
        self._state = StreamState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._current: Optional[_Run] = None
        # Serialises abort-then-start so two submissions cannot both start.
        self._lock = asyncio.Lock()

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def web_enabled(self) -> bool:
        """Web-augmentation flag of the active session."""
        return self.sessions.active.web

    # ── Notification ───────────────────────────────────────────────────────

    def _notify(self, run: _Run, kind: str, payload: Any) -> None:
        for observer in list(run.observers):
            observer(kind, payload)
        if self.on_update is not None and run.session_id in self.sessions:
            self.on_update(self.sessions.get(run.session_id))

    def _set_state(self, run: _Run, state: StreamState) -> None:
        self._state = state
        if state.settled:
            logger.info("AI stream settled: %s", state.value)
        else:
            logger.debug("AI stream state: %s", state.value)
        self._notify(run, "state", state.value)

    # ── Transcript ─────────────────────────────────────────────────────────

    def _append_assistant(self, run: _Run, content: str) -> ChatMessage:
        message = self.sessions.append(ChatMessage(role=ChatRole.ASSISTANT, content=content), run.session_id)
        self._notify(run, "message", message.model_dump(mode="json"))
        return message

    def _append_delta(self, run: _Run, delta: str) -> None:
        if run.aborted:
            raise AbortError("stream aborted")
        if run.assistant_id is None:
            message = self.sessions.append(ChatMessage(role=ChatRole.ASSISTANT, content=delta), run.session_id)
            run.assistant_id = message.id
        else:
            self.sessions.update_content(run.assistant_id, delta, run.session_id)
        self._notify(run, "token", delta)

    def _fail(self, run: _Run, reason: str) -> None:
        if run.session_id in self.sessions:
            self._append_assistant(run, f"{FAILURE_PREFIX}{reason}")
        self._notify(run, "error", reason)
        self._set_state(run, StreamState.FAILED)

    def _build_messages(
        self,
        session: ChatSession,
        prompt: str,
        results: list[WebResult],
    ) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        memory = self.settings.ai_memory.strip()
        if memory:
            messages.append({"role": "system", "content": f"User memory:\n{memory}"})

        turns = max(self.settings.ai_context_turns, 0)
        prior = [
            m for m in session.messages[:-1]
            if m.role in (ChatRole.USER, ChatRole.ASSISTANT) and m.content.strip()
        ]
        for m in prior[-turns * 2:] if turns else []:
            messages.append({"role": m.role.value, "content": m.content})

        if results:
            messages.append({"role": "system", "content": CITE_SOURCES_INSTRUCTION})
            prompt = f"{prompt}\n\n[Web results]\n{format_context(results)}"
        messages.append({"role": "user", "content": prompt})
        return messages

    # ── Routing ────────────────────────────────────────────────────────────

    async def _resolve_model(self, prompt: str, model: Optional[str]) -> str:
        pinned = (model or self.settings.ai_model or "").strip()
        if pinned:
            return pinned

        if self.settings.routing_enabled:
            routed = resolve_route(prompt, self.settings.route_models)
            if routed:
                logger.debug("Routed prompt to %s", routed)
                return routed

        auto = await self.chat_client.auto_model(prompt)
        if auto:
            logger.debug("Using provider default model %s", auto)
            return auto

        discovered = await self.chat_client.list_models()
        usable = filter_discovered(discovered.models)
        if not usable:
            raise RoutingError("No usable model found. Configure a model or an AI provider.")
        logger.info("Using discovered model %s", usable[0])
        return usable[0]

    # ── Run ────────────────────────────────────────────────────────────────

    async def _run(self, run: _Run, web: bool, model: Optional[str]) -> None:
        session = self.sessions.get(run.session_id)
        prompt = session.messages[-1].content

        if not self.settings.ai_enabled:
            self._append_assistant(run, AI_DISABLED_MESSAGE)
            self._set_state(run, StreamState.FAILED)
            return

        try:
            self._set_state(run, StreamState.ROUTING)
            resolved = await self._resolve_model(prompt, model)

            results: list[WebResult] = []
            if web:
                self._set_state(run, StreamState.WEB_AUGMENTING)
                results = await self.web_searcher.search(prompt)

            messages = self._build_messages(session, prompt, results)
            self._set_state(run, StreamState.STREAMING)
            stream = self.chat_client.stream_chat(resolved, messages)
            try:
                async for delta in stream:
                    self._append_delta(run, delta)
            finally:
                await stream.aclose()

            if run.assistant_id is None:
                self._append_assistant(run, NO_CONTENT_MESSAGE)
            elif results:
                self.sessions.attach_panels(run.assistant_id, results, run.session_id)
                self._notify(run, "panels", [r.model_dump() for r in results])
            self._set_state(run, StreamState.SUCCESS)

        except asyncio.CancelledError:
            self._set_state(run, StreamState.ABORTED)
            raise
        except AbortError:
            self._set_state(run, StreamState.ABORTED)
        except QueryBoxError as exc:
            logger.warning("AI request failed: %s", exc)
            self._fail(run, str(exc))
        except KeyError as exc:
            logger.warning("Chat session vanished mid-stream: %s", exc)
            self._set_state(run, StreamState.FAILED)
        except Exception as exc:
            logger.exception("AI request crashed")
            self._fail(run, str(exc) or type(exc).__name__)
        finally:
            self.sessions.flush()

    def _start(self, session_id: str, web: bool, model: Optional[str], observer: Optional[Observer]) -> asyncio.Task:
        run = _Run(session_id, observers=[observer] if observer else [])
        self._current = run
        self._task = asyncio.ensure_future(self._run(run, web, model))
        return self._task

    # ── Public API ─────────────────────────────────────────────────────────

    async def abort(self) -> None:
        """Stop the running stream, keeping any text already appended."""
        task = self._task
        if task is None or task.done():
            return
        if self._current is not None:
            self._current.aborted = True
        task.cancel()
        await asyncio.wait({task})

    async def _submit(
        self,
        prompt: str,
        web: Optional[bool],
        model: Optional[str],
        observer: Optional[Observer] = None,
    ) -> asyncio.Task:
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValueError("prompt must not be empty")

        async with self._lock:
            await self.abort()
            use_web = self.settings.ai_web_search if web is None else web
            session = self.sessions.active
            self.sessions.set_web(session.id, use_web)
            self.sessions.append(ChatMessage(role=ChatRole.USER, content=prompt), session.id)
            return self._start(session.id, use_web, model, observer)

    async def submit(
        self,
        prompt: str,
        web: Optional[bool] = None,
        model: Optional[str] = None,
    ) -> asyncio.Task:
        """Append *prompt* to the active session and start answering it.

        Args:
            prompt: User text; must not be blank.
            web: Fetch web context first. ``None`` uses ``Settings.ai_web_search``.
            model: Model id to use instead of routing.

        Returns:
            The task running the request.

        Raises:
            ValueError: If *prompt* is blank.
        """
        return await self._submit(prompt, web, model)

    async def ask(
        self,
        prompt: str,
        web: Optional[bool] = None,
        model: Optional[str] = None,
    ) -> StreamState:
        """Submit *prompt* and wait until the request settles."""
        task = await self.submit(prompt, web=web, model=model)
        await asyncio.wait({task})
        return self._state

    async def edit_and_resubmit(self, message_id: str, new_content: str) -> asyncio.Task:
        """Replace a sent user message, drop everything after it and ask again.

        The edited message keeps its id. The session's web flag is reused.

        Raises:
            KeyError: If the active session has no such message.
            ValueError: If the message is not a user message or *new_content* is blank.
        """
        new_content = (new_content or "").strip()
        if not new_content:
            raise ValueError("edited prompt must not be empty")

        async with self._lock:
            await self.abort()
            session = self.sessions.active
            target = self.sessions.find(message_id, session.id)
            if target is None:
                raise KeyError(f"Unknown chat message: {message_id}")
            if target.role is not ChatRole.USER:
                raise ValueError("only user messages can be edited")

            self.sessions.truncate_before(message_id, session.id)
            self.sessions.append(target.model_copy(update={"content": new_content}), session.id)
            return self._start(session.id, session.web, None, None)

    async def events(
        self,
        prompt: str,
        web: Optional[bool] = None,
        model: Optional[str] = None,
    ) -> AsyncIterator[tuple[str, Any]]:
        """Submit *prompt* and yield ``(kind, payload)`` events until it settles.

        Only events of this request are yielded. Closing the generator early
        aborts the request.
        """
        queue: asyncio.Queue = asyncio.Queue()

        def observer(kind: str, payload: Any) -> None:
            queue.put_nowait((kind, payload))

        task = await self._submit(prompt, web, model, observer)
        try:
            while True:
                kind, payload = await queue.get()
                yield kind, payload
                if kind == "state" and StreamState(payload).settled:
                    return
        finally:
            if not task.done():
                await self.abort()
