"""
Stream session lifecycle.

One session per generation request. ``start`` admits the caller, resolves a
model, assembles the prompt and either hands back direct connection
parameters or spawns a task that relays provider chunks onto an ordered
channel. Every terminal path (completion, truncation, timeout, stall,
cancellation, provider failure) emits exactly one terminal event and closes
the channel, so consumers use the same read loop regardless of outcome.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Literal

from aigateway.app.auth.identity import CallerIdentity
from aigateway.app.config.settings import ConfigSnapshot, RuntimeConfigStore, runtime_config, settings
from aigateway.app.core.errors import (
    CancelledByCaller,
    GatewayError,
    ProviderProtocolError,
    ResponseTooLarge,
    SessionNotFound,
    StreamError,
    StreamStalled,
    StreamTimeout,
)
from aigateway.app.core.logging import session_id_var
from aigateway.app.providers.registry import ProviderRegistry, ResolvedModel, registry
from aigateway.app.providers.types import Capability, ChatCall
from aigateway.app.services.mode_router import DirectGrant, ModeRouter, mode_router
from aigateway.app.services.prompt_builder import build_messages
from aigateway.app.services.rate_limit import RateLimiter, rate_limiter

logger = logging.getLogger("aigateway")


class SessionState(str, Enum):
    CREATED = "created"
    STREAMING = "streaming"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    STALLED = "stalled"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {
        SessionState.COMPLETED,
        SessionState.TIMED_OUT,
        SessionState.STALLED,
        SessionState.CANCELLED,
        SessionState.FAILED,
    }
)

_ALLOWED = {
    # A provider that never answers can time out or stall before streaming starts.
    SessionState.CREATED: {
        SessionState.STREAMING,
        SessionState.TIMED_OUT,
        SessionState.STALLED,
        SessionState.CANCELLED,
        SessionState.FAILED,
    },
    SessionState.STREAMING: set(TERMINAL_STATES),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    mode: Literal["page", "element"] = "page"
    existing_html: str | None = None
    instructions: str | None = None
    model_id: str | None = None
    framework: str | None = None
    connection: Literal["server", "direct"] | None = None


@dataclass
class StreamSession:
    session_id: str
    caller: CallerIdentity
    model: ResolvedModel
    mode: str
    connection: str
    config: ConfigSnapshot
    started_at: float
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: SessionState = SessionState.CREATED
    last_chunk_at: float | None = None
    bytes_received: int = 0
    chunks: int = 0
    truncated: bool = False
    usage: dict | None = None
    error: GatewayError | None = None
    finished_at: float | None = None
    parts: list[str] = field(default_factory=list, repr=False)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def content(self) -> str:
        return "".join(self.parts)

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _ALLOWED.get(self.state, set()):
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        self.state = new_state

    def record(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "caller_id": self.caller.caller_id,
            "provider": self.model.provider_id,
            "model": self.model.model_id,
            "mode": self.mode,
            "connection": self.connection,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "bytes_received": self.bytes_received,
            "chunks": self.chunks,
            "truncated": self.truncated,
            "error": self.error.code if self.error else None,
        }


@dataclass
class SessionEvent:
    type: Literal["meta", "chunk", "done", "error"]
    data: dict

    def sse(self) -> str:
        return f"event: {self.type}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n"


class SessionHandle:
    """Consumer side of a session: an ordered channel of events plus the running task."""

    def __init__(self, session: StreamSession, queue: asyncio.Queue, task: asyncio.Task | None = None):
        self.session = session
        self._queue = queue
        self.task = task

    @property
    def session_id(self) -> str:
        return self.session.session_id

    async def events(self) -> AsyncIterator[SessionEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def cancel(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()


def _cut_utf8(text: str, max_bytes: int) -> str:
    return text.encode("utf-8")[:max_bytes].decode("utf-8", errors="ignore")


class StreamSessionManager:
    def __init__(
        self,
        registry: ProviderRegistry,
        rate_limiter: RateLimiter,
        router: ModeRouter,
        config_store: RuntimeConfigStore,
        clock: Callable[[], float] = time.monotonic,
        history_size: int = 200,
        cancel_grace_seconds: float = 5.0,
    ):
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.router = router
        self.config_store = config_store
        self._clock = clock
        self.cancel_grace_seconds = cancel_grace_seconds
        self._active: dict[str, SessionHandle] = {}
        self._history: deque[StreamSession] = deque(maxlen=history_size)

    async def start(self, request: GenerationRequest, caller: CallerIdentity) -> SessionHandle | DirectGrant:
        await self.rate_limiter.check(caller.client_key)

        snapshot = self.config_store.snapshot()
        resolved = self.registry.resolve(Capability.TEXT, request.model_id, defaults=snapshot.runtime)
        messages = build_messages(
            prompt=request.prompt,
            mode=request.mode,
            framework=request.framework or snapshot.css_framework,
            existing_html=request.existing_html,
            instructions=request.instructions,
            max_context_html_chars=snapshot.max_context_html_chars,
        )

        connection = self.router.choose(request.connection, resolved, snapshot)
        if connection == "direct":
            logger.info(
                "Direct connection granted",
                extra={"caller_id": caller.caller_id, "provider_id": resolved.provider_id, "model": resolved.model_id},
            )
            return self.router.grant(resolved, messages)

        session = StreamSession(
            session_id=str(uuid.uuid4()),
            caller=caller,
            model=resolved,
            mode=request.mode,
            connection=connection,
            config=snapshot,
            started_at=self._clock(),
        )
        call = ChatCall(
            model=resolved.model_id,
            messages=messages,
            max_tokens=resolved.descriptor.max_output_tokens if resolved.descriptor else None,
        )
        queue: asyncio.Queue = asyncio.Queue()
        queue.put_nowait(
            SessionEvent(
                "meta",
                {
                    "session_id": session.session_id,
                    "provider": resolved.provider_id,
                    "model": resolved.model_id,
                    "mode": session.mode,
                    "connection": connection,
                },
            )
        )
        handle = SessionHandle(session, queue)
        self._active[session.session_id] = handle
        handle.task = asyncio.create_task(self._run(handle, call))
        handle.task.add_done_callback(lambda task: self._on_task_done(handle, task))
        logger.info(
            "Stream session started",
            extra={
                "session_id": session.session_id,
                "caller_id": caller.caller_id,
                "provider_id": resolved.provider_id,
                "model": resolved.model_id,
                "mode": session.mode,
            },
        )
        return handle

    def _accept(self, session: StreamSession, delta: str, now: float) -> str:
        """Account for one chunk; cut it at the byte cap and flag truncation."""
        size = len(delta.encode("utf-8"))
        room = session.config.max_response_bytes - session.bytes_received
        if size > room:
            delta = _cut_utf8(delta, room)
            size = len(delta.encode("utf-8"))
            session.truncated = True
        session.bytes_received += size
        session.last_chunk_at = now
        if delta:
            session.parts.append(delta)
            session.chunks += 1
        return delta

    async def _run(self, handle: SessionHandle, call: ChatCall) -> None:
        session = handle.session
        config = session.config
        token = session_id_var.set(session.session_id)
        stream = None
        outcome = SessionState.COMPLETED
        error: GatewayError | None = None
        try:
            stream = self.registry.stream(session.model, call)
            iterator = stream.__aiter__()
            requested_at = self._clock()

            while True:
                now = self._clock()
                total_left = config.stream_timeout_seconds - (now - session.started_at)
                idle_left = config.idle_timeout_seconds - (now - (session.last_chunk_at or requested_at))
                if total_left <= 0:
                    raise StreamTimeout(config.stream_timeout_seconds)
                if idle_left <= 0:
                    raise StreamStalled(config.idle_timeout_seconds)
                try:
                    event = await asyncio.wait_for(iterator.__anext__(), timeout=min(total_left, idle_left))
                except asyncio.TimeoutError:
                    if idle_left < total_left:
                        raise StreamStalled(config.idle_timeout_seconds) from None
                    raise StreamTimeout(config.stream_timeout_seconds) from None
                except StopAsyncIteration:
                    event = None

                # The request is only sent on the first read; a connect failure never reaches streaming.
                if session.state == SessionState.CREATED:
                    session.transition(SessionState.STREAMING)
                if event is None or event.type == "done":
                    break
                if event.type == "usage":
                    session.usage = event.usage
                    continue
                if event.type == "delta" and event.delta:
                    delta = self._accept(session, event.delta, self._clock())
                    if delta:
                        handle._queue.put_nowait(
                            SessionEvent(
                                "chunk",
                                {"session_id": session.session_id, "seq": session.chunks, "delta": delta},
                            )
                        )
                    if session.truncated:
                        logger.warning(
                            "Response size cap reached, truncating",
                            extra={"max_bytes": config.max_response_bytes},
                        )
                        break
        except StreamTimeout as exc:
            outcome, error = SessionState.TIMED_OUT, exc
        except StreamStalled as exc:
            outcome, error = SessionState.STALLED, exc
        except asyncio.CancelledError:
            outcome, error = SessionState.CANCELLED, CancelledByCaller()
            raise
        except GatewayError as exc:
            # Never retried: a partially consumed stream cannot be replayed.
            outcome, error = SessionState.FAILED, exc
        except Exception as exc:
            logger.error("Unexpected stream failure", exc_info=True)
            outcome = SessionState.FAILED
            error = ProviderProtocolError(f"Stream failed: {type(exc).__name__}", session.model.provider_id)
        finally:
            if stream is not None and hasattr(stream, "aclose"):
                try:
                    await stream.aclose()
                except Exception:
                    logger.debug("Provider stream close raised", exc_info=True)
            self._finalize(handle, outcome, error)
            session_id_var.reset(token)

    def _finalize(self, handle: SessionHandle, state: SessionState, error: GatewayError | None = None) -> None:
        session = handle.session
        if session.terminal:
            return
        session.transition(state)
        session.finished_at = self._clock()
        if isinstance(error, StreamError):
            error.partial_content = session.content
        session.error = error

        elapsed_ms = int((session.finished_at - session.started_at) * 1000)
        if state == SessionState.COMPLETED:
            payload = {
                "session_id": session.session_id,
                "state": state.value,
                "truncated": session.truncated,
                "content": session.content,
                "bytes": session.bytes_received,
                "usage": session.usage,
                "elapsed_ms": elapsed_ms,
            }
            if session.truncated:
                payload["warning"] = ResponseTooLarge(session.config.max_response_bytes).to_payload()
            handle._queue.put_nowait(SessionEvent("done", payload))
        else:
            handle._queue.put_nowait(
                SessionEvent(
                    "error",
                    {
                        "session_id": session.session_id,
                        "state": state.value,
                        "kind": error.code if error else "INTERNAL_ERROR",
                        "message": error.message if error else "Generation failed",
                        "truncated": session.truncated,
                        "content": session.content,
                        "elapsed_ms": elapsed_ms,
                    },
                )
            )
        handle._queue.put_nowait(None)

        self._active.pop(session.session_id, None)
        self._history.append(session)
        logger.info(
            "Stream session finished",
            extra={
                "session_id": session.session_id,
                "state": state.value,
                "bytes": session.bytes_received,
                "truncated": session.truncated,
                "elapsed_ms": elapsed_ms,
                "error": error.code if error else None,
            },
        )

    def _on_task_done(self, handle: SessionHandle, task: asyncio.Task) -> None:
        # A task cancelled before its first step never runs ``_run``'s cleanup.
        if not handle.session.terminal:
            state = SessionState.CANCELLED if task.cancelled() else SessionState.FAILED
            self._finalize(handle, state, CancelledByCaller() if task.cancelled() else None)

    async def cancel(self, session_id: str, caller: CallerIdentity) -> StreamSession:
        """Cancel an active session owned by ``caller``; waits for the provider connection to close."""
        handle = self._active.get(session_id)
        if handle is None or (handle.session.caller.caller_id != caller.caller_id and not caller.is_admin):
            raise SessionNotFound(session_id)
        handle.cancel()
        if handle.task is not None:
            await asyncio.wait({handle.task}, timeout=self.cancel_grace_seconds)
        if not handle.session.terminal:
            self._finalize(handle, SessionState.CANCELLED, CancelledByCaller())
        return handle.session

    def get(self, session_id: str) -> StreamSession:
        handle = self._active.get(session_id)
        if handle is not None:
            return handle.session
        for session in self._history:
            if session.session_id == session_id:
                return session
        raise SessionNotFound(session_id)

    def active_sessions(self, caller: CallerIdentity | None = None) -> list[StreamSession]:
        return [
            h.session for h in self._active.values()
            if caller is None or h.session.caller.caller_id == caller.caller_id
        ]

    def recent(self, limit: int = 50) -> list[StreamSession]:
        return list(self._history)[-limit:]

    async def shutdown(self) -> None:
        handles = list(self._active.values())
        for handle in handles:
            handle.cancel()
        tasks = {h.task for h in handles if h.task is not None}
        if tasks:
            await asyncio.wait(tasks, timeout=self.cancel_grace_seconds)


# Global instance
session_manager = StreamSessionManager(
    registry=registry,
    rate_limiter=rate_limiter,
    router=mode_router,
    config_store=runtime_config,
    history_size=settings.session_history_size,
    cancel_grace_seconds=settings.provider_timeout_seconds,
)
