"""Stream session controller.

Drives one user turn at a time: opens the answer stream, feeds the decoded
frames into the accumulator and owns cancellation and the request deadline.
Only the most recent request may change what the view shows; every mutation
site compares the request id with the session's generation counter.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable

import httpx
from loguru import logger

from chatstream.config import settings
from chatstream.exceptions import ChatStreamError, StreamTransportError
from chatstream.models.conversation import ConversationTurn, QueryMode, QueryPayload
from chatstream.models.events import CitationsFrame, DoneFrame, ErrorFrame, Frame, MessageFrame, SSEEvent
from chatstream.models.stream_request import AbortReason, RequestState, SessionState, StreamRequest
from chatstream.services import logger as log_service
from chatstream.services.accumulator import AnswerAccumulator
from chatstream.services.frame_decoder import FrameDecoder, decode_frame
from chatstream.services.render_scheduler import LoopTickSource, RenderScheduler, TickSource

CANCELLED_MESSAGE = "This reply was cancelled."
TIMEOUT_MESSAGE = "The request timed out. Please try again later."
FAILURE_MESSAGE = "Sorry, the query failed. Please try again later."
SERVER_ERROR_MESSAGE = "The server reported an error."

ChangeListener = Callable[[list[ConversationTurn]], None]


class StreamSessionController:
    """Owns the conversation turns and the one in-flight answer stream.

    `submit` must be called from a running event loop. The view observes
    `turns` directly or through the `on_change` callback, which fires after
    every visible commit.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        url: str | None = None,
        timeout_s: float | None = None,
        mode: QueryMode | str | None = None,
        tick_source: TickSource | None = None,
        on_change: ChangeListener | None = None,
    ):
        self._client = client
        self._owns_client = client is None
        self.url = url or settings.stream_url
        self.timeout_s = settings.request_timeout_s if timeout_s is None else timeout_s
        self.mode = QueryMode(mode or settings.default_mode)
        self.tick_source = tick_source or LoopTickSource(settings.render_interval_s)
        self.on_change = on_change
        self.turns: list[ConversationTurn] = []
        self.state = SessionState()
        self.closed = False

    async def __aenter__(self) -> "StreamSessionController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @property
    def streaming(self) -> bool:
        request = self.state.request
        return request is not None and not request.terminal

    def history(self) -> list[dict[str, str]]:
        return [turn.history_entry() for turn in self.turns if not turn.streaming]

    # --- Public operations ---

    def submit(self, question: str, *, mode: QueryMode | str | None = None) -> StreamRequest | None:
        """Start streaming an answer to `question`, superseding any request in flight."""
        if self.closed:
            raise ChatStreamError("Session controller is closed")
        question = (question or "").strip()
        if not question:
            return None

        loop = asyncio.get_running_loop()
        previous = self.state.request
        if previous is not None:
            if not previous.terminal:
                log_service.log_session_event(
                    "superseded", previous.request_id, replaced_by=self.state.active_request_id + 1
                )
            self._abort(previous, AbortReason.MANUAL)

        history = self.history()
        self.turns.append(ConversationTurn.user(question))
        self.turns.append(ConversationTurn.assistant_placeholder())

        request_id = self.state.next_request_id()
        now = loop.time()
        request = StreamRequest(
            request_id=request_id,
            target_turn_index=len(self.turns) - 1,
            question=question,
            mode=QueryMode(mode) if mode else self.mode,
            deadline=now + self.timeout_s,
            started_at=now,
            accumulator=AnswerAccumulator(),
            scheduler=RenderScheduler(lambda: self._flush_answer(request_id), self.tick_source),
        )
        self.state.request = request

        payload = QueryPayload(question=question, mode=request.mode, history=history)
        request.deadline_handle = loop.call_at(request.deadline, self._on_deadline, request)
        request.task = loop.create_task(self._run(request, payload))
        request.task.add_done_callback(lambda task: self._on_task_done(request, task))

        logger.debug(f"Submitted stream request {request_id} (turn {request.target_turn_index})")
        self._notify()
        return request

    async def ask(self, question: str, *, mode: QueryMode | str | None = None) -> ConversationTurn | None:
        """Submit and wait for the answer to reach its final state."""
        request = self.submit(question, mode=mode)
        if request is None:
            return None
        await asyncio.wait({request.task})
        return self.turns[request.target_turn_index]

    async def wait(self) -> None:
        request = self.state.request
        if request is not None and request.task is not None:
            await asyncio.wait({request.task})

    def cancel(self) -> bool:
        """Cancel the answer being streamed. Returns False when there is none."""
        request = self.state.request
        if request is None:
            return False
        was_streaming = not request.terminal
        if was_streaming:
            log_service.log_session_event("cancelled", request.request_id)
        self._abort(request, AbortReason.MANUAL)
        return was_streaming

    def close(self) -> None:
        """Tear down the in-flight request without touching the turns.

        A closed controller accepts no further questions.
        """
        self.closed = True
        request = self.state.request
        if request is not None:
            if not request.terminal:
                log_service.log_session_event("unmount", request.request_id)
            self._abort(request, AbortReason.UNMOUNT)

    async def aclose(self) -> None:
        request = self.state.request
        self.close()
        if request is not None and request.task is not None:
            await asyncio.wait({request.task})
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def handle_frame(self, request_id: int, frame: Frame) -> None:
        """Apply one decoded frame for `request_id`; superseded requests are ignored."""
        request = self.state.lookup(request_id)
        if request is None:
            return

        if request.state is RequestState.DONE:
            # Citations may be flushed right behind the done event.
            if isinstance(frame, CitationsFrame):
                request.accumulator.replace_citations(frame.citations)
                self.turns[request.target_turn_index].citations = list(request.accumulator.citations)
                self._notify()
            return
        if request.terminal:
            return

        if isinstance(frame, MessageFrame):
            request.accumulator.append(frame.text)
            request.scheduler.request()
        elif isinstance(frame, CitationsFrame):
            request.accumulator.replace_citations(frame.citations)
            self._patch_turn(request, citations=list(request.accumulator.citations))
        elif isinstance(frame, DoneFrame):
            self._complete(request)
        elif isinstance(frame, ErrorFrame):
            message = frame.message or SERVER_ERROR_MESSAGE
            self._fail(request, message, detail=f"server error: {message}")
            request.stop_reading()

    # --- Stream task ---

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(None, connect=settings.connect_timeout_s),
            )
        return self._client

    async def _run(self, request: StreamRequest, payload: QueryPayload) -> None:
        try:
            await self._consume(request, payload)
        except asyncio.CancelledError:
            if request.abort_reason is None and not request.terminal:
                raise
            # No abort reason on a terminal request: an error frame stopped the read.
            self._finish_aborted(request)
        except (StreamTransportError, httpx.HTTPError) as e:
            self._fail(request, FAILURE_MESSAGE, detail=f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception(f"Stream request {request.request_id} failed unexpectedly: {e}")
            self._fail(request, FAILURE_MESSAGE, detail=f"{type(e).__name__}: {e}")
        finally:
            self._release(request)
            status = request.state.value
            if request.state is RequestState.ABORTED and request.abort_reason is not None:
                status = request.abort_reason.value
            log_service.log_stream_request(
                request.request_id,
                status,
                question=request.question,
                duration_ms=int((asyncio.get_running_loop().time() - request.started_at) * 1000),
                answer_chars=len(request.accumulator.full_answer),
                citations=len(request.accumulator.citations),
                error=request.error,
            )

    async def _consume(self, request: StreamRequest, payload: QueryPayload) -> None:
        decoder = FrameDecoder()
        async with self._http().stream(
            "POST",
            self.url,
            json=payload.model_dump(mode="json"),
            headers={"Accept": "text/event-stream"},
        ) as response:
            if not response.is_success:
                raise StreamTransportError(
                    f"Stream endpoint returned HTTP {response.status_code}",
                    status_code=response.status_code,
                )
            if request.state is RequestState.OPEN:
                request.state = RequestState.STREAMING

            async for chunk in response.aiter_bytes():
                for event in decoder.feed(chunk):
                    self._dispatch(request, event)
                if request.state is RequestState.ERRORED:
                    return
            for event in decoder.close():
                self._dispatch(request, event)

        self._complete(request)

    def _dispatch(self, request: StreamRequest, event: SSEEvent) -> None:
        frame = decode_frame(event)
        if frame is not None:
            self.handle_frame(request.request_id, frame)

    # --- Abort paths ---

    def _on_deadline(self, request: StreamRequest) -> None:
        request.deadline_handle = None
        log_service.log_session_event("timeout", request.request_id, level="WARNING", timeout_s=self.timeout_s)
        request.abort(AbortReason.TIMEOUT)

    def _abort(self, request: StreamRequest, reason: AbortReason) -> None:
        request.abort(reason)
        if reason is AbortReason.MANUAL:
            # Visible right away, the cancelled task only cleans up.
            self._finalize(request, RequestState.ABORTED, content=CANCELLED_MESSAGE, error=False)
        self.state.release(request)

    def _finish_aborted(self, request: StreamRequest) -> None:
        reason = request.abort_reason
        if reason is AbortReason.TIMEOUT:
            self._finalize(request, RequestState.ABORTED, content=TIMEOUT_MESSAGE, error=True)
        elif reason is AbortReason.MANUAL:
            self._finalize(request, RequestState.ABORTED, content=CANCELLED_MESSAGE, error=False)
        elif reason is AbortReason.UNMOUNT and not request.terminal:
            request.state = RequestState.ABORTED

    def _on_task_done(self, request: StreamRequest, task: asyncio.Task[Any]) -> None:
        # A task cancelled before its first step never reaches `_run`'s handlers.
        if task.cancelled():
            self._finish_aborted(request)
            self._release(request)

    def _release(self, request: StreamRequest) -> None:
        request.clear_deadline()
        request.scheduler.cancel()
        self.state.release(request)

    # --- Turn mutation ---

    def _flush_answer(self, request_id: int) -> None:
        request = self.state.lookup(request_id)
        if request is None or request.terminal:
            return
        self._patch_turn(request, content=request.accumulator.full_answer)

    def _complete(self, request: StreamRequest) -> None:
        self._finalize(
            request,
            RequestState.DONE,
            content=request.accumulator.full_answer,
            citations=list(request.accumulator.citations),
        )

    def _patch_turn(self, request: StreamRequest, **changes: Any) -> bool:
        if not self.state.is_active(request) or request.terminal:
            return False
        turn = self.turns[request.target_turn_index]
        for name, value in changes.items():
            setattr(turn, name, value)
        self._notify()
        return True

    def _fail(self, request: StreamRequest, content: str, *, detail: str) -> None:
        if request.terminal:
            return
        request.error = detail
        self._finalize(request, RequestState.ERRORED, content=content, error=True)

    def _finalize(self, request: StreamRequest, state: RequestState, **changes: Any) -> None:
        if request.terminal:
            return
        request.scheduler.cancel()
        self._patch_turn(request, streaming=False, **changes)
        request.state = state

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self.turns)
