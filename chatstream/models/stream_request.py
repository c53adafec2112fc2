from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from chatstream.models.conversation import QueryMode

if TYPE_CHECKING:
    from chatstream.services.accumulator import AnswerAccumulator
    from chatstream.services.render_scheduler import RenderScheduler


class AbortReason(StrEnum):
    MANUAL = "manual"
    TIMEOUT = "timeout"
    UNMOUNT = "unmount"


class RequestState(StrEnum):
    OPEN = "open"
    STREAMING = "streaming"
    DONE = "done"
    ABORTED = "aborted"
    ERRORED = "errored"


TERMINAL_STATES = frozenset({RequestState.DONE, RequestState.ABORTED, RequestState.ERRORED})


@dataclass(slots=True)
class StreamRequest:
    request_id: int
    target_turn_index: int
    question: str
    mode: QueryMode
    deadline: float
    started_at: float
    accumulator: AnswerAccumulator
    scheduler: RenderScheduler
    state: RequestState = RequestState.OPEN
    abort_reason: AbortReason | None = None
    error: str | None = None
    task: asyncio.Task[Any] | None = None
    deadline_handle: asyncio.TimerHandle | None = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def abort(self, reason: AbortReason) -> None:
        """Record why the request is being torn down and cancel its read."""
        if self.abort_reason is None:
            self.abort_reason = reason
        self.stop_reading()

    def stop_reading(self) -> None:
        """Cancel the deadline, pending renders and, from outside it, the read task."""
        self.clear_deadline()
        self.scheduler.cancel()
        if self.task is not None and not self.task.done() and self.task is not asyncio.current_task():
            self.task.cancel()

    def clear_deadline(self) -> None:
        if self.deadline_handle is not None:
            self.deadline_handle.cancel()
            self.deadline_handle = None


@dataclass(slots=True)
class SessionState:
    """Controller-owned bookkeeping for the one in-flight request."""

    active_request_id: int = 0
    request: StreamRequest | None = None

    def next_request_id(self) -> int:
        self.active_request_id += 1
        return self.active_request_id

    def is_active(self, request: StreamRequest) -> bool:
        return request.request_id == self.active_request_id

    def lookup(self, request_id: int) -> StreamRequest | None:
        if self.request is not None and self.request.request_id == request_id == self.active_request_id:
            return self.request
        return None

    def release(self, request: StreamRequest) -> None:
        if self.request is request:
            self.request = None
