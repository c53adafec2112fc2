from __future__ import annotations

import asyncio
import json
from typing import Callable
from unittest.mock import patch

import httpx
import pytest

from chatstream.exceptions import ChatStreamError
from chatstream.models.conversation import Citation, ConversationTurn, QueryMode, Role
from chatstream.models.events import ErrorFrame, MessageFrame, SSEEvent
from chatstream.models.stream_request import AbortReason, RequestState
from chatstream.services.render_scheduler import ManualTickSource
from chatstream.services.session import (
    CANCELLED_MESSAGE,
    FAILURE_MESSAGE,
    SERVER_ERROR_MESSAGE,
    TIMEOUT_MESSAGE,
    StreamSessionController,
)

URL = "http://answers.test/api/assistant/query/stream"
CITATIONS = '[{"refIndex":1,"title":"Caching","url":"/articles/9","quote":"Use a TTL.","score":0.9,"chunkId":"9-3"}]'


class FakeStream:
    """Answer body whose chunks the test releases one at a time."""

    def __init__(self, *chunks: str | bytes, end: bool = False):
        self.queue: asyncio.Queue[bytes | Exception | None] = asyncio.Queue()
        self.push(*chunks)
        if end:
            self.end()

    def push(self, *chunks: str | bytes) -> None:
        for chunk in chunks:
            self.queue.put_nowait(chunk.encode("utf-8") if isinstance(chunk, str) else chunk)

    def end(self) -> None:
        self.queue.put_nowait(None)

    def fail(self, error: Exception) -> None:
        self.queue.put_nowait(error)

    async def body(self):
        while True:
            chunk = await self.queue.get()
            if chunk is None:
                return
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk


def event(name: str, data: str = "") -> str:
    return SSEEvent(event=name, data=data).format()


def make_client(
    *streams: FakeStream,
    routes: dict[str, FakeStream] | None = None,
    status_code: int = 200,
    sent: list | None = None,
) -> httpx.AsyncClient:
    """Serve streams in request order, or by question when `routes` is given."""
    pending = list(streams)

    async def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if sent is not None:
            sent.append(payload)
        stream = routes[payload["question"]] if routes else pending.pop(0)
        return httpx.Response(
            status_code,
            content=stream.body(),
            headers={"content-type": "text/event-stream"},
        )

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_controller(client: httpx.AsyncClient, **kwargs) -> StreamSessionController:
    kwargs.setdefault("tick_source", ManualTickSource())
    kwargs.setdefault("timeout_s", 5.0)
    return StreamSessionController(client, url=URL, **kwargs)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


def streaming_turns(controller: StreamSessionController) -> list[ConversationTurn]:
    return [turn for turn in controller.turns if turn.streaming]


@pytest.mark.asyncio
async def test_single_answer_completes_turn():
    sent: list[dict] = []
    body = FakeStream("event:message\ndata:Hello\n\nevent:done\ndata:\n\n", end=True)
    controller = make_controller(make_client(body, sent=sent))

    turn = await controller.ask("What is caching?")

    assert turn == ConversationTurn(role=Role.ASSISTANT, content="Hello", streaming=False, error=False)
    assert controller.turns[0] == ConversationTurn.user("What is caching?")
    assert sent == [{"question": "What is caching?", "mode": "FLEXIBLE", "history": []}]


@pytest.mark.asyncio
async def test_follow_up_sends_prior_turns_as_history():
    sent: list[dict] = []
    first = FakeStream(event("message", "Hello"), event("done"), end=True)
    second = FakeStream(event("message", "Again"), event("done"), end=True)
    controller = make_controller(make_client(first, second, sent=sent), mode=QueryMode.ARTICLE_ONLY)

    await controller.ask("  first  ")
    await controller.ask("second")

    assert sent[1] == {
        "question": "second",
        "mode": "ARTICLE_ONLY",
        "history": [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "Hello"},
        ],
    }
    assert [turn.content for turn in controller.turns] == ["first", "Hello", "second", "Again"]


@pytest.mark.asyncio
async def test_empty_question_is_ignored():
    controller = make_controller(make_client())

    assert controller.submit("   ") is None
    assert await controller.ask("") is None
    assert controller.turns == []
    assert controller.state.active_request_id == 0


@pytest.mark.asyncio
async def test_record_split_across_reads_still_yields_one_message():
    body = FakeStream("event:mess", "age\ndata:Hi\n\n", "event:done\n\n", end=True)
    controller = make_controller(make_client(body))

    turn = await controller.ask("hi?")

    assert turn.content == "Hi"
    assert not turn.streaming


@pytest.mark.asyncio
async def test_message_updates_are_batched_until_the_next_tick():
    ticks = ManualTickSource()
    body = FakeStream()
    changes: list[str] = []
    controller = make_controller(
        make_client(body),
        tick_source=ticks,
        on_change=lambda turns: changes.append(turns[-1].content),
    )
    request = controller.submit("stream please")

    body.push(event("message", "a"), event("message", "b"), event("message", "c"))
    await wait_until(lambda: request.accumulator.full_answer == "abc")

    turn = controller.turns[request.target_turn_index]
    assert turn.content == ""
    assert turn.streaming
    assert ticks.scheduled == 1

    ticks.tick()
    assert turn.content == "abc"
    assert changes[-1] == "abc"

    body.push(event("done"))
    body.end()
    await controller.wait()
    assert turn.content == "abc"
    assert not turn.streaming


@pytest.mark.asyncio
async def test_citations_are_committed_immediately_and_bad_payload_keeps_them():
    body = FakeStream()
    controller = make_controller(make_client(body))
    request = controller.submit("sources?")
    turn = controller.turns[request.target_turn_index]

    body.push(event("message", "Answer"), event("citations", CITATIONS))
    await wait_until(lambda: len(turn.citations) == 1)
    assert turn.content == ""

    body.push(event("citations", "{bad json"), event("message", " continues"))
    await wait_until(lambda: request.accumulator.full_answer == "Answer continues")
    assert turn.citations[0].title == "Caching"
    assert turn.streaming

    body.push(event("done"))
    body.end()
    await controller.wait()

    assert turn.content == "Answer continues"
    assert turn.citations == [
        Citation(ref_index=1, title="Caching", url="/articles/9", quote="Use a TTL.", score=0.9, chunk_id="9-3")
    ]
    assert not turn.error


@pytest.mark.asyncio
async def test_citations_after_done_are_still_applied():
    body = FakeStream(event("message", "Answer"), event("done"), event("citations", CITATIONS), end=True)
    controller = make_controller(make_client(body))

    turn = await controller.ask("sources last?")

    assert turn.content == "Answer"
    assert not turn.streaming
    assert [c.chunk_id for c in turn.citations] == ["9-3"]


@pytest.mark.asyncio
async def test_messages_after_done_are_ignored():
    body = FakeStream(event("message", "Answer"), event("done"), event("message", " extra"), end=True)
    controller = make_controller(make_client(body))

    turn = await controller.ask("q")

    assert turn.content == "Answer"


@pytest.mark.asyncio
async def test_stream_ending_without_done_keeps_the_answer():
    body = FakeStream(event("message", "Partial "), event("message", "answer"), end=True)
    controller = make_controller(make_client(body))

    request = controller.submit("q")
    await controller.wait()

    turn = controller.turns[request.target_turn_index]
    assert turn.content == "Partial answer"
    assert not turn.streaming
    assert not turn.error
    assert request.state is RequestState.DONE


@pytest.mark.asyncio
async def test_error_event_fails_turn_with_server_message():
    body = FakeStream(event("message", "Half"), event("error", "Knowledge base unavailable"), end=True)
    controller = make_controller(make_client(body))

    request = controller.submit("q")
    await controller.wait()

    turn = controller.turns[request.target_turn_index]
    assert turn == ConversationTurn(role=Role.ASSISTANT, content="Knowledge base unavailable", streaming=False, error=True)
    assert request.state is RequestState.ERRORED


@pytest.mark.asyncio
async def test_empty_error_event_uses_generic_message():
    body = FakeStream(event("error"), end=True)
    controller = make_controller(make_client(body))

    turn = await controller.ask("q")

    assert turn.content == SERVER_ERROR_MESSAGE
    assert turn.error


@pytest.mark.asyncio
async def test_non_success_status_is_a_transport_failure():
    body = FakeStream("Internal Server Error", end=True)
    controller = make_controller(make_client(body, status_code=500))

    turn = await controller.ask("q")

    assert turn.content == FAILURE_MESSAGE
    assert turn.error
    assert not turn.streaming


@pytest.mark.asyncio
async def test_connection_error_never_surfaces_raw_text():
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("[Errno 111] Connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    controller = make_controller(client)

    turn = await controller.ask("q")

    assert turn.content == FAILURE_MESSAGE
    assert turn.error


@pytest.mark.asyncio
async def test_no_event_before_deadline_times_out():
    body = FakeStream()
    controller = make_controller(make_client(body), timeout_s=0.05)

    request = controller.submit("slow question")
    await controller.wait()

    turn = controller.turns[request.target_turn_index]
    assert turn == ConversationTurn(role=Role.ASSISTANT, content=TIMEOUT_MESSAGE, streaming=False, error=True)
    assert request.abort_reason is AbortReason.TIMEOUT
    assert request.state is RequestState.ABORTED
    assert not controller.streaming


@pytest.mark.asyncio
async def test_manual_cancel_is_not_an_error():
    body = FakeStream(event("message", "Par"))
    controller = make_controller(make_client(body))
    request = controller.submit("q")
    await wait_until(lambda: request.accumulator.full_answer == "Par")

    assert controller.cancel() is True
    turn = controller.turns[request.target_turn_index]
    assert turn == ConversationTurn(role=Role.ASSISTANT, content=CANCELLED_MESSAGE, streaming=False, error=False)

    await asyncio.wait({request.task})
    assert request.abort_reason is AbortReason.MANUAL
    assert request.state is RequestState.ABORTED
    assert controller.cancel() is False
    assert turn.content == CANCELLED_MESSAGE


@pytest.mark.asyncio
async def test_second_submit_supersedes_the_first():
    ticks = ManualTickSource()
    first = FakeStream(event("message", "First answer"))
    second = FakeStream()
    controller = make_controller(make_client(routes={"first?": first, "second?": second}), tick_source=ticks)

    request_a = controller.submit("first?")
    await wait_until(lambda: request_a.accumulator.full_answer == "First answer")
    ticks.tick()
    turn_a = controller.turns[request_a.target_turn_index]
    assert turn_a.content == "First answer"

    request_b = controller.submit("second?")

    # The first turn is finalized synchronously by the new submit.
    assert turn_a == ConversationTurn(role=Role.ASSISTANT, content=CANCELLED_MESSAGE, streaming=False, error=False)
    assert request_b.request_id == request_a.request_id + 1
    assert streaming_turns(controller) == [controller.turns[request_b.target_turn_index]]

    first.push(event("message", " late"), event("done"))
    second.push(event("message", "Second answer"), event("done"))
    second.end()
    await controller.wait()
    await asyncio.wait({request_a.task})

    turn_b = controller.turns[request_b.target_turn_index]
    assert turn_b.content == "Second answer"
    assert not turn_b.streaming
    assert turn_a.content == CANCELLED_MESSAGE
    assert streaming_turns(controller) == []


@pytest.mark.asyncio
async def test_frames_for_a_superseded_request_are_dropped():
    ticks = ManualTickSource()
    first = FakeStream()
    second = FakeStream()
    controller = make_controller(make_client(routes={"first?": first, "second?": second}), tick_source=ticks)

    request_a = controller.submit("first?")
    request_b = controller.submit("second?")
    second.push(event("message", "B"))
    await wait_until(lambda: request_b.accumulator.full_answer == "B")

    controller.handle_frame(request_a.request_id, MessageFrame("late A text"))
    ticks.tick()

    assert controller.turns[request_b.target_turn_index].content == "B"
    assert controller.turns[request_a.target_turn_index].content == CANCELLED_MESSAGE
    assert request_a.accumulator.full_answer == ""

    await controller.aclose()


@pytest.mark.asyncio
async def test_close_aborts_without_touching_the_turn():
    body = FakeStream(event("message", "Par"))
    controller = make_controller(make_client(body))
    request = controller.submit("q")
    await wait_until(lambda: request.accumulator.full_answer == "Par")
    turn = controller.turns[request.target_turn_index]
    before = (turn.content, turn.streaming, turn.error)

    await controller.aclose()

    assert (turn.content, turn.streaming, turn.error) == before
    assert request.abort_reason is AbortReason.UNMOUNT
    assert request.state is RequestState.ABORTED
    assert request.task.done()


@pytest.mark.asyncio
async def test_async_context_manager_closes_owned_client():
    async with StreamSessionController(url=URL) as controller:
        client = controller._http()

    assert client.is_closed


@pytest.mark.asyncio
async def test_connection_dropped_mid_stream_is_a_transport_failure():
    body = FakeStream(event("message", "Par"))
    controller = make_controller(make_client(body))
    request = controller.submit("q")
    await wait_until(lambda: request.accumulator.full_answer == "Par")

    body.fail(httpx.ReadError("Connection reset by peer"))
    await controller.wait()

    turn = controller.turns[request.target_turn_index]
    assert turn == ConversationTurn(role=Role.ASSISTANT, content=FAILURE_MESSAGE, streaming=False, error=True)
    assert request.state is RequestState.ERRORED
    assert request.error.startswith("ReadError")


@pytest.mark.asyncio
async def test_error_frame_handled_directly_fails_turn_and_stops_the_read():
    body = FakeStream(event("message", "Half"))
    controller = make_controller(make_client(body))
    request = controller.submit("q")
    await wait_until(lambda: request.accumulator.full_answer == "Half")

    controller.handle_frame(request.request_id, ErrorFrame("Index unavailable"))

    turn = controller.turns[request.target_turn_index]
    assert turn == ConversationTurn(role=Role.ASSISTANT, content="Index unavailable", streaming=False, error=True)
    assert request.state is RequestState.ERRORED

    await asyncio.wait({request.task})
    assert not request.task.cancelled()
    assert request.abort_reason is None
    assert request.error == "server error: Index unavailable"
    assert not controller.streaming


@pytest.mark.asyncio
async def test_empty_error_frame_handled_directly_uses_generic_message():
    body = FakeStream()
    controller = make_controller(make_client(body))
    request = controller.submit("q")

    controller.handle_frame(request.request_id, ErrorFrame())
    await asyncio.wait({request.task})

    turn = controller.turns[request.target_turn_index]
    assert turn.content == SERVER_ERROR_MESSAGE
    assert turn.error
    assert not turn.streaming


@pytest.mark.asyncio
async def test_supersede_and_cancel_are_logged():
    first = FakeStream()
    second = FakeStream()
    controller = make_controller(make_client(routes={"first?": first, "second?": second}))

    with patch("chatstream.services.logger.log_session_event") as mock_log:
        request_a = controller.submit("first?")
        request_b = controller.submit("second?")
        controller.cancel()
        controller.cancel()

    await asyncio.wait({request_a.task, request_b.task})
    assert [c.args for c in mock_log.call_args_list] == [
        ("superseded", request_a.request_id),
        ("cancelled", request_b.request_id),
    ]
    assert mock_log.call_args_list[0].kwargs == {"replaced_by": request_b.request_id}


@pytest.mark.asyncio
async def test_timeout_is_logged_as_warning():
    controller = make_controller(make_client(FakeStream()), timeout_s=0.05)

    with patch("chatstream.services.logger.log_session_event") as mock_log:
        request = controller.submit("slow question")
        await controller.wait()

    mock_log.assert_called_once_with("timeout", request.request_id, level="WARNING", timeout_s=0.05)


@pytest.mark.asyncio
async def test_closed_controller_rejects_new_questions():
    body = FakeStream(event("message", "Par"))
    controller = make_controller(make_client(body))
    request = controller.submit("q")
    await wait_until(lambda: request.accumulator.full_answer == "Par")

    with patch("chatstream.services.logger.log_session_event") as mock_log:
        await controller.aclose()

    mock_log.assert_called_once_with("unmount", request.request_id)
    with pytest.raises(ChatStreamError):
        controller.submit("again")
    assert len(controller.turns) == 2
    assert len(streaming_turns(controller)) <= 1
