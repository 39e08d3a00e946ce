import json

import pytest
import requests

from invoicejp import dify
from invoicejp.dify import (
    DifyClient,
    DifyMappingError,
    DifyUploadError,
    DifyWorkflowError,
)
from invoicejp.fields import Confidence


class FakeResponse:
    def __init__(self, status_code=200, chunks=None, json_data=None, text="", on_read=None):
        self.status_code = status_code
        self.text = text
        self.closed = False
        self._chunks = chunks or []
        self._json = json_data
        self._on_read = on_read

    @property
    def ok(self):
        return self.status_code < 400

    def iter_content(self, chunk_size=None):
        for chunk in self._chunks:
            if self._on_read:
                self._on_read()
            yield chunk

    def json(self):
        if self._json is None:
            raise ValueError("No JSON object could be decoded")
        return self._json

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, post_responses=(), get_responses=()):
        self.post_responses = list(post_responses)
        self.get_responses = list(get_responses)
        self.posts = []
        self.gets = []

    def _next(self, responses):
        response = responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        return self._next(self.post_responses)

    def get(self, url, **kwargs):
        self.gets.append((url, kwargs))
        return self._next(self.get_responses)


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def sse(*events):
    return [f"data: {json.dumps(event)}\n\n".encode("utf-8") for event in events]


STARTED = {"event": "workflow_started", "workflow_run_id": "run-1", "task_id": "task-1"}
FINISHED = {
    "event": "workflow_finished",
    "workflow_run_id": "run-1",
    "data": {"status": "succeeded", "outputs": {"vendor": "A", "total": "1,100"}},
}


def make_client(session, clock=None, **kwargs):
    clock = clock or FakeClock()
    return DifyClient("test-key", "https://dify.test/", session=session,
                      sleep=clock.sleep, clock=clock, **kwargs)


def test_parse_sse_chunk():
    assert dify.parse_sse_chunk("") is None
    assert dify.parse_sse_chunk("event: ping") is None
    assert dify.parse_sse_chunk("data: [DONE]") is None
    assert dify.parse_sse_chunk('data: {"event": "workflow_started", "workflow_run_id": "r1"}') == {
        "event": "workflow_started",
        "workflow_run_id": "r1",
    }
    assert dify.parse_sse_chunk('event: error\ndata: {"message": "boom"}') == {"message": "boom", "event": "error"}
    assert dify.parse_sse_chunk("event: message\ndata: hello") == {"event": "message", "data": "hello"}
    assert dify.parse_sse_chunk("data: hello\ndata: world") == "hello\nworld"


def test_iter_sse_blocks_handles_split_chunks():
    chunks = [b'data: {"a": "\xe3\x81', b'\x82"}\r\n\r\ndata: 2']
    assert list(dify.iter_sse_blocks(chunks)) == ['data: {"a": "あ"}', "data: 2"]


def test_simplify_failure_body():
    cloudflare = (
        "<html><title>Gateway time-out</title> cloudflare "
        'Cloudflare Ray ID: <strong class="font-semibold">8abc123</strong></html>'
    )
    assert dify.simplify_failure_body(cloudflare) == "Dify gateway timeout via Cloudflare (Ray ID: 8abc123)"
    assert dify.simplify_failure_body("a\n  b") == "a b"
    assert len(dify.simplify_failure_body("x" * 2000)) == dify.MAX_FAILURE_BODY_LENGTH


def test_resolve_invoice_payload_unwraps_nested_outputs():
    outputs = {"outputs": json.dumps({"outputs": {"vendor": "A", "invoice_number": "1"}})}
    assert dify.resolve_invoice_payload(outputs) == {"vendor": "A", "invoice_number": "1"}
    assert dify.get_outputs({"data": {"outputs": {"x": 1}}}) == {"x": 1}
    assert dify.get_outputs({"outputs": {"y": 2}}) == {"y": 2}
    assert dify.get_outputs("nope") == {}


def test_extract_fixed_invoice_fields():
    outputs = {"outputs": json.dumps({"vendor": "A", "confidence": {"vendor": "high"}})}
    fields, confidence = dify.extract_fixed_invoice_fields(outputs)
    assert fields.vendor == "A"
    assert confidence == {"vendor": Confidence.HIGH}

    with pytest.raises(DifyMappingError):
        dify.extract_fixed_invoice_fields("not json")


def test_client_requires_api_key_and_strips_bearer_prefix():
    with pytest.raises(ValueError):
        DifyClient("")

    session = FakeSession(get_responses=[FakeResponse(json_data={"status": "succeeded"})])
    client = DifyClient("Bearer abc", session=session)
    client.get_workflow_run_detail("run-1")
    url, kwargs = session.gets[0]
    assert url == "https://api.dify.ai/v1/workflows/run/run-1"
    assert kwargs["headers"] == {"Authorization": "Bearer abc"}


def test_upload_file_returns_id():
    session = FakeSession(post_responses=[FakeResponse(json_data={"id": "file-1"})])
    client = make_client(session)

    assert client.upload_file("a.pdf", b"%PDF", "u1", "application/pdf") == "file-1"
    url, kwargs = session.posts[0]
    assert url == "https://dify.test/v1/files/upload"
    assert kwargs["data"] == {"user": "u1"}
    assert kwargs["files"]["file"] == ("a.pdf", b"%PDF", "application/pdf")


@pytest.mark.parametrize("response, status", [
    (FakeResponse(413, text="too large"), 413),
    (FakeResponse(200, text="<html>"), 200),
    (FakeResponse(200, json_data={"name": "a.pdf"}), 200),
    (requests.ConnectionError("refused"), 502),
])
def test_upload_file_failures(response, status):
    client = make_client(FakeSession(post_responses=[response]))
    with pytest.raises(DifyUploadError) as excinfo:
        client.upload_file("a.pdf", b"%PDF", "u1")
    assert excinfo.value.status == status


def test_stream_with_finished_event_succeeds():
    response = FakeResponse(chunks=sse(STARTED, FINISHED))
    result = make_client(FakeSession()).read_workflow_stream(response)

    assert result.ok
    assert result.json == FINISHED
    assert len(result.stream_events) == 2


def test_stream_error_event_is_retryable_failure():
    response = FakeResponse(chunks=sse(STARTED, {"event": "error", "message": "boom"}))
    session = FakeSession(get_responses=[FakeResponse(500)])
    result = make_client(session).read_workflow_stream(response)

    assert not result.ok
    assert result.status == 502
    assert result.retryable
    assert result.body == "boom"


def test_failed_workflow_finished_event_is_failure():
    failed = {"event": "workflow_finished", "data": {"id": "run-1", "status": "failed", "error": "bad file"}}
    session = FakeSession(get_responses=[FakeResponse(json_data={"status": "failed", "error": "bad file"})])
    result = make_client(session).read_workflow_stream(FakeResponse(chunks=sse(failed)))

    assert not result.ok
    assert result.status == 502
    assert result.body == "bad file"


def test_stream_without_finish_falls_back_to_run_detail():
    detail = {"id": "run-1", "status": "succeeded", "outputs": {"vendor": "A"}}
    session = FakeSession(get_responses=[FakeResponse(json_data=detail)])
    result = make_client(session).read_workflow_stream(FakeResponse(chunks=sse(STARTED)))

    assert result.ok
    assert result.json == {
        "event": "workflow_finished_fallback",
        "workflow_run_id": "run-1",
        "task_id": "task-1",
        "data": detail,
    }
    assert session.gets[0][0] == "https://dify.test/v1/workflows/run/run-1"
    assert dify.get_outputs(result.json) == {"vendor": "A"}


def test_stream_without_finish_or_run_id_is_not_retried():
    clock = FakeClock()
    session = FakeSession(post_responses=[FakeResponse(chunks=sse({"event": "ping"}))])
    result = make_client(session, clock).run_workflow("u1", "file-1")

    assert not result.ok
    assert result.status == 504
    assert result.body == "Dify stream ended without workflow_finished event."
    assert len(session.posts) == 1
    assert clock.sleeps == []


def test_run_workflow_retries_retryable_status():
    clock = FakeClock()
    first = FakeResponse(503, text="busy")
    second = FakeResponse(chunks=sse(STARTED, FINISHED))
    session = FakeSession(post_responses=[first, second])

    result = make_client(session, clock).run_workflow("u1", "file-1", "image")

    assert result.ok
    assert clock.sleeps == [pytest.approx(1.2)]
    assert first.closed and second.closed

    url, kwargs = session.posts[1]
    assert url == "https://dify.test/v1/workflows/run"
    assert kwargs["stream"] is True
    assert kwargs["json"] == {
        "inputs": {
            "invoice_file": {"type": "image", "transfer_method": "local_file", "upload_file_id": "file-1"},
        },
        "response_mode": "streaming",
        "user": "u1",
    }


def test_run_workflow_does_not_retry_client_errors():
    session = FakeSession(post_responses=[FakeResponse(400, text="invalid input")])
    result = make_client(session).run_workflow("u1", "file-1")

    assert not result.ok
    assert result.status == 400
    assert result.body == "invalid input"
    assert len(session.posts) == 1


def test_run_workflow_stops_after_max_retries():
    session = FakeSession(post_responses=[FakeResponse(503), FakeResponse(502), FakeResponse(503)])
    result = make_client(session).run_workflow("u1", "file-1")

    assert result.status == 502
    assert len(session.posts) == 2


def test_run_workflow_retries_transport_errors():
    session = FakeSession(post_responses=[requests.ConnectionError("down"), requests.Timeout("slow")])
    result = make_client(session).run_workflow("u1", "file-1")

    assert not result.ok
    assert result.status == 504
    assert result.retryable
    assert len(session.posts) == 2


def test_run_workflow_respects_total_budget():
    clock = FakeClock()
    session = FakeSession(post_responses=[FakeResponse(503), FakeResponse(chunks=sse(FINISHED))])
    result = make_client(session, clock, total_budget=5, backoff=10).run_workflow("u1", "file-1")

    assert result.status == 504
    assert result.body == "Dify workflow timeout."
    assert len(session.posts) == 1
    assert clock.sleeps == []


def test_slow_stream_is_cancelled_and_retried():
    clock = FakeClock()

    def advance():
        clock.now += 300

    slow = FakeResponse(chunks=sse(STARTED, FINISHED), on_read=advance)
    fast = FakeResponse(chunks=sse(STARTED, FINISHED))
    session = FakeSession(post_responses=[slow, fast])

    result = make_client(session, clock).run_workflow("u1", "file-1")

    assert result.ok
    assert len(session.posts) == 2
    assert slow.closed


def test_extract_uploads_runs_and_maps_outputs():
    outputs = {"outputs": json.dumps({
        "vendor": "セブンイレブン",
        "invoice_number": "R-1",
        "issue_date": "2024年3月5日",
        "total": "¥1,100",
        "confidence": {"vendor": "high", "total": "low"},
    })}
    finished = {"event": "workflow_finished", "data": {"status": "succeeded", "outputs": outputs}}
    session = FakeSession(post_responses=[
        FakeResponse(json_data={"id": "file-9"}),
        FakeResponse(chunks=sse(STARTED, finished)),
    ])

    result = make_client(session).extract("r.png", b"png", "u1", "image/png")

    assert result.fields.vendor == "セブンイレブン"
    assert result.fields.issue_date == "2024-03-05"
    assert result.fields.total == "1100"
    assert result.confidence == {"vendor": Confidence.HIGH, "total": Confidence.LOW}
    assert result.raw == finished
    assert result.raw_outputs == outputs
    assert len(result.raw_stream_events) == 2
    assert session.posts[1][1]["json"]["inputs"]["invoice_file"]["type"] == "image"


def test_extract_raises_on_workflow_failure():
    session = FakeSession(post_responses=[
        FakeResponse(json_data={"id": "file-9"}),
        FakeResponse(400, text="bad request"),
    ])
    with pytest.raises(DifyWorkflowError) as excinfo:
        make_client(session).extract("a.pdf", b"%PDF", "u1", "application/pdf")
    assert excinfo.value.status == 400


def test_extract_raises_mapping_error_with_raw_outputs():
    finished = {"event": "workflow_finished", "data": {"status": "succeeded", "outputs": "no json here"}}
    session = FakeSession(post_responses=[
        FakeResponse(json_data={"id": "file-9"}),
        FakeResponse(chunks=sse(finished)),
    ])
    with pytest.raises(DifyMappingError) as excinfo:
        make_client(session).extract("a.pdf", b"%PDF", "u1")
    assert excinfo.value.raw == finished
    assert excinfo.value.raw_outputs == "no json here"


@pytest.mark.parametrize("status", [["failed"], {"state": "failed"}, 3])
def test_non_string_run_status_does_not_escape_run_workflow(status):
    finished = {"event": "workflow_finished", "data": {"id": "run-1", "status": status, "outputs": {"vendor": "A"}}}
    session = FakeSession(post_responses=[FakeResponse(chunks=sse(finished))])

    result = make_client(session).run_workflow("u1", "file-1")

    assert result.ok
    assert result.json == finished


def test_non_string_status_in_run_detail_is_not_a_failure():
    detail = {"id": "run-1", "status": ["stopped"], "outputs": {"vendor": "A"}}
    session = FakeSession(get_responses=[FakeResponse(json_data=detail)])

    result = make_client(session).read_workflow_stream(FakeResponse(chunks=sse(STARTED)))

    assert result.ok
    assert result.json["data"] == detail


def test_unreadable_stream_becomes_failure_result():
    session = FakeSession(post_responses=[FakeResponse(chunks=["not bytes"])])

    result = make_client(session).run_workflow("u1", "file-1")

    assert not result.ok
    assert result.status == 502
    assert len(session.posts) == 1


def test_run_detail_timeout_is_capped_by_deadline():
    clock = FakeClock()

    def near_deadline():
        clock.now = 239.0

    detail = {"id": "run-1", "status": "succeeded", "outputs": {"vendor": "A"}}
    session = FakeSession(get_responses=[FakeResponse(json_data=detail)])
    response = FakeResponse(chunks=sse(STARTED), on_read=near_deadline)

    result = make_client(session, clock).read_workflow_stream(response, deadline=240.0)

    assert result.ok
    assert session.gets[0][1]["timeout"] == (1.0, 1.0)


def test_run_detail_is_skipped_when_deadline_has_passed():
    clock = FakeClock()

    def at_deadline():
        clock.now = 240.0

    session = FakeSession(get_responses=[FakeResponse(json_data={"status": "succeeded"})])
    response = FakeResponse(chunks=sse(STARTED), on_read=at_deadline)

    result = make_client(session, clock).read_workflow_stream(response, deadline=240.0)

    assert not result.ok
    assert result.status == 504
    assert session.gets == []


def test_attempt_timeout_is_capped_by_total_budget():
    session = FakeSession(post_responses=[FakeResponse(chunks=sse(FINISHED))])

    result = make_client(session, total_budget=100).run_workflow("u1", "file-1")

    assert result.ok
    assert session.posts[0][1]["timeout"] == (dify.DIFY_CONNECT_TIMEOUT, 100.0)


def test_run_id_from_data_workflow_run_id_is_used_for_fallback():
    node_event = {"event": "node_started", "data": {"workflow_run_id": "run-7", "node_id": "llm"}}
    detail = {"id": "run-7", "status": "succeeded", "outputs": {"vendor": "A"}}
    session = FakeSession(get_responses=[FakeResponse(json_data=detail)])

    result = make_client(session).read_workflow_stream(FakeResponse(chunks=sse(node_event)))

    assert result.ok
    assert result.json["workflow_run_id"] == "run-7"
    assert result.json["task_id"] is None
    assert session.gets[0][0] == "https://dify.test/v1/workflows/run/run-7"
