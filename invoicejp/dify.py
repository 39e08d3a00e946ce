"""
Client for the Dify workflow API that performs invoice field extraction.

A document is uploaded, the extraction workflow is run in streaming mode with
a bounded retry budget, and the server-sent-event stream is read until the
workflow finishes. When the stream ends early but a workflow run id was seen,
the run is polled once as a fallback.
"""

import codecs
import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import requests

from invoicejp.config import DEFAULT_DIFY_BASE_URL
from invoicejp.fields import (
    Confidence,
    InvoiceFields,
    canonical_key,
    normalize_invoice_confidence,
    normalize_invoice_fields,
    parse_json_if_string,
)

logger = logging.getLogger(__name__)

DIFY_MAX_RETRIES = 2
# Seconds. Each attempt (request + stream) is cancelled after DIFY_STREAM_TIMEOUT;
# all attempts together never run past DIFY_TOTAL_BUDGET.
DIFY_STREAM_TIMEOUT = 240.0
DIFY_TOTAL_BUDGET = 320.0
DIFY_RETRY_BACKOFF = 1.2
DIFY_CONNECT_TIMEOUT = 10.0
DIFY_UPLOAD_TIMEOUT = 60.0
DIFY_DETAIL_TIMEOUT = 30.0

RETRYABLE_STATUSES = {408, 429, 500, 502, 503}
FAILED_RUN_STATUSES = {"failed", "stopped"}
MAX_FAILURE_BODY_LENGTH = 500

CLOUDFLARE_RAY_ID_PATTERN = re.compile(
    r'Cloudflare Ray ID:\s*<strong[^>]*>([^<]+)</strong>', re.IGNORECASE
)
INVOICE_MARKER_KEYS = {"vendor", "invoicenumber", "issuedate"}


class DifyError(Exception):
    """Base class for extraction service failures."""


class DifyUploadError(DifyError):
    def __init__(self, status: int, body: str):
        super().__init__(f"Dify file upload failed ({status}): {body}")
        self.status = status
        self.body = body


class DifyWorkflowError(DifyError):
    def __init__(self, status: int, body: str):
        super().__init__(f"Dify workflow failed ({status}): {body}")
        self.status = status
        self.body = body


class DifyMappingError(DifyError):
    def __init__(self, message: str, raw: Any = None, raw_outputs: Any = None):
        super().__init__(message)
        self.raw = raw
        self.raw_outputs = raw_outputs


class DifyTimeoutError(DifyError):
    """Raised when a workflow attempt runs past its deadline."""


@dataclass
class WorkflowResult:
    """Tagged outcome of a workflow run: ok with the finish event, or a failure."""

    ok: bool
    status: int = 200
    body: str = ""
    json: Any = None
    stream_events: List[Any] = field(default_factory=list)
    retryable: bool = False

    @classmethod
    def success(cls, payload: Any, stream_events: List[Any]) -> "WorkflowResult":
        return cls(ok=True, json=payload, stream_events=stream_events)

    @classmethod
    def failure(
        cls,
        status: int,
        body: str,
        stream_events: Optional[List[Any]] = None,
        retryable: bool = False,
    ) -> "WorkflowResult":
        return cls(ok=False, status=status, body=body,
                   stream_events=stream_events or [], retryable=retryable)


@dataclass
class ExtractionResult:
    fields: InvoiceFields
    confidence: Dict[str, Confidence]
    raw: Any
    raw_outputs: Any
    raw_stream_events: List[Any]


def parse_sse_chunk(chunk: str) -> Any:
    """
    Parse one server-sent-event block.

    Args:
        chunk: Text between two blank lines of the event stream.

    Returns:
        The decoded data payload (dict, list, scalar or raw text), with the
        explicit ``event:`` name attached to dict payloads that lack one.
        None for empty blocks, blocks without data, and ``[DONE]``.
    """
    normalized = chunk.strip()
    if not normalized:
        return None

    data_lines = []
    explicit_event = ""
    for line in re.split(r'\r?\n', normalized):
        if line.startswith("event:"):
            explicit_event = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip())

    if not data_lines:
        return None

    data_text = "\n".join(data_lines).strip()
    if not data_text or data_text == "[DONE]":
        return None

    parsed = parse_json_if_string(data_text)
    if isinstance(parsed, dict):
        if explicit_event and "event" not in parsed:
            return {**parsed, "event": explicit_event}
        return parsed

    if not explicit_event:
        return parsed

    return {"event": explicit_event, "data": parsed}


def iter_sse_blocks(chunks: Iterable[bytes]) -> Iterator[str]:
    """Split a byte stream into event blocks separated by blank lines."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    for chunk in chunks:
        if not chunk:
            continue
        buffer += decoder.decode(chunk)
        buffer = buffer.replace("\r\n", "\n")
        *blocks, buffer = buffer.split("\n\n")
        for block in blocks:
            yield block

    buffer += decoder.decode(b"", final=True)
    if buffer.strip():
        yield buffer


def simplify_failure_body(body: str) -> str:
    """Shorten an upstream error body to a single loggable line."""
    lower = body.lower()
    if "cloudflare" in lower and "gateway time-out" in lower:
        ray_id = CLOUDFLARE_RAY_ID_PATTERN.search(body)
        suffix = f" (Ray ID: {ray_id.group(1)})" if ray_id else ""
        return f"Dify gateway timeout via Cloudflare{suffix}"

    compact = re.sub(r'\s+', ' ', body).strip()
    return compact[:MAX_FAILURE_BODY_LENGTH]


def _as_string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _first_string(*values: Any) -> str:
    for value in values:
        text = _as_string(value)
        if text:
            return text
    return ""


def _safe_text(response: requests.Response) -> str:
    try:
        return response.text
    except (requests.RequestException, ValueError):
        return "No response body"


def _safe_json_dumps(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return "[unserializable]"


def _bearer_token(api_key: str) -> str:
    return re.sub(r'^Bearer\s+', '', api_key.strip(), flags=re.IGNORECASE)


def get_outputs(response: Any) -> Any:
    """Locate the workflow outputs in a finish (or fallback) event."""
    if not isinstance(response, dict):
        return {}

    data = response.get("data")
    if isinstance(data, dict) and "outputs" in data:
        return data["outputs"]

    if "outputs" in response:
        return response["outputs"]

    return {}


def _looks_like_invoice(data: Dict[str, Any]) -> bool:
    return any(canonical_key(key) in INVOICE_MARKER_KEYS for key in data)


def resolve_invoice_payload(outputs: Any) -> Any:
    """Unwrap nested ``outputs`` keys and JSON strings, up to three levels."""
    current = parse_json_if_string(outputs)

    for _ in range(3):
        if not isinstance(current, dict) or _looks_like_invoice(current):
            return current
        if "outputs" not in current:
            return current
        current = parse_json_if_string(current["outputs"])

    return current


def extract_fixed_invoice_fields(outputs: Any) -> Tuple[InvoiceFields, Dict[str, Confidence]]:
    """
    Map workflow outputs onto InvoiceFields and their confidence levels.

    Raises:
        DifyMappingError: if the outputs do not resolve to a JSON object.
    """
    payload = resolve_invoice_payload(outputs)
    if not isinstance(payload, dict):
        raise DifyMappingError("Dify output must be a JSON object.")

    fields = normalize_invoice_fields(payload)
    confidence = normalize_invoice_confidence(payload.get("confidence"))
    return fields, confidence


class _StreamState:
    """Accumulates what the workflow stream has told us so far."""

    def __init__(self):
        self.events: List[Any] = []
        self.workflow_run_id = ""
        self.task_id = ""
        self.last_error = ""
        self.finished: Optional[Dict[str, Any]] = None

    def consume(self, payload: Any) -> None:
        if payload is None:
            return

        self.events.append(payload)
        if not isinstance(payload, dict):
            return

        event_type = payload.get("event") if isinstance(payload.get("event"), str) else ""
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}

        if not self.workflow_run_id:
            self.workflow_run_id = _first_string(
                payload.get("workflow_run_id"), data.get("id"), data.get("workflow_run_id")
            )
        if not self.task_id:
            self.task_id = _first_string(payload.get("task_id"), data.get("task_id"))

        if event_type == "workflow_finished":
            run_status = _as_string(data.get("status"))
            if run_status in FAILED_RUN_STATUSES:
                self.last_error = _first_string(data.get("error")) or f"Workflow {run_status}."
            else:
                self.finished = payload

        if event_type == "error":
            self.last_error = _first_string(
                payload.get("message"), payload.get("error"), data.get("error")
            ) or "Dify workflow reported an error."


class DifyClient:
    """
    Thin client for the Dify files and workflows endpoints.

    Args:
        api_key: Dify app API key (with or without a "Bearer " prefix).
        base_url: API root, e.g. https://api.dify.ai.
        session: Optional requests session (injected by tests).
        max_retries: Workflow attempts before giving up.
        stream_timeout: Per-attempt wall-clock limit in seconds.
        total_budget: Wall-clock limit in seconds across all attempts.
        backoff: Linear backoff step; attempt N waits N * backoff seconds.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_DIFY_BASE_URL,
        session: Optional[requests.Session] = None,
        max_retries: int = DIFY_MAX_RETRIES,
        stream_timeout: float = DIFY_STREAM_TIMEOUT,
        total_budget: float = DIFY_TOTAL_BUDGET,
        backoff: float = DIFY_RETRY_BACKOFF,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not api_key:
            raise ValueError("Dify API key is required")
        self.api_key = _bearer_token(api_key)
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.max_retries = max_retries
        self.stream_timeout = stream_timeout
        self.total_budget = total_budget
        self.backoff = backoff
        self._sleep = sleep
        self._clock = clock

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def upload_file(
        self,
        filename: str,
        content: bytes,
        user: str,
        content_type: Optional[str] = None,
    ) -> str:
        """
        Upload a document and return its Dify file id.

        Raises:
            DifyUploadError: on transport failure, non-2xx status or a response without id.
        """
        files = {"file": (filename, content, content_type or "application/octet-stream")}
        try:
            response = self.session.post(
                f"{self.base_url}/v1/files/upload",
                headers=self._auth_headers(),
                files=files,
                data={"user": user},
                timeout=(DIFY_CONNECT_TIMEOUT, DIFY_UPLOAD_TIMEOUT),
            )
        except requests.RequestException as exc:
            logger.error(f"Dify upload request failed error={exc}")
            raise DifyUploadError(502, str(exc)) from exc

        if not response.ok:
            failure_text = simplify_failure_body(_safe_text(response))
            logger.error(f"Dify upload failed status={response.status_code} body={failure_text}")
            raise DifyUploadError(response.status_code, failure_text)

        try:
            payload = response.json()
        except ValueError as exc:
            raise DifyUploadError(response.status_code, "Dify upload response is not JSON.") from exc

        logger.info(f"Dify upload response={_safe_json_dumps(payload)}")
        file_id = _as_string(payload.get("id")) if isinstance(payload, dict) else None
        if not file_id:
            raise DifyUploadError(response.status_code, "Dify upload response does not include file id.")

        return file_id

    def run_workflow(self, user: str, upload_file_id: str, input_type: str = "document") -> WorkflowResult:
        """
        Run the extraction workflow with bounded retries.

        Never raises for transport or upstream failures; the outcome is
        reported through the returned WorkflowResult.
        """
        started_at = self._clock()
        budget_deadline = started_at + self.total_budget
        payload = {
            "inputs": {
                "invoice_file": {
                    "type": input_type,
                    "transfer_method": "local_file",
                    "upload_file_id": upload_file_id,
                },
            },
            "response_mode": "streaming",
            "user": user,
        }

        for attempt in range(1, self.max_retries + 1):
            now = self._clock()
            if now >= budget_deadline:
                return WorkflowResult.failure(504, "Dify workflow timeout.")

            attempt_deadline = min(now + self.stream_timeout, budget_deadline)
            try:
                result = self._run_attempt(payload, attempt_deadline)
            except (requests.RequestException, DifyTimeoutError) as exc:
                message = str(exc) or exc.__class__.__name__
                logger.error(f"Dify workflow attempt={attempt}/{self.max_retries} exception={message}")
                result = WorkflowResult.failure(504, simplify_failure_body(message), retryable=True)
            except (ValueError, TypeError, KeyError, AttributeError) as exc:
                logger.exception(f"Dify workflow attempt={attempt}/{self.max_retries} unreadable response")
                result = WorkflowResult.failure(502, f"Dify workflow response could not be read: {exc}")

            if result.ok:
                return result

            logger.error(
                f"Dify workflow attempt={attempt}/{self.max_retries} failed "
                f"status={result.status} body={result.body}"
            )
            if not result.retryable or attempt >= self.max_retries:
                return result

            if not self._wait_before_retry(attempt, budget_deadline):
                return WorkflowResult.failure(504, "Dify workflow timeout.", result.stream_events)

        return WorkflowResult.failure(504, "Dify workflow timeout.")

    def _run_attempt(self, payload: Dict[str, Any], deadline: float) -> WorkflowResult:
        read_timeout = max(deadline - self._clock(), 0.001)
        response = self.session.post(
            f"{self.base_url}/v1/workflows/run",
            headers=self._auth_headers(),
            json=payload,
            stream=True,
            timeout=(DIFY_CONNECT_TIMEOUT, read_timeout),
        )
        try:
            if response.ok:
                return self.read_workflow_stream(response, deadline=deadline)

            body = simplify_failure_body(_safe_text(response))
            return WorkflowResult.failure(
                response.status_code, body, retryable=response.status_code in RETRYABLE_STATUSES
            )
        finally:
            response.close()

    def _wait_before_retry(self, attempt: int, budget_deadline: float) -> bool:
        delay = attempt * self.backoff
        if self._clock() + delay >= budget_deadline:
            return False
        self._sleep(delay)
        return True

    def read_workflow_stream(
        self,
        response: requests.Response,
        deadline: Optional[float] = None,
    ) -> WorkflowResult:
        """
        Consume the workflow event stream.

        Args:
            response: Streaming response of POST /v1/workflows/run.
            deadline: Clock value after which the stream is cancelled.

        Returns:
            Success with the workflow_finished event (or a polled fallback),
            or a failure: 502 for a reported error (retryable), 504 when the
            stream ended without any resolution (not retryable).

        Raises:
            DifyTimeoutError: if the deadline passed while reading.
        """
        cancelled = threading.Event()
        timer = None
        if deadline is not None:
            timer = threading.Timer(
                max(deadline - self._clock(), 0.0), self._cancel_stream, args=(response, cancelled)
            )
            timer.daemon = True
            timer.start()

        state = _StreamState()
        try:
            for block in iter_sse_blocks(response.iter_content(chunk_size=None)):
                if cancelled.is_set() or (deadline is not None and self._clock() > deadline):
                    raise DifyTimeoutError("Dify workflow stream exceeded the attempt timeout.")
                state.consume(parse_sse_chunk(block))
        except DifyTimeoutError:
            raise
        except Exception as exc:
            if cancelled.is_set():
                raise DifyTimeoutError("Dify workflow stream exceeded the attempt timeout.") from exc
            raise
        finally:
            if timer is not None:
                timer.cancel()

        if cancelled.is_set():
            raise DifyTimeoutError("Dify workflow stream exceeded the attempt timeout.")

        if state.finished is not None:
            return WorkflowResult.success(state.finished, state.events)

        if state.workflow_run_id:
            detail = self.get_workflow_run_detail(state.workflow_run_id, deadline=deadline)
            if isinstance(detail, dict) and _as_string(detail.get("status")) in FAILED_RUN_STATUSES:
                state.last_error = _first_string(detail.get("error")) or state.last_error
            elif detail is not None:
                logger.info(f"Dify stream ended early; using run detail workflow_run_id={state.workflow_run_id}")
                return WorkflowResult.success(
                    {
                        "event": "workflow_finished_fallback",
                        "workflow_run_id": state.workflow_run_id,
                        "task_id": state.task_id or None,
                        "data": detail,
                    },
                    state.events,
                )

        if state.last_error:
            return WorkflowResult.failure(502, state.last_error, state.events, retryable=True)

        return WorkflowResult.failure(
            504, "Dify stream ended without workflow_finished event.", state.events
        )

    @staticmethod
    def _cancel_stream(response: requests.Response, cancelled: threading.Event) -> None:
        cancelled.set()
        response.close()

    def get_workflow_run_detail(self, workflow_run_id: str, deadline: Optional[float] = None) -> Any:
        """
        Fetch a workflow run's detail; None when it cannot be retrieved.

        With a deadline the request timeouts are capped by the time left,
        and no request is made once the deadline has passed.
        """
        if not workflow_run_id:
            return None

        connect_timeout, read_timeout = DIFY_CONNECT_TIMEOUT, DIFY_DETAIL_TIMEOUT
        if deadline is not None:
            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.warning(f"Skipping Dify run detail, no time left workflow_run_id={workflow_run_id}")
                return None
            connect_timeout = min(connect_timeout, remaining)
            read_timeout = min(read_timeout, remaining)

        try:
            response = self.session.get(
                f"{self.base_url}/v1/workflows/run/{workflow_run_id}",
                headers=self._auth_headers(),
                timeout=(connect_timeout, read_timeout),
            )
        except requests.RequestException as exc:
            logger.warning(f"Dify run detail request failed workflow_run_id={workflow_run_id} error={exc}")
            return None

        if not response.ok:
            logger.warning(
                f"Dify run detail failed workflow_run_id={workflow_run_id} status={response.status_code}"
            )
            return None

        try:
            return response.json()
        except ValueError:
            logger.warning(f"Dify run detail is not JSON workflow_run_id={workflow_run_id}")
            return None

    def extract(
        self,
        filename: str,
        content: bytes,
        user: str,
        content_type: Optional[str] = None,
    ) -> ExtractionResult:
        """
        Upload a document, run the workflow and map its outputs.

        Raises:
            DifyUploadError: if the upload fails.
            DifyWorkflowError: if the workflow run fails.
            DifyMappingError: if the outputs cannot be mapped to invoice fields.
        """
        logger.info(f"Extract start user={user} file={filename} size={len(content)} "
                    f"type={content_type or 'unknown'}")
        file_id = self.upload_file(filename, content, user, content_type)
        logger.info(f"Uploaded to Dify file_id={file_id}")

        input_type = "image" if (content_type or "").startswith("image/") else "document"
        result = self.run_workflow(user, file_id, input_type)
        if not result.ok:
            raise DifyWorkflowError(result.status, result.body)

        logger.debug(f"Dify raw response={_safe_json_dumps(result.json)}")
        outputs = get_outputs(result.json)
        try:
            fields, confidence = extract_fixed_invoice_fields(outputs)
        except DifyMappingError as exc:
            logger.error(f"Mapping failed message={exc} outputs={_safe_json_dumps(outputs)}")
            raise DifyMappingError(str(exc), raw=result.json, raw_outputs=outputs) from exc

        return ExtractionResult(
            fields=fields,
            confidence=confidence,
            raw=result.json,
            raw_outputs=outputs,
            raw_stream_events=result.stream_events,
        )
