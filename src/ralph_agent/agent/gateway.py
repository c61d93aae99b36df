"""Typed, resilient HTTP transport to the job coordinator."""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from collections.abc import Callable, Generator
from typing import Any

import httpx

from ralph_agent.agent.best_effort import run_ignoring_errors
from ralph_agent.agent.errors import (
    GatewayError,
    GatewayPermissionError,
    JobValidationError,
    redact,
)
from ralph_agent.agent.failures import JobFailure
from ralph_agent.agent.models import (
    ExecutionResult,
    FailureKind,
    Job,
    JobStatus,
    job_log_details,
    parse_job,
)
from ralph_agent.context import AgentContext

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/rb"
LEGACY_API_PREFIX = "/api/v1/ralph"

CONNECT_TIMEOUT_SECONDS = 10.0
RETRYABLE_STATUS_CODES = frozenset({408, 429, 502, 503, 504})
MAX_RATE_LIMIT_BACKOFF_SECONDS = 30.0

MAX_OUTPUT_CHARS = 10 * 1024 * 1024
MAX_SUMMARY_CHARS = 10_000
MAX_METADATA_CHARS = 10_000
MAX_BRANCH_NAME_CHARS = 200
MAX_ERROR_BODY_CHARS = 500
TRUNCATION_MARKER = "\n\n[OUTPUT TRUNCATED - EXCEEDED MAX SIZE]"

PROGRESS_BATCH_MAX_ENTRIES = 50
PROGRESS_BATCH_INTERVAL_SECONDS = 0.2

_BRANCH_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*(?:/[A-Za-z0-9][A-Za-z0-9_-]*)*$")

_DEFAULT_CATEGORY_BY_KIND: dict[FailureKind, str | None] = {
    FailureKind.TIMEOUT: "execution_timeout",
    FailureKind.EXECUTION_FAILURE: None,
    FailureKind.VALIDATION_FAILURE: "validation_error",
    FailureKind.TRANSPORT_FAILURE: "network_error",
}


class BearerTokenAuth(httpx.Auth):
    """Attach the API token per request so it never lives in client defaults."""

    def __init__(self, token: str) -> None:
        self._token = token

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"Bearer {self._token}"
        yield request


class JobGateway:
    """Coordinator API client used by the orchestrator and heartbeat.

    ``claim_next``, ``mark_running`` and ``mark_completed`` surface failures
    to the caller. Failure reports, heartbeats, progress, status events and
    metadata updates are best effort: errors are logged and swallowed.
    """

    def __init__(
        self,
        *,
        context: AgentContext,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        progress_interval_seconds: float = PROGRESS_BATCH_INTERVAL_SECONDS,
    ) -> None:
        api = context.settings.api
        if not api.token:
            raise ValueError("API token is required to build the job gateway.")
        self.context = context
        self._token = api.token
        self._sleep = sleep
        self._clock = clock
        self._progress_interval_seconds = progress_interval_seconds
        self._client = httpx.Client(
            base_url=api.url,
            timeout=httpx.Timeout(api.request_timeout_seconds, connect=CONNECT_TIMEOUT_SECONDS),
            headers={
                "Content-Type": "application/json",
                "X-Agent-Version": context.agent_version,
                "X-Agent-ID": context.agent_id,
            },
            auth=BearerTokenAuth(api.token),
            transport=transport,
        )
        self._use_legacy_routes = False
        self._category_backoff_until: dict[str, float] = {}
        self._progress_lock = threading.Lock()
        self._progress_buffers: dict[int, list[dict[str, Any]]] = {}
        self._progress_timers: dict[int, threading.Timer] = {}
        self._progress_send_lock = threading.Lock()

    @property
    def using_legacy_routes(self) -> bool:
        return self._use_legacy_routes

    def close(self) -> None:
        with self._progress_lock:
            pending = list(self._progress_buffers)
        for job_id in pending:
            self.flush_progress(job_id)
        self._client.close()

    def __enter__(self) -> JobGateway:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def claim_next(self) -> Job | None:
        """Long-poll for the next job; ``None`` when nothing is available."""

        api = self.context.settings.api
        server_wait = api.long_poll_server_timeout_seconds
        logger.info("Polling for next job (long poll timeout: %ss)", server_wait)
        try:
            response = self._request(
                "GET",
                "/jobs/next",
                params={"timeout": server_wait},
                timeout=httpx.Timeout(
                    server_wait + api.long_poll_buffer_seconds,
                    connect=CONNECT_TIMEOUT_SECONDS,
                ),
            )
        except GatewayPermissionError:
            logger.error("API token lacks agent permission")
            raise
        except httpx.TimeoutException:
            logger.info("Long poll timed out without a job")
            return None
        except httpx.ConnectError:
            logger.error("Cannot connect to API at %s", api.url)
            return None
        except httpx.HTTPError as error:
            raise self._transport_error("GET", "/jobs/next", error) from None

        if response.status_code == 204:
            logger.info("No jobs available (HTTP 204)")
            return None

        body = _json_body(response)
        if isinstance(body, dict) and body.get("success"):
            try:
                job = parse_job(body.get("job"))
            except JobValidationError as error:
                logger.error("Invalid job received from API: %s", error)
                return None
            logger.info("Claimed job #%d - %s", job.id, job.task_title)
            logger.info("Job details: %s", job_log_details(job))
            return job

        logger.warning("Unexpected response from API: %s", _preview(response.text))
        return None

    def mark_running(self, job_id: int) -> None:
        try:
            self._call("PATCH", f"/jobs/{job_id}", json={"status": JobStatus.RUNNING.value})
        except GatewayError as error:
            logger.error("Error marking job #%d as running: %s", job_id, error)
            raise
        logger.info("Job #%d marked as running", job_id)

    def mark_completed(self, job_id: int, result: ExecutionResult) -> None:
        """Persist the completed state; raises ``GatewayError`` if it did not stick."""

        self.flush_progress(job_id)
        payload = self._completion_payload(result)
        try:
            self._call(
                "PATCH",
                f"/jobs/{job_id}",
                json=payload,
                max_retries=self.context.settings.api.max_retries,
            )
        except GatewayError as error:
            logger.error("Failed to mark job #%d as completed: %s", job_id, error)
            raise
        logger.info("Job #%d marked as completed", job_id)

    def mark_failed(
        self,
        job_id: int,
        error: JobFailure | str,
        partial_output: str | None = None,
    ) -> None:
        """Report the failed state. Never raises."""

        try:
            self.flush_progress(job_id)
            payload = _failure_payload(error, partial_output)
            self._call(
                "PATCH",
                f"/jobs/{job_id}",
                json=payload,
                max_retries=self.context.settings.api.max_retries,
            )
            logger.info(
                "Job #%d marked as failed with category: %s",
                job_id,
                payload.get("error_category") or "unknown",
            )
        except Exception as api_error:  # noqa: BLE001
            logger.error(
                "Failed to mark job #%d as failed (original error: %s): %s",
                job_id,
                self._redact(str(error)),
                self._redact(str(api_error)),
            )

    def send_heartbeat(self, job_id: int, status_event: dict[str, Any] | None = None) -> None:
        payload: dict[str, Any] = {"status": JobStatus.RUNNING.value, "heartbeat": True}
        if status_event:
            payload["status_event"] = status_event
        try:
            self._call("PATCH", f"/jobs/{job_id}", json=payload)
        except GatewayError as error:
            logger.warning("Error sending heartbeat for job #%d: %s", job_id, error)
            return
        logger.debug("Heartbeat sent for job #%d", job_id)

    def send_progress(self, job_id: int, chunk: str) -> None:
        """Buffer a progress chunk without touching the network.

        The first buffered chunk arms a flush timer; a full batch is flushed
        right away on a timer thread.
        """

        with self._progress_lock:
            buffer = self._progress_buffers.setdefault(job_id, [])
            buffer.append({"chunk": chunk, "timestamp": int(time.time() * 1000)})
            if len(buffer) == 1:
                self._arm_progress_flush(job_id, self._progress_interval_seconds)
            elif len(buffer) == PROGRESS_BATCH_MAX_ENTRIES:
                self._arm_progress_flush(job_id, 0.0)

    def flush_progress(self, job_id: int) -> None:
        """Send everything buffered for ``job_id``; blocks until it is on the wire."""

        with self._progress_send_lock:
            with self._progress_lock:
                timer = self._progress_timers.pop(job_id, None)
                updates = self._progress_buffers.pop(job_id, [])
            if timer is not None:
                timer.cancel()
            for start in range(0, len(updates), PROGRESS_BATCH_MAX_ENTRIES):
                batch = updates[start : start + PROGRESS_BATCH_MAX_ENTRIES]
                try:
                    self._call("POST", f"/jobs/{job_id}/progress_batch", json={"updates": batch})
                except GatewayError as error:
                    logger.warning("Error sending batched progress for job #%d: %s", job_id, error)
                    continue
                logger.debug("Sent %d progress updates for job #%d", len(batch), job_id)

    def _arm_progress_flush(self, job_id: int, delay: float) -> None:
        # Caller holds _progress_lock.
        previous = self._progress_timers.pop(job_id, None)
        if previous is not None:
            previous.cancel()
        timer = threading.Timer(
            delay,
            run_ignoring_errors,
            ("Progress flush", self.flush_progress, job_id),
        )
        timer.daemon = True
        self._progress_timers[job_id] = timer
        timer.start()

    def send_status_event(
        self,
        job_id: int,
        event_type: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            self._call(
                "POST",
                f"/jobs/{job_id}/events",
                json={"event_type": event_type, "message": message, "metadata": metadata or {}},
                max_retries=1,
            )
        except GatewayError as error:
            logger.warning("Error sending status event for job #%d: %s", job_id, error)
            return
        logger.debug("Status event sent for job #%d: %s - %s", job_id, event_type, message)

    def update_metadata(self, job_id: int, metadata: dict[str, Any]) -> None:
        if not isinstance(metadata, dict):
            logger.warning("Invalid metadata for job #%d: must be an object", job_id)
            return
        try:
            encoded = json.dumps(metadata)
        except (TypeError, ValueError) as error:
            logger.warning("Error serializing metadata for job #%d: %s", job_id, error)
            return
        if len(encoded) > MAX_METADATA_CHARS:
            logger.warning(
                "Metadata for job #%d too large (%d chars), not sent",
                job_id,
                len(encoded),
            )
            return
        try:
            self._call("PATCH", f"/jobs/{job_id}/metadata", json={"metadata": metadata})
        except GatewayError as error:
            logger.warning("Error updating metadata for job #%d: %s", job_id, error)

    def _completion_payload(self, result: ExecutionResult) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": JobStatus.COMPLETED.value,
            "execution_time_ms": result.execution_time_ms,
            "output": validate_output(result.output),
        }
        if result.summary:
            payload["summary"] = validate_output(result.summary, max_chars=MAX_SUMMARY_CHARS)
        if result.prd_content:
            payload["prd_content"] = validate_output(result.prd_content)
        if result.branch_name:
            if is_valid_branch_name(result.branch_name):
                payload["branch_name"] = result.branch_name
            else:
                logger.warning(
                    "Invalid branch name format, omitting from payload: %r",
                    result.branch_name,
                )
        return payload

    def _call(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._request(method, path, **kwargs)
        except httpx.HTTPError as error:
            raise self._transport_error(method, path, error) from None

    def _request(
        self,
        method: str,
        path: str,
        *,
        max_retries: int = 0,
        **kwargs: Any,
    ) -> httpx.Response:
        category = _endpoint_category(path)
        attempt = 0
        while True:
            self._wait_for_backoff(category)
            try:
                response = self._send_with_fallback(method, path, **kwargs)
            except httpx.TransportError as error:
                if attempt >= max_retries:
                    raise
                delay = float(2**attempt)
                logger.warning(
                    "Retryable error on %s (%s), retry %d/%d after %.1fs",
                    path,
                    self._redact(str(error)),
                    attempt + 1,
                    max_retries,
                    delay,
                )
                self._sleep(delay)
                attempt += 1
                continue

            status = response.status_code
            if status == 429:
                delay = _retry_after_seconds(response)
                if delay is None:
                    delay = min(float(2**attempt), MAX_RATE_LIMIT_BACKOFF_SECONDS)
                self._category_backoff_until[category] = self._clock() + delay
                logger.warning(
                    "Rate limited on %s (attempt %d/%d), backing off %.1fs",
                    path,
                    attempt + 1,
                    max_retries + 1,
                    delay,
                )
                if attempt < max_retries:
                    self._sleep(delay)
                    attempt += 1
                    continue
            elif status in RETRYABLE_STATUS_CODES and attempt < max_retries:
                delay = float(2**attempt)
                logger.warning(
                    "Retryable HTTP %d on %s, retry %d/%d after %.1fs",
                    status,
                    path,
                    attempt + 1,
                    max_retries,
                    delay,
                )
                self._sleep(delay)
                attempt += 1
                continue

            if response.is_error:
                raise self._status_error(method, path, response)
            return response

    def _send_with_fallback(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        prefix = LEGACY_API_PREFIX if self._use_legacy_routes else API_PREFIX
        logger.debug("API request: %s %s%s", method, prefix, path)
        response = self._client.request(method, f"{prefix}{path}", **kwargs)
        if response.status_code == 404 and not self._use_legacy_routes:
            self._use_legacy_routes = True
            self.context.warn_once(
                logger,
                "legacy_api_routes",
                "Endpoint %s%s not found, falling back to legacy %s/* routes",
                API_PREFIX,
                path,
                LEGACY_API_PREFIX,
            )
            response = self._client.request(method, f"{LEGACY_API_PREFIX}{path}", **kwargs)
        return response

    def _wait_for_backoff(self, category: str) -> None:
        until = self._category_backoff_until.get(category, 0.0)
        remaining = until - self._clock()
        if remaining > 0:
            logger.warning("Rate limit backoff active for %s, waiting %.1fs", category, remaining)
            self._sleep(remaining)

    def _status_error(self, method: str, path: str, response: httpx.Response) -> GatewayError:
        message = self._redact(
            f"{method} {path} returned HTTP {response.status_code}: {_preview(response.text)}",
        )
        if response.status_code == 403:
            return GatewayPermissionError(message, status_code=403)
        return GatewayError(message, status_code=response.status_code)

    def _transport_error(self, method: str, path: str, error: httpx.HTTPError) -> GatewayError:
        return GatewayError(self._redact(f"{method} {path} failed: {error}"))

    def _redact(self, text: str) -> str:
        return redact(text, self._token)


def validate_output(output: object, *, max_chars: int = MAX_OUTPUT_CHARS) -> str:
    """Reject null bytes and truncate oversized output."""

    if not isinstance(output, str):
        return ""
    if "\0" in output:
        raise ValueError("Output validation failed: null bytes detected")
    if len(output) > max_chars:
        logger.warning("Output truncated from %d to %d chars", len(output), max_chars)
        return output[:max_chars] + TRUNCATION_MARKER
    return output


def is_valid_branch_name(name: str) -> bool:
    return len(name) <= MAX_BRANCH_NAME_CHARS and _BRANCH_NAME_PATTERN.match(name) is not None


def _failure_payload(error: JobFailure | str, partial_output: str | None) -> dict[str, Any]:
    failure = error if isinstance(error, JobFailure) else JobFailure(error)
    output = partial_output if partial_output is not None else failure.partial_output
    payload: dict[str, Any] = {
        "status": JobStatus.FAILED.value,
        "error": failure.message,
        "error_kind": failure.kind.value,
        "output": validate_output(output.replace("\0", "")) if output else None,
    }
    category = failure.category or _DEFAULT_CATEGORY_BY_KIND[failure.kind]
    if category:
        payload["error_category"] = category
    if failure.technical_details:
        payload["error_details"] = failure.technical_details
    return payload


def _endpoint_category(path: str) -> str:
    if "/progress" in path:
        return "progress"
    if "/events" in path:
        return "events"
    if "/metadata" in path:
        return "metadata"
    return "jobs"


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return min(max(0.0, float(raw)), MAX_RATE_LIMIT_BACKOFF_SECONDS)
    except ValueError:
        return None


def _json_body(response: httpx.Response) -> object:
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def _preview(text: str) -> str:
    compact = text.strip()
    if len(compact) <= MAX_ERROR_BODY_CHARS:
        return compact
    return compact[:MAX_ERROR_BODY_CHARS]
