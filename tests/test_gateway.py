from __future__ import annotations

import json
import threading
from collections.abc import Callable

import allure
import httpx
import pytest

from ralph_agent.agent.errors import GatewayError, GatewayPermissionError
from ralph_agent.agent.failures import JobFailure
from ralph_agent.agent.gateway import (
    MAX_RATE_LIMIT_BACKOFF_SECONDS,
    PROGRESS_BATCH_MAX_ENTRIES,
    TRUNCATION_MARKER,
    JobGateway,
    is_valid_branch_name,
    validate_output,
)
from ralph_agent.agent.models import ExecutionResult, FailureKind, JobType
from ralph_agent.config import Settings
from ralph_agent.context import AgentContext

pytestmark = [
    allure.epic("Coordinator API"),
    allure.feature("Job Gateway"),
]

Handler = Callable[[httpx.Request], httpx.Response]

JOB_PAYLOAD = {
    "success": True,
    "job": {"id": 1, "job_type": "plan_generation", "task_title": "t"},
}


class Recorder:
    """Mock transport handler that records requests and replays scripted responses."""

    def __init__(self, *responses: httpx.Response | Handler) -> None:
        self.requests: list[httpx.Request] = []
        self._responses = list(responses)
        self._seen = threading.Condition()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._seen:
            self.requests.append(request)
            self._seen.notify_all()
        response = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if callable(response) and not isinstance(response, httpx.Response):
            return response(request)
        return response

    def wait_for(self, count: int, timeout: float = 5.0) -> bool:
        with self._seen:
            return self._seen.wait_for(lambda: len(self.requests) >= count, timeout)

    @property
    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]

    def body(self, index: int) -> dict:
        return json.loads(self.requests[index].content)


def _gateway(
    context: AgentContext,
    recorder: Recorder,
    clock,
    progress_interval_seconds: float = 60.0,
) -> tuple[JobGateway, list[float]]:
    """Gateway whose sleeps are recorded and advance the fake clock."""

    sleeps: list[float] = []

    def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock.advance(seconds)

    gateway = JobGateway(
        context=context,
        transport=httpx.MockTransport(recorder),
        sleep=_sleep,
        clock=clock,
        progress_interval_seconds=progress_interval_seconds,
    )
    return gateway, sleeps


def test_gateway_requires_token() -> None:
    with pytest.raises(ValueError, match="API token is required"):
        JobGateway(context=AgentContext(settings=Settings()))


def test_claim_next_long_polls_with_auth_headers(context: AgentContext, clock) -> None:
    recorder = Recorder(httpx.Response(200, json=JOB_PAYLOAD))
    gateway, _ = _gateway(context, recorder, clock)

    job = gateway.claim_next()

    assert job is not None
    assert job.id == 1
    assert job.job_type == JobType.PLAN_GENERATION
    request = recorder.requests[0]
    assert request.method == "GET"
    assert request.url.path == "/api/v1/rb/jobs/next"
    assert request.url.params["timeout"] == "30"
    assert request.headers["Authorization"] == f"Bearer {context.settings.api.token}"
    assert request.headers["X-Agent-ID"] == "agent-test"
    assert request.headers["X-Agent-Version"]
    assert request.extensions["timeout"]["read"] == 35.0


def test_claim_next_returns_none_on_no_content(context: AgentContext, clock) -> None:
    gateway, _ = _gateway(context, Recorder(httpx.Response(204)), clock)

    assert gateway.claim_next() is None


def test_claim_next_returns_none_for_invalid_job(context: AgentContext, clock) -> None:
    recorder = Recorder(
        httpx.Response(200, json={"success": True, "job": {"id": "abc"}}),
    )
    gateway, _ = _gateway(context, recorder, clock)

    assert gateway.claim_next() is None


def test_claim_next_treats_connection_refused_as_no_job(context: AgentContext, clock) -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    gateway, _ = _gateway(context, Recorder(_refuse), clock)

    assert gateway.claim_next() is None


def test_claim_next_treats_read_timeout_as_no_job(context: AgentContext, clock) -> None:
    def _timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    gateway, _ = _gateway(context, Recorder(_timeout), clock)

    assert gateway.claim_next() is None


def test_claim_next_permission_error_is_fatal(context: AgentContext, clock) -> None:
    gateway, _ = _gateway(context, Recorder(httpx.Response(403, text="forbidden")), clock)

    with pytest.raises(GatewayPermissionError):
        gateway.claim_next()


def test_server_errors_are_redacted(context: AgentContext, clock) -> None:
    token = context.settings.api.token
    recorder = Recorder(httpx.Response(500, text=f"token {token} rejected"))
    gateway, _ = _gateway(context, recorder, clock)

    with pytest.raises(GatewayError) as excinfo:
        gateway.claim_next()

    assert token not in str(excinfo.value)
    assert "[REDACTED]" in str(excinfo.value)
    assert excinfo.value.status_code == 500


def test_legacy_route_fallback_sticks(context: AgentContext, clock) -> None:
    def _respond(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/api/v1/rb/"):
            return httpx.Response(404)
        return httpx.Response(204)

    recorder = Recorder(_respond)
    gateway, _ = _gateway(context, recorder, clock)

    assert gateway.claim_next() is None
    assert gateway.claim_next() is None

    assert gateway.using_legacy_routes is True
    assert recorder.paths == [
        "/api/v1/rb/jobs/next",
        "/api/v1/ralph/jobs/next",
        "/api/v1/ralph/jobs/next",
    ]


def test_mark_running_raises_on_failure(context: AgentContext, clock) -> None:
    recorder = Recorder(httpx.Response(500))
    gateway, _ = _gateway(context, recorder, clock)

    with pytest.raises(GatewayError):
        gateway.mark_running(5)
    assert recorder.body(0) == {"status": "running"}


def test_mark_completed_retries_transient_statuses(context: AgentContext, clock) -> None:
    recorder = Recorder(
        httpx.Response(503),
        httpx.Response(502),
        httpx.Response(200, json={"success": True}),
    )
    gateway, sleeps = _gateway(context, recorder, clock)

    gateway.mark_completed(
        1,
        ExecutionResult(
            output="done",
            execution_time_ms=10,
            summary="done",
            branch_name="ralph/ticket-7/job-1",
        ),
    )

    assert sleeps == [1.0, 2.0]
    assert recorder.body(2) == {
        "status": "completed",
        "execution_time_ms": 10,
        "output": "done",
        "summary": "done",
        "branch_name": "ralph/ticket-7/job-1",
    }


def test_mark_completed_gives_up_after_max_retries(context: AgentContext, clock) -> None:
    recorder = Recorder(httpx.Response(503))
    gateway, sleeps = _gateway(context, recorder, clock)

    with pytest.raises(GatewayError):
        gateway.mark_completed(1, ExecutionResult(output="x", execution_time_ms=1))

    assert sleeps == [1.0, 2.0, 4.0]
    assert len(recorder.requests) == 4


def test_mark_completed_omits_invalid_branch_name(context: AgentContext, clock) -> None:
    recorder = Recorder(httpx.Response(200))
    gateway, _ = _gateway(context, recorder, clock)

    gateway.mark_completed(
        1,
        ExecutionResult(output="x", execution_time_ms=1, branch_name="bad branch; rm -rf"),
    )

    assert "branch_name" not in recorder.body(0)


def test_mark_failed_never_raises_and_keeps_category(context: AgentContext, clock) -> None:
    recorder = Recorder(httpx.Response(500))
    gateway, _ = _gateway(context, recorder, clock)
    failure = JobFailure("took too long", kind=FailureKind.TIMEOUT, category="timeout")

    gateway.mark_failed(1, failure, "partial\0 output")

    body = recorder.body(0)
    assert body["status"] == "failed"
    assert body["error"] == "took too long"
    assert body["error_kind"] == "timeout"
    assert body["error_category"] == "timeout"
    assert body["output"] == "partial output"


def test_mark_failed_accepts_plain_message(context: AgentContext, clock) -> None:
    recorder = Recorder(httpx.Response(200))
    gateway, _ = _gateway(context, recorder, clock)

    gateway.mark_failed(2, "Agent shutdown during execution")

    body = recorder.body(0)
    assert body["error"] == "Agent shutdown during execution"
    assert body["error_kind"] == "execution_failure"
    assert body["output"] is None
    assert "error_category" not in body


def test_progress_is_batched_and_flushed_before_completion(context: AgentContext, clock) -> None:
    recorder = Recorder(httpx.Response(200))
    gateway, _ = _gateway(context, recorder, clock)

    gateway.send_progress(1, "line one\n")
    gateway.send_progress(1, "line two\n")
    assert recorder.requests == []

    gateway.mark_completed(1, ExecutionResult(output="x", execution_time_ms=1))

    assert recorder.paths == ["/api/v1/rb/jobs/1/progress_batch", "/api/v1/rb/jobs/1"]
    chunks = [update["chunk"] for update in recorder.body(0)["updates"]]
    assert chunks == ["line one\n", "line two\n"]


def test_progress_batch_is_sent_when_full(context: AgentContext, clock) -> None:
    recorder = Recorder(httpx.Response(200))
    gateway, _ = _gateway(context, recorder, clock)

    for index in range(PROGRESS_BATCH_MAX_ENTRIES):
        gateway.send_progress(1, f"{index}\n")

    assert recorder.wait_for(1)
    assert recorder.paths == ["/api/v1/rb/jobs/1/progress_batch"]
    assert len(recorder.body(0)["updates"]) == PROGRESS_BATCH_MAX_ENTRIES


def test_lone_progress_chunk_is_flushed_on_timer(context: AgentContext, clock) -> None:
    recorder = Recorder(httpx.Response(200))
    gateway, _ = _gateway(context, recorder, clock, progress_interval_seconds=0.05)

    gateway.send_progress(1, "Working on step 1\n")

    assert recorder.wait_for(1)
    assert recorder.paths == ["/api/v1/rb/jobs/1/progress_batch"]
    assert [update["chunk"] for update in recorder.body(0)["updates"]] == ["Working on step 1\n"]


def test_send_progress_returns_while_batch_is_in_flight(context: AgentContext, clock) -> None:
    entered = threading.Event()
    release = threading.Event()

    def _slow(request: httpx.Request) -> httpx.Response:
        entered.set()
        release.wait(timeout=5)
        return httpx.Response(200)

    recorder = Recorder(_slow)
    gateway, _ = _gateway(context, recorder, clock)
    for index in range(PROGRESS_BATCH_MAX_ENTRIES):
        gateway.send_progress(1, f"{index}\n")
    assert entered.wait(timeout=5)

    gateway.send_progress(1, "late\n")
    assert len(recorder.requests) == 1

    release.set()
    gateway.flush_progress(1)

    assert recorder.paths == ["/api/v1/rb/jobs/1/progress_batch"] * 2
    assert [update["chunk"] for update in recorder.body(1)["updates"]] == ["late\n"]


def test_close_flushes_pending_progress(context: AgentContext, clock) -> None:
    recorder = Recorder(httpx.Response(200))
    gateway, _ = _gateway(context, recorder, clock)
    gateway.send_progress(2, "tail\n")

    gateway.close()

    assert recorder.paths == ["/api/v1/rb/jobs/2/progress_batch"]


def test_retry_after_is_capped(context: AgentContext, clock) -> None:
    recorder = Recorder(
        httpx.Response(429, headers={"Retry-After": "3600"}),
        httpx.Response(200),
    )
    gateway, sleeps = _gateway(context, recorder, clock)

    gateway.send_status_event(1, "job_claimed", "claimed")

    assert sleeps == [MAX_RATE_LIMIT_BACKOFF_SECONDS]
    assert len(recorder.requests) == 2


def test_rate_limit_honours_retry_after(context: AgentContext, clock) -> None:
    recorder = Recorder(
        httpx.Response(429, headers={"Retry-After": "3"}),
        httpx.Response(200),
    )
    gateway, sleeps = _gateway(context, recorder, clock)

    gateway.send_status_event(1, "job_claimed", "claimed")
    gateway.send_status_event(1, "heartbeat", "still working")

    assert sleeps == [3.0]
    assert len(recorder.requests) == 3
    assert recorder.body(1) == {"event_type": "job_claimed", "message": "claimed", "metadata": {}}


def test_heartbeat_payload(context: AgentContext, clock) -> None:
    recorder = Recorder(httpx.Response(200))
    gateway, _ = _gateway(context, recorder, clock)

    gateway.send_heartbeat(4)

    assert recorder.requests[0].method == "PATCH"
    assert recorder.body(0) == {"status": "running", "heartbeat": True}


def test_best_effort_calls_swallow_errors(context: AgentContext, clock) -> None:
    recorder = Recorder(httpx.Response(500))
    gateway, _ = _gateway(context, recorder, clock)

    gateway.send_heartbeat(1)
    gateway.send_status_event(1, "heartbeat", "x")
    gateway.update_metadata(1, {"worktree_path": "/tmp/x"})


def test_oversized_metadata_is_not_sent(context: AgentContext, clock) -> None:
    recorder = Recorder(httpx.Response(200))
    gateway, _ = _gateway(context, recorder, clock)

    gateway.update_metadata(1, {"blob": "x" * 20_000})

    assert recorder.requests == []


def test_validate_output_rejects_null_bytes_and_truncates() -> None:
    with pytest.raises(ValueError, match="null bytes"):
        validate_output("a\0b")

    truncated = validate_output("x" * 20, max_chars=10)
    assert truncated == "x" * 10 + TRUNCATION_MARKER
    assert validate_output(None) == ""


@pytest.mark.parametrize(
    ("name", "valid"),
    [
        ("ralph/ticket-7/job-42", True),
        ("feature_branch", True),
        ("-leading-dash", False),
        ("has space", False),
        ("double//slash", False),
        ("x" * 201, False),
    ],
)
def test_branch_name_validation(name: str, valid: bool) -> None:
    assert is_valid_branch_name(name) is valid
