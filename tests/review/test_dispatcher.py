"""
Tests for ReviewDispatcher and finding merging.

A scripted completion client stands in for the API: each request's
behavior is chosen by the first file path in its prompt.
"""

import asyncio
import json

import pytest

from review_forge.errors import CompletionError
from review_forge.policy import ReviewSplitPolicy
from review_forge.review.completion import CompletionResponse, PromptPayload
from review_forge.review.dispatcher import ReviewDispatcher, merge_findings
from review_forge.review.models import (
    ChangeSet,
    DiffPiece,
    FileDiff,
    Finding,
    ReviewRequest,
    Severity,
)


class ScriptedClient:
    """Completion client whose behavior is keyed by file path."""

    def __init__(self, script: dict[str, object], delay: float = 0.0):
        self.script = script
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.calls = 0

    async def complete(self, payload: PromptPayload, timeout: float) -> CompletionResponse:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            path = next(p for p in self.script if f"=== {p}" in payload.prompt)
            behavior = self.script[path]
            if behavior == "hang":
                await asyncio.sleep(10)
            if isinstance(behavior, BaseException):
                raise behavior
            return CompletionResponse(
                text=json.dumps(behavior), input_tokens=100, output_tokens=20
            )
        finally:
            self.active -= 1


def request_for(index: int, path: str) -> ReviewRequest:
    return ReviewRequest(index=index, pieces=[DiffPiece(path, f"+change in {path}", 5)])


@pytest.fixture
def change_set(repository) -> ChangeSet:
    return ChangeSet(
        repository,
        42,
        "feature",
        "main",
        [FileDiff(path=p, lines_added=4, lines_deleted=1) for p in ("a.py", "b.py", "c.py")],
    )


def review(path: str, line: int, content: str, severity: str = "warning") -> dict:
    return {
        "comments": [
            {"content": content, "filePath": path, "lineNumber": line, "severity": severity}
        ],
        "summary": f"Reviewed {path}.",
    }


# =============================================================================
# UNIT TESTS: ReviewDispatcher.dispatch()
# =============================================================================


class TestDispatch:
    @pytest.mark.asyncio
    async def test_single_request_keeps_its_summary(self, change_set):
        client = ScriptedClient({"a.py": review("a.py", 3, "Unused import")})
        dispatcher = ReviewDispatcher(client)

        outcome = await dispatcher.dispatch(
            [request_for(0, "a.py")], ReviewSplitPolicy(), change_set, "key"
        )

        assert outcome.is_successful is True
        assert [f.content for f in outcome.findings] == ["Unused import", "Reviewed a.py."]
        assert outcome.findings[-1].is_summary is True
        assert outcome.trigger_key == "key"
        assert outcome.pull_request_id == 42
        assert outcome.metadata.files_analyzed == 1
        assert outcome.metadata.lines_analyzed == 5
        assert outcome.metadata.tokens_used == 120

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_siblings(self, change_set):
        client = ScriptedClient(
            {
                "a.py": review("a.py", 1, "Missing null check", "error"),
                "b.py": CompletionError("Completion API returned 500: boom"),
                "c.py": "hang",
            }
        )
        policy = ReviewSplitPolicy(request_timeout_seconds=0.1)

        outcome = await ReviewDispatcher(client).dispatch(
            [request_for(i, p) for i, p in enumerate(("a.py", "b.py", "c.py"))],
            policy,
            change_set,
            "key",
        )

        assert outcome.is_successful is True
        assert outcome.metadata.requests_issued == 3
        assert outcome.metadata.requests_failed == 2
        assert outcome.metadata.tokens_used == 120
        by_index = {r.index: r for r in outcome.request_results}
        assert by_index[0].success is True
        assert "500" in by_index[1].error
        assert by_index[2].timed_out is True

        line_findings = [f for f in outcome.findings if not f.is_summary]
        assert [f.content for f in line_findings] == ["Missing null check"]
        [summary] = [f for f in outcome.findings if f.is_summary]
        assert "Reviewed in 3 requests (2 failed and were skipped)." in summary.content
        assert "1 error" in summary.content
        assert summary.severity == Severity.ERROR

    @pytest.mark.asyncio
    async def test_all_requests_failed(self, change_set):
        client = ScriptedClient(
            {"a.py": CompletionError("down"), "b.py": RuntimeError("socket closed")}
        )

        outcome = await ReviewDispatcher(client).dispatch(
            [request_for(0, "a.py"), request_for(1, "b.py")],
            ReviewSplitPolicy(),
            change_set,
            "key",
        )

        assert outcome.is_successful is False
        assert outcome.findings == []
        assert outcome.error_message.startswith("All review requests failed")
        assert "request 2: RuntimeError: socket closed" in outcome.error_message

    @pytest.mark.asyncio
    async def test_summary_disabled_when_split(self, change_set):
        client = ScriptedClient(
            {"a.py": review("a.py", 1, "One"), "b.py": review("b.py", 1, "Two")}
        )

        outcome = await ReviewDispatcher(client).dispatch(
            [request_for(0, "a.py"), request_for(1, "b.py")],
            ReviewSplitPolicy(include_summary_when_split=False),
            change_set,
            "key",
        )

        assert not any(f.is_summary for f in outcome.findings)

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, change_set):
        paths = [f"f{i}.py" for i in range(6)]
        client = ScriptedClient({p: {"comments": []} for p in paths}, delay=0.02)

        outcome = await ReviewDispatcher(client).dispatch(
            [request_for(i, p) for i, p in enumerate(paths)],
            ReviewSplitPolicy(max_concurrent_requests=2),
            change_set,
            "key",
        )

        assert client.calls == 6
        assert client.max_active == 2
        assert outcome.metadata.requests_failed == 0

    @pytest.mark.asyncio
    async def test_no_requests_is_empty_success(self, change_set):
        client = ScriptedClient({})

        outcome = await ReviewDispatcher(client).dispatch([], ReviewSplitPolicy(), change_set, "key")

        assert outcome.is_successful is True
        assert outcome.findings == []
        assert client.calls == 0


class BlockingClient:
    """Completion client that never answers; records how its calls end."""

    def __init__(self) -> None:
        self.started = 0
        self.cancelled = 0

    async def complete(self, payload: PromptPayload, timeout: float) -> CompletionResponse:
        self.started += 1
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        raise AssertionError("unreachable")


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelling_the_run_cancels_inflight_requests(self, change_set):
        client = BlockingClient()
        dispatcher = ReviewDispatcher(client)
        requests = [request_for(i, p) for i, p in enumerate(("a.py", "b.py", "c.py"))]
        policy = ReviewSplitPolicy(max_concurrent_requests=3, request_timeout_seconds=60)

        run = asyncio.create_task(dispatcher.dispatch(requests, policy, change_set, "key"))
        while client.started < 3:
            await asyncio.sleep(0)
        run.cancel()

        with pytest.raises(asyncio.CancelledError):
            await run
        assert client.cancelled == 3

    @pytest.mark.asyncio
    async def test_queued_requests_never_start_after_cancel(self, change_set):
        client = BlockingClient()
        dispatcher = ReviewDispatcher(client)
        requests = [request_for(i, p) for i, p in enumerate(("a.py", "b.py", "c.py"))]
        policy = ReviewSplitPolicy(max_concurrent_requests=1, request_timeout_seconds=60)

        run = asyncio.create_task(dispatcher.dispatch(requests, policy, change_set, "key"))
        while client.started < 1:
            await asyncio.sleep(0)
        run.cancel()

        with pytest.raises(asyncio.CancelledError):
            await run
        assert (client.started, client.cancelled) == (1, 1)

    @pytest.mark.asyncio
    async def test_cancellation_is_not_recorded_as_failed_request(self, change_set):
        client = ScriptedClient({"a.py": asyncio.CancelledError()})

        with pytest.raises(asyncio.CancelledError):
            await ReviewDispatcher(client).dispatch(
                [request_for(0, "a.py")], ReviewSplitPolicy(), change_set, "key"
            )


# =============================================================================
# UNIT TESTS: merge_findings()
# =============================================================================


class TestMergeFindings:
    def test_near_duplicates_keep_most_severe(self):
        findings = [
            Finding("Possible SQL injection here.", Severity.WARNING, file_path="db.py", line_number=4),
            Finding("possible SQL injection here", Severity.CRITICAL, file_path="db.py", line_number=4),
        ]

        [kept] = merge_findings(findings)

        assert kept.severity == Severity.CRITICAL

    def test_same_text_on_other_lines_kept(self):
        findings = [
            Finding("Magic number", file_path="a.py", line_number=1),
            Finding("Magic number", file_path="a.py", line_number=9),
            Finding("Magic number", file_path="b.py", line_number=1),
        ]

        assert len(merge_findings(findings)) == 3

    def test_different_text_kept(self):
        findings = [
            Finding("Variable is never used", file_path="a.py", line_number=1),
            Finding("Function lacks a docstring", file_path="a.py", line_number=1),
        ]

        assert len(merge_findings(findings)) == 2

    def test_order_by_location_then_severity(self):
        findings = [
            Finding("General remark"),
            Finding("Late", Severity.INFO, file_path="b.py", line_number=2),
            Finding("Typo in comment", Severity.INFO, file_path="a.py", line_number=5),
            Finding("Null dereference", Severity.ERROR, file_path="a.py", line_number=5),
        ]

        merged = merge_findings(findings)

        assert [f.content for f in merged] == ["Null dereference", "Typo in comment", "Late", "General remark"]
