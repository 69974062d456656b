"""
Review Dispatcher

Runs packed review requests against the completion API with bounded
concurrency and per-request timeouts, then merges the findings into one
AnalysisOutcome. A failed or timed-out request is recorded and left out of
the merge; it never aborts its siblings.
"""

import asyncio
import re
import time
import uuid
from collections import Counter
from difflib import SequenceMatcher

import structlog

from review_forge.errors import CompletionError
from review_forge.policy import ReviewSplitPolicy

from .completion import CompletionClient, build_prompt, parse_findings
from .models import (
    AnalysisOutcome,
    Category,
    ChangeSet,
    Finding,
    OutcomeMetadata,
    RequestResult,
    ReviewRequest,
    Severity,
)
from .usage import RunUsage

logger = structlog.get_logger(__name__)

SIMILARITY_THRESHOLD = 0.85


class ReviewDispatcher:
    """Dispatch review requests and merge their results."""

    def __init__(
        self,
        client: CompletionClient,
        model: str = "claude-3-haiku-20240307",
        max_output_tokens: int = 4000,
    ):
        """
        Initialize the dispatcher.

        Args:
            client: Completion API client
            model: Model name, used for cost estimates
            max_output_tokens: Output token limit per request
        """
        self.client = client
        self.model = model
        self.max_output_tokens = max_output_tokens

    async def dispatch(
        self,
        requests: list[ReviewRequest],
        policy: ReviewSplitPolicy,
        change_set: ChangeSet,
        trigger_key: str,
        focus: str | None = None,
    ) -> AnalysisOutcome:
        """
        Run every request and merge the results.

        Args:
            requests: Packed requests from the splitter
            policy: Concurrency, timeout and summary settings
            change_set: The change set under review
            trigger_key: Identity of the logical trigger
            focus: Optional review focus from the trigger command

        Returns:
            AnalysisOutcome, successful when at least one request succeeded
        """
        request_id = uuid.uuid4().hex
        started = time.perf_counter()
        semaphore = asyncio.Semaphore(policy.max_concurrent_requests)

        async def run_with_semaphore(request: ReviewRequest) -> RequestResult:
            async with semaphore:
                return await self._run_request(
                    request, len(requests), policy.request_timeout_seconds, focus
                )

        results: list[RequestResult] = list(
            await asyncio.gather(*(run_with_semaphore(r) for r in requests))
        )

        usage = RunUsage(model=self.model)
        findings: list[Finding] = []
        for result in results:
            if result.success:
                usage.record(result.input_tokens, result.output_tokens)
                findings.extend(result.findings)

        succeeded = [r for r in results if r.success]
        failed = [r for r in results if not r.success]
        merged = merge_findings(findings)

        if len(requests) > 1 and policy.include_summary_when_split and succeeded:
            merged.append(self._summary_finding(merged, results))
        elif len(requests) == 1 and succeeded and succeeded[0].summary:
            merged.append(
                Finding(content=succeeded[0].summary, is_summary=True, request_index=0)
            )

        analyzed = {p for r in requests for p in r.file_paths}
        metadata = OutcomeMetadata(
            files_analyzed=len(analyzed),
            lines_analyzed=sum(
                f.total_lines_changed for f in change_set.files if f.path in analyzed
            ),
            tokens_used=usage.total_tokens,
            processing_ms=int((time.perf_counter() - started) * 1000),
            model=self.model,
            requests_issued=len(requests),
            requests_failed=len(failed),
            estimated_cost_cents=usage.estimated_cost_cents,
        )

        is_successful = bool(succeeded) or not requests
        error_message = None
        if not is_successful:
            error_message = "All review requests failed: " + "; ".join(
                f"request {r.index + 1}: {r.error}" for r in failed
            )

        logger.info(
            "Review dispatched",
            request_id=request_id,
            trigger=trigger_key,
            requests=len(requests),
            failed=len(failed),
            findings=len(merged),
            tokens=usage.total_tokens,
        )
        return AnalysisOutcome(
            request_id=request_id,
            trigger_key=trigger_key,
            repository=change_set.repository,
            pull_request_id=change_set.pull_request_id,
            is_successful=is_successful,
            findings=merged if is_successful else [],
            metadata=metadata,
            error_message=error_message,
            request_results=results,
        )

    async def _run_request(
        self,
        request: ReviewRequest,
        total: int,
        timeout: float,
        focus: str | None,
    ) -> RequestResult:
        """One completion attempt; errors and timeouts become a failed result."""
        payload = build_prompt(request, total, self.max_output_tokens, focus)
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self.client.complete(payload, timeout), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Review request timed out", request=request.index, timeout=timeout)
            return RequestResult(
                index=request.index,
                success=False,
                error=f"Timed out after {timeout:g}s",
                timed_out=True,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
        except CompletionError as e:
            logger.warning("Review request failed", request=request.index, error=str(e))
            return RequestResult(
                index=request.index,
                success=False,
                error=str(e),
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
        except Exception as e:
            logger.error(
                "Review request raised", request=request.index, error=str(e), exc_info=True
            )
            return RequestResult(
                index=request.index,
                success=False,
                error=f"{type(e).__name__}: {e}",
                duration_ms=int((time.perf_counter() - started) * 1000),
            )

        findings, summary = parse_findings(response.text, request.index)
        return RequestResult(
            index=request.index,
            success=True,
            findings=findings,
            summary=summary,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    def _summary_finding(self, findings: list[Finding], results: list[RequestResult]) -> Finding:
        """Overall summary across split requests."""
        counts = Counter(f.severity for f in findings)
        failed = sum(1 for r in results if not r.success)
        parts = [f"Reviewed in {len(results)} requests"]
        if failed:
            parts[0] += f" ({failed} failed and were skipped)"
        parts[0] += "."
        if findings:
            breakdown = ", ".join(
                f"{counts[s]} {s.value}" for s in sorted(counts, key=lambda s: -s.rank)
            )
            parts.append(f"Found {len(findings)} issue(s): {breakdown}.")
        else:
            parts.append("No significant issues found.")
        parts.extend(r.summary for r in results if r.success and r.summary)
        return Finding(
            content="\n\n".join(parts),
            severity=max((f.severity for f in findings), key=lambda s: s.rank, default=Severity.INFO),
            category=Category.GENERAL,
            is_summary=True,
        )


def merge_findings(findings: list[Finding], threshold: float = SIMILARITY_THRESHOLD) -> list[Finding]:
    """
    Drop duplicate findings.

    Two findings are duplicates when they share file path and line number
    and their normalized text is at least ``threshold`` similar. The more
    severe copy is kept.
    """
    kept: list[Finding] = []
    normalized: list[str] = []
    for finding in sorted(findings, key=lambda f: -f.severity.rank):
        text = _normalize(finding.content)
        duplicate = any(
            other.file_path == finding.file_path
            and other.line_number == finding.line_number
            and SequenceMatcher(None, other_text, text).ratio() >= threshold
            for other, other_text in zip(kept, normalized)
        )
        if not duplicate:
            kept.append(finding)
            normalized.append(text)

    kept.sort(
        key=lambda f: (
            f.file_path is None,
            f.file_path or "",
            f.line_number or 0,
            -f.severity.rank,
        )
    )
    return kept


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^\w\s]", "", text.lower())).strip()
