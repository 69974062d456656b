"""
Comment Reconciler

Publishes an AnalysisOutcome as annotations so that re-running a review for
the same trigger converges to a single active annotation set.
"""

import asyncio
from collections import defaultdict

import structlog

from review_forge.errors import CommentHostError
from review_forge.policy import CommentPolicy

from .comments import CommentHost
from .models import AnalysisOutcome, Finding, FormattedComment, PostingSummary, TriggerTag

logger = structlog.get_logger(__name__)

SEVERITY_LABELS = {
    "info": "ℹ️ Info",
    "warning": "⚠️ Warning",
    "error": "❌ Error",
    "critical": "🚨 Critical",
}


class CommentReconciler:
    """Delete superseded annotations, then post the new set under policy."""

    def __init__(self, host: CommentHost, bot_identity: str, post_delay: float = 0.0):
        """
        Initialize the reconciler.

        Args:
            host: Comment-posting API
            bot_identity: Identity annotations are posted as
            post_delay: Pause between posts, to stay under host rate limits
        """
        self.host = host
        self.bot_identity = bot_identity
        self.post_delay = post_delay

    def tag_for(self, outcome: AnalysisOutcome) -> TriggerTag:
        return TriggerTag(
            repository=outcome.repository,
            pull_request_id=outcome.pull_request_id,
            trigger_key=outcome.trigger_key,
            bot_identity=self.bot_identity,
        )

    async def reconcile(self, outcome: AnalysisOutcome, policy: CommentPolicy) -> PostingSummary:
        """
        Replace the trigger's active annotations with this outcome's findings.

        Steps:
        1. Delete existing annotations with the same trigger tag (failures are
           logged and counted, never fatal)
        2. Filter and format findings per comment policy
        3. Post the comments one at a time and count successes and failures

        An unsuccessful outcome posts nothing and leaves existing annotations.
        """
        summary = PostingSummary(request_id=outcome.request_id)
        if not outcome.is_successful:
            summary.skipped_reason = outcome.error_message or "Analysis was not successful"
            logger.info(
                "Skipping comment posting", request_id=outcome.request_id, reason=summary.skipped_reason
            )
            return summary

        tag = self.tag_for(outcome)

        try:
            existing = await self.host.list_existing(tag)
        except CommentHostError as e:
            existing = []
            summary.errors.append(f"list: {e}")
            logger.warning("Could not list existing comments", trigger=tag.trigger_key, error=str(e))

        for comment_id in existing:
            try:
                await self.host.delete(comment_id)
                summary.deleted += 1
            except CommentHostError as e:
                summary.delete_failures += 1
                summary.errors.append(f"delete {comment_id}: {e}")
                logger.warning("Could not delete comment", comment_id=comment_id, error=str(e))

        comments, summary.suppressed, summary.capped = self.format(outcome, policy, tag)

        for position, comment in enumerate(comments):
            if position and self.post_delay:
                await asyncio.sleep(self.post_delay)
            try:
                summary.posted_ids.append(await self.host.post(comment))
                summary.posted += 1
            except CommentHostError as e:
                summary.post_failures += 1
                summary.errors.append(f"post: {e}")
                logger.warning(
                    "Could not post comment",
                    file=comment.file_path,
                    line=comment.line_number,
                    error=str(e),
                )

        logger.info(
            "Comments reconciled",
            request_id=outcome.request_id,
            trigger=tag.trigger_key,
            deleted=summary.deleted,
            posted=summary.posted,
            failures=summary.delete_failures + summary.post_failures,
        )
        return summary

    def format(
        self, outcome: AnalysisOutcome, policy: CommentPolicy, tag: TriggerTag | None = None
    ) -> tuple[list[FormattedComment], int, int]:
        """
        Apply comment policy to the outcome's findings.

        Returns:
            Tuple of (comments in posting order, suppressed count, capped count)
        """
        tag = tag or self.tag_for(outcome)
        suppressed = 0
        summaries: list[Finding] = []
        by_file: dict[str | None, list[Finding]] = defaultdict(list)

        for finding in outcome.findings:
            if finding.is_summary:
                if policy.enable_summary_comment:
                    summaries.append(finding)
                else:
                    suppressed += 1
                continue
            if not policy.enable_line_comments or finding.severity.rank < policy.min_severity.rank:
                suppressed += 1
                continue
            by_file[finding.file_path].append(finding)

        capped = 0
        kept: list[Finding] = []
        for file_path in sorted(by_file, key=lambda p: (p is None, p or "")):
            findings = sorted(
                by_file[file_path], key=lambda f: (-f.severity.rank, f.line_number or 0)
            )
            if file_path is not None and len(findings) > policy.max_comments_per_file:
                capped += len(findings) - policy.max_comments_per_file
                findings = findings[: policy.max_comments_per_file]
            kept.extend(findings)

        comments = [
            FormattedComment(
                content=self._format_summary(f, outcome, policy),
                tag=tag,
                request_id=outcome.request_id,
                severity=f.severity,
                category=f.category,
                is_summary=True,
            )
            for f in summaries
        ]
        comments.extend(
            FormattedComment(
                content=self._format_finding(f, outcome, policy),
                tag=tag,
                request_id=outcome.request_id,
                severity=f.severity,
                category=f.category,
                file_path=f.file_path,
                line_number=f.line_number,
            )
            for f in kept
        )
        return comments, suppressed, capped

    def _format_finding(self, finding: Finding, outcome: AnalysisOutcome, policy: CommentPolicy) -> str:
        category = finding.category.value.replace("_", " ").title()
        lines = [
            f"**{policy.comment_prefix}** · {SEVERITY_LABELS[finding.severity.value]} · {category}",
            "",
            finding.content,
        ]
        if finding.suggestion:
            lines.extend(["", f"**Suggestion:** {finding.suggestion}"])
        if policy.include_confidence_score and finding.confidence is not None:
            lines.extend(["", f"_Confidence: {finding.confidence:.0%}_"])
        lines.extend(["", self._footer(outcome)])
        return "\n".join(lines)

    def _format_summary(self, finding: Finding, outcome: AnalysisOutcome, policy: CommentPolicy) -> str:
        meta = outcome.metadata
        return "\n".join(
            [
                f"## {policy.comment_prefix} Summary",
                "",
                finding.content,
                "",
                f"Files analyzed: {meta.files_analyzed} · Lines analyzed: {meta.lines_analyzed}"
                f" · Requests: {meta.requests_issued}",
                "",
                self._footer(outcome),
            ]
        )

    @staticmethod
    def _footer(outcome: AnalysisOutcome) -> str:
        return f"<sub>Generated by AI Code Review · Request ID: `{outcome.request_id}`</sub>"
