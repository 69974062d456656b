"""
Completion API client and review prompt handling.

Builds the review prompt for one packed request, calls the completion API
once (no retry), and parses the JSON findings it returns.
"""

import json
import re
from dataclasses import dataclass
from typing import Protocol

import httpx
import structlog

from review_forge.errors import CompletionError

from .models import Category, Finding, ReviewRequest, Severity

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You are an experienced software engineer reviewing a pull request. "
    "Report concrete problems in the changed code: bugs, security issues, "
    "performance problems, missing tests and maintainability concerns. "
    "Only comment on the diff; use the context to understand it."
)


@dataclass
class PromptPayload:
    """Logical request sent to the completion API."""

    system: str
    prompt: str
    max_tokens: int = 4000


@dataclass
class CompletionResponse:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""


class CompletionClient(Protocol):
    """Protocol for language-model completion providers."""

    async def complete(self, payload: PromptPayload, timeout: float) -> CompletionResponse:
        """Run one completion.

        Args:
            payload: System and user prompt
            timeout: Seconds before the call is abandoned

        Returns:
            The completion text and token usage

        Raises:
            CompletionError: if the API call fails
        """
        ...


class AnthropicCompletionClient:
    """Completion client for the Anthropic Messages API."""

    API_VERSION = "2023-06-01"

    def __init__(
        self,
        api_key: str,
        model: str = "claude-3-haiku-20240307",
        base_url: str = "https://api.anthropic.com",
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient()

    async def complete(self, payload: PromptPayload, timeout: float) -> CompletionResponse:
        try:
            response = await self._client.post(
                f"{self.base_url}/v1/messages",
                headers={
                    "x-api-key": self.api_key,
                    "anthropic-version": self.API_VERSION,
                    "content-type": "application/json",
                },
                json={
                    "model": self.model,
                    "max_tokens": payload.max_tokens,
                    "system": payload.system,
                    "messages": [{"role": "user", "content": payload.prompt}],
                },
                timeout=timeout,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise CompletionError(
                f"Completion API returned {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise CompletionError(f"Completion API call failed: {e}") from e

        blocks = body.get("content") or []
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        if not text:
            raise CompletionError("Completion API returned no text content")
        usage = body.get("usage") or {}
        return CompletionResponse(
            text=text,
            input_tokens=int(usage.get("input_tokens", 0)),
            output_tokens=int(usage.get("output_tokens", 0)),
            model=body.get("model", self.model),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def build_prompt(
    request: ReviewRequest,
    total_requests: int,
    max_tokens: int = 4000,
    focus: str | None = None,
) -> PromptPayload:
    """Build the review prompt for one packed request."""
    parts = [
        f"Review request {request.index + 1} of {total_requests}.",
        f"Files in this request: {', '.join(request.file_paths)}",
        "",
    ]
    if focus:
        parts.extend([f"Focus especially on: {focus}", ""])

    if request.context_units or request.context_files:
        parts.append("Related code for context (do not review):")
        for file in request.context_files:
            parts.extend([f"--- {file.path} (whole file)", file.content])
        for unit in request.context_units:
            parts.extend([f"--- {unit.location}", unit.content])
        parts.append("")

    parts.append("Changes to review:")
    for piece in request.pieces:
        label = piece.file_path
        if piece.parts > 1:
            label += f" (part {piece.part}/{piece.parts})"
        if piece.truncated:
            label += " (truncated to fit)"
        parts.extend([f"=== {label}", piece.text])

    parts.extend([
        "",
        "Respond with JSON only, in this format:",
        "{",
        '  "comments": [',
        "    {",
        '      "content": "What is wrong and how to fix it",',
        '      "filePath": "path/of/file",',
        '      "lineNumber": 42,',
        '      "severity": "Info|Warning|Error|Critical",',
        '      "category": "General|CodeQuality|Security|Performance|Documentation|Testing|BestPractices",',
        '      "confidence": 0.8',
        "    }",
        "  ],",
        '  "summary": "One or two sentences about this change"',
        "}",
    ])
    return PromptPayload(system=SYSTEM_PROMPT, prompt="\n".join(parts), max_tokens=max_tokens)


def parse_findings(text: str, request_index: int | None = None) -> tuple[list[Finding], str | None]:
    """
    Parse the completion text into findings.

    Text that is not the expected JSON becomes a single general finding
    carrying the raw response.

    Returns:
        Tuple of (findings, summary)
    """
    document = _extract_json(text)
    if document is None or not isinstance(document.get("comments", []), list):
        logger.debug("Completion response was not JSON; keeping it as one comment")
        content = text.strip()
        if not content:
            return [], None
        return [Finding(content=content, request_index=request_index)], None

    findings: list[Finding] = []
    for item in document.get("comments", []):
        if not isinstance(item, dict) or not str(item.get("content", "")).strip():
            continue
        file_path = item.get("filePath") or None
        line = item.get("lineNumber")
        findings.append(
            Finding(
                content=str(item["content"]).strip(),
                severity=_severity(item.get("severity")),
                category=_category(item.get("category")),
                file_path=file_path.lstrip("/") if isinstance(file_path, str) else None,
                line_number=line if isinstance(line, int) and line > 0 else None,
                suggestion=item.get("suggestion"),
                confidence=_confidence(item.get("confidence")),
                request_index=request_index,
            )
        )
    summary = document.get("summary")
    return findings, summary if isinstance(summary, str) and summary.strip() else None


def _extract_json(text: str) -> dict | None:
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        document = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return document if isinstance(document, dict) else None


def _severity(value: object) -> Severity:
    try:
        return Severity(str(value).strip().lower())
    except ValueError:
        return Severity.INFO


_CATEGORIES = {re.sub(r"[^a-z]", "", c.value): c for c in Category}


def _category(value: object) -> Category:
    return _CATEGORIES.get(re.sub(r"[^a-z]", "", str(value).lower()), Category.GENERAL)


def _confidence(value: object) -> float | None:
    if isinstance(value, (int, float)) and 0 <= value <= 1:
        return float(value)
    return None
