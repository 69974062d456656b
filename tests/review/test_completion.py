"""
Tests for prompt building, findings parsing and the Anthropic client.
"""

import json

import httpx
import pytest

from review_forge.context.models import FileContext
from review_forge.errors import CompletionError
from review_forge.review.completion import (
    AnthropicCompletionClient,
    PromptPayload,
    build_prompt,
    parse_findings,
)
from review_forge.review.models import Category, DiffPiece, ReviewRequest, Severity


# =============================================================================
# UNIT TESTS: parse_findings()
# =============================================================================


class TestParseFindings:
    def test_json_comments(self):
        text = json.dumps(
            {
                "comments": [
                    {
                        "content": "SQL built from user input",
                        "filePath": "/src/db.py",
                        "lineNumber": 12,
                        "severity": "Critical",
                        "category": "Security",
                        "confidence": 0.9,
                    },
                    {
                        "content": "Name is unclear",
                        "severity": "warning",
                        "category": "CodeQuality",
                    },
                ],
                "summary": "Mostly fine.",
            }
        )

        findings, summary = parse_findings(text, request_index=2)

        assert summary == "Mostly fine."
        first, second = findings
        assert first.file_path == "src/db.py"
        assert first.line_number == 12
        assert first.severity == Severity.CRITICAL
        assert first.category == Category.SECURITY
        assert first.confidence == 0.9
        assert first.request_index == 2
        assert second.file_path is None
        assert second.category == Category.CODE_QUALITY

    def test_json_wrapped_in_prose(self):
        text = 'Here is my review:\n```json\n{"comments": [{"content": "Fix it"}]}\n```'

        findings, summary = parse_findings(text)

        assert [f.content for f in findings] == ["Fix it"]
        assert summary is None

    def test_unknown_values_fall_back(self):
        text = json.dumps(
            {
                "comments": [
                    {
                        "content": "Odd",
                        "severity": "blocker",
                        "category": "style",
                        "lineNumber": -3,
                        "confidence": 7,
                    }
                ]
            }
        )

        [finding], _ = parse_findings(text)

        assert finding.severity == Severity.INFO
        assert finding.category == Category.GENERAL
        assert finding.line_number is None
        assert finding.confidence is None

    def test_empty_comments_skipped(self):
        text = json.dumps({"comments": [{"content": "  "}, "not a dict", {"content": "Real"}]})

        findings, _ = parse_findings(text)

        assert [f.content for f in findings] == ["Real"]

    def test_non_json_becomes_single_finding(self):
        findings, summary = parse_findings("  The change looks risky.  ")

        assert len(findings) == 1
        assert findings[0].content == "The change looks risky."
        assert findings[0].category == Category.GENERAL
        assert summary is None

    def test_blank_text_gives_nothing(self):
        assert parse_findings("   ") == ([], None)


# =============================================================================
# UNIT TESTS: build_prompt()
# =============================================================================


class TestBuildPrompt:
    def test_prompt_sections(self, make_unit):
        request = ReviewRequest(
            index=1,
            pieces=[
                DiffPiece("src/app.py", "+print('hi')", 5, part=2, parts=3),
                DiffPiece("src/util.py", "+x = 1", 4, truncated=True),
            ],
            context_units=[make_unit("src/lib.py", 3, 8, content="def helper(): ...")],
            context_files=[FileContext(path="README.md", content="# Service", token_count=3)],
        )

        payload = build_prompt(request, total_requests=3, max_tokens=1000, focus="security")

        assert isinstance(payload, PromptPayload)
        assert payload.max_tokens == 1000
        assert "Review request 2 of 3." in payload.prompt
        assert "Files in this request: src/app.py, src/util.py" in payload.prompt
        assert "Focus especially on: security" in payload.prompt
        assert "--- README.md (whole file)" in payload.prompt
        assert "def helper(): ..." in payload.prompt
        assert "=== src/app.py (part 2/3)" in payload.prompt
        assert "=== src/util.py (truncated to fit)" in payload.prompt
        # Context comes before the diff
        assert payload.prompt.index("Related code") < payload.prompt.index("Changes to review")

    def test_no_context_section_without_context(self):
        request = ReviewRequest(index=0, pieces=[DiffPiece("a.py", "+a", 2)])

        payload = build_prompt(request, total_requests=1)

        assert "Related code" not in payload.prompt
        assert "Focus especially" not in payload.prompt


# =============================================================================
# UNIT TESTS: AnthropicCompletionClient
# =============================================================================


def client_for(handler) -> AnthropicCompletionClient:
    return AnthropicCompletionClient(
        api_key="test-key",
        model="claude-test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestAnthropicCompletionClient:
    @pytest.mark.asyncio
    async def test_successful_completion(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers["x-api-key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "model": "claude-test",
                    "content": [{"type": "text", "text": '{"comments": []}'}],
                    "usage": {"input_tokens": 120, "output_tokens": 30},
                },
            )

        client = client_for(handler)
        response = await client.complete(PromptPayload(system="sys", prompt="diff"), timeout=5)
        await client.aclose()

        assert response.text == '{"comments": []}'
        assert (response.input_tokens, response.output_tokens) == (120, 30)
        assert seen["url"] == "https://api.anthropic.com/v1/messages"
        assert seen["key"] == "test-key"
        assert seen["body"]["system"] == "sys"
        assert seen["body"]["messages"] == [{"role": "user", "content": "diff"}]

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        client = client_for(lambda request: httpx.Response(429, text="rate limited"))

        with pytest.raises(CompletionError, match="429"):
            await client.complete(PromptPayload(system="s", prompt="p"), timeout=5)

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = client_for(handler)

        with pytest.raises(CompletionError, match="call failed"):
            await client.complete(PromptPayload(system="s", prompt="p"), timeout=5)

    @pytest.mark.asyncio
    async def test_empty_content_raises(self):
        client = client_for(lambda request: httpx.Response(200, json={"content": []}))

        with pytest.raises(CompletionError, match="no text"):
            await client.complete(PromptPayload(system="s", prompt="p"), timeout=5)
