"""
Source host adapters.

Parses unified diff output into FileDiffs and reads change sets and file
content from a local git checkout of the pull request's repository.
"""

import asyncio
import re
from pathlib import Path
from typing import Protocol

import structlog

from review_forge.errors import SourceHostError

from .models import (
    ChangeSet,
    DiffHunk,
    FileDiff,
    RepositoryRef,
    check_ref,
    check_repository_name,
)
from .triggers import TriggerContext

logger = structlog.get_logger(__name__)


class SourceHost(Protocol):
    """Protocol for the version-control host supplying change sets."""

    def checkout_path(self, repository: RepositoryRef) -> str:
        """Local path used for direct search over the repository."""
        ...

    async def get_change_set(self, trigger: TriggerContext) -> ChangeSet:
        """Changed files and hunks for the triggering pull request.

        Raises:
            SourceHostError: if the diff cannot be produced
        """
        ...

    async def read_files(self, trigger: TriggerContext, paths: list[str]) -> dict[str, str]:
        """New-side content of the given files; unreadable files are omitted."""
        ...


class UnifiedDiffParser:
    """Parse ``git diff`` output into structured FileDiffs."""

    FILE_HEADER = re.compile(r"^diff --git a/(.+) b/(.+)$")
    HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@(.*)$")
    RENAME_FROM = re.compile(r"^rename from (.+)$")
    NEW_FILE = re.compile(r"^new file mode")
    DELETED_FILE = re.compile(r"^deleted file mode")
    BINARY_FILE = re.compile(r"^Binary files")

    def parse(self, diff_output: str) -> list[FileDiff]:
        """Parse full diff output, one FileDiff per file header."""
        files: list[FileDiff] = []
        current: FileDiff | None = None
        hunk: DiffHunk | None = None
        hunk_lines: list[str] = []

        def close_hunk() -> None:
            nonlocal hunk, hunk_lines
            if current is not None and hunk is not None:
                hunk.content = "\n".join(hunk_lines)
                current.hunks.append(hunk)
            hunk, hunk_lines = None, []

        for line in diff_output.splitlines():
            header = self.FILE_HEADER.match(line)
            if header:
                close_hunk()
                old_path, new_path = header.groups()
                current = FileDiff(
                    path=new_path,
                    old_path=old_path if old_path != new_path else None,
                    raw_diff=line + "\n",
                )
                files.append(current)
                continue
            if current is None:
                continue

            current.raw_diff += line + "\n"

            if hunk is None:
                if self.NEW_FILE.match(line):
                    current.status = "added"
                elif self.DELETED_FILE.match(line):
                    current.status = "deleted"
                elif self.BINARY_FILE.match(line):
                    current.is_binary = True
                elif rename := self.RENAME_FROM.match(line):
                    current.status = "renamed"
                    current.old_path = rename.group(1)

            hunk_header = self.HUNK_HEADER.match(line)
            if hunk_header:
                close_hunk()
                hunk = DiffHunk(
                    old_start=int(hunk_header.group(1)),
                    old_count=int(hunk_header.group(2) or "1"),
                    new_start=int(hunk_header.group(3)),
                    new_count=int(hunk_header.group(4) or "1"),
                    content="",
                    header=hunk_header.group(5).strip(),
                )
                hunk_lines = [line]
                continue

            if hunk is not None:
                hunk_lines.append(line)
                if line.startswith("+") and not line.startswith("+++"):
                    current.lines_added += 1
                elif line.startswith("-") and not line.startswith("---"):
                    current.lines_deleted += 1

        close_hunk()
        return files


class LocalGitSource:
    """Source host backed by local clones under a common root directory."""

    def __init__(self, repositories_root: str | Path):
        self.repositories_root = Path(repositories_root)
        self.parser = UnifiedDiffParser()

    def checkout_path(self, repository: RepositoryRef) -> str:
        try:
            name = check_repository_name(repository.name)
        except ValueError as e:
            raise SourceHostError(str(e)) from e
        return str(self.repositories_root / name)

    async def get_change_set(self, trigger: TriggerContext) -> ChangeSet:
        repo = self.checkout_path(trigger.repository)
        source = _branch(trigger.source_ref)
        target = _branch(trigger.target_ref)
        output = await self._run_git(
            repo, ["diff", "--no-color", "--end-of-options", f"{target}...{source}"]
        )
        files = self.parser.parse(output)
        logger.info(
            "Loaded change set",
            repository=trigger.repository.key,
            pull_request=trigger.pull_request_id,
            files=len(files),
        )
        return ChangeSet(
            repository=trigger.repository,
            pull_request_id=trigger.pull_request_id,
            source_ref=source,
            target_ref=target,
            files=files,
        )

    async def read_files(self, trigger: TriggerContext, paths: list[str]) -> dict[str, str]:
        repo = self.checkout_path(trigger.repository)
        source = _branch(trigger.source_ref)
        contents: dict[str, str] = {}
        for path in paths:
            try:
                contents[path] = await self._run_git(
                    repo, ["show", "--end-of-options", f"{source}:{path}"]
                )
            except SourceHostError as e:
                logger.debug("File not readable at source ref", file=path, error=str(e))
        return contents

    async def _run_git(self, repo: str, args: list[str]) -> str:
        """Run a git command and return its output."""
        proc = await asyncio.create_subprocess_exec(
            "git",
            "-C",
            repo,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise SourceHostError(
                f"git {' '.join(args)} failed: {stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace")


def _branch(ref: str) -> str:
    """Short branch name of a validated ref."""
    try:
        return check_ref(ref).removeprefix("refs/heads/")
    except ValueError as e:
        raise SourceHostError(str(e)) from e
