"""Markdown rendering and the git write path for synced issues"""

import logging
import os
import re
import subprocess
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence, Set

from jiracdc.errors import GitWriteError
from jiracdc.services.converter import IssueData

logger = logging.getLogger(__name__)

ISSUE_FILE_SUFFIX = ".md"

# README.md and friends in the issues directory are not issues.
ISSUE_KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*-\d+$")


@dataclass
class FileWriteResult:
    """Outcome of writing (or deleting) one issue file."""

    path: str
    commit_hash: Optional[str] = None
    created: bool = False
    changed: bool = False


def _single_line(value: str) -> str:
    return " ".join(str(value).splitlines()).strip()


def _timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def render_issue_markdown(data: IssueData, synced_at: Optional[datetime] = None) -> str:
    """Render an issue as frontmatter plus a readable markdown body."""
    synced_at = synced_at or datetime.now(timezone.utc)
    labels = ", ".join(data.labels)
    components = ", ".join(data.components)

    lines = [
        "---",
        f"key: {data.key}",
        f"summary: {_single_line(data.summary)}",
        f"status: {_single_line(data.status)}",
        f"type: {_single_line(data.issue_type)}",
        f"priority: {_single_line(data.priority)}",
    ]
    if data.assignee:
        lines.append(f"assignee: {_single_line(data.assignee)}")
    if data.reporter:
        lines.append(f"reporter: {_single_line(data.reporter)}")
    lines.append(f"labels: {_single_line(labels)}")
    lines.append(f"components: {_single_line(components)}")
    lines.append(f"fixVersions: {_single_line(', '.join(data.fix_versions))}")
    if data.parent_key:
        lines.append(f"parent: {data.parent_key}")
    if data.created:
        lines.append(f"created: {_timestamp(data.created)}")
    if data.updated:
        lines.append(f"updated: {_timestamp(data.updated)}")
    lines.append(f"syncedAt: {_timestamp(synced_at)}")
    lines.append("---")
    lines.append("")
    lines.append(f"# {data.key}: {data.summary}")
    lines.append("")
    lines.append(f"**Status:** {data.status}")
    lines.append(f"**Type:** {data.issue_type}")
    lines.append(f"**Priority:** {data.priority}")
    lines.append(f"**Assignee:** {data.assignee or 'Unassigned'}")
    lines.append(f"**Reporter:** {data.reporter or 'Unknown'}")
    lines.append(f"**Labels:** {labels}")
    lines.append(f"**Components:** {components}")
    lines.append("")
    lines.append(data.description)
    return "\n".join(lines) + "\n"


def _strip_synced_at(content: str) -> str:
    # syncedAt changes on every render; ignore it when deciding whether a file changed.
    return "\n".join(line for line in content.splitlines() if not line.startswith("syncedAt: "))


class GitWriter:
    """Write target for issue files. Implementations commit per file and push in batches."""

    def init_repository(self) -> str:
        """Clone or open the repository; returns the current HEAD (may be empty)."""
        raise NotImplementedError

    def pull(self) -> str:
        """Fast-forward to the remote branch; returns the new HEAD."""
        raise NotImplementedError

    def create_or_update_issue_file(self, data: IssueData) -> FileWriteResult:
        raise NotImplementedError

    def delete_issue_file(self, key: str) -> FileWriteResult:
        raise NotImplementedError

    def push_changes(self, branch: Optional[str] = None) -> None:
        raise NotImplementedError

    def list_issue_keys(self) -> Set[str]:
        raise NotImplementedError


class GitRepositoryWriter(GitWriter):
    """GitWriter backed by a local working tree and the git CLI."""

    def __init__(
        self,
        working_directory: str,
        *,
        repository_url: str = "",
        branch: str = "main",
        issues_directory: str = "",
        author_name: str = "JIRA CDC",
        author_email: str = "jiracdc@localhost",
    ):
        self.working_directory = Path(working_directory)
        self.repository_url = repository_url
        self.branch = branch
        self.issues_directory = issues_directory.strip("/")
        self.author_name = author_name
        self.author_email = author_email
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # git plumbing
    # ------------------------------------------------------------------

    def _run_git(self, args: Sequence[str], *, cwd: Optional[Path] = None, check: bool = True) -> str:
        command = ["git", *args]
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["GIT_AUTHOR_NAME"] = self.author_name
        env["GIT_AUTHOR_EMAIL"] = self.author_email
        env["GIT_COMMITTER_NAME"] = self.author_name
        env["GIT_COMMITTER_EMAIL"] = self.author_email
        try:
            completed = subprocess.run(
                command,
                cwd=str(cwd or self.working_directory),
                env=env,
                text=True,
                capture_output=True,
                check=False,
            )
        except OSError as e:
            raise GitWriteError(f"Failed to run {' '.join(command)}: {e}", cause=e)
        if check and completed.returncode != 0:
            raise GitWriteError(
                f"{' '.join(command)} failed with exit code {completed.returncode}: "
                f"{completed.stderr.strip()}"
            )
        return completed.stdout.strip()

    def _head(self) -> str:
        return self._run_git(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)

    def _has_remote(self) -> bool:
        return bool(self._run_git(["remote"], check=False))

    def _issue_dir(self) -> Path:
        if self.issues_directory:
            return self.working_directory / self.issues_directory
        return self.working_directory

    def _relative_path(self, key: str) -> str:
        name = f"{key}{ISSUE_FILE_SUFFIX}"
        return f"{self.issues_directory}/{name}" if self.issues_directory else name

    def _commit(self, message: str) -> str:
        self._run_git(["commit", "--quiet", "-m", message])
        return self._head()

    def _in_head(self, relative_path: str) -> bool:
        return bool(self._run_git(["ls-tree", "--name-only", "HEAD", "--", relative_path], check=False))

    def _discard(self, relative_path: str) -> None:
        """Put one path back to its state at HEAD, in both the index and the working tree."""
        if self._in_head(relative_path):
            self._run_git(["checkout", "--quiet", "HEAD", "--", relative_path], check=False)
            return
        self._run_git(["rm", "--cached", "--quiet", "--ignore-unmatch", "--", relative_path], check=False)
        path = self.working_directory / relative_path
        if path.exists():
            path.unlink()

    # ------------------------------------------------------------------
    # GitWriter
    # ------------------------------------------------------------------

    def init_repository(self) -> str:
        with self._lock:
            if (self.working_directory / ".git").is_dir():
                logger.info(f"Using existing repository at {self.working_directory}")
            elif self.repository_url:
                self.working_directory.parent.mkdir(parents=True, exist_ok=True)
                logger.info(f"Cloning {self.repository_url} into {self.working_directory}")
                self._run_git(
                    ["clone", "--quiet", self.repository_url, str(self.working_directory)],
                    cwd=self.working_directory.parent,
                )
            else:
                self.working_directory.mkdir(parents=True, exist_ok=True)
                logger.info(f"Initializing local repository at {self.working_directory}")
                self._run_git(["init", "--quiet"])

            if self._head():
                self._run_git(["checkout", "--quiet", self.branch])
            else:
                # Empty clones and fresh repos have no commits; point HEAD at the branch.
                self._run_git(["symbolic-ref", "HEAD", f"refs/heads/{self.branch}"])
            self._issue_dir().mkdir(parents=True, exist_ok=True)
            return self._head()

    def pull(self) -> str:
        with self._lock:
            if self._has_remote() and self._head():
                self._run_git(["pull", "--quiet", "--ff-only", "origin", self.branch])
            return self._head()

    def create_or_update_issue_file(self, data: IssueData) -> FileWriteResult:
        if not data.key:
            raise GitWriteError("Cannot write an issue without a key")
        relative_path = self._relative_path(data.key)
        with self._lock:
            path = self.working_directory / relative_path
            content = render_issue_markdown(data)
            created = not path.exists()
            if not created:
                existing = path.read_text(encoding="utf-8")
                if _strip_synced_at(existing) == _strip_synced_at(content):
                    return FileWriteResult(path=relative_path, created=False, changed=False)

            path.parent.mkdir(parents=True, exist_ok=True)
            verb = "Add" if created else "Update"
            try:
                path.write_text(content, encoding="utf-8")
                self._run_git(["add", "--", relative_path])
                commit_hash = self._commit(f"{verb} {data.key}: {_single_line(data.summary)}")
            except (OSError, GitWriteError) as e:
                # A half-written or staged file would leak into the next commit.
                self._discard(relative_path)
                if isinstance(e, GitWriteError):
                    raise
                raise GitWriteError(f"Failed to write {relative_path}: {e}", cause=e)
            logger.debug(f"{verb} {relative_path} at {commit_hash}")
            return FileWriteResult(path=relative_path, commit_hash=commit_hash, created=created, changed=True)

    def delete_issue_file(self, key: str) -> FileWriteResult:
        relative_path = self._relative_path(key)
        with self._lock:
            path = self.working_directory / relative_path
            if not path.exists():
                return FileWriteResult(path=relative_path, changed=False)
            try:
                self._run_git(["rm", "--quiet", "--", relative_path])
                commit_hash = self._commit(f"Remove {key}")
            except GitWriteError:
                self._discard(relative_path)
                raise
            return FileWriteResult(path=relative_path, commit_hash=commit_hash, changed=True)

    def push_changes(self, branch: Optional[str] = None) -> None:
        with self._lock:
            if not self._has_remote():
                logger.debug("No remote configured; skipping push")
                return
            self._run_git(["push", "--quiet", "origin", f"HEAD:{branch or self.branch}"])

    def list_issue_keys(self) -> Set[str]:
        with self._lock:
            directory = self._issue_dir()
            if not directory.is_dir():
                return set()
            return {
                p.stem
                for p in directory.glob(f"*{ISSUE_FILE_SUFFIX}")
                if p.is_file() and ISSUE_KEY_PATTERN.match(p.stem)
            }


def writer_from_settings(settings) -> GitRepositoryWriter:
    return GitRepositoryWriter(
        settings.git_working_directory,
        repository_url=settings.git_repository_url,
        branch=settings.git_branch,
        issues_directory=settings.git_issues_directory,
        author_name=settings.git_author_name,
        author_email=settings.git_author_email,
    )
