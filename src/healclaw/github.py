"""GitHub repository host for HealClaw.

Git operations run as asyncio subprocesses inside the job workspace; the
REST API (pull requests, issues, check runs, merges) goes through httpx.
"""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

import httpx
from loguru import logger

from healclaw.core.retry import EXPONENTIAL_DELAYS, retry_async
from healclaw.models import GitHubConfig

CLONE_ATTEMPTS = 3

# Check run conclusions that count as green
PASSING_CONCLUSIONS = {"success", "neutral", "skipped"}


@dataclass(eq=False)
class HostError(RuntimeError):
    """A repository host operation failed."""

    operation: str
    message: str
    exit_code: int | None = None

    def __str__(self) -> str:
        if self.exit_code is not None:
            return f"{self.operation} failed ({self.exit_code}): {self.message}"
        return f"{self.operation} failed: {self.message}"


@dataclass
class PullRequest:
    """A pull request opened for a fix."""

    number: int
    url: str
    head: str
    base: str


@runtime_checkable
class RepositoryHost(Protocol):
    """Operations the healing pipeline needs from a repository host."""

    async def clone(self, repo_key: str, branch: str | None, dest: Path) -> str:
        """Clone into ``dest`` and return the checked-out branch."""
        ...

    async def create_branch(self, repo_dir: Path, name: str) -> None:
        ...

    async def changed_files(self, repo_dir: Path) -> list[str]:
        ...

    async def commit(self, repo_dir: Path, message: str) -> None:
        ...

    async def push(self, repo_dir: Path, branch: str) -> None:
        ...

    async def create_pull_request(
        self, repo_key: str, title: str, body: str, head: str, base: str
    ) -> PullRequest:
        ...

    async def create_issue(self, repo_key: str, title: str, body: str) -> str | None:
        ...

    async def poll_checks(self, repo_key: str, ref: str, timeout_seconds: float) -> bool:
        ...

    async def merge(self, repo_key: str, number: int, method: str) -> bool:
        ...


class GitHubHost:
    """RepositoryHost backed by the git CLI and the GitHub REST API."""

    def __init__(
        self,
        config: GitHubConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config or GitHubConfig()
        self._client = client

    @classmethod
    def is_available(cls) -> bool:
        """Whether the git executable is on PATH."""
        return shutil.which("git") is not None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
            if self._config.token:
                headers["Authorization"] = f"Bearer {self._config.token}"
            self._client = httpx.AsyncClient(
                base_url=self._config.api_url,
                headers=headers,
                timeout=30,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # Git
    # =========================================================================

    async def _git(self, args: list[str], cwd: Path | None = None) -> str:
        """Run a git command and return its stdout."""
        cmd = ["git", *args]
        operation = "git " + next((a for a in args if not a.startswith("-") and "=" not in a), args[0])
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise HostError(operation, str(e)) from e

        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise HostError(
                operation,
                self._redact(stderr.decode(errors="replace").strip()),
                exit_code=proc.returncode,
            )
        return stdout.decode(errors="replace")

    def _redact(self, text: str) -> str:
        if self._config.token:
            return text.replace(self._config.token, "***")
        return text

    def _clone_url(self, repo_key: str) -> str:
        url = self._config.clone_url_template.format(repo=repo_key)
        if self._config.token and url.startswith("https://"):
            url = url.replace("https://", f"https://x-access-token:{self._config.token}@", 1)
        return url

    async def clone(self, repo_key: str, branch: str | None, dest: Path) -> str:
        """Clone ``repo_key`` into ``dest`` with retry.

        Returns:
            The checked-out branch name
        """
        dest = Path(dest)
        args = ["clone", "--depth", "50", "--single-branch"]
        if branch:
            args += ["--branch", branch]
        args += [self._clone_url(repo_key), str(dest)]

        async def attempt() -> None:
            # A failed attempt can leave a partial checkout behind
            if dest.exists():
                shutil.rmtree(dest, ignore_errors=True)
            await self._git(args)

        await retry_async(
            attempt,
            max_attempts=CLONE_ATTEMPTS,
            delays=EXPONENTIAL_DELAYS,
            retry_on=(HostError,),
            description=f"Clone of {repo_key}",
        )

        if branch:
            return branch
        current = await self._git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=dest)
        return current.strip()

    async def create_branch(self, repo_dir: Path, name: str) -> None:
        await self._git(["checkout", "-b", name], cwd=repo_dir)
        logger.debug(f"Created branch {name}")

    async def changed_files(self, repo_dir: Path) -> list[str]:
        """List paths modified in the working tree."""
        output = await self._git(["status", "--porcelain"], cwd=repo_dir)
        files = []
        for line in output.splitlines():
            if len(line) < 4:
                continue
            path = line[3:]
            # Renames are reported as "old -> new"
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            files.append(path.strip('"'))
        return files

    async def commit(self, repo_dir: Path, message: str) -> None:
        await self._git(["add", "-A"], cwd=repo_dir)
        await self._git(
            [
                "-c", "user.name=healclaw",
                "-c", "user.email=healclaw@users.noreply.github.com",
                "commit", "-m", message,
            ],
            cwd=repo_dir,
        )

    async def push(self, repo_dir: Path, branch: str) -> None:
        await self._git(["push", "--set-upstream", "origin", branch], cwd=repo_dir)
        logger.debug(f"Pushed branch {branch}")

    # =========================================================================
    # REST API
    # =========================================================================

    async def _request(self, operation: str, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._get_client().request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise HostError(operation, str(e)) from e
        if response.status_code >= 400:
            raise HostError(operation, response.text[:500], exit_code=response.status_code)
        return response

    async def create_pull_request(
        self, repo_key: str, title: str, body: str, head: str, base: str
    ) -> PullRequest:
        """Open a pull request, then add labels and reviewers best-effort."""
        response = await self._request(
            "create pull request",
            "POST",
            f"/repos/{repo_key}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )
        data = response.json()
        pr = PullRequest(number=data["number"], url=data["html_url"], head=head, base=base)
        logger.info(f"Opened pull request #{pr.number} on {repo_key}: {pr.url}")

        if self._config.pr_labels:
            try:
                await self._request(
                    "add labels",
                    "POST",
                    f"/repos/{repo_key}/issues/{pr.number}/labels",
                    json={"labels": self._config.pr_labels},
                )
            except HostError as e:
                logger.warning(f"Could not label PR #{pr.number}: {e}")

        if self._config.reviewers:
            try:
                await self._request(
                    "request reviewers",
                    "POST",
                    f"/repos/{repo_key}/pulls/{pr.number}/requested_reviewers",
                    json={"reviewers": self._config.reviewers},
                )
            except HostError as e:
                logger.warning(f"Could not request reviewers for PR #{pr.number}: {e}")

        return pr

    async def create_issue(self, repo_key: str, title: str, body: str) -> str | None:
        """Open a tracking issue and return its URL."""
        response = await self._request(
            "create issue",
            "POST",
            f"/repos/{repo_key}/issues",
            json={"title": title, "body": body, "labels": self._config.issue_labels},
        )
        url = response.json().get("html_url")
        logger.info(f"Opened issue on {repo_key}: {url}")
        return url

    async def poll_checks(self, repo_key: str, ref: str, timeout_seconds: float) -> bool:
        """Wait for the check runs on ``ref`` to finish.

        Returns:
            True once every check run completed green, False if one failed
            or the timeout elapsed
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds

        while True:
            response = await self._request(
                "list check runs",
                "GET",
                f"/repos/{repo_key}/commits/{ref}/check-runs",
                params={"per_page": 100},
            )
            runs = response.json().get("check_runs", [])

            if runs and all(run.get("status") == "completed" for run in runs):
                failed = [
                    run.get("name") for run in runs
                    if run.get("conclusion") not in PASSING_CONCLUSIONS
                ]
                if failed:
                    logger.warning(f"Checks failed on {repo_key}@{ref}: {', '.join(map(str, failed))}")
                    return False
                return True

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"Timed out after {timeout_seconds}s waiting for checks on {repo_key}@{ref}")
                return False
            await asyncio.sleep(min(self._config.checks_poll_interval, remaining))

    async def merge(self, repo_key: str, number: int, method: str) -> bool:
        """Merge a pull request. Returns False if GitHub refuses."""
        try:
            response = await self._request(
                "merge pull request",
                "PUT",
                f"/repos/{repo_key}/pulls/{number}/merge",
                json={"merge_method": method},
            )
        except HostError as e:
            logger.warning(f"Could not merge PR #{number} on {repo_key}: {e}")
            return False
        return bool(response.json().get("merged"))
