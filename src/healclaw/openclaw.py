"""OpenClaw fix agent integration for HealClaw.

Fix delivery strategy:
1. Try the gateway agent API (POST /agent/execute)
2. Fall back to the local agent CLI run inside the workspace
3. Fall back to a simulated result that makes no changes
"""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

import httpx
from loguru import logger

from healclaw.models import ErrorReport, OpenClawConfig

# Longest log excerpt included in a prompt
MAX_PROMPT_LOG_CHARS = 3000


class FixAgentError(Exception):
    """Raised when the fix agent cannot be reached or misbehaves."""
    pass


@dataclass
class HealingRequest:
    """Structured request sent to a fix agent."""

    report: ErrorReport
    workspace_path: Path
    action: str = "diagnose-and-fix"

    def to_payload(self) -> dict:
        """Serialize for the gateway API."""
        report = self.report
        return {
            "action": self.action,
            "platform": report.platform.value,
            "repo": report.repo_key,
            "branch": report.branch,
            "workflow": report.workflow,
            "errorType": report.error_type,
            "errorMessage": report.message,
            "workingDirectory": str(self.workspace_path),
            "context": {
                "signature": report.signature,
                "runId": report.run_id,
                "detectedAt": report.timestamp.isoformat() if report.timestamp else None,
            },
        }


@dataclass
class FixResponse:
    """What a fix agent reports back."""

    success: bool
    strategy: str = "unknown"
    files_changed: list[str] = field(default_factory=list)
    message: str = ""


@runtime_checkable
class FixAgent(Protocol):
    """Anything that can try to fix an error inside a workspace."""

    async def request_fix(self, request: HealingRequest) -> FixResponse:
        ...


def build_healing_prompt(report: ErrorReport, repo_dir: Path) -> str:
    """Build the instructions given to the fix agent."""
    parts = [
        "You are an automated error healer. Analyze and fix the following error.",
        "",
        "## Error Details",
        f"- **Type**: {report.error_type}",
        f"- **Platform**: {report.platform.value}",
    ]

    if report.repo_key:
        parts.append(f"- **Repository**: {report.repo_key}")
    if report.branch:
        parts.append(f"- **Branch**: {report.branch}")
    if report.workflow:
        parts.append(f"- **Workflow**: {report.workflow}")
    if report.message:
        parts.append(f"- **Error Message**: {report.message}")
    if report.log_url:
        parts.append(f"- **Log URL**: {report.log_url}")

    parts.extend([
        "",
        "## Working Directory",
        f"The repository has been cloned to: {repo_dir}",
        "",
        "## Instructions",
        "1. Analyze the error and identify the root cause.",
        "2. Implement the minimal fix necessary to resolve the error.",
        "3. Do NOT modify unrelated files or add unnecessary changes.",
        "4. Ensure the fix does not break existing functionality.",
        "5. If you cannot determine the fix with high confidence, report that.",
    ])

    if report.raw_log:
        log = report.raw_log
        if len(log) > MAX_PROMPT_LOG_CHARS:
            log = log[:MAX_PROMPT_LOG_CHARS] + "\n... (truncated)"
        parts.extend(["", "## Error Log", "```", log, "```"])

    return "\n".join(parts)


class SimulatedFixAgent:
    """Fix agent used when no real agent is available. Makes no changes."""

    async def request_fix(self, request: HealingRequest) -> FixResponse:
        logger.info(f"Simulating fix for {request.report.repo_key} (no agent available)")
        return FixResponse(
            success=False,
            strategy="simulated",
            files_changed=[],
            message=(
                "Healing simulated. No real changes were made. "
                "Configure an agent (gateway or CLI) for actual healing."
            ),
        )


class OpenClawFixAgent:
    """Fix agent backed by the OpenClaw gateway or the local agent CLI."""

    def __init__(
        self,
        config: OpenClawConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config or OpenClawConfig()
        self._client = client
        self._fallback = SimulatedFixAgent()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.gateway_url,
                timeout=httpx.Timeout(self._config.timeout_seconds + 10, connect=5),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def is_gateway_running(self) -> bool:
        """Check if the OpenClaw gateway is up."""
        try:
            response = await self._get_client().get("/health", timeout=3)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def request_fix(self, request: HealingRequest) -> FixResponse:
        """Ask the agent to fix the error inside the workspace."""
        prompt = build_healing_prompt(request.report, request.workspace_path)
        logger.info(f"Requesting fix for {request.report.repo_key}")

        if await self.is_gateway_running():
            logger.debug("Using OpenClaw gateway for fix request")
            return await self._call_gateway(request, prompt)

        if shutil.which(self._config.cli_command):
            logger.debug(f"Gateway unavailable, using '{self._config.cli_command}' CLI")
            return await self._call_cli(request, prompt)

        return await self._fallback.request_fix(request)

    async def _call_gateway(self, request: HealingRequest, prompt: str) -> FixResponse:
        payload = {
            **request.to_payload(),
            "action": "heal",
            "prompt": prompt,
            "timeout": self._config.timeout_seconds * 1000,
        }
        try:
            response = await self._get_client().post("/agent/execute", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise FixAgentError(f"Gateway error: {e}") from e
        except ValueError as e:
            raise FixAgentError(f"Gateway returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise FixAgentError("Gateway returned an unexpected payload")

        return FixResponse(
            success=bool(data.get("success")),
            strategy=data.get("strategy") or "ai-fix",
            files_changed=list(data.get("changes") or data.get("filesChanged") or []),
            message=data.get("message") or "",
        )

    async def _call_cli(self, request: HealingRequest, prompt: str) -> FixResponse:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._config.cli_command,
                "--print",
                "--allowedTools", "Edit,Write,Bash,Read",
                prompt,
                cwd=str(request.workspace_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise FixAgentError(f"Agent spawn error: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(),
                timeout=self._config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise FixAgentError(f"Agent timed out after {self._config.timeout_seconds}s")
        finally:
            # Also reached when the caller cancels us; the agent must not outlive its workspace
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass  # Exited on its own
                await proc.wait()

        out = stdout.decode(errors="replace").strip()
        err = stderr.decode(errors="replace").strip()

        if proc.returncode != 0:
            return FixResponse(
                success=False,
                strategy="ai-fix",
                message=f"Agent exited with code {proc.returncode}: {(err or out)[:500]}",
            )

        # The CLI does not list changed files; the repository host's
        # working tree status fills them in.
        return FixResponse(
            success=True,
            strategy="ai-fix",
            message=out[:2000] or "Direct agent healing completed.",
        )
