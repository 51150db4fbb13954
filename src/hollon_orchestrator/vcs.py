"""
Hollon Orchestrator - Version Control Gateway
=============================================

Pull-request operations behind an injected interface so the orchestration
core never shells out directly. ``GhCliGateway`` drives the GitHub ``gh`` CLI
through ``run_command``, which never blocks the event loop.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

Runner = Callable[..., Awaitable[Tuple[int, str, str]]]


async def run_command(cmd: List[str], cwd: Optional[str] = None, timeout: int = 30) -> Tuple[int, str, str]:
    """
    Run an external command and return (return_code, stdout, stderr).

    A missing executable comes back as exit code 127. A timeout kills the
    process and raises asyncio.TimeoutError.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE, cwd=cwd,
        )
    except FileNotFoundError:
        logger.warning(f"⚠️ Command not found: {cmd[0]}")
        return 127, "", f"command not found: {cmd[0]}"

    try:
        out, err = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise asyncio.TimeoutError(f"{cmd[0]} timed out after {timeout}s")

    return process.returncode, out.decode("utf-8", errors="replace"), err.decode("utf-8", errors="replace")


class CIStatus(str, Enum):
    """Aggregate state of the checks attached to a pull request."""
    PENDING = "pending"
    PASSING = "passing"
    FAILING = "failing"
    UNKNOWN = "unknown"


@dataclass
class PullRequestResult:
    """Result of a pull-request operation."""
    success: bool
    url: Optional[str] = None
    error_message: str = ""


@dataclass
class CIResult:
    status: CIStatus
    failed_checks: List[str] = field(default_factory=list)


class VersionControlGateway(ABC):
    """Pull-request lifecycle used by task execution and review."""

    @abstractmethod
    async def create_pr(self, title: str, body: str, branch: str, base: str = "main") -> PullRequestResult:
        ...

    @abstractmethod
    async def merge_pr(self, pr_ref: str, delete_branch: bool = True) -> PullRequestResult:
        ...

    @abstractmethod
    async def close_pr(self, pr_ref: str, comment: Optional[str] = None) -> PullRequestResult:
        ...

    @abstractmethod
    async def check_ci(self, pr_ref: str) -> CIResult:
        ...


class GhCliGateway(VersionControlGateway):
    """VersionControlGateway over the ``gh`` command-line client."""

    def __init__(self, repo_path: str, runner: Optional[Runner] = None, timeout: int = 60):
        self.repo_path = repo_path
        self.runner = runner or run_command
        self.timeout = timeout

    async def _run_gh(self, args: List[str]) -> Tuple[int, str, str]:
        cmd = ["gh"] + args
        logger.debug(f"Running: {' '.join(cmd)}")
        return await self.runner(cmd, cwd=self.repo_path, timeout=self.timeout)

    async def create_pr(self, title: str, body: str, branch: str, base: str = "main") -> PullRequestResult:
        code, stdout, stderr = await self._run_gh([
            "pr", "create", "--title", title, "--body", body, "--head", branch, "--base", base,
        ])
        if code != 0:
            logger.error(f"❌ PR creation failed for {branch}: {stderr.strip()}")
            return PullRequestResult(success=False, error_message=stderr.strip())
        # gh prints the PR URL as the last line
        lines = [line for line in stdout.strip().splitlines() if line.strip()]
        url = lines[-1].strip() if lines else None
        logger.info(f"Created PR for {branch}: {url}")
        return PullRequestResult(success=True, url=url)

    async def merge_pr(self, pr_ref: str, delete_branch: bool = True) -> PullRequestResult:
        args = ["pr", "merge", pr_ref, "--merge"]
        if delete_branch:
            args.append("--delete-branch")
        code, _, stderr = await self._run_gh(args)
        if code != 0:
            logger.error(f"❌ PR merge failed for {pr_ref}: {stderr.strip()}")
            return PullRequestResult(success=False, url=pr_ref, error_message=stderr.strip())
        return PullRequestResult(success=True, url=pr_ref)

    async def close_pr(self, pr_ref: str, comment: Optional[str] = None) -> PullRequestResult:
        args = ["pr", "close", pr_ref]
        if comment:
            args.extend(["--comment", comment])
        code, _, stderr = await self._run_gh(args)
        if code != 0:
            return PullRequestResult(success=False, url=pr_ref, error_message=stderr.strip())
        return PullRequestResult(success=True, url=pr_ref)

    async def check_ci(self, pr_ref: str) -> CIResult:
        code, stdout, stderr = await self._run_gh(["pr", "checks", pr_ref, "--json", "name,state"])
        if not stdout.strip():
            logger.warning(f"No CI information for {pr_ref}: {stderr.strip()}")
            return CIResult(status=CIStatus.UNKNOWN)
        try:
            checks = json.loads(stdout)
        except json.JSONDecodeError:
            logger.warning(f"Unparseable gh checks output for {pr_ref}")
            return CIResult(status=CIStatus.UNKNOWN)

        failed = [c.get("name", "?") for c in checks if c.get("state") in ("FAILURE", "ERROR", "CANCELLED")]
        if failed:
            return CIResult(status=CIStatus.FAILING, failed_checks=failed)
        if any(c.get("state") in ("PENDING", "QUEUED", "IN_PROGRESS") for c in checks):
            return CIResult(status=CIStatus.PENDING)
        return CIResult(status=CIStatus.PASSING)
