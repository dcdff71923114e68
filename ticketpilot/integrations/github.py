"""GitHub integration for push and PR creation."""

import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from ..utils.git import GitOps
from ..utils.subprocess import SubprocessError, SubprocessManager

logger = logging.getLogger(__name__)

_PR_URL_RE = re.compile(r"https://github\.com/[^/\s]+/[^/\s]+/pull/\d+")


@dataclass
class PRResult:
    """Result of PR creation."""

    success: bool
    pr_url: Optional[str] = None
    pr_number: Optional[int] = None
    error_message: Optional[str] = None
    manual: bool = False


class GitHubIntegration:
    """Push a workspace branch and open a pull request for it."""

    def __init__(
        self,
        git_ops: GitOps,
        token: Optional[str] = None,
        remote: str = "origin",
        base_branch: str = "main",
        env: Optional[dict[str, str]] = None,
        timeout_sec: int = 60,
    ):
        """Initialize GitHub integration.

        Args:
            git_ops: Git operations wrapper for the workspace checkout
            token: Token exported to the gh CLI as GH_TOKEN
            remote: Git remote name
            base_branch: Base branch for PRs
            env: Base environment for the gh CLI (the workspace env)
            timeout_sec: gh CLI timeout
        """
        self.git_ops = git_ops
        self.token = token
        self.remote = remote
        self.base_branch = base_branch
        self.env = env
        self.manager = SubprocessManager(timeout_sec=timeout_sec)

    async def push_branch(self, branch_name: str) -> None:
        """Push branch to the remote.

        Raises:
            GitError: If the push fails after retries
        """
        logger.info("Pushing branch %s to %s", branch_name, self.remote)
        await self.git_ops.push(remote=self.remote, branch=branch_name, retry=2)

    async def create_pr(self, branch_name: str, title: str, description: str) -> PRResult:
        """Open a PR with the gh CLI, falling back to a compare URL.

        An already-open PR for the branch counts as success (iterations push
        to the same branch).
        """
        logger.info("Creating PR for %s", branch_name)
        args = [
            "gh", "pr", "create",
            "--base", self.base_branch,
            "--head", branch_name,
            "--title", title,
            "--body", description,
        ]
        try:
            result = await self.manager.run(args, cwd=self.git_ops.repo_root, env=self._gh_env())
        except SubprocessError as e:
            logger.warning("gh CLI error: %s", e)
            return await self._manual_pr(branch_name, str(e))

        output = result["output"]
        pr_url = extract_pr_url(output)
        if result["success"] or (pr_url and "already exists" in output):
            logger.info("PR ready: %s", pr_url)
            return PRResult(success=True, pr_url=pr_url, pr_number=extract_pr_number(pr_url))

        logger.warning("gh pr create failed: %s", output.strip()[-300:])
        return await self._manual_pr(branch_name, "gh CLI not available or failed")

    async def _manual_pr(self, branch_name: str, error: str) -> PRResult:
        result = await self.git_ops.run_git(["remote", "get-url", self.remote], check=False)
        web_url = web_url_for_remote(result["stdout"].strip())
        if not web_url:
            return PRResult(success=False, error_message=error)
        compare_url = f"{web_url}/compare/{self.base_branch}...{branch_name}"
        logger.info("Manual PR URL: %s", compare_url)
        return PRResult(success=True, pr_url=compare_url, manual=True, error_message=error)

    def _gh_env(self) -> Optional[dict[str, str]]:
        if self.env is None and not self.token:
            return None
        env = dict(self.env or {})
        if self.token:
            env["GH_TOKEN"] = self.token
        return env


def extract_pr_url(output: str) -> Optional[str]:
    match = _PR_URL_RE.search(output or "")
    return match.group(0) if match else None


def extract_pr_number(pr_url: Optional[str]) -> Optional[int]:
    if not pr_url:
        return None
    match = re.search(r"/pull/(\d+)", pr_url)
    return int(match.group(1)) if match else None


def web_url_for_remote(remote_url: str) -> Optional[str]:
    """Browser URL for a git remote, with credentials stripped."""
    if remote_url.startswith("git@"):
        host, _, path = remote_url[len("git@"):].partition(":")
        return f"https://{host}/{path.removesuffix('.git')}"
    parts = urlsplit(remote_url)
    if parts.scheme not in ("https", "http") or not parts.hostname:
        return None
    return f"https://{parts.hostname}{parts.path.removesuffix('.git')}"


def generate_pr_description(
    ticket: str,
    title: str,
    plan: Optional[str],
    validation_passed: bool,
    attempts: int,
    validation_output: str = "",
) -> str:
    """PR body for a ticket's change."""
    lines = [f"Resolves {ticket}: {title}", ""]
    if plan:
        lines += ["## Plan", plan, ""]
    lines += ["## Validation"]
    if validation_passed:
        lines.append(f"Passed after {attempts} attempt(s).")
    else:
        lines.append(f"Failed after {attempts} attempt(s); this PR is a work in progress.")
        if validation_output:
            lines += ["", "```", validation_output.strip()[-3000:], "```"]
    lines += ["", "---", "", "*Opened automatically by TicketPilot*", ""]
    return "\n".join(lines)
