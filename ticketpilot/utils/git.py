"""Git operations wrapper."""

import logging
import os
from pathlib import Path

from ..safety.redaction import redact_sensitive_text
from .subprocess import SubprocessError, SubprocessManager

logger = logging.getLogger(__name__)


class GitError(Exception):
    """Git operation error."""

    pass


class GitOps:
    """Git operations wrapper bound to one checkout."""

    def __init__(
        self,
        repo_root: Path,
        timeout_sec: int = 120,
        env: dict[str, str] | None = None,
        auth_env: dict[str, str] | None = None,
    ):
        """Initialize Git operations.

        Args:
            repo_root: Repository root directory
            timeout_sec: Default timeout for operations
            env: Environment for git processes (None inherits the parent environment)
            auth_env: Extra variables for commands that talk to the remote only
        """
        self.repo_root = repo_root
        self.timeout_sec = timeout_sec
        self.env = env
        self.auth_env = auth_env or {}
        self.manager = SubprocessManager(timeout_sec=timeout_sec)

    async def run_git(
        self,
        args: list[str],
        check: bool = True,
        cwd: Path | None = None,
        authenticated: bool = False,
    ) -> dict:
        """Run git command.

        Args:
            args: Git arguments
            check: Whether to check exit code
            cwd: Working directory override (defaults to the repository root)
            authenticated: Add the remote credentials to this command's environment

        Returns:
            Result dict

        Raises:
            GitError: On failure
        """
        command = ["git"] + args
        env = self.env
        if authenticated and self.auth_env:
            env = {**(self.env if self.env is not None else os.environ), **self.auth_env}
        try:
            result = await self.manager.run(command, cwd=cwd or self.repo_root, env=env)

            if check and not result["success"]:
                raise GitError(
                    f"Git command failed: {_describe(args)}\n{_scrub(result['output'])}"
                )

            return result

        except SubprocessError as e:
            raise GitError(f"Git subprocess error: {_scrub(str(e))}")

    async def clone(self, url: str, depth: int | None = None) -> None:
        """Clone url into the repository root.

        The parent directory must exist; the root itself must not.

        Args:
            url: Remote URL (credentials come from auth_env, never the URL)
            depth: Shallow clone depth (None for a full clone)
        """
        args = ["clone"]
        if depth:
            args += ["--depth", str(depth), "--no-single-branch"]
        args += [url, str(self.repo_root)]
        await self.run_git(args, cwd=self.repo_root.parent, authenticated=True)
        logger.info("Cloned repository into %s", self.repo_root)

    async def configure_identity(self, name: str, email: str) -> None:
        """Set the commit identity for this checkout only."""
        await self.run_git(["config", "user.name", name])
        await self.run_git(["config", "user.email", email])

    async def get_current_branch(self) -> str:
        """Get current branch name.

        Returns:
            Branch name
        """
        result = await self.run_git(["rev-parse", "--abbrev-ref", "HEAD"])
        return result["stdout"].strip()

    async def checkout(self, ref: str) -> None:
        """Checkout branch or commit.

        Args:
            ref: Branch name or commit hash
        """
        await self.run_git(["checkout", ref])
        logger.info("Checked out: %s", ref)

    async def create_branch(self, branch_name: str) -> None:
        """Create and check out a new local branch from HEAD."""
        await self.run_git(["checkout", "-b", branch_name])
        logger.info("Created branch: %s", branch_name)

    async def checkout_or_create(self, branch_name: str) -> bool:
        """Check out branch_name, creating it locally when it does not exist.

        Returns:
            True if an existing branch was checked out, False if it was created
        """
        result = await self.run_git(["checkout", branch_name], check=False)
        if result["success"]:
            logger.info("Checked out existing branch: %s", branch_name)
            return True

        logger.info("Branch %s not found, creating it locally", branch_name)
        await self.create_branch(branch_name)
        return False

    async def status_porcelain(self) -> list[str]:
        """Return raw `git status --porcelain` lines."""
        result = await self.run_git(["status", "--porcelain"])
        return [line for line in result["stdout"].split("\n") if line.strip()]

    async def list_files_changed(self) -> list[str]:
        """List changed, added and untracked file paths relative to the root.

        Returns:
            List of changed file paths
        """
        files = []
        for line in await self.status_porcelain():
            path = line[3:].strip()
            if " -> " in path:
                # Renames are reported as "old -> new".
                path = path.split(" -> ", 1)[1]
            files.append(path.strip('"'))
        return files

    async def has_changes(self) -> bool:
        return bool(await self.status_porcelain())

    async def add_all(self) -> None:
        """Stage every change in the checkout."""
        await self.run_git(["add", "-A"])

    async def commit(
        self,
        message: str,
        allow_empty: bool = False,
    ) -> str:
        """Commit changes.

        Args:
            message: Commit message
            allow_empty: Allow empty commit

        Returns:
            Commit hash
        """
        args = ["commit", "-m", message]
        if allow_empty:
            args.append("--allow-empty")

        await self.run_git(args)

        result = await self.run_git(["rev-parse", "HEAD"])
        commit_hash = result["stdout"].strip()
        logger.info("Committed: %s - %s", commit_hash[:8], message.split("\n")[0])

        return commit_hash

    async def push(
        self,
        remote: str,
        branch: str,
        force: bool = False,
        retry: int = 2,
    ) -> dict:
        """Push branch to remote.

        Args:
            remote: Remote name
            branch: Branch name
            force: Force push
            retry: Number of retries on failure

        Returns:
            Result dict with success status

        Raises:
            GitError: On unrecoverable failure
        """
        args = ["push", remote, branch]
        if force:
            args.append("--force")

        retries = 0
        last_error = None

        while retries <= retry:
            result = await self.run_git(args, check=False, authenticated=True)

            if result["success"]:
                logger.info("Pushed %s to %s", branch, remote)
                return {"success": True, "output": _scrub(result["output"])}

            error_output = result["output"].lower()
            if "auth" in error_output or "credential" in error_output:
                raise GitError("Push failed: Authentication error")
            elif "non-fast-forward" in error_output or "fetch first" in error_output:
                logger.warning("Push failed: non-fast-forward. Fetching and rebasing...")
                await self.run_git(["fetch", remote, branch], authenticated=True)
                await self.run_git(["rebase", f"{remote}/{branch}"])
                retries += 1
                last_error = "non-fast-forward"
                continue
            elif "network" in error_output or "connection" in error_output:
                retries += 1
                last_error = "network"
                logger.warning("Push failed: network error (retry %s/%s)", retries, retry)
                continue
            else:
                raise GitError(f"Push failed: {_scrub(result['output'])}")

        raise GitError(f"Push failed after {retry} retries: {last_error}")


def _describe(args: list[str]) -> str:
    return _scrub(" ".join(args))


def _scrub(text: str) -> str:
    # Clone URLs carry the access token.
    return redact_sensitive_text(text)
