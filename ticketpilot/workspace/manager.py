"""Per-job workspaces: an isolated clone plus an isolated HOME."""

import base64
import logging
import os
import shutil
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import SplitResult, urlsplit, urlunsplit

from ..utils.git import GitError, GitOps

logger = logging.getLogger(__name__)

# Credential files the Claude CLI needs; nothing else from the operator's HOME is copied.
CLAUDE_CREDENTIAL_FILES = (".claude/.credentials.json", ".claude.json")


class WorkspaceError(Exception):
    """Workspace could not be prepared."""

    pass


@dataclass
class Workspace:
    """A prepared checkout owned by exactly one job."""

    id: str
    root: Path
    repo_dir: Path
    home_dir: Path
    branch: str
    branch_existed: bool
    git: GitOps

    def env(self) -> dict[str, str]:
        """Environment for tools that run inside this workspace."""
        return {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": str(self.home_dir),
            "LANG": os.environ.get("LANG", "C.UTF-8"),
            "GIT_TERMINAL_PROMPT": "0",
        }


def clone_url(repo_url: str) -> str:
    """repo_url without any user or password part (ssh and local paths unchanged)."""
    parts = urlsplit(repo_url)
    if parts.scheme not in ("http", "https") or "@" not in parts.netloc:
        return repo_url
    return urlunsplit(parts._replace(netloc=_host(parts)))


def git_auth_env(repo_url: str, token: Optional[str]) -> dict[str, str]:
    """Git settings, passed as environment, that authenticate https requests to the repo host.

    The token never lands in the checkout's ``.git/config`` and is not part
    of `Workspace.env`, so agents and validation tools never see it.
    """
    parts = urlsplit(repo_url)
    if not token or parts.scheme != "https" or not parts.hostname:
        return {}
    basic = base64.b64encode(f"x-access-token:{token}".encode()).decode()
    return {
        "GIT_CONFIG_COUNT": "1",
        "GIT_CONFIG_KEY_0": f"http.https://{_host(parts)}/.extraHeader",
        "GIT_CONFIG_VALUE_0": f"Authorization: Basic {basic}",
    }


def _host(parts: SplitResult) -> str:
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return host


class WorkspaceManager:
    """Creates and destroys job workspaces under a base directory.

    Layout::

        <base_dir>/<uuid>/repo   cloned repository, branch checked out
        <base_dir>/<uuid>/home   HOME for git, agents and validation tools
    """

    def __init__(
        self,
        base_dir: Path,
        bot_name: str = "Ralph Bot",
        bot_email: str = "ralph@ticketpilot.dev",
        github_token: Optional[str] = None,
        clone_timeout_sec: int = 300,
        clone_depth: Optional[int] = None,
        seed_home: Optional[Path] = None,
    ):
        self.base_dir = Path(base_dir)
        self.bot_name = bot_name
        self.bot_email = bot_email
        self.github_token = github_token
        self.clone_timeout_sec = clone_timeout_sec
        self.clone_depth = clone_depth
        self.seed_home = seed_home

    @asynccontextmanager
    async def acquire(self, repo_url: str, branch: str) -> AsyncIterator[Workspace]:
        """Prepare a workspace and remove it on every exit path.

        Raises:
            WorkspaceError: If cloning or branch checkout fails
        """
        workspace = await self.create(repo_url, branch)
        try:
            yield workspace
        finally:
            self.release(workspace)

    async def create(self, repo_url: str, branch: str) -> Workspace:
        """Clone repo_url into a fresh workspace and check out branch.

        The workspace directory is removed again if preparation fails.
        """
        workspace_id = str(uuid.uuid4())
        root = self.base_dir / workspace_id
        home_dir = root / "home"
        repo_dir = root / "repo"

        git = GitOps(
            repo_dir,
            timeout_sec=self.clone_timeout_sec,
            auth_env=git_auth_env(repo_url, self.github_token),
        )
        workspace = Workspace(
            id=workspace_id,
            root=root,
            repo_dir=repo_dir,
            home_dir=home_dir,
            branch=branch,
            branch_existed=False,
            git=git,
        )
        git.env = workspace.env()

        try:
            home_dir.mkdir(parents=True)
            self._seed_home(home_dir)
            await git.clone(clone_url(repo_url), depth=self.clone_depth)
            await git.configure_identity(self.bot_name, self.bot_email)
            workspace.branch_existed = await git.checkout_or_create(branch)
        except (GitError, OSError) as e:
            self.release(workspace)
            raise WorkspaceError(f"Failed to prepare workspace for {branch}: {e}") from e
        except BaseException:
            self.release(workspace)
            raise

        logger.info("Workspace %s ready on branch %s", workspace_id, branch)
        return workspace

    def release(self, workspace: Workspace) -> None:
        """Delete the workspace directory (errors are logged, not raised)."""
        try:
            shutil.rmtree(workspace.root)
            logger.info("Workspace %s removed", workspace.id)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Failed to remove workspace %s: %s", workspace.root, e)

    def _seed_home(self, home_dir: Path) -> None:
        """Populate the isolated HOME.

        A configured seed directory is copied wholesale; otherwise only the
        Claude CLI credential files are copied from the operator's HOME.
        """
        if self.seed_home is not None:
            if self.seed_home.is_dir():
                shutil.copytree(self.seed_home, home_dir, dirs_exist_ok=True)
            else:
                logger.warning("Seed home %s does not exist; HOME left empty", self.seed_home)
            return

        for relative in CLAUDE_CREDENTIAL_FILES:
            source = Path.home() / relative
            if not source.is_file():
                continue
            target = home_dir / relative
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
            except OSError as e:
                logger.warning("Failed to copy %s into workspace HOME: %s", relative, e)
