"""Shared fixtures: an in-memory tracker double and a local git remote."""

import subprocess
from pathlib import Path
from typing import Optional

import pytest

from ticketpilot.integrations.linear import IssueInfo, TrackerState, TrackerUnavailable

LINEAR_DEFAULT_STATES = [
    TrackerState("s-backlog", "Backlog", "backlog"),
    TrackerState("s-todo", "Todo", "unstarted"),
    TrackerState("s-plan", "Plan Review", "unstarted"),
    TrackerState("s-progress", "In Progress", "started"),
    TrackerState("s-review", "In Review", "started"),
    TrackerState("s-done", "Done", "completed"),
    TrackerState("s-canceled", "Canceled", "canceled"),
]


class FakeTracker:
    """Records every tracker call; issues live in a dict."""

    def __init__(self, states: Optional[list[TrackerState]] = None):
        self.enabled = True
        self.available = True
        self.states = list(LINEAR_DEFAULT_STATES if states is None else states)
        self.issues: dict[str, IssueInfo] = {}
        self.comments: list[tuple[str, str]] = []
        self.updates: list[tuple[str, str]] = []
        self.reads = 0

    def add_issue(self, issue_id: str, state_name: str = "Todo", **fields) -> IssueInfo:
        state = next(s for s in self.states if s.name == state_name)
        issue = IssueInfo(
            id=issue_id,
            identifier=fields.get("identifier", "ENG-1"),
            title=fields.get("title", "Add dark mode"),
            description=fields.get("description", ""),
            state=state,
            team_id="team-1",
            team_key=fields.get("team_key", "ENG"),
            labels=fields.get("labels", ["ralph"]),
        )
        self.issues[issue_id] = issue
        return issue

    def move(self, issue_id: str, state_name: str) -> None:
        self.issues[issue_id].state = next(s for s in self.states if s.name == state_name)

    def state_name(self, issue_id: str) -> str:
        return self.issues[issue_id].state.name

    def _check(self) -> None:
        if not self.available:
            raise TrackerUnavailable("tracker down")

    async def get_issue(self, issue_id: str) -> Optional[IssueInfo]:
        self._check()
        self.reads += 1
        return self.issues.get(issue_id)

    async def get_issue_state(self, issue_id: str) -> Optional[TrackerState]:
        issue = await self.get_issue(issue_id)
        return issue.state if issue else None

    async def list_team_states(self, team_id: str) -> list[TrackerState]:
        self._check()
        return list(self.states)

    async def update_issue_state(self, issue_id: str, state_id: str) -> bool:
        self._check()
        self.updates.append((issue_id, state_id))
        self.issues[issue_id].state = next(s for s in self.states if s.id == state_id)
        return True

    async def post_comment(self, issue_id: str, body: str) -> Optional[str]:
        self._check()
        self.comments.append((issue_id, body))
        return f"comment-{len(self.comments)}"


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def no_sleep():
    calls: list[float] = []

    async def sleep(seconds: float) -> None:
        calls.append(seconds)

    sleep.calls = calls
    return sleep


def _git(*args: str, cwd: Path) -> str:
    result = subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


@pytest.fixture
def git_remote(tmp_path: Path) -> Path:
    """Bare repository with one commit on main, usable as a clone URL."""
    seed = tmp_path / "seed"
    seed.mkdir()
    _git("init", "-q", cwd=seed)
    _git("symbolic-ref", "HEAD", "refs/heads/main", cwd=seed)
    (seed / "README.md").write_text("# Demo\n")
    (seed / "CLAUDE.md").write_text("Keep functions small.\n")
    _git("add", "-A", cwd=seed)
    _git("commit", "-q", "-m", "initial", cwd=seed)

    remote = tmp_path / "remote.git"
    _git("clone", "-q", "--bare", str(seed), str(remote), cwd=tmp_path)
    return remote


@pytest.fixture
def git_log():
    """Read `git log` subjects for a branch of a repository."""

    def read(repo: Path, branch: str) -> list[str]:
        return _git("log", "--format=%s", branch, cwd=repo).splitlines()

    return read
