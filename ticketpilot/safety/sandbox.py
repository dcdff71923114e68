"""Command and file sandbox for agent-issued operations inside a workspace.

Every public entry point returns a result object. Policy violations and
execution failures are reported as data so the calling agent can react to
them instead of crashing.
"""

import logging
import os
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..utils.subprocess import SubprocessError, SubprocessManager
from .redaction import redact_sensitive_text

logger = logging.getLogger(__name__)

REJECTION_MESSAGE = (
    "ERROR: Command not allowed for security reasons. "
    "Only whitelisted commands (npm, git, test tools) are permitted."
)
EXECUTION_FAILED_MESSAGE = "ERROR: Command could not be executed."
ACCESS_DENIED_MESSAGE = "ERROR: Access denied: path is outside the workspace."
TRUNCATION_MARKER = "\n... (truncated)"

# Build, test, read-only VCS, file-read and lint commands.
ALLOWED_COMMAND_PATTERNS = [
    r"^npm\s+(test|run|install|ci|build|lint)",
    r"^npx\s+[a-zA-Z0-9@/-]+",
    r"^node\s+[a-zA-Z0-9./_-]+",
    r"^ls\s+(-[a-zA-Z]+\s+)?[a-zA-Z0-9./_-]*$",
    r"^ls$",
    r"^cat\s+[a-zA-Z0-9./_-]+$",
    r"^pwd$",
    r"^echo\s+",
    r"^git\s+(status|log|diff|show)",
    r"^python3?\s+-m\s+pytest",
    r"^pytest",
    r"^ruff\s+",
    r"^mypy\s+",
]

# Checked even when an allow pattern matched; denial wins.
DANGEROUS_PATTERNS = [
    r"[;&|`$()\n<>]",
    r"rm\s+-rf",
    r">\s*/dev",
    r"curl.*\|",
    r"wget.*\|",
    # Absolute, home-relative or parent-relative paths reach outside the workspace.
    r"(?:^|[\s=])[~/]",
    r"(?:^|[\s=/])\.\.(?:/|\s|$)",
]


class CommandRejected(Exception):
    """Command failed the allow/deny policy."""

    pass


class PathTraversal(Exception):
    """Requested path resolves outside the workspace root."""

    pass


@dataclass
class CommandExecutionResult:
    """Outcome of a sandboxed command."""

    allowed: bool
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False
    exit_code: Optional[int] = None
    timed_out: bool = False
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.allowed and self.exit_code == 0

    def to_text(self) -> str:
        """Render for an agent transcript."""
        if not self.allowed or self.message:
            return self.message or REJECTION_MESSAGE
        header = ""
        if self.timed_out:
            header = "ERROR: Command timed out\n"
        elif self.exit_code not in (0, None):
            header = f"ERROR: Command failed (exit code {self.exit_code})\n"
        return f"{header}STDOUT:\n{self.stdout}\n\nSTDERR:\n{self.stderr}"


@dataclass
class FileOperationResult:
    """Outcome of a sandboxed file operation."""

    ok: bool
    output: str

    def to_text(self) -> str:
        return self.output


def _truncate(text: str, limit: int) -> tuple[str, bool]:
    if len(text) > limit:
        return text[:limit] + TRUNCATION_MARKER, True
    return text, False


class CommandSandbox:
    """Two-gate command filter plus bounded execution."""

    def __init__(
        self,
        workspace_root: Path,
        timeout_sec: float = 60.0,
        max_output_bytes: int = 1024 * 1024,
        stdout_chars: int = 5000,
        stderr_chars: int = 2000,
        extra_allow_patterns: Optional[list[str]] = None,
        extra_deny_patterns: Optional[list[str]] = None,
        home_dir: Optional[Path] = None,
    ):
        """Initialize sandbox.

        Args:
            workspace_root: Directory commands run in
            timeout_sec: Hard wall-clock timeout per command
            max_output_bytes: Hard ceiling on captured output
            stdout_chars: stdout character ceiling in the result
            stderr_chars: stderr character ceiling in the result
            extra_allow_patterns: Regexes added to the allowlist
            extra_deny_patterns: Regexes added to the denylist
            home_dir: HOME for the command (defaults to the workspace root)
        """
        self.workspace_root = Path(workspace_root)
        self.stdout_chars = stdout_chars
        self.stderr_chars = stderr_chars
        self.home_dir = home_dir
        self.allow = [re.compile(p) for p in ALLOWED_COMMAND_PATTERNS + (extra_allow_patterns or [])]
        self.deny = [re.compile(p) for p in DANGEROUS_PATTERNS + (extra_deny_patterns or [])]
        self.manager = SubprocessManager(timeout_sec=timeout_sec, max_output_bytes=max_output_bytes)

    def check(self, command: str) -> None:
        """Apply both gates.

        Raises:
            CommandRejected: If the command is not allowlisted or matches the denylist
        """
        stripped = command.strip()
        if any(p.search(stripped) for p in self.deny):
            raise CommandRejected("denylisted fragment")
        if not any(p.search(stripped) for p in self.allow):
            raise CommandRejected("not allowlisted")

    def is_allowed(self, command: str) -> bool:
        try:
            self.check(command)
        except CommandRejected:
            return False
        return True

    async def execute(self, command: str) -> CommandExecutionResult:
        """Validate and run command inside the workspace."""
        try:
            self.check(command)
            argv = shlex.split(command)
        except (CommandRejected, ValueError) as e:
            logger.warning("Sandbox rejected command (%s)", e)
            return CommandExecutionResult(allowed=False, message=REJECTION_MESSAGE)

        try:
            result = await self.manager.run(argv, cwd=self.workspace_root, env=self._env())
        except SubprocessError as e:
            logger.warning("Sandboxed command failed to run: %s", redact_sensitive_text(str(e)))
            return CommandExecutionResult(allowed=True, message=EXECUTION_FAILED_MESSAGE)

        stdout, stdout_cut = _truncate(redact_sensitive_text(result["stdout"]), self.stdout_chars)
        stderr, stderr_cut = _truncate(redact_sensitive_text(result["stderr"]), self.stderr_chars)
        truncated = stdout_cut or stderr_cut or result["output_limit_exceeded"]
        if result["output_limit_exceeded"] and not stdout_cut and not stderr_cut:
            stdout += TRUNCATION_MARKER

        return CommandExecutionResult(
            allowed=True,
            stdout=stdout,
            stderr=stderr,
            truncated=truncated,
            exit_code=result["exit_code"],
            timed_out=result["timed_out"],
        )

    def _env(self) -> dict[str, str]:
        # Only what build and test tools need; no tokens or keys.
        env = {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": str(self.home_dir or self.workspace_root),
            "LANG": os.environ.get("LANG", "C.UTF-8"),
            "CI": "1",
        }
        return env


class FileSandbox:
    """List, read and write files strictly below a workspace root."""

    def __init__(self, workspace_root: Path, max_file_bytes: int = 256 * 1024):
        self.workspace_root = Path(os.path.abspath(workspace_root))
        self.max_file_bytes = max_file_bytes

    def resolve(self, relative_path: str) -> Path:
        """Resolve relative_path against the root.

        The lexical check runs before any filesystem access; the second check
        catches symlinks that point outside the root.

        Raises:
            PathTraversal: If the path escapes the root
        """
        root = str(self.workspace_root)
        candidate = os.path.normpath(os.path.join(root, relative_path or "."))
        if not _within(candidate, root):
            raise PathTraversal(relative_path)

        real_root = os.path.realpath(root)
        if not _within(os.path.realpath(candidate), real_root):
            raise PathTraversal(relative_path)
        return Path(candidate)

    def list_files(self, relative_path: str = ".") -> FileOperationResult:
        try:
            path = self.resolve(relative_path)
            entries = sorted(path.iterdir(), key=lambda p: p.name)
        except PathTraversal:
            return self._denied("list", relative_path)
        except OSError as e:
            return FileOperationResult(False, f"ERROR: Cannot list {relative_path}: {e.strerror}")
        lines = [f"{e.name}/" if e.is_dir() else e.name for e in entries]
        return FileOperationResult(True, "\n".join(lines))

    def read_file(self, relative_path: str) -> FileOperationResult:
        try:
            path = self.resolve(relative_path)
            with open(path, "rb") as f:
                data = f.read(self.max_file_bytes + 1)
        except PathTraversal:
            return self._denied("read", relative_path)
        except OSError as e:
            return FileOperationResult(False, f"ERROR: Cannot read {relative_path}: {e.strerror}")
        text = data[: self.max_file_bytes].decode("utf-8", errors="replace")
        text = redact_sensitive_text(text)
        if len(data) > self.max_file_bytes:
            text += TRUNCATION_MARKER
        return FileOperationResult(True, text)

    def write_file(self, relative_path: str, content: str) -> FileOperationResult:
        try:
            path = self.resolve(relative_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except PathTraversal:
            return self._denied("write", relative_path)
        except OSError as e:
            return FileOperationResult(False, f"ERROR: Cannot write {relative_path}: {e.strerror}")
        return FileOperationResult(True, f"Wrote to {relative_path}")

    @staticmethod
    def _denied(operation: str, relative_path: str) -> FileOperationResult:
        logger.warning("Sandbox denied %s outside workspace: %r", operation, relative_path)
        return FileOperationResult(False, ACCESS_DENIED_MESSAGE)


def _within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)
