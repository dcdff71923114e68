"""Polyglot validation over the files a job changed."""

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from ..utils.git import GitError, GitOps
from ..utils.subprocess import SubprocessError, SubprocessManager

logger = logging.getLogger(__name__)

SKIPPED_OUTPUT = "Validation skipped: No files changed.\n"

NODE_EXTENSIONS = (".ts", ".js", ".json", ".jsx", ".tsx")
PYTHON_EXTENSIONS = (".py", ".toml", ".txt")


@dataclass
class ToolOutcome:
    """Result of one validation tool."""

    tool: str
    success: bool
    log: str
    relevant: bool = False
    skipped: bool = False


@dataclass
class ValidationResult:
    """Result of validation execution."""

    success: bool
    output: str
    changed_files: list[str] = field(default_factory=list)
    outcomes: list[ToolOutcome] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return not self.changed_files


def filter_relevant_lines(output: str, changed_files: list[str]) -> list[str]:
    """Lines of tool output that mention at least one changed file."""
    if not changed_files:
        return []
    return [line for line in output.splitlines() if any(f in line for f in changed_files)]


class ValidationRunner:
    """Run Node, Python and security checks against a workspace checkout.

    A tool failure only fails validation when its output names a changed
    file; pre-existing problems elsewhere in the repository are logged and
    ignored. A tool that is not installed is skipped.
    """

    def __init__(
        self,
        timeout_sec: int = 300,
        node: bool = True,
        python: bool = True,
        security: bool = True,
        install_dependencies: bool = True,
        trivy_cache_root: Path | None = None,
        log_dir: Path | None = None,
    ):
        self.timeout_sec = timeout_sec
        self.node = node
        self.python = python
        self.security = security
        self.install_dependencies = install_dependencies
        self.trivy_cache_root = trivy_cache_root
        self.log_dir = log_dir

    async def validate(
        self,
        repo_dir: Path,
        git: GitOps,
        env: dict[str, str] | None = None,
    ) -> ValidationResult:
        """Validate the working tree changes in repo_dir.

        Args:
            repo_dir: Checkout root
            git: Git handle for the checkout
            env: Environment for the tools (the workspace env)

        Returns:
            ValidationResult (never raises for tool failures)
        """
        try:
            changed = await git.list_files_changed()
        except GitError as e:
            logger.warning("Failed to detect changed files: %s", e)
            changed = []

        if not changed:
            logger.info("Validation skipped: no files changed")
            return ValidationResult(success=True, output=SKIPPED_OUTPUT)

        logger.info("Validating %d changed file(s): %s", len(changed), ", ".join(changed))
        outcomes: list[ToolOutcome] = []
        if self.node:
            outcomes += await self._validate_node(repo_dir, changed, env)
        if self.python:
            outcomes += await self._validate_python(repo_dir, changed, env)
        if self.security:
            outcomes.append(await self._validate_security(repo_dir, changed, env))

        success = all(o.success for o in outcomes)
        output = "".join(o.log for o in outcomes)
        logger.info(
            "Validation %s (%d tool(s) run)",
            "passed" if success else "failed",
            sum(1 for o in outcomes if not o.skipped),
        )
        return ValidationResult(success=success, output=output, changed_files=changed, outcomes=outcomes)

    async def _validate_node(
        self, repo_dir: Path, changed: list[str], env: dict[str, str] | None
    ) -> list[ToolOutcome]:
        if not any(f.endswith(NODE_EXTENSIONS) or "package.json" in f for f in changed):
            return []
        if not (repo_dir / "package.json").exists():
            return []

        if self.install_dependencies and not (repo_dir / "node_modules").exists():
            logger.info("Installing Node dependencies for validation")
            try:
                await self._run(
                    ["npm", "install", "--no-package-lock", "--no-audit", "--quiet"], repo_dir, env
                )
            except SubprocessError as e:
                logger.warning("npm install failed: %s", e)

        outcomes = [
            await self._run_tool("Biome", ["biome", "check", "--write", "."], repo_dir, changed, env)
        ]
        if (repo_dir / "tsconfig.json").exists():
            outcomes.append(
                await self._run_tool(
                    "TSC", ["tsc", "--noEmit", "--skipLibCheck"], repo_dir, changed, env
                )
            )
        return outcomes

    async def _validate_python(
        self, repo_dir: Path, changed: list[str], env: dict[str, str] | None
    ) -> list[ToolOutcome]:
        if not any(f.endswith(PYTHON_EXTENSIONS) for f in changed):
            return []
        has_python = (
            (repo_dir / "pyproject.toml").exists()
            or (repo_dir / "requirements.txt").exists()
            or any(repo_dir.glob("*.py"))
            or any(repo_dir.glob("*/*.py"))
        )
        if not has_python:
            return []

        ruff = await self._run_tool("Ruff", ["ruff", "check", "--fix", "."], repo_dir, changed, env)
        if ruff.success and not ruff.skipped:
            ruff = await self._run_tool("Ruff", ["ruff", "format", "."], repo_dir, changed, env)
        mypy = await self._run_tool(
            "Mypy", ["mypy", "--ignore-missing-imports", "."], repo_dir, changed, env
        )
        return [ruff, mypy]

    async def _validate_security(
        self, repo_dir: Path, changed: list[str], env: dict[str, str] | None
    ) -> ToolOutcome:
        cache_root = self.trivy_cache_root or Path(tempfile.gettempdir())
        cache_dir = cache_root / f"ticketpilot-trivy-cache-{repo_dir.parent.name}"
        command = [
            "trivy",
            "fs",
            ".",
            "--cache-dir",
            str(cache_dir),
            "--scanners",
            "vuln,secret,misconfig",
            "--severity",
            "HIGH,CRITICAL",
            "--no-progress",
            "--exit-code",
            "1",
        ]
        try:
            return await self._run_tool("Trivy", command, repo_dir, changed, env)
        finally:
            if cache_dir.exists():
                try:
                    shutil.rmtree(cache_dir)
                except OSError as e:
                    logger.warning("Failed to clean up trivy cache %s: %s", cache_dir, e)

    async def _run_tool(
        self,
        tool: str,
        command: list[str],
        repo_dir: Path,
        changed: list[str],
        env: dict[str, str] | None,
    ) -> ToolOutcome:
        try:
            result = await self._run(command, repo_dir, env)
        except SubprocessError as e:
            logger.warning("%s unavailable, skipping: %s", tool, e)
            return ToolOutcome(tool, True, f"{tool}: skipped (not available)\n", skipped=True)

        if result["success"]:
            return ToolOutcome(tool, True, f"{tool}: Passed\n")

        if result["timed_out"]:
            logger.warning("%s timed out after %ss", tool, self.timeout_sec)

        relevant = filter_relevant_lines(result["output"], changed)
        if relevant:
            log = f"{tool} errors (relevant to your changes):\n" + "\n".join(relevant) + "\n"
            return ToolOutcome(tool, False, log, relevant=True)

        logger.info("Ignoring %s errors unrelated to changed files", tool)
        return ToolOutcome(tool, True, f"{tool}: Passed (ignored unrelated errors)\n")

    async def _run(self, command: list[str], repo_dir: Path, env: dict[str, str] | None) -> dict:
        manager = SubprocessManager(timeout_sec=self.timeout_sec, log_dir=self.log_dir)
        return await manager.run(command, cwd=repo_dir, env=env)
