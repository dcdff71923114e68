"""Configuration models for TicketPilot."""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ServerConfig(BaseModel):
    """Webhook server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=3000, description="Bind port")
    webhook_secret: Optional[str] = Field(
        default=None, description="Shared secret for the linear-signature HMAC"
    )
    admin_user: Optional[str] = Field(default=None, description="Basic auth user for /admin")
    admin_pass: Optional[str] = Field(default=None, description="Basic auth password for /admin")


class TrackerConfig(BaseModel):
    """Issue tracker (Linear) configuration."""

    api_url: str = Field(
        default="https://api.linear.app/graphql", description="Linear GraphQL endpoint"
    )
    api_key: Optional[str] = Field(
        default=None, description="Linear API key (tracker calls are skipped when unset)"
    )
    timeout_sec: float = Field(default=30.0, description="HTTP timeout for tracker calls")
    trigger_label: str = Field(default="ralph", description="Issue label that opts a ticket in")
    bot_user_ids: list[str] = Field(
        default_factory=list, description="Tracker user ids the bot posts as"
    )
    bot_names: list[str] = Field(
        default_factory=lambda: ["Ralph Bot", "Ralph"],
        description="Tracker display names the bot posts as",
    )
    bot_signatures: list[str] = Field(
        default_factory=list,
        description="Extra text fragments that only appear in the bot's own comments"
        " (the headings of the comments it posts are always recognised)",
    )


class GitHubConfig(BaseModel):
    """Source host integration configuration."""

    token: Optional[str] = Field(default=None, description="Token used for clone, push and PRs")
    create_pr: bool = Field(default=True, description="Open a pull request after push")
    remote_name: str = Field(default="origin", description="Git remote name")
    base_branch: str = Field(default="main", description="PR base branch")


class StorageConfig(BaseModel):
    """Shared SQLite storage for plans, repo cache and the job queue."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    db_path: Path = Field(default=Path(".ticketpilot/ticketpilot.db"), description="Database file")


class QueueConfig(BaseModel):
    """Task dispatcher configuration."""

    name: str = Field(default="ticketpilot-tasks", description="Queue name")
    concurrency: int = Field(default=1, description="Jobs processed at once per worker")
    limiter_max: int = Field(default=10, description="Max jobs started per limiter window")
    limiter_window_sec: float = Field(default=60.0, description="Limiter window length")
    attempts: int = Field(default=3, description="Max attempts per job")
    backoff_sec: float = Field(default=5.0, description="Exponential backoff base delay")
    lock_duration_sec: float = Field(default=600.0, description="Claim lease length")
    lock_renew_sec: float = Field(default=30.0, description="Claim renewal interval")
    poll_interval_sec: float = Field(default=1.0, description="Idle poll interval")
    inflight_ttl_sec: float = Field(
        default=10800.0, description="How long a queued ticket blocks further issue events"
    )
    inflight_settle_sec: float = Field(
        default=120.0, description="How long the block survives after the job ends"
    )


class PlansConfig(BaseModel):
    """Plan store configuration."""

    ttl_days: float = Field(default=7, description="Days a stored plan stays live")
    key_prefix: str = Field(default="ticketpilot:plan:", description="Plan key namespace")


class WorkflowConfig(BaseModel):
    """Canonical workflow state mapping and human gate."""

    enable_plan_review: bool = Field(
        default=True, description="Require plan approval before execution"
    )
    grace_period_sec: float = Field(
        default=3.0, description="Wait before re-reading tracker state after a PR"
    )
    confirm_polls: int = Field(
        default=0, description="Extra re-reads after the grace period before writing"
    )
    confirm_poll_interval_sec: float = Field(default=2.0, description="Delay between re-reads")
    labels: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Per-state label overrides; first entry is written outbound",
    )
    approval_phrases: list[str] = Field(
        default_factory=lambda: ["lgtm", "approved", "proceed", "ship it"],
        description="Comment phrases that approve a plan (case-insensitive)",
    )


class ReposConfig(BaseModel):
    """Team to repository routing."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    team_repos: dict[str, str] = Field(
        default_factory=dict, description="Legacy mapping of team key to repo URL"
    )
    mapping_file: Optional[Path] = Field(
        default=None, description="Mounted JSON/YAML mapping file (team key to repo URL)"
    )
    default_repo_url: Optional[str] = Field(default=None, description="Fallback repo URL")
    cache_ttl_sec: float = Field(default=300.0, description="Resolver cache lifetime")
    branch_prefix: str = Field(default="ralph/feat-", description="Work branch prefix")


class WorkspaceConfig(BaseModel):
    """Workspace lifecycle configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    base_dir: Path = Field(
        default=Path("/tmp/ticketpilot-workspaces"), description="Parent of all workspaces"
    )
    bot_name: str = Field(default="Ralph Bot", description="Commit author name")
    bot_email: str = Field(default="ralph@ticketpilot.dev", description="Commit author email")
    clone_timeout_sec: int = Field(default=300, description="Clone timeout")
    clone_depth: Optional[int] = Field(default=None, description="Shallow clone depth")
    seed_home: Optional[Path] = Field(
        default=None, description="Directory copied into each workspace's isolated HOME"
    )
    stale_after_hours: float = Field(default=6.0, description="Age used by `ticketpilot cleanup`")


class SandboxConfig(BaseModel):
    """Command sandbox limits and policy."""

    timeout_sec: float = Field(default=60.0, description="Wall-clock timeout per command")
    max_output_bytes: int = Field(default=1024 * 1024, description="Output byte ceiling")
    stdout_chars: int = Field(default=5000, description="stdout character ceiling")
    stderr_chars: int = Field(default=2000, description="stderr character ceiling")
    allow_patterns: list[str] = Field(
        default_factory=list, description="Extra allowlist regexes (added to the built-ins)"
    )
    deny_patterns: list[str] = Field(
        default_factory=list, description="Extra denylist regexes (added to the built-ins)"
    )
    max_file_bytes: int = Field(default=256 * 1024, description="Max bytes returned by read_file")


class AgentConfig(BaseModel):
    """Model boundary configuration."""

    executor: str = Field(
        default="openai_tools",
        description="openai_tools (every tool call goes through the sandbox) or claude_cli",
    )
    cli_path: str = Field(default="claude", description="Claude CLI path")
    permission_mode: str = Field(
        default="acceptEdits", description="Claude permission mode while executing"
    )
    allowed_tools: list[str] = Field(
        default_factory=lambda: ["Read", "Edit", "Write", "Glob", "Grep"],
        description="Native tools the Claude CLI may use while executing",
    )
    disallowed_tools: list[str] = Field(
        default_factory=lambda: ["Bash"],
        description="Native tools the Claude CLI may never use (shell access bypasses the sandbox)",
    )
    plan_model: Optional[str] = Field(default=None, description="Claude model for planning")
    execute_model: Optional[str] = Field(default=None, description="Claude model for execution")
    plan_timeout_sec: int = Field(default=600, description="Plan call timeout")
    execute_timeout_sec: int = Field(default=1800, description="Execute call timeout")
    stuck_no_output_sec: int = Field(default=300, description="Stuck detection threshold")
    model: Optional[str] = Field(
        default=None, description="Model for openai_tools mode (falls back to OPENAI_MODEL)"
    )
    api_key_env: str = Field(default="OPENAI_API_KEY", description="API key env var name")
    max_tool_turns: int = Field(default=30, description="Tool-calling turns per execute call")
    max_iterations: int = Field(default=3, description="Execute/validate iterations")


class ValidationConfig(BaseModel):
    """Polyglot validation configuration."""

    enabled: bool = Field(default=True, description="Run validation after execution")
    timeout_sec: int = Field(default=300, description="Timeout per tool")
    node: bool = Field(default=True, description="Run biome/tsc on JS/TS changes")
    python: bool = Field(default=True, description="Run ruff/mypy on Python changes")
    security: bool = Field(default=True, description="Run trivy filesystem scan")
    install_dependencies: bool = Field(
        default=True, description="Run `npm install` when node_modules is missing"
    )
    trivy_cache_root: Optional[Path] = Field(
        default=None, description="Parent of per-workspace trivy caches (system temp when unset)"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    level: str = Field(default="INFO", description="Log level")
    log_dir: Optional[Path] = Field(
        default=Path(".ticketpilot/logs"), description="Log directory (None for console only)"
    )
    rotation_mb: int = Field(default=10, description="Log rotation size (MB)")
    retention_days: int = Field(default=7, description="Log retention days")


class TracingConfig(BaseModel):
    """Langfuse tracing of job runs."""

    enabled: bool = Field(default=False, description="Send a trace per job to Langfuse")
    public_key: Optional[str] = Field(default=None, description="Langfuse public key")
    secret_key: Optional[str] = Field(default=None, description="Langfuse secret key")
    host: Optional[str] = Field(default=None, description="Langfuse host (SDK default when unset)")


class TicketPilotConfig(BaseModel):
    """Main configuration model."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    server: ServerConfig = Field(default_factory=ServerConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    plans: PlansConfig = Field(default_factory=PlansConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    repos: ReposConfig = Field(default_factory=ReposConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    tracing: TracingConfig = Field(default_factory=TracingConfig)
