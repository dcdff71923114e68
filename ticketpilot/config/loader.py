"""Configuration loader with validation and environment overlay."""

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from .models import TicketPilotConfig

logger = logging.getLogger(__name__)

# Config keys holding paths, resolved relative to the config file.
_PATH_KEYS = (
    ("storage", "db_path"),
    ("logging", "log_dir"),
    ("repos", "mapping_file"),
    ("workspace", "seed_home"),
)

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigError(Exception):
    """Configuration error."""

    pass


def load_config(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> TicketPilotConfig:
    """Load and validate configuration from a YAML file, then apply env overrides.

    Args:
        config_path: Path to config YAML file (None for defaults only)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated TicketPilotConfig instance

    Raises:
        ConfigError: If config file missing or invalid
    """
    data: dict = {}
    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Configuration must be a mapping: {config_path}")

        for section, key in _PATH_KEYS:
            value = (data.get(section) or {}).get(key)
            if value:
                path = Path(value).expanduser()
                if not path.is_absolute():
                    data[section][key] = (config_path.parent / path).resolve()

    try:
        config = TicketPilotConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}")

    return apply_env_overrides(config, environ)


def apply_env_overrides(
    config: TicketPilotConfig,
    environ: Optional[Mapping[str, str]] = None,
) -> TicketPilotConfig:
    """Overlay secrets and deployment knobs from the environment.

    Args:
        config: Loaded configuration (modified in place)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        The same configuration instance

    Raises:
        ConfigError: If an environment value cannot be parsed
    """
    env = os.environ if environ is None else environ

    if env.get("LINEAR_WEBHOOK_SECRET"):
        config.server.webhook_secret = env["LINEAR_WEBHOOK_SECRET"]
    if env.get("ADMIN_USER"):
        config.server.admin_user = env["ADMIN_USER"]
    if env.get("ADMIN_PASS"):
        config.server.admin_pass = env["ADMIN_PASS"]
    if env.get("LINEAR_API_KEY"):
        config.tracker.api_key = env["LINEAR_API_KEY"]
    if env.get("GITHUB_TOKEN"):
        config.github.token = env["GITHUB_TOKEN"]
    if env.get("DEFAULT_REPO_URL"):
        config.repos.default_repo_url = env["DEFAULT_REPO_URL"]
    if env.get("TEAM_REPOS_FILE"):
        config.repos.mapping_file = Path(env["TEAM_REPOS_FILE"])
    if env.get("TICKETPILOT_DB"):
        config.storage.db_path = Path(env["TICKETPILOT_DB"])

    if env.get("LINEAR_TEAM_REPOS"):
        try:
            mapping = json.loads(env["LINEAR_TEAM_REPOS"])
        except json.JSONDecodeError as e:
            raise ConfigError(f"LINEAR_TEAM_REPOS is not valid JSON: {e}")
        if not isinstance(mapping, dict):
            raise ConfigError("LINEAR_TEAM_REPOS must be a JSON object")
        config.repos.team_repos.update({str(k): str(v) for k, v in mapping.items()})

    if env.get("PLAN_TTL_DAYS"):
        try:
            config.plans.ttl_days = float(env["PLAN_TTL_DAYS"])
        except ValueError:
            raise ConfigError(f"PLAN_TTL_DAYS must be a number: {env['PLAN_TTL_DAYS']!r}")

    if env.get("ENABLE_PLAN_REVIEW"):
        config.workflow.enable_plan_review = env["ENABLE_PLAN_REVIEW"].lower() in _TRUE_VALUES

    if env.get("LANGFUSE_PUBLIC_KEY") and env.get("LANGFUSE_SECRET_KEY"):
        config.tracing.enabled = True
        config.tracing.public_key = env["LANGFUSE_PUBLIC_KEY"]
        config.tracing.secret_key = env["LANGFUSE_SECRET_KEY"]
    if env.get("LANGFUSE_HOST"):
        config.tracing.host = env["LANGFUSE_HOST"]

    return config


def create_default_config(config_path: Path) -> None:
    """Create default configuration file.

    Args:
        config_path: Path where config should be created
    """
    config_path.parent.mkdir(parents=True, exist_ok=True)

    default_config = {
        "server": {"host": "0.0.0.0", "port": 3000},
        "tracker": {
            "trigger_label": "ralph",
            "bot_names": ["Ralph Bot", "Ralph"],
        },
        "github": {
            "create_pr": True,
            "remote_name": "origin",
            "base_branch": "main",
        },
        "storage": {"db_path": "ticketpilot.db"},
        "queue": {
            "name": "ticketpilot-tasks",
            "concurrency": 1,
            "limiter_max": 10,
            "limiter_window_sec": 60,
            "attempts": 3,
            "backoff_sec": 5,
            "lock_duration_sec": 600,
            "lock_renew_sec": 30,
        },
        "plans": {"ttl_days": 7},
        "workflow": {
            "enable_plan_review": True,
            "grace_period_sec": 3,
            "confirm_polls": 0,
        },
        "repos": {
            "team_repos": {},
            "default_repo_url": None,
            "branch_prefix": "ralph/feat-",
        },
        "workspace": {
            "base_dir": "/tmp/ticketpilot-workspaces",
            "bot_name": "Ralph Bot",
            "bot_email": "ralph@ticketpilot.dev",
        },
        "sandbox": {
            "timeout_sec": 60,
            "max_output_bytes": 1048576,
            "stdout_chars": 5000,
            "stderr_chars": 2000,
        },
        "agent": {
            "executor": "openai_tools",
            "cli_path": "claude",
            "max_iterations": 3,
        },
        "validation": {"enabled": True},
        "logging": {
            "level": "INFO",
            "log_dir": "logs",
        },
        "tracing": {"enabled": False},
    }

    with open(config_path, "w") as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)
    logger.info("Wrote default configuration to %s", config_path)
