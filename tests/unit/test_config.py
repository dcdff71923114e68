"""Unit tests for configuration models and loading."""

from pathlib import Path

import pytest
import yaml

from ticketpilot.config.loader import ConfigError, apply_env_overrides, create_default_config, load_config
from ticketpilot.config.models import QueueConfig, SandboxConfig, TicketPilotConfig


def write_config(path: Path, data) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


def test_defaults():
    config = TicketPilotConfig()

    assert config.server.port == 3000
    assert config.server.webhook_secret is None
    assert config.tracker.trigger_label == "ralph"
    assert config.plans.ttl_days == 7
    assert config.workflow.enable_plan_review is True
    assert config.repos.branch_prefix == "ralph/feat-"
    assert config.agent.max_iterations == 3


def test_queue_defaults():
    queue = QueueConfig()
    assert queue.concurrency == 1
    assert (queue.limiter_max, queue.limiter_window_sec) == (10, 60.0)
    assert (queue.lock_duration_sec, queue.lock_renew_sec) == (600.0, 30.0)
    assert queue.attempts == 3


def test_sandbox_defaults():
    sandbox = SandboxConfig()
    assert sandbox.timeout_sec == 60.0
    assert sandbox.max_output_bytes == 1024 * 1024
    assert (sandbox.stdout_chars, sandbox.stderr_chars) == (5000, 2000)


def test_load_without_file_uses_defaults():
    config = load_config(None, environ={})
    assert config == TicketPilotConfig()


def test_load_yaml(tmp_path):
    path = write_config(
        tmp_path / "config.yml",
        {
            "server": {"port": 8080},
            "queue": {"concurrency": 4},
            "repos": {"team_repos": {"ENG": "https://github.com/acme/web.git"}},
        },
    )

    config = load_config(path, environ={})

    assert config.server.port == 8080
    assert config.queue.concurrency == 4
    assert config.repos.team_repos == {"ENG": "https://github.com/acme/web.git"}
    assert config.queue.attempts == 3


def test_relative_paths_resolve_against_config_dir(tmp_path):
    path = write_config(
        tmp_path / "config.yml",
        {
            "storage": {"db_path": "data/tp.db"},
            "repos": {"mapping_file": "repos.yml"},
            "logging": {"log_dir": "/var/log/tp"},
        },
    )

    config = load_config(path, environ={})

    assert config.storage.db_path == (tmp_path / "data" / "tp.db").resolve()
    assert config.repos.mapping_file == (tmp_path / "repos.yml").resolve()
    assert config.logging.log_dir == Path("/var/log/tp")


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.yml", environ={})


def test_invalid_yaml(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("server: [unclosed\n")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(path, environ={})


def test_non_mapping_yaml(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(path, environ={})


def test_invalid_values(tmp_path):
    path = write_config(tmp_path / "config.yml", {"queue": {"concurrency": "many"}})
    with pytest.raises(ConfigError, match="validation failed"):
        load_config(path, environ={})


def test_env_secrets_override_file(tmp_path):
    path = write_config(tmp_path / "config.yml", {"server": {"webhook_secret": "from-file"}})
    env = {
        "LINEAR_WEBHOOK_SECRET": "from-env",
        "LINEAR_API_KEY": "lin_api",
        "GITHUB_TOKEN": "ghp_x",
        "ADMIN_USER": "admin",
        "ADMIN_PASS": "pw",
        "DEFAULT_REPO_URL": "https://github.com/acme/default.git",
        "TICKETPILOT_DB": "/data/tp.db",
    }

    config = load_config(path, environ=env)

    assert config.server.webhook_secret == "from-env"
    assert config.tracker.api_key == "lin_api"
    assert config.github.token == "ghp_x"
    assert (config.server.admin_user, config.server.admin_pass) == ("admin", "pw")
    assert config.repos.default_repo_url == "https://github.com/acme/default.git"
    assert config.storage.db_path == Path("/data/tp.db")


def test_empty_env_values_are_ignored():
    config = apply_env_overrides(TicketPilotConfig(), {"LINEAR_WEBHOOK_SECRET": ""})
    assert config.server.webhook_secret is None


def test_team_repos_json_merges():
    config = TicketPilotConfig()
    config.repos.team_repos = {"ENG": "https://github.com/acme/web.git"}

    apply_env_overrides(config, {"LINEAR_TEAM_REPOS": '{"OPS": "https://github.com/acme/ops.git"}'})

    assert config.repos.team_repos == {
        "ENG": "https://github.com/acme/web.git",
        "OPS": "https://github.com/acme/ops.git",
    }


@pytest.mark.parametrize("value", ["not json", '["a", "b"]'])
def test_team_repos_must_be_json_object(value):
    with pytest.raises(ConfigError, match="LINEAR_TEAM_REPOS"):
        apply_env_overrides(TicketPilotConfig(), {"LINEAR_TEAM_REPOS": value})


def test_plan_ttl_days():
    config = apply_env_overrides(TicketPilotConfig(), {"PLAN_TTL_DAYS": "2.5"})
    assert config.plans.ttl_days == 2.5

    with pytest.raises(ConfigError, match="PLAN_TTL_DAYS"):
        apply_env_overrides(TicketPilotConfig(), {"PLAN_TTL_DAYS": "a week"})


@pytest.mark.parametrize("value, expected", [("true", True), ("1", True), ("false", False), ("no", False)])
def test_enable_plan_review(value, expected):
    config = apply_env_overrides(TicketPilotConfig(), {"ENABLE_PLAN_REVIEW": value})
    assert config.workflow.enable_plan_review is expected


def test_create_default_config_loads_back(tmp_path):
    path = tmp_path / ".ticketpilot" / "config.yml"
    create_default_config(path)

    assert path.exists()
    config = load_config(path, environ={})
    assert config.queue.name == "ticketpilot-tasks"
    assert config.storage.db_path == (path.parent / "ticketpilot.db").resolve()
    assert config.repos.default_repo_url is None


def test_langfuse_keys_enable_tracing():
    config = apply_env_overrides(
        TicketPilotConfig(),
        {"LANGFUSE_PUBLIC_KEY": "pk-lf-1", "LANGFUSE_SECRET_KEY": "sk-lf-1", "LANGFUSE_HOST": "http://langfuse:3000"},
    )
    assert config.tracing.enabled is True
    assert config.tracing.public_key == "pk-lf-1"
    assert config.tracing.secret_key == "sk-lf-1"
    assert config.tracing.host == "http://langfuse:3000"


def test_tracing_stays_off_without_both_keys():
    config = apply_env_overrides(TicketPilotConfig(), {"LANGFUSE_PUBLIC_KEY": "pk-lf-1"})
    assert config.tracing.enabled is False
    assert config.tracing.public_key is None
