"""Team to repository routing."""

import json
import logging
from pathlib import Path
from typing import Optional

import yaml

from ..storage.kv import TTLStore

logger = logging.getLogger(__name__)

CACHE_KEY = "ticketpilot:repos:mapping"


class RepoNotConfigured(Exception):
    """No repository is configured for a team."""

    pass


class RepoResolver:
    """Resolve a team key to a repository URL.

    Precedence: cached copy of the mounted mapping file (valid only while its
    stamp equals the file's modification time), the mounted file itself, the
    legacy in-config mapping, then the default URL.
    """

    def __init__(
        self,
        kv: TTLStore,
        mapping_file: Optional[Path] = None,
        team_repos: Optional[dict[str, str]] = None,
        default_repo_url: Optional[str] = None,
        cache_ttl_sec: float = 300.0,
    ):
        self.kv = kv
        self.mapping_file = mapping_file
        self.team_repos = team_repos or {}
        self.default_repo_url = default_repo_url
        self.cache_ttl_sec = cache_ttl_sec

    def resolve(self, team_key: Optional[str]) -> str:
        """Return the repository URL for team_key.

        Raises:
            RepoNotConfigured: If no tier has a match and there is no default
        """
        if team_key:
            mounted = self._mounted_mapping()
            if team_key in mounted:
                return mounted[team_key]
            if team_key in self.team_repos:
                return self.team_repos[team_key]

        if self.default_repo_url:
            return self.default_repo_url

        raise RepoNotConfigured(f"No repository configured for team {team_key!r}")

    def _mounted_mapping(self) -> dict[str, str]:
        if self.mapping_file is None:
            return {}

        try:
            stamp = self.mapping_file.stat().st_mtime_ns
        except FileNotFoundError:
            self.kv.delete(CACHE_KEY)
            return {}

        cached = self.kv.get(CACHE_KEY)
        if cached is not None:
            entry = json.loads(cached)
            if entry.get("stamp") == stamp:
                return entry["repos"]
            logger.info("Repository mapping changed on disk, refreshing cache")

        repos = self._read_mapping_file()
        self.kv.set(
            CACHE_KEY, json.dumps({"stamp": stamp, "repos": repos}), self.cache_ttl_sec
        )
        return repos

    def _read_mapping_file(self) -> dict[str, str]:
        # YAML is a superset of JSON, so one parser covers both formats.
        try:
            data = yaml.safe_load(self.mapping_file.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error("Cannot read repository mapping %s: %s", self.mapping_file, e)
            return {}
        if not isinstance(data, dict):
            logger.error("Repository mapping %s is not a mapping", self.mapping_file)
            return {}
        return {str(k): str(v) for k, v in data.items() if v}
