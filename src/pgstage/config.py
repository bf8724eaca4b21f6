"""Configuration management for pgstage."""

import configparser
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pgstage.exceptions import ConfigError

DEFAULT_API_HOST = "https://console.neon.tech/api/v2"
DEFAULT_ROLE_NAME = "neondb_owner"
DEFAULT_DATABASE = "neondb"
DEFAULT_REGISTRY_PATH = ".pgstage/migrations.yaml"
CLEANUP_POLICIES = ("keep", "delete")


def load_neoncfg(profile: str = "DEFAULT", path: Optional[Path] = None) -> dict[str, str]:
    """Load credentials from ~/.neoncfg.

    Args:
        profile: Profile name to load (default: "DEFAULT")
        path: Alternate file location (used by tests)

    Returns:
        Dict with api_key and optionally api_host, role_name, database

    Raises:
        ConfigError: If the profile doesn't exist
    """
    cfg_path = path or Path.home() / ".neoncfg"
    if not cfg_path.exists():
        return {}

    config = configparser.ConfigParser()
    config.read(cfg_path)

    if profile != "DEFAULT" and profile not in config:
        available = [s for s in config.sections()] or ["DEFAULT"]
        raise ConfigError(
            f"Profile '{profile}' not found in {cfg_path}. "
            f"Available profiles: {', '.join(available)}"
        )

    section = config[profile]
    result = {}

    for key in ("api_key", "api_host", "role_name", "database"):
        if key in section:
            result[key] = section[key].strip()

    if "api_host" in result:
        result["api_host"] = result["api_host"].rstrip("/")

    return result


def _parse_int(value: str, name: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc
    if parsed < 1:
        raise ConfigError(f"{name} must be at least 1, got {parsed}")
    return parsed


@dataclass
class Config:
    """Configuration for pgstage."""

    api_key: Optional[str] = None
    api_host: str = DEFAULT_API_HOST
    role_name: str = DEFAULT_ROLE_NAME
    default_database: str = DEFAULT_DATABASE
    registry_path: str = DEFAULT_REGISTRY_PATH
    cleanup_policy: str = "keep"
    stage_max_attempts: int = 2
    request_timeout: int = 30

    @classmethod
    def from_env(
        cls,
        *,
        api_key: Optional[str] = None,
        api_host: Optional[str] = None,
        role_name: Optional[str] = None,
        default_database: Optional[str] = None,
        registry_path: Optional[str] = None,
        cleanup_policy: Optional[str] = None,
        stage_max_attempts: Optional[int] = None,
        request_timeout: Optional[int] = None,
        profile: Optional[str] = None,
        config_file: Optional[Path] = None,
    ) -> "Config":
        """Load configuration from ~/.neoncfg, env vars, with CLI overrides.

        Priority (highest to lowest):
        1. Explicit parameters (CLI args)
        2. Environment variables
        3. ~/.neoncfg profile
        4. Defaults
        """
        neon_cfg = {}
        profile_name = profile or os.environ.get("NEON_CONFIG_PROFILE", "DEFAULT")
        try:
            neon_cfg = load_neoncfg(profile_name, config_file)
        except ConfigError:
            if profile is not None:
                raise

        def resolve(explicit, env_key, cfg_key=None, default=None):
            if explicit is not None:
                return explicit
            env_val = os.environ.get(env_key)
            if env_val is not None:
                return env_val
            if cfg_key and cfg_key in neon_cfg:
                return neon_cfg[cfg_key]
            return default

        policy = resolve(cleanup_policy, "PGSTAGE_CLEANUP_POLICY", default="keep")
        if policy not in CLEANUP_POLICIES:
            raise ConfigError(
                f"PGSTAGE_CLEANUP_POLICY must be one of {', '.join(CLEANUP_POLICIES)}, "
                f"got {policy!r}"
            )

        max_attempts = resolve(
            stage_max_attempts, "PGSTAGE_STAGE_MAX_ATTEMPTS", default=2
        )
        timeout = resolve(request_timeout, "PGSTAGE_REQUEST_TIMEOUT", default=30)

        return cls(
            api_key=resolve(api_key, "NEON_API_KEY", "api_key"),
            api_host=resolve(api_host, "NEON_API_HOST", "api_host", DEFAULT_API_HOST),
            role_name=resolve(
                role_name, "PGSTAGE_ROLE_NAME", "role_name", DEFAULT_ROLE_NAME
            ),
            default_database=resolve(
                default_database, "PGSTAGE_DATABASE", "database", DEFAULT_DATABASE
            ),
            registry_path=resolve(
                registry_path, "PGSTAGE_REGISTRY_PATH", default=DEFAULT_REGISTRY_PATH
            ),
            cleanup_policy=policy,
            stage_max_attempts=_parse_int(
                str(max_attempts), "PGSTAGE_STAGE_MAX_ATTEMPTS"
            ),
            request_timeout=_parse_int(str(timeout), "PGSTAGE_REQUEST_TIMEOUT"),
        )

    def validate_for_api_ops(self) -> None:
        """Validate that all required fields for control-plane calls are present.

        Raises:
            ConfigError: If the API key or host is missing.
        """
        missing = []
        if not self.api_key:
            missing.append("api_key (use --api-key, NEON_API_KEY or ~/.neoncfg)")
        if not self.api_host:
            missing.append("api_host (use NEON_API_HOST or ~/.neoncfg)")

        if missing:
            raise ConfigError(
                "Missing required configuration:\n  - " + "\n  - ".join(missing)
            )
