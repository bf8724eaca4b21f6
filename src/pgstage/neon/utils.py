"""Wiring helpers shared by the CLI and embedding applications."""

from pathlib import Path
from typing import Optional

from pgstage.config import Config
from pgstage.migrations.orchestrator import CleanupPolicy, MigrationOrchestrator
from pgstage.migrations.registry import (
    FileMigrationRegistry,
    InMemoryMigrationRegistry,
    MigrationRegistry,
)
from pgstage.neon.client import NeonApiClient
from pgstage.neon.sql import NeonSqlExecutor
from pgstage.tools import NeonTools, RetryPolicy


def build_config_and_validate(
    *,
    api_key: Optional[str] = None,
    registry_path: Optional[str] = None,
    profile: Optional[str] = None,
) -> Config:
    """Load config from ~/.neoncfg/env and validate for control-plane calls.

    Raises:
        ConfigError: If required configuration is missing.
    """
    config = Config.from_env(
        api_key=api_key, registry_path=registry_path, profile=profile
    )
    config.validate_for_api_ops()
    return config


def build_registry(config: Config, durable: bool = True) -> MigrationRegistry:
    """File-backed registry at ``config.registry_path``, or in-memory."""
    if durable:
        return FileMigrationRegistry(Path(config.registry_path))
    return InMemoryMigrationRegistry()


def build_tools(
    config: Config,
    client: Optional[NeonApiClient] = None,
    registry: Optional[MigrationRegistry] = None,
) -> NeonTools:
    """Assemble the tool layer: API client, SQL executor and orchestrator."""
    config.validate_for_api_ops()

    if client is None:
        client = NeonApiClient(
            api_key=config.api_key,
            api_host=config.api_host,
            timeout=config.request_timeout,
        )
    executor = NeonSqlExecutor(client, connect_timeout=config.request_timeout)
    orchestrator = MigrationOrchestrator(
        provisioner=client,
        executor=executor,
        registry=registry if registry is not None else build_registry(config),
        role_name=config.role_name,
        cleanup_policy=CleanupPolicy(config.cleanup_policy),
    )
    return NeonTools(
        client=client,
        executor=executor,
        orchestrator=orchestrator,
        role_name=config.role_name,
        default_database=config.default_database,
        stage_retry=RetryPolicy(max_attempts=config.stage_max_attempts),
    )
