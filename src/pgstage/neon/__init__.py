"""Neon control-plane and SQL adapters."""

from pgstage.neon.client import NeonApiClient
from pgstage.neon.sql import NeonSqlExecutor

__all__ = ["NeonApiClient", "NeonSqlExecutor"]
