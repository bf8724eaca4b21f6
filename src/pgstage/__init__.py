"""pgstage - staged schema migrations for Neon Postgres."""

__version__ = "0.1.0"
