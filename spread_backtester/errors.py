from __future__ import annotations


class ConfigError(ValueError):
    """Invalid run configuration. Raised before any data access."""


class DataSourceError(RuntimeError):
    """A collaborator query failed. Treated as an empty result by the core."""


class FatalDataSourceError(DataSourceError):
    """A collaborator fault that aborts the current run (siblings keep going)."""
