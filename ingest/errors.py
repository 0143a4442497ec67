from __future__ import annotations


class SourceError(Exception):
    """A provider request failed in a way that fails the whole source run."""


class TransientSourceError(SourceError):
    """Network, timeout or rate-limit failure from an external provider."""


class SourceConfigurationError(Exception):
    """A required credential or setting for a source is missing."""


def require_credential(value: str | None, env_name: str) -> str:
    if not value:
        raise SourceConfigurationError(f"{env_name} not configured")
    return value
