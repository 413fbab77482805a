"""Agent error kinds, each tied to a CLI exit code."""

from __future__ import annotations

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_NETWORK = 3
EXIT_AUTH = 4


class SyncError(Exception):
    """Base class for agent errors."""

    exit_code = EXIT_NETWORK


class ConfigError(SyncError):
    """Missing or invalid configuration, or an unusable local path."""

    exit_code = EXIT_CONFIG


class AuthenticationError(SyncError):
    """The server rejected the API key or the client id."""

    exit_code = EXIT_AUTH


class PathRejectedError(SyncError):
    """The server refused a path. Not retried."""


class RemoteNotFoundError(SyncError):
    """The server has no such file (any more)."""


class TransientError(SyncError):
    """Timeout, connection failure, or 5xx. Worth retrying."""


class IntegrityError(SyncError):
    """Downloaded bytes do not match the manifest checksum."""
