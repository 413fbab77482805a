"""Application-level exception types.

Convention:
- ``InternalServerError``: for errors whose details must never reach clients
  (storage inconsistencies, infrastructure failures, etc.). The global handler
  logs the full message at ERROR and returns a generic "Internal server error"
  (500) to the client.
- ``InvalidPathError``: a ``ValueError`` raised when a client-supplied sync
  path breaks the path rules. Mapped to 400 and safe to show to clients.
- ``ValueError``: other business logic validation errors that are safe to
  forward to clients. The global ``ValueError`` handler returns ``str(exc)``
  as the 422 detail.
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``syncserver/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """


class InvalidPathError(ValueError):
    """A sync path is empty, absolute, escapes the folder, or has forbidden bytes."""


class FolderNotFoundError(LookupError):
    """No sync folder exists with the requested id."""


class ClientNotFoundError(LookupError):
    """No sync client exists with the requested id."""


class UploadTooLargeError(ValueError):
    """An uploaded file exceeded the configured size limit."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"File too large (max {limit} bytes)")
        self.limit = limit
