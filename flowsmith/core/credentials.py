"""Credential sources.

The engine asks a :class:`CredentialSource` for an integration's secrets
once per node invocation. Values are passed straight to the action and never
stored on the run, logged or persisted.
"""

import logging
import os
from collections.abc import Mapping, Sequence
from typing import Protocol

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """The credential store could not be read."""

    pass


class CredentialSource(Protocol):
    def fetch_credentials(self, integration_id: str, keys: Sequence[str]) -> dict[str, str]:
        """Return the available values for ``keys``; absent keys are omitted."""
        ...


class EnvironmentCredentialSource:
    """Read credentials from environment variables.

    With ``prefix="FLOWSMITH_"`` the key ``SLACK_API_KEY`` is read from
    ``FLOWSMITH_SLACK_API_KEY`` first and from ``SLACK_API_KEY`` as a fallback.
    """

    def __init__(self, environ: Mapping[str, str] | None = None, prefix: str | None = None):
        self._environ = environ if environ is not None else os.environ
        self.prefix = prefix or ""

    def fetch_credentials(self, integration_id: str, keys: Sequence[str]) -> dict[str, str]:
        found = {}
        for key in keys:
            for name in (f"{self.prefix}{key}", key) if self.prefix else (key,):
                value = self._environ.get(name)
                if value:
                    found[key] = value
                    break
        missing = [key for key in keys if key not in found]
        if missing:
            logger.debug(f"Credentials for '{integration_id}' not set: {', '.join(missing)}")
        return found


class StaticCredentialSource:
    """In-memory credentials keyed by integration id."""

    def __init__(self, credentials: Mapping[str, Mapping[str, str]] | None = None):
        self._credentials = {k: dict(v) for k, v in (credentials or {}).items()}

    def fetch_credentials(self, integration_id: str, keys: Sequence[str]) -> dict[str, str]:
        stored = self._credentials.get(integration_id, {})
        return {key: stored[key] for key in keys if key in stored}
