"""Exception hierarchy shared across the sync engine."""

from __future__ import annotations


class VaultSyncError(Exception):
    """Base exception for vaultsync errors."""


class ConfigurationError(VaultSyncError):
    """Settings are unusable (missing API key, invalid template...).

    Fatal to the current run and never retried.
    """


class TemplateError(ConfigurationError):
    """A template fails to parse or renders a record without front matter id."""
