from __future__ import annotations


class ThreatwatchError(Exception):
    pass


class ConfigError(ThreatwatchError):
    pass


class StorageError(ThreatwatchError):
    """A persistent store could not complete a read or write."""
