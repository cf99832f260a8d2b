from __future__ import annotations


class BeholderError(Exception):
    """Base class for errors raised by the channel store and its helpers."""


class ConnectivityError(BeholderError):
    """The store could not be reached within the configured connection attempts."""


class SchemaMismatchError(BeholderError):
    """The stored schema is newer than any migration this build knows about."""

    def __init__(self, schema_name: str, stored_version: int, latest_version: int) -> None:
        super().__init__(
            f"Schema '{schema_name}' is at version {stored_version}, but this build only knows up to "
            f"version {latest_version}. Upgrade the bot before starting."
        )
        self.schema_name = schema_name
        self.stored_version = stored_version
        self.latest_version = latest_version


class QueryError(BeholderError):
    """A statement failed; the requested change did not take effect."""


class EncodingRepairWarning(UserWarning):
    """Input text was not valid UTF-8 and had to be reinterpreted as Windows-1252."""
