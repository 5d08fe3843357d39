# src/snowball_transfer/exceptions.py
"""Custom exceptions for the snowball-transfer application."""


class SnowballTransferError(Exception):
    """Base exception for all application-specific errors."""

    pass


class ConfigError(SnowballTransferError):
    """Raised for configuration-related issues."""

    pass


class FetchError(SnowballTransferError):
    """Raised when a single source object cannot be opened or read."""

    pass


class ChannelClosedError(SnowballTransferError):
    """Raised when publishing on a handoff channel that was already closed."""

    pass


class ArchiveError(SnowballTransferError):
    """Raised when a batch archive cannot be assembled."""

    pass


class UploadError(SnowballTransferError):
    """Raised when a batch archive cannot be written to the destination."""

    pass
