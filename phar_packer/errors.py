"""Errors raised while packing a project."""


class BuildError(RuntimeError):
    """Raised when packing fails."""


class UnwritableError(BuildError):
    """Raised when the environment disables writing phar archives."""


class InvalidInputError(BuildError):
    """Raised when a manifest is missing, unreadable or cannot be decoded."""


class NotInstalledError(BuildError):
    """Raised when the composer vendor tree has not been installed."""


class MissingEntryPointError(BuildError):
    """Raised when the entry point script does not exist."""


class UnparsableSourceError(BuildError):
    """Raised when a file selected for rewriting is not valid PHP."""


class PublishFailedError(BuildError):
    """Raised when the finished archive cannot be moved to its target path."""
