"""
Error taxonomy for the virtual filesystem.

Every driver translates its client library's exceptions into these types at
the driver boundary. Each type also derives from the closest builtin so
callers can keep catching ``FileNotFoundError``, ``ConnectionError`` etc.
"""


class StorageError(Exception):
    """Base exception for all storage and mount errors."""


class InvalidPathError(StorageError, ValueError):
    """Raised when a virtual or backend path is malformed or names no mount."""


class PathNotFoundError(StorageError, FileNotFoundError):
    """Raised when a file, directory or mount does not exist."""


class AlreadyExistsError(StorageError, FileExistsError):
    """Raised when a path is already occupied by an incompatible entry."""


class UnsupportedDriverKindError(StorageError, LookupError):
    """Raised when no driver is registered for a kind name."""


class InvalidConfigError(StorageError, ValueError):
    """Raised when a mount configuration blob is missing keys or malformed."""


class BackendConnectionError(StorageError, ConnectionError):
    """Raised when a backend cannot be reached or the connection dropped."""


class CrossMountUnsupportedError(StorageError):
    """Raised for operations that cannot span two mounts (e.g. move)."""


class PermissionDeniedError(StorageError, PermissionError):
    """Raised when a mount is disabled or the backend refuses access."""
