"""
File access layer for mountvfs.

Unified interface for accessing different file storage backends behind one
virtual namespace:
- Local filesystem
- S3 and S3-compatible object stores (incl. Aliyun OSS)
- FTP / SFTP
- WebDAV
- OneDrive
"""

from mountvfs.file_access.base_fs import (
    FileEntry,
    FileKind,
    FileOperationResult,
    HealthCheckResult,
    Listing,
    StorageDriver,
    StreamHandle,
)
from mountvfs.file_access.errors import (
    AlreadyExistsError,
    BackendConnectionError,
    CrossMountUnsupportedError,
    InvalidConfigError,
    InvalidPathError,
    PathNotFoundError,
    PermissionDeniedError,
    StorageError,
    UnsupportedDriverKindError,
)
from mountvfs.file_access.mounts import MountPoint, MountTable
from mountvfs.file_access.paths import resolve
from mountvfs.file_access.registry import DriverRegistry, build_default_registry
from mountvfs.file_access.service import FileSystemService

__all__ = [
    "AlreadyExistsError",
    "BackendConnectionError",
    "CrossMountUnsupportedError",
    "DriverRegistry",
    "FileEntry",
    "FileKind",
    "FileOperationResult",
    "FileSystemService",
    "HealthCheckResult",
    "InvalidConfigError",
    "InvalidPathError",
    "Listing",
    "MountPoint",
    "MountTable",
    "PathNotFoundError",
    "PermissionDeniedError",
    "StorageDriver",
    "StorageError",
    "StreamHandle",
    "UnsupportedDriverKindError",
    "build_default_registry",
    "resolve",
]
