"""
Driver registry.

Maps a backend kind name to the class that implements it and builds
initialized drivers from a mount's configuration blob. A registry is a plain
value handed to ``FileSystemService``; ``build_default_registry`` fills one
with every built-in backend.
"""
from typing import Any, Callable, Dict, Mapping, Optional, Set, Union

import structlog

from mountvfs.file_access.base_fs import StorageDriver
from mountvfs.file_access.errors import UnsupportedDriverKindError

logger = structlog.get_logger()

DriverConstructor = Callable[[], StorageDriver]


def _normalize_kind(kind: str) -> str:
    return (kind or "").lower().strip()


class DriverRegistry:
    """Registry of driver constructors keyed by kind name (case-insensitive)."""

    def __init__(self) -> None:
        self._constructors: Dict[str, DriverConstructor] = {}

    def register(self, kind: str, constructor: DriverConstructor) -> None:
        """
        Register a driver constructor.

        Args:
            kind: Backend identifier (e.g., "s3")
            constructor: StorageDriver subclass or zero-argument factory

        Raises:
            ValueError: If the kind is blank, or a class does not inherit from StorageDriver
        """
        name = _normalize_kind(kind)
        if not name:
            raise ValueError("Driver kind must be a non-empty name")
        if isinstance(constructor, type):
            if not issubclass(constructor, StorageDriver):
                raise ValueError(
                    f"Driver class must inherit from StorageDriver, got {constructor}"
                )
        elif not callable(constructor):
            raise ValueError(f"Driver constructor must be callable, got {constructor!r}")

        self._constructors[name] = constructor
        logger.debug("driver_registered", kind=name)

    def _lookup(self, kind: str) -> DriverConstructor:
        constructor = self._constructors.get(_normalize_kind(kind))
        if constructor is None:
            raise UnsupportedDriverKindError(
                f"Unknown storage driver: '{kind}'. "
                f"Available drivers: {sorted(self._constructors)}"
            )
        return constructor

    async def create_driver(
        self,
        kind: str,
        config: Union[str, Mapping[str, Any], None],
    ) -> StorageDriver:
        """
        Build and initialize a driver.

        Args:
            kind: Backend identifier
            config: JSON text or mapping with the driver's configuration

        Returns:
            Initialized StorageDriver

        Raises:
            UnsupportedDriverKindError: If no driver is registered for ``kind``
            InvalidConfigError: Propagated from the driver's ``init``
        """
        constructor = self._lookup(kind)
        driver = constructor()
        await driver.init(config)
        logger.debug("driver_created", kind=_normalize_kind(kind))
        return driver

    def list_available_kinds(self) -> Set[str]:
        return set(self._constructors)

    def describe(self, kind: str) -> Dict[str, Optional[str]]:
        """
        Get information about a registered driver.

        Raises:
            UnsupportedDriverKindError: If the kind is unknown
        """
        constructor = self._lookup(kind)
        return {
            "name": _normalize_kind(kind),
            "class": getattr(constructor, "__name__", type(constructor).__name__),
            "module": getattr(constructor, "__module__", None),
            "docstring": constructor.__doc__,
        }

    def __contains__(self, kind: str) -> bool:
        return _normalize_kind(kind) in self._constructors


def build_default_registry() -> DriverRegistry:
    """Registry with every built-in backend kind."""
    from mountvfs.file_access.localfs_provider import LocalFSProvider
    from mountvfs.file_access.onedrive_provider import OneDriveProvider
    from mountvfs.file_access.protocols.ftp_protocol import FTPProtocolAdapter
    from mountvfs.file_access.protocols.oss_protocol import OSSProtocolAdapter
    from mountvfs.file_access.protocols.s3_protocol import S3ProtocolAdapter
    from mountvfs.file_access.protocols.sftp_protocol import SFTPProtocolAdapter
    from mountvfs.file_access.protocols.webdav_protocol import WebDAVProtocolAdapter

    registry = DriverRegistry()
    registry.register("local", LocalFSProvider)
    registry.register("s3", S3ProtocolAdapter)
    registry.register("oss", OSSProtocolAdapter)
    registry.register("ftp", FTPProtocolAdapter)
    registry.register("sftp", SFTPProtocolAdapter)
    registry.register("webdav", WebDAVProtocolAdapter)
    registry.register("onedrive", OneDriveProvider)
    return registry
