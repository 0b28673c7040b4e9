"""
Virtual filesystem service.

``FileSystemService`` is the only component that knows about virtual paths.
It resolves a path to its mount, builds a driver for that mount through the
registry, runs the operation and projects the result back into the virtual
namespace. Every operation gets a fresh driver that is closed when the
operation ends; a stream returned by ``get`` carries its driver and closes
it together with the stream.
"""
import contextlib
from dataclasses import replace
from typing import Any, AsyncIterator, Awaitable, List, Optional

import structlog

from mountvfs.config import settings
from mountvfs.file_access.base_fs import (
    ByteStream,
    FileEntry,
    FileOperationResult,
    HealthCheckResult,
    Listing,
    StorageDriver,
    StreamHandle,
)
from mountvfs.file_access.errors import (
    CrossMountUnsupportedError,
    InvalidPathError,
    PathNotFoundError,
    PermissionDeniedError,
    StorageError,
)
from mountvfs.file_access.mounts import MountPoint, MountSource
from mountvfs.file_access.paths import (
    join_path,
    resolve,
    split_path,
    to_virtual,
    validate_name,
)
from mountvfs.file_access.registry import DriverRegistry
from mountvfs.file_access.streams import iter_url
from mountvfs.monitoring.context import operation_context

logger = structlog.get_logger()


async def _attempt(awaitable: Awaitable[Any], path: str, **details: Any) -> FileOperationResult:
    """Await a backend call and report its outcome as a value.

    The awaited value goes in ``details["value"]``; a StorageError (or an
    OSError from a client library) goes in ``error``.
    """
    try:
        value = await awaitable
    except (StorageError, OSError) as exc:
        return FileOperationResult(
            success=False, message=str(exc), path=path, details=details or None, error=exc
        )
    return FileOperationResult(success=True, message="ok", path=path, details={**details, "value": value})


class FileSystemService:
    """
    Operations on the unified namespace.

    Args:
        mounts: Source of mount points (``get_mount``, ``list_enabled_mounts``)
        registry: Driver registry used to build one driver per operation

    Virtual paths look like ``/<mount>/<relative path>``; ``/`` alone is
    never a valid data path.
    """

    def __init__(self, mounts: MountSource, registry: DriverRegistry):
        self.mounts = mounts
        self.registry = registry

    # ------------------------------------------------------------------
    # Driver acquisition
    # ------------------------------------------------------------------

    def _enabled_mount(self, mount_path: str) -> MountPoint:
        mount = self.mounts.get_mount(mount_path)
        if mount is None:
            raise PathNotFoundError(f"No storage mounted at {mount_path}")
        if not mount.enabled:
            raise PermissionDeniedError(f"Storage at {mount_path} is disabled")
        return mount

    async def get_driver(self, mount_path: str) -> StorageDriver:
        """
        Build an initialized driver for a mount.

        The caller owns the driver and must close it.

        Raises:
            PathNotFoundError: If nothing is mounted at ``mount_path``
            PermissionDeniedError: If the mount is disabled
            UnsupportedDriverKindError, InvalidConfigError: From the registry
        """
        mount = self._enabled_mount(mount_path)
        return await self.registry.create_driver(mount.driver_kind, mount.config)

    @contextlib.asynccontextmanager
    async def _driver(self, mount_path: str) -> AsyncIterator[StorageDriver]:
        driver = await self.get_driver(mount_path)
        try:
            yield driver
        finally:
            await driver.close()

    @staticmethod
    def _project(mount_path: str, result: FileOperationResult) -> FileOperationResult:
        if result.path is None:
            return result
        return replace(result, path=to_virtual(mount_path, result.path))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list(self, virtual_path: str) -> Listing:
        mount_path, relative = resolve(virtual_path)
        with operation_context("list", mount_path=mount_path):
            async with self._driver(mount_path) as driver:
                listing = await driver.list(relative)
            entries = [e.with_path(to_virtual(mount_path, e.path)) for e in listing.entries]
            logger.info("vfs_list", path=virtual_path, count=len(entries))
            return Listing(
                path=to_virtual(mount_path, listing.path),
                entries=entries,
                writable=listing.writable and driver.writable,
            )

    async def stat(self, virtual_path: str) -> FileEntry:
        mount_path, relative = resolve(virtual_path)
        with operation_context("stat", mount_path=mount_path):
            async with self._driver(mount_path) as driver:
                entry = await driver.stat(relative)
            return entry.with_path(to_virtual(mount_path, entry.path))

    async def get(self, virtual_path: str) -> StreamHandle:
        """
        Open a file for reading.

        The returned handle owns the driver that produced it; closing the
        handle closes the driver as well.
        """
        mount_path, relative = resolve(virtual_path)
        with operation_context("get", mount_path=mount_path):
            driver = await self.get_driver(mount_path)
            try:
                handle = await driver.open_read(relative)
            except BaseException:
                await driver.close()
                raise
            handle.add_closer(driver.close)
            logger.info("vfs_get", path=virtual_path, redirect=handle.is_redirect)
            return handle

    async def upload(self, virtual_dir: str, stream: ByteStream, file_name: str) -> FileOperationResult:
        """Write ``stream`` as ``file_name`` inside the directory ``virtual_dir``."""
        validate_name(file_name)
        mount_path, relative_dir = resolve(virtual_dir)
        target = join_path(relative_dir, file_name)
        with operation_context("upload", mount_path=mount_path):
            async with self._driver(mount_path) as driver:
                result = await driver.write(target, stream)
            logger.info("vfs_upload", path=to_virtual(mount_path, target))
            return self._project(mount_path, result)

    async def make_dir(self, virtual_path: str) -> FileOperationResult:
        mount_path, relative = resolve(virtual_path)
        with operation_context("make_dir", mount_path=mount_path):
            async with self._driver(mount_path) as driver:
                result = await driver.make_dir(relative)
            return self._project(mount_path, result)

    async def remove(self, virtual_path: str) -> FileOperationResult:
        mount_path, relative = resolve(virtual_path)
        with operation_context("remove", mount_path=mount_path):
            async with self._driver(mount_path) as driver:
                result = await driver.remove(relative)
            logger.info("vfs_remove", path=virtual_path)
            return self._project(mount_path, result)

    async def rename(self, virtual_path: str, new_name: str) -> FileOperationResult:
        """Give an entry a new name in the same directory."""
        validate_name(new_name)
        mount_path, relative = resolve(virtual_path)
        if relative == "/":
            raise InvalidPathError(f"Cannot rename a mount root: {virtual_path}")
        parent, _ = split_path(relative)
        target = join_path(parent, new_name)
        with operation_context("rename", mount_path=mount_path):
            async with self._driver(mount_path) as driver:
                result = await driver.rename(relative, target)
            logger.info("vfs_rename", path=virtual_path, new_name=new_name)
            return self._project(mount_path, result)

    async def move(self, src: str, dst: str) -> FileOperationResult:
        """
        Move an entry within one mount.

        Raises:
            CrossMountUnsupportedError: If ``src`` and ``dst`` are on different
                mounts, checked before any backend is touched
        """
        src_mount, src_rel = resolve(src)
        dst_mount, dst_rel = resolve(dst)
        if src_mount != dst_mount:
            raise CrossMountUnsupportedError(
                f"Cannot move between storages: {src_mount} -> {dst_mount}"
            )
        with operation_context("move", mount_path=src_mount):
            async with self._driver(src_mount) as driver:
                result = await driver.move(src_rel, dst_rel)
            logger.info("vfs_move", src=src, dst=dst)
            return self._project(src_mount, result)

    async def copy(self, src: str, dst: str) -> FileOperationResult:
        """
        Copy an entry, within a mount or across mounts.

        Within one mount the backend's own copy is used. Across mounts the
        source file is streamed straight into the destination write; only
        files can be relayed.
        """
        src_mount, src_rel = resolve(src)
        dst_mount, dst_rel = resolve(dst)
        if src_mount == dst_mount:
            with operation_context("copy", mount_path=src_mount):
                async with self._driver(src_mount) as driver:
                    result = await driver.copy(src_rel, dst_rel)
                logger.info("vfs_copy", src=src, dst=dst)
                return self._project(src_mount, result)

        with operation_context("relay_copy", mount_path=src_mount):
            async with contextlib.AsyncExitStack() as stack:
                src_driver = await self.get_driver(src_mount)
                stack.push_async_callback(src_driver.close)
                dst_driver = await self.get_driver(dst_mount)
                stack.push_async_callback(dst_driver.close)
                result = await self._relay(src_driver, src_rel, dst_driver, dst_rel)
            logger.info("vfs_relay_copy", src=src, dst=dst)
            return self._project(dst_mount, result)

    async def _relay(
        self,
        src_driver: StorageDriver,
        src_rel: str,
        dst_driver: StorageDriver,
        dst_rel: str,
    ) -> FileOperationResult:
        entry = await src_driver.stat(src_rel)
        if entry.is_directory:
            raise CrossMountUnsupportedError(f"Cannot copy a directory between storages: {src_rel}")

        # the source handle is closed exactly once, whatever the write does
        async with await src_driver.open_read(src_rel) as handle:
            if not handle.is_redirect:
                return await dst_driver.write(dst_rel, handle.stream)
            stream = iter_url(handle.url)
            try:
                return await dst_driver.write(dst_rel, stream)
            finally:
                await stream.aclose()

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, keyword: str, mount_path: Optional[str] = None) -> List[FileEntry]:
        """
        Find entries whose name contains ``keyword`` (case-insensitive).

        Searches one mount, or every enabled mount in order. Directories and
        mounts that fail are logged and skipped; the rest of the traversal
        goes on.

        Raises:
            PathNotFoundError: If ``mount_path`` is given and nothing is mounted there
        """
        needle = (keyword or "").strip().lower()
        if not needle:
            return []

        if mount_path is None:
            mounts = self.mounts.list_enabled_mounts()
        else:
            mount = self.mounts.get_mount(mount_path)
            if mount is None:
                raise PathNotFoundError(f"No storage mounted at {mount_path}")
            mounts = [mount]

        results: List[FileEntry] = []
        with operation_context("search"):
            for mount in mounts:
                acquired = await _attempt(self.get_driver(mount.mount_path), mount.mount_path)
                if not acquired.success:
                    logger.warning(
                        "search_mount_skipped",
                        mount_path=mount.mount_path,
                        error=acquired.message,
                        error_type=type(acquired.error).__name__,
                    )
                    continue
                driver = acquired.details["value"]
                try:
                    with operation_context("search", mount_path=mount.mount_path):
                        found = await self._search_tree(driver, "/", needle, depth=0)
                finally:
                    await driver.close()
                results.extend(e.with_path(to_virtual(mount.mount_path, e.path)) for e in found)

        logger.info("vfs_search", keyword=keyword, mount_path=mount_path, count=len(results))
        return results

    async def _search_tree(
        self, driver: StorageDriver, path: str, needle: str, depth: int
    ) -> List[FileEntry]:
        listed = await _attempt(driver.list(path), path)
        if not listed.success:
            logger.warning(
                "search_directory_skipped",
                path=path,
                error=listed.message,
                error_type=type(listed.error).__name__,
            )
            return []

        found: List[FileEntry] = []
        for entry in listed.details["value"].entries:
            if needle in entry.name.lower():
                found.append(entry)
            if entry.is_directory:
                if depth + 1 >= settings.SEARCH_MAX_DEPTH:
                    logger.warning("search_depth_limit", path=entry.path, depth=depth + 1)
                    continue
                found.extend(await self._search_tree(driver, entry.path, needle, depth + 1))
        return found

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def check_mount(self, mount_path: str) -> HealthCheckResult:
        """Build the mount's driver and run its health check. Never raises for backend failures."""
        with operation_context("check_mount", mount_path=mount_path):
            acquired = await _attempt(self.get_driver(mount_path), mount_path)
            if not acquired.success:
                logger.warning("mount_check_failed", mount_path=mount_path, error=acquired.message)
                return HealthCheckResult(
                    healthy=False,
                    message=acquired.message,
                    details={"error": type(acquired.error).__name__},
                )
            driver = acquired.details["value"]
            try:
                return await driver.health_check()
            finally:
                await driver.close()
