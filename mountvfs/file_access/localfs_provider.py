"""
Local filesystem driver.

Serves a directory tree on local disk, which also covers any NAS mounted at a
local path (NFS, SMB/CIFS). Everything stays under ``rootPath``.
"""
import os
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, List

import aiofiles
import aiofiles.os
import structlog
from pydantic import Field

from mountvfs.config import settings
from mountvfs.file_access.base_fs import (
    ByteStream,
    DriverConfig,
    FileEntry,
    FileOperationResult,
    Listing,
    StorageDriver,
    StreamHandle,
)
from mountvfs.file_access.errors import (
    AlreadyExistsError,
    PathNotFoundError,
    PermissionDeniedError,
    StorageError,
)
from mountvfs.file_access.paths import normalize_path

logger = structlog.get_logger()


class LocalFSConfig(DriverConfig):
    root_path: str = Field(alias="rootPath", min_length=1)


def _translate(exc: OSError, path: str) -> StorageError:
    if isinstance(exc, (FileNotFoundError, NotADirectoryError)):
        return PathNotFoundError(f"Path not found: {path}")
    if isinstance(exc, FileExistsError):
        return AlreadyExistsError(f"Path already exists: {path}")
    if isinstance(exc, PermissionError):
        return PermissionDeniedError(f"Access denied: {path}")
    return StorageError(f"Local filesystem error on {path}: {exc}")


class LocalFSProvider(StorageDriver):
    """
    Local filesystem driver.

    Config schema:
    {
        "rootPath": "/srv/storage"   # Required, created on init if missing
    }

    Parent policy: ``write`` into a missing parent raises PathNotFoundError;
    ``make_dir`` creates missing parents and is a no-op for an existing
    directory. Paths resolving outside ``rootPath`` (``..`` or symlinks)
    raise PermissionDeniedError.

    Symlinks inside ``rootPath`` are followed by ``list``, ``stat`` and
    ``open_read``; ``remove`` and ``move`` act on the link itself.
    """

    kind = "local"
    config_model = LocalFSConfig

    async def _setup(self) -> None:
        root = Path(self.options.root_path).expanduser()
        try:
            await aiofiles.os.makedirs(root, exist_ok=True)
        except OSError as exc:
            raise _translate(exc, str(root)) from exc
        self.base_path = root.resolve()
        logger.info("localfs_initialized", base_path=str(self.base_path))

    def _resolve_path(self, path: str, follow_symlinks: bool = True) -> Path:
        """
        Resolve relative path to absolute path within base_path.

        With ``follow_symlinks=False`` only the parent is resolved, so a
        symlink at ``path`` names the link itself rather than its target.
        """
        self._require_init()
        relative = normalize_path(path).lstrip("/")
        if not relative:
            return self.base_path
        entry = self.base_path / relative
        if follow_symlinks:
            resolved = entry.resolve()
        else:
            resolved = entry.parent.resolve() / entry.name

        # Security check: ensure resolved path is within base_path
        try:
            resolved.relative_to(self.base_path)
        except ValueError:
            raise PermissionDeniedError(f"Access denied: path '{path}' is outside rootPath")

        return resolved

    def _entry(self, path: str, st: os.stat_result, is_directory: bool) -> FileEntry:
        return FileEntry.build(
            path=path,
            size=st.st_size,
            is_directory=is_directory,
            modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )

    def _scan(self, directory: Path, path: str) -> List[FileEntry]:
        dirs, files = [], []
        with os.scandir(directory) as it:
            for item in it:
                child = f"{path.rstrip('/')}/{item.name}"
                try:
                    is_dir = item.is_dir()
                    st = item.stat()
                except FileNotFoundError:
                    # removed while scanning, or a dangling symlink
                    continue
                (dirs if is_dir else files).append(self._entry(child, st, is_dir))
        dirs.sort(key=lambda e: e.name)
        files.sort(key=lambda e: e.name)
        return dirs + files

    async def list(self, path: str) -> Listing:
        path = normalize_path(path)
        target = self._resolve_path(path)
        if not await aiofiles.os.path.isdir(target):
            raise PathNotFoundError(f"Directory not found: {path}")
        try:
            entries = await self._run(self._scan, target, path)
        except OSError as exc:
            raise _translate(exc, path) from exc
        logger.debug("localfs_list", path=path, count=len(entries))
        return Listing(path=path, entries=entries, writable=True)

    async def stat(self, path: str) -> FileEntry:
        path = normalize_path(path)
        target = self._resolve_path(path)
        try:
            st = await aiofiles.os.stat(target)
        except OSError as exc:
            raise _translate(exc, path) from exc
        return self._entry(path, st, os.path.isdir(target))

    async def _iter_file(self, f) -> AsyncIterator[bytes]:
        while True:
            chunk = await f.read(settings.STREAM_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk

    async def open_read(self, path: str) -> StreamHandle:
        path = normalize_path(path)
        target = self._resolve_path(path)
        if not await aiofiles.os.path.isfile(target):
            raise PathNotFoundError(f"File not found: {path}")
        try:
            f = await aiofiles.open(target, "rb")
        except OSError as exc:
            raise _translate(exc, path) from exc
        handle = StreamHandle(
            stream=self._iter_file(f),
            file_name=target.name,
            size=(await aiofiles.os.stat(target)).st_size,
        )
        handle.add_closer(f.close)
        return handle

    async def write(self, path: str, stream: ByteStream) -> FileOperationResult:
        """Write via a sibling temp file, then atomically replace the target."""
        path = normalize_path(path)
        target = self._resolve_path(path)
        if not await aiofiles.os.path.isdir(target.parent):
            raise PathNotFoundError(f"Parent directory not found: {path}")
        if await aiofiles.os.path.isdir(target):
            raise AlreadyExistsError(f"A directory occupies {path}")

        tmp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}.part")
        size = 0
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                async for chunk in stream:
                    await f.write(chunk)
                    size += len(chunk)
            await aiofiles.os.replace(tmp_path, target)
        except StorageError:
            await self._discard(tmp_path)
            raise
        except OSError as exc:
            await self._discard(tmp_path)
            raise _translate(exc, path) from exc
        except BaseException:
            await self._discard(tmp_path)
            raise

        logger.debug("localfs_write", path=path, size=size)
        return self._ok("File written", path, size=size)

    async def _discard(self, tmp_path: Path) -> None:
        try:
            await aiofiles.os.remove(tmp_path)
        except FileNotFoundError:
            pass

    async def make_dir(self, path: str) -> FileOperationResult:
        path = normalize_path(path)
        target = self._resolve_path(path)
        if await aiofiles.os.path.isfile(target):
            raise AlreadyExistsError(f"A file occupies {path}")
        try:
            await aiofiles.os.makedirs(target, exist_ok=True)
        except OSError as exc:
            raise _translate(exc, path) from exc
        return self._ok("Directory created", path)

    async def remove(self, path: str) -> FileOperationResult:
        path = normalize_path(path)
        target = self._resolve_path(path, follow_symlinks=False)
        if target == self.base_path:
            raise PermissionDeniedError("Refusing to remove the storage root")
        try:
            if await aiofiles.os.path.islink(target):
                # unlink only, the target stays
                await aiofiles.os.remove(target)
            elif await aiofiles.os.path.isdir(target):
                await self._run(shutil.rmtree, target)
            else:
                await aiofiles.os.remove(target)
        except OSError as exc:
            raise _translate(exc, path) from exc
        logger.debug("localfs_remove", path=path)
        return self._ok("Removed", path)

    async def move(self, path: str, new_path: str) -> FileOperationResult:
        path, new_path = normalize_path(path), normalize_path(new_path)
        src = self._resolve_path(path, follow_symlinks=False)
        dst = self._resolve_path(new_path, follow_symlinks=False)
        if not (await aiofiles.os.path.exists(src) or await aiofiles.os.path.islink(src)):
            raise PathNotFoundError(f"Source not found: {path}")
        if src == self.base_path:
            raise PermissionDeniedError("Refusing to move the storage root")
        try:
            await aiofiles.os.replace(src, dst)
        except OSError as exc:
            raise _translate(exc, new_path) from exc
        logger.debug("localfs_move", src=path, dst=new_path)
        return self._ok("Moved", new_path, source=path)

    async def copy(self, path: str, new_path: str) -> FileOperationResult:
        path, new_path = normalize_path(path), normalize_path(new_path)
        src = self._resolve_path(path)
        dst = self._resolve_path(new_path)
        try:
            if await aiofiles.os.path.isdir(src):
                await self._run(shutil.copytree, src, dst, dirs_exist_ok=True)
            elif await aiofiles.os.path.isfile(src):
                await self._run(shutil.copy2, src, dst)
            else:
                raise PathNotFoundError(f"Source not found: {path}")
        except StorageError:
            raise
        except OSError as exc:
            raise _translate(exc, new_path) from exc
        logger.debug("localfs_copy", src=path, dst=new_path)
        return self._ok("Copied", new_path, source=path)
