"""
WebDAV protocol adapter.

Uses webdavclient3 (``webdav3.client.Client``), a blocking requests-based
client. Each request runs in the default executor; downloads are pulled
from ``download_iter`` one chunk per executor call. Uploads are spooled and
sent through a CancellableReader so a cancelled write aborts the PUT body.
"""
import posixpath
from email.utils import parsedate_to_datetime
from typing import Any, AsyncIterator, Callable, Dict, Optional
from urllib.parse import unquote

import structlog
from pydantic import Field
from webdav3.client import Client
from webdav3.exceptions import (
    ConnectionException,
    NoConnection,
    RemoteParentNotFound,
    RemoteResourceNotFound,
    ResponseErrorCode,
    WebDavException,
)

from mountvfs.file_access.base_fs import (
    ByteStream,
    DriverConfig,
    FileEntry,
    FileOperationResult,
    Listing,
    RemoteStorageDriver,
    StreamHandle,
)
from mountvfs.file_access.errors import (
    AlreadyExistsError,
    BackendConnectionError,
    PathNotFoundError,
    PermissionDeniedError,
    StorageError,
)
from mountvfs.file_access.paths import join_path, normalize_path, split_path
from mountvfs.file_access.streams import CancellableReader, spool, spool_size

logger = structlog.get_logger()

_END = object()


class WebDAVConfig(DriverConfig):
    url: str = Field(min_length=1)
    username: Optional[str] = None
    password: Optional[str] = None
    timeout: float = Field(default=30.0, gt=0)


def _parse_http_date(value: Optional[str]):
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


class WebDAVProtocolAdapter(RemoteStorageDriver):
    """
    WebDAV protocol adapter.

    Configuration:
    {
        "url": "https://cloud.example.com/remote.php/dav/files/user",  # Required
        "username": "user",                                             # Optional
        "password": "pass",                                             # Optional
        "timeout": 30                                                   # Optional, seconds
    }

    Parent policy: ``write`` into a missing parent raises PathNotFoundError;
    ``make_dir`` creates missing parents and is a no-op for an existing
    directory. ``copy`` and ``move`` are server-side COPY/MOVE requests.
    """

    kind = "webdav"
    config_model = WebDAVConfig

    def __init__(self) -> None:
        super().__init__()
        self._client: Optional[Client] = None

    def _client_options(self) -> Dict[str, Any]:
        opts = self.options
        options: Dict[str, Any] = {
            "webdav_hostname": opts.url.rstrip("/"),
            "webdav_timeout": opts.timeout,
        }
        if opts.username:
            options["webdav_login"] = opts.username
            options["webdav_password"] = opts.password or ""
        return options

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        client = Client(self._client_options())
        logger.info("webdav_connecting", url=self.options.url)
        try:
            await self._run(client.check, "/")
        except ResponseErrorCode as exc:
            logger.error("webdav_connection_failed", url=self.options.url, status=exc.code)
            raise BackendConnectionError(f"WebDAV server rejected the session: HTTP {exc.code}") from exc
        except WebDavException as exc:
            logger.error("webdav_connection_failed", url=self.options.url, error=str(exc))
            raise BackendConnectionError(f"WebDAV connection failed: {exc}") from exc
        self._client = client
        logger.info("webdav_connected", url=self.options.url)

    async def _disconnect(self) -> None:
        client, self._client = self._client, None
        session = getattr(client, "session", None)
        if session is not None:
            session.close()

    async def _translate(self, exc: WebDavException, path: str) -> StorageError:
        if isinstance(exc, (RemoteResourceNotFound, RemoteParentNotFound)):
            return PathNotFoundError(f"Path not found: {path}")
        if isinstance(exc, ResponseErrorCode):
            if exc.code == 404:
                return PathNotFoundError(f"Path not found: {path}")
            if exc.code in (401, 403):
                return PermissionDeniedError(f"Access denied: {path}")
            if exc.code == 405:
                return AlreadyExistsError(f"Path already exists: {path}")
            return StorageError(f"WebDAV error on {path}: HTTP {exc.code}")
        if isinstance(exc, (NoConnection, ConnectionException)):
            return await self._connection_lost(exc)
        return StorageError(f"WebDAV error on {path}: {exc}")

    async def _call(
        self,
        path: str,
        method: str,
        *args: Any,
        on_cancel: Optional[Callable[[], None]] = None,
        **kwargs: Any,
    ) -> Any:
        """Run one client request, connecting first and translating errors."""
        await self.ensure_connected()
        func = getattr(self._client, method)
        try:
            if on_cancel is not None:
                return await self._run_to_end(func, *args, on_cancel=on_cancel, **kwargs)
            return await self._run(func, *args, **kwargs)
        except WebDavException as exc:
            raise await self._translate(exc, path) from exc

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _to_entry(self, path: str, info: Dict[str, Any], is_dir: bool) -> FileEntry:
        content_hash = {"etag": info["etag"].strip('"')} if info.get("etag") else None
        return FileEntry.build(
            path=path,
            size=int(info.get("size") or 0),
            is_directory=is_dir,
            modified_at=_parse_http_date(info.get("modified")),
            mime_type=info.get("content_type") or None,
            content_hash=content_hash,
        )

    async def _lookup(self, path: str) -> Optional[FileEntry]:
        path = normalize_path(path)
        try:
            is_dir = await self._call(path, "is_dir", path)
            info = await self._call(path, "info", path)
        except PathNotFoundError:
            return None
        return self._to_entry(path, info, bool(is_dir))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list(self, path: str) -> Listing:
        path = normalize_path(path)
        entry = await self._lookup(path)
        if entry is None or not entry.is_directory:
            raise PathNotFoundError(f"Directory not found: {path}")

        items = await self._call(path, "list", path, get_info=True)
        entries = []
        for info in items:
            name = unquote(posixpath.basename(str(info.get("path", "")).rstrip("/")))
            if not name:
                continue
            entries.append(self._to_entry(join_path(path, name), info, bool(info.get("isdir"))))

        logger.debug("webdav_list", path=path, count=len(entries))
        return Listing(path=path, entries=entries, writable=True)

    async def stat(self, path: str) -> FileEntry:
        entry = await self._lookup(path)
        if entry is None:
            raise PathNotFoundError(f"Path not found: {path}")
        return entry

    async def _iter_download(self, chunks, path: str) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await self._run(next, chunks, _END)
                if chunk is _END:
                    break
                if chunk:
                    yield chunk
        except WebDavException as exc:
            raise await self._translate(exc, path) from exc
        except OSError as exc:
            raise await self._connection_lost(exc) from exc

    async def open_read(self, path: str) -> StreamHandle:
        path = normalize_path(path)
        entry = await self._lookup(path)
        if entry is None or entry.is_directory:
            raise PathNotFoundError(f"File not found: {path}")
        chunks = await self._call(path, "download_iter", path)
        handle = StreamHandle(
            stream=self._iter_download(iter(chunks), path),
            mime_type=entry.mime_type,
            file_name=entry.name,
            size=entry.size,
        )
        close = getattr(chunks, "close", None)
        if close is not None:
            handle.add_closer(close)
        return handle

    async def write(self, path: str, stream: ByteStream) -> FileOperationResult:
        path = normalize_path(path)
        parent, _ = split_path(path)
        parent_entry = await self._lookup(parent)
        if parent_entry is None or not parent_entry.is_directory:
            raise PathNotFoundError(f"Parent directory not found: {path}")

        buffer = await spool(stream)
        body = CancellableReader(buffer, spool_size(buffer))
        try:
            await self._call(path, "upload_to", body, path, on_cancel=body.cancel)
        finally:
            buffer.close()
        logger.debug("webdav_write", path=path)
        return self._ok("File written", path)

    async def make_dir(self, path: str) -> FileOperationResult:
        path = normalize_path(path)
        current = ""
        created = False
        for part in [p for p in path.split("/") if p]:
            current = f"{current}/{part}"
            entry = await self._lookup(current)
            if entry is None:
                await self._call(current, "mkdir", current)
                created = True
            elif not entry.is_directory:
                raise AlreadyExistsError(f"A file occupies {current}")
        return self._ok("Directory created" if created else "Directory exists", path)

    async def remove(self, path: str) -> FileOperationResult:
        path = normalize_path(path)
        if path == "/":
            raise PermissionDeniedError("Refusing to remove the storage root")
        await self.stat(path)
        await self._call(path, "clean", path)
        logger.debug("webdav_remove", path=path)
        return self._ok("Removed", path)

    async def move(self, path: str, new_path: str) -> FileOperationResult:
        path, new_path = normalize_path(path), normalize_path(new_path)
        if path == "/":
            raise PermissionDeniedError("Refusing to move the storage root")
        await self.stat(path)
        await self._call(new_path, "move", path, new_path, overwrite=True)
        logger.debug("webdav_move", src=path, dst=new_path)
        return self._ok("Moved", new_path, source=path)

    async def copy(self, path: str, new_path: str) -> FileOperationResult:
        path, new_path = normalize_path(path), normalize_path(new_path)
        await self.stat(path)
        await self._call(new_path, "copy", path, new_path, depth="infinity")
        logger.debug("webdav_copy", src=path, dst=new_path)
        return self._ok("Copied", new_path, source=path)
