"""
OneDrive provider.

Wraps ``OneDriveClient`` (Microsoft Graph) to conform to the StorageDriver
interface. Auth uses a delegated refresh token; the aiohttp session lives
between ``_connect`` and ``_disconnect``.
"""
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp
import structlog
from pydantic import Field

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
)
from mountvfs.file_access.paths import join_path, normalize_path, split_path
from mountvfs.file_access.streams import spool, spool_size
from mountvfs.integrations.onedrive_client import (
    SIMPLE_UPLOAD_LIMIT,
    UPLOAD_FRAGMENT_SIZE,
    OneDriveClient,
    RefreshTokenAuth,
)

logger = structlog.get_logger()

_HASH_NAMES = {
    "quickXorHash": "quickxor",
    "sha1Hash": "sha1",
    "sha256Hash": "sha256",
}


class OneDriveConfig(DriverConfig):
    client_id: str = Field(alias="clientId", min_length=1)
    client_secret: str = Field(alias="clientSecret", min_length=1)
    refresh_token: str = Field(alias="refreshToken", min_length=1)
    root_path: str = Field(default="", alias="rootPath")


def _parse_graph_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class OneDriveProvider(RemoteStorageDriver):
    """
    OneDrive provider backed by Microsoft Graph.

    Config schema:
    {
        "clientId": "...",       # Application client ID
        "clientSecret": "...",   # Application secret
        "refreshToken": "...",   # Delegated refresh token
        "rootPath": "/Apps/vfs"  # Optional drive folder used as the mount root
    }

    Parent policy: ``write`` into a missing parent creates it (Graph does
    this for path-addressed uploads); ``make_dir`` creates missing parents.
    Uploads up to 4 MiB use a single PUT, larger ones an upload session.
    ``copy`` is a server-side job that is polled until it finishes.
    """

    kind = "onedrive"
    config_model = OneDriveConfig

    def __init__(self) -> None:
        super().__init__()
        self._session: Optional[aiohttp.ClientSession] = None
        self.client: Optional[OneDriveClient] = None

    async def _connect(self) -> None:
        opts = self.options
        session = aiohttp.ClientSession()
        auth = RefreshTokenAuth(
            client_id=opts.client_id,
            client_secret=opts.client_secret,
            refresh_token=opts.refresh_token,
            session=session,
        )
        try:
            # fetch a token now so bad credentials fail the connect attempt
            await auth.get_auth_headers()
        except BaseException:
            await session.close()
            raise
        self._session = session
        self.client = OneDriveClient(auth, session, root_path=opts.root_path)
        logger.info("onedrive_connected", root_path=opts.root_path or "/")

    async def _disconnect(self) -> None:
        session, self._session = self._session, None
        self.client = None
        if session is not None:
            await session.close()

    async def _client(self) -> OneDriveClient:
        await self.ensure_connected()
        return self.client

    async def _guard(self, coro):
        """Await a client call, dropping the session if the network failed."""
        try:
            return await coro
        except BackendConnectionError as exc:
            raise await self._connection_lost(exc) from exc

    def _to_entry(self, path: str, item: Dict[str, Any]) -> FileEntry:
        file_facet = item.get("file") or {}
        hashes = {
            _HASH_NAMES[key]: value
            for key, value in (file_facet.get("hashes") or {}).items()
            if key in _HASH_NAMES and value
        }
        return FileEntry.build(
            path=path,
            size=item.get("size") or 0,
            is_directory="folder" in item,
            modified_at=_parse_graph_time(item.get("lastModifiedDateTime")),
            mime_type=file_facet.get("mimeType"),
            content_hash=hashes or None,
            name=item.get("name") if path != "/" else None,
        )

    async def _lookup(self, path: str) -> Optional[Dict[str, Any]]:
        client = await self._client()
        try:
            return await self._guard(client.get_item(path))
        except PathNotFoundError:
            return None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list(self, path: str) -> Listing:
        path = normalize_path(path)
        item = await self._lookup(path)
        if item is None or "folder" not in item:
            raise PathNotFoundError(f"Directory not found: {path}")
        children = await self._guard(self.client.list_children(path))
        entries = [self._to_entry(join_path(path, child["name"]), child) for child in children]
        logger.debug("onedrive_list", path=path, count=len(entries))
        return Listing(path=path, entries=entries, writable=True)

    async def stat(self, path: str) -> FileEntry:
        path = normalize_path(path)
        item = await self._lookup(path)
        if item is None:
            raise PathNotFoundError(f"Path not found: {path}")
        return self._to_entry(path, item)

    async def _guard_stream(self, stream: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        try:
            async for chunk in stream:
                yield chunk
        except BackendConnectionError as exc:
            raise await self._connection_lost(exc) from exc
        finally:
            await stream.aclose()

    async def open_read(self, path: str) -> StreamHandle:
        entry = await self.stat(path)
        if entry.is_directory:
            raise PathNotFoundError(f"File not found: {entry.path}")
        return StreamHandle(
            stream=self._guard_stream(self.client.iter_content(entry.path)),
            mime_type=entry.mime_type,
            file_name=entry.name,
            size=entry.size,
        )

    async def write(self, path: str, stream: ByteStream) -> FileOperationResult:
        path = normalize_path(path)
        if path == "/":
            raise PermissionDeniedError("Cannot write to the storage root")
        existing = await self._lookup(path)
        if existing is not None and "folder" in existing:
            raise AlreadyExistsError(f"A directory occupies {path}")

        buffer = await spool(stream)
        try:
            total = spool_size(buffer)
            if total <= SIMPLE_UPLOAD_LIMIT:
                data = await self._run(buffer.read)
                await self._guard(self.client.upload_small(path, data))
            else:
                upload_url = await self._guard(self.client.create_upload_session(path))
                offset = 0
                while offset < total:
                    chunk = await self._run(buffer.read, UPLOAD_FRAGMENT_SIZE)
                    await self._guard(self.client.upload_fragment(upload_url, path, chunk, offset, total))
                    offset += len(chunk)
        finally:
            buffer.close()
        logger.debug("onedrive_write", path=path, size=total)
        return self._ok("File written", path, size=total)

    async def make_dir(self, path: str) -> FileOperationResult:
        path = normalize_path(path)
        current = "/"
        created = False
        for part in [p for p in path.split("/") if p]:
            target = join_path(current, part)
            item = await self._lookup(target)
            if item is None:
                await self._guard(self.client.create_folder(current, part))
                created = True
            elif "folder" not in item:
                raise AlreadyExistsError(f"A file occupies {target}")
            current = target
        return self._ok("Directory created" if created else "Directory exists", path)

    async def remove(self, path: str) -> FileOperationResult:
        path = normalize_path(path)
        if path == "/":
            raise PermissionDeniedError("Refusing to remove the storage root")
        await self.stat(path)
        await self._guard(self.client.delete(path))
        logger.debug("onedrive_remove", path=path)
        return self._ok("Removed", path)

    async def move(self, path: str, new_path: str) -> FileOperationResult:
        path, new_path = normalize_path(path), normalize_path(new_path)
        if path == "/" or new_path == "/":
            raise PermissionDeniedError("Cannot move the storage root")
        await self.stat(path)
        new_parent, new_name = split_path(new_path)
        await self._guard(self.client.move(path, new_parent, new_name))
        logger.debug("onedrive_move", src=path, dst=new_path)
        return self._ok("Moved", new_path, source=path)

    async def copy(self, path: str, new_path: str) -> FileOperationResult:
        path, new_path = normalize_path(path), normalize_path(new_path)
        if new_path == "/":
            raise PermissionDeniedError("Cannot copy onto the storage root")
        await self.stat(path)
        new_parent, new_name = split_path(new_path)
        monitor_url = await self._guard(self.client.copy(path, new_parent, new_name))
        if monitor_url:
            await self._guard(self.client.wait_for_copy(monitor_url, path))
        logger.debug("onedrive_copy", src=path, dst=new_path)
        return self._ok("Copied", new_path, source=path)
