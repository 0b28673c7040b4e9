"""
FTP/FTPS protocol adapter.

Uses the standard library ftplib. ftplib is blocking, so every command runs
in the default executor. Transfers go through ``transfercmd``: downloads
read one ``recv`` per chunk and uploads send one ``sendall`` per chunk.
"""
import ftplib
import ssl
from datetime import datetime, timezone
from ftplib import FTP, FTP_TLS
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import structlog
from pydantic import Field

from mountvfs.config import settings
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
    InvalidPathError,
    PathNotFoundError,
    PermissionDeniedError,
    StorageError,
)
from mountvfs.file_access.paths import join_path, normalize_path, split_path
from mountvfs.file_access.streams import iter_fileobj, new_spool

logger = structlog.get_logger()

_TRANSPORT_ERRORS = (OSError, EOFError, ftplib.error_temp, ftplib.error_proto, ftplib.error_reply)


class FTPConfig(DriverConfig):
    host: str = Field(min_length=1)
    port: int = Field(default=21, gt=0, lt=65536)
    username: str = "anonymous"
    password: str = ""
    timeout: float = Field(default=30.0, gt=0)
    passive: bool = True
    tls: bool = False


def _parse_modify(value: Optional[str]) -> Optional[datetime]:
    """Parse an MLSD ``modify`` fact (``YYYYMMDDHHMMSS[.sss]``, UTC)."""
    if not value:
        return None
    try:
        return datetime.strptime(value[:14], "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


class FTPProtocolAdapter(RemoteStorageDriver):
    """
    FTP/FTPS protocol adapter.

    Configuration:
    {
        "host": "ftp.company.local",   # Required
        "port": 21,                    # Optional, default: 21
        "username": "user",            # Optional, default: anonymous
        "password": "pass",            # Optional
        "timeout": 30,                 # Optional, socket timeout in seconds
        "passive": true,               # Optional, passive mode (default: true)
        "tls": false                   # Optional, explicit FTPS (FTP_TLS + PROT P)
    }

    Listings use MLSD, so the server must support RFC 3659.

    Parent policy: ``write`` into a missing parent raises PathNotFoundError;
    ``make_dir`` creates missing parents and is a no-op for an existing
    directory. ``copy`` downloads into a spool and uploads it again.
    """

    kind = "ftp"
    config_model = FTPConfig

    def __init__(self) -> None:
        super().__init__()
        self._ftp: Optional[FTP] = None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        opts = self.options
        logger.info("ftp_connecting", host=opts.host, port=opts.port, tls=opts.tls)

        def _open() -> FTP:
            ftp = FTP_TLS(timeout=opts.timeout) if opts.tls else FTP(timeout=opts.timeout)
            ftp.connect(opts.host, opts.port)
            ftp.login(opts.username, opts.password)
            if opts.tls:
                ftp.prot_p()
            ftp.set_pasv(opts.passive)
            return ftp

        try:
            self._ftp = await self._run(_open)
        except ftplib.error_perm as exc:
            logger.error("ftp_login_failed", host=opts.host, error=str(exc))
            raise BackendConnectionError(f"FTP login rejected by {opts.host}: {exc}") from exc
        except _TRANSPORT_ERRORS as exc:
            logger.error("ftp_connection_failed", host=opts.host, error=str(exc))
            raise BackendConnectionError(f"FTP connection failed: {exc}") from exc

        logger.info("ftp_connected", host=opts.host)

    async def _disconnect(self) -> None:
        ftp, self._ftp = self._ftp, None
        if ftp is None:
            return
        try:
            await self._run(ftp.quit)
        except (*_TRANSPORT_ERRORS, ftplib.error_perm) as exc:
            logger.warning("ftp_disconnect_error", error=str(exc))
            ftp.close()
        logger.info("ftp_disconnected", host=self.options.host)

    async def _cmd(self, path: str, func, *args: Any, to_end: bool = False) -> Any:
        """
        Run one ftplib call, connecting first and translating errors.

        ``to_end`` is for calls holding a caller-owned buffer or an open
        transfer: a cancellation waits for the call to return.
        """
        await self.ensure_connected()
        run = self._run_to_end if to_end else self._run
        try:
            return await run(func, *args)
        except ftplib.error_perm as exc:
            raise self._translate_perm(exc, path) from exc
        except _TRANSPORT_ERRORS as exc:
            raise await self._connection_lost(exc) from exc

    def _translate_perm(self, exc: ftplib.error_perm, path: str) -> StorageError:
        code = str(exc)[:3]
        if code == "550":
            return PathNotFoundError(f"Path not found: {path}")
        if code in ("530", "532"):
            return PermissionDeniedError(f"Access denied: {path}")
        if code == "553":
            return InvalidPathError(f"File name not allowed: {path}")
        return StorageError(f"FTP error on {path}: {exc}")

    # ------------------------------------------------------------------
    # Listing helpers
    # ------------------------------------------------------------------

    def _mlsd(self, path: str) -> List[Tuple[str, Dict[str, str]]]:
        return list(self._ftp.mlsd(path, facts=["type", "size", "modify"]))

    def _to_entry(self, parent: str, name: str, facts: Dict[str, str]) -> FileEntry:
        is_dir = facts.get("type", "").lower() == "dir"
        return FileEntry.build(
            path=join_path(parent, name),
            size=int(facts.get("size", 0) or 0),
            is_directory=is_dir,
            modified_at=_parse_modify(facts.get("modify")),
        )

    async def _lookup(self, path: str) -> Optional[FileEntry]:
        path = normalize_path(path)
        if path == "/":
            return FileEntry.build(path="/", size=0, is_directory=True)
        parent, name = split_path(path)
        try:
            items = await self._cmd(parent, self._mlsd, parent)
        except PathNotFoundError:
            return None
        for item_name, facts in items:
            if item_name == name and facts.get("type", "").lower() in ("dir", "file"):
                return self._to_entry(parent, item_name, facts)
        return None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list(self, path: str) -> Listing:
        path = normalize_path(path)
        try:
            items = await self._cmd(path, self._mlsd, path)
        except (BackendConnectionError, PermissionDeniedError):
            raise
        except StorageError as exc:
            # 550 for a missing path, 501 for MLSD on a file
            raise PathNotFoundError(f"Directory not found: {path}") from exc

        entries = []
        for name, facts in items:
            kind = facts.get("type", "").lower()
            if kind in ("dir", "file"):
                entries.append(self._to_entry(path, name, facts))

        logger.debug("ftp_list", path=path, count=len(entries))
        return Listing(path=path, entries=entries, writable=True)

    async def stat(self, path: str) -> FileEntry:
        entry = await self._lookup(path)
        if entry is None:
            raise PathNotFoundError(f"Path not found: {path}")
        return entry

    async def _iter_socket(self, conn, path: str) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await self._run(conn.recv, settings.STREAM_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        except OSError as exc:
            raise await self._connection_lost(exc) from exc

    async def _end_transfer(self, conn) -> None:
        conn.close()
        if self._ftp is None:
            return
        try:
            await self._run(self._ftp.voidresp)
        except (*_TRANSPORT_ERRORS, ftplib.error_perm) as exc:
            # an aborted transfer leaves the control channel in an unknown state
            await self._connection_lost(exc)

    async def open_read(self, path: str) -> StreamHandle:
        path = normalize_path(path)
        entry = await self._lookup(path)
        if entry is None or entry.is_directory:
            raise PathNotFoundError(f"File not found: {path}")

        conn = await self._cmd(path, self._start_transfer, f"RETR {path}")
        handle = StreamHandle(
            stream=self._iter_socket(conn, path),
            mime_type=entry.mime_type,
            file_name=entry.name,
            size=entry.size,
        )
        handle.add_closer(lambda: self._end_transfer(conn))
        return handle

    def _start_transfer(self, command: str):
        self._ftp.voidcmd("TYPE I")
        return self._ftp.transfercmd(command)

    @staticmethod
    def _close_data(conn) -> None:
        # FTPS: send close_notify before closing, as ftplib's storbinary does
        if isinstance(conn, ssl.SSLSocket):
            conn.unwrap()
        conn.close()

    def _ftp_voidresp(self) -> None:
        self._ftp.voidresp()

    async def _send(self, conn, chunk: bytes, path: str) -> None:
        try:
            await self._run_to_end(conn.sendall, chunk)
        except OSError as exc:
            raise StorageError(f"FTP upload of {path} failed: {exc}") from exc

    async def _discard_partial(self, path: str) -> None:
        try:
            await self._cmd(path, self._ftp_delete, path)
        except StorageError as exc:
            logger.warning("ftp_partial_upload_left", path=path, error=str(exc))
        else:
            logger.info("ftp_partial_upload_removed", path=path)

    async def _store(self, path: str, stream: ByteStream) -> int:
        """
        STOR ``stream`` to ``path``, one ``sendall`` per chunk.

        A failed or cancelled upload aborts the transfer and deletes the
        partial remote file. Returns the number of bytes sent.
        """
        conn = await self._cmd(path, self._start_transfer, f"STOR {path}")
        size = 0
        try:
            async for chunk in stream:
                if chunk:
                    await self._send(conn, chunk, path)
                    size += len(chunk)
        except BaseException:
            await self._end_transfer(conn)
            await self._discard_partial(path)
            raise

        try:
            await self._cmd(path, self._close_data, conn, to_end=True)
            await self._cmd(path, self._ftp_voidresp, to_end=True)
        except StorageError:
            # e.g. 552 quota exceeded after the data was sent
            await self._discard_partial(path)
            raise
        return size

    async def write(self, path: str, stream: ByteStream) -> FileOperationResult:
        path = normalize_path(path)
        parent, _ = split_path(path)
        parent_entry = await self._lookup(parent)
        if parent_entry is None or not parent_entry.is_directory:
            raise PathNotFoundError(f"Parent directory not found: {path}")

        size = await self._store(path, stream)
        logger.debug("ftp_write", path=path, size=size)
        return self._ok("File written", path, size=size)

    async def make_dir(self, path: str) -> FileOperationResult:
        path = normalize_path(path)
        entry = await self._lookup(path)
        if entry is not None:
            if not entry.is_directory:
                raise AlreadyExistsError(f"A file occupies {path}")
            return self._ok("Directory exists", path)

        parent, _ = split_path(path)
        if parent != "/":
            await self.make_dir(parent)
        await self._cmd(path, self._ftp_mkd, path)
        return self._ok("Directory created", path)

    def _ftp_mkd(self, path: str) -> None:
        self._ftp.mkd(path)

    async def _remove_tree(self, path: str) -> None:
        for name, facts in await self._cmd(path, self._mlsd, path):
            kind = facts.get("type", "").lower()
            child = join_path(path, name)
            if kind == "dir":
                await self._remove_tree(child)
            elif kind == "file":
                await self._cmd(child, self._ftp_delete, child)
        await self._cmd(path, self._ftp_rmd, path)

    def _ftp_delete(self, path: str) -> None:
        self._ftp.delete(path)

    def _ftp_rmd(self, path: str) -> None:
        self._ftp.rmd(path)

    async def remove(self, path: str) -> FileOperationResult:
        path = normalize_path(path)
        if path == "/":
            raise PermissionDeniedError("Refusing to remove the storage root")
        entry = await self._lookup(path)
        if entry is None:
            raise PathNotFoundError(f"Path not found: {path}")
        if entry.is_directory:
            await self._remove_tree(path)
        else:
            await self._cmd(path, self._ftp_delete, path)
        logger.debug("ftp_remove", path=path)
        return self._ok("Removed", path)

    async def move(self, path: str, new_path: str) -> FileOperationResult:
        path, new_path = normalize_path(path), normalize_path(new_path)
        if path == "/":
            raise PermissionDeniedError("Refusing to move the storage root")
        if await self._lookup(path) is None:
            raise PathNotFoundError(f"Source not found: {path}")
        await self._cmd(new_path, self._ftp_rename, path, new_path)
        logger.debug("ftp_move", src=path, dst=new_path)
        return self._ok("Moved", new_path, source=path)

    def _ftp_rename(self, path: str, new_path: str) -> None:
        self._ftp.rename(path, new_path)

    def _ftp_retr(self, path: str, buffer) -> None:
        self._ftp.retrbinary(f"RETR {path}", buffer.write, blocksize=settings.STREAM_CHUNK_SIZE)
        buffer.seek(0)

    async def _copy_file(self, path: str, new_path: str) -> None:
        buffer = new_spool()
        try:
            await self._cmd(path, self._ftp_retr, path, buffer, to_end=True)
            await self._store(new_path, iter_fileobj(buffer))
        finally:
            buffer.close()

    async def copy(self, path: str, new_path: str) -> FileOperationResult:
        path, new_path = normalize_path(path), normalize_path(new_path)
        entry = await self._lookup(path)
        if entry is None:
            raise PathNotFoundError(f"Source not found: {path}")

        if entry.is_directory:
            await self.make_dir(new_path)
            for name, facts in await self._cmd(path, self._mlsd, path):
                kind = facts.get("type", "").lower()
                if kind in ("dir", "file"):
                    await self.copy(join_path(path, name), join_path(new_path, name))
        else:
            await self._copy_file(path, new_path)

        logger.debug("ftp_copy", src=path, dst=new_path)
        return self._ok("Copied", new_path, source=path)
