"""
SFTP protocol adapter.

Uses paramiko (SSHClient + SFTPClient). paramiko is blocking, so each SFTP
request runs in the default executor; reads and writes move one chunk per
executor call.
"""
import io
import stat as stat_mode
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import paramiko
import structlog
from pydantic import Field, model_validator

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
    InvalidConfigError,
    PathNotFoundError,
    PermissionDeniedError,
    StorageError,
)
from mountvfs.file_access.paths import join_path, normalize_path, split_path

logger = structlog.get_logger()

_KEY_TYPES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


class SFTPConfig(DriverConfig):
    host: str = Field(min_length=1)
    port: int = Field(default=22, gt=0, lt=65536)
    username: str = Field(min_length=1)
    password: Optional[str] = None
    private_key: Optional[str] = Field(default=None, alias="privateKey")
    private_key_passphrase: Optional[str] = Field(default=None, alias="privateKeyPassphrase")
    timeout: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _one_credential(self) -> "SFTPConfig":
        if bool(self.password) == bool(self.private_key):
            raise ValueError("exactly one of password or privateKey is required")
        return self


def load_private_key(text: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Parse a PEM/OpenSSH private key, trying Ed25519, ECDSA then RSA."""
    for key_type in _KEY_TYPES:
        try:
            return key_type.from_private_key(io.StringIO(text), password=passphrase)
        except paramiko.PasswordRequiredException as exc:
            raise InvalidConfigError("sftp: privateKey is encrypted, privateKeyPassphrase required") from exc
        except (paramiko.SSHException, ValueError):
            continue
    raise InvalidConfigError("sftp: privateKey is not a supported Ed25519, ECDSA or RSA key")


class SFTPProtocolAdapter(RemoteStorageDriver):
    """
    SFTP protocol adapter.

    Configuration:
    {
        "host": "sftp.company.local",   # Required
        "port": 22,                     # Optional, default: 22
        "username": "user",             # Required
        "password": "pass",             # Either password ...
        "privateKey": "-----BEGIN ...", # ... or private key text
        "privateKeyPassphrase": "...",  # Optional, for encrypted keys
        "timeout": 30                   # Optional, seconds
    }

    Unknown host keys are accepted (paramiko AutoAddPolicy).

    Parent policy: ``write`` into a missing parent raises PathNotFoundError;
    ``make_dir`` creates missing parents and is a no-op for an existing
    directory. ``move`` uses posix-rename@openssh.com when the server
    supports it so an existing target is replaced.
    """

    kind = "sftp"
    config_model = SFTPConfig

    def __init__(self) -> None:
        super().__init__()
        self._ssh: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None
        self._pkey: Optional[paramiko.PKey] = None

    async def _setup(self) -> None:
        if self.options.private_key:
            self._pkey = load_private_key(self.options.private_key, self.options.private_key_passphrase)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        opts = self.options
        logger.info("sftp_connecting", host=opts.host, port=opts.port, username=opts.username)

        def _open():
            ssh = paramiko.SSHClient()
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                ssh.connect(
                    hostname=opts.host,
                    port=opts.port,
                    username=opts.username,
                    password=opts.password,
                    pkey=self._pkey,
                    timeout=opts.timeout,
                    allow_agent=False,
                    look_for_keys=False,
                )
                return ssh, ssh.open_sftp()
            except BaseException:
                ssh.close()
                raise

        try:
            self._ssh, self._sftp = await self._run(_open)
        except paramiko.AuthenticationException as exc:
            logger.error("sftp_auth_failed", host=opts.host, username=opts.username)
            raise BackendConnectionError(f"SFTP authentication failed for {opts.username}@{opts.host}") from exc
        except (paramiko.SSHException, OSError, EOFError) as exc:
            logger.error("sftp_connection_failed", host=opts.host, error=str(exc))
            raise BackendConnectionError(f"SFTP connection failed: {exc}") from exc

        logger.info("sftp_connected", host=opts.host)

    async def _disconnect(self) -> None:
        sftp, ssh = self._sftp, self._ssh
        self._sftp = self._ssh = None
        try:
            if sftp is not None:
                await self._run(sftp.close)
            if ssh is not None:
                await self._run(ssh.close)
            logger.info("sftp_disconnected", host=self.options.host)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            logger.warning("sftp_disconnect_error", error=str(exc))

    def _transport_alive(self) -> bool:
        transport = self._ssh.get_transport() if self._ssh is not None else None
        return bool(transport and transport.is_active())

    async def _translate(self, exc: BaseException, path: str) -> StorageError:
        if isinstance(exc, FileNotFoundError):
            return PathNotFoundError(f"Path not found: {path}")
        if isinstance(exc, PermissionError):
            return PermissionDeniedError(f"Access denied: {path}")
        if isinstance(exc, FileExistsError):
            return AlreadyExistsError(f"Path already exists: {path}")
        if isinstance(exc, (paramiko.SSHException, EOFError, ConnectionError, TimeoutError)):
            return await self._connection_lost(exc)
        if not self._transport_alive():
            return await self._connection_lost(exc)
        return StorageError(f"SFTP error on {path}: {exc}")

    async def _call(self, path: str, method: str, *args: Any, **kwargs: Any) -> Any:
        """Run one SFTPClient request, connecting first and translating errors."""
        await self.ensure_connected()
        try:
            return await self._run(getattr(self._sftp, method), *args, **kwargs)
        except (OSError, EOFError, paramiko.SSHException) as exc:
            raise await self._translate(exc, path) from exc

    async def _io(self, path: str, func, *args: Any) -> Any:
        """Run one call on an open remote file handle; a cancellation waits for it."""
        try:
            return await self._run_to_end(func, *args)
        except (OSError, EOFError, paramiko.SSHException) as exc:
            raise await self._translate(exc, path) from exc

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _to_entry(self, path: str, attrs: paramiko.SFTPAttributes) -> FileEntry:
        is_dir = stat_mode.S_ISDIR(attrs.st_mode or 0)
        modified = datetime.fromtimestamp(attrs.st_mtime, tz=timezone.utc) if attrs.st_mtime else None
        return FileEntry.build(path=path, size=attrs.st_size or 0, is_directory=is_dir, modified_at=modified)

    async def _lookup(self, path: str) -> Optional[FileEntry]:
        try:
            attrs = await self._call(path, "stat", path)
        except PathNotFoundError:
            return None
        return self._to_entry(path, attrs)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list(self, path: str) -> Listing:
        path = normalize_path(path)
        entry = await self._lookup(path)
        if entry is None or not entry.is_directory:
            raise PathNotFoundError(f"Directory not found: {path}")
        items = await self._call(path, "listdir_attr", path)
        entries = [self._to_entry(join_path(path, attrs.filename), attrs) for attrs in items]
        logger.debug("sftp_list", path=path, count=len(entries))
        return Listing(path=path, entries=entries, writable=True)

    async def stat(self, path: str) -> FileEntry:
        path = normalize_path(path)
        entry = await self._lookup(path)
        if entry is None:
            raise PathNotFoundError(f"Path not found: {path}")
        return entry

    async def _iter_remote(self, handle, path: str) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._io(path, handle.read, settings.STREAM_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk

    async def open_read(self, path: str) -> StreamHandle:
        path = normalize_path(path)
        entry = await self._lookup(path)
        if entry is None or entry.is_directory:
            raise PathNotFoundError(f"File not found: {path}")
        remote = await self._call(path, "open", path, "rb")
        remote.prefetch(entry.size)
        handle = StreamHandle(
            stream=self._iter_remote(remote, path),
            mime_type=entry.mime_type,
            file_name=entry.name,
            size=entry.size,
        )
        handle.add_closer(remote.close)
        return handle

    async def write(self, path: str, stream: ByteStream) -> FileOperationResult:
        path = normalize_path(path)
        parent, _ = split_path(path)
        parent_entry = await self._lookup(parent)
        if parent_entry is None or not parent_entry.is_directory:
            raise PathNotFoundError(f"Parent directory not found: {path}")
        existing = await self._lookup(path)
        if existing is not None and existing.is_directory:
            raise AlreadyExistsError(f"A directory occupies {path}")

        remote = await self._call(path, "open", path, "wb")
        remote.set_pipelined(True)
        size = 0
        try:
            async for chunk in stream:
                await self._io(path, remote.write, chunk)
                size += len(chunk)
        except BaseException:
            remote.close()
            if self._sftp is not None:
                # drop the partial upload
                try:
                    await self._run(self._sftp.remove, path)
                except (OSError, paramiko.SSHException) as exc:
                    logger.warning("sftp_partial_upload_left", path=path, error=str(exc))
            raise
        await self._io(path, remote.close)

        logger.debug("sftp_write", path=path, size=size)
        return self._ok("File written", path, size=size)

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

    async def _remove_tree(self, path: str) -> None:
        for attrs in await self._call(path, "listdir_attr", path):
            child = join_path(path, attrs.filename)
            if stat_mode.S_ISDIR(attrs.st_mode or 0):
                await self._remove_tree(child)
            else:
                await self._call(child, "remove", child)
        await self._call(path, "rmdir", path)

    async def remove(self, path: str) -> FileOperationResult:
        path = normalize_path(path)
        if path == "/":
            raise PermissionDeniedError("Refusing to remove the storage root")
        entry = await self.stat(path)
        if entry.is_directory:
            await self._remove_tree(path)
        else:
            await self._call(path, "remove", path)
        logger.debug("sftp_remove", path=path)
        return self._ok("Removed", path)

    async def move(self, path: str, new_path: str) -> FileOperationResult:
        path, new_path = normalize_path(path), normalize_path(new_path)
        if path == "/":
            raise PermissionDeniedError("Refusing to move the storage root")
        await self.stat(path)
        try:
            await self._call(new_path, "posix_rename", path, new_path)
        except (PathNotFoundError, PermissionDeniedError, BackendConnectionError):
            raise
        except StorageError:
            # server without the posix-rename extension
            logger.debug("sftp_posix_rename_unsupported", src=path)
            await self._call(new_path, "rename", path, new_path)
        logger.debug("sftp_move", src=path, dst=new_path)
        return self._ok("Moved", new_path, source=path)

    async def _copy_file(self, path: str, new_path: str) -> None:
        src = await self._call(path, "open", path, "rb")
        try:
            dst = await self._call(new_path, "open", new_path, "wb")
            dst.set_pipelined(True)
            try:
                async for chunk in self._iter_remote(src, path):
                    await self._io(new_path, dst.write, chunk)
            finally:
                dst.close()
        finally:
            src.close()

    async def copy(self, path: str, new_path: str) -> FileOperationResult:
        path, new_path = normalize_path(path), normalize_path(new_path)
        entry = await self.stat(path)
        if entry.is_directory:
            await self.make_dir(new_path)
            for attrs in await self._call(path, "listdir_attr", path):
                await self.copy(join_path(path, attrs.filename), join_path(new_path, attrs.filename))
        else:
            await self._copy_file(path, new_path)
        logger.debug("sftp_copy", src=path, dst=new_path)
        return self._ok("Copied", new_path, source=path)
