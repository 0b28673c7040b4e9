"""
Base storage driver interface for all backends.

This interface defines the contract that every backend driver (local disk,
S3, OSS, FTP, SFTP, WebDAV, OneDrive) must implement. Drivers always receive
backend-relative paths; the virtual namespace is handled one level up by
``FileSystemService``.
"""
from __future__ import annotations

import asyncio
import contextlib
import enum
import functools
import inspect
import json
import mimetypes
import posixpath
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterator,
    Callable,
    ClassVar,
    Dict,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
    Union,
)

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from mountvfs.file_access.errors import (
    BackendConnectionError,
    InvalidConfigError,
    StorageError,
)
from mountvfs.file_access.paths import normalize_path

logger = structlog.get_logger()

T = TypeVar("T")

ByteStream = AsyncIterator[bytes]


class FileKind(str, enum.Enum):
    """Coarse content category derived from the file extension."""

    OTHER = "other"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    TEXT = "text"


_KIND_BY_EXTENSION: Dict[str, FileKind] = {
    **{ext: FileKind.IMAGE for ext in (".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".svg")},
    **{ext: FileKind.VIDEO for ext in (".mp4", ".avi", ".mkv", ".mov", ".wmv", ".flv", ".webm")},
    **{ext: FileKind.AUDIO for ext in (".mp3", ".wav", ".flac", ".aac", ".ogg", ".m4a")},
    **{ext: FileKind.TEXT for ext in (".txt", ".md", ".log")},
}


def classify(name: str, is_directory: bool = False) -> FileKind:
    if is_directory:
        return FileKind.OTHER
    return _KIND_BY_EXTENSION.get(posixpath.splitext(name)[1].lower(), FileKind.OTHER)


def guess_mime_type(name: str) -> Optional[str]:
    """Guess MIME type from file extension."""
    mime_type, _ = mimetypes.guess_type(name)
    return mime_type


@dataclass
class FileEntry:
    """Information about a file or directory."""
    name: str
    path: str
    size: int
    is_directory: bool
    modified_at: datetime
    kind: FileKind = FileKind.OTHER
    mime_type: Optional[str] = None
    content_hash: Optional[Dict[str, str]] = None

    @classmethod
    def build(
        cls,
        path: str,
        size: int,
        is_directory: bool,
        modified_at: Optional[datetime] = None,
        mime_type: Optional[str] = None,
        content_hash: Optional[Dict[str, str]] = None,
        name: Optional[str] = None,
    ) -> "FileEntry":
        """Create an entry, deriving name, kind and MIME type from the path."""
        path = normalize_path(path)
        name = name or posixpath.basename(path) or "/"
        if modified_at is None:
            modified_at = datetime.now(timezone.utc)
        elif modified_at.tzinfo is None:
            modified_at = modified_at.replace(tzinfo=timezone.utc)
        if mime_type is None and not is_directory:
            mime_type = guess_mime_type(name)
        return cls(
            name=name,
            path=path,
            size=0 if is_directory else int(size or 0),
            is_directory=is_directory,
            modified_at=modified_at,
            kind=classify(name, is_directory),
            mime_type=mime_type,
            content_hash=content_hash,
        )

    def with_path(self, path: str) -> "FileEntry":
        return replace(self, path=path)


@dataclass
class Listing:
    """Contents of one directory."""
    path: str
    entries: List[FileEntry] = field(default_factory=list)
    writable: bool = True

    @property
    def total(self) -> int:
        return len(self.entries)


@dataclass
class FileOperationResult:
    """Result of a file operation."""
    success: bool
    message: str
    path: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    error: Optional[BaseException] = None


@dataclass
class HealthCheckResult:
    """Result of a health check."""
    healthy: bool
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    protocol: Optional[str] = None
    latency_ms: Optional[float] = None


async def _call_closer(closer: Callable[[], Any]) -> None:
    result = closer()
    if inspect.isawaitable(result):
        await result


class StreamHandle:
    """
    Readable content returned by ``open_read``.

    Exactly one of ``stream`` (an async iterator of byte chunks) or ``url``
    (a redirect the caller fetches itself) is set. The handle owns the stream
    and every resource registered with ``add_closer``; ``aclose`` releases
    them once, later calls do nothing. Use it as an async context manager:

        async with await driver.open_read("/a.bin") as handle:
            async for chunk in handle:
                ...
    """

    def __init__(
        self,
        stream: Optional[ByteStream] = None,
        url: Optional[str] = None,
        mime_type: Optional[str] = None,
        file_name: str = "",
        size: Optional[int] = None,
    ):
        if (stream is None) == (url is None):
            raise ValueError("StreamHandle needs exactly one of stream or url")
        self.stream = stream
        self.url = url
        self.mime_type = mime_type or guess_mime_type(file_name) or "application/octet-stream"
        self.file_name = file_name
        self.size = size
        self._closers: List[Callable[[], Any]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_redirect(self) -> bool:
        return self.url is not None

    def add_closer(self, closer: Callable[[], Any]) -> None:
        """Register a sync or async callable run when the handle closes.

        The stream is closed first, then closers run in registration order,
        so a driver registered after its own transfer resources goes last.
        """
        self._closers.append(closer)

    def __aiter__(self) -> ByteStream:
        if self.stream is None:
            raise TypeError(f"StreamHandle for {self.file_name!r} is a redirect to {self.url}")
        if self._closed:
            raise ValueError("I/O operation on closed StreamHandle")
        return self.stream.__aiter__()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        async with contextlib.AsyncExitStack() as stack:
            for closer in reversed(self._closers):
                stack.push_async_callback(_call_closer, closer)
            aclose = getattr(self.stream, "aclose", None)
            if aclose is not None:
                stack.push_async_callback(aclose)

    async def __aenter__(self) -> "StreamHandle":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    def __repr__(self) -> str:
        target = f"url={self.url!r}" if self.url else "stream"
        return f"<StreamHandle {self.file_name!r} {target} closed={self._closed}>"


class DriverConfig(BaseModel):
    """Base for driver configuration models.

    Fields declare camelCase aliases matching the mount configuration blob;
    snake_case field names are accepted as well.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StorageDriver(ABC):
    """
    Abstract base class for storage drivers.

    Subclasses declare ``kind`` (the registry name) and ``config_model`` (a
    pydantic model validating the mount configuration blob), then implement
    the nine operations below. All methods are async; blocking client
    libraries run one call at a time in the default executor through
    ``_run`` so task cancellation is observed between backend calls.

    A driver instance is meant for one logical operation at a time and is
    not safe to share between concurrent operations.
    """

    kind: ClassVar[str] = "unknown"
    config_model: ClassVar[Type[BaseModel]] = DriverConfig
    writable: ClassVar[bool] = True

    def __init__(self) -> None:
        self.options: Any = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self, config: Union[str, Mapping[str, Any], None]) -> None:
        """
        Validate the mount configuration and prepare the client.

        Args:
            config: JSON text or mapping, see the driver's ``config_model``

        Raises:
            InvalidConfigError: If required keys are missing or malformed
        """
        self.options = self.parse_config(config)
        await self._setup()
        self._initialized = True
        logger.debug("driver_initialized", kind=self.kind)

    @classmethod
    def parse_config(cls, config: Union[str, Mapping[str, Any], None]) -> BaseModel:
        if config is None:
            config = {}
        if isinstance(config, (str, bytes)):
            try:
                config = json.loads(config or "{}")
            except json.JSONDecodeError as exc:
                raise InvalidConfigError(f"{cls.kind}: configuration is not valid JSON: {exc}") from exc
        if not isinstance(config, Mapping):
            raise InvalidConfigError(f"{cls.kind}: configuration must be a JSON object")
        try:
            return cls.config_model.model_validate(dict(config))
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
                for err in exc.errors()
            )
            raise InvalidConfigError(f"{cls.kind}: invalid configuration ({problems})") from exc

    async def _setup(self) -> None:
        """Build clients from ``self.options``. No I/O by default."""

    async def close(self) -> None:
        """Release backend resources. Safe to call more than once."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    def _require_init(self) -> None:
        if not self._initialized:
            raise StorageError(f"{self.kind} driver not initialized")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @abstractmethod
    async def list(self, path: str) -> Listing:
        """
        List a directory.

        Args:
            path: Backend-relative directory path

        Returns:
            Listing with one FileEntry per child, in backend order

        Raises:
            PathNotFoundError: If the path is not an existing directory
        """

    @abstractmethod
    async def stat(self, path: str) -> FileEntry:
        """
        Describe a file or directory.

        Raises:
            PathNotFoundError: If the path does not exist
        """

    @abstractmethod
    async def open_read(self, path: str) -> StreamHandle:
        """
        Open a file for streaming reads.

        The returned handle owns the stream; the caller must close it.

        Raises:
            PathNotFoundError: If the file does not exist
        """

    @abstractmethod
    async def write(self, path: str, stream: ByteStream) -> FileOperationResult:
        """
        Write a whole file from a stream of chunks, replacing any content.

        Whether missing parent directories are created or rejected is a
        per-driver policy documented on each class.
        """

    @abstractmethod
    async def make_dir(self, path: str) -> FileOperationResult:
        """
        Create a directory. Existing directories are left untouched.

        Raises:
            AlreadyExistsError: If a file occupies the path
        """

    @abstractmethod
    async def remove(self, path: str) -> FileOperationResult:
        """
        Remove a file, or a directory with everything below it.

        Raises:
            PathNotFoundError: If the path does not exist
        """

    @abstractmethod
    async def move(self, path: str, new_path: str) -> FileOperationResult:
        """
        Relocate an entry inside this backend.

        Raises:
            PathNotFoundError: If the source does not exist
        """

    async def rename(self, path: str, new_path: str) -> FileOperationResult:
        """Same-backend relocation; identical to ``move``."""
        return await self.move(path, new_path)

    @abstractmethod
    async def copy(self, path: str, new_path: str) -> FileOperationResult:
        """
        Duplicate an entry inside this backend, keeping the source.

        Raises:
            PathNotFoundError: If the source does not exist
        """

    async def health_check(self) -> HealthCheckResult:
        """
        Check backend connectivity by listing the root directory.

        Never raises for backend failures; they are reported in the result.
        """
        started = time.monotonic()
        try:
            listing = await self.list("/")
        except (StorageError, OSError) as exc:
            logger.warning("health_check_failed", kind=self.kind, error=str(exc))
            return HealthCheckResult(
                healthy=False,
                message=f"{self.kind} backend unhealthy: {exc}",
                details={"error": type(exc).__name__},
                protocol=self.kind,
                latency_ms=(time.monotonic() - started) * 1000,
            )
        return HealthCheckResult(
            healthy=True,
            message=f"{self.kind} backend healthy",
            details={"root_entries": listing.total},
            protocol=self.kind,
            latency_ms=(time.monotonic() - started) * 1000,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run one blocking client call in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def _run_to_end(
        self,
        func: Callable[..., T],
        *args: Any,
        on_cancel: Optional[Callable[[], None]] = None,
        **kwargs: Any,
    ) -> T:
        """
        Like ``_run``, for calls that hold a buffer or socket owned by the caller.

        On cancellation ``on_cancel`` is called (to cut the worker short) and
        the worker thread is awaited before CancelledError propagates, so the
        caller may release the buffer or socket afterwards.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            if on_cancel is not None:
                on_cancel()
            await asyncio.wait([future])
            if not future.cancelled():
                # retrieved so the loop does not log it as unhandled
                future.exception()
            raise

    def _ok(self, message: str, path: Optional[str] = None, **details: Any) -> FileOperationResult:
        return FileOperationResult(success=True, message=message, path=path, details=details or None)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} kind={self.kind}>"


class DriverState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class RemoteStorageDriver(StorageDriver):
    """
    Base class for connection-oriented backends (FTP, SFTP, WebDAV, OneDrive).

    State machine: ``UNINITIALIZED -> DISCONNECTED -> CONNECTED``.
    ``init`` only validates configuration; every operation calls
    ``ensure_connected`` which makes exactly one connect attempt when the
    driver is disconnected. A failed attempt raises BackendConnectionError
    and leaves the driver DISCONNECTED so a later operation can try again.
    """

    def __init__(self) -> None:
        super().__init__()
        self.state = DriverState.UNINITIALIZED

    async def init(self, config: Union[str, Mapping[str, Any], None]) -> None:
        await super().init(config)
        self.state = DriverState.DISCONNECTED

    @abstractmethod
    async def _connect(self) -> None:
        """
        Open the backend session.

        Raises:
            BackendConnectionError: If the backend cannot be reached
        """

    @abstractmethod
    async def _disconnect(self) -> None:
        """Close the backend session, ignoring errors from a dead peer."""

    async def ensure_connected(self) -> None:
        self._require_init()
        if self.state is DriverState.CONNECTED:
            return
        try:
            await self._connect()
        except BaseException:
            self.state = DriverState.DISCONNECTED
            raise
        self.state = DriverState.CONNECTED

    async def _connection_lost(self, exc: BaseException) -> BackendConnectionError:
        """Drop a broken session and build the error to raise."""
        logger.warning("connection_lost", kind=self.kind, error=str(exc))
        with contextlib.suppress(Exception):
            await self._disconnect()
        self.state = DriverState.DISCONNECTED
        if isinstance(exc, BackendConnectionError):
            return exc
        return BackendConnectionError(f"{self.kind}: connection lost: {exc}")

    async def close(self) -> None:
        if self.state is DriverState.CONNECTED:
            await self._disconnect()
            self.state = DriverState.DISCONNECTED

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} kind={self.kind} state={self.state.value}>"
