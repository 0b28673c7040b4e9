"""
Async byte-stream helpers shared by the drivers.

Streams are ``AsyncIterator[bytes]``. Blocking file objects are read one
chunk per executor call; client libraries that need a seekable source get a
``SpooledTemporaryFile`` that stays in memory up to ``SPOOL_MAX_SIZE``.
"""
import asyncio
import tempfile
import threading
from typing import IO, AsyncIterator, Optional

import aiohttp
import structlog

from mountvfs.config import settings
from mountvfs.file_access.errors import BackendConnectionError, PathNotFoundError, StorageError

logger = structlog.get_logger()


async def iter_bytes(data: bytes, chunk_size: Optional[int] = None) -> AsyncIterator[bytes]:
    """Yield an in-memory payload in chunks."""
    chunk_size = chunk_size or settings.STREAM_CHUNK_SIZE
    for offset in range(0, len(data), chunk_size):
        yield data[offset:offset + chunk_size]


async def iter_fileobj(fileobj: IO[bytes], chunk_size: Optional[int] = None) -> AsyncIterator[bytes]:
    """Yield a blocking file object's content, one executor read per chunk.

    The file is not closed here; whoever opened it owns it.
    """
    chunk_size = chunk_size or settings.STREAM_CHUNK_SIZE
    loop = asyncio.get_running_loop()
    while True:
        chunk = await loop.run_in_executor(None, fileobj.read, chunk_size)
        if not chunk:
            break
        yield chunk


def new_spool() -> "tempfile.SpooledTemporaryFile[bytes]":
    return tempfile.SpooledTemporaryFile(max_size=settings.SPOOL_MAX_SIZE, mode="w+b")


async def spool(stream: AsyncIterator[bytes]) -> "tempfile.SpooledTemporaryFile[bytes]":
    """Drain ``stream`` into a spooled temp file rewound to the start.

    The caller closes the returned file. On failure it is closed here.
    """
    loop = asyncio.get_running_loop()
    buffer = new_spool()
    try:
        async for chunk in stream:
            if chunk:
                await loop.run_in_executor(None, buffer.write, chunk)
        buffer.seek(0)
    except BaseException:
        buffer.close()
        raise
    return buffer


def spool_size(buffer: IO[bytes]) -> int:
    """Size of a rewound spool; the position is restored to 0."""
    buffer.seek(0, 2)
    size = buffer.tell()
    buffer.seek(0)
    return size


async def iter_url(
    url: str,
    session: Optional[aiohttp.ClientSession] = None,
    chunk_size: Optional[int] = None,
) -> AsyncIterator[bytes]:
    """Stream the body of a GET on ``url`` (used for redirect handles)."""
    chunk_size = chunk_size or settings.STREAM_CHUNK_SIZE
    own_session = session is None
    sess = session or aiohttp.ClientSession()
    try:
        async with sess.get(url) as resp:
            if resp.status == 404:
                raise PathNotFoundError(f"Redirect target not found: {resp.status}")
            if resp.status >= 400:
                raise StorageError(f"Redirect fetch failed with HTTP {resp.status}")
            async for chunk in resp.content.iter_chunked(chunk_size):
                yield chunk
    except aiohttp.ClientConnectionError as exc:
        logger.warning("redirect_fetch_failed", error=str(exc))
        raise BackendConnectionError(f"Redirect fetch failed: {exc}") from exc
    finally:
        if own_session:
            await sess.close()


class UploadCancelled(Exception):
    """Raised inside a worker thread reading a cancelled upload body."""


class CancellableReader:
    """
    Read-only view of a rewound spool for client libraries that pull the
    request body themselves (``requests`` reads it in blocks).

    ``cancel`` may be called from the event loop while a worker thread is
    reading; the next ``read`` raises UploadCancelled, which aborts the
    request mid-body.
    """

    def __init__(self, fileobj: IO[bytes], size: int):
        self._fileobj = fileobj
        self._size = size
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def read(self, size: int = -1) -> bytes:
        if self._cancelled.is_set():
            raise UploadCancelled("Upload cancelled")
        return self._fileobj.read(size)

    def __len__(self) -> int:
        return self._size
