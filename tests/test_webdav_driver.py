# tests/test_webdav_driver.py
"""
Tests for WebDAVProtocolAdapter with webdav3's Client replaced by a fake.
"""
import asyncio
import threading
import time

import pytest
import pytest_asyncio
from webdav3.exceptions import NoConnection

from mountvfs.file_access.base_fs import DriverState
from mountvfs.file_access.errors import (
    AlreadyExistsError,
    BackendConnectionError,
    PathNotFoundError,
    PermissionDeniedError,
)
from mountvfs.file_access.protocols import webdav_protocol
from mountvfs.file_access.protocols.webdav_protocol import WebDAVProtocolAdapter
from mountvfs.file_access.streams import iter_bytes
from tests.fakes import FakeWebDAVClient, Tree

CONFIG = {"url": "https://dav.test/dav/files/user/", "username": "user", "password": "pw"}


async def read_all(handle):
    async with handle:
        return b"".join([chunk async for chunk in handle])


@pytest.fixture
def dav(monkeypatch):
    client = FakeWebDAVClient(Tree())
    monkeypatch.setattr(webdav_protocol, "Client", client)
    return client


@pytest_asyncio.fixture
async def webdav(dav):
    driver = WebDAVProtocolAdapter()
    await driver.init(CONFIG)
    yield driver
    await driver.close()


@pytest.mark.asyncio
async def test_client_options(webdav, dav):
    await webdav.list("/")
    assert dav.options["webdav_hostname"] == "https://dav.test/dav/files/user"
    assert dav.options["webdav_login"] == "user"
    assert dav.options["webdav_password"] == "pw"
    assert webdav.state is DriverState.CONNECTED


@pytest.mark.asyncio
async def test_rejected_check_is_a_connection_error(dav):
    dav.check_status = 401
    driver = WebDAVProtocolAdapter()
    await driver.init(CONFIG)
    with pytest.raises(BackendConnectionError):
        await driver.list("/")
    assert driver.state is DriverState.DISCONNECTED


@pytest.mark.asyncio
async def test_list_decodes_names(webdav, dav):
    dav.tree.mkdirs("/docs/sub dir")
    dav.tree.put("/docs/annual report.pdf", b"pdf")
    listing = await webdav.list("/docs")
    assert [(e.name, e.is_directory) for e in listing.entries] == [
        ("annual report.pdf", False), ("sub dir", True),
    ]
    report = listing.entries[0]
    assert report.path == "/docs/annual report.pdf"
    assert report.size == 3
    assert report.content_hash == {"etag": "abc123"}
    assert report.modified_at.year == 2024


@pytest.mark.asyncio
async def test_list_missing_or_file(webdav, dav):
    dav.tree.put("/f.txt", b"x")
    with pytest.raises(PathNotFoundError):
        await webdav.list("/nope")
    with pytest.raises(PathNotFoundError):
        await webdav.list("/f.txt")


@pytest.mark.asyncio
async def test_write_read_round_trip(webdav, dav):
    await webdav.write("/a.txt", iter_bytes(b"hello dav"))
    assert dav.tree.files["/a.txt"] == b"hello dav"

    handle = await webdav.open_read("/a.txt")
    assert handle.size == 9
    assert handle.mime_type == "text/plain"
    assert await read_all(handle) == b"hello dav"
    assert dav.downloads[-1].closed


@pytest.mark.asyncio
async def test_upload_body_has_a_length(webdav, dav):
    await webdav.write("/a.txt", iter_bytes(b"hello dav", chunk_size=2))
    assert dav.upload_sizes == [9]


@pytest.mark.asyncio
async def test_cancelled_write_aborts_the_request_body(webdav, dav):
    in_flight = threading.Event()
    reads = []

    def hold_second_block(body):
        reads.append(body)
        if len(reads) == 2:
            in_flight.set()
            deadline = time.monotonic() + 5
            while not body.cancelled and time.monotonic() < deadline:
                time.sleep(0.01)

    dav.upload_block_size = 3
    dav.upload_hook = hold_second_block
    task = asyncio.create_task(webdav.write("/a.txt", iter_bytes(b"abcdefghi")))
    loop = asyncio.get_running_loop()
    assert await loop.run_in_executor(None, in_flight.wait, 5)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert reads[-1].cancelled
    assert not dav.tree.exists("/a.txt")


@pytest.mark.asyncio
async def test_open_read_directory_is_not_found(webdav, dav):
    dav.tree.mkdirs("/d")
    with pytest.raises(PathNotFoundError):
        await webdav.open_read("/d")


@pytest.mark.asyncio
async def test_write_requires_parent(webdav):
    with pytest.raises(PathNotFoundError):
        await webdav.write("/missing/a.txt", iter_bytes(b"x"))


@pytest.mark.asyncio
async def test_make_dir_creates_parents(webdav, dav):
    assert (await webdav.make_dir("/a/b/c")).message == "Directory created"
    assert dav.tree.is_dir("/a/b/c")
    assert (await webdav.make_dir("/a/b")).message == "Directory exists"
    dav.tree.put("/a/f", b"x")
    with pytest.raises(AlreadyExistsError):
        await webdav.make_dir("/a/f/g")


@pytest.mark.asyncio
async def test_remove(webdav, dav):
    dav.tree.put("/d/e/f", b"x")
    await webdav.remove("/d")
    assert not dav.tree.exists("/d")
    with pytest.raises(PathNotFoundError):
        await webdav.remove("/d")
    with pytest.raises(PermissionDeniedError):
        await webdav.remove("/")


@pytest.mark.asyncio
async def test_move_overwrites_target(webdav, dav):
    dav.tree.put("/a", b"new")
    dav.tree.put("/b", b"old")
    await webdav.move("/a", "/b")
    assert dav.tree.files == {"/b": b"new"}
    with pytest.raises(PermissionDeniedError):
        await webdav.move("/", "/x")


@pytest.mark.asyncio
async def test_copy_tree(webdav, dav):
    dav.tree.put("/src/sub/f", b"data")
    await webdav.copy("/src", "/dst")
    assert dav.tree.files["/dst/sub/f"] == b"data"
    assert dav.tree.files["/src/sub/f"] == b"data"
    with pytest.raises(PathNotFoundError):
        await webdav.copy("/missing", "/x")


@pytest.mark.asyncio
async def test_lost_connection_resets_state(webdav, dav):
    await webdav.list("/")

    def broken(path):
        raise NoConnection("dav.test")

    dav.is_dir = broken
    with pytest.raises(BackendConnectionError):
        await webdav.stat("/a")
    assert webdav.state is DriverState.DISCONNECTED
