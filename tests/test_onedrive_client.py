# tests/test_onedrive_client.py
"""
Tests for OneDriveClient and RefreshTokenAuth against a fake Graph.
"""
import aiohttp
import pytest

from mountvfs.file_access.errors import (
    AlreadyExistsError,
    BackendConnectionError,
    PathNotFoundError,
    PermissionDeniedError,
    StorageError,
)
from mountvfs.integrations.onedrive_client import OneDriveClient, RefreshTokenAuth
from tests.fakes import GRAPH_BASE, TOKEN_URL, FakeGraph, FakeResponse, FakeSession


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def session(graph):
    return FakeSession(graph)


@pytest.fixture
def auth(session):
    return RefreshTokenAuth("cid", "secret", "refresh-1", session=session, token_url=TOKEN_URL)


@pytest.fixture
def client(auth, session):
    return OneDriveClient(auth, session, base_url=GRAPH_BASE)


@pytest.mark.asyncio
async def test_token_is_cached_and_refresh_token_rotated(auth, graph, session):
    assert await auth.get_auth_headers() == {"Authorization": "Bearer tok1"}
    assert await auth.get_auth_headers() == {"Authorization": "Bearer tok1"}
    assert graph.token_requests == 1
    assert auth.refresh_token == "rotated"
    form = session.requests[0]["data"]
    assert form["grant_type"] == "refresh_token"
    assert form["refresh_token"] == "refresh-1"


@pytest.mark.asyncio
async def test_expired_token_is_renewed(auth, graph):
    await auth.get_auth_headers()
    auth._expires_at = 0
    assert await auth.get_auth_headers() == {"Authorization": "Bearer tok2"}
    assert graph.token_requests == 2


@pytest.mark.asyncio
async def test_token_failure(auth, graph):
    graph.fail_token = True
    with pytest.raises(BackendConnectionError):
        await auth.get_auth_headers()


@pytest.mark.asyncio
async def test_token_endpoint_unreachable(session, auth):
    session.handler = lambda method, url, kwargs: aiohttp.ClientConnectionError("no route")
    with pytest.raises(BackendConnectionError):
        await auth.get_auth_headers()


def test_item_urls_are_path_addressed(auth, session):
    client = OneDriveClient(auth, session, root_path="/Apps/vfs/", base_url=GRAPH_BASE)
    assert client._item_url("/") == f"{GRAPH_BASE}/me/drive/root:/Apps/vfs"
    assert client._item_url("/a b.txt", "content") == f"{GRAPH_BASE}/me/drive/root:/Apps/vfs/a%20b.txt:/content"
    assert client.parent_reference("/") == {"path": "/drive/root:/Apps/vfs"}

    plain = OneDriveClient(auth, session, base_url=GRAPH_BASE)
    assert plain._item_url("/", "children") == f"{GRAPH_BASE}/me/drive/root/children"
    assert plain.parent_reference("/") == {"path": "/drive/root"}


@pytest.mark.asyncio
async def test_list_children_follows_next_link(client, graph):
    graph.page_size = 2
    for i in range(5):
        graph.tree.put(f"/many/f{i}.txt", b"x")
    items = await client.list_children("/many")
    assert [item["name"] for item in items] == [f"f{i}.txt" for i in range(5)]


@pytest.mark.asyncio
async def test_iter_content(client, graph):
    graph.tree.put("/a.bin", b"0123456789")
    chunks = [chunk async for chunk in client.iter_content("/a.bin", chunk_size=4)]
    assert chunks == [b"0123", b"4567", b"89"]
    with pytest.raises(PathNotFoundError):
        async for _ in client.iter_content("/missing"):
            pass


@pytest.mark.asyncio
async def test_upload_session_fragments(client, graph):
    upload_url = await client.create_upload_session("/big.bin")
    progress = await client.upload_fragment(upload_url, "/big.bin", b"abc", 0, 6)
    assert progress == {"nextExpectedRanges": ["3-"]}
    await client.upload_fragment(upload_url, "/big.bin", b"def", 3, 6)
    assert graph.tree.files["/big.bin"] == b"abcdef"


@pytest.mark.asyncio
async def test_copy_is_polled_until_complete(client, graph):
    graph.copy_polls = 3
    graph.tree.put("/a.txt", b"x")
    monitor = await client.copy("/a.txt", "/", "b.txt")
    assert monitor == "https://monitor.test/0"
    await client.wait_for_copy(monitor, "/a.txt", poll_interval=0)
    assert graph.copy_jobs[monitor]["polls"] == 3
    assert graph.tree.files["/b.txt"] == b"x"


@pytest.mark.asyncio
async def test_failed_copy(client, session):
    session.handler = lambda method, url, kwargs: FakeResponse(
        200, {"status": "failed", "error": {"message": "quota"}}
    )
    with pytest.raises(StorageError, match="quota"):
        await client.wait_for_copy("https://monitor.test/9", "/a.txt", poll_interval=0)


@pytest.mark.asyncio
@pytest.mark.parametrize("status, error", [
    (404, PathNotFoundError),
    (403, PermissionDeniedError),
    (409, AlreadyExistsError),
    (500, StorageError),
])
async def test_status_mapping(client, session, graph, status, error):
    def handler(method, url, kwargs):
        if url == TOKEN_URL:
            return graph(method, url, kwargs)
        return FakeResponse(status, {"error": {"code": "x"}})

    session.handler = handler
    with pytest.raises(error):
        await client.get_item("/a.txt")
