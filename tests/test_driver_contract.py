# tests/test_driver_contract.py
"""
Behaviour every driver shares, run against each built-in kind.

Remote backends are replaced by the in-memory fakes from tests.fakes.
"""
import pytest
import pytest_asyncio

from mountvfs.config import settings
from mountvfs.file_access import onedrive_provider
from mountvfs.file_access.errors import PathNotFoundError
from mountvfs.file_access.protocols import ftp_protocol, s3_protocol, sftp_protocol, webdav_protocol
from mountvfs.file_access.registry import build_default_registry
from mountvfs.file_access.streams import iter_bytes
from tests.fakes import (
    GRAPH_BASE,
    TOKEN_URL,
    FakeFTP,
    FakeGraph,
    FakeS3Client,
    FakeSession,
    FakeSFTP,
    FakeSSHClient,
    FakeWebDAVClient,
    Tree,
)


def _local(monkeypatch, tmp_path):
    return {"rootPath": str(tmp_path)}


def _s3(monkeypatch, tmp_path):
    client = FakeS3Client()
    monkeypatch.setattr(s3_protocol.boto3, "client", lambda service, **kwargs: client)
    return {"accessKey": "a", "secretKey": "s", "bucket": "b"}


def _oss(monkeypatch, tmp_path):
    client = FakeS3Client()
    monkeypatch.setattr(s3_protocol.boto3, "client", lambda service, **kwargs: client)
    return {"endpoint": "oss-cn-hangzhou.aliyuncs.com", "accessKeyId": "a", "accessKeySecret": "s", "bucket": "b"}


def _ftp(monkeypatch, tmp_path):
    monkeypatch.setattr(ftp_protocol, "FTP", FakeFTP(Tree()))
    return {"host": "ftp.test"}


def _sftp(monkeypatch, tmp_path):
    monkeypatch.setattr(sftp_protocol.paramiko, "SSHClient", FakeSSHClient(FakeSFTP(Tree())))
    return {"host": "sftp.test", "username": "u", "password": "p"}


def _webdav(monkeypatch, tmp_path):
    monkeypatch.setattr(webdav_protocol, "Client", FakeWebDAVClient(Tree()))
    return {"url": "https://dav.test/"}


def _onedrive(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "MS_GRAPH_BASE_URL", GRAPH_BASE)
    monkeypatch.setattr(settings, "MS_TOKEN_URL", TOKEN_URL)
    monkeypatch.setattr(onedrive_provider.aiohttp, "ClientSession", FakeSession(FakeGraph()))
    return {"clientId": "c", "clientSecret": "s", "refreshToken": "r"}


BACKENDS = {
    "local": _local,
    "s3": _s3,
    "oss": _oss,
    "ftp": _ftp,
    "sftp": _sftp,
    "webdav": _webdav,
    "onedrive": _onedrive,
}


@pytest_asyncio.fixture(params=sorted(BACKENDS))
async def driver(request, monkeypatch, tmp_path):
    config = BACKENDS[request.param](monkeypatch, tmp_path)
    instance = await build_default_registry().create_driver(request.param, config)
    yield instance
    await instance.close()


@pytest.mark.asyncio
async def test_listing_missing_directory_is_not_found(driver):
    with pytest.raises(PathNotFoundError):
        await driver.list("/does-not-exist")


@pytest.mark.asyncio
async def test_stat_missing_path_is_not_found(driver):
    with pytest.raises(PathNotFoundError):
        await driver.stat("/does-not-exist.txt")


@pytest.mark.asyncio
async def test_write_then_read_back(driver):
    await driver.write("/contract.bin", iter_bytes(b"\x00contract\xff" * 100, chunk_size=64))
    handle = await driver.open_read("/contract.bin")
    async with handle:
        data = b"".join([chunk async for chunk in handle])
    assert data == b"\x00contract\xff" * 100
    listing = await driver.list("/")
    assert "contract.bin" in [e.name for e in listing.entries]


@pytest.mark.asyncio
async def test_make_dir_is_idempotent(driver):
    await driver.make_dir("/folder")
    await driver.make_dir("/folder")
    assert (await driver.stat("/folder")).is_directory
    assert (await driver.list("/folder")).entries == []


@pytest.mark.asyncio
async def test_remove_missing_path_is_not_found(driver):
    with pytest.raises(PathNotFoundError):
        await driver.remove("/does-not-exist")


@pytest.mark.asyncio
async def test_health_check(driver):
    result = await driver.health_check()
    assert result.healthy
    assert result.protocol == driver.kind
