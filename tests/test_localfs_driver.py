# tests/test_localfs_driver.py
"""
Tests for LocalFSProvider.
"""
import pytest
import pytest_asyncio

from mountvfs.file_access.base_fs import FileKind
from mountvfs.file_access.errors import (
    AlreadyExistsError,
    PathNotFoundError,
    PermissionDeniedError,
)
from mountvfs.file_access.localfs_provider import LocalFSProvider
from mountvfs.file_access.streams import iter_bytes


async def read_all(handle):
    async with handle:
        return b"".join([chunk async for chunk in handle])


class TestLocalFSProvider:
    """Tests for LocalFSProvider."""

    @pytest_asyncio.fixture
    async def provider(self, tmp_path):
        driver = LocalFSProvider()
        await driver.init({"rootPath": str(tmp_path / "root")})
        return driver

    @pytest.mark.asyncio
    async def test_init_creates_root(self, tmp_path, provider):
        assert (tmp_path / "root").is_dir()

    @pytest.mark.asyncio
    async def test_write_and_read_file(self, provider):
        result = await provider.write("/hello.txt", iter_bytes(b"Hello, mountvfs!"))
        assert result.success is True
        assert result.details["size"] == 16

        handle = await provider.open_read("/hello.txt")
        assert handle.file_name == "hello.txt"
        assert handle.mime_type == "text/plain"
        assert await read_all(handle) == b"Hello, mountvfs!"
        assert handle.closed

    @pytest.mark.asyncio
    async def test_write_overwrites(self, provider):
        await provider.write("/a.bin", iter_bytes(b"first version"))
        await provider.write("/a.bin", iter_bytes(b"second"))
        assert await read_all(await provider.open_read("/a.bin")) == b"second"

    @pytest.mark.asyncio
    async def test_write_into_missing_parent(self, provider):
        with pytest.raises(PathNotFoundError):
            await provider.write("/missing/a.txt", iter_bytes(b"x"))

    @pytest.mark.asyncio
    async def test_failed_write_leaves_no_partial_file(self, tmp_path, provider):
        async def broken():
            yield b"partial"
            raise RuntimeError("client went away")

        with pytest.raises(RuntimeError):
            await provider.write("/a.txt", broken())
        assert list((tmp_path / "root").iterdir()) == []

    @pytest.mark.asyncio
    async def test_list_directories_first(self, provider):
        await provider.make_dir("/zeta")
        await provider.write("/alpha.png", iter_bytes(b"png"))
        listing = await provider.list("/")

        assert [e.name for e in listing.entries] == ["zeta", "alpha.png"]
        zeta, alpha = listing.entries
        assert zeta.is_directory and zeta.path == "/zeta"
        assert alpha.kind == FileKind.IMAGE
        assert alpha.size == 3
        assert alpha.modified_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_list_missing_or_file(self, provider):
        await provider.write("/f.txt", iter_bytes(b"x"))
        with pytest.raises(PathNotFoundError):
            await provider.list("/nope")
        with pytest.raises(PathNotFoundError):
            await provider.list("/f.txt")

    @pytest.mark.asyncio
    async def test_stat(self, provider):
        await provider.write("/f.txt", iter_bytes(b"abc"))
        entry = await provider.stat("/f.txt")
        assert entry.size == 3 and not entry.is_directory
        with pytest.raises(PathNotFoundError):
            await provider.stat("/missing")

    @pytest.mark.asyncio
    async def test_make_dir_policy(self, provider):
        await provider.make_dir("/a/b/c")
        assert (await provider.stat("/a/b/c")).is_directory
        # existing directory is a no-op
        await provider.make_dir("/a/b")

        await provider.write("/a/file", iter_bytes(b"x"))
        with pytest.raises(AlreadyExistsError):
            await provider.make_dir("/a/file")

    @pytest.mark.asyncio
    async def test_remove_recursive(self, provider):
        await provider.make_dir("/a/b")
        await provider.write("/a/b/f.txt", iter_bytes(b"x"))
        await provider.remove("/a")
        with pytest.raises(PathNotFoundError):
            await provider.stat("/a")
        with pytest.raises(PathNotFoundError):
            await provider.remove("/a")

    @pytest.mark.asyncio
    async def test_root_cannot_be_removed_or_moved(self, provider):
        with pytest.raises(PermissionDeniedError):
            await provider.remove("/")
        with pytest.raises(PermissionDeniedError):
            await provider.move("/", "/elsewhere")

    @pytest.mark.asyncio
    async def test_move_and_rename(self, provider):
        await provider.write("/a.txt", iter_bytes(b"x"))
        await provider.move("/a.txt", "/b.txt")
        await provider.rename("/b.txt", "/c.txt")
        with pytest.raises(PathNotFoundError):
            await provider.stat("/a.txt")
        assert await read_all(await provider.open_read("/c.txt")) == b"x"

    @pytest.mark.asyncio
    async def test_copy_file_and_tree(self, provider):
        await provider.make_dir("/src/sub")
        await provider.write("/src/sub/f.txt", iter_bytes(b"data"))
        await provider.copy("/src", "/dst")
        await provider.copy("/src/sub/f.txt", "/g.txt")

        assert await read_all(await provider.open_read("/dst/sub/f.txt")) == b"data"
        assert await read_all(await provider.open_read("/g.txt")) == b"data"
        assert (await provider.stat("/src/sub/f.txt")).size == 4
        with pytest.raises(PathNotFoundError):
            await provider.copy("/missing", "/x")

    @pytest.mark.asyncio
    async def test_paths_cannot_escape_root(self, tmp_path, provider):
        (tmp_path / "secret.txt").write_text("secret")
        (tmp_path / "root" / "link").symlink_to(tmp_path)
        with pytest.raises(PermissionDeniedError):
            await provider.stat("/link/secret.txt")

    @pytest.mark.asyncio
    async def test_remove_symlink_keeps_target(self, tmp_path, provider):
        root = tmp_path / "root"
        await provider.make_dir("/real")
        await provider.write("/real/keep.txt", iter_bytes(b"keep"))
        (root / "link").symlink_to(root / "real")

        await provider.remove("/link")

        assert not (root / "link").is_symlink()
        assert (root / "real" / "keep.txt").read_bytes() == b"keep"

    @pytest.mark.asyncio
    async def test_remove_symlink_pointing_outside_root(self, tmp_path, provider):
        (tmp_path / "outside").mkdir()
        (tmp_path / "outside" / "data.txt").write_text("data")
        (tmp_path / "root" / "out").symlink_to(tmp_path / "outside")

        await provider.remove("/out")

        assert not (tmp_path / "root" / "out").is_symlink()
        assert (tmp_path / "outside" / "data.txt").read_text() == "data"

    @pytest.mark.asyncio
    async def test_move_symlink_moves_the_link(self, tmp_path, provider):
        root = tmp_path / "root"
        await provider.make_dir("/real")
        await provider.write("/real/keep.txt", iter_bytes(b"keep"))
        (root / "link").symlink_to(root / "real")

        await provider.move("/link", "/renamed")

        assert (root / "renamed").is_symlink()
        assert not (root / "link").is_symlink()
        assert (root / "real" / "keep.txt").read_bytes() == b"keep"

    @pytest.mark.asyncio
    async def test_stat_follows_symlink_but_keeps_its_path(self, tmp_path, provider):
        await provider.make_dir("/real")
        (tmp_path / "root" / "link").symlink_to(tmp_path / "root" / "real")
        entry = await provider.stat("/link")
        assert entry.is_directory
        assert entry.path == "/link"

    @pytest.mark.asyncio
    async def test_health_check(self, provider):
        result = await provider.health_check()
        assert result.healthy is True
        assert result.protocol == "local"
