# tests/test_mounts.py
"""
Tests for MountPoint and MountTable.
"""
import json
from datetime import timedelta

import pytest

from mountvfs.file_access.errors import InvalidConfigError, InvalidPathError
from mountvfs.file_access.mounts import MountPoint, MountTable


def test_mount_point_normalizes_path_and_defaults_name():
    mount = MountPoint(mount_path="photos/", driver_kind="local")
    assert mount.mount_path == "/photos"
    assert mount.name == "photos"
    assert mount.enabled is True
    assert mount.cache_ttl == timedelta(0)


@pytest.mark.parametrize("path", ["/", "/a/b", ""])
def test_mount_point_requires_single_segment(path):
    with pytest.raises(InvalidPathError):
        MountPoint(mount_path=path, driver_kind="local")


class TestMountTable:
    def test_rejects_duplicate_mount_path(self):
        table = MountTable([MountPoint("/docs", "local")])
        with pytest.raises(InvalidPathError):
            table.add_mount(MountPoint("docs", "s3"))

    def test_lists_by_order_then_path(self):
        table = MountTable([
            MountPoint("/b", "local", order=1),
            MountPoint("/a", "local", order=1),
            MountPoint("/z", "local", order=0),
        ])
        assert [m.mount_path for m in table.list_mounts()] == ["/z", "/a", "/b"]

    def test_enabled_mounts_skip_disabled(self):
        table = MountTable([MountPoint("/a", "local"), MountPoint("/b", "local", enabled=False)])
        assert [m.mount_path for m in table.list_enabled_mounts()] == ["/a"]
        table.set_enabled("/b", True)
        assert len(table.list_enabled_mounts()) == 2

    def test_set_enabled_unknown_mount(self):
        with pytest.raises(KeyError):
            MountTable().set_enabled("/nope", False)

    def test_get_and_remove(self):
        table = MountTable([MountPoint("/a", "local")])
        assert table.get_mount("a/").mount_path == "/a"
        assert "/a" in table
        table.remove_mount("/a")
        assert table.get_mount("/a") is None
        assert len(table) == 0


class TestMountsFile:
    def test_from_file_reads_camel_case_records(self, tmp_path):
        path = tmp_path / "mounts.json"
        path.write_text(json.dumps([
            {"mountPath": "/photos", "driver": "S3", "config": {"bucket": "b"}, "order": 2, "cacheTtl": 30},
            {"mount_path": "/local", "driver": "local", "config": {"rootPath": "/srv"}, "enabled": False},
        ]))
        table = MountTable.from_file(path)

        photos = table.get_mount("/photos")
        assert photos.driver_kind == "s3"
        assert photos.config == {"bucket": "b"}
        assert photos.cache_ttl == timedelta(seconds=30)
        assert table.get_mount("/local").enabled is False

    def test_from_file_rejects_non_list(self, tmp_path):
        path = tmp_path / "mounts.json"
        path.write_text(json.dumps({"mountPath": "/a"}))
        with pytest.raises(InvalidConfigError):
            MountTable.from_file(path)

    def test_from_file_rejects_bad_json(self, tmp_path):
        path = tmp_path / "mounts.json"
        path.write_text("[{")
        with pytest.raises(InvalidConfigError):
            MountTable.from_file(path)

    def test_record_missing_driver(self):
        with pytest.raises(InvalidConfigError):
            MountTable.from_records([{"mountPath": "/a"}])
