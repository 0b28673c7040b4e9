"""MountPoint, the MountSource protocol and an in-memory MountTable."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mountvfs.file_access.errors import InvalidConfigError, InvalidPathError
from mountvfs.file_access.paths import normalize_path

logger = structlog.get_logger()


@dataclass
class MountPoint:
    """A virtual path prefix bound to one backend instance."""

    mount_path: str
    """One-segment virtual prefix, e.g. "/photos"."""

    driver_kind: str
    """Registry kind name, e.g. "s3"."""

    config: Dict[str, Any] = field(default_factory=dict)
    """Driver configuration blob, validated by the driver on init."""

    order: int = 0
    enabled: bool = True
    cache_ttl: timedelta = timedelta(0)
    name: str = ""

    def __post_init__(self) -> None:
        self.mount_path = normalize_path(self.mount_path)
        if self.mount_path == "/" or "/" in self.mount_path[1:]:
            raise InvalidPathError(
                f"Mount path must be a single non-empty segment: {self.mount_path!r}"
            )
        if not self.name:
            self.name = self.mount_path.lstrip("/")


class MountSource(Protocol):
    """Read side of the mount collaborator used by FileSystemService."""

    def get_mount(self, mount_path: str) -> Optional[MountPoint]:
        ...

    def list_enabled_mounts(self) -> List[MountPoint]:
        ...


class MountRecord(BaseModel):
    """One entry of a mounts file."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    mount_path: str = Field(alias="mountPath")
    driver: str
    config: Dict[str, Any] = Field(default_factory=dict)
    order: int = 0
    enabled: bool = True
    cache_ttl: float = Field(default=0, alias="cacheTtl", ge=0)
    name: str = ""

    def to_mount(self) -> MountPoint:
        return MountPoint(
            mount_path=self.mount_path,
            driver_kind=self.driver.lower().strip(),
            config=dict(self.config),
            order=self.order,
            enabled=self.enabled,
            cache_ttl=timedelta(seconds=self.cache_ttl),
            name=self.name,
        )


class MountTable:
    """In-memory registry of mount points keyed by mount path.

    No two mounts may share a first path segment.
    """

    def __init__(self, mounts: Iterable[MountPoint] = ()) -> None:
        self._mounts: Dict[str, MountPoint] = {}
        for mount in mounts:
            self.add_mount(mount)

    def add_mount(self, mount: MountPoint) -> None:
        if mount.mount_path in self._mounts:
            raise InvalidPathError(f"Mount path already in use: {mount.mount_path}")
        self._mounts[mount.mount_path] = mount
        logger.debug("mount_added", mount_path=mount.mount_path, kind=mount.driver_kind)

    def remove_mount(self, mount_path: str) -> None:
        self._mounts.pop(normalize_path(mount_path), None)

    def set_enabled(self, mount_path: str, enabled: bool) -> None:
        mount = self._mounts.get(normalize_path(mount_path))
        if mount is None:
            raise KeyError(mount_path)
        mount.enabled = enabled

    def get_mount(self, mount_path: str) -> Optional[MountPoint]:
        return self._mounts.get(normalize_path(mount_path))

    def list_mounts(self) -> List[MountPoint]:
        """All mounts, by ``order`` then mount path."""
        return sorted(self._mounts.values(), key=lambda m: (m.order, m.mount_path))

    def list_enabled_mounts(self) -> List[MountPoint]:
        return [m for m in self.list_mounts() if m.enabled]

    def __len__(self) -> int:
        return len(self._mounts)

    def __contains__(self, mount_path: str) -> bool:
        return normalize_path(mount_path) in self._mounts

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]]) -> "MountTable":
        """Build a table from mounts-file records (camelCase or snake_case keys)."""
        mounts = []
        for index, record in enumerate(records):
            try:
                mounts.append(MountRecord.model_validate(dict(record)).to_mount())
            except ValidationError as exc:
                raise InvalidConfigError(f"Invalid mount record #{index}: {exc}") from exc
        return cls(mounts)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "MountTable":
        """Load a JSON list of mount records."""
        try:
            records = json.loads(Path(path).read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise InvalidConfigError(f"Mounts file {path} is not valid JSON: {exc}") from exc
        if not isinstance(records, list):
            raise InvalidConfigError(f"Mounts file {path} must contain a JSON list")
        table = cls.from_records(records)
        logger.info("mounts_loaded", path=str(path), count=len(table))
        return table
