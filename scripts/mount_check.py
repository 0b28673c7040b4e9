"""Check every mount in a mounts file and print a health report.

Usage (from repo root):
  PYTHONPATH=. python scripts/mount_check.py --mounts mounts.json
  PYTHONPATH=. python scripts/mount_check.py --mounts mounts.json --search report

Without --mounts the path comes from MOUNTS_FILE (env: MOUNTVFS_MOUNTS_FILE).
The script never prints mount credentials.
"""
from __future__ import annotations

import argparse
import asyncio
import sys

from mountvfs.config import settings
from mountvfs.file_access import FileSystemService, MountTable, build_default_registry
from mountvfs.monitoring import configure_logging


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Health-check mountvfs storages")
    parser.add_argument("--mounts", default=settings.MOUNTS_FILE, help="JSON mounts file")
    parser.add_argument("--mount", help="Only check this mount path (e.g. /photos)")
    parser.add_argument("--search", help="Also run a keyword search across the mounts")
    parser.add_argument("--log-level", default="WARNING")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(level=args.log_level, json_output=False)
    if not args.mounts:
        print("No mounts file given (use --mounts or MOUNTVFS_MOUNTS_FILE)")
        return 2

    table = MountTable.from_file(args.mounts)
    service = FileSystemService(table, build_default_registry())

    mounts = table.list_mounts()
    if args.mount:
        mounts = [m for m in mounts if m.mount_path == args.mount]
        if not mounts:
            print(f"No mount at {args.mount}")
            return 2

    failures = 0
    for mount in mounts:
        if not mount.enabled:
            print(f"{mount.mount_path:<20} {mount.driver_kind:<10} disabled")
            continue
        result = await service.check_mount(mount.mount_path)
        status = "OK" if result.healthy else "FAIL"
        latency = f"{result.latency_ms:.0f} ms" if result.latency_ms is not None else "-"
        print(f"{mount.mount_path:<20} {mount.driver_kind:<10} {status:<5} {latency:>8}  {result.message}")
        if not result.healthy:
            failures += 1

    if args.search:
        matches = await service.search(args.search, args.mount)
        print(f"\n{len(matches)} match(es) for {args.search!r}")
        for entry in matches:
            kind = "dir " if entry.is_directory else "file"
            print(f"  {kind} {entry.path} ({entry.size} bytes)")

    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
