"""Disk and memory readings for the blockchain data path."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Iterable

import structlog

from ..models import ResourceSnapshot

logger = structlog.get_logger(__name__)

MEMINFO_PATH = "/proc/meminfo"


def disk_used_percent(available: int, total: int) -> int:
    """``100 - available*100 // total``, truncated like ``df`` arithmetic in shell."""
    if total <= 0:
        raise ValueError("total must be positive")
    return 100 - (available * 100 // total)


def ram_used_percent(available: int, total: int) -> int:
    if total <= 0:
        raise ValueError("total must be positive")
    return (total - available) * 100 // total


def read_meminfo_kb(path: str = MEMINFO_PATH) -> dict[str, int]:
    """
    Host memory snapshot in kB (Linux only).
    Returns {} where /proc/meminfo does not exist.
    """
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError:
        return {}

    values: dict[str, int] = {}
    for line in raw.splitlines():
        if ":" not in line:
            continue
        key, rest = line.split(":", 1)
        parts = rest.strip().split()
        if not parts:
            continue
        try:
            values[key.strip()] = int(parts[0])
        except ValueError:
            continue
    return values


def find_data_path(mount_source: str | None, fallback_paths: Iterable[str]) -> str | None:
    """Prefer the container's data mount; otherwise the first existing fallback dir."""
    if mount_source and os.path.isdir(mount_source):
        return mount_source
    for candidate in fallback_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isdir(expanded):
            return expanded
    return None


def read_resources(data_path: str | None, meminfo_path: str = MEMINFO_PATH) -> ResourceSnapshot:
    disk_percent = disk_avail = disk_total = None
    if data_path:
        try:
            usage = shutil.disk_usage(data_path)
        except OSError as e:
            logger.warning("disk_usage_failed", path=data_path, error=str(e))
        else:
            if usage.total > 0:
                disk_total = usage.total
                disk_avail = usage.free
                disk_percent = disk_used_percent(usage.free, usage.total)

    ram_percent = ram_used = ram_total = None
    meminfo = read_meminfo_kb(meminfo_path)
    total_kb = meminfo.get("MemTotal")
    avail_kb = meminfo.get("MemAvailable")
    if total_kb and avail_kb is not None:
        ram_total = total_kb * 1024
        ram_used = (total_kb - avail_kb) * 1024
        ram_percent = ram_used_percent(avail_kb, total_kb)

    return ResourceSnapshot(
        data_path=data_path,
        disk_used_percent=disk_percent,
        disk_available_bytes=disk_avail,
        disk_total_bytes=disk_total,
        ram_used_percent=ram_percent,
        ram_used_bytes=ram_used,
        ram_total_bytes=ram_total,
    )
