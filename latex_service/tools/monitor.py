"""Monitor — host resource snapshot via psutil for the health endpoint."""

from __future__ import annotations

from pathlib import Path

import psutil

_MIB = 1024 * 1024


def system_snapshot(work_root: str | Path) -> dict:
    """Memory and work-root disk usage.

    Returns:
        Dict with ram_percent, ram_available_mb, disk_free_mb, disk_percent.
    """
    mem = psutil.virtual_memory()
    disk = psutil.disk_usage(str(work_root))

    return {
        "ram_percent": mem.percent,
        "ram_available_mb": round(mem.available / _MIB, 1),
        "disk_free_mb": round(disk.free / _MIB, 1),
        "disk_percent": disk.percent,
    }
