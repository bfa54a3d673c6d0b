"""Non-blocking lease that keeps recovery passes from overlapping.

The lease is a file holding the holder's pid and acquisition time. It is
written to a private temp file first and hard-linked into place, so the lease
path never exists without a body. A lease whose holder is gone, or that is
older than the stale timeout, is broken and taken over once.
"""

from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Callable

import structlog

from ..errors import LeaseHeld

logger = structlog.get_logger(__name__)


def is_pid_running(pid: int | None) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user.
        return True
    return True


class RecoveryLease:
    def __init__(
        self,
        path: str,
        stale_after_seconds: float,
        *,
        clock: Callable[[], float] = time.time,
        pid_alive: Callable[[int | None], bool] = is_pid_running,
    ):
        self.path = Path(path).expanduser()
        self.stale_after_seconds = stale_after_seconds
        self.clock = clock
        self.pid_alive = pid_alive
        self.held = False

    def _sibling(self, suffix: str) -> Path:
        return self.path.with_name(f".{self.path.name}.{os.getpid()}.{suffix}")

    def _read(self) -> dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _try_create(self) -> bool:
        tmp = self._sibling("tmp")
        tmp.write_text(json.dumps({"pid": os.getpid(), "acquired_at": self.clock()}), encoding="utf-8")
        try:
            os.link(tmp, self.path)
        except FileExistsError:
            return False
        finally:
            tmp.unlink(missing_ok=True)
        return True

    def _holder(self) -> tuple[int | None, float | None, int | None]:
        """Return ``(pid, age_seconds, inode)``; inode is None when there is no lease."""
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None, None, None
        holder = self._read()
        pid = holder.get("pid")
        if not isinstance(pid, int) or isinstance(pid, bool):
            pid = None
        acquired_at = holder.get("acquired_at")
        if isinstance(acquired_at, (int, float)) and not isinstance(acquired_at, bool):
            age = self.clock() - acquired_at
        else:
            # Unreadable body: fall back to file mtime.
            age = self.clock() - st.st_mtime
        return pid, age, st.st_ino

    def _is_stale(self, pid: int | None, age: float) -> bool:
        if age > self.stale_after_seconds:
            return True
        # Without a recorded pid only the age can tell.
        return pid is not None and not self.pid_alive(pid)

    def _break(self, inode: int) -> None:
        """Remove the lease judged stale, unless it was replaced in the meantime."""
        tombstone = self._sibling("stale")
        try:
            os.rename(self.path, tombstone)
        except FileNotFoundError:
            return
        try:
            if tombstone.stat().st_ino != inode:
                # Moved someone's fresh lease: put it back.
                try:
                    os.link(tombstone, self.path)
                except FileExistsError:
                    pass
                raise LeaseHeld(str(self.path), None, None)
        finally:
            tombstone.unlink(missing_ok=True)

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self._try_create():
            self.held = True
            return

        pid, age, inode = self._holder()
        if inode is not None:
            if not self._is_stale(pid, age):
                raise LeaseHeld(str(self.path), pid, age)
            logger.warning("breaking_stale_lease", path=str(self.path), holder_pid=pid, age_seconds=age)
            self._break(inode)

        if not self._try_create():
            # Someone else took it over between break and create.
            holder = self._read()
            raise LeaseHeld(str(self.path), holder.get("pid"), 0.0)
        self.held = True

    def release(self) -> None:
        if not self.held:
            return
        holder = self._read()
        if holder.get("pid") == os.getpid():
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
        self.held = False

    def __enter__(self) -> "RecoveryLease":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
