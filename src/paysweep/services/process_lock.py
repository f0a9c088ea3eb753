from __future__ import annotations

import fcntl
import hashlib
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path


class SchedulerLockedError(RuntimeError):
    pass


@dataclass(frozen=True)
class SchedulerLock:
    path: Path
    pid: int


def get_lock_dir() -> Path:
    configured = os.getenv("PAYSWEEP_LOCK_DIR")
    lock_dir = (
        Path(configured).expanduser() if configured else Path(tempfile.gettempdir()) / "paysweep-locks"
    )
    lock_dir.mkdir(parents=True, exist_ok=True)
    return lock_dir.resolve()


def lock_path_for(db_path: str) -> Path:
    normalized = str(Path(db_path).expanduser().resolve())
    digest = hashlib.sha256(normalized.encode()).hexdigest()[:16]
    return get_lock_dir() / f"paysweep-{digest}.lock"


def _read_owner_pid(path: Path) -> int | None:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return int(text) if text.isdigit() else None


@contextmanager
def single_scheduler_lock(*, db_path: str) -> Iterator[SchedulerLock]:
    """Hold an exclusive flock so only one scheduled loop runs per state database.

    Admin commands (create, force-reconcile, override) do not take this lock;
    they rely on conditional updates instead.
    """

    path = lock_path_for(db_path)
    fd = os.open(path, os.O_CREAT | os.O_RDWR)
    handle = os.fdopen(fd, "r+b")
    pid = os.getpid()
    acquired = False
    try:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            acquired = True
        except OSError as exc:
            owner = _read_owner_pid(path)
            owner_text = f" owner_pid={owner}" if owner is not None else ""
            raise SchedulerLockedError(
                f"LOCKED: another paysweep scheduler is running for db_path={db_path} "
                f"lock_path={path}.{owner_text}"
            ) from exc
        handle.seek(0)
        handle.truncate(0)
        handle.write(f"{pid}\n".encode())
        handle.flush()
        yield SchedulerLock(path=path, pid=pid)
    finally:
        if acquired:
            try:
                handle.seek(0)
                handle.truncate(0)
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            except OSError:
                pass
        handle.close()
