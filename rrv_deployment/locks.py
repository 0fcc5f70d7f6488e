import asyncio
import hashlib
import os
import re
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Optional

from ape.logging import logger

from rrv_deployment.constants import LOCK_FILE_GRACE_PERIOD, LOCK_WAIT_TIMEOUT
from rrv_deployment.exceptions import InProgressError
from rrv_deployment.registry import DeploymentLedger, Label, NetworkId, ledger_key

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def _lock_filename(key: str) -> str:
    digest = hashlib.sha256(key.encode()).hexdigest()[:8]
    return f"{_UNSAFE_FILENAME_CHARS.sub('_', key)}.{digest}.lock"


def _pid_is_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class DeploymentLocks:
    """
    Advisory locks keyed by (network, label).

    Within a process, callers for the same key queue on an asyncio.Lock for at most
    `wait_timeout` seconds (0 fails fast, None waits indefinitely). Across processes,
    a lock file created with O_EXCL is held for the same span; finding it held by a
    live process fails fast. A lock file without a readable pid is stale once it is
    older than `grace_period` seconds.
    """

    def __init__(
        self,
        lock_dir: Path,
        wait_timeout: Optional[float] = LOCK_WAIT_TIMEOUT,
        grace_period: float = LOCK_FILE_GRACE_PERIOD,
    ):
        self.lock_dir = Path(lock_dir)
        self.wait_timeout = wait_timeout
        self.grace_period = grace_period
        self._locks: Dict[str, asyncio.Lock] = dict()

    @classmethod
    def for_ledger(cls, ledger: DeploymentLedger, **kwargs) -> "DeploymentLocks":
        lock_dir = ledger.filepath.with_name(f"{ledger.filepath.name}.locks")
        return cls(lock_dir=lock_dir, **kwargs)

    def is_locked(self, network: NetworkId, label: Label) -> bool:
        key = ledger_key(network, label)
        lock = self._locks.get(key)
        if lock is not None and lock.locked():
            return True
        return (self.lock_dir / _lock_filename(key)).exists()

    @asynccontextmanager
    async def hold(self, network: NetworkId, label: Label):
        key = ledger_key(network, label)
        lock = self._locks.setdefault(key, asyncio.Lock())
        await self._acquire(lock, key)
        try:
            lock_filepath = self._acquire_file(key)
            try:
                yield
            finally:
                lock_filepath.unlink(missing_ok=True)
        finally:
            lock.release()

    async def _acquire(self, lock: asyncio.Lock, key: str) -> None:
        if self.wait_timeout == 0:
            if lock.locked():
                raise InProgressError(f"A deployment of '{key}' is already in progress.")
            await lock.acquire()
            return
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.wait_timeout)
        except asyncio.TimeoutError:
            raise InProgressError(
                f"Timed out after {self.wait_timeout}s waiting for the in-progress "
                f"deployment of '{key}'."
            )

    def _acquire_file(self, key: str) -> Path:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        lock_filepath = self.lock_dir / _lock_filename(key)
        for _ in range(2):
            try:
                fd = os.open(lock_filepath, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._remove_if_stale(lock_filepath):
                    continue
                raise InProgressError(
                    f"A deployment of '{key}' is in progress in another process "
                    f"(lock file {lock_filepath})."
                )
            with os.fdopen(fd, "w") as file:
                file.write(str(os.getpid()))
            return lock_filepath
        raise InProgressError(f"Could not acquire lock file {lock_filepath}.")

    def _remove_if_stale(self, lock_filepath: Path) -> bool:
        try:
            contents = lock_filepath.read_text()
            modified = lock_filepath.stat().st_mtime
        except FileNotFoundError:
            # released in the meantime
            return True
        try:
            pid = int(contents.strip())
        except ValueError:
            # the owner may still be writing its pid
            if time.time() - modified < self.grace_period:
                return False
            logger.warning(f"Removing unreadable lock file {lock_filepath}.")
        else:
            if pid == os.getpid() or _pid_is_alive(pid):
                return False
            logger.warning(f"Removing stale lock file {lock_filepath} left by process {pid}.")

        try:
            if lock_filepath.read_text() != contents:
                return False
        except FileNotFoundError:
            return True
        lock_filepath.unlink(missing_ok=True)
        return True
