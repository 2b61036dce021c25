"""
Single-instance run lock.

The lock is a file holding the owner's process id, created atomically (the
pid is written to a private temp file which is then hard-linked into place, so
the lock never exists without its content). A lock whose owner is no longer
alive is reclaimed once; a live owner means another run is in progress.
"""

import os
import atexit
import signal
import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)

_RELEASE_SIGNALS = tuple(
    getattr(signal, name) for name in ('SIGTERM', 'SIGHUP') if hasattr(signal, name)
)

# Lock files held by RunLock instances of this process
_held_paths = set()


class LockConflictError(Exception):
    """Raised when another live process holds the run lock."""

    def __init__(self, owner_pid: Optional[int], lock_path: str):
        self.owner_pid = owner_pid
        self.lock_path = lock_path
        super().__init__(f"Another backupflow run (PID: {owner_pid}) holds {lock_path}")


def pid_alive(pid: int) -> bool:
    """Return True if a process with ``pid`` currently exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


class RunLock:
    """
    Process-wide mutual exclusion guard.

    Usable as a context manager; ``release`` is idempotent and also runs on
    SIGTERM/SIGHUP (converted to SystemExit so ``finally`` blocks execute) and
    at interpreter exit.
    """

    def __init__(self, lock_path: str):
        """
        Initialize run lock.

        Args:
            lock_path: Fixed path of the lock file
        """
        self.lock_path = lock_path
        self.owner_pid = None
        self._previous_handlers = {}

    @property
    def held(self) -> bool:
        return self.owner_pid is not None

    def acquire(self) -> 'RunLock':
        """
        Acquire the lock, reclaiming a stale one at most once.

        Returns:
            self

        Raises:
            LockConflictError: If a live process holds the lock
        """
        if self.held:
            return self

        pid = os.getpid()
        if self._try_create(pid):
            return self._acquired(pid)

        stored_pid = self._read_owner()
        if stored_pid is not None and self._owner_is_live(stored_pid):
            logger.error(f"Another instance (PID: {stored_pid}) is running, exiting")
            raise LockConflictError(stored_pid, self.lock_path)

        logger.warning(f"Found stale lock file (PID: {stored_pid}), removing it")
        try:
            os.remove(self.lock_path)
        except FileNotFoundError:
            pass

        if self._try_create(pid):
            return self._acquired(pid)

        # Lost the race to another process reclaiming the same stale lock
        raise LockConflictError(self._read_owner(), self.lock_path)

    def release(self):
        """Remove the lock file if this process owns it. Safe to call repeatedly."""
        if not self.held:
            return

        try:
            if self._read_owner() == self.owner_pid:
                os.remove(self.lock_path)
                logger.debug(f"Released run lock: {self.lock_path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove lock file {self.lock_path}: {e}")
        finally:
            self.owner_pid = None
            _held_paths.discard(os.path.abspath(self.lock_path))
            self._restore_signal_handlers()
            atexit.unregister(self.release)

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

    def _try_create(self, pid: int) -> bool:
        directory = os.path.dirname(os.path.abspath(self.lock_path))
        os.makedirs(directory, exist_ok=True)
        temp_path = f"{self.lock_path}.{pid}.tmp"
        with open(temp_path, 'w') as f:
            f.write(f"{pid}\n")
        try:
            os.link(temp_path, self.lock_path)
            return True
        except FileExistsError:
            return False
        finally:
            os.remove(temp_path)

    def _owner_is_live(self, stored_pid: int) -> bool:
        if stored_pid == os.getpid():
            # Not held here: left behind by an earlier process with our pid
            return os.path.abspath(self.lock_path) in _held_paths
        return pid_alive(stored_pid)

    def _read_owner(self) -> Optional[int]:
        try:
            with open(self.lock_path, 'r') as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return None

    def _acquired(self, pid: int) -> 'RunLock':
        self.owner_pid = pid
        _held_paths.add(os.path.abspath(self.lock_path))
        atexit.register(self.release)
        self._install_signal_handlers()
        logger.debug(f"Acquired run lock: {self.lock_path} (PID: {pid})")
        return self

    def _install_signal_handlers(self):
        # signal.signal only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in _RELEASE_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, _raise_system_exit)

    def _restore_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers = {}


def _raise_system_exit(signum, frame):
    logger.warning(f"Received signal {signum}, aborting run")
    raise SystemExit(128 + signum)
