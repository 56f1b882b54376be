"""Process-level plumbing: single-instance lock, logging setup, dependency checks."""
import atexit
import errno
import fcntl
import logging
import os
import time
from pathlib import Path
from typing import Iterable, List, Optional

from rich.console import Console
from rich.logging import RichHandler

from .ssh_manager import check_command_installed

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


class LockFile:
    """Advisory ``fcntl`` lock that keeps a second instance from starting.

    The lock file holds the owner's PID. A lock left behind by a process
    that no longer exists is removed on the next ``acquire``. Usable as a
    context manager.

    Attributes:
        lock_path: Path of the lock file.
        lock_fd: Open handle while the lock is held.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = Path(lock_path)
        self.lock_fd = None

    @property
    def held(self) -> bool:
        return self.lock_fd is not None

    def __enter__(self) -> "LockFile":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def _already_running(self, pid: Optional[str]) -> RuntimeError:
        owner = f" with PID {pid}" if pid else ""
        return RuntimeError(f"warpsync is already running{owner} (lock file: {self.lock_path})")

    def _clear_stale(self) -> None:
        """Removes a lock file whose owner is gone or whose content is unreadable."""
        content = self.get_locking_pid()
        if content is None:
            return
        if not content.isdigit():
            if content:
                logging.warning(f"Lock file {self.lock_path} holds no valid PID ({content!r}); replacing it.")
            self.lock_path.unlink(missing_ok=True)
            return
        if pid_exists(int(content)):
            raise self._already_running(content)
        logging.warning(f"Lock file {self.lock_path} belongs to PID {content}, which has exited; replacing it.")
        self.lock_path.unlink(missing_ok=True)

    def acquire(self) -> None:
        """Takes the lock.

        Raises:
            RuntimeError: If a live process already holds it.
        """
        if self.held:
            return
        self._clear_stale()
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, 'a+')
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            raise self._already_running(self.get_locking_pid()) from None
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self.lock_fd = handle
        atexit.register(self.release)

    def release(self) -> None:
        handle, self.lock_fd = self.lock_fd, None
        if handle is None:
            return
        try:
            self.lock_path.unlink(missing_ok=True)
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logging.error(f"Could not release lock file '{self.lock_path}': {e}")
        finally:
            handle.close()

    def get_locking_pid(self) -> Optional[str]:
        """Returns the lock file's content, or None if there is none to read."""
        try:
            return self.lock_path.read_text().strip()
        except OSError:
            return None


def pid_exists(pid: int) -> bool:
    """Checks whether a process is alive using signal 0."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as err:
        if err.errno == errno.ESRCH:
            return False
        if err.errno == errno.EPERM:
            return True
        raise
    return True


def setup_logging(log_dir: Path, debug: bool) -> Path:
    """Configures the root logger with a timestamped log file.

    Console output is added separately by `add_console_handler`.

    Returns:
        The path of the new log file.
    """
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / time.strftime("warpsync_%Y-%m-%d_%H-%M-%S.log")

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

    # Library chatter stays out of the log unless something goes wrong
    for noisy in ("paramiko", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.info(f"--- warpsync started, logging to {log_file} ---")
    return log_file


def add_console_handler(simple: bool = False, debug: bool = False) -> logging.Handler:
    """Attaches a Rich console handler, or a plain one in simple mode."""
    if simple:
        handler: logging.Handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    else:
        handler = RichHandler(level=logging.DEBUG if debug else logging.INFO, show_path=False,
                              rich_tracebacks=True, markup=False, console=Console(stderr=True))
    logging.getLogger().addHandler(handler)
    return handler


def check_dependencies(commands: Iterable[str]) -> List[str]:
    """Returns the external commands that are missing from PATH."""
    return [name for name in commands if not check_command_installed(name)]
