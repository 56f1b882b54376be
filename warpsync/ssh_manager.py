import logging
import shlex
import shutil
import socket
import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Callable, Deque, Dict, Generator, Optional, Set, Tuple

import paramiko

from .errors import SSHConnectionError
from .models import SSHTarget
from .utils import Timeouts

logger = logging.getLogger(__name__)

# Constants
DEFAULT_KEEPALIVE_INTERVAL = 30
DEFAULT_MAX_PER_TARGET = 5
DEFAULT_MAX_IDLE_TIME = 30
DEFAULT_MAX_LIFETIME = 300
DEFAULT_SWEEP_INTERVAL = 60
CANCEL_CHECK_INTERVAL = 0.2


def check_command_installed(name: str) -> bool:
    """Checks that an external command is on PATH and logs the result."""
    if shutil.which(name) is None:
        logging.error(f"'{name}' is not installed or not in the system's PATH.")
        return False
    logging.debug(f"'{name}' dependency check passed.")
    return True


class PooledConnection:
    """A pooled, authenticated SSH session.

    Attributes:
        target: The endpoint this session is connected to.
        client: The underlying Paramiko SSHClient.
        created_at: Monotonic creation time.
        last_used_at: Monotonic time of the last checkout or return.
        in_use: True while borrowed by a caller.
    """

    def __init__(self, target: SSHTarget, client: paramiko.SSHClient, now: float):
        self.target = target
        self.client = client
        self.created_at = now
        self.last_used_at = now
        self.in_use = False

    @property
    def fingerprint(self) -> str:
        return self.target.fingerprint

    def is_alive(self) -> bool:
        """Check if SSH connection is still active."""
        try:
            transport = self.client.get_transport()
            return transport is not None and transport.is_active()
        except Exception:
            return False

    def exec_command(self, command: str, timeout: int = Timeouts.SSH_EXEC) -> Tuple[int, str, str]:
        """Runs a command on the remote host.

        Returns:
            A tuple of (exit_status, stdout, stderr).
        """
        logger.debug(f"[{self.target.display}] exec: {command}")
        stdin, stdout, stderr = self.client.exec_command(command, timeout=timeout)
        exit_status = stdout.channel.recv_exit_status()
        out = stdout.read().decode('utf-8', errors='replace')
        err = stderr.read().decode('utf-8', errors='replace')
        return exit_status, out, err

    def path_exists(self, path: str) -> bool:
        exit_status, _, _ = self.exec_command(f"test -e {shlex.quote(path)}")
        return exit_status == 0

    def makedirs(self, path: str) -> None:
        exit_status, _, err = self.exec_command(f"mkdir -p {shlex.quote(path)}")
        if exit_status != 0:
            raise IOError(f"Failed to create remote directory '{path}': {err.strip()}")

    def open_sftp(self) -> paramiko.SFTPClient:
        return self.client.open_sftp()

    def close(self) -> None:
        try:
            self.client.close()
        except Exception as e:
            logger.debug(f"Error closing connection to {self.target.display}: {e}")

    def __repr__(self) -> str:
        return f"<PooledConnection {self.target.display} in_use={self.in_use}>"


class SSHConnectionPool:
    """A thread-safe pool of Paramiko sessions keyed by target fingerprint.

    Each fingerprint (host, port, user and credential) has its own bound of
    ``max_per_target`` open sessions. Idle sessions older than
    ``max_idle_time`` are closed by a background sweep, keeping at least
    ``min_per_target`` per fingerprint. Sessions are liveness-checked before
    being handed out; dead ones are replaced transparently.

    All bookkeeping is guarded by a single condition variable. Network work
    (connecting, liveness checks, closing) happens outside it.
    """

    def __init__(self, max_per_target: int = DEFAULT_MAX_PER_TARGET, min_per_target: int = 0,
                 max_idle_time: float = DEFAULT_MAX_IDLE_TIME, max_lifetime: float = DEFAULT_MAX_LIFETIME,
                 connect_timeout: float = Timeouts.SSH_CONNECT, acquire_timeout: float = Timeouts.POOL_WAIT,
                 sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
                 client_factory: Optional[Callable[[], paramiko.SSHClient]] = None,
                 clock: Callable[[], float] = time.monotonic):
        """Initializes the SSHConnectionPool.

        Args:
            max_per_target: Maximum open sessions per fingerprint.
            min_per_target: Idle sessions the sweep never evicts.
            max_idle_time: Seconds an idle session may linger.
            max_lifetime: Seconds after which a session is retired on return.
            connect_timeout: Timeout for establishing new connections.
            acquire_timeout: Default bound on waiting for a free session.
            sweep_interval: Seconds between idle sweeps.
            client_factory: Builds SSH clients; defaults to paramiko.SSHClient.
            clock: Monotonic time source.
        """
        self.max_per_target = max(1, max_per_target)
        self.min_per_target = max(0, min(min_per_target, self.max_per_target))
        self.max_idle_time = max_idle_time
        self.max_lifetime = max_lifetime
        self.connect_timeout = connect_timeout
        self.acquire_timeout = acquire_timeout
        self.sweep_interval = sweep_interval
        self._client_factory = client_factory or (lambda: paramiko.SSHClient())
        self._clock = clock
        self._idle: Dict[str, Deque[PooledConnection]] = {}
        self._open_counts: Dict[str, int] = {}
        self._in_use: Set[PooledConnection] = set()
        self._targets: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._condition = threading.Condition(self._lock)
        self._closed = False
        self._stop_event = threading.Event()
        self._sweep_thread: Optional[threading.Thread] = None
        logger.debug(f"Initialized SSHConnectionPool with max_per_target={self.max_per_target}")

    def _create_connection(self, target: SSHTarget) -> PooledConnection:
        """Opens a new authenticated session.

        Raises:
            SSHConnectionError: On network, protocol or authentication failure.
        """
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        use_keys = not target.password and not target.key_file
        try:
            client.connect(
                hostname=target.host,
                port=target.port,
                username=target.username,
                password=target.password,
                key_filename=target.key_file,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=use_keys,
                look_for_keys=use_keys,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise SSHConnectionError(f"Authentication failed for {target.display}: {e}") from e
        except (paramiko.SSHException, socket.error, EOFError) as e:
            client.close()
            raise SSHConnectionError(f"Could not connect to {target.display}: {e}") from e
        transport = client.get_transport()
        if transport:
            transport.set_keepalive(DEFAULT_KEEPALIVE_INTERVAL)
        logger.debug(f"Successfully created new SSH connection to {target.display}")
        return PooledConnection(target, client, self._clock())

    def acquire(self, target: SSHTarget, timeout: Optional[float] = None,
                cancel_event: Optional[threading.Event] = None) -> PooledConnection:
        """Borrows a live session for `target`.

        Reuses an idle session when one is alive, opens a new one while the
        fingerprint is under its bound, and otherwise waits for a release.

        Args:
            target: The endpoint to connect to.
            timeout: Maximum seconds to wait; defaults to ``acquire_timeout``.
            cancel_event: When set, a pending wait gives up within
                ``CANCEL_CHECK_INTERVAL`` seconds.

        Returns:
            A connection that must be handed back with `release`.

        Raises:
            SSHConnectionError: If the pool is closed, the wait times out or
                is cancelled, or a new session cannot be established.
        """
        fingerprint = target.fingerprint
        wait = self.acquire_timeout if timeout is None else timeout
        deadline = self._clock() + wait

        while True:
            candidate: Optional[PooledConnection] = None
            with self._condition:
                if self._closed:
                    raise SSHConnectionError("Connection pool is closed")
                if cancel_event is not None and cancel_event.is_set():
                    raise SSHConnectionError(f"Cancelled while waiting for an SSH connection to {target.display}")
                self._targets[fingerprint] = target.display
                idle = self._idle.get(fingerprint)
                if idle:
                    candidate = idle.pop()
                    candidate.in_use = True
                    self._in_use.add(candidate)
                elif self._open_counts.get(fingerprint, 0) < self.max_per_target:
                    self._open_counts[fingerprint] = self._open_counts.get(fingerprint, 0) + 1
                    logger.debug(
                        f"Creating new connection to {target.display} "
                        f"({self._open_counts[fingerprint]}/{self.max_per_target})"
                    )
                else:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        raise SSHConnectionError(
                            f"Timed out after {wait}s waiting for an SSH connection to {target.display}"
                        )
                    logger.debug(f"Pool full for {target.display}, waiting up to {remaining:.1f}s")
                    if cancel_event is not None:
                        remaining = min(remaining, CANCEL_CHECK_INTERVAL)
                    self._condition.wait(remaining)
                    continue

            if candidate is not None:
                if candidate.is_alive():
                    candidate.last_used_at = self._clock()
                    logger.debug(f"Reusing connection to {target.display}")
                    return candidate
                logger.debug(f"Discarding dead connection to {target.display}")
                self._forget(candidate)
                candidate.close()
                continue

            try:
                connection = self._create_connection(target)
            except Exception:
                with self._condition:
                    self._open_counts[fingerprint] -= 1
                    self._condition.notify_all()
                raise
            with self._condition:
                if self._closed:
                    self._open_counts[fingerprint] -= 1
                    connection.close()
                    raise SSHConnectionError("Connection pool was closed while connecting")
                connection.in_use = True
                self._in_use.add(connection)
            return connection

    def release(self, connection: PooledConnection, discard: bool = False) -> None:
        """Returns a borrowed session.

        Dead, expired or explicitly discarded sessions are closed instead of
        being pooled. Releasing a session that is not checked out is logged
        and ignored.
        """
        alive = not discard and connection.is_alive()
        now = self._clock()
        close_it = False
        with self._condition:
            if connection not in self._in_use:
                logger.warning(f"Ignoring release of a connection not checked out: {connection!r}")
                return
            self._in_use.discard(connection)
            connection.in_use = False
            expired = now - connection.created_at >= self.max_lifetime
            if self._closed or not alive or expired:
                self._open_counts[connection.fingerprint] -= 1
                close_it = True
            else:
                connection.last_used_at = now
                self._idle.setdefault(connection.fingerprint, deque()).append(connection)
            self._condition.notify_all()
        if close_it:
            logger.debug(f"Closing connection to {connection.target.display} on release")
            connection.close()

    @contextmanager
    def connection(self, target: SSHTarget, timeout: Optional[float] = None,
                   cancel_event: Optional[threading.Event] = None) -> Generator[PooledConnection, None, None]:
        """Borrows a session for the duration of a with-block."""
        conn = self.acquire(target, timeout=timeout, cancel_event=cancel_event)
        try:
            yield conn
        finally:
            self.release(conn)

    def _forget(self, connection: PooledConnection) -> None:
        with self._condition:
            self._in_use.discard(connection)
            self._open_counts[connection.fingerprint] -= 1
            self._condition.notify_all()

    def sweep_idle(self) -> int:
        """Closes idle sessions past ``max_idle_time`` or ``max_lifetime``.

        Returns:
            The number of sessions closed.
        """
        now = self._clock()
        doomed = []
        with self._condition:
            for fingerprint, idle in self._idle.items():
                keep: Deque[PooledConnection] = deque()
                evictable = len(idle) - self.min_per_target
                # oldest first, so the most recently used survive
                for conn in idle:
                    stale = (now - conn.last_used_at >= self.max_idle_time
                             or now - conn.created_at >= self.max_lifetime)
                    if stale and evictable > 0:
                        doomed.append(conn)
                        evictable -= 1
                        self._open_counts[fingerprint] -= 1
                    else:
                        keep.append(conn)
                self._idle[fingerprint] = keep
            if doomed:
                self._condition.notify_all()
        for conn in doomed:
            conn.close()
        if doomed:
            logger.debug(f"Idle sweep closed {len(doomed)} connection(s)")
        return len(doomed)

    def start(self) -> None:
        """Starts the background idle sweep."""
        if self._sweep_thread and self._sweep_thread.is_alive():
            return
        self._stop_event.clear()
        self._sweep_thread = threading.Thread(target=self._sweep_loop, name="ssh-pool-sweep", daemon=True)
        self._sweep_thread.start()

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval):
            try:
                self.sweep_idle()
            except Exception as e:
                logger.error(f"SSH pool sweep failed: {e}", exc_info=True)

    def close_all(self) -> None:
        """Closes all pooled sessions and refuses new checkouts.

        Sessions still borrowed are closed when they are released.
        """
        logger.debug("Closing all SSH connections...")
        self._stop_event.set()
        with self._condition:
            self._closed = True
            doomed = [conn for idle in self._idle.values() for conn in idle]
            for conn in doomed:
                self._open_counts[conn.fingerprint] -= 1
            self._idle.clear()
            self._condition.notify_all()
        for conn in doomed:
            conn.close()
        if self._sweep_thread and self._sweep_thread.is_alive():
            self._sweep_thread.join(timeout=5)
        logger.debug("SSH connection pool closed.")

    def get_pool_stats(self) -> Dict[str, object]:
        """Returns a dictionary with current pool statistics.

        Returns:
            Totals for open, in-use and available sessions, plus a
            per-target breakdown keyed by ``user@host:port``.
        """
        with self._lock:
            targets = {}
            for fingerprint, total in self._open_counts.items():
                if total <= 0 and not self._idle.get(fingerprint):
                    continue
                available = len(self._idle.get(fingerprint, ()))
                entry = targets.setdefault(self._targets.get(fingerprint, fingerprint),
                                           {"total": 0, "in_use": 0, "available": 0})
                entry["total"] += total
                entry["available"] += available
                entry["in_use"] += total - available
            total = sum(self._open_counts.values())
            available = sum(len(idle) for idle in self._idle.values())
            return {
                "total": total,
                "in_use": len(self._in_use),
                "available": available,
                "max_per_target": self.max_per_target,
                "targets": targets,
            }

