import logging
import os
import select
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

try:
    import fcntl
except ImportError:
    fcntl = None

import paramiko

from .errors import TransferError, ValidationError
from .models import Transfer, TransferType
from .progress_parser import ProgressUpdate, RsyncOutputParser, RsyncStats
from .rsync_command import RsyncCommand, RsyncCommandBuilder, local_parent
from .utils import ThrottledProgressUpdater, retry

logger = logging.getLogger(__name__)

STDERR_TAIL_BYTES = 4096

# exit code -> (description, retryable)
RSYNC_EXIT_CODES: Dict[int, Tuple[str, bool]] = {
    1: ("Syntax or usage error", False),
    2: ("Protocol incompatibility", False),
    3: ("Errors selecting input/output files, dirs", False),
    4: ("Requested action not supported", False),
    5: ("Error starting client-server protocol", True),
    6: ("Daemon unable to append to log-file", False),
    10: ("Error in socket I/O", True),
    11: ("Error in file I/O", True),
    12: ("Error in rsync protocol data stream", True),
    13: ("Errors with program diagnostics", False),
    14: ("Error in IPC code", True),
    20: ("Received SIGUSR1 or SIGINT", True),
    21: ("Some error returned by waitpid()", True),
    22: ("Error allocating core memory buffers", True),
    23: ("Partial transfer due to error", True),
    24: ("Partial transfer due to vanished source files", True),
    25: ("The --max-delete limit stopped deletions", False),
    30: ("Timeout in data send/receive", True),
    35: ("Timeout waiting for daemon connection", True),
    126: ("Command not executable", False),
    127: ("Command not found", False),
    255: ("SSH connection error", True),
}


def classify_exit_code(code: int) -> Tuple[str, bool]:
    """Maps a process exit status to a description and retryability.

    Negative codes are signals and are retryable. Unknown codes are
    treated as retryable so that transient surprises do not fail work
    permanently.
    """
    if code < 0:
        try:
            name = signal.Signals(-code).name
        except ValueError:
            name = str(-code)
        return f"Terminated by signal {name}", True
    return RSYNC_EXIT_CODES.get(code, ("Unknown rsync error", True))


@dataclass
class TransferOutcome:
    success: bool
    exit_code: Optional[int] = None
    retryable: bool = False
    cancelled: bool = False
    error_message: Optional[str] = None
    stats: Optional[RsyncStats] = None
    duration: float = 0.0
    final_progress: Optional[ProgressUpdate] = None


@dataclass
class _RunningProcess:
    process: subprocess.Popen
    cancel_event: threading.Event
    terminate_sent_at: Optional[float] = None
    kill_sent: bool = False
    stderr_tail: bytearray = field(default_factory=bytearray)


ProgressCallback = Callable[[str, ProgressUpdate], None]


class RsyncRunner:
    """Spawns and supervises one rsync process per transfer.

    Output is read without blocking, parsed into progress snapshots and
    forwarded to ``progress_callback`` no more than once per
    ``progress_interval`` seconds. Each child runs in its own session so that
    cancellation can signal the whole process group (rsync plus its ssh
    helper): SIGTERM first, SIGKILL once ``grace_period`` has elapsed.
    """

    def __init__(self, builder: Optional[RsyncCommandBuilder] = None,
                 progress_callback: Optional[ProgressCallback] = None,
                 progress_interval: float = 1.0, grace_period: float = 5.0,
                 silence_timeout: float = 0, select_timeout: float = 0.5):
        self.builder = builder or RsyncCommandBuilder()
        self.progress_callback = progress_callback
        self.progress_interval = progress_interval
        self.grace_period = grace_period
        self.silence_timeout = silence_timeout
        self.select_timeout = select_timeout
        self._active: Dict[str, _RunningProcess] = {}
        self._lock = threading.Lock()
        self._shutting_down = False

    def execute(self, transfer: Transfer, connection=None,
                cancel_event: Optional[threading.Event] = None) -> TransferOutcome:
        """Runs rsync for a transfer and reports how it ended.

        Args:
            transfer: The transfer to carry out.
            connection: A pooled SSH session used to prepare remote paths,
                or None to skip remote preparation.
            cancel_event: Set by the caller to request termination.

        Returns:
            The outcome. Failures are reported, not raised.
        """
        cancel_event = cancel_event or threading.Event()
        try:
            command = self.builder.build(transfer)
        except ValidationError as e:
            return TransferOutcome(success=False, retryable=False, error_message=e.user_message())

        failure = self.prepare_paths(transfer, connection)
        if failure is not None:
            return failure

        logger.info(f"Starting rsync for {transfer.transfer_id} ({transfer.filename}): {command.display}")
        return self.run_command(transfer.transfer_id, command, cancel_event)

    def prepare_paths(self, transfer: Transfer, connection=None) -> Optional[TransferOutcome]:
        """Runs `prepare` and turns its errors into a failed outcome.

        Returns:
            None when the paths are ready, otherwise the failure to record.
        """
        try:
            self.prepare(transfer, connection)
        except TransferError as e:
            return TransferOutcome(success=False, retryable=e.retryable, error_message=e.user_message())
        except (paramiko.SSHException, EOFError, OSError) as e:
            return TransferOutcome(success=False, retryable=True,
                                   error_message=f"Connection error: could not prepare paths: {e}")
        return None

    def prepare(self, transfer: Transfer, connection=None) -> None:
        """Makes sure source exists and destination parents are in place."""
        parent = local_parent(transfer)
        if parent:
            os.makedirs(parent, exist_ok=True)
        if connection is None:
            return
        self._prepare_remote(transfer, connection)

    @retry(tries=2, delay=1, exceptions=(paramiko.SSHException, EOFError))
    def _prepare_remote(self, transfer: Transfer, connection) -> None:
        if transfer.type == TransferType.UPLOAD:
            if not os.path.exists(transfer.source):
                raise TransferError(f"Local source does not exist: {transfer.source}", retryable=False)
            remote_dir = os.path.dirname(transfer.destination.rstrip('/'))
            if remote_dir:
                connection.makedirs(remote_dir)
        elif not connection.path_exists(transfer.source):
            raise TransferError(f"Remote source does not exist: {transfer.source}", retryable=False)

    def _spawn(self, command: RsyncCommand) -> subprocess.Popen:
        env = dict(os.environ)
        env.update(command.env)
        return subprocess.Popen(
            command.argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            env=env,
            start_new_session=True,
        )

    def run_command(self, transfer_id: str, command: RsyncCommand,
                    cancel_event: Optional[threading.Event] = None) -> TransferOutcome:
        """Spawns `command` and supervises it until exit.

        Returns:
            The outcome; ``cancelled`` is set when termination was requested.
        """
        cancel_event = cancel_event or threading.Event()
        started = time.monotonic()
        try:
            process = self._spawn(command)
        except OSError as e:
            logger.error(f"Could not start rsync for {transfer_id}: {e}")
            return TransferOutcome(success=False, retryable=False,
                                   error_message=f"Transfer error: could not start rsync: {e}")

        running = _RunningProcess(process=process, cancel_event=cancel_event)
        with self._lock:
            self._active[transfer_id] = running
            if self._shutting_down:
                cancel_event.set()

        parser = RsyncOutputParser()
        throttle = ThrottledProgressUpdater(self._forward_progress, self.progress_interval)
        timed_out = False
        try:
            timed_out = self._stream(transfer_id, running, parser, throttle)
        finally:
            if process.poll() is None:
                logger.warning(f"Cleaning up rsync process for {transfer_id}...")
                self._terminate(running, force=True)
            process.wait()
            with self._lock:
                self._active.pop(transfer_id, None)
            for update in parser.finish():
                throttle.update(transfer_id, update)
            throttle.flush()

        duration = time.monotonic() - started
        code = process.returncode
        stderr_text = running.stderr_tail.decode('utf-8', errors='replace').strip()
        last_line = stderr_text.splitlines()[-1] if stderr_text else ""

        if cancel_event.is_set():
            logger.info(f"rsync for {transfer_id} cancelled (exit {code})")
            return TransferOutcome(success=False, exit_code=code, cancelled=True,
                                   error_message="Cancelled", stats=parser.stats,
                                   duration=duration, final_progress=parser.current)
        if timed_out:
            return TransferOutcome(success=False, exit_code=code, retryable=True,
                                   error_message=f"Timeout: no output from rsync for {self.silence_timeout}s",
                                   stats=parser.stats, duration=duration, final_progress=parser.current)
        if code == 0:
            logger.info(f"rsync for {transfer_id} completed in {duration:.1f}s")
            return TransferOutcome(success=True, exit_code=0, stats=parser.stats,
                                   duration=duration, final_progress=parser.current)

        description, retryable = classify_exit_code(code)
        message = f"Transfer error: rsync exit {code} ({description})"
        if last_line:
            message += f": {last_line}"
        logger.error(f"rsync for {transfer_id} failed: {message}")
        return TransferOutcome(success=False, exit_code=code, retryable=retryable,
                               error_message=message, stats=parser.stats,
                               duration=duration, final_progress=parser.current)

    def _stream(self, transfer_id: str, running: _RunningProcess,
                parser: RsyncOutputParser, throttle: ThrottledProgressUpdater) -> bool:
        """Pumps stdout/stderr until both close. Returns True on silence timeout."""
        process = running.process
        streams = {process.stdout.fileno(): process.stdout, process.stderr.fileno(): process.stderr}
        if fcntl is not None:
            for fd in streams:
                flags = fcntl.fcntl(fd, fcntl.F_GETFL)
                fcntl.fcntl(fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)

        stdout_fd = process.stdout.fileno()
        open_fds = set(streams)
        last_activity = time.monotonic()

        while open_fds:
            if running.cancel_event.is_set():
                self._terminate(running)

            readable, _, _ = select.select(list(open_fds), [], [], self.select_timeout)
            if not readable:
                if process.poll() is not None:
                    break
                if (self.silence_timeout and running.terminate_sent_at is None
                        and time.monotonic() - last_activity > self.silence_timeout):
                    logger.error(f"rsync for {transfer_id} silent for {self.silence_timeout}s, terminating")
                    self._terminate(running)
                    self._drain_until_exit(running)
                    return True
                continue

            for fd in readable:
                try:
                    chunk = os.read(fd, 32768)
                except BlockingIOError:
                    continue
                if not chunk:
                    open_fds.discard(fd)
                    continue
                last_activity = time.monotonic()
                if fd == stdout_fd:
                    for update in parser.feed(chunk):
                        throttle.update(transfer_id, update, force=update.percentage >= 100)
                else:
                    logger.debug(f"({transfer_id[:10]}) [RSYNC_ERR] {chunk.decode('utf-8', errors='replace').rstrip()}")
                    running.stderr_tail.extend(chunk)
                    del running.stderr_tail[:-STDERR_TAIL_BYTES]
        return False

    def _drain_until_exit(self, running: _RunningProcess) -> None:
        while running.process.poll() is None:
            self._terminate(running)
            time.sleep(0.05)

    def _terminate(self, running: _RunningProcess, force: bool = False) -> None:
        """Signals the process group, escalating to SIGKILL after the grace period.

        With ``force`` the call blocks for whatever remains of the grace
        period before escalating.
        """
        process = running.process
        if process.poll() is not None:
            return
        now = time.monotonic()
        if running.terminate_sent_at is None:
            running.terminate_sent_at = now
            self._signal_group(process, signal.SIGTERM)
        remaining = self.grace_period - (now - running.terminate_sent_at)
        if force:
            try:
                process.wait(timeout=max(0.0, remaining))
                return
            except subprocess.TimeoutExpired:
                pass
        elif remaining > 0:
            return
        if not running.kill_sent:
            running.kill_sent = True
            logger.warning(f"rsync pid {process.pid} still alive after {self.grace_period}s, sending SIGKILL")
            self._signal_group(process, signal.SIGKILL)

    @staticmethod
    def _signal_group(process: subprocess.Popen, sig: int) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning(f"Could not signal process group {process.pid}: {e}")
            try:
                process.send_signal(sig)
            except OSError:
                pass

    def _forward_progress(self, transfer_id: str, update: ProgressUpdate) -> None:
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(transfer_id, update)
        except Exception as e:
            logger.warning(f"Progress callback failed for {transfer_id}: {e}")

    def cancel(self, transfer_id: str) -> bool:
        """Requests termination of a running transfer's process group.

        Returns:
            True if a process was running for the transfer.
        """
        with self._lock:
            running = self._active.get(transfer_id)
        if running is None:
            return False
        running.cancel_event.set()
        self._terminate(running)
        return True

    def is_running(self, transfer_id: str) -> bool:
        with self._lock:
            return transfer_id in self._active

    def running_transfers(self) -> List[str]:
        with self._lock:
            return list(self._active)

    def stop_all(self) -> None:
        """Signals that the application is shutting down and terminates all tracked processes."""
        logging.info("Stopping all active rsync processes...")
        with self._lock:
            self._shutting_down = True
            running = list(self._active.values())
        for entry in running:
            entry.cancel_event.set()
            self._terminate(entry)
