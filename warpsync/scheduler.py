"""Periodic job scanning.

The scheduler wakes every ``check_interval`` seconds, starts scans for due
jobs up to ``max_concurrent_scans`` at a time, and feeds what the scanner
finds into the transfer queue. Scans that fail or run past ``scan_timeout``
count against the job; ``max_error_count`` consecutive failures park the job
in ``ERROR`` until someone resets it.
"""
import configparser
import logging
import os
import resource
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import ConflictError, NotFoundError, ScanTimeoutError
from .scanner import ConfigJobRepository, RemoteListingScanner
from .ssh_manager import SSHConnectionPool
from .transfer_queue import TransferQueue

logger = logging.getLogger(__name__)

ADMIT_BATCH_SIZE = 50
MEMORY_WARNING_PERCENT = 90.0


class JobStatus(Enum):
    ACTIVE = "active"
    DISABLED = "disabled"
    ERROR = "error"
    SCANNING = "scanning"


@dataclass
class SchedulerConfig:
    """Scheduler tuning. Out-of-range values are clamped with a warning.

    Attributes:
        check_interval: Seconds between ticks (minimum 5).
        max_concurrent_scans: Scans allowed at once (1-10).
        scan_timeout: Seconds a single scan may run (minimum 60).
        error_retry_delay: Seconds to wait after a failed scan (minimum 30).
        max_error_count: Consecutive failures before a job is parked (1-20).
        health_check_interval: Seconds between health checks (minimum 30).
    """
    check_interval: float = 30
    max_concurrent_scans: int = 3
    scan_timeout: float = 600
    error_retry_delay: float = 300
    max_error_count: int = 5
    health_check_interval: float = 60

    BOUNDS = {
        "check_interval": (5, None),
        "max_concurrent_scans": (1, 10),
        "scan_timeout": (60, None),
        "error_retry_delay": (30, None),
        "max_error_count": (1, 20),
        "health_check_interval": (30, None),
    }

    def __post_init__(self):
        for name, (low, high) in self.BOUNDS.items():
            value = getattr(self, name)
            clamped = value
            if low is not None and value < low:
                clamped = low
            if high is not None and value > high:
                clamped = high
            if clamped != value:
                logging.warning(f"Scheduler setting '{name}'={value} is out of range, using {clamped}.")
                setattr(self, name, clamped)

    @classmethod
    def from_config(cls, config: Optional[configparser.ConfigParser] = None,
                    environ: Optional[Mapping[str, str]] = None) -> "SchedulerConfig":
        """Reads ``[SCHEDULER]`` and applies ``WS_SCHEDULER_*`` environment overrides."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        section = config['SCHEDULER'] if config is not None and config.has_section('SCHEDULER') else None
        for f in fields(cls):
            convert = int if f.type in (int, "int") else float
            if section is not None and section.get(f.name):
                try:
                    values[f.name] = convert(section.get(f.name))
                except ValueError:
                    logging.warning(f"Ignoring invalid [SCHEDULER] {f.name}: {section.get(f.name)!r}")
            env_name = f"WS_SCHEDULER_{f.name.upper()}"
            if environ.get(env_name):
                try:
                    values[f.name] = convert(environ[env_name])
                except ValueError:
                    logging.warning(f"Ignoring invalid {env_name}: {environ[env_name]!r}")
        return cls(**values)


@dataclass
class ScheduledJob:
    job_id: str
    next_scan: float
    scan_interval: float
    auto_queue: bool = True
    status: JobStatus = JobStatus.ACTIVE
    last_scan: Optional[float] = None
    error_count: int = 0
    last_error: Optional[str] = None
    is_scanning: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class JobExecution:
    job_id: str
    start_time: float
    status: str = "running"
    end_time: Optional[float] = None
    files_scanned: int = 0
    files_queued: int = 0
    error: Optional[str] = None
    duration: Optional[float] = None
    abort_event: threading.Event = field(default_factory=threading.Event, repr=False)
    future: Optional[Future] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "status": self.status,
            "files_scanned": self.files_scanned,
            "files_queued": self.files_queued,
            "error": self.error,
            "duration": self.duration,
        }


@dataclass
class SchedulerStats:
    total_jobs: int = 0
    active_jobs: int = 0
    scanning_jobs: int = 0
    error_jobs: int = 0
    next_scan_in: int = 0
    last_health_check: Optional[float] = None
    uptime: float = 0.0
    total_scans_completed: int = 0
    total_scans_failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SchedulerHealth:
    status: str
    issues: List[str]
    last_check: float
    memory_usage: Dict[str, float]
    active_connections: int
    queue_size: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def memory_usage() -> Dict[str, float]:
    """Peak resident memory of this process against physical memory, in bytes."""
    used = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss * 1024
    try:
        total = os.sysconf('SC_PAGE_SIZE') * os.sysconf('SC_PHYS_PAGES')
    except (ValueError, OSError, AttributeError):
        total = 0
    percentage = round(used / total * 100, 2) if total else 0.0
    return {"used": used, "total": total, "percentage": percentage}


class JobScheduler:
    """Runs scans for configured jobs and admits what they find."""

    def __init__(self, repository: ConfigJobRepository, scanner: RemoteListingScanner,
                 queue: TransferQueue, config: Optional[SchedulerConfig] = None,
                 pool: Optional[SSHConnectionPool] = None, recovery=None,
                 executor: Optional[Executor] = None, clock: Callable[[], float] = time.time):
        self.repository = repository
        self.scanner = scanner
        self.queue = queue
        self.config = config or SchedulerConfig()
        self.pool = pool
        self.recovery = recovery
        self._clock = clock
        self._executor = executor
        self._owns_executor = executor is None
        self._lock = threading.Lock()
        self._jobs: Dict[str, ScheduledJob] = {}
        self._running: Dict[str, JobExecution] = {}
        self._started_at = clock()
        self._scans_completed = 0
        self._scans_failed = 0
        self._last_health: Optional[SchedulerHealth] = None
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self.is_running = False

    # --- job table -------------------------------------------------------------

    def _next_scan(self, last_scan: Optional[float], interval_minutes: float, now: float) -> float:
        if last_scan is None:
            return now
        return max(now, last_scan + interval_minutes * 60)

    def refresh_jobs(self) -> int:
        """Reloads enabled jobs, keeping error and scan state of known ones.

        Returns:
            The number of scheduled jobs.
        """
        now = self._clock()
        records = [j for j in self.repository.get_jobs() if j.enabled]
        with self._lock:
            jobs = {}
            for record in records:
                previous = self._jobs.get(record.job_id)
                if previous is not None:
                    previous.scan_interval = record.scan_interval
                    previous.auto_queue = record.auto_queue
                    jobs[record.job_id] = previous
                    continue
                jobs[record.job_id] = ScheduledJob(
                    job_id=record.job_id,
                    next_scan=self._next_scan(record.last_scan, record.scan_interval, now),
                    scan_interval=record.scan_interval,
                    auto_queue=record.auto_queue,
                    last_scan=record.last_scan,
                )
            self._jobs = jobs
        logger.info(f"Scheduler tracking {len(jobs)} enabled job(s)")
        return len(jobs)

    def get_scheduled_jobs(self) -> List[ScheduledJob]:
        with self._lock:
            return [replace(job) for job in self._jobs.values()]

    def get_running_executions(self) -> List[JobExecution]:
        with self._lock:
            return [e for e in self._running.values() if e.status == "running"]

    def reset_job(self, job_id: str) -> ScheduledJob:
        """Clears a job's error state and makes it due immediately."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} is not scheduled")
            job.error_count = 0
            job.last_error = None
            if job.status == JobStatus.ERROR:
                job.status = JobStatus.ACTIVE
            job.next_scan = self._clock()
            snapshot = replace(job)
        logger.info(f"Job {job_id} reset")
        return snapshot

    # --- ticking ---------------------------------------------------------------

    def _running_count(self) -> int:
        # timed-out scans still unwinding do not hold a scan slot
        return sum(1 for e in self._running.values() if e.status == "running")

    def _begin(self, job: ScheduledJob, now: float) -> JobExecution:
        """Marks a job as scanning. Caller holds the lock."""
        execution = JobExecution(job_id=job.job_id, start_time=now)
        job.is_scanning = True
        if job.status == JobStatus.ACTIVE:
            job.status = JobStatus.SCANNING
        self._running[job.job_id] = execution
        return execution

    def _submit(self, execution: JobExecution) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.config.max_concurrent_scans,
                                                thread_name_prefix="scan")
        logger.info(f"Starting scan for job {execution.job_id}")
        execution.future = self._executor.submit(self._run_scan, execution)

    def tick(self) -> int:
        """Starts scans for due jobs and enforces scan timeouts.

        Returns:
            The number of scans started.
        """
        if self.recovery is None:
            return self._tick()
        with self.recovery.outside_recovery() as clear:
            if not clear:
                logger.debug("Recovery in progress, skipping scheduler tick")
                return 0
            return self._tick()

    def _tick(self) -> int:
        now = self._clock()
        self._check_timeouts(now)
        started = []
        with self._lock:
            due = sorted((job for job in self._jobs.values()
                          if job.status == JobStatus.ACTIVE and not job.is_scanning and job.next_scan <= now),
                         key=lambda job: job.next_scan)
            for job in due:
                if self._running_count() >= self.config.max_concurrent_scans:
                    break
                started.append(self._begin(job, now))
        for execution in started:
            self._submit(execution)
        return len(started)

    def _check_timeouts(self, now: float) -> None:
        expired = []
        with self._lock:
            for execution in self._running.values():
                if execution.status == "running" and now - execution.start_time > self.config.scan_timeout:
                    expired.append(execution)
        for execution in expired:
            execution.abort_event.set()
            self._record_failure(execution, ScanTimeoutError(
                f"scan of job {execution.job_id} exceeded {self.config.scan_timeout:.0f}s"))

    def trigger_job_scan(self, job_id: str) -> JobExecution:
        """Starts a scan now, outside the regular schedule.

        Raises:
            NotFoundError: If the job is not scheduled.
            ConflictError: If the job is already scanning or the scan cap is reached.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} is not scheduled")
            if job.is_scanning:
                raise ConflictError(f"Job {job_id} is already scanning")
            if self._running_count() >= self.config.max_concurrent_scans:
                raise ConflictError("Maximum concurrent scans reached")
            execution = self._begin(job, self._clock())
        self._submit(execution)
        return execution

    # --- scan execution -----------------------------------------------------------

    def _run_scan(self, execution: JobExecution) -> None:
        try:
            record = self.repository.get_job(execution.job_id)
            if record is None:
                raise NotFoundError(f"Job {execution.job_id} no longer exists")
            batch = []
            for candidate in self.scanner.scan(record, execution.abort_event):
                if execution.abort_event.is_set():
                    break
                if self._clock() - execution.start_time > self.config.scan_timeout:
                    raise ScanTimeoutError(f"scan of job {execution.job_id} exceeded "
                                           f"{self.config.scan_timeout:.0f}s")
                execution.files_scanned += 1
                if candidate.is_directory or not record.auto_queue:
                    continue
                batch.append(candidate.to_request(record))
                if len(batch) >= ADMIT_BATCH_SIZE:
                    execution.files_queued += len(self.queue.add_batch(batch))
                    batch = []
            if execution.abort_event.is_set():
                return
            if batch:
                execution.files_queued += len(self.queue.add_batch(batch))
            self._record_success(execution)
        except Exception as e:
            self._record_failure(execution, e)
        finally:
            with self._lock:
                if self._running.get(execution.job_id) is execution:
                    del self._running[execution.job_id]
                job = self._jobs.get(execution.job_id)
                if job is not None:
                    job.is_scanning = False
                    if job.status == JobStatus.SCANNING:
                        job.status = JobStatus.ACTIVE

    def _record_success(self, execution: JobExecution) -> None:
        now = self._clock()
        with self._lock:
            if execution.status != "running":
                return
            execution.status = "completed"
            execution.end_time = now
            execution.duration = now - execution.start_time
            self._scans_completed += 1
            job = self._jobs.get(execution.job_id)
            if job is not None:
                job.last_scan = execution.start_time
                job.next_scan = self._next_scan(job.last_scan, job.scan_interval, now)
                job.error_count = 0
                job.last_error = None
                job.status = JobStatus.ACTIVE
        self.repository.record_scan(execution.job_id, execution.start_time)
        logger.info(f"Scan of job {execution.job_id} finished: {execution.files_scanned} file(s) seen, "
                    f"{execution.files_queued} queued in {execution.duration:.1f}s")

    def _record_failure(self, execution: JobExecution, error: Exception) -> None:
        now = self._clock()
        timed_out = isinstance(error, ScanTimeoutError)
        message = error.user_message() if hasattr(error, "user_message") else f"Scan error: {error}"
        with self._lock:
            if execution.status != "running":
                return
            execution.status = "timeout" if timed_out else "failed"
            execution.error = message
            execution.end_time = now
            execution.duration = now - execution.start_time
            self._scans_failed += 1
            job = self._jobs.get(execution.job_id)
            if job is None:
                return
            job.error_count += 1
            job.last_error = message
            if job.error_count >= self.config.max_error_count:
                job.status = JobStatus.ERROR
                logger.error(f"Job {job.job_id} failed {job.error_count} scans in a row and is suspended "
                             f"until reset: {message}")
            else:
                job.status = JobStatus.ACTIVE
                job.next_scan = now + self.config.error_retry_delay
                logger.warning(f"Scan of job {job.job_id} failed ({job.error_count}/{self.config.max_error_count}), "
                               f"retrying in {self.config.error_retry_delay:.0f}s: {message}")

    # --- reporting ------------------------------------------------------------------

    def get_stats(self) -> SchedulerStats:
        now = self._clock()
        with self._lock:
            jobs = list(self._jobs.values())
            upcoming = [j.next_scan for j in jobs if j.status == JobStatus.ACTIVE and not j.is_scanning]
            return SchedulerStats(
                total_jobs=len(jobs),
                active_jobs=sum(1 for j in jobs if j.status in (JobStatus.ACTIVE, JobStatus.SCANNING)),
                scanning_jobs=sum(1 for j in jobs if j.is_scanning),
                error_jobs=sum(1 for j in jobs if j.status == JobStatus.ERROR),
                next_scan_in=max(0, int(min(upcoming) - now)) if upcoming else 0,
                last_health_check=self._last_health.last_check if self._last_health else None,
                uptime=now - self._started_at,
                total_scans_completed=self._scans_completed,
                total_scans_failed=self._scans_failed,
            )

    def health_check(self) -> SchedulerHealth:
        """Reports liveness, memory pressure, SSH usage and queue depth."""
        issues = []
        status = "healthy"
        if not self.is_running:
            issues.append("Scheduler is not running")
            status = "error"
        stats = self.get_stats()
        if stats.error_jobs:
            issues.append(f"{stats.error_jobs} job(s) suspended after repeated scan failures")
        memory = memory_usage()
        if memory["percentage"] >= MEMORY_WARNING_PERCENT:
            issues.append(f"High memory usage: {memory['percentage']}%")
        active_connections = 0
        if self.pool is not None:
            active_connections = self.pool.get_pool_stats()["in_use"]
        queue_size = self.queue.get_stats()["queued"]
        if issues and status == "healthy":
            status = "warning"
        health = SchedulerHealth(status=status, issues=issues, last_check=self._clock(),
                                 memory_usage=memory, active_connections=active_connections,
                                 queue_size=queue_size)
        with self._lock:
            self._last_health = health
        if issues:
            logger.warning(f"Scheduler health {status}: {'; '.join(issues)}")
        return health

    # --- lifecycle --------------------------------------------------------------------

    def start(self) -> None:
        if self.is_running:
            return
        self.refresh_jobs()
        self._stop_event.clear()
        self.is_running = True
        self._threads = [
            threading.Thread(target=self._loop, args=(self.config.check_interval, self.tick),
                             name="scheduler-tick", daemon=True),
            threading.Thread(target=self._loop, args=(self.config.health_check_interval, self.health_check),
                             name="scheduler-health", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Job scheduler started (check every {self.config.check_interval:.0f}s, "
                    f"max {self.config.max_concurrent_scans} concurrent scans)")

    def _loop(self, interval: float, action: Callable[[], Any]) -> None:
        while not self._stop_event.is_set():
            try:
                action()
            except Exception as e:
                logger.error(f"Scheduler {action.__name__} failed: {e}", exc_info=True)
            if self._stop_event.wait(interval):
                break

    def stop(self) -> None:
        self._stop_event.set()
        self.is_running = False
        with self._lock:
            running = list(self._running.values())
        for execution in running:
            execution.abort_event.set()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=5)
        self._threads = []
        if self._executor is not None and self._owns_executor:
            self._executor.shutdown(wait=False)
            self._executor = None
        logger.info("Job scheduler stopped")
