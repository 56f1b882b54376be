"""Sync job records and the directory scanner that feeds the queue."""
import configparser
import logging
import os
import stat
import threading
import time
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

import paramiko

from .errors import ValidationError
from .models import SSHTarget, TransferPriority, TransferRequest, TransferType
from .ssh_manager import SSHConnectionPool

logger = logging.getLogger(__name__)

JOB_SECTION_PREFIX = "job:"
DEFAULT_SCAN_INTERVAL_MINUTES = 60
JOB_DIRECTIONS = (TransferType.DOWNLOAD, TransferType.UPLOAD)


@dataclass
class JobRecord:
    """A configured sync job. The core only ever writes ``last_scan``."""
    job_id: str
    remote_path: str
    local_path: str
    ssh_target: SSHTarget
    enabled: bool = True
    direction: TransferType = TransferType.DOWNLOAD
    scan_interval: float = DEFAULT_SCAN_INTERVAL_MINUTES
    auto_queue: bool = True
    max_concurrency: Optional[int] = None
    priority: TransferPriority = TransferPriority.NORMAL
    last_scan: Optional[float] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "enabled": self.enabled,
            "remote_path": self.remote_path,
            "local_path": self.local_path,
            "target": self.ssh_target.display,
            "direction": self.direction.value,
            "scan_interval": self.scan_interval,
            "auto_queue": self.auto_queue,
            "max_concurrency": self.max_concurrency,
            "priority": self.priority.name,
            "last_scan": self.last_scan,
        }


@dataclass
class ScanCandidate:
    file_id: str
    relative_path: str
    size: int
    is_directory: bool = False
    desired_action: TransferType = TransferType.DOWNLOAD

    def to_request(self, job: JobRecord) -> TransferRequest:
        remote = f"{job.remote_path.rstrip('/')}/{self.relative_path}"
        local = os.path.join(job.local_path, *self.relative_path.split('/'))
        if self.desired_action == TransferType.UPLOAD:
            source, destination = local, remote
        else:
            source, destination = remote, local
        return TransferRequest(
            job_id=job.job_id,
            file_id=self.file_id,
            source=source,
            destination=destination,
            ssh_target=job.ssh_target,
            type=self.desired_action,
            priority=job.priority,
            size=self.size,
        )


def job_from_section(job_id: str, section: configparser.SectionProxy) -> JobRecord:
    """Builds a JobRecord from a ``[job:<name>]`` config section.

    Raises:
        ValidationError: If a required option is missing or malformed.
    """
    try:
        target = SSHTarget(
            host=section.get('host', '').strip(),
            username=section.get('username', '').strip(),
            port=section.getint('port', 22),
            password=section.get('password') or None,
            key_file=section.get('key_file') or None,
        )
        max_concurrency = section.getint('max_concurrency', fallback=None)
        job = JobRecord(
            job_id=job_id,
            remote_path=section.get('remote_path', '').strip(),
            local_path=os.path.expanduser(section.get('local_path', '').strip()),
            ssh_target=target,
            enabled=section.getboolean('enabled', True),
            direction=TransferType.parse(section.get('direction', 'download')),
            scan_interval=section.getfloat('scan_interval', DEFAULT_SCAN_INTERVAL_MINUTES),
            auto_queue=section.getboolean('auto_queue', True),
            max_concurrency=max_concurrency,
            priority=TransferPriority.parse(section.get('priority', 'NORMAL')),
        )
    except ValueError as e:
        raise ValidationError(f"Job '{job_id}' has an invalid value: {e}", {"job": job_id}) from e
    if job.direction not in JOB_DIRECTIONS:
        raise ValidationError(f"Job '{job_id}' direction must be 'download' or 'upload'",
                              {"job": job_id, "direction": job.direction.value})
    missing = [name for name in ('remote_path', 'local_path') if not getattr(job, name)]
    if missing:
        raise ValidationError(f"Job '{job_id}' is missing {', '.join(missing)}", {"job": job_id})
    target.validate()
    return job


class ConfigJobRepository:
    """Read-only job lookup backed by ``[job:<name>]`` sections."""

    def __init__(self, config: configparser.ConfigParser):
        self._lock = threading.Lock()
        self._jobs: Dict[str, JobRecord] = {}
        self.reload(config)

    def reload(self, config: configparser.ConfigParser) -> None:
        jobs = {}
        for section_name in config.sections():
            if not section_name.startswith(JOB_SECTION_PREFIX):
                continue
            job_id = section_name[len(JOB_SECTION_PREFIX):].strip()
            try:
                jobs[job_id] = job_from_section(job_id, config[section_name])
            except ValidationError as e:
                logging.error(f"Skipping job section [{section_name}]: {e}")
        with self._lock:
            for job_id, job in jobs.items():
                previous = self._jobs.get(job_id)
                if previous is not None:
                    job.last_scan = previous.last_scan
            self._jobs = jobs
        logging.info(f"Loaded {len(jobs)} sync job(s) from configuration.")

    def get_jobs(self) -> List[JobRecord]:
        with self._lock:
            return list(self._jobs.values())

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            return self._jobs.get(job_id)

    def record_scan(self, job_id: str, when: Optional[float] = None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.last_scan = when if when is not None else time.time()

    def get_max_concurrency(self, job_id: str) -> Optional[int]:
        job = self.get_job(job_id)
        return job.max_concurrency if job else None


class RemoteListingScanner:
    """Lists every file under a job's source tree as a transfer candidate.

    Downloads walk ``remote_path`` over SFTP on a pooled connection; uploads
    walk ``local_path``. Unchanged files are left for rsync's own delta
    handling to skip.
    """

    def __init__(self, pool: SSHConnectionPool):
        self.pool = pool

    def scan(self, job: JobRecord, abort_event: Optional[threading.Event] = None) -> Iterator[ScanCandidate]:
        """Yields candidates for a job until the tree is exhausted or `abort_event` is set."""
        abort_event = abort_event or threading.Event()
        if job.direction == TransferType.UPLOAD:
            yield from self._scan_local(job, abort_event)
            return
        with self.pool.connection(job.ssh_target) as connection:
            with connection.open_sftp() as sftp:
                yield from self._walk_remote(sftp, job.remote_path.rstrip('/') or '/', "", abort_event)

    def _walk_remote(self, sftp: paramiko.SFTPClient, remote_path: str, prefix: str,
                     abort_event: threading.Event) -> Iterator[ScanCandidate]:
        try:
            items = sftp.listdir_attr(remote_path)
        except FileNotFoundError:
            logging.warning(f"Directory not found on source, skipping: {remote_path}")
            return
        for item in sorted(items, key=lambda a: a.filename):
            if abort_event.is_set():
                return
            relative = f"{prefix}{item.filename}"
            if item.st_mode is not None and stat.S_ISDIR(item.st_mode):
                yield from self._walk_remote(sftp, f"{remote_path.rstrip('/')}/{item.filename}",
                                             f"{relative}/", abort_event)
            else:
                yield ScanCandidate(file_id=relative, relative_path=relative, size=item.st_size or 0)

    def _scan_local(self, job: JobRecord, abort_event: threading.Event) -> Iterator[ScanCandidate]:
        if not os.path.isdir(job.local_path):
            logging.warning(f"Local directory not found, skipping: {job.local_path}")
            return
        for root, dirs, files in os.walk(job.local_path):
            dirs.sort()
            for name in sorted(files):
                if abort_event.is_set():
                    return
                full = os.path.join(root, name)
                relative = os.path.relpath(full, job.local_path).replace(os.sep, '/')
                try:
                    size = os.path.getsize(full)
                except OSError:
                    logging.warning(f"File vanished during scan: {full}")
                    continue
                yield ScanCandidate(file_id=relative, relative_path=relative, size=size,
                                    desired_action=TransferType.UPLOAD)
