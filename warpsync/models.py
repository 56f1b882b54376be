"""Core data model for transfers and their SSH targets.

All timestamps are epoch seconds (``time.time()``). Records are plain
dataclasses that round-trip through ``to_dict``/``from_dict`` so the durable
store can persist them as JSON.
"""
import hashlib
import os
import time
import uuid
from dataclasses import dataclass, field, fields, asdict
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from .errors import ValidationError

STATE_HISTORY_LIMIT = 10


class TransferStatus(Enum):
    QUEUED = "queued"
    SCHEDULED = "scheduled"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({TransferStatus.QUEUED, TransferStatus.SCHEDULED, TransferStatus.TRANSFERRING})
IN_FLIGHT_STATUSES = frozenset({TransferStatus.SCHEDULED, TransferStatus.TRANSFERRING})


class TransferPriority(IntEnum):
    """Closed priority scale; higher values are dispatched first."""
    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3

    @classmethod
    def parse(cls, value: Any) -> "TransferPriority":
        """Converts a name, number or member into a priority.

        Raises:
            ValidationError: If the value does not name a known priority.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            name = value.strip().upper()
            if name in cls.__members__:
                return cls[name]
            if name.isdigit():
                value = int(name)
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                pass
        raise ValidationError(f"Unknown priority: {value!r}", {"priority": value})


class TransferType(Enum):
    DOWNLOAD = "download"
    UPLOAD = "upload"
    SYNC = "sync"

    @classmethod
    def parse(cls, value: Any) -> "TransferType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown transfer type: {value!r}", {"type": value}) from None


@dataclass
class SSHTarget:
    """Remote endpoint plus the credential used to reach it."""
    host: str
    username: str
    port: int = 22
    password: Optional[str] = field(default=None, repr=False)
    key_file: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        """Stable pool key for host, port, user and credential."""
        secret = self.password or ""
        key = self.key_file or ""
        credential = hashlib.sha256(f"{secret}\0{key}".encode("utf-8")).hexdigest()[:12]
        return f"{self.username}@{self.host}:{self.port}#{credential}"

    @property
    def display(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    def validate(self) -> None:
        errors: Dict[str, str] = {}
        if not self.host or not str(self.host).strip():
            errors["host"] = "Host is required"
        if not self.username or not str(self.username).strip():
            errors["username"] = "Username is required"
        try:
            port = int(self.port)
            if not 1 <= port <= 65535:
                errors["port"] = "Port must be between 1 and 65535"
        except (TypeError, ValueError):
            errors["port"] = "Port must be an integer"
        if errors:
            raise ValidationError("Invalid SSH target", errors)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SSHTarget":
        return cls(
            host=data.get("host", ""),
            username=data.get("username", ""),
            port=int(data.get("port", 22) or 22),
            password=data.get("password"),
            key_file=data.get("key_file"),
        )


_LIST_OPTIONS = ("exclude", "include", "extra_args")
_INT_OPTIONS = ("bwlimit", "timeout")
_STR_OPTIONS = ("max_size", "min_size", "partial_dir")


@dataclass
class RsyncOptions:
    """Flags and filters passed to rsync for a single transfer."""
    archive: bool = True
    verbose: bool = True
    compress: bool = True
    partial: bool = True
    progress: bool = True
    delete: bool = False
    dry_run: bool = False
    checksum: bool = False
    times: bool = True
    perms: bool = True
    owner: bool = False
    group: bool = False
    inplace: bool = False
    whole_file: bool = False
    sparse: bool = False
    hard_links: bool = False
    numeric_ids: bool = False
    itemize_changes: bool = True
    stats: bool = True
    human_readable: bool = False
    protect_args: bool = True
    exclude: List[str] = field(default_factory=list)
    include: List[str] = field(default_factory=list)
    bwlimit: Optional[int] = None
    timeout: Optional[int] = None
    max_size: Optional[str] = None
    min_size: Optional[str] = None
    partial_dir: Optional[str] = None
    extra_args: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> Dict[str, str]:
        """Returns per-option type problems; empty when every value is usable."""
        problems = {}
        for name in (f.name for f in fields(self)):
            value = getattr(self, name)
            key = f"rsync_options.{name}"
            if name in _LIST_OPTIONS:
                if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                    problems[key] = f"{name} must be a list of strings"
            elif name in _INT_OPTIONS:
                if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
                    problems[key] = f"{name} must be a non-negative integer"
            elif name in _STR_OPTIONS:
                if value is not None and not isinstance(value, str):
                    problems[key] = f"{name} must be a string"
            elif not isinstance(value, bool):
                problems[key] = f"{name} must be true or false"
        return problems

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RsyncOptions":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Unknown rsync options: {', '.join(sorted(unknown))}",
                                  {"rsync_options": sorted(unknown)})
        return cls(**data)


@dataclass
class TransferRequest:
    """Admission payload: what a scan or an operator asks to be transferred."""
    job_id: str
    file_id: str
    source: str
    destination: str
    ssh_target: SSHTarget
    type: TransferType = TransferType.DOWNLOAD
    priority: TransferPriority = TransferPriority.NORMAL
    size: int = 0
    rsync_options: Optional[RsyncOptions] = None
    max_retries: Optional[int] = None

    def validate(self) -> None:
        """Checks the request before it is queued.

        Raises:
            ValidationError: With per-field details of every problem found.
        """
        errors: Dict[str, Any] = {}
        for name in ("job_id", "file_id", "source", "destination"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                errors[name] = f"{name} is required"
        if not isinstance(self.size, int) or isinstance(self.size, bool) or self.size < 0:
            errors["size"] = "size must be a non-negative integer"
        if self.max_retries is not None and (not isinstance(self.max_retries, int) or self.max_retries < 0):
            errors["max_retries"] = "max_retries must be a non-negative integer"
        if not isinstance(self.ssh_target, SSHTarget):
            errors["ssh_target"] = "ssh_target is required"
        else:
            try:
                self.ssh_target.validate()
            except ValidationError as e:
                errors.update({f"ssh_target.{k}": v for k, v in e.details.items()})
        if self.rsync_options is not None:
            if isinstance(self.rsync_options, RsyncOptions):
                errors.update(self.rsync_options.validate())
            else:
                errors["rsync_options"] = "rsync_options must be an object of rsync settings"
        if errors:
            raise ValidationError("Invalid transfer request", errors)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransferRequest":
        """Builds a request from loosely typed input such as JSON."""
        target = data.get("ssh_target")
        if isinstance(target, dict):
            target = SSHTarget.from_dict(target)
        size = data.get("size", 0)
        try:
            size = int(size)
        except (TypeError, ValueError):
            raise ValidationError("Invalid transfer request", {"size": "size must be an integer"}) from None
        options = data.get("rsync_options")
        if options is not None and not isinstance(options, dict):
            raise ValidationError("Invalid transfer request",
                                  {"rsync_options": "rsync_options must be an object of rsync settings"})
        return cls(
            job_id=str(data.get("job_id") or ""),
            file_id=str(data.get("file_id") or ""),
            source=data.get("source") or "",
            destination=data.get("destination") or "",
            ssh_target=target,
            type=TransferType.parse(data.get("type", TransferType.DOWNLOAD)),
            priority=TransferPriority.parse(data.get("priority", TransferPriority.NORMAL)),
            size=size,
            rsync_options=RsyncOptions.from_dict(options) if options is not None else None,
            max_retries=data.get("max_retries"),
        )


@dataclass
class Transfer:
    """A single unit of work moving one file or directory tree."""
    transfer_id: str
    job_id: str
    file_id: str
    source: str
    destination: str
    ssh_target: SSHTarget
    type: TransferType = TransferType.DOWNLOAD
    priority: TransferPriority = TransferPriority.NORMAL
    size: int = 0
    rsync_options: RsyncOptions = field(default_factory=RsyncOptions)
    max_retries: int = 3
    retry_count: int = 0
    status: TransferStatus = TransferStatus.QUEUED
    progress: float = 0.0
    speed: str = ""
    eta: str = ""
    bytes_transferred: int = 0
    error_message: Optional[str] = None
    exit_code: Optional[int] = None
    concurrency_slot: Optional[int] = None
    queued_at: float = 0.0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    last_state_change: float = 0.0
    last_progress_at: Optional[float] = None
    not_before: Optional[float] = None
    state_history: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_request(cls, request: TransferRequest, default_max_retries: int = 3,
                     now: Optional[float] = None) -> "Transfer":
        now = time.time() if now is None else now
        return cls(
            transfer_id=uuid.uuid4().hex,
            job_id=request.job_id,
            file_id=request.file_id,
            source=request.source,
            destination=request.destination,
            ssh_target=request.ssh_target,
            type=request.type,
            priority=request.priority,
            size=request.size,
            rsync_options=request.rsync_options or RsyncOptions(),
            max_retries=default_max_retries if request.max_retries is None else request.max_retries,
            queued_at=now,
            last_state_change=now,
        )

    @property
    def filename(self) -> str:
        return os.path.basename(self.source.rstrip("/")) or self.source

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def last_activity(self) -> float:
        """Most recent state change or progress report."""
        return max(self.last_state_change, self.last_progress_at or 0.0)

    def record_history(self, status: TransferStatus, at: float, reason: Optional[str] = None) -> None:
        self.state_history.append({"status": status.value, "at": at, "reason": reason})
        if len(self.state_history) > STATE_HISTORY_LIMIT:
            del self.state_history[:-STATE_HISTORY_LIMIT]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["priority"] = self.priority.name
        data["status"] = self.status.value
        return data

    def to_public_dict(self) -> Dict[str, Any]:
        """Serialized form with the credential stripped, for APIs and events."""
        data = self.to_dict()
        data["ssh_target"] = {"host": self.ssh_target.host, "port": self.ssh_target.port,
                              "username": self.ssh_target.username}
        data["filename"] = self.filename
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transfer":
        values = dict(data)
        values["ssh_target"] = SSHTarget.from_dict(values.get("ssh_target") or {})
        values["rsync_options"] = RsyncOptions.from_dict(values.get("rsync_options"))
        values["type"] = TransferType(values.get("type", TransferType.DOWNLOAD.value))
        values["priority"] = TransferPriority.parse(values.get("priority", "NORMAL"))
        values["status"] = TransferStatus(values.get("status", TransferStatus.QUEUED.value))
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})
