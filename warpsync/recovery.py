"""Detection and repair of transfers whose durable and live state disagree."""
import logging
import threading
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Generator, List, Optional

from .concurrency import JobConcurrencyController
from .errors import ConflictError, InvalidTransitionError, NotFoundError
from .models import IN_FLIGHT_STATUSES, TransferStatus
from .process_runner import RsyncRunner
from .state_manager import TransferStateManager
from .transfer_queue import TransferQueue

logger = logging.getLogger(__name__)

ORPHANED = "orphaned"
STUCK = "stuck"
DEFAULT_LOCK_WAIT = 5.0


@dataclass
class RecoveryRecord:
    kind: str
    transfer_id: str
    job_id: str
    file_id: str
    state: TransferStatus
    last_state_change: float
    stuck_duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass
class RecoveryStats:
    total_transfers: int = 0
    orphaned_transfers: int = 0
    stuck_transfers: int = 0
    recovered_transfers: int = 0
    failed_recoveries: int = 0
    released_slots: int = 0
    purged_transfers: int = 0
    issues: List[str] = field(default_factory=list)
    started_at: float = 0.0
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class StateRecoveryService:
    """Finds orphaned and stuck transfers and brings them back into line.

    ``recovery_lock`` is held by a full recovery pass and by each scheduler
    tick, so the two never overlap: the scheduler skips its tick while a pass
    runs, and a pass waits up to ``lock_wait`` seconds for a tick to finish.
    """

    def __init__(self, state_manager: TransferStateManager, queue: TransferQueue,
                 controller: JobConcurrencyController, runner: RsyncRunner,
                 stuck_threshold_minutes: float = 30, cleanup_after_days: float = 7,
                 lock_wait: float = DEFAULT_LOCK_WAIT,
                 clock: Callable[[], float] = time.time):
        self.state_manager = state_manager
        self.queue = queue
        self.controller = controller
        self.runner = runner
        self.stuck_threshold_minutes = stuck_threshold_minutes
        self.cleanup_after_days = cleanup_after_days
        self.lock_wait = lock_wait
        self.recovery_lock = threading.Lock()
        self.last_recovery: Optional[RecoveryStats] = None
        self._pass_running = threading.Event()
        self._clock = clock

    def is_recovering(self) -> bool:
        return self._pass_running.is_set()

    @contextmanager
    def outside_recovery(self) -> Generator[bool, None, None]:
        """Keeps recovery passes out for the duration of a with-block.

        Yields:
            False without blocking if a pass is running; the caller should
            skip its work.
        """
        if not self.recovery_lock.acquire(blocking=False):
            yield False
            return
        try:
            yield True
        finally:
            self.recovery_lock.release()

    def detect_orphaned_transfers(self) -> List[RecoveryRecord]:
        """Active transfers in storage that neither the queue nor the runner knows about."""
        now = self._clock()
        orphans = []
        for transfer in self.state_manager.get_active_transfers():
            if self.queue.is_tracked(transfer.transfer_id) or self.runner.is_running(transfer.transfer_id):
                continue
            orphans.append(RecoveryRecord(
                kind=ORPHANED,
                transfer_id=transfer.transfer_id,
                job_id=transfer.job_id,
                file_id=transfer.file_id,
                state=transfer.status,
                last_state_change=transfer.last_state_change,
                stuck_duration=max(0.0, now - transfer.last_state_change),
            ))
        if orphans:
            logger.warning(f"Found {len(orphans)} orphaned transfer(s)")
        return orphans

    def cleanup_orphaned_transfer(self, record: RecoveryRecord) -> bool:
        """Frees an orphan's slot and fails it so normal retry policy applies.

        Orphans that were still only QUEUED never started, so they are put
        back under live tracking without spending a retry.
        """
        transfer_id = record.transfer_id
        if self.controller.release_slot_by_transfer(transfer_id):
            logger.info(f"Released concurrency slot held by orphaned transfer {transfer_id}")
        try:
            transfer = self.state_manager.get_transfer(transfer_id)
            if transfer.status == TransferStatus.QUEUED:
                self.queue.adopt(transfer)
                logger.info(f"Re-adopted queued transfer {transfer_id} ({transfer.filename})")
                return True
            if transfer.status not in IN_FLIGHT_STATUSES:
                return False
            result = self.state_manager.mark_failed(
                transfer_id, f"Recovery: transfer was interrupted while {transfer.status.value}", retryable=True)
        except (InvalidTransitionError, NotFoundError) as e:
            logger.error(f"Could not clean up orphaned transfer {transfer_id}: {e}")
            return False
        if result.status == TransferStatus.QUEUED:
            self.queue.adopt(result)
        logger.info(f"Recovered orphaned transfer {transfer_id}: now {result.status.value}")
        return True

    def detect_stuck_transfers(self, threshold_minutes: Optional[float] = None) -> List[RecoveryRecord]:
        """Tracked in-flight transfers with no state change or progress past the threshold."""
        threshold = (threshold_minutes if threshold_minutes is not None else self.stuck_threshold_minutes) * 60
        now = self._clock()
        stuck = []
        for transfer_id in self.queue.in_flight_slots():
            try:
                transfer = self.state_manager.get_transfer(transfer_id)
            except NotFoundError:
                continue
            if transfer.status not in IN_FLIGHT_STATUSES:
                continue
            idle = now - transfer.last_activity
            if idle > threshold:
                stuck.append(RecoveryRecord(
                    kind=STUCK,
                    transfer_id=transfer_id,
                    job_id=transfer.job_id,
                    file_id=transfer.file_id,
                    state=transfer.status,
                    last_state_change=transfer.last_state_change,
                    stuck_duration=idle,
                ))
        if stuck:
            logger.warning(f"Found {len(stuck)} stuck transfer(s)")
        return stuck

    def recover_stuck_transfer(self, record: RecoveryRecord) -> bool:
        """Terminates a stuck transfer's process; its worker then frees the slot and connection."""
        minutes = record.stuck_duration / 60
        reason = f"Timeout: no progress for {minutes:.0f} minutes"
        if not self.queue.abort_transfer(record.transfer_id, reason):
            logger.warning(f"Stuck transfer {record.transfer_id} is no longer in flight")
            return False
        logger.warning(f"Aborted stuck transfer {record.transfer_id} ({reason})")
        return True

    def repair_leaked_slots(self) -> int:
        """Releases slots held by transfers that are not in flight.

        Slots are read before in-flight tracking (a transfer is tracked before
        it is granted a slot), and each release only goes through while the
        snapshotted holder still owns the slot.
        """
        holders = self.controller.occupied_slots()
        in_flight = self.queue.in_flight_slots()
        released = 0
        for holder in holders:
            if holder.transfer_id in in_flight:
                continue
            if self.controller.release_slot(holder.job_id, holder.slot, expected_holder=holder.transfer_id):
                logger.warning(f"Released leaked slot {holder.slot} of job {holder.job_id} "
                               f"(holder {holder.transfer_id})")
                released += 1
        return released

    def validate_state_consistency(self) -> Dict[str, Any]:
        """Cross-checks storage, queue tracking and slot occupancy. Never mutates anything."""
        issues = []
        active = {t.transfer_id: t for t in self.state_manager.get_active_transfers()}
        tracked = self.queue.tracked_transfers()
        in_flight = self.queue.in_flight_slots()
        holders = self.controller.occupied_slots()

        for transfer_id, transfer in active.items():
            if transfer_id not in tracked and not self.runner.is_running(transfer_id):
                issues.append(f"Transfer {transfer_id} is {transfer.status.value} in storage but not tracked")
        for transfer_id, where in tracked.items():
            transfer = active.get(transfer_id)
            if transfer is None:
                issues.append(f"Transfer {transfer_id} is tracked as {where} but is not active in storage")
            elif where == "queued" and transfer.status != TransferStatus.QUEUED:
                issues.append(f"Transfer {transfer_id} is queued in memory but {transfer.status.value} in storage")

        held_by = {h.transfer_id: h for h in holders}
        for holder in holders:
            if holder.transfer_id not in in_flight:
                issues.append(f"Slot {holder.slot} of job {holder.job_id} is held by "
                              f"{holder.transfer_id}, which is not in flight")
        for transfer_id, (job_id, slot) in in_flight.items():
            if slot is not None and transfer_id not in held_by:
                issues.append(f"Transfer {transfer_id} believes it holds slot {slot} of job {job_id}")

        stored_per_job = Counter(t.job_id for t in active.values() if t.status in IN_FLIGHT_STATUSES)
        slots_per_job = Counter(h.job_id for h in holders)
        for job_id in set(stored_per_job) | set(slots_per_job):
            if stored_per_job[job_id] != slots_per_job[job_id]:
                issues.append(f"Job {job_id}: {stored_per_job[job_id]} transfer(s) in flight in storage "
                              f"but {slots_per_job[job_id]} slot(s) occupied")

        stats = {
            "active_in_storage": len(active),
            "tracked_queued": sum(1 for w in tracked.values() if w == "queued"),
            "tracked_in_flight": len(in_flight),
            "occupied_slots": len(holders),
            "running_processes": len(self.runner.running_transfers()),
        }
        return {"consistent": not issues, "issues": issues, "stats": stats}

    def perform_system_recovery(self, stuck_threshold_minutes: Optional[float] = None) -> RecoveryStats:
        """Runs orphan cleanup, stuck recovery, slot repair and purging in one exclusive pass.

        Raises:
            ConflictError: If another recovery pass is already running, or a
                scheduler tick holds the lock for longer than ``lock_wait``.
        """
        if self.is_recovering():
            raise ConflictError("A recovery pass is already in progress")
        if not self.recovery_lock.acquire(timeout=self.lock_wait):
            raise ConflictError("The scheduler is busy; try the recovery pass again shortly")
        self._pass_running.set()
        stats = RecoveryStats(started_at=self._clock())
        try:
            logger.info("Starting system recovery")
            stats.total_transfers = self.state_manager.store.count()

            for record in self.detect_orphaned_transfers():
                stats.orphaned_transfers += 1
                if self._attempt(self.cleanup_orphaned_transfer, record):
                    stats.recovered_transfers += 1
                else:
                    stats.failed_recoveries += 1

            for record in self.detect_stuck_transfers(stuck_threshold_minutes):
                stats.stuck_transfers += 1
                if self._attempt(self.recover_stuck_transfer, record):
                    stats.recovered_transfers += 1
                else:
                    stats.failed_recoveries += 1

            stats.released_slots = self.repair_leaked_slots()
            if self.cleanup_after_days > 0:
                stats.purged_transfers = self.state_manager.purge_terminal(self.cleanup_after_days * 86400)

            stats.issues = self.validate_state_consistency()["issues"]
            stats.duration = self._clock() - stats.started_at
            self.last_recovery = stats
            logger.info(f"Recovery finished: {stats.recovered_transfers} recovered, "
                        f"{stats.failed_recoveries} failed, {stats.released_slots} slot(s) released, "
                        f"{len(stats.issues)} remaining issue(s)")
            return stats
        finally:
            self._pass_running.clear()
            self.recovery_lock.release()

    @staticmethod
    def _attempt(action: Callable[[RecoveryRecord], bool], record: RecoveryRecord) -> bool:
        # a failed record stays put for the next pass
        try:
            return action(record)
        except Exception as e:
            logger.error(f"Recovery of {record.kind} transfer {record.transfer_id} failed: {e}", exc_info=True)
            return False

    def health_check(self) -> Dict[str, Any]:
        consistency = self.validate_state_consistency()
        stuck = self.detect_stuck_transfers()
        return {
            "healthy": consistency["consistent"] and not stuck,
            "recovering": self.is_recovering(),
            "stuck_transfers": len(stuck),
            "issues": consistency["issues"],
            "stats": consistency["stats"],
            "last_recovery": self.last_recovery.to_dict() if self.last_recovery else None,
        }


class RecoveryAuditor:
    """
    Runs a recovery pass every few minutes in a background thread.
    """

    def __init__(self, service: StateRecoveryService, interval_minutes: float = 5):
        self._service = service
        self._interval = max(1.0, interval_minutes * 60)
        self._thread = None
        self._stop_event = threading.Event()

    def start(self):
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._audit_loop, name="recovery-auditor", daemon=True)
        self._thread.start()
        logging.info(f"Recovery auditor started with a {self._interval:.0f}s interval.")

    def _audit_loop(self):
        while not self._stop_event.wait(self._interval):
            try:
                self._service.perform_system_recovery()
            except ConflictError:
                logging.debug("Skipping recovery audit, a pass is already running.")
            except Exception as e:
                logging.error(f"Recovery audit failed: {e}", exc_info=True)

    def stop(self):
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        logging.info("Recovery auditor stopped.")
