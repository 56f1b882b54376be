"""In-memory priority backlog and dispatcher for transfers.

Admission goes through `TransferQueue.add`. A dedicated dispatcher thread
hands queued transfers to a bounded worker pool whenever a slot frees up,
subject to both the global ceiling and the per-job concurrency controller.
Transfers that cannot start stay queued and are looked at again on the next
release event; nothing polls in a tight loop.

Locking: the queue's own state sits behind one condition variable. Calls
into the concurrency controller, the state manager, the connection pool and
the runner are always made with that lock released.
"""
import heapq
import itertools
import logging
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from .concurrency import JobConcurrencyController
from .errors import (InvalidTransitionError, NotFoundError, QueueFullError, SSHConnectionError,
                     ValidationError)
from .models import (ACTIVE_STATUSES, Transfer, TransferPriority, TransferRequest, TransferStatus,
                     TransferType)
from .process_runner import RsyncRunner, TransferOutcome
from .ssh_manager import SSHConnectionPool
from .state_manager import TransferStateManager
from .utils import format_bytes

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_TRANSFERS = 3
DEFAULT_MAX_QUEUE_SIZE = 1000
DEFAULT_RETENTION_HOURS = 24
IDLE_RECHECK_SECONDS = 30.0
CLEANUP_INTERVAL_SECONDS = 3600.0


@dataclass
class TransferFilter:
    """Criteria for `TransferQueue.get_transfers`; unset fields match anything."""
    status: Optional[Union[TransferStatus, Iterable[TransferStatus]]] = None
    priority: Optional[TransferPriority] = None
    type: Optional[TransferType] = None
    job_id: Optional[str] = None
    file_id: Optional[str] = None
    filename: Optional[str] = None
    created_after: Optional[float] = None
    created_before: Optional[float] = None

    def statuses(self) -> Optional[Set[TransferStatus]]:
        if self.status is None:
            return None
        if isinstance(self.status, TransferStatus):
            return {self.status}
        return set(self.status)

    def matches(self, transfer: Transfer) -> bool:
        wanted = self.statuses()
        if wanted is not None and transfer.status not in wanted:
            return False
        if self.priority is not None and transfer.priority != self.priority:
            return False
        if self.type is not None and transfer.type != self.type:
            return False
        if self.job_id is not None and transfer.job_id != self.job_id:
            return False
        if self.file_id is not None and transfer.file_id != self.file_id:
            return False
        if self.filename and self.filename.lower() not in transfer.filename.lower():
            return False
        if self.created_after is not None and transfer.queued_at < self.created_after:
            return False
        if self.created_before is not None and transfer.queued_at > self.created_before:
            return False
        return True


@dataclass(order=True)
class _QueueEntry:
    sort_key: Tuple[int, float, int]
    transfer_id: str = field(compare=False)
    job_id: str = field(compare=False)
    file_id: str = field(compare=False)
    not_before: Optional[float] = field(default=None, compare=False)
    removed: bool = field(default=False, compare=False)


@dataclass
class _InFlight:
    transfer_id: str
    job_id: str
    file_id: str
    entry: _QueueEntry
    slot: Optional[int] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    cancel_requested: bool = False
    abort_reason: Optional[str] = None
    future: Optional[Future] = None
    finished: bool = False
    done: threading.Event = field(default_factory=threading.Event)


class TransferQueue:
    """Priority-ordered admission point and dispatcher for transfers.

    Ordering is strict priority (URGENT first), then admission time, then
    arrival order. A (job_id, file_id) pair is admitted at most once while
    a transfer for it is non-terminal; repeated admissions return the id
    of the existing transfer.

    Attributes:
        max_concurrent_transfers: Global ceiling on transfers in flight.
        max_queue_size: Maximum queued plus in-flight transfers.
    """

    def __init__(self, state_manager: TransferStateManager, controller: JobConcurrencyController,
                 runner: RsyncRunner, pool: Optional[SSHConnectionPool] = None,
                 max_concurrent_transfers: int = DEFAULT_MAX_CONCURRENT_TRANSFERS,
                 max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
                 completed_retention_hours: float = DEFAULT_RETENTION_HOURS,
                 executor: Optional[Executor] = None,
                 clock: Callable[[], float] = time.time):
        self.state_manager = state_manager
        self.controller = controller
        self.runner = runner
        self.pool = pool
        self.max_concurrent_transfers = max(1, max_concurrent_transfers)
        self.max_queue_size = max(1, max_queue_size)
        self.completed_retention_hours = completed_retention_hours
        self._executor = executor
        self._owns_executor = executor is None
        self._clock = clock

        self._lock = threading.Lock()
        self._condition = threading.Condition(self._lock)
        self._pending: List[_QueueEntry] = []
        self._pending_ids: Dict[str, _QueueEntry] = {}
        self._in_flight: Dict[str, _InFlight] = {}
        self._by_pair: Dict[Tuple[str, str], str] = {}
        self._reserving: Set[Tuple[str, str]] = set()
        self._seq = itertools.count()

        self._wakeup = threading.Event()
        self._stop_event = threading.Event()
        self._dispatcher: Optional[threading.Thread] = None
        self._last_cleanup = 0.0

    # --- admission ---------------------------------------------------------

    def add(self, request: Union[TransferRequest, Dict[str, Any]]) -> str:
        """Admits a transfer.

        Args:
            request: A TransferRequest or an equivalent dictionary.

        Returns:
            The id of the new transfer, or of the existing non-terminal
            transfer for the same (job_id, file_id).

        Raises:
            ValidationError: If the request is malformed. Nothing is queued.
            QueueFullError: If ``max_queue_size`` transfers are outstanding.
        """
        if isinstance(request, dict):
            request = TransferRequest.from_dict(request)
        request.validate()
        key = (request.job_id, request.file_id)

        with self._condition:
            while key in self._reserving:
                self._condition.wait()
            existing = self._by_pair.get(key)
            if existing is not None:
                logger.debug(f"Transfer for {key[0]}/{key[1]} already active as {existing}")
                return existing
            outstanding = len(self._pending_ids) + len(self._in_flight) + len(self._reserving)
            if outstanding >= self.max_queue_size:
                raise QueueFullError(f"Transfer queue is full ({self.max_queue_size} transfers)")
            self._reserving.add(key)

        try:
            transfer, created = self.state_manager.create_transfer(request)
        except Exception:
            self._unreserve(key)
            raise

        with self._condition:
            self._reserving.discard(key)
            if created or transfer.status == TransferStatus.QUEUED:
                self._push(transfer)
            self._condition.notify_all()
        if created:
            logger.info(f"Queued transfer {transfer.transfer_id} ({transfer.filename}, {format_bytes(transfer.size)}, "
                        f"priority {transfer.priority.name}) for job {transfer.job_id}")
        self._wakeup.set()
        return transfer.transfer_id

    def add_batch(self, requests: Iterable[Union[TransferRequest, Dict[str, Any]]]) -> List[str]:
        """Admits several transfers; individual rejections are logged and skipped.

        Returns:
            Ids of the admitted (or already active) transfers, in input order.
        """
        ids = []
        for request in requests:
            try:
                ids.append(self.add(request))
            except (ValidationError, QueueFullError) as e:
                logger.warning(f"Skipping transfer in batch: {e.user_message()}")
        return ids

    def adopt(self, transfer: Transfer) -> bool:
        """Puts a durable QUEUED transfer back under live tracking.

        Used after a restart, when the store holds queued work that no live
        queue knows about. Returns False if it is already tracked or not
        queued.
        """
        if transfer.status != TransferStatus.QUEUED:
            return False
        key = (transfer.job_id, transfer.file_id)
        with self._condition:
            if transfer.transfer_id in self._pending_ids or transfer.transfer_id in self._in_flight:
                return False
            if self._by_pair.get(key) not in (None, transfer.transfer_id):
                return False
            self._push(transfer)
        self._wakeup.set()
        return True

    def _unreserve(self, key: Tuple[str, str]) -> None:
        with self._condition:
            self._reserving.discard(key)
            self._condition.notify_all()

    def _push(self, transfer: Transfer) -> None:
        """Adds a transfer to the pending heap. Caller holds the lock."""
        if transfer.transfer_id in self._pending_ids or transfer.transfer_id in self._in_flight:
            return
        entry = _QueueEntry(
            sort_key=(-int(transfer.priority), transfer.queued_at, next(self._seq)),
            transfer_id=transfer.transfer_id,
            job_id=transfer.job_id,
            file_id=transfer.file_id,
            not_before=transfer.not_before,
        )
        heapq.heappush(self._pending, entry)
        self._pending_ids[transfer.transfer_id] = entry
        self._by_pair[(transfer.job_id, transfer.file_id)] = transfer.transfer_id

    # --- cancellation --------------------------------------------------------

    def cancel(self, transfer_id: str) -> bool:
        """Cancels a transfer.

        A queued transfer is removed and marked CANCELLED immediately. An
        in-flight transfer has its process group terminated; it is marked
        CANCELLED by its worker once the process has exited.

        Returns:
            True if the transfer was active and is now being cancelled.
        """
        flight = None
        with self._condition:
            entry = self._pending_ids.pop(transfer_id, None)
            if entry is not None:
                entry.removed = True
                key = (entry.job_id, entry.file_id)
                self._by_pair.pop(key, None)
                # re-admissions of the pair wait until the cancel is durable
                self._reserving.add(key)
            else:
                flight = self._in_flight.get(transfer_id)
                if flight is not None:
                    flight.cancel_requested = True
                    flight.cancel_event.set()

        if entry is not None:
            try:
                self.state_manager.mark_cancelled(transfer_id, "cancelled while queued")
            except (InvalidTransitionError, NotFoundError) as e:
                logger.warning(f"Could not cancel queued transfer {transfer_id}: {e}")
                return False
            finally:
                self._unreserve(key)
            logger.info(f"Cancelled queued transfer {transfer_id}")
            return True

        if flight is not None:
            if self.runner.cancel(transfer_id):
                logger.info(f"Terminating rsync for cancelled transfer {transfer_id}")
            return True

        try:
            transfer = self.state_manager.get_transfer(transfer_id)
        except NotFoundError:
            return False
        if transfer.status not in ACTIVE_STATUSES:
            return False
        # durable but untracked (left over from an earlier run): nothing to stop
        try:
            self.state_manager.mark_cancelled(transfer_id, "cancelled while untracked")
        except InvalidTransitionError:
            return False
        return True

    def abort_transfer(self, transfer_id: str, reason: str) -> bool:
        """Stops an in-flight transfer and fails it (retrying if allowed).

        Returns:
            False if the transfer is not in flight.
        """
        with self._condition:
            flight = self._in_flight.get(transfer_id)
            if flight is None or flight.finished:
                return False
            flight.abort_reason = reason
            flight.cancel_event.set()
            worker_gone = flight.future is not None and flight.future.done()
        self.runner.cancel(transfer_id)
        if worker_gone:
            self._finish(flight, TransferOutcome(success=False, retryable=True, error_message=reason))
        return True

    # --- dispatch --------------------------------------------------------------

    def start(self) -> None:
        """Starts the worker pool and the dispatcher thread."""
        if self._dispatcher and self._dispatcher.is_alive():
            return
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_concurrent_transfers,
                                                thread_name_prefix="transfer")
        self._stop_event.clear()
        self._dispatcher = threading.Thread(target=self._dispatch_loop, name="transfer-dispatcher", daemon=True)
        self._dispatcher.start()
        self._wakeup.set()
        logger.info(f"Transfer queue started (max {self.max_concurrent_transfers} concurrent transfers)")

    def stop(self, timeout: float = 30.0) -> None:
        """Stops dispatching and interrupts in-flight transfers.

        Interrupted transfers are failed with a retryable error so they are
        picked up again on the next start.
        """
        self._stop_event.set()
        self._wakeup.set()
        if self._dispatcher and self._dispatcher.is_alive():
            self._dispatcher.join(timeout=5)
        with self._condition:
            in_flight = list(self._in_flight)
        for transfer_id in in_flight:
            self.abort_transfer(transfer_id, "Transfer error: interrupted by shutdown")
        if self._executor is not None and self._owns_executor:
            self._executor.shutdown(wait=True)
            self._executor = None
        self.wait_for_idle(timeout)
        logger.info("Transfer queue stopped")

    def _dispatch_loop(self) -> None:
        while not self._stop_event.is_set():
            self._wakeup.wait(timeout=self._next_wakeup())
            self._wakeup.clear()
            if self._stop_event.is_set():
                break
            try:
                self.dispatch_pending()
                now = self._clock()
                if now - self._last_cleanup >= CLEANUP_INTERVAL_SECONDS:
                    self._last_cleanup = now
                    self.cleanup_completed()
            except Exception as e:
                logger.error(f"Transfer dispatch failed: {e}", exc_info=True)

    def _next_wakeup(self) -> float:
        now = self._clock()
        with self._condition:
            delays = [e.not_before - now for e in self._pending_ids.values() if e.not_before]
        if delays:
            return max(0.05, min(min(delays), IDLE_RECHECK_SECONDS))
        return IDLE_RECHECK_SECONDS

    def _next_candidate(self, now: float, skip_jobs: Set[str]) -> Optional[_QueueEntry]:
        """Picks the best dispatchable entry. Caller holds the lock."""
        if len(self._pending) > 2 * len(self._pending_ids) + 16:
            self._pending = [e for e in self._pending if not e.removed]
            heapq.heapify(self._pending)
        for entry in sorted(self._pending):
            if entry.removed or entry.job_id in skip_jobs:
                continue
            if entry.not_before and entry.not_before > now:
                continue
            return entry
        return None

    def dispatch_pending(self) -> int:
        """Starts as many queued transfers as the concurrency limits allow.

        Returns:
            The number of transfers handed to workers.
        """
        if self._executor is None:
            raise RuntimeError("Transfer queue has not been started")
        started = 0
        refused_jobs: Set[str] = set()
        now = self._clock()
        while not self._stop_event.is_set():
            with self._condition:
                if len(self._in_flight) >= self.max_concurrent_transfers:
                    break
                entry = self._next_candidate(now, refused_jobs)
                if entry is None:
                    break
                entry.removed = True
                del self._pending_ids[entry.transfer_id]
                flight = _InFlight(entry.transfer_id, entry.job_id, entry.file_id, entry)
                self._in_flight[entry.transfer_id] = flight

            slot = self.controller.try_acquire_slot(entry.job_id, entry.transfer_id)
            if slot is None:
                refused_jobs.add(entry.job_id)
                self._requeue_refused(flight)
                continue

            with self._condition:
                flight.slot = slot
            try:
                self.state_manager.mark_scheduled(entry.transfer_id, slot)
            except (InvalidTransitionError, NotFoundError) as e:
                logger.warning(f"Dropping transfer {entry.transfer_id} from the queue: {e}")
                self.controller.release_slot(entry.job_id, slot)
                with self._condition:
                    self._in_flight.pop(entry.transfer_id, None)
                    self._by_pair.pop((entry.job_id, entry.file_id), None)
                    flight.finished = True
                    flight.done.set()
                continue

            flight.future = self._executor.submit(self._run_transfer, flight)
            started += 1
        return started

    def _requeue_refused(self, flight: _InFlight) -> None:
        """Returns a transfer refused by its job's cap to the pending heap."""
        with self._condition:
            self._in_flight.pop(flight.transfer_id, None)
            cancelled = flight.cancel_requested
            if not cancelled:
                entry = flight.entry
                replacement = _QueueEntry(entry.sort_key, entry.transfer_id, entry.job_id,
                                          entry.file_id, entry.not_before)
                heapq.heappush(self._pending, replacement)
                self._pending_ids[entry.transfer_id] = replacement
            else:
                self._by_pair.pop((flight.job_id, flight.file_id), None)
                self._reserving.add((flight.job_id, flight.file_id))
            flight.finished = True
            flight.done.set()
        if cancelled:
            try:
                self.state_manager.mark_cancelled(flight.transfer_id, "cancelled while queued")
            except (InvalidTransitionError, NotFoundError) as e:
                logger.warning(f"Could not cancel transfer {flight.transfer_id}: {e}")
            finally:
                self._unreserve((flight.job_id, flight.file_id))

    def _run_transfer(self, flight: _InFlight) -> None:
        outcome: Optional[TransferOutcome] = None
        try:
            if flight.cancel_event.is_set():
                outcome = TransferOutcome(success=False, cancelled=True, error_message="Cancelled")
                return
            transfer = self.state_manager.get_transfer(flight.transfer_id)
            outcome = self._execute(flight, transfer)
        except SSHConnectionError as e:
            outcome = TransferOutcome(success=False, retryable=True, error_message=e.user_message())
        except Exception as e:
            logger.error(f"Unexpected error while running transfer {flight.transfer_id}: {e}", exc_info=True)
            if outcome is None:
                outcome = TransferOutcome(success=False, retryable=True, error_message=f"Transfer error: {e}")
        finally:
            self._finish(flight, outcome)

    def _execute(self, flight: _InFlight, transfer: Transfer) -> TransferOutcome:
        """Prepares paths over a pooled session, then runs rsync without it.

        rsync opens its own ssh connection, so the pooled session is only
        borrowed for the remote checks and handed back before rsync starts.
        """
        cancelled = TransferOutcome(success=False, cancelled=True, error_message="Cancelled")
        if flight.cancel_event.is_set():
            return cancelled
        if self.pool is None:
            transfer = self.state_manager.mark_transferring(transfer.transfer_id)
            return self.runner.execute(transfer, None, flight.cancel_event)

        with self.pool.connection(transfer.ssh_target, cancel_event=flight.cancel_event) as connection:
            if flight.cancel_event.is_set():
                return cancelled
            transfer = self.state_manager.mark_transferring(transfer.transfer_id)
            failure = self.runner.prepare_paths(transfer, connection)
        if failure is not None:
            return failure
        return self.runner.execute(transfer, None, flight.cancel_event)

    def _finish(self, flight: _InFlight, outcome: Optional[TransferOutcome]) -> None:
        """Records a transfer's outcome and frees its slot exactly once."""
        with self._condition:
            if flight.finished:
                return
            flight.finished = True
        outcome = outcome or TransferOutcome(success=False, retryable=True,
                                             error_message="Transfer error: worker exited without a result")
        transfer_id = flight.transfer_id
        result: Optional[Transfer] = None
        try:
            if flight.abort_reason:
                result = self.state_manager.mark_failed(transfer_id, flight.abort_reason, retryable=True,
                                                        exit_code=outcome.exit_code)
            elif flight.cancel_requested or outcome.cancelled:
                result = self.state_manager.mark_cancelled(transfer_id)
            elif outcome.success:
                final = outcome.final_progress
                result = self.state_manager.mark_completed(
                    transfer_id, final.bytes_transferred if final and final.bytes_transferred else None)
            else:
                result = self.state_manager.mark_failed(transfer_id, outcome.error_message or "Transfer error",
                                                        retryable=outcome.retryable, exit_code=outcome.exit_code)
        except (InvalidTransitionError, NotFoundError) as e:
            logger.warning(f"Could not record outcome for transfer {transfer_id}: {e}")
        except Exception as e:
            logger.error(f"Failed to persist outcome for transfer {transfer_id}: {e}", exc_info=True)
        finally:
            if flight.slot is not None:
                self.controller.release_slot(flight.job_id, flight.slot)
            with self._condition:
                self._in_flight.pop(transfer_id, None)
                if result is not None and result.status == TransferStatus.QUEUED:
                    self._push(result)
                else:
                    self._by_pair.pop((flight.job_id, flight.file_id), None)
                self._condition.notify_all()
            flight.done.set()
            self._wakeup.set()

    # --- inspection -------------------------------------------------------------

    def is_tracked(self, transfer_id: str) -> bool:
        with self._condition:
            return transfer_id in self._pending_ids or transfer_id in self._in_flight

    def tracked_transfers(self) -> Dict[str, str]:
        """Snapshot of live tracking: transfer id to ``queued`` or ``in_flight``."""
        with self._condition:
            snapshot = {tid: "queued" for tid in self._pending_ids}
            snapshot.update({tid: "in_flight" for tid in self._in_flight})
            return snapshot

    def in_flight_slots(self) -> Dict[str, Tuple[str, Optional[int]]]:
        with self._condition:
            return {tid: (f.job_id, f.slot) for tid, f in self._in_flight.items()}

    def pending_order(self) -> List[str]:
        """Queued transfer ids in the order they would be dispatched."""
        with self._condition:
            return [e.transfer_id for e in sorted(self._pending) if not e.removed]

    def wait_for_transfer(self, transfer_id: str, timeout: Optional[float] = None) -> bool:
        """Blocks until an in-flight transfer's worker has finished."""
        with self._condition:
            flight = self._in_flight.get(transfer_id)
        if flight is None:
            return True
        return flight.done.wait(timeout)

    def wait_for_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until nothing is in flight."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while self._in_flight:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._condition.wait(remaining)
            return True

    def get_transfers(self, transfer_filter: Optional[TransferFilter] = None) -> List[Transfer]:
        """Returns matching transfers, highest priority first then oldest first."""
        transfer_filter = transfer_filter or TransferFilter()
        statuses = transfer_filter.statuses()
        transfers = self.state_manager.list_transfers(statuses=statuses, job_id=transfer_filter.job_id)
        matching = [t for t in transfers if transfer_filter.matches(t)]
        matching.sort(key=lambda t: (-int(t.priority), t.queued_at))
        return matching

    def get_stats(self) -> Dict[str, Any]:
        counts = {status: 0 for status in TransferStatus}
        total_bytes = completed_bytes = 0
        transfers = self.state_manager.list_transfers()
        for transfer in transfers:
            counts[transfer.status] += 1
            total_bytes += transfer.size
            if transfer.status == TransferStatus.COMPLETED:
                completed_bytes += transfer.size
        with self._condition:
            live_pending = len(self._pending_ids)
            live_in_flight = len(self._in_flight)
        return {
            "total": len(transfers),
            "queued": counts[TransferStatus.QUEUED],
            "scheduled": counts[TransferStatus.SCHEDULED],
            "transferring": counts[TransferStatus.TRANSFERRING],
            "active": counts[TransferStatus.SCHEDULED] + counts[TransferStatus.TRANSFERRING],
            "completed": counts[TransferStatus.COMPLETED],
            "failed": counts[TransferStatus.FAILED],
            "cancelled": counts[TransferStatus.CANCELLED],
            "total_bytes": total_bytes,
            "completed_bytes": completed_bytes,
            "live_pending": live_pending,
            "live_in_flight": live_in_flight,
            "max_concurrent_transfers": self.max_concurrent_transfers,
            "max_queue_size": self.max_queue_size,
        }

    def cleanup_completed(self) -> int:
        """Purges finished transfers older than the retention window."""
        return self.state_manager.purge_terminal(self.completed_retention_hours * 3600)
