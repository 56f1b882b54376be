"""Authoritative state machine for transfers.

Every transition is validated against ``VALID_TRANSITIONS``, written to the
durable store, and only then broadcast. A crash between the write and the
broadcast leaves listeners behind the store, never ahead of it.

    QUEUED -> SCHEDULED -> TRANSFERRING -> COMPLETED
                     \\            \\-> FAILED -> QUEUED (while retries remain)
                      \\-> FAILED
    QUEUED | SCHEDULED | TRANSFERRING -> CANCELLED
"""
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import InvalidTransitionError, NotFoundError
from .events import EVENT_COMPLETE, EVENT_ERROR, EVENT_PROGRESS, EVENT_STATUS, EventBus
from .models import ACTIVE_STATUSES, Transfer, TransferRequest, TransferStatus
from .progress_parser import ProgressUpdate
from .store import TransferStore

logger = logging.getLogger(__name__)

VALID_TRANSITIONS = {
    TransferStatus.QUEUED: frozenset({TransferStatus.SCHEDULED, TransferStatus.CANCELLED}),
    TransferStatus.SCHEDULED: frozenset({TransferStatus.TRANSFERRING, TransferStatus.FAILED,
                                         TransferStatus.CANCELLED}),
    TransferStatus.TRANSFERRING: frozenset({TransferStatus.COMPLETED, TransferStatus.FAILED,
                                            TransferStatus.CANCELLED}),
    TransferStatus.FAILED: frozenset({TransferStatus.QUEUED}),
    TransferStatus.COMPLETED: frozenset(),
    TransferStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({TransferStatus.COMPLETED, TransferStatus.FAILED, TransferStatus.CANCELLED})


def can_transition(transfer: Transfer, new_status: TransferStatus) -> bool:
    if new_status not in VALID_TRANSITIONS[transfer.status]:
        return False
    if transfer.status == TransferStatus.FAILED and new_status == TransferStatus.QUEUED:
        return transfer.retry_count < transfer.max_retries
    return True


class TransferStateManager:
    """Applies, persists and broadcasts transfer state changes.

    Attributes:
        store: Durable transfer collection.
        events: Listener fan-out for status, progress and error events.
        default_max_retries: Retry budget for requests that do not set one.
        retry_base_delay: First retry delay in seconds; doubles per retry.
        retry_max_delay: Upper bound for the retry delay.
    """

    def __init__(self, store: TransferStore, events: Optional[EventBus] = None,
                 default_max_retries: int = 3, retry_base_delay: float = 5.0,
                 retry_max_delay: float = 60.0, clock: Callable[[], float] = time.time):
        self.store = store
        self.events = events or EventBus()
        self.default_max_retries = default_max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._clock = clock
        self._lock = threading.Lock()

    def create_transfer(self, request: TransferRequest) -> Tuple[Transfer, bool]:
        """Persists a new QUEUED transfer unless the pair is already active.

        Args:
            request: A validated admission request.

        Returns:
            A tuple of (transfer, created). When the (job_id, file_id) pair
            already has a non-terminal transfer, that transfer is returned
            with ``created`` False.
        """
        with self._lock:
            existing = self.store.find_active(request.job_id, request.file_id)
            if existing is not None:
                return existing, False
            transfer = Transfer.from_request(request, self.default_max_retries, now=self._clock())
            transfer.record_history(TransferStatus.QUEUED, transfer.queued_at, "admitted")
            self.store.save(transfer)
        logger.debug(f"Created transfer {transfer.transfer_id} for {request.job_id}/{request.file_id}")
        self._emit_status(transfer, None, "admitted")
        return transfer, True

    def get_transfer(self, transfer_id: str) -> Transfer:
        transfer = self.store.get(transfer_id)
        if transfer is None:
            raise NotFoundError(f"Transfer {transfer_id} not found")
        return transfer

    def get_active_transfers(self) -> List[Transfer]:
        """Returns every non-terminal transfer straight from durable storage."""
        return self.store.list(statuses=ACTIVE_STATUSES)

    def list_transfers(self, statuses: Optional[Iterable[TransferStatus]] = None,
                       job_id: Optional[str] = None) -> List[Transfer]:
        return self.store.list(statuses=statuses, job_id=job_id)

    def get_state_history(self, transfer_id: str) -> List[Dict[str, object]]:
        return list(self.get_transfer(transfer_id).state_history)

    def transition(self, transfer_id: str, new_status: TransferStatus,
                   reason: Optional[str] = None, **changes) -> Transfer:
        """Moves a transfer to `new_status`, persisting before notifying.

        Args:
            transfer_id: The transfer to update.
            new_status: Target state; must be a defined edge.
            reason: Free-form note kept in the state history.
            **changes: Additional Transfer attributes to set.

        Returns:
            The updated transfer.

        Raises:
            NotFoundError: If the transfer does not exist.
            InvalidTransitionError: If the edge is not allowed.
        """
        with self._lock:
            transfer = self.get_transfer(transfer_id)
            previous = transfer.status
            if not can_transition(transfer, new_status):
                raise InvalidTransitionError(transfer_id, previous, new_status)
            now = self._clock()
            for name, value in changes.items():
                setattr(transfer, name, value)
            transfer.status = new_status
            transfer.last_state_change = now
            if new_status == TransferStatus.TRANSFERRING:
                transfer.started_at = now
            elif new_status in TERMINAL_STATUSES:
                transfer.completed_at = now
            transfer.record_history(new_status, now, reason)
            self.store.save(transfer)

        logger.debug(f"Transfer {transfer_id}: {previous.value} -> {new_status.value}"
                     + (f" ({reason})" if reason else ""))
        self._emit_status(transfer, previous, reason)
        return transfer

    def mark_scheduled(self, transfer_id: str, slot: int) -> Transfer:
        return self.transition(transfer_id, TransferStatus.SCHEDULED, "slot granted", concurrency_slot=slot)

    def mark_transferring(self, transfer_id: str) -> Transfer:
        return self.transition(transfer_id, TransferStatus.TRANSFERRING, "process started",
                               error_message=None, exit_code=None)

    def mark_completed(self, transfer_id: str, bytes_transferred: Optional[int] = None) -> Transfer:
        changes = {"progress": 100.0, "eta": "", "concurrency_slot": None}
        if bytes_transferred is not None:
            changes["bytes_transferred"] = bytes_transferred
        transfer = self.transition(transfer_id, TransferStatus.COMPLETED, "completed", **changes)
        self.events.emit(transfer.transfer_id, transfer.job_id, EVENT_COMPLETE,
                         {"transfer": transfer.to_public_dict()})
        return transfer

    def mark_cancelled(self, transfer_id: str, reason: str = "cancelled") -> Transfer:
        return self.transition(transfer_id, TransferStatus.CANCELLED, reason,
                               concurrency_slot=None, error_message="Cancelled")

    def mark_failed(self, transfer_id: str, error_message: str, retryable: bool = True,
                    exit_code: Optional[int] = None) -> Transfer:
        """Fails a transfer and re-queues it while its retry budget lasts.

        A re-queued transfer keeps its priority but takes the current time
        as its admission time, so it joins the back of its priority tier.

        Returns:
            The transfer in its resulting state: QUEUED when retried,
            otherwise FAILED.
        """
        transfer = self.transition(transfer_id, TransferStatus.FAILED, error_message,
                                   error_message=error_message, exit_code=exit_code,
                                   concurrency_slot=None, speed="", eta="")
        self.events.emit(transfer.transfer_id, transfer.job_id, EVENT_ERROR,
                         {"error": error_message, "retryable": retryable,
                          "retry_count": transfer.retry_count, "max_retries": transfer.max_retries})
        if not retryable or transfer.retry_count >= transfer.max_retries:
            logger.error(f"Transfer {transfer_id} ({transfer.filename}) failed permanently: {error_message}")
            return transfer

        now = self._clock()
        retry_count = transfer.retry_count + 1
        delay = 0.0
        if self.retry_base_delay > 0:
            delay = min(self.retry_base_delay * (2 ** (retry_count - 1)), self.retry_max_delay)
        logger.warning(f"Transfer {transfer_id} ({transfer.filename}) failed "
                       f"(attempt {retry_count}/{transfer.max_retries}), retrying in {delay:.0f}s: {error_message}")
        return self.transition(transfer_id, TransferStatus.QUEUED, f"retry {retry_count}/{transfer.max_retries}",
                               retry_count=retry_count, progress=0.0, bytes_transferred=0,
                               queued_at=now, not_before=now + delay if delay else None,
                               started_at=None, completed_at=None)

    def update_progress(self, transfer_id: str, update: ProgressUpdate) -> Optional[Transfer]:
        """Records a progress snapshot for a running transfer.

        Snapshots for transfers no longer TRANSFERRING are dropped.
        """
        with self._lock:
            transfer = self.store.get(transfer_id)
            if transfer is None or transfer.status != TransferStatus.TRANSFERRING:
                return None
            transfer.progress = float(update.percentage)
            transfer.speed = update.speed
            transfer.eta = update.eta
            transfer.bytes_transferred = update.bytes_transferred
            transfer.last_progress_at = self._clock()
            self.store.save(transfer)
        self.events.emit(transfer.transfer_id, transfer.job_id, EVENT_PROGRESS, update.to_dict())
        return transfer

    def batch_transition(self, transfer_ids: Iterable[str], new_status: TransferStatus,
                         reason: Optional[str] = None) -> Dict[str, bool]:
        """Applies the same transition to several transfers.

        Returns:
            Transfer id to whether its transition succeeded.
        """
        results = {}
        for transfer_id in transfer_ids:
            try:
                self.transition(transfer_id, new_status, reason)
                results[transfer_id] = True
            except (InvalidTransitionError, NotFoundError) as e:
                logger.warning(f"Batch transition skipped {transfer_id}: {e}")
                results[transfer_id] = False
        return results

    def purge_terminal(self, older_than_seconds: float,
                       statuses: Iterable[TransferStatus] = TERMINAL_STATUSES) -> int:
        """Deletes terminal transfers that finished before the cutoff."""
        cutoff = self._clock() - older_than_seconds
        wanted = frozenset(statuses)
        with self._lock:
            removed = self.store.purge(
                lambda t: t.status in wanted and (t.completed_at or t.last_state_change) < cutoff
            )
        if removed:
            logger.info(f"Purged {removed} finished transfer record(s)")
        return removed

    def _emit_status(self, transfer: Transfer, previous: Optional[TransferStatus], reason: Optional[str]) -> None:
        self.events.emit(transfer.transfer_id, transfer.job_id, EVENT_STATUS, {
            "status": transfer.status.value,
            "previous": previous.value if previous else None,
            "reason": reason,
            "retry_count": transfer.retry_count,
        })
