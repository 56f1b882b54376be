"""Per-job concurrency permits ("slots").

Each job may hold at most ``max_concurrency`` slots at once, independently of
the global transfer ceiling enforced by the queue. Slot indices are the
lowest free integers in ``range(max)``, so released indices are handed out
again before new ones and the table never grows past the cap.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 3
DEFAULT_SETTINGS_TTL = 300
_ANY_HOLDER = object()

SettingsProvider = Callable[[str], Optional[int]]


@dataclass(frozen=True)
class SlotHolder:
    job_id: str
    slot: int
    transfer_id: Optional[str]


class JobConcurrencyController:
    """Hands out and reclaims per-job slots.

    Attributes:
        default_max: Cap used when no per-job setting is known.
        settings_ttl: Seconds a looked-up per-job cap stays cached.
    """

    def __init__(self, settings_provider: Optional[SettingsProvider] = None,
                 default_max: int = DEFAULT_MAX_CONCURRENCY,
                 settings_ttl: float = DEFAULT_SETTINGS_TTL,
                 clock: Callable[[], float] = time.monotonic):
        """Initializes the controller.

        Args:
            settings_provider: Returns the cap for a job id, or None for the
                default. Called outside the slot lock.
            default_max: Fallback per-job cap.
            settings_ttl: Cache lifetime for provider answers.
            clock: Monotonic time source.
        """
        self.default_max = max(1, default_max)
        self.settings_ttl = settings_ttl
        self._provider = settings_provider
        self._clock = clock
        self._slots: Dict[str, Dict[int, Optional[str]]] = {}
        self._settings: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._cache_hits = 0
        self._cache_misses = 0

    def get_job_max(self, job_id: str) -> int:
        now = self._clock()
        with self._lock:
            cached = self._settings.get(job_id)
            if cached and now - cached[1] < self.settings_ttl:
                self._cache_hits += 1
                return cached[0]
            self._cache_misses += 1

        value = None
        if self._provider is not None:
            try:
                value = self._provider(job_id)
            except Exception as e:
                logger.warning(f"Could not load concurrency settings for job {job_id}, using default: {e}")
        limit = int(value) if value else self.default_max
        limit = max(1, limit)
        with self._lock:
            self._settings[job_id] = (limit, now)
        return limit

    def invalidate_cache(self, job_id: Optional[str] = None) -> None:
        with self._lock:
            if job_id is None:
                self._settings.clear()
            else:
                self._settings.pop(job_id, None)

    def try_acquire_slot(self, job_id: str, transfer_id: Optional[str] = None) -> Optional[int]:
        """Grants the lowest free slot index for a job.

        Returns:
            The slot index, or None when the job is at its cap. A refusal
            is not an error; the caller keeps the work pending.
        """
        limit = self.get_job_max(job_id)
        with self._lock:
            occupied = self._slots.setdefault(job_id, {})
            for index in range(limit):
                if index not in occupied:
                    occupied[index] = transfer_id
                    logger.debug(f"Job {job_id}: granted slot {index} ({len(occupied)}/{limit})")
                    return index
            return None

    def release_slot(self, job_id: str, slot: int, expected_holder: Any = _ANY_HOLDER) -> bool:
        """Frees a slot.

        Args:
            job_id: The job owning the slot.
            slot: The slot index.
            expected_holder: If given, the slot is only freed while this
                transfer id still holds it.

        Returns:
            False if the slot was not held, which indicates a double release,
            or if it is now held by someone other than ``expected_holder``.
        """
        with self._lock:
            occupied = self._slots.get(job_id)
            if occupied is None or slot not in occupied:
                logger.warning(f"Job {job_id}: release of slot {slot} that is not held")
                return False
            if expected_holder is not _ANY_HOLDER and occupied[slot] != expected_holder:
                logger.debug(f"Job {job_id}: slot {slot} now belongs to {occupied[slot]}, not {expected_holder}")
                return False
            del occupied[slot]
            if not occupied:
                del self._slots[job_id]
            logger.debug(f"Job {job_id}: released slot {slot}")
            return True

    def release_slot_by_transfer(self, transfer_id: str) -> bool:
        with self._lock:
            for job_id, occupied in list(self._slots.items()):
                for slot, holder in list(occupied.items()):
                    if holder == transfer_id:
                        del occupied[slot]
                        if not occupied:
                            del self._slots[job_id]
                        logger.debug(f"Job {job_id}: released slot {slot} held by {transfer_id}")
                        return True
        return False

    def restore_slot(self, job_id: str, slot: int, transfer_id: Optional[str]) -> bool:
        """Marks a specific slot as held, e.g. when re-adopting live work."""
        with self._lock:
            occupied = self._slots.setdefault(job_id, {})
            if slot in occupied:
                return occupied[slot] == transfer_id
            occupied[slot] = transfer_id
            return True

    def clear_all_slots(self) -> int:
        with self._lock:
            count = sum(len(o) for o in self._slots.values())
            self._slots.clear()
        logger.info(f"Cleared {count} concurrency slot(s)")
        return count

    def occupied_slots(self) -> List[SlotHolder]:
        with self._lock:
            return [SlotHolder(job_id, slot, holder)
                    for job_id, occupied in self._slots.items()
                    for slot, holder in sorted(occupied.items())]

    def active_count(self, job_id: Optional[str] = None) -> int:
        with self._lock:
            if job_id is not None:
                return len(self._slots.get(job_id, {}))
            return sum(len(o) for o in self._slots.values())

    def get_cache_stats(self) -> Dict[str, object]:
        """Returns slot occupancy and settings cache statistics."""
        with self._lock:
            breakdown = {
                job_id: {
                    "active": len(occupied),
                    "max": self._settings.get(job_id, (self.default_max, 0))[0],
                    "slots": sorted(occupied),
                }
                for job_id, occupied in self._slots.items()
            }
            return {
                "total_active_jobs": len(self._slots),
                "total_active_transfers": sum(len(o) for o in self._slots.values()),
                "cached_settings": len(self._settings),
                "cache_hits": self._cache_hits,
                "cache_misses": self._cache_misses,
                "settings_ttl": self.settings_ttl,
                "job_breakdown": breakdown,
            }
