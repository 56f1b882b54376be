import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .models import ACTIVE_STATUSES, Transfer, TransferStatus

STORE_VERSION = 1


class TransferStore:
    """Durable transfer collection backed by a JSON file.

    Every mutation rewrites the file atomically (temporary file plus
    ``os.replace``), so a crash leaves either the old or the new document on
    disk. Records handed out are copies; callers persist changes through
    `save`. Passing ``None`` as the path keeps the collection in memory only.

    Attributes:
        file: The Path of the backing JSON document, or None.
    """

    def __init__(self, state_file: Optional[Path] = None):
        """Initializes the store and loads any existing document.

        Args:
            state_file: Location of the JSON document.
        """
        self.file = Path(state_file) if state_file else None
        self._lock = threading.Lock()
        self._transfers: Dict[str, Dict[str, Any]] = self._load()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        """Loads the transfer records from disk.

        A missing file yields an empty store. A corrupt file is logged and
        left in place; the store starts empty and overwrites it on next save.

        Returns:
            Mapping of transfer id to serialized transfer.
        """
        if self.file is None or not self.file.exists():
            return {}
        try:
            data = json.loads(self.file.read_text(encoding='utf-8'))
            data.setdefault("transfers", {})
            transfers = data["transfers"]
            for transfer_id, record in list(transfers.items()):
                try:
                    Transfer.from_dict(record)
                except (KeyError, TypeError, ValueError) as e:
                    logging.warning(f"Dropping unreadable transfer record {transfer_id}: {e}")
                    del transfers[transfer_id]
            logging.debug(f"Loaded {len(transfers)} transfer record(s) from '{self.file}'")
            return transfers
        except (json.JSONDecodeError, AttributeError):
            logging.warning(f"Could not decode transfer state file '{self.file}'. Starting fresh.")
            return {}

    def _save(self) -> None:
        """Writes the full document. Caller must hold the lock."""
        if self.file is None:
            return
        document = {"version": STORE_VERSION, "transfers": self._transfers}
        self.file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.file.name}.", dir=str(self.file.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.file)
        except OSError:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def save(self, transfer: Transfer) -> None:
        """Persists a transfer, replacing any previous version.

        Raises:
            OSError: If the document could not be written. The in-memory
                copy is rolled back so memory never runs ahead of disk.
        """
        with self._lock:
            previous = self._transfers.get(transfer.transfer_id)
            self._transfers[transfer.transfer_id] = transfer.to_dict()
            try:
                self._save()
            except OSError as e:
                logging.error(f"Failed to persist transfer {transfer.transfer_id}: {e}")
                if previous is None:
                    del self._transfers[transfer.transfer_id]
                else:
                    self._transfers[transfer.transfer_id] = previous
                raise

    def get(self, transfer_id: str) -> Optional[Transfer]:
        with self._lock:
            record = self._transfers.get(transfer_id)
            return Transfer.from_dict(record) if record else None

    def delete(self, transfer_id: str) -> bool:
        with self._lock:
            if self._transfers.pop(transfer_id, None) is None:
                return False
            self._save()
            return True

    def list(self, statuses: Optional[Iterable[TransferStatus]] = None,
             job_id: Optional[str] = None) -> List[Transfer]:
        """Returns matching transfers ordered by admission time."""
        wanted = {s.value for s in statuses} if statuses is not None else None
        with self._lock:
            records = [
                r for r in self._transfers.values()
                if (wanted is None or r.get("status") in wanted)
                and (job_id is None or r.get("job_id") == job_id)
            ]
            result = [Transfer.from_dict(r) for r in records]
        result.sort(key=lambda t: t.queued_at)
        return result

    def find_active(self, job_id: str, file_id: str) -> Optional[Transfer]:
        """Returns the non-terminal transfer for a (job, file) pair, if any."""
        active = {s.value for s in ACTIVE_STATUSES}
        with self._lock:
            for record in self._transfers.values():
                if (record.get("job_id") == job_id and record.get("file_id") == file_id
                        and record.get("status") in active):
                    return Transfer.from_dict(record)
        return None

    def purge(self, predicate: Callable[[Transfer], bool]) -> int:
        """Deletes every transfer matching `predicate` in a single write.

        Returns:
            The number of records removed.
        """
        with self._lock:
            doomed = [tid for tid, r in self._transfers.items() if predicate(Transfer.from_dict(r))]
            for transfer_id in doomed:
                del self._transfers[transfer_id]
            if doomed:
                self._save()
            return len(doomed)

    def count(self) -> int:
        with self._lock:
            return len(self._transfers)
