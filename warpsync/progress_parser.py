"""Pure parsing of rsync's textual output into structured progress.

Nothing here spawns processes or touches the filesystem, so every format
rsync emits can be exercised directly with literal strings:

- progress lines (``--progress`` / ``--info=progress2``)::

      1,234,567  78%   12.34MB/s    0:00:05 (xfr#3, to-chk=12/40)

- the file list announcement (``123 files to consider``),
- itemized changes (``>f+++++++++ path/to/file``),
- the ``--stats`` summary block and the trailing ``sent/received`` line.
"""
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Union

PROGRESS_PATTERN = re.compile(
    r'^\s*([0-9][0-9.,]*[kKMGTP]?)\s+(\d{1,3})%\s+([0-9.,]+\s*[kKMGTP]?B/s)\s+(\d+:\d{2}(?::\d{2})?)'
)
XFR_PATTERN = re.compile(r'xfr#(\d+)')
CHECK_PATTERN = re.compile(r'(?:to|ir)-(?:chk|check)=(\d+)/(\d+)')
FILES_TO_CONSIDER_PATTERN = re.compile(r'(\d+) files to consider')
ITEMIZE_PATTERN = re.compile(r'^[<>ch.*][fdLDS][\w+.?]{7,9}\s+(.+)$')
SENT_RECEIVED_PATTERN = re.compile(
    r'sent ([\d,.]+[kKMGTP]?) bytes\s+received ([\d,.]+[kKMGTP]?) bytes\s+([\d,.]+[kKMGTP]?) bytes/sec'
)

STATS_PATTERNS = {
    'total_files': re.compile(r'Number of files:\s*([\d,]+)'),
    'created_files': re.compile(r'Number of created files:\s*([\d,]+)'),
    'regular_files_transferred': re.compile(r'Number of regular files transferred:\s*([\d,]+)'),
    'total_size': re.compile(r'Total file size:\s*([\d,.]+[kKMGTP]?)'),
    'transferred_size': re.compile(r'Total transferred file size:\s*([\d,.]+[kKMGTP]?)'),
    'literal_data': re.compile(r'Literal data:\s*([\d,.]+[kKMGTP]?)'),
    'matched_data': re.compile(r'Matched data:\s*([\d,.]+[kKMGTP]?)'),
    'file_list_size': re.compile(r'File list size:\s*([\d,.]+[kKMGTP]?)'),
    'bytes_sent': re.compile(r'Total bytes sent:\s*([\d,.]+[kKMGTP]?)'),
    'bytes_received': re.compile(r'Total bytes received:\s*([\d,.]+[kKMGTP]?)'),
}

_SIZE_MULTIPLIERS = {'k': 1024, 'K': 1024, 'M': 1024**2, 'G': 1024**3, 'T': 1024**4, 'P': 1024**5}


def parse_size(text: str) -> int:
    """Converts an rsync byte count (``1,234`` or ``577.83M``) to bytes."""
    value = text.strip().replace(',', '')
    multiplier = 1
    if value and value[-1] in _SIZE_MULTIPLIERS:
        multiplier = _SIZE_MULTIPLIERS[value[-1]]
        value = value[:-1]
    try:
        return int(float(value) * multiplier)
    except ValueError:
        return 0


def parse_speed(text: str) -> float:
    """Converts a rate such as ``12.34MB/s`` to bytes per second."""
    value = text.strip().replace(',', '')
    if value.endswith('B/s'):
        value = value[:-3].strip()
    multiplier = 1
    if value and value[-1] in _SIZE_MULTIPLIERS:
        multiplier = _SIZE_MULTIPLIERS[value[-1]]
        value = value[:-1]
    try:
        return float(value) * multiplier
    except ValueError:
        return 0.0


@dataclass
class ProgressUpdate:
    percentage: int = 0
    bytes_transferred: int = 0
    speed: str = ""
    speed_bps: float = 0.0
    eta: str = ""
    filename: str = ""
    file_number: int = 0
    total_files: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RsyncStats:
    total_files: int = 0
    created_files: int = 0
    regular_files_transferred: int = 0
    total_size: int = 0
    transferred_size: int = 0
    literal_data: int = 0
    matched_data: int = 0
    file_list_size: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    transfer_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_progress_line(line: str) -> Optional[ProgressUpdate]:
    """Parses one progress line.

    Args:
        line: A single line of rsync stdout, without the delimiter.

    Returns:
        A ProgressUpdate, or None if the line is not a progress line.
    """
    match = PROGRESS_PATTERN.search(line)
    if not match:
        return None
    update = ProgressUpdate(
        percentage=min(int(match.group(2)), 100),
        bytes_transferred=parse_size(match.group(1)),
        speed=match.group(3).replace(' ', ''),
        speed_bps=parse_speed(match.group(3)),
        eta=match.group(4),
    )
    xfr = XFR_PATTERN.search(line)
    if xfr:
        update.file_number = int(xfr.group(1))
    check = CHECK_PATTERN.search(line)
    if check:
        remaining, total = int(check.group(1)), int(check.group(2))
        update.total_files = total
        update.file_number = total - remaining
    return update


def parse_itemized_line(line: str) -> Optional[str]:
    """Returns the path named by an ``--itemize-changes`` line, if it is one."""
    match = ITEMIZE_PATTERN.match(line.strip())
    return match.group(1) if match else None


def parse_stats_line(line: str, stats: RsyncStats) -> bool:
    """Folds one ``--stats`` summary line into `stats`.

    Returns:
        True if the line contributed a value.
    """
    for name, pattern in STATS_PATTERNS.items():
        match = pattern.search(line)
        if match:
            setattr(stats, name, parse_size(match.group(1)))
            return True
    match = SENT_RECEIVED_PATTERN.search(line)
    if match:
        stats.bytes_sent = parse_size(match.group(1))
        stats.bytes_received = parse_size(match.group(2))
        stats.transfer_rate = float(parse_size(match.group(3)))
        return True
    return False


class RsyncOutputParser:
    """Incremental parser for a running rsync's stdout.

    Feed it raw chunks as they arrive; lines are split on both ``\\r`` (used
    by rsync to redraw the progress line) and ``\\n``.

    Attributes:
        current: Latest merged progress snapshot.
        stats: Values collected from the ``--stats`` summary.
    """

    def __init__(self):
        self._buffer = ""
        self.current = ProgressUpdate()
        self.stats = RsyncStats()
        self.lines_seen = 0

    def feed(self, data: Union[bytes, str]) -> List[ProgressUpdate]:
        """Consumes a chunk of output.

        Returns:
            A snapshot for every line that changed the progress state.
        """
        if isinstance(data, bytes):
            data = data.decode('utf-8', errors='replace')
        self._buffer += data
        updates = []
        while True:
            positions = [p for p in (self._buffer.find('\n'), self._buffer.find('\r')) if p != -1]
            if not positions:
                break
            split_at = min(positions)
            line, self._buffer = self._buffer[:split_at], self._buffer[split_at + 1:]
            update = self.parse_line(line)
            if update is not None:
                updates.append(update)
        return updates

    def finish(self) -> List[ProgressUpdate]:
        """Parses whatever is left in the buffer once the stream closed."""
        remainder, self._buffer = self._buffer, ""
        update = self.parse_line(remainder)
        return [update] if update is not None else []

    def parse_line(self, line: str) -> Optional[ProgressUpdate]:
        line = line.strip()
        if not line:
            return None
        self.lines_seen += 1

        progress = parse_progress_line(line)
        if progress is not None:
            self.current.percentage = progress.percentage
            self.current.bytes_transferred = progress.bytes_transferred
            self.current.speed = progress.speed
            self.current.speed_bps = progress.speed_bps
            self.current.eta = progress.eta
            if progress.total_files:
                self.current.total_files = progress.total_files
            if progress.file_number:
                self.current.file_number = progress.file_number
            return self._snapshot()

        considered = FILES_TO_CONSIDER_PATTERN.search(line)
        if considered:
            self.current.total_files = int(considered.group(1))
            self.current.file_number = 0
            self.current.percentage = 0
            return self._snapshot()

        if parse_stats_line(line, self.stats):
            return None

        filename = parse_itemized_line(line)
        if filename is not None:
            self.current.filename = filename
            return self._snapshot()
        return None

    def _snapshot(self) -> ProgressUpdate:
        return ProgressUpdate(**asdict(self.current))
