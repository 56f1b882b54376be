import time
import logging
import os
from functools import wraps
from typing import Callable, Any, List, Optional


class Timeouts:
    SSH_CONNECT = int(os.getenv('WS_SSH_CONNECT_TIMEOUT', '10'))
    SSH_EXEC = int(os.getenv('WS_SSH_EXEC_TIMEOUT', '60'))
    POOL_WAIT = int(os.getenv('WS_POOL_WAIT_TIMEOUT', '60'))


def retry(tries: int = 2, delay: float = 5, backoff: float = 1,
          exceptions: tuple = (Exception,)) -> Callable:
    """Decorator that calls the wrapped function again when it raises.

    Args:
        tries: Total number of calls, including the first.
        delay: Seconds to sleep before the second call.
        backoff: Multiplier applied to the sleep after every failure; 1
            keeps it constant.
        exceptions: Exception types worth another call. Anything else
            propagates straight away.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            wait = delay
            for attempt in range(1, tries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= tries:
                        logging.error(f"{func.__name__} gave up after {tries} attempt(s): {e}")
                        raise
                    logging.warning(f"{func.__name__} failed ({e}); attempt {attempt}/{tries}, "
                                    f"next in {wait:g}s")
                    time.sleep(wait)
                    wait *= backoff
        return wrapper
    return decorator


def create_safe_command_for_logging(command: List[str]) -> List[str]:
    """Returns a copy of `command` with ``sshpass -p`` and ``SSHPASS=`` secrets masked."""
    safe = list(command)
    for i, part in enumerate(safe):
        if part.startswith("SSHPASS="):
            safe[i] = "SSHPASS='********'"
        elif part == "-p" and i > 0 and safe[i - 1] == "sshpass" and i + 1 < len(safe):
            safe[i + 1] = "'********'"
    return safe


def format_bytes(size: float) -> str:
    """Formats a byte count using 1024-based units."""
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(size) < 1024 or unit == 'TB':
            return f"{size:.1f} {unit}" if unit != 'B' else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} PB"


class ThrottledProgressUpdater:
    """Forwards progress updates at most once per interval.

    The first update and any update reaching 100% are always forwarded.
    """

    def __init__(self, callback: Callable[..., None], update_interval: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self.callback = callback
        self.update_interval = update_interval
        self._clock = clock
        self.last_update_time: Optional[float] = None
        self._pending: Optional[tuple] = None

    def update(self, *args: Any, force: bool = False, **kwargs: Any) -> bool:
        """Records an update and forwards it if the interval elapsed.

        Returns:
            True if the callback was invoked.
        """
        self._pending = (args, kwargs)
        now = self._clock()
        if force or self.last_update_time is None or now - self.last_update_time >= self.update_interval:
            self.flush()
            return True
        return False

    def flush(self) -> None:
        if self._pending is None:
            return
        args, kwargs = self._pending
        self._pending = None
        self.last_update_time = self._clock()
        self.callback(*args, **kwargs)
