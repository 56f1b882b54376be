# PYTHON_ARGCOMPLETE_OK
"""warpsync entry point and composition root."""
import argparse
import configparser
import json
import logging
import os
import shlex
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

import argcomplete

from . import __version__
from .concurrency import JobConcurrencyController
from .config_manager import ConfigValidator, load_config, update_config
from .events import EventBus, RecentEvents
from .process_runner import RsyncRunner
from .recovery import RecoveryAuditor, StateRecoveryService
from .rsync_command import RsyncCommandBuilder
from .scanner import ConfigJobRepository, RemoteListingScanner
from .scheduler import JobScheduler, SchedulerConfig
from .ssh_manager import SSHConnectionPool
from .state_manager import TransferStateManager
from .store import TransferStore
from .system_manager import LockFile, add_console_handler, check_dependencies, setup_logging
from .transfer_queue import TransferQueue
from .web_server import WebUILogHandler, create_app, start_server

DEFAULT_CONFIG_PATH = os.getenv('WS_CONFIG', 'config.ini')


def _bounded(config: configparser.ConfigParser, section: str, option: str, default, low=None, high=None):
    """Reads a numeric option, clamping it into [low, high] with a warning."""
    convert = int if isinstance(default, int) else float
    raw = config.get(section, option, fallback='').strip()
    value = convert(raw) if raw else default
    clamped = value
    if low is not None and value < low:
        clamped = low
    if high is not None and value > high:
        clamped = high
    if clamped != value:
        logging.warning(f"[{section}] {option}={value} is out of range, using {clamped}.")
    return clamped


class WarpSyncService:
    """Builds and owns every long-lived component for one process.

    Nothing here is a module-level singleton: tests and tools construct
    their own instances from a ConfigParser.
    """

    def __init__(self, config: configparser.ConfigParser):
        self.config = config
        self.events = EventBus()
        self.recent_events = RecentEvents()
        self.events.subscribe(self.recent_events)
        self.log_handler = WebUILogHandler()
        self.log_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))

        state_file = config.get('GENERAL', 'state_file', fallback='transfers.json')
        self.store = TransferStore(Path(state_file).expanduser())
        self.state_manager = TransferStateManager(
            self.store,
            self.events,
            default_max_retries=_bounded(config, 'QUEUE', 'max_retries', 3, 0),
            retry_base_delay=_bounded(config, 'QUEUE', 'retry_base_delay', 5.0, 0),
            retry_max_delay=_bounded(config, 'QUEUE', 'retry_max_delay', 60.0, 0),
        )

        self.repository = ConfigJobRepository(config)
        self.controller = JobConcurrencyController(
            settings_provider=self.repository.get_max_concurrency,
            default_max=_bounded(config, 'QUEUE', 'per_job_max_concurrency', 3, 1),
            settings_ttl=_bounded(config, 'QUEUE', 'settings_cache_ttl', 300.0, 0),
        )

        connect_timeout = _bounded(config, 'SSH', 'connect_timeout', 10.0, 1)
        self.pool = SSHConnectionPool(
            max_per_target=_bounded(config, 'SSH', 'max_connections_per_target', 5, 1),
            min_per_target=_bounded(config, 'SSH', 'min_connections_per_target', 0, 0),
            max_idle_time=_bounded(config, 'SSH', 'max_idle_time', 30.0, 1),
            max_lifetime=_bounded(config, 'SSH', 'max_lifetime', 300.0, 1),
            connect_timeout=connect_timeout,
            acquire_timeout=_bounded(config, 'SSH', 'acquire_timeout', 60.0, 1),
            sweep_interval=_bounded(config, 'SSH', 'sweep_interval', 60.0, 1),
        )

        bwlimit = config.get('RSYNC', 'bwlimit', fallback='').strip()
        builder = RsyncCommandBuilder(
            rsync_path=config.get('RSYNC', 'rsync_path', fallback='rsync') or 'rsync',
            connect_timeout=int(connect_timeout),
            default_bwlimit=int(bwlimit) if bwlimit else None,
            extra_args=shlex.split(config.get('RSYNC', 'extra_args', fallback='')),
        )
        self.runner = RsyncRunner(
            builder,
            progress_callback=self.state_manager.update_progress,
            progress_interval=_bounded(config, 'RSYNC', 'progress_interval', 1.0, 0.1),
            grace_period=_bounded(config, 'RSYNC', 'grace_period', 5.0, 0),
            silence_timeout=_bounded(config, 'RSYNC', 'silence_timeout', 0.0, 0),
        )

        self.queue = TransferQueue(
            self.state_manager,
            self.controller,
            self.runner,
            pool=self.pool,
            max_concurrent_transfers=_bounded(config, 'QUEUE', 'max_concurrent_transfers', 3, 1, 50),
            max_queue_size=_bounded(config, 'QUEUE', 'max_queue_size', 1000, 1),
            completed_retention_hours=_bounded(config, 'QUEUE', 'completed_retention_hours', 24.0, 0),
        )

        self.recovery = StateRecoveryService(
            self.state_manager,
            self.queue,
            self.controller,
            self.runner,
            stuck_threshold_minutes=_bounded(config, 'RECOVERY', 'stuck_threshold_minutes', 30.0, 1),
            cleanup_after_days=_bounded(config, 'RECOVERY', 'cleanup_after_days', 7.0, 0),
        )
        self.auditor = RecoveryAuditor(self.recovery, _bounded(config, 'RECOVERY', 'audit_interval', 5.0, 1))

        self.scanner = RemoteListingScanner(self.pool)
        self.scheduler = JobScheduler(
            self.repository,
            self.scanner,
            self.queue,
            SchedulerConfig.from_config(config),
            pool=self.pool,
            recovery=self.recovery,
        )

    def start(self) -> None:
        """Recovers leftover state, then starts dispatching and scanning."""
        self.pool.start()
        stats = self.recovery.perform_system_recovery()
        if stats.orphaned_transfers:
            logging.info(f"Startup recovery handled {stats.orphaned_transfers} transfer(s) from a previous run.")
        self.queue.start()
        self.scheduler.start()
        self.auditor.start()

    def stop(self) -> None:
        self.auditor.stop()
        self.scheduler.stop()
        self.queue.stop()
        self.runner.stop_all()
        self.pool.close_all()
        logging.info("All SSH connections have been closed.")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Schedules and runs rsync-over-SSH transfers for configured sync jobs.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH, help='Path to the configuration file.')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging.')
    parser.add_argument('--simple', action='store_true', help='Plain console logging, for `screen` or `tmux`.')
    parser.add_argument('--check-config', action='store_true', help='Validate the configuration file and exit.')
    parser.add_argument('--version', action='store_true', help="Show program's version and config file path, then exit.")
    parser.add_argument('--recover', action='store_true', help='Run one recovery pass over stored transfers and exit.')
    parser.add_argument('--web', action='store_true', help='Start the status API even if [WEB] enabled is false.')
    return parser


def main(argv: Optional[list] = None) -> int:
    """Runs warpsync until interrupted.

    Returns:
        0 on a clean exit, 1 on configuration or startup errors.
    """
    parser = _build_parser()
    argcomplete.autocomplete(parser)
    args = parser.parse_args(argv)

    if args.version:
        print(f"warpsync {__version__}")
        print(f"Configuration file: {args.config}")
        return 0

    update_config(args.config)
    config = load_config(args.config)
    log_dir = config.get('GENERAL', 'log_dir', fallback='logs')
    setup_logging(Path(log_dir), args.debug)
    add_console_handler(simple=args.simple, debug=args.debug)
    logging.info(f"Using configuration file: {args.config}")

    validator = ConfigValidator(config)
    valid = validator.validate()
    if args.check_config:
        if valid:
            logging.info("SUCCESS: Configuration file appears to be valid.")
            return 0
        logging.error("FAILURE: Configuration file has errors.")
        return 1
    if not valid:
        return 1

    lock_path = Path(config.get('GENERAL', 'lock_file', fallback='warpsync.lock')).expanduser()
    lock = LockFile(lock_path)
    try:
        lock.acquire()
    except RuntimeError as e:
        logging.error(str(e))
        return 1

    service = None
    try:
        service = WarpSyncService(config)
        if args.recover:
            stats = service.recovery.perform_system_recovery()
            print(json.dumps(stats.to_dict(), indent=2))
            return 0

        required = ['rsync', 'ssh']
        if any(job.ssh_target.password for job in service.repository.get_jobs()):
            required.append('sshpass')
        missing = check_dependencies(required)
        if missing:
            logging.error(f"Missing required commands: {', '.join(missing)}")
            return 1

        if args.web or config.getboolean('WEB', 'enabled', fallback=False):
            logging.getLogger().addHandler(service.log_handler)
            start_server(create_app(service),
                         host=config.get('WEB', 'host', fallback='127.0.0.1'),
                         port=config.getint('WEB', 'port', fallback=8765))

        stop_event = threading.Event()
        signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())
        service.start()
        logging.info("warpsync is running. Press Ctrl+C to stop.")
        while not stop_event.wait(1):
            pass
        logging.info("Received SIGTERM, shutting down.")
    except KeyboardInterrupt:
        logging.warning("Process interrupted by user. Shutting down.")
    except Exception as e:
        logging.error(f"An unexpected error occurred in main: {e}", exc_info=True)
        return 1
    finally:
        if service is not None:
            service.stop()
        lock.release()
        logging.info("--- warpsync finished ---")
    return 0


if __name__ == "__main__":
    sys.exit(main())
