"""Loading, upgrading and validating ``config.ini``.

The packaged ``config.ini.template`` is the source of truth for available
options. On every start the user's file is brought up to date with it:
missing sections and options are added with their template defaults, values
the user already set are left alone, and the previous file is backed up.
"""
import configparser
from pathlib import Path
import shutil
import logging
import sys
import configupdater
import time
from typing import List

from .scanner import JOB_DIRECTIONS, JOB_SECTION_PREFIX
from .models import TransferPriority, TransferType
from .errors import ValidationError

TEMPLATE_PATH = Path(__file__).resolve().parent / 'config.ini.template'


def _merge_missing(updater: configupdater.ConfigUpdater, template: configupdater.ConfigUpdater) -> List[str]:
    """Adds template sections and options the user's file lacks.

    Returns:
        A description of everything added, empty if nothing was.
    """
    added: List[str] = []
    for section_name in template.sections():
        new_section = not updater.has_section(section_name)
        if new_section:
            updater.add_section(section_name)
        target = updater[section_name]
        missing = [(key, opt.value) for key, opt in template[section_name].items()
                   if new_section or not target.has_option(key)]
        for key, value in missing:
            target.set(key, value)
        if new_section:
            added.append(f"[{section_name}]")
        else:
            added.extend(f"[{section_name}] {key}" for key, _ in missing)
    return added


def _backup(config_file: Path) -> Path:
    backup_dir = config_file.parent / 'backup'
    backup_dir.mkdir(exist_ok=True)
    backup_path = backup_dir / f"{config_file.stem}.bak_{time.strftime('%Y%m%d-%H%M%S')}"
    shutil.copy2(config_file, backup_path)
    return backup_path


def update_config(config_path: str, template_path: str = str(TEMPLATE_PATH)) -> None:
    """Brings the user's config file up to date with the template.

    A missing config file is created from the template. When anything is
    added, the old file is first copied to ``backup/<stem>.bak_<timestamp>``
    next to it. Values and comments already in the file are kept.

    Raises:
        SystemExit: If the template is missing or the file cannot be written.
    """
    config_file = Path(config_path)
    template_file = Path(template_path)
    if not template_file.is_file():
        logging.error(f"FATAL: Config template '{template_path}' not found.")
        sys.exit(1)

    if not config_file.is_file():
        logging.warning(f"No configuration at '{config_path}'; creating one from the template. "
                        f"Add your [job:<name>] sections to it.")
        try:
            config_file.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(template_file, config_file)
        except OSError as e:
            logging.error(f"FATAL: Could not create config file: {e}")
            sys.exit(1)
        return

    try:
        updater = configupdater.ConfigUpdater()
        updater.read(config_file, encoding='utf-8')
        template = configupdater.ConfigUpdater()
        template.read(template_file, encoding='utf-8')

        added = _merge_missing(updater, template)
        if not added:
            logging.debug("Configuration file is already up to date.")
            return

        backup_path = _backup(config_file)
        config_file.write_text(str(updater), encoding='utf-8')
        logging.info(f"Configuration file updated (previous version in '{backup_path}'), added: {', '.join(added)}")
    except Exception as e:
        logging.error(f"FATAL: Could not update configuration file '{config_path}': {e}", exc_info=True)
        sys.exit(1)


def load_config(config_path: str = "config.ini") -> configparser.ConfigParser:
    """Reads the configuration file.

    Raises:
        SystemExit: If the file does not exist.
    """
    config_file = Path(config_path)
    if not config_file.is_file():
        logging.error(f"FATAL: Configuration file not found at '{config_path}'.")
        sys.exit(1)
    config = configparser.ConfigParser(interpolation=None)
    config.read(config_file, encoding='utf-8')
    return config


class ConfigValidator:
    """Checks a loaded configuration before anything is started.

    Attributes:
        config: The configuration to validate.
        errors: Problems that make the configuration unusable.
        warnings: Suspicious values that do not stop startup.
    """

    REQUIRED_SECTIONS = {
        'GENERAL': ['state_file', 'log_dir'],
        'QUEUE': ['max_concurrent_transfers'],
        'SSH': [],
        'RSYNC': [],
        'SCHEDULER': [],
    }

    # option: (type, recommended min, recommended max)
    NUMERIC_OPTIONS = {
        'QUEUE': {
            'max_concurrent_transfers': (int, 1, 50),
            'max_queue_size': (int, 1, 100000),
            'per_job_max_concurrency': (int, 1, 50),
            'max_retries': (int, 0, 20),
            'retry_base_delay': (float, 0, 3600),
            'retry_max_delay': (float, 0, 86400),
            'completed_retention_hours': (float, 0, 24 * 365),
            'settings_cache_ttl': (float, 0, 86400),
        },
        'SSH': {
            'max_connections_per_target': (int, 1, 50),
            'min_connections_per_target': (int, 0, 50),
            'max_idle_time': (float, 1, 86400),
            'max_lifetime': (float, 1, 86400),
            'connect_timeout': (float, 1, 600),
            'acquire_timeout': (float, 1, 3600),
            'sweep_interval': (float, 1, 3600),
        },
        'RSYNC': {
            'progress_interval': (float, 0.1, 60),
            'grace_period': (float, 0, 300),
            'silence_timeout': (float, 0, 86400),
        },
        'SCHEDULER': {
            'check_interval': (float, 5, 86400),
            'max_concurrent_scans': (int, 1, 10),
            'scan_timeout': (float, 60, 86400),
            'error_retry_delay': (float, 30, 86400),
            'max_error_count': (int, 1, 20),
            'health_check_interval': (float, 30, 86400),
        },
        'RECOVERY': {
            'stuck_threshold_minutes': (float, 1, 1440),
            'audit_interval': (float, 1, 1440),
            'cleanup_after_days': (float, 0, 3650),
        },
        'WEB': {
            'port': (int, 1, 65535),
        },
    }

    def __init__(self, config: configparser.ConfigParser):
        self.config = config
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate(self) -> bool:
        """Runs every check and prints what it found to stderr.

        Returns:
            True if no errors were found.
        """
        self._check_required_sections()
        self._check_required_options()
        self._check_numeric_values()
        self._check_jobs()
        self._check_commands()

        if self.errors:
            print("Configuration errors found:", file=sys.stderr)
            for error in self.errors:
                print(f" ❌ {error}", file=sys.stderr)
            return False

        if self.warnings:
            print("Configuration warnings:", file=sys.stderr)
            for warning in self.warnings:
                print(f" ⚠️ {warning}", file=sys.stderr)

        return True

    def _check_required_sections(self) -> None:
        for section in self.REQUIRED_SECTIONS:
            if not self.config.has_section(section):
                self.errors.append(f"Missing required section: [{section}]")

    def _check_required_options(self) -> None:
        for section, options in self.REQUIRED_SECTIONS.items():
            if not self.config.has_section(section):
                continue
            for option in options:
                if not self.config.has_option(section, option):
                    self.errors.append(f"Missing option '{option}' in [{section}]")
                elif not self.config.get(section, option).strip():
                    self.errors.append(f"Option '{option}' in [{section}] is empty")

    def _check_numeric_values(self) -> None:
        for section, options in self.NUMERIC_OPTIONS.items():
            if not self.config.has_section(section):
                continue
            for option, (kind, min_val, max_val) in options.items():
                raw = self.config.get(section, option, fallback='').strip()
                if not raw:
                    continue
                try:
                    value = kind(raw)
                except ValueError:
                    kind_name = "an integer" if kind is int else "a number"
                    self.errors.append(f"Option '{option}' in [{section}] must be {kind_name}")
                    continue
                if not (min_val <= value <= max_val):
                    self.warnings.append(
                        f"[{section}] {option}={value} is outside recommended range [{min_val}-{max_val}]"
                    )

    def _check_jobs(self) -> None:
        jobs = [s for s in self.config.sections() if s.startswith(JOB_SECTION_PREFIX)]
        if not jobs:
            self.warnings.append("No [job:<name>] sections configured; nothing will be scanned")
        for section in jobs:
            name = section[len(JOB_SECTION_PREFIX):].strip()
            if not name:
                self.errors.append(f"Job section [{section}] has no name")
            for option in ('host', 'username', 'remote_path', 'local_path'):
                if not self.config.get(section, option, fallback='').strip():
                    self.errors.append(f"Missing option '{option}' in [{section}]")
            try:
                port = self.config.getint(section, 'port', fallback=22)
                if not 1 <= port <= 65535:
                    self.errors.append(f"Port {port} in [{section}] must be between 1 and 65535")
            except ValueError:
                self.errors.append(f"Option 'port' in [{section}] must be an integer")
            try:
                direction = TransferType.parse(self.config.get(section, 'direction', fallback='download'))
            except ValidationError:
                direction = None
            if direction not in JOB_DIRECTIONS:
                self.errors.append(f"Invalid direction in [{section}]; use 'download' or 'upload'")
            try:
                TransferPriority.parse(self.config.get(section, 'priority', fallback='NORMAL'))
            except ValidationError:
                self.errors.append(f"Invalid priority in [{section}]; use LOW, NORMAL, HIGH or URGENT")
            password = self.config.get(section, 'password', fallback='').strip()
            key_file = self.config.get(section, 'key_file', fallback='').strip()
            if not password and not key_file:
                self.warnings.append(f"[{section}] has neither password nor key_file; relying on the SSH agent")
            if key_file and not Path(key_file).expanduser().is_file():
                self.warnings.append(f"key_file '{key_file}' in [{section}] does not exist")
            if password and not shutil.which('sshpass'):
                self.warnings.append(f"[{section}] uses a password but 'sshpass' was not found in PATH")

    def _check_commands(self) -> None:
        rsync_path = self.config.get('RSYNC', 'rsync_path', fallback='rsync') or 'rsync'
        if not shutil.which(rsync_path):
            self.warnings.append(f"'{rsync_path}' command not found in PATH")
        if not shutil.which('ssh'):
            self.warnings.append("'ssh' command not found in PATH")
