import logging
import os
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import ValidationError
from .models import RsyncOptions, SSHTarget, Transfer, TransferType
from .utils import create_safe_command_for_logging

# (attribute, flag) pairs emitted in this order when the option is enabled
_BOOLEAN_FLAGS = [
    ('archive', '-a'),
    ('verbose', '-v'),
    ('compress', '-z'),
    ('checksum', '-c'),
    ('times', '-t'),
    ('perms', '-p'),
    ('owner', '-o'),
    ('group', '-g'),
    ('whole_file', '-W'),
    ('sparse', '-S'),
    ('hard_links', '-H'),
    ('itemize_changes', '-i'),
    ('human_readable', '-h'),
    ('partial', '--partial'),
    ('progress', '--progress'),
    ('delete', '--delete'),
    ('dry_run', '--dry-run'),
    ('inplace', '--inplace'),
    ('numeric_ids', '--numeric-ids'),
    ('stats', '--stats'),
    ('protect_args', '--protect-args'),
]


@dataclass
class RsyncCommand:
    """A ready-to-spawn rsync invocation.

    Attributes:
        argv: Argument vector, passed to the OS without a local shell.
        env: Extra environment variables (the sshpass secret lives here,
            never in argv).
    """
    argv: List[str]
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def display(self) -> str:
        """Redacted command line safe for logs."""
        return ' '.join(shlex.quote(p) for p in create_safe_command_for_logging(self.argv))


def format_remote_host(target: SSHTarget) -> str:
    host = target.host
    if ':' in host and not host.startswith('['):
        host = f"[{host}]"
    return f"{target.username}@{host}"


class RsyncCommandBuilder:
    """Builds rsync argument vectors for transfers.

    Remote paths cross a remote shell. With ``protect_args`` (the default)
    rsync ships them through its own protocol, untouched by that shell;
    otherwise they are quoted with `shlex.quote`. Local paths never see a
    shell because the command runs from an argument list.
    """

    def __init__(self, rsync_path: str = 'rsync', ssh_path: str = 'ssh',
                 connect_timeout: int = 30, server_alive_interval: int = 60,
                 server_alive_count_max: int = 3, control_path: Optional[str] = None,
                 default_bwlimit: Optional[int] = None, extra_args: Optional[List[str]] = None):
        self.rsync_path = rsync_path
        self.ssh_path = ssh_path
        self.connect_timeout = connect_timeout
        self.server_alive_interval = server_alive_interval
        self.server_alive_count_max = server_alive_count_max
        self.control_path = control_path
        self.default_bwlimit = default_bwlimit
        self.extra_args = list(extra_args or [])

    def validate(self, transfer: Transfer) -> None:
        """Raises ValidationError if the transfer cannot be turned into a command."""
        transfer.ssh_target.validate()
        errors = {}
        if not transfer.source or not transfer.source.strip():
            errors['source'] = 'Source path is required'
        if not transfer.destination or not transfer.destination.strip():
            errors['destination'] = 'Destination path is required'
        if transfer.rsync_options.bwlimit is not None and transfer.rsync_options.bwlimit < 0:
            errors['bwlimit'] = 'bwlimit must not be negative'
        if errors:
            raise ValidationError("Invalid rsync command", errors)

    def build_ssh_command(self, target: SSHTarget) -> str:
        """Builds the string handed to rsync's ``-e`` option."""
        parts = [self.ssh_path, '-p', str(target.port)]
        if target.key_file:
            parts += ['-i', target.key_file]
        if not target.password:
            # sshpass needs the interactive prompt that BatchMode disables
            parts += ['-o', 'BatchMode=yes']
        parts += [
            '-o', 'StrictHostKeyChecking=no',
            '-o', 'UserKnownHostsFile=/dev/null',
            '-o', 'LogLevel=ERROR',
            '-o', f'ConnectTimeout={self.connect_timeout}',
            '-o', f'ServerAliveInterval={self.server_alive_interval}',
            '-o', f'ServerAliveCountMax={self.server_alive_count_max}',
        ]
        if self.control_path:
            parts += ['-o', 'ControlMaster=auto', '-o', f'ControlPath={self.control_path}',
                      '-o', 'ControlPersist=60s']
        return ' '.join(shlex.quote(p) for p in parts)

    def build_flags(self, options: RsyncOptions) -> List[str]:
        flags = [flag for attr, flag in _BOOLEAN_FLAGS if getattr(options, attr)]
        for pattern in options.include:
            flags.append(f'--include={pattern}')
        for pattern in options.exclude:
            flags.append(f'--exclude={pattern}')
        bwlimit = options.bwlimit if options.bwlimit is not None else self.default_bwlimit
        if bwlimit:
            flags.append(f'--bwlimit={bwlimit}')
        if options.timeout:
            flags.append(f'--timeout={options.timeout}')
        if options.max_size:
            flags.append(f'--max-size={options.max_size}')
        if options.min_size:
            flags.append(f'--min-size={options.min_size}')
        if options.partial_dir:
            flags.append(f'--partial-dir={options.partial_dir}')
        flags.extend(self.extra_args)
        flags.extend(options.extra_args)
        return flags

    def remote_spec(self, target: SSHTarget, path: str, protect_args: bool) -> str:
        if not protect_args:
            path = shlex.quote(path)
        return f"{format_remote_host(target)}:{path}"

    @staticmethod
    def _local(path: str) -> str:
        # keep a leading dash from being read as an option
        return f"./{path}" if path.startswith('-') else path

    def build(self, transfer: Transfer) -> RsyncCommand:
        """Builds the full command for a transfer.

        Raises:
            ValidationError: If the transfer is missing a target or a path.
        """
        self.validate(transfer)
        target = transfer.ssh_target
        options = transfer.rsync_options
        argv: List[str] = []
        env: Dict[str, str] = {}
        if target.password:
            argv += ['sshpass', '-e']
            env['SSHPASS'] = target.password
        argv.append(self.rsync_path)
        argv += self.build_flags(options)
        argv += ['-e', self.build_ssh_command(target)]

        source, destination = transfer.source, transfer.destination
        if transfer.type == TransferType.SYNC and not source.endswith('/'):
            source += '/'
        if transfer.type == TransferType.UPLOAD:
            argv += [self._local(source), self.remote_spec(target, destination, options.protect_args)]
        else:
            argv += [self.remote_spec(target, source, options.protect_args), self._local(destination)]

        command = RsyncCommand(argv=argv, env=env)
        logging.debug(f"Built rsync command for {transfer.transfer_id}: {command.display}")
        return command


def local_parent(transfer: Transfer) -> Optional[str]:
    """Local directory that must exist before rsync writes into it."""
    if transfer.type == TransferType.UPLOAD:
        return None
    if transfer.type == TransferType.SYNC:
        return transfer.destination
    return os.path.dirname(transfer.destination.rstrip('/')) or None
