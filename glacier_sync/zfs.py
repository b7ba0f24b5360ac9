"""ZFS command layer: dataset and snapshot listing, send command lines."""

import logging
import subprocess
from typing import List, Optional, Sequence

from .exceptions import CommandError, PlanningError
from .models import Snapshot

logger = logging.getLogger(__name__)


class ZfsCommands:
    """Run the zfs binary, optionally through sudo.

    Args:
        binary: Path or name of the zfs binary
        use_sudo: Prefix every command with ``sudo_binary``
        sudo_binary: Path or name of sudo
        raw: Use raw sends (``-w``) so encrypted datasets stay encrypted
        extra_flags: Additional ``zfs send`` flags, e.g. ``["-c"]``
    """

    def __init__(self, binary: str = 'zfs', use_sudo: bool = False,
                 sudo_binary: str = 'sudo', raw: bool = True,
                 extra_flags: Optional[Sequence[str]] = None):
        self.binary = binary
        self.use_sudo = use_sudo
        self.sudo_binary = sudo_binary
        self.raw = raw
        self.extra_flags = list(extra_flags or [])

    @classmethod
    def from_config(cls, export_config) -> 'ZfsCommands':
        return cls(
            binary=export_config.binary,
            use_sudo=export_config.use_sudo,
            sudo_binary=export_config.sudo_binary,
            raw=export_config.raw,
            extra_flags=export_config.extra_flags,
        )

    def command(self, args: Sequence[str]) -> List[str]:
        cmd = [self.binary] + list(args)
        if self.use_sudo:
            cmd.insert(0, self.sudo_binary)
        return cmd

    def run(self, args: Sequence[str], with_stderr: bool = False) -> str:
        """Run a zfs subcommand, expect exit 0 and return decoded stdout.

        With ``with_stderr`` the stderr output is appended to the result;
        some zfs versions print dry-run send estimates there.
        """
        cmd = self.command(args)
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            completed = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            raise CommandError(cmd, -1, str(e).encode('utf-8')) from e
        if completed.returncode != 0:
            raise CommandError(cmd, completed.returncode, completed.stderr)
        output = completed.stdout.decode('utf-8')
        if with_stderr:
            output += completed.stderr.decode('utf-8', 'replace')
        return output

    def run_lines(self, args: Sequence[str]) -> List[str]:
        return [line.strip() for line in self.run(args).split('\n') if line.strip()]

    def list_datasets(self, pool: str) -> List[str]:
        """All filesystems and volumes under a pool, sorted by name."""
        lines = self.run_lines(['list', '-Hp', '-o', 'name', '-t', 'filesystem,volume', '-r', pool])
        return sorted(lines)

    def list_snapshots(self, dataset: str) -> List[Snapshot]:
        """Snapshots of a single dataset ordered oldest to newest.

        Raises:
            PlanningError: If zfs fails or prints something unparseable
        """
        try:
            lines = self.run_lines([
                'list', '-Hp', '-t', 'snapshot', '-o', 'name,creation',
                '-s', 'creation', '-d', '1', dataset,
            ])
        except CommandError as e:
            raise PlanningError(f"Cannot list snapshots of {dataset}: {e}") from e
        return parse_snapshot_listing(dataset, lines)

    def send_args(self, snapshot: Snapshot, parent: Optional[Snapshot] = None,
                  dry_run: bool = False) -> List[str]:
        args = ['send']
        if self.raw:
            args.append('-w')
        if dry_run:
            args.extend(['-n', '-P'])
        args.extend(self.extra_flags)
        if parent is not None:
            args.extend(['-i', parent.full_name])
        args.append(snapshot.full_name)
        return args

    def send_command(self, snapshot: Snapshot, parent: Optional[Snapshot] = None) -> List[str]:
        """Full command line of the export for a snapshot."""
        return self.command(self.send_args(snapshot, parent))

    def estimate_size(self, snapshot: Snapshot, parent: Optional[Snapshot] = None) -> Optional[int]:
        """Estimated stream size in bytes from a dry-run send, or None."""
        try:
            output = self.run(self.send_args(snapshot, parent, dry_run=True), with_stderr=True)
        except CommandError as e:
            logger.warning(f"Could not estimate size of {snapshot}: {e}")
            return None
        return parse_send_estimate(output)


def parse_snapshot_listing(dataset: str, lines: Sequence[str]) -> List[Snapshot]:
    """Parse ``zfs list -Hp -o name,creation`` output for one dataset."""
    snapshots = []
    for line in lines:
        fields = line.split('\t')
        if len(fields) != 2 or '@' not in fields[0]:
            raise PlanningError(f"Unexpected zfs list output for {dataset}: {line!r}")
        name, creation = fields
        owner, _, snapname = name.partition('@')
        if owner != dataset:
            continue
        try:
            snapshots.append(Snapshot(dataset, snapname, int(creation)))
        except ValueError as e:
            raise PlanningError(f"Bad creation time for {name}: {creation!r}") from e
    snapshots.sort(key=lambda s: s.creation)
    return snapshots


def parse_send_estimate(output: str) -> Optional[int]:
    """Pick the total out of ``zfs send -nP`` output (``size\\t<bytes>``)."""
    for line in reversed(output.splitlines()):
        fields = line.strip().split('\t')
        if len(fields) >= 2 and fields[0] == 'size':
            try:
                return int(fields[-1])
            except ValueError:
                return None
    return None
