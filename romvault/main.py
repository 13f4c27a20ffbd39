"""Command line interface: ``romvault backup`` and ``romvault restore``."""

from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from romvault.__version__ import __version__
from romvault.config.settings import (
    DEFAULT_ARCHIVE_SPLIT_SIZE,
    get_backup_dir,
    load_settings,
)
from romvault.domain.models import format_targets, parse_targets
from romvault.logging import LoggerFactory, operation_context, setup_logging
from romvault.storage.exceptions import RomNotFoundError, StorageError
from romvault.storage.isolation import MountIsolation, PreflightChecker
from romvault.storage.roms import RomRegistry
from romvault.storage.snapshot import (
    DEFAULT_COMPRESSION,
    RomBackupOrchestrator,
    RomRestoreOrchestrator,
    compression_names,
    lookup_by_name,
    name_for,
)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

BACKUP_NAME_FORMAT = "%Y.%m.%d-%H.%M.%S"

TARGETS_HELP = (
    "comma-separated list of targets: 'all' or some combination of "
    "system,cache,data,boot,config (default: all)"
)

log = LoggerFactory.for_system()


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with 1 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_FAILURE, f"{self.prog}: error: {message}\n")


def _split_size(value: str) -> int:
    try:
        size = int(value, 10)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid split size: {value}") from None
    if size < 0:
        raise argparse.ArgumentTypeError(f"Invalid split size: {value}")
    return size


def is_valid_backup_name(name: str) -> bool:
    """Reject empty names, '.', '..' and anything containing a slash."""
    return bool(name) and "/" not in name and name not in (".", "..")


def default_backup_name(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime(BACKUP_NAME_FORMAT)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="romvault",
        description="Back up and restore individual ROMs on a multi-ROM device",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log raw command output")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for log files")
    subparsers = parser.add_subparsers(dest="command", parser_class=_ArgumentParser)
    subparsers.required = True

    backup = subparsers.add_parser(
        "backup",
        help="Back up a ROM",
        usage="%(prog)s -r <romid> -t <targets> [-n <name>] [OPTION...]",
        epilog="NOTE: Backups of image-based ROMs are made by loop-mounting the images.",
    )
    backup.add_argument("-r", "--romid", required=True, help="ROM ID to backup")
    backup.add_argument("-t", "--targets", default="all", help=TARGETS_HELP)
    backup.add_argument(
        "-n", "--name", default=None,
        help="name of backup (default: YYYY.MM.DD-HH.MM.SS)",
    )
    backup.add_argument(
        "-c", "--compression", default=name_for(DEFAULT_COMPRESSION),
        help=f"compression type ({', '.join(compression_names())}) "
        f"(default: {name_for(DEFAULT_COMPRESSION)})",
    )
    backup.add_argument(
        "-s", "--split-size", type=_split_size, default=DEFAULT_ARCHIVE_SPLIT_SIZE,
        help="split archive maximum size in bytes, 0 to disable "
        f"(default: {DEFAULT_ARCHIVE_SPLIT_SIZE} bytes)",
    )
    backup.add_argument(
        "-d", "--backupdir", type=Path, default=None,
        help="directory to store backups (default: <multiboot dir>/backups)",
    )
    backup.add_argument(
        "-f", "--force", action="store_true",
        help="allow overwriting old backup with the same name",
    )
    backup.set_defaults(func=backup_command)

    restore = subparsers.add_parser(
        "restore",
        help="Restore a ROM from a backup",
        usage="%(prog)s -r <romid> -t <targets> -n <name> [OPTION...]",
    )
    restore.add_argument("-r", "--romid", required=True, help="ROM ID to restore to")
    restore.add_argument("-t", "--targets", default="all", help=TARGETS_HELP)
    restore.add_argument("-n", "--name", required=True, help="name of backup to restore")
    restore.add_argument(
        "-d", "--backupdir", type=Path, default=None,
        help="directory containing backups (default: <multiboot dir>/backups)",
    )
    restore.set_defaults(func=restore_command)

    return parser


def _warn_if_not_root() -> None:
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        log.warning("Not running as root; mounting and ownership changes will fail")


def _parse_common(args) -> Optional[frozenset]:
    if not args.romid:
        log.error("No ROM ID specified")
        return None
    targets = parse_targets(args.targets)
    if not targets:
        log.error(f"Invalid targets: {args.targets}")
        return None
    if not is_valid_backup_name(args.name):
        log.error(f"Invalid backup name: {args.name}")
        return None
    return targets


def backup_command(
    args,
    *,
    isolation: MountIsolation,
    registry: RomRegistry,
    orchestrator: Optional[RomBackupOrchestrator] = None,
) -> int:
    if args.name is None:
        args.name = default_backup_name()
    compression = lookup_by_name(args.compression)
    if compression is None:
        log.error(f"Invalid compression type: {args.compression}")
        return EXIT_FAILURE
    targets = _parse_common(args)
    if targets is None:
        return EXIT_FAILURE

    _warn_if_not_root()
    try:
        isolation.establish()
        PreflightChecker(registry).ensure_partitions_mounted()
    except StorageError as error:
        log.error(str(error))
        return EXIT_FAILURE

    try:
        rom = registry.get_rom(args.romid, installed_only=True)
    except RomNotFoundError as error:
        log.error(str(error))
        log.debug(f"Installed ROMs: {', '.join(registry.installed_rom_ids()) or 'none'}")
        return EXIT_FAILURE

    output_dir = (args.backupdir or get_backup_dir()) / args.name
    if not args.force and output_dir.exists():
        log.error(
            f"Backup '{args.name}' already exists. Choose another name or "
            "pass -f/--force to use this name anyway."
        )
        return EXIT_FAILURE
    try:
        output_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
    except OSError as error:
        log.error(f"{output_dir}: Failed to create directory: {error.strerror}")
        return EXIT_FAILURE

    orchestrator = orchestrator or RomBackupOrchestrator()
    with operation_context(
        "backup", rom_id=rom.id, targets=format_targets(targets)
    ) as run_log:
        ok = orchestrator.run(rom, output_dir, targets, compression, args.split_size)
        run_log.info("=== Finished ===" if ok else "=== Failed ===")
    return EXIT_SUCCESS if ok else EXIT_FAILURE


def restore_command(
    args,
    *,
    isolation: MountIsolation,
    registry: RomRegistry,
    orchestrator: Optional[RomRestoreOrchestrator] = None,
) -> int:
    targets = _parse_common(args)
    if targets is None:
        return EXIT_FAILURE

    _warn_if_not_root()
    try:
        isolation.establish()
        preflight = PreflightChecker(registry)
        preflight.ensure_partitions_mounted()
        preflight.remount_partitions_writable()
    except StorageError as error:
        log.error(str(error))
        return EXIT_FAILURE

    try:
        rom = registry.get_rom(args.romid)
    except RomNotFoundError as error:
        log.error(str(error))
        return EXIT_FAILURE

    input_dir = (args.backupdir or get_backup_dir()) / args.name
    if not input_dir.is_dir():
        log.error(f"Backup '{args.name}' does not exist")
        return EXIT_FAILURE

    orchestrator = orchestrator or RomRestoreOrchestrator(registry)
    with operation_context(
        "restore", rom_id=rom.id, targets=format_targets(targets)
    ) as run_log:
        ok = orchestrator.run(rom, input_dir, targets)
        run_log.info("=== Finished ===" if ok else "=== Failed ===")
    return EXIT_SUCCESS if ok else EXIT_FAILURE


def main(
    argv=None,
    *,
    isolation: Optional[MountIsolation] = None,
    registry: Optional[RomRegistry] = None,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    load_settings()
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)

    return args.func(
        args,
        isolation=isolation or MountIsolation(),
        registry=registry or RomRegistry.from_settings(),
    )


if __name__ == "__main__":
    sys.exit(main())
