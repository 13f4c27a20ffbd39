"""Backup of a whole ROM: boot image, configs, system, cache and data."""

from __future__ import annotations

import functools
import os
import shutil
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from romvault.domain.models import (
    PARTITION_TARGETS,
    BackupTarget,
    CompressionKind,
    OperationResult,
    Rom,
    build_partition_spec,
)
from romvault.logging import LoggerFactory

from .compression import archive_filename
from .partition import PartitionBackupEngine


log = LoggerFactory.for_backup()

PathLike = Union[str, Path]

BOOT_IMAGE_BACKUP_NAME = "boot.img"
CONFIG_BACKUP_NAME = "config.json"
THUMBNAIL_BACKUP_NAME = "thumbnail.webp"

# Small artifacts first, largest partitions last
TARGET_ORDER: tuple[BackupTarget, ...] = (
    BackupTarget.BOOT,
    BackupTarget.CONFIG,
    *PARTITION_TARGETS,
)

Step = Callable[[], OperationResult]


def copy_file_if_present(
    source: PathLike, destination: PathLike, restoring: bool = False, logger=None
) -> OperationResult:
    """Copy one file, reporting a missing source as FILES_MISSING."""
    logger = logger or log
    if not os.path.exists(source):
        logger.warning(f"=== {source} does not exist ===")
        return OperationResult.FILES_MISSING

    if restoring:
        logger.info(f"=== Restoring to {destination} ===")
    else:
        logger.info(f"=== Backing up {source} ===")
    try:
        shutil.copyfile(source, destination)
    except OSError as error:
        logger.error(f"{source}: Failed to copy to {destination}: {error.strerror or error}")
        return OperationResult.FAILED
    return OperationResult.SUCCEEDED


def log_plan(action: str, rom: Rom, directory: PathLike, targets, logger=None) -> None:
    """Log what a run is about to do."""
    logger = logger or log
    logger.info(f"{action}:")
    logger.info(f"- ROM ID: {rom.id}")
    logger.info("- Targets:")
    if BackupTarget.SYSTEM in targets:
        logger.info(f"  - System: {rom.system_path}")
    if BackupTarget.CACHE in targets:
        logger.info(f"  - Cache: {rom.cache_path}")
    if BackupTarget.DATA in targets:
        logger.info(f"  - Data: {rom.data_path}")
    if BackupTarget.BOOT in targets:
        logger.info(f"  - Boot image: {rom.boot_image_path}")
    if BackupTarget.CONFIG in targets:
        logger.info(f"  - Configs: {rom.config_path}")
        logger.info(f"             {rom.thumbnail_path}")
    logger.info(f"- Backup directory: {directory}")


class RomBackupOrchestrator:
    """Runs the selected backup targets for one ROM in a fixed order.

    Missing inputs are skipped with a warning. The first FAILED step stops
    the run; archives written by earlier steps are left in place.
    """

    def __init__(self, engine: Optional[PartitionBackupEngine] = None):
        self.engine = engine or PartitionBackupEngine()

    def run(
        self,
        rom: Rom,
        output_dir: PathLike,
        targets,
        compression: CompressionKind,
        split_size: int,
    ) -> bool:
        if not targets:
            log.error("No backup targets specified")
            return False

        log_plan("Backing up", rom, output_dir, targets)

        for target, step in self._steps(rom, Path(output_dir), targets, compression, split_size):
            result = step()
            if result.is_fatal:
                log.error(f"Backup of {target.value} failed")
                return False
            if result is OperationResult.FILES_MISSING:
                log.info(f"Skipped missing files for {target.value}")
        return True

    def _steps(
        self,
        rom: Rom,
        output_dir: Path,
        targets,
        compression: CompressionKind,
        split_size: int,
    ) -> Iterator[tuple[BackupTarget, Step]]:
        for target in TARGET_ORDER:
            if target not in targets:
                continue
            if target is BackupTarget.BOOT:
                yield target, functools.partial(
                    copy_file_if_present,
                    rom.boot_image_path,
                    output_dir / BOOT_IMAGE_BACKUP_NAME,
                )
            elif target is BackupTarget.CONFIG:
                yield target, functools.partial(self._backup_configs, rom, output_dir)
            else:
                yield target, functools.partial(
                    self.engine.backup,
                    build_partition_spec(rom, target),
                    output_dir / archive_filename(target.value, compression),
                    compression,
                    split_size,
                )

    @staticmethod
    def _backup_configs(rom: Rom, output_dir: Path) -> OperationResult:
        result = OperationResult.SUCCEEDED
        for source, name in (
            (rom.config_path, CONFIG_BACKUP_NAME),
            (rom.thumbnail_path, THUMBNAIL_BACKUP_NAME),
        ):
            copied = copy_file_if_present(source, output_dir / name)
            if copied is OperationResult.FAILED:
                return copied
            if copied is OperationResult.FILES_MISSING:
                result = copied
        return result
