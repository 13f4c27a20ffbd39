"""Restore of a whole ROM from a named backup."""

from __future__ import annotations

import functools
import os
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from romvault.config.settings import DEFAULT_IMAGE_SIZE, get_int
from romvault.domain.models import (
    PARTITION_TARGETS,
    BackupTarget,
    OperationResult,
    Rom,
    build_partition_spec,
)
from romvault.logging import LoggerFactory

from ..bootimg import patch_boot_image, write_rom_id
from ..exceptions import BootImageError, StorageError
from .backup import (
    BOOT_IMAGE_BACKUP_NAME,
    CONFIG_BACKUP_NAME,
    THUMBNAIL_BACKUP_NAME,
    copy_file_if_present,
    log_plan,
)
from .locator import find_archive
from .partition import PartitionRestoreEngine


log = LoggerFactory.for_restore()

PathLike = Union[str, Path]

Step = Callable[[], OperationResult]

# Steps that are not targets themselves
FIX_PERMISSIONS_STEP = "permissions"


class RomRestoreOrchestrator:
    """Restores the selected targets of one ROM.

    Order: boot image, configs, permission fix-up, system, cache, data.
    Unlike backup, a selected partition whose archive cannot be found aborts
    the run before that partition is touched. The first fatal step stops
    the run with no rollback.

    ``registry`` provides ``rom_dir()``, ``fix_permissions()``,
    ``system_partition`` and ``partition_total_size()``.
    """

    def __init__(
        self,
        registry,
        engine: Optional[PartitionRestoreEngine] = None,
        locator=find_archive,
        boot_patcher=patch_boot_image,
        default_image_size: Optional[int] = None,
    ):
        self.registry = registry
        self.engine = engine or PartitionRestoreEngine()
        self._locate = locator
        self._patch_boot_image = boot_patcher
        self.default_image_size = default_image_size or get_int(
            "default_image_size", DEFAULT_IMAGE_SIZE
        )

    def run(self, rom: Rom, input_dir: PathLike, targets) -> bool:
        if not targets:
            log.error("No restore targets specified")
            return False

        log_plan("Restoring", rom, input_dir, targets, logger=log)

        rom_dir = Path(self.registry.rom_dir(rom.id))
        try:
            rom_dir.mkdir(mode=0o775, parents=True, exist_ok=True)
        except OSError as error:
            log.error(f"{rom_dir}: Failed to create directory: {error.strerror}")
            return False

        for name, step in self._steps(rom, Path(input_dir), targets):
            result = step()
            if result.is_fatal:
                log.error(f"Restore of {name} failed")
                return False
        return True

    def _steps(
        self, rom: Rom, input_dir: Path, targets
    ) -> Iterator[tuple[str, Step]]:
        if BackupTarget.BOOT in targets:
            yield BackupTarget.BOOT.value, functools.partial(
                self._restore_boot_image, rom, input_dir
            )
        if BackupTarget.CONFIG in targets:
            yield BackupTarget.CONFIG.value, functools.partial(
                self._restore_configs, rom, input_dir
            )
        yield FIX_PERMISSIONS_STEP, self._fix_permissions
        for target in PARTITION_TARGETS:
            if target in targets:
                yield target.value, functools.partial(
                    self._restore_partition, rom, input_dir, target
                )

    def _restore_boot_image(self, rom: Rom, input_dir: Path) -> OperationResult:
        backup = input_dir / BOOT_IMAGE_BACKUP_NAME
        if not backup.exists():
            log.warning(f"=== {backup} does not exist ===")
            return OperationResult.FILES_MISSING

        log.info(f"=== Restoring to {rom.boot_image_path} ===")
        try:
            Path(rom.boot_image_path).parent.mkdir(parents=True, exist_ok=True)
            # Header checksum is left as-is
            self._patch_boot_image(backup, rom.boot_image_path, [write_rom_id(rom.id)])
        except (BootImageError, OSError) as error:
            log.error(f"Failed to patch boot image: {error}")
            return OperationResult.FAILED
        return OperationResult.SUCCEEDED

    def _restore_configs(self, rom: Rom, input_dir: Path) -> OperationResult:
        result = OperationResult.SUCCEEDED
        for name, destination in (
            (CONFIG_BACKUP_NAME, rom.config_path),
            (THUMBNAIL_BACKUP_NAME, rom.thumbnail_path),
        ):
            try:
                os.makedirs(Path(destination).parent, exist_ok=True)
            except OSError as error:
                log.error(f"{destination}: Failed to create parent directory: {error.strerror}")
                return OperationResult.FAILED
            copied = copy_file_if_present(
                input_dir / name, destination, restoring=True, logger=log
            )
            if copied is OperationResult.FAILED:
                return copied
            if copied is OperationResult.FILES_MISSING:
                result = copied
        return result

    def _fix_permissions(self) -> OperationResult:
        self.registry.fix_permissions()
        return OperationResult.SUCCEEDED

    def _restore_partition(
        self, rom: Rom, input_dir: Path, target: BackupTarget
    ) -> OperationResult:
        size_hint = self.default_image_size
        if target is BackupTarget.SYSTEM:
            try:
                size_hint = self.registry.partition_total_size(
                    self.registry.system_partition
                )
            except StorageError as error:
                log.error(f"Failed to get the size of the system partition: {error}")
                return OperationResult.FAILED

        descriptor = self._locate(input_dir, target.value)
        if descriptor is None:
            # Never wipe a partition without something to restore into it
            log.error(f"Backup of /{target.value} not found in {input_dir}")
            return OperationResult.FAILED

        spec = build_partition_spec(rom, target, size_hint)
        result = self.engine.restore(
            spec,
            descriptor.path_in(input_dir),
            spec.exclusions,
            descriptor.compression,
            descriptor.is_split,
        )
        if result is OperationResult.FILES_MISSING:
            return OperationResult.FAILED
        return result
