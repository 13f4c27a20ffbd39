"""Backup and restore of a single partition.

A partition is either a directory tree or an ext4 image. Images are
loop-mounted at a fixed mount point for the duration of the operation, so
only one partition operation may run at a time on a device.

Both engines translate storage errors, OS errors and rejected paths or
streams (``ValueError``) into ``OperationResult.FAILED`` after logging them;
nothing raises out of :meth:`backup` or :meth:`restore`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from romvault.config.settings import DEFAULT_MOUNT_POINT, get_path, get_setting
from romvault.domain.models import CompressionKind, OperationResult, PartitionSpec
from romvault.logging import LoggerFactory

from ..archive import create_archive, extract_archive, split_chunk_path
from ..exceptions import ArchiveError, StorageError
from ..image import create_ext4_image, repair_ext4_image
from ..mount import mounted_image, prepare_mount_point
from ..wipe import wipe_directory


PathLike = Union[str, Path]


def list_directory_entries(directory: PathLike, exclusions: Iterable[str] = ()) -> list[str]:
    """Names of the immediate children of ``directory`` minus ``exclusions``.

    Raises:
        ArchiveError: If the directory cannot be read
    """
    excluded = set(exclusions)
    try:
        with os.scandir(directory) as it:
            names = [entry.name for entry in it if entry.name not in excluded]
    except OSError as error:
        raise ArchiveError(
            f"{directory}: Failed to read directory contents: {error.strerror or error}"
        ) from error
    return sorted(names)


def _default_mount_point() -> Path:
    return get_path("mount_point", DEFAULT_MOUNT_POINT)


def _default_repair(image: PathLike) -> bool:
    return repair_ext4_image(image, timeout=get_setting("fsck_timeout_seconds"))


class _PartitionEngine:
    def __init__(
        self,
        mount_point: Optional[PathLike] = None,
        repair: Callable[[PathLike], object] = _default_repair,
        mount=mounted_image,
    ):
        self.mount_point = Path(mount_point) if mount_point else _default_mount_point()
        self._repair = repair
        self._mount = mount

    def _prepare_image(self, image: PathLike) -> None:
        prepare_mount_point(self.mount_point)
        self._repair(image)


class PartitionBackupEngine(_PartitionEngine):
    """Backs up one partition into an archive."""

    log = LoggerFactory.for_backup()

    def __init__(self, *args, archiver=create_archive, **kwargs):
        super().__init__(*args, **kwargs)
        self._archiver = archiver

    def backup(
        self,
        spec: PartitionSpec,
        output_archive: PathLike,
        compression: CompressionKind,
        split_size: int = 0,
    ) -> OperationResult:
        """Archive ``spec.path`` into ``output_archive``.

        Returns:
            SUCCEEDED, FAILED, or FILES_MISSING if ``spec.path`` does not exist
            (the output path is not touched in that case)
        """
        if not os.path.exists(spec.path):
            self.log.warning(f"=== {spec.path} does not exist ===")
            return OperationResult.FILES_MISSING

        self.log.info(f"=== Backing up {spec.path} ===")
        try:
            if spec.is_image:
                self._backup_image(spec, output_archive, compression, split_size)
            else:
                self._backup_directory(
                    spec.path, spec.exclusions, output_archive, compression, split_size
                )
        except (StorageError, OSError, ValueError) as error:
            self.log.error(str(error))
            return OperationResult.FAILED
        return OperationResult.SUCCEEDED

    def _backup_directory(
        self,
        directory: PathLike,
        exclusions: Iterable[str],
        output_archive: PathLike,
        compression: CompressionKind,
        split_size: int,
    ) -> None:
        entries = list_directory_entries(directory, exclusions)
        self._archiver(output_archive, directory, entries, compression, split_size)

    def _backup_image(
        self,
        spec: PartitionSpec,
        output_archive: PathLike,
        compression: CompressionKind,
        split_size: int,
    ) -> None:
        self._prepare_image(spec.path)
        with self._mount(spec.path, self.mount_point, read_only=True) as root:
            self._backup_directory(
                root, spec.exclusions, output_archive, compression, split_size
            )


class PartitionRestoreEngine(_PartitionEngine):
    """Restores one partition from an archive, wiping it first."""

    log = LoggerFactory.for_restore()

    def __init__(
        self,
        *args,
        extractor=extract_archive,
        image_creator=create_ext4_image,
        wiper=wipe_directory,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self._extractor = extractor
        self._image_creator = image_creator
        self._wiper = wiper

    def restore(
        self,
        spec: PartitionSpec,
        source_archive: PathLike,
        exclusions: Optional[Iterable[str]] = None,
        compression: CompressionKind = CompressionKind.NONE,
        is_split: bool = False,
    ) -> OperationResult:
        """Replace the contents of ``spec.path`` with ``source_archive``.

        Everything under the destination except ``exclusions`` (defaults to
        ``spec.exclusions``) is deleted before extracting. Callers locate the
        archive first; if it is gone by now, FILES_MISSING is returned
        without wiping anything.
        """
        exclusions = tuple(spec.exclusions if exclusions is None else exclusions)

        first_part = split_chunk_path(source_archive, 0) if is_split else Path(source_archive)
        if not first_part.exists():
            self.log.warning(f"=== {first_part} does not exist ===")
            return OperationResult.FILES_MISSING

        self.log.info(f"=== Restoring to {spec.path} ===")
        try:
            if spec.is_image:
                self._restore_image(spec, source_archive, exclusions, compression, is_split)
            else:
                self._restore_directory(
                    spec.path, source_archive, exclusions, compression, is_split
                )
        except (StorageError, OSError, ValueError) as error:
            self.log.error(str(error))
            return OperationResult.FAILED
        return OperationResult.SUCCEEDED

    def _restore_directory(
        self,
        directory: PathLike,
        source_archive: PathLike,
        exclusions: Iterable[str],
        compression: CompressionKind,
        is_split: bool,
    ) -> None:
        try:
            Path(directory).mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as error:
            raise StorageError(
                f"{directory}: Failed to create directory: {error.strerror}"
            ) from error
        # A failed wipe raises before anything is extracted
        self._wiper(directory, exclusions)
        self._extractor(source_archive, directory, compression, is_split)

    def _restore_image(
        self,
        spec: PartitionSpec,
        source_archive: PathLike,
        exclusions: Iterable[str],
        compression: CompressionKind,
        is_split: bool,
    ) -> None:
        image = Path(spec.path)
        try:
            image.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as error:
            raise StorageError(
                f"{image}: Failed to create parent directory: {error.strerror}"
            ) from error

        if not image.exists():
            self._image_creator(image, spec.size_hint)

        self._prepare_image(image)
        with self._mount(image, self.mount_point, read_only=False) as root:
            self._restore_directory(root, source_archive, exclusions, compression, is_split)
