"""Custom exceptions for storage operations.

This module defines a hierarchy of exceptions for backup and restore so that
low-level helpers can raise specific errors while the engines translate them
into an OperationResult at a single boundary.

Exception Hierarchy:
    StorageError (base)
        ├── MountError
        │   ├── MountFailedError
        │   ├── UnmountFailedError
        │   ├── IsolationError
        │   └── PreflightError
        ├── ArchiveError
        ├── ImageError
        ├── BootImageError
        ├── WipeError
        └── RomNotFoundError

Usage:
    from romvault.storage.exceptions import MountFailedError

    raise MountFailedError(image, mount_point, stderr)
"""

from __future__ import annotations

from pathlib import Path
from typing import Union

PathLike = Union[str, Path]


class StorageError(Exception):
    """Base exception for all storage operations."""



class MountError(StorageError):
    """Base exception for mount-related errors."""



class MountFailedError(MountError):
    """Failed to mount a filesystem image or partition."""

    def __init__(self, source: PathLike, mount_point: PathLike, reason: str = ""):
        self.source = str(source)
        self.mount_point = str(mount_point)
        self.reason = reason
        msg = f"Failed to mount {self.source} at {self.mount_point}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnmountFailedError(MountError):
    """Failed to unmount a mount point."""

    def __init__(self, mount_point: PathLike, reason: str = ""):
        self.mount_point = str(mount_point)
        self.reason = reason
        msg = f"Failed to unmount {self.mount_point}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class IsolationError(MountError):
    """Could not set up a private mount namespace."""



class PreflightError(MountError):
    """A partition required for backup or restore is not usable."""

    def __init__(self, partition: PathLike, reason: str):
        self.partition = str(partition)
        self.reason = reason
        super().__init__(f"{self.partition}: {reason}")


class ArchiveError(StorageError):
    """Archive creation or extraction failed."""

    def __init__(self, message: str, archive: PathLike | None = None):
        self.archive = str(archive) if archive is not None else None
        super().__init__(message)


class ImageError(StorageError):
    """Filesystem image creation failed."""

    def __init__(self, message: str, image: PathLike | None = None):
        self.image = str(image) if image is not None else None
        super().__init__(message)


class BootImageError(StorageError):
    """Boot image could not be read, patched or written."""



class WipeError(StorageError):
    """Failed to wipe a directory before restoring into it."""

    def __init__(self, path: PathLike, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"{self.path}: Failed to wipe: {reason}")


class RomNotFoundError(StorageError):
    """ROM ID is invalid or the ROM is not installed."""

    def __init__(self, rom_id: str, reason: str = "is not installed"):
        self.rom_id = rom_id
        super().__init__(f"ROM '{rom_id}' {reason}")
