"""Loop mounting of partition images and remount helpers.

All commands go through subprocess with argument lists; nothing is passed
through a shell.

Functions:
    - prepare_mount_point(): Create the fixed mount point (idempotent)
    - mount_image(): Loop-mount an ext4 image read-only or read-write
    - unmount(): Unmount a mount point
    - release_mount_point(): Unmount and remove a mount point, logging failures
    - mounted_image(): Context manager combining the above
    - remount_writable(): Remount an existing mount read-write
    - make_private_recursive(): Stop mount propagation below a path
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Union

from romvault.logging import LoggerFactory

from .commands import run_checked_command
from .exceptions import MountFailedError, UnmountFailedError


log = LoggerFactory.for_mount()

PathLike = Union[str, Path]

_INVALID_CHARS = ("\n", "\r", "\0")


def _validate_path(path: PathLike) -> str:
    value = str(path)
    if not value:
        raise ValueError("Empty path")
    if any(char in value for char in _INVALID_CHARS):
        raise ValueError(f"Path contains invalid characters: {value!r}")
    return value


def prepare_mount_point(mount_point: PathLike) -> Path:
    """Create the mount point directory. An existing directory is fine."""
    path = Path(_validate_path(mount_point))
    try:
        path.mkdir(mode=0o755, parents=True, exist_ok=True)
    except OSError as error:
        raise MountFailedError(
            path, path, f"Failed to create directory: {error.strerror or error}"
        ) from error
    return path


def mount_image(
    image: PathLike,
    mount_point: PathLike,
    *,
    read_only: bool,
    fstype: str = "ext4",
) -> None:
    """Loop-mount ``image`` at ``mount_point``.

    Raises:
        MountFailedError: If the mount command fails
        ValueError: If a path is empty or contains invalid characters
    """
    image_str = _validate_path(image)
    mount_point_str = _validate_path(mount_point)
    options = "loop,ro" if read_only else "loop"
    try:
        run_checked_command(
            ["mount", "-t", fstype, "-o", options, image_str, mount_point_str]
        )
    except RuntimeError as error:
        raise MountFailedError(image_str, mount_point_str, str(error)) from error
    log.debug(
        f"Mounted {image_str} at {mount_point_str} ({'ro' if read_only else 'rw'})"
    )


def unmount(mount_point: PathLike) -> None:
    """Unmount ``mount_point``.

    Raises:
        UnmountFailedError: If the umount command fails
    """
    mount_point_str = _validate_path(mount_point)
    try:
        run_checked_command(["umount", mount_point_str])
    except RuntimeError as error:
        raise UnmountFailedError(mount_point_str, str(error)) from error
    log.debug(f"Unmounted {mount_point_str}")


def release_mount_point(mount_point: PathLike) -> bool:
    """Unmount and remove ``mount_point``.

    Never raises; failures are logged. Returns True if the unmount succeeded.
    """
    unmounted = True
    try:
        unmount(mount_point)
    except UnmountFailedError as error:
        log.error(str(error))
        unmounted = False
    try:
        os.rmdir(mount_point)
    except OSError as error:
        log.debug(f"{mount_point}: Failed to remove directory: {error.strerror}")
    return unmounted


@contextmanager
def mounted_image(
    image: PathLike, mount_point: PathLike, *, read_only: bool
) -> Generator[Path, None, None]:
    """Mount an image for the duration of the block.

    The mount point is created first. If mounting fails the error propagates
    and nothing is unmounted. Once mounted, the image is always unmounted and
    the mount point removed on exit; an unmount failure is logged but never
    replaces the outcome of the block.

    Example:
        with mounted_image("/raw/data/multiboot/data-slot-1/system.img",
                           "/mb_mnt", read_only=True) as root:
            archive_directory(root)
    """
    path = prepare_mount_point(mount_point)
    mount_image(image, path, read_only=read_only)
    try:
        yield path
    finally:
        release_mount_point(path)


def remount_writable(mount_point: PathLike) -> None:
    """Remount an already mounted filesystem read-write.

    Raises:
        MountFailedError: If the remount fails
    """
    mount_point_str = _validate_path(mount_point)
    try:
        run_checked_command(["mount", "-o", "remount,rw", mount_point_str])
    except RuntimeError as error:
        raise MountFailedError(mount_point_str, mount_point_str, str(error)) from error
    log.debug(f"Remounted {mount_point_str} read-write")


def make_private_recursive(mount_point: PathLike = "/") -> None:
    """Mark every mount below ``mount_point`` as private.

    Raises:
        MountFailedError: If the propagation change fails
    """
    mount_point_str = _validate_path(mount_point)
    try:
        run_checked_command(["mount", "--make-rprivate", mount_point_str])
    except RuntimeError as error:
        raise MountFailedError(
            mount_point_str,
            mount_point_str,
            f"Failed to set private mount propagation: {error}",
        ) from error
