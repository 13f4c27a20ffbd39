"""ext4 filesystem image creation and repair."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

from romvault.logging import get_logger

from .commands import run_checked_command, run_command_status
from .exceptions import ImageError


log = get_logger(source="image", tags=["image", "storage"])

PathLike = Union[str, Path]

# e2fsck exit codes below this value mean "clean" or "errors corrected"
E2FSCK_UNCORRECTED = 4


def create_ext4_image(path: PathLike, size_bytes: int) -> None:
    """Create a new sparse ext4 image of ``size_bytes``.

    The image must not exist yet. A partially created image is removed if
    formatting fails.

    Raises:
        ImageError: If the file cannot be created or mke2fs fails
    """
    image = Path(path)
    if size_bytes <= 0:
        raise ImageError(f"{image}: Invalid image size: {size_bytes}", image)

    log.info(f"Creating {size_bytes} byte ext4 image at {image}")
    try:
        with open(image, "xb") as f:
            f.truncate(size_bytes)
    except OSError as error:
        raise ImageError(
            f"{image}: Failed to create image: {error.strerror or error}", image
        ) from error

    try:
        run_checked_command(["mke2fs", "-t", "ext4", "-F", "-q", str(image)])
    except RuntimeError as error:
        image.unlink(missing_ok=True)
        raise ImageError(f"{image}: Failed to format image: {error}", image) from error


def repair_ext4_image(path: PathLike, timeout: Optional[float] = None) -> bool:
    """Run e2fsck on an image, fixing what it can.

    Best effort: problems are logged and never raised. Returns True if the
    filesystem is clean or was repaired.
    """
    image = str(path)
    returncode, output = run_command_status(
        ["e2fsck", "-f", "-y", image], timeout=timeout
    )
    if 0 <= returncode < E2FSCK_UNCORRECTED:
        if returncode:
            log.info(f"{image}: Filesystem errors corrected (e2fsck exit {returncode})")
        return True
    detail = output.splitlines()[-1] if output else "no output"
    log.warning(f"{image}: e2fsck exited with {returncode}: {detail}")
    return False
