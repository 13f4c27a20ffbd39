"""Wiping partition contents before a restore."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Iterable, Union

from romvault.logging import get_logger

from .exceptions import WipeError


log = get_logger(source="wipe", tags=["restore", "storage"])


def wipe_directory(path: Union[str, Path], exclusions: Iterable[str] = ()) -> int:
    """Remove every top-level entry of ``path`` not named in ``exclusions``.

    Symlinks are removed, never followed. Returns the number of entries
    removed.

    Raises:
        WipeError: On the first entry that cannot be read or removed
    """
    excluded = set(exclusions)
    removed = 0
    try:
        with os.scandir(path) as it:
            entries = [entry for entry in it if entry.name not in excluded]
    except OSError as error:
        raise WipeError(path, error.strerror or str(error)) from error

    for entry in entries:
        try:
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(entry.path)
            else:
                os.unlink(entry.path)
        except OSError as error:
            raise WipeError(entry.path, error.strerror or str(error)) from error
        removed += 1

    log.debug(f"Wiped {removed} entries from {path} (kept: {sorted(excluded)})")
    return removed
