"""Locate partition archives inside a backup directory."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Union

from romvault.domain.models import ArchiveDescriptor

from ..archive import split_chunk_path
from .compression import iter_by_priority


def find_archive(
    backup_dir: Union[str, Path], name: str
) -> Optional[ArchiveDescriptor]:
    """Find the archive for logical ``name`` (e.g. "system") in ``backup_dir``.

    Compression kinds are probed in registry order (none, lz4, gzip, xz).
    For each kind the unsplit file is preferred over the first split chunk.
    The first readable match wins; if a stale archive of another kind also
    exists it is never looked at, so this is not a "most recent" lookup.

    Returns:
        ArchiveDescriptor, or None if no candidate is readable
    """
    for info in iter_by_priority():
        filename = name + info.extension
        unsplit_path = Path(backup_dir) / filename

        if os.access(unsplit_path, os.R_OK):
            return ArchiveDescriptor(
                name=name,
                compression=info.kind,
                is_split=False,
                filename=filename,
            )
        if os.access(split_chunk_path(unsplit_path, 0), os.R_OK):
            return ArchiveDescriptor(
                name=name,
                compression=info.kind,
                is_split=True,
                filename=filename,
            )
    return None
