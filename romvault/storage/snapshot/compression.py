"""Compression kinds, their short names and their archive extensions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional

from romvault.domain.models import CompressionKind


@dataclass(frozen=True)
class CompressionInfo:
    kind: CompressionKind
    name: str
    extension: str


# Insertion order is the probe priority used when locating archives.
COMPRESSION_TABLE: dict[CompressionKind, CompressionInfo] = {
    CompressionKind.NONE: CompressionInfo(CompressionKind.NONE, "none", ".tar"),
    CompressionKind.LZ4: CompressionInfo(CompressionKind.LZ4, "lz4", ".tar.lz4"),
    CompressionKind.GZIP: CompressionInfo(CompressionKind.GZIP, "gzip", ".tar.gz"),
    CompressionKind.XZ: CompressionInfo(CompressionKind.XZ, "xz", ".tar.xz"),
}

_BY_NAME: dict[str, CompressionKind] = {
    info.name: kind for kind, info in COMPRESSION_TABLE.items()
}

DEFAULT_COMPRESSION = CompressionKind.LZ4


def lookup_by_name(name: str) -> Optional[CompressionKind]:
    """Return the compression kind for a short name, or None if unknown."""
    return _BY_NAME.get(name)


def name_for(kind: CompressionKind) -> str:
    return COMPRESSION_TABLE[kind].name


def extension_for(kind: CompressionKind) -> str:
    return COMPRESSION_TABLE[kind].extension


def compression_names() -> list[str]:
    return [info.name for info in COMPRESSION_TABLE.values()]


def iter_by_priority() -> Iterator[CompressionInfo]:
    """Yield table entries in archive probe order."""
    yield from COMPRESSION_TABLE.values()


def archive_filename(name: str, kind: CompressionKind) -> str:
    """Archive file name for a logical name (e.g. ``system.tar.lz4``)."""
    return name + extension_for(kind)
