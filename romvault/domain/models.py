"""Domain model for ROM backup and restore operations.

Type-safe value objects shared by the engines, the orchestrators and the CLI.
All of them are built fresh per invocation; nothing here is cached.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional


# ==============================================================================
# Targets
# ==============================================================================


class BackupTarget(Enum):
    """A single unit that can be backed up or restored."""

    SYSTEM = "system"
    CACHE = "cache"
    DATA = "data"
    BOOT = "boot"
    CONFIG = "config"


ALL_TARGETS: frozenset[BackupTarget] = frozenset(BackupTarget)

# Partition targets, in the order they are processed
PARTITION_TARGETS: tuple[BackupTarget, ...] = (
    BackupTarget.SYSTEM,
    BackupTarget.CACHE,
    BackupTarget.DATA,
)


def parse_targets(value: str) -> frozenset[BackupTarget]:
    """Parse a comma-separated target string.

    Accepts any combination of ``system,cache,data,boot,config`` or the
    literal ``all``. Returns an empty set if any token is unknown, so the
    caller can reject the whole string.

    >>> sorted(t.value for t in parse_targets("boot,config"))
    ['boot', 'config']
    """
    result: set[BackupTarget] = set()
    for token in value.split(","):
        if token == "all":
            result |= ALL_TARGETS
            continue
        try:
            result.add(BackupTarget(token))
        except ValueError:
            return frozenset()
    return frozenset(result)


def format_targets(targets: Iterable[BackupTarget]) -> str:
    """Format targets in canonical order (e.g. ``system,data``)."""
    selected = set(targets)
    return ",".join(t.value for t in BackupTarget if t in selected)


# ==============================================================================
# Compression and archives
# ==============================================================================


class CompressionKind(Enum):
    """Compression applied to a partition archive."""

    NONE = "none"
    LZ4 = "lz4"
    GZIP = "gzip"
    XZ = "xz"


@dataclass(frozen=True)
class ArchiveDescriptor:
    """An archive found on disk by the archive locator.

    ``filename`` is the unsplit file name (e.g. ``system.tar.lz4``); split
    archives live next to it as ``system.tar.lz4.0``, ``.1``, ...
    """

    name: str
    compression: CompressionKind
    is_split: bool
    filename: str

    def path_in(self, backup_dir: Path) -> Path:
        """Path of the archive (first chunk's base path when split)."""
        return Path(backup_dir) / self.filename


# ==============================================================================
# Partitions and results
# ==============================================================================


@dataclass(frozen=True)
class PartitionSpec:
    """One partition to back up or restore.

    ``path`` is either a directory tree or an ext4 image file, depending on
    ``is_image``. ``size_hint`` is only used when restoring creates a new
    image.
    """

    path: Path
    is_image: bool = False
    exclusions: tuple[str, ...] = ()
    size_hint: int = 0

    def __post_init__(self) -> None:
        # Ordered and unique
        object.__setattr__(
            self, "exclusions", tuple(dict.fromkeys(self.exclusions))
        )


class OperationResult(Enum):
    """Outcome of a single backup or restore step."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # Expected input does not exist; the caller decides whether that matters
    FILES_MISSING = "files_missing"
    # Reserved for the boot image repatch step; never produced yet
    BOOT_IMAGE_UNPATCHED = "boot_image_unpatched"

    @property
    def is_fatal(self) -> bool:
        return self is OperationResult.FAILED


# ==============================================================================
# ROM
# ==============================================================================


@dataclass(frozen=True)
class Rom:
    """An installed ROM as reported by the ROM registry."""

    id: str
    system_path: Path
    cache_path: Path
    data_path: Path
    boot_image_path: Path
    config_path: Path
    thumbnail_path: Path
    system_is_image: bool = False
    cache_is_image: bool = False
    data_is_image: bool = False

    def partition_path(self, target: BackupTarget) -> Path:
        return {
            BackupTarget.SYSTEM: self.system_path,
            BackupTarget.CACHE: self.cache_path,
            BackupTarget.DATA: self.data_path,
        }[target]

    def partition_is_image(self, target: BackupTarget) -> bool:
        return {
            BackupTarget.SYSTEM: self.system_is_image,
            BackupTarget.CACHE: self.cache_is_image,
            BackupTarget.DATA: self.data_is_image,
        }[target]


def partition_exclusions(target: BackupTarget) -> tuple[str, ...]:
    """Top-level names never archived from, or wiped in, a partition."""
    # Restore keeps multiboot on purpose: it holds the other ROMs
    if target is BackupTarget.DATA:
        return ("media", "multiboot")
    if target in (BackupTarget.SYSTEM, BackupTarget.CACHE):
        return ("multiboot",)
    raise ValueError(f"Not a partition target: {target.value}")


def build_partition_spec(
    rom: Rom, target: BackupTarget, size_hint: Optional[int] = None
) -> PartitionSpec:
    """Build the PartitionSpec for one of the ROM's partitions."""
    return PartitionSpec(
        path=rom.partition_path(target),
        is_image=rom.partition_is_image(target),
        exclusions=partition_exclusions(target),
        size_hint=size_hint or 0,
    )
