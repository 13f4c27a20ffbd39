"""ROM registry: resolves ROM IDs to partition paths.

Layouts (``<raw>`` is the raw partition root, ``/raw`` by default):

    primary          system, cache and data partitions themselves
    dual             <raw>/system/multiboot/dual/system
                     <raw>/cache/multiboot/dual/cache
                     <raw>/data/multiboot/dual/data
    multi-slot-N     system on the cache partition, cache on the system
                     partition, data on the data partition
    data-slot-NAME   <raw>/data/multiboot/<id>/{system.img,cache.img,data}
    extsd-slot-NAME  <raw>/extsd/multiboot/<id>/{system.img,cache.img,data.img}

Per-ROM bookkeeping (boot image, config, thumbnail) lives in
``<multiboot_dir>/<id>/``.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional, Union

import psutil

from romvault.config.settings import (
    DEFAULT_MULTIBOOT_DIR,
    DEFAULT_RAW_ROOT,
    get_path,
)
from romvault.domain.models import Rom
from romvault.logging import LoggerFactory

from .exceptions import RomNotFoundError, StorageError


log = LoggerFactory.for_system()

PathLike = Union[str, Path]

PRIMARY_ID = "primary"
DUAL_ID = "dual"
_MULTI_SLOT_RE = re.compile(r"^multi-slot-(\d+)$")
_DATA_SLOT_RE = re.compile(r"^data-slot-([A-Za-z0-9_-]+)$")
_EXTSD_SLOT_RE = re.compile(r"^extsd-slot-([A-Za-z0-9_-]+)$")

BOOT_IMAGE_NAME = "boot.img"
CONFIG_NAME = "config.json"
THUMBNAIL_NAME = "thumbnail.webp"


class RomRegistry:
    """Knows where each ROM's partitions live and whether they are mounted."""

    def __init__(self, raw_root: PathLike, multiboot_dir: PathLike):
        self.raw_root = Path(raw_root)
        self.multiboot_dir = Path(multiboot_dir)

    @classmethod
    def from_settings(cls) -> RomRegistry:
        return cls(
            raw_root=get_path("raw_root", DEFAULT_RAW_ROOT),
            multiboot_dir=get_path("multiboot_dir", DEFAULT_MULTIBOOT_DIR),
        )

    # ------------------------------------------------------------------
    # Partitions
    # ------------------------------------------------------------------

    @property
    def system_partition(self) -> Path:
        return self.raw_root / "system"

    @property
    def cache_partition(self) -> Path:
        return self.raw_root / "cache"

    @property
    def data_partition(self) -> Path:
        return self.raw_root / "data"

    @property
    def extsd_partition(self) -> Path:
        return self.raw_root / "extsd"

    def partition_paths(self) -> dict[str, Path]:
        return {
            "system": self.system_partition,
            "cache": self.cache_partition,
            "data": self.data_partition,
        }

    def partition_mounted(self, path: PathLike) -> bool:
        """True if ``path`` is a mount point in the current namespace."""
        target = os.path.realpath(path)
        try:
            mounts = psutil.disk_partitions(all=True)
        except OSError as error:
            log.warning(f"Failed to read mount table: {error}")
            return os.path.ismount(target)
        return any(os.path.realpath(part.mountpoint) == target for part in mounts)

    def partition_total_size(self, path: PathLike) -> int:
        """Total size in bytes of the filesystem mounted at ``path``.

        Raises:
            StorageError: If the size cannot be determined
        """
        try:
            return int(psutil.disk_usage(str(path)).total)
        except OSError as error:
            raise StorageError(
                f"{path}: Failed to get filesystem size: {error.strerror or error}"
            ) from error

    # ------------------------------------------------------------------
    # ROMs
    # ------------------------------------------------------------------

    def rom_dir(self, rom_id: str) -> Path:
        """Private bookkeeping directory of a ROM."""
        return self.multiboot_dir / rom_id

    def get_rom(self, rom_id: str, *, installed_only: bool = False) -> Rom:
        """Build the Rom for ``rom_id``.

        Raises:
            RomNotFoundError: If the ID is not a known layout, or if
                ``installed_only`` is set and the ROM's system path does not
                exist
        """
        rom = self._build_rom(rom_id)
        if rom is None:
            raise RomNotFoundError(rom_id, "is not a valid ROM ID")
        if installed_only and not os.path.lexists(rom.system_path):
            raise RomNotFoundError(rom_id)
        return rom

    def resolve_rom(self, rom_id: str, *, installed_only: bool = False) -> Optional[Rom]:
        """Like :meth:`get_rom`, returning None instead of raising."""
        try:
            return self.get_rom(rom_id, installed_only=installed_only)
        except RomNotFoundError:
            return None

    def installed_rom_ids(self) -> list[str]:
        """IDs of every ROM whose system path exists."""
        candidates = [PRIMARY_ID, DUAL_ID]
        for parent in (
            self.system_partition / "multiboot",
            self.cache_partition / "multiboot",
            self.data_partition / "multiboot",
            self.extsd_partition / "multiboot",
        ):
            try:
                names = sorted(os.listdir(parent))
            except OSError:
                continue
            candidates.extend(name for name in names if name not in candidates)
        return [rom_id for rom_id in candidates if self.resolve_rom(rom_id, installed_only=True)]

    def _build_rom(self, rom_id: str) -> Optional[Rom]:
        rom_dir = self.rom_dir(rom_id)
        bookkeeping = {
            "boot_image_path": rom_dir / BOOT_IMAGE_NAME,
            "config_path": rom_dir / CONFIG_NAME,
            "thumbnail_path": rom_dir / THUMBNAIL_NAME,
        }

        if rom_id == PRIMARY_ID:
            return Rom(
                id=rom_id,
                system_path=self.system_partition,
                cache_path=self.cache_partition,
                data_path=self.data_partition,
                **bookkeeping,
            )

        if rom_id == DUAL_ID or _MULTI_SLOT_RE.match(rom_id):
            # Secondary ROMs keep system on a different partition than usual
            # to fit alongside the primary ROM.
            if rom_id == DUAL_ID:
                system_root, cache_root = self.system_partition, self.cache_partition
            else:
                system_root, cache_root = self.cache_partition, self.system_partition
            return Rom(
                id=rom_id,
                system_path=system_root / "multiboot" / rom_id / "system",
                cache_path=cache_root / "multiboot" / rom_id / "cache",
                data_path=self.data_partition / "multiboot" / rom_id / "data",
                **bookkeeping,
            )

        if _DATA_SLOT_RE.match(rom_id):
            base = self.data_partition / "multiboot" / rom_id
            return Rom(
                id=rom_id,
                system_path=base / "system.img",
                cache_path=base / "cache.img",
                data_path=base / "data",
                system_is_image=True,
                cache_is_image=True,
                **bookkeeping,
            )

        if _EXTSD_SLOT_RE.match(rom_id):
            base = self.extsd_partition / "multiboot" / rom_id
            return Rom(
                id=rom_id,
                system_path=base / "system.img",
                cache_path=base / "cache.img",
                data_path=base / "data.img",
                system_is_image=True,
                cache_is_image=True,
                data_is_image=True,
                **bookkeeping,
            )

        return None

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def fix_permissions(self) -> int:
        """Normalize modes under the multiboot directory.

        Directories become 0775 and files 0664. Best effort: failures are
        logged and skipped. Returns the number of paths changed.
        """
        changed = 0
        if not self.multiboot_dir.is_dir():
            return changed
        for root, dirs, files in os.walk(self.multiboot_dir):
            for name, mode in [(d, 0o775) for d in dirs] + [(f, 0o664) for f in files]:
                path = os.path.join(root, name)
                if os.path.islink(path):
                    continue
                try:
                    os.chmod(path, mode)
                    changed += 1
                except OSError as error:
                    log.warning(f"{path}: Failed to chmod: {error.strerror}")
        try:
            os.chmod(self.multiboot_dir, 0o775)
        except OSError as error:
            log.warning(f"{self.multiboot_dir}: Failed to chmod: {error.strerror}")
        return changed
