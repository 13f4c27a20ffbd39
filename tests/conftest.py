"""
Pytest configuration and shared fixtures for romvault tests.

This module provides common fixtures and utilities used across all test modules.
No fixture needs root: mounting, namespace calls and filesystem tools are
replaced by fakes.
"""

import gzip
import lzma
import struct
from contextlib import contextmanager
from pathlib import Path
from typing import List
from unittest.mock import Mock

import pytest

from romvault.config import settings
from romvault.domain.models import Rom
from romvault.logging import logger
from romvault.storage.bootimg import ANDROID_BOOT_MAGIC, CpioEntry, pack_cpio, unpack_cpio
from romvault.storage.exceptions import MountFailedError
from romvault.storage.roms import RomRegistry


# ==============================================================================
# Logging Fixtures
# ==============================================================================


@pytest.fixture
def log_records() -> List[dict]:
    """
    Fixture capturing every loguru record emitted during the test.

    Returns:
        List that will contain the loguru record dicts.
    """
    records: List[dict] = []

    def sink(message):
        records.append(message.record)

    logger.remove()
    handler_id = logger.add(sink, level="TRACE", enqueue=False)
    yield records
    logger.remove(handler_id)


def messages_at(records: List[dict], level: str) -> List[str]:
    """Messages of the captured records logged at ``level``."""
    return [record["message"] for record in records if record["level"].name == level]


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_settings():
    """
    Auto-use fixture restoring the in-memory settings after each test.
    """
    saved = dict(settings.settings_store.values)
    yield
    settings.settings_store.values = saved


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """
    Fixture providing a temporary settings file path.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.

    Returns:
        Path to a temporary settings file.
    """
    settings_dir = tmp_path / ".config" / "romvault"
    settings_dir.mkdir(parents=True, exist_ok=True)
    return settings_dir / "settings.json"


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


@pytest.fixture
def capture_subprocess_calls(mocker) -> List[List]:
    """
    Fixture that captures all subprocess.run calls for inspection.

    Returns:
        List that will contain all subprocess command arguments.
    """
    calls = []

    def track_call(cmd, **kwargs):
        calls.append(cmd)
        result = Mock()
        result.returncode = 0
        result.stdout = ""
        result.stderr = ""
        return result

    mocker.patch("subprocess.run", side_effect=track_call)
    return calls


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")


# ==============================================================================
# ROM Layout Fixtures
# ==============================================================================


@pytest.fixture
def raw_root(tmp_path) -> Path:
    """
    Fixture providing a fake raw partition root with system, cache and data.

    Returns:
        Path standing in for ``/raw``.
    """
    root = tmp_path / "raw"
    for name in ("system", "cache", "data"):
        (root / name).mkdir(parents=True)
    return root


@pytest.fixture
def multiboot_dir(raw_root) -> Path:
    """Fixture providing the per-ROM bookkeeping directory."""
    path = raw_root / "data" / "media" / "0" / "MultiBoot"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def registry(raw_root, multiboot_dir) -> RomRegistry:
    """Fixture providing a ROM registry rooted in the fake raw root."""
    return RomRegistry(raw_root, multiboot_dir)


@pytest.fixture
def dual_rom(registry) -> Rom:
    """
    Fixture providing an installed ``dual`` ROM with a few files in each
    partition.
    """
    rom = registry.resolve_rom("dual")
    for path, files in (
        (rom.system_path, {"build.prop": "ro.build=1\n", "app/Foo.apk": "apk"}),
        (rom.cache_path, {"recovery/log": "cache log"}),
        (rom.data_path, {"system/packages.xml": "<packages/>"}),
    ):
        for name, content in files.items():
            target = path / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
    return rom


@pytest.fixture
def backup_dir(tmp_path) -> Path:
    """Fixture providing an empty named backup directory."""
    path = tmp_path / "backups" / "2024.01.02-03.04.05"
    path.mkdir(parents=True)
    return path


# ==============================================================================
# Boot Image Fixtures
# ==============================================================================


class BootImages:
    """Builds Android boot images and reads back their ramdisk files."""

    DEFAULT_FILES = {"init": b"#!/init\n", "default.prop": b"ro.secure=1\n"}

    @staticmethod
    def _pad(data: bytes, page_size: int) -> bytes:
        return data + bytes(-len(data) % page_size)

    def build(
        self,
        files=None,
        *,
        header_version: int = 0,
        page_size: int = 2048,
        compress=lambda data: gzip.compress(data, mtime=0),
        kernel: bytes = b"\x00kernel" * 300,
        second: bytes = b"second-stage",
    ) -> bytes:
        files = self.DEFAULT_FILES if files is None else files
        entries = [
            CpioEntry(name, 0o100644, content, ino=index + 1)
            for index, (name, content) in enumerate(files.items())
        ]
        ramdisk = compress(pack_cpio(entries)) if files else b""
        if header_version >= 3:
            page_size = 4096
        header = bytearray(page_size)
        header[:8] = ANDROID_BOOT_MAGIC
        struct.pack_into("<I", header, 8, len(kernel))
        struct.pack_into("<I", header, 40, header_version)
        if header_version >= 3:
            struct.pack_into("<I", header, 12, len(ramdisk))
            second = b""
        else:
            struct.pack_into("<I", header, 16, len(ramdisk))
            struct.pack_into("<I", header, 24, len(second))
            struct.pack_into("<I", header, 36, page_size)
            header[48:55] = b"primary"
        return b"".join(
            self._pad(part, page_size) for part in (bytes(header), kernel, ramdisk, second)
        )

    def ramdisk(self, image: bytes) -> dict:
        """Files in the image's ramdisk, by name."""
        kernel_size, = struct.unpack_from("<I", image, 8)
        header_version, = struct.unpack_from("<I", image, 40)
        if header_version >= 3:
            page_size = 4096
            ramdisk_size, = struct.unpack_from("<I", image, 12)
        else:
            page_size, = struct.unpack_from("<I", image, 36)
            ramdisk_size, = struct.unpack_from("<I", image, 16)
        offset = page_size + kernel_size + (-kernel_size % page_size)
        ramdisk = image[offset : offset + ramdisk_size]
        if ramdisk.startswith(b"\x1f\x8b"):
            ramdisk = gzip.decompress(ramdisk)
        elif ramdisk.startswith(b"\xfd7zXZ"):
            ramdisk = lzma.decompress(ramdisk)
        return {entry.name: entry.data for entry in unpack_cpio(ramdisk)}

    def second(self, image: bytes) -> bytes:
        """The second-stage payload of a v0-v2 image."""
        kernel_size, ramdisk_size, second_size, page_size = (
            struct.unpack_from("<I", image, offset)[0] for offset in (8, 16, 24, 36)
        )
        offset = page_size * (
            1 + -(-kernel_size // page_size) + -(-ramdisk_size // page_size)
        )
        return image[offset : offset + second_size]


@pytest.fixture
def boot_images() -> BootImages:
    """Fixture building boot images with a gzip cpio ramdisk by default."""
    return BootImages()


# ==============================================================================
# Mount Fakes
# ==============================================================================


class FakeMounter:
    """
    Stand-in for ``mounted_image`` that "mounts" an image by yielding a
    directory holding the image's contents.
    """

    def __init__(self, root: Path, fail: bool = False):
        self.root = root
        self.fail = fail
        self.calls = []
        self.released = 0

    @contextmanager
    def __call__(self, image, mount_point, *, read_only):
        self.calls.append((Path(image), Path(mount_point), read_only))
        if self.fail:
            raise MountFailedError(image, mount_point, "mock mount failure")
        self.root.mkdir(parents=True, exist_ok=True)
        try:
            yield self.root
        finally:
            self.released += 1


@pytest.fixture
def image_contents(tmp_path) -> Path:
    """Directory standing in for the contents of a mounted image."""
    return tmp_path / "image-contents"


@pytest.fixture
def fake_mounter(image_contents) -> FakeMounter:
    """Fixture providing a mount helper that always succeeds."""
    return FakeMounter(image_contents)


@pytest.fixture
def failing_mounter(image_contents) -> FakeMounter:
    """Fixture providing a mount helper that always fails."""
    return FakeMounter(image_contents, fail=True)


@pytest.fixture
def fake_isolation() -> Mock:
    """Fixture providing an isolation session that needs no privileges."""
    isolation = Mock()
    isolation.active = True
    return isolation
