"""Boot image repatching.

Restoring a boot image rewrites it with the identity of the ROM it is being
restored to: the ROM ID is stored as the ``romid`` file at the root of the
ramdisk. Patches are plain callables taking and returning the image bytes,
applied in order.

Android boot image headers v0 to v4 are understood. The ramdisk must be a
newc cpio archive, uncompressed or compressed with gzip, xz or legacy lz4.
"""

from __future__ import annotations

import gzip
import lzma
import os
import struct
import tempfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Sequence, Union

import lz4.block

from romvault.logging import get_logger

from .exceptions import BootImageError


log = get_logger(source="bootimg", tags=["boot", "storage"])

BootImagePatch = Callable[[bytes], bytes]

ANDROID_BOOT_MAGIC = b"ANDROID!"
ROM_ID_FILE = "romid"

# Header field offsets (v0-v2 unless noted)
_KERNEL_SIZE_OFFSET = 8
_RAMDISK_SIZE_OFFSET = 16
_RAMDISK_SIZE_OFFSET_V3 = 12
_PAGE_SIZE_OFFSET = 36
_HEADER_VERSION_OFFSET = 40
_RECOVERY_DTBO_OFFSET = 1636  # v1 and v2, 64-bit absolute offset
_V3_PAGE_SIZE = 4096

_GZIP_MAGIC = b"\x1f\x8b"
_XZ_MAGIC = b"\xfd7zXZ\x00"
_LZ4_LEGACY_MAGIC = b"\x02\x21\x4c\x18"
_LZ4_LEGACY_BLOCK_SIZE = 8 * 1024 * 1024

_CPIO_MAGIC = b"070701"
_CPIO_HEADER_SIZE = 110
_CPIO_TRAILER = "TRAILER!!!"
_ROM_ID_MODE = 0o100664

_DECOMPRESS_ERRORS = (OSError, EOFError, zlib.error, lzma.LZMAError, lz4.block.LZ4BlockError)


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


def is_android_boot_image(data: bytes) -> bool:
    return data[: len(ANDROID_BOOT_MAGIC)] == ANDROID_BOOT_MAGIC


# ==============================================================================
# cpio (newc)
# ==============================================================================


@dataclass
class CpioEntry:
    """One member of a newc cpio archive."""

    name: str
    mode: int
    data: bytes = b""
    ino: int = 0
    uid: int = 0
    gid: int = 0
    nlink: int = 1
    mtime: int = 0
    devmajor: int = 0
    devminor: int = 0
    rdevmajor: int = 0
    rdevminor: int = 0


def unpack_cpio(data: bytes) -> list[CpioEntry]:
    """Parse a newc cpio archive up to its trailer."""
    entries: list[CpioEntry] = []
    pos = 0
    while True:
        header = data[pos : pos + _CPIO_HEADER_SIZE]
        if len(header) < _CPIO_HEADER_SIZE or header[:6] != _CPIO_MAGIC:
            raise BootImageError(f"Ramdisk is not a newc cpio archive (offset {pos})")
        try:
            fields = [int(header[6 + 8 * i : 14 + 8 * i], 16) for i in range(13)]
        except ValueError as error:
            raise BootImageError(f"Corrupt cpio header at offset {pos}") from error
        (ino, mode, uid, gid, nlink, mtime, filesize,
         devmajor, devminor, rdevmajor, rdevminor, namesize, _check) = fields

        name_start = pos + _CPIO_HEADER_SIZE
        name = data[name_start : name_start + namesize].rstrip(b"\0")
        body_start = _align(name_start + namesize, 4)
        body = data[body_start : body_start + filesize]
        if len(body) < filesize:
            raise BootImageError("Ramdisk cpio archive is truncated")
        pos = _align(body_start + filesize, 4)

        decoded = name.decode("utf-8", "surrogateescape")
        if decoded == _CPIO_TRAILER:
            return entries
        entries.append(
            CpioEntry(
                decoded, mode, body, ino, uid, gid, nlink, mtime,
                devmajor, devminor, rdevmajor, rdevminor,
            )
        )


def pack_cpio(entries: Iterable[CpioEntry]) -> bytes:
    """Write ``entries`` as a newc cpio archive, trailer included."""
    out = bytearray()
    for entry in [*entries, CpioEntry(_CPIO_TRAILER, 0)]:
        name = entry.name.encode("utf-8", "surrogateescape") + b"\0"
        fields = (
            entry.ino, entry.mode, entry.uid, entry.gid, entry.nlink, entry.mtime,
            len(entry.data), entry.devmajor, entry.devminor,
            entry.rdevmajor, entry.rdevminor, len(name), 0,
        )
        out += _CPIO_MAGIC + "".join(f"{value:08X}" for value in fields).encode("ascii")
        out += name
        out += bytes(_align(len(out), 4) - len(out))
        out += entry.data
        out += bytes(_align(len(out), 4) - len(out))
    return bytes(out)


# ==============================================================================
# Ramdisk compression
# ==============================================================================


def _lz4_legacy_decompress(data: bytes) -> bytes:
    chunks = []
    pos = len(_LZ4_LEGACY_MAGIC)
    while pos + 4 <= len(data):
        marker = data[pos : pos + 4]
        pos += 4
        if marker == _LZ4_LEGACY_MAGIC:
            continue
        block_size = int.from_bytes(marker, "little")
        # Anything after the last block (the kernel appends the total size)
        if block_size == 0 or pos + block_size > len(data):
            break
        chunks.append(
            lz4.block.decompress(
                data[pos : pos + block_size], uncompressed_size=_LZ4_LEGACY_BLOCK_SIZE
            )
        )
        pos += block_size
    return b"".join(chunks)


def _lz4_legacy_compress(data: bytes) -> bytes:
    out = [_LZ4_LEGACY_MAGIC]
    for start in range(0, len(data), _LZ4_LEGACY_BLOCK_SIZE):
        block = lz4.block.compress(
            data[start : start + _LZ4_LEGACY_BLOCK_SIZE],
            mode="high_compression",
            store_size=False,
        )
        out.append(len(block).to_bytes(4, "little"))
        out.append(block)
    return b"".join(out)


def _decompress_ramdisk(data: bytes) -> tuple[str, bytes]:
    """Return the compression name and the uncompressed cpio archive."""
    try:
        if data.startswith(_GZIP_MAGIC):
            # Trailing padding after the gzip member is ignored
            return "gzip", zlib.decompressobj(16 + zlib.MAX_WBITS).decompress(data)
        if data.startswith(_XZ_MAGIC):
            return "xz", lzma.decompress(data)
        if data.startswith(_LZ4_LEGACY_MAGIC):
            return "lz4_legacy", _lz4_legacy_decompress(data)
    except _DECOMPRESS_ERRORS as error:
        raise BootImageError(f"Failed to decompress ramdisk: {error}") from error
    if data.startswith(_CPIO_MAGIC):
        return "none", data
    raise BootImageError(f"Unsupported ramdisk format: {data[:6].hex()}")


def _compress_ramdisk(compression: str, data: bytes) -> bytes:
    if compression == "gzip":
        return gzip.compress(data, mtime=0)
    if compression == "xz":
        # The kernel only verifies CRC32 checks
        return lzma.compress(data, format=lzma.FORMAT_XZ, check=lzma.CHECK_CRC32)
    if compression == "lz4_legacy":
        return _lz4_legacy_compress(data)
    return data


# ==============================================================================
# Boot image layout
# ==============================================================================


@dataclass(frozen=True)
class _RamdiskLocation:
    header_version: int
    page_size: int
    offset: int
    size: int
    size_field: int


def _locate_ramdisk(data: bytes) -> _RamdiskLocation:
    if len(data) < _HEADER_VERSION_OFFSET + 4:
        raise BootImageError("Boot image header is truncated")
    (kernel_size,) = struct.unpack_from("<I", data, _KERNEL_SIZE_OFFSET)
    (header_version,) = struct.unpack_from("<I", data, _HEADER_VERSION_OFFSET)
    if header_version in (3, 4):
        page_size = _V3_PAGE_SIZE
        size_field = _RAMDISK_SIZE_OFFSET_V3
    else:
        (page_size,) = struct.unpack_from("<I", data, _PAGE_SIZE_OFFSET)
        size_field = _RAMDISK_SIZE_OFFSET
    if page_size == 0 or page_size & (page_size - 1):
        raise BootImageError(f"Invalid boot image page size: {page_size}")

    (ramdisk_size,) = struct.unpack_from("<I", data, size_field)
    offset = page_size + _align(kernel_size, page_size)
    if offset + ramdisk_size > len(data):
        raise BootImageError("Boot image is truncated")
    return _RamdiskLocation(header_version, page_size, offset, ramdisk_size, size_field)


def _replace_ramdisk(data: bytes, location: _RamdiskLocation, ramdisk: bytes) -> bytes:
    page = location.page_size
    old_end = location.offset + _align(location.size, page)
    padded = ramdisk + bytes(_align(len(ramdisk), page) - len(ramdisk))
    result = bytearray(data[: location.offset] + padded + data[old_end:])
    struct.pack_into("<I", result, location.size_field, len(ramdisk))

    if location.header_version in (1, 2) and len(result) >= _RECOVERY_DTBO_OFFSET + 8:
        (dtbo_offset,) = struct.unpack_from("<Q", result, _RECOVERY_DTBO_OFFSET)
        if dtbo_offset:
            shift = len(padded) - (old_end - location.offset)
            struct.pack_into("<Q", result, _RECOVERY_DTBO_OFFSET, dtbo_offset + shift)
    return bytes(result)


def _unpack_ramdisk(data: bytes, location: _RamdiskLocation) -> tuple[str, list[CpioEntry]]:
    ramdisk = data[location.offset : location.offset + location.size]
    if not ramdisk:
        return "gzip", []
    compression, archive = _decompress_ramdisk(ramdisk)
    return compression, unpack_cpio(archive)


def write_rom_id(rom_id: str) -> BootImagePatch:
    """Patch storing ``rom_id`` in the ``romid`` file of the ramdisk.

    An existing ``romid`` is replaced. The ramdisk keeps its compression; a
    boot image without a ramdisk gets a new gzip one. Images that are not
    Android boot images pass through unchanged.
    """
    content = rom_id.encode("utf-8")

    def _patch(data: bytes) -> bytes:
        if not is_android_boot_image(data):
            log.warning("Not an Android boot image; ROM ID not written")
            return data
        location = _locate_ramdisk(data)
        compression, entries = _unpack_ramdisk(data, location)
        for entry in entries:
            if entry.name == ROM_ID_FILE:
                log.debug(f"Replacing ROM ID {entry.data.decode('utf-8', 'replace')!r}")
        entries = [entry for entry in entries if entry.name != ROM_ID_FILE]
        next_ino = max((entry.ino for entry in entries), default=0) + 1
        entries.append(CpioEntry(ROM_ID_FILE, _ROM_ID_MODE, content, ino=next_ino))
        log.debug(f"Writing ROM ID {rom_id!r} to {compression} ramdisk")
        return _replace_ramdisk(
            data, location, _compress_ramdisk(compression, pack_cpio(entries))
        )

    return _patch


def patch_boot_image(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
    patches: Sequence[BootImagePatch],
) -> None:
    """Read a boot image, apply ``patches`` and write it to ``output_path``.

    The output is replaced atomically.

    Raises:
        BootImageError: If reading, patching or writing fails
    """
    output = Path(output_path)
    try:
        data = Path(input_path).read_bytes()
    except OSError as error:
        raise BootImageError(f"{input_path}: Failed to read: {error.strerror}") from error

    for patch in patches:
        data = patch(data)

    try:
        fd, tmp_name = tempfile.mkstemp(prefix=".boot-", dir=output.parent)
    except OSError as error:
        raise BootImageError(f"{output}: Failed to write: {error.strerror}") from error
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, output)
    except OSError as error:
        Path(tmp_name).unlink(missing_ok=True)
        raise BootImageError(f"{output}: Failed to write: {error.strerror}") from error
