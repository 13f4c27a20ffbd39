"""Tar archive codec with optional compression and splitting.

Archives are streamed: tarfile writes into a compressor, which writes into a
split writer that rolls over to numbered chunk files. Extraction reads the
chunks back in order through the matching decompressor.

Split naming: an archive is written to ``<path>``; once it grows past the
split size it is renamed to ``<path>.0`` and further data goes to
``<path>.1``, ``<path>.2``, ... Archives that fit in one chunk stay unsplit.
"""

from __future__ import annotations

import gzip
import io
import lzma
import os
import tarfile
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Generator, Iterable, Optional, Union

import lz4.frame

from romvault.domain.models import CompressionKind
from romvault.logging import get_logger

from .exceptions import ArchiveError


log = get_logger(source="archive", tags=["archive", "storage"])

PathLike = Union[str, Path]

_CODEC_ERRORS = (
    OSError,
    EOFError,
    tarfile.TarError,
    lzma.LZMAError,
    RuntimeError,  # lz4.frame reports corrupt frames as RuntimeError
)


def split_chunk_path(archive: PathLike, index: int) -> Path:
    """Path of chunk ``index`` of a split archive (``<archive>.<index>``)."""
    return Path(f"{archive}.{index}")


def list_archive_parts(archive: PathLike, is_split: bool) -> list[Path]:
    """Return the files making up an archive, in order."""
    if not is_split:
        return [Path(archive)]
    parts = []
    index = 0
    while split_chunk_path(archive, index).exists():
        parts.append(split_chunk_path(archive, index))
        index += 1
    return parts


def remove_archive(archive: PathLike) -> None:
    """Remove an archive and any split chunks left by an earlier backup."""
    Path(archive).unlink(missing_ok=True)
    for part in list_archive_parts(archive, is_split=True):
        part.unlink()


class SplitFileWriter(io.RawIOBase):
    """Writable file that splits its output into chunks of ``split_size``.

    A ``split_size`` of 0 disables splitting.
    """

    def __init__(self, path: PathLike, split_size: int = 0):
        super().__init__()
        self.path = Path(path)
        self.split_size = split_size
        self.index: Optional[int] = None
        self._written = 0
        self._file: BinaryIO = open(self.path, "wb")

    @property
    def parts(self) -> list[Path]:
        return list_archive_parts(self.path, is_split=self.index is not None)

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        view = memoryview(data).cast("B")
        total = len(view)
        while view:
            if self.split_size and self._written >= self.split_size:
                self._next_chunk()
            if self.split_size:
                count = min(len(view), self.split_size - self._written)
            else:
                count = len(view)
            self._file.write(view[:count])
            self._written += count
            view = view[count:]
        return total

    def _next_chunk(self) -> None:
        self._file.close()
        if self.index is None:
            os.replace(self.path, split_chunk_path(self.path, 0))
            self.index = 0
        self.index += 1
        self._file = open(split_chunk_path(self.path, self.index), "wb")
        self._written = 0

    def flush(self) -> None:
        if not self.closed and not self._file.closed:
            self._file.flush()

    def close(self) -> None:
        if self.closed:
            return
        try:
            # IOBase.close() flushes, so the chunk must still be open
            super().close()
        finally:
            self._file.close()


class SplitFileReader(io.RawIOBase):
    """Readable file presenting the chunks of an archive as one stream."""

    def __init__(self, path: PathLike, is_split: bool):
        super().__init__()
        self._parts = list_archive_parts(path, is_split)
        if not self._parts:
            raise FileNotFoundError(f"{split_chunk_path(path, 0)}: No such file")
        self._index = 0
        self._file: BinaryIO = open(self._parts[0], "rb")

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while True:
            count = self._file.readinto(buffer)
            if count or self._index + 1 >= len(self._parts):
                return count or 0
            self._file.close()
            self._index += 1
            self._file = open(self._parts[self._index], "rb")

    def close(self) -> None:
        if not self.closed:
            self._file.close()
        super().close()


@contextmanager
def _compressed_writer(
    raw: BinaryIO, compression: CompressionKind
) -> Generator[BinaryIO, None, None]:
    if compression is CompressionKind.NONE:
        yield raw
        return
    if compression is CompressionKind.LZ4:
        stream = lz4.frame.LZ4FrameFile(raw, mode="wb")
    elif compression is CompressionKind.GZIP:
        stream = gzip.GzipFile(filename="", mode="wb", fileobj=raw)
    elif compression is CompressionKind.XZ:
        stream = lzma.LZMAFile(raw, mode="wb", format=lzma.FORMAT_XZ)
    else:
        raise ValueError(f"Unsupported compression: {compression!r}")
    with stream:
        yield stream


@contextmanager
def _decompressed_reader(
    raw: BinaryIO, compression: CompressionKind
) -> Generator[BinaryIO, None, None]:
    if compression is CompressionKind.NONE:
        yield raw
        return
    if compression is CompressionKind.LZ4:
        stream = lz4.frame.LZ4FrameFile(raw, mode="rb")
    elif compression is CompressionKind.GZIP:
        stream = gzip.GzipFile(filename="", mode="rb", fileobj=raw)
    elif compression is CompressionKind.XZ:
        stream = lzma.LZMAFile(raw, mode="rb")
    else:
        raise ValueError(f"Unsupported compression: {compression!r}")
    with stream:
        yield stream


def create_archive(
    path: PathLike,
    base_dir: PathLike,
    entries: Iterable[str],
    compression: CompressionKind,
    split_size: int = 0,
) -> list[Path]:
    """Archive ``entries`` (names relative to ``base_dir``) into ``path``.

    Directories are archived recursively. Ownership is stored numerically.

    Returns:
        The files written (one path, or the split chunks in order)

    Raises:
        ArchiveError: If reading the sources or writing the archive fails
    """
    base = Path(base_dir)
    entries = list(entries)
    try:
        remove_archive(path)
        with SplitFileWriter(path, split_size) as raw:
            with _compressed_writer(raw, compression) as stream:
                with tarfile.open(
                    fileobj=stream, mode="w|", format=tarfile.PAX_FORMAT
                ) as tar:
                    for entry in entries:
                        tar.add(base / entry, arcname=entry, recursive=True)
            parts = raw.parts
    except _CODEC_ERRORS as error:
        raise ArchiveError(f"{path}: Failed to create archive: {error}", path) from error

    log.debug(f"Created {path} ({len(entries)} entries, {len(parts)} file(s))")
    return parts


def _member_filter(destination: str):
    def _filter(member: tarfile.TarInfo, dest_path: str) -> tarfile.TarInfo:
        target = os.path.realpath(os.path.join(destination, member.name))
        if os.path.commonpath([target, destination]) != destination:
            raise ArchiveError(f"Refusing to extract {member.name!r} outside {destination}")
        return member

    return _filter


def extract_archive(
    path: PathLike,
    dest_dir: PathLike,
    compression: CompressionKind,
    is_split: bool = False,
) -> None:
    """Extract an archive (or the chunks of a split archive) into ``dest_dir``.

    Permissions and numeric ownership are restored as stored.

    Raises:
        ArchiveError: If the archive is missing, corrupt or cannot be written
    """
    destination = os.path.realpath(dest_dir)
    try:
        with SplitFileReader(path, is_split) as raw:
            with _decompressed_reader(io.BufferedReader(raw), compression) as stream:
                with tarfile.open(fileobj=stream, mode="r|") as tar:
                    tar.extractall(
                        destination,
                        numeric_owner=True,
                        filter=_member_filter(destination),
                    )
    except ArchiveError:
        raise
    except _CODEC_ERRORS as error:
        raise ArchiveError(f"{path}: Failed to extract archive: {error}", path) from error

    log.debug(f"Extracted {path} into {destination}")
