"""Tests for the compression table and the archive locator."""

import os

import pytest

from romvault.domain.models import CompressionKind
from romvault.storage.snapshot import compression
from romvault.storage.snapshot.locator import find_archive


class TestCompressionTable:
    """Tests for the compression name/extension table."""

    @pytest.mark.parametrize(
        "name,kind,extension",
        [
            ("none", CompressionKind.NONE, ".tar"),
            ("lz4", CompressionKind.LZ4, ".tar.lz4"),
            ("gzip", CompressionKind.GZIP, ".tar.gz"),
            ("xz", CompressionKind.XZ, ".tar.xz"),
        ],
    )
    def test_name_kind_extension_bijection(self, name, kind, extension):
        assert compression.lookup_by_name(name) is kind
        assert compression.name_for(kind) == name
        assert compression.extension_for(kind) == extension

    @pytest.mark.parametrize("name", ["", "LZ4", "zstd", "bzip2"])
    def test_unknown_names(self, name):
        assert compression.lookup_by_name(name) is None

    def test_every_kind_has_an_entry(self):
        assert set(compression.COMPRESSION_TABLE) == set(CompressionKind)

    def test_probe_order(self):
        assert [info.name for info in compression.iter_by_priority()] == [
            "none", "lz4", "gzip", "xz",
        ]

    def test_default_is_lz4(self):
        assert compression.DEFAULT_COMPRESSION is CompressionKind.LZ4

    def test_archive_filename(self):
        assert compression.archive_filename("data", CompressionKind.GZIP) == "data.tar.gz"


class TestFindArchive:
    """Tests for find_archive()."""

    def test_not_found(self, backup_dir):
        (backup_dir / "cache.tar").write_bytes(b"")
        assert find_archive(backup_dir, "system") is None

    def test_unsplit(self, backup_dir):
        (backup_dir / "system.tar.gz").write_bytes(b"")

        descriptor = find_archive(backup_dir, "system")

        assert descriptor.compression is CompressionKind.GZIP
        assert descriptor.is_split is False
        assert descriptor.path_in(backup_dir) == backup_dir / "system.tar.gz"

    def test_split_only_first_chunk(self, backup_dir):
        (backup_dir / "data.tar.lz4.0").write_bytes(b"")
        (backup_dir / "data.tar.lz4.1").write_bytes(b"")

        descriptor = find_archive(backup_dir, "data")

        assert descriptor.compression is CompressionKind.LZ4
        assert descriptor.is_split is True
        assert descriptor.filename == "data.tar.lz4"

    def test_unsplit_preferred_over_split(self, backup_dir):
        (backup_dir / "data.tar.xz").write_bytes(b"")
        (backup_dir / "data.tar.xz.0").write_bytes(b"")

        assert find_archive(backup_dir, "data").is_split is False

    def test_priority_order_first_match_wins(self, backup_dir):
        (backup_dir / "system.tar.xz").write_bytes(b"")
        (backup_dir / "system.tar.lz4.0").write_bytes(b"")
        (backup_dir / "system.tar.gz").write_bytes(b"")

        descriptor = find_archive(backup_dir, "system")

        assert descriptor.compression is CompressionKind.LZ4
        assert descriptor.is_split is True

    def test_later_chunk_alone_is_not_found(self, backup_dir):
        (backup_dir / "system.tar.1").write_bytes(b"")
        assert find_archive(backup_dir, "system") is None

    @pytest.mark.skipif(os.geteuid() == 0, reason="root can read anything")
    def test_unreadable_candidate_skipped(self, backup_dir):
        unreadable = backup_dir / "system.tar"
        unreadable.write_bytes(b"")
        unreadable.chmod(0)
        (backup_dir / "system.tar.gz").write_bytes(b"")

        try:
            assert find_archive(backup_dir, "system").compression is CompressionKind.GZIP
        finally:
            unreadable.chmod(0o644)
