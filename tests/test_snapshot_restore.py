"""Tests for RomRestoreOrchestrator.

This test suite covers:
- Full restores of directory-based ROMs from real archives
- Aborting when a partition archive is missing, without touching the ROM
- System size query failures
- Boot image repatching and config restore
"""

from unittest.mock import Mock, patch

import pytest

from romvault.domain.models import (
    ALL_TARGETS,
    ArchiveDescriptor,
    BackupTarget,
    CompressionKind,
    OperationResult,
)
from romvault.storage.archive import create_archive
from romvault.storage.bootimg import ROM_ID_FILE
from romvault.storage.exceptions import StorageError
from romvault.storage.roms import RomRegistry
from romvault.storage.snapshot.partition import PartitionRestoreEngine
from romvault.storage.snapshot.restore import RomRestoreOrchestrator


SYSTEM_SIZE = 2 * 1024**3


@pytest.fixture(autouse=True)
def system_size():
    with patch.object(RomRegistry, "partition_total_size", return_value=SYSTEM_SIZE) as mock_size:
        yield mock_size


@pytest.fixture
def populated_backup(tmp_path, backup_dir, boot_images):
    """A backup holding system (lz4), data (split gzip), boot and config."""
    system = tmp_path / "src-system"
    (system / "etc").mkdir(parents=True)
    (system / "etc" / "fstab").write_text("restored fstab")
    create_archive(backup_dir / "system.tar.lz4", system, ["etc"], CompressionKind.LZ4)

    data = tmp_path / "src-data"
    (data / "app").mkdir(parents=True)
    (data / "app" / "base.apk").write_bytes(bytes(range(256)) * 64)
    create_archive(
        backup_dir / "data.tar.gz", data, ["app"], CompressionKind.GZIP, split_size=512
    )

    (backup_dir / "boot.img").write_bytes(boot_images.build())
    (backup_dir / "config.json").write_text('{"name": "Backup"}')
    (backup_dir / "thumbnail.webp").write_bytes(b"RIFF")
    return backup_dir


@pytest.fixture
def orchestrator(registry, tmp_path):
    return RomRestoreOrchestrator(
        registry, engine=PartitionRestoreEngine(mount_point=tmp_path / "mnt")
    )


class TestRomRestoreOrchestrator:
    """Tests for RomRestoreOrchestrator.run()."""

    def test_full_restore_of_directory_rom(
        self, orchestrator, dual_rom, populated_backup, boot_images
    ):
        (dual_rom.system_path / "multiboot").mkdir()

        ok = orchestrator.run(
            dual_rom,
            populated_backup,
            {BackupTarget.SYSTEM, BackupTarget.DATA, BackupTarget.BOOT, BackupTarget.CONFIG},
        )

        assert ok is True
        assert sorted(p.name for p in dual_rom.system_path.iterdir()) == ["etc", "multiboot"]
        assert (dual_rom.system_path / "etc" / "fstab").read_text() == "restored fstab"
        assert sorted(p.name for p in dual_rom.data_path.iterdir()) == ["app"]
        assert len((dual_rom.data_path / "app" / "base.apk").read_bytes()) == 256 * 64
        assert boot_images.ramdisk(dual_rom.boot_image_path.read_bytes())[ROM_ID_FILE] == b"dual"
        assert dual_rom.config_path.read_text() == '{"name": "Backup"}'
        assert dual_rom.thumbnail_path.read_bytes() == b"RIFF"
        # Cache was not selected
        assert (dual_rom.cache_path / "recovery" / "log").exists()

    def test_missing_system_archive_leaves_partition_untouched(
        self, orchestrator, dual_rom, backup_dir, log_records
    ):
        (backup_dir / "data.tar").write_bytes(b"")
        before = sorted(p.name for p in dual_rom.system_path.rglob("*"))

        ok = orchestrator.run(dual_rom, backup_dir, {BackupTarget.SYSTEM})

        assert ok is False
        assert sorted(p.name for p in dual_rom.system_path.rglob("*")) == before
        errors = [r["message"] for r in log_records if r["level"].name == "ERROR"]
        assert f"Backup of /system not found in {backup_dir}" in errors

    def test_missing_archive_aborts_later_targets(self, registry, dual_rom, backup_dir):
        engine = Mock(spec=PartitionRestoreEngine)
        orchestrator = RomRestoreOrchestrator(registry, engine=engine)

        ok = orchestrator.run(dual_rom, backup_dir, ALL_TARGETS)

        assert ok is False
        engine.restore.assert_not_called()

    def test_system_size_query_failure(self, registry, dual_rom, populated_backup, system_size):
        system_size.side_effect = StorageError("statfs failed")
        engine = Mock(spec=PartitionRestoreEngine)

        ok = RomRestoreOrchestrator(registry, engine=engine).run(
            dual_rom, populated_backup, {BackupTarget.SYSTEM}
        )

        assert ok is False
        engine.restore.assert_not_called()

    def test_size_hints(self, registry, dual_rom, tmp_path):
        descriptor = ArchiveDescriptor("x", CompressionKind.XZ, True, "x.tar.xz")
        engine = Mock(spec=PartitionRestoreEngine)
        engine.restore.return_value = OperationResult.SUCCEEDED
        orchestrator = RomRestoreOrchestrator(
            registry, engine=engine, locator=Mock(return_value=descriptor),
            default_image_size=4096,
        )

        ok = orchestrator.run(dual_rom, tmp_path, {BackupTarget.SYSTEM, BackupTarget.CACHE})

        assert ok is True
        system_call, cache_call = engine.restore.call_args_list
        assert system_call.args[0].size_hint == SYSTEM_SIZE
        assert cache_call.args[0].size_hint == 4096
        assert system_call.args[1:] == (
            tmp_path / "x.tar.xz", ("multiboot",), CompressionKind.XZ, True,
        )

    def test_engine_files_missing_is_fatal(self, registry, dual_rom, tmp_path):
        descriptor = ArchiveDescriptor("cache", CompressionKind.NONE, False, "cache.tar")
        engine = Mock(spec=PartitionRestoreEngine)
        engine.restore.return_value = OperationResult.FILES_MISSING

        ok = RomRestoreOrchestrator(
            registry, engine=engine, locator=Mock(return_value=descriptor)
        ).run(dual_rom, tmp_path, {BackupTarget.CACHE, BackupTarget.DATA})

        assert ok is False
        engine.restore.assert_called_once()

    def test_missing_boot_backup_is_tolerated(self, orchestrator, dual_rom, backup_dir, log_records):
        ok = orchestrator.run(dual_rom, backup_dir, {BackupTarget.BOOT, BackupTarget.CONFIG})

        assert ok is True
        warnings = [r["message"] for r in log_records if r["level"].name == "WARNING"]
        assert len(warnings) == 3

    def test_boot_patch_failure(self, registry, dual_rom, populated_backup):
        patcher = Mock(side_effect=OSError(28, "No space left on device"))

        ok = RomRestoreOrchestrator(registry, boot_patcher=patcher).run(
            dual_rom, populated_backup, {BackupTarget.BOOT}
        )

        assert ok is False

    @pytest.mark.parametrize("rom_id", ["extsd-slot-lineage", "data-slot-averyveryverylongname"])
    def test_boot_restore_for_long_rom_id(self, registry, populated_backup, boot_images, rom_id):
        rom = registry.resolve_rom(rom_id)

        ok = RomRestoreOrchestrator(registry).run(rom, populated_backup, {BackupTarget.BOOT})

        assert ok is True
        files = boot_images.ramdisk(rom.boot_image_path.read_bytes())
        assert files[ROM_ID_FILE] == rom_id.encode()

    def test_creates_rom_dir_and_fixes_permissions(self, dual_rom, backup_dir, tmp_path):
        registry = Mock()
        registry.rom_dir.return_value = tmp_path / "MultiBoot" / "dual"

        ok = RomRestoreOrchestrator(registry).run(dual_rom, backup_dir, {BackupTarget.CONFIG})

        assert ok is True
        assert (tmp_path / "MultiBoot" / "dual").is_dir()
        registry.fix_permissions.assert_called_once()

    def test_empty_targets(self, orchestrator, dual_rom, backup_dir):
        assert orchestrator.run(dual_rom, backup_dir, frozenset()) is False
