"""ROM snapshot backup and restore.

Main Classes:
    - RomBackupOrchestrator: Back up boot image, configs and partitions
    - RomRestoreOrchestrator: Restore them, wiping each partition first
    - PartitionBackupEngine: Archive one directory or ext4 image
    - PartitionRestoreEngine: Restore one directory or ext4 image

Helpers:
    - find_archive(): Locate a partition archive and its compression
    - lookup_by_name(), name_for(), extension_for(): Compression table
"""
from .backup import RomBackupOrchestrator, TARGET_ORDER
from .compression import (
    COMPRESSION_TABLE,
    DEFAULT_COMPRESSION,
    archive_filename,
    compression_names,
    extension_for,
    lookup_by_name,
    name_for,
)
from .locator import find_archive
from .partition import PartitionBackupEngine, PartitionRestoreEngine
from .restore import RomRestoreOrchestrator

__all__ = [
    "RomBackupOrchestrator",
    "RomRestoreOrchestrator",
    "PartitionBackupEngine",
    "PartitionRestoreEngine",
    "TARGET_ORDER",
    "find_archive",
    "COMPRESSION_TABLE",
    "DEFAULT_COMPRESSION",
    "archive_filename",
    "compression_names",
    "extension_for",
    "lookup_by_name",
    "name_for",
]
