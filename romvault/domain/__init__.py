"""Domain models for ROM backup and restore."""

from .models import (
    ALL_TARGETS,
    PARTITION_TARGETS,
    ArchiveDescriptor,
    BackupTarget,
    CompressionKind,
    OperationResult,
    PartitionSpec,
    Rom,
    build_partition_spec,
    format_targets,
    parse_targets,
    partition_exclusions,
)

__all__ = [
    "ALL_TARGETS",
    "PARTITION_TARGETS",
    "ArchiveDescriptor",
    "BackupTarget",
    "CompressionKind",
    "OperationResult",
    "PartitionSpec",
    "Rom",
    "build_partition_spec",
    "format_targets",
    "parse_targets",
    "partition_exclusions",
]
