"""
Backup run data models.
"""
from kvm_backup.models.backup import (
    BackupStatus,
    Severity,
    DiskEntry,
    SnapshotResult,
    ArchiveResult,
    MergeResult,
    DomainReport,
    RunReport
)

__all__ = [
    "BackupStatus",
    "Severity",
    "DiskEntry",
    "SnapshotResult",
    "ArchiveResult",
    "MergeResult",
    "DomainReport",
    "RunReport"
]
