"""
In-memory data model for one backup run.

Values flow directly between the run steps; nothing is persisted besides the
backup folder contents.
"""
import enum
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional


class BackupStatus(str, enum.Enum):
    """Outcome of a run step, disk, or domain."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class Severity(str, enum.Enum):
    """Notification severity."""
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class DiskEntry:
    """A virtual disk attached to a domain."""
    target: str  # e.g. 'vda'
    path: str    # active source file


@dataclass
class SnapshotResult:
    """External snapshot covering every disk of one domain."""
    domain: str
    name: str
    disks: List[DiskEntry]


@dataclass
class ArchiveResult:
    """Copy of one base image into the backup folder."""
    target: str
    source: str
    destination: Optional[str] = None
    size: int = 0
    status: BackupStatus = BackupStatus.PENDING
    error: Optional[str] = None


@dataclass
class MergeResult:
    """Block-commit and pivot of one disk back onto its base image."""
    target: str
    base_path: str
    overlay_path: Optional[str] = None
    overlay_removed: bool = False
    status: BackupStatus = BackupStatus.PENDING
    error: Optional[str] = None


@dataclass
class DomainReport:
    """Outcome of the backup workflow for one domain."""
    domain: str
    backup_folder: Optional[Path] = None
    disks: List[DiskEntry] = field(default_factory=list)
    snapshot: Optional[SnapshotResult] = None
    archives: List[ArchiveResult] = field(default_factory=list)
    merges: List[MergeResult] = field(default_factory=list)
    descriptor: Optional[Path] = None
    status: BackupStatus = BackupStatus.PENDING
    error: Optional[str] = None

    @property
    def backed_up(self) -> bool:
        return self.status == BackupStatus.SUCCESS

    def finalize(self) -> BackupStatus:
        """Derive the domain status from the per-disk archive and merge outcomes."""
        merged = bool(self.merges) and all(m.status == BackupStatus.SUCCESS for m in self.merges)
        archived = all(a.status == BackupStatus.SUCCESS for a in self.archives)
        self.status = BackupStatus.SUCCESS if merged and archived else BackupStatus.FAILED
        return self.status


@dataclass
class RunReport:
    """Aggregated outcome of one backup run."""
    run_date: date
    domains: List[DomainReport] = field(default_factory=list)
    fatal_error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        """True when preflight passed. Per-domain failures do not count."""
        return self.fatal_error is None

    def counts(self) -> Dict[str, int]:
        result = {status.value: 0 for status in BackupStatus if status != BackupStatus.PENDING}
        for report in self.domains:
            if report.status.value in result:
                result[report.status.value] += 1
        return result
