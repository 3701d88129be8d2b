"""
Copies frozen base images into the backup folder.
"""
import logging
from pathlib import Path
from typing import List

from kvm_backup.models import ArchiveResult, BackupStatus, DiskEntry, Severity
from kvm_backup.services.email import NotificationService
from kvm_backup.services.errors import ArchiveError
from kvm_backup.services.storage.local import LocalBackupStorage

logger = logging.getLogger(__name__)


class ImageArchiver:
    """Best-effort copy of every base image of a domain."""

    def __init__(self, storage: LocalBackupStorage, notifier: NotificationService):
        self.storage = storage
        self.notifier = notifier

    def archive(self, domain: str, disks: List[DiskEntry], folder: Path) -> List[ArchiveResult]:
        """
        Copy each disk's pre-snapshot image into ``folder``.

        A failed copy is recorded and reported; the remaining disks are still
        copied. Copy and filesystem errors never propagate, so the merge step
        always runs.
        """
        logger.info(f"Copying disk image for {domain}")
        results = []

        for disk in disks:
            result = ArchiveResult(target=disk.target, source=disk.path)
            try:
                destination = self.storage.copy_sparse(disk.path, folder)
                size = destination.stat().st_size
            except (ArchiveError, OSError) as e:
                result.status = BackupStatus.FAILED
                result.error = str(e)
                self.notifier.notify(
                    f"ERROR: failed to copy disk image {disk.path} ({disk.target}) of {domain}: {e}",
                    Severity.ERROR,
                    details={"domain": domain, "target": disk.target, "source": disk.path}
                )
            else:
                result.destination = str(destination)
                result.size = size
                result.status = BackupStatus.SUCCESS
                logger.info(f"Copied {disk.path} to {destination}", extra={"details": {
                    "domain": domain,
                    "target": disk.target,
                    "size_bytes": result.size
                }})
            results.append(result)

        return results
