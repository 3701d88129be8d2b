"""
Backup run orchestration.

One run: preflight checks, then for every running domain
inventory -> snapshot -> archive -> merge, strictly one domain and one disk
at a time.
"""
import logging
import shutil
from datetime import date
from pathlib import Path
from typing import List, Optional

from kvm_backup.core.config import Settings
from kvm_backup.models import BackupStatus, DomainReport, RunReport, Severity
from kvm_backup.services.email import NotificationService
from kvm_backup.services.errors import (
    FatalPreflightError,
    HypervisorError,
    InventoryError,
    SnapshotError,
    ArchiveError
)
from kvm_backup.services.kvm.base import Hypervisor
from kvm_backup.services.kvm.blockcommit import BlockCommitMerger
from kvm_backup.services.kvm.inventory import DiskInventory
from kvm_backup.services.kvm.snapshot import SnapshotCoordinator
from kvm_backup.services.storage.archiver import ImageArchiver
from kvm_backup.services.storage.local import LocalBackupStorage

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class BackupRun:
    """Runs the live backup workflow for every running domain."""

    def __init__(
        self,
        settings: Settings,
        hypervisor: Hypervisor,
        notifier: Optional[NotificationService] = None,
        storage: Optional[LocalBackupStorage] = None,
        run_date: Optional[date] = None
    ):
        """
        Args:
            settings: Application settings (paths, tools, snapshot naming)
            hypervisor: Hypervisor the domains run on
            notifier: Notification channel; built from settings when omitted
            storage: Backup storage; built from ``settings.BACKUP_PATH`` when omitted
            run_date: Date stamp of the backup folders; defaults to today
        """
        self.settings = settings
        self.hypervisor = hypervisor
        self.notifier = notifier or NotificationService(settings)
        self.storage = storage or LocalBackupStorage(settings.BACKUP_PATH)
        self.run_date = run_date or date.today()

        self.inventory = DiskInventory(hypervisor)
        self.snapshots = SnapshotCoordinator(
            hypervisor,
            name_prefix=settings.SNAPSHOT_NAME_PREFIX,
            overlay_suffix=settings.SNAPSHOT_OVERLAY_SUFFIX
        )
        self.archiver = ImageArchiver(self.storage, self.notifier)
        self.merger = BlockCommitMerger(
            hypervisor,
            self.inventory,
            self.storage,
            self.notifier,
            poll_interval=settings.BLOCK_JOB_POLL_INTERVAL
        )

    def preflight(self) -> None:
        """
        Check every run pre-condition before any domain is touched.

        Raises:
            FatalPreflightError: If a pre-condition is not met
        """
        images_path = Path(self.settings.IMAGES_PATH)
        if not images_path.is_dir():
            raise FatalPreflightError(f"directory {images_path} does not exist.")

        images_root = images_path.resolve()
        backup_root = self.storage.base_path.resolve()
        if images_root == backup_root or backup_root in images_root.parents or images_root in backup_root.parents:
            raise FatalPreflightError(
                f"backup directory {backup_root} and images directory {images_root} overlap; "
                "refusing to wipe previous backups."
            )

        try:
            self.storage.ensure_root()
        except OSError as e:
            raise FatalPreflightError(f"cannot create backup directory {self.storage.base_path}: {e}") from e

        for tool in self.settings.required_tools:
            if shutil.which(tool) is None:
                raise FatalPreflightError(f"{tool} is not installed.")

        try:
            self.hypervisor.connect()
        except HypervisorError as e:
            raise FatalPreflightError(f"cannot connect to the hypervisor: {e}") from e

        logger.info(f"Deleting all previous date-stamped backup folders from: {self.storage.base_path}/")
        try:
            self.storage.wipe()
        except OSError as e:
            raise FatalPreflightError(f"cannot wipe previous backups in {self.storage.base_path}: {e}") from e

        free_space = self.storage.free_space()
        used_by_images = self.storage.images_usage(images_path, self.settings.IMAGE_GLOB)
        if not free_space > used_by_images:
            raise FatalPreflightError(
                "not enough free disk space available to create snapshots "
                f"({free_space // MB} MB free, {used_by_images // MB} MB required)."
            )

        logger.info(f"Free disk space on {self.storage.base_path}: {free_space // MB} MB", extra={"details": {
            "free_bytes": free_space,
            "required_bytes": used_by_images
        }})
        logger.info(f"Disk space required for snapshots: {used_by_images // MB} MB")

    def _list_domains(self) -> List[str]:
        try:
            return self.hypervisor.list_running_domains()
        except HypervisorError as e:
            raise FatalPreflightError(f"cannot list running domains: {e}") from e

    def run(self) -> RunReport:
        """
        Execute one full backup run.

        Per-domain failures are recorded in the report and never abort the
        run. Only a failed preflight raises.

        Raises:
            FatalPreflightError: After notifying, if a pre-condition failed
        """
        report = RunReport(run_date=self.run_date)
        try:
            self.preflight()
            domains = self._list_domains()
        except FatalPreflightError as e:
            report.fatal_error = str(e)
            self.notifier.notify(f"ERROR: {e}", Severity.CRITICAL)
            self.hypervisor.close()
            raise

        try:
            if not domains:
                logger.info("No running KVM domains were found.")
                return report

            for domain in domains:
                try:
                    report.domains.append(self.backup_domain(domain))
                except Exception as e:
                    logger.exception(f"Unexpected error while backing up {domain}")
                    self.notifier.notify(
                        f"ERROR: backup of {domain} failed: {e}",
                        Severity.CRITICAL,
                        details={"domain": domain}
                    )
                    report.domains.append(DomainReport(domain=domain, status=BackupStatus.FAILED, error=str(e)))
        finally:
            self.hypervisor.close()

        counts = report.counts()
        logger.info(
            f"Backup run finished: {counts['success']} succeeded, {counts['failed']} failed, "
            f"{counts['skipped']} skipped",
            extra={"details": counts}
        )
        return report

    def backup_domain(self, domain: str) -> DomainReport:
        """Run inventory, snapshot, archive and merge for one domain."""
        report = DomainReport(domain=domain)
        logger.info(f"Starting backup for {domain}")

        try:
            report.disks = self.inventory.resolve(domain)
        except InventoryError as e:
            report.status = BackupStatus.SKIPPED
            report.error = str(e)
            self.notifier.notify(f"ERROR: skipping {domain}: {e}", Severity.ERROR, details={"domain": domain})
            return report

        try:
            report.snapshot = self.snapshots.create(domain, report.disks)
        except SnapshotError as e:
            report.status = BackupStatus.SKIPPED
            report.error = str(e)
            self.notifier.notify(
                f"ERROR: failed to create snapshot for {domain}",
                Severity.ERROR,
                details={"domain": domain, "error": str(e)}
            )
            return report

        # From here on the domain runs on overlays, so the merge must always run
        try:
            report.backup_folder = self.storage.backup_folder(domain, self.run_date)
        except (OSError, ArchiveError) as e:
            report.error = f"cannot create backup folder: {e}"
            self.notifier.notify(
                f"ERROR: cannot create backup folder for {domain}: {e}",
                Severity.ERROR,
                details={"domain": domain}
            )
        else:
            try:
                report.archives = self.archiver.archive(domain, report.disks, report.backup_folder)
            except Exception as e:
                report.error = f"archive step failed: {e}"
                logger.exception(f"Unexpected error while copying disk images of {domain}")
                self.notifier.notify(
                    f"ERROR: copying disk images of {domain} failed: {e}",
                    Severity.ERROR,
                    details={"domain": domain}
                )

        report.merges = self.merger.merge_all(domain, report.disks, report.backup_folder)
        if report.backup_folder is not None:
            descriptor = report.backup_folder / f"{domain}.xml"
            if descriptor.exists():
                report.descriptor = descriptor

        report.finalize()
        if report.backup_folder is None or report.descriptor is None or report.error:
            report.status = BackupStatus.FAILED

        if report.backed_up:
            logger.info(f"All done for {domain}")
        else:
            logger.error(f"Backup of {domain} is incomplete", extra={"details": {
                "domain": domain,
                "archives": [(a.target, a.status.value) for a in report.archives],
                "merges": [(m.target, m.status.value) for m in report.merges]
            }})
        return report
