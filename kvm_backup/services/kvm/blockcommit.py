"""
Live merge of snapshot overlays back into their base images.

Uses an active block-commit followed by a pivot, so the guest keeps running
and each disk ends up on a single image again after every run.
"""
import logging
import os
import time
from pathlib import Path
from typing import List, Optional

from kvm_backup.models import BackupStatus, DiskEntry, MergeResult, Severity
from kvm_backup.services.email import NotificationService
from kvm_backup.services.errors import HypervisorError, InventoryError, MergeError
from kvm_backup.services.kvm.base import Hypervisor, BlockJobInfo
from kvm_backup.services.kvm.inventory import DiskInventory
from kvm_backup.services.storage.local import LocalBackupStorage

logger = logging.getLogger(__name__)


class BlockCommitMerger:
    """Commits and pivots every disk of a domain, one disk at a time."""

    def __init__(
        self,
        hypervisor: Hypervisor,
        inventory: DiskInventory,
        storage: LocalBackupStorage,
        notifier: NotificationService,
        poll_interval: float = 1.0
    ):
        self.hypervisor = hypervisor
        self.inventory = inventory
        self.storage = storage
        self.notifier = notifier
        self.poll_interval = poll_interval

    def _wait_for_job(self, domain: str, target: str) -> BlockJobInfo:
        """
        Poll the block job until it is ready to pivot.

        There is no timeout: a job that never becomes ready blocks the run.
        """
        while True:
            try:
                info = self.hypervisor.block_job_info(domain, target)
            except HypervisorError as e:
                raise MergeError(str(e), domain=domain, target=target) from e

            if info is None:
                raise MergeError(
                    f"Block commit job for {target} of {domain} ended before it was ready",
                    domain=domain,
                    target=target
                )
            if info.ready:
                return info

            logger.debug(f"Block commit of {target} on {domain}: {info.cur}/{info.end}")
            time.sleep(self.poll_interval)

    def commit(self, domain: str, disk: DiskEntry) -> MergeResult:
        """
        Merge the active overlay of one disk into its base image and pivot.

        The overlay file is only removed once the domain is confirmed to run
        on the base image again.

        Raises:
            MergeError: If the commit or pivot failed. The overlay is left in
                place because the guest may still be writing to it.
        """
        result = MergeResult(target=disk.target, base_path=disk.path)

        try:
            overlay = self.inventory.active_path(domain, disk.target)
        except InventoryError as e:
            raise MergeError(str(e), domain=domain, target=disk.target) from e

        result.overlay_path = overlay
        logger.info(f"{domain} backup image: {overlay}")

        if overlay == disk.path:
            raise MergeError(
                f"No snapshot overlay is active for {disk.target} of {domain}",
                domain=domain,
                target=disk.target,
                overlay=overlay
            )

        try:
            self.hypervisor.start_block_commit(domain, disk.target)
            self._wait_for_job(domain, disk.target)
            self.hypervisor.pivot(domain, disk.target)
        except HypervisorError as e:
            raise MergeError(str(e), domain=domain, target=disk.target, overlay=overlay) from e
        except MergeError as e:
            e.overlay = overlay
            raise

        try:
            active = self.inventory.active_path(domain, disk.target)
        except InventoryError as e:
            raise MergeError(str(e), domain=domain, target=disk.target, overlay=overlay) from e

        if active != disk.path:
            raise MergeError(
                f"Disk {disk.target} of {domain} still runs on {active} after pivot",
                domain=domain,
                target=disk.target,
                overlay=overlay
            )

        logger.info("The blockcommit operation has completed, the live QEMU was pivoted to the base image.")
        result.status = BackupStatus.SUCCESS

        logger.info(f"Removing left over backup for {domain}: {overlay}")
        try:
            os.remove(overlay)
            result.overlay_removed = True
        except FileNotFoundError:
            result.overlay_removed = True
        except OSError as e:
            self.notifier.notify(
                f"WARNING: failed to remove left over overlay {overlay} of {domain}: {e}",
                Severity.WARNING,
                details={"domain": domain, "target": disk.target, "overlay": overlay}
            )

        return result

    def merge_all(self, domain: str, disks: List[DiskEntry], folder: Optional[Path]) -> List[MergeResult]:
        """
        Commit every disk of a domain, continuing past failed disks.

        After each successful pivot the domain definition is dumped into
        ``folder``, so the descriptor reflects the single-image disk chain.
        Without a folder the descriptor is not written.
        """
        logger.info("Perform active blockcommit by live merging contents of qcow2 overlay into base.")
        results = []

        for disk in disks:
            try:
                result = self.commit(domain, disk)
            except MergeError as e:
                result = MergeResult(
                    target=disk.target,
                    base_path=disk.path,
                    overlay_path=e.overlay,
                    status=BackupStatus.FAILED,
                    error=str(e)
                )
                self.notifier.notify(
                    f"ERROR: could not merge changes for disk of {disk.target} of {domain}. "
                    f"VM may be in invalid state. ({e})",
                    Severity.CRITICAL,
                    details={"domain": domain, "target": disk.target, "error": str(e)}
                )
                results.append(result)
                continue

            results.append(result)
            if folder is not None:
                self._dump_configuration(domain, folder)
            self.notifier.notify(
                f"Finished backup of {disk.target} of {domain}",
                Severity.INFO,
                details={"domain": domain, "target": disk.target, "overlay": result.overlay_path}
            )

        return results

    def _dump_configuration(self, domain: str, folder: Path) -> None:
        logger.info(f"Dumping configuration information for {domain}")
        try:
            xml_desc = self.hypervisor.dump_xml(domain)
            self.storage.write_descriptor(folder, domain, xml_desc)
        except (HypervisorError, OSError) as e:
            self.notifier.notify(
                f"ERROR: failed to dump configuration of {domain}: {e}",
                Severity.ERROR,
                details={"domain": domain}
            )
