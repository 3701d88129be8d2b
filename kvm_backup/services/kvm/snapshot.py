"""
External disk-only snapshot creation.
"""
import logging
import xml.etree.ElementTree as ET
from typing import List, Optional

from kvm_backup.models import DiskEntry, SnapshotResult
from kvm_backup.services.errors import HypervisorError, SnapshotError
from kvm_backup.services.kvm.base import Hypervisor

logger = logging.getLogger(__name__)


class SnapshotCoordinator:
    """
    Redirects guest writes of every disk of a domain to new overlay files.

    After a successful snapshot the original images are frozen and can be
    copied while the guest keeps running.
    """

    def __init__(
        self,
        hypervisor: Hypervisor,
        name_prefix: str = "kvm-backup-of-",
        overlay_suffix: Optional[str] = None
    ):
        """
        Args:
            hypervisor: Hypervisor to issue the snapshot request against
            name_prefix: Prefix of the snapshot name, followed by the domain name
            overlay_suffix: When set, overlays are created as ``<image>.<suffix>``;
                otherwise the hypervisor chooses the overlay file names
        """
        self.hypervisor = hypervisor
        self.name_prefix = name_prefix
        self.overlay_suffix = overlay_suffix

    def snapshot_name(self, domain: str) -> str:
        return f"{self.name_prefix}{domain}"

    def build_snapshot_xml(self, domain: str, disks: List[DiskEntry]) -> str:
        root = ET.Element("domainsnapshot")
        ET.SubElement(root, "name").text = self.snapshot_name(domain)
        disks_el = ET.SubElement(root, "disks")
        for disk in disks:
            disk_el = ET.SubElement(disks_el, "disk", name=disk.target, snapshot="external")
            if self.overlay_suffix:
                ET.SubElement(disk_el, "source", file=f"{disk.path}.{self.overlay_suffix}")
        return ET.tostring(root, encoding="unicode")

    def create(self, domain: str, disks: List[DiskEntry]) -> SnapshotResult:
        """
        Snapshot all disks of a domain in a single atomic request.

        Raises:
            SnapshotError: If the hypervisor rejected the request. No overlay
                exists afterwards, so there is nothing to merge or clean up.
        """
        if not disks:
            raise SnapshotError(f"No disks to snapshot for {domain}", domain=domain)

        name = self.snapshot_name(domain)
        logger.info(f"Attempting to create a snapshot for {domain}", extra={"details": {
            "domain": domain,
            "snapshot_name": name,
            "targets": [d.target for d in disks]
        }})

        try:
            self.hypervisor.create_snapshot(domain, self.build_snapshot_xml(domain, disks))
        except HypervisorError as e:
            raise SnapshotError(f"Failed to create snapshot for {domain}: {e}", domain=domain) from e

        logger.info(f"Created snapshot {name} for {domain}")
        return SnapshotResult(domain=domain, name=name, disks=list(disks))
