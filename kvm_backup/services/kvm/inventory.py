"""
Disk inventory for a running domain.
"""
import logging
import xml.etree.ElementTree as ET
from typing import List

from kvm_backup.models import DiskEntry
from kvm_backup.services.errors import HypervisorError, InventoryError
from kvm_backup.services.kvm.base import Hypervisor

logger = logging.getLogger(__name__)


class DiskInventory:
    """Resolves the disks of a domain from its live XML definition."""

    def __init__(self, hypervisor: Hypervisor):
        self.hypervisor = hypervisor

    def resolve(self, domain: str) -> List[DiskEntry]:
        """
        Return the domain's disk devices in definition order.

        Only ``device='disk'`` entries with a file or block source are
        returned; CD-ROM and floppy devices are skipped.

        Raises:
            InventoryError: If the domain cannot be queried
        """
        try:
            xml_desc = self.hypervisor.dump_xml(domain)
        except HypervisorError as e:
            raise InventoryError(f"Could not query disks of {domain}: {e}", domain=domain) from e

        try:
            root = ET.fromstring(xml_desc)
        except ET.ParseError as e:
            raise InventoryError(f"Invalid XML definition for {domain}: {e}", domain=domain) from e

        disks = []
        for disk in root.findall("./devices/disk[@device='disk']"):
            source = disk.find("source")
            target = disk.find("target")
            if source is None or target is None:
                continue
            if disk.find("readonly") is not None:
                continue

            path = source.get("file") or source.get("dev")
            dev = target.get("dev")
            if not path or not dev:
                continue
            disks.append(DiskEntry(target=dev, path=path))

        logger.info(
            f"{domain} targets: {' '.join(d.target for d in disks)}",
            extra={"details": {"domain": domain, "disks": [(d.target, d.path) for d in disks]}}
        )
        return disks

    def active_path(self, domain: str, target: str) -> str:
        """
        Return the current active source of one disk target.

        Raises:
            InventoryError: If the domain or the target is gone
        """
        for disk in self.resolve(domain):
            if disk.target == target:
                return disk.path
        raise InventoryError(f"Disk {target} not found on {domain}", domain=domain, target=target)
