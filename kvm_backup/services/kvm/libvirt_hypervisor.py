"""
libvirt implementation of the hypervisor interface.
"""
import logging
import xml.etree.ElementTree as ET
from typing import List, Optional

import libvirt

from kvm_backup.services.errors import HypervisorError, DomainNotFoundError
from kvm_backup.services.kvm.base import Hypervisor, BlockJobInfo

logger = logging.getLogger(__name__)

SNAPSHOT_FLAGS = (
    libvirt.VIR_DOMAIN_SNAPSHOT_CREATE_NO_METADATA |
    libvirt.VIR_DOMAIN_SNAPSHOT_CREATE_ATOMIC |
    libvirt.VIR_DOMAIN_SNAPSHOT_CREATE_DISK_ONLY
)

# Shallow: merge only the top overlay into its direct backing image, never
# further down a linked-clone chain
COMMIT_FLAGS = libvirt.VIR_DOMAIN_BLOCK_COMMIT_ACTIVE | libvirt.VIR_DOMAIN_BLOCK_COMMIT_SHALLOW


class LibvirtHypervisor(Hypervisor):
    """Hypervisor backed by a libvirt connection."""

    def __init__(self, uri: str):
        """
        Initialize the libvirt hypervisor.

        Args:
            uri: libvirt connection URI (e.g. qemu:///system)
        """
        self.uri = uri
        self.conn: Optional[libvirt.virConnect] = None

    def connect(self) -> None:
        if self.conn is not None:
            return
        try:
            logger.info(f"Connecting to libvirt host: {self.uri}")
            conn = libvirt.open(self.uri)
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to connect to libvirt URI {self.uri}: {e}") from e

        if conn is None:
            raise HypervisorError(f"Failed to connect to libvirt URI: {self.uri}")

        self.conn = conn
        logger.info(f"Connected to libvirt host: {self.uri}")

    def close(self) -> None:
        if self.conn is None:
            return
        try:
            self.conn.close()
        except libvirt.libvirtError as e:
            logger.warning(f"Failed to close libvirt connection: {e}")
        finally:
            self.conn = None

    def _get_connection(self) -> libvirt.virConnect:
        if self.conn is None:
            self.connect()
        return self.conn

    def _lookup(self, domain: str) -> libvirt.virDomain:
        try:
            return self._get_connection().lookupByName(domain)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                raise DomainNotFoundError(f"Domain not found: {domain}") from e
            raise HypervisorError(f"Failed to look up domain {domain}: {e}") from e

    def list_running_domains(self) -> List[str]:
        flags = libvirt.VIR_CONNECT_LIST_DOMAINS_ACTIVE | libvirt.VIR_CONNECT_LIST_DOMAINS_RUNNING
        try:
            return [dom.name() for dom in self._get_connection().listAllDomains(flags)]
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to list running domains: {e}") from e

    def dump_xml(self, domain: str) -> str:
        dom = self._lookup(domain)
        try:
            return dom.XMLDesc(0)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                raise DomainNotFoundError(f"Domain not found: {domain}") from e
            raise HypervisorError(f"Failed to dump XML of {domain}: {e}") from e

    def create_snapshot(self, domain: str, snapshot_xml: str) -> None:
        dom = self._lookup(domain)
        try:
            dom.snapshotCreateXML(snapshot_xml, SNAPSHOT_FLAGS)
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to create snapshot for {domain}: {e}") from e

    def start_block_commit(self, domain: str, target: str) -> None:
        dom = self._lookup(domain)
        try:
            dom.blockCommit(target, None, None, 0, COMMIT_FLAGS)
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to start block commit of {target} on {domain}: {e}") from e

    def block_job_info(self, domain: str, target: str) -> Optional[BlockJobInfo]:
        dom = self._lookup(domain)
        try:
            info = dom.blockJobInfo(target, 0)
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to query block job of {target} on {domain}: {e}") from e

        if not info:
            return None

        cur = info.get("cur", 0)
        end = info.get("end", 0)
        # cur and end are both 0 before the job has sized its work, so the
        # mirror's ready flag in the live XML is authoritative when present
        ready = self._mirror_ready(dom, target)
        if ready is None:
            ready = end > 0 and cur == end
        return BlockJobInfo(cur=cur, end=end, ready=ready)

    @staticmethod
    def _mirror_ready(dom: libvirt.virDomain, target: str) -> Optional[bool]:
        try:
            root = ET.fromstring(dom.XMLDesc(0))
        except (libvirt.libvirtError, ET.ParseError) as e:
            logger.debug(f"Could not read mirror state of {target}: {e}")
            return None

        for disk in root.findall("./devices/disk"):
            disk_target = disk.find("target")
            if disk_target is None or disk_target.get("dev") != target:
                continue
            mirror = disk.find("mirror")
            if mirror is None or mirror.get("ready") is None:
                return None
            return mirror.get("ready") == "yes"
        return None

    def pivot(self, domain: str, target: str) -> None:
        dom = self._lookup(domain)
        try:
            dom.blockJobAbort(target, libvirt.VIR_DOMAIN_BLOCK_JOB_ABORT_PIVOT)
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to pivot {target} on {domain}: {e}") from e
