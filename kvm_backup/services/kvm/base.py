"""
Hypervisor interface consumed by the backup run.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class BlockJobInfo:
    """Progress of a running block job."""
    cur: int
    end: int
    ready: bool = False


class Hypervisor(ABC):
    """
    Abstract base class for the hypervisor management layer.

    Implementations raise ``HypervisorError`` (``DomainNotFoundError`` for a
    vanished domain) for every failed call.
    """

    @abstractmethod
    def connect(self) -> None:
        """Open the connection to the hypervisor."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the connection. Safe to call when not connected."""
        pass

    @abstractmethod
    def list_running_domains(self) -> List[str]:
        """Return the names of all running domains (may be empty)."""
        pass

    @abstractmethod
    def dump_xml(self, domain: str) -> str:
        """Return the domain's full live XML definition."""
        pass

    @abstractmethod
    def create_snapshot(self, domain: str, snapshot_xml: str) -> None:
        """
        Create an external snapshot from a ``<domainsnapshot>`` document.

        The request is always disk-only, atomic across every listed disk,
        and leaves no snapshot metadata behind in the hypervisor. Blocks
        until every overlay exists.
        """
        pass

    @abstractmethod
    def start_block_commit(self, domain: str, target: str) -> None:
        """Start an active block-commit of the target's top layer into its base."""
        pass

    @abstractmethod
    def block_job_info(self, domain: str, target: str) -> Optional[BlockJobInfo]:
        """Return progress of the target's block job, or None when no job runs."""
        pass

    @abstractmethod
    def pivot(self, domain: str, target: str) -> None:
        """Finish a ready active commit by pivoting the disk onto the base image."""
        pass
