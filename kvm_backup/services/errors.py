"""
Exception hierarchy for the backup run.
"""
from typing import Optional


class KVMBackupError(Exception):
    """Base exception for backup run errors."""

    def __init__(self, message: str, domain: Optional[str] = None, target: Optional[str] = None):
        super().__init__(message)
        self.domain = domain
        self.target = target


class FatalPreflightError(KVMBackupError):
    """Exception raised when a run pre-condition fails. Aborts the whole run."""
    pass


class InventoryError(KVMBackupError):
    """Exception raised when a domain's disks cannot be queried."""
    pass


class SnapshotError(KVMBackupError):
    """Exception raised when the external snapshot could not be created."""
    pass


class ArchiveError(KVMBackupError):
    """Exception raised when a base image could not be copied to backup storage."""
    pass


class MergeError(KVMBackupError):
    """Exception raised when block-commit or pivot failed for a disk."""

    def __init__(self, message: str, domain: Optional[str] = None, target: Optional[str] = None,
                 overlay: Optional[str] = None):
        super().__init__(message, domain=domain, target=target)
        self.overlay = overlay


class HypervisorError(Exception):
    """Exception raised for hypervisor call failures."""
    pass


class DomainNotFoundError(HypervisorError):
    """Exception raised when a domain no longer exists."""
    pass
