"""
KVM/libvirt backup steps.

The libvirt implementation lives in ``kvm_backup.services.kvm.libvirt_hypervisor``
and is imported on demand so the workflow can run against other hypervisor
implementations without libvirt installed.
"""
from kvm_backup.services.kvm.base import Hypervisor, BlockJobInfo
from kvm_backup.services.kvm.inventory import DiskInventory
from kvm_backup.services.kvm.snapshot import SnapshotCoordinator
from kvm_backup.services.kvm.blockcommit import BlockCommitMerger

__all__ = [
    "Hypervisor",
    "BlockJobInfo",
    "DiskInventory",
    "SnapshotCoordinator",
    "BlockCommitMerger"
]
