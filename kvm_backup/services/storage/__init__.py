"""
Backup storage and image archiving.
"""
from kvm_backup.services.storage.local import LocalBackupStorage
from kvm_backup.services.storage.archiver import ImageArchiver

__all__ = [
    "LocalBackupStorage",
    "ImageArchiver"
]
