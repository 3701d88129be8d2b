"""
Email notification services.
"""

from kvm_backup.services.email.notifications import NotificationService

__all__ = ['NotificationService']
