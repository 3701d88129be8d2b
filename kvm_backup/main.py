#!/usr/bin/env python3
"""
Live KVM backup tool.

Backs up the disks of every running domain without shutting it down:
an external disk-only snapshot freezes the images, the images are copied
to date-stamped folders, and an active block-commit merges the overlays
back and pivots each domain onto its original images.

Usage:
    kvm-backup
    kvm-backup --images-path /mnt/storage/libvirt --backup-path /mnt/storage/backups
    kvm-backup --uri qemu:///system --no-mail

Exit status is 1 when a pre-flight check failed and 0 otherwise; failures of
single domains or disks are reported through the log and notification mail.
"""

import argparse
import logging
import sys
from typing import List, Optional

from kvm_backup import __version__
from kvm_backup.core.config import Settings, settings as default_settings
from kvm_backup.core.logging_handler import setup_logging
from kvm_backup.models import RunReport
from kvm_backup.services.email import NotificationService
from kvm_backup.services.errors import FatalPreflightError
from kvm_backup.services.kvm.base import Hypervisor
from kvm_backup.services.orchestrator import BackupRun

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kvm-backup",
        description="Live backup of running KVM domains using external snapshots and active blockcommit"
    )
    parser.add_argument("--images-path", help="Directory holding the domain disk images")
    parser.add_argument("--backup-path", help="Directory to create date-stamped backup folders in")
    parser.add_argument("--uri", help="libvirt connection URI")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level"
    )
    parser.add_argument("--no-mail", action="store_true", help="Do not send notification mail")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def create_hypervisor(settings: Settings) -> Hypervisor:
    """Connect-on-demand libvirt hypervisor for the configured URI."""
    from kvm_backup.services.kvm.libvirt_hypervisor import LibvirtHypervisor

    return LibvirtHypervisor(settings.LIBVIRT_DEFAULT_URI)


def print_report(report: RunReport) -> None:
    """Print a run summary."""
    print("\n" + "=" * 70)
    print(f"BACKUP REPORT: {report.run_date.isoformat()}")
    print("=" * 70)

    if not report.domains:
        print("\nNo running KVM domains were backed up.")

    for domain in report.domains:
        print(f"\n{domain.domain}: {domain.status.value}")
        if domain.error:
            print(f"  error: {domain.error}")
        for archive in domain.archives:
            print(f"  copy  {archive.target}: {archive.status.value} {archive.destination or archive.error or ''}")
        for merge in domain.merges:
            print(f"  merge {merge.target}: {merge.status.value} {merge.error or ''}")

    counts = report.counts()
    print(f"\nSucceeded: {counts['success']}  Failed: {counts['failed']}  Skipped: {counts['skipped']}")
    print("=" * 70)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.images_path:
        overrides["IMAGES_PATH"] = args.images_path
    if args.backup_path:
        overrides["BACKUP_PATH"] = args.backup_path
    if args.uri:
        overrides["LIBVIRT_DEFAULT_URI"] = args.uri
    if args.log_level:
        overrides["LOG_LEVEL"] = args.log_level
    if args.no_mail:
        overrides["MAIL_ENABLED"] = False
    settings = default_settings.model_copy(update=overrides)

    setup_logging(settings)

    run = BackupRun(
        settings,
        create_hypervisor(settings),
        notifier=NotificationService(settings)
    )

    try:
        report = run.run()
    except FatalPreflightError as e:
        print(f"ERROR: {e}")
        return 1

    print_report(report)
    return 0


if __name__ == "__main__":
    sys.exit(main())
