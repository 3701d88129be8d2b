from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from conftest import FakeHypervisor, RecordingNotifier, make_image
from kvm_backup.models import BackupStatus
from kvm_backup.services.errors import MergeError
from kvm_backup.services.kvm.base import BlockJobInfo
from kvm_backup.services.kvm.blockcommit import BlockCommitMerger
from kvm_backup.services.kvm.inventory import DiskInventory
from kvm_backup.services.kvm.snapshot import SnapshotCoordinator
from kvm_backup.services.storage.local import LocalBackupStorage


@pytest.fixture
def merger(hypervisor: FakeHypervisor, storage: LocalBackupStorage, notifier: RecordingNotifier) -> BlockCommitMerger:
    return BlockCommitMerger(hypervisor, DiskInventory(hypervisor), storage, notifier, poll_interval=0)


def _snapshotted(hypervisor: FakeHypervisor, images_dir: Path, targets=("vda",)) -> list:
    hypervisor.add_domain(
        "vm1",
        [(target, make_image(images_dir / f"vm1-{target}.qcow2")) for target in targets]
    )
    disks = DiskInventory(hypervisor).resolve("vm1")
    SnapshotCoordinator(hypervisor, overlay_suffix="snap").create("vm1", disks)
    return disks


def test_commit_pivots_and_removes_overlay(
    merger: BlockCommitMerger, hypervisor: FakeHypervisor, images_dir: Path
) -> None:
    disks = _snapshotted(hypervisor, images_dir)
    overlay = Path(f"{disks[0].path}.snap")
    assert overlay.exists()

    result = merger.commit("vm1", disks[0])

    assert result.status == BackupStatus.SUCCESS
    assert result.overlay_path == str(overlay)
    assert result.overlay_removed
    assert not overlay.exists()
    assert DiskInventory(hypervisor).active_path("vm1", "vda") == disks[0].path
    assert hypervisor.count("block_job_info") == 2
    assert hypervisor.count("pivot") == 1


def test_commit_failure_keeps_overlay(
    merger: BlockCommitMerger, hypervisor: FakeHypervisor, images_dir: Path
) -> None:
    disks = _snapshotted(hypervisor, images_dir)
    hypervisor.fail_commit.add(("vm1", "vda"))

    with pytest.raises(MergeError) as exc_info:
        merger.commit("vm1", disks[0])

    assert exc_info.value.overlay == f"{disks[0].path}.snap"
    assert Path(f"{disks[0].path}.snap").exists()


def test_pivot_failure_keeps_overlay(
    merger: BlockCommitMerger, hypervisor: FakeHypervisor, images_dir: Path
) -> None:
    disks = _snapshotted(hypervisor, images_dir)
    hypervisor.fail_pivot.add(("vm1", "vda"))

    with pytest.raises(MergeError):
        merger.commit("vm1", disks[0])

    assert Path(f"{disks[0].path}.snap").exists()
    assert DiskInventory(hypervisor).active_path("vm1", "vda") == f"{disks[0].path}.snap"


def test_job_ending_before_ready_is_a_merge_error(
    merger: BlockCommitMerger, hypervisor: FakeHypervisor, images_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    disks = _snapshotted(hypervisor, images_dir)
    monkeypatch.setattr(hypervisor, "block_job_info", lambda domain, target: None)

    with pytest.raises(MergeError) as exc_info:
        merger.commit("vm1", disks[0])

    assert "ended before it was ready" in str(exc_info.value)
    assert exc_info.value.overlay == f"{disks[0].path}.snap"
    assert hypervisor.count("pivot") == 0


def test_wait_polls_until_ready(
    merger: BlockCommitMerger, hypervisor: FakeHypervisor, monkeypatch: pytest.MonkeyPatch
) -> None:
    progress = iter([BlockJobInfo(0, 0), BlockJobInfo(10, 100), BlockJobInfo(100, 100, ready=True)])
    monkeypatch.setattr(hypervisor, "block_job_info", lambda domain, target: next(progress))

    info = merger._wait_for_job("vm1", "vda")

    assert info.ready
    assert info.cur == 100


def test_commit_without_active_overlay_is_refused(
    merger: BlockCommitMerger, hypervisor: FakeHypervisor, images_dir: Path
) -> None:
    hypervisor.add_domain("vm1", [("vda", make_image(images_dir / "vm1.qcow2"))])
    disk = DiskInventory(hypervisor).resolve("vm1")[0]

    with pytest.raises(MergeError):
        merger.commit("vm1", disk)

    assert hypervisor.count("block_commit") == 0


def test_merge_all_continues_after_failed_disk(
    merger: BlockCommitMerger,
    hypervisor: FakeHypervisor,
    storage: LocalBackupStorage,
    notifier: RecordingNotifier,
    images_dir: Path,
) -> None:
    disks = _snapshotted(hypervisor, images_dir, targets=("vda", "vdb"))
    hypervisor.fail_commit.add(("vm1", "vda"))
    folder = storage.backup_folder("vm1", date(2024, 1, 1))

    results = merger.merge_all("vm1", disks, folder)

    assert [r.status for r in results] == [BackupStatus.FAILED, BackupStatus.SUCCESS]
    assert results[0].overlay_path == f"{disks[0].path}.snap"
    assert Path(f"{disks[0].path}.snap").exists()
    assert not Path(f"{disks[1].path}.snap").exists()
    assert (folder / "vm1.xml").is_file()

    bodies = [body for _, body in notifier.sent]
    assert any("VM may be in invalid state" in body and "vda" in body for body in bodies)
    assert any(body.startswith("Finished backup of vdb of vm1") for body in bodies)


def test_merge_all_without_folder_skips_descriptor(
    merger: BlockCommitMerger, hypervisor: FakeHypervisor, storage: LocalBackupStorage, images_dir: Path
) -> None:
    disks = _snapshotted(hypervisor, images_dir)

    results = merger.merge_all("vm1", disks, None)

    assert results[0].status == BackupStatus.SUCCESS
    assert not list(storage.base_path.rglob("*.xml"))


def test_overlay_removal_failure_is_notified(
    merger: BlockCommitMerger,
    hypervisor: FakeHypervisor,
    notifier: RecordingNotifier,
    images_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    from kvm_backup.services.kvm import blockcommit

    disks = _snapshotted(hypervisor, images_dir)

    def _remove(path):
        raise PermissionError(13, "Permission denied", path)

    monkeypatch.setattr(blockcommit.os, "remove", _remove)

    result = merger.commit("vm1", disks[0])

    assert result.status == BackupStatus.SUCCESS
    assert not result.overlay_removed
    assert Path(f"{disks[0].path}.snap").exists()
    assert len(notifier.sent) == 1
    subject, body = notifier.sent[0]
    assert subject == "[KVM] Backup Errors Found"
    assert "failed to remove left over overlay" in body
