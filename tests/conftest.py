from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

from kvm_backup.core.config import Settings
from kvm_backup.services.email import NotificationService
from kvm_backup.services.errors import DomainNotFoundError, HypervisorError
from kvm_backup.services.kvm.base import BlockJobInfo, Hypervisor
from kvm_backup.services.storage.local import LocalBackupStorage


@dataclass
class FakeDisk:
    target: str
    base: str
    active: str
    device: str = "disk"


@dataclass
class FakeDomain:
    name: str
    disks: List[FakeDisk] = field(default_factory=list)


class FakeHypervisor(Hypervisor):
    """
    In-memory hypervisor that creates and removes real overlay files.

    Fault injection:
      - ``fail_snapshot``: domains whose snapshot fails after the first overlay
        was written; the partial overlays are rolled back like an atomic call
      - ``fail_commit`` / ``fail_pivot``: (domain, target) pairs
      - ``vanished``: domains listed as running but gone when queried
    """

    def __init__(self) -> None:
        self.domains: Dict[str, FakeDomain] = {}
        self.calls: List[Tuple[str, ...]] = []
        self.snapshot_xml: Dict[str, str] = {}
        self.fail_snapshot: Set[str] = set()
        self.fail_commit: Set[Tuple[str, str]] = set()
        self.fail_pivot: Set[Tuple[str, str]] = set()
        self.fail_connect = False
        self.vanished: Set[str] = set()
        self.jobs: Dict[Tuple[str, str], BlockJobInfo] = {}
        self.connected = False

    def add_domain(self, name: str, disks: List[Tuple[str, Path]], cdrom: Optional[Path] = None) -> FakeDomain:
        domain = FakeDomain(name=name)
        for target, path in disks:
            domain.disks.append(FakeDisk(target=target, base=str(path), active=str(path)))
        if cdrom is not None:
            domain.disks.append(FakeDisk(target="hdc", base=str(cdrom), active=str(cdrom), device="cdrom"))
        self.domains[name] = domain
        return domain

    def count(self, call: str) -> int:
        return sum(1 for c in self.calls if c[0] == call)

    def _domain(self, name: str) -> FakeDomain:
        if name not in self.domains or name in self.vanished:
            raise DomainNotFoundError(f"Domain not found: {name}")
        return self.domains[name]

    def _disk(self, name: str, target: str) -> FakeDisk:
        for disk in self._domain(name).disks:
            if disk.target == target:
                return disk
        raise HypervisorError(f"no disk {target} on {name}")

    def connect(self) -> None:
        self.calls.append(("connect",))
        if self.fail_connect:
            raise HypervisorError("connection refused")
        self.connected = True

    def close(self) -> None:
        self.calls.append(("close",))
        self.connected = False

    def list_running_domains(self) -> List[str]:
        self.calls.append(("list",))
        return list(self.domains)

    def dump_xml(self, domain: str) -> str:
        self.calls.append(("dump_xml", domain))
        dom = self._domain(domain)
        root = ET.Element("domain", type="kvm")
        ET.SubElement(root, "name").text = dom.name
        devices = ET.SubElement(root, "devices")
        for disk in dom.disks:
            disk_el = ET.SubElement(devices, "disk", type="file", device=disk.device)
            ET.SubElement(disk_el, "driver", name="qemu", type="qcow2")
            ET.SubElement(disk_el, "source", file=disk.active)
            ET.SubElement(disk_el, "target", dev=disk.target, bus="virtio")
        return ET.tostring(root, encoding="unicode")

    def create_snapshot(self, domain: str, snapshot_xml: str) -> None:
        self.calls.append(("create_snapshot", domain))
        self.snapshot_xml[domain] = snapshot_xml
        dom = self._domain(domain)
        root = ET.fromstring(snapshot_xml)
        name = root.findtext("name")

        created = []
        for disk_el in root.findall("./disks/disk"):
            disk = self._disk(domain, disk_el.get("name"))
            source = disk_el.find("source")
            overlay = source.get("file") if source is not None else f"{disk.base}.{name}"
            Path(overlay).write_bytes(b"overlay")
            created.append((disk, overlay))

            if domain in self.fail_snapshot:
                for _, path in created:
                    Path(path).unlink()
                raise HypervisorError(f"snapshot of {dom.name} failed")

        for disk, overlay in created:
            disk.active = overlay

    def start_block_commit(self, domain: str, target: str) -> None:
        self.calls.append(("block_commit", domain, target))
        self._disk(domain, target)
        if (domain, target) in self.fail_commit:
            raise HypervisorError(f"block commit of {target} failed")
        self.jobs[(domain, target)] = BlockJobInfo(cur=0, end=100)

    def block_job_info(self, domain: str, target: str) -> Optional[BlockJobInfo]:
        self.calls.append(("block_job_info", domain, target))
        job = self.jobs.get((domain, target))
        if job is None:
            return None
        job.cur = min(job.end, job.cur + 50)
        job.ready = job.cur == job.end
        return BlockJobInfo(cur=job.cur, end=job.end, ready=job.ready)

    def pivot(self, domain: str, target: str) -> None:
        self.calls.append(("pivot", domain, target))
        disk = self._disk(domain, target)
        if (domain, target) in self.fail_pivot:
            raise HypervisorError(f"pivot of {target} failed")
        job = self.jobs.pop((domain, target))
        assert job.ready
        disk.active = disk.base


class RecordingNotifier(NotificationService):
    """Notification service that records mails instead of sending them."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings, mail_enabled=True)
        self.sent: List[Tuple[str, str]] = []

    def send_mail(self, subject: str, body: str) -> bool:
        self.sent.append((subject, body))
        return True


def make_image(path: Path, data: bytes = b"QFI\xfb", size: int = 1024 * 1024) -> Path:
    """Create a mostly sparse image file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
        f.truncate(size)
    return path


@pytest.fixture
def images_dir(tmp_path: Path) -> Path:
    path = tmp_path / "img"
    path.mkdir()
    return path


@pytest.fixture
def backup_dir(tmp_path: Path) -> Path:
    return tmp_path / "backup"


@pytest.fixture
def settings(images_dir: Path, backup_dir: Path) -> Settings:
    return Settings(
        IMAGES_PATH=str(images_dir),
        BACKUP_PATH=str(backup_dir),
        MAIL_ENABLED=False,
        SYSLOG_ENABLED=False,
        LOG_FILE=None,
        BLOCK_JOB_POLL_INTERVAL=0,
        SNAPSHOT_OVERLAY_SUFFIX="snap",
        _env_file=None,
    )


@pytest.fixture
def hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def notifier(settings: Settings) -> RecordingNotifier:
    return RecordingNotifier(settings)


@pytest.fixture
def storage(backup_dir: Path) -> LocalBackupStorage:
    backup_dir.mkdir(parents=True, exist_ok=True)
    return LocalBackupStorage(backup_dir)


@pytest.fixture
def run_date() -> date:
    return date(2024, 1, 1)
