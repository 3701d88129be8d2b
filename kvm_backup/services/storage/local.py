"""
Local filesystem backup storage.
"""
import logging
import os
import shutil
import subprocess
from datetime import date
from pathlib import Path
from typing import Union

from kvm_backup.services.errors import ArchiveError

logger = logging.getLogger(__name__)


class LocalBackupStorage:
    """
    Backup tree laid out as ``<base_path>/<domain>/<YYYY-MM-DD>/``.
    """

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)

    def ensure_root(self) -> None:
        """Create the backup root if it does not exist yet."""
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, path: Union[str, Path]) -> Path:
        """Get full filesystem path from relative path."""
        full_path = self.base_path / path
        # Ensure path is within base_path (security check)
        if not str(full_path.resolve()).startswith(str(self.base_path.resolve())):
            raise ArchiveError(f"Path {path} is outside base path")
        return full_path

    def wipe(self) -> int:
        """
        Delete every previous backup below the root. The root itself stays.

        Returns:
            Number of top-level entries removed
        """
        removed = 0
        for entry in self.base_path.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            logger.info(f"Removed previous backup: {entry}")
            removed += 1
        return removed

    def free_space(self) -> int:
        """Bytes available to unprivileged users on the backup volume."""
        stat = os.statvfs(self.base_path)
        return stat.f_bavail * stat.f_frsize

    @staticmethod
    def images_usage(images_path: Union[str, Path], pattern: str = "*.qcow2") -> int:
        """
        Bytes allocated on disk by the images matching ``pattern``.

        Counts allocated blocks rather than apparent size, so sparse images
        are not over-counted.
        """
        total = 0
        for image in Path(images_path).glob(pattern):
            if image.is_file():
                total += image.stat().st_blocks * 512
        return total

    def backup_folder(self, domain: str, run_date: date) -> Path:
        """Create (if needed) and return the date-stamped folder of a domain."""
        folder = self._get_full_path(Path(domain) / run_date.strftime("%Y-%m-%d"))
        folder.mkdir(parents=True, exist_ok=True)
        return folder

    def copy_sparse(self, source: Union[str, Path], folder: Path) -> Path:
        """
        Copy an image into ``folder`` keeping holes unallocated.

        Raises:
            ArchiveError: If the destination already exists or the copy failed;
                a partial destination is removed
        """
        source = Path(source)
        destination = folder / source.name
        if destination.exists():
            raise ArchiveError(f"Refusing to overwrite {destination} with {source}")

        cmd = ["cp", "--sparse=always", "--preserve=mode,timestamps", str(source), str(destination)]
        logger.debug(f"Executing copy command: {' '.join(cmd)}", extra={"details": {"command": cmd}})

        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True)
        except (subprocess.CalledProcessError, OSError) as e:
            error = e.stderr.strip() if isinstance(e, subprocess.CalledProcessError) and e.stderr else str(e)
            try:
                destination.unlink()
            except FileNotFoundError:
                pass
            except OSError as cleanup_error:
                logger.warning(f"Failed to remove partial copy {destination}: {cleanup_error}")
            raise ArchiveError(f"Failed to copy {source} to {destination}: {error}") from e

        return destination

    def write_descriptor(self, folder: Path, domain: str, xml_desc: str) -> Path:
        """Write the domain XML definition next to the copied images."""
        descriptor = folder / f"{domain}.xml"
        descriptor.write_text(xml_desc, encoding="utf-8")
        return descriptor
