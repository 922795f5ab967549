"""Ephemeral TFTP root provisioning for the UEFI netboot harness."""

from __future__ import annotations

import os
import shutil
import tempfile
import weakref
from pathlib import Path
from typing import Optional

from uefi_netboot.constants import TFTP_DIR_PREFIX
from uefi_netboot.exceptions import ProvisionError
from uefi_netboot.models import BootArtifact, TftpRoot
from uefi_netboot.utils import ensure_directory, log


def _remove_tree(path: str) -> None:
    shutil.rmtree(path, ignore_errors=True)


class TftpProvisioner:
    """Own one private directory that QEMU's user-mode TFTP server serves.

    The directory is created per run and holds exactly the boot artifact under
    the name the firmware requests. Removal is registered with
    ``weakref.finalize`` as soon as the directory exists, so it also happens
    at interpreter exit when a later stage crashes before ``cleanup()``.
    """

    def __init__(
        self,
        artifact: BootArtifact,
        base_dir: Optional[Path] = None,
        keep: bool = False,
        link: bool = False,
    ) -> None:
        self.artifact = artifact
        self.base_dir = base_dir
        self.keep = keep
        self.link = link
        self.root: Optional[TftpRoot] = None
        self._path: Optional[Path] = None
        self._finalizer: Optional[weakref.finalize] = None

    def __enter__(self) -> TftpRoot:
        return self.provision()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def provision(self) -> TftpRoot:
        """Place the artifact in the TFTP root, replacing anything already there."""
        try:
            if self._path is None:
                self._path = self._create_directory()
            else:
                self._clear()
            target = self._path / self.artifact.boot_file
            if self.link:
                target.symlink_to(self.artifact.path)
            else:
                self._copy(self.artifact.path, target)
        except OSError as exc:
            raise ProvisionError(f"Failed to provision TFTP root {self._path}: {exc}") from exc

        self.root = TftpRoot(path=self._path, files=frozenset({self.artifact.boot_file}))
        mode = "linked" if self.link else "copied"
        log("INFO", f"TFTP root: {self._path} ({self.artifact.boot_file} {mode} from {self.artifact.path})")
        return self.root

    def cleanup(self) -> None:
        if self._path is None:
            return
        if self.keep:
            if self._finalizer is not None:
                self._finalizer.detach()
            log("INFO", f"Keeping TFTP root for inspection: {self._path}")
        elif self._finalizer is not None and self._finalizer.alive:
            self._finalizer()
            log("DEBUG", f"Removed TFTP root {self._path}")
        self._finalizer = None
        self._path = None
        self.root = None

    def _create_directory(self) -> Path:
        if self.base_dir is not None:
            ensure_directory(self.base_dir)
        path = Path(tempfile.mkdtemp(prefix=TFTP_DIR_PREFIX, dir=self.base_dir))
        self._finalizer = weakref.finalize(self, _remove_tree, str(path))
        return path

    def _clear(self) -> None:
        assert self._path is not None
        for entry in self._path.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()

    @staticmethod
    def _copy(source: Path, destination: Path) -> None:
        with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, prefix=".partial-") as tmp:
            tmp_path = Path(tmp.name)
        try:
            shutil.copyfile(source, tmp_path)
            os.chmod(tmp_path, 0o644)
            tmp_path.replace(destination)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
