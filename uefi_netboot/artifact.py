"""Boot artifact lookup for the UEFI netboot harness."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from uefi_netboot.exceptions import ArtifactNotFound, ArtifactUnreadable, InvalidConfig
from uefi_netboot.models import BootArtifact
from uefi_netboot.utils import log


def validate_boot_file_name(name: str) -> str:
    """The firmware requests a bare file name from the TFTP root."""
    candidate = (name or "").strip()
    if not candidate or candidate in {".", ".."} or "/" in candidate or "\\" in candidate:
        raise InvalidConfig(f"Boot file name '{name}' must be a plain file name without path separators")
    return candidate


def locate_artifact(build_dir: Path, binary_name: str, boot_file: Optional[str] = None) -> BootArtifact:
    """Resolve the compiled UEFI application inside ``build_dir``.

    The boot-file name defaults to the binary name. Nothing is created or
    modified on disk.
    """
    boot_name = validate_boot_file_name(boot_file if boot_file is not None else binary_name)
    path = (Path(build_dir).expanduser() / binary_name).resolve()
    if not path.exists():
        raise ArtifactNotFound(
            f"Boot artifact not found: {path}\n"
            "  Build the UEFI application first or point ARTIFACT_DIR/ARTIFACT_NAME at it."
        )
    if not path.is_file():
        raise ArtifactUnreadable(f"Boot artifact is not a regular file: {path}")
    if not os.access(path, os.R_OK):
        raise ArtifactUnreadable(f"Boot artifact is not readable: {path}")
    log("DEBUG", f"Boot artifact: {path} (served as '{boot_name}')")
    return BootArtifact(path=path, boot_file=boot_name)
