"""uefi-netboot-harness package."""

__all__ = [
    "artifact",
    "classifier",
    "cli",
    "config",
    "constants",
    "exceptions",
    "harness",
    "models",
    "network",
    "qemu",
    "report",
    "supervisor",
    "tftp",
    "utils",
]
