"""Global constants and defaults for the UEFI netboot harness."""

from __future__ import annotations

import os
import re
from pathlib import Path

# Defaults mirror the launch recipe the harness wraps:
#   qemu-system-x86_64 -smp 8 -enable-kvm -cpu host -m 128 -nographic -bios bios/OVMF.fd
#       -device driver=e1000,netdev=n0
#       -netdev user,id=n0,tftp=target/x86_64-unknown-uefi/debug,bootfile=pril.efi
DEFAULT_QEMU_BINARY = "qemu-system-x86_64"
DEFAULT_ARTIFACT_DIR = Path("target/x86_64-unknown-uefi/debug")
DEFAULT_ARTIFACT_NAME = "pril.efi"
DEFAULT_FIRMWARE_PATH = Path("bios/OVMF.fd")
DEFAULT_CPU_COUNT = 8
DEFAULT_SOCKETS = 1
DEFAULT_CPU_MODEL = "host"
DEFAULT_MEMORY_MB = 128
DEFAULT_NIC_MODEL = "e1000"
DEFAULT_NETDEV_ID = "n0"
DEFAULT_ACCEL = "auto"

DEFAULT_TIMEOUT = 60.0
DEFAULT_GRACE_PERIOD = 5.0
# keep reading after a failure marker so the panic location that follows it is captured
FAILURE_DRAIN_PERIOD = 0.5
DEFAULT_TAIL_LINES = 40
MAX_TAIL_CHARS = 4096

# Console vocabulary of the booted application.
DEFAULT_SUCCESS_MARKERS = ("Total available memory",)
DEFAULT_FAILURE_MARKERS = ("!!! PANIC !!!",)
MARKER_SEPARATOR = ";"
REGEX_MARKER_PREFIX = "re:"
# Characters of already-captured console re-scanned with each new chunk so a
# marker split across two reads is still found.
MARKER_LOOKBACK = 4096

CONSOLE_READ_SIZE = 4096
READER_JOIN_TIMEOUT = 5.0
TIMED_OUT_STATUS = "timed-out"

TFTP_DIR_PREFIX = "uefi-tftp-"

ACCEL_MODES = {"auto", "kvm", "tcg"}
TCG_FALLBACK_CPU_MODEL = "max"

SUPPORTED_NIC_MODELS = {"e1000", "e1000e", "virtio-net-pci", "rtl8139", "vmxnet3", "ne2k_pci", "pcnet"}
NETDEV_ID_RE = re.compile(r"^[A-Za-z][A-Za-z0-9._-]{0,127}$")

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY
