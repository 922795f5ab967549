"""Data models for the UEFI netboot harness."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Tuple, Union

from uefi_netboot.constants import TIMED_OUT_STATUS
from uefi_netboot.exceptions import InvalidConfig


@dataclass(frozen=True)
class BootArtifact:
    path: Path
    boot_file: str


@dataclass(frozen=True)
class TftpRoot:
    path: Path
    files: FrozenSet[str]

    def contains(self, name: str) -> bool:
        return name in self.files and (self.path / name).exists()


@dataclass(frozen=True)
class NetDevice:
    model: str
    netdev: str  # id of the netdev backend this NIC is attached to


@dataclass(frozen=True)
class UserNetdev:
    id: str
    tftp_root: Path
    boot_file: str
    mode: str = "user"


@dataclass(frozen=True)
class VmConfig:
    qemu_binary: str
    cpu_count: int
    sockets: int
    kvm: bool
    cpu_model: str
    memory_mb: int
    firmware_path: Path
    headless: bool
    device: NetDevice
    netdev: UserNetdev
    extra_args: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.device.netdev != self.netdev.id:
            raise InvalidConfig(
                f"Network device references netdev '{self.device.netdev}' but the netdev id is '{self.netdev.id}'"
            )


class RunState(Enum):
    NOT_STARTED = "not-started"
    RUNNING = "running"
    TERMINATED = "terminated"
    TIMED_OUT = "timed-out"
    KILLED = "killed"


class StopReason(Enum):
    MARKER = "marker"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class VmRun:
    """One supervised execution of the virtual machine monitor.

    Only the supervisor mutates a run, and only until :meth:`seal` is called
    once the process has been reaped.
    """

    config: VmConfig
    state: RunState = RunState.NOT_STARTED
    pid: Optional[int] = None
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    returncode: Optional[int] = None
    stop_reason: Optional[StopReason] = None
    error: Optional[str] = None
    _console: bytearray = field(default_factory=bytearray, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    _sealed: bool = field(default=False, repr=False)

    def append(self, chunk: bytes) -> int:
        """Append console bytes and return the new total length."""
        with self._lock:
            if self._sealed:
                raise RuntimeError("VmRun is sealed; console output can no longer change")
            self._console.extend(chunk)
            return len(self._console)

    def seal(self) -> None:
        with self._lock:
            self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def output(self) -> bytes:
        with self._lock:
            return bytes(self._console)

    def console_text(self) -> str:
        return self.output.decode("utf-8", errors="replace")

    @property
    def exit_status(self) -> Union[int, str, None]:
        if self.state == RunState.TIMED_OUT:
            return TIMED_OUT_STATUS
        return self.returncode

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.ended_at if self.ended_at is not None else time.monotonic()
        return end - self.started_at


class OutcomeKind(Enum):
    SUCCESS = "success"
    BOOT_FAILURE = "boot-failure"
    TIMEOUT = "timeout"
    HARNESS_ERROR = "harness-error"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    reason: str
    console_tail: str = ""
    exit_status: Union[int, str, None] = None
    duration: Optional[float] = None
    profile: str = "default"

    @property
    def passed(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    def to_dict(self) -> Dict[str, object]:
        return {
            "profile": self.profile,
            "outcome": self.kind.value,
            "reason": self.reason,
            "exit_status": self.exit_status,
            "duration": round(self.duration, 3) if self.duration is not None else None,
            "console_tail": self.console_tail,
        }
