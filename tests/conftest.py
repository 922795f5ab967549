"""Shared test fixtures and a scripted stand-in for the QEMU backend."""

from __future__ import annotations

import signal
import subprocess
import sys
import textwrap
import threading
from pathlib import Path

import pytest

from uefi_netboot.config import HarnessSettings
from uefi_netboot.models import NetDevice, UserNetdev, VmConfig


class ScriptBackend:
    """Runs a short Python script in place of QEMU; its stdout is the console."""

    def __init__(self, script: str) -> None:
        self.script = textwrap.dedent(script)
        self.configs = []
        self.processes = []

    def spawn(self, config: VmConfig) -> subprocess.Popen:
        self.configs.append(config)
        proc = subprocess.Popen(
            [sys.executable, "-u", "-c", self.script],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        self.processes.append(proc)
        return proc


@pytest.fixture
def script_backend():
    """Factory: ``script_backend("print('BOOT OK')")``."""
    return ScriptBackend


@pytest.fixture
def interrupt_after():
    """Press Ctrl-C: deliver SIGINT to the main thread after ``delay`` seconds."""
    timers = []

    def _arm(delay: float) -> None:
        main_ident = threading.main_thread().ident
        timer = threading.Timer(delay, signal.pthread_kill, args=(main_ident, signal.SIGINT))
        timer.daemon = True
        timers.append(timer)
        timer.start()

    yield _arm
    for timer in timers:
        timer.cancel()


@pytest.fixture
def build_dir(tmp_path) -> Path:
    path = tmp_path / "target" / "x86_64-unknown-uefi" / "debug"
    path.mkdir(parents=True)
    (path / "pril.efi").write_bytes(b"MZ\x90\x00fake-uefi-application")
    return path


@pytest.fixture
def firmware_file(tmp_path) -> Path:
    path = tmp_path / "bios" / "OVMF.fd"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"\x00" * 64)
    return path


@pytest.fixture
def tftp_dir(tmp_path) -> Path:
    path = tmp_path / "tftp-root"
    path.mkdir()
    (path / "pril.efi").write_bytes(b"MZ")
    return path


@pytest.fixture
def vm_config(tftp_dir, firmware_file) -> VmConfig:
    return VmConfig(
        qemu_binary="qemu-system-x86_64",
        cpu_count=8,
        sockets=1,
        kvm=True,
        cpu_model="host",
        memory_mb=128,
        firmware_path=firmware_file,
        headless=True,
        device=NetDevice(model="e1000", netdev="n0"),
        netdev=UserNetdev(id="n0", tftp_root=tftp_dir, boot_file="pril.efi"),
    )


@pytest.fixture
def settings(build_dir, firmware_file, tmp_path) -> HarnessSettings:
    return HarnessSettings(
        artifact_dir=build_dir,
        artifact_name="pril.efi",
        firmware_path=firmware_file,
        accel="tcg",
        cpu_model="max",
        cpu_count=8,
        memory_mb=128,
        timeout=10.0,
        grace_period=1.0,
        success_markers=["BOOT OK"],
        failure_markers=["PANIC"],
        tftp_base_dir=tmp_path / "tftp",
    )


# All environment variables that parse_env() reads, used to ensure a clean slate.
_PARSE_ENV_VARS = [
    "ARTIFACT_DIR",
    "ARTIFACT_NAME",
    "BOOT_FILE",
    "QEMU_BINARY",
    "FIRMWARE",
    "CPUS",
    "SOCKETS",
    "ACCEL",
    "CPU_MODEL",
    "MEMORY",
    "HEADLESS",
    "NIC_MODEL",
    "NETDEV_ID",
    "TIMEOUT",
    "GRACE_PERIOD",
    "SUCCESS_MARKERS",
    "FAILURE_MARKERS",
    "STOP_ON_MARKER",
    "KEEP_TFTP_ROOT",
    "TFTP_LINK",
    "TFTP_BASE_DIR",
    "CONSOLE_LOG",
    "ECHO_CONSOLE",
    "TAIL_LINES",
    "EXTRA_ARGS",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables that parse_env() reads."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set
