"""Tests for uefi_netboot.supervisor module.

The VM is replaced by short-lived Python child processes so the real
process, pipe and signal paths are exercised.
"""

from __future__ import annotations

import errno
import signal
import threading
from unittest.mock import MagicMock

import pytest

from uefi_netboot.classifier import MarkerSet
from uefi_netboot.exceptions import HarnessError, InvalidConfig
from uefi_netboot.models import RunState, StopReason, VmRun
from uefi_netboot.qemu import QemuBackend
from uefi_netboot.supervisor import VmSupervisor

HANG = """
    import sys, time
    print("booting", flush=True)
    time.sleep(60)
"""

IGNORE_TERM = """
    import signal, time
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    print("ready", flush=True)
    time.sleep(60)
"""

MARKERS = MarkerSet(success=["BOOT OK"], failure=["PANIC"])


class _ChunkStream:
    def __init__(self, chunks):
        self._chunks = list(chunks)

    def read1(self, size):
        if not self._chunks:
            return b""
        chunk = self._chunks.pop(0)
        if isinstance(chunk, Exception):
            raise chunk
        return chunk


class TestLifecycle:
    def test_process_exit_is_terminated(self, vm_config, script_backend):
        backend = script_backend('print("BOOT OK")')
        run = VmSupervisor(backend, vm_config, timeout=10, markers=MARKERS, stop_on_marker=False).run()
        assert run.state == RunState.TERMINATED
        assert run.returncode == 0
        assert run.stop_reason is None
        assert "BOOT OK" in run.console_text()
        assert run.sealed
        assert run.pid == backend.processes[0].pid

    def test_crash_exit_code_recorded(self, vm_config, script_backend):
        backend = script_backend('import sys; print("dying"); sys.exit(3)')
        run = VmSupervisor(backend, vm_config, timeout=10).run()
        assert run.state == RunState.TERMINATED
        assert run.exit_status == 3

    def test_marker_stops_spinning_guest(self, vm_config, script_backend):
        backend = script_backend(
            """
            import time
            print("Total available memory 4096!!!", flush=True)
            time.sleep(60)
            """
        )
        markers = MarkerSet(success=["Total available memory"])
        supervisor = VmSupervisor(backend, vm_config, timeout=30, grace_period=2, markers=markers)
        run = supervisor.run()
        assert run.state == RunState.TERMINATED
        assert run.stop_reason == StopReason.MARKER
        assert supervisor.matched_marker == "Total available memory"
        assert run.duration < 30
        assert backend.processes[0].poll() is not None

    def test_timeout_stops_and_reaps(self, vm_config, script_backend):
        backend = script_backend(HANG)
        run = VmSupervisor(backend, vm_config, timeout=0.5, grace_period=1, markers=MARKERS).run()
        assert run.state == RunState.TIMED_OUT
        assert run.stop_reason == StopReason.TIMEOUT
        assert run.exit_status == "timed-out"
        assert run.returncode == -signal.SIGTERM
        assert "booting" in run.console_text()
        assert backend.processes[0].poll() is not None

    def test_timeout_escalates_to_kill(self, vm_config, script_backend):
        backend = script_backend(IGNORE_TERM)
        run = VmSupervisor(backend, vm_config, timeout=1.5, grace_period=0.3).run()
        assert run.state == RunState.TIMED_OUT
        assert run.returncode == -signal.SIGKILL
        assert "ready" in run.console_text()
        assert backend.processes[0].poll() is not None

    def test_cancel_from_another_thread(self, vm_config, script_backend):
        backend = script_backend(HANG)
        supervisor = VmSupervisor(backend, vm_config, timeout=30, grace_period=1, markers=MARKERS)
        timer = threading.Timer(0.5, supervisor.cancel)
        timer.start()
        try:
            run = supervisor.run()
        finally:
            timer.cancel()
        assert run.state == RunState.KILLED
        assert run.stop_reason == StopReason.CANCELLED
        assert backend.processes[0].poll() is not None

    def test_ctrl_c_stops_the_vm(self, vm_config, script_backend, interrupt_after):
        backend = script_backend(HANG)
        supervisor = VmSupervisor(backend, vm_config, timeout=30, grace_period=1, markers=MARKERS)
        interrupt_after(0.7)
        run = supervisor.run()
        assert run.state == RunState.KILLED
        assert run.stop_reason == StopReason.CANCELLED
        assert supervisor.interrupted
        assert run.duration < 30
        assert backend.processes[0].poll() is not None

    def test_failure_marker_keeps_following_lines(self, vm_config, script_backend):
        backend = script_backend(
            """
            import time
            print("!!! PANIC !!!", flush=True)
            time.sleep(0.1)
            print("panicked at src/main.rs:10:5", flush=True)
            time.sleep(60)
            """
        )
        markers = MarkerSet(failure=["!!! PANIC !!!"])
        supervisor = VmSupervisor(backend, vm_config, timeout=30, grace_period=2, markers=markers, failure_drain=1.0)
        run = supervisor.run()
        assert run.state == RunState.TERMINATED
        assert run.stop_reason == StopReason.MARKER
        assert supervisor.matched_marker == "!!! PANIC !!!"
        assert "panicked at src/main.rs:10:5" in run.console_text()
        assert run.duration < 30

    def test_cancel_before_start_spawns_nothing(self, vm_config, script_backend):
        backend = script_backend(HANG)
        supervisor = VmSupervisor(backend, vm_config, timeout=30)
        supervisor.cancel()
        run = supervisor.run()
        assert run.state == RunState.NOT_STARTED
        assert "cancelled" in run.error
        assert backend.processes == []

    def test_supervisor_is_single_use(self, vm_config, script_backend):
        supervisor = VmSupervisor(script_backend('print("x")'), vm_config, timeout=10)
        supervisor.run()
        with pytest.raises(HarnessError, match="exactly one"):
            supervisor.run()


class TestSpawnFailure:
    def test_missing_executable(self, vm_config):
        import dataclasses

        cfg = dataclasses.replace(vm_config, qemu_binary="/nonexistent/qemu-system-x86_64")
        run = VmSupervisor(QemuBackend(), cfg, timeout=5).run()
        assert run.state == RunState.NOT_STARTED
        assert "Failed to start /nonexistent/qemu-system-x86_64" in run.error
        assert run.started_at is None

    def test_backend_oserror(self, vm_config):
        backend = MagicMock()
        backend.spawn.side_effect = PermissionError(errno.EACCES, "Permission denied")
        run = VmSupervisor(backend, vm_config, timeout=5).run()
        assert run.state == RunState.NOT_STARTED
        assert "Permission denied" in run.error

    def test_backend_config_error(self, vm_config):
        backend = MagicMock()
        backend.spawn.side_effect = InvalidConfig("only user-mode networking is supported")
        run = VmSupervisor(backend, vm_config, timeout=5).run()
        assert run.state == RunState.NOT_STARTED
        assert "user-mode" in run.error
        assert run.sealed


class TestValidation:
    @pytest.mark.parametrize("timeout", [0, -1, float("inf"), float("nan"), None])
    def test_timeout_must_be_finite(self, vm_config, timeout):
        with pytest.raises(InvalidConfig, match="timeout"):
            VmSupervisor(MagicMock(), vm_config, timeout=timeout)

    def test_grace_period_must_be_positive(self, vm_config):
        with pytest.raises(InvalidConfig, match="grace period"):
            VmSupervisor(MagicMock(), vm_config, timeout=5, grace_period=0)


class TestConsolePump:
    def test_marker_split_across_reads(self, vm_config):
        supervisor = VmSupervisor(MagicMock(), vm_config, timeout=5, markers=MARKERS)
        handle = MagicMock()
        handle.stdout = _ChunkStream([b"noise BOO", b"T OK\r\n"])
        run = VmRun(config=vm_config)
        supervisor._pump(handle, run)
        assert supervisor.matched_marker == "BOOT OK"
        assert run.output == b"noise BOOT OK\r\n"

    def test_stream_error_recorded(self, vm_config):
        supervisor = VmSupervisor(MagicMock(), vm_config, timeout=5, markers=MARKERS)
        handle = MagicMock()
        handle.stdout = _ChunkStream([b"partial", BrokenPipeError(errno.EPIPE, "Broken pipe")])
        run = VmRun(config=vm_config)
        supervisor._pump(handle, run)
        assert run.output == b"partial"
        assert "console stream error" in run.error

    def test_sink_receives_chunks(self, vm_config, script_backend):
        received = []
        backend = script_backend('print("hello from firmware")')
        VmSupervisor(backend, vm_config, timeout=10, console_sink=received.append).run()
        assert b"hello from firmware" in b"".join(received)

    def test_failing_sink_is_dropped(self, vm_config):
        sink = MagicMock(side_effect=OSError("disk full"))
        supervisor = VmSupervisor(MagicMock(), vm_config, timeout=5, console_sink=sink)
        handle = MagicMock()
        handle.stdout = _ChunkStream([b"one", b"two"])
        run = VmRun(config=vm_config)
        supervisor._pump(handle, run)
        assert sink.call_count == 1
        assert supervisor.console_sink is None
        assert run.output == b"onetwo"
