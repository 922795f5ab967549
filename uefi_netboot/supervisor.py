"""Virtual machine process supervision for the UEFI netboot harness."""

from __future__ import annotations

import math
import subprocess
import threading
import time
from typing import Callable, Optional

from uefi_netboot.classifier import MarkerSet
from uefi_netboot.constants import (
    CONSOLE_READ_SIZE,
    DEFAULT_GRACE_PERIOD,
    FAILURE_DRAIN_PERIOD,
    MARKER_LOOKBACK,
    READER_JOIN_TIMEOUT,
)
from uefi_netboot.exceptions import HarnessError, InvalidConfig, NetbootError
from uefi_netboot.models import RunState, StopReason, VmConfig, VmRun
from uefi_netboot.utils import log

ConsoleSink = Callable[[bytes], None]

_FINAL_STATES = {
    None: RunState.TERMINATED,
    StopReason.MARKER: RunState.TERMINATED,
    StopReason.TIMEOUT: RunState.TIMED_OUT,
    StopReason.CANCELLED: RunState.KILLED,
}


class VmSupervisor:
    """Run one virtual machine to completion under a mandatory timeout.

    The supervising thread blocks in a single ``wait(timeout)`` on the child,
    so process exit and the timer race directly. A reader thread drains the
    console into the :class:`VmRun` as bytes arrive. Timeout, cancellation and
    an observed marker all funnel into :meth:`_request_stop`, where the first
    caller wins: it sends a terminate signal and arms a timer that kills the
    child once the grace period has passed.
    """

    def __init__(
        self,
        backend,
        config: VmConfig,
        timeout: float,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        markers: Optional[MarkerSet] = None,
        stop_on_marker: bool = True,
        console_sink: Optional[ConsoleSink] = None,
        failure_drain: float = FAILURE_DRAIN_PERIOD,
    ) -> None:
        if timeout is None or not math.isfinite(timeout) or timeout <= 0:
            raise InvalidConfig(f"timeout must be a finite number of seconds > 0 (got {timeout})")
        if not math.isfinite(grace_period) or grace_period <= 0:
            raise InvalidConfig(f"grace period must be a finite number of seconds > 0 (got {grace_period})")
        self.backend = backend
        self.config = config
        self.timeout = timeout
        self.grace_period = grace_period
        self.markers = markers or MarkerSet()
        self.stop_on_marker = stop_on_marker
        self.console_sink = console_sink
        self.failure_drain = failure_drain
        self.run_record: Optional[VmRun] = None
        self.matched_marker: Optional[str] = None
        self.interrupted = False
        self._lock = threading.Lock()
        self._handle = None
        self._stop_reason: Optional[StopReason] = None
        self._cancel_requested = False
        self._kill_timer: Optional[threading.Timer] = None
        self._drain_timer: Optional[threading.Timer] = None

    def run(self) -> VmRun:
        if self.run_record is not None:
            raise HarnessError("A VmSupervisor runs exactly one virtual machine")
        run = VmRun(config=self.config)
        self.run_record = run

        with self._lock:
            if self._cancel_requested:
                run.error = "run cancelled before the virtual machine was started"
                run.seal()
                return run
            try:
                handle = self.backend.spawn(self.config)
            except (OSError, ValueError, NetbootError) as exc:
                run.error = f"Failed to start {self.config.qemu_binary}: {exc}"
                log("ERROR", run.error)
                run.seal()
                return run
            self._handle = handle
            run.pid = getattr(handle, "pid", None)
            run.started_at = time.monotonic()
            run.state = RunState.RUNNING
        log("INFO", f"Virtual machine running (PID {run.pid}, timeout {self.timeout:g}s)")

        reader = threading.Thread(target=self._pump, args=(handle, run), name="console-reader", daemon=True)
        reader.start()
        try:
            self._wait(handle)
        except KeyboardInterrupt:
            log("WARN", "Interrupted; stopping virtual machine")
            self.interrupted = True
            self._request_stop(StopReason.CANCELLED)
            self._reap(handle)
        finally:
            if handle.poll() is None:
                self._request_stop(StopReason.CANCELLED)
                self._reap(handle)
            self._disarm_timers()
            reader.join(timeout=READER_JOIN_TIMEOUT)
            if reader.is_alive():
                log("WARN", "Console reader still blocked after the virtual machine exited")
            elif handle.stdout is not None:
                handle.stdout.close()
            self._finish(run, handle)
        return run

    def cancel(self) -> None:
        """Stop the run from another thread; safe to call at any time."""
        with self._lock:
            self._cancel_requested = True
            started = self._handle is not None
        if started:
            self._request_stop(StopReason.CANCELLED)

    def _wait(self, handle) -> None:
        try:
            handle.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            log("WARN", f"Timeout of {self.timeout:g}s elapsed; stopping virtual machine")
            self._request_stop(StopReason.TIMEOUT)
        self._reap(handle)

    def _reap(self, handle) -> None:
        try:
            handle.wait(timeout=self.grace_period * 2)
        except subprocess.TimeoutExpired:
            self._force_kill(handle)
            handle.wait()

    def _request_stop(self, reason: StopReason) -> bool:
        with self._lock:
            handle = self._handle
            if handle is None or self._stop_reason is not None or handle.poll() is not None:
                return False
            self._stop_reason = reason
            timer = threading.Timer(self.grace_period, self._force_kill, args=(handle,))
            timer.daemon = True
            self._kill_timer = timer
        log("DEBUG", f"Stopping virtual machine ({reason.value})")
        try:
            handle.terminate()
        except OSError as exc:
            log("DEBUG", f"Terminate signal not delivered: {exc}")
        timer.start()
        return True

    def _force_kill(self, handle) -> None:
        if handle.poll() is not None:
            return
        log("WARN", f"Virtual machine did not exit within {self.grace_period:g}s; killing it")
        try:
            handle.kill()
        except OSError as exc:
            log("DEBUG", f"Kill signal not delivered: {exc}")

    def _disarm_timers(self) -> None:
        with self._lock:
            timers = (self._kill_timer, self._drain_timer)
            self._kill_timer = None
            self._drain_timer = None
        for timer in timers:
            if timer is not None:
                timer.cancel()

    def _check_markers(self, text: str) -> None:
        failure = self.markers.match_failure(text)
        matched = failure if failure is not None else self.markers.match_success(text)
        if matched is None:
            return
        self.matched_marker = matched
        log("INFO", f"Marker observed on console: {matched!r}")
        if failure is None or self.failure_drain <= 0:
            self._request_stop(StopReason.MARKER)
            return
        # the panic location and message follow the failure marker
        timer = threading.Timer(self.failure_drain, self._request_stop, args=(StopReason.MARKER,))
        timer.daemon = True
        with self._lock:
            self._drain_timer = timer
        timer.start()

    def _pump(self, handle, run: VmRun) -> None:
        stream = handle.stdout
        if stream is None:
            run.error = "console stream is not attached"
            return
        read = getattr(stream, "read1", None) or stream.read
        recent = b""
        try:
            while True:
                chunk = read(CONSOLE_READ_SIZE)
                if not chunk:
                    break
                run.append(chunk)
                self._emit(chunk)
                if self.stop_on_marker and self.markers and self.matched_marker is None:
                    recent = (recent + chunk)[-(MARKER_LOOKBACK + len(chunk)):]
                    self._check_markers(recent.decode("utf-8", errors="replace"))
        except (OSError, ValueError) as exc:
            run.error = f"console stream error: {exc}"
            log("WARN", run.error)
        except RuntimeError:
            # run was sealed while a straggler still held the pipe open
            log("DEBUG", "Console output after the run was sealed was discarded")

    def _emit(self, chunk: bytes) -> None:
        if self.console_sink is None:
            return
        try:
            self.console_sink(chunk)
        except OSError as exc:
            log("WARN", f"Console sink failed, no longer forwarding output: {exc}")
            self.console_sink = None

    def _finish(self, run: VmRun, handle) -> None:
        returncode = handle.poll()
        run.returncode = returncode
        run.ended_at = time.monotonic()
        run.stop_reason = self._stop_reason
        run.state = _FINAL_STATES[self._stop_reason]
        run.seal()
        log("DEBUG", f"Virtual machine finished: state={run.state.value}, exit status={run.exit_status}")
