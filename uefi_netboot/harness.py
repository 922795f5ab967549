"""Run orchestration for the UEFI netboot harness."""

from __future__ import annotations

import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from pathlib import Path
from typing import BinaryIO, List, Optional, Sequence, Set

from uefi_netboot.artifact import locate_artifact
from uefi_netboot.classifier import MarkerSet, classify
from uefi_netboot.config import HarnessSettings, build_vm_config
from uefi_netboot.exceptions import HarnessError, NetbootError
from uefi_netboot.models import Outcome, OutcomeKind
from uefi_netboot.qemu import QemuBackend, build_qemu_args
from uefi_netboot.supervisor import ConsoleSink, VmSupervisor
from uefi_netboot.tftp import TftpProvisioner
from uefi_netboot.utils import ensure_directory, log


def make_console_sink(streams: Sequence[BinaryIO]) -> Optional[ConsoleSink]:
    if not streams:
        return None

    def _sink(chunk: bytes) -> None:
        for stream in streams:
            stream.write(chunk)
            stream.flush()

    return _sink


def per_profile_path(path: Path, profile: str) -> Path:
    return path.with_name(f"{path.stem}-{profile}{path.suffix}")


class BootHarness:
    """Boot UEFI applications over TFTP and classify what their console says.

    Runs share nothing but the registry of live supervisors, which exists so
    that :meth:`cancel_all` can reach every VM.
    """

    def __init__(self, backend=None) -> None:
        self.backend = backend if backend is not None else QemuBackend()
        self._lock = threading.Lock()
        self._active: Set[VmSupervisor] = set()
        self._cancelled = False

    def run(self, settings: HarnessSettings) -> Outcome:
        """Boot one artifact and return its outcome.

        Pre-flight errors (missing artifact, provisioning failure, invalid
        configuration) propagate before any VM is started.
        """
        tag = f"[{settings.profile}]"
        artifact = locate_artifact(settings.artifact_dir, settings.artifact_name, settings.boot_file)
        log("INFO", f"{tag} Boot artifact: {artifact.path}")
        markers = MarkerSet(settings.success_markers, settings.failure_markers)

        with ExitStack() as stack:
            provisioner = TftpProvisioner(
                artifact,
                base_dir=settings.tftp_base_dir,
                keep=settings.keep_tftp_root,
                link=settings.tftp_link,
            )
            root = stack.enter_context(provisioner)
            config = build_vm_config(settings.vm_options(root.path, artifact.boot_file))
            log(
                "INFO",
                f"{tag} VM: {config.cpu_count} CPUs | {config.memory_mb} MiB | CPU {config.cpu_model} | "
                f"{'KVM' if config.kvm else 'TCG'} | NIC {config.device.model}",
            )

            streams: List[BinaryIO] = []
            if settings.console_log is not None:
                try:
                    ensure_directory(settings.console_log.parent)
                    streams.append(stack.enter_context(open(settings.console_log, "wb")))
                except OSError as exc:
                    raise HarnessError(f"Cannot open console log {settings.console_log}: {exc}") from exc
                log("INFO", f"{tag} Console log: {settings.console_log}")
            if settings.echo_console:
                streams.append(sys.stdout.buffer)

            supervisor = VmSupervisor(
                self.backend,
                config,
                timeout=settings.timeout,
                grace_period=settings.grace_period,
                markers=markers,
                stop_on_marker=settings.stop_on_marker,
                console_sink=make_console_sink(streams),
            )
            self._register(supervisor)
            try:
                vm_run = supervisor.run()
            finally:
                self._unregister(supervisor)
            if supervisor.interrupted:
                self.cancel_all()

        outcome = classify(
            vm_run,
            markers,
            timeout=settings.timeout,
            tail_lines=settings.tail_lines,
            profile=settings.profile,
        )
        level = "SUCCESS" if outcome.passed else "ERROR"
        log(level, f"{tag} {outcome.kind.value}: {outcome.reason}")
        return outcome

    def run_isolated(self, settings: HarnessSettings) -> Outcome:
        """Like :meth:`run`, but a pre-flight error becomes this run's outcome."""
        try:
            return self.run(settings)
        except NetbootError as exc:
            log("ERROR", f"[{settings.profile}] {exc}")
            return Outcome(
                kind=OutcomeKind.HARNESS_ERROR,
                reason=f"{type(exc).__name__}: {exc}",
                profile=settings.profile,
            )

    def run_matrix(self, profiles: Sequence[HarnessSettings], jobs: int = 1) -> List[Outcome]:
        """Run several profiles concurrently; outcomes keep the input order."""
        if jobs < 1:
            raise HarnessError(f"jobs must be >= 1 (got {jobs})")
        runs = list(profiles)
        if len(runs) > 1:
            runs = [
                s if s.console_log is None else _with_console_log(s, per_profile_path(s.console_log, s.profile))
                for s in runs
            ]
        with ThreadPoolExecutor(max_workers=min(jobs, max(len(runs), 1)), thread_name_prefix="boot") as pool:
            futures = [pool.submit(self.run_isolated, settings) for settings in runs]
            try:
                return [future.result() for future in futures]
            except KeyboardInterrupt:
                log("WARN", "Interrupted; stopping all virtual machines")
                for future in futures:
                    future.cancel()
                self.cancel_all()
                raise

    def dry_run(self, settings: HarnessSettings) -> List[str]:
        """Run every pre-flight stage and return the command line, without starting a VM.

        The TFTP root is removed again afterwards unless ``keep_tftp_root`` is
        set, in which case the printed command can be run as is.
        """
        artifact = locate_artifact(settings.artifact_dir, settings.artifact_name, settings.boot_file)
        MarkerSet(settings.success_markers, settings.failure_markers)
        provisioner = TftpProvisioner(
            artifact,
            base_dir=settings.tftp_base_dir,
            keep=settings.keep_tftp_root,
            link=settings.tftp_link,
        )
        with provisioner as root:
            config = build_vm_config(settings.vm_options(root.path, artifact.boot_file))
            return build_qemu_args(config)

    def cancel_all(self) -> None:
        with self._lock:
            self._cancelled = True
            active = list(self._active)
        for supervisor in active:
            supervisor.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _register(self, supervisor: VmSupervisor) -> None:
        with self._lock:
            self._active.add(supervisor)
            cancelled = self._cancelled
        if cancelled:
            supervisor.cancel()

    def _unregister(self, supervisor: VmSupervisor) -> None:
        with self._lock:
            self._active.discard(supervisor)


def _with_console_log(settings: HarnessSettings, path: Path) -> HarnessSettings:
    import dataclasses

    return dataclasses.replace(settings, console_log=path)
