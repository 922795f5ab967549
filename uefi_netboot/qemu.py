"""QEMU command line rendering and process backend for the UEFI netboot harness."""

from __future__ import annotations

import subprocess
from typing import List

from uefi_netboot.models import VmConfig
from uefi_netboot.network import render_network_args
from uefi_netboot.utils import format_command, log


def build_qemu_args(config: VmConfig) -> List[str]:
    """Constructs the argument vector for the virtual machine monitor."""
    smp = str(config.cpu_count)
    if config.sockets > 1:
        smp += f",sockets={config.sockets}"
    args = [config.qemu_binary, "-smp", smp]
    if config.kvm:
        args.append("-enable-kvm")
    else:
        args.extend(["-accel", "tcg"])
    args.extend(["-cpu", config.cpu_model, "-m", str(config.memory_mb)])
    if config.headless:
        args.append("-nographic")
    else:
        # keep the firmware console on our stdout next to the graphical window
        args.extend(["-serial", "stdio"])
    args.extend(["-bios", str(config.firmware_path)])
    args.extend(render_network_args(config.device, config.netdev))
    args.extend(config.extra_args)
    return args


class QemuBackend:
    """Spawns ``qemu-system-*`` as a child process with its console on a pipe.

    The returned :class:`subprocess.Popen` is the handle the supervisor drives:
    ``stdout`` is the console stream, ``terminate``/``kill`` stop it and
    ``wait``/``poll`` reap it. Any object with a compatible ``spawn`` can stand
    in for this backend.
    """

    def spawn(self, config: VmConfig) -> subprocess.Popen:
        args = build_qemu_args(config)
        log("INFO", "Starting QEMU:\n" + format_command(args))
        return subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            # own session: a Ctrl-C on the terminal reaches the harness, which stops the VM itself
            start_new_session=True,
        )
