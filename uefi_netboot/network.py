"""NIC and user-mode netdev option rendering for the UEFI netboot harness."""

from __future__ import annotations

from typing import List

from uefi_netboot.exceptions import InvalidConfig
from uefi_netboot.models import NetDevice, UserNetdev


def escape_option_value(value: str) -> str:
    """QEMU option values use ',' as separator; a literal comma is written ',,'."""
    return value.replace(",", ",,")


def render_device_option(device: NetDevice) -> str:
    return f"driver={device.model},netdev={device.netdev}"


def render_netdev_option(netdev: UserNetdev) -> str:
    if netdev.mode != "user":
        raise InvalidConfig(f"Unsupported netdev mode '{netdev.mode}'; only user-mode networking serves TFTP")
    parts = [
        netdev.mode,
        f"id={netdev.id}",
        f"tftp={escape_option_value(str(netdev.tftp_root))}",
        f"bootfile={escape_option_value(netdev.boot_file)}",
    ]
    return ",".join(parts)


def render_network_args(device: NetDevice, netdev: UserNetdev) -> List[str]:
    """Return the ``-device``/``-netdev`` argument pairs for one NIC."""
    if device.netdev != netdev.id:
        raise InvalidConfig(
            f"Network device references netdev '{device.netdev}' but the netdev id is '{netdev.id}'"
        )
    return ["-device", render_device_option(device), "-netdev", render_netdev_option(netdev)]
