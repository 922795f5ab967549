"""Configuration loading, environment parsing and VM configuration building."""

from __future__ import annotations

import dataclasses
import math
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from uefi_netboot.artifact import validate_boot_file_name
from uefi_netboot.constants import (
    ACCEL_MODES,
    DEFAULT_ACCEL,
    DEFAULT_ARTIFACT_DIR,
    DEFAULT_ARTIFACT_NAME,
    DEFAULT_CPU_COUNT,
    DEFAULT_CPU_MODEL,
    DEFAULT_FAILURE_MARKERS,
    DEFAULT_FIRMWARE_PATH,
    DEFAULT_GRACE_PERIOD,
    DEFAULT_MEMORY_MB,
    DEFAULT_NETDEV_ID,
    DEFAULT_NIC_MODEL,
    DEFAULT_QEMU_BINARY,
    DEFAULT_SOCKETS,
    DEFAULT_SUCCESS_MARKERS,
    DEFAULT_TAIL_LINES,
    DEFAULT_TIMEOUT,
    MARKER_SEPARATOR,
    NETDEV_ID_RE,
    SUPPORTED_NIC_MODELS,
    TCG_FALLBACK_CPU_MODEL,
)
from uefi_netboot.exceptions import InvalidConfig
from uefi_netboot.models import NetDevice, UserNetdev, VmConfig
from uefi_netboot.utils import (
    get_env,
    get_env_bool,
    kvm_available,
    log,
    parse_float_env,
    parse_int_env,
    split_markers,
)


@dataclass
class HarnessSettings:
    """Everything one harness run needs, before anything touches the disk."""

    profile: str = "default"
    artifact_dir: Path = DEFAULT_ARTIFACT_DIR
    artifact_name: str = DEFAULT_ARTIFACT_NAME
    boot_file: Optional[str] = None
    qemu_binary: str = DEFAULT_QEMU_BINARY
    firmware_path: Path = DEFAULT_FIRMWARE_PATH
    cpu_count: int = DEFAULT_CPU_COUNT
    sockets: int = DEFAULT_SOCKETS
    accel: str = DEFAULT_ACCEL
    cpu_model: str = DEFAULT_CPU_MODEL
    memory_mb: int = DEFAULT_MEMORY_MB
    headless: bool = True
    nic_model: str = DEFAULT_NIC_MODEL
    netdev_id: str = DEFAULT_NETDEV_ID
    timeout: float = DEFAULT_TIMEOUT
    grace_period: float = DEFAULT_GRACE_PERIOD
    success_markers: List[str] = field(default_factory=lambda: list(DEFAULT_SUCCESS_MARKERS))
    failure_markers: List[str] = field(default_factory=lambda: list(DEFAULT_FAILURE_MARKERS))
    stop_on_marker: bool = True
    keep_tftp_root: bool = False
    tftp_link: bool = False
    tftp_base_dir: Optional[Path] = None
    console_log: Optional[Path] = None
    echo_console: bool = False
    tail_lines: int = DEFAULT_TAIL_LINES
    extra_args: List[str] = field(default_factory=list)

    def vm_options(self, tftp_root: Path, boot_file: str) -> "VmOptions":
        return VmOptions(
            cpu_count=self.cpu_count,
            sockets=self.sockets,
            accel=self.accel,
            cpu_model=self.cpu_model,
            memory_mb=self.memory_mb,
            firmware_path=self.firmware_path,
            tftp_root=tftp_root,
            boot_file=boot_file,
            headless=self.headless,
            qemu_binary=self.qemu_binary,
            nic_model=self.nic_model,
            netdev_id=self.netdev_id,
            extra_args=list(self.extra_args),
        )


@dataclass
class VmOptions:
    """Recognized options of the configuration builder."""

    firmware_path: Path
    tftp_root: Path
    boot_file: str
    cpu_count: int = DEFAULT_CPU_COUNT
    sockets: int = DEFAULT_SOCKETS
    accel: str = DEFAULT_ACCEL
    cpu_model: str = DEFAULT_CPU_MODEL
    memory_mb: int = DEFAULT_MEMORY_MB
    headless: bool = True
    qemu_binary: str = DEFAULT_QEMU_BINARY
    nic_model: str = DEFAULT_NIC_MODEL
    netdev_id: str = DEFAULT_NETDEV_ID
    device_netdev: Optional[str] = None  # defaults to netdev_id
    extra_args: List[str] = field(default_factory=list)


def _resolve_acceleration(accel_raw: str, cpu_model: str):
    accel = (accel_raw or "").strip().lower()
    if accel not in ACCEL_MODES:
        supported = ", ".join(sorted(ACCEL_MODES))
        raise InvalidConfig(f"Unsupported accel '{accel_raw}'. Supported: {supported}")

    if accel == "kvm":
        if not kvm_available():
            raise InvalidConfig("accel=kvm requested but /dev/kvm is not available on this host")
        return True, cpu_model
    if accel == "tcg":
        if cpu_model == "host":
            raise InvalidConfig(
                f"cpu_model 'host' requires KVM acceleration; use '{TCG_FALLBACK_CPU_MODEL}' "
                "or a named CPU model with accel=tcg"
            )
        return False, cpu_model

    if kvm_available():
        return True, cpu_model
    log("WARN", "KVM not available; falling back to TCG (10-50x slower)")
    if cpu_model == "host":
        log("INFO", f"CPU model 'host' needs KVM; using '{TCG_FALLBACK_CPU_MODEL}' instead")
        cpu_model = TCG_FALLBACK_CPU_MODEL
    return False, cpu_model


def build_vm_config(options: VmOptions) -> VmConfig:
    """Validate ``options`` and produce an immutable :class:`VmConfig`.

    Every constraint is checked here so that a VM is never launched with
    arguments QEMU would reject.
    """
    if options.memory_mb <= 0:
        raise InvalidConfig(f"memory_mb must be > 0 (got {options.memory_mb})")
    if options.cpu_count < 1:
        raise InvalidConfig(f"cpu_count must be >= 1 (got {options.cpu_count})")
    if options.sockets < 1:
        raise InvalidConfig(f"sockets must be >= 1 (got {options.sockets})")
    if options.cpu_count % options.sockets != 0:
        raise InvalidConfig(
            f"cpu_count ({options.cpu_count}) must be a multiple of sockets ({options.sockets})"
        )

    qemu_binary = (options.qemu_binary or "").strip()
    if not qemu_binary:
        raise InvalidConfig("qemu_binary must not be empty")

    firmware_path = Path(options.firmware_path).expanduser().resolve()
    if not firmware_path.exists():
        raise InvalidConfig(f"firmware_path does not exist: {firmware_path}")
    if not firmware_path.is_file():
        raise InvalidConfig(f"firmware_path must point to a firmware image file: {firmware_path}")

    boot_file = validate_boot_file_name(options.boot_file)
    tftp_root = Path(options.tftp_root)
    if not tftp_root.is_dir():
        raise InvalidConfig(f"tftp_root does not exist or is not a directory: {tftp_root}")
    if not (tftp_root / boot_file).is_file():
        raise InvalidConfig(f"tftp_root {tftp_root} does not contain boot file '{boot_file}'")

    nic_model = (options.nic_model or "").strip().lower()
    if nic_model not in SUPPORTED_NIC_MODELS:
        supported = ", ".join(sorted(SUPPORTED_NIC_MODELS))
        raise InvalidConfig(f"Unsupported nic_model '{options.nic_model}'. Supported: {supported}")

    netdev_id = options.netdev_id
    if not NETDEV_ID_RE.match(netdev_id or ""):
        raise InvalidConfig(
            f"Invalid netdev_id '{netdev_id}': start with a letter, then letters, digits, '-', '.', '_'"
        )
    device_netdev = options.device_netdev if options.device_netdev is not None else netdev_id
    if device_netdev != netdev_id:
        raise InvalidConfig(
            f"Network device references netdev '{device_netdev}' but the netdev id is '{netdev_id}'"
        )

    cpu_model = (options.cpu_model or "").strip()
    if not cpu_model:
        raise InvalidConfig("cpu_model must not be empty")
    kvm, cpu_model = _resolve_acceleration(options.accel, cpu_model)

    return VmConfig(
        qemu_binary=qemu_binary,
        cpu_count=options.cpu_count,
        sockets=options.sockets,
        kvm=kvm,
        cpu_model=cpu_model,
        memory_mb=options.memory_mb,
        firmware_path=firmware_path,
        headless=options.headless,
        device=NetDevice(model=nic_model, netdev=device_netdev),
        netdev=UserNetdev(id=netdev_id, tftp_root=tftp_root.resolve(), boot_file=boot_file),
        extra_args=tuple(options.extra_args),
    )


def _optional_path(name: str) -> Optional[Path]:
    raw = get_env(name)
    if raw is None or not raw.strip():
        return None
    return Path(raw.strip()).expanduser()


def _markers_env(name: str, default) -> List[str]:
    raw = get_env(name)
    if raw is None:
        return list(default)
    return split_markers(raw, MARKER_SEPARATOR)


def parse_env() -> HarnessSettings:
    artifact_dir = Path(get_env("ARTIFACT_DIR") or str(DEFAULT_ARTIFACT_DIR)).expanduser()
    artifact_name = (get_env("ARTIFACT_NAME") or DEFAULT_ARTIFACT_NAME).strip()
    boot_file = get_env("BOOT_FILE")
    if boot_file is not None:
        boot_file = boot_file.strip() or None

    firmware_path = Path(get_env("FIRMWARE") or str(DEFAULT_FIRMWARE_PATH)).expanduser()
    qemu_binary = (get_env("QEMU_BINARY") or DEFAULT_QEMU_BINARY).strip()

    cpu_count = parse_int_env("CPUS", str(DEFAULT_CPU_COUNT))
    sockets = parse_int_env("SOCKETS", str(DEFAULT_SOCKETS))
    memory_mb = parse_int_env("MEMORY", str(DEFAULT_MEMORY_MB))
    accel = (get_env("ACCEL") or DEFAULT_ACCEL).strip().lower()
    if accel not in ACCEL_MODES:
        supported = ", ".join(sorted(ACCEL_MODES))
        raise InvalidConfig(f"Unsupported ACCEL '{accel}'. Supported: {supported}")
    cpu_model = (get_env("CPU_MODEL") or DEFAULT_CPU_MODEL).strip()

    nic_model = (get_env("NIC_MODEL") or DEFAULT_NIC_MODEL).strip().lower()
    if nic_model not in SUPPORTED_NIC_MODELS:
        supported = ", ".join(sorted(SUPPORTED_NIC_MODELS))
        raise InvalidConfig(f"Unsupported NIC_MODEL '{nic_model}'. Supported: {supported}")
    netdev_id = (get_env("NETDEV_ID") or DEFAULT_NETDEV_ID).strip()

    timeout = parse_float_env("TIMEOUT", str(DEFAULT_TIMEOUT))
    grace_period = parse_float_env("GRACE_PERIOD", str(DEFAULT_GRACE_PERIOD))

    success_markers = _markers_env("SUCCESS_MARKERS", DEFAULT_SUCCESS_MARKERS)
    failure_markers = _markers_env("FAILURE_MARKERS", DEFAULT_FAILURE_MARKERS)
    if not success_markers and not failure_markers:
        log("WARN", "No console markers configured; every run that exits will be reported as a harness error")

    try:
        extra_args = shlex.split(get_env("EXTRA_ARGS", "") or "")
    except ValueError as exc:
        raise InvalidConfig(f"EXTRA_ARGS cannot be parsed: {exc}")

    return HarnessSettings(
        artifact_dir=artifact_dir,
        artifact_name=artifact_name,
        boot_file=boot_file,
        qemu_binary=qemu_binary,
        firmware_path=firmware_path,
        cpu_count=cpu_count,
        sockets=sockets,
        accel=accel,
        cpu_model=cpu_model,
        memory_mb=memory_mb,
        headless=get_env_bool("HEADLESS", True),
        nic_model=nic_model,
        netdev_id=netdev_id,
        timeout=timeout,
        grace_period=grace_period,
        success_markers=success_markers,
        failure_markers=failure_markers,
        stop_on_marker=get_env_bool("STOP_ON_MARKER", True),
        keep_tftp_root=get_env_bool("KEEP_TFTP_ROOT", False),
        tftp_link=get_env_bool("TFTP_LINK", False),
        tftp_base_dir=_optional_path("TFTP_BASE_DIR"),
        console_log=_optional_path("CONSOLE_LOG"),
        echo_console=get_env_bool("ECHO_CONSOLE", False),
        tail_lines=parse_int_env("TAIL_LINES", str(DEFAULT_TAIL_LINES), min_val=0),
        extra_args=extra_args,
    )


_PATH_FIELDS = {"artifact_dir", "firmware_path", "tftp_base_dir", "console_log"}
_LIST_FIELDS = {"success_markers", "failure_markers", "extra_args"}
_BOOL_FIELDS = {"headless", "stop_on_marker", "keep_tftp_root", "tftp_link", "echo_console"}
_INT_FIELDS = {"cpu_count", "sockets", "memory_mb", "tail_lines"}
_FLOAT_FIELDS = {"timeout", "grace_period"}


def _coerce(profile: str, key: str, value):
    where = f"profile '{profile}' field '{key}'"
    if value is None:
        if key in {"boot_file", "tftp_base_dir", "console_log"}:
            return None
        raise InvalidConfig(f"{where} must not be empty")
    if key in _PATH_FIELDS:
        return Path(str(value)).expanduser()
    if key in _LIST_FIELDS:
        if isinstance(value, str):
            return shlex.split(value) if key == "extra_args" else [value]
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise InvalidConfig(f"{where} must be a list of strings")
        return list(value)
    if key in _BOOL_FIELDS:
        if not isinstance(value, bool):
            raise InvalidConfig(f"{where} must be true or false (got {value!r})")
        return value
    if key in _INT_FIELDS:
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidConfig(f"{where} must be an integer (got {value!r})")
        return value
    if key in _FLOAT_FIELDS:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidConfig(f"{where} must be a number of seconds (got {value!r})")
        if not math.isfinite(value) or value <= 0:
            raise InvalidConfig(f"{where} must be a finite number > 0 (got {value})")
        return float(value)
    return str(value)


def _apply_overrides(base: HarnessSettings, profile: str, overrides) -> HarnessSettings:
    if overrides is None:
        overrides = {}
    if not isinstance(overrides, dict):
        raise InvalidConfig(f"profile '{profile}' must be a mapping of settings")
    known = {f.name for f in dataclasses.fields(HarnessSettings)} - {"profile"}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise InvalidConfig(f"profile '{profile}' has unknown settings: {', '.join(unknown)}")
    values = {key: _coerce(profile, key, value) for key, value in overrides.items()}
    return dataclasses.replace(base, profile=profile, **values)


def load_profiles(config_path: Path, base: Optional[HarnessSettings] = None) -> Dict[str, HarnessSettings]:
    """Load named run profiles (e.g. debug and release builds) from a YAML file.

    ``defaults`` applies to every profile; each entry under ``profiles``
    overrides individual :class:`HarnessSettings` fields.
    """
    if base is None:
        base = HarnessSettings()
    if not config_path.exists():
        raise InvalidConfig(f"Profile config missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise InvalidConfig(f"Profile config {config_path} contains invalid YAML: {exc}")
    if not isinstance(data, dict):
        raise InvalidConfig(f"Profile config {config_path} must contain a mapping")

    defaults = _apply_overrides(base, base.profile, data.get("defaults"))
    profiles = data.get("profiles") or {}
    if not isinstance(profiles, dict) or not profiles:
        raise InvalidConfig(f"Profile config {config_path} defines no profiles")
    return {str(name): _apply_overrides(defaults, str(name), overrides) for name, overrides in profiles.items()}
