"""Utility functions for the UEFI netboot harness."""

from __future__ import annotations

import math
import os
import shlex
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from uefi_netboot.constants import _LOG_VERBOSE, MAX_TAIL_CHARS, TRUTHY
from uefi_netboot.exceptions import InvalidConfig


def log(level: str, message: str) -> None:
    """Lightweight levelled logging with ANSI colours."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", file=sys.stderr, flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise InvalidConfig(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise InvalidConfig(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise InvalidConfig(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_float_env(name: str, default: str) -> float:
    """Parse a strictly positive, finite number of seconds."""
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = float(raw)
    except ValueError:
        raise InvalidConfig(f"{name} must be a number of seconds (got '{raw}')")
    if not math.isfinite(value) or value <= 0:
        raise InvalidConfig(f"{name} must be a finite number > 0 (got {raw})")
    return value


def split_markers(raw: Optional[str], separator: str) -> List[str]:
    if raw is None:
        return []
    return [item.strip() for item in raw.split(separator) if item.strip()]


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def format_command(args: Sequence[str]) -> str:
    """Render an argument vector as a copy-pasteable, line-continued command."""
    if not args:
        return ""
    lines = [shlex.quote(args[0])]
    idx = 1
    while idx < len(args):
        arg = args[idx]
        # keep "-flag value" pairs on one line
        if arg.startswith("-") and idx + 1 < len(args) and not args[idx + 1].startswith("-"):
            lines.append(f"    {shlex.quote(arg)} {shlex.quote(args[idx + 1])}")
            idx += 2
        else:
            lines.append(f"    {shlex.quote(arg)}")
            idx += 1
    return " \\\n".join(lines)


def tail_text(text: str, lines: int, max_chars: int = MAX_TAIL_CHARS) -> str:
    """Return the last ``lines`` lines of ``text``, capped at ``max_chars`` characters."""
    if lines <= 0 or not text:
        return ""
    tail = "\n".join(text.splitlines()[-lines:])
    if len(tail) > max_chars:
        tail = tail[-max_chars:]
    return tail
