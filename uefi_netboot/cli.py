"""CLI entry points for the UEFI netboot harness."""

from __future__ import annotations

import argparse
import signal
from pathlib import Path
from typing import List, Optional, Sequence

from uefi_netboot.config import HarnessSettings, load_profiles, parse_env
from uefi_netboot.exceptions import InvalidConfig, NetbootError
from uefi_netboot.harness import BootHarness
from uefi_netboot.models import Outcome
from uefi_netboot.report import write_json, write_junit
from uefi_netboot.utils import format_command, kvm_available, log

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130


def show_config(settings: HarnessSettings) -> None:
    """Print the resolved harness settings."""
    import dataclasses

    print(f"[{settings.profile}]")
    for field in dataclasses.fields(settings):
        if field.name == "profile":
            continue
        print(f"  {field.name}: {getattr(settings, field.name)}")


def print_outcome_banner(outcomes: Sequence[Outcome]) -> None:
    """Print a visually distinct summary once all runs have finished."""
    lines: List[str] = []
    for outcome in outcomes:
        duration = f"{outcome.duration:.1f}s" if outcome.duration is not None else "-"
        lines.append(f"  {outcome.profile}: {outcome.kind.value.upper()} ({duration})")
        lines.append(f"    {outcome.reason}")
    for outcome in outcomes:
        if not outcome.passed and outcome.console_tail:
            lines.append("")
            lines.append(f"  Console tail ({outcome.profile}):")
            lines.extend(f"    {line}" for line in outcome.console_tail.splitlines())

    max_len = max(len(line) for line in lines)
    border_len = min(max_len + 2, 100)
    passed = all(outcome.passed for outcome in outcomes)
    banner_colour = "\033[0;32m" if passed else "\033[0;31m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def _select_profiles(args, base: HarnessSettings) -> List[HarnessSettings]:
    if args.profiles is None:
        if args.profile:
            raise InvalidConfig("--profile requires --profiles FILE")
        return [base]
    profiles = load_profiles(args.profiles, base)
    if not args.profile:
        return list(profiles.values())
    selected = []
    for name in args.profile:
        if name not in profiles:
            available = ", ".join(sorted(profiles))
            raise InvalidConfig(f"Unknown profile '{name}'. Available: {available}")
        selected.append(profiles[name])
    return selected


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Boot a UEFI application in QEMU over TFTP and classify its console output"
    )
    parser.add_argument("--profiles", type=Path, metavar="FILE", help="YAML file with named run profiles")
    parser.add_argument(
        "--profile",
        action="append",
        metavar="NAME",
        help="Run only this profile (repeatable; default: all profiles in --profiles)",
    )
    parser.add_argument("--jobs", type=int, default=1, help="Profiles to run concurrently (default: 1)")
    parser.add_argument("--timeout", type=float, help="Override TIMEOUT (seconds) for every run")
    parser.add_argument("--show-config", action="store_true", help="Show resolved settings and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate everything and print the QEMU command")
    parser.add_argument("--json", type=Path, metavar="PATH", help="Write a JSON report")
    parser.add_argument("--junit", type=Path, metavar="PATH", help="Write a JUnit XML report")
    args = parser.parse_args(argv)

    try:
        base = parse_env()
        if args.timeout is not None:
            if not args.timeout > 0 or args.timeout == float("inf"):
                raise InvalidConfig(f"--timeout must be a finite number > 0 (got {args.timeout})")
            base.timeout = args.timeout
        if args.jobs < 1:
            raise InvalidConfig(f"--jobs must be >= 1 (got {args.jobs})")
        selected = _select_profiles(args, base)
    except NetbootError as exc:
        log("ERROR", str(exc))
        return EXIT_CONFIG

    if args.show_config:
        for settings in selected:
            show_config(settings)
        return EXIT_OK

    harness = BootHarness()

    if args.dry_run:
        if kvm_available():
            log("SUCCESS", "KVM:         available (/dev/kvm)")
        else:
            log("WARN", "KVM:         NOT available (TCG only)")
        for settings in selected:
            try:
                qemu_args = harness.dry_run(settings)
            except NetbootError as exc:
                log("ERROR", f"[{settings.profile}] {exc}")
                return EXIT_CONFIG
            if settings.keep_tftp_root:
                log("INFO", f"[{settings.profile}] pre-flight checks passed; TFTP root kept for the command below")
            else:
                log(
                    "INFO",
                    f"[{settings.profile}] pre-flight checks passed; TFTP root removed again "
                    "(set KEEP_TFTP_ROOT=1 to keep it)",
                )
            print(format_command(qemu_args), flush=True)
        log("INFO", "=== Dry-run complete (no VM started) ===")
        return EXIT_OK

    def _request_cancel(signum, frame):
        log("INFO", f"{signal.Signals(signum).name} received, stopping all virtual machines")
        harness.cancel_all()

    prev_sigterm = signal.signal(signal.SIGTERM, _request_cancel)
    try:
        if len(selected) == 1:
            try:
                outcomes = [harness.run(selected[0])]
            except NetbootError as exc:
                log("ERROR", str(exc))
                return EXIT_CONFIG
        else:
            outcomes = harness.run_matrix(selected, jobs=args.jobs)
    except KeyboardInterrupt:
        harness.cancel_all()
        log("WARN", "Interrupted")
        return EXIT_CANCELLED
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)

    print_outcome_banner(outcomes)
    try:
        if args.json is not None:
            write_json(outcomes, args.json)
        if args.junit is not None:
            write_junit(outcomes, args.junit)
    except OSError as exc:
        log("ERROR", f"Failed to write report: {exc}")
        return EXIT_FAILED

    if harness.cancelled:
        return EXIT_CANCELLED
    return EXIT_OK if all(outcome.passed for outcome in outcomes) else EXIT_FAILED
