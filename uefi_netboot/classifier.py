"""Console marker matching and outcome classification for the UEFI netboot harness."""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Pattern, Tuple, Union

from uefi_netboot.constants import DEFAULT_TAIL_LINES, REGEX_MARKER_PREFIX
from uefi_netboot.exceptions import InvalidConfig
from uefi_netboot.models import Outcome, OutcomeKind, RunState, VmRun
from uefi_netboot.utils import tail_text

_Marker = Union[str, Pattern[str]]


def _compile(markers: Iterable[str], kind: str) -> Tuple[_Marker, ...]:
    compiled: List[_Marker] = []
    for marker in markers:
        if not marker:
            raise InvalidConfig(f"Empty {kind} marker")
        if marker.startswith(REGEX_MARKER_PREFIX):
            expression = marker[len(REGEX_MARKER_PREFIX):]
            try:
                compiled.append(re.compile(expression, re.MULTILINE))
            except re.error as exc:
                raise InvalidConfig(f"Invalid {kind} marker regex '{expression}': {exc}")
        else:
            compiled.append(marker)
    return tuple(compiled)


def _search(markers: Tuple[_Marker, ...], text: str) -> Optional[str]:
    for marker in markers:
        if isinstance(marker, str):
            if marker in text:
                return marker
        else:
            match = marker.search(text)
            if match:
                return match.group(0)
    return None


class MarkerSet:
    """Success and failure vocabulary of the booted application.

    Plain strings match as substrings; a ``re:`` prefix turns the rest of the
    marker into a regular expression.
    """

    def __init__(self, success: Iterable[str] = (), failure: Iterable[str] = ()) -> None:
        self.success_raw = tuple(success)
        self.failure_raw = tuple(failure)
        self._success = _compile(self.success_raw, "success")
        self._failure = _compile(self.failure_raw, "failure")

    def __bool__(self) -> bool:
        return bool(self._success or self._failure)

    def __repr__(self) -> str:
        return f"MarkerSet(success={list(self.success_raw)!r}, failure={list(self.failure_raw)!r})"

    def match_failure(self, text: str) -> Optional[str]:
        return _search(self._failure, text)

    def match_success(self, text: str) -> Optional[str]:
        return _search(self._success, text)

    def match_any(self, text: str) -> Optional[str]:
        return self.match_failure(text) or self.match_success(text)


def classify(
    run: VmRun,
    markers: MarkerSet,
    timeout: Optional[float] = None,
    tail_lines: int = DEFAULT_TAIL_LINES,
    profile: str = "default",
) -> Outcome:
    """Map a finished run onto exactly one terminal outcome.

    A failure marker wins over a success marker, and a zero exit code alone
    never counts as success.
    """
    console = run.console_text()

    def outcome(kind: OutcomeKind, reason: str) -> Outcome:
        return Outcome(
            kind=kind,
            reason=reason,
            console_tail=tail_text(console, tail_lines),
            exit_status=run.exit_status,
            duration=run.duration,
            profile=profile,
        )

    if run.state == RunState.NOT_STARTED:
        return outcome(OutcomeKind.HARNESS_ERROR, run.error or "virtual machine was never started")

    if run.state == RunState.TIMED_OUT:
        limit = f" within {timeout:g}s" if timeout is not None else ""
        seen = markers.match_any(console)
        if seen is not None:
            after = f" after {timeout:g}s" if timeout is not None else ""
            reason = f"marker {seen!r} observed but the virtual machine kept running; stopped{after}"
        else:
            reason = f"no definitive marker observed{limit}; virtual machine stopped"
        return outcome(OutcomeKind.TIMEOUT, reason)

    failure = markers.match_failure(console)
    if failure is not None:
        return outcome(OutcomeKind.BOOT_FAILURE, f"failure marker observed: {failure}")

    success = markers.match_success(console)
    if success is not None:
        return outcome(OutcomeKind.SUCCESS, f"success marker observed: {success}")

    if run.state == RunState.KILLED:
        return outcome(OutcomeKind.HARNESS_ERROR, "run cancelled before a definitive marker was observed")

    reason = f"no definitive marker observed (exit code {run.returncode})"
    if run.error:
        reason += f"; {run.error}"
    return outcome(OutcomeKind.HARNESS_ERROR, reason)
