"""Machine-readable run reports (JSON, JUnit XML) for the UEFI netboot harness."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Sequence
from xml.etree.ElementTree import Element, SubElement, tostring

from uefi_netboot.models import Outcome, OutcomeKind
from uefi_netboot.utils import ensure_directory, log

SUITE_NAME = "uefi-netboot"

# characters XML 1.0 cannot carry; firmware consoles emit plenty of ANSI escapes
_XML_INVALID_RE = re.compile("[^\u0009\u000A\u000D\u0020-\uD7FF\uE000-\uFFFD\U00010000-\U0010FFFF]")


def _xml_safe(text: str) -> str:
    return _XML_INVALID_RE.sub("", text)


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML document."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).toprettyxml(indent="  ")


def render_json(outcomes: Sequence[Outcome]) -> str:
    payload = {
        "passed": all(outcome.passed for outcome in outcomes),
        "runs": [outcome.to_dict() for outcome in outcomes],
    }
    return json.dumps(payload, indent=2)


def render_junit(outcomes: Sequence[Outcome]) -> str:
    failures = sum(1 for o in outcomes if o.kind in (OutcomeKind.BOOT_FAILURE, OutcomeKind.TIMEOUT))
    errors = sum(1 for o in outcomes if o.kind == OutcomeKind.HARNESS_ERROR)
    total_time = sum(o.duration or 0.0 for o in outcomes)
    suite = Element(
        "testsuite",
        name=SUITE_NAME,
        tests=str(len(outcomes)),
        failures=str(failures),
        errors=str(errors),
        time=f"{total_time:.3f}",
    )
    for outcome in outcomes:
        case = SubElement(
            suite,
            "testcase",
            classname=SUITE_NAME,
            name=outcome.profile,
            time=f"{(outcome.duration or 0.0):.3f}",
        )
        if outcome.kind == OutcomeKind.HARNESS_ERROR:
            detail = SubElement(case, "error", type=outcome.kind.value, message=_xml_safe(outcome.reason))
        elif not outcome.passed:
            detail = SubElement(case, "failure", type=outcome.kind.value, message=_xml_safe(outcome.reason))
        else:
            detail = None
        if detail is not None:
            detail.text = _xml_safe(outcome.console_tail)
        if outcome.console_tail:
            SubElement(case, "system-out").text = _xml_safe(outcome.console_tail)
    return _element_to_str(suite)


def write_json(outcomes: Sequence[Outcome], path: Path) -> None:
    ensure_directory(path.parent)
    path.write_text(render_json(outcomes) + "\n")
    log("INFO", f"JSON report written to {path}")


def write_junit(outcomes: Sequence[Outcome], path: Path) -> None:
    ensure_directory(path.parent)
    path.write_text(render_junit(outcomes))
    log("INFO", f"JUnit report written to {path}")
