"""
Failure Parser
==============
The failure classifier: converts raw CI output into classified failures.

Pipeline:
    1. Detect candidate error locations (Python tracebacks, compiler / lint
       lines, TypeScript diagnostics, Node stack traces)
    2. Normalize file paths (workspace-relative, forward slashes)
    3. Classify bug_type + sub_type via the classification layer
    4. Route anything unclassifiable to the Unclassified list
    5. Deduplicate by (file, line_number, bug_type)
    6. Sort by bug_type priority (SYNTAX first → LINTING last)

Contract:
    - DETERMINISTIC: same output → same report, always.
    - No LLM allowed in this layer.
    - Regex and heuristic pattern matching only.
    - Tolerant: partial results on parse failure, never crashes.
"""
import re
import logging
from dataclasses import dataclass
from typing import Optional

from ci_healer.models.failure import (
    ClassificationReport,
    ClassifiedFailure,
    UnclassifiedFailure,
)
from ci_healer.parser.classification import (
    classify_error,
    priority_of,
    CONF_HIGH,
    CONF_MEDIUM,
)

logger = logging.getLogger(__name__)

_EXCERPT_LINES = 20


# ---------------------------------------------------------------------------
# Path Ignore Rules
# ---------------------------------------------------------------------------
_IGNORE_PATTERNS: list[str] = [
    "node_modules",
    "__pycache__",
    ".venv",
    "venv",
    ".tox",
    ".mypy_cache",
    ".pytest_cache",
    "site-packages",
    "dist-packages",
    ".git",
]


def _should_ignore(file_path: str) -> bool:
    """Return True if the file path is in an ignored directory."""
    normalized = file_path.replace("\\", "/")
    if normalized.startswith("<") or normalized.startswith("node:") or normalized.startswith("internal/"):
        return True
    for pattern in _IGNORE_PATTERNS:
        if f"/{pattern}/" in f"/{normalized}/":
            return True
    return False


# ---------------------------------------------------------------------------
# Path Normalization
# ---------------------------------------------------------------------------
def normalize_path(raw_path: str, workspace_path: str = "") -> str:
    """
    Convert an absolute or messy path to a clean workspace-relative path.

    Steps:
        1. Replace backslashes with forward slashes
        2. Strip quotes and whitespace
        3. Remove workspace prefix if present
        4. Remove CI runner / container prefixes
        5. Remove leading "./" and slashes
    """
    path = raw_path.strip().strip("'\"")
    path = path.replace("\\", "/")

    if workspace_path:
        ws = workspace_path.replace("\\", "/").rstrip("/")
        if path.startswith(ws + "/"):
            path = path[len(ws):]

    # Sandbox container mount and GitHub runner checkout roots
    if path.startswith("/workspace/"):
        path = path[len("/workspace/"):]
    runner = re.match(r"^/home/runner/work/[^/]+/[^/]+/", path)
    if runner:
        path = path[runner.end():]

    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


# ---------------------------------------------------------------------------
# Error Line Extraction Patterns
# ---------------------------------------------------------------------------
# GitHub Actions log lines carry an ISO timestamp prefix
_LOG_TIMESTAMP = re.compile(r"^\d{4}-\d\d-\d\dT[\d:.]+Z ", re.MULTILINE)

# Python traceback: File "path", line N
_PY_TRACEBACK = re.compile(r'File\s+"([^"]+)",\s+line\s+(\d+)')

# Python / JS error label: ErrorType: message  (pytest prefixes "E   ")
# "Failed:" is what pytest.fail() raises; StopIteration has no Error suffix.
_ERROR_LABEL = re.compile(
    r'^(?:E\s+)?(\w+Error|\w+Exception|StopIteration|Failed):\s*(.*)$',
    re.MULTILINE,
)

# Node / JS stack frame: at fn (path:line:col) or at path:line:col
_NODE_FRAME = re.compile(r'^\s+at\s+(?:.+?\s+\()?([^\s()]+):(\d+):\d+\)?\s*$', re.MULTILINE)

# Compiler / linter: path:line[:col]: [error|warning:] message
_COMPILER_LINE = re.compile(
    r'^([^\s:"\'()]+\.[A-Za-z0-9]+):(\d+)(?::\d+)?:\s*(?:(?:error|warning|note):\s*)?(.+)$',
    re.MULTILINE,
)

# TypeScript: path(line,col): error TSnnnn: message
_TSC_LINE = re.compile(
    r'^([^\s(]+\.[jt]sx?)\((\d+),\d+\):\s*error\s+(TS\d{4}):\s*(.+)$',
    re.MULTILINE,
)

# Leading exception name inside a compiler-style message: "AssertionError: ..."
_LEADING_ERROR_NAME = re.compile(r'^(\w+(?:Error|Exception))\b:?\s*(.*)$')


# ---------------------------------------------------------------------------
# Core Extraction: Candidate Error Lines
# ---------------------------------------------------------------------------
@dataclass
class _RawMatch:
    """Internal: a candidate error extracted from logs before classification."""
    file_path: str
    line_number: int
    error_name: str
    error_message: str
    tool: str
    confidence: float = CONF_MEDIUM


def _extract_python_errors(log: str, workspace_path: str) -> list[_RawMatch]:
    """Pair each Python error label with the closest preceding project frame."""
    matches: list[_RawMatch] = []
    frames = list(_PY_TRACEBACK.finditer(log))
    if not frames:
        return matches

    for label in _ERROR_LABEL.finditer(log):
        closest = None
        for frame in frames:
            if frame.start() >= label.start():
                break
            if not _should_ignore(normalize_path(frame.group(1), workspace_path)):
                closest = frame
        if closest is None:
            continue

        matches.append(_RawMatch(
            file_path=normalize_path(closest.group(1), workspace_path),
            line_number=int(closest.group(2)),
            error_name=label.group(1),
            error_message=label.group(2).strip(),
            tool="python",
            confidence=CONF_HIGH,
        ))

    return matches


def _extract_node_errors(log: str, workspace_path: str) -> list[_RawMatch]:
    """Pair each JS error label with the first project frame that follows it."""
    matches: list[_RawMatch] = []
    frames = list(_NODE_FRAME.finditer(log))
    if not frames:
        return matches

    labels = list(_ERROR_LABEL.finditer(log))
    for idx, label in enumerate(labels):
        next_label_pos = labels[idx + 1].start() if idx + 1 < len(labels) else len(log)
        for frame in frames:
            if frame.start() <= label.start() or frame.start() >= next_label_pos:
                continue
            path = normalize_path(frame.group(1), workspace_path)
            if _should_ignore(path):
                continue
            matches.append(_RawMatch(
                file_path=path,
                line_number=int(frame.group(2)),
                error_name=label.group(1),
                error_message=label.group(2).strip(),
                tool="node",
                confidence=CONF_MEDIUM,
            ))
            break

    return matches


def _extract_compiler_errors(log: str, workspace_path: str) -> list[_RawMatch]:
    """Extract errors from compiler / linter / type-checker lines."""
    matches: list[_RawMatch] = []

    for m in _TSC_LINE.finditer(log):
        path = normalize_path(m.group(1), workspace_path)
        if _should_ignore(path):
            continue
        matches.append(_RawMatch(
            file_path=path,
            line_number=int(m.group(2)),
            error_name="",
            error_message=f"{m.group(3)}: {m.group(4).strip()}",
            tool="tsc",
            confidence=CONF_HIGH,
        ))

    for m in _COMPILER_LINE.finditer(log):
        path = normalize_path(m.group(1), workspace_path)
        if _should_ignore(path):
            continue

        message = m.group(3).strip()
        # pytest --tb=short frame headers ("path:12: in test_name")
        if message.startswith("in "):
            continue
        error_name = ""
        leading = _LEADING_ERROR_NAME.match(message)
        if leading:
            error_name = leading.group(1)
            message = leading.group(2).strip() or message

        matches.append(_RawMatch(
            file_path=path,
            line_number=int(m.group(2)),
            error_name=error_name,
            error_message=message,
            tool="compiler",
            confidence=CONF_MEDIUM,
        ))

    return matches


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------
def _deduplicate(failures: list[tuple[ClassifiedFailure, float]]) -> list[ClassifiedFailure]:
    """
    Deduplicate by (file, line_number, bug_type).
    Keep the failure with the highest confidence; first seen wins ties.
    """
    best: dict[tuple, tuple[ClassifiedFailure, float]] = {}
    for failure, confidence in failures:
        key = (failure.file, failure.line_number, failure.bug_type)
        if key not in best or confidence > best[key][1]:
            best[key] = (failure, confidence)
    return [f for f, _ in best.values()]


# ---------------------------------------------------------------------------
# Priority Sorting
# ---------------------------------------------------------------------------
def _sort_by_priority(failures: list[ClassifiedFailure]) -> list[ClassifiedFailure]:
    """Sort by bug_type priority (SYNTAX first → LINTING last), then location."""
    return sorted(failures, key=lambda f: (priority_of(f.bug_type), f.file, f.line_number))


def _excerpt(log: str, lines: int = _EXCERPT_LINES) -> str:
    """Last N non-empty lines of the log."""
    tail = [line for line in log.splitlines() if line.strip()]
    return "\n".join(tail[-lines:])


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def classify_failures(
    raw_output: str,
    workspace_path: str = "",
    project_type: Optional[str] = None,
) -> ClassificationReport:
    """
    Classify the raw output of one failed CI run.

    Parameters
    ----------
    raw_output : str
        Failure output collected by the CI probe.
    workspace_path : str
        Workspace root for path normalization.
    project_type : str | None
        "node" puts Node extraction first; otherwise Python first.

    Returns
    -------
    ClassificationReport
        Classified failures in deterministic priority order, plus the
        unclassifiable ones. Output with no locatable failure at all yields
        exactly one UnclassifiedFailure. Never raises.
    """
    log = _LOG_TIMESTAMP.sub("", raw_output or "")
    raw_matches: list[_RawMatch] = []

    try:
        if project_type == "node":
            raw_matches.extend(_extract_node_errors(log, workspace_path))
            raw_matches.extend(_extract_compiler_errors(log, workspace_path))
            raw_matches.extend(_extract_python_errors(log, workspace_path))
        else:
            raw_matches.extend(_extract_python_errors(log, workspace_path))
            raw_matches.extend(_extract_compiler_errors(log, workspace_path))
            raw_matches.extend(_extract_node_errors(log, workspace_path))
    except Exception as e:
        logger.warning("Error during log extraction: %s", e, exc_info=True)

    classified: list[tuple[ClassifiedFailure, float]] = []
    unclassified: list[UnclassifiedFailure] = []
    seen_unclassified: set[tuple[str, int]] = set()

    for raw in raw_matches:
        result = classify_error(raw.error_name, raw.error_message)
        if result is None or raw.line_number < 1:
            key = (raw.file_path, raw.line_number)
            if key not in seen_unclassified:
                seen_unclassified.add(key)
                text = f"{raw.error_name}: {raw.error_message}" if raw.error_name else raw.error_message
                unclassified.append(UnclassifiedFailure(
                    excerpt=text, file=raw.file_path, line_number=raw.line_number,
                ))
            continue

        classified.append((
            ClassifiedFailure(
                bug_type=result.bug_type,
                file=raw.file_path,
                line_number=raw.line_number,
                sub_type=result.sub_type,
                message=raw.error_message,
                tool=raw.tool,
            ),
            min(raw.confidence, result.confidence),
        ))

    failures = _sort_by_priority(_deduplicate(classified))

    # A located failure wins over an unclassifiable one at the same spot
    located = {(f.file, f.line_number) for f in failures}
    unclassified = [u for u in unclassified if (u.file, u.line_number) not in located]

    if not failures and not unclassified:
        unclassified.append(UnclassifiedFailure(excerpt=_excerpt(log)))

    logger.info(
        "Classified %d failure(s), %d unclassified, from output (%d chars)",
        len(failures), len(unclassified), len(raw_output or ""),
    )
    return ClassificationReport(failures=failures, unclassified=unclassified)
