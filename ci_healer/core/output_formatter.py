"""
Output Formatter
================
THE SINGLE SOURCE OF TRUTH for commit message strings.

STRICT DETERMINISM CONTRACT:
  - This module NEVER reads environment variables.
  - This module NEVER modifies wording dynamically.
  - Given the same inputs, it ALWAYS returns the exact same output string.

INTEGRATION CONTRACT:
  Callers supply:
    bug_type   : BugType | str — one of BUG_TYPES (e.g. "LINTING")
    file_path  : str  — relative to repo root (e.g. "src/app.py")
    line_number: int  — exact line number reported by the classifier
    sub_type   : str  — key within FIX_TEMPLATES[bug_type]

  The formatter OUTPUTS exactly (byte-for-byte):
    [AI-AGENT] {BUG_TYPE} error in {file_path} line {line_number} → Fix: {fix_description}
"""
from typing import Union

from ci_healer.core.constants import ARROW, BUG_TYPES, COMMIT_PREFIX, BugType


# ---------------------------------------------------------------------------
# Fix Templates
# ---------------------------------------------------------------------------
# Structure:  FIX_TEMPLATES[bug_type][sub_type] = fix_description
#
# RULES:
#   - All fix_description values MUST be lowercase sentences.
#   - The classifier selects the sub_type; this dict selects the description.
#   - Every bug_type has a "generic" entry used when the sub_type is unknown.
# ---------------------------------------------------------------------------
FIX_TEMPLATES: dict[str, dict[str, str]] = {

    BugType.LINTING.value: {
        "generic":          "resolve the reported lint violation",
        "unused_import":    "remove the unused import statement",
        "unused_variable":  "remove or utilise the unused variable",
        "line_too_long":    "shorten line to comply with maximum line length",
        "missing_whitespace": "add required whitespace around operator",
        "trailing_whitespace": "remove trailing whitespace from line",
        "multiple_statements": "split multiple statements onto separate lines",
    },

    BugType.SYNTAX.value: {
        "generic":          "correct invalid syntax on reported line",
        "missing_colon":    "add missing colon at end of statement",
        "missing_bracket":  "add missing closing bracket",
        "missing_parenthesis": "add missing closing parenthesis",
        "invalid_syntax":   "correct invalid syntax on reported line",
    },

    BugType.LOGIC.value: {
        "generic":          "correct the failing behaviour on reported line",
        "wrong_operator":   "replace operator with correct logical operator",
        "wrong_condition":  "correct boolean condition to match intended logic",
        "off_by_one":       "adjust loop or index boundary by one",
        "infinite_loop":    "add correct termination condition to loop",
        "failing_test":     "correct the implementation to satisfy the failing test",
    },

    BugType.TYPE_ERROR.value: {
        "generic":          "align the value with its declared type",
        "type_mismatch":    "cast variable to the expected type",
        "none_reference":   "add none check before accessing attribute",
        "incompatible_types": "align variable types to resolve incompatibility",
    },

    BugType.IMPORT.value: {
        "generic":          "correct the failing import",
        "missing_import":   "add missing import statement at top of file",
        "wrong_path":       "correct the import path to match module location",
        "circular_import":  "refactor to remove circular import dependency",
        "undefined_name":   "import or define the missing name",
    },

    BugType.INDENTATION.value: {
        "generic":          "fix indentation to use consistent spaces",
        "wrong_indent":     "fix indentation to use consistent spaces",
        "mixed_indent":     "convert mixed tabs and spaces to spaces only",
        "over_indent":      "reduce indentation to match surrounding block level",
        "under_indent":     "increase indentation to match surrounding block level",
    },
}


# ---------------------------------------------------------------------------
# Validation Helpers
# ---------------------------------------------------------------------------
def validate_bug_type(bug_type: Union[BugType, str]) -> str:
    """
    Return the string value of bug_type.
    Raises ValueError if it is not a recognised BUG_TYPES member.
    """
    value = bug_type.value if isinstance(bug_type, BugType) else bug_type
    if not isinstance(value, str):
        raise TypeError(f"bug_type must be str, got {type(bug_type).__name__}")
    if value not in BUG_TYPES:
        raise ValueError(
            f"Unknown bug_type '{value}'. "
            f"Allowed values: {sorted(BUG_TYPES)}"
        )
    return value


def validate_line_number(line_number: int) -> None:
    """Raises ValueError if line_number is not a positive integer."""
    if isinstance(line_number, bool) or not isinstance(line_number, int):
        raise TypeError(f"line_number must be int, got {type(line_number).__name__}")
    if line_number < 1:
        raise ValueError(f"line_number must be >= 1, got {line_number}")


def validate_file_path(file_path: str) -> None:
    """
    Raises ValueError if file_path is empty or not a string.
    Only lightweight checks — does NOT touch the filesystem.
    """
    if not isinstance(file_path, str):
        raise TypeError(f"file_path must be str, got {type(file_path).__name__}")
    if not file_path.strip():
        raise ValueError("file_path must not be empty or whitespace-only")


# ---------------------------------------------------------------------------
# Template Resolver
# ---------------------------------------------------------------------------
def resolve_fix_description(bug_type: Union[BugType, str], sub_type: str = "generic") -> str:
    """
    Look up the fix description for a given (bug_type, sub_type) pair.

    Unknown sub_types resolve to the bug_type's "generic" description so a
    classifier refinement can never break commit message generation.
    """
    value = validate_bug_type(bug_type)
    type_map = FIX_TEMPLATES[value]
    return type_map.get(sub_type) or type_map["generic"]


# ---------------------------------------------------------------------------
# Core Format Function
# ---------------------------------------------------------------------------
def format_output(
    bug_type: Union[BugType, str],
    file_path: str,
    line_number: int,
    fix_description: str,
) -> str:
    """
    Generate the canonical fix description line.

    Output format (byte-perfect):
        {BUG_TYPE} error in {file_path} line {line_number} → Fix: {fix_description}

    Rules enforced here:
      - "error in"  is always lowercase.
      - "line"      is always lowercase.
      - "Fix:"      has a capital F and a colon.
      - Single spaces only between every token.
      - ARROW constant (U+2192) is used — never the ASCII sequence "->".
    """
    value = validate_bug_type(bug_type)
    validate_file_path(file_path)
    validate_line_number(line_number)

    if not isinstance(fix_description, str) or not fix_description.strip():
        raise ValueError("fix_description must be a non-empty string")

    return (
        f"{value} error in {file_path} line {line_number}"
        f" {ARROW} Fix: {fix_description}"
    )


def format_commit_message(
    bug_type: Union[BugType, str],
    file_path: str,
    line_number: int,
    sub_type: str = "generic",
) -> str:
    """
    Build the commit message for one fix.

    Upstream agents should call THIS function, not format_output() directly.
    """
    fix_description = resolve_fix_description(bug_type, sub_type)
    return f"{COMMIT_PREFIX} {format_output(bug_type, file_path, line_number, fix_description)}"
