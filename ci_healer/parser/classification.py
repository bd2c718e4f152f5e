"""
Classification
==============
Maps raw error strings to the six allowed bug types and their sub_types.

Allowed Bug Types:
    LINTING, SYNTAX, LOGIC, TYPE_ERROR, IMPORT, INDENTATION

Classification Strategy:
    1. EXPLICIT TABLE FIRST — exception-name lookup (fast path)
    2. RULE CODES SECOND — lint / type-checker codes (E501, F401, TS2322, [arg-type])
    3. REGEX PATTERNS THIRD — for fuzzy or multi-word matches
    4. NEVER dynamic inference or LLM

A name that misses all three passes but still looks like an exception
(*Error, *Exception) is LOGIC/generic at low confidence. The parser only asks
about located failures, so this covers custom and runtime exceptions raised
from project code. Anything else is UNCLASSIFIED (None).

Sub_types MUST match FIX_TEMPLATES keys in output_formatter.py.
"""
import re
from dataclasses import dataclass
from typing import Optional

from ci_healer.core.constants import BugType


# ---------------------------------------------------------------------------
# Classification Result
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ClassificationResult:
    """Immutable result of classifying an error message."""
    bug_type: BugType
    sub_type: str
    confidence: float  # 0.0–1.0


# ---------------------------------------------------------------------------
# Confidence Constants
# ---------------------------------------------------------------------------
CONF_HIGH = 0.95
CONF_MEDIUM = 0.75
CONF_LOW = 0.50

_S = BugType.SYNTAX
_I = BugType.IMPORT
_T = BugType.TYPE_ERROR
_N = BugType.INDENTATION
_G = BugType.LOGIC
_L = BugType.LINTING


# ---------------------------------------------------------------------------
# 1. Explicit Keyword Table (fastest path)
# ---------------------------------------------------------------------------
# Maps lowercased error-class names → (bug_type, sub_type, confidence)
_KEYWORD_MAP: dict[str, tuple[BugType, str, float]] = {
    # Python exceptions
    "syntaxerror":         (_S, "invalid_syntax",  CONF_HIGH),
    "indentationerror":    (_N, "wrong_indent",    CONF_HIGH),
    "taberror":            (_N, "mixed_indent",    CONF_HIGH),
    "importerror":         (_I, "missing_import",  CONF_HIGH),
    "modulenotfounderror": (_I, "missing_import",  CONF_HIGH),
    "typeerror":           (_T, "type_mismatch",   CONF_HIGH),
    "attributeerror":      (_T, "none_reference",  CONF_HIGH),
    "nameerror":           (_I, "undefined_name",  CONF_MEDIUM),
    "assertionerror":      (_G, "failing_test",    CONF_HIGH),
    "indexerror":          (_G, "off_by_one",      CONF_MEDIUM),
    "keyerror":            (_G, "wrong_condition", CONF_MEDIUM),
    "valueerror":          (_T, "type_mismatch",   CONF_MEDIUM),
    "recursionerror":      (_G, "infinite_loop",   CONF_HIGH),
    "zerodivisionerror":   (_G, "wrong_operator",  CONF_MEDIUM),
    "stopiteration":       (_G, "off_by_one",      CONF_LOW),
    "failed":              (_G, "failing_test",    CONF_MEDIUM),   # pytest.fail()

    # JS / Node exceptions
    "referenceerror":      (_I, "undefined_name",  CONF_HIGH),
    "rangeerror":          (_G, "off_by_one",      CONF_MEDIUM),

    # Language-agnostic error names
    "compilationerror":    (_S, "invalid_syntax",  CONF_MEDIUM),
    "linterror":           (_L, "generic",         CONF_HIGH),
    "linkerror":           (_I, "missing_import",  CONF_MEDIUM),
}


# ---------------------------------------------------------------------------
# 2. Rule Codes (lint / type-checker markers)
# ---------------------------------------------------------------------------
# Exact codes first, then prefix families.
_EXACT_CODES: dict[str, tuple[BugType, str]] = {
    # pycodestyle / pyflakes / ruff
    "E501": (_L, "line_too_long"),
    "W291": (_L, "trailing_whitespace"),
    "W293": (_L, "trailing_whitespace"),
    "E701": (_L, "multiple_statements"),
    "E702": (_L, "multiple_statements"),
    "E703": (_L, "multiple_statements"),
    "E101": (_N, "mixed_indent"),
    "W191": (_N, "mixed_indent"),
    "E112": (_N, "under_indent"),
    "E113": (_N, "over_indent"),
    "E117": (_N, "over_indent"),
    "F401": (_L, "unused_import"),
    "F841": (_L, "unused_variable"),
    "F821": (_I, "undefined_name"),
    "F822": (_I, "undefined_name"),
    # pylint
    "C0301": (_L, "line_too_long"),
    "W0611": (_L, "unused_import"),
    "W0612": (_L, "unused_variable"),
    "E0001": (_S, "invalid_syntax"),
    "E0401": (_I, "missing_import"),
    "E0602": (_I, "undefined_name"),
    "E1101": (_T, "none_reference"),
    "W0311": (_N, "wrong_indent"),
    # TypeScript
    "TS2307": (_I, "wrong_path"),
    "TS2304": (_I, "undefined_name"),
    # mypy error codes (bracketed suffix)
    "import": (_I, "missing_import"),
    "import-not-found": (_I, "missing_import"),
    "import-untyped": (_I, "missing_import"),
    "name-defined": (_I, "undefined_name"),
    "syntax": (_S, "invalid_syntax"),
    "union-attr": (_T, "none_reference"),
    "assignment": (_T, "incompatible_types"),
    # eslint rules
    "no-unused-vars": (_L, "unused_variable"),
    "no-undef": (_I, "undefined_name"),
    "indent": (_N, "wrong_indent"),
    "no-mixed-spaces-and-tabs": (_N, "mixed_indent"),
    "no-trailing-spaces": (_L, "trailing_whitespace"),
    "max-len": (_L, "line_too_long"),
}

# (tool, compiled_regex, bug_type, sub_type), matched against the whole code
_CODE_FAMILIES: list[tuple[str, re.Pattern, BugType, str]] = [
    ("lint",   re.compile(r"^E1\d\d$"),             _N, "wrong_indent"),
    ("lint",   re.compile(r"^E9\d\d$"),             _S, "invalid_syntax"),
    ("lint",   re.compile(r"^[A-Z]{1,3}\d{3,4}$"),  _L, "generic"),
    ("tsc",    re.compile(r"^TS1\d{3}$"),           _S, "invalid_syntax"),
    ("tsc",    re.compile(r"^TS\d{4}$"),            _T, "type_mismatch"),
    ("mypy",   re.compile(r"^[a-z][a-z-]*$"),       _T, "type_mismatch"),
    ("eslint", re.compile(r".+"),                   _L, "generic"),
]

# Order matters: the most specific marker wins.
_CODE_MARKERS: list[tuple[str, re.Pattern]] = [
    ("eslint", re.compile(r"\[(?:Error|Warning)/([@\w/-]+)\]\s*$")),
    ("tsc",    re.compile(r"\b(TS\d{4})\b")),
    ("mypy",   re.compile(r"\[([a-z][a-z-]*)\]\s*$")),
    ("lint",   re.compile(r"^\s*([A-Z]{1,3}\d{3,4})\b")),
]


def extract_rule_code(message: str) -> Optional[tuple[str, str]]:
    """Return (tool, code) for the lint / type-checker code in a message, if any."""
    for tool, pattern in _CODE_MARKERS:
        m = pattern.search(message)
        if m:
            return tool, m.group(1)
    return None


def classify_rule_code(code: str, tool: str = "lint") -> Optional[ClassificationResult]:
    """Classify a lint / type-checker rule code. Returns None if unknown."""
    if code in _EXACT_CODES:
        bt, st = _EXACT_CODES[code]
        return ClassificationResult(bug_type=bt, sub_type=st, confidence=CONF_HIGH)
    for family, pattern, bt, st in _CODE_FAMILIES:
        if family == tool and pattern.match(code):
            return ClassificationResult(bug_type=bt, sub_type=st, confidence=CONF_MEDIUM)
    return None


# ---------------------------------------------------------------------------
# 3. Regex Patterns (last pass)
# ---------------------------------------------------------------------------
# Each entry: (compiled_regex, bug_type, sub_type, confidence)
_REGEX_PATTERNS: list[tuple[re.Pattern, BugType, str, float]] = [
    (re.compile(r"unexpected indent",            re.I), _N, "over_indent",         CONF_HIGH),
    (re.compile(r"expected an indented block",   re.I), _N, "under_indent",        CONF_HIGH),
    (re.compile(r"unindent does not match",      re.I), _N, "wrong_indent",        CONF_HIGH),
    (re.compile(r"(mixed|inconsistent use of) tabs", re.I), _N, "mixed_indent",   CONF_HIGH),
    (re.compile(r"indentation",                  re.I), _N, "wrong_indent",        CONF_MEDIUM),
    (re.compile(r"syntax error",                 re.I), _S, "invalid_syntax",      CONF_HIGH),
    (re.compile(r"invalid syntax",               re.I), _S, "invalid_syntax",      CONF_HIGH),
    (re.compile(r"expected ':'",                 re.I), _S, "missing_colon",       CONF_HIGH),
    (re.compile(r"missing [\)\]}>]",             re.I), _S, "missing_bracket",     CONF_MEDIUM),
    (re.compile(r"unterminated.*paren|'\(' was never closed", re.I), _S, "missing_parenthesis", CONF_HIGH),
    (re.compile(r"unexpected token",             re.I), _S, "invalid_syntax",      CONF_MEDIUM),
    (re.compile(r"imported and not used",        re.I), _L, "unused_import",       CONF_HIGH),
    (re.compile(r"no module named",              re.I), _I, "missing_import",      CONF_HIGH),
    (re.compile(r"cannot find (module|package)", re.I), _I, "wrong_path",          CONF_HIGH),
    (re.compile(r"could not import",             re.I), _I, "missing_import",      CONF_HIGH),
    (re.compile(r"no required module provides",  re.I), _I, "missing_import",      CONF_HIGH),
    (re.compile(r"module not found",             re.I), _I, "missing_import",      CONF_HIGH),
    (re.compile(r"circular import",              re.I), _I, "circular_import",     CONF_HIGH),
    (re.compile(r"is not defined|^undefined: ",  re.I), _I, "undefined_name",      CONF_MEDIUM),
    (re.compile(r"has no attribute",             re.I), _T, "none_reference",      CONF_MEDIUM),
    (re.compile(r"NoneType",                     re.I), _T, "none_reference",      CONF_HIGH),
    (re.compile(r"incompatible type",            re.I), _T, "incompatible_types",  CONF_HIGH),
    (re.compile(r"cannot use .+ as .+ (type|value)", re.I), _T, "type_mismatch",   CONF_HIGH),
    (re.compile(r"cannot assign.*to",            re.I), _T, "type_mismatch",       CONF_MEDIUM),
    (re.compile(r"assert(ion)?\s*(failed|error)?", re.I), _G, "failing_test",      CONF_MEDIUM),
    (re.compile(r"expected .+(but )?(got|was|received)", re.I), _G, "failing_test", CONF_LOW),
    (re.compile(r"unused import|imported but unused", re.I), _L, "unused_import",  CONF_HIGH),
    (re.compile(r"unused variable|never used",   re.I), _L, "unused_variable",     CONF_MEDIUM),
    (re.compile(r"line too long",                re.I), _L, "line_too_long",       CONF_HIGH),
    (re.compile(r"trailing whitespace",          re.I), _L, "trailing_whitespace", CONF_HIGH),
    (re.compile(r"missing whitespace",           re.I), _L, "missing_whitespace",  CONF_HIGH),
    (re.compile(r"multiple statements",          re.I), _L, "multiple_statements", CONF_HIGH),
]


# ---------------------------------------------------------------------------
# Bug Type Priority (for sorting)
# ---------------------------------------------------------------------------
BUG_TYPE_PRIORITY: dict[BugType, int] = {
    BugType.SYNTAX:      0,
    BugType.IMPORT:      1,
    BugType.TYPE_ERROR:  2,
    BugType.INDENTATION: 3,
    BugType.LOGIC:       4,
    BugType.LINTING:     5,
}


# Any exception class name the tables above do not know
_EXCEPTION_NAME = re.compile(r"^[A-Za-z_]\w*(?:Error|Exception)$")


def priority_of(bug_type: BugType) -> int:
    """Return sort priority for a bug type (lower = higher priority)."""
    return BUG_TYPE_PRIORITY.get(bug_type, 99)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def classify_error(error_name: str, error_message: str = "") -> Optional[ClassificationResult]:
    """
    Classify an error into (bug_type, sub_type, confidence).

    Parameters
    ----------
    error_name : str
        The exception class name or error label (e.g. "SyntaxError").
        Empty when the log line carries no such label.
    error_message : str
        The full error message text for rule-code and regex matching.

    Returns
    -------
    ClassificationResult | None
        None means UNCLASSIFIED.
    """
    # --- Pass 1: keyword table ---
    key = error_name.strip().lower().replace(" ", "")
    if key in _KEYWORD_MAP:
        bt, st, conf = _KEYWORD_MAP[key]
        return ClassificationResult(bug_type=bt, sub_type=st, confidence=conf)

    # --- Pass 2: rule codes ---
    marker = extract_rule_code(error_message)
    if marker:
        tool, code = marker
        result = classify_rule_code(code, tool)
        if result is not None:
            return result

    # --- Pass 3: regex on combined text ---
    combined = f"{error_name} {error_message}".strip()
    for pattern, bt, st, conf in _REGEX_PATTERNS:
        if pattern.search(combined):
            return ClassificationResult(bug_type=bt, sub_type=st, confidence=conf)

    # --- Pass 4: unrecognised exception class ---
    if _EXCEPTION_NAME.match(error_name.strip()):
        return ClassificationResult(bug_type=BugType.LOGIC, sub_type="generic", confidence=CONF_LOW)

    return None
