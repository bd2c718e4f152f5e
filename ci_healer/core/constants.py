"""
Constants
Centralised storage for the closed enumerations of the results contract
and the commit message rules.
"""
from enum import Enum


class CiStatus(str, Enum):
    """Terminal outcome of one CI run."""
    PASSED = "PASSED"
    FAILED = "FAILED"


class BugType(str, Enum):
    """Supported bug type identifiers.  Values must remain UPPERCASE strings."""
    LINTING = "LINTING"
    SYNTAX = "SYNTAX"
    LOGIC = "LOGIC"
    TYPE_ERROR = "TYPE_ERROR"
    IMPORT = "IMPORT"
    INDENTATION = "INDENTATION"


class FixStatus(str, Enum):
    FIXED = "FIXED"
    FAILED = "FAILED"


BUG_TYPES = [bt.value for bt in BugType]
ARROW = "\u2192"
COMMIT_PREFIX = "[AI-AGENT]"
PROTECTED_BRANCHES = {"main", "master"}
