"""
Escalation Reasons
==================
Standardised constants for why a fix attempt ended FAILED.

Carried on FixOutcome.reason so logs and tests get clean, machine-readable
rejection reasons.
"""

NO_FIX_AVAILABLE = "NO_FIX_AVAILABLE"
GENERATOR_ERROR = "GENERATOR_ERROR"
NO_CHANGE = "NO_CHANGE"
DIFF_TOO_LARGE = "DIFF_TOO_LARGE"
OUT_OF_SCOPE = "OUT_OF_SCOPE"
FILE_UNREADABLE = "FILE_UNREADABLE"
MERGE_CONFLICT = "MERGE_CONFLICT"
COMMIT_CAP = "COMMIT_CAP"
