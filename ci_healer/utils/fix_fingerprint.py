"""
Fix Fingerprint Utility
========================
Stable identities for fix locations and proposed patches.

Location Signature:
    file + line_number + bug_type
    Identifies the same failure across iterations. The fix applier keys its
    idempotence ledger on it.

Patch Hash:
    SHA-256 of the unified diff, truncated to 16 hex chars.
    Hash the diff only, never the full file content.
"""
import hashlib
from typing import Union

from ci_healer.core.constants import BugType


def generate_location_signature(file_path: str, line_number: int, bug_type: Union[BugType, str]) -> str:
    """Deterministic signature for a (file, line, bug_type) location."""
    value = bug_type.value if isinstance(bug_type, BugType) else bug_type
    raw = f"{file_path}:{line_number}:{value}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def compute_patch_hash(diff: str) -> str:
    """16-character hex hash of a unified diff. Empty string if diff is empty."""
    if not diff or not diff.strip():
        return ""
    return hashlib.sha256(diff.encode("utf-8")).hexdigest()[:16]
