"""
Errors
======
Operational failures of a healing run.

Expected domain outcomes (CI FAILED, fix FAILED, unclassified output, probe
timeout) are recorded as data and never appear here. Everything in this
module ends a run without a score.
"""


class HealerError(Exception):
    """Base class for all operational errors."""


class ProbeUnavailable(HealerError):
    """The CI system stayed unreachable after bounded retries."""


class VersionControlUnavailable(HealerError):
    """A git write kept conflicting after bounded retries."""


class ValidationError(HealerError):
    """A finished draft violates the results invariants (controller bug)."""

    def __init__(self, violations):
        self.violations = list(violations)
        super().__init__("; ".join(self.violations))


class RunAborted(HealerError):
    """The run ended in the ABORTED state."""

    def __init__(self, reason: str, draft=None, cause: Exception = None):
        self.reason = reason
        self.draft = draft
        self.cause = cause
        super().__init__(reason)
