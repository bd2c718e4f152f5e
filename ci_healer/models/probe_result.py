"""
Probe Result Model
==================
What a CI probe reports for one trigger.

A per-probe timeout is not an exception: it comes back as a FAILED
iteration with cause TIMEOUT, and still consumes one retry unit.
"""
from enum import Enum

from pydantic import BaseModel

from ci_healer.models.results import CiIteration


class ProbeCause(str, Enum):
    COMPLETED = "completed"
    TIMEOUT = "timeout"


class ProbeResult(BaseModel):
    ci_iteration: CiIteration
    raw_output: str = ""
    run_id: str = ""
    cause: ProbeCause = ProbeCause.COMPLETED

    @property
    def timed_out(self) -> bool:
        return self.cause == ProbeCause.TIMEOUT
