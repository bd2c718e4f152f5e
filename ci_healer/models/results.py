"""
Results Models
==============
Pydantic models for the run history handed to the persistence collaborator.

Python attributes are snake_case; the wire names are camelCase through the
alias generator, so ``model_dump(by_alias=True, mode="json")`` yields the
exact results.json shape:

    AgentResults
        repositoryUrl, teamName, teamLeader, branchName     — run identity
        totalFailures, totalFixesApplied, commitCount,
        retryLimit                                          — counters
        finalCiStatus, totalTimeSeconds                     — outcome
        baseScore, speedBonus, efficiencyPenalty,
        finalScore                                          — derived score
        ciTimeline: [CiIteration]                           — chronological
        fixes: [FixEntry]                                   — chronological

CiIteration, FixEntry and AgentResults are frozen. RunDraft is the mutable
accumulator owned by the iteration controller until the run terminates.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ci_healer.core.constants import BugType, CiStatus, FixStatus


_FROZEN = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class CiIteration(BaseModel):
    model_config = _FROZEN

    iteration: int = Field(ge=1)
    status: CiStatus
    timestamp: datetime


class FixEntry(BaseModel):
    model_config = _FROZEN

    file: str
    bug_type: BugType
    line_number: int = Field(ge=1)
    commit_message: str
    status: FixStatus


class RunDraft(BaseModel):
    """Mutable accumulator for one run. Same fields as AgentResults minus the score."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    repository_url: str
    team_name: str
    team_leader: str
    branch_name: str
    retry_limit: int

    total_failures: int = 0
    total_fixes_applied: int = 0
    commit_count: int = 0
    total_time_seconds: float = 0.0
    ci_timeline: List[CiIteration] = Field(default_factory=list)
    fixes: List[FixEntry] = Field(default_factory=list)

    @property
    def final_ci_status(self) -> Optional[CiStatus]:
        """Status of the latest CI iteration, None before the first probe."""
        if not self.ci_timeline:
            return None
        return self.ci_timeline[-1].status

    @property
    def failed_fix_count(self) -> int:
        return sum(1 for f in self.fixes if f.status == FixStatus.FAILED)


class AgentResults(BaseModel):
    model_config = _FROZEN

    repository_url: str
    team_name: str
    team_leader: str
    branch_name: str

    total_failures: int = Field(ge=0)
    total_fixes_applied: int = Field(ge=0)
    commit_count: int = Field(ge=0)
    retry_limit: int = Field(ge=1)

    final_ci_status: CiStatus
    total_time_seconds: float = Field(ge=0)

    base_score: float
    speed_bonus: float
    efficiency_penalty: float
    final_score: float

    ci_timeline: List[CiIteration]
    fixes: List[FixEntry]

    def to_wire(self) -> dict:
        """Serialise with the camelCase field names of the results contract."""
        return self.model_dump(by_alias=True, mode="json")
