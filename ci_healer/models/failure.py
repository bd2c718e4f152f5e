"""
Failure Models
==============
Output of the failure classifier for one CI run.

ClassifiedFailure   — a located failure mapped to one of the six bug types.
UnclassifiedFailure — output the classifier cannot map; never fixed, never
                      retried (the controller records it and moves on).
ClassificationReport — both lists, in deterministic emission order.
"""
from typing import List

from pydantic import BaseModel, ConfigDict, Field

from ci_healer.core.constants import BugType


class ClassifiedFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    bug_type: BugType
    file: str
    line_number: int = Field(ge=1)
    sub_type: str = "generic"
    message: str = ""
    tool: str = ""


class UnclassifiedFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    excerpt: str
    file: str = ""
    line_number: int = 0


class ClassificationReport(BaseModel):
    failures: List[ClassifiedFailure] = Field(default_factory=list)
    unclassified: List[UnclassifiedFailure] = Field(default_factory=list)

    @property
    def has_classified(self) -> bool:
        return bool(self.failures)
