"""
Iteration Controller
====================
Drives the heal loop as an explicit finite-state machine:

    INIT → PROBING → PASSED_TERMINAL
                   → CLASSIFYING → FIXING → PROBING ...
                   → FAILED_TERMINAL
    (any non-terminal state) → ABORTED

Transition rules:
    PROBING      trigger CI once, append the CiIteration (iteration = n + 1).
                 PASSED → PASSED_TERMINAL. FAILED with n == retry_limit →
                 FAILED_TERMINAL. A timed-out probe goes straight back to
                 PROBING, anything else FAILED → CLASSIFYING.
    CLASSIFYING  classify the latest failure output. No classified failure
                 (only Unclassified output) → FAILED_TERMINAL. When classified
                 failures exist, Unclassified items in the same output are
                 logged and left out of the fix history, located or not: a
                 FixEntry needs a bug type and no fix is attempted for them.
    FIXING       one fix attempt per classified failure, in emission order,
                 then PROBING whatever the individual outcomes.

The retry limit bounds CI triggers, not fix attempts: any number of fixes
within one iteration costs one retry unit.

Boundaries:
    Cancellation and the optional run deadline are checked before entering
    PROBING, CLASSIFYING and FIXING, never inside a fix commit. Cancellation
    → ABORTED. Deadline → FAILED_TERMINAL once a CI iteration exists,
    ABORTED before that. ProbeUnavailable / VersionControlUnavailable →
    ABORTED.

The controller assumes exclusive ownership of the branch for the whole run;
admission control for concurrent runs lives outside this module.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from ci_healer.agents.ci_probe import CIProbe
from ci_healer.agents.fix_applier import FixApplier
from ci_healer.agents.git_agent import GitAgent
from ci_healer.core.config import RUN_DEADLINE_SECONDS, RUN_RETRY_LIMIT
from ci_healer.core.constants import CiStatus, FixStatus
from ci_healer.core.errors import ProbeUnavailable, RunAborted, VersionControlUnavailable
from ci_healer.models.failure import ClassificationReport, ClassifiedFailure
from ci_healer.models.probe_result import ProbeResult
from ci_healer.models.results import AgentResults, CiIteration, RunDraft
from ci_healer.parser.failure_parser import classify_failures
from ci_healer.services.run_reporter import RunReporter

logger = logging.getLogger(__name__)

Classifier = Callable[[str], ClassificationReport]


class ControllerState(str, Enum):
    INIT = "INIT"
    PROBING = "PROBING"
    CLASSIFYING = "CLASSIFYING"
    FIXING = "FIXING"
    PASSED_TERMINAL = "PASSED_TERMINAL"
    FAILED_TERMINAL = "FAILED_TERMINAL"
    ABORTED = "ABORTED"


TERMINAL_STATES = frozenset({
    ControllerState.PASSED_TERMINAL,
    ControllerState.FAILED_TERMINAL,
    ControllerState.ABORTED,
})

# States whose entry is guarded by the cancellation / deadline check
_GUARDED_STATES = frozenset({
    ControllerState.PROBING,
    ControllerState.CLASSIFYING,
    ControllerState.FIXING,
})


class IterationController:
    """
    One controller drives one run. Create a new instance per run.

    Parameters
    ----------
    probe : CIProbe
        CI backend to trigger and wait on.
    fix_applier : FixApplier
        Applies one fix per classified failure.
    reporter : RunReporter | None
        Validates and scores the finished draft.
    classifier : callable
        raw CI output → ClassificationReport.
    git_agent : GitAgent | None
        When given, new commits are pushed before each re-probe.
    retry_limit : int
        Maximum number of CI triggers. Must be a positive integer.
    run_deadline_seconds : float
        Overall run deadline; 0 disables it.
    cancel_event : asyncio.Event | None
        External cancellation signal.
    """

    def __init__(
        self,
        probe: CIProbe,
        fix_applier: FixApplier,
        reporter: Optional[RunReporter] = None,
        classifier: Classifier = classify_failures,
        git_agent: Optional[GitAgent] = None,
        retry_limit: int = RUN_RETRY_LIMIT,
        run_deadline_seconds: float = RUN_DEADLINE_SECONDS,
        cancel_event: Optional[asyncio.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if isinstance(retry_limit, bool) or not isinstance(retry_limit, int) or retry_limit < 1:
            raise ValueError(f"retry_limit must be a positive integer, got {retry_limit!r}")

        self.probe = probe
        self.fix_applier = fix_applier
        self.reporter = reporter or RunReporter()
        self.classifier = classifier
        self.git_agent = git_agent
        self.retry_limit = retry_limit
        self.run_deadline_seconds = run_deadline_seconds
        self.cancel_event = cancel_event or asyncio.Event()
        self._clock = clock

        self.state = ControllerState.INIT
        self.draft: Optional[RunDraft] = None
        self.iteration = 0
        self.last_probe: Optional[ProbeResult] = None
        self.pending_failures: List[ClassifiedFailure] = []
        self._unpushed = False
        self._started_at = 0.0
        self._abort_reason = ""
        self._abort_cause: Optional[Exception] = None

        self._handlers: Dict[ControllerState, Callable[[], Awaitable[ControllerState]]] = {
            ControllerState.INIT: self._on_init,
            ControllerState.PROBING: self._on_probing,
            ControllerState.CLASSIFYING: self._on_classifying,
            ControllerState.FIXING: self._on_fixing,
        }

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    async def run(
        self,
        repository_url: str,
        team_name: str,
        team_leader: str,
        branch_name: str,
    ) -> AgentResults:
        """
        Drive the state machine to a terminal state.

        Returns
        -------
        AgentResults
            The scored record for a PASSED or FAILED run.

        Raises
        ------
        RunAborted
            The run ended ABORTED; carries the reason and the unscored draft.
        ValidationError
            The finished history violates the results invariants.
        """
        self.draft = RunDraft(
            repository_url=repository_url,
            team_name=team_name,
            team_leader=team_leader,
            branch_name=branch_name,
            retry_limit=self.retry_limit,
        )
        self.state = ControllerState.INIT
        self._started_at = self._clock()
        logger.info(
            "Starting heal run for %s on %s (retry_limit=%d)",
            repository_url, branch_name, self.retry_limit,
        )

        while self.state not in TERMINAL_STATES:
            next_state = await self.step()
            self._transition(next_state)

        self.draft.total_time_seconds = max(0.0, self._clock() - self._started_at)

        if self.state == ControllerState.ABORTED:
            logger.error("Run ABORTED: %s", self._abort_reason)
            raise RunAborted(self._abort_reason, draft=self.draft, cause=self._abort_cause)

        return self.reporter.finalize(self.draft)

    async def step(self) -> ControllerState:
        """Run the current state's handler and return the guarded next state."""
        handler = self._handlers[self.state]
        try:
            next_state = await handler()
        except (ProbeUnavailable, VersionControlUnavailable) as e:
            return self._abort(f"{type(e).__name__}: {e}", e)
        return self._guard(next_state)

    def cancel(self) -> None:
        """Request cancellation at the next state boundary."""
        self.cancel_event.set()

    # -------------------------------------------------------------------
    # State handlers
    # -------------------------------------------------------------------
    async def _on_init(self) -> ControllerState:
        self.iteration = 0
        self.draft.ci_timeline.clear()
        self.draft.fixes.clear()
        self.last_probe = None
        self.pending_failures = []
        self._unpushed = False
        return ControllerState.PROBING

    async def _on_probing(self) -> ControllerState:
        if self.git_agent is not None and self._unpushed:
            await asyncio.to_thread(self.git_agent.push, self.draft.branch_name)
            self._unpushed = False

        result = await self.probe.trigger(self.draft.branch_name, self.iteration + 1)
        self.iteration += 1
        self.last_probe = result

        if result.ci_iteration.iteration != self.iteration:
            logger.debug(
                "Probe reported iteration %d, recording %d",
                result.ci_iteration.iteration, self.iteration,
            )
        ci_iteration = CiIteration(
            iteration=self.iteration,
            status=result.ci_iteration.status,
            timestamp=result.ci_iteration.timestamp,
        )
        self.draft.ci_timeline.append(ci_iteration)
        logger.info(
            "CI iteration %d/%d: %s%s",
            self.iteration, self.retry_limit, ci_iteration.status.value,
            " (probe timeout)" if result.timed_out else "",
        )

        if ci_iteration.status == CiStatus.PASSED:
            return ControllerState.PASSED_TERMINAL
        if self.iteration >= self.retry_limit:
            logger.info("Retry limit %d reached with CI still FAILED", self.retry_limit)
            return ControllerState.FAILED_TERMINAL
        if result.timed_out:
            return ControllerState.PROBING
        return ControllerState.CLASSIFYING

    async def _on_classifying(self) -> ControllerState:
        raw_output = self.last_probe.raw_output if self.last_probe else ""
        report = self.classifier(raw_output)

        for item in report.unclassified:
            logger.warning(
                "Unclassified failure%s: %s",
                f" at {item.file}:{item.line_number}" if item.file else "",
                item.excerpt[:200],
            )

        if not report.has_classified:
            logger.info("No classifiable failures in iteration %d, no progress possible", self.iteration)
            return ControllerState.FAILED_TERMINAL

        self.pending_failures = list(report.failures)
        return ControllerState.FIXING

    async def _on_fixing(self) -> ControllerState:
        commits_before = self.fix_applier.commit_count

        for failure in self.pending_failures:
            outcome = await self.fix_applier.apply(failure)
            if outcome.noop:
                continue
            self.draft.fixes.append(outcome.entry)
            self.draft.total_failures += 1
            if outcome.entry.status == FixStatus.FIXED:
                self.draft.total_fixes_applied += 1

        self.pending_failures = []
        self.draft.commit_count = self.fix_applier.commit_count
        if self.fix_applier.commit_count > commits_before:
            self._unpushed = True
        return ControllerState.PROBING

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------
    def _guard(self, next_state: ControllerState) -> ControllerState:
        """Apply the cancellation / deadline checks at a state boundary."""
        if next_state not in _GUARDED_STATES:
            return next_state

        if self.cancel_event.is_set():
            return self._abort("cancelled")

        if self.run_deadline_seconds and self._clock() - self._started_at >= self.run_deadline_seconds:
            if self.draft.ci_timeline:
                logger.warning("Run deadline of %.0fs reached", self.run_deadline_seconds)
                return ControllerState.FAILED_TERMINAL
            return self._abort(f"run deadline of {self.run_deadline_seconds:.0f}s reached before any CI iteration")

        return next_state

    def _abort(self, reason: str, cause: Optional[Exception] = None) -> ControllerState:
        self._abort_reason = reason
        self._abort_cause = cause
        return ControllerState.ABORTED

    def _transition(self, next_state: ControllerState) -> None:
        logger.info("State %s → %s", self.state.value, next_state.value)
        self.state = next_state
