"""Executor that applies plan actions in dependency order on a worker pool."""

import threading
import time
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum

from converge.config.models import Reference
from converge.orchestrator.planner import ActionKind, Plan, PlanAction
from converge.orchestrator.references import resolve_value
from converge.providers.base import ProviderClient
from converge.state.models import LockInfo, ResourceState, StateSnapshot
from converge.state.store import StateStore
from converge.utils.errors import (
    ActionFailed,
    ActionTimedOut,
    ConvergeError,
    UnresolvedReferenceError,
)
from converge.utils.logging import get_logger

logger = get_logger(__name__)


class ActionOutcome(Enum):
    """Outcome of a single action."""
    APPLIED = "applied"
    NOOP = "noop"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


# Higher is worse
OUTCOME_SEVERITY = {
    ActionOutcome.NOOP: 0,
    ActionOutcome.APPLIED: 1,
    ActionOutcome.SKIPPED: 2,
    ActionOutcome.TIMED_OUT: 3,
    ActionOutcome.FAILED: 4,
}

SUCCESSFUL_OUTCOMES = (ActionOutcome.APPLIED, ActionOutcome.NOOP)

CANCELLED = "cancelled"

# Seconds between checks for cancellation
POLL_INTERVAL = 0.5


@dataclass
class ActionResult:
    """Result of executing a single action."""

    action_id: str
    resource_id: str
    kind: ActionKind
    outcome: ActionOutcome
    error: Optional[ConvergeError] = None
    blocked_by: Optional[str] = None  # Resource id (or "cancelled") a skip traces back to
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        """Check if the action completed successfully."""
        return self.outcome in SUCCESSFUL_OUTCOMES


@dataclass
class ApplyReport:
    """Complete result of executing a plan."""

    plan: Plan
    results: Dict[str, ActionResult] = field(default_factory=dict)  # action id -> result
    snapshot: Optional[StateSnapshot] = None
    version_id: Optional[str] = None
    persist_error: Optional[Exception] = None
    cancelled: bool = False
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def ordered_results(self) -> List[ActionResult]:
        """Results in plan order."""
        return [self.results[a.action_id] for a in self.plan.actions if a.action_id in self.results]

    def resource_outcomes(self) -> Dict[str, ActionOutcome]:
        """Worst outcome per resource (a replacement has two actions)."""
        outcomes: Dict[str, ActionOutcome] = {}
        for result in self.ordered_results():
            current = outcomes.get(result.resource_id)
            if current is None or OUTCOME_SEVERITY[result.outcome] > OUTCOME_SEVERITY[current]:
                outcomes[result.resource_id] = result.outcome
        return outcomes

    def worst_outcome(self) -> ActionOutcome:
        """Worst outcome across all actions."""
        if not self.results:
            return ActionOutcome.NOOP
        return max((r.outcome for r in self.results.values()), key=OUTCOME_SEVERITY.get)

    def failed_results(self) -> List[ActionResult]:
        """Results of actions that failed or timed out."""
        return [
            r for r in self.ordered_results()
            if r.outcome in (ActionOutcome.FAILED, ActionOutcome.TIMED_OUT)
        ]

    def counts(self) -> Dict[str, int]:
        """Number of actions per outcome."""
        counts = {outcome.value: 0 for outcome in ActionOutcome}
        for result in self.results.values():
            counts[result.outcome.value] += 1
        return counts

    def is_success(self) -> bool:
        """Check if every action was applied or unchanged and state was saved."""
        return self.persist_error is None and self.worst_outcome() in SUCCESSFUL_OUTCOMES

    def exit_code(self) -> int:
        """Process exit code: 0 if every action succeeded, 1 otherwise."""
        return 0 if self.is_success() else 1


@dataclass
class _Running:
    action: PlanAction
    attributes: Optional[Dict[str, Any]]
    start_time: datetime
    submitted: float = field(default_factory=time.monotonic)

    def deadline(self, timeout: float) -> float:
        return self.submitted + timeout


class DeploymentExecutor:
    """Executes plans against a provider with bounded parallelism."""

    def __init__(
        self,
        provider: ProviderClient,
        store: StateStore,
        max_workers: int = 10,
        action_timeout: float = 600
    ):
        """Initialize deployment executor.

        Args:
            provider: Provider client that performs the changes
            store: State store the resulting snapshot is saved to
            max_workers: Maximum number of actions running at once
            action_timeout: Seconds an action may run before it is abandoned
        """
        self.provider = provider
        self.store = store
        self.max_workers = max_workers
        self.action_timeout = action_timeout
        self.logger = get_logger(__name__)

    def execute(
        self,
        plan: Plan,
        snapshot: StateSnapshot,
        token: LockInfo,
        cancel_event: Optional[threading.Event] = None
    ) -> ApplyReport:
        """Execute a plan and persist the resulting snapshot.

        An action starts once everything it requires has been applied or was
        unchanged. Failures and timeouts skip their transitive dependents
        while independent actions carry on. The resulting snapshot is saved
        even when actions fail or the run is cancelled; a failed save is
        recorded on the report as ``persist_error``.

        Args:
            plan: Plan to execute
            snapshot: Snapshot the plan was computed against
            token: Lock token for the snapshot's identity
            cancel_event: Set to stop launching new actions

        Returns:
            ApplyReport with per-action results and the saved snapshot
        """
        cancel_event = cancel_event or threading.Event()
        report = ApplyReport(plan=plan, start_time=datetime.utcnow())
        working: Dict[str, ResourceState] = dict(snapshot.resources)

        changes = len(plan.changes())
        self.logger.info(
            f"Applying {changes} changes with up to {self.max_workers} workers"
        )

        pending: List[PlanAction] = list(plan.actions)
        running: Dict[Future, _Running] = {}
        pool = self._new_pool()
        retired: List[ThreadPoolExecutor] = []

        try:
            while pending or running:
                if cancel_event.is_set():
                    pending = self._cancel(pending, running, report)

                pending = self._launch_ready(pool, pending, running, working, report)

                if not running:
                    for action in pending:
                        unmet = next(a for a in action.requires if a not in report.results)
                        self._record_skip(report, action, unmet)
                    pending = []
                    continue

                done, _ = wait(list(running), timeout=self._wait_timeout(running), return_when=FIRST_COMPLETED)

                for future in done:
                    self._complete(future, running.pop(future), working, report)

                now = time.monotonic()
                expired = [f for f, entry in running.items() if entry.deadline(self.action_timeout) <= now]
                for future in expired:
                    self._time_out(future, running.pop(future), report)

                # Abandoned actions keep their worker threads, so later launches go to a fresh pool
                if expired:
                    pool.shutdown(wait=False)
                    retired.append(pool)
                    pool = self._new_pool()
        finally:
            for old in retired:
                old.shutdown(wait=False, cancel_futures=True)
            pool.shutdown(wait=False, cancel_futures=True)

        report.snapshot = snapshot.successor(working)
        try:
            report.version_id = self.store.save(snapshot.identity, report.snapshot, token)
        except Exception as e:
            self.logger.error(
                f"Failed to save state for '{snapshot.identity}': {e}"
            )
            report.persist_error = e

        report.end_time = datetime.utcnow()
        report.duration = (report.end_time - report.start_time).total_seconds()

        counts = report.counts()
        self.logger.info(
            f"Apply finished in {report.duration:.1f}s: {counts['applied']} applied, "
            f"{counts['noop']} unchanged, {counts['failed']} failed, "
            f"{counts['timed_out']} timed out, {counts['skipped']} skipped",
            extra={'duration': report.duration},
        )

        return report

    def _cancel(
        self,
        pending: List[PlanAction],
        running: Dict[Future, _Running],
        report: ApplyReport
    ) -> List[PlanAction]:
        """Skip actions that have not started. In-flight actions run to completion."""
        if not report.cancelled:
            self.logger.warning("Cancellation requested; not starting further actions")
            report.cancelled = True

        for future, entry in list(running.items()):
            if future.cancel():
                running.pop(future)
                self._record_skip(report, entry.action, CANCELLED)

        for action in pending:
            self._record_skip(report, action, CANCELLED)
        return []

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="converge-action")

    def _wait_timeout(self, running: Dict[Future, _Running]) -> float:
        """Time until the next deadline, bounded so cancellation is noticed."""
        now = time.monotonic()
        timeout = POLL_INTERVAL
        for entry in running.values():
            timeout = min(timeout, entry.deadline(self.action_timeout) - now)
        return max(0.0, timeout)

    def _launch_ready(
        self,
        pool: ThreadPoolExecutor,
        pending: List[PlanAction],
        running: Dict[Future, _Running],
        working: Dict[str, ResourceState],
        report: ApplyReport
    ) -> List[PlanAction]:
        """Launch or skip every pending action whose requirements are settled.

        Actions are in topological order, so a single pass settles anything
        that depends only on actions settled earlier in the same pass. At most
        ``max_workers`` actions are submitted at once, so a submitted action
        never queues behind another and its deadline runs from submission.
        """
        still_pending = []

        for action in pending:
            required = [report.results.get(action_id) for action_id in action.requires]

            if any(r is None for r in required):
                still_pending.append(action)
                continue

            blocker = next((r for r in required if not r.is_success()), None)
            if blocker is not None:
                self._record_skip(report, action, blocker.blocked_by or blocker.resource_id)
                continue

            if action.kind != ActionKind.NOOP and len(running) >= self.max_workers:
                still_pending.append(action)
                continue

            self._start(pool, action, running, working, report)

        return still_pending

    def _start(
        self,
        pool: ThreadPoolExecutor,
        action: PlanAction,
        running: Dict[Future, _Running],
        working: Dict[str, ResourceState],
        report: ApplyReport
    ) -> None:
        """Resolve an action's inputs and launch it, or settle it immediately."""
        start_time = datetime.utcnow()

        if action.kind == ActionKind.NOOP:
            working[action.resource_id] = self._with_dependencies(action.prior, action.dependencies)
            self._record(report, action, ActionOutcome.NOOP, start_time)
            return

        attributes = None
        if action.kind in (ActionKind.CREATE, ActionKind.UPDATE):
            try:
                attributes = resolve_value(
                    action.spec.attributes,
                    lambda ref: self._lookup(action.resource_id, ref, working)
                )
            except UnresolvedReferenceError as e:
                self._record_failure(report, action, ActionFailed(action.resource_id, e, action.kind.value), start_time)
                return

            if action.kind == ActionKind.UPDATE and attributes == action.prior.attributes:
                self.logger.info(
                    f"{action.resource_id}: no changes once references resolved",
                    extra={'resource_id': action.resource_id, 'action': 'noop'},
                )
                working[action.resource_id] = self._with_dependencies(action.prior, action.dependencies)
                self._record(report, action, ActionOutcome.NOOP, start_time)
                return

        entry = _Running(action=action, attributes=attributes, start_time=start_time)
        running[pool.submit(self._run_action, entry)] = entry

    def _run_action(self, entry: _Running) -> Optional[ResourceState]:
        """Call the provider for one action. Runs on a worker thread."""
        action, attributes = entry.action, entry.attributes
        self.logger.info(
            f"{action.resource_id}: {action.kind.value} started",
            extra={'resource_id': action.resource_id, 'resource_type': action.resource_type,
                   'action': action.kind.value},
        )

        if action.kind == ActionKind.DELETE:
            self.provider.delete(action.prior.type, action.prior.provider_id)
            return None

        if action.kind == ActionKind.CREATE:
            provider_id, outputs = self.provider.create(action.resource_type, attributes)
        else:
            provider_id = action.prior.provider_id
            outputs = self.provider.update(action.resource_type, provider_id, attributes)

        return ResourceState(
            id=action.resource_id,
            type=action.resource_type,
            provider_id=provider_id,
            attributes=attributes,
            outputs=dict(outputs or {}),
            dependencies=list(action.dependencies),
        )

    def _complete(
        self,
        future: Future,
        entry: _Running,
        working: Dict[str, ResourceState],
        report: ApplyReport
    ) -> None:
        action = entry.action
        try:
            new_state = future.result()
        except Exception as e:
            self._record_failure(report, action, ActionFailed(action.resource_id, e, action.kind.value), entry.start_time)
            return

        if action.kind == ActionKind.DELETE:
            working.pop(action.resource_id, None)
        else:
            working[action.resource_id] = new_state

        result = self._record(report, action, ActionOutcome.APPLIED, entry.start_time)
        self.logger.info(
            f"{action.resource_id}: {action.kind.value} complete ({result.duration:.1f}s)",
            extra={'resource_id': action.resource_id, 'action': action.kind.value,
                   'duration': result.duration},
        )

    def _time_out(self, future: Future, entry: _Running, report: ApplyReport) -> None:
        action = entry.action
        error = ActionTimedOut(action.resource_id, self.action_timeout, action.kind.value)
        result = self._record(report, action, ActionOutcome.TIMED_OUT, entry.start_time, error=error)
        self.logger.error(
            f"{action.resource_id}: {error.message}; abandoning",
            extra={'resource_id': action.resource_id, 'action': action.kind.value,
                   'duration': result.duration},
        )
        future.add_done_callback(self._late_result_logger(action))

    def _late_result_logger(self, action: PlanAction) -> Callable[[Future], None]:
        def log_late_result(future: Future) -> None:
            if future.cancelled():
                return
            error = future.exception()
            outcome = f"failed: {error}" if error else "succeeded"
            self.logger.warning(
                f"{action.resource_id}: abandoned {action.kind.value} {outcome} after timing out; "
                f"result not recorded in state",
                extra={'resource_id': action.resource_id, 'action': action.kind.value},
            )
        return log_late_result

    def _lookup(self, resource_id: str, ref: Reference, working: Dict[str, ResourceState]) -> Any:
        target = working.get(ref.resource_id)
        if target is None:
            raise UnresolvedReferenceError(resource_id, str(ref), f"{ref.resource_id} is not in state")
        try:
            return target.lookup(ref.field)
        except KeyError:
            raise UnresolvedReferenceError(
                resource_id, str(ref), f"{ref.resource_id} has no attribute '{ref.field}'"
            ) from None

    def _with_dependencies(self, prior: ResourceState, dependencies: List[str]) -> ResourceState:
        if list(prior.dependencies) == list(dependencies):
            return prior
        return prior.model_copy(update={'dependencies': list(dependencies)})

    def _record(
        self,
        report: ApplyReport,
        action: PlanAction,
        outcome: ActionOutcome,
        start_time: Optional[datetime] = None,
        error: Optional[ConvergeError] = None,
        blocked_by: Optional[str] = None
    ) -> ActionResult:
        end_time = datetime.utcnow()
        result = ActionResult(
            action_id=action.action_id,
            resource_id=action.resource_id,
            kind=action.kind,
            outcome=outcome,
            error=error,
            blocked_by=blocked_by,
            start_time=start_time,
            end_time=end_time,
            duration=(end_time - start_time).total_seconds() if start_time else 0.0,
        )
        report.results[action.action_id] = result
        return result

    def _record_failure(
        self,
        report: ApplyReport,
        action: PlanAction,
        error: ActionFailed,
        start_time: datetime
    ) -> None:
        self._record(report, action, ActionOutcome.FAILED, start_time, error=error)
        self.logger.error(
            error.message,
            extra={'resource_id': action.resource_id, 'action': action.kind.value},
        )

    def _record_skip(self, report: ApplyReport, action: PlanAction, blocked_by: str) -> None:
        self._record(report, action, ActionOutcome.SKIPPED, blocked_by=blocked_by)
        self.logger.warning(
            f"{action.resource_id}: {action.kind.value} skipped (blocked by {blocked_by})",
            extra={'resource_id': action.resource_id, 'action': action.kind.value},
        )
