"""Main orchestrator that coordinates planning, locking, execution and state."""

import json
import threading
from pathlib import Path
from typing import Iterable, Optional

from converge.config.models import ResourceSpec
from converge.orchestrator.dependency_graph import GraphBuilder, ResourceGraph
from converge.orchestrator.planner import Plan, Planner
from converge.orchestrator.executor import ApplyReport, DeploymentExecutor
from converge.providers.base import ProviderClient
from converge.state.lock import LockManager
from converge.state.models import LockInfo, StateSnapshot
from converge.state.store import StateStore
from converge.utils.errors import (
    HighRiskPlanError,
    InvalidToken,
    LockError,
    LockNotFound,
    VersionConflict,
)
from converge.utils.logging import LogContext, get_logger

logger = get_logger(__name__)


class ReconcileOrchestrator:
    """Runs plan, apply and destroy cycles for one state identity."""

    def __init__(
        self,
        store: StateStore,
        lock_manager: LockManager,
        provider: ProviderClient,
        identity: str,
        holder: str,
        max_workers: int = 10,
        action_timeout: float = 600,
        errored_state_dir: Optional[str] = None
    ):
        """Initialize orchestrator.

        Args:
            store: State store for the identity's snapshots
            lock_manager: Lock manager guarding the identity
            provider: Provider client actions are applied through
            identity: State identity (project-workspace)
            holder: Lock holder description (user@host)
            max_workers: Maximum parallel actions
            action_timeout: Seconds an action may run before it is abandoned
            errored_state_dir: Where a snapshot that could not be saved is written
        """
        self.store = store
        self.lock_manager = lock_manager
        self.provider = provider
        self.identity = identity
        self.holder = holder
        self.errored_state_dir = Path(errored_state_dir) if errored_state_dir else Path.cwd()

        self.graph_builder = GraphBuilder()
        self.planner = Planner(provider)
        self.executor = DeploymentExecutor(
            provider=provider,
            store=store,
            max_workers=max_workers,
            action_timeout=action_timeout
        )

        self.logger = get_logger(__name__)

    def build_graph(self, specs: Iterable[ResourceSpec]) -> ResourceGraph:
        """Build and validate the resource graph without touching state."""
        return self.graph_builder.build(specs)

    def plan(self, specs: Iterable[ResourceSpec], refresh: bool = False, lock: bool = True) -> Plan:
        """Create a plan for the declared resources.

        Args:
            specs: Declared resources
            refresh: Read every recorded resource from the provider first
            lock: Hold the state lock while reading state

        Returns:
            Plan computed against the latest snapshot

        Raises:
            GraphError: If the declarations do not form a valid graph
            AlreadyLocked: If another operation holds the lock
        """
        graph = self.build_graph(specs)

        with LogContext(self.logger, identity=self.identity):
            token = self.lock_manager.acquire(self.identity, self.holder, "plan") if lock else None
            try:
                snapshot = self.store.load_or_empty(self.identity)
                if refresh:
                    snapshot = self.refresh(snapshot)
                return self.planner.create_plan(graph, snapshot)
            finally:
                if token is not None:
                    self._release(token)

    def apply(
        self,
        specs: Iterable[ResourceSpec],
        allow_high_risk: bool = False,
        cancel_event: Optional[threading.Event] = None,
        saved_plan: Optional[Plan] = None,
        refresh: bool = False,
        operation: str = "apply"
    ) -> ApplyReport:
        """Plan and apply the declared resources under the state lock.

        Args:
            specs: Declared resources
            allow_high_risk: Allow replacing globally unique resources
            cancel_event: Set to stop launching new actions
            saved_plan: Previously computed plan to apply instead of re-planning
            refresh: Read every recorded resource from the provider first
            operation: Operation name recorded on the lock

        Returns:
            ApplyReport for the run

        Raises:
            GraphError: If the declarations do not form a valid graph
            AlreadyLocked: If another operation holds the lock
            VersionConflict: If state changed since ``saved_plan`` was computed
            HighRiskPlanError: If the plan replaces globally unique resources
                and ``allow_high_risk`` is not set
            StateError: If the resulting snapshot could not be saved
        """
        graph = self.build_graph(specs)

        with LogContext(self.logger, identity=self.identity):
            token = self.lock_manager.acquire(self.identity, self.holder, operation)
            self.logger.info(
                f"Acquired lock {token.lock_id} for '{self.identity}'",
                extra={'lock_id': token.lock_id, 'holder': self.holder},
            )
            try:
                snapshot = self.store.load_or_empty(self.identity)

                if saved_plan is not None:
                    snapshot = self._check_saved_plan(saved_plan, snapshot)
                    plan = saved_plan
                else:
                    if refresh:
                        snapshot = self.refresh(snapshot)
                    plan = self.planner.create_plan(graph, snapshot)

                if plan.high_risk_actions() and not allow_high_risk:
                    raise HighRiskPlanError(plan.high_risk_resources())

                report = self.executor.execute(plan, snapshot, token, cancel_event)

                if report.persist_error is not None:
                    self._write_errored_state(report.snapshot)
                    raise report.persist_error

                return report
            finally:
                self._release(token)

    def destroy(
        self,
        allow_high_risk: bool = False,
        cancel_event: Optional[threading.Event] = None,
        saved_plan: Optional[Plan] = None
    ) -> ApplyReport:
        """Delete every recorded resource, dependents first."""
        return self.apply(
            [],
            allow_high_risk=allow_high_risk,
            cancel_event=cancel_event,
            saved_plan=saved_plan,
            operation="destroy"
        )

    def refresh(self, snapshot: StateSnapshot) -> StateSnapshot:
        """Read every recorded resource from the provider.

        Resources that no longer exist drop out of the returned snapshot.
        Values read for recorded attribute keys replace the recorded ones so
        the next diff shows drift. The result is an in-memory view with the
        same serial; nothing is saved.
        """
        resources = {}

        for resource_id, state in snapshot.resources.items():
            current = self.provider.read(state.type, state.provider_id)
            if current is None:
                self.logger.warning(
                    f"{resource_id} no longer exists; it will be recreated",
                    extra={'resource_id': resource_id},
                )
                continue

            attributes = {
                key: current.get(key, value) for key, value in state.attributes.items()
            }
            outputs = {
                key: current.get(key, value) for key, value in state.outputs.items()
            }
            if attributes != state.attributes:
                drifted = sorted(k for k in attributes if attributes[k] != state.attributes[k])
                self.logger.warning(
                    f"{resource_id} drifted: {', '.join(drifted)}",
                    extra={'resource_id': resource_id},
                )

            resources[resource_id] = state.model_copy(update={'attributes': attributes, 'outputs': outputs})

        return snapshot.with_resources(resources)

    def force_unlock(self, lock_id: str) -> LockInfo:
        """Break the lock held on the identity.

        Args:
            lock_id: ID of the lock to break, as reported by ``AlreadyLocked``

        Returns:
            The lock that was removed

        Raises:
            LockNotFound: If the identity is not locked
            InvalidToken: If ``lock_id`` is not the current lock
        """
        current = self.lock_manager.get(self.identity)
        if current is None:
            raise LockNotFound(self.identity)
        if current.lock_id != lock_id:
            raise InvalidToken(self.identity, lock_id)

        self.lock_manager.force_release(self.identity)
        return current

    def _check_saved_plan(self, plan: Plan, snapshot: StateSnapshot) -> StateSnapshot:
        """Make sure a saved plan was computed against the current snapshot."""
        if plan.identity != self.identity or plan.serial != snapshot.serial:
            raise VersionConflict(self.identity, expected=plan.serial, actual=snapshot.serial)

        # Nothing stored yet: the plan's lineage becomes the state's lineage
        if snapshot.serial == 0:
            return snapshot.model_copy(update={'lineage': plan.lineage})

        if plan.lineage != snapshot.lineage:
            raise VersionConflict(self.identity, expected=plan.serial, actual=snapshot.serial)
        return snapshot

    def _release(self, token: LockInfo) -> None:
        """Release the lock without masking the outcome of the run.

        The lock may have been broken with force-unlock while the run was in
        progress, in which case it is left to its new holder.
        """
        try:
            self.lock_manager.release(token)
        except LockError as e:
            self.logger.error(
                f"Could not release lock {token.lock_id}: {e.message}",
                extra={'lock_id': token.lock_id},
            )
            return
        self.logger.info(f"Released lock {token.lock_id}", extra={'lock_id': token.lock_id})

    def _write_errored_state(self, snapshot: StateSnapshot) -> Path:
        """Write a snapshot that could not be saved so it can be recovered by hand."""
        self.errored_state_dir.mkdir(parents=True, exist_ok=True)
        path = self.errored_state_dir / f"errored-{self.identity}.json"

        with open(path, 'w') as f:
            json.dump(snapshot.to_dict(), f, indent=2)

        self.logger.error(
            f"State could not be saved; wrote the resulting snapshot to {path}"
        )
        return path
