"""Planner that diffs the resource graph against the recorded state."""

from typing import Any, Dict, List, Optional, Set
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime

from converge.config.models import Reference, ResourceSpec
from converge.orchestrator.dependency_graph import DependencyGraph, ResourceGraph
from converge.orchestrator.references import (
    UNKNOWN,
    contains_unknown,
    render_value,
    resolve_value,
)
from converge.providers.base import ProviderClient
from converge.state.models import ResourceState, StateSnapshot
from converge.utils.errors import UnresolvedReferenceError
from converge.utils.logging import get_logger

logger = get_logger(__name__)

_MISSING = object()


class ActionKind(Enum):
    """Kind of change an action makes."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


@dataclass
class AttributeDiff:
    """Change to a single top-level attribute."""

    name: str
    old: Any = None
    new: Any = None
    unknown: bool = False  # New value is only known after apply
    forces_replacement: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'old': render_value(self.old),
            'new': render_value(self.new),
            'unknown': self.unknown,
            'forces_replacement': self.forces_replacement,
        }


@dataclass
class PlanAction:
    """One step of a plan."""

    resource_id: str
    resource_type: str
    kind: ActionKind
    diffs: List[AttributeDiff] = field(default_factory=list)
    requires: List[str] = field(default_factory=list)  # action ids
    replace: bool = False
    high_risk: bool = False
    deferred: bool = False
    pending_references: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    spec: Optional[ResourceSpec] = None  # Desired spec (create, update, noop)
    prior: Optional[ResourceState] = None  # Recorded state (update, delete, noop)
    dependencies: List[str] = field(default_factory=list)  # Dependencies to record on apply

    @property
    def action_id(self) -> str:
        return f"{self.resource_id}:{self.kind.value}"

    def is_change(self) -> bool:
        """Check if the action calls the provider."""
        return self.kind != ActionKind.NOOP

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            'action_id': self.action_id,
            'resource_id': self.resource_id,
            'resource_type': self.resource_type,
            'kind': self.kind.value,
            'replace': self.replace,
            'high_risk': self.high_risk,
            'deferred': self.deferred,
            'pending_references': list(self.pending_references),
            'requires': list(self.requires),
            'reason': self.reason,
            'diffs': [diff.to_dict() for diff in self.diffs],
        }


@dataclass
class Plan:
    """Ordered actions computed against one snapshot version."""

    identity: str
    lineage: str
    serial: int
    actions: List[PlanAction] = field(default_factory=list)  # Topological order
    skipped: List[str] = field(default_factory=list)  # Declared with count 0
    created_at: datetime = field(default_factory=datetime.utcnow)

    def get_action(self, action_id: str) -> Optional[PlanAction]:
        """Get an action by id."""
        for action in self.actions:
            if action.action_id == action_id:
                return action
        return None

    def changes(self) -> List[PlanAction]:
        """Actions that call the provider."""
        return [action for action in self.actions if action.is_change()]

    def has_changes(self) -> bool:
        """Check if the plan has any changes."""
        return any(action.is_change() for action in self.actions)

    def updates_state(self) -> bool:
        """Check if applying would change recorded state (including dependency records)."""
        return self.has_changes() or any(
            action.prior is not None and list(action.prior.dependencies) != list(action.dependencies)
            for action in self.actions
            if action.kind == ActionKind.NOOP
        )

    def high_risk_actions(self) -> List[PlanAction]:
        """Actions that replace globally unique resources."""
        return [action for action in self.actions if action.high_risk]

    def high_risk_resources(self) -> List[str]:
        """Identities of resources a high-risk replacement touches."""
        seen: List[str] = []
        for action in self.high_risk_actions():
            if action.resource_id not in seen:
                seen.append(action.resource_id)
        return seen

    def summary(self) -> Dict[str, int]:
        """Get a summary of changes by kind. A replacement counts once."""
        summary = {'create': 0, 'update': 0, 'delete': 0, 'replace': 0, 'noop': 0}

        for action in self.actions:
            if action.replace:
                if action.kind == ActionKind.CREATE:
                    summary['replace'] += 1
                continue
            summary[action.kind.value] += 1

        return summary

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            'identity': self.identity,
            'lineage': self.lineage,
            'serial': self.serial,
            'created_at': self.created_at.isoformat(),
            'summary': self.summary(),
            'skipped': list(self.skipped),
            'actions': [action.to_dict() for action in self.actions],
        }


class Planner:
    """Computes the actions that move recorded state to the declared graph."""

    def __init__(self, provider: ProviderClient):
        """Initialize planner.

        Args:
            provider: Provider consulted for immutable and globally unique types
        """
        self.provider = provider
        self.logger = get_logger(__name__)

    def create_plan(self, graph: ResourceGraph, snapshot: StateSnapshot) -> Plan:
        """Create a plan by comparing the declared graph with a snapshot.

        Args:
            graph: Validated resource graph
            snapshot: Snapshot the plan is computed against

        Returns:
            Plan whose actions are in dependency order

        Raises:
            UnresolvedReferenceError: If a reference names a field the
                recorded state does not have
        """
        self.logger.info(f"Planning {len(graph)} resources against serial {snapshot.serial}")

        actions: Dict[str, PlanAction] = {}
        final_action: Dict[str, str] = {}  # resource id -> action that makes it available
        kinds: Dict[str, str] = {}  # resource id -> create | replace | update | noop
        changed_keys: Dict[str, Set[str]] = {}
        replaced: Set[str] = set()

        for resource_id in graph.topological_order():
            spec = graph.get(resource_id)
            prior = snapshot.get(resource_id)
            dependencies = graph.dependencies(resource_id)
            requires = [final_action[dep_id] for dep_id in dependencies]

            pending: List[str] = []
            resolved = resolve_value(
                spec.attributes,
                lambda ref: self._plan_lookup(resource_id, ref, snapshot, kinds, changed_keys, pending)
            )

            if prior is None:
                action = PlanAction(
                    resource_id=resource_id,
                    resource_type=spec.type,
                    kind=ActionKind.CREATE,
                    diffs=self._diff({}, resolved, frozenset()),
                    requires=requires,
                    reason="not in state",
                )
                kinds[resource_id] = 'create'
            else:
                immutable = frozenset(spec.lifecycle.immutable) | self.provider.immutable_attributes(spec.type)
                diffs = self._diff(prior.attributes, resolved, immutable)

                if prior.type != spec.type:
                    reason = f"type changed from {prior.type} to {spec.type}"
                    for diff in diffs:
                        diff.forces_replacement = True
                elif any(diff.forces_replacement for diff in diffs):
                    forced = [diff.name for diff in diffs if diff.forces_replacement]
                    reason = f"immutable attribute changed: {', '.join(forced)}"
                else:
                    reason = None

                if reason:
                    high_risk = spec.lifecycle.globally_unique or self.provider.is_globally_unique(spec.type)
                    delete = PlanAction(
                        resource_id=resource_id,
                        resource_type=prior.type,
                        kind=ActionKind.DELETE,
                        replace=True,
                        high_risk=high_risk,
                        reason=reason,
                        prior=prior,
                    )
                    actions[delete.action_id] = delete
                    action = PlanAction(
                        resource_id=resource_id,
                        resource_type=spec.type,
                        kind=ActionKind.CREATE,
                        diffs=diffs,
                        requires=requires + [delete.action_id],
                        replace=True,
                        high_risk=high_risk,
                        reason=reason,
                        prior=prior,
                    )
                    kinds[resource_id] = 'replace'
                    replaced.add(resource_id)
                elif diffs:
                    action = PlanAction(
                        resource_id=resource_id,
                        resource_type=spec.type,
                        kind=ActionKind.UPDATE,
                        diffs=diffs,
                        requires=requires,
                        reason="attributes changed",
                        prior=prior,
                    )
                    kinds[resource_id] = 'update'
                    changed_keys[resource_id] = {diff.name for diff in diffs}
                else:
                    action = PlanAction(
                        resource_id=resource_id,
                        resource_type=spec.type,
                        kind=ActionKind.NOOP,
                        requires=requires,
                        prior=prior,
                    )
                    kinds[resource_id] = 'noop'

            action.spec = spec
            action.dependencies = dependencies
            action.deferred = contains_unknown(resolved)
            action.pending_references = pending
            actions[action.action_id] = action
            final_action[resource_id] = action.action_id

        removed = [rid for rid in snapshot.resource_ids() if rid not in graph]
        self._plan_deletes(snapshot, removed, replaced, final_action, actions)

        plan = Plan(
            identity=snapshot.identity,
            lineage=snapshot.lineage,
            serial=snapshot.serial,
            actions=self._order_actions(actions),
            skipped=list(graph.skipped),
        )

        summary = plan.summary()
        self.logger.info(
            f"Plan: {summary['create']} to create, {summary['update']} to update, "
            f"{summary['replace']} to replace, {summary['delete']} to delete, "
            f"{summary['noop']} unchanged"
        )

        return plan

    def _plan_lookup(
        self,
        resource_id: str,
        ref: Reference,
        snapshot: StateSnapshot,
        kinds: Dict[str, str],
        changed_keys: Dict[str, Set[str]],
        pending: List[str]
    ) -> Any:
        target_kind = kinds.get(ref.resource_id)
        head = ref.field.split(".", 1)[0]

        if target_kind in ('create', 'replace') or (
            target_kind == 'update' and head in changed_keys.get(ref.resource_id, set())
        ):
            pending.append(str(ref))
            return UNKNOWN

        target = snapshot.get(ref.resource_id)
        try:
            return target.lookup(ref.field)
        except KeyError:
            raise UnresolvedReferenceError(
                resource_id, str(ref), f"{ref.resource_id} has no attribute '{ref.field}'"
            ) from None

    def _diff(self, old: Dict[str, Any], new: Dict[str, Any], immutable) -> List[AttributeDiff]:
        diffs = []
        names = list(new.keys()) + [name for name in old.keys() if name not in new]

        for name in names:
            old_value = old.get(name, _MISSING)
            new_value = new.get(name, _MISSING)
            unknown = new_value is not _MISSING and contains_unknown(new_value)

            if not unknown and old_value == new_value:
                continue

            diffs.append(AttributeDiff(
                name=name,
                old=None if old_value is _MISSING else old_value,
                new=None if new_value is _MISSING else new_value,
                unknown=unknown,
                forces_replacement=name in immutable and old_value is not _MISSING,
            ))

        return diffs

    def _plan_deletes(
        self,
        snapshot: StateSnapshot,
        removed: List[str],
        replaced: Set[str],
        final_action: Dict[str, str],
        actions: Dict[str, PlanAction]
    ) -> None:
        """Add deletes for removed resources and order all deletes.

        Deletes follow the dependencies recorded in the snapshot: anything that
        depended on a resource is deleted before it.
        """
        recorded = DependencyGraph()
        for position, rid in enumerate(snapshot.resource_ids()):
            recorded.add_node(rid, snapshot.get(rid).dependencies, order=position)

        for rid in recorded.get_destruction_order():
            if rid not in removed:
                continue
            prior = snapshot.get(rid)
            delete = PlanAction(
                resource_id=rid,
                resource_type=prior.type,
                kind=ActionKind.DELETE,
                reason="no longer declared",
                prior=prior,
            )
            actions[delete.action_id] = delete

        for rid in list(removed) + sorted(replaced):
            delete = actions[f"{rid}:{ActionKind.DELETE.value}"]
            for dependent_id in sorted(recorded.get_dependents(rid)):
                if dependent_id in removed or dependent_id in replaced:
                    delete.requires.append(f"{dependent_id}:{ActionKind.DELETE.value}")

        # A kept resource that used to depend on a removed one lets go of it first,
        # unless that would make the plan circular.
        for rid in removed:
            delete = actions[f"{rid}:{ActionKind.DELETE.value}"]
            for dependent_id in sorted(recorded.get_dependents(rid)):
                if dependent_id in removed or dependent_id not in final_action:
                    continue
                kept_action = final_action[dependent_id]
                if kept_action in delete.requires:
                    continue
                if self._requires_transitively(actions, kept_action, delete.action_id):
                    self.logger.debug(
                        f"Not ordering {delete.action_id} after {kept_action}; it would form a cycle"
                    )
                    continue
                delete.requires.append(kept_action)

    def _requires_transitively(self, actions: Dict[str, PlanAction], start: str, goal: str) -> bool:
        stack = [start]
        visited = set()
        while stack:
            current = stack.pop()
            if current == goal:
                return True
            if current in visited:
                continue
            visited.add(current)
            stack.extend(actions[current].requires)
        return False

    def _order_actions(self, actions: Dict[str, PlanAction]) -> List[PlanAction]:
        graph = DependencyGraph()
        for position, (action_id, action) in enumerate(actions.items()):
            graph.add_node(action_id, action.requires, order=position)
        return [actions[action_id] for action_id in graph.topological_sort()]
