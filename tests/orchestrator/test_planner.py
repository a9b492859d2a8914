"""Tests for the planner."""

import json

import pytest

from converge.orchestrator.dependency_graph import GraphBuilder
from converge.orchestrator.planner import ActionKind, Planner
from converge.orchestrator.references import UNKNOWN
from converge.state.models import ResourceState, StateSnapshot
from converge.utils.errors import UnresolvedReferenceError


def recorded(resource_id, attributes, outputs=None, dependencies=None, provider_id=None):
    """Build a recorded resource."""
    resource_type, _ = resource_id.split(".")
    return ResourceState(
        id=resource_id,
        type=resource_type,
        provider_id=provider_id or f"{resource_id}-id",
        attributes=attributes,
        outputs=outputs or {},
        dependencies=dependencies or [],
    )


def snapshot_of(*resources, serial=3):
    return StateSnapshot(
        identity="lab-default",
        serial=serial,
        resources={resource.id: resource for resource in resources},
    )


@pytest.fixture
def planner(provider):
    return Planner(provider)


def plan_for(planner, specs, snapshot):
    return planner.create_plan(GraphBuilder().build(specs), snapshot)


class TestCreatePlan:
    """Test planning against empty and matching state."""

    def test_everything_created_on_empty_state(self, planner, make_spec):
        """Test an empty snapshot plans a create per resource, dependencies first."""
        specs = [
            make_spec("policy", "write", {"bucket_arn": "${bucket.logs.arn}"}),
            make_spec("bucket", "logs"),
        ]

        plan = plan_for(planner, specs, StateSnapshot.empty("lab-default"))

        assert [a.action_id for a in plan.actions] == ["bucket.logs:create", "policy.write:create"]
        policy = plan.get_action("policy.write:create")
        assert policy.requires == ["bucket.logs:create"]
        assert policy.deferred
        assert policy.pending_references == ["${bucket.logs.arn}"]
        assert any(diff.unknown for diff in policy.diffs)
        assert plan.summary()["create"] == 2
        assert plan.serial == 0

    def test_matching_state_is_all_noop(self, planner, make_spec):
        """Test an up-to-date snapshot produces no changes."""
        specs = [
            make_spec("bucket", "logs"),
            make_spec("policy", "write", {"bucket_arn": "${bucket.logs.arn}"}),
        ]
        snapshot = snapshot_of(
            recorded("bucket.logs", {"name": "logs"}, outputs={"arn": "arn:logs"}),
            recorded(
                "policy.write",
                {"name": "write", "bucket_arn": "arn:logs"},
                dependencies=["bucket.logs"],
            ),
        )

        plan = plan_for(planner, specs, snapshot)

        assert [a.kind for a in plan.actions] == [ActionKind.NOOP, ActionKind.NOOP]
        assert not plan.has_changes()
        assert not plan.updates_state()
        assert plan.summary()["noop"] == 2
        assert plan.serial == 3
        assert plan.lineage == snapshot.lineage

    def test_recorded_dependency_change_updates_state_only(self, planner, make_spec):
        """Test a new depends_on entry changes no resource but still needs a save."""
        specs = [
            make_spec("bucket", "logs"),
            make_spec("trail", "audit", depends_on=["bucket.logs"]),
        ]
        snapshot = snapshot_of(
            recorded("bucket.logs", {"name": "logs"}),
            recorded("trail.audit", {"name": "audit"}),
        )

        plan = plan_for(planner, specs, snapshot)

        assert not plan.has_changes()
        assert plan.updates_state()

    def test_count_zero_reported_as_skipped(self, planner, make_spec):
        """Test count 0 resources appear in the plan's skipped list."""
        specs = [make_spec("bucket", "logs"), make_spec("bucket", "spare", count=0)]

        plan = plan_for(planner, specs, StateSnapshot.empty("lab-default"))

        assert plan.skipped == ["bucket.spare"]
        assert [a.resource_id for a in plan.actions] == ["bucket.logs"]


class TestUpdatePlan:
    """Test in-place updates and deferred values."""

    def test_changed_attribute_is_updated(self, planner, make_spec):
        """Test a changed attribute produces an update with its diff."""
        specs = [make_spec("bucket", "logs", {"versioning": True})]
        snapshot = snapshot_of(recorded("bucket.logs", {"name": "logs", "versioning": False}))

        plan = plan_for(planner, specs, snapshot)

        action = plan.actions[0]
        assert action.kind == ActionKind.UPDATE
        assert [(d.name, d.old, d.new) for d in action.diffs] == [("versioning", False, True)]
        assert not action.deferred

    def test_removed_attribute_shows_in_diff(self, planner, make_spec):
        """Test an attribute no longer declared is diffed to None."""
        specs = [make_spec("bucket", "logs")]
        snapshot = snapshot_of(recorded("bucket.logs", {"name": "logs", "tags": {"team": "a"}}))

        action = plan_for(planner, specs, snapshot).actions[0]

        assert action.kind == ActionKind.UPDATE
        assert [(d.name, d.old, d.new) for d in action.diffs] == [("tags", {"team": "a"}, None)]

    def test_reference_to_unchanged_field_is_known(self, planner, make_spec):
        """Test dependents of an update only defer on fields that change."""
        specs = [
            make_spec("bucket", "logs", {"versioning": True}),
            make_spec("policy", "write", {"bucket_arn": "${bucket.logs.arn}"}),
        ]
        snapshot = snapshot_of(
            recorded("bucket.logs", {"name": "logs", "versioning": False}, outputs={"arn": "arn:logs"}),
            recorded("policy.write", {"name": "write", "bucket_arn": "arn:logs"}, dependencies=["bucket.logs"]),
        )

        plan = plan_for(planner, specs, snapshot)

        policy = plan.get_action("policy.write:noop")
        assert policy is not None
        assert policy.requires == ["bucket.logs:update"]
        assert not policy.deferred

    def test_reference_to_changed_field_is_deferred(self, planner, make_spec):
        """Test a reference to a changing attribute is unknown until apply."""
        specs = [
            make_spec("bucket", "logs", {"versioning": True}),
            make_spec("policy", "write", {"versioned": "${bucket.logs.versioning}"}),
        ]
        snapshot = snapshot_of(
            recorded("bucket.logs", {"name": "logs", "versioning": False}),
            recorded("policy.write", {"name": "write", "versioned": False}, dependencies=["bucket.logs"]),
        )

        plan = plan_for(planner, specs, snapshot)

        policy = plan.get_action("policy.write:update")
        assert policy.deferred
        assert policy.diffs[0].new is UNKNOWN
        assert policy.diffs[0].unknown

    def test_reference_to_missing_field_fails(self, planner, make_spec):
        """Test a reference to a field the recorded resource lacks is rejected."""
        specs = [
            make_spec("bucket", "logs"),
            make_spec("policy", "write", {"region": "${bucket.logs.region}"}),
        ]
        snapshot = snapshot_of(recorded("bucket.logs", {"name": "logs"}))

        with pytest.raises(UnresolvedReferenceError, match="no attribute 'region'"):
            plan_for(planner, specs, snapshot)


class TestReplacePlan:
    """Test replacement of resources whose immutable attributes change."""

    def test_immutable_change_plans_delete_then_create(self, planner, provider, make_spec):
        """Test a provider-immutable attribute change is a replacement."""
        provider.immutable["bucket"] = frozenset({"region"})
        specs = [
            make_spec("bucket", "logs", {"region": "eu-west-1"}),
            make_spec("policy", "write", {"bucket_arn": "${bucket.logs.arn}"}),
        ]
        snapshot = snapshot_of(
            recorded("bucket.logs", {"name": "logs", "region": "us-east-1"}, outputs={"arn": "arn:old"}),
            recorded("policy.write", {"name": "write", "bucket_arn": "arn:old"}, dependencies=["bucket.logs"]),
        )

        plan = plan_for(planner, specs, snapshot)

        assert [a.action_id for a in plan.actions] == [
            "bucket.logs:delete",
            "bucket.logs:create",
            "policy.write:update",
        ]
        delete, create, update = plan.actions
        assert delete.replace and create.replace
        assert "bucket.logs:delete" in create.requires
        assert update.requires == ["bucket.logs:create"]
        assert update.deferred
        assert create.diffs[0].forces_replacement
        assert "region" in create.reason
        assert plan.summary() == {"create": 0, "update": 1, "delete": 0, "replace": 1, "noop": 0}
        assert not plan.high_risk_actions()

    def test_lifecycle_immutable(self, planner, make_spec):
        """Test immutable attributes declared on the resource force replacement."""
        specs = [make_spec("queue", "jobs", {"fifo": True}, lifecycle={"immutable": ["fifo"]})]
        snapshot = snapshot_of(recorded("queue.jobs", {"name": "jobs", "fifo": False}))

        plan = plan_for(planner, specs, snapshot)

        assert [a.kind for a in plan.actions] == [ActionKind.DELETE, ActionKind.CREATE]

    def test_type_change_is_replacement(self, planner, make_spec):
        """Test a recorded resource of another type is replaced."""
        specs = [make_spec("queue", "jobs")]
        snapshot = snapshot_of(
            ResourceState(id="queue.jobs", type="topic", provider_id="t-1", attributes={"name": "jobs"})
        )

        plan = plan_for(planner, specs, snapshot)

        delete, create = plan.actions
        assert delete.resource_type == "topic"
        assert create.resource_type == "queue"
        assert "type changed" in create.reason

    def test_globally_unique_replacement_is_high_risk(self, planner, provider, make_spec):
        """Test replacing a globally unique resource is flagged."""
        provider.immutable["bucket"] = frozenset({"region"})
        provider.unique_types.add("bucket")
        specs = [make_spec("bucket", "logs", {"region": "eu-west-1"})]
        snapshot = snapshot_of(recorded("bucket.logs", {"name": "logs", "region": "us-east-1"}))

        plan = plan_for(planner, specs, snapshot)

        assert len(plan.high_risk_actions()) == 2
        assert plan.high_risk_resources() == ["bucket.logs"]

    def test_creating_globally_unique_resource_is_not_high_risk(self, planner, provider, make_spec):
        """Test only replacements are flagged."""
        provider.unique_types.add("bucket")

        plan = plan_for(planner, [make_spec("bucket", "logs")], StateSnapshot.empty("lab-default"))

        assert not plan.high_risk_actions()


class TestDeletePlan:
    """Test deletion of resources no longer declared."""

    def test_dependents_deleted_first(self, planner):
        """Test deletes follow recorded dependencies in reverse."""
        snapshot = snapshot_of(
            recorded("bucket.logs", {"name": "logs"}),
            recorded("policy.write", {"name": "write"}, dependencies=["bucket.logs"]),
            recorded("role.reader", {"name": "reader"}, dependencies=["policy.write"]),
        )

        plan = plan_for(planner, [], snapshot)

        assert [a.action_id for a in plan.actions] == [
            "role.reader:delete",
            "policy.write:delete",
            "bucket.logs:delete",
        ]
        assert plan.get_action("bucket.logs:delete").requires == ["policy.write:delete"]
        assert plan.summary()["delete"] == 3

    def test_kept_dependent_lets_go_first(self, planner, make_spec):
        """Test a kept resource is updated before the resource it used to use is deleted."""
        specs = [make_spec("policy", "write", {"bucket": "static"})]
        snapshot = snapshot_of(
            recorded("bucket.old", {"name": "old"}),
            recorded("policy.write", {"name": "write", "bucket": "bucket.old-id"}, dependencies=["bucket.old"]),
        )

        plan = plan_for(planner, specs, snapshot)

        assert [a.action_id for a in plan.actions] == ["policy.write:update", "bucket.old:delete"]
        assert plan.get_action("bucket.old:delete").requires == ["policy.write:update"]

    def test_plan_is_json_serializable(self, planner, make_spec):
        """Test the plan renders unknown values for JSON output."""
        specs = [
            make_spec("bucket", "logs"),
            make_spec("policy", "write", {"bucket_arn": "${bucket.logs.arn}"}),
        ]

        data = plan_for(planner, specs, StateSnapshot.empty("lab-default")).to_dict()

        text = json.dumps(data)
        assert "(known after apply)" in text
        assert data["summary"]["create"] == 2
        assert data["actions"][1]["pending_references"] == ["${bucket.logs.arn}"]
