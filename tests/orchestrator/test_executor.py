"""Tests for the deployment executor."""

import threading

import pytest

from converge.orchestrator.dependency_graph import GraphBuilder
from converge.orchestrator.executor import CANCELLED, ActionOutcome, DeploymentExecutor
from converge.orchestrator.planner import Planner
from converge.state.models import ResourceState, StateSnapshot
from converge.utils.errors import ActionFailed, ActionTimedOut, InvalidToken

IDENTITY = "lab-default"


@pytest.fixture
def token(lock_manager):
    """Lock held for the test identity."""
    return lock_manager.acquire(IDENTITY, "tester@localhost")


def run(provider, store, token, specs, snapshot=None, cancel_event=None, **kwargs):
    """Plan the specs against a snapshot and execute the plan."""
    snapshot = snapshot or StateSnapshot.empty(IDENTITY)
    plan = Planner(provider).create_plan(GraphBuilder().build(specs), snapshot)
    kwargs.setdefault("max_workers", 4)
    kwargs.setdefault("action_timeout", 5)
    executor = DeploymentExecutor(provider, store, **kwargs)
    return executor.execute(plan, snapshot, token, cancel_event)


def outcomes(report):
    return {rid: outcome.value for rid, outcome in report.resource_outcomes().items()}


class TestExecution:
    """Test successful execution."""

    def test_applies_in_dependency_order(self, provider, store, token, make_spec):
        """Test dependents are created after and see their dependencies' outputs."""
        specs = [
            make_spec("policy", "write", {"bucket_arn": "${bucket.logs.arn}", "bucket_id": "${bucket.logs}"}),
            make_spec("bucket", "logs"),
        ]

        report = run(provider, store, token, specs)

        assert report.is_success()
        assert report.exit_code() == 0
        assert provider.operations("create") == [("create", "logs"), ("create", "write")]

        bucket = report.snapshot.get("bucket.logs")
        policy = report.snapshot.get("policy.write")
        assert policy.attributes["bucket_arn"] == bucket.outputs["arn"]
        assert policy.attributes["bucket_id"] == bucket.provider_id
        assert policy.dependencies == ["bucket.logs"]

    def test_snapshot_saved_as_next_version(self, provider, store, token, make_spec):
        """Test the resulting snapshot is stored with the next serial."""
        report = run(provider, store, token, [make_spec("bucket", "logs")])

        assert report.version_id == "00000001"
        assert report.snapshot.serial == 1
        assert store.load(IDENTITY).resource_ids() == ["bucket.logs"]

    def test_independent_actions_run_in_parallel(self, provider, store, token, make_spec):
        """Test independent actions overlap on the worker pool."""
        for name in ("a", "b", "c"):
            provider.delay_on("create", name, 0.4)

        report = run(provider, store, token, [make_spec("bucket", n) for n in ("a", "b", "c")], max_workers=3)

        assert report.is_success()
        assert report.duration < 1.0

    def test_update_resolving_to_recorded_values_is_noop(self, provider, store, token, make_spec):
        """Test a deferred update whose values turn out unchanged skips the provider."""
        provider.immutable["bucket"] = frozenset({"zone"})
        snapshot = StateSnapshot(
            identity=IDENTITY,
            resources={
                "bucket.logs": ResourceState(
                    id="bucket.logs", type="bucket", provider_id="bucket-old",
                    attributes={"name": "logs", "zone": "1", "owner": "team"},
                ),
                "policy.write": ResourceState(
                    id="policy.write", type="policy", provider_id="policy-old",
                    attributes={"name": "write", "owner": "team"},
                    dependencies=["bucket.logs"],
                ),
            },
        )
        specs = [
            make_spec("bucket", "logs", {"zone": "2", "owner": "team"}),
            make_spec("policy", "write", {"owner": "${bucket.logs.owner}"}),
        ]

        report = run(provider, store, token, specs, snapshot=snapshot)

        assert report.results["policy.write:update"].outcome == ActionOutcome.NOOP
        assert provider.operations("update") == []
        assert report.snapshot.get("policy.write").provider_id == "policy-old"
        assert report.snapshot.get("bucket.logs").provider_id != "bucket-old"


class TestFailures:
    """Test failure isolation."""

    def test_failure_skips_dependents_only(self, provider, store, token, make_spec):
        """Test a failed action skips its dependents while independent work completes."""
        provider.fail_on("create", "b")
        specs = [
            make_spec("bucket", "a"),
            make_spec("bucket", "b", {"parent": "${bucket.a.arn}"}),
            make_spec("bucket", "c", {"parent": "${bucket.b.arn}"}),
            make_spec("bucket", "e", {"parent": "${bucket.c.arn}"}),
            make_spec("bucket", "d"),
        ]

        report = run(provider, store, token, specs)

        assert outcomes(report) == {
            "bucket.a": "applied",
            "bucket.b": "failed",
            "bucket.c": "skipped",
            "bucket.e": "skipped",
            "bucket.d": "applied",
        }
        assert report.results["bucket.c:create"].blocked_by == "bucket.b"
        assert report.results["bucket.e:create"].blocked_by == "bucket.b"
        assert isinstance(report.results["bucket.b:create"].error, ActionFailed)
        assert report.exit_code() == 1
        assert not report.is_success()

    def test_partial_results_are_persisted(self, provider, store, token, make_spec):
        """Test state records exactly the actions that succeeded."""
        provider.fail_on("create", "b")
        specs = [make_spec("bucket", "a"), make_spec("bucket", "b"), make_spec("bucket", "c", {"x": "${bucket.b}"})]

        report = run(provider, store, token, specs)

        assert report.version_id == "00000001"
        assert set(store.load(IDENTITY).resource_ids()) == {"bucket.a"}
        assert report.counts() == {"applied": 1, "noop": 0, "skipped": 1, "timed_out": 0, "failed": 1}

    def test_timeout_is_abandoned(self, provider, store, token, make_spec):
        """Test an action over the timeout is recorded and its dependents skipped."""
        provider.delay_on("create", "slow", 2.0)
        specs = [
            make_spec("bucket", "slow"),
            make_spec("policy", "after", {"bucket": "${bucket.slow}"}),
            make_spec("bucket", "fast"),
        ]

        report = run(provider, store, token, specs, action_timeout=0.2)

        assert outcomes(report) == {
            "bucket.slow": "timed_out",
            "policy.after": "skipped",
            "bucket.fast": "applied",
        }
        assert isinstance(report.results["bucket.slow:create"].error, ActionTimedOut)
        assert report.duration < 2.0
        assert "bucket.slow" not in report.snapshot.resources

    def test_timeout_frees_the_only_worker(self, provider, store, token, make_spec):
        """Test an abandoned action does not hold up independent actions with a single worker."""
        provider.delay_on("create", "slow", 3.0)
        specs = [make_spec("bucket", "slow"), make_spec("bucket", "fast")]

        report = run(provider, store, token, specs, max_workers=1, action_timeout=0.3)

        assert outcomes(report) == {"bucket.slow": "timed_out", "bucket.fast": "applied"}
        assert report.duration < 1.5
        assert report.snapshot.resource_ids() == ["bucket.fast"]

    def test_queued_actions_wait_for_capacity(self, provider, store, token, make_spec):
        """Test actions beyond the worker limit are not timed out while waiting."""
        for name in ("a", "b", "c"):
            provider.delay_on("create", name, 0.3)
        specs = [make_spec("bucket", name) for name in ("a", "b", "c")]

        report = run(provider, store, token, specs, max_workers=1, action_timeout=0.5)

        assert set(outcomes(report).values()) == {"applied"}
        assert report.duration >= 0.9

    def test_persist_failure_is_reported(self, provider, store, token, lock_manager, make_spec):
        """Test a failed save is recorded on the report instead of raised."""
        lock_manager.release(token)

        report = run(provider, store, token, [make_spec("bucket", "logs")])

        assert isinstance(report.persist_error, InvalidToken)
        assert report.results["bucket.logs:create"].outcome == ActionOutcome.APPLIED
        assert report.snapshot.get("bucket.logs") is not None
        assert report.exit_code() == 1


class TestCancellation:
    """Test cancellation."""

    def test_cancel_before_start_skips_everything(self, provider, store, token, make_spec):
        """Test a pre-set cancel event starts nothing but still saves state."""
        cancel_event = threading.Event()
        cancel_event.set()

        report = run(provider, store, token, [make_spec("bucket", "a")], cancel_event=cancel_event)

        assert report.cancelled
        assert report.results["bucket.a:create"].blocked_by == CANCELLED
        assert provider.calls == []
        assert report.version_id == "00000001"

    def test_cancel_lets_in_flight_action_finish(self, provider, store, token, make_spec):
        """Test cancelling mid-run records finished work and skips the rest."""
        cancel_event = threading.Event()
        original_create = provider.create

        def create_then_cancel(resource_type, attributes):
            result = original_create(resource_type, attributes)
            if attributes["name"] == "a":
                cancel_event.set()
            return result

        provider.create = create_then_cancel
        specs = [make_spec("bucket", "a"), make_spec("bucket", "b", {"parent": "${bucket.a}"})]

        report = run(provider, store, token, specs, cancel_event=cancel_event)

        assert outcomes(report) == {"bucket.a": "applied", "bucket.b": "skipped"}
        assert report.results["bucket.b:create"].blocked_by == CANCELLED
        assert store.load(IDENTITY).resource_ids() == ["bucket.a"]
