"""Shared fixtures: an in-memory provider and local state on tmp_path."""

import threading
import time
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import pytest

from converge.config.models import ResourceSpec
from converge.orchestrator.orchestrator import ReconcileOrchestrator
from converge.providers.base import ProviderClient
from converge.state.lock import FileLockManager
from converge.state.store import LocalStateStore
from converge.utils.errors import ProviderError
from converge.utils.retry import RetryStrategy


class FakeProvider(ProviderClient):
    """In-memory provider with failure, delay and computed-output injection.

    Resources are addressed in injections by their ``name`` attribute.
    """

    def __init__(self):
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, Optional[str]]] = []  # (operation, type, name)
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self.delays: Dict[Tuple[str, str], float] = {}
        self.computed: Dict[str, Dict[str, Any]] = {}  # type -> extra outputs
        self.immutable: Dict[str, FrozenSet[str]] = {}
        self.unique_types: set = set()
        self._lock = threading.Lock()
        self._counter = 0

    def fail_on(self, operation: str, name: str, error: Optional[Exception] = None) -> None:
        self.failures[(operation, name)] = error or ProviderError(f"injected {operation} failure for {name}")

    def delay_on(self, operation: str, name: str, seconds: float) -> None:
        self.delays[(operation, name)] = seconds

    def _before(self, operation: str, resource_type: str, name: Optional[str]) -> None:
        with self._lock:
            self.calls.append((operation, resource_type, name))
        delay = self.delays.get((operation, name))
        if delay:
            time.sleep(delay)
        error = self.failures.get((operation, name))
        if error is not None:
            raise error

    def create(self, resource_type, attributes):
        self._before("create", resource_type, attributes.get("name"))
        with self._lock:
            self._counter += 1
            provider_id = f"{resource_type}-{self._counter}"
            self.objects[provider_id] = {"type": resource_type, "attributes": dict(attributes)}
        outputs = {"arn": f"arn:fake:{resource_type}/{provider_id}"}
        outputs.update(self.computed.get(resource_type, {}))
        return provider_id, outputs

    def read(self, resource_type, provider_id):
        obj = self.objects.get(provider_id)
        if obj is None:
            return None
        return {**obj["attributes"], "arn": f"arn:fake:{resource_type}/{provider_id}"}

    def update(self, resource_type, provider_id, attributes):
        self._before("update", resource_type, attributes.get("name"))
        with self._lock:
            if provider_id not in self.objects:
                raise ProviderError(f"{provider_id} does not exist")
            self.objects[provider_id]["attributes"] = dict(attributes)
        outputs = {"arn": f"arn:fake:{resource_type}/{provider_id}"}
        outputs.update(self.computed.get(resource_type, {}))
        return outputs

    def delete(self, resource_type, provider_id):
        obj = self.objects.get(provider_id)
        self._before("delete", resource_type, obj["attributes"].get("name") if obj else None)
        with self._lock:
            self.objects.pop(provider_id, None)

    def immutable_attributes(self, resource_type):
        return self.immutable.get(resource_type, frozenset())

    def is_globally_unique(self, resource_type):
        return resource_type in self.unique_types

    def operations(self, operation: Optional[str] = None) -> List[Tuple[str, Optional[str]]]:
        """(operation, name) pairs in call order."""
        return [(op, name) for op, _, name in self.calls if operation is None or op == operation]


def build_spec(resource_type: str, name: str, attributes=None, **kwargs) -> ResourceSpec:
    """Build a spec whose ``name`` attribute defaults to its own name."""
    attributes = {"name": name, **(attributes or {})}
    return ResourceSpec(type=resource_type, name=name, attributes=attributes, **kwargs)


@pytest.fixture
def provider():
    """In-memory provider."""
    return FakeProvider()


@pytest.fixture
def instant_retry():
    """Retry strategy that never sleeps."""
    return RetryStrategy(max_retries=2, sleep=lambda seconds: None)


@pytest.fixture
def lock_manager(tmp_path):
    """File lock manager on tmp_path."""
    return FileLockManager(str(tmp_path / "locks"))


@pytest.fixture
def store(tmp_path, lock_manager, instant_retry):
    """Local state store on tmp_path."""
    return LocalStateStore(str(tmp_path / "state"), lock_manager, retry_strategy=instant_retry)


@pytest.fixture
def orchestrator(tmp_path, store, lock_manager, provider):
    """Orchestrator wired to the fake provider and local state."""
    return ReconcileOrchestrator(
        store=store,
        lock_manager=lock_manager,
        provider=provider,
        identity="lab-default",
        holder="tester@localhost",
        max_workers=4,
        action_timeout=5,
        errored_state_dir=str(tmp_path / "errored"),
    )


@pytest.fixture
def make_spec():
    """Factory for resource specs."""
    return build_spec
