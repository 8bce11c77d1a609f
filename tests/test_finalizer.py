"""
Tests for the cleanup run before a Database may disappear
"""

# Third Party
import pytest

# Local
from dbcontroller.exceptions import (
    ControllerFatalError,
    ForbiddenError,
    StoreUnavailableError,
)
from dbcontroller.finalizer import (
    ChildResourceCleanup,
    CleanupHandler,
    CleanupManager,
    CleanupResult,
)
from dbcontroller.reconciler import Reconciler
from dbcontroller.test_helpers.helpers import (
    TEST_KEY,
    reconcile_until,
    setup_context,
    setup_store,
)

## Helpers #####################################################################


class StaticCleanup(CleanupHandler):
    def __init__(self, result=CleanupResult.DONE, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def cleanup(self, key, spec):
        self.calls.append((key, spec))
        if self.error is not None:
            raise self.error
        return self.result


def provisioned_store():
    """A store holding a Database whose children have been created"""
    store = setup_store(auto_ready=True)
    reconcile_until(Reconciler(setup_context(store)))
    return store


## CleanupManager ##############################################################


def test_manager_no_handlers_done():
    assert CleanupManager().cleanup(TEST_KEY, {}) == CleanupResult.DONE


@pytest.mark.parametrize(
    ["results", "expected"],
    [
        ([CleanupResult.DONE, CleanupResult.DONE], CleanupResult.DONE),
        ([CleanupResult.DONE, CleanupResult.RETRY], CleanupResult.RETRY),
        ([CleanupResult.FATAL, CleanupResult.RETRY], CleanupResult.FATAL),
        ([CleanupResult.RETRY, CleanupResult.FATAL, CleanupResult.DONE], CleanupResult.FATAL),
    ],
)
def test_manager_aggregation(results, expected):
    """Fatal wins over Retry which wins over Done"""
    handlers = [StaticCleanup(result) for result in results]
    assert CleanupManager(handlers).cleanup(TEST_KEY, {"a": 1}) == expected
    assert all(handler.calls == [(TEST_KEY, {"a": 1})] for handler in handlers)


@pytest.mark.parametrize(
    ["error", "expected"],
    [
        (StoreUnavailableError("down"), CleanupResult.RETRY),
        (RuntimeError("unexpected"), CleanupResult.RETRY),
        (ForbiddenError("rbac"), CleanupResult.FATAL),
        (ControllerFatalError("stuck"), CleanupResult.FATAL),
    ],
)
def test_manager_converts_errors(error, expected):
    """Handler errors become results instead of escaping"""
    handlers = [StaticCleanup(error=error), StaticCleanup()]
    assert CleanupManager(handlers).cleanup(TEST_KEY, {}) == expected
    assert handlers[1].calls, "Later handlers still run"


## ChildResourceCleanup ########################################################


def test_child_cleanup_missing_database_done():
    store = setup_store(resources=[])
    assert ChildResourceCleanup(store).cleanup(TEST_KEY, {}) == CleanupResult.DONE


def test_child_cleanup_releases_volume_last():
    """The workload goes first, the data volume only once nothing else is
    left
    """
    store = provisioned_store()
    cleanup = ChildResourceCleanup(store)
    assert len(store.children_of(TEST_KEY)) == 5

    assert cleanup.cleanup(TEST_KEY, {}) == CleanupResult.RETRY
    assert [kind for kind, _ in store.children_of(TEST_KEY)] == ["PersistentVolumeClaim"]
    deletes = [desc.split("/")[0] for op, desc in store.writes if op == "delete"]
    assert deletes == ["Service", "StatefulSet", "ConfigMap", "Secret"]

    assert cleanup.cleanup(TEST_KEY, {}) == CleanupResult.RETRY
    assert store.children_of(TEST_KEY) == {}

    assert cleanup.cleanup(TEST_KEY, {}) == CleanupResult.DONE


def test_child_cleanup_bounded_by_request_timeout():
    """A hanging store call turns into a retry instead of blocking cleanup"""
    store = provisioned_store()
    store.inject_latency("list_children", 5.0)
    manager = CleanupManager([ChildResourceCleanup(store, request_timeout=0.05)])
    assert manager.cleanup(TEST_KEY, {}) == CleanupResult.RETRY
    assert len(store.children_of(TEST_KEY)) == 5
