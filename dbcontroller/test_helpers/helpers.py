"""
This module holds common helper functions for making testing easy
"""

# Standard
from contextlib import contextmanager
from typing import List, Optional
import copy
import os
import time

# First Party
import alog

# Local
from dbcontroller import constants
from dbcontroller.config import library_config as config_detail_dict
from dbcontroller.context import ControllerContext, ControllerSettings
from dbcontroller.finalizer import CleanupHandler, CleanupManager
from dbcontroller.managed_object import ResourceKey
from dbcontroller.reconciler import ReconcileResult, Reconciler, ResultKind
from dbcontroller.store import DryRunStore
from dbcontroller.work_queue import WorkQueue

log = alog.use_channel("TEST")


def configure_logging():
    alog.configure(
        os.environ.get("LOG_LEVEL", "off"),
        os.environ.get("LOG_FILTERS", ""),
        formatter="json"
        if os.environ.get("LOG_JSON", "").lower() == "true"
        else "pretty",
        thread_id=os.environ.get("LOG_THREAD_ID", "").lower() == "true",
    )


configure_logging()

TEST_NAME = "orders"
TEST_NAMESPACE = "test"
SOME_OTHER_NAMESPACE = "somewhere"
TEST_KEY = ResourceKey(namespace=TEST_NAMESPACE, name=TEST_NAME)

DEFAULT_SPEC = {
    "engine": "postgres",
    "version": "15.4",
    "storageSize": "20Gi",
}


def make_database(
    name: str = TEST_NAME,
    namespace: str = TEST_NAMESPACE,
    spec: Optional[dict] = None,
    annotations: Optional[dict] = None,
    **spec_overrides,
) -> dict:
    """Build a Database manifest as a user would apply it"""
    database_spec = copy.deepcopy(DEFAULT_SPEC if spec is None else spec)
    database_spec.update(spec_overrides)
    manifest = {
        "apiVersion": constants.DATABASE_API_VERSION,
        "kind": constants.DATABASE_KIND,
        "metadata": {"name": name, "namespace": namespace},
        "spec": database_spec,
    }
    if annotations:
        manifest["metadata"]["annotations"] = dict(annotations)
    return manifest


def setup_store(
    resources: Optional[List[dict]] = None, auto_ready: bool = False
) -> DryRunStore:
    """Make a DryRunStore holding the given resources, a single default
    Database if none are given
    """
    resources = [make_database()] if resources is None else resources
    return DryRunStore(resources=resources, auto_ready=auto_ready)


def make_settings(**overrides) -> ControllerSettings:
    """Settings read from the library config with fast test timings"""
    settings = ControllerSettings.from_config()
    settings.resync_period = 600.0
    settings.provisioning_poll_period = 0.05
    settings.watch_retry_delay = 0.01
    settings.heartbeat_period = 0.05
    for key, val in overrides.items():
        setattr(settings, key, val)
    return settings


def make_queue() -> WorkQueue:
    """A WorkQueue with tiny backoff and no jitter"""
    return WorkQueue(
        base_delay=0.01,
        max_delay=0.1,
        slow_base_delay=0.05,
        slow_max_delay=0.2,
        jitter=0,
    )


def setup_context(
    store: Optional[DryRunStore] = None,
    cleanup_handlers: Optional[List[CleanupHandler]] = None,
    **setting_overrides,
) -> ControllerContext:
    """Make a ControllerContext around a DryRunStore for tests"""
    store = store if store is not None else setup_store()
    cleanup_manager = None
    if cleanup_handlers is not None:
        cleanup_manager = CleanupManager(cleanup_handlers)
    return ControllerContext.create(
        store,
        settings=make_settings(**setting_overrides),
        queue=make_queue(),
        cleanup_manager=cleanup_manager,
    )


def reconcile_until(
    reconciler: Reconciler,
    key: ResourceKey = TEST_KEY,
    max_passes: int = 10,
    stop_kinds=(ResultKind.DROP, ResultKind.TERMINAL),
) -> List[ReconcileResult]:
    """Reconcile a key repeatedly, the way a worker would without delays,
    until a pass ends with one of the stop kinds or requests nothing more
    than the periodic resync
    """
    results = []
    failures = 0
    for _ in range(max_passes):
        result = reconciler.reconcile(key, attempt=failures)
        results.append(result)
        log.debug("Test pass of [%s]: %s", key, result.kind.value)
        if result.kind in stop_kinds:
            break
        if result.kind in [ResultKind.RETRY, ResultKind.RETRY_SLOW]:
            failures += 1
            continue
        failures = 0
        if result.kind == ResultKind.DONE and (
            result.requeue_after is None
            or result.requeue_after == reconciler.settings.resync_period
        ):
            break
    return results


@contextmanager
def library_config(**config_overrides):
    """This context manager sets library config values temporarily and reverts
    them on completion
    """
    # Override the configs and hang onto the old values
    old_vals = {}
    for key, val in config_overrides.items():
        if key in config_detail_dict:
            old_vals[key] = config_detail_dict[key]
        config_detail_dict[key] = val

    # Yield to the context
    try:
        yield
    finally:
        # Revert to the old values
        for key in config_overrides:
            if key in old_vals:
                config_detail_dict[key] = old_vals[key]
            else:
                del config_detail_dict[key]


def wait_for(condition, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll the condition until it holds or the timeout passes"""
    end_time = time.monotonic() + timeout
    while not condition():
        if time.monotonic() >= end_time:
            return False
        time.sleep(interval)
    return True
