"""
The ControllerContext carries everything a controller component needs. It is
built once at startup and passed explicitly to the reconciler, the workers and
the watch threads.
"""

# Standard
from dataclasses import dataclass, field
from typing import Dict, Optional

# Local
from . import config
from .exceptions import assert_config
from .finalizer import ChildResourceCleanup, CleanupManager
from .status import StatusReporter
from .store import ResourceStoreBase
from .utils import parse_time_delta
from .work_queue import WorkQueue


@dataclass
class ControllerSettings:  # pylint: disable=too-many-instance-attributes
    """The controller's tunables with durations in seconds"""

    finalizer: str
    max_concurrent_reconciles: int
    reconcile_timeout: float
    resync_period: float
    provisioning_poll_period: float
    degraded_after_retries: int
    watch_namespace: str = ""
    watch_retry_count: int = 10
    watch_retry_delay: float = 2.0
    heartbeat_file: str = ""
    heartbeat_period: float = 5.0
    storage_class: str = ""
    images: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config_obj=None) -> "ControllerSettings":
        """Read the settings from the library config"""
        config_obj = config_obj or config.library_config
        return cls(
            finalizer=config_obj.finalizer,
            max_concurrent_reconciles=int(config_obj.max_concurrent_reconciles),
            reconcile_timeout=_seconds(config_obj.reconcile_timeout),
            resync_period=_seconds(config_obj.resync_period),
            provisioning_poll_period=_seconds(config_obj.provisioning_poll_period),
            degraded_after_retries=int(config_obj.degraded_after_retries),
            watch_namespace=config_obj.watch_namespace or "",
            watch_retry_count=int(config_obj.watch_retry_count),
            watch_retry_delay=_seconds(config_obj.watch_retry_delay),
            heartbeat_file=config_obj.heartbeat_file or "",
            heartbeat_period=_seconds(config_obj.heartbeat_period),
            storage_class=config_obj.storage_class or "",
            images=dict(config_obj.images),
        )

    @property
    def namespaces(self):
        """The namespaces to watch. [None] watches the whole cluster."""
        namespaces = [
            namespace.strip()
            for namespace in self.watch_namespace.split(",")
            if namespace.strip() and namespace.strip() != "*"
        ]
        return namespaces or [None]


@dataclass
class ControllerContext:
    """Shared, explicitly passed state of a running controller"""

    store: ResourceStoreBase
    queue: WorkQueue
    status_reporter: StatusReporter
    cleanup_manager: CleanupManager
    settings: ControllerSettings

    @classmethod
    def create(
        cls,
        store: ResourceStoreBase,
        settings: Optional[ControllerSettings] = None,
        queue: Optional[WorkQueue] = None,
        cleanup_manager: Optional[CleanupManager] = None,
    ) -> "ControllerContext":
        """Build a context around a store, filling in the default queue,
        status reporter and child cleanup
        """
        settings = settings or ControllerSettings.from_config()
        if cleanup_manager is None:
            cleanup = ChildResourceCleanup(
                store, request_timeout=settings.reconcile_timeout or None
            )
            cleanup_manager = CleanupManager([cleanup])
        return cls(
            store=store,
            queue=queue if queue is not None else WorkQueue(),
            status_reporter=StatusReporter(store),
            cleanup_manager=cleanup_manager,
            settings=settings,
        )


def _seconds(duration: str) -> float:
    parsed = parse_time_delta(str(duration))
    assert_config(parsed is not None, f"Invalid duration {duration}")
    return parsed.total_seconds()
