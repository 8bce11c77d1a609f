"""The WatchThread Class is responsible for monitoring the cluster for
resource events and turning them into Database keys on the WorkQueue
"""

# Standard
from typing import Callable, Optional

# First Party
import alog

# Local
from ... import constants
from ...context import ControllerContext
from ...managed_object import ManagedObject
from ...store.owner_references import get_owner_key
from .base import ThreadBase

log = alog.use_channel("WTCHTHRD")

# Upper bound of the delay between watch restarts
MAX_RETRY_DELAY = 60.0


class WatchThread(ThreadBase):
    """The WatchThread monitors the cluster for changes to a specific kind
    either cluster-wide or for a particular namespace. Events for a Database
    enqueue the Database itself, events for a child enqueue its owner.
    """

    def __init__(
        self,
        context: ControllerContext,
        kind: str,
        api_version: str,
        namespace: Optional[str] = None,
        on_exhausted: Optional[Callable[["WatchThread"], None]] = None,
    ):  # pylint: disable=too-many-arguments
        """Initialize a WatchThread

        Args:
            context: ControllerContext
                The context holding the store and queue
            kind: str
                The kind to watch
            api_version: str
                The api_version to watch
            namespace: Optional[str] = None
                The namespace to watch. If none then cluster-wide
            on_exhausted: Optional[Callable[[WatchThread], None]]
                Called once the watch failed too many times in a row
        """
        self.store = context.store
        self.queue = context.queue
        self.kind = kind
        self.api_version = api_version
        self.namespace = namespace
        self.on_exhausted = on_exhausted
        self.is_database_watch = (
            api_version == constants.DATABASE_API_VERSION
            and kind == constants.DATABASE_KIND
        )

        name = f"watch_thread_{self.api_version}_{self.kind}"
        if self.namespace:
            name = name + f"_{self.namespace}"
        super().__init__(name=name, daemon=True, context=context)

        # Variables for tracking retries
        self.retry_count = context.settings.watch_retry_count
        self.retry_delay = context.settings.watch_retry_delay
        self.attempts_left = self.retry_count

    def run(self):
        """Relist, then watch from the list resourceVersion. Any disconnect
        goes back to a relist so events missed in between are covered.
        """
        while not self.should_stop():
            try:
                resource_version = self.relist()
                self.attempts_left = self.retry_count

                for event in self.store.watch_objects(
                    self.kind,
                    self.api_version,
                    namespace=self.namespace,
                    resource_version=resource_version,
                ):
                    if self.should_stop():
                        log.debug("Stopping watch %s", self.name)
                        return
                    log.debug2("Received %s event for %s", event.type.value, event.resource)
                    self.enqueue(event.resource)

                log.debug("Watch stream %s ended", self.name)
            except Exception as exc:  # pylint: disable=broad-except
                log.info(
                    "Exception raised when attempting to watch %s",
                    repr(exc),
                    exc_info=exc,
                )
                if self.attempts_left <= 0:
                    log.error(
                        "Unable to start watch within %d attempts", self.retry_count
                    )
                    if self.on_exhausted:
                        self.on_exhausted(self)
                    return

                if not self.wait_on_precondition(self.next_retry_delay()):
                    log.debug("Shutdown requested during retry of %s", self.name)
                    return
                self.attempts_left = self.attempts_left - 1
                log.info("Restarting watch with %d attempts left", self.attempts_left)

    def relist(self) -> Optional[str]:
        """Enqueue every current object and return the list resourceVersion"""
        objects, resource_version = self.store.list_objects(
            self.kind, self.api_version, namespace=self.namespace
        )
        log.debug(
            "Listed %d %s objects at resourceVersion %s",
            len(objects),
            self.kind,
            resource_version,
        )
        for resource in objects:
            self.enqueue(resource)
        return resource_version

    def enqueue(self, resource: ManagedObject):
        """Add the Database affected by a change to the queue"""
        if self.is_database_watch:
            self.queue.add(resource.key, revision=resource.revision)
            return
        owner_key = get_owner_key(resource.definition)
        if owner_key is None:
            log.debug3("Skipping %s without a Database owner", resource)
            return
        log.debug2("Requesting reconcile of [%s] for %s", owner_key, resource)
        self.queue.add(owner_key)

    def next_retry_delay(self) -> float:
        """Doubling delay for the current run of consecutive failures"""
        failures = self.retry_count - self.attempts_left
        return min(MAX_RETRY_DELAY, self.retry_delay * (2**failures))

    ## Class Interface #########################################################

    def stop_thread(self):
        """Override stop_thread to end this thread's watch stream as well"""
        super().stop_thread()
        self.store.stop_watches(self.kind, self.api_version, self.namespace)
