"""
The ControllerManager owns the threads of a running controller: the worker
pool, one watch per watched kind and namespace and the optional heartbeat
"""

# Standard
from typing import List, Optional
import threading

# First Party
import alog

# Local
from .. import constants
from ..context import ControllerContext
from ..reconciler import Reconciler
from .threads import HeartbeatThread, ThreadBase, WatchThread, WorkerThread

log = alog.use_channel("CTRLMGR")

# Seconds to wait for each thread to exit on stop
JOIN_TIMEOUT = 5.0


class ControllerManager:
    """Starts and stops every thread of the controller"""

    def __init__(self, context: ControllerContext, reconciler: Optional[Reconciler] = None):
        """Initialize the threads for the given context. Nothing runs until
        start is called.

        Args:
            context:  ControllerContext
                The shared controller state
            reconciler:  Optional[Reconciler]
                The reconciler the workers run. Defaults to one built from
                the context.
        """
        self.context = context
        self.reconciler = reconciler or Reconciler(context)
        settings = context.settings

        self.workers: List[WorkerThread] = [
            WorkerThread(context, self.reconciler, index)
            for index in range(settings.max_concurrent_reconciles)
        ]
        watched_types = [
            (constants.DATABASE_API_VERSION, constants.DATABASE_KIND)
        ] + constants.CHILD_RESOURCE_TYPES
        self.watches: List[WatchThread] = [
            WatchThread(
                context,
                kind=kind,
                api_version=api_version,
                namespace=namespace,
                on_exhausted=self._watch_exhausted,
            )
            for api_version, kind in watched_types
            for namespace in settings.namespaces
        ]
        self.heartbeat: Optional[HeartbeatThread] = None
        if settings.heartbeat_file:
            self.heartbeat = HeartbeatThread(
                settings.heartbeat_file, settings.heartbeat_period
            )

        self._stopped = threading.Event()
        self._stop_lock = threading.Lock()
        self.failed_watch: Optional[WatchThread] = None

    @property
    def threads(self) -> List[ThreadBase]:
        threads = list(self.workers) + list(self.watches)
        if self.heartbeat:
            threads.append(self.heartbeat)
        return threads

    def start(self):
        """Start all threads. Workers go first so the initial relist is
        picked up right away.
        """
        log.info(
            "Starting %d workers and %d watches",
            len(self.workers),
            len(self.watches),
        )
        for thread in self.threads:
            thread.start_thread()

    def stop(self):
        """Stop all threads and shut the queue down. Safe to call more than
        once and from any thread.
        """
        with self._stop_lock:
            if self._stopped.is_set():
                return
            log.info("Stopping controller manager")
            for thread in self.threads:
                thread.shutdown.set()
            self.context.queue.shutdown()
            self.context.store.stop_watches()
            self._stopped.set()

        current = threading.current_thread()
        for thread in self.threads:
            if thread is not current and thread.is_alive():
                thread.join(JOIN_TIMEOUT)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the manager is stopped. Returns False on timeout."""
        return self._stopped.wait(timeout)

    def run(self):
        """Start the threads and block until stopped"""
        self.start()
        try:
            while not self.wait(1.0):
                pass
        finally:
            self.stop()

    @property
    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    ## Implementation Details ##################################################

    def _watch_exhausted(self, watch_thread: WatchThread):
        log.error("Watch %s gave up. Shutting down", watch_thread.name)
        self.failed_watch = watch_thread
        self.stop()
