"""
The WorkerThread pulls keys from the WorkQueue, runs the Reconciler and feeds
the outcome back into the queue
"""

# First Party
import alog

# Local
from ...context import ControllerContext
from ...managed_object import ResourceKey
from ...reconciler import ReconcileResult, Reconciler, ResultKind
from .base import ThreadBase

log = alog.use_channel("WRKTHRD")

# Seconds a worker waits on an empty queue before re-checking for shutdown
QUEUE_POLL_TIMEOUT = 0.5


class WorkerThread(ThreadBase):
    """One member of the worker pool. The queue guarantees a key is only ever
    held by one worker, so workers share no other state.
    """

    def __init__(self, context: ControllerContext, reconciler: Reconciler, index: int = 0):
        super().__init__(name=f"worker_thread_{index}", daemon=True, context=context)
        self.queue = context.queue
        self.reconciler = reconciler

    def run(self):
        """Reconcile keys until the thread is stopped or the queue shuts down"""
        while not self.should_stop():
            key = self.queue.get(timeout=QUEUE_POLL_TIMEOUT)
            if key is None:
                if self.queue.is_shutdown:
                    log.debug("Queue shut down. Stopping %s", self.name)
                    return
                continue
            self.process(key)

    def process(self, key: ResourceKey) -> ReconcileResult:
        """Run a single attempt for a key handed out by the queue and release
        it afterwards

        Args:
            key:  ResourceKey
                The key returned by WorkQueue.get

        Returns:
            result:  ReconcileResult
                The outcome of the attempt
        """
        attempt = self.queue.num_requeues(key)
        try:
            try:
                result = self.reconciler.reconcile(key, attempt=attempt)
            except Exception as err:  # pylint: disable=broad-except
                log.warning(
                    "Unexpected error reconciling [%s]: %s", key, err, exc_info=True
                )
                result = ReconcileResult(ResultKind.RETRY, exception=err)
            self._handle_result(key, result)
            return result
        finally:
            self.queue.done(key)

    def _handle_result(self, key: ResourceKey, result: ReconcileResult):
        log.debug2("Result for [%s]: %s", key, result.kind.value)
        if result.kind == ResultKind.DONE:
            self.queue.forget(key)
            if result.requeue_after is not None:
                self.queue.add_after(key, result.requeue_after)
        elif result.kind == ResultKind.REQUEUE:
            self.queue.add(key)
        elif result.kind == ResultKind.RETRY:
            self.queue.mark_failed(key)
        elif result.kind == ResultKind.RETRY_SLOW:
            self.queue.mark_failed(key, slow=True)
        elif result.kind == ResultKind.TERMINAL:
            self.queue.mark_terminal(key, result.revision)
        else:
            self.queue.forget(key)
