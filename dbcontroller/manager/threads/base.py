"""
Common start/stop handling for the controller's threads
"""

# Standard
from typing import Optional
import threading

# First Party
import alog

# Local
from ...context import ControllerContext

log = alog.use_channel("TRDUTLS")


class ThreadBase(threading.Thread):
    """A named thread with a shutdown event. Subclasses implement run() and
    poll should_stop() between units of work.
    """

    def __init__(
        self,
        name: Optional[str] = None,
        daemon: Optional[bool] = None,
        context: Optional[ControllerContext] = None,
    ):
        """
        Args:
            name: Optional[str]
                The name of the thread
            daemon: Optional[bool]
                Whether the interpreter may exit while this thread runs
            context: Optional[ControllerContext]
                The shared controller state available to this thread
        """
        self.context = context
        self.shutdown = threading.Event()
        super().__init__(name=name, daemon=daemon)

    def run(self):
        raise NotImplementedError()

    ## Lifecycle ###############################################################

    def start_thread(self):
        """Start the thread unless it is already running"""
        if self.is_alive():
            log.debug("%s already running", self.name)
            return
        log.info("Starting %s: %s", self.__class__.__name__, self.name)
        self.start()

    def stop_thread(self):
        """Ask the thread to stop after its current unit of work"""
        log.info("Stopping %s: %s", self.__class__.__name__, self.name)
        self.shutdown.set()

    def should_stop(self) -> bool:
        return self.shutdown.is_set()

    def wait_on_precondition(self, timeout: float) -> bool:
        """Sleep for the timeout unless a stop is requested first. Returns
        False if the thread should stop.
        """
        return not self.shutdown.wait(timeout)
