"""
Thread class that will dump a heartbeat to a file periodically
"""

# Standard
from datetime import datetime
import threading

# First Party
import alog

# Local
from .base import ThreadBase

log = alog.use_channel("HBEAT")


class HeartbeatThread(ThreadBase):
    """The HeartbeatThread acts as a pulse for the ControllerManager.

    This thread will periodically dump the value of "now" to a file which can be
    read by an observer such as a liveness/readiness probe to ensure that the
    manager is functioning well.
    """

    # This format is designed to be read using `date -d $(cat heartbeat.txt)`
    # using the GNU date utility
    # CITE: https://www.gnu.org/software/coreutils/manual/html_node/Examples-of-date.html
    _DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

    def __init__(self, heartbeat_file: str, heartbeat_period: float):
        """Initialize with the file location for the heartbeat output

        Args:
            heartbeat_file: str
                The fully-qualified path to the heartbeat file
            heartbeat_period: float
                Seconds between beats.
                NOTE: The GNU `date` utility cannot parse sub-seconds easily, so
                    the expected configuration for this is to be >= 1s
        """
        self._heartbeat_file = heartbeat_file
        self._period = heartbeat_period
        self._beat_condition = threading.Condition()
        self._beats = 0
        super().__init__(name="heartbeat_thread", daemon=True)

    def run(self):
        while True:
            self._run_heartbeat()
            if not self.wait_on_precondition(self._period):
                return

    def wait_for_beat(self, timeout: float = None) -> bool:
        """Wait for the next beat. Returns False on timeout."""
        with self._beat_condition:
            current = self._beats
            return self._beat_condition.wait_for(
                lambda: self._beats > current, timeout=timeout
            )

    def _run_heartbeat(self):
        """Run the heartbeat dump to the heartbeat file"""
        now = datetime.now()
        log.debug3("Heartbeat %s", now)

        # Save the beat to disk
        try:
            with open(self._heartbeat_file, "w", encoding="utf-8") as handle:
                handle.write(now.strftime(self._DATE_FORMAT))
                handle.flush()
        except OSError as err:
            log.warning("Failed to write heartbeat file: %s", err, exc_info=True)

        # Unblock anyone waiting on a beat
        with self._beat_condition:
            self._beats += 1
            self._beat_condition.notify_all()
