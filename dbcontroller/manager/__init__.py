"""
The manager runs the controller: a pool of worker threads draining the work
queue and watch threads feeding it
"""

# Local
from .controller_manager import ControllerManager
from .threads import HeartbeatThread, WatchThread, WorkerThread
