"""Import the ThreadBase and subclasses"""

# Local
from .base import ThreadBase
from .heartbeat import HeartbeatThread
from .watch import WatchThread
from .worker import WorkerThread
