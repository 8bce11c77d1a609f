"""
This module holds all of the command classes for dbcontroller's main entrypoint
"""

# Local
from .base import CmdBase
from .check_heartbeat_cmd import CheckHeartbeatCmd
from .run_controller_cmd import RunControllerCmd
