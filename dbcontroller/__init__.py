"""
Package exports
"""

# Local
from . import config, status
from .context import ControllerContext, ControllerSettings
from .database import DatabaseSpec, parse_spec
from .engines import Engine
from .exceptions import assert_config, assert_store, assert_valid
from .finalizer import CleanupHandler, CleanupManager, CleanupResult
from .managed_object import ManagedObject, ResourceKey
from .manager import ControllerManager
from .reconciler import ReconcileResult, Reconciler, ResultKind
from .store import DryRunStore, OpenshiftStore, ResourceStoreBase
from .work_queue import WorkQueue
