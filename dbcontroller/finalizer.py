"""
Cleanup that must finish before a Database record may disappear. The
controller holds its finalizer on every Database until the CleanupManager
reports Done.
"""

# Standard
from enum import Enum
from typing import List, Optional
import abc

# First Party
import alog

# Local
from .diff import deletion_order
from .exceptions import ControllerFatalError
from .managed_object import ResourceKey
from .store import ResourceStoreBase

log = alog.use_channel("FINLZ")


class CleanupResult(Enum):
    """Outcome of a cleanup pass"""

    DONE = "Done"
    RETRY = "Retry"
    FATAL = "Fatal"


# Aggregation precedence. The highest ranked result of any handler wins.
_RESULT_RANK = {CleanupResult.DONE: 0, CleanupResult.RETRY: 1, CleanupResult.FATAL: 2}


class CleanupHandler(abc.ABC):
    """A single piece of cleanup run while a Database is being deleted"""

    @abc.abstractmethod
    def cleanup(self, key: ResourceKey, spec: dict) -> CleanupResult:
        """Release whatever this handler is responsible for

        Args:
            key:  ResourceKey
                The Database being deleted
            spec:  dict
                The spec of the Database being deleted

        Returns:
            result:  CleanupResult
                Done once nothing is left, Retry while work remains and Fatal
                if cleanup can never complete without operator action
        """

    @property
    def name(self) -> str:
        return self.__class__.__name__


class CleanupManager:
    """Runs every registered CleanupHandler and aggregates the results"""

    def __init__(self, handlers: Optional[List[CleanupHandler]] = None):
        self.handlers = list(handlers or [])

    def cleanup(self, key: ResourceKey, spec: dict) -> CleanupResult:
        """Run all handlers in order. Fatal wins over Retry which wins over
        Done. Handler errors are converted: fatal errors become Fatal and
        everything else becomes Retry.
        """
        result = CleanupResult.DONE
        for handler in self.handlers:
            try:
                handler_result = handler.cleanup(key, spec)
            except ControllerFatalError as err:
                log.warning("Cleanup handler %s failed for [%s]: %s", handler.name, key, err)
                handler_result = CleanupResult.FATAL
            except Exception as err:  # pylint: disable=broad-except
                log.info(
                    "Cleanup handler %s hit a transient error for [%s]: %s",
                    handler.name,
                    key,
                    err,
                )
                log.debug2("Cleanup error", exc_info=True)
                handler_result = CleanupResult.RETRY

            log.debug2("Cleanup handler %s for [%s]: %s", handler.name, key, handler_result)
            if _RESULT_RANK[handler_result] > _RESULT_RANK[result]:
                result = handler_result
        log.debug("Cleanup of [%s]: %s", key, result.value)
        return result


class ChildResourceCleanup(CleanupHandler):
    """Deletes the children of a Database. The workload goes first and the
    data volume is only released once nothing else remains.
    """

    def __init__(
        self, store: ResourceStoreBase, request_timeout: Optional[float] = None
    ):
        self._store = store
        self._request_timeout = request_timeout

    def cleanup(self, key: ResourceKey, spec: dict) -> CleanupResult:
        owner = self._store.get(key, timeout=self._request_timeout)
        if owner is None:
            return CleanupResult.DONE
        children = self._store.list_children(owner, timeout=self._request_timeout)
        if not children:
            log.debug2("No children left for [%s]", key)
            return CleanupResult.DONE

        volumes = [c for c in children if c.get("kind") == "PersistentVolumeClaim"]
        others = [c for c in children if c.get("kind") != "PersistentVolumeClaim"]
        for child in sorted(others, key=deletion_order) if others else volumes:
            log.debug(
                "Deleting %s/%s of [%s]",
                child.get("kind"),
                child.get("metadata", {}).get("name"),
                key,
            )
            self._store.delete_child(child, timeout=self._request_timeout)
        return CleanupResult.RETRY
